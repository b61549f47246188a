#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path


def _ensure_src_on_path() -> None:
    repo_root = Path(__file__).resolve().parents[1]
    src = repo_root / "src"
    if str(src) not in sys.path:
        sys.path.insert(0, str(src))


def _read_text(path: str) -> str:
    p = Path(path)
    if not p.exists():
        raise SystemExit(f"File not found: {p}")
    return p.read_text(encoding="utf-8", errors="replace")


def _emit(payload: dict, out: str) -> None:
    out_json = json.dumps(payload, indent=2, sort_keys=False)
    if out:
        Path(out).write_text(out_json, encoding="utf-8")
    else:
        print(out_json)


def main(argv: list[str] | None = None) -> int:
    _ensure_src_on_path()

    from gstr2b_automation.portal.client import find_failure_text, find_pending_banner
    from gstr2b_automation.portal.login import LOGIN_ERROR_RULES, classify_login_error, collect_error_text
    from gstr2b_automation.portal.navigation import choose_action, score_candidate
    from gstr2b_automation.portal.selectors import PortalSelectors

    p = argparse.ArgumentParser(
        prog="parse_portal_text_snapshot",
        description=(
            "Replay GST portal classification on saved debug snapshots (data/debug/*.txt, *.json).\n"
            "Intended for checking classification rules offline after a portal UI change (no Playwright, no secrets)."
        ),
    )
    sub = p.add_subparsers(dest="cmd", required=True)

    login = sub.add_parser("login", help="Classify the login error text in a login_attempt.txt snapshot")
    login.add_argument("--file", required=True, help="Path to a debug .txt file captured after a login submit")
    login.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    banner = sub.add_parser("banner", help="Look for a pending-generation banner or failure text in a snapshot")
    banner.add_argument("--file", required=True, help="Path to a debug .txt file captured from the GSTR-2B page")
    banner.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    actions = sub.add_parser("actions", help="Re-run download-button disambiguation on document_actions.json")
    actions.add_argument("--file", required=True, help="Path to document_actions.json from the debug dir")
    actions.add_argument("--target", default="GSTR2B", help="Document code to look for (default: GSTR2B)")
    actions.add_argument("--out", default="", help="Optional output JSON path (otherwise prints to stdout)")

    args = p.parse_args(argv)

    if args.cmd == "login":
        lines = [ln for ln in _read_text(args.file).splitlines() if any(pat.search(ln) for pat, _ in LOGIN_ERROR_RULES)]
        error_text = collect_error_text(lines)
        _emit({"error_text": error_text, "kind": classify_login_error(error_text).value}, args.out)
        return 0

    if args.cmd == "banner":
        body_text = _read_text(args.file)
        _emit(
            {
                "pending_banner": find_pending_banner(body_text),
                "failure_text": find_failure_text(body_text, PortalSelectors().failure_text),
            },
            args.out,
        )
        return 0

    if args.cmd == "actions":
        raw = json.loads(_read_text(args.file))
        candidates = [score_candidate(int(item["index"]), item.get("texts") or [], args.target) for item in raw]
        chosen = choose_action(candidates)
        _emit(
            {
                "chosen": chosen.index if chosen else None,
                "candidates": [
                    {
                        "index": c.index,
                        "codes": list(c.codes),
                        "has_target": c.has_target,
                        "has_competing": c.has_competing,
                        "block_len": c.length,
                    }
                    for c in candidates
                ],
            },
            args.out,
        )
        return 0

    raise AssertionError("Unhandled command")


if __name__ == "__main__":
    raise SystemExit(main())
