from __future__ import annotations

import argparse
import json
import logging
import os
import tempfile
from pathlib import Path
from typing import List, Optional

from dotenv import load_dotenv

from .automation import GstrAutomation
from .config import AppConfig, load_config
from .logging_config import configure_logging
from .models import AutomationRequest, ErrorCode
from .portal.captcha import build_resolver
from .util.debug_bundle import create_debug_bundle
from .util.periods import normalize_month


logger = logging.getLogger("gstr2b_automation")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_PENDING = 2
EXIT_QUOTA = 3


def _build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="gstr2b_automation")
    p.add_argument(
        "--env-file",
        default=".env",
        help="Path to a dotenv file (default: .env). If missing, env vars must already be set.",
    )

    sub = p.add_subparsers(dest="cmd", required=True)

    fetch = sub.add_parser("fetch", help="Log in to the GST portal and download GSTR-2B for one period")
    fetch.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    fetch.add_argument("--username", default="", help="GST portal username (default: $GST_USERNAME)")
    fetch.add_argument("--password", default="", help="GST portal password (default: $GST_PASSWORD)")
    fetch.add_argument("--year", required=True, help="Financial year, e.g. 2024-25 or 2024-2025")
    fetch.add_argument("--quarter", required=True, help="Quarter as shown by the portal, e.g. 'Quarter 1 (Apr - Jun)'")
    fetch.add_argument("--month", required=True, help="Month name, abbreviation or number (e.g. April, apr, 4)")
    fetch.add_argument("--client-folder", default="", help="Optional sub-folder under the month folder")
    fetch.add_argument("--storage-root", default="", help="Base download folder (default: storage.root)")
    fetch.add_argument("--headful", action="store_true", help="Run browser headful (debug)")
    fetch.add_argument("--no-return-file", action="store_true", help="Do not attach the file as base64")
    fetch.add_argument("--include-base64", action="store_true", help="Include fileBase64 in the printed JSON")
    fetch.add_argument("--cleanup", action="store_true", help="Delete the downloaded file after encoding it")
    fetch.add_argument("--slowmo-ms", type=int, default=0, help="Playwright slow motion in milliseconds (debug).")
    fetch.add_argument("--step-debug", action="store_true", help="Save step-by-step screenshots under data/debug/.")
    fetch.add_argument("--out", default="", help="Write the JSON result to this file instead of stdout")
    fetch.add_argument(
        "--debug-bundle",
        action="store_true",
        help="On failure, zip debug artifacts + log into data/ for sharing.",
    )

    solve = sub.add_parser(
        "solve-captcha",
        help="Run the captcha recognition chain on an image file (checks service credentials/credits)",
    )
    solve.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")
    solve.add_argument("image", help="Path to a captcha image (PNG/JPEG)")

    preflight = sub.add_parser(
        "preflight",
        help="Validate configuration and storage without launching a browser",
    )
    preflight.add_argument("--config", default="config.yaml", help="Path to YAML config (default: config.yaml)")

    return p


def _request_from_args(args: argparse.Namespace, cfg: AppConfig) -> AutomationRequest:
    return AutomationRequest(
        username=args.username or os.getenv("GST_USERNAME", ""),
        password=args.password or os.getenv("GST_PASSWORD", ""),
        fiscal_year=args.year,
        quarter=args.quarter,
        month=normalize_month(args.month),
        client_folder=args.client_folder,
        storage_root=args.storage_root or cfg.storage.root,
        headless=cfg.browser.headless and not args.headful,
        return_file=cfg.storage.return_file and not args.no_return_file,
        cleanup_downloads=cfg.storage.cleanup_downloads or args.cleanup,
    )


def _exit_code(code: Optional[ErrorCode], success: bool) -> int:
    if success:
        return EXIT_OK
    if code is ErrorCode.GENERATION_PENDING:
        return EXIT_PENDING
    return EXIT_FAILED


def main(argv: Optional[List[str]] = None) -> int:
    args = _build_parser().parse_args(argv)

    env_path = Path(args.env_file)
    if env_path.exists():
        load_dotenv(env_path)

    # Default logging: can be overridden once config is loaded.
    configure_logging(level=os.getenv("LOG_LEVEL", "INFO"))

    cfg = load_config(args.config)
    configure_logging(level=cfg.logging.level, file_path=cfg.logging.file_path)

    if args.cmd == "preflight":
        logger.info("Starting preflight checks")
        if not (cfg.captcha.truecaptcha_userid and cfg.captcha.truecaptcha_apikey):
            raise SystemExit("TrueCaptcha credentials missing. Set TRUECAPTCHA_USERID and TRUECAPTCHA_APIKEY in .env.")
        if not cfg.captcha.anticaptcha_api_key:
            logger.info("ANTICAPTCHA_API_KEY not set; fallback chain is OCR.space only.")

        root = Path(cfg.storage.root)
        try:
            root.mkdir(parents=True, exist_ok=True)
            with tempfile.NamedTemporaryFile(dir=root, prefix=".preflight-"):
                pass
        except OSError as e:
            raise SystemExit(f"Storage root {root} is not writable: {e}")

        if not (os.getenv("GST_USERNAME") and os.getenv("GST_PASSWORD")):
            logger.info("GST_USERNAME/GST_PASSWORD not set; pass --username/--password to fetch.")
        logger.info("Preflight OK (login_url=%s storage=%s)", cfg.portal.login_url, root)
        return EXIT_OK

    if args.cmd == "solve-captcha":
        image = Path(args.image)
        if not image.is_file():
            raise SystemExit(f"Image not found: {image}")
        resolver = build_resolver(cfg.captcha)
        attempt, quota = resolver.solve_image(image.read_bytes())
        if quota:
            print("Captcha service quota exhausted (recharge required).")
            return EXIT_QUOTA
        if attempt is None:
            print("No service produced an acceptable captcha candidate.")
            return EXIT_FAILED
        print(f"{attempt.candidate}\t(via {attempt.strategy})")
        return EXIT_OK

    if args.cmd == "fetch":
        if args.step_debug:
            cfg.browser.step_debug = True
        if args.slowmo_ms:
            cfg.browser.slow_mo_ms = args.slowmo_ms

        req = _request_from_args(args, cfg)
        try:
            result = GstrAutomation(cfg).run(req)
        except KeyboardInterrupt:
            print("Interrupted.")
            return 130

        payload = json.dumps(result.to_response(include_file=args.include_base64), indent=2)
        if args.out:
            out = Path(args.out)
            out.parent.mkdir(parents=True, exist_ok=True)
            out.write_text(payload + "\n", encoding="utf-8")
            logger.info("Result written to %s", out)
        else:
            print(payload)

        if not result.success and args.debug_bundle:
            try:
                out_zip = create_debug_bundle(
                    debug_dir=cfg.browser.debug_dir,
                    log_file=cfg.logging.file_path,
                    out_dir="data",
                    label=result.error_code.value if result.error_code else "",
                    samples_dir=cfg.captcha.samples_dir,
                )
                logger.error("Debug bundle written: %s", out_zip)
            except Exception:
                logger.exception("Failed to create debug bundle")

        return _exit_code(result.error_code, result.success)

    raise AssertionError("Unhandled command")


if __name__ == "__main__":
    raise SystemExit(main())
