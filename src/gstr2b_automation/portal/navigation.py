"""
Browser-independent pieces of portal navigation: reporting-period option matching and the
disambiguation of look-alike document action buttons.

The results page renders one identical DOWNLOAD button per return type (GSTR-1, GSTR-2A, GSTR-2B,
GSTR-3B, ...). Selectors alone cannot tell them apart, so each button is judged by the text of the
block it sits in.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Optional, Sequence

from ..util.periods import month_abbreviation, quarter_number


_DOC_CODE_RE = re.compile(r"GSTR\s*-?\d+[A-Z]?", re.I)
_LONG_FY_RE = re.compile(r"20(\d{2})-20(\d{2})")
_WS_RE = re.compile(r"\s+")


def normalize_doc_code(value: str) -> str:
    return re.sub(r"[\s-]+", "", value or "").upper()


def extract_doc_codes(text: str) -> list[str]:
    return [normalize_doc_code(m) for m in _DOC_CODE_RE.findall(text or "")]


def _mentions(text: str, code: str) -> bool:
    return normalize_doc_code(code) in extract_doc_codes(text)


@dataclass(frozen=True)
class ActionCandidate:
    index: int
    block: str
    codes: tuple[str, ...]
    has_target: bool
    has_competing: bool

    @property
    def length(self) -> int:
        return len(self.block)


def score_candidate(index: int, ancestor_texts: Sequence[str], target_code: str) -> ActionCandidate:
    """
    `ancestor_texts` are the innerText of the button and its ancestors, nearest first.

    The context block is the nearest ancestor text that mentions the target code (falling back to
    the nearest non-empty text), so a tile is judged by its own heading, not by the whole page.
    """
    target = normalize_doc_code(target_code)
    texts = [_WS_RE.sub(" ", t or "").strip() for t in ancestor_texts]
    texts = [t for t in texts if t]

    block = next((t for t in texts if _mentions(t, target)), texts[0] if texts else "")
    codes = tuple(extract_doc_codes(block))
    return ActionCandidate(
        index=index,
        block=block,
        codes=codes,
        has_target=target in codes,
        has_competing=any(c != target for c in codes),
    )


def choose_action(candidates: Sequence[ActionCandidate]) -> Optional[ActionCandidate]:
    """
    Prefer blocks naming only the target code; if none, relax to blocks that name it at all.
    Remaining ties go to the shortest (most specific) block.
    """
    strict = [c for c in candidates if c.has_target and not c.has_competing]
    pool = strict or [c for c in candidates if c.has_target]
    if not pool:
        return None
    return sorted(pool, key=lambda c: (c.has_competing, c.length, c.index))[0]


def _dedupe(patterns: Sequence[str]) -> list[str]:
    out: list[str] = []
    seen: set[str] = set()
    for p in patterns:
        s = (p or "").strip()
        if not s or s.lower() in seen:
            continue
        out.append(s)
        seen.add(s.lower())
    return out


def fiscal_year_patterns(fiscal_year: str) -> list[str]:
    fy = (fiscal_year or "").strip()
    return _dedupe([fy, _LONG_FY_RE.sub(r"\1-\2", fy)])


def quarter_patterns(quarter: str) -> list[str]:
    q = _WS_RE.sub(" ", quarter or "").strip()
    n = quarter_number(q)
    if n is None:
        return _dedupe([q])
    return _dedupe([f"quarter {n}", f"q{n}", q])


def month_patterns(month: str) -> list[str]:
    m = (month or "").strip()
    return _dedupe([m, month_abbreviation(m)])


def match_option(option_texts: Sequence[str], patterns: Sequence[str]) -> Optional[int]:
    """
    Index of the first option containing a pattern (case-insensitive). Patterns are tried in
    order, so earlier (more specific) patterns win over later ones.
    """
    lowered = [(t or "").lower() for t in option_texts]
    for pat in patterns:
        p = (pat or "").lower()
        if not p:
            continue
        for i, t in enumerate(lowered):
            if p in t:
                return i
    return None
