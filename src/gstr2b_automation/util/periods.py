from __future__ import annotations

import calendar
import re
from datetime import datetime
from typing import Optional

from dateutil import parser as date_parser


_QUARTER_NUM_RE = re.compile(r"\d")


def normalize_month(value: str) -> str:
    """
    Normalize month inputs to the full English name the portal shows:
    - "April" -> "April"
    - "apr"   -> "April"
    - "4"     -> "April"

    Unparseable values are returned stripped so the portal option match can still try them.
    """
    s = (value or "").strip()
    if not s:
        return s
    if s.isdigit():
        n = int(s)
        if 1 <= n <= 12:
            return calendar.month_name[n]
        return s
    try:
        dt = date_parser.parse(s, default=datetime(2000, 1, 1))
    except (ValueError, OverflowError):
        return s
    return calendar.month_name[dt.month]


def month_abbreviation(month: str) -> str:
    return (month or "").strip()[:3]


def quarter_number(quarter: str) -> Optional[str]:
    """
    "Quarter 1 (Apr - Jun)" -> "1", "Q3" -> "3", "" -> None.
    """
    m = _QUARTER_NUM_RE.search(quarter or "")
    return m.group(0) if m else None
