from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Optional


def configure_logging(level: str = "INFO", file_path: Optional[str] = None) -> None:
    numeric_level = getattr(logging, (level or "INFO").upper(), logging.INFO)

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if file_path:
        path = Path(file_path)
        path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(path, encoding="utf-8"))

    logging.basicConfig(
        level=numeric_level,
        format="%(asctime)s %(levelname)s %(name)s - %(message)s",
        handlers=handlers,
        force=True,  # allow configure_logging() to be called multiple times (CLI does this)
    )

    # Playwright and requests/urllib3 are chatty at DEBUG.
    for noisy in ("playwright", "urllib3"):
        logging.getLogger(noisy).setLevel(os.getenv("NOISY_LOG_LEVEL", "WARNING"))


def mask(value: Optional[str], *, keep: int = 2) -> str:
    """
    Render a credential-like value for logs: "ABCD1234" -> "AB******".
    """
    s = value or ""
    if not s:
        return "<missing>"
    if len(s) <= keep:
        return "*" * len(s)
    return s[:keep] + "*" * (len(s) - keep)
