from __future__ import annotations

import logging
import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Iterator, Optional


logger = logging.getLogger(__name__)


class AutomationCancelled(Exception):
    """
    Raised at a suspension point once the run's token has been cancelled.
    """


@dataclass
class CancellationToken:
    request_id: str
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    _event: threading.Event = field(default_factory=threading.Event, repr=False)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self) -> None:
        self._event.set()

    def check(self) -> None:
        if self._event.is_set():
            raise AutomationCancelled(f"Automation {self.request_id} was stopped by user")


class CancellationRegistry:
    """
    Process-wide registry of in-flight automations.

    Each run registers a token at start and removes it at end (whatever the outcome). The most
    recently started run is the "current automation" that `stop_current()` targets.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._tokens: dict[str, CancellationToken] = {}
        self._current_id: Optional[str] = None

    @contextmanager
    def track(self, request_id: Optional[str] = None) -> Iterator[CancellationToken]:
        token = CancellationToken(request_id=request_id or uuid.uuid4().hex)
        with self._lock:
            self._tokens[token.request_id] = token
            self._current_id = token.request_id
        try:
            yield token
        finally:
            with self._lock:
                self._tokens.pop(token.request_id, None)
                if self._current_id == token.request_id:
                    # Fall back to the newest remaining run, if any.
                    self._current_id = next(reversed(self._tokens), None) if self._tokens else None

    def current(self) -> Optional[CancellationToken]:
        with self._lock:
            if self._current_id is None:
                return None
            return self._tokens.get(self._current_id)

    def get(self, request_id: str) -> Optional[CancellationToken]:
        with self._lock:
            return self._tokens.get(request_id)

    def active_ids(self) -> list[str]:
        with self._lock:
            return list(self._tokens)

    def stop(self, request_id: str) -> bool:
        token = self.get(request_id)
        if token is None:
            return False
        token.cancel()
        logger.info("Stop requested for automation %s", request_id)
        return True

    def stop_current(self) -> bool:
        token = self.current()
        if token is None:
            logger.info("Stop requested but no automation is running.")
            return False
        token.cancel()
        logger.info("Stop requested for current automation %s", token.request_id)
        return True


registry = CancellationRegistry()
