"""Replay protection for consumed message IDs."""

from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import UTC, datetime

logger = logging.getLogger(__name__)


class ReplayGuard(ABC):
    """Records consumed message IDs until they expire."""

    @abstractmethod
    def check_and_mark(self, message_id: str, expires_at: datetime) -> bool:
        """Atomically record an ID.

        Args:
            message_id: Response or Assertion ID.
            expires_at: When the entry may be forgotten.

        Returns:
            True if the ID was new, False if it was already recorded.
        """

    @abstractmethod
    def purge(self) -> int:
        """Remove expired entries. Returns the number removed."""


class InMemoryReplayGuard(ReplayGuard):
    """Replay guard for a single process."""

    def __init__(
        self,
        clock: Callable[[], datetime] | None = None,
        purge_interval: int = 1000,
    ) -> None:
        self._clock = clock or (lambda: datetime.now(UTC))
        self._entries: dict[str, datetime] = {}
        self._lock = threading.Lock()
        self._purge_interval = purge_interval
        self._inserts = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def check_and_mark(self, message_id: str, expires_at: datetime) -> bool:
        now = self._clock()
        with self._lock:
            existing = self._entries.get(message_id)
            if existing is not None and now <= existing:
                logger.warning(f"Replay detected for message {message_id}")
                return False
            self._entries[message_id] = expires_at
            self._inserts += 1
            if self._inserts % self._purge_interval == 0:
                self._purge_locked(now)
        return True

    def purge(self) -> int:
        with self._lock:
            return self._purge_locked(self._clock())

    def _purge_locked(self, now: datetime) -> int:
        expired = [key for key, expiry in self._entries.items() if now > expiry]
        for key in expired:
            del self._entries[key]
        return len(expired)
