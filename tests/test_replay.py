"""Tests for the in-memory replay guard."""

from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor
from datetime import timedelta

from authflow.core.saml.replay import InMemoryReplayGuard
from tests.federation import FROZEN_NOW


class TestInMemoryReplayGuard:
    """Tests for InMemoryReplayGuard."""

    def test_first_use_accepted(self, clock):
        """Test an unseen ID is accepted and recorded."""
        guard = InMemoryReplayGuard(clock=clock)
        assert guard.check_and_mark("_a1", FROZEN_NOW + timedelta(minutes=5))
        assert len(guard) == 1

    def test_second_use_rejected(self, clock):
        """Test the same ID is refused while its entry is live."""
        guard = InMemoryReplayGuard(clock=clock)
        guard.check_and_mark("_a1", FROZEN_NOW + timedelta(minutes=5))
        assert not guard.check_and_mark("_a1", FROZEN_NOW + timedelta(minutes=5))

    def test_reuse_after_expiry(self, clock):
        """Test an ID can be recorded again once its entry has expired."""
        guard = InMemoryReplayGuard(clock=clock)
        guard.check_and_mark("_a1", FROZEN_NOW + timedelta(minutes=5))
        clock.advance(301)
        assert guard.check_and_mark("_a1", FROZEN_NOW + timedelta(minutes=15))

    def test_purge(self, clock):
        """Test purge drops only expired entries."""
        guard = InMemoryReplayGuard(clock=clock)
        guard.check_and_mark("_short", FROZEN_NOW + timedelta(minutes=1))
        guard.check_and_mark("_long", FROZEN_NOW + timedelta(hours=1))

        clock.advance(120)
        assert guard.purge() == 1
        assert len(guard) == 1
        assert not guard.check_and_mark("_long", FROZEN_NOW + timedelta(hours=1))

    def test_periodic_purge(self, clock):
        """Test expired entries are dropped as new ones arrive."""
        guard = InMemoryReplayGuard(clock=clock, purge_interval=3)
        guard.check_and_mark("_a1", FROZEN_NOW)
        guard.check_and_mark("_a2", FROZEN_NOW)
        clock.advance(1)
        guard.check_and_mark("_a3", FROZEN_NOW + timedelta(minutes=5))
        assert len(guard) == 1

    def test_concurrent_use_accepted_once(self, clock):
        """Test only one of many simultaneous uses of an ID is accepted."""
        guard = InMemoryReplayGuard(clock=clock)
        workers = 16
        barrier = threading.Barrier(workers)

        def consume(_):
            barrier.wait()
            return guard.check_and_mark("_shared", FROZEN_NOW + timedelta(minutes=5))

        with ThreadPoolExecutor(max_workers=workers) as pool:
            results = list(pool.map(consume, range(workers)))

        assert results.count(True) == 1
