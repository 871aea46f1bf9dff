"""
IrukaDark Cache Test Suite
==========================

SDK client pool and response cache: TTL refresh, capacity eviction and
failure isolation. Clocks are injected so nothing sleeps.

Usage:
    python tests/test_cache.py
"""

import logging
import os
import sys
import unittest
from unittest.mock import MagicMock, patch

# --- ENVIRONMENT & PATH CONFIGURATION ----------------------------------------
CURRENT_FILE = os.path.abspath(__file__)
TESTS_DIR = os.path.dirname(CURRENT_FILE)
PROJECT_ROOT = os.path.dirname(TESTS_DIR)
SRC_PATH = os.path.join(PROJECT_ROOT, "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

# --- APPLICATION MODULE IMPORTS ----------------------------------------------
from irukadark.cache import ClientPool, ResponseCache  # noqa: E402
from irukadark.errors import ClientInitError  # noqa: E402

logger = logging.getLogger("IrukaDarkTests")


class FakeClock:
    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class TestClientPool(unittest.TestCase):
    """
    Unit Tests: one client per credential, refreshed after its TTL.
    """

    def setUp(self):
        logger.info(f"--- Starting Pool Test: {self._testMethodName} ---")
        self.clock = FakeClock()
        self.factory = MagicMock(side_effect=lambda api_key: object())

    def test_same_client_within_ttl_new_after(self):
        pool = ClientPool(self.factory, ttl=3600, clock=self.clock)

        first = pool.get_or_create("key-a")
        self.clock.advance(3599)
        self.assertIs(pool.get_or_create("key-a"), first)

        self.clock.advance(2)
        refreshed = pool.get_or_create("key-a")
        self.assertIsNot(refreshed, first)
        self.assertEqual(self.factory.call_count, 2)

    def test_clients_are_per_credential(self):
        pool = ClientPool(self.factory, clock=self.clock)
        self.assertIsNot(pool.get_or_create("key-a"), pool.get_or_create("key-b"))
        self.assertEqual(len(pool), 2)

    def test_oldest_created_evicted_over_capacity(self):
        pool = ClientPool(self.factory, max_size=2, clock=self.clock)
        first_a = pool.get_or_create("key-a")
        self.clock.advance(1)
        pool.get_or_create("key-b")
        self.clock.advance(1)
        pool.get_or_create("key-c")

        # The cleanup pass of the next call trims back to capacity.
        pool.get_or_create("key-b")
        self.assertEqual(len(pool), 2)

        self.assertIsNot(pool.get_or_create("key-a"), first_a)

    def test_construction_failure_is_not_cached(self):
        factory = MagicMock(side_effect=RuntimeError("sdk exploded"))
        pool = ClientPool(factory, clock=self.clock)

        with self.assertRaises(ClientInitError):
            pool.get_or_create("key-a")
        self.assertEqual(len(pool), 0)

        factory.side_effect = None
        factory.return_value = "client"
        self.assertEqual(pool.get_or_create("key-a"), "client")

    def test_positional_constructor_is_tried(self):
        def factory(*args, **kwargs):
            if kwargs:
                raise TypeError("unexpected keyword")
            return ("client", args[0])

        pool = ClientPool(factory, clock=self.clock)
        self.assertEqual(pool.get_or_create("key-a"), ("client", "key-a"))

    def test_missing_credential_rejected(self):
        pool = ClientPool(self.factory, clock=self.clock)
        with self.assertRaises(ClientInitError):
            pool.get_or_create("")
        self.factory.assert_not_called()

    def test_missing_sdk_reports_client_init_error(self):
        pool = ClientPool(clock=self.clock)
        with patch.dict(sys.modules, {"google": None}):
            with self.assertRaises(ClientInitError):
                pool.get_or_create("key-a")


class TestResponseCache(unittest.TestCase):
    """
    Unit Tests: TTL expiry and recency-ordered eviction.
    """

    def setUp(self):
        logger.info(f"--- Starting Cache Test: {self._testMethodName} ---")
        self.clock = FakeClock()

    def test_hit_then_expiry(self):
        cache = ResponseCache(ttl=300, clock=self.clock)
        cache.set("k", "value")

        self.clock.advance(299)
        self.assertEqual(cache.get("k"), "value")

        self.clock.advance(2)
        self.assertIsNone(cache.get("k"))
        self.assertEqual(len(cache), 0)

    def test_capacity_evicts_least_recently_used(self):
        cache = ResponseCache(max_size=2, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.get("a")
        cache.set("c", 3)

        self.assertIn("a", cache)
        self.assertNotIn("b", cache)
        self.assertIn("c", cache)
        self.assertEqual(len(cache), 2)

    def test_overwrite_does_not_evict_others(self):
        cache = ResponseCache(max_size=2, clock=self.clock)
        cache.set("a", 1)
        cache.set("b", 2)
        cache.set("b", 20)
        self.assertEqual(cache.get("a"), 1)
        self.assertEqual(cache.get("b"), 20)

    def test_clear(self):
        cache = ResponseCache(clock=self.clock)
        cache.set("a", 1)
        cache.clear()
        self.assertIsNone(cache.get("a"))


if __name__ == "__main__":
    unittest.main(verbosity=2)
