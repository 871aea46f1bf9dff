"""
IrukaDark Utilities Test Suite
==============================

Unit tests for identifier helpers, request fingerprints, storage paths and
the cancellation primitives the orchestrator is built on.

Usage:
    python tests/test_utils.py
"""

import logging
import os
import sys
import tempfile
import threading
import time
import unittest
from pathlib import Path
from unittest.mock import patch

# --- ENVIRONMENT & PATH CONFIGURATION ----------------------------------------
CURRENT_FILE = os.path.abspath(__file__)
TESTS_DIR = os.path.dirname(CURRENT_FILE)
PROJECT_ROOT = os.path.dirname(TESTS_DIR)
SRC_PATH = os.path.join(PROJECT_ROOT, "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

# --- APPLICATION MODULE IMPORTS ----------------------------------------------
from irukadark.errors import RequestAbortedError  # noqa: E402
from irukadark.utils import (  # noqa: E402
    CancellationToken,
    PathManager,
    bare_model_name,
    chunked,
    mask_secret,
    model_candidates,
    request_fingerprint,
    run_cancellable,
)

logger = logging.getLogger("IrukaDarkTests")


class TestIdentifierHelpers(unittest.TestCase):
    """
    Unit Tests: model names, secrets and batching.
    """

    def setUp(self):
        logger.info(f"--- Starting Test: {self._testMethodName} ---")

    def test_bare_model_name_strips_prefix(self):
        self.assertEqual(bare_model_name("models/gemini-2.5-flash"), "gemini-2.5-flash")
        self.assertEqual(bare_model_name(" gemini-2.5-flash "), "gemini-2.5-flash")

    def test_model_candidates_bare_first(self):
        self.assertEqual(
            model_candidates("models/gemini-2.5-flash-lite"),
            ["gemini-2.5-flash-lite", "models/gemini-2.5-flash-lite"],
        )

    def test_chunked_keeps_order_and_remainder(self):
        self.assertEqual(list(chunked(["a", "b", "c"], 2)), [["a", "b"], ["c"]])
        self.assertEqual(list(chunked([], 2)), [])

    def test_mask_secret_never_returns_the_key(self):
        key = "AIzaSyExampleKey1234"
        masked = mask_secret(key)
        self.assertNotEqual(masked, key)
        self.assertTrue(masked.startswith("AIza"))
        self.assertEqual(mask_secret(""), "<empty>")
        self.assertEqual(mask_secret("short"), "*****")


class TestRequestFingerprint(unittest.TestCase):
    """
    Unit Tests: cache keys of generation requests.
    """

    def test_same_request_same_key(self):
        first = request_fingerprint("hello", "gemini-2.5-flash", False)
        second = request_fingerprint("hello", "models/gemini-2.5-flash", False)
        self.assertEqual(first, second)

    def test_key_depends_on_every_field(self):
        base = request_fingerprint("hello", "gemini-2.5-flash", False)
        self.assertNotEqual(base, request_fingerprint("hello!", "gemini-2.5-flash", False))
        self.assertNotEqual(base, request_fingerprint("hello", "gemini-2.5-pro", False))
        self.assertNotEqual(base, request_fingerprint("hello", "gemini-2.5-flash", True))
        self.assertNotEqual(
            base, request_fingerprint("hello", "gemini-2.5-flash", False, b"\x89PNG")
        )

    def test_image_content_changes_key(self):
        first = request_fingerprint("describe", "m", False, b"image-one")
        second = request_fingerprint("describe", "m", False, b"image-two")
        self.assertNotEqual(first, second)


class TestPathManager(unittest.TestCase):
    """
    I/O Tests: user data directory resolution.
    """

    def test_override_directory_is_used_and_created(self):
        with tempfile.TemporaryDirectory() as temp_dir:
            with patch.dict(os.environ, {"IRUKADARK_DATA_DIR": temp_dir}):
                path = PathManager.get_user_data_path("nested/prefs.json")
            self.assertEqual(path, Path(temp_dir) / "nested" / "prefs.json")
            self.assertTrue(path.parent.is_dir())


class TestCancellationToken(unittest.TestCase):
    """
    Unit Tests: deadline expiry versus user cancellation.
    """

    def setUp(self):
        logger.info(f"--- Starting Cancellation Test: {self._testMethodName} ---")

    def test_deadline_fires_without_user_flag(self):
        token = CancellationToken(timeout=0.05)
        self.assertTrue(token.wait(2))
        self.assertTrue(token.cancelled)
        self.assertFalse(token.user_cancelled)

    def test_user_cancel_sets_flag_before_firing(self):
        token = CancellationToken(timeout=10)
        observed = []
        token.add_callback(lambda: observed.append(token.user_cancelled))

        self.assertTrue(token.cancel(by_user=True))
        self.assertTrue(token.cancelled)
        self.assertEqual(observed, [True])
        token.close()

    def test_second_cancel_reports_nothing_cancelled(self):
        token = CancellationToken()
        self.assertTrue(token.cancel())
        self.assertFalse(token.cancel(by_user=True))
        self.assertFalse(token.user_cancelled)

    def test_parent_cancel_reaches_children(self):
        parent = CancellationToken()
        child = CancellationToken(timeout=10, parent=parent)

        parent.cancel(by_user=True)

        self.assertTrue(child.cancelled)
        self.assertTrue(child.user_cancelled)
        child.close()

    def test_child_of_fired_parent_starts_cancelled(self):
        parent = CancellationToken()
        parent.cancel()
        child = CancellationToken(parent=parent)
        self.assertTrue(child.cancelled)

    def test_closed_child_is_detached(self):
        parent = CancellationToken()
        child = CancellationToken(parent=parent)
        child.close()
        parent.cancel()
        self.assertFalse(child.cancelled)

    def test_remaining_counts_down(self):
        token = CancellationToken(timeout=30)
        remaining = token.remaining()
        self.assertIsNotNone(remaining)
        self.assertLessEqual(remaining, 30)
        self.assertGreater(remaining, 25)
        self.assertIsNone(CancellationToken().remaining())
        token.close()


class TestRunCancellable(unittest.TestCase):
    """
    Unit Tests: blocking calls raced against a cancellation token.
    """

    def test_returns_result(self):
        token = CancellationToken(timeout=5)
        self.assertEqual(run_cancellable(lambda x: x * 2, token, 21), 42)
        token.close()

    def test_propagates_call_errors(self):
        def _boom():
            raise ValueError("boom")

        with self.assertRaises(ValueError):
            run_cancellable(_boom, CancellationToken())

    def test_timeout_interrupts_blocking_call(self):
        release = threading.Event()
        token = CancellationToken(timeout=0.05)
        start = time.monotonic()

        with self.assertRaises(RequestAbortedError) as context:
            run_cancellable(release.wait, token, 5)

        release.set()
        self.assertFalse(context.exception.user_cancelled)
        self.assertLess(time.monotonic() - start, 2)

    def test_user_cancel_interrupts_blocking_call(self):
        release = threading.Event()
        token = CancellationToken()
        threading.Timer(0.05, lambda: token.cancel(by_user=True)).start()

        with self.assertRaises(RequestAbortedError) as context:
            run_cancellable(release.wait, token, 5)

        release.set()
        self.assertTrue(context.exception.user_cancelled)
        self.assertEqual(str(context.exception), "CANCELLED")

    def test_already_cancelled_token_skips_call(self):
        token = CancellationToken()
        token.cancel(by_user=True)
        calls = []

        with self.assertRaises(RequestAbortedError):
            run_cancellable(lambda: calls.append(1), token)
        self.assertEqual(calls, [])


if __name__ == "__main__":
    unittest.main(verbosity=2)
