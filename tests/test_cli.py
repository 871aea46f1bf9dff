"""
IrukaDark Command Line Test Suite
=================================

Argument parsing and result rendering of the headless entry point.

Usage:
    python tests/test_cli.py
"""

import base64
import io
import os
import sys
import tempfile
import unittest
from contextlib import redirect_stderr, redirect_stdout
from pathlib import Path
from unittest.mock import MagicMock

# --- ENVIRONMENT & PATH CONFIGURATION ----------------------------------------
CURRENT_FILE = os.path.abspath(__file__)
TESTS_DIR = os.path.dirname(CURRENT_FILE)
PROJECT_ROOT = os.path.dirname(TESTS_DIR)
SRC_PATH = os.path.join(PROJECT_ROOT, "src")

if SRC_PATH not in sys.path:
    sys.path.insert(0, SRC_PATH)

# --- APPLICATION MODULE IMPORTS ----------------------------------------------
from irukadark.cli import IrukaDarkApp, build_parser  # noqa: E402


class TestCommandLine(unittest.TestCase):
    def setUp(self):
        # Bypass __init__ so no logging, keyring or files are touched.
        self.app = IrukaDarkApp.__new__(IrukaDarkApp)
        self.app.api = MagicMock()

    def test_text_generation_prints_answer_and_sources(self):
        self.app.api.generate.return_value = {
            "text": "answer",
            "sources": [{"url": "https://a.example", "title": "A"}],
        }
        args = build_parser().parse_args(["question", "-w", "-s"])

        stdout = io.StringIO()
        with redirect_stdout(stdout):
            code = self.app.run_once(args)

        self.assertEqual(code, 0)
        self.assertIn("answer", stdout.getvalue())
        self.assertIn("- A <https://a.example>", stdout.getvalue())
        payload = self.app.api.generate.call_args[0][0]
        self.assertEqual(payload["source"], "shortcut")
        self.assertTrue(payload["useWebSearch"])

    def test_error_string_sets_exit_code(self):
        self.app.api.generate.return_value = "API error occurred: Request timed out"
        args = build_parser().parse_args(["question"])

        stderr = io.StringIO()
        with redirect_stderr(stderr):
            code = self.app.run_once(args)

        self.assertEqual(code, 1)
        self.assertIn("Request timed out", stderr.getvalue())

    def test_image_input_is_sent_as_base64(self):
        self.app.api.generate_with_image.return_value = {"text": "a cat", "sources": []}
        with tempfile.TemporaryDirectory() as temp_dir:
            image_path = Path(temp_dir) / "shot.jpg"
            image_path.write_bytes(b"jpeg")
            args = build_parser().parse_args(["what is this", "-i", str(image_path)])
            with redirect_stdout(io.StringIO()):
                self.app.run_once(args)

        payload = self.app.api.generate_with_image.call_args[0][0]
        self.assertEqual(base64.b64decode(payload["imageBase64"]), b"jpeg")
        self.assertEqual(payload["mimeType"], "image/jpeg")

    def test_generated_image_is_written(self):
        self.app.api.generate_image.return_value = {
            "imageBase64": base64.b64encode(b"png").decode("ascii"),
            "mimeType": "image/png",
        }
        with tempfile.TemporaryDirectory() as temp_dir:
            output = Path(temp_dir) / "out.png"
            args = build_parser().parse_args(
                ["a cat", "--generate-image", "-o", str(output)]
            )
            with redirect_stdout(io.StringIO()):
                code = self.app.run_once(args)
            self.assertEqual(code, 0)
            self.assertEqual(output.read_bytes(), b"png")

    def test_logs_flag_prints_buffered_records(self):
        self.app.api.generate.return_value = {"text": "answer", "sources": []}
        self.app.api.get_logs.return_value = [
            {"level": "WARNING", "message": "API key ...abcd rejected as invalid."}
        ]
        args = build_parser().parse_args(["question", "--logs"])

        stderr = io.StringIO()
        with redirect_stdout(io.StringIO()), redirect_stderr(stderr):
            code = self.app.run_once(args)

        self.assertEqual(code, 0)
        self.assertIn("[WARNING] API key ...abcd rejected as invalid.", stderr.getvalue())

    def test_logs_are_not_printed_by_default(self):
        self.app.api.generate.return_value = {"text": "answer", "sources": []}
        with redirect_stdout(io.StringIO()):
            self.app.run_once(build_parser().parse_args(["question"]))
        self.app.api.get_logs.assert_not_called()


if __name__ == "__main__":
    unittest.main(verbosity=2)
