import collections
import logging
import os
import sys
import threading
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from dotenv import load_dotenv


class AppConfig:
    VERSION: str = "1.4.0"
    APP_NAME: str = "IrukaDark"

    # Upstream API
    API_BASE_URL: str = "https://generativelanguage.googleapis.com/v1beta"
    API_KEY_HEADER: str = "x-goog-api-key"
    CONNECT_TIMEOUT: float = 10.0

    # Credential slots, highest priority first
    CREDENTIAL_SLOTS: Tuple[str, ...] = (
        "GEMINI_API_KEY",
        "GOOGLE_GENAI_API_KEY",
        "GENAI_API_KEY",
        "GOOGLE_API_KEY",
        "NEXT_PUBLIC_GEMINI_API_KEY",
        "NEXT_PUBLIC_GOOGLE_API_KEY",
    )
    KEYRING_SERVICE_NAME: str = "IrukaDark"

    # Models
    DEFAULT_AI_MODEL: str = "gemini-2.5-flash-lite"
    DEFAULT_WEB_SEARCH_MODEL: str = "gemini-2.5-flash"
    DEFAULT_IMAGE_MODEL: str = "gemini-2.5-flash-image"
    DEFAULT_ASPECT_RATIO: str = "1:1"
    DEFAULT_IMAGE_MIME_TYPE: str = "image/png"

    # Generation parameters
    DEFAULT_GENERATION_CONFIG: Dict[str, float] = {
        "temperature": 0.7,
        "topK": 40,
        "topP": 0.95,
        "maxOutputTokens": 2048,
    }
    SHORTCUT_MAX_TOKENS: int = 2048
    SHORTCUT_MAX_TOP_K: int = 40
    SHORTCUT_MAX_TOP_P: float = 0.95

    # Orchestration
    CREDENTIAL_BATCH_SIZE: int = 2
    TEXT_TIMEOUT: float = 30.0
    IMAGE_INPUT_TIMEOUT: float = 45.0
    WEB_SEARCH_TIMEOUT: float = 60.0
    IMAGE_OUTPUT_TIMEOUT: float = 90.0

    # Caches
    CLIENT_CACHE_TTL: float = 3600.0
    CLIENT_CACHE_MAX_SIZE: int = 10
    RESPONSE_CACHE_TTL: float = 300.0
    RESPONSE_CACHE_MAX_SIZE: int = 100

    ERROR_PREFIX: str = "API error occurred: "

    @classmethod
    def shortcut_max_tokens(cls) -> int:
        """Interactive output-token cap, overridable through SHORTCUT_MAX_TOKENS."""
        raw = os.getenv("SHORTCUT_MAX_TOKENS", "").strip()
        try:
            value = int(raw)
        except ValueError:
            return cls.SHORTCUT_MAX_TOKENS
        return value if value > 0 else cls.SHORTCUT_MAX_TOKENS


def load_environment(extra_dirs: Optional[List[Path]] = None) -> None:
    """
    Loads `.env.local` then `.env` from the working directory and any extra
    directories. Variables already present in the process are kept.
    """
    search_dirs: List[Path] = [Path.cwd()] + list(extra_dirs or [])
    for directory in search_dirs:
        for name in (".env.local", ".env"):
            env_path = directory / name
            if env_path.is_file():
                load_dotenv(env_path, override=False)
                logging.debug(f"Environment loaded from {env_path}")


class BufferingLogHandler(logging.Handler):
    def __init__(self, capacity: int = 1000) -> None:
        super().__init__()
        self.buffer: collections.deque = collections.deque(maxlen=capacity)

    def emit(self, record: logging.LogRecord) -> None:
        self.buffer.append({"level": record.levelname, "message": self.format(record)})


class ColoredFormatter(logging.Formatter):
    RESET_CODE: str = "\033[0m"
    COLOR_MAP: Dict[str, str] = {
        "DEBUG": "\033[92m",
        "INFO": "\033[94m",
        "WARNING": "\033[93m",
        "ERROR": "\033[91m",
        "CRITICAL": "\033[41m",
    }

    def format(self, record: logging.LogRecord) -> str:
        color: str = self.COLOR_MAP.get(record.levelname, self.RESET_CODE)
        return f"{color}{super().format(record)}{self.RESET_CODE}"


class BinaryDataFilter(logging.Filter):
    """Drops records that look like raw bytes or base64 image payloads."""

    MAX_MESSAGE_LENGTH: int = 1000
    BINARY_PATTERNS: Tuple[str, ...] = ("\\x00", "\\xff")

    def filter(self, record: logging.LogRecord) -> bool:
        try:
            message: str = str(record.getMessage())
        except (TypeError, ValueError):
            return True
        if any(pattern in message for pattern in self.BINARY_PATTERNS):
            return False
        return len(message) <= self.MAX_MESSAGE_LENGTH


class DuplicateFilter(logging.Filter):
    def __init__(self, time_window_seconds: int = 3, max_cache_size: int = 50) -> None:
        super().__init__()
        self.time_window: timedelta = timedelta(seconds=time_window_seconds)
        self.log_cache: collections.deque = collections.deque(maxlen=max_cache_size)
        self.lock = threading.Lock()

    def filter(self, record: logging.LogRecord) -> bool:
        with self.lock:
            current_time: datetime = datetime.now()
            message: str = record.getMessage()

            for timestamp, cached_message in self.log_cache:
                if (
                    message == cached_message
                    and (current_time - timestamp) < self.time_window
                ):
                    return False

            self.log_cache.append((current_time, message))
            return True


def setup_logging(level: int = logging.DEBUG) -> BufferingLogHandler:
    """
    Configures the root logger with a coloured console handler and an
    in-memory buffer. Returns the buffer so the caller can expose recent logs.
    """
    console_formatter: ColoredFormatter = ColoredFormatter(
        "%(asctime)s - %(levelname)s - %(message)s"
    )
    buffer_formatter: logging.Formatter = logging.Formatter(
        "%(asctime)s - %(levelname)s - %(message)s"
    )

    console_handler: logging.StreamHandler = logging.StreamHandler(sys.stderr)
    console_handler.setFormatter(console_formatter)
    console_handler.setLevel(level)
    console_handler.addFilter(BinaryDataFilter())
    console_handler.addFilter(DuplicateFilter(time_window_seconds=5))

    buffer_handler = BufferingLogHandler()
    buffer_handler.setFormatter(buffer_formatter)
    buffer_handler.setLevel(logging.DEBUG)
    buffer_handler.addFilter(BinaryDataFilter())
    buffer_handler.addFilter(DuplicateFilter(time_window_seconds=5))

    root_logger: logging.Logger = logging.getLogger()
    if root_logger.hasHandlers():
        root_logger.handlers.clear()

    root_logger.addHandler(console_handler)
    root_logger.addHandler(buffer_handler)
    root_logger.setLevel(logging.DEBUG)

    libraries_to_silence: List[str] = [
        "httpx",
        "httpcore",
        "requests",
        "urllib3",
        "google_genai",
        "google.auth",
        "keyring",
    ]
    for library in libraries_to_silence:
        logging.getLogger(library).setLevel(logging.WARNING)

    logging.info("Logging initialized.")
    return buffer_handler
