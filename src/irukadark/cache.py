"""
Process-wide caches: SDK clients per credential and recent generation results.

Both caches expire lazily. Every public call first sweeps expired entries and
enforces capacity under the cache lock, then performs its lookup or insert.
"""

import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

from irukadark.config import AppConfig
from irukadark.errors import ClientInitError
from irukadark.utils import mask_secret

V = TypeVar("V")


def _default_client_factory() -> Callable[..., Any]:
    """Returns the google-genai client class, imported on first use."""
    try:
        from google import genai
    except ImportError as error:
        raise ClientInitError(f"google-genai SDK is unavailable: {error}") from error
    return genai.Client


@dataclass
class ClientCacheEntry:
    client: Any
    created_at: float
    expires_at: float


class ClientPool:
    """
    Keeps one SDK client per credential, refreshed after its TTL and bounded
    in size (oldest-created evicted first). Callers borrow the client for an
    attempt and never mutate it.
    """

    def __init__(
        self,
        client_factory: Optional[Callable[..., Any]] = None,
        ttl: float = AppConfig.CLIENT_CACHE_TTL,
        max_size: int = AppConfig.CLIENT_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._client_factory = client_factory
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: Dict[str, ClientCacheEntry] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _cleanup(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]

        overflow = len(self._entries) - self.max_size
        if overflow > 0:
            oldest = sorted(self._entries.items(), key=lambda item: item[1].created_at)
            for key, _ in oldest[:overflow]:
                del self._entries[key]

    def _construct(self, credential: str) -> Any:
        factory = self._client_factory or _default_client_factory()
        # The SDK has accepted both keyword and positional keys across releases.
        constructors: List[Callable[[], Any]] = [
            lambda: factory(api_key=credential),
            lambda: factory(credential),
        ]
        first_error: Optional[Exception] = None
        for construct in constructors:
            try:
                client = construct()
            except Exception as error:
                first_error = first_error or error
                continue
            if client is not None:
                return client
        reason = str(first_error) if first_error else "Unknown error"
        raise ClientInitError(f"Failed to create GenAI client instance. {reason}")

    def get_or_create(self, credential: str) -> Any:
        """
        Returns the live client for `credential`, building one if needed.

        Raises:
            ClientInitError: The credential is empty or the SDK client could
                not be constructed. Nothing is cached in that case.
        """
        if not credential:
            raise ClientInitError("GEMINI_API_KEY is not set.")

        with self._lock:
            now = self._clock()
            self._cleanup(now)
            entry = self._entries.get(credential)
            if entry is not None and now <= entry.expires_at:
                return entry.client

        client = self._construct(credential)

        with self._lock:
            now = self._clock()
            self._entries[credential] = ClientCacheEntry(
                client=client, created_at=now, expires_at=now + self.ttl
            )
        logging.debug(f"GenAI client created for key {mask_secret(credential)}.")
        return client

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()


@dataclass
class ResponseCacheEntry(Generic[V]):
    value: V
    expires_at: float


class ResponseCache(Generic[V]):
    """
    TTL + capacity bounded cache of successful background generations,
    keyed by request fingerprint. Reads refresh recency.
    """

    def __init__(
        self,
        ttl: float = AppConfig.RESPONSE_CACHE_TTL,
        max_size: int = AppConfig.RESPONSE_CACHE_MAX_SIZE,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.ttl = ttl
        self.max_size = max_size
        self._clock = clock
        self._entries: "OrderedDict[str, ResponseCacheEntry[V]]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __contains__(self, key: str) -> bool:
        with self._lock:
            self._sweep(self._clock())
            return key in self._entries

    def _sweep(self, now: float) -> None:
        expired = [key for key, entry in self._entries.items() if now > entry.expires_at]
        for key in expired:
            del self._entries[key]

    def get(self, key: str) -> Optional[V]:
        with self._lock:
            self._sweep(self._clock())
            entry = self._entries.get(key)
            if entry is None:
                return None
            self._entries.move_to_end(key)
            return entry.value

    def set(self, key: str, value: V) -> None:
        with self._lock:
            now = self._clock()
            self._sweep(now)
            if key in self._entries:
                del self._entries[key]
            while self._entries and len(self._entries) >= self.max_size:
                self._entries.popitem(last=False)
            self._entries[key] = ResponseCacheEntry(value=value, expires_at=now + self.ttl)

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
