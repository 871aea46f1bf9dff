import hashlib
import json
import logging
import os
import threading
import time
from concurrent.futures import Future
from pathlib import Path
from typing import Any, Callable, Iterator, List, Optional, Sequence, TypeVar

from irukadark.errors import RequestAbortedError

T = TypeVar("T")

MODEL_PREFIX: str = "models/"


# --- Path Management ---


class PathManager:
    """
    Resolves the per-user storage directory across platforms.
    """

    @staticmethod
    def get_user_data_dir() -> Path:
        """
        Returns the base directory used for settings and local data.
        Honors IRUKADARK_DATA_DIR, then LOCALAPPDATA (Windows), then
        XDG_CONFIG_HOME, and finally a dot-folder in the home directory.
        """
        override = os.getenv("IRUKADARK_DATA_DIR")
        if override:
            return Path(override)

        local_app_data = os.getenv("LOCALAPPDATA")
        if local_app_data:
            return Path(local_app_data) / "IrukaDark"

        xdg_config = os.getenv("XDG_CONFIG_HOME")
        if xdg_config:
            return Path(xdg_config) / "irukadark"

        return Path.home() / ".irukadark"

    @staticmethod
    def get_user_data_path(relative_path: str) -> Path:
        """
        Returns an absolute path inside the user storage directory and
        makes sure its parent folder exists.

        Args:
            relative_path (str): The relative path to the file.

        Returns:
            Path: The full absolute path.
        """
        full_path: Path = PathManager.get_user_data_dir() / relative_path
        full_path.parent.mkdir(parents=True, exist_ok=True)
        return full_path


# --- Text & Identifier Helpers ---


def mask_secret(secret: str) -> str:
    """Returns a log-safe representation of an API key."""
    if not secret:
        return "<empty>"
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:4]}...{secret[-4:]}"


def bare_model_name(model: str) -> str:
    raw = str(model or "").strip()
    if raw.startswith(MODEL_PREFIX):
        return raw[len(MODEL_PREFIX):]
    return raw


def model_candidates(model: str) -> List[str]:
    """
    Returns the bare and the `models/`-prefixed forms of a model identifier,
    bare first. Two identifiers are the same model iff their bare forms match.
    """
    bare = bare_model_name(model)
    return [bare, f"{MODEL_PREFIX}{bare}"]


def chunked(items: Sequence[T], size: int) -> Iterator[List[T]]:
    for start in range(0, len(items), size):
        yield list(items[start : start + size])


def content_hash(data: bytes) -> str:
    return hashlib.sha256(data).hexdigest()


def request_fingerprint(
    prompt: str, model: str, use_web_search: bool, image: Optional[bytes] = None
) -> str:
    """Cache key for a generation request."""
    image_key = content_hash(image) if image else "no-image"
    payload = json.dumps(
        [prompt, bare_model_name(model), bool(use_web_search), image_key],
        ensure_ascii=False,
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


# --- Cancellation ---


class CancellationToken:
    """
    Cooperative cancellation handle with an optional deadline.

    A deadline expiry and a user cancel fire the same event; `user_cancelled`
    is set before the event so observers can tell the two apart. Cancelling
    a parent token cancels every live child with the same flag.
    """

    def __init__(
        self,
        timeout: Optional[float] = None,
        parent: Optional["CancellationToken"] = None,
    ) -> None:
        self._event = threading.Event()
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []
        self._children: List["CancellationToken"] = []
        self._parent = parent
        self._timer: Optional[threading.Timer] = None
        self._deadline: Optional[float] = None
        self.user_cancelled: bool = False

        if timeout is not None:
            self._deadline = time.monotonic() + timeout
            self._timer = threading.Timer(timeout, self.cancel)
            self._timer.daemon = True
            self._timer.start()

        if parent is not None:
            parent._adopt(self)

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def remaining(self) -> Optional[float]:
        """Seconds left before the deadline, or None without a deadline."""
        if self._deadline is None:
            return None
        return max(self._deadline - time.monotonic(), 0.0)

    def wait(self, timeout: Optional[float] = None) -> bool:
        return self._event.wait(timeout)

    def cancel(self, by_user: bool = False) -> bool:
        """Fires the token. Returns False if it had already fired."""
        with self._lock:
            if self._event.is_set():
                return False
            if by_user:
                self.user_cancelled = True
            self._event.set()
            callbacks = list(self._callbacks)
            children = list(self._children)

        if self._timer is not None:
            self._timer.cancel()
        for child in children:
            child.cancel(by_user=by_user)
        for callback in callbacks:
            try:
                callback()
            except Exception as error:
                logging.debug(f"Cancellation callback failed: {error}")
        return True

    def add_callback(self, callback: Callable[[], None]) -> Callable[[], None]:
        """
        Runs `callback` when the token fires (immediately if it already has).
        Returns a function that unregisters the callback.
        """
        with self._lock:
            fired = self._event.is_set()
            if not fired:
                self._callbacks.append(callback)
        if fired:
            callback()

        def _remove() -> None:
            with self._lock:
                if callback in self._callbacks:
                    self._callbacks.remove(callback)

        return _remove

    def close(self) -> None:
        """Stops the deadline timer and detaches from the parent."""
        if self._timer is not None:
            self._timer.cancel()
        if self._parent is not None:
            self._parent._release(self)

    def _adopt(self, child: "CancellationToken") -> None:
        with self._lock:
            fired = self._event.is_set()
            if not fired:
                self._children.append(child)
        if fired:
            child.cancel(by_user=self.user_cancelled)

    def _release(self, child: "CancellationToken") -> None:
        with self._lock:
            if child in self._children:
                self._children.remove(child)


def run_cancellable(
    func: Callable[..., T], token: CancellationToken, *args: Any, **kwargs: Any
) -> T:
    """
    Runs a blocking call on a daemon thread and waits for either its result
    or the token. A call abandoned on cancellation keeps running until its
    own I/O timeout; its result is discarded.
    """
    if token.cancelled:
        raise RequestAbortedError(user_cancelled=token.user_cancelled)

    future: "Future[T]" = Future()
    finished = threading.Event()

    def _worker() -> None:
        future.set_running_or_notify_cancel()
        try:
            result = func(*args, **kwargs)
        except BaseException as error:
            future.set_exception(error)
        else:
            future.set_result(result)
        finally:
            finished.set()

    remove_callback = token.add_callback(finished.set)
    threading.Thread(target=_worker, daemon=True, name="irukadark-call").start()
    try:
        finished.wait()
    finally:
        remove_callback()

    if future.done():
        return future.result()
    raise RequestAbortedError(user_cancelled=token.user_cancelled)
