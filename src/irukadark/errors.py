"""
Error taxonomy of the generation engine.

Every failure carries an `ErrorKind` assigned where it is detected (HTTP
status/body inspection, SDK client construction, deadline expiry), so the
orchestrator branches on kinds instead of re-reading error messages.
"""

from enum import Enum
from typing import List, Optional, Tuple


class ErrorKind(Enum):
    CLIENT_INIT = "client_init"
    CREDENTIAL_INVALID = "credential_invalid"
    HTTP = "http"
    EMPTY_RESPONSE = "empty_response"
    TIMEOUT = "timeout"
    USER_CANCELLED = "user_cancelled"
    SAFETY_BLOCKED = "safety_blocked"
    ALL_ATTEMPTS_EXHAUSTED = "all_attempts_exhausted"
    MISSING_CREDENTIAL = "missing_credential"
    INVALID_REQUEST = "invalid_request"


class GenerationError(Exception):
    kind: ErrorKind = ErrorKind.HTTP


class InvalidRequestError(GenerationError):
    kind = ErrorKind.INVALID_REQUEST


class ClientInitError(GenerationError):
    """The SDK client could not be built; the REST transport still applies."""

    kind = ErrorKind.CLIENT_INIT


class TransportError(GenerationError):
    """A single transport attempt against one model failed."""


class HttpStatusError(TransportError):
    kind = ErrorKind.HTTP

    def __init__(self, status: int, body: str) -> None:
        super().__init__(f"API Error: {status} - {body}")
        self.status = status
        self.body = body


class CredentialInvalidError(HttpStatusError):
    kind = ErrorKind.CREDENTIAL_INVALID


class EmptyResponseError(TransportError):
    kind = ErrorKind.EMPTY_RESPONSE

    def __init__(self, message: str = "Unexpected response from API.") -> None:
        super().__init__(message)


class RequestAbortedError(TransportError):
    """Raised by a transport when its cancellation token fired mid-call."""

    def __init__(self, user_cancelled: bool) -> None:
        super().__init__("CANCELLED" if user_cancelled else "Request timed out")
        self.user_cancelled = user_cancelled
        self.kind = ErrorKind.USER_CANCELLED if user_cancelled else ErrorKind.TIMEOUT


class SafetyBlockedError(GenerationError):
    kind = ErrorKind.SAFETY_BLOCKED

    def __init__(
        self, message: str = "The API blocked the response for safety reasons."
    ) -> None:
        super().__init__(message)


class RequestTimeoutError(GenerationError):
    kind = ErrorKind.TIMEOUT

    def __init__(self) -> None:
        super().__init__("Request timed out")


class UserCancelledError(GenerationError):
    kind = ErrorKind.USER_CANCELLED

    def __init__(self) -> None:
        super().__init__("CANCELLED")


class AllAttemptsExhaustedError(GenerationError):
    kind = ErrorKind.ALL_ATTEMPTS_EXHAUSTED

    def __init__(
        self,
        message: str,
        failures: Optional[List[Tuple[str, TransportError]]] = None,
    ) -> None:
        super().__init__(message)
        self.failures = failures or []


class MissingCredentialError(GenerationError):
    kind = ErrorKind.MISSING_CREDENTIAL

    def __init__(self) -> None:
        super().__init__(
            "API key is not set. Please set GEMINI_API_KEY in .env.local file."
        )


class NoValidCredentialError(GenerationError):
    kind = ErrorKind.CREDENTIAL_INVALID

    def __init__(self) -> None:
        super().__init__(
            "No valid Gemini API key found. Please set a valid key "
            "(e.g., GEMINI_API_KEY) in .env.local."
        )
