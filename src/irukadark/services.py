import logging
import re
import threading
import time
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from irukadark.cache import ClientPool, ResponseCache
from irukadark.config import AppConfig
from irukadark.data import CredentialManager, PreferencesManager
from irukadark.errors import (
    AllAttemptsExhaustedError,
    ClientInitError,
    CredentialInvalidError,
    ErrorKind,
    GenerationError,
    InvalidRequestError,
    MissingCredentialError,
    NoValidCredentialError,
    RequestAbortedError,
    RequestTimeoutError,
    SafetyBlockedError,
    TransportError,
    UserCancelledError,
)
from irukadark.models import (
    GenerationConfig,
    GenerationRequest,
    ImageResult,
    ResponseModality,
    TextResult,
    Urgency,
)
from irukadark.transport import RestTransport, SdkOutcome, SdkTransport
from irukadark.utils import (
    CancellationToken,
    bare_model_name,
    chunked,
    mask_secret,
    request_fingerprint,
)

GenerationResult = Union[TextResult, ImageResult]


# --- Failure Diagnostics ---


class FailureClass(Enum):
    TIMEOUT = "timeout"
    RATE_LIMIT = "rate_limit"
    MODEL_NOT_FOUND = "model_not_found"
    PERMISSION = "permission"
    OTHER = "other"


# Tie-break order when two classes are equally frequent.
FAILURE_PRIORITY: Tuple[FailureClass, ...] = (
    FailureClass.RATE_LIMIT,
    FailureClass.MODEL_NOT_FOUND,
    FailureClass.PERMISSION,
    FailureClass.TIMEOUT,
    FailureClass.OTHER,
)

REMEDIATION_HINTS: Dict[FailureClass, str] = {
    FailureClass.TIMEOUT: (
        "The API did not answer in time. Check your network connection, "
        "or turn off web search for faster replies."
    ),
    FailureClass.RATE_LIMIT: (
        "Rate limit or quota exceeded. Wait a moment and try again, "
        "or add another API key."
    ),
    FailureClass.MODEL_NOT_FOUND: (
        "The model was not found. Check the model name in the settings "
        "(e.g., gemini-2.5-flash-lite)."
    ),
    FailureClass.PERMISSION: (
        "Permission denied. Make sure the API key is allowed to use this model."
    ),
    FailureClass.OTHER: "Check your network connection and API key, then try again.",
}

_RATE_LIMIT_PATTERN = re.compile(r"rate.?limit|quota|resource_exhausted|too many requests", re.I)
_NOT_FOUND_PATTERN = re.compile(r"not[ _]found|is not supported|unknown model", re.I)
_PERMISSION_PATTERN = re.compile(r"permission|forbidden|not allowed", re.I)
_TIMEOUT_PATTERN = re.compile(r"timed out|timeout|deadline", re.I)


def classify_failure(error: Exception) -> FailureClass:
    """Buckets a transport failure for the user-facing diagnostic."""
    if getattr(error, "kind", None) is ErrorKind.TIMEOUT:
        return FailureClass.TIMEOUT

    status = getattr(error, "status", None)
    text = str(error)
    if status == 429 or _RATE_LIMIT_PATTERN.search(text):
        return FailureClass.RATE_LIMIT
    if status == 404 or _NOT_FOUND_PATTERN.search(text):
        return FailureClass.MODEL_NOT_FOUND
    if status == 403 or _PERMISSION_PATTERN.search(text):
        return FailureClass.PERMISSION
    if status in (408, 504) or _TIMEOUT_PATTERN.search(text):
        return FailureClass.TIMEOUT
    return FailureClass.OTHER


def build_diagnostic(
    models: Sequence[str], failures: Sequence[Tuple[str, Exception]]
) -> str:
    """
    Produces one message naming the models tried and a hint for the most
    frequent failure class.
    """
    counts = Counter(classify_failure(error) for _, error in failures)
    dominant = (
        max(FAILURE_PRIORITY, key=lambda failure_class: counts[failure_class])
        if counts
        else FailureClass.OTHER
    )
    message = (
        f"All model attempts failed (models tried: {', '.join(models)}). "
        f"{REMEDIATION_HINTS[dominant]}"
    )
    if failures:
        last_detail = str(failures[-1][1]).strip().splitlines()[0][:200]
        message += f" Last error: {last_detail}"
    return message


# --- Interactive Request Tracking ---


class InteractiveRequestRegistry:
    """
    Tracks the request a user-facing "cancel" action applies to.

    The most recent interactive (shortcut) request is kept in its own slot;
    starting another one replaces the bookkeeping without aborting the
    previous request. The most recent request of any kind is tracked too,
    for unconditional cancels.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._interactive: Optional[CancellationToken] = None
        self._latest: Optional[CancellationToken] = None

    def register(self, token: CancellationToken, urgency: Urgency) -> None:
        with self._lock:
            self._latest = token
            if urgency is Urgency.INTERACTIVE:
                self._interactive = token

    def release(self, token: CancellationToken) -> None:
        """Clears the slots still pointing at `token`."""
        with self._lock:
            if self._interactive is token:
                self._interactive = None
            if self._latest is token:
                self._latest = None

    @property
    def has_interactive(self) -> bool:
        with self._lock:
            return self._interactive is not None

    def cancel(self, from_shortcut: bool = False) -> bool:
        """
        Cancels the tracked interactive request (`from_shortcut`) or the most
        recent request of any kind. Returns True if something was cancelled.
        """
        with self._lock:
            token = self._interactive if from_shortcut else self._latest
        if token is None:
            return False
        cancelled = token.cancel(by_user=True)
        if cancelled:
            logging.info("AI request cancelled by user.")
        return cancelled


# --- Orchestration ---


class GenerationOrchestrator:
    """
    Turns a `GenerationRequest` into a best-effort generation.

    Credentials are tried in batches (attempts within a batch run on a
    thread pool, batches run one after another). Each attempt walks the
    model chain in order and, per model, tries the SDK client first and the
    REST endpoint second. An invalid credential only ends its own attempt;
    a timeout or user cancel ends the whole request.
    """

    def __init__(
        self,
        credential_manager: CredentialManager,
        preferences: PreferencesManager,
        client_pool: Optional[ClientPool] = None,
        response_cache: Optional[ResponseCache] = None,
        sdk_transport: Optional[SdkTransport] = None,
        rest_transport: Optional[RestTransport] = None,
        registry: Optional[InteractiveRequestRegistry] = None,
        batch_size: int = AppConfig.CREDENTIAL_BATCH_SIZE,
        text_timeout: float = AppConfig.TEXT_TIMEOUT,
        image_input_timeout: float = AppConfig.IMAGE_INPUT_TIMEOUT,
        web_search_timeout: float = AppConfig.WEB_SEARCH_TIMEOUT,
        image_output_timeout: float = AppConfig.IMAGE_OUTPUT_TIMEOUT,
    ) -> None:
        self.credential_manager = credential_manager
        self.preferences = preferences
        self.client_pool = client_pool or ClientPool()
        self.response_cache = response_cache or ResponseCache()
        self.sdk_transport = sdk_transport or SdkTransport()
        self.rest_transport = rest_transport or RestTransport()
        self.registry = registry or InteractiveRequestRegistry()
        self.batch_size = max(1, batch_size)
        self.text_timeout = text_timeout
        self.image_input_timeout = image_input_timeout
        self.web_search_timeout = web_search_timeout
        self.image_output_timeout = image_output_timeout

    # --- Request Planning ---

    def build_model_chain(self, request: GenerationRequest) -> List[str]:
        """
        Requested model first, then the search-capable model unless both are
        the same model. Image output only uses the requested model.
        """
        requested = request.requested_model
        if request.response_modality is ResponseModality.IMAGE:
            return [requested]
        search_preferred = self.preferences.get_web_search_model()
        if bare_model_name(requested) == bare_model_name(search_preferred):
            return [requested]
        return [requested, search_preferred]

    def timeout_for(self, request: GenerationRequest) -> float:
        if request.response_modality is ResponseModality.IMAGE:
            return self.image_output_timeout
        if request.use_web_search:
            return self.web_search_timeout
        if request.image is not None:
            return self.image_input_timeout
        return self.text_timeout

    @staticmethod
    def _is_cacheable(request: GenerationRequest) -> bool:
        return (
            not request.is_interactive
            and request.response_modality is ResponseModality.TEXT
        )

    # --- Entry Point ---

    def generate(self, request: GenerationRequest) -> GenerationResult:
        """
        Runs the request to completion.

        Raises:
            InvalidRequestError: Empty prompt; nothing was sent.
            MissingCredentialError: No credential is configured.
            NoValidCredentialError: Every credential was rejected.
            RequestTimeoutError / UserCancelledError: The request was aborted.
            SafetyBlockedError: The model declined to answer.
            AllAttemptsExhaustedError: Every model failed for a credential.
        """
        if not request.prompt or not request.prompt.strip():
            raise InvalidRequestError("Prompt is empty.")

        start_time = time.time()
        cache_key: Optional[str] = None
        if self._is_cacheable(request):
            cache_key = request_fingerprint(
                request.prompt,
                request.requested_model,
                request.use_web_search,
                request.image.data if request.image else None,
            )
            cached = self.response_cache.get(cache_key)
            if cached is not None:
                logging.info("Response cache hit.")
                return cached

        chain = self.build_model_chain(request)
        credentials = self.credential_manager.resolve()
        if not credentials:
            raise MissingCredentialError()

        logging.info(
            f"Generation started: models={chain} urgency={request.urgency.value} "
            f"web_search={request.use_web_search} keys={len(credentials)}"
        )

        request_token = CancellationToken()
        self.registry.register(request_token, request.urgency)
        try:
            for batch in chunked(credentials, self.batch_size):
                result = self._run_batch(batch, request, chain, request_token)
                if result is not None:
                    if cache_key is not None:
                        self.response_cache.set(cache_key, result)
                    logging.info(
                        f"Generation finished ({time.time() - start_time:.3f}s)."
                    )
                    return result
                logging.warning("All keys in batch were rejected as invalid.")
            raise NoValidCredentialError()
        except BaseException:
            # Interrupts included: attempts still in flight must not outlive the call.
            request_token.cancel(by_user=True)
            raise
        finally:
            self.registry.release(request_token)
            request_token.close()

    def cancel(self, from_shortcut: bool = False) -> bool:
        return self.registry.cancel(from_shortcut=from_shortcut)

    # --- Batches & Attempts ---

    def _run_batch(
        self,
        batch: List[str],
        request: GenerationRequest,
        chain: List[str],
        request_token: CancellationToken,
    ) -> Optional[GenerationResult]:
        """
        Runs one attempt per credential concurrently. Returns the first
        success, None when every attempt hit an invalid credential, and
        raises the first other failure (in credential order) otherwise.
        """
        executor = ThreadPoolExecutor(
            max_workers=len(batch), thread_name_prefix="irukadark-attempt"
        )
        futures = {
            executor.submit(
                self._attempt_with_credential, credential, request, chain, request_token
            ): index
            for index, credential in enumerate(batch)
        }
        failures: Dict[int, GenerationError] = {}
        try:
            for future in as_completed(futures):
                index = futures[future]
                try:
                    return future.result()
                except CredentialInvalidError:
                    logging.warning(
                        f"API key {mask_secret(batch[index])} rejected as invalid."
                    )
                except (RequestTimeoutError, UserCancelledError):
                    raise
                except GenerationError as error:
                    failures[index] = error
        finally:
            # Siblings still running finish on their own deadline.
            executor.shutdown(wait=False)

        if failures:
            raise failures[min(failures)]
        return None

    def _attempt_with_credential(
        self,
        credential: str,
        request: GenerationRequest,
        chain: List[str],
        request_token: CancellationToken,
    ) -> GenerationResult:
        client: Any = None
        try:
            client = self.client_pool.get_or_create(credential)
        except ClientInitError as error:
            logging.debug(f"SDK path unavailable for {mask_secret(credential)}: {error}")

        config = request.effective_config()
        token = CancellationToken(timeout=self.timeout_for(request), parent=request_token)
        failures: List[Tuple[str, TransportError]] = []
        try:
            for model in chain:
                if client is not None:
                    outcome = self._sdk_attempt(client, model, request, config, token)
                    if outcome.ok:
                        logging.info(f"SDK success: model={model}")
                        return outcome.value
                    if outcome.error is not None:
                        logging.debug(f"SDK attempt failed for {model}: {outcome.error}")
                if token.cancelled:
                    raise self._abort_error(token)

                try:
                    result = self._rest_attempt(credential, model, request, config, token)
                except (CredentialInvalidError, SafetyBlockedError):
                    raise
                except RequestAbortedError as error:
                    raise self._abort_error(token, error) from error
                except TransportError as error:
                    logging.warning(f"REST attempt failed for {model}: {error}")
                    failures.append((model, error))
                    continue
                logging.info(f"REST success: model={model}")
                return result

            raise AllAttemptsExhaustedError(build_diagnostic(chain, failures), failures)
        finally:
            token.close()

    @staticmethod
    def _abort_error(
        token: CancellationToken, error: Optional[RequestAbortedError] = None
    ) -> GenerationError:
        user_cancelled = token.user_cancelled or bool(error and error.user_cancelled)
        return UserCancelledError() if user_cancelled else RequestTimeoutError()

    def _sdk_attempt(
        self,
        client: Any,
        model: str,
        request: GenerationRequest,
        config: GenerationConfig,
        token: CancellationToken,
    ) -> SdkOutcome:
        if request.response_modality is ResponseModality.IMAGE:
            return self.sdk_transport.generate_image(
                client,
                model,
                request.prompt,
                config,
                aspect_ratio=request.aspect_ratio,
                reference_images=request.reference_images,
                token=token,
            )
        if request.image is not None:
            return self.sdk_transport.generate_with_image(
                client,
                model,
                request.prompt,
                request.image,
                config,
                use_web_search=request.use_web_search,
                token=token,
            )
        return self.sdk_transport.generate_text(
            client,
            model,
            request.prompt,
            config,
            use_web_search=request.use_web_search,
            token=token,
        )

    def _rest_attempt(
        self,
        credential: str,
        model: str,
        request: GenerationRequest,
        config: GenerationConfig,
        token: CancellationToken,
    ) -> GenerationResult:
        if request.response_modality is ResponseModality.IMAGE:
            return self.rest_transport.generate_image(
                credential,
                model,
                request.prompt,
                config,
                aspect_ratio=request.aspect_ratio,
                reference_images=request.reference_images,
                token=token,
            )
        if request.image is not None:
            return self.rest_transport.generate_with_image(
                credential,
                model,
                request.prompt,
                request.image,
                config,
                use_web_search=request.use_web_search,
                token=token,
            )
        return self.rest_transport.generate_text(
            credential,
            model,
            request.prompt,
            config,
            use_web_search=request.use_web_search,
            token=token,
        )
