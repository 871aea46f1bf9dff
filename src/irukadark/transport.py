"""
Transport adapters. Each call is one generation attempt for one model with
one credential.

`SdkTransport` drives a pooled google-genai client and reports through
`SdkOutcome` without raising. `RestTransport` posts JSON with `requests` and
raises typed errors; it is the authoritative last resort.
"""

import base64
import logging
import re
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Generic, List, Optional, TypeVar

import requests

from irukadark.config import AppConfig
from irukadark.errors import (
    CredentialInvalidError,
    EmptyResponseError,
    HttpStatusError,
    RequestAbortedError,
    SafetyBlockedError,
    TransportError,
)
from irukadark.extraction import (
    extract_image_from_result,
    extract_sources_from_result,
    extract_text_and_finish_reason,
    normalize_result,
)
from irukadark.models import GenerationConfig, ImageInput, ImageResult, TextResult
from irukadark.utils import CancellationToken, bare_model_name, model_candidates, run_cancellable

R = TypeVar("R")

INVALID_CREDENTIAL_PATTERN = re.compile(r"API_KEY_INVALID|API key not valid", re.IGNORECASE)
DEFAULT_READ_TIMEOUT: float = 120.0


@dataclass(frozen=True)
class SdkOutcome(Generic[R]):
    """
    Result of an SDK attempt. `value` is set on success; `error` holds the
    failure when the SDK raised. Both empty means the response carried
    nothing usable.
    """

    value: Optional[R] = None
    error: Optional[Exception] = None

    @property
    def ok(self) -> bool:
        return self.value is not None


def _image_part_sdk(image: ImageInput) -> Dict[str, Any]:
    return {"inline_data": {"data": image.data, "mime_type": image.mime_type}}


def _image_part_rest(image: ImageInput) -> Dict[str, Any]:
    return {
        "inlineData": {
            "data": base64.b64encode(image.data).decode("ascii"),
            "mimeType": image.mime_type,
        }
    }


class SdkTransport:
    """Generation through a google-genai `Client`."""

    def generate_text(
        self,
        client: Any,
        model: str,
        prompt: str,
        config: GenerationConfig,
        use_web_search: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> SdkOutcome[TextResult]:
        parts = [{"text": prompt}]
        return self._call(
            client, model, parts, self._config(config, use_web_search), token, self._to_text
        )

    def generate_with_image(
        self,
        client: Any,
        model: str,
        prompt: str,
        image: ImageInput,
        config: GenerationConfig,
        use_web_search: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> SdkOutcome[TextResult]:
        parts = [{"text": prompt}, _image_part_sdk(image)]
        return self._call(
            client, model, parts, self._config(config, use_web_search), token, self._to_text
        )

    def generate_image(
        self,
        client: Any,
        model: str,
        prompt: str,
        config: GenerationConfig,
        aspect_ratio: str = AppConfig.DEFAULT_ASPECT_RATIO,
        reference_images: Optional[List[ImageInput]] = None,
        token: Optional[CancellationToken] = None,
    ) -> SdkOutcome[ImageResult]:
        parts = [{"text": prompt}]
        parts.extend(_image_part_sdk(image) for image in reference_images or [])
        sdk_config = self._config(config, use_web_search=False)
        sdk_config["response_modalities"] = ["IMAGE"]
        if aspect_ratio:
            sdk_config["image_config"] = {"aspect_ratio": aspect_ratio}
        return self._call(client, model, parts, sdk_config, token, self._to_image)

    @staticmethod
    def _config(config: GenerationConfig, use_web_search: bool) -> Dict[str, Any]:
        sdk_config = config.to_sdk()
        if use_web_search:
            sdk_config["tools"] = [{"google_search": {}}]
        return sdk_config

    @staticmethod
    def _to_text(response: Any) -> Optional[TextResult]:
        text, _ = extract_text_and_finish_reason(response)
        if not text:
            return None
        return TextResult(text=text, sources=extract_sources_from_result(response))

    @staticmethod
    def _to_image(response: Any) -> Optional[ImageResult]:
        image = extract_image_from_result(response)
        if image is None:
            return None
        return ImageResult(image_bytes=image[0], mime_type=image[1])

    def _call(
        self,
        client: Any,
        model: str,
        parts: List[Dict[str, Any]],
        sdk_config: Dict[str, Any],
        token: Optional[CancellationToken],
        convert: Callable[[Any], Optional[R]],
    ) -> SdkOutcome[R]:
        models_api = getattr(client, "models", None)
        generate_content = getattr(models_api, "generate_content", None)
        if not callable(generate_content):
            return SdkOutcome()

        contents = [{"role": "user", "parts": parts}]
        last_error: Optional[Exception] = None
        for candidate in model_candidates(model):
            start_time = time.time()
            try:
                if token is not None:
                    response = run_cancellable(
                        generate_content,
                        token,
                        model=candidate,
                        contents=contents,
                        config=sdk_config,
                    )
                else:
                    response = generate_content(
                        model=candidate, contents=contents, config=sdk_config
                    )
            except RequestAbortedError as error:
                return SdkOutcome(error=error)
            except Exception as error:
                logging.debug(f"SDK call failed for {candidate}: {error}")
                last_error = error
                continue

            value = convert(response)
            logging.debug(
                f"SDK call {candidate} finished ({time.time() - start_time:.3f}s), "
                f"usable={value is not None}."
            )
            if value is not None:
                return SdkOutcome(value=value)
        return SdkOutcome(error=last_error)


class RestTransport:
    """Generation through the public REST endpoint, one POST per call."""

    def __init__(
        self,
        base_url: str = AppConfig.API_BASE_URL,
        session_factory: Callable[[], requests.Session] = requests.Session,
        connect_timeout: float = AppConfig.CONNECT_TIMEOUT,
    ) -> None:
        self.base_url = base_url.rstrip("/")
        self._session_factory = session_factory
        self.connect_timeout = connect_timeout

    def endpoint(self, model: str) -> str:
        return f"{self.base_url}/models/{bare_model_name(model)}:generateContent"

    def generate_text(
        self,
        credential: str,
        model: str,
        prompt: str,
        config: GenerationConfig,
        use_web_search: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> TextResult:
        body = self._body([{"text": prompt}], config.to_rest(), use_web_search)
        return self._to_text(self._post(credential, model, body, token))

    def generate_with_image(
        self,
        credential: str,
        model: str,
        prompt: str,
        image: ImageInput,
        config: GenerationConfig,
        use_web_search: bool = False,
        token: Optional[CancellationToken] = None,
    ) -> TextResult:
        parts = [{"text": prompt}, _image_part_rest(image)]
        body = self._body(parts, config.to_rest(), use_web_search)
        return self._to_text(self._post(credential, model, body, token))

    def generate_image(
        self,
        credential: str,
        model: str,
        prompt: str,
        config: GenerationConfig,
        aspect_ratio: str = AppConfig.DEFAULT_ASPECT_RATIO,
        reference_images: Optional[List[ImageInput]] = None,
        token: Optional[CancellationToken] = None,
    ) -> ImageResult:
        parts = [{"text": prompt}]
        parts.extend(_image_part_rest(image) for image in reference_images or [])
        generation_config = config.to_rest()
        generation_config["responseModalities"] = ["IMAGE"]
        if aspect_ratio:
            generation_config["imageConfig"] = {"aspectRatio": aspect_ratio}
        data = self._post(credential, model, self._body(parts, generation_config, False), token)

        image = extract_image_from_result(data)
        if image is not None:
            return ImageResult(image_bytes=image[0], mime_type=image[1])

        candidates = normalize_result(data).get("candidates") or []
        if not candidates:
            raise EmptyResponseError("No candidates in API response.")
        _, finish_reason = extract_text_and_finish_reason(data)
        if "SAFETY" in finish_reason.upper():
            raise SafetyBlockedError(
                "The API blocked the image generation for safety reasons."
            )
        raise EmptyResponseError("No image data found in API response.")

    @staticmethod
    def _body(
        parts: List[Dict[str, Any]],
        generation_config: Dict[str, Any],
        use_web_search: bool,
    ) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "contents": [{"parts": parts}],
            "generationConfig": generation_config,
        }
        if use_web_search:
            body["tools"] = [{"googleSearch": {}}]
        return body

    @staticmethod
    def _to_text(data: Dict[str, Any]) -> TextResult:
        text, finish_reason = extract_text_and_finish_reason(data)
        if not text:
            if "SAFETY" in finish_reason.upper():
                raise SafetyBlockedError()
            raise EmptyResponseError()
        return TextResult(text=text, sources=extract_sources_from_result(data))

    def _post(
        self,
        credential: str,
        model: str,
        body: Dict[str, Any],
        token: Optional[CancellationToken],
    ) -> Dict[str, Any]:
        url = self.endpoint(model)
        # The key travels in a header only, never in the query string.
        headers = {
            "Content-Type": "application/json",
            AppConfig.API_KEY_HEADER: str(credential or "").strip(),
        }
        remaining = token.remaining() if token is not None else None
        timeout = (self.connect_timeout, remaining or DEFAULT_READ_TIMEOUT)

        def _send() -> requests.Response:
            with self._session_factory() as session:
                return session.post(url, headers=headers, json=body, timeout=timeout)

        start_time = time.time()
        try:
            if token is not None:
                response = run_cancellable(_send, token)
            else:
                response = _send()
        except requests.Timeout as error:
            # Only a fired token aborts the request; a socket timeout before the
            # deadline is a per-model failure.
            if token is not None and token.cancelled:
                raise RequestAbortedError(user_cancelled=token.user_cancelled) from error
            raise TransportError(f"Request timed out: {error}") from error
        except requests.RequestException as error:
            raise TransportError(f"Network error: {error}") from error

        logging.debug(
            f"REST {bare_model_name(model)} -> {response.status_code} "
            f"({time.time() - start_time:.3f}s)."
        )

        if not response.ok:
            response_body = response.text
            if INVALID_CREDENTIAL_PATTERN.search(response_body):
                raise CredentialInvalidError(response.status_code, response_body)
            raise HttpStatusError(response.status_code, response_body)

        try:
            data = response.json()
        except ValueError as error:
            raise EmptyResponseError("Malformed JSON in API response.") from error
        if not isinstance(data, dict):
            raise EmptyResponseError()
        return data
