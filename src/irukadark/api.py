import base64
import binascii
import logging
from typing import Any, Callable, Dict, List, Optional, Union

from irukadark.config import AppConfig
from irukadark.data import CredentialManager, PreferencesManager
from irukadark.errors import GenerationError, InvalidRequestError
from irukadark.models import (
    GenerationConfig,
    GenerationRequest,
    ImageInput,
    ImageResult,
    ResponseModality,
    Urgency,
)
from irukadark.services import GenerationOrchestrator


def _truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() not in {"0", "false", "off", ""}
    return bool(value)


def _decode_image(data: Any, mime_type: Any) -> ImageInput:
    if not data:
        raise InvalidRequestError("Image data is missing.")
    try:
        raw = base64.b64decode(str(data), validate=False)
    except (binascii.Error, ValueError) as error:
        raise InvalidRequestError(f"Invalid image data: {error}") from error
    return ImageInput(data=raw, mime_type=str(mime_type or AppConfig.DEFAULT_IMAGE_MIME_TYPE))


class API:
    """
    Entry points exposed to the surrounding application.
    Payloads and results are plain dicts; failures come back as a single
    string prefixed with "API error occurred: ".
    """

    def __init__(
        self,
        orchestrator: GenerationOrchestrator,
        preferences: PreferencesManager,
        credential_manager: CredentialManager,
        log_handler: Optional[logging.Handler] = None,
    ):
        self._orchestrator = orchestrator
        self._preferences = preferences
        self._credential_manager = credential_manager
        self._log_handler = log_handler

    # --- Request Building ---

    def _build_request(
        self,
        payload: Dict[str, Any],
        image: Optional[ImageInput] = None,
        response_modality: ResponseModality = ResponseModality.TEXT,
    ) -> GenerationRequest:
        if response_modality is ResponseModality.IMAGE:
            model = str(payload.get("model") or AppConfig.DEFAULT_IMAGE_MODEL)
        else:
            model = str(payload.get("model") or self._preferences.get_model())

        if "useWebSearch" in payload:
            use_web_search = _truthy(payload.get("useWebSearch"))
        else:
            use_web_search = self._preferences.is_web_search_enabled()

        reference_images: List[ImageInput] = []
        if response_modality is ResponseModality.IMAGE:
            reference_images = [
                _decode_image(item.get("base64"), item.get("mimeType"))
                for item in payload.get("referenceImages") or []
                if isinstance(item, dict)
            ]

        return GenerationRequest(
            prompt=str(payload.get("prompt") or ""),
            requested_model=model,
            image=image,
            use_web_search=use_web_search and response_modality is ResponseModality.TEXT,
            urgency=Urgency.from_source(payload.get("source")),
            generation_config=GenerationConfig.from_payload(payload.get("generationConfig")),
            response_modality=response_modality,
            aspect_ratio=str(payload.get("aspectRatio") or AppConfig.DEFAULT_ASPECT_RATIO),
            reference_images=reference_images,
        )

    def _run(
        self, build_request: Callable[[], GenerationRequest]
    ) -> Union[Dict[str, Any], str]:
        try:
            result = self._orchestrator.generate(build_request())
        except GenerationError as error:
            logging.error(f"Generation failed ({error.kind.value}): {error}")
            return f"{AppConfig.ERROR_PREFIX}{error}"
        except Exception as error:
            logging.error(f"Unexpected generation error: {error}", exc_info=True)
            return f"{AppConfig.ERROR_PREFIX}{error or 'Unknown error'}"

        if isinstance(result, ImageResult):
            return {
                "imageBase64": base64.b64encode(result.image_bytes).decode("ascii"),
                "mimeType": result.mime_type,
            }
        return result.to_dict()

    # --- AI Generation ---

    def generate(self, payload: Dict[str, Any]) -> Union[Dict[str, Any], str]:
        """
        Generates text for `payload`:
        { 'prompt', 'source': 'shortcut'|'chat', 'model', 'useWebSearch',
          'generationConfig' }.
        Returns {'text', 'sources'} or an error string.
        """
        payload = payload or {}
        if not str(payload.get("prompt") or "").strip():
            return ""
        return self._run(lambda: self._build_request(payload))

    def generate_with_image(self, payload: Dict[str, Any]) -> Union[Dict[str, Any], str]:
        """
        Same as `generate`, with the image passed as 'imageBase64' and
        'mimeType'.
        """
        payload = payload or {}
        if not str(payload.get("prompt") or "").strip():
            return ""
        return self._run(
            lambda: self._build_request(
                payload,
                image=_decode_image(payload.get("imageBase64"), payload.get("mimeType")),
            )
        )

    def generate_image(self, payload: Dict[str, Any]) -> Union[Dict[str, Any], str]:
        """
        Generates an image from a prompt. Optional 'aspectRatio' and
        'referenceImages' ([{'base64', 'mimeType'}]).
        Returns {'imageBase64', 'mimeType'} or an error string.
        """
        payload = payload or {}
        if not str(payload.get("prompt") or "").strip():
            return ""
        return self._run(
            lambda: self._build_request(payload, response_modality=ResponseModality.IMAGE)
        )

    def cancel_ai(self, options: Optional[Dict[str, Any]] = None) -> bool:
        """
        Cancels the current request of any kind, or with
        {'fromShortcut': True} only the tracked interactive request.
        """
        options = options or {}
        from_shortcut = _truthy(options.get("fromShortcut", False))
        return self._orchestrator.cancel(from_shortcut=from_shortcut)

    # --- Preferences ---

    def get_model(self) -> str:
        return self._preferences.get_model()

    def set_model(self, model: str) -> Dict[str, bool]:
        self._preferences.set("GEMINI_MODEL", str(model or "").strip())
        logging.info(f"Model set: {self._preferences.get_model()}")
        return {"success": True}

    def get_web_search_model(self) -> str:
        return self._preferences.get_web_search_model()

    def set_web_search_model(self, model: str) -> Dict[str, bool]:
        self._preferences.set("WEB_SEARCH_MODEL", str(model or "").strip())
        logging.info(f"Web search model set: {self._preferences.get_web_search_model()}")
        return {"success": True}

    def get_web_search_enabled(self) -> bool:
        return self._preferences.is_web_search_enabled()

    # --- Credentials ---

    def save_api_keys(self, data: Dict[str, str]) -> Dict[str, Union[bool, str]]:
        """
        Saves API keys from the settings form; keys are credential slot names
        (e.g. 'GEMINI_API_KEY'). Unknown slots are ignored.
        """
        clean_data = {
            slot: str(data.get(slot) or "").strip()
            for slot in self._credential_manager.slots
            if slot in (data or {})
        }
        if not clean_data:
            return {"success": False, "error": "No API key provided."}

        if self._credential_manager.save_credentials(clean_data):
            self._orchestrator.client_pool.clear()
            return {"success": True}
        return {"success": False, "error": "Keyring write failed."}

    def get_providers_status(self) -> Dict[str, bool]:
        """Reports which credential slots are filled."""
        return self._credential_manager.get_all_keys_status()

    # --- Logs ---

    def get_logs(self) -> List[Dict[str, str]]:
        """
        Retrieves the records kept by the in-memory log buffer.
        """
        handler: Any = self._log_handler
        if handler and hasattr(handler, "buffer"):
            return list(handler.buffer)
        return [{"level": "ERROR", "message": "Log handler not found."}]

    def clear_logs(self) -> Dict[str, Union[bool, str]]:
        """
        Clears the log buffer.
        """
        handler: Any = self._log_handler
        if handler and hasattr(handler, "buffer"):
            handler.buffer.clear()
            return {"success": True}
        return {"success": False, "error": "Log handler not found."}
