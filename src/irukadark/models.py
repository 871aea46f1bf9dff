from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from irukadark.config import AppConfig
from irukadark.extraction import Source


class Urgency(Enum):
    INTERACTIVE = "interactive"
    BACKGROUND = "background"

    @classmethod
    def from_source(cls, source: Optional[str]) -> "Urgency":
        """Maps the caller's `source` tag ('shortcut' or 'chat') to an urgency."""
        return cls.INTERACTIVE if str(source or "").lower() == "shortcut" else cls.BACKGROUND


class ResponseModality(Enum):
    TEXT = "text"
    IMAGE = "image"


def _coerce(value: Any, kind: Callable[[Any], Any], default: Any) -> Any:
    if value is None or value == "":
        return default
    try:
        if kind is int:
            # Token counts and top-k of zero mean "unset".
            return int(float(value)) or default
        return kind(value)
    except (TypeError, ValueError, OverflowError):
        return default


@dataclass(frozen=True)
class GenerationConfig:
    temperature: float = AppConfig.DEFAULT_GENERATION_CONFIG["temperature"]
    top_k: int = int(AppConfig.DEFAULT_GENERATION_CONFIG["topK"])
    top_p: float = AppConfig.DEFAULT_GENERATION_CONFIG["topP"]
    max_output_tokens: int = int(AppConfig.DEFAULT_GENERATION_CONFIG["maxOutputTokens"])

    @classmethod
    def from_payload(cls, payload: Optional[Dict[str, Any]]) -> "GenerationConfig":
        """
        Builds a config from the camelCase dict sent by the UI.
        Null, empty or non-numeric fields fall back to the defaults.
        """
        if not payload:
            return cls()
        defaults = cls()
        return cls(
            temperature=_coerce(payload.get("temperature"), float, defaults.temperature),
            top_k=_coerce(payload.get("topK"), int, defaults.top_k),
            top_p=_coerce(payload.get("topP"), float, defaults.top_p),
            max_output_tokens=_coerce(
                payload.get("maxOutputTokens"), int, defaults.max_output_tokens
            ),
        )

    def clamped_for_interactive(self, max_tokens: Optional[int] = None) -> "GenerationConfig":
        cap = max_tokens or AppConfig.shortcut_max_tokens()
        return replace(
            self,
            max_output_tokens=min(cap, self.max_output_tokens),
            top_k=min(AppConfig.SHORTCUT_MAX_TOP_K, self.top_k),
            top_p=min(AppConfig.SHORTCUT_MAX_TOP_P, self.top_p),
        )

    def to_rest(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "topK": self.top_k,
            "topP": self.top_p,
            "maxOutputTokens": self.max_output_tokens,
        }

    def to_sdk(self) -> Dict[str, Any]:
        return {
            "temperature": self.temperature,
            "top_k": self.top_k,
            "top_p": self.top_p,
            "max_output_tokens": self.max_output_tokens,
        }


@dataclass(frozen=True)
class ImageInput:
    data: bytes
    mime_type: str = AppConfig.DEFAULT_IMAGE_MIME_TYPE


@dataclass(frozen=True)
class GenerationRequest:
    prompt: str
    requested_model: str = AppConfig.DEFAULT_AI_MODEL
    image: Optional[ImageInput] = None
    use_web_search: bool = False
    urgency: Urgency = Urgency.BACKGROUND
    generation_config: GenerationConfig = field(default_factory=GenerationConfig)
    response_modality: ResponseModality = ResponseModality.TEXT
    aspect_ratio: str = AppConfig.DEFAULT_ASPECT_RATIO
    reference_images: List[ImageInput] = field(default_factory=list)

    @property
    def is_interactive(self) -> bool:
        return self.urgency is Urgency.INTERACTIVE

    def effective_config(self) -> GenerationConfig:
        if self.is_interactive:
            return self.generation_config.clamped_for_interactive()
        return self.generation_config


@dataclass(frozen=True)
class TextResult:
    text: str
    sources: List[Source] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {"text": self.text, "sources": [s.to_dict() for s in self.sources]}


@dataclass(frozen=True)
class ImageResult:
    image_bytes: bytes
    mime_type: str = AppConfig.DEFAULT_IMAGE_MIME_TYPE
