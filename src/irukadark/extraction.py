"""
Normalization of generation results from the SDK and REST transports.

Upstream responses come in a few shapes (a `candidates` list, a convenience
`output_text` field, an `outputs` list), with camelCase keys over REST and
snake_case keys from the SDK. The functions here decode them into the shapes
below, in priority order, and never raise: an unknown shape yields empty text
and no sources.
"""

import base64
import binascii
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Set, Tuple, Union


@dataclass(frozen=True)
class Source:
    url: str
    title: str

    def to_dict(self) -> Dict[str, str]:
        return {"url": self.url, "title": self.title}


@dataclass(frozen=True)
class CandidatesShape:
    candidates: List[Dict[str, Any]]


@dataclass(frozen=True)
class OutputTextShape:
    output_text: str


@dataclass(frozen=True)
class OutputsShape:
    outputs: List[Any]


ResultShape = Union[CandidatesShape, OutputTextShape, OutputsShape]


def _first(mapping: Any, *keys: str) -> Any:
    """Returns the first truthy value among `keys` of a dict, else None."""
    if not isinstance(mapping, dict):
        return None
    for key in keys:
        value = mapping.get(key)
        if value:
            return value
    return None


def _as_list(value: Any) -> List[Any]:
    return value if isinstance(value, list) else []


def normalize_result(raw: Any) -> Dict[str, Any]:
    """
    Converts an SDK response object or a decoded REST payload into a plain
    dict, unwrapping a `response` envelope when present.
    """
    if raw is None:
        return {}
    if hasattr(raw, "model_dump"):
        try:
            raw = raw.model_dump(mode="json", exclude_none=True)
        except (TypeError, ValueError) as error:
            logging.debug(f"Unable to serialize SDK response: {error}")
            return {}
    if not isinstance(raw, dict):
        return {}
    inner = raw.get("response")
    if isinstance(inner, dict):
        return inner
    return raw


def decode_result_shapes(raw: Any) -> List[ResultShape]:
    """Returns every recognized shape in `raw`, highest priority first."""
    data = normalize_result(raw)
    shapes: List[ResultShape] = []

    candidates = [c for c in _as_list(data.get("candidates")) if isinstance(c, dict)]
    if candidates:
        shapes.append(CandidatesShape(candidates))

    output_text = _first(data, "output_text", "outputText")
    if isinstance(output_text, str):
        shapes.append(OutputTextShape(output_text))

    outputs = _as_list(_first(data, "outputs", "output"))
    if outputs:
        shapes.append(OutputsShape(outputs))

    return shapes


# --- Text ---


def _collect_text(content: Any, bucket: List[str]) -> None:
    target = content.get("parts", content) if isinstance(content, dict) else content
    if isinstance(target, list):
        for part in target:
            if not isinstance(part, dict) or part.get("thought"):
                continue
            text = part.get("text")
            if isinstance(text, str) and text.strip():
                bucket.append(text)
    elif isinstance(target, dict):
        text = target.get("text")
        if isinstance(text, str) and text.strip():
            bucket.append(text)


def _candidate_text(candidate: Dict[str, Any]) -> str:
    texts: List[str] = []
    for key in ("content", "contents", "outputs", "output"):
        value = candidate.get(key)
        for content in value if isinstance(value, list) else [value]:
            if content:
                _collect_text(content, texts)

    if not texts and isinstance(candidate.get("text"), str):
        texts.append(candidate["text"])
    return "".join(texts).strip()


def _finish_reason(candidate: Dict[str, Any]) -> str:
    return str(_first(candidate, "finishReason", "finish_reason") or "")


def extract_text_and_finish_reason(raw: Any) -> Tuple[str, str]:
    """
    Returns the generated text and the finish reason of the candidate it came
    from. When no text is found the finish reason of the first candidate is
    returned, so callers can detect safety blocks.
    """
    first_reason = ""
    for shape in decode_result_shapes(raw):
        if isinstance(shape, CandidatesShape):
            first_reason = _finish_reason(shape.candidates[0])
            for candidate in shape.candidates:
                text = _candidate_text(candidate)
                if text:
                    return text, _finish_reason(candidate)
        elif isinstance(shape, OutputTextShape):
            if shape.output_text.strip():
                return shape.output_text.strip(), first_reason
        elif isinstance(shape, OutputsShape):
            texts: List[str] = []
            head = shape.outputs[0]
            content = head.get("content", head) if isinstance(head, dict) else head
            _collect_text(content, texts)
            if texts:
                return "".join(texts).strip(), first_reason
    return "", first_reason


def extract_text_from_result(raw: Any) -> str:
    return extract_text_and_finish_reason(raw)[0]


# --- Images ---


def extract_image_from_result(raw: Any) -> Optional[Tuple[bytes, str]]:
    """Returns `(image_bytes, mime_type)` of the first inline image part."""
    for shape in decode_result_shapes(raw):
        if not isinstance(shape, CandidatesShape):
            continue
        for candidate in shape.candidates:
            content = candidate.get("content")
            parts = _as_list(content.get("parts")) if isinstance(content, dict) else []
            for part in parts:
                inline = _first(part, "inlineData", "inline_data")
                data = _first(inline, "data")
                if not data:
                    continue
                mime_type = str(_first(inline, "mimeType", "mime_type") or "image/png")
                if isinstance(data, bytes):
                    return data, mime_type
                try:
                    return base64.b64decode(str(data)), mime_type
                except (binascii.Error, ValueError) as error:
                    logging.warning(f"Undecodable inline image data: {error}")
    return None


# --- Sources ---


class SourceExtractor:
    """
    Builds the citation list of a grounded answer.

    Reads, in order: grounding attributions (web or retrieved-context
    entries), grounding chunks (restricted to the chunks referenced by a
    grounding support when any support index exists), legacy citations and
    URL-context metadata. The result is de-duplicated by URL, first wins.
    """

    def extract(
        self,
        grounding_metadata: Any,
        citation_metadata: Any = None,
        url_context_metadata: Any = None,
    ) -> List[Source]:
        sources: List[Source] = []
        try:
            if isinstance(grounding_metadata, dict):
                attributions = _as_list(
                    _first(
                        grounding_metadata,
                        "groundingAttributions",
                        "grounding_attributions",
                    )
                )
                sources.extend(self._from_attributions(attributions))
                sources.extend(self._from_chunks(grounding_metadata, attributions))
            sources.extend(self._from_citations(citation_metadata))
            sources.extend(self._from_url_context(url_context_metadata))
        except (AttributeError, TypeError, ValueError) as error:
            logging.debug(f"Malformed grounding metadata ignored: {error}")
            return []
        return self.deduplicate(sources)

    @staticmethod
    def deduplicate(sources: Iterable[Source]) -> List[Source]:
        seen: Set[str] = set()
        unique: List[Source] = []
        for source in sources:
            if not source.url or source.url in seen:
                continue
            seen.add(source.url)
            unique.append(source)
        return unique

    @staticmethod
    def _make(url: Any, title: Any) -> Optional[Source]:
        if not url:
            return None
        normalized = str(url).strip()
        if not normalized:
            return None
        return Source(url=normalized, title=str(title or normalized))

    def _from_attributions(self, attributions: List[Any]) -> List[Source]:
        found: List[Source] = []
        for attribution in attributions:
            web = _first(
                attribution,
                "web",
                "webSearchResult",
                "web_search_result",
                "source",
                "site",
            )
            if isinstance(web, dict):
                source = self._make(
                    _first(web, "uri", "url", "link"),
                    _first(web, "title", "pageTitle", "name"),
                )
                if source:
                    found.append(source)

            retrieved = _first(attribution, "retrievedContext", "retrieved_context")
            if isinstance(retrieved, dict):
                source = self._make(
                    _first(retrieved, "uri", "url"),
                    _first(retrieved, "title", "text", "documentName", "document_name"),
                )
                if source:
                    found.append(source)
        return found

    def _chunk_source(self, chunk: Any) -> Optional[Source]:
        if not isinstance(chunk, dict):
            return None
        web = _first(chunk, "web", "webSearchResult", "web_search_result")
        if isinstance(web, dict):
            source = self._make(
                _first(web, "uri", "url", "link"),
                _first(web, "title", "pageTitle", "name"),
            )
            if source:
                return source
        retrieved = _first(chunk, "retrievedContext", "retrieved_context")
        if isinstance(retrieved, dict):
            source = self._make(
                _first(retrieved, "uri", "url"),
                _first(retrieved, "title", "text", "documentName", "document_name"),
            )
            if source:
                return source
        maps = _first(chunk, "maps", "map")
        if isinstance(maps, dict):
            return self._make(
                _first(
                    maps,
                    "uri",
                    "googleMapsUri",
                    "google_maps_uri",
                    "flagContentUri",
                    "flag_content_uri",
                ),
                _first(maps, "title", "text", "placeId", "place_id"),
            )
        return None

    @staticmethod
    def _support_indices(metadata: Dict[str, Any], attributions: List[Any]) -> Set[int]:
        indices: Set[int] = set()
        entries = _as_list(_first(metadata, "groundingSupports", "grounding_supports"))
        for entry in entries + attributions:
            raw_indices = _first(entry, "groundingChunkIndices", "grounding_chunk_indices")
            for raw_index in _as_list(raw_indices):
                if isinstance(raw_index, float) and not raw_index.is_integer():
                    continue
                try:
                    index = int(raw_index)
                except (TypeError, ValueError):
                    continue
                if index >= 0:
                    indices.add(index)
        return indices

    def _from_chunks(self, metadata: Dict[str, Any], attributions: List[Any]) -> List[Source]:
        chunks = _as_list(_first(metadata, "groundingChunks", "grounding_chunks"))
        supported = self._support_indices(metadata, attributions)
        found: List[Source] = []
        for index, chunk in enumerate(chunks):
            if supported and index not in supported:
                continue
            source = self._chunk_source(chunk)
            if source:
                found.append(source)
        return found

    def _from_citations(self, citation_metadata: Any) -> List[Source]:
        if isinstance(citation_metadata, list):
            items = citation_metadata
        else:
            items = _as_list(_first(citation_metadata, "citations", "sources"))
        found: List[Source] = []
        for item in items:
            url = _first(item, "uri", "url")
            source = self._make(url, _first(item, "title", "publicationTitle"))
            if source:
                found.append(source)
        return found

    def _from_url_context(self, url_context_metadata: Any) -> List[Source]:
        items = _as_list(_first(url_context_metadata, "urlMetadata", "url_metadata"))
        found: List[Source] = []
        for item in items:
            source = self._make(
                _first(item, "retrievedUrl", "retrieved_url", "url"),
                _first(item, "title", "pageTitle", "name"),
            )
            if source:
                found.append(source)
        return found


_source_extractor = SourceExtractor()


def extract_sources_from_result(raw: Any) -> List[Source]:
    """Locates grounding, citation and URL-context metadata in a result."""
    data = normalize_result(raw)
    candidates = _as_list(data.get("candidates"))
    candidate = candidates[0] if candidates and isinstance(candidates[0], dict) else {}

    grounding = _first(candidate, "groundingMetadata", "grounding_metadata") or _first(
        data, "groundingMetadata", "grounding_metadata"
    )
    citations = _first(data, "citations", "citationMetadata", "citation_metadata") or _first(
        candidate, "citationMetadata", "citation_metadata"
    )
    url_context = _first(candidate, "urlContextMetadata", "url_context_metadata") or _first(
        data, "urlContextMetadata", "url_context_metadata"
    )
    return _source_extractor.extract(grounding or {}, citations, url_context)
