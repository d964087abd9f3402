"""Pass 1: classify a source and derive the constraints every later pass honours."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from textwrap import dedent
from typing import List, Optional

from curricore.core.config import ModelConfig, RoutingConfig
from curricore.core.errors import RoutingError
from curricore.core.llm import CompletionOptions, StructuredCompletionClient, options_for_role
from curricore.core.pedagogy import (
    BloomLevel,
    ContentAnalysis,
    ContentType,
    ExtractionDepth,
    bloom_order,
    exceeds_ceiling,
)
from curricore.core.validation import PayloadShapeError, coerce_number, optional_text, require_mapping

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = dedent(
    """
    You classify educational content before concepts are extracted from it.

    content_type:
      - survey: broad coverage of many topics, each touched briefly
      - conceptual: builds a single argument or thesis in depth
      - procedural: teaches a skill through an ordered sequence of steps

    bloom_ceiling: the highest Bloom level the content itself can support
    (remember, understand, apply, analyze, evaluate, create).

    extraction_depth: "mentions" when most terms are named without being
    explained, otherwise "explanations".

    Respond with JSON only:
    {"content_type": "...", "thesis_statement": "... or null", "bloom_ceiling": "...",
     "extraction_depth": "...", "topic_count": 0, "reasoning": "..."}
    """
).strip()

_STEP_LINE = re.compile(r"^\s*(?:\d+[.)]\s+|step\s+\d+\b)", re.IGNORECASE | re.MULTILINE)
_SEQUENCE_WORD = re.compile(r"\b(?:first|second|third|next|after that|finally)\b\s*,", re.IGNORECASE)
_THESIS_MARKERS = (
    re.compile(r"\bI (?:argue|claim|contend|propose|will show)\b", re.IGNORECASE),
    re.compile(r"\bmy (?:thesis|argument|claim|central point)\b", re.IGNORECASE),
    re.compile(r"\bthe (?:key|central|main|core|big) (?:idea|claim|argument|thesis|insight)\b", re.IGNORECASE),
    re.compile(r"\bin this (?:essay|talk|article|lecture|paper),? (?:I|we)\b", re.IGNORECASE),
)
_HEADING_LINE = re.compile(r"^\s*(?:#{1,6}\s+\S.*|[A-Z][A-Za-z0-9 ,'&-]{2,60}:)\s*$", re.MULTILINE)
_TOPIC_TRANSITION = re.compile(
    r"\b(?:next topic|moving on to|let'?s turn to|another (?:topic|area)|our next subject)\b",
    re.IGNORECASE,
)
_DEFINITIONAL = re.compile(
    r"\b(?:is defined as|refers to|means that|is called|we define|is the process|is a|are a|is an)\b",
    re.IGNORECASE,
)
_EVALUATE_SIGNAL = re.compile(
    r"\b(?:critique|critically assess|judge whether|evaluate whether|weigh the (?:evidence|arguments))\b",
    re.IGNORECASE,
)
_CREATE_SIGNAL = re.compile(r"\b(?:design|build|compose|create|write) your own\b", re.IGNORECASE)
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")


@dataclass(slots=True)
class StructuralSignals:
    """Counts the heuristic classifier reasons over."""

    word_count: int
    step_markers: int
    thesis_markers: int
    topic_count: int
    has_definitions: bool
    thesis_sentence: Optional[str] = None
    signalled_ceiling: Optional[BloomLevel] = None
    notes: List[str] = field(default_factory=list)


def scan_structure(text: str) -> StructuralSignals:
    """Collect the structural signals used for routing. Pure function of ``text``."""

    words = re.findall(r"\b\w+\b", text)
    step_markers = len(_STEP_LINE.findall(text)) + len(_SEQUENCE_WORD.findall(text))

    thesis_sentence: Optional[str] = None
    thesis_markers = 0
    for sentence in _SENTENCE_SPLIT.split(text):
        if any(pattern.search(sentence) for pattern in _THESIS_MARKERS):
            thesis_markers += 1
            if thesis_sentence is None:
                thesis_sentence = sentence.strip()

    topic_count = max(1, len(_HEADING_LINE.findall(text)) + len(_TOPIC_TRANSITION.findall(text)))

    signalled: Optional[BloomLevel] = None
    if _CREATE_SIGNAL.search(text):
        signalled = BloomLevel.CREATE
    elif _EVALUATE_SIGNAL.search(text):
        signalled = BloomLevel.EVALUATE

    return StructuralSignals(
        word_count=len(words),
        step_markers=step_markers,
        thesis_markers=thesis_markers,
        topic_count=topic_count,
        has_definitions=bool(_DEFINITIONAL.search(text)),
        thesis_sentence=thesis_sentence,
        signalled_ceiling=signalled,
    )


class ContentRouter:
    """Classifies a source into survey/conceptual/procedural and fixes its constraints.

    Structural heuristics always run. When a completion client is injected its
    classification is preferred, but anything it returns outside the allowed
    vocabulary falls back to the heuristic answer with a warning.
    """

    def __init__(
        self,
        client: StructuredCompletionClient | None = None,
        *,
        config: RoutingConfig | None = None,
        options: CompletionOptions | None = None,
    ) -> None:
        self.client = client
        self.config = config or RoutingConfig()
        self.options = options or options_for_role(ModelConfig().router)

    def route(self, text: str, duration_seconds: int | None = None) -> ContentAnalysis:
        signals = self._check_usable(text, duration_seconds)
        warnings: List[str] = []

        heuristic_type = self._classify(signals, warnings)
        content_type = heuristic_type
        thesis = signals.thesis_sentence if heuristic_type == ContentType.CONCEPTUAL else None
        requested_ceiling: Optional[BloomLevel] = None
        depth = self._heuristic_depth(heuristic_type, signals)
        topic_count = signals.topic_count

        if self.client is not None:
            payload = self._classify_with_model(text)
            content_type = self._parse_content_type(payload.get("content_type"), heuristic_type, warnings)
            thesis = optional_text(payload.get("thesis_statement")) or thesis
            requested_ceiling = self._parse_bloom(payload.get("bloom_ceiling"))
            depth = self._parse_depth(payload.get("extraction_depth")) or self._heuristic_depth(content_type, signals)
            model_topics = coerce_number(payload.get("topic_count"))
            if model_topics is not None and model_topics >= 0:
                topic_count = int(model_topics)

        ceiling = self._resolve_ceiling(content_type, signals, requested_ceiling, warnings)
        for message in warnings:
            LOGGER.warning("Routing: %s", message)

        analysis = ContentAnalysis(
            content_type=content_type,
            thesis_statement=thesis if content_type != ContentType.PROCEDURAL else None,
            bloom_ceiling=ceiling,
            mode_multiplier=self.config.mode_multipliers[content_type],
            extraction_depth=depth,
            source_duration_seconds=duration_seconds,
            topic_count=topic_count,
            warnings=tuple(warnings),
        )
        LOGGER.info(
            "Routed source as %s (ceiling=%s, multiplier=%.1f, depth=%s)",
            analysis.content_type.value,
            analysis.bloom_ceiling.value,
            analysis.mode_multiplier,
            analysis.extraction_depth.value,
        )
        return analysis

    # ------------------------------------------------------------------
    # Heuristics
    # ------------------------------------------------------------------

    def _check_usable(self, text: str, duration_seconds: int | None) -> StructuralSignals:
        if duration_seconds is not None:
            if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, int) or duration_seconds <= 0:
                raise RoutingError(
                    "UNUSABLE_SOURCE",
                    f"Source duration must be a positive number of seconds, got {duration_seconds!r}",
                )
        if not isinstance(text, str) or not text.strip():
            raise RoutingError("UNUSABLE_SOURCE", "Source text is empty")
        signals = scan_structure(text)
        if signals.word_count < self.config.min_source_words:
            raise RoutingError(
                "UNUSABLE_SOURCE",
                f"Source has {signals.word_count} words; at least {self.config.min_source_words} are required",
                details={"word_count": signals.word_count},
            )
        return signals

    def _classify(self, signals: StructuralSignals, warnings: List[str]) -> ContentType:
        procedural = signals.step_markers >= self.config.procedural_step_threshold
        broad = signals.topic_count >= self.config.survey_topic_threshold
        thesis = signals.thesis_markers > 0

        if procedural:
            if thesis or broad:
                warnings.append("Mixed structural signals; step sequence takes precedence (procedural)")
            return ContentType.PROCEDURAL
        if thesis and not broad:
            return ContentType.CONCEPTUAL
        if broad:
            if thesis:
                warnings.append("Thesis language found alongside broad topic coverage; classified as survey")
            return ContentType.SURVEY
        warnings.append("No strong structural signal; defaulting to conceptual")
        return ContentType.CONCEPTUAL

    @staticmethod
    def _heuristic_depth(content_type: ContentType, signals: StructuralSignals) -> ExtractionDepth:
        if content_type == ContentType.SURVEY or not signals.has_definitions:
            return ExtractionDepth.MENTIONS
        return ExtractionDepth.EXPLANATIONS

    def _resolve_ceiling(
        self,
        content_type: ContentType,
        signals: StructuralSignals,
        requested: Optional[BloomLevel],
        warnings: List[str],
    ) -> BloomLevel:
        allowed = self.config.bloom_ceiling_defaults[content_type]
        if content_type != ContentType.SURVEY and signals.signalled_ceiling is not None:
            if bloom_order(signals.signalled_ceiling) > bloom_order(allowed):
                allowed = signals.signalled_ceiling

        if requested is None:
            return allowed
        if exceeds_ceiling(requested, allowed):
            warnings.append(
                f"Requested Bloom ceiling '{requested.value}' is not supported by {content_type.value} content; "
                f"clamped to '{allowed.value}'"
            )
            return allowed
        return requested

    # ------------------------------------------------------------------
    # Model-backed classification
    # ------------------------------------------------------------------

    def _classify_with_model(self, text: str) -> dict:
        excerpt = text[: self.config.max_classification_chars]
        user_message = f"Classify this content:\n\n{excerpt}"
        try:
            result = self.client.send(SYSTEM_PROMPT, user_message, self.options)
        except Exception as exc:
            raise RoutingError("CLASSIFICATION_FAILED", f"Content classification call failed: {exc}") from exc
        try:
            return require_mapping(result.data, "classification response")
        except PayloadShapeError as exc:
            raise RoutingError("CLASSIFICATION_FAILED", str(exc)) from exc

    @staticmethod
    def _parse_content_type(value: object, fallback: ContentType, warnings: List[str]) -> ContentType:
        try:
            return ContentType(str(value).strip().lower())
        except ValueError:
            warnings.append(f"Unrecognised content type {value!r}; using structural classification '{fallback.value}'")
            return fallback

    @staticmethod
    def _parse_bloom(value: object) -> Optional[BloomLevel]:
        if value is None:
            return None
        try:
            return BloomLevel(str(value).strip().lower())
        except ValueError:
            return None

    @staticmethod
    def _parse_depth(value: object) -> Optional[ExtractionDepth]:
        if value is None:
            return None
        try:
            return ExtractionDepth(str(value).strip().lower())
        except ValueError:
            return None


__all__ = ["ContentRouter", "StructuralSignals", "scan_structure"]
