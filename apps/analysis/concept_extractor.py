"""Pass 2: extract concepts under the routing constraints and attach pedagogical metadata."""

from __future__ import annotations

import logging
import re
from textwrap import dedent
from typing import Any, Dict, List, Mapping, Optional

from curricore.core.config import ExtractionConfig, ModelConfig
from curricore.core.errors import ExtractionError
from curricore.core.llm import CompletionOptions, StructuredCompletionClient, options_for_role
from curricore.core.pedagogy import (
    BLOOM_VERBS,
    AssessmentSpec,
    BloomLevel,
    CognitiveType,
    Concept,
    ContentAnalysis,
    ExtractionDepth,
    KeyMoment,
    LearningObjective,
    QuestionType,
    SampleQuestion,
    Segment,
    SourceMapping,
    bloom_order,
    cap_bloom_level,
)
from curricore.core.validation import (
    PayloadShapeError,
    clamp,
    coerce_number,
    first_present,
    optional_text,
    require_list,
    require_mapping,
    round_half_up,
    string_list,
)

LOGGER = logging.getLogger(__name__)

MIN_NAME_LENGTH = 2
MAX_NAME_LENGTH = 100
MAX_NAME_WORDS = 5
DEFAULT_DIFFICULTY = 5
DEFAULT_TIER = 2

_SENTENCE_BOUNDARY = re.compile(r"(?<=[.!?])\s+")
_SLUG = re.compile(r"[^a-z0-9]+")

SYSTEM_PROMPT_TEMPLATE = dedent(
    """
    You extract the concepts a learner must master from educational content.

    Constraints for this source:
      - content type: {content_type}
      - Bloom ceiling: {bloom_ceiling} (never assign a higher bloom_level)
      - extraction depth: {extraction_depth}
    {thesis_line}
    For every concept return:
      name (2-5 words), definition (1-2 sentences), key_points (3-5 items),
      cognitive_type (declarative|conceptual|procedural|conditional|metacognitive),
      difficulty_factors {{abstractness, prerequisite_depth, relational_complexity}} each 0-1,
      tier (1 background, 2 explained core concept, 3 thesis-level enduring understanding),
      bloom_level, mentioned_only (true when the term is named but never explained),
      definition_provided, time_allocation_percent,
      learning_objectives [{{bloom_verb, objective_statement, success_criteria}}] (max 3),
      assessment_spec {{appropriate_question_types, inappropriate_question_types,
        sample_question {{question_type, question, correct_answer, explanation}},
        mastery_indicators, anti_patterns}},
      source_mapping {{primary_segment {{start_sec, end_sec}}, key_moments, review_clip}},
      one_sentence_summary, why_it_matters.

    Respond with JSON only: {{"concepts": [ ... ]}}
    """
).strip()


def score_difficulty(
    abstractness: float,
    prerequisite_depth: float,
    relational_complexity: float,
    *,
    weights: Mapping[str, float] | None = None,
) -> int:
    """Combine three 0-1 factors into a 1-10 difficulty.

    The weighted sum is normalized by the total weight so the result is
    monotonic in every factor and always lands in range.
    """

    table = weights or ExtractionConfig().difficulty_weights
    factors = {
        "abstractness": clamp(abstractness, 0.0, 1.0),
        "prerequisite_depth": clamp(prerequisite_depth, 0.0, 1.0),
        "relational_complexity": clamp(relational_complexity, 0.0, 1.0),
    }
    total_weight = sum(table.values())
    combined = sum(table[name] * value for name, value in factors.items()) / total_weight
    return int(clamp(1 + round_half_up(9 * combined), 1, 10))


def split_into_chunks(text: str, max_chars: int) -> List[str]:
    """Split ``text`` on sentence boundaries into pieces of at most ``max_chars``."""

    if len(text) <= max_chars:
        return [text]
    chunks: List[str] = []
    current = ""
    for sentence in _SENTENCE_BOUNDARY.split(text):
        while len(sentence) > max_chars:
            if current:
                chunks.append(current)
                current = ""
            chunks.append(sentence[:max_chars])
            sentence = sentence[max_chars:]
        candidate = f"{current} {sentence}" if current else sentence
        if len(candidate) > max_chars:
            chunks.append(current)
            current = sentence
        else:
            current = candidate
    if current:
        chunks.append(current)
    return chunks


def slugify(name: str) -> str:
    return _SLUG.sub("-", name.lower()).strip("-")


_VERB_LEVELS: Dict[str, BloomLevel] = {verb: level for level, verbs in BLOOM_VERBS.items() for verb in verbs}


class ConceptExtractor:
    """Turns source text into :class:`Concept` records that respect the Pass 1 constraints."""

    def __init__(
        self,
        client: StructuredCompletionClient,
        *,
        config: ExtractionConfig | None = None,
        options: CompletionOptions | None = None,
    ) -> None:
        self.client = client
        self.config = config or ExtractionConfig()
        self.options = options or options_for_role(ModelConfig().extractor)

    def extract(self, source_id: str, text: str, analysis: ContentAnalysis) -> List[Concept]:
        if not isinstance(text, str) or not text.strip():
            raise ExtractionError("EMPTY_CONTENT", "No content to extract concepts from", details={"source_id": source_id})

        system_prompt = self._system_prompt(analysis)
        chunks = split_into_chunks(text.strip(), self.config.max_chunk_chars)
        raw_entries: List[Any] = []
        for index, chunk in enumerate(chunks, start=1):
            raw_entries.extend(self._extract_chunk(system_prompt, chunk, index, len(chunks)))

        concepts: List[Concept] = []
        seen_names: set[str] = set()
        used_ids: set[str] = set()
        for raw in raw_entries:
            concept = self._normalize(raw, source_id, analysis)
            if concept is None:
                continue
            key = concept.name.lower()
            if key in seen_names:
                LOGGER.debug("Dropping duplicate concept '%s' from later chunk", concept.name)
                continue
            seen_names.add(key)
            concept_id = concept.id
            suffix = 2
            while concept_id in used_ids:
                concept_id = f"{concept.id}-{suffix}"
                suffix += 1
            used_ids.add(concept_id)
            concepts.append(concept.model_copy(update={"id": concept_id}) if concept_id != concept.id else concept)

        LOGGER.info(
            "Extracted %d concepts (%d mentioned-only) from source %s",
            len(concepts),
            sum(1 for concept in concepts if concept.mentioned_only),
            source_id,
        )
        return concepts

    # ------------------------------------------------------------------
    # Completion round-trip
    # ------------------------------------------------------------------

    @staticmethod
    def _system_prompt(analysis: ContentAnalysis) -> str:
        thesis_line = f"  - thesis: {analysis.thesis_statement}\n" if analysis.thesis_statement else ""
        return SYSTEM_PROMPT_TEMPLATE.format(
            content_type=analysis.content_type.value,
            bloom_ceiling=analysis.bloom_ceiling.value,
            extraction_depth=analysis.extraction_depth.value,
            thesis_line=thesis_line,
        )

    def _extract_chunk(self, system_prompt: str, chunk: str, index: int, total: int) -> List[Any]:
        part = f" (part {index} of {total})" if total > 1 else ""
        user_message = f"Extract concepts from this content{part}:\n\n{chunk}"
        try:
            result = self.client.send(system_prompt, user_message, self.options)
        except Exception as exc:
            raise ExtractionError("EXTRACTION_FAILED", f"Concept extraction call failed: {exc}") from exc
        try:
            payload = require_mapping(result.data, "extraction response")
            return require_list(payload, "concepts", "extraction response")
        except PayloadShapeError as exc:
            raise ExtractionError("INVALID_RESPONSE", str(exc)) from exc

    # ------------------------------------------------------------------
    # Normalization
    # ------------------------------------------------------------------

    def _normalize(self, raw: Any, source_id: str, analysis: ContentAnalysis) -> Optional[Concept]:
        if not isinstance(raw, Mapping):
            LOGGER.warning("Skipping concept entry that is not an object: %r", raw)
            return None
        name = optional_text(raw.get("name"))
        if name is None or not MIN_NAME_LENGTH <= len(name) <= MAX_NAME_LENGTH:
            LOGGER.warning("Skipping concept with invalid name: %r", raw.get("name"))
            return None
        if len(name.split()) > MAX_NAME_WORDS:
            LOGGER.warning("Concept name '%s' is longer than %d words", name, MAX_NAME_WORDS)
        definition = optional_text(raw.get("definition"))
        if definition is None:
            LOGGER.warning("Skipping concept '%s' without a definition", name)
            return None

        ceiling = analysis.bloom_ceiling
        bloom_level = self._bloom_level(first_present(raw, "bloom_level", "bloomLevel"))
        if bloom_order(bloom_level) > bloom_order(ceiling):
            LOGGER.debug("Downgrading '%s' from %s to ceiling %s", name, bloom_level.value, ceiling.value)
            bloom_level = cap_bloom_level(bloom_level, ceiling)

        definition_provided = first_present(raw, "definition_provided", "definitionProvided")
        definition_provided = definition_provided if isinstance(definition_provided, bool) else True
        mentioned_only = first_present(raw, "mentioned_only", "mentionedOnly") is True
        if analysis.extraction_depth == ExtractionDepth.MENTIONS and not definition_provided:
            mentioned_only = True

        tier_raw = coerce_number(raw.get("tier"))
        tier = round_half_up(clamp(tier_raw, 1, 3)) if tier_raw is not None else DEFAULT_TIER
        time_raw = coerce_number(first_present(raw, "time_allocation_percent", "timeAllocationPercent"))

        return Concept(
            id=f"{source_id}:{slugify(name) or 'concept'}",
            source_ids=[source_id],
            name=name,
            definition=definition,
            key_points=string_list(first_present(raw, "key_points", "keyPoints")) or [definition],
            cognitive_type=self._cognitive_type(first_present(raw, "cognitive_type", "cognitiveType")),
            difficulty=self._difficulty(raw),
            tier=tier,
            mentioned_only=mentioned_only,
            bloom_level=bloom_level,
            definition_provided=definition_provided,
            time_allocation_percent=clamp(time_raw, 0.0, 100.0) if time_raw is not None else 0.0,
            learning_objectives=self._learning_objectives(
                first_present(raw, "learning_objectives", "learningObjectives"), ceiling
            ),
            assessment_spec=self._assessment_spec(first_present(raw, "assessment_spec", "assessmentSpec")),
            source_mapping=self._source_mapping(first_present(raw, "source_mapping", "sourceMapping")),
            one_sentence_summary=optional_text(first_present(raw, "one_sentence_summary", "oneSentenceSummary")),
            why_it_matters=optional_text(first_present(raw, "why_it_matters", "whyItMatters")),
        )

    def _difficulty(self, raw: Mapping[str, Any]) -> int:
        factors = first_present(raw, "difficulty_factors", "difficultyFactors")
        if isinstance(factors, Mapping):
            values = [
                coerce_number(first_present(factors, "abstractness")),
                coerce_number(first_present(factors, "prerequisite_depth", "prerequisiteDepth")),
                coerce_number(first_present(factors, "relational_complexity", "relationalComplexity")),
            ]
            if all(value is not None for value in values):
                return score_difficulty(*values, weights=self.config.difficulty_weights)
        difficulty = coerce_number(raw.get("difficulty"))
        if difficulty is None:
            return DEFAULT_DIFFICULTY
        return round_half_up(clamp(difficulty, 1, 10))

    @staticmethod
    def _bloom_level(value: Any) -> BloomLevel:
        try:
            return BloomLevel(str(value).strip().lower())
        except ValueError:
            return BloomLevel.UNDERSTAND

    @staticmethod
    def _cognitive_type(value: Any) -> CognitiveType:
        try:
            return CognitiveType(str(value).strip().lower())
        except ValueError:
            return CognitiveType.CONCEPTUAL

    def _learning_objectives(self, value: Any, ceiling: BloomLevel) -> List[LearningObjective]:
        if not isinstance(value, list):
            return []
        objectives: List[LearningObjective] = []
        for entry in value:
            if not isinstance(entry, Mapping):
                continue
            verb = optional_text(first_present(entry, "bloom_verb", "bloomVerb"))
            statement = optional_text(first_present(entry, "objective_statement", "objectiveStatement"))
            if verb is None or statement is None:
                continue
            verb_level = _VERB_LEVELS.get(verb.lower())
            if verb_level is not None and bloom_order(verb_level) > bloom_order(ceiling):
                verb = BLOOM_VERBS[ceiling][0]
            objectives.append(
                LearningObjective(
                    bloom_verb=verb,
                    objective_statement=statement,
                    success_criteria=string_list(first_present(entry, "success_criteria", "successCriteria")),
                )
            )
        return objectives[: self.config.max_learning_objectives]

    @staticmethod
    def _question_types(value: Any) -> List[QuestionType]:
        types: List[QuestionType] = []
        for item in string_list(value):
            try:
                types.append(QuestionType(item.lower()))
            except ValueError:
                continue
        return types

    def _assessment_spec(self, value: Any) -> Optional[AssessmentSpec]:
        if not isinstance(value, Mapping):
            return None
        sample = None
        raw_sample = first_present(value, "sample_question", "sampleQuestion")
        if isinstance(raw_sample, Mapping):
            sample_types = self._question_types([first_present(raw_sample, "question_type", "questionType")])
            question = optional_text(raw_sample.get("question"))
            answer = optional_text(first_present(raw_sample, "correct_answer", "correctAnswer"))
            if sample_types and question and answer:
                sample = SampleQuestion(
                    question_type=sample_types[0],
                    question=question,
                    correct_answer=answer,
                    explanation=optional_text(raw_sample.get("explanation")),
                )
        return AssessmentSpec(
            appropriate_question_types=self._question_types(
                first_present(value, "appropriate_question_types", "appropriateQuestionTypes")
            ),
            inappropriate_question_types=self._question_types(
                first_present(value, "inappropriate_question_types", "inappropriateQuestionTypes")
            ),
            sample_question=sample,
            mastery_indicators=string_list(first_present(value, "mastery_indicators", "masteryIndicators")),
            anti_patterns=string_list(first_present(value, "anti_patterns", "antiPatterns")),
        )

    @staticmethod
    def _segment(value: Any) -> Optional[Segment]:
        if not isinstance(value, Mapping):
            return None
        start = coerce_number(first_present(value, "start_sec", "startSec"))
        end = coerce_number(first_present(value, "end_sec", "endSec"))
        if start is None or end is None:
            return None
        return Segment(start_sec=start, end_sec=end)

    def _source_mapping(self, value: Any) -> Optional[SourceMapping]:
        if not isinstance(value, Mapping):
            return None
        primary = self._segment(first_present(value, "primary_segment", "primarySegment"))
        if primary is None:
            return None
        moments: List[KeyMoment] = []
        for entry in first_present(value, "key_moments", "keyMoments") or []:
            if not isinstance(entry, Mapping):
                continue
            timestamp = coerce_number(first_present(entry, "timestamp_sec", "timestampSec"))
            description = optional_text(entry.get("description"))
            if timestamp is not None and description:
                moments.append(KeyMoment(timestamp_sec=timestamp, description=description))
        return SourceMapping(
            primary_segment=primary,
            key_moments=moments,
            review_clip=self._segment(first_present(value, "review_clip", "reviewClip")),
        )


__all__ = ["ConceptExtractor", "score_difficulty", "slugify", "split_into_chunks"]
