"""Batched rubric grading: one completion call scores every interaction in a batch."""

from __future__ import annotations

import json
import logging
from enum import Enum
from textwrap import dedent
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from curricore.core.config import ModelConfig, RubricConfig
from curricore.core.llm import (
    CompletionOptions,
    StructuredCompletionClient,
    StructuredOutputError,
    options_for_role,
)
from curricore.core.rubric import (
    MAX_SCORE,
    MIN_SCORE,
    RUBRIC_DIMENSION_DESCRIPTIONS,
    RUBRIC_DIMENSIONS,
    BatchEvaluationRequest,
    BatchEvaluationResponse,
    BatchInteraction,
    DimensionEvaluation,
    RubricDimension,
    RubricEvaluation,
    interaction_passed,
)
from curricore.core.validation import (
    PayloadShapeError,
    clamp,
    first_present,
    is_number,
    optional_text,
    require_list,
    require_mapping,
    round_half_up,
)

LOGGER = logging.getLogger(__name__)


class RubricErrorCode(str, Enum):
    AI_ERROR = "AI_ERROR"
    PARSE_ERROR = "PARSE_ERROR"
    EMPTY_BATCH = "EMPTY_BATCH"


class RubricEvaluationError(RuntimeError):
    """Raised for any batch failure; no partial results are ever returned."""

    def __init__(self, code: RubricErrorCode, message: str, cause: BaseException | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.cause = cause

    def __str__(self) -> str:
        return f"[{self.code.value}] {self.message}"


SYSTEM_PROMPT = dedent(
    """
    You are grading learner answers against a 0-3 rubric.

    Score only the dimensions listed for each interaction:
    0 = missing or wrong, 1 = partial, 2 = solid, 3 = excellent.

    Respond with JSON only:
    {
      "evaluations": [
        {
          "interactionId": "...",
          "dimensions": [{"dimension": "accuracy", "score": 2, "feedback": "..."}],
          "overallFeedback": "..."
        }
      ]
    }
    """
).strip()


class RubricEvaluationService:
    """Grades a batch of interactions with a single structured-completion call."""

    def __init__(
        self,
        client: StructuredCompletionClient,
        *,
        config: RubricConfig | None = None,
        options: CompletionOptions | None = None,
    ) -> None:
        self.client = client
        self.config = config or RubricConfig()
        self.options = options or options_for_role(ModelConfig().evaluator)

    def applicable_dimensions(self, interaction: BatchInteraction) -> List[RubricDimension]:
        configured = set(self.config.interaction_dimensions[interaction.interaction_type])
        return [dimension for dimension in RUBRIC_DIMENSIONS if dimension in configured]

    def evaluate_batch(self, request: BatchEvaluationRequest) -> BatchEvaluationResponse:
        if not request.interactions:
            raise RubricEvaluationError(RubricErrorCode.EMPTY_BATCH, "Batch contains no interactions")

        user_message = self.build_prompt(request.interactions)
        try:
            result = self.client.send(SYSTEM_PROMPT, user_message, self.options)
        except StructuredOutputError as exc:
            raise RubricEvaluationError(
                RubricErrorCode.PARSE_ERROR, f"Model reply was not valid JSON: {exc}", exc
            ) from exc
        except Exception as exc:
            raise RubricEvaluationError(RubricErrorCode.AI_ERROR, f"Evaluation call failed: {exc}", exc) from exc

        try:
            evaluations = self.parse_evaluations(result.data, request.interactions)
        except PayloadShapeError as exc:
            raise RubricEvaluationError(RubricErrorCode.PARSE_ERROR, str(exc), exc) from exc

        LOGGER.info(
            "Graded %d interactions for source %s (%d passed, %d tokens)",
            len(evaluations),
            request.source_id,
            sum(1 for evaluation in evaluations if evaluation.passed),
            result.usage.total_tokens,
        )
        return BatchEvaluationResponse(evaluations=evaluations, total_tokens=result.usage.total_tokens)

    # ------------------------------------------------------------------
    # Prompt
    # ------------------------------------------------------------------

    def build_prompt(self, interactions: Sequence[BatchInteraction]) -> str:
        used = {dimension for interaction in interactions for dimension in self.applicable_dimensions(interaction)}
        lines = ["Rubric dimensions:"]
        for dimension in RUBRIC_DIMENSIONS:
            if dimension in used:
                lines.append(f"- {dimension.value}: {RUBRIC_DIMENSION_DESCRIPTIONS[dimension]}")
        lines.append("")
        lines.append("Interactions:")
        listing = []
        for interaction in interactions:
            entry: Dict[str, Any] = {
                "interactionId": interaction.interaction_id,
                "concept": interaction.concept_name,
                "type": interaction.interaction_type.value,
                "dimensions": [dimension.value for dimension in self.applicable_dimensions(interaction)],
                "prompt": interaction.prompt,
                "answer": interaction.user_answer,
            }
            if interaction.expected_answer:
                entry["expectedAnswer"] = interaction.expected_answer
            listing.append(entry)
        lines.append(json.dumps(listing, indent=2))
        return "\n".join(lines)

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------

    def parse_evaluations(self, data: Any, interactions: Sequence[BatchInteraction]) -> List[RubricEvaluation]:
        payload = require_mapping(data, "evaluation response")
        entries = require_list(payload, "evaluations", "evaluation response")
        by_id = {interaction.interaction_id: interaction for interaction in interactions}

        parsed: Dict[str, RubricEvaluation] = {}
        for index, raw in enumerate(entries):
            entry = require_mapping(raw, f"evaluations[{index}]")
            interaction_id = optional_text(first_present(entry, "interactionId", "interaction_id"))
            if interaction_id is None:
                raise PayloadShapeError(f"evaluations[{index}] has no interactionId")
            interaction = by_id.get(interaction_id)
            if interaction is None:
                raise PayloadShapeError(f"Unknown interaction id '{interaction_id}'")
            if interaction_id in parsed:
                raise PayloadShapeError(f"Duplicate evaluation for interaction '{interaction_id}'")
            parsed[interaction_id] = self._evaluation(entry, interaction)

        missing = [interaction.interaction_id for interaction in interactions if interaction.interaction_id not in parsed]
        if missing:
            raise PayloadShapeError(f"No evaluation returned for: {', '.join(missing)}")
        return [parsed[interaction.interaction_id] for interaction in interactions]

    def _evaluation(self, entry: Mapping[str, Any], interaction: BatchInteraction) -> RubricEvaluation:
        applicable = self.applicable_dimensions(interaction)
        raw_dimensions = self._dimension_entries(entry, interaction.interaction_id)

        dimensions: List[DimensionEvaluation] = []
        for dimension in applicable:
            raw = raw_dimensions.get(dimension.value)
            if raw is None:
                raise PayloadShapeError(
                    f"Interaction '{interaction.interaction_id}' is missing a score for {dimension.value}"
                )
            score, feedback = raw
            if score is None:
                raise PayloadShapeError(
                    f"Interaction '{interaction.interaction_id}' has a non-numeric {dimension.value} score"
                )
            dimensions.append(DimensionEvaluation(dimension=dimension, score=score, feedback=feedback))

        scores = {item.dimension: item.score for item in dimensions}
        return RubricEvaluation(
            interaction_id=interaction.interaction_id,
            concept_id=interaction.concept_id,
            dimensions=dimensions,
            passed=interaction_passed(scores, applicable, self.config.pass_thresholds),
            overall_feedback=optional_text(first_present(entry, "overallFeedback", "overall_feedback")) or "",
        )

    @staticmethod
    def _dimension_entries(entry: Mapping[str, Any], interaction_id: str) -> Dict[str, Tuple[Optional[int], str]]:
        """Accepts either a list of ``{dimension, score}`` objects or a ``{dimension: score}`` map.

        A non-numeric score is kept as ``None`` so that only applicable dimensions reject it.
        """

        raw = first_present(entry, "dimensions", "scores")
        if isinstance(raw, Mapping):
            items = [{"dimension": key, "score": value} for key, value in raw.items()]
        elif isinstance(raw, list):
            items = raw
        else:
            raise PayloadShapeError(f"Interaction '{interaction_id}' has no dimension scores")

        result: Dict[str, Tuple[Optional[int], str]] = {}
        for item in items:
            if not isinstance(item, Mapping):
                raise PayloadShapeError(f"Interaction '{interaction_id}' has a malformed dimension entry")
            name = optional_text(item.get("dimension"))
            if name is None:
                continue
            score = item.get("score")
            value = round_half_up(clamp(float(score), MIN_SCORE, MAX_SCORE)) if is_number(score) else None
            result[name.lower()] = (value, optional_text(item.get("feedback")) or "")
        return result


__all__ = ["RubricErrorCode", "RubricEvaluationError", "RubricEvaluationService", "SYSTEM_PROMPT"]
