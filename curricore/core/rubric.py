"""Rubric dimensions, thresholds and the batch evaluation records."""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field


class RubricDimension(str, Enum):
    ACCURACY = "accuracy"
    COMPLETENESS = "completeness"
    DEPTH = "depth"
    REASONING = "reasoning"
    SYNTHESIS = "synthesis"
    TRANSFER = "transfer"


class InteractionType(str, Enum):
    FREE_RECALL = "free_recall"
    FILL_IN_BLANK = "fill_in_blank"
    SEQUENCE = "sequence"
    CONNECT_DOTS = "connect_dots"
    MCQ = "mcq"


RUBRIC_DIMENSIONS: Tuple[RubricDimension, ...] = tuple(RubricDimension)

RUBRIC_DIMENSION_DESCRIPTIONS: Dict[RubricDimension, str] = {
    RubricDimension.ACCURACY: "Factual correctness of the answer",
    RubricDimension.COMPLETENESS: "Coverage of the key points",
    RubricDimension.DEPTH: "Explanation beyond surface-level recall",
    RubricDimension.REASONING: "Logical justification of claims",
    RubricDimension.SYNTHESIS: "Connections drawn between ideas",
    RubricDimension.TRANSFER: "Application to new contexts",
}

RUBRIC_PASS_THRESHOLDS: Dict[RubricDimension, int] = {
    RubricDimension.ACCURACY: 2,
    RubricDimension.COMPLETENESS: 2,
    RubricDimension.DEPTH: 1,
    RubricDimension.REASONING: 2,
    RubricDimension.SYNTHESIS: 2,
    RubricDimension.TRANSFER: 2,
}

INTERACTION_RUBRIC_DIMENSIONS: Dict[InteractionType, Tuple[RubricDimension, ...]] = {
    InteractionType.FREE_RECALL: RUBRIC_DIMENSIONS,
    InteractionType.FILL_IN_BLANK: (RubricDimension.ACCURACY, RubricDimension.COMPLETENESS),
    InteractionType.SEQUENCE: (RubricDimension.ACCURACY, RubricDimension.REASONING),
    InteractionType.CONNECT_DOTS: (RubricDimension.SYNTHESIS, RubricDimension.TRANSFER),
    InteractionType.MCQ: (RubricDimension.ACCURACY,),
}

MIN_SCORE = 0
MAX_SCORE = 3


def check_dimension_passed(
    dimension: RubricDimension | str,
    score: int,
    thresholds: Mapping[RubricDimension, int] | None = None,
) -> bool:
    """Return True when ``score`` meets the fixed threshold for ``dimension``."""
    table = thresholds if thresholds is not None else RUBRIC_PASS_THRESHOLDS
    return score >= table[RubricDimension(dimension)]


def interaction_passed(
    scores: Mapping[RubricDimension | str, int],
    applicable: Sequence[RubricDimension | str],
    thresholds: Mapping[RubricDimension, int] | None = None,
) -> bool:
    """An interaction passes only when every applicable dimension meets its threshold."""
    normalized = {RubricDimension(key): value for key, value in scores.items()}
    return all(
        check_dimension_passed(dimension, normalized[RubricDimension(dimension)], thresholds)
        for dimension in applicable
    )


class BatchInteraction(BaseModel):
    interaction_id: str = Field(..., min_length=1)
    concept_id: str
    concept_name: str
    interaction_type: InteractionType
    prompt: str
    user_answer: str
    expected_answer: Optional[str] = None


class DimensionEvaluation(BaseModel):
    dimension: RubricDimension
    score: int = Field(..., ge=MIN_SCORE, le=MAX_SCORE)
    feedback: str = ""


class RubricEvaluation(BaseModel):
    interaction_id: str
    concept_id: str
    dimensions: List[DimensionEvaluation]
    passed: bool
    overall_feedback: str = ""


class BatchEvaluationRequest(BaseModel):
    source_id: str
    interactions: List[BatchInteraction] = Field(default_factory=list)


class BatchEvaluationResponse(BaseModel):
    evaluations: List[RubricEvaluation]
    total_tokens: int = Field(default=0, ge=0)


__all__ = [
    "BatchEvaluationRequest",
    "BatchEvaluationResponse",
    "BatchInteraction",
    "DimensionEvaluation",
    "INTERACTION_RUBRIC_DIMENSIONS",
    "InteractionType",
    "MAX_SCORE",
    "MIN_SCORE",
    "RUBRIC_DIMENSIONS",
    "RUBRIC_DIMENSION_DESCRIPTIONS",
    "RUBRIC_PASS_THRESHOLDS",
    "RubricDimension",
    "RubricEvaluation",
    "check_dimension_passed",
    "interaction_passed",
]
