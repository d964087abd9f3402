"""Batched rubric evaluation of learner interactions."""

from __future__ import annotations

from .rubric_service import RubricErrorCode, RubricEvaluationError, RubricEvaluationService

__all__ = ["RubricErrorCode", "RubricEvaluationError", "RubricEvaluationService"]
