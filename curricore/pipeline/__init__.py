"""Bootstrap utilities for the analysis pipeline."""

from __future__ import annotations

from .bootstrap import bootstrap_pipeline, build_analysis_pipeline, build_rubric_service
from .context import PipelineContext

__all__ = [
    "PipelineContext",
    "bootstrap_pipeline",
    "build_analysis_pipeline",
    "build_rubric_service",
]
