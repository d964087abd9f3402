"""Typed errors raised by the content analysis passes."""

from __future__ import annotations

from typing import Any, Dict


class AnalysisError(RuntimeError):
    """Fatal failure of a single analysis pass.

    ``code`` is a short machine-readable tag (``UNUSABLE_SOURCE``,
    ``EXTRACTION_FAILED`` ...) and ``details`` carries whatever context the
    pass had when it gave up.
    """

    def __init__(self, code: str, message: str, *, details: Dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.details = dict(details or {})

    def __str__(self) -> str:
        return f"[{self.code}] {self.args[0]}"


class RoutingError(AnalysisError):
    """Pass 1 could not classify the source."""


class ExtractionError(AnalysisError):
    """Pass 2 could not produce concepts."""


class GraphBuildError(AnalysisError):
    """The project graph could not be loaded, merged or saved."""


class RoadmapError(AnalysisError):
    """Pass 3 could not assemble a roadmap."""


class ValidationGateError(AnalysisError):
    """A hard validation check blocked roadmap publication."""


class AnalysisCancelledError(AnalysisError):
    def __init__(self, source_id: str) -> None:
        super().__init__("CANCELLED", f"Analysis for source '{source_id}' was cancelled", details={"source_id": source_id})


__all__ = [
    "AnalysisCancelledError",
    "AnalysisError",
    "ExtractionError",
    "GraphBuildError",
    "RoadmapError",
    "RoutingError",
    "ValidationGateError",
]
