"""Three-pass content analysis: routing, extraction, roadmap architecture."""

from __future__ import annotations

from .concept_extractor import ConceptExtractor
from .content_router import ContentRouter
from .knowledge_graph import KnowledgeGraphBuilder
from .misconceptions import MisconceptionAnnotator
from .pipeline import AnalysisOutcome, AnalysisStatus, ContentAnalysisPipeline, SourceDocument
from .roadmap_architect import RoadmapArchitect
from .validation_gate import ValidationGate

__all__ = [
    "AnalysisOutcome",
    "AnalysisStatus",
    "ConceptExtractor",
    "ContentAnalysisPipeline",
    "ContentRouter",
    "KnowledgeGraphBuilder",
    "MisconceptionAnnotator",
    "RoadmapArchitect",
    "SourceDocument",
    "ValidationGate",
]
