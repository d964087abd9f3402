"""Drives one source through the three passes and tracks its status.

Each source gets its own :class:`SourceRun`, so pipelines for different
sources never share mutable state. The only shared structure is the project
graph, which is merged under a per-project lock.
"""

from __future__ import annotations

import logging
import sqlite3
import threading
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Literal, Sequence, Tuple

from curricore.core.config import PipelineConfig
from curricore.core.errors import AnalysisCancelledError, AnalysisError, GraphBuildError, ValidationGateError
from curricore.core.llm import StructuredCompletionClient, options_for_role
from curricore.core.pedagogy import (
    Concept,
    ContentAnalysis,
    PipelineStage,
    ProjectGraph,
    Relationship,
    Roadmap,
)
from curricore.core.provenance import ProvenanceEvent, ProvenanceLogger
from knowledge_store.storage import InMemoryProjectGraphStore, ProjectGraphStore, ProjectLocks

from .concept_extractor import ConceptExtractor
from .content_router import ContentRouter
from .knowledge_graph import KnowledgeGraphBuilder
from .misconceptions import MisconceptionAnnotator
from .roadmap_architect import RoadmapArchitect
from .validation_gate import ValidationGate

LOGGER_NAME = "curricore.pipeline"

STAGE_ORDER: Tuple[PipelineStage, ...] = (
    PipelineStage.ROUTING_CONTENT,
    PipelineStage.EXTRACTING_CONCEPTS,
    PipelineStage.GENERATING_MISCONCEPTIONS,
    PipelineStage.BUILDING_GRAPH,
    PipelineStage.ARCHITECTING_ROADMAP,
    PipelineStage.VALIDATING,
)

STAGE_PROGRESS: Dict[PipelineStage, Tuple[int, int]] = {
    PipelineStage.PENDING: (0, 0),
    PipelineStage.ROUTING_CONTENT: (0, 10),
    PipelineStage.EXTRACTING_CONCEPTS: (10, 45),
    PipelineStage.GENERATING_MISCONCEPTIONS: (45, 60),
    PipelineStage.BUILDING_GRAPH: (60, 75),
    PipelineStage.ARCHITECTING_ROADMAP: (75, 90),
    PipelineStage.VALIDATING: (90, 100),
    PipelineStage.COMPLETED: (100, 100),
}

StageCallback = Callable[[str, PipelineStage, int], None]
ProgressCallback = Callable[[str, int], None]


@dataclass(slots=True)
class SourceDocument:
    """Already-transcribed source text plus the metadata Pass 1 needs."""

    source_id: str
    project_id: str
    text: str
    duration_seconds: int | None = None
    kind: Literal["video", "pdf", "url", "text"] = "text"


@dataclass(slots=True)
class AnalysisStatus:
    source_id: str
    stage: PipelineStage = PipelineStage.PENDING
    progress: int = 0
    error: str | None = None
    error_code: str | None = None
    last_failed_stage: PipelineStage | None = None
    warnings: List[str] = field(default_factory=list)
    started_at: datetime | None = None
    completed_at: datetime | None = None


@dataclass(slots=True)
class SourceRun:
    """Stage outputs for one source; completed stages are reused on retry."""

    source: SourceDocument
    status: AnalysisStatus
    analysis: ContentAnalysis | None = None
    concepts: List[Concept] | None = None
    annotated: List[Concept] | None = None
    project_graph: ProjectGraph | None = None
    roadmap_concepts: List[Concept] | None = None
    roadmap_relationships: List[Relationship] | None = None
    roadmap: Roadmap | None = None
    cancel_event: threading.Event = field(default_factory=threading.Event)


@dataclass(slots=True)
class AnalysisOutcome:
    source_id: str
    analysis: ContentAnalysis
    concepts: List[Concept]
    relationships: List[Relationship]
    project_graph: ProjectGraph
    roadmap: Roadmap
    warnings: List[str] = field(default_factory=list)


@dataclass(slots=True)
class BatchAnalysisResult:
    outcomes: Dict[str, AnalysisOutcome] = field(default_factory=dict)
    errors: Dict[str, Exception] = field(default_factory=dict)


class ContentAnalysisPipeline:
    """Sequential three-pass analysis per source, parallel across sources."""

    def __init__(
        self,
        client: StructuredCompletionClient,
        *,
        config: PipelineConfig | None = None,
        store: ProjectGraphStore | None = None,
        locks: ProjectLocks | None = None,
        provenance: ProvenanceLogger | None = None,
        on_stage_change: StageCallback | None = None,
        on_progress: ProgressCallback | None = None,
        logger: logging.Logger | None = None,
    ) -> None:
        self.config = config or PipelineConfig()
        self.store = store or InMemoryProjectGraphStore()
        self.locks = locks or ProjectLocks()
        self.provenance = provenance
        self.on_stage_change = on_stage_change
        self.on_progress = on_progress
        self.logger = logger or logging.getLogger(LOGGER_NAME)

        models = self.config.models
        max_tokens = models.default_max_tokens
        self.router = ContentRouter(
            client, config=self.config.routing, options=options_for_role(models.router, default_max_tokens=max_tokens)
        )
        self.extractor = ConceptExtractor(
            client,
            config=self.config.extraction,
            options=options_for_role(models.extractor, default_max_tokens=max_tokens),
        )
        self.annotator = MisconceptionAnnotator(
            client,
            config=self.config.annotation,
            options=options_for_role(models.annotator, default_max_tokens=max_tokens),
        )
        self.graph_builder = KnowledgeGraphBuilder(
            client, config=self.config.graph, options=options_for_role(models.graph, default_max_tokens=max_tokens)
        )
        self.architect = RoadmapArchitect(
            client,
            config=self.config.roadmap,
            options=options_for_role(models.architect, default_max_tokens=max_tokens),
            gate=ValidationGate(self.config.roadmap),
        )

        self._runs: Dict[str, SourceRun] = {}
        self._runs_lock = threading.Lock()
        self._handlers: Dict[PipelineStage, Callable[[SourceRun], None]] = {
            PipelineStage.ROUTING_CONTENT: self._route,
            PipelineStage.EXTRACTING_CONCEPTS: self._extract,
            PipelineStage.GENERATING_MISCONCEPTIONS: self._annotate,
            PipelineStage.BUILDING_GRAPH: self._build_graph,
            PipelineStage.ARCHITECTING_ROADMAP: self._architect,
            PipelineStage.VALIDATING: self._validate,
        }

    # ------------------------------------------------------------------
    # Public API
    # ------------------------------------------------------------------

    def analyze(self, source: SourceDocument) -> AnalysisOutcome:
        run = SourceRun(source=source, status=AnalysisStatus(source_id=source.source_id))
        with self._runs_lock:
            self._runs[source.source_id] = run
        return self._execute(run, PipelineStage.ROUTING_CONTENT)

    def retry_analysis(self, source_id: str, *, from_stage: PipelineStage | None = None) -> AnalysisOutcome:
        """Resume a failed run at its failed stage (or ``from_stage``), keeping earlier outputs."""

        run = self._get_run(source_id)
        start = from_stage or run.status.last_failed_stage
        if start is None:
            raise ValueError(f"Source '{source_id}' has no failed stage to retry")
        if start not in STAGE_ORDER:
            raise ValueError(f"Cannot retry from stage '{start.value}'")
        missing = self._missing_inputs(run, start)
        if missing:
            raise ValueError(f"Cannot resume '{source_id}' at {start.value}; missing outputs from: {', '.join(missing)}")
        run.cancel_event.clear()
        run.status.error = None
        run.status.error_code = None
        self.logger.info("Retrying analysis for %s from %s", source_id, start.value)
        return self._execute(run, start)

    def cancel_analysis(self, source_id: str) -> bool:
        """Request cancellation; takes effect before the next stage starts."""
        with self._runs_lock:
            run = self._runs.get(source_id)
        if run is None or run.status.stage in (PipelineStage.COMPLETED, PipelineStage.FAILED):
            return False
        run.cancel_event.set()
        return True

    def get_status(self, source_id: str) -> AnalysisStatus:
        run = self._get_run(source_id)
        return replace(run.status, warnings=list(run.status.warnings))

    def analyze_sources(self, sources: Sequence[SourceDocument], *, max_workers: int = 4) -> BatchAnalysisResult:
        """Analyze several sources concurrently; failures are collected per source id."""

        result = BatchAnalysisResult()
        with ThreadPoolExecutor(max_workers=max_workers) as pool:
            futures = {source.source_id: pool.submit(self.analyze, source) for source in sources}
            for source_id, future in futures.items():
                try:
                    result.outcomes[source_id] = future.result()
                except Exception as exc:
                    if not isinstance(exc, AnalysisError):
                        self.logger.exception("Unexpected failure analyzing source %s", source_id)
                    result.errors[source_id] = exc
        return result

    # ------------------------------------------------------------------
    # Execution
    # ------------------------------------------------------------------

    def _get_run(self, source_id: str) -> SourceRun:
        with self._runs_lock:
            run = self._runs.get(source_id)
        if run is None:
            raise KeyError(f"No analysis recorded for source '{source_id}'")
        return run

    @staticmethod
    def _missing_inputs(run: SourceRun, start: PipelineStage) -> List[str]:
        required: Dict[PipelineStage, Tuple[str, Any]] = {
            PipelineStage.ROUTING_CONTENT: ("routing_content", run.analysis),
            PipelineStage.EXTRACTING_CONCEPTS: ("extracting_concepts", run.concepts),
            PipelineStage.GENERATING_MISCONCEPTIONS: ("generating_misconceptions", run.annotated),
            PipelineStage.BUILDING_GRAPH: ("building_graph", run.roadmap_concepts),
            PipelineStage.ARCHITECTING_ROADMAP: ("architecting_roadmap", run.roadmap),
        }
        upstream = STAGE_ORDER[: STAGE_ORDER.index(start)]
        return [required[stage][0] for stage in upstream if required[stage][1] is None]

    def _execute(self, run: SourceRun, start: PipelineStage) -> AnalysisOutcome:
        source_id = run.source.source_id
        run.status.started_at = run.status.started_at or datetime.now(timezone.utc)
        for stage in STAGE_ORDER[STAGE_ORDER.index(start) :]:
            if run.cancel_event.is_set():
                error = AnalysisCancelledError(source_id)
                self._fail(run, stage, error)
                raise error
            self._enter(run, stage)
            try:
                self._handlers[stage](run)
            except Exception as exc:
                self._fail(run, stage, exc)
                raise
            self._complete_stage(run, stage)

        run.status.stage = PipelineStage.COMPLETED
        run.status.progress = 100
        run.status.last_failed_stage = None
        run.status.completed_at = datetime.now(timezone.utc)
        self._notify(run)
        self._log_stage(run, PipelineStage.COMPLETED, "Analysis completed", {"levels": len(run.roadmap.levels)})
        return AnalysisOutcome(
            source_id=source_id,
            analysis=run.analysis,
            concepts=list(run.roadmap_concepts),
            relationships=list(run.roadmap_relationships),
            project_graph=run.project_graph,
            roadmap=run.roadmap,
            warnings=list(run.status.warnings),
        )

    def _enter(self, run: SourceRun, stage: PipelineStage) -> None:
        run.status.stage = stage
        run.status.progress = STAGE_PROGRESS[stage][0]
        self.logger.info("Source %s entering %s", run.source.source_id, stage.value)
        self._notify(run)
        self._log_stage(run, stage, "Stage started")

    def _complete_stage(self, run: SourceRun, stage: PipelineStage) -> None:
        run.status.progress = STAGE_PROGRESS[stage][1]
        if self.on_progress is not None:
            self.on_progress(run.source.source_id, run.status.progress)
        self._log_stage(run, stage, "Stage completed")

    def _fail(self, run: SourceRun, stage: PipelineStage, exc: Exception) -> None:
        run.status.stage = PipelineStage.FAILED
        run.status.last_failed_stage = stage
        run.status.error = str(exc)
        run.status.error_code = getattr(exc, "code", type(exc).__name__)
        self.logger.error("Source %s failed during %s: %s", run.source.source_id, stage.value, exc)
        self._notify(run)
        self._log_stage(run, PipelineStage.FAILED, "Stage failed", {"failed_stage": stage.value, "error": str(exc)})

    def _notify(self, run: SourceRun) -> None:
        if self.on_stage_change is not None:
            self.on_stage_change(run.source.source_id, run.status.stage, run.status.progress)
        if self.on_progress is not None:
            self.on_progress(run.source.source_id, run.status.progress)

    def _log_stage(
        self,
        run: SourceRun,
        stage: PipelineStage,
        message: str,
        payload: Dict[str, Any] | None = None,
    ) -> None:
        if self.provenance is None:
            return
        self.provenance.log(
            ProvenanceEvent(
                stage=stage.value,
                message=message,
                agent=LOGGER_NAME,
                source_id=run.source.source_id,
                project_id=run.source.project_id,
                payload=payload or {},
            )
        )

    def _add_warnings(self, run: SourceRun, warnings: Sequence[str]) -> None:
        for message in warnings:
            if message not in run.status.warnings:
                run.status.warnings.append(message)

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    def _route(self, run: SourceRun) -> None:
        run.analysis = self.router.route(run.source.text, run.source.duration_seconds)
        self._add_warnings(run, run.analysis.warnings)

    def _extract(self, run: SourceRun) -> None:
        run.concepts = self.extractor.extract(run.source.source_id, run.source.text, run.analysis)

    def _annotate(self, run: SourceRun) -> None:
        if not self.config.annotation.enabled:
            run.annotated = list(run.concepts)
            return
        warnings: List[str] = []
        run.annotated = self.annotator.annotate(run.concepts, warnings)
        self._add_warnings(run, warnings)

    def _build_graph(self, run: SourceRun) -> None:
        source = run.source
        with self.locks.hold(source.project_id):
            try:
                graph = self.store.load(source.project_id) or ProjectGraph(project_id=source.project_id)
                merge = self.graph_builder.extend_project(graph, run.annotated, source_id=source.source_id)
                self.store.save(merge.graph)
            except sqlite3.Error as exc:
                raise GraphBuildError("STORE_FAILED", f"Project graph store failed: {exc}") from exc
        self._add_warnings(run, merge.warnings)

        nodes = {concept.id: concept for concept in merge.graph.concepts}
        roadmap_concepts: List[Concept] = []
        seen: set[str] = set()
        for concept in run.annotated:
            project_id = merge.aliases[concept.id]
            if project_id in seen:
                continue
            seen.add(project_id)
            roadmap_concepts.append(
                concept.model_copy(update={"id": project_id, "source_ids": list(nodes[project_id].source_ids)})
            )
        run.project_graph = merge.graph
        run.roadmap_concepts = roadmap_concepts
        run.roadmap_relationships = [
            edge
            for edge in merge.graph.relationships
            if edge.from_concept_id in seen and edge.to_concept_id in seen
        ]

    def _architect(self, run: SourceRun) -> None:
        run.roadmap = self.architect.build(run.roadmap_concepts, run.roadmap_relationships, run.analysis)
        self._add_warnings(run, run.roadmap.warnings)

    def _validate(self, run: SourceRun) -> None:
        results = run.roadmap.validation_results
        self._add_warnings(run, results.warnings)
        if not run.roadmap.publishable:
            raise ValidationGateError(
                "ROADMAP_BLOCKED",
                f"Roadmap failed hard validation checks: {', '.join(run.roadmap.blocking_failures)}",
                details={"blocking_failures": list(run.roadmap.blocking_failures), "warnings": list(results.warnings)},
            )


__all__ = [
    "AnalysisOutcome",
    "AnalysisStatus",
    "BatchAnalysisResult",
    "ContentAnalysisPipeline",
    "STAGE_ORDER",
    "STAGE_PROGRESS",
    "SourceDocument",
    "SourceRun",
]
