import threading

import pytest

from apps.analysis.pipeline import ContentAnalysisPipeline, SourceDocument
from curricore.core.config import PipelineConfig, RoadmapConfig
from curricore.core.errors import AnalysisCancelledError, ExtractionError, ValidationGateError
from curricore.core.llm import CompletionError
from curricore.core.pedagogy import PipelineStage
from curricore.core.provenance import ProvenanceLogger
from knowledge_store.storage import InMemoryProjectGraphStore
from tests.mocks.completion_client import (
    ANNOTATOR,
    EXTRACTOR,
    GRAPH,
    ROUTER,
    FakeCompletionClient,
    scripted_sequence,
)
from tests.mocks.payloads import CONCEPTUAL_TEXT, caching_concepts, conceptual_route

MISCONCEPTIONS = {
    "concepts": [
        {
            "concept_name": "Cache Invalidation",
            "misconceptions": [
                {
                    "misconception": "Invalidation happens automatically",
                    "reality": "Someone has to decide when data is stale",
                    "trigger_detection": "automatic|by itself",
                    "remediation": "Trace a write through the system",
                }
            ],
        }
    ]
}
RELATIONSHIPS = {
    "relationships": [{"from": "Caching", "to": "Eviction Policy", "type": "prerequisite", "strength": 0.9}]
}


def _client(**overrides) -> FakeCompletionClient:
    responses = {
        ROUTER: conceptual_route(),
        EXTRACTOR: caching_concepts(),
        ANNOTATOR: MISCONCEPTIONS,
        GRAPH: RELATIONSHIPS,
    }
    responses.update(overrides)
    return FakeCompletionClient(responses)


def _source(source_id: str = "src-1", project_id: str = "proj", duration: int | None = 600) -> SourceDocument:
    return SourceDocument(source_id=source_id, project_id=project_id, text=CONCEPTUAL_TEXT, duration_seconds=duration)


def test_full_run_produces_roadmap_and_progress(tmp_path) -> None:
    stages: list[tuple[PipelineStage, int]] = []
    provenance = ProvenanceLogger(tmp_path / "provenance.jsonl")
    pipeline = ContentAnalysisPipeline(
        _client(),
        provenance=provenance,
        on_stage_change=lambda source_id, stage, progress: stages.append((stage, progress)),
    )

    outcome = pipeline.analyze(_source())

    assert [stage for stage, _ in stages] == [
        PipelineStage.ROUTING_CONTENT,
        PipelineStage.EXTRACTING_CONCEPTS,
        PipelineStage.GENERATING_MISCONCEPTIONS,
        PipelineStage.BUILDING_GRAPH,
        PipelineStage.ARCHITECTING_ROADMAP,
        PipelineStage.VALIDATING,
        PipelineStage.COMPLETED,
    ]
    progress = [value for _, value in stages]
    assert progress == sorted(progress)
    assert progress[-1] == 100

    roadmap = outcome.roadmap
    assert roadmap.publishable
    assert roadmap.epitome_concept_id == "src-1:caching"
    assert roadmap.glossary_concept_ids == ["src-1:memcached"]
    placed = {concept_id for level in roadmap.levels for concept_id in level.concept_ids}
    assert placed == {"src-1:caching", "src-1:cache-invalidation", "src-1:eviction-policy"}

    invalidation = next(concept for concept in outcome.concepts if concept.name == "Cache Invalidation")
    assert invalidation.common_misconceptions[0].trigger_detection == "automatic|by itself"

    status = pipeline.get_status("src-1")
    assert status.stage == PipelineStage.COMPLETED
    assert status.progress == 100
    assert status.error is None

    events = provenance.read()
    assert events[-1].stage == PipelineStage.COMPLETED.value
    assert all(event.source_id == "src-1" for event in events)


def test_failed_stage_is_retried_without_rerunning_upstream() -> None:
    client = _client(**{EXTRACTOR: scripted_sequence(CompletionError("rate limited"), caching_concepts())})
    pipeline = ContentAnalysisPipeline(client)

    with pytest.raises(ExtractionError):
        pipeline.analyze(_source())
    status = pipeline.get_status("src-1")
    assert status.stage == PipelineStage.FAILED
    assert status.last_failed_stage == PipelineStage.EXTRACTING_CONCEPTS
    assert status.error_code == "EXTRACTION_FAILED"

    outcome = pipeline.retry_analysis("src-1")

    assert outcome.roadmap.levels
    assert len(client.calls_for(ROUTER)) == 1
    assert len(client.calls_for(EXTRACTOR)) == 2
    assert pipeline.get_status("src-1").stage == PipelineStage.COMPLETED


def test_retry_requires_a_failed_stage() -> None:
    pipeline = ContentAnalysisPipeline(_client())
    pipeline.analyze(_source())
    with pytest.raises(ValueError):
        pipeline.retry_analysis("src-1")
    with pytest.raises(KeyError):
        pipeline.get_status("unknown")


def test_cancel_stops_before_the_next_stage() -> None:
    pipeline_ref: dict = {}

    def on_stage(source_id, stage, progress):
        if stage == PipelineStage.EXTRACTING_CONCEPTS:
            assert pipeline_ref["pipeline"].cancel_analysis(source_id)

    client = _client()
    pipeline = ContentAnalysisPipeline(client, on_stage_change=on_stage)
    pipeline_ref["pipeline"] = pipeline

    with pytest.raises(AnalysisCancelledError):
        pipeline.analyze(_source())
    status = pipeline.get_status("src-1")
    assert status.error_code == "CANCELLED"
    assert status.last_failed_stage == PipelineStage.GENERATING_MISCONCEPTIONS
    assert client.calls_for(ANNOTATOR) == []
    assert not pipeline.cancel_analysis("src-1")


def test_blocked_roadmap_raises_after_being_built() -> None:
    config = PipelineConfig(roadmap=RoadmapConfig(hard_failure_checks=["bloom_ceiling", "proportionality"]))
    pipeline = ContentAnalysisPipeline(_client(), config=config)

    with pytest.raises(ValidationGateError) as excinfo:
        pipeline.analyze(_source(duration=30))

    assert excinfo.value.code == "ROADMAP_BLOCKED"
    assert excinfo.value.details["blocking_failures"] == ["proportionality"]
    status = pipeline.get_status("src-1")
    assert status.last_failed_stage == PipelineStage.VALIDATING
    assert any("Over-extraction" in warning for warning in status.warnings)


def test_recoverable_failures_become_warnings() -> None:
    client = _client(**{ANNOTATOR: CompletionError("annotator down"), GRAPH: CompletionError("graph down")})
    outcome = ContentAnalysisPipeline(client).analyze(_source())
    assert outcome.roadmap.levels
    assert any("Misconception annotation failed" in warning for warning in outcome.warnings)
    assert any("Relationship inference failed" in warning for warning in outcome.warnings)


def test_annotation_can_be_disabled() -> None:
    client = _client()
    config = PipelineConfig.model_validate({"annotation": {"enabled": False}})
    ContentAnalysisPipeline(client, config=config).analyze(_source())
    assert client.calls_for(ANNOTATOR) == []


def test_sources_for_one_project_merge_concurrently() -> None:
    store = InMemoryProjectGraphStore()
    pipeline = ContentAnalysisPipeline(_client(), store=store)
    sources = [_source(f"src-{index}") for index in range(1, 5)]

    result = pipeline.analyze_sources(sources, max_workers=4)

    assert result.errors == {}
    assert sorted(result.outcomes) == ["src-1", "src-2", "src-3", "src-4"]
    graph = store.load("proj")
    assert sorted(graph.source_ids) == ["src-1", "src-2", "src-3", "src-4"]
    assert len(graph.concepts) == 4
    caching = next(concept for concept in graph.concepts if concept.name == "Caching")
    assert sorted(caching.source_ids) == ["src-1", "src-2", "src-3", "src-4"]


def test_failures_in_a_batch_are_reported_per_source() -> None:
    lock = threading.Lock()
    seen: list[str] = []

    def extract(user_message: str):
        with lock:
            seen.append(user_message)
        return caching_concepts()

    pipeline = ContentAnalysisPipeline(_client(**{EXTRACTOR: extract}))
    bad = SourceDocument(source_id="empty", project_id="proj", text="too short")
    result = pipeline.analyze_sources([_source("good"), bad], max_workers=2)

    assert list(result.outcomes) == ["good"]
    assert result.errors["empty"].code == "UNUSABLE_SOURCE"
    assert len(seen) == 1


def test_transport_exceptions_in_a_batch_become_routing_errors() -> None:
    pipeline = ContentAnalysisPipeline(_client(**{ROUTER: ConnectionError("reset")}))

    result = pipeline.analyze_sources([_source("a"), _source("b")], max_workers=2)

    assert result.outcomes == {}
    assert set(result.errors) == {"a", "b"}
    assert {error.code for error in result.errors.values()} == {"CLASSIFICATION_FAILED"}
    assert pipeline.get_status("a").last_failed_stage == PipelineStage.ROUTING_CONTENT


class _UnreachableStore(InMemoryProjectGraphStore):
    def load(self, project_id):
        raise RuntimeError("storage backend unreachable")


def test_unexpected_stage_exception_is_recorded_per_source() -> None:
    pipeline = ContentAnalysisPipeline(_client(), store=_UnreachableStore())

    result = pipeline.analyze_sources([_source("a")], max_workers=1)

    assert isinstance(result.errors["a"], RuntimeError)
    status = pipeline.get_status("a")
    assert status.stage == PipelineStage.FAILED
    assert status.last_failed_stage == PipelineStage.BUILDING_GRAPH
    assert status.error_code == "RuntimeError"


def test_annotation_exception_does_not_fail_the_run() -> None:
    pipeline = ContentAnalysisPipeline(_client(**{ANNOTATOR: RuntimeError("annotator crashed")}))

    outcome = pipeline.analyze(_source())

    assert outcome.roadmap.levels
    assert any("annotator crashed" in warning for warning in outcome.warnings)
    assert pipeline.get_status("src-1").stage == PipelineStage.COMPLETED
