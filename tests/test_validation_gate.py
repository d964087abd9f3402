from apps.analysis.validation_gate import ValidationGate, format_names
from curricore.core.config import RoadmapConfig
from curricore.core.pedagogy import (
    AssessmentSpec,
    BloomLevel,
    ContentType,
    LearningObjective,
    QuestionType,
    Segment,
    SourceMapping,
)
from tests.mocks.payloads import make_analysis, make_concept

OBJECTIVE = LearningObjective(bloom_verb="explain", objective_statement="Explain it")
FITTING_SPEC = AssessmentSpec(appropriate_question_types=[QuestionType.MULTIPLE_CHOICE])


def _ready(concept_id: str, **overrides):
    fields = {"learning_objectives": [OBJECTIVE], "assessment_spec": FITTING_SPEC}
    fields.update(overrides)
    return make_concept(concept_id, **fields)


def test_clean_roadmap_passes_every_check() -> None:
    outcome = ValidationGate().run([_ready("a"), _ready("b")], make_analysis(duration_seconds=120), 5.0)
    results = outcome.results
    assert results.proportionality_passed
    assert results.bloom_ceiling_passed
    assert results.time_sanity_passed
    assert results.learning_objectives_passed is True
    assert results.assessment_spec_passed is True
    assert results.source_mapping_passed is None
    assert outcome.publishable
    assert results.warnings == []


def test_bloom_violation_blocks_publication() -> None:
    concepts = [_ready("a", bloom_level=BloomLevel.EVALUATE)]
    analysis = make_analysis(ContentType.SURVEY, ceiling=BloomLevel.UNDERSTAND, multiplier=1.5)
    outcome = ValidationGate().run(concepts, analysis, 60.0)
    assert outcome.results.bloom_ceiling_passed is False
    assert outcome.blocking_failures == ["bloom_ceiling"]
    assert not outcome.publishable


def test_over_extraction_is_advisory_by_default() -> None:
    concepts = [_ready(f"c{index}") for index in range(4)]
    outcome = ValidationGate().run(concepts, make_analysis(duration_seconds=60), 3.0)
    assert outcome.results.proportionality_passed is False
    assert "proportionality" in outcome.failed_checks
    assert outcome.publishable
    assert any("Over-extraction" in warning for warning in outcome.results.warnings)


def test_configured_hard_checks_block() -> None:
    gate = ValidationGate(RoadmapConfig(hard_failure_checks=["bloom_ceiling", "proportionality"]))
    concepts = [_ready(f"c{index}") for index in range(4)]
    outcome = gate.run(concepts, make_analysis(duration_seconds=60), 3.0)
    assert outcome.blocking_failures == ["proportionality"]


def test_under_extraction_only_warns() -> None:
    outcome = ValidationGate().run([_ready("a")], make_analysis(duration_seconds=1200), 50.0)
    assert outcome.results.proportionality_passed is True
    assert any("under-extraction" in warning for warning in outcome.results.warnings)


def test_time_sanity_bounds() -> None:
    gate = ValidationGate()
    analysis = make_analysis(duration_seconds=600)
    too_long = gate.run([_ready("a"), _ready("b")], analysis, 51.0)
    assert too_long.results.time_sanity_passed is False

    too_short = gate.run([_ready("a"), _ready("b")], analysis, 5.0)
    assert too_short.results.time_sanity_passed is True
    assert any("shorter than" in warning for warning in too_short.results.warnings)


def test_metadata_checks() -> None:
    concepts = [
        make_concept("a", assessment_spec=AssessmentSpec(appropriate_question_types=[QuestionType.APPLICATION])),
        _ready(
            "b",
            source_mapping=SourceMapping(primary_segment=Segment(start_sec=30, end_sec=10)),
        ),
    ]
    outcome = ValidationGate().run(concepts, make_analysis(duration_seconds=600), 30.0)
    results = outcome.results
    assert results.learning_objectives_passed is False
    assert results.assessment_spec_passed is False
    assert results.source_mapping_passed is False
    assert outcome.publishable


def test_background_only_sources_skip_metadata_checks() -> None:
    outcome = ValidationGate().run([make_concept("a", tier=1)], make_analysis(duration_seconds=None), 10.0)
    assert outcome.results.learning_objectives_passed is None
    assert outcome.results.assessment_spec_passed is None


def test_format_names() -> None:
    assert format_names(["a", "b"]) == "a, b"
    assert format_names(["a", "b", "c", "d", "e"]) == "a, b, c and 2 more"
