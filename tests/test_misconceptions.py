from apps.analysis.misconceptions import MisconceptionAnnotator, detect_misconceptions, needs_annotation
from curricore.core.config import AnnotationConfig
from curricore.core.llm import CompletionError
from curricore.core.pedagogy import Misconception
from tests.mocks.completion_client import ANNOTATOR, FakeCompletionClient
from tests.mocks.payloads import make_concept


def _record(name: str, trigger: str = "always fresh|never stale") -> dict:
    return {
        "misconception": f"{name} data is always fresh",
        "reality": "Cached copies can go stale",
        "trigger_detection": trigger,
        "remediation": "Walk through an invalidation example",
    }


def test_only_explained_core_concepts_need_annotation() -> None:
    assert needs_annotation(make_concept("caching", tier=2))
    assert needs_annotation(make_concept("caching", tier=3))
    assert not needs_annotation(make_concept("caching", tier=1))
    assert not needs_annotation(make_concept("caching", tier=3, mentioned_only=True))


def test_annotate_attaches_records_by_concept_name() -> None:
    concepts = [
        make_concept("caching", "Caching"),
        make_concept("lru", "LRU", tier=1),
    ]
    client = FakeCompletionClient(
        {ANNOTATOR: {"concepts": [{"concept_name": "caching", "misconceptions": [_record("Caching")] * 5}]}}
    )
    annotated = MisconceptionAnnotator(client).annotate(concepts)

    assert len(annotated[0].common_misconceptions) == 3
    assert annotated[1].common_misconceptions == []
    assert concepts[0].common_misconceptions == []
    assert "LRU" not in client.calls[0].user_message


def test_failed_batch_is_recoverable() -> None:
    concepts = [make_concept("caching", "Caching"), make_concept("eviction", "Eviction")]

    def respond(user_message: str):
        if '"Eviction"' in user_message:
            raise CompletionError("upstream timeout")
        return {"concepts": [{"conceptName": "Caching", "misconceptions": [_record("Caching")]}]}

    client = FakeCompletionClient({ANNOTATOR: respond})
    warnings: list[str] = []
    annotated = MisconceptionAnnotator(client, config=AnnotationConfig(batch_size=1)).annotate(concepts, warnings)

    assert len(client.calls) == 2
    assert len(annotated[0].common_misconceptions) == 1
    assert annotated[1].common_misconceptions == []
    assert len(warnings) == 1
    assert "Eviction" in warnings[0]


def test_incomplete_records_are_skipped() -> None:
    partial = {"misconception": "Caches never fill up", "reality": "They do"}
    client = FakeCompletionClient(
        {ANNOTATOR: {"concepts": [{"concept_name": "Caching", "misconceptions": [partial, _record("Caching")]}]}}
    )
    [concept] = MisconceptionAnnotator(client).annotate([make_concept("caching", "Caching")])
    assert len(concept.common_misconceptions) == 1


def test_detect_misconceptions_matches_triggers() -> None:
    concept = make_concept(
        "caching",
        "Caching",
        common_misconceptions=[
            Misconception(**_record("Caching")),
            Misconception(
                misconception="Bigger caches are always faster",
                reality="Lookup cost grows too",
                trigger_detection="bigger (is|means) faster|(unbalanced",
                remediation="Compare hit rates",
            ),
        ],
    )
    hits = detect_misconceptions(concept, "A cache is NEVER STALE once filled.")
    assert [hit.misconception for hit in hits] == ["Caching data is always fresh"]

    fallback = detect_misconceptions(concept, "I think an (unbalanced cache wins")
    assert [hit.misconception for hit in fallback] == ["Bigger caches are always faster"]
    assert detect_misconceptions(concept, "") == []


def test_unexpected_client_exception_leaves_batch_unannotated() -> None:
    concepts = [make_concept("caching", "Caching"), make_concept("eviction", "Eviction")]
    client = FakeCompletionClient({ANNOTATOR: ValueError("unexpected provider payload")})
    warnings: list[str] = []

    annotated = MisconceptionAnnotator(client).annotate(concepts, warnings)

    assert [concept.common_misconceptions for concept in annotated] == [[], []]
    assert len(warnings) == 1
    assert "unexpected provider payload" in warnings[0]
