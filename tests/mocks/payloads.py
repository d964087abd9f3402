"""Model payloads and records shared by the analysis tests."""

from __future__ import annotations

from typing import Any, Dict

from curricore.core.pedagogy import (
    BloomLevel,
    Concept,
    ContentAnalysis,
    ContentType,
    ExtractionDepth,
    Relationship,
    RelationshipType,
)

CONCEPTUAL_TEXT = (
    "In this lecture I argue that caching is the central idea behind fast systems. "
    "A cache is a small fast store that keeps copies of data close to where it is used. "
    "Cache invalidation is the process of removing stale entries when the source changes, "
    "and it requires a clear notion of a cache. Eviction policies such as LRU decide what "
    "leaves the cache when it is full. We will weigh the evidence for each policy."
)

PROCEDURAL_TEXT = (
    "How to brew pour-over coffee.\n"
    "1. Heat water to 94 degrees.\n"
    "2. Rinse the paper filter and discard the water.\n"
    "3. Add 15 grams of medium ground coffee.\n"
    "4. Pour slowly in circles for three minutes.\n"
)


def concept_entry(name: str, **overrides: Any) -> Dict[str, Any]:
    entry: Dict[str, Any] = {
        "name": name,
        "definition": f"{name} is an idea taught in this lecture.",
        "key_points": [f"{name} matters"],
        "cognitive_type": "conceptual",
        "difficulty_factors": {"abstractness": 0.5, "prerequisite_depth": 0.5, "relational_complexity": 0.5},
        "tier": 2,
        "bloom_level": "understand",
        "mentioned_only": False,
        "definition_provided": True,
        "time_allocation_percent": 25,
        "learning_objectives": [
            {"bloom_verb": "explain", "objective_statement": f"Explain {name}", "success_criteria": ["accurate"]}
        ],
        "assessment_spec": {
            "appropriate_question_types": ["definition_recall", "multiple_choice"],
            "inappropriate_question_types": ["application"],
        },
        "source_mapping": {"primary_segment": {"start_sec": 10, "end_sec": 60}},
    }
    entry.update(overrides)
    return entry


def caching_concepts() -> Dict[str, Any]:
    return {
        "concepts": [
            concept_entry(
                "Caching",
                definition="Caching keeps copies of data in a fast store close to where it is used.",
                tier=3,
                time_allocation_percent=40,
            ),
            concept_entry(
                "Cache Invalidation",
                definition="Removing stale entries from a store when the source changes; requires caching.",
                key_points=["builds on caching", "hard to get right"],
                time_allocation_percent=35,
            ),
            concept_entry(
                "Eviction Policy",
                definition="A rule such as LRU deciding which entry leaves a full store, based on caching.",
                time_allocation_percent=25,
            ),
            concept_entry(
                "Memcached",
                definition="A distributed memory caching system.",
                mentioned_only=True,
                definition_provided=False,
                tier=1,
                time_allocation_percent=0,
            ),
        ]
    }


def conceptual_route() -> Dict[str, Any]:
    return {
        "content_type": "conceptual",
        "thesis_statement": "Caching is the central idea behind fast systems.",
        "bloom_ceiling": "analyze",
        "extraction_depth": "explanations",
        "topic_count": 1,
    }


def make_analysis(
    content_type: ContentType = ContentType.CONCEPTUAL,
    *,
    ceiling: BloomLevel = BloomLevel.ANALYZE,
    multiplier: float = 2.5,
    duration_seconds: int | None = 3600,
    thesis: str | None = None,
    depth: ExtractionDepth = ExtractionDepth.EXPLANATIONS,
) -> ContentAnalysis:
    return ContentAnalysis(
        content_type=content_type,
        thesis_statement=thesis,
        bloom_ceiling=ceiling,
        mode_multiplier=multiplier,
        extraction_depth=depth,
        source_duration_seconds=duration_seconds,
    )


def make_concept(concept_id: str, name: str | None = None, **overrides: Any) -> Concept:
    label = name or f"Concept {concept_id}"
    fields: Dict[str, Any] = {
        "id": concept_id,
        "source_ids": ["src-1"],
        "name": label,
        "definition": f"Definition of {label}.",
        "tier": 2,
    }
    fields.update(overrides)
    return Concept(**fields)


def prerequisite(from_id: str, to_id: str, strength: float = 0.5) -> Relationship:
    return Relationship(
        from_concept_id=from_id,
        to_concept_id=to_id,
        relationship_type=RelationshipType.PREREQUISITE,
        strength=strength,
    )
