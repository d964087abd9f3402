"""Quality checks run on every roadmap before it can be published."""

from __future__ import annotations

import logging
import math
from dataclasses import dataclass, field
from typing import List, Optional, Sequence

from curricore.core.config import RoadmapConfig
from curricore.core.pedagogy import (
    QUESTION_TYPES_BY_BLOOM,
    Concept,
    ContentAnalysis,
    Segment,
    ValidationResults,
    exceeds_ceiling,
)

LOGGER = logging.getLogger(__name__)

MAX_LISTED_NAMES = 3


def format_names(names: Sequence[str], limit: int = MAX_LISTED_NAMES) -> str:
    """Join the first ``limit`` names, summarising the rest as "and N more"."""
    shown = ", ".join(names[:limit])
    if len(names) > limit:
        return f"{shown} and {len(names) - limit} more"
    return shown


def _segment_is_valid(segment: Optional[Segment]) -> bool:
    if segment is None:
        return True
    return segment.start_sec >= 0 and segment.end_sec > segment.start_sec


@dataclass(slots=True)
class GateOutcome:
    results: ValidationResults
    failed_checks: List[str] = field(default_factory=list)
    blocking_failures: List[str] = field(default_factory=list)

    @property
    def publishable(self) -> bool:
        return not self.blocking_failures


class ValidationGate:
    """Runs the checks in a fixed order and splits failures into hard and advisory.

    Every failed check adds a warning. Only checks named in
    ``config.hard_failure_checks`` block publication.
    """

    def __init__(self, config: RoadmapConfig | None = None) -> None:
        self.config = config or RoadmapConfig()

    def run(self, concepts: Sequence[Concept], analysis: ContentAnalysis, total_minutes: float) -> GateOutcome:
        warnings: List[str] = []
        learning = [concept for concept in concepts if not concept.mentioned_only]
        source_minutes = analysis.source_duration_seconds / 60 if analysis.source_duration_seconds else None

        proportionality = self._check_proportionality(len(learning), source_minutes, warnings)
        bloom = self._check_bloom_ceiling(concepts, analysis, warnings)
        time_sanity = self._check_time_sanity(total_minutes, source_minutes, analysis, warnings)
        core = [concept for concept in learning if concept.tier >= 2]
        objectives = self._check_learning_objectives(core, warnings)
        assessment = self._check_assessment_specs(core, warnings)
        mapping = self._check_source_mappings(learning, warnings)

        results = ValidationResults(
            proportionality_passed=proportionality,
            bloom_ceiling_passed=bloom,
            time_sanity_passed=time_sanity,
            learning_objectives_passed=objectives,
            assessment_spec_passed=assessment,
            source_mapping_passed=mapping,
            warnings=warnings,
        )
        checks = {
            "proportionality": proportionality,
            "bloom_ceiling": bloom,
            "time_sanity": time_sanity,
            "learning_objectives": objectives,
            "assessment_spec": assessment,
            "source_mapping": mapping,
        }
        failed = [name for name, passed in checks.items() if passed is False]
        blocking = [name for name in failed if name in self.config.hard_failure_checks]
        if blocking:
            LOGGER.error("Roadmap blocked by validation checks: %s", ", ".join(blocking))
        elif failed:
            LOGGER.info("Advisory validation checks failed: %s", ", ".join(failed))
        return GateOutcome(results=results, failed_checks=failed, blocking_failures=blocking)

    # ------------------------------------------------------------------
    # Checks
    # ------------------------------------------------------------------

    def _check_proportionality(self, count: int, source_minutes: Optional[float], warnings: List[str]) -> bool:
        if not source_minutes:
            return True
        max_count = math.ceil(source_minutes * self.config.max_concepts_per_minute)
        if count > max_count:
            warnings.append(
                f"Over-extraction: {count} concepts from a {source_minutes:.1f} minute source (max {max_count})"
            )
            return False
        min_count = max(1, math.floor(source_minutes * self.config.min_concepts_per_minute))
        if count < min_count and source_minutes > self.config.min_minutes_for_underextraction:
            warnings.append(
                f"Possible under-extraction: {count} concepts from a {source_minutes:.1f} minute source "
                f"(expected at least {min_count})"
            )
        return True

    @staticmethod
    def _check_bloom_ceiling(concepts: Sequence[Concept], analysis: ContentAnalysis, warnings: List[str]) -> bool:
        violators = [concept.name for concept in concepts if exceeds_ceiling(concept.bloom_level, analysis.bloom_ceiling)]
        if violators:
            warnings.append(
                f"Bloom ceiling violated (ceiling: {analysis.bloom_ceiling.value}): {format_names(violators)}"
            )
            return False
        return True

    def _check_time_sanity(
        self,
        total_minutes: float,
        source_minutes: Optional[float],
        analysis: ContentAnalysis,
        warnings: List[str],
    ) -> bool:
        if not source_minutes:
            return True
        max_multiplier = self.config.time_sanity_max_multipliers.get(analysis.content_type, 10.0)
        ceiling = source_minutes * max_multiplier
        if total_minutes > ceiling:
            warnings.append(
                f"Learning time {total_minutes:.1f} min exceeds {max_multiplier:g}x the "
                f"{source_minutes:.1f} minute source"
            )
            return False
        if total_minutes < source_minutes * self.config.time_sanity_min_ratio:
            warnings.append(
                f"Learning time {total_minutes:.1f} min is shorter than the {source_minutes:.1f} minute source"
            )
        return True

    @staticmethod
    def _check_learning_objectives(core: Sequence[Concept], warnings: List[str]) -> Optional[bool]:
        if not core:
            return None
        missing = [concept.name for concept in core if not concept.learning_objectives]
        if missing:
            warnings.append(f"Missing learning objectives for: {format_names(missing)}")
            return False
        return True

    @staticmethod
    def _check_assessment_specs(core: Sequence[Concept], warnings: List[str]) -> Optional[bool]:
        if not core:
            return None
        mismatched: List[str] = []
        for concept in core:
            spec = concept.assessment_spec
            expected = set(QUESTION_TYPES_BY_BLOOM[concept.bloom_level])
            if spec is None or not expected.intersection(spec.appropriate_question_types):
                mismatched.append(concept.name)
        if mismatched:
            warnings.append(f"Question types do not fit the Bloom level for: {format_names(mismatched)}")
            return False
        return True

    @staticmethod
    def _check_source_mappings(learning: Sequence[Concept], warnings: List[str]) -> Optional[bool]:
        mapped = [concept for concept in learning if concept.source_mapping is not None]
        if not mapped:
            return None
        invalid = [
            concept.name
            for concept in mapped
            if not _segment_is_valid(concept.source_mapping.primary_segment)
            or not _segment_is_valid(concept.source_mapping.review_clip)
        ]
        if invalid:
            warnings.append(f"Invalid source timestamps for: {format_names(invalid)}")
            return False
        return True


__all__ = ["GateOutcome", "ValidationGate", "format_names"]
