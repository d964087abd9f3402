"""Pass 3: arrange concepts into elaboration levels, calibrate time, run the validation gate."""

from __future__ import annotations

import json
import logging
from collections import Counter, defaultdict
from textwrap import dedent
from typing import Dict, List, Mapping, Optional, Sequence

from curricore.core.config import ModelConfig, RoadmapConfig
from curricore.core.errors import RoadmapError
from curricore.core.llm import CompletionOptions, StructuredCompletionClient, options_for_role
from curricore.core.pedagogy import (
    CognitiveType,
    Concept,
    ContentAnalysis,
    ElaborationLevel,
    MasteryGate,
    Relationship,
    Roadmap,
    TimeCalibration,
    highest_bloom_level,
    knowledge_type_for,
)
from curricore.core.validation import first_present, optional_text, require_mapping

from .knowledge_graph import normalized_name, prerequisite_edges, repair_prerequisite_cycles, topological_order
from .validation_gate import ValidationGate

LOGGER = logging.getLogger(__name__)

EPITOME_TITLE = "Core Understanding (Epitome)"
FOUNDATIONS_TITLE = "Foundations"
ADVANCED_TITLE = "Advanced Topics"
UMBRELLA_KEYWORDS = (
    "overview",
    "introduction",
    "scenarios",
    "types",
    "ways",
    "methods",
    "approaches",
    "principles",
    "fundamentals",
    "theory",
    "framework",
)
COGNITIVE_TIME_MODIFIERS: Dict[CognitiveType, float] = {
    CognitiveType.DECLARATIVE: 1.0,
    CognitiveType.CONCEPTUAL: 1.2,
    CognitiveType.PROCEDURAL: 1.5,
    CognitiveType.CONDITIONAL: 1.3,
    CognitiveType.METACOGNITIVE: 1.4,
}

EPITOME_PROMPT = dedent(
    """
    Choose the single concept that best captures the enduring understanding of
    the material: the idea every other concept elaborates on.

    Respond with JSON only: {"epitome": "<concept name>", "reasoning": "..."}
    """
).strip()


def calculate_learning_minutes(
    source_minutes: float,
    mode_multiplier: float,
    density_modifier: float,
    knowledge_type_factor: float,
) -> float:
    """learning time = source minutes x mode x density x knowledge type."""
    return source_minutes * mode_multiplier * density_modifier * knowledge_type_factor


def concept_base_minutes(concept: Concept) -> float:
    """Per-concept estimate used when the source has no duration."""
    if concept.difficulty <= 3:
        base = 5
    elif concept.difficulty <= 6:
        base = 10
    elif concept.difficulty <= 8:
        base = 15
    else:
        base = 20
    return base * COGNITIVE_TIME_MODIFIERS[concept.cognitive_type]


def level_title(level: int, max_level: int) -> str:
    if level == 0:
        return EPITOME_TITLE
    if level == 1:
        return FOUNDATIONS_TITLE
    if level == max_level:
        return ADVANCED_TITLE
    return f"Level {level}"


def assign_levels(
    concept_ids: Sequence[str],
    relationships: Sequence[Relationship],
    epitome_id: Optional[str] = None,
) -> Dict[str, int]:
    """Level = 1 + deepest prerequisite level; no prerequisites means level 1; the epitome is level 0.

    ``relationships`` must already be acyclic over ``concept_ids``.
    """

    members = set(concept_ids)
    incoming: Dict[str, List[str]] = defaultdict(list)
    for edge in prerequisite_edges(relationships):
        if edge.from_concept_id in members and edge.to_concept_id in members:
            incoming[edge.to_concept_id].append(edge.from_concept_id)

    order = topological_order(members, relationships)
    if len(order) != len(members):
        raise RoadmapError("CYCLIC_GRAPH", "Prerequisite graph still contains a cycle")

    levels: Dict[str, int] = {}
    if epitome_id is not None:
        levels[epitome_id] = 0
    for concept_id in order:
        if concept_id == epitome_id:
            continue
        prerequisites = incoming.get(concept_id, [])
        levels[concept_id] = 1 + max((levels[p] for p in prerequisites), default=0)
    return levels


class RoadmapArchitect:
    """Builds the leveled roadmap for one source's concepts."""

    def __init__(
        self,
        client: StructuredCompletionClient | None = None,
        *,
        config: RoadmapConfig | None = None,
        options: CompletionOptions | None = None,
        gate: ValidationGate | None = None,
    ) -> None:
        self.client = client
        self.config = config or RoadmapConfig()
        self.options = options or options_for_role(ModelConfig().architect)
        self.gate = gate or ValidationGate(self.config)

    def build(
        self,
        concepts: Sequence[Concept],
        relationships: Sequence[Relationship],
        analysis: ContentAnalysis,
    ) -> Roadmap:
        learning = [concept for concept in concepts if not concept.mentioned_only]
        glossary_ids = [concept.id for concept in concepts if concept.mentioned_only]
        if not learning:
            raise RoadmapError("NO_CONCEPTS", "No learning concepts remain after removing mentioned-only concepts")

        warnings: List[str] = []
        member_ids = {concept.id for concept in learning}
        edges = [
            edge
            for edge in prerequisite_edges(relationships)
            if edge.from_concept_id in member_ids and edge.to_concept_id in member_ids
        ]
        repair = repair_prerequisite_cycles(edges, names={concept.id: concept.name for concept in learning})
        warnings.extend(repair.warnings)

        epitome = self.select_epitome(learning, analysis.thesis_statement, warnings)
        epitome_id = epitome.id if epitome else None
        assigned = assign_levels([concept.id for concept in learning], repair.relationships, epitome_id)

        grouped: Dict[int, List[Concept]] = defaultdict(list)
        for concept in learning:
            grouped[assigned[concept.id]].append(concept)

        calibration = self.calibrate(grouped, analysis, len(learning))
        max_level = max(grouped)
        levels = [
            ElaborationLevel(
                level=number,
                title=level_title(number, max_level),
                concept_ids=[concept.id for concept in grouped[number]],
                estimated_minutes=calibration.level_minutes.get(number, 0.0),
                bloom_target=highest_bloom_level([concept.bloom_level for concept in grouped[number]]),
            )
            for number in sorted(grouped)
        ]
        gates = [
            MasteryGate(
                after_level=level.level,
                required_score=self.config.mastery_gate_score,
                quiz_concept_ids=list(level.concept_ids),
            )
            for level in levels
            if level.level > 0
        ]

        outcome = self.gate.run(concepts, analysis, calibration.total_minutes)
        roadmap = Roadmap(
            epitome_concept_id=epitome_id,
            levels=levels,
            time_calibration=calibration,
            validation_results=outcome.results,
            glossary_concept_ids=glossary_ids,
            mastery_gates=gates,
            publishable=outcome.publishable,
            blocking_failures=outcome.blocking_failures,
            warnings=warnings,
        )
        LOGGER.info(
            "Roadmap: %d levels, %d concepts, %.1f minutes (%d glossary-only)",
            len(levels),
            len(learning),
            calibration.total_minutes,
            len(glossary_ids),
        )
        return roadmap

    # ------------------------------------------------------------------
    # Epitome
    # ------------------------------------------------------------------

    def select_epitome(
        self,
        learning: Sequence[Concept],
        thesis_statement: Optional[str],
        warnings: List[str],
    ) -> Optional[Concept]:
        candidates = [concept for concept in learning if concept.tier == 3]
        if not candidates:
            return None
        if len(candidates) == 1:
            return candidates[0]
        if self.client is not None:
            chosen = self._epitome_from_model(candidates, thesis_statement, warnings)
            if chosen is not None:
                return chosen
        return self._fallback_epitome(candidates, thesis_statement)

    def _epitome_from_model(
        self,
        candidates: Sequence[Concept],
        thesis_statement: Optional[str],
        warnings: List[str],
    ) -> Optional[Concept]:
        listing = [{"name": concept.name, "definition": concept.definition} for concept in candidates]
        thesis = f"Thesis: {thesis_statement}\n\n" if thesis_statement else ""
        user_message = f"{thesis}Candidate concepts:\n{json.dumps(listing, indent=2)}"
        try:
            result = self.client.send(EPITOME_PROMPT, user_message, self.options)
            payload = require_mapping(result.data, "epitome response")
        except Exception as exc:
            message = f"Epitome selection call failed; using keyword fallback: {exc}"
            LOGGER.warning("%s", message)
            warnings.append(message)
            return None
        name = optional_text(first_present(payload, "epitome", "epitome_name", "name"))
        for concept in candidates:
            if name and concept.name.lower() == name.lower():
                return concept
        LOGGER.debug("Model chose unknown epitome %r; using keyword fallback", name)
        return None

    @staticmethod
    def _fallback_epitome(candidates: Sequence[Concept], thesis_statement: Optional[str]) -> Concept:
        if thesis_statement:
            thesis = normalized_name(thesis_statement)
            for concept in candidates:
                if normalized_name(concept.name) in thesis:
                    return concept
        for concept in candidates:
            words = set(normalized_name(concept.name).split())
            if words.intersection(UMBRELLA_KEYWORDS):
                return concept
        return candidates[0]

    # ------------------------------------------------------------------
    # Time calibration
    # ------------------------------------------------------------------

    def density_modifier(self, concepts_per_minute: Optional[float]) -> float:
        modifiers = self.config.density_modifiers
        if concepts_per_minute is None:
            return modifiers["medium"]
        if concepts_per_minute < self.config.density_low_max:
            return modifiers["low"]
        if concepts_per_minute < self.config.density_medium_max:
            return modifiers["medium"]
        return modifiers["high"]

    def knowledge_type_factor(self, concepts: Sequence[Concept]) -> float:
        """Factor for the most common knowledge type; ties go to the larger factor."""
        factors = self.config.knowledge_type_factors
        counts = Counter(knowledge_type_for(concept.cognitive_type) for concept in concepts)
        if not counts:
            return 1.0
        dominant = max(counts, key=lambda kind: (counts[kind], factors[kind]))
        return factors[dominant]

    def calibrate(
        self,
        grouped: Mapping[int, Sequence[Concept]],
        analysis: ContentAnalysis,
        learning_count: int,
    ) -> TimeCalibration:
        seconds = analysis.source_duration_seconds
        source_minutes = seconds / 60 if seconds else None
        density = learning_count / source_minutes if source_minutes else None
        modifier = self.density_modifier(density)

        total_percent = sum(concept.time_allocation_percent for members in grouped.values() for concept in members)
        level_minutes: Dict[int, float] = {}
        total = 0.0
        for number in sorted(grouped):
            members = grouped[number]
            if source_minutes is not None:
                if total_percent > 0:
                    share = sum(concept.time_allocation_percent for concept in members) / total_percent
                else:
                    share = len(members) / learning_count
                level_source = source_minutes * share
            else:
                level_source = sum(concept_base_minutes(concept) for concept in members)
            minutes = calculate_learning_minutes(
                level_source, analysis.mode_multiplier, modifier, self.knowledge_type_factor(members)
            )
            level_minutes[number] = round(minutes, 1)
            total += minutes

        return TimeCalibration(
            source_minutes=round(source_minutes, 2) if source_minutes is not None else None,
            mode_multiplier=analysis.mode_multiplier,
            density_modifier=modifier,
            concept_density=round(density, 3) if density is not None else None,
            level_minutes=level_minutes,
            total_minutes=round(total, 1),
            used_source_duration=source_minutes is not None,
        )


__all__ = [
    "RoadmapArchitect",
    "assign_levels",
    "calculate_learning_minutes",
    "concept_base_minutes",
    "level_title",
]
