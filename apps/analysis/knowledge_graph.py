"""Relationship inference, prerequisite-cycle repair and multi-source project merges."""

from __future__ import annotations

import json
import logging
import re
from collections import defaultdict, deque
from dataclasses import dataclass, field
from textwrap import dedent
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

from curricore.core.config import GraphConfig, ModelConfig
from curricore.core.llm import CompletionOptions, StructuredCompletionClient, options_for_role
from curricore.core.pedagogy import Concept, ProjectGraph, Relationship, RelationshipType
from curricore.core.validation import (
    clamp,
    coerce_number,
    first_present,
    optional_text,
    require_list,
    require_mapping,
)

LOGGER = logging.getLogger(__name__)

BASE_DEFINITIONAL_STRENGTH = 0.5
DEPENDENCY_CUE_BONUS = 0.3
SAME_OR_LOWER_TIER_BONUS = 0.1
HIGHER_TIER_PENALTY = 0.2
DEPENDENCY_CUES = ("requires", "require", "builds on", "based on", "depends on", "relies on", "assumes", "using")
_STOPWORDS = frozenset(
    "a an and are as at be by for from in into is it its of on or that the this to with which when".split()
)

SYSTEM_PROMPT = dedent(
    """
    You map the relationships between concepts taken from the same course material.

    Relationship types: prerequisite, causal, taxonomic, temporal, contrasts_with,
    elaboration_of, evidence_for, example_of, definition_of.

    For a prerequisite, "from" must be learned before "to". Only use concept names
    from the list. Give strength between 0 and 1 and skip anything weaker than 0.3.

    Respond with JSON only:
    {"relationships": [{"from": "...", "to": "...", "type": "...", "strength": 0.8}]}
    """
).strip()


@dataclass(slots=True)
class GraphBuildResult:
    relationships: List[Relationship]
    warnings: List[str] = field(default_factory=list)
    removed_edges: List[Relationship] = field(default_factory=list)


@dataclass(slots=True)
class CycleRepair:
    relationships: List[Relationship]
    removed_edges: List[Relationship] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


@dataclass(slots=True)
class ProjectMergeResult:
    """Outcome of folding one source's concepts into a project graph."""

    graph: ProjectGraph
    aliases: Dict[str, str]
    unified_count: int = 0
    warnings: List[str] = field(default_factory=list)
    removed_edges: List[Relationship] = field(default_factory=list)


# ----------------------------------------------------------------------
# Graph algorithms
# ----------------------------------------------------------------------


def prerequisite_edges(relationships: Iterable[Relationship]) -> List[Relationship]:
    return [edge for edge in relationships if edge.relationship_type == RelationshipType.PREREQUISITE]


def topological_order(node_ids: Iterable[str], relationships: Iterable[Relationship]) -> List[str]:
    """Kahn's algorithm over prerequisite edges.

    Returns the nodes that could be ordered. When the prerequisite subgraph has
    a cycle, the nodes on or behind it are missing from the result.
    """

    nodes = sorted(set(node_ids))
    indegree: Dict[str, int] = {node: 0 for node in nodes}
    outgoing: Dict[str, List[str]] = defaultdict(list)
    for edge in prerequisite_edges(relationships):
        if edge.from_concept_id not in indegree or edge.to_concept_id not in indegree:
            continue
        outgoing[edge.from_concept_id].append(edge.to_concept_id)
        indegree[edge.to_concept_id] += 1

    queue = deque(node for node in nodes if indegree[node] == 0)
    order: List[str] = []
    while queue:
        node = queue.popleft()
        order.append(node)
        for target in sorted(outgoing.get(node, [])):
            indegree[target] -= 1
            if indegree[target] == 0:
                queue.append(target)
    return order


def find_prerequisite_cycle(relationships: Iterable[Relationship]) -> Optional[List[Relationship]]:
    """Depth-first search for one prerequisite cycle; returns its edges in order."""

    adjacency: Dict[str, List[Relationship]] = defaultdict(list)
    for edge in prerequisite_edges(relationships):
        adjacency[edge.from_concept_id].append(edge)
    for edges in adjacency.values():
        edges.sort(key=lambda edge: edge.to_concept_id)

    visiting: Set[str] = set()
    finished: Set[str] = set()
    path: List[Relationship] = []

    def visit(node: str) -> Optional[List[Relationship]]:
        visiting.add(node)
        for edge in adjacency.get(node, []):
            target = edge.to_concept_id
            if target in visiting:
                start = next((index for index, step in enumerate(path) if step.from_concept_id == target), None)
                return [edge] if start is None else path[start:] + [edge]
            if target in finished:
                continue
            path.append(edge)
            cycle = visit(target)
            if cycle is not None:
                return cycle
            path.pop()
        visiting.discard(node)
        finished.add(node)
        return None

    for node in sorted(adjacency):
        if node not in finished:
            cycle = visit(node)
            if cycle is not None:
                return cycle
    return None


def repair_prerequisite_cycles(
    relationships: Sequence[Relationship],
    *,
    names: Mapping[str, str] | None = None,
) -> CycleRepair:
    """Break prerequisite cycles by dropping the weakest edge of each one found."""

    remaining = list(relationships)
    repair = CycleRepair(relationships=remaining)
    labels = names or {}
    while True:
        prerequisites = prerequisite_edges(remaining)
        nodes = {edge.from_concept_id for edge in prerequisites} | {edge.to_concept_id for edge in prerequisites}
        if len(topological_order(nodes, prerequisites)) == len(nodes):
            break
        cycle = find_prerequisite_cycle(prerequisites)
        if cycle is None:
            break
        weakest = min(cycle, key=lambda edge: (edge.strength, edge.from_concept_id, edge.to_concept_id))
        remaining.remove(weakest)
        repair.removed_edges.append(weakest)
        loop = " -> ".join(labels.get(edge.from_concept_id, edge.from_concept_id) for edge in cycle)
        message = (
            f"Prerequisite cycle ({loop}) broken by removing "
            f"{labels.get(weakest.from_concept_id, weakest.from_concept_id)} -> "
            f"{labels.get(weakest.to_concept_id, weakest.to_concept_id)} (strength {weakest.strength:.2f})"
        )
        LOGGER.warning("%s", message)
        repair.warnings.append(message)
    repair.relationships = remaining
    return repair


def dedupe_relationships(relationships: Iterable[Relationship]) -> List[Relationship]:
    """Collapse edges sharing (from, to, type), keeping the strongest and every source id."""

    merged: Dict[Tuple[str, str, str], Relationship] = {}
    for edge in relationships:
        if edge.from_concept_id == edge.to_concept_id:
            continue
        current = merged.get(edge.key)
        if current is None:
            merged[edge.key] = edge
            continue
        sources = list(dict.fromkeys([*current.source_ids, *edge.source_ids]))
        merged[edge.key] = current.model_copy(
            update={"strength": max(current.strength, edge.strength), "source_ids": sources}
        )
    return list(merged.values())


# ----------------------------------------------------------------------
# Similarity + merge
# ----------------------------------------------------------------------


def _tokens(text: str) -> Set[str]:
    return {token for token in re.findall(r"[a-z0-9]+", text.lower()) if token not in _STOPWORDS}


def normalized_name(name: str) -> str:
    return " ".join(re.findall(r"[a-z0-9]+", name.lower()))


def definition_similarity(first: str, second: str) -> float:
    """Token Jaccard similarity of two definitions (stopwords removed)."""
    left, right = _tokens(first), _tokens(second)
    if not left or not right:
        return 0.0
    return len(left & right) / len(left | right)


def _unify(existing: Concept, incoming: Concept, source_id: str) -> Concept:
    sources = list(dict.fromkeys([*existing.source_ids, *incoming.source_ids, source_id]))
    return existing.model_copy(
        update={
            "source_ids": sources,
            "mentioned_only": existing.mentioned_only and incoming.mentioned_only,
            "definition_provided": existing.definition_provided or incoming.definition_provided,
            "common_misconceptions": existing.common_misconceptions or incoming.common_misconceptions,
            "learning_objectives": existing.learning_objectives or incoming.learning_objectives,
        }
    )


def merge_into_project(
    graph: ProjectGraph,
    concepts: Sequence[Concept],
    relationships: Sequence[Relationship],
    *,
    source_id: str,
    similarity_threshold: float,
) -> ProjectMergeResult:
    """Fold a source's concepts and edges into ``graph`` and return the new graph.

    Concepts match an existing node when their normalized names are equal or
    their definitions reach ``similarity_threshold``. Matched concepts take the
    existing node's id; ``aliases`` maps every incoming id to its project id.
    """

    project_concepts = list(graph.concepts)
    original_count = len(project_concepts)
    by_name = {normalized_name(concept.name): index for index, concept in enumerate(project_concepts)}
    taken_ids = {concept.id for concept in project_concepts}
    aliases: Dict[str, str] = {}
    unified = 0

    for concept in concepts:
        match = by_name.get(normalized_name(concept.name))
        if match is None:
            best_score = 0.0
            for index in range(original_count):
                score = definition_similarity(project_concepts[index].definition, concept.definition)
                if score >= similarity_threshold and score > best_score:
                    match, best_score = index, score
        if match is not None:
            project_concepts[match] = _unify(project_concepts[match], concept, source_id)
            aliases[concept.id] = project_concepts[match].id
            unified += 1
            continue

        new_id = concept.id
        suffix = 2
        while new_id in taken_ids:
            new_id = f"{concept.id}-{suffix}"
            suffix += 1
        sources = list(dict.fromkeys([*concept.source_ids, source_id]))
        project_concepts.append(concept.model_copy(update={"id": new_id, "source_ids": sources}))
        taken_ids.add(new_id)
        by_name[normalized_name(concept.name)] = len(project_concepts) - 1
        aliases[concept.id] = new_id

    remapped = [
        edge.model_copy(
            update={
                "from_concept_id": aliases.get(edge.from_concept_id, edge.from_concept_id),
                "to_concept_id": aliases.get(edge.to_concept_id, edge.to_concept_id),
                "source_ids": list(dict.fromkeys([*edge.source_ids, source_id])),
            }
        )
        for edge in relationships
    ]
    combined = dedupe_relationships([*graph.relationships, *remapped])
    names = {concept.id: concept.name for concept in project_concepts}
    repair = repair_prerequisite_cycles(combined, names=names)

    merged_graph = graph.model_copy(
        update={
            "concepts": project_concepts,
            "relationships": repair.relationships,
            "source_ids": list(dict.fromkeys([*graph.source_ids, source_id])),
        }
    )
    if unified:
        LOGGER.info("Unified %d concepts from %s with existing project nodes", unified, source_id)
    return ProjectMergeResult(
        graph=merged_graph,
        aliases=aliases,
        unified_count=unified,
        warnings=list(repair.warnings),
        removed_edges=list(repair.removed_edges),
    )


# ----------------------------------------------------------------------
# Builder
# ----------------------------------------------------------------------


class KnowledgeGraphBuilder:
    """Infers typed edges between concepts and guarantees an acyclic prerequisite subgraph."""

    def __init__(
        self,
        client: StructuredCompletionClient | None = None,
        *,
        config: GraphConfig | None = None,
        options: CompletionOptions | None = None,
    ) -> None:
        self.client = client
        self.config = config or GraphConfig()
        self.options = options or options_for_role(ModelConfig().graph)

    def build(self, concepts: Sequence[Concept], *, focus_ids: Iterable[str] | None = None) -> GraphBuildResult:
        """Infer edges among ``concepts``.

        ``focus_ids`` limits inference to pairs touching those concepts, which
        is how a new source is wired into an already-populated project.
        """

        focus = set(focus_ids) if focus_ids is not None else {concept.id for concept in concepts}
        warnings: List[str] = []
        edges: List[Relationship] = []
        if self.config.infer_from_definitions:
            edges.extend(self.infer_definitional_prerequisites(concepts, focus))
        if self.client is not None and self.config.infer_with_model:
            edges.extend(self._infer_with_model(concepts, focus, warnings))

        names = {concept.id: concept.name for concept in concepts}
        repair = repair_prerequisite_cycles(dedupe_relationships(edges), names=names)
        warnings.extend(repair.warnings)
        LOGGER.info(
            "Inferred %d relationships (%d removed to break cycles)",
            len(repair.relationships),
            len(repair.removed_edges),
        )
        return GraphBuildResult(relationships=repair.relationships, warnings=warnings, removed_edges=repair.removed_edges)

    def extend_project(self, graph: ProjectGraph, concepts: Sequence[Concept], *, source_id: str) -> ProjectMergeResult:
        """Unify ``concepts`` into ``graph``, infer edges for them, and repair cycles."""

        merge = merge_into_project(
            graph, concepts, [], source_id=source_id, similarity_threshold=self.config.similarity_threshold
        )
        focus = set(merge.aliases.values())
        built = self.build(merge.graph.concepts, focus_ids=focus)
        tagged = [edge.model_copy(update={"source_ids": [source_id]}) for edge in built.relationships]
        final = merge_into_project(
            merge.graph, [], tagged, source_id=source_id, similarity_threshold=self.config.similarity_threshold
        )
        return ProjectMergeResult(
            graph=final.graph,
            aliases=merge.aliases,
            unified_count=merge.unified_count,
            warnings=[*merge.warnings, *built.warnings, *final.warnings],
            removed_edges=[*merge.removed_edges, *built.removed_edges, *final.removed_edges],
        )

    # ------------------------------------------------------------------
    # Inference
    # ------------------------------------------------------------------

    @staticmethod
    def infer_definitional_prerequisites(concepts: Sequence[Concept], focus: Set[str]) -> List[Relationship]:
        """B is a prerequisite of A when A's definition or key points name B."""

        edges: List[Relationship] = []
        for dependent in concepts:
            text = " ".join([dependent.definition, *dependent.key_points]).lower()
            for candidate in concepts:
                if candidate.id == dependent.id:
                    continue
                if dependent.id not in focus and candidate.id not in focus:
                    continue
                name = normalized_name(candidate.name)
                if len(name) < 3:
                    continue
                phrase = r"\s+".join(re.escape(part) for part in name.split())
                if not re.search(rf"\b{phrase}s?\b", text):
                    continue
                strength = BASE_DEFINITIONAL_STRENGTH
                cues = "|".join(re.escape(cue) for cue in DEPENDENCY_CUES)
                if re.search(rf"\b(?:{cues})\b[^.]*?\b{phrase}", text):
                    strength += DEPENDENCY_CUE_BONUS
                if candidate.tier <= dependent.tier:
                    strength += SAME_OR_LOWER_TIER_BONUS
                else:
                    strength -= HIGHER_TIER_PENALTY
                edges.append(
                    Relationship(
                        from_concept_id=candidate.id,
                        to_concept_id=dependent.id,
                        relationship_type=RelationshipType.PREREQUISITE,
                        strength=round(clamp(strength, 0.1, 1.0), 2),
                    )
                )
        return edges

    def _infer_with_model(self, concepts: Sequence[Concept], focus: Set[str], warnings: List[str]) -> List[Relationship]:
        targets = [concept for concept in concepts if concept.id in focus]
        if len(targets) < 2:
            return []
        listing = [{"name": concept.name, "definition": concept.definition, "tier": concept.tier} for concept in targets]
        user_message = "Map the relationships between these concepts:\n\n" + json.dumps(listing, indent=2)
        try:
            result = self.client.send(SYSTEM_PROMPT, user_message, self.options)
            payload = require_mapping(result.data, "relationship response")
            entries = require_list(payload, "relationships", "relationship response")
        except Exception as exc:
            message = f"Relationship inference failed; keeping definitional edges only: {exc}"
            LOGGER.warning("%s", message)
            warnings.append(message)
            return []
        return self.map_named_relationships(entries, targets)

    @staticmethod
    def map_named_relationships(entries: Sequence[object], concepts: Sequence[Concept]) -> List[Relationship]:
        """Resolve name-addressed edges to concept ids, dropping anything unresolvable."""

        ids_by_name = {concept.name.lower(): concept.id for concept in concepts}
        edges: List[Relationship] = []
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            source = optional_text(first_present(entry, "from", "from_concept", "fromConcept"))
            target = optional_text(first_present(entry, "to", "to_concept", "toConcept"))
            from_id = ids_by_name.get(source.lower()) if source else None
            to_id = ids_by_name.get(target.lower()) if target else None
            if from_id is None or to_id is None or from_id == to_id:
                LOGGER.debug("Dropping relationship %r -> %r", source, target)
                continue
            try:
                relationship_type = RelationshipType(str(first_present(entry, "type", "relationship_type")).lower())
            except ValueError:
                continue
            strength = coerce_number(entry.get("strength"))
            edges.append(
                Relationship(
                    from_concept_id=from_id,
                    to_concept_id=to_id,
                    relationship_type=relationship_type,
                    strength=clamp(strength if strength is not None else 0.5, 0.0, 1.0),
                )
            )
        return edges


__all__ = [
    "CycleRepair",
    "GraphBuildResult",
    "KnowledgeGraphBuilder",
    "ProjectMergeResult",
    "dedupe_relationships",
    "definition_similarity",
    "find_prerequisite_cycle",
    "merge_into_project",
    "normalized_name",
    "prerequisite_edges",
    "repair_prerequisite_cycles",
    "topological_order",
]
