"""
Records and constant tables shared by the three content analysis passes.

Everything here is plain data: pydantic models that serialize cleanly for the
storage/UI layer plus the lookup tables (Bloom order, mode multipliers, time
factors) that the passes read through their config objects.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


class ContentType(str, Enum):
    SURVEY = "survey"
    CONCEPTUAL = "conceptual"
    PROCEDURAL = "procedural"


class BloomLevel(str, Enum):
    REMEMBER = "remember"
    UNDERSTAND = "understand"
    APPLY = "apply"
    ANALYZE = "analyze"
    EVALUATE = "evaluate"
    CREATE = "create"


class ExtractionDepth(str, Enum):
    MENTIONS = "mentions"
    EXPLANATIONS = "explanations"


class CognitiveType(str, Enum):
    DECLARATIVE = "declarative"
    CONCEPTUAL = "conceptual"
    PROCEDURAL = "procedural"
    CONDITIONAL = "conditional"
    METACOGNITIVE = "metacognitive"


class KnowledgeType(str, Enum):
    FACTUAL = "factual"
    CONCEPTUAL = "conceptual"
    PROCEDURAL = "procedural"


class RelationshipType(str, Enum):
    PREREQUISITE = "prerequisite"
    CAUSAL = "causal"
    TAXONOMIC = "taxonomic"
    TEMPORAL = "temporal"
    CONTRASTS_WITH = "contrasts_with"
    ELABORATION_OF = "elaboration_of"
    EVIDENCE_FOR = "evidence_for"
    EXAMPLE_OF = "example_of"
    DEFINITION_OF = "definition_of"


class QuestionType(str, Enum):
    DEFINITION_RECALL = "definition_recall"
    TRUE_FALSE = "true_false"
    MULTIPLE_CHOICE = "multiple_choice"
    APPLICATION = "application"
    SEQUENCE = "sequence"
    COMPARISON = "comparison"
    CAUSE_EFFECT = "cause_effect"


class PipelineStage(str, Enum):
    PENDING = "pending"
    ROUTING_CONTENT = "routing_content"
    EXTRACTING_CONCEPTS = "extracting_concepts"
    GENERATING_MISCONCEPTIONS = "generating_misconceptions"
    BUILDING_GRAPH = "building_graph"
    ARCHITECTING_ROADMAP = "architecting_roadmap"
    VALIDATING = "validating"
    COMPLETED = "completed"
    FAILED = "failed"


# ----------------------------------------------------------------------
# Constant tables
# ----------------------------------------------------------------------

BLOOM_LEVEL_ORDER: Dict[BloomLevel, int] = {
    BloomLevel.REMEMBER: 1,
    BloomLevel.UNDERSTAND: 2,
    BloomLevel.APPLY: 3,
    BloomLevel.ANALYZE: 4,
    BloomLevel.EVALUATE: 5,
    BloomLevel.CREATE: 6,
}

BLOOM_VERBS: Dict[BloomLevel, Tuple[str, ...]] = {
    BloomLevel.REMEMBER: ("define", "list", "recall", "identify", "name"),
    BloomLevel.UNDERSTAND: ("explain", "describe", "summarize", "interpret", "classify"),
    BloomLevel.APPLY: ("apply", "use", "implement", "solve", "demonstrate"),
    BloomLevel.ANALYZE: ("analyze", "compare", "contrast", "differentiate", "examine"),
    BloomLevel.EVALUATE: ("evaluate", "judge", "critique", "justify", "assess"),
    BloomLevel.CREATE: ("create", "design", "construct", "develop", "formulate"),
}

DEFAULT_BLOOM_CEILINGS: Dict[ContentType, BloomLevel] = {
    ContentType.SURVEY: BloomLevel.UNDERSTAND,
    ContentType.CONCEPTUAL: BloomLevel.ANALYZE,
    ContentType.PROCEDURAL: BloomLevel.APPLY,
}

MODE_MULTIPLIERS: Dict[ContentType, float] = {
    ContentType.SURVEY: 1.5,
    ContentType.CONCEPTUAL: 2.5,
    ContentType.PROCEDURAL: 4.0,
}

DENSITY_MODIFIERS: Dict[str, float] = {"low": 0.8, "medium": 1.0, "high": 1.5}

KNOWLEDGE_TYPE_FACTORS: Dict[KnowledgeType, float] = {
    KnowledgeType.FACTUAL: 0.8,
    KnowledgeType.CONCEPTUAL: 1.0,
    KnowledgeType.PROCEDURAL: 1.5,
}

COGNITIVE_KNOWLEDGE_TYPES: Dict[CognitiveType, KnowledgeType] = {
    CognitiveType.DECLARATIVE: KnowledgeType.FACTUAL,
    CognitiveType.CONCEPTUAL: KnowledgeType.CONCEPTUAL,
    CognitiveType.PROCEDURAL: KnowledgeType.PROCEDURAL,
    CognitiveType.CONDITIONAL: KnowledgeType.CONCEPTUAL,
    CognitiveType.METACOGNITIVE: KnowledgeType.CONCEPTUAL,
}

QUESTION_TYPES_BY_BLOOM: Dict[BloomLevel, Tuple[QuestionType, ...]] = {
    BloomLevel.REMEMBER: (QuestionType.DEFINITION_RECALL, QuestionType.TRUE_FALSE, QuestionType.MULTIPLE_CHOICE),
    BloomLevel.UNDERSTAND: (QuestionType.DEFINITION_RECALL, QuestionType.TRUE_FALSE, QuestionType.MULTIPLE_CHOICE),
    BloomLevel.APPLY: (QuestionType.APPLICATION, QuestionType.SEQUENCE),
    BloomLevel.ANALYZE: (QuestionType.COMPARISON, QuestionType.CAUSE_EFFECT, QuestionType.APPLICATION),
    BloomLevel.EVALUATE: (QuestionType.COMPARISON, QuestionType.CAUSE_EFFECT, QuestionType.APPLICATION),
    BloomLevel.CREATE: (QuestionType.COMPARISON, QuestionType.CAUSE_EFFECT, QuestionType.APPLICATION),
}

TIER_LABELS: Dict[int, str] = {1: "Familiar", 2: "Important", 3: "Enduring"}


def bloom_order(level: BloomLevel | str) -> int:
    """Return the 1-based position of ``level`` in Bloom's taxonomy."""
    return BLOOM_LEVEL_ORDER[BloomLevel(level)]


def exceeds_ceiling(level: BloomLevel | str, ceiling: BloomLevel | str) -> bool:
    return bloom_order(level) > bloom_order(ceiling)


def cap_bloom_level(level: BloomLevel | str, ceiling: BloomLevel | str) -> BloomLevel:
    """Downgrade ``level`` to ``ceiling`` when it sits above it."""
    if exceeds_ceiling(level, ceiling):
        return BloomLevel(ceiling)
    return BloomLevel(level)


def highest_bloom_level(levels: List[BloomLevel]) -> Optional[BloomLevel]:
    if not levels:
        return None
    return max((BloomLevel(level) for level in levels), key=bloom_order)


def knowledge_type_for(cognitive_type: CognitiveType | str) -> KnowledgeType:
    return COGNITIVE_KNOWLEDGE_TYPES[CognitiveType(cognitive_type)]


# ----------------------------------------------------------------------
# Pass 1
# ----------------------------------------------------------------------


class ContentAnalysis(BaseModel):
    """Routing decision for one source; read-only once Pass 1 returns it."""

    model_config = ConfigDict(frozen=True)

    content_type: ContentType
    thesis_statement: Optional[str] = None
    bloom_ceiling: BloomLevel
    mode_multiplier: float = Field(..., gt=0.0)
    extraction_depth: ExtractionDepth = ExtractionDepth.EXPLANATIONS
    source_duration_seconds: Optional[int] = Field(default=None, gt=0)
    concept_density: Optional[float] = Field(default=None, ge=0.0)
    topic_count: Optional[int] = Field(default=None, ge=0)
    warnings: Tuple[str, ...] = ()


# ----------------------------------------------------------------------
# Pass 2
# ----------------------------------------------------------------------


class LearningObjective(BaseModel):
    bloom_verb: str
    objective_statement: str
    success_criteria: List[str] = Field(default_factory=list)


class SampleQuestion(BaseModel):
    question_type: QuestionType
    question: str
    correct_answer: str
    explanation: Optional[str] = None


class AssessmentSpec(BaseModel):
    appropriate_question_types: List[QuestionType] = Field(default_factory=list)
    inappropriate_question_types: List[QuestionType] = Field(default_factory=list)
    sample_question: Optional[SampleQuestion] = None
    mastery_indicators: List[str] = Field(default_factory=list)
    anti_patterns: List[str] = Field(default_factory=list)


class Segment(BaseModel):
    """Time range inside the source. Ranges are checked by the validation gate, not here."""

    start_sec: float
    end_sec: float


class KeyMoment(BaseModel):
    timestamp_sec: float
    description: str


class SourceMapping(BaseModel):
    primary_segment: Segment
    key_moments: List[KeyMoment] = Field(default_factory=list)
    review_clip: Optional[Segment] = None


class Misconception(BaseModel):
    misconception: str
    reality: str
    trigger_detection: str
    remediation: str


class Concept(BaseModel):
    """One extracted unit of learning plus its pedagogical metadata."""

    id: str
    source_ids: List[str] = Field(default_factory=list)
    name: str = Field(..., min_length=2, max_length=100)
    definition: str = Field(..., min_length=1)
    key_points: List[str] = Field(default_factory=list)
    cognitive_type: CognitiveType = CognitiveType.CONCEPTUAL
    difficulty: int = Field(default=5, ge=1, le=10)
    tier: int = Field(default=2, ge=1, le=3)
    mentioned_only: bool = False
    bloom_level: BloomLevel = BloomLevel.UNDERSTAND
    definition_provided: bool = True
    time_allocation_percent: float = Field(default=0.0, ge=0.0, le=100.0)
    learning_objectives: List[LearningObjective] = Field(default_factory=list)
    assessment_spec: Optional[AssessmentSpec] = None
    source_mapping: Optional[SourceMapping] = None
    common_misconceptions: List[Misconception] = Field(default_factory=list)
    one_sentence_summary: Optional[str] = None
    why_it_matters: Optional[str] = None

    @field_validator("name", "definition", mode="before")
    @classmethod
    def strip_text(cls, value: object) -> object:
        if isinstance(value, str):
            return value.strip()
        return value


# ----------------------------------------------------------------------
# Graph
# ----------------------------------------------------------------------


class Relationship(BaseModel):
    """Typed edge. For prerequisites, ``from_concept_id`` is learned before ``to_concept_id``."""

    from_concept_id: str
    to_concept_id: str
    relationship_type: RelationshipType
    strength: float = Field(default=0.5, ge=0.0, le=1.0)
    source_ids: List[str] = Field(default_factory=list)

    @property
    def key(self) -> Tuple[str, str, str]:
        return (self.from_concept_id, self.to_concept_id, self.relationship_type.value)


class ProjectGraph(BaseModel):
    """Project-wide concept graph accumulated across sources."""

    project_id: str
    concepts: List[Concept] = Field(default_factory=list)
    relationships: List[Relationship] = Field(default_factory=list)
    source_ids: List[str] = Field(default_factory=list)


# ----------------------------------------------------------------------
# Pass 3
# ----------------------------------------------------------------------


class ElaborationLevel(BaseModel):
    level: int = Field(..., ge=0)
    title: str
    concept_ids: List[str] = Field(default_factory=list)
    estimated_minutes: float = Field(default=0.0, ge=0.0)
    bloom_target: Optional[BloomLevel] = None


class TimeCalibration(BaseModel):
    source_minutes: Optional[float] = None
    mode_multiplier: float
    density_modifier: float
    concept_density: Optional[float] = None
    level_minutes: Dict[int, float] = Field(default_factory=dict)
    total_minutes: float = 0.0
    used_source_duration: bool = True


class ValidationResults(BaseModel):
    proportionality_passed: bool
    bloom_ceiling_passed: bool
    time_sanity_passed: bool
    learning_objectives_passed: Optional[bool] = None
    assessment_spec_passed: Optional[bool] = None
    source_mapping_passed: Optional[bool] = None
    warnings: List[str] = Field(default_factory=list)


class MasteryGate(BaseModel):
    after_level: int = Field(..., ge=1)
    required_score: float = Field(default=0.8, ge=0.0, le=1.0)
    quiz_concept_ids: List[str] = Field(default_factory=list)


class Roadmap(BaseModel):
    """Pass 3 output for one source."""

    epitome_concept_id: Optional[str] = None
    levels: List[ElaborationLevel] = Field(default_factory=list)
    time_calibration: TimeCalibration
    validation_results: ValidationResults
    glossary_concept_ids: List[str] = Field(default_factory=list)
    mastery_gates: List[MasteryGate] = Field(default_factory=list)
    publishable: bool = True
    blocking_failures: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)


__all__ = [
    "AssessmentSpec",
    "BLOOM_LEVEL_ORDER",
    "BLOOM_VERBS",
    "BloomLevel",
    "COGNITIVE_KNOWLEDGE_TYPES",
    "CognitiveType",
    "Concept",
    "ContentAnalysis",
    "ContentType",
    "DEFAULT_BLOOM_CEILINGS",
    "DENSITY_MODIFIERS",
    "ElaborationLevel",
    "ExtractionDepth",
    "KNOWLEDGE_TYPE_FACTORS",
    "KeyMoment",
    "KnowledgeType",
    "LearningObjective",
    "MODE_MULTIPLIERS",
    "MasteryGate",
    "Misconception",
    "PipelineStage",
    "ProjectGraph",
    "QUESTION_TYPES_BY_BLOOM",
    "QuestionType",
    "Relationship",
    "RelationshipType",
    "Roadmap",
    "SampleQuestion",
    "Segment",
    "SourceMapping",
    "TIER_LABELS",
    "TimeCalibration",
    "ValidationResults",
    "bloom_order",
    "cap_bloom_level",
    "exceeds_ceiling",
    "highest_bloom_level",
    "knowledge_type_for",
]
