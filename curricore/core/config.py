"""
Typed configuration for the content analysis pipeline and rubric evaluator.

Every threshold the passes rely on lives here as an explicit default so YAML
overrides and tests can swap tables without touching the pass code.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Literal, Optional

import yaml
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from .pedagogy import (
    DEFAULT_BLOOM_CEILINGS,
    DENSITY_MODIFIERS,
    KNOWLEDGE_TYPE_FACTORS,
    MODE_MULTIPLIERS,
    BloomLevel,
    ContentType,
    KnowledgeType,
)
from .rubric import INTERACTION_RUBRIC_DIMENSIONS, RUBRIC_PASS_THRESHOLDS, InteractionType, RubricDimension

MODEL_ROLES: tuple[str, ...] = ("router", "extractor", "annotator", "graph", "architect", "evaluator")
DEFAULT_ROLE_TEMPERATURES: Dict[str, float] = {
    "router": 0.2,
    "extractor": 0.3,
    "annotator": 0.4,
    "graph": 0.3,
    "architect": 0.3,
    "evaluator": 0.3,
}
VALIDATION_CHECKS: tuple[str, ...] = (
    "proportionality",
    "bloom_ceiling",
    "time_sanity",
    "learning_objectives",
    "assessment_spec",
    "source_mapping",
)


class RoleModelConfig(BaseModel):
    """Provider-specific configuration for a single LM role."""

    model_config = ConfigDict(extra="allow")

    provider: Literal["openai", "anthropic"] = "openai"
    model: str
    temperature: float | None = Field(default=None, ge=0.0, le=1.0)
    max_tokens: int | None = Field(default=None, ge=64)
    api_key_env: str | None = None
    api_base: str | None = None

    @property
    def extra_kwargs(self) -> Dict[str, Any]:
        return getattr(self, "model_extra", None) or {}


class ModelConfig(BaseModel):
    """LM settings for each pass. A ``default`` block fills in unspecified role fields."""

    model_config = ConfigDict(extra="forbid")

    router: RoleModelConfig
    extractor: RoleModelConfig
    annotator: RoleModelConfig
    graph: RoleModelConfig
    architect: RoleModelConfig
    evaluator: RoleModelConfig
    default_max_tokens: int = Field(default=4096, ge=256)

    @model_validator(mode="before")
    @classmethod
    def apply_default_block(cls, data: Any) -> Any:
        if data is None:
            data = {}
        if not isinstance(data, dict):
            return data

        payload = dict(data)
        default_block = payload.pop("default", None) or {}
        if not isinstance(default_block, dict):
            raise ValueError("models.default must be a mapping")
        base = {"provider": "openai", "model": "gpt-4o-mini", **default_block}

        for role in MODEL_ROLES:
            role_block = payload.get(role)
            if isinstance(role_block, RoleModelConfig):
                continue
            merged = {**base, **(role_block or {})}
            merged.setdefault("temperature", DEFAULT_ROLE_TEMPERATURES[role])
            payload[role] = merged
        return payload

    def get_role(self, role: str) -> RoleModelConfig:
        if role not in MODEL_ROLES:
            raise KeyError(f"Unknown model role '{role}'")
        return getattr(self, role)


class RoutingConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    mode_multipliers: Dict[ContentType, float] = Field(default_factory=lambda: dict(MODE_MULTIPLIERS))
    bloom_ceiling_defaults: Dict[ContentType, BloomLevel] = Field(default_factory=lambda: dict(DEFAULT_BLOOM_CEILINGS))
    min_source_words: int = Field(default=12, ge=1)
    max_classification_chars: int = Field(default=15000, ge=500)
    procedural_step_threshold: int = Field(default=3, ge=1)
    survey_topic_threshold: int = Field(default=4, ge=2)


class ExtractionConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    max_chunk_chars: int = Field(default=50000, ge=1000)
    max_learning_objectives: int = Field(default=3, ge=0)
    difficulty_weights: Dict[str, float] = Field(
        default_factory=lambda: {"abstractness": 0.4, "prerequisite_depth": 0.35, "relational_complexity": 0.25}
    )

    @field_validator("difficulty_weights")
    @classmethod
    def weights_are_positive(cls, value: Dict[str, float]) -> Dict[str, float]:
        expected = {"abstractness", "prerequisite_depth", "relational_complexity"}
        if set(value) != expected:
            raise ValueError(f"difficulty_weights must define exactly {sorted(expected)}")
        if any(weight <= 0 for weight in value.values()):
            raise ValueError("difficulty_weights must all be positive")
        return value


class AnnotationConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    enabled: bool = True
    batch_size: int = Field(default=5, ge=1)
    max_per_concept: int = Field(default=3, ge=1)


class GraphConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    similarity_threshold: float = Field(default=0.8, gt=0.0, le=1.0)
    infer_from_definitions: bool = True
    infer_with_model: bool = True


class RoadmapConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    density_low_max: float = Field(default=0.5, gt=0.0)
    density_medium_max: float = Field(default=1.5, gt=0.0)
    density_modifiers: Dict[str, float] = Field(default_factory=lambda: dict(DENSITY_MODIFIERS))
    knowledge_type_factors: Dict[KnowledgeType, float] = Field(default_factory=lambda: dict(KNOWLEDGE_TYPE_FACTORS))
    max_concepts_per_minute: float = Field(default=3.0, gt=0.0)
    min_concepts_per_minute: float = Field(default=0.3, ge=0.0)
    min_minutes_for_underextraction: float = Field(default=3.0, ge=0.0)
    time_sanity_max_multipliers: Dict[ContentType, float] = Field(
        default_factory=lambda: {ContentType.SURVEY: 2.0, ContentType.CONCEPTUAL: 5.0, ContentType.PROCEDURAL: 10.0}
    )
    time_sanity_min_ratio: float = Field(default=0.8, ge=0.0)
    hard_failure_checks: List[str] = Field(default_factory=lambda: ["bloom_ceiling"])
    mastery_gate_score: float = Field(default=0.8, ge=0.0, le=1.0)

    @field_validator("density_modifiers")
    @classmethod
    def density_bands_present(cls, value: Dict[str, float]) -> Dict[str, float]:
        missing = {"low", "medium", "high"} - set(value)
        if missing:
            raise ValueError(f"density_modifiers missing bands: {', '.join(sorted(missing))}")
        return value

    @field_validator("hard_failure_checks")
    @classmethod
    def known_checks(cls, value: List[str]) -> List[str]:
        unknown = [check for check in value if check not in VALIDATION_CHECKS]
        if unknown:
            raise ValueError(f"Unknown validation checks: {', '.join(unknown)}")
        return value

    @model_validator(mode="after")
    def ordered_density_bands(self) -> "RoadmapConfig":
        if self.density_low_max >= self.density_medium_max:
            raise ValueError("density_low_max must be below density_medium_max")
        return self


class RubricConfig(BaseModel):
    model_config = ConfigDict(extra="forbid")

    pass_thresholds: Dict[RubricDimension, int] = Field(default_factory=lambda: dict(RUBRIC_PASS_THRESHOLDS))
    interaction_dimensions: Dict[InteractionType, List[RubricDimension]] = Field(
        default_factory=lambda: {key: list(value) for key, value in INTERACTION_RUBRIC_DIMENSIONS.items()}
    )

    @field_validator("interaction_dimensions")
    @classmethod
    def merge_dimension_overrides(
        cls, value: Dict[InteractionType, List[RubricDimension]]
    ) -> Dict[InteractionType, List[RubricDimension]]:
        """Overrides replace single interaction types; omitted types keep the default table."""
        empty = [kind.value for kind, dimensions in value.items() if not dimensions]
        if empty:
            raise ValueError(f"interaction_dimensions must list at least one dimension for: {', '.join(empty)}")
        merged = {kind: list(dimensions) for kind, dimensions in INTERACTION_RUBRIC_DIMENSIONS.items()}
        merged.update(value)
        return merged

    @field_validator("pass_thresholds")
    @classmethod
    def thresholds_in_range(cls, value: Dict[RubricDimension, int]) -> Dict[RubricDimension, int]:
        missing = set(RubricDimension) - set(value)
        if missing:
            raise ValueError(f"pass_thresholds missing dimensions: {', '.join(sorted(d.value for d in missing))}")
        for dimension, threshold in value.items():
            if not 0 <= threshold <= 3:
                raise ValueError(f"Threshold for {dimension.value} must be between 0 and 3")
        return value


class ProvenanceConfig(BaseModel):
    """Where stage events are appended. ``None`` disables the JSONL log."""

    log_path: Optional[Path] = None

    @field_validator("log_path", mode="before")
    @classmethod
    def coerce_path(cls, value: Any) -> Optional[Path]:
        if value in (None, ""):
            return None
        return Path(value).expanduser().resolve()


class StoreConfig(BaseModel):
    """Project graph persistence. ``sqlite_path`` of ``None`` keeps graphs in memory."""

    sqlite_path: Optional[Path] = None

    @field_validator("sqlite_path", mode="before")
    @classmethod
    def coerce_path(cls, value: Any) -> Optional[Path]:
        if value in (None, ""):
            return None
        return Path(value).expanduser().resolve()


class PipelineConfig(BaseModel):
    """Top-level configuration for the analysis pipeline and evaluator."""

    models: ModelConfig = Field(default_factory=lambda: ModelConfig.model_validate({}))
    routing: RoutingConfig = Field(default_factory=RoutingConfig)
    extraction: ExtractionConfig = Field(default_factory=ExtractionConfig)
    annotation: AnnotationConfig = Field(default_factory=AnnotationConfig)
    graph: GraphConfig = Field(default_factory=GraphConfig)
    roadmap: RoadmapConfig = Field(default_factory=RoadmapConfig)
    rubric: RubricConfig = Field(default_factory=RubricConfig)
    provenance: ProvenanceConfig = Field(default_factory=ProvenanceConfig)
    store: StoreConfig = Field(default_factory=StoreConfig)


def read_yaml_file(path: Path) -> Dict[str, Any]:
    """Load a YAML file and return a dictionary."""
    with path.open("r", encoding="utf-8") as handle:
        data = yaml.safe_load(handle) or {}
    if not isinstance(data, dict):
        raise ValueError(f"Expected mapping at root of {path}, received {type(data)}")
    return data


def _resolve_config_path(value: Any, base_dir: Path) -> str:
    path = Path(value).expanduser()
    if not path.is_absolute():
        path = (base_dir / path).resolve()
    else:
        path = path.resolve()
    return str(path)


def _absolutize_pipeline_paths(data: Dict[str, Any], base_dir: Path) -> None:
    for section, key in (("provenance", "log_path"), ("store", "sqlite_path")):
        block = data.get(section)
        if isinstance(block, dict) and block.get(key):
            block[key] = _resolve_config_path(block[key], base_dir)


def load_pipeline_config(path: Path, *, base_dir: Path | None = None) -> PipelineConfig:
    """Load the pipeline config, resolving relative paths against ``base_dir`` or the file's directory."""
    path = path.expanduser().resolve()
    try:
        data = read_yaml_file(path)
    except yaml.YAMLError as exc:
        raise ValueError(f"Invalid YAML in {path}") from exc
    _absolutize_pipeline_paths(data, base_dir=(base_dir or path.parent).resolve())
    try:
        return PipelineConfig.model_validate(data)
    except ValidationError as exc:
        raise ValueError(f"Invalid pipeline config in {path}") from exc


__all__ = [
    "AnnotationConfig",
    "ExtractionConfig",
    "GraphConfig",
    "MODEL_ROLES",
    "ModelConfig",
    "PipelineConfig",
    "ProvenanceConfig",
    "RoadmapConfig",
    "RoleModelConfig",
    "RoutingConfig",
    "RubricConfig",
    "StoreConfig",
    "VALIDATION_CHECKS",
    "load_pipeline_config",
    "read_yaml_file",
]
