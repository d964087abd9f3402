"""Shared context objects for the analysis pipeline."""

from __future__ import annotations

from pathlib import Path
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from curricore.core.config import PipelineConfig
from curricore.core.llm import StructuredCompletionClient
from curricore.core.provenance import ProvenanceLogger
from knowledge_store.storage import ProjectGraphStore


class PipelineContext(BaseModel):
    """Aggregated runtime context handed to the pipeline and the rubric service."""

    config: PipelineConfig
    repo_root: Path
    client: StructuredCompletionClient
    store: ProjectGraphStore
    provenance: Optional[ProvenanceLogger] = None
    env: Dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(arbitrary_types_allowed=True)

    @field_validator("repo_root", mode="before")
    @classmethod
    def _expand(cls, value: Path | str) -> Path:
        return Path(value).expanduser().resolve()
