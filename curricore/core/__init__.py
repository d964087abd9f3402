"""
Records, configuration and shared services for the analysis pipeline.

Nothing in here imports the pass implementations, so the records can be used
by storage or UI layers on their own.
"""

from .config import PipelineConfig, load_pipeline_config
from .errors import AnalysisError
from .provenance import ProvenanceEvent, ProvenanceLogger

__all__ = [
    "AnalysisError",
    "PipelineConfig",
    "ProvenanceEvent",
    "ProvenanceLogger",
    "load_pipeline_config",
]
