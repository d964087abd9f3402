"""Bootstrap helpers: environment, config, client, store and provenance in one place."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Dict

from dotenv import load_dotenv

from apps.analysis.pipeline import ContentAnalysisPipeline
from apps.evaluation.rubric_service import RubricEvaluationService
from curricore.core.config import PipelineConfig, load_pipeline_config
from curricore.core.llm import StructuredCompletionClient, build_completion_client, options_for_role
from curricore.core.provenance import ProvenanceEvent, ProvenanceLogger
from knowledge_store.storage import InMemoryProjectGraphStore, ProjectGraphStore, SQLiteProjectGraphStore

from .context import PipelineContext

DEFAULT_CONFIG_PATH = Path("config/pipeline.yaml")
DEFAULT_ENV_KEYS = ("OPENAI_API_KEY", "ANTHROPIC_API_KEY", "CURRICORE_CONFIG")
LOGGER = logging.getLogger(__name__)


def _capture_env(keys: tuple[str, ...]) -> Dict[str, str]:
    """Return which of ``keys`` are set, never their values."""
    return {key: "set" for key in keys if os.getenv(key)}


def _build_store(config: PipelineConfig) -> ProjectGraphStore:
    if config.store.sqlite_path is not None:
        return SQLiteProjectGraphStore(config.store.sqlite_path)
    return InMemoryProjectGraphStore()


def bootstrap_pipeline(
    config_path: Path | None = None,
    *,
    repo_root: Path | None = None,
    client: StructuredCompletionClient | None = None,
    env_keys: tuple[str, ...] = DEFAULT_ENV_KEYS,
) -> PipelineContext:
    """
    Load environment variables and configuration, then construct the pipeline context.

    Parameters
    ----------
    config_path:
        Path to the pipeline YAML. Defaults to ``$CURRICORE_CONFIG`` or
        ``config/pipeline.yaml`` under ``repo_root``; when neither exists the
        built-in defaults are used.
    repo_root:
        Root used to find ``.env`` and the default config. Defaults to ``Path.cwd()``.
    client:
        Completion client to inject. Defaults to the DSPy-backed client built
        from ``config.models``.
    """

    repo_root = (repo_root or Path.cwd()).resolve()
    load_dotenv(repo_root / ".env")

    if config_path is None:
        env_path = os.getenv("CURRICORE_CONFIG")
        config_path = Path(env_path) if env_path else repo_root / DEFAULT_CONFIG_PATH
        if not config_path.exists():
            LOGGER.info("No pipeline config at %s; using defaults", config_path)
            config_path = None
    config = load_pipeline_config(config_path) if config_path is not None else PipelineConfig()

    provenance = ProvenanceLogger(config.provenance.log_path) if config.provenance.log_path else None
    ctx = PipelineContext(
        config=config,
        repo_root=repo_root,
        client=client or build_completion_client(config.models),
        store=_build_store(config),
        provenance=provenance,
        env=_capture_env(env_keys),
    )

    if ctx.provenance is not None:
        ctx.provenance.log(
            ProvenanceEvent(
                stage="bootstrap",
                message="Pipeline context ready",
                payload={
                    "config_path": str(config_path) if config_path else None,
                    "models": {role: config.models.get_role(role).model for role in ("extractor", "evaluator")},
                    "store": str(config.store.sqlite_path) if config.store.sqlite_path else "memory",
                    "env": ctx.env,
                },
            )
        )
    return ctx


def build_analysis_pipeline(ctx: PipelineContext, **kwargs) -> ContentAnalysisPipeline:
    """Pipeline wired to the context's client, store and provenance log."""
    return ContentAnalysisPipeline(
        ctx.client,
        config=ctx.config,
        store=ctx.store,
        provenance=ctx.provenance,
        **kwargs,
    )


def build_rubric_service(ctx: PipelineContext) -> RubricEvaluationService:
    models = ctx.config.models
    return RubricEvaluationService(
        ctx.client,
        config=ctx.config.rubric,
        options=options_for_role(models.evaluator, default_max_tokens=models.default_max_tokens),
    )
