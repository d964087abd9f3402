"""Command-line entry point: analyze a transcript or grade a batch of interactions."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from apps.analysis.pipeline import SourceDocument
from apps.evaluation.rubric_service import RubricEvaluationError
from curricore import get_version
from curricore.core.errors import AnalysisError
from curricore.core.llm import CompletionConfigurationError
from curricore.core.rubric import BatchEvaluationRequest
from curricore.pipeline import bootstrap_pipeline, build_analysis_pipeline, build_rubric_service

app = typer.Typer(help="Analyze educational sources and grade learner answers.")
console = Console()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _bootstrap(config: Optional[Path], repo_root: Optional[Path]):
    try:
        return bootstrap_pipeline(config, repo_root=repo_root)
    except (ValueError, CompletionConfigurationError) as exc:
        console.print(f"[bold red]Configuration error:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=2) from exc


@app.command()
def analyze(
    text_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="Transcript or extracted text."),
    source_id: Optional[str] = typer.Option(None, "--source-id", help="Defaults to the file stem."),
    project_id: str = typer.Option("default", "--project-id"),
    duration_seconds: Optional[int] = typer.Option(None, "--duration-seconds", min=1),
    config: Optional[Path] = typer.Option(None, "--config", help="Pipeline YAML (default: config/pipeline.yaml)."),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root"),
    output: Optional[Path] = typer.Option(None, "--output", help="Write the full outcome as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    _configure_logging(verbose)
    ctx = _bootstrap(config, repo_root)
    pipeline = build_analysis_pipeline(ctx)
    source = SourceDocument(
        source_id=source_id or text_file.stem,
        project_id=project_id,
        text=text_file.read_text(encoding="utf-8"),
        duration_seconds=duration_seconds,
    )

    try:
        outcome = pipeline.analyze(source)
    except AnalysisError as exc:
        status = pipeline.get_status(source.source_id)
        stage = status.last_failed_stage.value if status.last_failed_stage else "unknown"
        console.print(f"[bold red]Analysis failed during {stage}:[/bold red] {escape(str(exc))}")
        for warning in status.warnings:
            console.print(f"[yellow]warning:[/yellow] {escape(warning)}")
        raise typer.Exit(code=1) from exc

    analysis = outcome.analysis
    console.print(
        f"[bold]{analysis.content_type.value}[/bold] content, Bloom ceiling "
        f"[cyan]{analysis.bloom_ceiling.value}[/cyan], mode x{analysis.mode_multiplier:g}"
    )
    names = {concept.id: concept.name for concept in outcome.concepts}
    table = Table(title=f"Roadmap for {source.source_id}", show_header=True)
    table.add_column("Level", justify="right")
    table.add_column("Title")
    table.add_column("Concepts")
    table.add_column("Minutes", justify="right")
    for level in outcome.roadmap.levels:
        table.add_row(
            str(level.level),
            level.title,
            ", ".join(names.get(concept_id, concept_id) for concept_id in level.concept_ids),
            f"{level.estimated_minutes:.1f}",
        )
    console.print(table)
    console.print(f"Total learning time: {outcome.roadmap.time_calibration.total_minutes:.1f} min")
    for warning in outcome.warnings:
        console.print(f"[yellow]warning:[/yellow] {escape(warning)}")

    if output is not None:
        payload = {
            "source_id": outcome.source_id,
            "analysis": analysis.model_dump(mode="json"),
            "concepts": [concept.model_dump(mode="json") for concept in outcome.concepts],
            "relationships": [edge.model_dump(mode="json") for edge in outcome.relationships],
            "roadmap": outcome.roadmap.model_dump(mode="json"),
            "warnings": outcome.warnings,
        }
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(json.dumps(payload, indent=2), encoding="utf-8")
        console.print(f"[green]Wrote {output}[/green]")


@app.command()
def grade(
    batch_file: Path = typer.Argument(..., exists=True, dir_okay=False, help="JSON batch evaluation request."),
    config: Optional[Path] = typer.Option(None, "--config"),
    repo_root: Optional[Path] = typer.Option(None, "--repo-root"),
    output: Optional[Path] = typer.Option(None, "--output", help="Write the evaluations as JSON."),
    verbose: bool = typer.Option(False, "--verbose", "-v"),
) -> None:
    _configure_logging(verbose)
    try:
        request = BatchEvaluationRequest.model_validate_json(batch_file.read_text(encoding="utf-8"))
    except ValidationError as exc:
        console.print(f"[bold red]Invalid batch file:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=2) from exc

    service = build_rubric_service(_bootstrap(config, repo_root))
    try:
        response = service.evaluate_batch(request)
    except RubricEvaluationError as exc:
        console.print(f"[bold red]Grading failed:[/bold red] {escape(str(exc))}")
        raise typer.Exit(code=1) from exc

    table = Table(title=f"Rubric results for {request.source_id}", show_header=True)
    table.add_column("Interaction")
    table.add_column("Scores")
    table.add_column("Result", justify="center")
    for evaluation in response.evaluations:
        scores = ", ".join(f"{item.dimension.value}={item.score}" for item in evaluation.dimensions)
        verdict = "[green]pass[/green]" if evaluation.passed else "[red]fail[/red]"
        table.add_row(evaluation.interaction_id, scores, verdict)
    console.print(table)
    console.print(f"Tokens used: {response.total_tokens}")

    if output is not None:
        output.parent.mkdir(parents=True, exist_ok=True)
        output.write_text(response.model_dump_json(indent=2), encoding="utf-8")
        console.print(f"[green]Wrote {output}[/green]")


@app.command()
def version() -> None:
    """Print the installed curricore version."""
    console.print(get_version())


if __name__ == "__main__":
    app()
