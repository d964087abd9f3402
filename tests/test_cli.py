import json
from pathlib import Path
from unittest import mock

import pytest
from typer.testing import CliRunner

from curricore.cli import main as cli
from curricore.core.llm import CompletionError
from tests.mocks.completion_client import ANNOTATOR, EXTRACTOR, GRAPH, ROUTER, RUBRIC, FakeCompletionClient
from tests.mocks.payloads import CONCEPTUAL_TEXT, caching_concepts, conceptual_route

runner = CliRunner()


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("CURRICORE_CONFIG", raising=False)


def _patched_client(client: FakeCompletionClient):
    return mock.patch("curricore.pipeline.bootstrap.build_completion_client", return_value=client)


def test_analyze_prints_roadmap_and_writes_json(tmp_path: Path) -> None:
    source = tmp_path / "lecture.txt"
    source.write_text(CONCEPTUAL_TEXT, encoding="utf-8")
    output = tmp_path / "out" / "analysis.json"
    client = FakeCompletionClient(
        {
            ROUTER: conceptual_route(),
            EXTRACTOR: caching_concepts(),
            ANNOTATOR: {"concepts": []},
            GRAPH: {"relationships": []},
        }
    )

    with _patched_client(client):
        result = runner.invoke(
            cli.app,
            [
                "analyze",
                str(source),
                "--duration-seconds",
                "600",
                "--repo-root",
                str(tmp_path),
                "--output",
                str(output),
            ],
        )

    assert result.exit_code == 0, result.stdout
    assert "Roadmap for lecture" in result.stdout
    assert "Total learning time: 20.0 min" in result.stdout
    payload = json.loads(output.read_text(encoding="utf-8"))
    assert payload["source_id"] == "lecture"
    assert payload["roadmap"]["epitome_concept_id"] == "lecture:caching"


def test_analyze_exits_non_zero_on_analysis_error(tmp_path: Path) -> None:
    source = tmp_path / "lecture.txt"
    source.write_text(CONCEPTUAL_TEXT, encoding="utf-8")
    client = FakeCompletionClient({ROUTER: CompletionError("provider unavailable")})

    with _patched_client(client):
        result = runner.invoke(cli.app, ["analyze", str(source), "--repo-root", str(tmp_path)])

    assert result.exit_code == 1
    assert "routing_content" in result.stdout
    assert "CLASSIFICATION_FAILED" in result.stdout


def test_grade_prints_results(tmp_path: Path) -> None:
    batch = tmp_path / "batch.json"
    batch.write_text(
        json.dumps(
            {
                "source_id": "src-1",
                "interactions": [
                    {
                        "interaction_id": "i1",
                        "concept_id": "src-1:caching",
                        "concept_name": "Caching",
                        "interaction_type": "mcq",
                        "prompt": "Pick the cache",
                        "user_answer": "B",
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    client = FakeCompletionClient(
        {RUBRIC: {"evaluations": [{"interactionId": "i1", "dimensions": [{"dimension": "accuracy", "score": 3}]}]}}
    )

    with _patched_client(client):
        result = runner.invoke(cli.app, ["grade", str(batch), "--repo-root", str(tmp_path)])

    assert result.exit_code == 0, result.stdout
    assert "accuracy=3" in result.stdout
    assert "pass" in result.stdout


def test_grade_exits_non_zero_on_parse_error(tmp_path: Path) -> None:
    batch = tmp_path / "batch.json"
    batch.write_text(
        json.dumps(
            {
                "source_id": "src-1",
                "interactions": [
                    {
                        "interaction_id": "i1",
                        "concept_id": "c",
                        "concept_name": "Caching",
                        "interaction_type": "mcq",
                        "prompt": "?",
                        "user_answer": "B",
                    }
                ],
            }
        ),
        encoding="utf-8",
    )
    client = FakeCompletionClient({RUBRIC: {"evaluations": [{"interactionId": "other", "dimensions": []}]}})

    with _patched_client(client):
        result = runner.invoke(cli.app, ["grade", str(batch), "--repo-root", str(tmp_path)])

    assert result.exit_code == 1
    assert "PARSE_ERROR" in result.stdout


def test_grade_rejects_invalid_batch_file(tmp_path: Path) -> None:
    batch = tmp_path / "batch.json"
    batch.write_text(json.dumps({"interactions": []}), encoding="utf-8")
    result = runner.invoke(cli.app, ["grade", str(batch), "--repo-root", str(tmp_path)])
    assert result.exit_code == 2


def test_version_command() -> None:
    with mock.patch("curricore.cli.main.get_version", return_value="9.9.9"):
        result = runner.invoke(cli.app, ["version"])
    assert result.exit_code == 0
    assert "9.9.9" in result.stdout


@pytest.mark.parametrize("command", ["analyze", "grade"])
def test_missing_api_key_is_a_configuration_error(
    command: str, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
) -> None:
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)
    batch = {
        "source_id": "src-1",
        "interactions": [
            {
                "interaction_id": "i1",
                "concept_id": "src-1:caching",
                "concept_name": "Caching",
                "interaction_type": "mcq",
                "prompt": "Pick the cache",
                "user_answer": "B",
            }
        ],
    }
    target = tmp_path / "input.json"
    target.write_text(CONCEPTUAL_TEXT if command == "analyze" else json.dumps(batch), encoding="utf-8")

    result = runner.invoke(cli.app, [command, str(target), "--repo-root", str(tmp_path)])

    assert result.exit_code == 2
    assert "Missing API key" in result.stdout
