"""Guard against pydantic v1 idioms creeping back into the codebase."""

from __future__ import annotations

import re
from pathlib import Path
from typing import Iterator

import pytest

REPO_ROOT = Path(__file__).resolve().parents[1]
PACKAGE_DIRS: tuple[str, ...] = ("apps", "curricore", "knowledge_store", "tests")
V1_IDIOMS: dict[str, re.Pattern[str]] = {
    "@validator / @root_validator": re.compile(r"@(?:root_)?validator\b"),
    "validator import": re.compile(r"\bfrom\s+pydantic\s+import\b[^\n]*\b(?:root_)?validator\b"),
    "inner class Config": re.compile(r"^\s+class Config\s*:", re.MULTILINE),
    "parse_obj / parse_raw": re.compile(r"\.parse_(?:obj|raw)\("),
    "update_forward_refs": re.compile(r"\.update_forward_refs\("),
    ".dict() serialization": re.compile(r"\b(?:self|model|record|event)\.dict\("),
}


def _source_files() -> Iterator[Path]:
    this_file = Path(__file__).resolve()
    for directory in PACKAGE_DIRS:
        for path in sorted((REPO_ROOT / directory).rglob("*.py")):
            if path.resolve() != this_file:
                yield path


@pytest.mark.parametrize("label", sorted(V1_IDIOMS))
def test_no_pydantic_v1_idioms(label: str) -> None:
    pattern = V1_IDIOMS[label]
    offenders = [
        str(path.relative_to(REPO_ROOT))
        for path in _source_files()
        if pattern.search(path.read_text(encoding="utf-8"))
    ]
    if offenders:
        pytest.fail(f"pydantic v1 idiom '{label}' found in:\n" + "\n".join(offenders))


def test_guard_scans_the_packages() -> None:
    scanned = {path.relative_to(REPO_ROOT).parts[0] for path in _source_files()}
    assert {"apps", "curricore", "knowledge_store"} <= scanned
