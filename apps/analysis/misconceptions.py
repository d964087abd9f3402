"""Attach common-misconception records to concepts and match learner answers against them."""

from __future__ import annotations

import json
import logging
import re
from textwrap import dedent
from typing import Any, Dict, List, Mapping, Sequence

from curricore.core.config import AnnotationConfig, ModelConfig
from curricore.core.llm import CompletionOptions, StructuredCompletionClient, options_for_role
from curricore.core.pedagogy import Concept, Misconception
from curricore.core.validation import first_present, optional_text, require_list, require_mapping

LOGGER = logging.getLogger(__name__)

SYSTEM_PROMPT = dedent(
    """
    You identify the misconceptions learners commonly hold about concepts.

    For each concept give up to {max_per_concept} misconceptions. Each one needs:
      misconception: the wrong belief, stated as a learner would hold it
      reality: the correct understanding
      trigger_detection: keywords or short phrases (separated by |) that signal
        the misconception in a learner's answer
      remediation: how to correct it in one or two sentences

    Respond with JSON only:
    {{"concepts": [{{"concept_name": "...", "misconceptions": [ ... ]}}]}}
    """
).strip()


def needs_annotation(concept: Concept) -> bool:
    """Only explained, tier 2-3 concepts get misconception records."""
    return concept.tier >= 2 and not concept.mentioned_only


def detect_misconceptions(concept: Concept, answer: str) -> List[Misconception]:
    """Return the concept's misconceptions whose trigger pattern appears in ``answer``.

    Triggers are ``|``-separated alternatives matched case-insensitively. A
    trigger that is not a valid regular expression is matched as plain text.
    """

    if not answer:
        return []
    matches: List[Misconception] = []
    for record in concept.common_misconceptions:
        pattern = record.trigger_detection.strip()
        if not pattern:
            continue
        try:
            hit = re.search(pattern, answer, re.IGNORECASE) is not None
        except re.error:
            lowered = answer.lower()
            hit = any(part.strip().lower() in lowered for part in pattern.split("|") if part.strip())
        if hit:
            matches.append(record)
    return matches


class MisconceptionAnnotator:
    """Batches eligible concepts through the completion client.

    A batch that errors or comes back malformed leaves its concepts
    unannotated; the failure is appended to the caller's ``warnings`` list and
    the run continues.
    """

    def __init__(
        self,
        client: StructuredCompletionClient,
        *,
        config: AnnotationConfig | None = None,
        options: CompletionOptions | None = None,
    ) -> None:
        self.client = client
        self.config = config or AnnotationConfig()
        self.options = options or options_for_role(ModelConfig().annotator)

    def annotate(self, concepts: Sequence[Concept], warnings: List[str] | None = None) -> List[Concept]:
        eligible = [concept for concept in concepts if needs_annotation(concept)]
        if not eligible:
            return list(concepts)

        found: Dict[str, List[Misconception]] = {}
        size = self.config.batch_size
        for start in range(0, len(eligible), size):
            batch = eligible[start : start + size]
            try:
                found.update(self._annotate_batch(batch))
            except Exception as exc:
                names = ", ".join(concept.name for concept in batch)
                message = f"Misconception annotation failed for {names}: {exc}"
                LOGGER.warning("%s", message)
                if warnings is not None:
                    warnings.append(message)

        annotated: List[Concept] = []
        for concept in concepts:
            records = found.get(concept.id)
            if records:
                annotated.append(concept.model_copy(update={"common_misconceptions": records}))
            else:
                annotated.append(concept)
        LOGGER.info("Annotated %d of %d eligible concepts with misconceptions", len(found), len(eligible))
        return annotated

    def _annotate_batch(self, batch: Sequence[Concept]) -> Dict[str, List[Misconception]]:
        listing = [
            {"concept_name": concept.name, "definition": concept.definition, "key_points": concept.key_points}
            for concept in batch
        ]
        user_message = "Identify misconceptions for these concepts:\n\n" + json.dumps(listing, indent=2)
        system_prompt = SYSTEM_PROMPT.format(max_per_concept=self.config.max_per_concept)
        result = self.client.send(system_prompt, user_message, self.options)
        payload = require_mapping(result.data, "misconception response")
        entries = require_list(payload, "concepts", "misconception response")

        by_name = {concept.name.lower(): concept for concept in batch}
        found: Dict[str, List[Misconception]] = {}
        for entry in entries:
            if not isinstance(entry, Mapping):
                continue
            name = optional_text(first_present(entry, "concept_name", "conceptName", "name"))
            concept = by_name.get(name.lower()) if name else None
            if concept is None:
                LOGGER.debug("Ignoring misconceptions for unknown concept %r", name)
                continue
            records = self._records(entry.get("misconceptions"))
            if records:
                found[concept.id] = records
        return found

    def _records(self, value: Any) -> List[Misconception]:
        if not isinstance(value, list):
            return []
        records: List[Misconception] = []
        for item in value:
            if not isinstance(item, Mapping):
                continue
            fields = {
                "misconception": optional_text(item.get("misconception")),
                "reality": optional_text(item.get("reality")),
                "trigger_detection": optional_text(first_present(item, "trigger_detection", "triggerDetection")),
                "remediation": optional_text(item.get("remediation")),
            }
            if any(field_value is None for field_value in fields.values()):
                continue
            records.append(Misconception(**fields))
        return records[: self.config.max_per_concept]


__all__ = ["MisconceptionAnnotator", "detect_misconceptions", "needs_annotation"]
