from __future__ import annotations

import json
import math
import re
from dataclasses import dataclass, field
from typing import Any

from automata.tasks import Subtask

REQUIRED_SUBTASK_FIELDS = ("id", "content", "label")
QA_KEYWORDS = (
    "validate",
    "validation",
    "verify",
    "verification",
    "test",
    "tests",
    "testing",
    "lint",
    "build",
    "review",
    "qa",
    "check",
    "typecheck",
    "inspect",
    "audit",
)
QA_KEYWORD_PATTERN = re.compile(r"\b(" + "|".join(QA_KEYWORDS) + r")\b", re.IGNORECASE)
AUTO_QA_RATIO = 0.6


@dataclass(slots=True)
class SubtaskIssue:
    index: int
    subtask_id: str | None
    missing_fields: list[str]


@dataclass(slots=True)
class ValidationResult:
    valid: bool
    subtasks: list[dict[str, Any]] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    issues: list[SubtaskIssue] = field(default_factory=list)
    duplicate_ids: list[str] = field(default_factory=list)


def _balanced_object_end(text: str, start: int) -> int | None:
    depth = 0
    in_string = False
    escaped = False
    for index in range(start, len(text)):
        char = text[index]
        if in_string:
            if escaped:
                escaped = False
            elif char == "\\":
                escaped = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                return index
    return None


def extract_json(raw_text: str) -> tuple[dict[str, Any] | None, str | None]:
    """Return the first balanced JSON object found in free-form agent output.

    Agents wrap JSON in prose or code fences; a ``{`` that does not start a
    parseable object is skipped and the scan continues. Never raises.
    """
    if not raw_text or not raw_text.strip():
        return None, "Output is empty"

    last_error: str | None = None
    position = raw_text.find("{")
    while position != -1:
        end = _balanced_object_end(raw_text, position)
        if end is None:
            # A stray brace in prose can swallow the real object; try the next one.
            last_error = last_error or "Unbalanced braces: JSON object is not closed"
            position = raw_text.find("{", position + 1)
            continue
        candidate = raw_text[position : end + 1]
        try:
            parsed = json.loads(candidate)
        except json.JSONDecodeError as exc:
            last_error = f"Invalid JSON: {exc.msg} (line {exc.lineno}, column {exc.colno})"
        else:
            if isinstance(parsed, dict):
                return parsed, None
        position = raw_text.find("{", position + 1)

    return None, last_error or "No JSON object found in output"


def validate_subtasks(document: Any) -> ValidationResult:
    if not isinstance(document, dict):
        return ValidationResult(valid=False, errors=["Output is not a JSON object"])
    entries = document.get("subtasks")
    if not isinstance(entries, list):
        return ValidationResult(
            valid=False, errors=['Missing "subtasks" array in JSON output']
        )
    if not entries:
        return ValidationResult(valid=False, errors=['"subtasks" array is empty'])

    result = ValidationResult(valid=True)
    seen: set[str] = set()
    for index, entry in enumerate(entries):
        if not isinstance(entry, dict):
            result.issues.append(
                SubtaskIssue(index=index, subtask_id=None, missing_fields=list(REQUIRED_SUBTASK_FIELDS))
            )
            continue
        missing = [
            name
            for name in REQUIRED_SUBTASK_FIELDS
            if not isinstance(entry.get(name), str) or not entry.get(name, "").strip()
        ]
        subtask_id = entry.get("id") if isinstance(entry.get("id"), str) else None
        if missing:
            result.issues.append(
                SubtaskIssue(index=index, subtask_id=subtask_id, missing_fields=missing)
            )
        if subtask_id:
            if subtask_id in seen:
                result.duplicate_ids.append(subtask_id)
            seen.add(subtask_id)
        result.subtasks.append(entry)

    for issue in result.issues:
        where = f"subtask {issue.index + 1}"
        if issue.subtask_id:
            where += f' (id "{issue.subtask_id}")'
        result.errors.append(f"{where} is missing required field(s): {', '.join(issue.missing_fields)}")
    for duplicate in result.duplicate_ids:
        result.errors.append(f'duplicate subtask id "{duplicate}"')
    result.valid = not result.errors
    return result


def generate_feedback(result: ValidationResult) -> str:
    if result.valid:
        return ""
    lines = ["The subtasks JSON failed validation:"]
    lines.extend(f"- {error}" for error in result.errors)
    lines.append("")
    lines.append(
        "Every subtask needs non-empty string fields: "
        + ", ".join(f'"{name}"' for name in REQUIRED_SUBTASK_FIELDS)
        + "."
    )
    return "\n".join(lines)


def extract_and_validate_subtasks(raw_text: str) -> tuple[list[dict[str, Any]] | None, str | None]:
    document, error = extract_json(raw_text)
    if document is None:
        return None, error
    result = validate_subtasks(document)
    if not result.valid:
        return None, generate_feedback(result)
    return result.subtasks, None


def infer_subtask_type(label: str, content: str) -> str:
    if QA_KEYWORD_PATTERN.search(f"{label} {content}"):
        return "qa"
    return "dev"


def _unique_id(candidate: str, used_ids: set[str]) -> str:
    # Ids are never reused within a task, including ids of earlier runs.
    subtask_id = candidate
    suffix = 1
    while subtask_id in used_ids:
        suffix += 1
        subtask_id = f"{candidate}-{suffix}"
    return subtask_id


def normalize_subtasks(entries: list[dict[str, Any]], *, taken_ids: set[str] | None = None) -> list[Subtask]:
    """Turn validated agent entries into pending subtasks, dev first then QA.

    When the agent produced no QA subtasks, verification subtasks are added at
    roughly 60% of the dev count.
    """
    used_ids = set(taken_ids or ())
    dev: list[Subtask] = []
    qa: list[Subtask] = []
    for entry in entries:
        label = str(entry["label"]).strip()
        content = str(entry["content"]).strip()
        raw_type = entry.get("type")
        if raw_type in {"dev", "qa"}:
            subtask_type = raw_type
        else:
            subtask_type = infer_subtask_type(label, content)
        active_form = str(entry.get("activeForm") or entry.get("active_form") or "").strip()
        subtask_id = _unique_id(str(entry["id"]).strip(), used_ids)
        subtask = Subtask(
            id=subtask_id,
            label=label,
            content=content,
            type=subtask_type,  # type: ignore[arg-type]
            active_form=active_form or f"Working on {label}",
        )
        used_ids.add(subtask.id)
        (qa if subtask.type == "qa" else dev).append(subtask)

    if not qa:
        for step in range(1, math.floor(len(dev) * AUTO_QA_RATIO) + 1):
            subtask_id = _unique_id(f"subtask-qa-{step}", used_ids)
            used_ids.add(subtask_id)
            qa.append(
                Subtask(
                    id=subtask_id,
                    label=f"Verify Step {step}",
                    content=(
                        f"[AUTO] Verify implementation step {step} - "
                        "Validate the corresponding development work"
                    ),
                    type="qa",
                    active_form=f"Verifying Step {step}",
                )
            )
    return [*dev, *qa]
