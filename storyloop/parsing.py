"""
Parsing of generation text into structured payloads.

Generation output is expected to carry a fenced ```json block (trailing
commas tolerated) or, failing that, a bare JSON array/object. Anything that
does not yield the expected shape raises MalformedResponseError; it is never
silently ignored and never retried.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from storyloop.errors import MalformedResponseError
from storyloop.models import Failure, Priority, SchemaValidationError

logger = logging.getLogger(__name__)

_FENCED_JSON = re.compile(r"```(?:json)?\s*\n?([\s\S]*?)\n?\s*```")
_TRAILING_COMMA = re.compile(r",(\s*[}\]])")


def _strip_trailing_commas(text: str) -> str:
    return _TRAILING_COMMA.sub(r"\1", text)


def extract_json(text: str, expect: type) -> Any:
    """
    Pull the first JSON value of the expected type out of model text.

    Raises:
        MalformedResponseError: No JSON of the expected type was found.
    """
    candidates = [m.group(1) for m in _FENCED_JSON.finditer(text)]
    opener, closer = ("[", "]") if expect is list else ("{", "}")
    start, end = text.find(opener), text.rfind(closer)
    if start != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        try:
            value = json.loads(_strip_trailing_commas(candidate.strip()))
        except json.JSONDecodeError:
            continue
        if isinstance(value, expect):
            return value

    logger.debug("No JSON %s found in %d chars of output", expect.__name__, len(text))
    raise MalformedResponseError(
        f"Generation output did not contain a JSON {expect.__name__}",
        raw=text[:1000],
    )


@dataclass
class TaskDraft:
    """A task as proposed by generation, before ids and ordinals are assigned."""
    title: str
    description: str
    priority: Priority


def parse_task_drafts(text: str) -> list[TaskDraft]:
    """
    Parse a Task list [{title, description, priority}].

    Raises:
        MalformedResponseError: Empty list, missing titles or bad priorities.
    """
    items = extract_json(text, list)
    if not items:
        raise MalformedResponseError("Generation returned an empty task list", raw=text[:1000])

    drafts = []
    for index, item in enumerate(items, start=1):
        if not isinstance(item, dict) or not str(item.get("title", "")).strip():
            raise MalformedResponseError(f"Task {index} has no title", raw=text[:1000])
        try:
            priority = Priority(str(item.get("priority", "medium")).lower())
        except ValueError:
            raise MalformedResponseError(
                f"Task {index} has unknown priority {item.get('priority')!r}", raw=text[:1000],
            )
        drafts.append(TaskDraft(
            title=str(item["title"]).strip(),
            description=str(item.get("description", "")),
            priority=priority,
        ))
    return drafts


def _failure_from_generation(item: Any) -> Failure:
    if not isinstance(item, dict):
        raise SchemaValidationError("failure", "must be an object", item)
    steps = item.get("steps", [])
    if isinstance(steps, str):
        steps = [steps]
    return Failure(
        severity=str(item.get("severity", "")).lower(),
        category=str(item.get("category", "")).lower(),
        scenario=str(item.get("scenario", "")),
        expected_behavior=str(item.get("expectedBehavior", item.get("expected_behavior", ""))),
        actual_behavior=str(item.get("actualBehavior", item.get("actual_behavior", ""))),
        steps=[str(s) for s in steps],
        evidence=item.get("evidence"),
    )


def parse_failures(items: Any) -> list[Failure]:
    """
    Convert generated failure dicts into Failures.

    Accepts both camelCase and snake_case behavior keys.

    Raises:
        MalformedResponseError: Any entry fails validation.
    """
    if not isinstance(items, list):
        raise MalformedResponseError("failures must be a list")
    failures = []
    for index, item in enumerate(items, start=1):
        try:
            failures.append(_failure_from_generation(item))
        except SchemaValidationError as e:
            raise MalformedResponseError(f"Failure {index} is invalid: {e}")
    return failures


def parse_failure_list(text: str) -> list[Failure]:
    """Parse a bare Failure list out of model text."""
    return parse_failures(extract_json(text, list))


def parse_object(text: str, required: tuple[str, ...] = ()) -> dict[str, Any]:
    """
    Parse a JSON object and check that the required keys are present.

    Raises:
        MalformedResponseError: No object, or a required key is missing.
    """
    data = extract_json(text, dict)
    missing = [key for key in required if key not in data]
    if missing:
        raise MalformedResponseError(
            f"Generation output is missing {', '.join(missing)}", raw=text[:1000],
        )
    return data
