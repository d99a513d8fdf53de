"""
Task completion detection for single-session runs.

The remote agent reports progress as free text. Each detector is a pure
function ``(events, pending_ids) -> matched_ids``; ``detect_completions``
applies them in a fixed order and never reports an id twice.
"""

import re
from typing import Callable, Iterable

from ..models import AgentEvent

Detector = Callable[[list[AgentEvent], set[str]], set[str]]

COMPLETION_MARKER = re.compile(r"<task-complete>\s*([^<\s]+)\s*</task-complete>")

COMMIT_TOOLS = {"bash", "shell"}
TODO_TOOLS = {"todowrite"}


def mentions_task(text: str, task_id: str) -> bool:
    """Whether ``task_id`` appears in ``text`` as a whole token.

    ``US-1`` is not found inside ``US-10``.
    """
    return re.search(rf"(?<![\w-]){re.escape(task_id)}(?![\w-])", text) is not None


def _tool_name(event: AgentEvent) -> str:
    return (event.tool or "").lower()


def detect_marker(events: list[AgentEvent], pending_ids: set[str]) -> set[str]:
    """Explicit ``<task-complete>ID</task-complete>`` markers in agent output."""
    matched = set()
    for event in events:
        for text in (event.output, event.content):
            if not text:
                continue
            for task_id in COMPLETION_MARKER.findall(text):
                if task_id in pending_ids:
                    matched.add(task_id)
    return matched


def detect_commit(events: list[AgentEvent], pending_ids: set[str]) -> set[str]:
    """Shell tool runs of ``git commit`` that reference a pending task id."""
    matched = set()
    for event in events:
        if _tool_name(event) not in COMMIT_TOOLS:
            continue
        display = event.display or ""
        output = event.text
        if "git commit" not in display and "git commit" not in output:
            continue
        for task_id in pending_ids:
            if mentions_task(display, task_id) or mentions_task(output, task_id):
                matched.add(task_id)
    return matched


def detect_todo_update(events: list[AgentEvent], pending_ids: set[str]) -> set[str]:
    """Todo list updates that mark a pending task id as completed."""
    matched = set()
    for event in events:
        if _tool_name(event) not in TODO_TOOLS:
            continue
        output = event.text
        if "completed" not in output:
            continue
        for task_id in pending_ids:
            if mentions_task(output, task_id):
                matched.add(task_id)
    return matched


DETECTORS: tuple[Detector, ...] = (detect_marker, detect_commit, detect_todo_update)


def detect_completions(
    events: Iterable[AgentEvent],
    pending_ids: Iterable[str],
    already_matched: Iterable[str] = (),
    detectors: tuple[Detector, ...] = DETECTORS,
) -> list[str]:
    """
    Run the detector pipeline over a batch of agent events.

    Args:
        events: Agent events to inspect
        pending_ids: Task IDs that may still be matched
        already_matched: IDs matched earlier; never reported again
        detectors: Detectors applied in order

    Returns:
        Newly matched task IDs in the order detectors found them
    """
    batch = list(events)
    remaining = set(pending_ids) - set(already_matched)
    found: list[str] = []

    for detector in detectors:
        if not remaining:
            break
        for task_id in sorted(detector(batch, remaining)):
            if task_id in remaining:
                found.append(task_id)
                remaining.discard(task_id)

    return found
