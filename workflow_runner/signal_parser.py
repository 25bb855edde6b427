"""
Signal parsing for worker output.

The worker is an opaque text producer. This module is the single place that
imposes structure on its output:
- <phase>SIGNAL_NAME</phase>      phase-completion signal (allow-listed names)
- <plan>PLAN_<N>_COMPLETE</plan>  one implementation plan finished
- <promise>FAILED</promise>       terminal failure, optional <error>TEXT</error>
- <promise>COMPLETE</promise>     terminal success claim
- key: value lines after a tag    auxiliary data (pr_number, branch, ...)

Parsing never raises: text without a recognized tag yields None.
"""

from __future__ import annotations

import re
from typing import Any, Callable, Optional

from workflow_runner.models import Event, EventType


PHASE_SIGNALS: dict[str, EventType] = {
    "SETUP_COMPLETE": EventType.SETUP_COMPLETE,
    "PLANNING_COMPLETE": EventType.PLANNING_COMPLETE,
    "IMPLEMENTATION_COMPLETE": EventType.IMPLEMENTATION_COMPLETE,
    "PR_CREATED": EventType.PR_CREATED,
    "CI_PASSED": EventType.CI_PASSED,
    "CI_FAILED": EventType.CI_FAILED,
    "CI_FIX_PUSHED": EventType.CI_FIX_PUSHED,
    "COMMENTS_RESOLVED": EventType.COMMENTS_RESOLVED,
    "COMMENTS_PENDING": EventType.COMMENTS_PENDING,
    "COMMENT_FIX_PUSHED": EventType.COMMENT_FIX_PUSHED,
    "WORKFLOW_COMPLETE": EventType.WORKFLOW_COMPLETE,
}

DEFAULT_FAILURE_REASON = "Unknown error"

PHASE_TAG = re.compile(r"<phase>\s*(\w+)\s*</phase>")
PLAN_TAG = re.compile(r"<plan>\s*PLAN_([1-9]\d*)_COMPLETE\s*</plan>")
PROMISE_FAILED = re.compile(r"<promise>\s*FAILED\s*</promise>")
PROMISE_COMPLETE = re.compile(r"<promise>\s*COMPLETE\s*</promise>")
ERROR_TAG = re.compile(r"<error>([^<]+)</error>")

ANY_TAG = re.compile(
    r"<phase>\s*(?P<phase>\w+)\s*</phase>"
    r"|<plan>\s*PLAN_(?P<plan>[1-9]\d*)_COMPLETE\s*</plan>"
    r"|<promise>\s*(?P<promise>COMPLETE|FAILED)\s*</promise>"
)


def _to_int(value: str) -> Optional[int]:
    match = re.search(r"\d+", value)
    return int(match.group()) if match else None


def _to_list(value: str) -> list[str]:
    return [item.strip() for item in value.split(",") if item.strip()]


def _to_int_list(value: str) -> list[int]:
    return [int(n) for n in re.findall(r"\d+", value)]


# signal name -> [(line key, payload key, converter)]
_FieldSpec = tuple[str, str, Callable[[str], Any]]

SIGNAL_FIELDS: dict[str, list[_FieldSpec]] = {
    "SETUP_COMPLETE": [
        ("worktree_path", "worktree_path", str),
        ("branch", "branch", str),
    ],
    "PLANNING_COMPLETE": [
        ("plans_count", "plan_count", _to_int),
        ("plan_files", "plan_files", _to_list),
        ("plan_issues", "plan_issues", _to_int_list),
    ],
    "PR_CREATED": [
        ("pr_url", "pr_url", str),
        ("pr_number", "pr_number", _to_int),
    ],
    "CI_FAILED": [
        ("ci_failure_reason", "reason", str),
    ],
    "COMMENTS_PENDING": [
        ("comments_pending", "count", _to_int),
    ],
}


def _field_pattern(key: str) -> re.Pattern:
    # Key at line start, optionally behind list or quote markers
    return re.compile(rf"^[ \t>*\-]*{re.escape(key)}:[ \t]*(.+?)[ \t]*$", re.MULTILINE)


def extract_signal_data(output: str, signal: str) -> dict[str, Any]:
    """
    Mine auxiliary key: value lines associated with a signal.

    When the signal's tag appears in the output only the text after it is
    searched; otherwise the whole output is. Absent fields are omitted.

    Args:
        output: Raw worker output.
        signal: Signal name, e.g. "PR_CREATED".

    Returns:
        Payload dict using Event data keys.
    """
    fields = SIGNAL_FIELDS.get(signal)
    if not fields or not isinstance(output, str):
        return {}

    tag = re.search(rf"<phase>\s*{re.escape(signal)}\s*</phase>", output)
    region = output[tag.end():] if tag else output

    data: dict[str, Any] = {}
    for key, payload_key, convert in fields:
        match = _field_pattern(key).search(region)
        if not match:
            continue
        value = convert(match.group(1).strip())
        if value is None or value == "" or value == []:
            continue
        data[payload_key] = value
    return data


def _failure_event(output: str, start: int = 0) -> Event:
    error = ERROR_TAG.search(output, start) or ERROR_TAG.search(output)
    reason = error.group(1).strip() if error else DEFAULT_FAILURE_REASON
    return Event.fail(reason or DEFAULT_FAILURE_REASON)


def _phase_event(output: str, name: str) -> Event:
    return Event(PHASE_SIGNALS[name], extract_signal_data(output, name))


def parse_signals(output: str) -> Optional[Event]:
    """
    Extract the single most work-advancing event from worker output.

    Precedence: phase tag, then plan tag, then <promise>FAILED</promise>,
    then <promise>COMPLETE</promise>. Among phase tags the first allow-listed
    name wins; unknown names are ignored.

    Args:
        output: Raw worker output.

    Returns:
        The parsed Event, or None if no recognized signal is present.
    """
    if not isinstance(output, str) or not output:
        return None

    for match in PHASE_TAG.finditer(output):
        name = match.group(1)
        if name in PHASE_SIGNALS:
            return _phase_event(output, name)

    plan = PLAN_TAG.search(output)
    if plan:
        return Event(EventType.PLAN_COMPLETE, {"plan_number": int(plan.group(1))})

    if PROMISE_FAILED.search(output):
        return _failure_event(output)

    if PROMISE_COMPLETE.search(output):
        return Event(EventType.WORKFLOW_COMPLETE)

    return None


def parse_all_signals(output: str) -> list[Event]:
    """
    Return every recognized tag occurrence in document order.

    Intended for diagnostics and replay. The run loop consumes exactly one
    event per iteration and must use parse_signals instead.
    """
    if not isinstance(output, str) or not output:
        return []

    events: list[Event] = []
    for match in ANY_TAG.finditer(output):
        if match.group("phase") is not None:
            name = match.group("phase")
            if name in PHASE_SIGNALS:
                events.append(_phase_event(output, name))
        elif match.group("plan") is not None:
            events.append(Event(
                EventType.PLAN_COMPLETE,
                {"plan_number": int(match.group("plan"))},
            ))
        elif match.group("promise") == "FAILED":
            events.append(_failure_event(output, match.end()))
        else:
            events.append(Event(EventType.WORKFLOW_COMPLETE))
    return events
