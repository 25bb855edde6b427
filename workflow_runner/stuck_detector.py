"""
Stuck-loop detection for fix cycles.

Pure functions over small immutable state values. Two detectors:
- detect_stuck: the same error text seen ``threshold`` times in a row
- detect_stuck_with_category: additionally trips when errors keep landing in
  the same coarse category (build, test, lint...) even though the text
  differs, e.g. the same build break reported with shifting line numbers
"""

from __future__ import annotations

import hashlib
from dataclasses import dataclass
from enum import Enum
from typing import Optional


DEFAULT_EXACT_THRESHOLD = 3
DEFAULT_CATEGORY_THRESHOLD = 5


def hash_error(error: str) -> str:
    """Content digest of an error string."""
    return hashlib.sha256(error.encode("utf-8", errors="replace")).hexdigest()


@dataclass(frozen=True)
class StuckDetectorState:
    """Last error digest and how many times in a row it has been seen."""
    last_error_hash: Optional[str] = None
    stuck_count: int = 0


@dataclass(frozen=True)
class StuckDetection:
    is_stuck: bool
    next_state: StuckDetectorState


def detect_stuck(
    state: StuckDetectorState,
    current_error: str,
    threshold: int = DEFAULT_EXACT_THRESHOLD,
) -> StuckDetection:
    """
    Compare one error against the previous one.

    Args:
        state: Detector state before this error.
        current_error: Error text observed now.
        threshold: Consecutive identical errors that count as stuck.

    Returns:
        StuckDetection with the verdict and the state to carry forward.
    """
    current_hash = hash_error(current_error)

    if current_hash == state.last_error_hash:
        count = state.stuck_count + 1
        return StuckDetection(
            is_stuck=count >= threshold,
            next_state=StuckDetectorState(current_hash, count),
        )

    return StuckDetection(
        is_stuck=threshold <= 1,
        next_state=StuckDetectorState(current_hash, 1),
    )


def reset_stuck_detector() -> StuckDetectorState:
    return StuckDetectorState()


def get_stuck_status(state: StuckDetectorState) -> str:
    """Human-readable summary of the detector state."""
    if state.last_error_hash is None:
        return "No errors recorded"
    return f"{state.stuck_count} identical error(s) detected"


def has_seen_errors(state: StuckDetectorState) -> bool:
    return state.last_error_hash is not None


class ErrorCategory(Enum):
    BUILD_FAILURE = "build_failure"
    TEST_FAILURE = "test_failure"
    LINT_ERROR = "lint_error"
    TYPE_ERROR = "type_error"
    TIMEOUT = "timeout"
    NETWORK_ERROR = "network_error"
    UNKNOWN = "unknown"


# Checked in order; first hit wins
CATEGORY_MARKERS: list[tuple[ErrorCategory, tuple[str, ...]]] = [
    (ErrorCategory.BUILD_FAILURE, ("build failed", "compilation error")),
    (ErrorCategory.TEST_FAILURE, ("test failed", "assertion")),
    (ErrorCategory.LINT_ERROR, ("lint", "eslint")),
    (ErrorCategory.TYPE_ERROR, ("type error", "ts2")),
    (ErrorCategory.TIMEOUT, ("timeout", "timed out")),
    (ErrorCategory.NETWORK_ERROR, ("network", "connection")),
]


def categorize_error(error: str) -> ErrorCategory:
    """Bucket an error by substring heuristics."""
    lowered = error.lower()
    for category, markers in CATEGORY_MARKERS:
        if any(marker in lowered for marker in markers):
            return category
    return ErrorCategory.UNKNOWN


class StuckReason(Enum):
    EXACT_MATCH = "exact_match"
    CATEGORY_MATCH = "category_match"


@dataclass(frozen=True)
class CategoryAwareState:
    last_error_hash: Optional[str] = None
    last_category: Optional[ErrorCategory] = None
    category_count: int = 0
    exact_count: int = 0


@dataclass(frozen=True)
class CategoryAwareDetection:
    is_stuck: bool
    reason: Optional[StuckReason]
    category: ErrorCategory
    next_state: CategoryAwareState


def detect_stuck_with_category(
    state: CategoryAwareState,
    current_error: str,
    exact_threshold: int = DEFAULT_EXACT_THRESHOLD,
    category_threshold: int = DEFAULT_CATEGORY_THRESHOLD,
) -> CategoryAwareDetection:
    """
    Stuck check on exact repetition OR repeated category.

    The UNKNOWN category carries no signal and never trips the category
    criterion, however often it repeats.

    Args:
        state: Detector state before this error.
        current_error: Error text observed now.
        exact_threshold: Consecutive identical errors that count as stuck.
        category_threshold: Consecutive same-category errors that count as stuck.

    Returns:
        CategoryAwareDetection; reason prefers EXACT_MATCH when both trip.
    """
    current_hash = hash_error(current_error)
    category = categorize_error(current_error)

    exact_count = state.exact_count + 1 if current_hash == state.last_error_hash else 1
    same_category = category == state.last_category and category != ErrorCategory.UNKNOWN
    category_count = state.category_count + 1 if same_category else 1

    stuck_by_exact = exact_count >= exact_threshold
    stuck_by_category = (
        category != ErrorCategory.UNKNOWN and category_count >= category_threshold
    )

    reason = None
    if stuck_by_exact:
        reason = StuckReason.EXACT_MATCH
    elif stuck_by_category:
        reason = StuckReason.CATEGORY_MATCH

    return CategoryAwareDetection(
        is_stuck=reason is not None,
        reason=reason,
        category=category,
        next_state=CategoryAwareState(
            last_error_hash=current_hash,
            last_category=category,
            category_count=category_count,
            exact_count=exact_count,
        ),
    )
