"""Progress estimation for tasks that are still polling."""

from __future__ import annotations

import math

# The attempt curve saturates below this value; only success reports 100.
HEURISTIC_CEILING = 95
POLLING_CAP = 99
COMPLETE = 100


def attempt_progress(attempt: int, max_attempts: int) -> int:
    """Saturating estimate from the number of poll attempts so far."""
    if attempt <= 0 or max_attempts <= 0:
        return 0
    ratio = attempt / max_attempts
    return int(HEURISTIC_CEILING * (1 - math.exp(-3 * ratio)))


def next_progress(
    previous: int,
    attempt: int,
    max_attempts: int,
    milestone: int | None = None,
) -> int:
    """Combine the attempt curve with a provider milestone floor.

    The result never goes below ``previous`` and stays under 100 while the
    task is polling.
    """
    estimate = max(previous, attempt_progress(attempt, max_attempts), milestone or 0)
    return min(estimate, POLLING_CAP)
