"""Pass/fail scoring shared by the reviewer and tester roles."""

from __future__ import annotations

from typing import Sequence

from storyloop.models import Failure, Severity

SEVERITY_PENALTY = {
    Severity.HIGH: 15,
    Severity.MEDIUM: 8,
    Severity.LOW: 3,
}


def scenario_score(successes: Sequence[str], failures: Sequence[Failure]) -> int:
    """
    Share of passing scenarios as a percentage, less a penalty per failure.

    No scenarios at all scores 100.
    """
    total = len(successes) + len(failures)
    if total == 0:
        return 100
    score = 100.0 * len(successes) / total
    score -= sum(SEVERITY_PENALTY[f.severity] for f in failures)
    return int(round(max(0.0, min(100.0, score))))


def is_passing(score: int, threshold: int, failures: Sequence[Failure]) -> bool:
    """A high-severity failure fails regardless of score."""
    return score >= threshold and not any(f.severity == Severity.HIGH for f in failures)
