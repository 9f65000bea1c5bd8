from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from .models import CheckResult, CheckStatus, DiffChange, DiffIssue, DiffSummary, PillarScores, StatusCounts


class Transition(str, Enum):
    REGRESSION = "regression"
    ESCALATION = "escalation"
    IMPROVEMENT = "improvement"
    SOFTENING = "softening"
    OTHER_CHANGED = "other_changed"
    UNCHANGED = "unchanged"


NEW_ISSUE_TRANSITIONS = frozenset({Transition.REGRESSION, Transition.ESCALATION})
FIXED_ISSUE_TRANSITIONS = frozenset({Transition.IMPROVEMENT, Transition.SOFTENING})


@dataclass(frozen=True)
class DiffInput:
    score: int
    grade: str
    pillar_scores: PillarScores
    checks: list[CheckResult]


def classify_transition(before: CheckStatus | None, after: CheckStatus) -> Transition:
    if before == after:
        return Transition.UNCHANGED
    if before in (None, "pass") and after in ("warn", "fail"):
        return Transition.REGRESSION
    if before == "warn" and after == "fail":
        return Transition.ESCALATION
    if before in ("warn", "fail") and after == "pass":
        return Transition.IMPROVEMENT
    if before == "fail" and after == "warn":
        return Transition.SOFTENING
    return Transition.OTHER_CHANGED


def count_statuses(checks: list[CheckResult]) -> StatusCounts:
    counts = {"pass": 0, "warn": 0, "fail": 0}
    for check in checks:
        counts[check.status] += 1
    return StatusCounts(**counts)


def compute_diff(previous: DiffInput | None, current: DiffInput) -> DiffSummary | None:
    if previous is None:
        return None

    previous_by_id = {check.id: check for check in previous.checks}
    new_issues: list[DiffIssue] = []
    fixed_issues: list[DiffIssue] = []
    changed: list[DiffChange] = []

    for check in current.checks:
        before = previous_by_id.get(check.id)
        before_status = before.status if before is not None else None
        kind = classify_transition(before_status, check.status)

        if kind in NEW_ISSUE_TRANSITIONS:
            new_issues.append(DiffIssue(
                check_id=check.id, from_status=before_status, to_status=check.status,
                severity=check.severity, kind=kind.value,
            ))
        elif kind in FIXED_ISSUE_TRANSITIONS:
            fixed_issues.append(DiffIssue(
                check_id=check.id, from_status=before_status, to_status=check.status,
                severity=before.severity if before is not None else check.severity, kind=kind.value,
            ))
        elif kind is Transition.OTHER_CHANGED:
            changed.append(DiffChange(check_id=check.id, from_status=before_status, to_status=check.status))

    prev_pillars = previous.pillar_scores.model_dump()
    cur_pillars = current.pillar_scores.model_dump()
    return DiffSummary(
        score_delta=current.score - previous.score,
        grade_from=previous.grade,
        grade_to=current.grade,
        pillar_delta=PillarScores(**{k: cur_pillars[k] - prev_pillars[k] for k in cur_pillars}),
        new_issues=new_issues,
        fixed_issues=fixed_issues,
        changed=changed,
        counts=count_statuses(current.checks),
    )

