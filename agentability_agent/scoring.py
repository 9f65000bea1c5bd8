from __future__ import annotations

import hashlib
import json
import math
from dataclasses import dataclass

from .checks import CHECKS, CheckId, Pillar
from .models import CheckResult, CheckStatus, PillarScores
from .ruleset import Ruleset

ENGINE_VERSION = "0.1.0"

NOT_READY_GRADE = "Not AI-Native"

STATUS_POINTS: dict[CheckStatus, float] = {"pass": 1.0, "warn": 0.5, "fail": 0.0}

# Canonical weight table; report renderers read it from GET /v1/profiles.
PROFILE_WEIGHTS: dict[str, dict[Pillar, float]] = {
    "auto": {
        Pillar.DISCOVERY: 0.30,
        Pillar.CALLABLE_SURFACE: 0.20,
        Pillar.LLM_INGESTION: 0.20,
        Pillar.TRUST: 0.10,
        Pillar.RELIABILITY: 0.20,
    },
    "api_product": {
        Pillar.DISCOVERY: 0.35,
        Pillar.CALLABLE_SURFACE: 0.30,
        Pillar.LLM_INGESTION: 0.15,
        Pillar.TRUST: 0.10,
        Pillar.RELIABILITY: 0.10,
    },
    "docs_platform": {
        Pillar.DISCOVERY: 0.25,
        Pillar.CALLABLE_SURFACE: 0.15,
        Pillar.LLM_INGESTION: 0.35,
        Pillar.TRUST: 0.10,
        Pillar.RELIABILITY: 0.15,
    },
    "content": {
        Pillar.DISCOVERY: 0.30,
        Pillar.CALLABLE_SURFACE: 0.05,
        Pillar.LLM_INGESTION: 0.35,
        Pillar.TRUST: 0.10,
        Pillar.RELIABILITY: 0.20,
    },
    "hybrid": {
        Pillar.DISCOVERY: 0.30,
        Pillar.CALLABLE_SURFACE: 0.20,
        Pillar.LLM_INGESTION: 0.25,
        Pillar.TRUST: 0.10,
        Pillar.RELIABILITY: 0.15,
    },
}

for _profile, _weights in PROFILE_WEIGHTS.items():
    if set(_weights) != set(Pillar) or not math.isclose(sum(_weights.values()), 1.0):
        raise ValueError(f"Profile {_profile} weights must cover every pillar and sum to 1.0")


@dataclass(frozen=True)
class ScoreCard:
    score: int
    grade: str
    pillar_scores: PillarScores


def round_half_up(value: float) -> int:
    # round() is banker's rounding; scores round .5 upward
    return int(math.floor(value + 0.5 + 1e-9))


def grade_for(score: int) -> str:
    if score >= 90:
        return "A"
    if score >= 80:
        return "B"
    if score >= 70:
        return "C"
    return NOT_READY_GRADE


def pillar_scores(checks: list[CheckResult]) -> dict[Pillar, int]:
    points = {p: 0.0 for p in Pillar}
    counts = {p: 0 for p in Pillar}
    known = {c.value for c in CheckId}
    for check in checks:
        if check.id not in known:
            continue
        pillar = CHECKS[CheckId(check.id)].pillar
        points[pillar] += STATUS_POINTS[check.status]
        counts[pillar] += 1
    return {p: round_half_up(100 * points[p] / counts[p]) if counts[p] else 0 for p in Pillar}


def score_checks(checks: list[CheckResult], profile: str = "auto") -> ScoreCard:
    if profile not in PROFILE_WEIGHTS:
        raise ValueError(f"Unknown profile {profile!r}")
    pillars = pillar_scores(checks)
    weights = PROFILE_WEIGHTS[profile]
    total = sum(pillars[p] * weights[p] for p in Pillar)
    score = max(0, min(100, round_half_up(total)))
    return ScoreCard(
        score=score,
        grade=grade_for(score),
        pillar_scores=PillarScores(**{p.value: pillars[p] for p in Pillar}),
    )


def weights_as_dict() -> dict[str, dict[str, float]]:
    return {profile: {p.value: w for p, w in weights.items()} for profile, weights in PROFILE_WEIGHTS.items()}


def ruleset_hash(ruleset: Ruleset) -> str:
    payload = json.dumps(
        {
            "checks": [CHECKS[c].as_dict() for c in CheckId],
            "weights": weights_as_dict(),
            "ruleset": ruleset.as_dict(),
        },
        sort_keys=True,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()[:12]
