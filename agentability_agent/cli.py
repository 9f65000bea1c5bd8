from __future__ import annotations

import argparse
import asyncio
import json
import sys
from pathlib import Path

from .config import load_settings
from .diff import DiffInput, compute_diff
from .evaluator import InvalidOriginError, evaluate_public
from .logging_setup import setup_logging
from .models import PROFILES, EvaluationResult
from .ruleset import default_ruleset, load_ruleset
from .ssrf import SafeFetcher


def _summary_lines(result: EvaluationResult) -> list[str]:
    lines = [
        f"{result.domain}: {result.score} ({result.grade}) profile={result.profile}",
        "pillars: " + ", ".join(f"{k}={v}" for k, v in result.pillar_scores.model_dump().items()),
    ]
    for check in result.checks:
        lines.append(f"  {check.id:<3} {check.status:<4} [{check.severity}] {check.summary}")
    return lines


def _load_run(path: str) -> EvaluationResult:
    return EvaluationResult.model_validate_json(Path(path).read_text(encoding="utf-8"))


async def _evaluate(origin: str, profile: str) -> EvaluationResult:
    settings = load_settings()
    ruleset = load_ruleset(settings.ruleset_path) if settings.ruleset_path else default_ruleset()
    fetcher = SafeFetcher(limits=settings.limits, user_agent=settings.user_agent)
    outcome = await evaluate_public(
        origin, profile,
        fetcher=fetcher, ruleset=ruleset, sample_interval_ms=settings.sample_interval_ms,
    )
    return outcome.result


def cmd_evaluate(args) -> int:
    try:
        result = asyncio.run(_evaluate(args.origin, args.profile))
    except InvalidOriginError as e:
        print(f"error: {e}", file=sys.stderr)
        return 2

    if args.json:
        print(result.model_dump_json(by_alias=True, indent=2))
    else:
        print("\n".join(_summary_lines(result)))
    return 0


def cmd_diff(args) -> int:
    previous = _load_run(args.previous)
    current = _load_run(args.current)
    summary = compute_diff(
        DiffInput(previous.score, previous.grade, previous.pillar_scores, previous.checks),
        DiffInput(current.score, current.grade, current.pillar_scores, current.checks),
    )
    print(json.dumps(summary.model_dump(mode="json", by_alias=True), indent=2))
    return 0


def cmd_serve(args) -> int:
    import uvicorn

    uvicorn.run("agentability_agent.main:app", host=args.host, port=args.port)
    return 0


def main(argv: list[str] | None = None) -> int:
    ap = argparse.ArgumentParser(prog="agentability_agent", description="Agent readiness evaluator")
    sub = ap.add_subparsers(dest="command", required=True)

    ev = sub.add_parser("evaluate", help="Evaluate one public origin")
    ev.add_argument("origin", help="Origin URL, e.g. https://example.com")
    ev.add_argument("--profile", default="auto", choices=list(PROFILES), help="Scoring profile")
    ev.add_argument("--json", action="store_true", help="Print the full result document")
    ev.set_defaults(func=cmd_evaluate)

    df = sub.add_parser("diff", help="Diff two stored result documents")
    df.add_argument("previous", help="Earlier result JSON")
    df.add_argument("current", help="Later result JSON")
    df.set_defaults(func=cmd_diff)

    sv = sub.add_parser("serve", help="Run the HTTP API")
    sv.add_argument("--host", default="127.0.0.1")
    sv.add_argument("--port", type=int, default=8000)
    sv.set_defaults(func=cmd_serve)

    args = ap.parse_args(argv)
    # stdout carries the report itself
    setup_logging(load_settings().log_level, stream=sys.stderr)
    return args.func(args)


if __name__ == "__main__":
    sys.exit(main())
