import json

import pytest

from agentability_agent import cli
from agentability_agent.models import CheckResult, EvaluationInput, EvaluationResult, PillarScores


def write_run(path, run_id, score, grade, statuses):
    run = EvaluationResult(
        run_id=run_id, domain="example.com", input=EvaluationInput(origin="https://example.com"),
        status="complete", score=score, grade=grade,
        pillar_scores=PillarScores(discovery=score),
        checks=[CheckResult(id=k, status=v, severity="high", summary="") for k, v in statuses.items()],
        created_at="2025-01-01T00:00:00+00:00",
    )
    path.write_text(run.model_dump_json(by_alias=True), encoding="utf-8")
    return str(path)


def test_diff_command(tmp_path, capsys):
    previous = write_run(tmp_path / "a.json", "a", 100, "A", {"D1": "pass", "R3": "pass"})
    current = write_run(tmp_path / "b.json", "b", 80, "B", {"D1": "pass", "R3": "fail"})

    assert cli.main(["diff", previous, current]) == 0
    out = json.loads(capsys.readouterr().out)

    assert out["score_delta"] == -20
    assert out["new_issues"][0]["check_id"] == "R3"
    assert out["counts"] == {"pass": 1, "warn": 0, "fail": 1}


def test_evaluate_rejects_bad_origin(capsys):
    assert cli.main(["evaluate", "ftp://example.com"]) == 2
    assert "error:" in capsys.readouterr().err


def test_unknown_profile_is_a_usage_error():
    with pytest.raises(SystemExit):
        cli.main(["evaluate", "example.com", "--profile", "enterprise"])
