from __future__ import annotations

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

CheckStatus = Literal["pass", "warn", "fail"]
CheckSeverity = Literal["high", "medium", "low"]
RunStatus = Literal["running", "complete", "failed"]
EvaluationProfile = Literal["auto", "api_product", "docs_platform", "content", "hybrid"]

PROFILES: tuple[str, ...] = ("auto", "api_product", "docs_platform", "content", "hybrid")


class EvaluateRequest(BaseModel):
    origin: str = Field(..., min_length=1, max_length=2048)
    profile: EvaluationProfile | None = None


class RedirectHop(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    status: int


class FetchResult(BaseModel):
    model_config = ConfigDict(frozen=True)

    # final target after redirects
    url: str
    requested_url: str
    method: str = "GET"
    status: int
    headers: dict[str, str]
    content_type: str | None = None
    content_length: int | None = None
    body: str | None = None
    sha256: str | None = None
    fetched_at: str
    redirect_chain: list[RedirectHop] = []


class EvidenceRecord(BaseModel):
    model_config = ConfigDict(frozen=True)

    url: str
    final_url: str | None = None
    method: str = "GET"
    probe: str | None = None
    status: int | None = None
    headers: dict[str, str] | None = None
    content_type: str | None = None
    content_length: int | None = None
    sha256: str | None = None
    fetched_at: str
    redirect_chain: list[RedirectHop] | None = None
    error: str | None = None


class CheckResult(BaseModel):
    id: str
    status: CheckStatus
    severity: CheckSeverity
    summary: str
    evidence: list[str] = []
    recommendation_id: str | None = None


class PillarScores(BaseModel):
    discovery: int = 0
    callable_surface: int = 0
    llm_ingestion: int = 0
    trust: int = 0
    reliability: int = 0


class DiffIssue(BaseModel):
    check_id: str
    from_status: CheckStatus | None
    to_status: CheckStatus
    severity: CheckSeverity
    kind: Literal["regression", "escalation", "improvement", "softening"]


class DiffChange(BaseModel):
    check_id: str
    from_status: CheckStatus | None
    to_status: CheckStatus


class StatusCounts(BaseModel):
    # "pass" is a keyword, hence the alias
    model_config = ConfigDict(populate_by_name=True)

    passed: int = Field(0, alias="pass")
    warn: int = 0
    fail: int = 0


class DiffSummary(BaseModel):
    score_delta: int
    grade_from: str | None = None
    grade_to: str | None = None
    pillar_delta: PillarScores
    new_issues: list[DiffIssue]
    fixed_issues: list[DiffIssue]
    changed: list[DiffChange]
    counts: StatusCounts


class EvidenceIndex(BaseModel):
    entrypoints: list[str] = []
    callable: list[str] = []
    docs: list[str] = []
    attestations: list[str] = []


class EngineInfo(BaseModel):
    version: str
    ruleset_hash: str
    ruleset_version: str | None = None


class EvaluationInput(BaseModel):
    origin: str


class EvaluationResult(BaseModel):
    run_id: str
    domain: str
    mode: Literal["public"] = "public"
    profile: EvaluationProfile = "auto"
    input: EvaluationInput
    status: RunStatus
    score: int = 0
    grade: str = ""
    pillar_scores: PillarScores = Field(default_factory=PillarScores)
    checks: list[CheckResult] = []
    evidence_index: EvidenceIndex = Field(default_factory=EvidenceIndex)
    previous_run_id: str | None = None
    diff_summary: DiffSummary | None = None
    engine: EngineInfo | None = None
    created_at: str
    completed_at: str | None = None
    error: str | None = None


class EvaluateResponse(BaseModel):
    run_id: str
    status: RunStatus
    domain: str
    json_url: str
    report_url: str
    status_url: str


class ErrorBody(BaseModel):
    message: str
    code: str
    details: dict | list | str | None = None


class ApiError(Exception):
    """An error the HTTP and JSON-RPC layers turn into an ErrorBody."""

    def __init__(self, status_code: int, message: str, code: str, details=None):
        super().__init__(message)
        self.status_code = status_code
        self.message = message
        self.code = code
        self.details = details

    def body(self) -> ErrorBody:
        return ErrorBody(message=self.message, code=self.code, details=self.details)
