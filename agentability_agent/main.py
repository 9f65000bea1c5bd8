from __future__ import annotations

import json
import logging
import time
from typing import Callable

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, PlainTextResponse, Response
from pydantic import ValidationError

from .checks import CHECKS
from .config import Settings, load_settings
from .evaluator import Deadline, EvaluationService, InvalidOriginError, coerce_origin, normalize_origin
from .logging_setup import setup_logging
from .mcp import GUIDANCE, ToolServer, rpc_error
from .models import ApiError, EvaluateRequest, EvaluateResponse
from .recommendations import get_fix_it
from .ruleset import default_ruleset, load_ruleset
from .scoring import ENGINE_VERSION, ruleset_hash, weights_as_dict
from .ssrf import FetchError, SafeFetcher
from .store import FileRunStore, InMemoryRunStore, RunStore

logger = logging.getLogger(__name__)

PARSE_ERROR = -32700


class RateLimiter:
    """Fixed-window request counter per client key, held in process memory."""

    def __init__(self, limit: int, window_s: int, clock: Callable[[], float] = time.time):
        self.limit = limit
        self.window_s = window_s
        self._clock = clock
        self._counts: dict[tuple[str, int], int] = {}

    def hit(self, key: str) -> bool:
        window = int(self._clock() // self.window_s)
        # Drop counters from earlier windows
        for stale in [k for k in self._counts if k[1] < window]:
            del self._counts[stale]

        count = self._counts.get((key, window), 0)
        if count >= self.limit:
            return False
        self._counts[(key, window)] = count + 1
        return True


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip() or "unknown"
    return request.client.host if request.client else "unknown"


def _dump(model) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def _validation_details(e: ValidationError) -> list[dict]:
    return e.errors(include_url=False, include_context=False, include_input=False)


def create_app(
    settings: Settings | None = None,
    *,
    store: RunStore | None = None,
    fetcher: SafeFetcher | None = None,
) -> FastAPI:
    settings = settings or load_settings()
    setup_logging(settings.log_level)

    ruleset = load_ruleset(settings.ruleset_path) if settings.ruleset_path else default_ruleset()
    if store is None:
        store = FileRunStore(settings.data_dir) if settings.data_dir else InMemoryRunStore()
    fetcher = fetcher or SafeFetcher(limits=settings.limits, user_agent=settings.user_agent)
    service = EvaluationService(
        store, fetcher, ruleset=ruleset, sample_interval_ms=settings.sample_interval_ms,
    )
    limiter = RateLimiter(settings.rate_limit, settings.rate_window_s)

    app = FastAPI(title="Agentability Agent", version=settings.version)
    app.state.settings = settings
    app.state.store = store
    app.state.service = service

    # Local dev defaults to the usual frontend ports.
    # In production, set AGENTABILITY_CORS_ORIGINS to the deployed frontend origins.
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.cors_origins),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(ApiError)
    async def api_error_handler(_request: Request, exc: ApiError):
        return JSONResponse(status_code=exc.status_code, content=exc.body().model_dump())

    async def run_evaluation(request: Request, payload: dict) -> dict:
        if not limiter.hit(client_ip(request)):
            raise ApiError(429, "Rate limit exceeded", "rate_limited")

        raw_origin = payload.get("origin") if isinstance(payload.get("origin"), str) else ""
        try:
            req = EvaluateRequest.model_validate({**payload, "origin": coerce_origin(raw_origin)})
            origin, domain = await service.preflight(req.origin)
        except ValidationError as e:
            raise ApiError(400, "Invalid request", "invalid_request", _validation_details(e)) from None
        except InvalidOriginError as e:
            raise ApiError(400, "Invalid request", "invalid_request", str(e)) from None
        except FetchError as e:
            raise ApiError(
                400, "Domain does not resolve to a public address. Check the hostname.",
                "invalid_domain", {"reason": e.code},
            ) from None

        run = await service.start(origin, req.profile, Deadline.after(settings.eval_deadline_s))
        base = str(request.base_url).rstrip("/")
        response = EvaluateResponse(
            run_id=run.run_id,
            status=run.status,
            domain=domain,
            json_url=f"{base}/v1/evaluations/{domain}/latest.json",
            report_url=f"{base}/reports/{domain}",
            status_url=f"{base}/v1/runs/{run.run_id}",
        )
        return response.model_dump()

    async def fetch_run(run_id: str) -> dict:
        run = await store.get_run(run_id)
        if run is None:
            raise ApiError(404, "Run not found", "not_found")
        return _dump(run)

    def domain_key(raw_domain: str) -> str:
        try:
            return normalize_origin(raw_domain)[1]
        except InvalidOriginError as e:
            raise ApiError(400, "Invalid request", "invalid_request", str(e)) from None

    async def fetch_latest(raw_domain: str) -> dict:
        domain = domain_key(raw_domain)
        run_id = await store.latest_run_id(domain)
        if not run_id:
            raise ApiError(404, "No evaluations yet", "not_found", {"reason": "no_evaluations"})
        run = await store.get_domain_run(domain, run_id)
        if run is None:
            raise ApiError(404, "Run not found", "not_found")
        return _dump(run)

    @app.get("/healthz")
    def healthz():
        return {"ok": True}

    @app.post("/v1/evaluate", response_model=EvaluateResponse)
    async def evaluate_endpoint(request: Request):
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            raise ApiError(400, "Invalid request", "invalid_request", "Body must be JSON.") from None
        if not isinstance(payload, dict):
            raise ApiError(400, "Invalid request", "invalid_request", "Body must be a JSON object.")
        return await run_evaluation(request, payload)

    @app.get("/v1/runs/{run_id}")
    async def run_endpoint(run_id: str):
        return await fetch_run(run_id)

    @app.get("/v1/evaluations/{domain}/latest.json")
    async def latest_endpoint(domain: str):
        return await fetch_latest(domain)

    @app.get("/v1/evaluations/{domain}/{run_id}.json")
    async def domain_run_endpoint(domain: str, run_id: str):
        run = await store.get_domain_run(domain_key(domain), run_id)
        if run is None:
            raise ApiError(404, "Run not found", "not_found")
        return _dump(run)

    @app.get("/v1/evaluations/{domain}/{run_id}/evidence")
    async def evidence_endpoint(domain: str, run_id: str):
        domain = domain_key(domain)
        records = await store.get_evidence(domain, run_id)
        if records is None:
            raise ApiError(404, "Evidence not found", "not_found")
        return {
            "domain": domain,
            "run_id": run_id,
            "records": [r.model_dump(mode="json", exclude_none=True) for r in records],
        }

    @app.get("/v1/profiles")
    def profiles_endpoint():
        return {
            "engine_version": ENGINE_VERSION,
            "ruleset_version": ruleset.version,
            "ruleset_hash": ruleset_hash(ruleset),
            "profiles": weights_as_dict(),
            "checks": [definition.as_dict() for definition in CHECKS.values()],
        }

    @app.get("/v1/recommendations/{check_id}")
    def recommendation_endpoint(check_id: str):
        fix = get_fix_it(check_id)
        if fix is None:
            raise ApiError(404, "Recommendation not found", "not_found")
        return fix.model_dump()

    @app.get("/mcp")
    def mcp_guidance():
        return PlainTextResponse(GUIDANCE)

    @app.post("/mcp")
    async def mcp_endpoint(request: Request):
        try:
            payload = await request.json()
        except json.JSONDecodeError:
            return JSONResponse(rpc_error(None, PARSE_ERROR, "Parse error"))

        tools = ToolServer(
            evaluate=lambda args: run_evaluation(request, args),
            get_run=fetch_run,
            get_latest=fetch_latest,
            version=settings.version,
        )
        reply = await tools.handle(payload)
        if reply is None:
            return Response(status_code=204)
        return JSONResponse(reply)

    logger.info("app ready (store=%s, deadline=%.1fs)", type(store).__name__, settings.eval_deadline_s)
    return app


app = create_app()
