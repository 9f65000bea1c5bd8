from __future__ import annotations

import asyncio
import logging
import re
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from urllib.parse import urlparse

from .checks import CheckInput, CheckInputs, run_checks, sample_stability
from .diff import DiffInput, compute_diff
from .discovery import DiscoveryProbe, DiscoveryState
from .evidence import EvidenceLog
from .models import (
    EngineInfo,
    EvaluationInput,
    EvaluationResult,
    EvidenceIndex,
    EvidenceRecord,
)
from .ruleset import Ruleset, default_ruleset
from .scoring import ENGINE_VERSION, ruleset_hash, score_checks
from .ssrf import SafeFetcher
from .store import RunStore

logger = logging.getLogger(__name__)


class InvalidOriginError(ValueError):
    pass


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def coerce_origin(raw: str) -> str:
    value = (raw or "").strip()
    if not value:
        raise InvalidOriginError("Please provide an origin URL.")
    if not re.match(r"^[a-zA-Z][a-zA-Z\d+.-]*://", value):
        value = "https://" + value
    return value


def normalize_origin(raw: str) -> tuple[str, str]:
    """Return (`scheme://host[:port]`, lower-cased hostname in its ASCII/IDNA form)."""
    parsed = urlparse(coerce_origin(raw))
    scheme = parsed.scheme.lower()
    if scheme not in ("http", "https"):
        raise InvalidOriginError("Please use an http(s) origin.")
    try:
        hostname = (parsed.hostname or "").lower()
        port = parsed.port
    except ValueError as e:
        raise InvalidOriginError(f"Invalid origin: {e}") from None
    if not hostname:
        raise InvalidOriginError("Origin has no hostname.")
    if not hostname.isascii():
        try:
            hostname = hostname.encode("idna").decode("ascii")
        except UnicodeError as e:
            raise InvalidOriginError(f"Invalid hostname: {e}") from None

    host = f"[{hostname}]" if ":" in hostname else hostname
    origin = f"{scheme}://{host}:{port}" if port else f"{scheme}://{host}"
    return origin, hostname


@dataclass(frozen=True)
class Deadline:
    """A point on the monotonic clock; callers pass it in instead of racing timers."""

    at: float

    @classmethod
    def after(cls, seconds: float) -> Deadline:
        return cls(time.monotonic() + seconds)

    def remaining(self) -> float:
        return max(0.0, self.at - time.monotonic())

    @property
    def expired(self) -> bool:
        return time.monotonic() >= self.at


@dataclass
class EvaluationOutcome:
    result: EvaluationResult
    evidence: list[EvidenceRecord]


def _evidence_index(state: DiscoveryState) -> EvidenceIndex:
    callable_urls = [u for u in (state.openapi_url, state.service_desc_url) if u]
    if state.mcp_get is not None and state.mcp_get.ok:
        callable_urls.append(state.mcp_get.url)
    docs = [u for u in (state.docs_url, state.llms.url if state.llms else None) if u]
    attestations = [state.plugin.url] if state.plugin else []
    return EvidenceIndex(
        entrypoints=state.entrypoints,
        callable=callable_urls,
        docs=docs,
        attestations=attestations,
    )


async def evaluate_public(
    origin: str,
    profile: str | None = None,
    *,
    fetcher: SafeFetcher,
    ruleset: Ruleset | None = None,
    sample_interval_ms: int = 250,
    run_id: str = "",
) -> EvaluationOutcome:
    """Discover, sample, check and score one origin.

    Fetch and parse failures end up in evidence and failing checks; nothing
    network-related is raised from here. Only an unusable `origin` raises
    (InvalidOriginError), before any request is made.
    """
    ruleset = ruleset or default_ruleset()
    profile = profile or "auto"
    origin, domain = normalize_origin(origin)
    created_at = _now_iso()

    probe = DiscoveryProbe(fetcher, mcp_protocol_version=ruleset.mcp_protocol_version)
    state = await probe.discover(origin, domain)
    evidence = EvidenceLog()
    evidence.extend(state.evidence)

    inputs = CheckInputs(discovery=state, ruleset=ruleset)

    # Sequential on purpose: the property under test is consistency over time.
    primary = state.primary_entrypoint
    if primary:
        inputs.entrypoint_samples = await sample_stability(
            fetcher, primary, state.primary_family, evidence,
            label="entrypoint", interval_ms=sample_interval_ms,
        )
    inputs.collected.add(CheckInput.ENTRYPOINT_SAMPLES)

    if state.docs_url:
        inputs.docs_samples = await sample_stability(
            fetcher, state.docs_url, "markup", evidence,
            label="docs", interval_ms=sample_interval_ms,
        )
    inputs.collected.add(CheckInput.DOCS_SAMPLES)

    checks = run_checks(inputs)
    card = score_checks(checks, profile)

    result = EvaluationResult(
        run_id=run_id,
        domain=domain,
        profile=profile,
        input=EvaluationInput(origin=origin),
        status="complete",
        score=card.score,
        grade=card.grade,
        pillar_scores=card.pillar_scores,
        checks=checks,
        evidence_index=_evidence_index(state),
        engine=EngineInfo(
            version=ENGINE_VERSION,
            ruleset_hash=ruleset_hash(ruleset),
            ruleset_version=ruleset.version,
        ),
        created_at=created_at,
        completed_at=_now_iso(),
    )
    logger.info(
        "evaluated %s profile=%s score=%d grade=%s evidence=%d notes=%d",
        domain, profile, card.score, card.grade, len(evidence), len(state.notes),
    )
    return EvaluationOutcome(result=result, evidence=evidence.records)


class EvaluationService:
    """Runs evaluations against a RunStore.

    `start` returns once the run completes or the caller's deadline passes,
    whichever is first; in the latter case the evaluation keeps going and
    finalizes itself, and callers poll the store.
    """

    def __init__(
        self,
        store: RunStore,
        fetcher: SafeFetcher,
        *,
        ruleset: Ruleset | None = None,
        sample_interval_ms: int = 250,
    ):
        self.store = store
        self.fetcher = fetcher
        self.ruleset = ruleset or default_ruleset()
        self.sample_interval_ms = sample_interval_ms
        self._tasks: dict[str, asyncio.Task] = {}
        self._finalize_lock = asyncio.Lock()

    async def preflight(self, raw_origin: str) -> tuple[str, str]:
        """Normalize and vet the origin's host; raises before any run is created."""
        origin, domain = normalize_origin(raw_origin)
        await self.fetcher.assert_public_host(domain, url=origin)
        return origin, domain

    async def start(
        self,
        origin: str,
        profile: str | None = None,
        deadline: Deadline | None = None,
    ) -> EvaluationResult:
        origin, domain = normalize_origin(origin)
        profile = profile or "auto"
        run_id = str(uuid.uuid4())

        await self.store.save_run(
            EvaluationResult(
                run_id=run_id,
                domain=domain,
                profile=profile,
                input=EvaluationInput(origin=origin),
                status="running",
                created_at=_now_iso(),
            )
        )
        logger.info("run %s started for %s (profile=%s)", run_id, domain, profile)

        task = asyncio.create_task(self._run(run_id, origin, profile))
        self._tasks[run_id] = task
        task.add_done_callback(lambda _t: self._tasks.pop(run_id, None))

        timeout = deadline.remaining() if deadline is not None else None
        try:
            return await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
        except asyncio.TimeoutError:
            logger.info("run %s still running after deadline; finishing in background", run_id)
            running = await self.store.get_run(run_id)
            return running

    async def wait(self, run_id: str) -> EvaluationResult | None:
        task = self._tasks.get(run_id)
        if task is not None:
            await asyncio.shield(task)
        return await self.store.get_run(run_id)

    async def _run(self, run_id: str, origin: str, profile: str) -> EvaluationResult:
        try:
            outcome = await evaluate_public(
                origin,
                profile,
                fetcher=self.fetcher,
                ruleset=self.ruleset,
                sample_interval_ms=self.sample_interval_ms,
                run_id=run_id,
            )
        except Exception as e:
            logger.exception("run %s failed", run_id)
            return await self.fail(run_id, f"{type(e).__name__}: {e}")
        return await self.finalize(run_id, outcome)

    async def finalize(self, run_id: str, outcome: EvaluationOutcome) -> EvaluationResult:
        """Move a running run to complete. Re-invoking on a finished run returns it unchanged."""
        async with self._finalize_lock:
            existing = await self.store.get_run(run_id)
            if existing is not None and existing.status != "running":
                return existing

            domain = outcome.result.domain
            previous = None
            previous_id = await self.store.latest_run_id(domain)
            if previous_id and previous_id != run_id:
                previous = await self.store.get_domain_run(domain, previous_id)

            current = outcome.result
            diff = compute_diff(
                _diff_input(previous) if previous is not None and previous.status == "complete" else None,
                _diff_input(current),
            )
            final = current.model_copy(
                update={
                    "run_id": run_id,
                    "status": "complete",
                    "previous_run_id": previous.run_id if previous is not None else None,
                    "diff_summary": diff,
                    "created_at": existing.created_at if existing is not None else current.created_at,
                    "completed_at": _now_iso(),
                }
            )

            await self.store.save_evidence(domain, run_id, outcome.evidence)
            await self.store.save_run(final)
            await self.store.set_latest(domain, run_id)
            logger.info("run %s complete: %s score=%d grade=%s", run_id, domain, final.score, final.grade)
            return final

    async def fail(self, run_id: str, error: str) -> EvaluationResult | None:
        async with self._finalize_lock:
            existing = await self.store.get_run(run_id)
            if existing is None or existing.status != "running":
                return existing
            failed = existing.model_copy(update={"status": "failed", "error": error, "completed_at": _now_iso()})
            await self.store.save_run(failed)
            return failed


def _diff_input(run: EvaluationResult) -> DiffInput:
    return DiffInput(score=run.score, grade=run.grade, pillar_scores=run.pillar_scores, checks=run.checks)
