import asyncio
import time

import httpx
import pytest

from agentability_agent.evaluator import (
    Deadline,
    EvaluationService,
    InvalidOriginError,
    coerce_origin,
    evaluate_public,
    normalize_origin,
)
from agentability_agent.ssrf import BlockedHostError
from agentability_agent.store import InMemoryRunStore

from conftest import ORIGIN, Site, changing_route, healthy_routes, make_fetcher, text_route


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("example.com", ("https://example.com", "example.com")),
        ("  HTTPS://Example.COM/some/path?q=1 ", ("https://example.com", "example.com")),
        ("http://example.com:8080/", ("http://example.com:8080", "example.com")),
        ("http://[2606:4700::1111]/", ("http://[2606:4700::1111]", "2606:4700::1111")),
        ("Bücher.Example/docs", ("https://xn--bcher-kva.example", "xn--bcher-kva.example")),
    ],
)
def test_normalize_origin(raw, expected):
    assert normalize_origin(raw) == expected


@pytest.mark.parametrize(
    "raw", ["", "   ", "ftp://example.com", "https://", "http://example.com:99999", "https://" + "ü" * 70 + ".example"]
)
def test_unusable_origins(raw):
    with pytest.raises(InvalidOriginError):
        normalize_origin(raw)


def test_coerce_origin_keeps_existing_scheme():
    assert coerce_origin("http://a.example") == "http://a.example"
    assert coerce_origin("a.example") == "https://a.example"


def test_deadline():
    assert Deadline.after(0).expired
    assert Deadline.after(0).remaining() == 0.0
    far = Deadline.after(60)
    assert not far.expired and 59 < far.remaining() <= 60


def _evidence_urls_cover_checks(outcome):
    recorded = {r.url for r in outcome.evidence}
    return all(url in recorded for c in outcome.result.checks for url in c.evidence)


@pytest.mark.asyncio
async def test_fully_ready_site_scores_100(healthy_site):
    outcome = await evaluate_public(ORIGIN, fetcher=make_fetcher(healthy_site), sample_interval_ms=0)
    result = outcome.result

    assert {c.id: c.status for c in result.checks} == {
        "D1": "pass", "D2": "pass", "C2": "pass", "C3": "pass",
        "L1": "pass", "T1": "pass", "T2": "pass", "R3": "pass",
    }
    assert result.score == 100
    assert result.grade == "A"
    assert result.domain == "example.com"
    assert result.status == "complete"
    assert result.engine.ruleset_version == "2025.1"
    assert result.evidence_index.entrypoints == [f"{ORIGIN}/.well-known/air.json", f"{ORIGIN}/.well-known/openapi.json"]
    assert result.evidence_index.attestations == [f"{ORIGIN}/.well-known/ai-plugin.json"]
    assert f"{ORIGIN}/mcp" in result.evidence_index.callable
    assert _evidence_urls_cover_checks(outcome)


@pytest.mark.asyncio
async def test_site_without_entrypoints():
    site = Site({"/": text_route("<html><body>Marketing page</body></html>", content_type="text/html")})
    outcome = await evaluate_public("example.com", fetcher=make_fetcher(site), sample_interval_ms=0)
    result = outcome.result
    checks = {c.id: c for c in result.checks}

    assert checks["D1"].status == "fail"
    assert checks["D1"].evidence == []
    assert checks["C2"].status == "fail"
    assert result.pillar_scores.discovery == 0
    assert result.pillar_scores.callable_surface == 0
    assert result.grade == "Not AI-Native"
    assert len(outcome.evidence) > 0


@pytest.mark.asyncio
async def test_unstable_docs_fail_ingestion_and_reliability():
    routes = healthy_routes()
    routes["/docs.md"] = changing_route()
    outcome = await evaluate_public(ORIGIN, fetcher=make_fetcher(Site(routes)), sample_interval_ms=0)
    checks = {c.id: c for c in outcome.result.checks}

    assert checks["R3"].status == "fail"
    assert checks["L1"].status == "fail"
    assert checks["D2"].status == "pass"
    assert f"{ORIGIN}/docs.md" in checks["R3"].summary
    assert _evidence_urls_cover_checks(outcome)


@pytest.mark.asyncio
async def test_sampling_is_sequential_and_three_times(healthy_site):
    await evaluate_public(ORIGIN, fetcher=make_fetcher(healthy_site), sample_interval_ms=0)
    # one discovery fetch plus three samples
    assert healthy_site.hits("/docs.md") == 4
    assert healthy_site.hits("/.well-known/air.json") == 4


@pytest.mark.asyncio
async def test_evaluate_rejects_bad_origin_before_fetching():
    site = Site()
    with pytest.raises(InvalidOriginError):
        await evaluate_public("ftp://example.com", fetcher=make_fetcher(site))
    assert site.requests == []


@pytest.mark.asyncio
async def test_second_run_diffs_against_first():
    site = Site(healthy_routes())
    fetcher = make_fetcher(site)
    service = EvaluationService(InMemoryRunStore(), fetcher, sample_interval_ms=0)

    first = await service.start(ORIGIN, "auto", Deadline.after(30))
    assert first.status == "complete"
    assert first.previous_run_id is None and first.diff_summary is None

    site.routes["/docs.md"] = changing_route()
    second = await service.start(ORIGIN, "auto", Deadline.after(30))

    assert second.previous_run_id == first.run_id
    new = {i.check_id: i for i in second.diff_summary.new_issues}
    assert new["R3"].severity == "high"
    assert new["R3"].kind == "regression"
    assert second.diff_summary.score_delta < 0
    assert await service.store.latest_run_id("example.com") == second.run_id


@pytest.mark.asyncio
async def test_deadline_returns_running_and_run_finishes_later():
    async def slow(request):
        await asyncio.sleep(0.05)
        return Site(healthy_routes())(request)

    store = InMemoryRunStore()
    service = EvaluationService(store, make_fetcher(slow), sample_interval_ms=0)

    started = await service.start(ORIGIN, None, Deadline.after(0))
    assert started.status == "running"
    assert started.profile == "auto"
    assert await store.latest_run_id("example.com") is None

    finished = await service.wait(started.run_id)
    assert finished.status == "complete"
    assert finished.created_at == started.created_at
    assert await store.get_evidence("example.com", started.run_id)


@pytest.mark.asyncio
async def test_finalize_is_idempotent(healthy_site):
    store = InMemoryRunStore()
    service = EvaluationService(store, make_fetcher(healthy_site), sample_interval_ms=0)
    run = await service.start(ORIGIN, "auto", Deadline.after(30))

    outcome = await evaluate_public(ORIGIN, fetcher=make_fetcher(Site()), sample_interval_ms=0)
    again = await service.finalize(run.run_id, outcome)

    assert again == run
    assert again.score == 100


class ExplodingFetcher:
    async def assert_public_host(self, hostname, *, url=None):
        return ["93.184.216.34"]

    async def fetch(self, url, **kwargs):
        raise RuntimeError("parser bug")


@pytest.mark.asyncio
async def test_unexpected_error_marks_run_failed():
    store = InMemoryRunStore()
    service = EvaluationService(store, ExplodingFetcher(), sample_interval_ms=0)

    run = await service.start(ORIGIN, "auto", Deadline.after(30))

    assert run.status == "failed"
    assert "parser bug" in run.error
    assert await service.fail(run.run_id, "second failure") == run
    assert await store.latest_run_id("example.com") is None


@pytest.mark.asyncio
async def test_preflight_rejects_private_hosts():
    service = EvaluationService(InMemoryRunStore(), make_fetcher(Site()))
    with pytest.raises(BlockedHostError):
        await service.preflight("localhost")
    assert await service.preflight("Example.com/path") == (ORIGIN, "example.com")


@pytest.mark.asyncio
async def test_redirecting_manifest_is_followed_within_policy():
    routes = healthy_routes()
    manifest = routes.pop("/.well-known/air.json")
    routes["/.well-known/air.json"] = lambda _r: httpx.Response(301, headers={"location": "/meta/air.json"})
    routes["/meta/air.json"] = manifest
    outcome = await evaluate_public(ORIGIN, fetcher=make_fetcher(Site(routes)), sample_interval_ms=0)

    record = next(r for r in outcome.evidence if r.probe == "manifest")
    assert record.final_url == f"{ORIGIN}/meta/air.json"
    assert record.redirect_chain[0].status == 301
    assert outcome.result.score == 100


@pytest.mark.asyncio
async def test_deeply_nested_initialize_reply_only_fails_c3():
    routes = healthy_routes()
    routes[("POST", "/mcp")] = text_route("[" * 200_000, content_type="application/json")
    service = EvaluationService(InMemoryRunStore(), make_fetcher(Site(routes)), sample_interval_ms=0)

    run = await service.start(ORIGIN, "auto", Deadline.after(30))
    statuses = {c.id: c.status for c in run.checks}

    assert run.status == "complete"
    assert statuses.pop("C3") == "fail"
    assert set(statuses.values()) == {"pass"}


@pytest.mark.asyncio
async def test_docs_of_unclosed_script_tags_warn_without_stalling():
    routes = healthy_routes()
    routes["/docs.md"] = text_route("<script" * 290_000, content_type="text/html")
    started = time.perf_counter()
    outcome = await evaluate_public(ORIGIN, fetcher=make_fetcher(Site(routes)), sample_interval_ms=0)
    checks = {c.id: c for c in outcome.result.checks}

    assert time.perf_counter() - started < 10.0
    assert outcome.result.status == "complete"
    assert checks["L1"].status == "warn"
    assert "only 0 characters" in checks["L1"].summary
    assert checks["R3"].status == "pass"


@pytest.mark.asyncio
async def test_root_page_of_unclosed_link_tags_fails_discovery_without_stalling():
    site = Site({"/": text_route("<link " * 340_000, content_type="text/html")})
    started = time.perf_counter()
    outcome = await evaluate_public(ORIGIN, fetcher=make_fetcher(site), sample_interval_ms=0)
    checks = {c.id: c for c in outcome.result.checks}

    assert time.perf_counter() - started < 10.0
    assert outcome.result.status == "complete"
    assert checks["D1"].status == "fail"
    assert outcome.result.evidence_index.entrypoints == []
