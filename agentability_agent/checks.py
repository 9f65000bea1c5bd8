from __future__ import annotations

import asyncio
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable

from .discovery import (
    API_DESCRIPTION_PATHS,
    DOCS_PATHS,
    MANIFEST_PATHS,
    PLUGIN_PATH,
    ContentFamily,
    DiscoveryState,
    matches_family,
    parse_api_description,
    parse_json_document,
)
from .evidence import EvidenceLog, ProbeAttempt
from .models import CheckResult, CheckSeverity, CheckStatus
from .ruleset import Ruleset
from .ssrf import FetchError, SafeFetcher

STABILITY_SAMPLES = 3


class Pillar(str, Enum):
    DISCOVERY = "discovery"
    CALLABLE_SURFACE = "callable_surface"
    LLM_INGESTION = "llm_ingestion"
    TRUST = "trust"
    RELIABILITY = "reliability"


class CheckInput(str, Enum):
    DISCOVERY = "discovery"
    ENTRYPOINT_SAMPLES = "entrypoint_samples"
    DOCS_SAMPLES = "docs_samples"


class CheckId(str, Enum):
    D1 = "D1"
    D2 = "D2"
    C2 = "C2"
    C3 = "C3"
    L1 = "L1"
    T1 = "T1"
    T2 = "T2"
    R3 = "R3"


@dataclass(frozen=True)
class CheckDefinition:
    id: CheckId
    pillar: Pillar
    severity: CheckSeverity
    title: str
    requires: frozenset[CheckInput]

    def as_dict(self) -> dict[str, Any]:
        return {
            "id": self.id.value,
            "pillar": self.pillar.value,
            "severity": self.severity,
            "title": self.title,
            "requires": sorted(r.value for r in self.requires),
        }


def _define(check_id: CheckId, pillar: Pillar, severity: CheckSeverity, title: str, *requires: CheckInput):
    return check_id, CheckDefinition(check_id, pillar, severity, title, frozenset(requires))


CHECKS: dict[CheckId, CheckDefinition] = dict(
    [
        _define(CheckId.D1, Pillar.DISCOVERY, "high", "Machine-readable entrypoints exist",
                CheckInput.DISCOVERY),
        _define(CheckId.D2, Pillar.DISCOVERY, "high", "Entrypoints are reachable, correct, and stable",
                CheckInput.DISCOVERY, CheckInput.ENTRYPOINT_SAMPLES),
        _define(CheckId.C2, Pillar.CALLABLE_SURFACE, "high", "API description is usable and example-rich",
                CheckInput.DISCOVERY),
        _define(CheckId.C3, Pillar.CALLABLE_SURFACE, "medium", "Tool-calling endpoint answers initialize",
                CheckInput.DISCOVERY),
        _define(CheckId.L1, Pillar.LLM_INGESTION, "high", "Canonical docs entrypoint exists with meaningful text",
                CheckInput.DISCOVERY, CheckInput.DOCS_SAMPLES),
        _define(CheckId.T1, Pillar.TRUST, "medium", "Manifest carries provenance, legal, and verification fields",
                CheckInput.DISCOVERY),
        _define(CheckId.T2, Pillar.TRUST, "medium", "Plugin metadata carries contact and legal fields",
                CheckInput.DISCOVERY),
        _define(CheckId.R3, Pillar.RELIABILITY, "high", "Repeat-request consistency for critical surfaces",
                CheckInput.ENTRYPOINT_SAMPLES, CheckInput.DOCS_SAMPLES),
    ]
)


@dataclass(frozen=True)
class StabilitySample:
    url: str
    family: ContentFamily
    attempts: tuple[ProbeAttempt, ...]

    @property
    def ok(self) -> bool:
        return bool(self.attempts) and all(a.ok for a in self.attempts)

    @property
    def stable(self) -> bool:
        if not self.attempts or any(a.result is None for a in self.attempts):
            return False
        first = self.attempts[0].result
        return all(a.result.status == first.status and a.result.sha256 == first.sha256 for a in self.attempts)

    @property
    def content_type_ok(self) -> bool:
        return self.ok and all(matches_family(a.result.content_type, self.family) for a in self.attempts)

    @property
    def first_body(self) -> str | None:
        for a in self.attempts:
            if a.result is not None:
                return a.result.body
        return None

    def outcomes(self) -> list[str]:
        return [str(a.status) if a.result is not None else a.describe_failure() for a in self.attempts]

    def distinct_hashes(self) -> int:
        return len({a.result.sha256 for a in self.attempts if a.result is not None})

    def content_types(self) -> list[str]:
        return sorted({(a.result.content_type or "none") for a in self.attempts if a.result is not None})


async def sample_stability(
    fetcher: SafeFetcher,
    url: str,
    family: ContentFamily,
    log: EvidenceLog,
    *,
    label: str,
    times: int = STABILITY_SAMPLES,
    interval_ms: int = 250,
) -> StabilitySample:
    """Fetch `url` `times` times, one after another, pausing between fetches."""
    attempts: list[ProbeAttempt] = []
    for i in range(times):
        if i and interval_ms > 0:
            await asyncio.sleep(interval_ms / 1000)
        try:
            attempt = ProbeAttempt(url=url, result=await fetcher.fetch(url))
        except FetchError as e:
            attempt = ProbeAttempt(url=url, error=e)
        log.add(attempt, f"stability:{label}")
        attempts.append(attempt)
    return StabilitySample(url=url, family=family, attempts=tuple(attempts))


@dataclass
class CheckInputs:
    discovery: DiscoveryState
    ruleset: Ruleset
    entrypoint_samples: StabilitySample | None = None
    docs_samples: StabilitySample | None = None
    collected: set[CheckInput] = field(default_factory=lambda: {CheckInput.DISCOVERY})


_RAW_TEXT_OPEN_RE = re.compile(r"<(script|style)", re.IGNORECASE)
_RAW_TEXT_CLOSE_RE = {
    "script": re.compile(r"</script", re.IGNORECASE),
    "style": re.compile(r"</style", re.IGNORECASE),
}
_WHITESPACE_RE = re.compile(r"\s+")


def _drop_raw_text(html: str) -> str:
    # An unclosed <script> or <style> swallows the rest of the document.
    parts: list[str] = []
    pos = 0
    while True:
        opening = _RAW_TEXT_OPEN_RE.search(html, pos)
        if opening is None:
            parts.append(html[pos:])
            break
        parts.append(html[pos:opening.start()])
        closing = _RAW_TEXT_CLOSE_RE[opening.group(1).lower()].search(html, opening.end())
        end = html.find(">", closing.end()) if closing else -1
        if end == -1:
            break
        parts.append(" ")
        pos = end + 1
    return "".join(parts)


def _drop_tags(html: str) -> str:
    parts: list[str] = []
    pos = 0
    while True:
        lt = html.find("<", pos)
        if lt == -1:
            parts.append(html[pos:])
            break
        gt = html.find(">", lt + 1)
        if gt == -1:
            parts.append(html[pos:])
            break
        parts.append(html[pos:lt])
        parts.append(" ")
        pos = gt + 1
    return "".join(parts)


def extract_meaningful_text(html: str | None) -> str:
    """Visible text of a page, found in time linear in the body size."""
    if not html:
        return ""
    text = _drop_tags(_drop_raw_text(html))
    return _WHITESPACE_RE.sub(" ", text).strip()


def missing_fields(doc: dict[str, Any] | None, paths: tuple[str, ...]) -> list[str]:
    missing: list[str] = []
    for path in paths:
        node: Any = doc
        for part in path.split("."):
            node = node.get(part) if isinstance(node, dict) else None
        if node is None or (isinstance(node, str) and not node.strip()) or node == {} or node == []:
            missing.append(path)
    return missing


def _has_response_example(operation: Any) -> bool:
    if not isinstance(operation, dict):
        return False
    responses = operation.get("responses")
    if not isinstance(responses, dict):
        return False
    for response in responses.values():
        if not isinstance(response, dict):
            continue
        if response.get("examples"):
            return True
        content = response.get("content")
        if not isinstance(content, dict):
            continue
        for media in content.values():
            if isinstance(media, dict) and (media.get("example") is not None or media.get("examples")):
                return True
    return False


def _parse_jsonrpc_body(result) -> dict[str, Any] | None:
    body = (result.body or "").strip()
    if "event-stream" in (result.content_type or "").lower():
        data = [line[5:].strip() for line in body.splitlines() if line.startswith("data:")]
        body = data[0] if data else ""
    return parse_json_document(body)


Verdict = tuple[CheckStatus, str, list[str]]


def _check_d1(inputs: CheckInputs) -> Verdict:
    found = inputs.discovery.entrypoints
    if found:
        return "pass", f"Found machine-readable entrypoints: {', '.join(found)}.", found
    probed = ", ".join(MANIFEST_PATHS + API_DESCRIPTION_PATHS)
    return "fail", f"No manifest, service-desc link, or API description found (probed {probed}).", []


def _check_d2(inputs: CheckInputs) -> Verdict:
    samples = inputs.entrypoint_samples
    if samples is None:
        return "fail", "No primary entrypoint to fetch; publish a manifest or API description.", []
    evidence = [samples.url]
    if not samples.ok:
        outcomes = ", ".join(samples.outcomes())
        return "fail", f"Primary entrypoint {samples.url} failed on repeat fetch ({outcomes}).", evidence
    if not samples.stable:
        return (
            "warn",
            f"Primary entrypoint {samples.url} is unstable: {samples.distinct_hashes()} distinct bodies "
            f"across {len(samples.attempts)} fetches.",
            evidence,
        )
    if not samples.content_type_ok:
        expected = "JSON" if samples.family == "json" else "JSON or YAML"
        types = ", ".join(samples.content_types())
        return "warn", f"Primary entrypoint {samples.url} served content-type {types}; expected {expected}.", evidence
    return "pass", f"Primary entrypoint {samples.url} is reachable, stable, and correctly typed.", evidence


def _check_c2(inputs: CheckInputs) -> Verdict:
    desc = inputs.discovery.api_description
    if desc is None:
        return "fail", f"No API description found (probed {', '.join(API_DESCRIPTION_PATHS)}).", []
    evidence = [desc.url]
    doc = parse_api_description(desc.result.body, desc.result.content_type)
    if doc is None:
        return "fail", f"API description at {desc.url} could not be parsed as JSON or YAML.", evidence
    version = doc.get("openapi")
    if version is None or not str(version).startswith("3."):
        declared = f"'{version}'" if version is not None else "no version"
        return "fail", f"API description at {desc.url} declares {declared}; expected an OpenAPI 3.x version.", evidence

    paths = doc.get("paths") if isinstance(doc.get("paths"), dict) else {}
    lacking: list[str] = []
    for op in inputs.ruleset.required_example_operations:
        path_item = paths.get(op.path)
        operation = path_item.get(op.method) if isinstance(path_item, dict) else None
        if operation is None:
            lacking.append(f"{op.label()} (not defined)")
        elif not _has_response_example(operation):
            lacking.append(op.label())
    if lacking:
        return "fail", f"API description at {desc.url} lacks response examples for: {', '.join(lacking)}.", evidence
    return "pass", f"API description at {desc.url} is OpenAPI {version} with response examples.", evidence


def _check_c3(inputs: CheckInputs) -> Verdict:
    state = inputs.discovery
    get, init = state.mcp_get, state.mcp_initialize
    if get is None or init is None:
        return "fail", "Tool-calling endpoint was not probed.", []
    evidence = [get.url]

    if not get.ok:
        return "fail", f"GET {get.url} failed ({get.describe_failure()}).", evidence
    if not (get.result.body or "").strip():
        return "fail", f"GET {get.url} returned empty content.", evidence

    if not init.ok:
        return "fail", f"JSON-RPC initialize to {init.url} failed ({init.describe_failure()}).", evidence
    payload = _parse_jsonrpc_body(init.result)
    if payload is None:
        return "fail", f"JSON-RPC initialize to {init.url} did not return a JSON object.", evidence
    if payload.get("jsonrpc") != "2.0" or payload.get("id") != 1:
        return "fail", f"JSON-RPC initialize to {init.url} returned a malformed envelope.", evidence
    if "error" in payload:
        error = payload.get("error")
        message = error.get("message") if isinstance(error, dict) else error
        return "fail", f"JSON-RPC initialize to {init.url} returned an error: {message}.", evidence
    result = payload.get("result")
    protocol = result.get("protocolVersion") if isinstance(result, dict) else None
    if not isinstance(protocol, str) or not protocol:
        return "fail", f"JSON-RPC initialize to {init.url} has no result.protocolVersion.", evidence
    return "pass", f"Tool-calling endpoint {get.url} answers initialize (protocol {protocol}).", evidence


def _check_l1(inputs: CheckInputs) -> Verdict:
    samples = inputs.docs_samples
    if samples is None:
        return "fail", f"No docs entrypoint discovered (probed manifest docs link, {', '.join(DOCS_PATHS)}).", []
    evidence = [samples.url]
    if not samples.ok:
        return "fail", f"Docs entrypoint {samples.url} failed on repeat fetch ({', '.join(samples.outcomes())}).", evidence
    if not samples.stable:
        return (
            "fail",
            f"Docs entrypoint {samples.url} changed across repeated fetches "
            f"({samples.distinct_hashes()} distinct bodies in {len(samples.attempts)}).",
            evidence,
        )
    text = extract_meaningful_text(samples.first_body)
    minimum = inputs.ruleset.docs_min_text_chars
    if len(text) < minimum:
        return "warn", f"Docs entrypoint {samples.url} has only {len(text)} characters of text (minimum {minimum}).", evidence
    return "pass", f"Docs entrypoint {samples.url} contains {len(text)} characters of meaningful text.", evidence


def _trust_verdict(attempt: ProbeAttempt | None, doc: dict[str, Any] | None, required: tuple[str, ...],
                   label: str, probed: str) -> Verdict:
    if attempt is None:
        return "fail", f"No {label} found (probed {probed}).", []
    evidence = [attempt.url]
    if doc is None:
        return "fail", f"{label.capitalize()} at {attempt.url} is not a JSON object.", evidence
    missing = missing_fields(doc, required)
    if missing:
        return "fail", f"{label.capitalize()} at {attempt.url} is missing required fields: {', '.join(missing)}.", evidence
    return "pass", f"{label.capitalize()} at {attempt.url} contains all {len(required)} required fields.", evidence


def _check_t1(inputs: CheckInputs) -> Verdict:
    state = inputs.discovery
    return _trust_verdict(state.manifest, state.manifest_doc, inputs.ruleset.manifest_required_fields,
                          "manifest", ", ".join(MANIFEST_PATHS))


def _check_t2(inputs: CheckInputs) -> Verdict:
    state = inputs.discovery
    return _trust_verdict(state.plugin, state.plugin_doc, inputs.ruleset.plugin_required_fields,
                          "plugin metadata", PLUGIN_PATH)


def _check_r3(inputs: CheckInputs) -> Verdict:
    present = [s for s in (inputs.entrypoint_samples, inputs.docs_samples) if s is not None]
    if not present:
        return "fail", "No critical surfaces (primary entrypoint or docs) to sample.", []
    evidence = [s.url for s in present]
    problems: list[str] = []
    for s in present:
        if not s.ok:
            problems.append(f"{s.url} failed ({', '.join(s.outcomes())})")
        elif not s.stable:
            problems.append(f"{s.url} returned {s.distinct_hashes()} distinct bodies")
    if problems:
        return "fail", f"Critical surfaces vary across repeated requests: {'; '.join(problems)}.", evidence
    return "pass", "Critical surfaces are consistent across repeated requests.", evidence


_EVALUATORS: dict[CheckId, Callable[[CheckInputs], Verdict]] = {
    CheckId.D1: _check_d1,
    CheckId.D2: _check_d2,
    CheckId.C2: _check_c2,
    CheckId.C3: _check_c3,
    CheckId.L1: _check_l1,
    CheckId.T1: _check_t1,
    CheckId.T2: _check_t2,
    CheckId.R3: _check_r3,
}


def ensure_catalog_in_sync(evaluators: dict[CheckId, Callable[[CheckInputs], Verdict]]) -> None:
    if set(evaluators) != set(CheckId) or set(CHECKS) != set(CheckId):
        raise ValueError("check catalog and evaluators out of sync")


ensure_catalog_in_sync(_EVALUATORS)


def run_check(check_id: CheckId, inputs: CheckInputs) -> CheckResult:
    definition = CHECKS[check_id]
    missing = definition.requires - inputs.collected
    if missing:
        raise ValueError(f"{check_id.value} requires inputs that were not collected: {sorted(m.value for m in missing)}")
    status, summary, evidence = _EVALUATORS[check_id](inputs)
    return CheckResult(
        id=check_id.value,
        status=status,
        severity=definition.severity,
        summary=summary,
        evidence=evidence,
        recommendation_id=check_id.value if status != "pass" else None,
    )


def run_checks(inputs: CheckInputs) -> list[CheckResult]:
    return [run_check(check_id, inputs) for check_id in CheckId]
