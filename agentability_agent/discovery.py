from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Literal
from urllib.parse import urljoin

import yaml

from .evidence import EvidenceLog, ProbeAttempt
from .ssrf import FetchError, SafeFetcher

logger = logging.getLogger(__name__)

ContentFamily = Literal["json", "api", "markup", "any"]

MANIFEST_PATHS = ("/.well-known/air.json", "/air.json")
API_DESCRIPTION_PATHS = (
    "/.well-known/openapi.json",
    "/.well-known/openapi.yaml",
    "/openapi.json",
    "/openapi.yaml",
    "/swagger.json",
)
PLUGIN_PATH = "/.well-known/ai-plugin.json"
DOCS_PATHS = ("/docs", "/documentation", "/developers", "/docs.md")
LLMS_PATH = "/llms.txt"
ROBOTS_PATH = "/robots.txt"
MCP_PATH = "/mcp"

_LINK_OPEN_RE = re.compile(r"<link\b", re.IGNORECASE)
_REL_SERVICE_DESC_RE = re.compile(r"""rel\s*=\s*["']?service-desc["']?""", re.IGNORECASE)
_HREF_RE = re.compile(r"""href\s*=\s*["']([^"']+)["']""", re.IGNORECASE)


def is_json_like(content_type: str | None) -> bool:
    return bool(content_type) and "json" in content_type.lower()


def is_yaml_like(content_type: str | None) -> bool:
    if not content_type:
        return False
    ct = content_type.lower()
    return "yaml" in ct or "yml" in ct


def is_markup_like(content_type: str | None) -> bool:
    if not content_type:
        return False
    ct = content_type.lower()
    return ct.startswith("text/") or "html" in ct or "markdown" in ct


def matches_family(content_type: str | None, family: ContentFamily) -> bool:
    if family == "json":
        return is_json_like(content_type)
    if family == "api":
        return is_json_like(content_type) or is_yaml_like(content_type)
    if family == "markup":
        return is_markup_like(content_type)
    return True


def parse_json_document(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None
    try:
        value = json.loads(text)
    except (ValueError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def parse_yaml_document(text: str | None) -> dict[str, Any] | None:
    if not text:
        return None
    try:
        value = yaml.safe_load(text)
    except (yaml.YAMLError, RecursionError):
        return None
    return value if isinstance(value, dict) else None


def parse_api_description(text: str | None, content_type: str | None) -> dict[str, Any] | None:
    if is_json_like(content_type):
        parsed = parse_json_document(text)
        if parsed is not None:
            return parsed
    return parse_yaml_document(text)


def extract_service_desc_from_link(header_value: str | None) -> str | None:
    if not header_value:
        return None
    for part in header_value.split(","):
        url_match = re.search(r"<([^>]+)>", part)
        rel_match = re.search(r"""rel\s*=\s*"?([^";]+)"?""", part, flags=re.IGNORECASE)
        if url_match and rel_match and "service-desc" in rel_match.group(1).lower().split():
            return url_match.group(1).strip()
    return None


def extract_service_desc_from_html(html: str | None) -> str | None:
    if not html:
        return None
    pos = 0
    while True:
        opening = _LINK_OPEN_RE.search(html, pos)
        if opening is None:
            return None
        end = html.find(">", opening.end())
        if end == -1:
            return None
        tag = html[opening.start():end + 1]
        pos = end + 1
        if not _REL_SERVICE_DESC_RE.search(tag):
            continue
        href = _HREF_RE.search(tag)
        if href:
            return href.group(1).strip()


def _docs_url_from_manifest(manifest: dict[str, Any] | None, origin: str) -> str | None:
    if not manifest:
        return None
    for key in ("docs", "documentation"):
        value = manifest.get(key)
        if isinstance(value, dict):
            value = value.get("url")
        if isinstance(value, str) and value.strip():
            return urljoin(origin + "/", value.strip())
    return None


@dataclass
class DiscoveryState:
    origin: str
    domain: str
    manifest: ProbeAttempt | None = None
    manifest_doc: dict[str, Any] | None = None
    root: ProbeAttempt | None = None
    service_desc: ProbeAttempt | None = None
    openapi: ProbeAttempt | None = None
    plugin: ProbeAttempt | None = None
    plugin_doc: dict[str, Any] | None = None
    llms: ProbeAttempt | None = None
    robots: ProbeAttempt | None = None
    docs: ProbeAttempt | None = None
    mcp_get: ProbeAttempt | None = None
    mcp_initialize: ProbeAttempt | None = None
    evidence: EvidenceLog = field(default_factory=EvidenceLog)
    notes: list[str] = field(default_factory=list)

    @property
    def manifest_url(self) -> str | None:
        return self.manifest.url if self.manifest else None

    @property
    def service_desc_url(self) -> str | None:
        return self.service_desc.url if self.service_desc else None

    @property
    def openapi_url(self) -> str | None:
        return self.openapi.url if self.openapi else None

    @property
    def docs_url(self) -> str | None:
        return self.docs.url if self.docs else None

    @property
    def primary_entrypoint(self) -> str | None:
        return self.manifest_url or self.service_desc_url or self.openapi_url

    @property
    def primary_family(self) -> ContentFamily:
        return "json" if self.manifest_url else "api"

    @property
    def api_description(self) -> ProbeAttempt | None:
        return self.openapi or self.service_desc

    @property
    def entrypoints(self) -> list[str]:
        return [u for u in (self.manifest_url, self.service_desc_url, self.openapi_url) if u]


@dataclass
class _Slot:
    """Disjoint output for one concurrently running probe."""

    log: EvidenceLog = field(default_factory=EvidenceLog)
    hit: ProbeAttempt | None = None
    extra: ProbeAttempt | None = None
    notes: list[str] = field(default_factory=list)


class DiscoveryProbe:
    def __init__(self, fetcher: SafeFetcher, *, mcp_protocol_version: str = "2024-11-05"):
        self.fetcher = fetcher
        self.mcp_protocol_version = mcp_protocol_version

    async def _attempt(
        self,
        url: str,
        log: EvidenceLog,
        probe: str,
        *,
        method: str = "GET",
        headers: dict[str, str] | None = None,
        body: str | None = None,
    ) -> ProbeAttempt:
        try:
            result = await self.fetcher.fetch(url, method=method, headers=headers, body=body)
            attempt = ProbeAttempt(url=url, method=method, result=result)
        except FetchError as e:
            attempt = ProbeAttempt(url=url, method=method, error=e)
        log.add(attempt, probe)
        return attempt

    async def _first_success(
        self, urls: list[str], probe: str, family: ContentFamily, slot: _Slot
    ) -> None:
        for url in urls:
            attempt = await self._attempt(url, slot.log, probe)
            if attempt.ok and matches_family(attempt.result.content_type, family):
                slot.hit = attempt
                return
            if attempt.ok:
                slot.notes.append(
                    f"{probe}: {url} returned content-type {attempt.result.content_type!r}"
                )

    async def _probe_root(self, origin: str, slot: _Slot) -> None:
        root = await self._attempt(f"{origin}/", slot.log, "root")
        slot.extra = root
        if not root.ok:
            return
        link = extract_service_desc_from_link(root.result.headers.get("link"))
        link = link or extract_service_desc_from_html(root.result.body)
        if not link:
            return
        resolved = urljoin(origin + "/", link)
        desc = await self._attempt(resolved, slot.log, "service_desc")
        if desc.ok and matches_family(desc.result.content_type, "api"):
            slot.hit = desc
        else:
            slot.notes.append(f"service-desc link {resolved} not usable: {desc.describe_failure()}")

    async def _probe_mcp(self, origin: str, slot: _Slot) -> None:
        url = f"{origin}{MCP_PATH}"
        slot.hit = await self._attempt(url, slot.log, "mcp")
        payload = {
            "jsonrpc": "2.0",
            "id": 1,
            "method": "initialize",
            "params": {
                "protocolVersion": self.mcp_protocol_version,
                "capabilities": {},
                "clientInfo": {"name": "agentability", "version": "0.1.0"},
            },
        }
        slot.extra = await self._attempt(
            url,
            slot.log,
            "mcp_initialize",
            method="POST",
            headers={
                "content-type": "application/json",
                "accept": "application/json, text/event-stream",
            },
            body=json.dumps(payload),
        )

    async def discover(self, origin: str, domain: str) -> DiscoveryState:
        state = DiscoveryState(origin=origin, domain=domain)

        manifest, root, openapi, plugin, llms, robots, mcp = (_Slot() for _ in range(7))
        await asyncio.gather(
            self._first_success([origin + p for p in MANIFEST_PATHS], "manifest", "json", manifest),
            self._probe_root(origin, root),
            self._first_success([origin + p for p in API_DESCRIPTION_PATHS], "openapi", "api", openapi),
            self._first_success([origin + PLUGIN_PATH], "plugin", "json", plugin),
            self._first_success([origin + LLMS_PATH], "llms_txt", "markup", llms),
            self._first_success([origin + ROBOTS_PATH], "robots_txt", "markup", robots),
            self._probe_mcp(origin, mcp),
        )

        state.manifest = manifest.hit
        state.root = root.extra
        state.service_desc = root.hit
        state.openapi = openapi.hit
        state.plugin = plugin.hit
        state.llms = llms.hit
        state.robots = robots.hit
        state.mcp_get = mcp.hit
        state.mcp_initialize = mcp.extra

        if state.manifest is not None:
            state.manifest_doc = parse_json_document(state.manifest.result.body)
            if state.manifest_doc is None:
                state.notes.append(f"Failed to parse manifest at {state.manifest.url}")
        if state.plugin is not None:
            state.plugin_doc = parse_json_document(state.plugin.result.body)
            if state.plugin_doc is None:
                state.notes.append(f"Failed to parse plugin metadata at {state.plugin.url}")

        docs = _Slot()
        candidates = [origin + p for p in DOCS_PATHS]
        from_manifest = _docs_url_from_manifest(state.manifest_doc, origin)
        if from_manifest:
            candidates = [from_manifest] + [u for u in candidates if u != from_manifest]
        await self._first_success(candidates, "docs", "markup", docs)
        state.docs = docs.hit

        for slot in (manifest, root, openapi, plugin, llms, robots, mcp, docs):
            state.evidence.extend(slot.log)
            state.notes.extend(slot.notes)

        logger.debug(
            "discovery %s: entrypoints=%s docs=%s evidence=%d",
            domain, state.entrypoints, state.docs_url, len(state.evidence),
        )
        return state
