from __future__ import annotations

import json

import httpx
import pytest

from agentability_agent.ssrf import FetchLimits, SafeFetcher

PUBLIC_IP = "93.184.216.34"
ORIGIN = "https://example.com"


def stub_resolver(table: dict | None = None):
    """Resolve every hostname to a public address unless `table` says otherwise.

    A table value may be a list of addresses or an exception instance to raise.
    """
    table = table or {}

    async def resolve(host: str) -> list[str]:
        value = table.get(host, [PUBLIC_IP])
        if isinstance(value, Exception):
            raise value
        return list(value)

    return resolve


class Site:
    """Route table for httpx.MockTransport; records every request it serves.

    Keys are either a path or a (METHOD, path) pair; values are callables
    taking the request and returning a fresh httpx.Response.
    """

    def __init__(self, routes: dict | None = None):
        self.routes = dict(routes or {})
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path)) or self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404, text="not found")
        return route(request)

    def hits(self, path: str) -> int:
        return sum(1 for r in self.requests if r.url.path == path)


def json_route(doc, status: int = 200, content_type: str = "application/json"):
    body = json.dumps(doc).encode("utf-8")
    return lambda _req: httpx.Response(status, content=body, headers={"content-type": content_type})


def text_route(text: str, status: int = 200, content_type: str = "text/plain; charset=utf-8"):
    return lambda _req: httpx.Response(status, text=text, headers={"content-type": content_type})


MANIFEST = {
    "spec_version": "1.2",
    "canonical_base_url": ORIGIN,
    "product": {"name": "Example"},
    "contact": {"email": "support@example.com"},
    "legal": {"terms_url": f"{ORIGIN}/legal/terms", "privacy_url": f"{ORIGIN}/legal/privacy"},
    "verification": {"discovery_audit_json": f"{ORIGIN}/discovery/audit/latest.json"},
    "callable_surface": {"openapi": f"{ORIGIN}/.well-known/openapi.json", "mcp_endpoint": f"{ORIGIN}/mcp"},
    "llm_entrypoints": {"llms_txt": f"{ORIGIN}/llms.txt"},
    "docs": f"{ORIGIN}/docs.md",
}

_EXAMPLE_RESPONSE = {"200": {"content": {"application/json": {"example": {"ok": True}}}}}

OPENAPI = {
    "openapi": "3.1.0",
    "info": {"title": "Example API", "version": "1.0.0"},
    "servers": [{"url": ORIGIN}],
    "paths": {
        "/v1/evaluate": {"post": {"responses": _EXAMPLE_RESPONSE}},
        "/v1/runs/{runId}": {
            "get": {"responses": {"200": {"content": {"application/json": {"examples": {"ok": {"value": {}}}}}}}}
        },
        "/v1/evaluations/{domain}/latest.json": {"get": {"responses": _EXAMPLE_RESPONSE}},
    },
}

PLUGIN = {
    "schema_version": "v1",
    "name_for_model": "example",
    "api": {"type": "openapi", "url": f"{ORIGIN}/.well-known/openapi.json"},
    "contact_email": "support@example.com",
    "legal_info_url": f"{ORIGIN}/legal/terms",
}

DOCS_TEXT = "# Example docs\n\n" + (
    "Example exposes a small JSON API for checking order status and creating refunds. "
    "Every endpoint is described in the OpenAPI document and mirrored as a tool on the MCP endpoint. "
    "Authentication is not required for read-only calls. "
) * 2


def healthy_routes() -> dict:
    return {
        "/.well-known/air.json": json_route(MANIFEST),
        "/": text_route("<html><head><title>Example</title></head><body>Hi</body></html>",
                        content_type="text/html; charset=utf-8"),
        "/.well-known/openapi.json": json_route(OPENAPI),
        "/.well-known/ai-plugin.json": json_route(PLUGIN),
        "/llms.txt": text_route("# Example\n- docs: https://example.com/docs.md\n"),
        "/robots.txt": text_route("User-agent: *\nAllow: /\n"),
        ("GET", "/mcp"): text_route("POST JSON-RPC 2.0 requests here."),
        ("POST", "/mcp"): json_route({"jsonrpc": "2.0", "id": 1, "result": {"protocolVersion": "2024-11-05"}}),
        "/docs.md": text_route(DOCS_TEXT, content_type="text/markdown; charset=utf-8"),
    }


def changing_route(content_type: str = "text/markdown; charset=utf-8"):
    """Returns a different body on every request."""
    counter = {"n": 0}

    def route(_req):
        counter["n"] += 1
        return httpx.Response(200, text=f"{DOCS_TEXT}\nbuild {counter['n']}", headers={"content-type": content_type})

    return route


def make_fetcher(site, *, resolver=None, **limits) -> SafeFetcher:
    return SafeFetcher(
        limits=FetchLimits(**limits),
        user_agent="agentability-tests",
        resolver=resolver or stub_resolver(),
        transport=httpx.MockTransport(site),
    )


@pytest.fixture
def healthy_site() -> Site:
    return Site(healthy_routes())
