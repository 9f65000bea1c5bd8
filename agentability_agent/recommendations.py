from __future__ import annotations

from pydantic import BaseModel, ConfigDict

STANDARD_LINK = "https://agentability.org/spec.md"


class FixIt(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    why_it_matters: str
    steps: list[str]
    snippet: str
    links: list[str] = []
    estimated_minutes: int | None = None


_AIR_SNIPPET = """\
# .well-known/air.json
{
  "spec_version": "1.2",
  "canonical_base_url": "https://example.com",
  "product": {"name": "Example", "description": "...", "home_url": "https://example.com"},
  "entrypoints": {"web_app": "https://example.com", "api_base": "https://example.com/v1"},
  "callable_surface": {"openapi": "https://example.com/.well-known/openapi.json", "mcp_endpoint": "https://example.com/mcp"},
  "llm_entrypoints": {"llms_txt": "https://example.com/llms.txt"},
  "legal": {"terms_url": "https://example.com/legal/terms", "privacy_url": "https://example.com/legal/privacy"},
  "verification": {"discovery_audit_json": "https://example.com/discovery/audit/latest.json"}
}
"""

_OPENAPI_SNIPPET = """\
openapi: 3.1.0
info:
  title: Example API
  version: 1.0.0
servers:
  - url: https://example.com
paths:
  /v1/status:
    get:
      responses:
        "200":
          content:
            application/json:
              examples:
                ok:
                  value: {"status": "ok"}
"""

FIX_IT_LIBRARY: dict[str, FixIt] = {
    fix.id: fix
    for fix in (
        FixIt(
            id="D1",
            title="Add machine discovery entrypoints",
            why_it_matters="Agents need stable, machine-readable entrypoints to avoid scraping HTML.",
            estimated_minutes=15,
            steps=[
                "Publish /.well-known/air.json with product, entrypoints, legal, and verification fields.",
                "Publish /llms.txt with canonical links.",
                "Ensure all entrypoints return 200 from static hosting.",
            ],
            snippet=_AIR_SNIPPET,
            links=[STANDARD_LINK],
        ),
        FixIt(
            id="D2",
            title="Serve entrypoints with correct content-types",
            why_it_matters="Agents reject unstable or mis-typed surfaces (HTML where JSON is expected).",
            estimated_minutes=10,
            steps=[
                "Serve JSON/YAML/Markdown with explicit Content-Type headers.",
                "Avoid SPA rewrites for machine surfaces.",
                "Use caching headers to stabilize responses.",
            ],
            snippet='{\n  "source": "/.well-known/*.json",\n'
                    '  "headers": [{"key": "Content-Type", "value": "application/json; charset=utf-8"}]\n}\n',
            links=[STANDARD_LINK],
        ),
        FixIt(
            id="C2",
            title="Publish an example-rich OpenAPI",
            why_it_matters="Callable APIs need examples and clear servers to be usable by agents.",
            estimated_minutes=20,
            steps=[
                "Publish OpenAPI JSON/YAML under /.well-known/.",
                "Include servers pointing to your domain.",
                "Add response examples for critical endpoints.",
            ],
            snippet=_OPENAPI_SNIPPET,
            links=[STANDARD_LINK],
        ),
        FixIt(
            id="C3",
            title="Expose an MCP endpoint",
            why_it_matters="MCP provides a direct tool surface for agents beyond HTTP scraping.",
            estimated_minutes=30,
            steps=[
                "Expose POST /mcp for JSON-RPC 2.0.",
                "Implement initialize and tools/list.",
                "Return helpful guidance on GET /mcp.",
            ],
            snippet='POST /mcp\n{\n  "jsonrpc": "2.0",\n  "id": 1,\n  "method": "initialize",\n'
                    '  "params": {"protocolVersion": "2024-11-05"}\n}\n',
            links=[STANDARD_LINK],
        ),
        FixIt(
            id="L1",
            title="Publish canonical docs entrypoints",
            why_it_matters="Agents need stable, linkable documentation for ingestion.",
            estimated_minutes=15,
            steps=[
                "Publish /docs.md with a concise product overview.",
                "Link to deeper docs like /docs/api.md.",
                "Keep markdown clean and stable.",
            ],
            snippet="# docs.md\n\n## Quickstart\n- Base URL: https://example.com\n"
                    "- OpenAPI: https://example.com/.well-known/openapi.json\n- MCP: https://example.com/mcp\n",
            links=[STANDARD_LINK],
        ),
        FixIt(
            id="T1",
            title="Complete air.json with legal + verification",
            why_it_matters="Trust requires machine-readable provenance and legal endpoints.",
            estimated_minutes=10,
            steps=[
                "Add canonical_base_url and contact.email.",
                "Include legal terms + privacy URLs.",
                "Include verification discovery audit URLs.",
            ],
            snippet='{\n  "canonical_base_url": "https://example.com",\n'
                    '  "contact": {"email": "support@example.com"},\n'
                    '  "legal": {"terms_url": "https://example.com/legal/terms", '
                    '"privacy_url": "https://example.com/legal/privacy"}\n}\n',
            links=[STANDARD_LINK],
        ),
        FixIt(
            id="T2",
            title="Add an AI plugin manifest",
            why_it_matters="Plugin manifests provide a standard, trusted handshake for tools.",
            estimated_minutes=15,
            steps=[
                "Publish /.well-known/ai-plugin.json.",
                "Point to OpenAPI and legal URLs.",
                "Include contact_email.",
            ],
            snippet='{\n  "schema_version": "v1",\n  "name_for_model": "example",\n'
                    '  "api": {"type": "openapi", "url": "https://example.com/.well-known/openapi.json"},\n'
                    '  "contact_email": "support@example.com",\n'
                    '  "legal_info_url": "https://example.com/legal/terms"\n}\n',
            links=[STANDARD_LINK],
        ),
        FixIt(
            id="R3",
            title="Stabilize critical surfaces",
            why_it_matters="Agents need repeatable responses for deterministic tool use.",
            estimated_minutes=20,
            steps=[
                "Avoid dynamic timestamps in core discovery surfaces.",
                "Use caching headers for stability.",
                "Verify repeated fetches are consistent.",
            ],
            snippet='Cache-Control: public, max-age=3600\nETag: "<stable-hash>"\n',
            links=[STANDARD_LINK],
        ),
    )
}


def get_fix_it(check_id: str | None = None, recommendation_id: str | None = None) -> FixIt | None:
    key = recommendation_id or check_id
    if not key:
        return None
    return FIX_IT_LIBRARY.get(key.upper())
