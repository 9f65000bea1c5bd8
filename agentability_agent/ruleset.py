from __future__ import annotations

from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from typing import Any

import yaml

_DEFAULT_PATH = Path(__file__).resolve().with_name("ruleset.yaml")


@dataclass(frozen=True)
class ExampleOperation:
    method: str
    path: str

    def label(self) -> str:
        return f"{self.method.upper()} {self.path}"


@dataclass(frozen=True)
class Ruleset:
    version: str
    required_example_operations: tuple[ExampleOperation, ...]
    manifest_required_fields: tuple[str, ...]
    plugin_required_fields: tuple[str, ...]
    docs_min_text_chars: int = 200
    mcp_protocol_version: str = "2024-11-05"

    def as_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "required_example_operations": [
                {"method": op.method, "path": op.path} for op in self.required_example_operations
            ],
            "manifest_required_fields": list(self.manifest_required_fields),
            "plugin_required_fields": list(self.plugin_required_fields),
            "docs_min_text_chars": self.docs_min_text_chars,
            "mcp_protocol_version": self.mcp_protocol_version,
        }


def parse_ruleset(raw: dict[str, Any]) -> Ruleset:
    ops = []
    for item in raw.get("required_example_operations") or []:
        ops.append(ExampleOperation(method=str(item["method"]).lower(), path=str(item["path"])))
    return Ruleset(
        version=str(raw.get("version") or "0"),
        required_example_operations=tuple(ops),
        manifest_required_fields=tuple(str(f) for f in raw.get("manifest_required_fields") or []),
        plugin_required_fields=tuple(str(f) for f in raw.get("plugin_required_fields") or []),
        docs_min_text_chars=int(raw.get("docs_min_text_chars", 200)),
        mcp_protocol_version=str(raw.get("mcp_protocol_version") or "2024-11-05"),
    )


def load_ruleset(path: Path | str | None = None) -> Ruleset:
    source = Path(path) if path else _DEFAULT_PATH
    with open(source, "r", encoding="utf-8") as f:
        raw = yaml.safe_load(f) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"Ruleset {source} must be a mapping")
    return parse_ruleset(raw)


@lru_cache(maxsize=1)
def default_ruleset() -> Ruleset:
    return load_ruleset()
