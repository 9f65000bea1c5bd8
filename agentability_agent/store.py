from __future__ import annotations

import asyncio
import json
import os
import re
from abc import ABC, abstractmethod
from pathlib import Path

from .models import EvaluationResult, EvidenceRecord

_SAFE_KEY_RE = re.compile(r"^[A-Za-z0-9._:\-\[\]]{1,255}$")


def _safe_key(value: str) -> bool:
    return bool(_SAFE_KEY_RE.match(value or "")) and value not in (".", "..")


class RunStore(ABC):
    """
    Opaque key-value persistence for runs, keyed by domain and run id.
    Writes replace whole records, so repeating a write is harmless.
    """

    @abstractmethod
    async def save_run(self, run: EvaluationResult) -> None:
        """Insert or replace the run under (domain, run_id) and the run-id index."""

    @abstractmethod
    async def get_run(self, run_id: str) -> EvaluationResult | None:
        pass

    @abstractmethod
    async def get_domain_run(self, domain: str, run_id: str) -> EvaluationResult | None:
        pass

    @abstractmethod
    async def latest_run_id(self, domain: str) -> str | None:
        pass

    @abstractmethod
    async def set_latest(self, domain: str, run_id: str) -> None:
        pass

    @abstractmethod
    async def save_evidence(self, domain: str, run_id: str, records: list[EvidenceRecord]) -> None:
        pass

    @abstractmethod
    async def get_evidence(self, domain: str, run_id: str) -> list[EvidenceRecord] | None:
        pass

    async def latest_run(self, domain: str) -> EvaluationResult | None:
        run_id = await self.latest_run_id(domain)
        if not run_id:
            return None
        return await self.get_domain_run(domain, run_id)


class InMemoryRunStore(RunStore):
    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self._runs: dict[str, EvaluationResult] = {}
        self._latest: dict[str, str] = {}
        self._evidence: dict[tuple[str, str], list[EvidenceRecord]] = {}

    async def save_run(self, run: EvaluationResult) -> None:
        async with self._lock:
            self._runs[run.run_id] = run.model_copy(deep=True)

    async def get_run(self, run_id: str) -> EvaluationResult | None:
        async with self._lock:
            run = self._runs.get(run_id)
            return run.model_copy(deep=True) if run else None

    async def get_domain_run(self, domain: str, run_id: str) -> EvaluationResult | None:
        run = await self.get_run(run_id)
        if run is None or run.domain != domain:
            return None
        return run

    async def latest_run_id(self, domain: str) -> str | None:
        async with self._lock:
            return self._latest.get(domain)

    async def set_latest(self, domain: str, run_id: str) -> None:
        async with self._lock:
            self._latest[domain] = run_id

    async def save_evidence(self, domain: str, run_id: str, records: list[EvidenceRecord]) -> None:
        async with self._lock:
            self._evidence[(domain, run_id)] = list(records)

    async def get_evidence(self, domain: str, run_id: str) -> list[EvidenceRecord] | None:
        async with self._lock:
            records = self._evidence.get((domain, run_id))
            return list(records) if records is not None else None


class FileRunStore(RunStore):
    """
    JSON documents on disk:
      runs/<run_id>.json
      evaluations/<domain>/latest.json
      evidence/<domain>/<run_id>.jsonl
    """

    def __init__(self, root: str | Path):
        self.root = Path(root)
        self._lock = asyncio.Lock()

    def _run_path(self, run_id: str) -> Path:
        return self.root / "runs" / f"{run_id}.json"

    def _latest_path(self, domain: str) -> Path:
        return self.root / "evaluations" / domain / "latest.json"

    def _evidence_path(self, domain: str, run_id: str) -> Path:
        return self.root / "evidence" / domain / f"{run_id}.jsonl"

    @staticmethod
    def _write(path: Path, text: str) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(text, encoding="utf-8")
        os.replace(tmp, path)

    @staticmethod
    def _read(path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8")
        except FileNotFoundError:
            return None

    async def save_run(self, run: EvaluationResult) -> None:
        if not (_safe_key(run.run_id) and _safe_key(run.domain)):
            raise ValueError(f"Unsafe run key {run.domain}/{run.run_id}")
        text = run.model_dump_json(by_alias=True, indent=2)
        async with self._lock:
            await asyncio.to_thread(self._write, self._run_path(run.run_id), text)

    async def get_run(self, run_id: str) -> EvaluationResult | None:
        if not _safe_key(run_id):
            return None
        text = await asyncio.to_thread(self._read, self._run_path(run_id))
        return EvaluationResult.model_validate_json(text) if text else None

    async def get_domain_run(self, domain: str, run_id: str) -> EvaluationResult | None:
        run = await self.get_run(run_id)
        if run is None or run.domain != domain:
            return None
        return run

    async def latest_run_id(self, domain: str) -> str | None:
        if not _safe_key(domain):
            return None
        text = await asyncio.to_thread(self._read, self._latest_path(domain))
        if not text:
            return None
        return json.loads(text).get("latest_run_id")

    async def set_latest(self, domain: str, run_id: str) -> None:
        if not (_safe_key(domain) and _safe_key(run_id)):
            raise ValueError(f"Unsafe run key {domain}/{run_id}")
        payload = json.dumps({"domain": domain, "latest_run_id": run_id})
        async with self._lock:
            await asyncio.to_thread(self._write, self._latest_path(domain), payload)

    async def save_evidence(self, domain: str, run_id: str, records: list[EvidenceRecord]) -> None:
        if not (_safe_key(domain) and _safe_key(run_id)):
            raise ValueError(f"Unsafe run key {domain}/{run_id}")
        payload = "\n".join(r.model_dump_json(exclude_none=True) for r in records)
        async with self._lock:
            await asyncio.to_thread(self._write, self._evidence_path(domain, run_id), payload)

    async def get_evidence(self, domain: str, run_id: str) -> list[EvidenceRecord] | None:
        if not (_safe_key(domain) and _safe_key(run_id)):
            return None
        text = await asyncio.to_thread(self._read, self._evidence_path(domain, run_id))
        if text is None:
            return None
        return [EvidenceRecord.model_validate_json(line) for line in text.splitlines() if line.strip()]
