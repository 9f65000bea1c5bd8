from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone

from .models import EvidenceRecord, FetchResult
from .ssrf import FetchError


@dataclass(frozen=True)
class ProbeAttempt:
    """Outcome of one SafeFetcher call: exactly one of `result` / `error` is set."""

    url: str
    method: str = "GET"
    result: FetchResult | None = None
    error: FetchError | None = None

    @property
    def ok(self) -> bool:
        return self.result is not None and 200 <= self.result.status < 300

    @property
    def status(self) -> int | None:
        return self.result.status if self.result is not None else None

    def describe_failure(self) -> str:
        if self.error is not None:
            return self.error.describe()
        if self.result is not None:
            return f"HTTP {self.result.status}"
        return "not fetched"


class EvidenceLog:
    """Append-only list of evidence records for one writer."""

    def __init__(self) -> None:
        self._records: list[EvidenceRecord] = []

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> list[EvidenceRecord]:
        return list(self._records)

    def urls(self) -> set[str]:
        return {r.url for r in self._records}

    def add(self, attempt: ProbeAttempt, probe: str) -> None:
        if attempt.result is not None:
            self._records.append(from_result(attempt.result, probe=probe, url=attempt.url))
        else:
            self._records.append(
                EvidenceRecord(
                    url=attempt.url,
                    method=attempt.method,
                    probe=probe,
                    fetched_at=datetime.now(timezone.utc).isoformat(),
                    error=attempt.describe_failure(),
                )
            )

    def extend(self, other: EvidenceLog) -> None:
        self._records.extend(other._records)


def from_result(result: FetchResult, *, probe: str | None = None, url: str | None = None) -> EvidenceRecord:
    return EvidenceRecord(
        url=url or result.requested_url,
        final_url=result.url,
        method=result.method,
        probe=probe,
        status=result.status,
        headers=result.headers,
        content_type=result.content_type,
        content_length=result.content_length,
        sha256=result.sha256,
        fetched_at=result.fetched_at,
        redirect_chain=result.redirect_chain or None,
    )
