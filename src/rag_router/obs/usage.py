"""Usage recording and cost accounting for successful generations."""

from __future__ import annotations

import asyncio
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Protocol


@dataclass(slots=True)
class CostModel:
    """Token pricing model (USD per 1K tokens), scaled per backend."""

    input_per_1k: float = 0.001
    output_per_1k: float = 0.003

    def estimate_cost(self, input_tokens: int, output_tokens: int, multiplier: float = 1.0) -> float:
        return (
            (input_tokens / 1000.0) * self.input_per_1k
            + (output_tokens / 1000.0) * self.output_per_1k
        ) * multiplier


@dataclass(slots=True)
class UsageRecord:
    record_id: str
    timestamp_utc: str
    user_id: str
    session_id: str
    backend: str
    input_tokens: int
    output_tokens: int
    cost: float
    was_error: bool
    duration_ms: float


class UsageRecorder(Protocol):
    """Sink for billable usage. The router only calls it after a success."""

    async def record(
        self,
        user_id: str,
        session_id: str,
        backend: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        was_error: bool,
        duration_ms: float,
    ) -> None:
        """Persist one usage entry."""


class InMemoryUsageRecorder:
    """In-memory usage ledger for tests and the HTTP service."""

    def __init__(self) -> None:
        self._records: dict[str, UsageRecord] = {}
        self._lock = asyncio.Lock()

    async def record(
        self,
        user_id: str,
        session_id: str,
        backend: str,
        input_tokens: int,
        output_tokens: int,
        cost: float,
        was_error: bool,
        duration_ms: float,
    ) -> None:
        entry = UsageRecord(
            record_id=str(uuid.uuid4()),
            timestamp_utc=datetime.now(timezone.utc).isoformat(),
            user_id=user_id,
            session_id=session_id,
            backend=backend,
            input_tokens=input_tokens,
            output_tokens=output_tokens,
            cost=cost,
            was_error=was_error,
            duration_ms=duration_ms,
        )
        async with self._lock:
            self._records[entry.record_id] = entry

    @property
    def records(self) -> list[UsageRecord]:
        return list(self._records.values())

    def get(self, record_id: str) -> UsageRecord:
        record = self._records.get(record_id)
        if record is None:
            raise KeyError(f"Usage record not found: {record_id}")
        return record

    def list_recent(self, limit: int = 20) -> list[UsageRecord]:
        if limit <= 0:
            return []
        return list(self._records.values())[-limit:]

    def session_total(self, user_id: str, session_id: str) -> float:
        return sum(
            record.cost
            for record in self._records.values()
            if record.user_id == user_id and record.session_id == session_id
        )

    def summary(self) -> dict[str, object]:
        """Aggregate totals overall and per backend."""
        records = list(self._records.values())
        per_backend: dict[str, dict[str, float | int]] = {}
        for record in records:
            bucket = per_backend.setdefault(
                record.backend,
                {"requests": 0, "input_tokens": 0, "output_tokens": 0, "cost": 0.0},
            )
            bucket["requests"] += 1
            bucket["input_tokens"] += record.input_tokens
            bucket["output_tokens"] += record.output_tokens
            bucket["cost"] += record.cost

        durations = sorted(record.duration_ms for record in records)
        p95_index = max(0, int((len(durations) * 0.95) - 1))
        return {
            "total_requests": len(records),
            "total_input_tokens": sum(record.input_tokens for record in records),
            "total_output_tokens": sum(record.output_tokens for record in records),
            "total_cost": sum(record.cost for record in records),
            "avg_duration_ms": sum(durations) / len(durations) if durations else 0.0,
            "p95_duration_ms": durations[p95_index] if durations else 0.0,
            "per_backend": per_backend,
        }


class Timer:
    """Wall-clock timer reporting milliseconds."""

    def __init__(self) -> None:
        self._start = time.perf_counter()

    def start(self) -> "Timer":
        self._start = time.perf_counter()
        return self

    def lap(self) -> float:
        """Milliseconds since `start` without stopping the timer."""
        return (time.perf_counter() - self._start) * 1000.0
