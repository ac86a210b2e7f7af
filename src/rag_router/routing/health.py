"""Advisory background health probing of backends."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timezone

from rag_router.routing.catalog import ModelCatalog

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackendHealth:
    backend: str
    healthy: bool
    checked_at_utc: str
    latency_ms: float
    consecutive_failures: int = 0


class HealthMonitor:
    """Periodically pings every registered adapter.

    Results are informational (surfaced by `/health`); routing decisions
    are driven by the circuit breaker alone.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        *,
        interval_seconds: float = 30.0,
        probe_timeout_seconds: float = 10.0,
    ) -> None:
        self.catalog = catalog
        self.interval_seconds = interval_seconds
        self.probe_timeout_seconds = probe_timeout_seconds
        self._records: dict[str, BackendHealth] = {}
        self._task: asyncio.Task[None] | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def snapshot(self) -> dict[str, BackendHealth]:
        return dict(self._records)

    async def check_all(self) -> dict[str, BackendHealth]:
        adapters = self.catalog.adapters()
        results = await asyncio.gather(*(self._probe(backend_id) for backend_id in adapters))
        for health in results:
            self._records[health.backend] = health
        return self.snapshot()

    def start(self) -> None:
        if self.running:
            return
        self._task = asyncio.create_task(self._run(), name="rag-router-health")

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await self.check_all()
            await asyncio.sleep(self.interval_seconds)

    async def _probe(self, backend_id: str) -> BackendHealth:
        adapter = self.catalog.adapter_for(backend_id)
        previous = self._records.get(backend_id)
        loop = asyncio.get_running_loop()
        started = loop.time()
        try:
            healthy = await asyncio.wait_for(adapter.ping(), timeout=self.probe_timeout_seconds)
        except asyncio.TimeoutError:
            healthy = False
        except Exception as exc:
            logger.warning("Health probe for %s raised: %s", backend_id, exc)
            healthy = False

        failures = 0 if healthy else (previous.consecutive_failures + 1 if previous else 1)
        if not healthy:
            logger.warning("Backend %s unhealthy (%s consecutive checks)", backend_id, failures)
        return BackendHealth(
            backend=backend_id,
            healthy=healthy,
            checked_at_utc=datetime.now(timezone.utc).isoformat(),
            latency_ms=(loop.time() - started) * 1000.0,
            consecutive_failures=failures,
        )
