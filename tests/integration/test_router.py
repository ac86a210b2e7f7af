import asyncio
import logging

import pytest

from rag_router.config import RouterConfig
from rag_router.errors import (
    AllBackendsExhausted,
    BackendError,
    BackendTimeout,
    RequestCancelled,
    RequestValidationError,
    RetrievalError,
)
from rag_router.obs.usage import CostModel, InMemoryUsageRecorder
from rag_router.routing.adapters import BackendAdapter
from rag_router.routing.catalog import ModelCatalog
from rag_router.routing.models import AdapterResult, RouterRequest
from rag_router.routing.router import ResilientRouter
from rag_router.routing.state import CircuitStatus, ManualClock
from rag_router.types import BackendDescriptor, Chunk, ChunkMetadata, RetrievalResult, TaskType


class _ScriptedAdapter(BackendAdapter):
    """Adapter whose behaviour ("ok", "fail" or "hang") can be switched mid-test."""

    def __init__(self, backend_id: str, behaviour: str = "ok", delay: float = 0.0) -> None:
        self.backend_id = backend_id
        self.behaviour = behaviour
        self.delay = delay
        self.calls: list[str] = []

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AdapterResult:
        self.calls.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.behaviour == "fail":
            raise BackendError(self.backend_id, "upstream returned 500")
        if self.behaviour == "hang":
            await asyncio.sleep(30)
        return AdapterResult(content=f"{self.backend_id} answer", input_tokens=1000, output_tokens=1000)


class _StaticRetriever:
    def __init__(self, chunks: list[Chunk]) -> None:
        self.chunks = chunks
        self.queries: list[str] = []

    async def retrieve(self, query: str, options: object = None) -> RetrievalResult:
        self.queries.append(query)
        return RetrievalResult(chunks=self.chunks, total_estimated_tokens=sum(c.token_count for c in self.chunks))


class _FailingRetriever:
    async def retrieve(self, query: str, options: object = None) -> RetrievalResult:
        raise RetrievalError("vector index unavailable")


class _FlakyRecorder(InMemoryUsageRecorder):
    """Usage ledger whose first `failures` writes raise."""

    def __init__(self, failures: int = 1) -> None:
        super().__init__()
        self.failures = failures

    async def record(self, **kwargs: object) -> None:
        if self.failures > 0:
            self.failures -= 1
            raise RuntimeError("usage ledger offline")
        await super().record(**kwargs)


def _backend(
    backend_id: str,
    priority: int,
    *,
    rate_limit: int = 100,
    context_window: int = 8000,
    multiplier: float = 1.0,
) -> BackendDescriptor:
    return BackendDescriptor(
        id=backend_id,
        provider="local",
        model_name=backend_id,
        max_output_tokens=1000,
        context_window_tokens=context_window,
        cost_multiplier=multiplier,
        rate_limit_per_minute=rate_limit,
        priority=priority,
    )


def _router(
    *backends: BackendDescriptor,
    config: RouterConfig | None = None,
    clock: ManualClock | None = None,
    **kwargs: object,
) -> tuple[ResilientRouter, dict[str, _ScriptedAdapter]]:
    backends = backends or (_backend("primary", 1), _backend("secondary", 2), _backend("tertiary", 3))
    catalog = ModelCatalog(
        backends=backends,
        task_routes={TaskType.CODE_GENERATION: tuple(backend.id for backend in backends)},
    )
    adapters = {backend.id: _ScriptedAdapter(backend.id) for backend in backends}
    for backend_id, adapter in adapters.items():
        catalog.register_adapter(backend_id, adapter)
    router = ResilientRouter(catalog, config=config, clock=clock or ManualClock(), **kwargs)
    return router, adapters


def _request(prompt: str = "write a binary search", **overrides: object) -> RouterRequest:
    fields = {
        "task_type": TaskType.CODE_GENERATION,
        "prompt": prompt,
        "user_id": "u1",
        "session_id": "s1",
    }
    fields.update(overrides)
    return RouterRequest(**fields)


@pytest.mark.asyncio
async def test_first_healthy_backend_serves_and_is_billed_once() -> None:
    recorder = InMemoryUsageRecorder()
    primary = _backend("primary", 1, multiplier=2.0)
    router, adapters = _router(primary, _backend("secondary", 2), usage_recorder=recorder)

    response = await router.route(_request())

    assert response.model == "primary"
    assert response.content == "primary answer"
    assert response.attempts == 1
    assert response.fallback_used is False
    assert response.from_cache is False
    assert response.cost == pytest.approx(CostModel().estimate_cost(1000, 1000, 2.0))
    assert adapters["secondary"].calls == []
    assert [record.backend for record in recorder.records] == ["primary"]
    assert recorder.records[0].was_error is False


@pytest.mark.asyncio
async def test_failed_backend_falls_back_without_billing_the_failure() -> None:
    recorder = InMemoryUsageRecorder()
    router, adapters = _router(usage_recorder=recorder)
    adapters["primary"].behaviour = "fail"

    response = await router.route(_request())

    assert response.model == "secondary"
    assert response.fallback_used is True
    assert response.attempts == 2
    assert len(recorder.records) == 1
    assert recorder.records[0].backend == "secondary"
    assert router.state.breaker.state("primary").consecutive_failures == 1
    assert adapters["tertiary"].calls == []


@pytest.mark.asyncio
async def test_all_failures_raise_single_exhausted_error() -> None:
    recorder = InMemoryUsageRecorder()
    router, adapters = _router(usage_recorder=recorder)
    for adapter in adapters.values():
        adapter.behaviour = "fail"

    with pytest.raises(AllBackendsExhausted) as excinfo:
        await router.route(_request())

    assert excinfo.value.attempts == 3
    assert isinstance(excinfo.value.last_error, BackendError)
    assert excinfo.value.last_error.backend == "tertiary"
    assert recorder.records == []
    assert router.snapshot()["backends"]["secondary"]["failures"] == 1


@pytest.mark.asyncio
async def test_cache_hit_skips_backends_and_usage() -> None:
    recorder = InMemoryUsageRecorder()
    router, adapters = _router(usage_recorder=recorder)

    first = await router.route(_request())
    second = await router.route(_request(user_id="u2", session_id="s2"))

    assert first.from_cache is False
    assert second.from_cache is True
    assert second.content == first.content
    assert len(adapters["primary"].calls) == 1
    assert len(recorder.records) == 1


@pytest.mark.asyncio
async def test_cache_disabled_calls_backend_every_time() -> None:
    router, adapters = _router(config=RouterConfig(cache_enabled=False))

    await router.route(_request())
    await router.route(_request())

    assert len(adapters["primary"].calls) == 2
    assert router.snapshot()["cache_size"] == 0


@pytest.mark.asyncio
async def test_cache_expires_after_ttl() -> None:
    clock = ManualClock()
    router, adapters = _router(config=RouterConfig(cache_ttl_seconds=10), clock=clock)

    await router.route(_request())
    clock.advance(10)
    response = await router.route(_request())

    assert response.from_cache is False
    assert len(adapters["primary"].calls) == 2


@pytest.mark.asyncio
async def test_circuit_opens_after_five_failures_then_probes_after_cooldown() -> None:
    clock = ManualClock()
    router, adapters = _router(config=RouterConfig(cache_enabled=False), clock=clock)
    adapters["primary"].behaviour = "fail"

    for _ in range(5):
        response = await router.route(_request())
        assert response.model == "secondary"

    assert router.state.breaker.status("primary") is CircuitStatus.OPEN
    response = await router.route(_request())
    assert response.model == "secondary"
    assert response.attempts == 2
    assert len(adapters["primary"].calls) == 5
    assert router.snapshot()["backends"]["primary"]["skipped"] == 1

    clock.advance(60)
    adapters["primary"].behaviour = "ok"
    response = await router.route(_request())

    assert response.model == "primary"
    assert router.state.breaker.status("primary") is CircuitStatus.CLOSED
    assert router.state.breaker.state("primary").consecutive_failures == 0


@pytest.mark.asyncio
async def test_full_rate_window_skips_to_next_backend() -> None:
    clock = ManualClock()
    router, adapters = _router(
        _backend("primary", 1, rate_limit=2),
        _backend("secondary", 2),
        config=RouterConfig(cache_enabled=False),
        clock=clock,
    )

    models = [(await router.route(_request())).model for _ in range(3)]

    assert models == ["primary", "primary", "secondary"]
    assert len(adapters["primary"].calls) == 2
    assert router.state.breaker.status("primary") is CircuitStatus.CLOSED

    clock.advance(60)
    assert (await router.route(_request())).model == "primary"


@pytest.mark.asyncio
async def test_backend_whose_context_window_is_too_small_is_skipped() -> None:
    router, adapters = _router(_backend("small", 1, context_window=1200), _backend("large", 2))

    response = await router.route(_request("x" * 1000))

    assert response.model == "large"
    assert response.attempts == 2
    assert adapters["small"].calls == []


@pytest.mark.asyncio
async def test_backend_without_adapter_is_skipped() -> None:
    backends = (_backend("unwired", 1), _backend("wired", 2))
    catalog = ModelCatalog(backends=backends, task_routes={TaskType.CODE_GENERATION: ("unwired", "wired")})
    catalog.register_adapter("wired", _ScriptedAdapter("wired"))
    router = ResilientRouter(catalog, clock=ManualClock())

    response = await router.route(_request())

    assert response.model == "wired"
    assert response.fallback_used is True
    assert router.snapshot()["backends"]["unwired"]["adapter_registered"] is False


@pytest.mark.asyncio
async def test_slow_backend_times_out_and_falls_back() -> None:
    router, adapters = _router(config=RouterConfig(attempt_timeout_seconds=0.05))
    adapters["primary"].behaviour = "hang"

    response = await router.route(_request())

    assert response.model == "secondary"
    assert router.state.breaker.state("primary").consecutive_failures == 1
    assert "no response within" in router.snapshot()["backends"]["primary"]["last_error"]


@pytest.mark.asyncio
async def test_timeout_on_every_backend_reports_timeout_as_last_error() -> None:
    router, adapters = _router(config=RouterConfig(attempt_timeout_seconds=0.02))
    for adapter in adapters.values():
        adapter.behaviour = "hang"

    with pytest.raises(AllBackendsExhausted) as excinfo:
        await router.route(_request())

    assert isinstance(excinfo.value.last_error, BackendTimeout)


@pytest.mark.asyncio
async def test_cancel_event_stops_routing_without_touching_circuit() -> None:
    recorder = InMemoryUsageRecorder()
    router, adapters = _router(usage_recorder=recorder)
    adapters["primary"].behaviour = "hang"
    cancel_event = asyncio.Event()

    task = asyncio.create_task(router.route(_request(), cancel_event=cancel_event))
    while not adapters["primary"].calls:
        await asyncio.sleep(0)
    cancel_event.set()

    with pytest.raises(RequestCancelled):
        await task

    circuit = router.state.breaker.state("primary")
    assert circuit.consecutive_failures == 0
    assert circuit.probe_in_flight is False
    assert router.state.limiter.window("primary").count == 0
    assert adapters["secondary"].calls == []
    assert recorder.records == []


@pytest.mark.asyncio
async def test_already_cancelled_request_never_calls_a_backend() -> None:
    router, adapters = _router()
    cancel_event = asyncio.Event()
    cancel_event.set()

    with pytest.raises(RequestCancelled):
        await router.route(_request(), cancel_event=cancel_event)

    assert all(adapter.calls == [] for adapter in adapters.values())


@pytest.mark.asyncio
async def test_task_cancellation_propagates_and_refunds_rate_slot() -> None:
    router, adapters = _router()
    adapters["primary"].behaviour = "hang"

    task = asyncio.create_task(router.route(_request()))
    while not adapters["primary"].calls:
        await asyncio.sleep(0)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert router.state.limiter.window("primary").count == 0
    assert router.state.breaker.state("primary").consecutive_failures == 0
    assert adapters["secondary"].calls == []


@pytest.mark.asyncio
async def test_retrieved_context_is_prepended_to_prompt() -> None:
    chunk = Chunk(
        id="src/auth.py#chunk-0000",
        content="def login(user):\n    return issue_token(user)",
        metadata=ChunkMetadata(
            source_path="src/auth.py",
            language="python",
            start_line=0,
            end_line=1,
            unit_type="function",
        ),
    )
    retriever = _StaticRetriever([chunk])
    router, adapters = _router(retriever=retriever)

    response = await router.route(_request("add logout", context_query="login token"))

    sent = adapters["primary"].calls[0]
    assert retriever.queries == ["login token"]
    assert "Source: src/auth.py (lines 1-2, function)" in sent
    assert "def login(user):" in sent
    assert sent.endswith("Task:\nadd logout")
    assert response.context_chunk_ids == ["src/auth.py#chunk-0000"]


@pytest.mark.asyncio
async def test_retrieval_failure_propagates_by_default() -> None:
    router, adapters = _router(retriever=_FailingRetriever())

    with pytest.raises(RetrievalError):
        await router.route(_request(context_query="anything"))

    assert adapters["primary"].calls == []


@pytest.mark.asyncio
async def test_retrieval_failure_degrades_when_configured() -> None:
    router, adapters = _router(
        retriever=_FailingRetriever(),
        config=RouterConfig(degrade_on_retrieval_error=True),
    )

    response = await router.route(_request("plain prompt", context_query="anything"))

    assert adapters["primary"].calls == ["plain prompt"]
    assert response.context_chunk_ids == []


@pytest.mark.asyncio
async def test_usage_recorder_failure_is_not_retried_on_another_backend() -> None:
    recorder = _FlakyRecorder(failures=1)
    router, adapters = _router(usage_recorder=recorder)

    with pytest.raises(RuntimeError, match="usage ledger offline"):
        await router.route(_request())

    assert adapters["secondary"].calls == []
    assert router.state.breaker.state("primary").consecutive_failures == 0
    assert router.snapshot()["cache_size"] == 0

    retry = await router.route(_request())

    assert retry.from_cache is False
    assert len(adapters["primary"].calls) == 2
    assert [record.backend for record in recorder.records] == ["primary"]


@pytest.mark.asyncio
async def test_invalid_requests_are_rejected_before_any_attempt() -> None:
    router, adapters = _router()

    with pytest.raises(RequestValidationError):
        await router.route({"task_type": "code-generation", "prompt": "", "user_id": "u", "session_id": "s"})
    with pytest.raises(RequestValidationError):
        await router.route({"task_type": "poetry", "prompt": "hi", "user_id": "u", "session_id": "s"})
    with pytest.raises(RequestValidationError):
        await router.route(_request(preferred_model="gpt-2"))
    with pytest.raises(RequestValidationError):
        await router.route(_request(task_type=TaskType.TESTING))

    assert all(adapter.calls == [] for adapter in adapters.values())


@pytest.mark.asyncio
async def test_preferred_model_is_tried_first() -> None:
    router, adapters = _router()

    response = await router.route(
        {
            "task_type": "code-generation",
            "prompt": "refactor this",
            "user_id": "u1",
            "session_id": "s1",
            "preferred_model": "tertiary",
        }
    )

    assert response.model == "tertiary"
    assert response.attempts == 1
    assert adapters["primary"].calls == []


@pytest.mark.asyncio
async def test_reset_clears_state_and_counters() -> None:
    router, adapters = _router(config=RouterConfig(failure_threshold=1))
    adapters["primary"].behaviour = "fail"
    await router.route(_request())
    assert router.snapshot()["backends"]["primary"]["circuit"] == "open"

    router.reset()
    snapshot = router.snapshot()

    assert snapshot["backends"]["primary"]["circuit"] == "closed"
    assert snapshot["backends"]["primary"]["failures"] == 0
    assert snapshot["cache_size"] == 0


@pytest.mark.asyncio
async def test_health_monitor_runs_inside_router_context() -> None:
    router, _ = _router(config=RouterConfig(health_check_interval_seconds=0.01))

    async with router:
        assert router.health.running
        while len(router.health.snapshot()) < 3:
            await asyncio.sleep(0.01)

    assert not router.health.running
    assert all(health.healthy for health in router.health.snapshot().values())


class _CollectingHandler(logging.Handler):
    def __init__(self) -> None:
        super().__init__(level=logging.ERROR)
        self.messages: list[str] = []

    def emit(self, record: logging.LogRecord) -> None:
        self.messages.append(record.getMessage())


@pytest.mark.asyncio
async def test_concurrent_requests_never_overrun_rate_limit() -> None:
    router, adapters = _router(
        _backend("primary", 1, rate_limit=3),
        _backend("secondary", 2),
        config=RouterConfig(cache_enabled=False),
    )
    adapters["primary"].delay = 0.01
    adapters["secondary"].delay = 0.01

    responses = await asyncio.gather(*(router.route(_request(f"task {i}")) for i in range(10)))

    models = [response.model for response in responses]
    assert models.count("primary") == 3
    assert models.count("secondary") == 7
    assert len(adapters["primary"].calls) == 3
    assert router.state.limiter.window("primary").count == 3


@pytest.mark.asyncio
async def test_concurrent_failures_open_circuit_once_and_admit_one_trial_call() -> None:
    clock = ManualClock()
    router, adapters = _router(config=RouterConfig(cache_enabled=False), clock=clock)
    adapters["primary"].behaviour = "fail"
    adapters["primary"].delay = 0.01
    handler = _CollectingHandler()
    state_logger = logging.getLogger("rag_router.routing.state")
    state_logger.addHandler(handler)
    try:
        responses = await asyncio.gather(*(router.route(_request(f"task {i}")) for i in range(10)))
    finally:
        state_logger.removeHandler(handler)

    assert {response.model for response in responses} == {"secondary"}
    assert len(adapters["primary"].calls) == 10
    assert [message for message in handler.messages if message.startswith("Circuit opened")] == [
        "Circuit opened for primary after 5 consecutive failures"
    ]
    circuit = router.state.breaker.state("primary")
    assert circuit.consecutive_failures == 10
    assert circuit.open_until == 60

    clock.advance(60)
    adapters["primary"].behaviour = "ok"
    responses = await asyncio.gather(*(router.route(_request(f"retry {i}")) for i in range(5)))

    assert [response.model for response in responses].count("primary") == 1
    assert len(adapters["primary"].calls) == 11
    assert router.state.breaker.status("primary") is CircuitStatus.CLOSED


@pytest.mark.asyncio
async def test_duration_covers_failed_fallback_attempts() -> None:
    router, adapters = _router()
    adapters["primary"].behaviour = "fail"
    adapters["primary"].delay = 0.05

    response = await router.route(_request())

    assert response.model == "secondary"
    assert response.duration_ms >= 40.0
