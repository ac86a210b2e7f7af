"""Resilient generation router with fallback, circuit breaking and caching."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError

from rag_router.config import RetrievalOptions, RouterConfig
from rag_router.errors import (
    AllBackendsExhausted,
    BackendTimeout,
    RequestCancelled,
    RequestValidationError,
    RetrievalError,
)
from rag_router.obs.usage import CostModel, InMemoryUsageRecorder, Timer, UsageRecorder
from rag_router.retrieval.retriever import HybridRetriever
from rag_router.routing.adapters import BackendAdapter
from rag_router.routing.catalog import ModelCatalog
from rag_router.routing.context import compose_prompt
from rag_router.routing.health import HealthMonitor
from rag_router.routing.models import AdapterResult, RouterRequest, RouterResponse
from rag_router.routing.state import Clock, RoutingState
from rag_router.tokens import estimate_tokens

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class BackendStats:
    successes: int = 0
    failures: int = 0
    skipped: int = 0
    last_error: str | None = None


class ResilientRouter:
    """Routes generation requests across interchangeable, unreliable backends.

    Candidates for a task are tried strictly one after another. A candidate
    is skipped when it has no adapter, cannot fit the prompt, has an open
    circuit or a full rate window. The first success is billed once
    through the usage recorder, then cached and returned; failed attempts
    are never billed. When every candidate is skipped or fails the caller
    gets a single `AllBackendsExhausted`.
    """

    def __init__(
        self,
        catalog: ModelCatalog,
        *,
        retriever: HybridRetriever | None = None,
        usage_recorder: UsageRecorder | None = None,
        config: RouterConfig | None = None,
        clock: Clock | None = None,
        cost_model: CostModel | None = None,
        retrieval_options: RetrievalOptions | None = None,
    ) -> None:
        self.catalog = catalog
        self.retriever = retriever
        self.usage_recorder = usage_recorder if usage_recorder is not None else InMemoryUsageRecorder()
        self.config = config or RouterConfig()
        self.state = RoutingState(self.config, clock)
        self.cost_model = cost_model or CostModel()
        self.retrieval_options = retrieval_options
        self.health = HealthMonitor(
            catalog,
            interval_seconds=self.config.health_check_interval_seconds,
            probe_timeout_seconds=self.config.health_probe_timeout_seconds,
        )
        self._stats: dict[str, BackendStats] = {}

    async def __aenter__(self) -> "ResilientRouter":
        self.start()
        return self

    async def __aexit__(self, exc_type: object, exc: object, tb: object) -> None:
        await self.close()

    def start(self) -> None:
        self.health.start()

    async def close(self) -> None:
        await self.health.stop()

    async def route(
        self,
        request: RouterRequest | Mapping[str, Any],
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> RouterResponse:
        timer = Timer().start()
        request = self._validate(request)
        candidates = self.catalog.task_to_backends(request.task_type, request.preferred_model)
        if not candidates:
            raise RequestValidationError(f"No backend serves task type: {request.task_type.value}")

        cache_key = self.state.cache.key_for(request.task_type.value, request.prompt)
        if self.config.cache_enabled:
            cached = self.state.cache.get(cache_key)
            if cached is not None:
                logger.debug("Cache hit for %s request (model=%s)", request.task_type.value, cached.model)
                return cached

        _raise_if_cancelled(cancel_event)
        prompt, chunk_ids = await self._build_prompt(request)
        prompt_tokens = estimate_tokens((request.system_prompt or "") + prompt)

        last_error: BaseException | None = None
        for index, backend_id in enumerate(candidates):
            _raise_if_cancelled(cancel_event)
            stats = self._stats.setdefault(backend_id, BackendStats())
            descriptor = self.catalog.get(backend_id)

            if not self.catalog.has_adapter(backend_id):
                stats.skipped += 1
                logger.debug("Skipping %s: no adapter registered", backend_id)
                continue

            output_budget = min(request.max_tokens or descriptor.max_output_tokens, descriptor.max_output_tokens)
            if prompt_tokens + output_budget > descriptor.context_window_tokens:
                stats.skipped += 1
                logger.debug(
                    "Skipping %s: %s prompt + %s output tokens exceed context window %s",
                    backend_id,
                    prompt_tokens,
                    output_budget,
                    descriptor.context_window_tokens,
                )
                continue

            if not self.state.breaker.try_acquire(backend_id):
                stats.skipped += 1
                logger.debug("Skipping %s: circuit open", backend_id)
                continue

            if not self.state.limiter.try_acquire(backend_id, descriptor.rate_limit_per_minute):
                self.state.breaker.release(backend_id)
                stats.skipped += 1
                logger.warning("Rate limit reached for %s, trying next backend", backend_id)
                continue

            adapter = self.catalog.adapter_for(backend_id)
            try:
                result = await self._invoke(
                    adapter,
                    backend_id,
                    prompt,
                    request,
                    output_budget,
                    cancel_event,
                )
            except (asyncio.CancelledError, RequestCancelled):
                self.state.breaker.release(backend_id)
                self.state.limiter.release(backend_id)
                logger.info("Request cancelled during attempt on %s", backend_id)
                raise
            except Exception as exc:
                self.state.breaker.record_failure(backend_id)
                stats.failures += 1
                stats.last_error = str(exc)
                last_error = exc
                logger.warning("Backend %s failed (%s): %s", backend_id, type(exc).__name__, exc)
                continue

            self.state.breaker.record_success(backend_id)
            stats.successes += 1
            response = RouterResponse(
                content=result.content,
                model=backend_id,
                input_tokens=result.input_tokens,
                output_tokens=result.output_tokens,
                cost=self.cost_model.estimate_cost(
                    result.input_tokens, result.output_tokens, descriptor.cost_multiplier
                ),
                duration_ms=timer.lap(),
                from_cache=False,
                fallback_used=index > 0,
                attempts=index + 1,
                context_chunk_ids=chunk_ids,
            )
            await self.usage_recorder.record(
                user_id=request.user_id,
                session_id=request.session_id,
                backend=backend_id,
                input_tokens=response.input_tokens,
                output_tokens=response.output_tokens,
                cost=response.cost,
                was_error=False,
                duration_ms=response.duration_ms,
            )
            # Only billed responses may be replayed from the cache.
            if self.config.cache_enabled:
                self.state.cache.set(cache_key, response)
                logger.debug("Cached response from %s", backend_id)
            logger.info(
                "Routed %s request to %s in %.1f ms (attempts=%s, cost=%.6f)",
                request.task_type.value,
                backend_id,
                response.duration_ms,
                response.attempts,
                response.cost,
            )
            return response

        logger.error(
            "All %s candidate backends exhausted for %s request",
            len(candidates),
            request.task_type.value,
        )
        raise AllBackendsExhausted(attempts=len(candidates), last_error=last_error)

    def snapshot(self) -> dict[str, Any]:
        """Per-backend counters and live resilience state."""
        backends: dict[str, Any] = {}
        for descriptor in self.catalog.backends:
            circuit = self.state.breaker.state(descriptor.id)
            window = self.state.limiter.window(descriptor.id)
            stats = self._stats.get(descriptor.id, BackendStats())
            backends[descriptor.id] = {
                "provider": descriptor.provider,
                "adapter_registered": self.catalog.has_adapter(descriptor.id),
                "circuit": self.state.breaker.status(descriptor.id).value,
                "consecutive_failures": circuit.consecutive_failures,
                "rate_window_count": window.count if window is not None else 0,
                "rate_limit_per_minute": descriptor.rate_limit_per_minute,
                "successes": stats.successes,
                "failures": stats.failures,
                "skipped": stats.skipped,
                "last_error": stats.last_error,
            }
        return {"backends": backends, "cache_size": len(self.state.cache)}

    def reset(self) -> None:
        """Clear circuits, rate windows, cache and counters."""
        self.state.reset()
        self._stats.clear()

    def _validate(self, request: RouterRequest | Mapping[str, Any]) -> RouterRequest:
        if not isinstance(request, RouterRequest):
            try:
                request = RouterRequest.model_validate(dict(request))
            except ValidationError as exc:
                raise RequestValidationError(str(exc)) from exc
        if request.preferred_model is not None and request.preferred_model not in self.catalog:
            raise RequestValidationError(f"Unknown preferred model: {request.preferred_model}")
        return request

    async def _build_prompt(self, request: RouterRequest) -> tuple[str, list[str]]:
        if not request.context_query or self.retriever is None:
            return request.prompt, []
        try:
            result = await self.retriever.retrieve(request.context_query, self.retrieval_options)
        except RetrievalError as exc:
            if not self.config.degrade_on_retrieval_error:
                raise
            logger.warning("Retrieval failed, generating without context: %s", exc)
            return request.prompt, []
        return compose_prompt(request.prompt, result.chunks), result.chunk_ids

    async def _invoke(
        self,
        adapter: BackendAdapter,
        backend_id: str,
        prompt: str,
        request: RouterRequest,
        max_tokens: int,
        cancel_event: asyncio.Event | None,
    ) -> AdapterResult:
        call = asyncio.ensure_future(
            adapter.invoke(
                prompt,
                system_prompt=request.system_prompt,
                max_tokens=max_tokens,
                temperature=request.temperature,
            )
        )
        waiters: set[asyncio.Future[Any]] = {call}
        cancel_wait: asyncio.Future[Any] | None = None
        if cancel_event is not None:
            cancel_wait = asyncio.ensure_future(cancel_event.wait())
            waiters.add(cancel_wait)

        try:
            done, _ = await asyncio.wait(
                waiters,
                timeout=self.config.attempt_timeout_seconds,
                return_when=asyncio.FIRST_COMPLETED,
            )
        except asyncio.CancelledError:
            await _discard(call, cancel_wait)
            raise

        if call in done:
            await _discard(cancel_wait)
            return call.result()

        await _discard(call, cancel_wait)
        if cancel_wait is not None and cancel_wait in done:
            raise RequestCancelled(f"Request cancelled while waiting on {backend_id}")
        raise BackendTimeout(backend_id, f"no response within {self.config.attempt_timeout_seconds}s")


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise RequestCancelled("Request cancelled by caller")


async def _discard(*futures: asyncio.Future[Any] | None) -> None:
    pending = [future for future in futures if future is not None]
    for future in pending:
        if not future.done():
            future.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)
