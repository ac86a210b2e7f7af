"""Backend catalog: descriptors, task routing table and adapter handles."""

from __future__ import annotations

from collections.abc import Iterable, Mapping, Sequence
from typing import TYPE_CHECKING

from rag_router.types import BackendDescriptor, TaskType

if TYPE_CHECKING:
    from rag_router.routing.adapters import BackendAdapter

T = TaskType

DEFAULT_BACKENDS: tuple[BackendDescriptor, ...] = (
    BackendDescriptor(
        id="claude-sonnet-4",
        provider="anthropic",
        model_name="claude-sonnet-4-20250514",
        max_output_tokens=8192,
        context_window_tokens=200_000,
        cost_multiplier=1.0,
        rate_limit_per_minute=50,
        priority=1,
        capabilities=frozenset({T.CODE_GENERATION, T.REFACTORING, T.DEBUGGING, T.CODE_REVIEW, T.DOCUMENTATION}),
    ),
    BackendDescriptor(
        id="claude-opus-4",
        provider="anthropic",
        model_name="claude-opus-4-20250514",
        max_output_tokens=8192,
        context_window_tokens=200_000,
        cost_multiplier=3.0,
        rate_limit_per_minute=20,
        priority=3,
        capabilities=frozenset({T.COMPLEX_REASONING, T.CODE_GENERATION, T.REFACTORING}),
    ),
    BackendDescriptor(
        id="gpt-5",
        provider="openai",
        model_name="gpt-5",
        max_output_tokens=8192,
        context_window_tokens=128_000,
        cost_multiplier=1.5,
        rate_limit_per_minute=40,
        priority=2,
        capabilities=frozenset({T.REFACTORING, T.DOCUMENTATION, T.TRANSLATION, T.CODE_REVIEW}),
    ),
    BackendDescriptor(
        id="gpt-4-turbo",
        provider="openai",
        model_name="gpt-4-turbo-preview",
        max_output_tokens=4096,
        context_window_tokens=128_000,
        cost_multiplier=1.2,
        rate_limit_per_minute=60,
        priority=4,
        capabilities=frozenset({T.CODE_GENERATION, T.DEBUGGING, T.OPTIMIZATION}),
    ),
    BackendDescriptor(
        id="gemini-2.5-pro",
        provider="google",
        model_name="gemini-2.5-pro",
        max_output_tokens=8192,
        context_window_tokens=1_048_576,
        cost_multiplier=0.5,
        rate_limit_per_minute=30,
        priority=5,
        capabilities=frozenset({T.COMPLEX_REASONING, T.DOCUMENTATION, T.TRANSLATION}),
    ),
    BackendDescriptor(
        id="deepseek-v3",
        provider="deepseek",
        model_name="deepseek-chat",
        max_output_tokens=4096,
        context_window_tokens=64_000,
        cost_multiplier=0.3,
        rate_limit_per_minute=100,
        priority=6,
        capabilities=frozenset({T.TESTING, T.CODE_REVIEW, T.OPTIMIZATION}),
    ),
)

DEFAULT_TASK_ROUTES: dict[TaskType, tuple[str, ...]] = {
    T.CODE_GENERATION: ("claude-sonnet-4", "gpt-4-turbo", "claude-opus-4"),
    T.REFACTORING: ("gpt-5", "claude-sonnet-4", "claude-opus-4"),
    T.TESTING: ("deepseek-v3", "gpt-4-turbo", "claude-sonnet-4"),
    T.DEBUGGING: ("claude-sonnet-4", "gpt-4-turbo"),
    T.DOCUMENTATION: ("gpt-5", "gemini-2.5-pro", "claude-sonnet-4"),
    T.CODE_REVIEW: ("claude-sonnet-4", "deepseek-v3", "gpt-5"),
    T.COMPLEX_REASONING: ("claude-opus-4", "gemini-2.5-pro", "gpt-5"),
    T.TRANSLATION: ("gpt-5", "gemini-2.5-pro"),
    T.OPTIMIZATION: ("deepseek-v3", "gpt-4-turbo"),
}


class ModelCatalog:
    """Static backend metadata plus one adapter per backend.

    The router never branches on provider: it asks the catalog for the
    ordered candidate ids of a task and for the adapter of each id.
    """

    def __init__(
        self,
        backends: Iterable[BackendDescriptor] = DEFAULT_BACKENDS,
        task_routes: Mapping[TaskType, Sequence[str]] | None = None,
    ) -> None:
        self._backends: dict[str, BackendDescriptor] = {}
        for backend in backends:
            if backend.id in self._backends:
                raise ValueError(f"Backend already registered: {backend.id}")
            self._backends[backend.id] = backend

        routes = DEFAULT_TASK_ROUTES if task_routes is None else task_routes
        self._routes: dict[TaskType, tuple[str, ...]] = {}
        for task, backend_ids in routes.items():
            task = TaskType(task)
            for backend_id in backend_ids:
                if backend_id not in self._backends:
                    raise KeyError(f"Unknown backend in route for {task.value}: {backend_id}")
            self._routes[task] = tuple(backend_ids)
        self._adapters: dict[str, BackendAdapter] = {}

    def __contains__(self, backend_id: object) -> bool:
        return backend_id in self._backends

    @property
    def backends(self) -> list[BackendDescriptor]:
        return list(self._backends.values())

    def get(self, backend_id: str) -> BackendDescriptor:
        backend = self._backends.get(backend_id)
        if backend is None:
            raise KeyError(f"Unknown backend: {backend_id}")
        return backend

    def task_to_backends(self, task: TaskType, preferred: str | None = None) -> list[str]:
        """Ordered candidate backend ids for `task`.

        A preferred backend goes first; the rest keep their configured order.
        Tasks without an explicit route fall back to every backend declaring
        the capability, by priority.
        """
        task = TaskType(task)
        ordered = list(self._routes.get(task, ()))
        if not ordered:
            capable = [backend for backend in self._backends.values() if task in backend.capabilities]
            ordered = [backend.id for backend in sorted(capable, key=lambda item: item.priority)]

        if preferred is None:
            return ordered
        if preferred not in self._backends:
            raise KeyError(f"Unknown backend: {preferred}")
        return [preferred, *(backend_id for backend_id in ordered if backend_id != preferred)]

    def register_adapter(self, backend_id: str, adapter: BackendAdapter) -> None:
        if backend_id not in self._backends:
            raise KeyError(f"Unknown backend: {backend_id}")
        if backend_id in self._adapters:
            raise ValueError(f"Adapter already registered: {backend_id}")
        self._adapters[backend_id] = adapter

    def adapter_for(self, backend_id: str) -> BackendAdapter:
        adapter = self._adapters.get(backend_id)
        if adapter is None:
            raise KeyError(f"No adapter registered for backend: {backend_id}")
        return adapter

    def has_adapter(self, backend_id: str) -> bool:
        return backend_id in self._adapters

    def adapters(self) -> dict[str, BackendAdapter]:
        return dict(self._adapters)
