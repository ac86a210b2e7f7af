"""Backend adapters: one uniform call contract per generation backend."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import BaseMessage, HumanMessage, SystemMessage

from rag_router.errors import BackendError, BackendRejected, BackendTimeout
from rag_router.routing.models import AdapterResult
from rag_router.tokens import estimate_tokens

logger = logging.getLogger(__name__)

# Provider statuses that mean "this request will not succeed here".
_REJECT_STATUSES = frozenset({400, 401, 403, 404, 413, 422, 429})


class BackendAdapter(ABC):
    """Contract every backend implements; the router never sees provider types."""

    backend_id: str

    @abstractmethod
    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AdapterResult:
        """Generate a completion or raise a `BackendError`."""

    async def ping(self) -> bool:
        """Cheap liveness probe used by the health monitor."""
        return True


class ChatModelAdapter(BackendAdapter):
    """Bridges a LangChain chat model (e.g. `ChatOpenAI`) to the adapter contract.

    Provider exceptions are translated: HTTP-style rejections (auth, quota,
    invalid request) become `BackendRejected`, timeouts `BackendTimeout`,
    anything else `BackendError`.
    """

    def __init__(self, backend_id: str, chat_model: BaseChatModel) -> None:
        self.backend_id = backend_id
        self.chat_model = chat_model

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AdapterResult:
        messages: list[BaseMessage] = []
        if system_prompt:
            messages.append(SystemMessage(content=system_prompt))
        messages.append(HumanMessage(content=prompt))

        params: dict[str, Any] = {}
        if max_tokens is not None:
            params["max_tokens"] = max_tokens
        if temperature is not None:
            params["temperature"] = temperature

        try:
            message = await self.chat_model.ainvoke(messages, **params)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            raise _translate_error(self.backend_id, exc) from exc

        content = _message_text(message.content)
        usage = getattr(message, "usage_metadata", None) or {}
        input_tokens = usage.get("input_tokens") or estimate_tokens((system_prompt or "") + prompt)
        output_tokens = usage.get("output_tokens") or estimate_tokens(content)
        return AdapterResult(content=content, input_tokens=int(input_tokens), output_tokens=int(output_tokens))

    async def ping(self) -> bool:
        try:
            await self.chat_model.ainvoke([HumanMessage(content="ping")], max_tokens=1)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.warning("Health probe failed for %s: %s", self.backend_id, exc)
            return False
        return True


class DeterministicAdapter(BackendAdapter):
    """Offline adapter that answers without any provider call.

    The reply echoes the tail of the prompt so responses stay distinguishable
    across requests; used when no provider credentials are configured.
    """

    def __init__(self, backend_id: str, *, preview_chars: int = 200) -> None:
        self.backend_id = backend_id
        self.preview_chars = preview_chars

    async def invoke(
        self,
        prompt: str,
        *,
        system_prompt: str | None = None,
        max_tokens: int | None = None,
        temperature: float | None = None,
    ) -> AdapterResult:
        preview = prompt.strip()[-self.preview_chars :]
        content = f"[{self.backend_id} offline] {preview}"
        if max_tokens is not None:
            content = content[: max_tokens * 4]
        return AdapterResult(
            content=content,
            input_tokens=estimate_tokens((system_prompt or "") + prompt),
            output_tokens=estimate_tokens(content),
        )


def _message_text(content: Any) -> str:
    if isinstance(content, list):
        parts: list[str] = []
        for item in content:
            if isinstance(item, dict) and "text" in item:
                parts.append(str(item["text"]))
            elif isinstance(item, str):
                parts.append(item)
        return "".join(parts).strip()
    return str(content)


def _status_code(exc: BaseException) -> int | None:
    status = getattr(exc, "status_code", None)
    if status is None:
        response = getattr(exc, "response", None)
        status = getattr(response, "status_code", None)
    return status if isinstance(status, int) else None


def _translate_error(backend_id: str, exc: Exception) -> BackendError:
    if isinstance(exc, BackendError):
        return exc
    if isinstance(exc, TimeoutError) or "timeout" in type(exc).__name__.lower():
        return BackendTimeout(backend_id, str(exc) or type(exc).__name__)
    status = _status_code(exc)
    if status in _REJECT_STATUSES:
        return BackendRejected(backend_id, f"HTTP {status}: {exc}")
    return BackendError(backend_id, str(exc) or type(exc).__name__)
