"""Request/response models for generation routing."""

from __future__ import annotations

from dataclasses import dataclass, field

from pydantic import BaseModel, ConfigDict, Field

from rag_router.types import TaskType


class RouterRequest(BaseModel):
    """Validated generation request."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    task_type: TaskType
    prompt: str = Field(min_length=1)
    system_prompt: str | None = None
    max_tokens: int | None = Field(default=None, ge=1)
    temperature: float | None = Field(default=None, ge=0.0, le=2.0)
    user_id: str = Field(min_length=1)
    session_id: str = Field(min_length=1)
    preferred_model: str | None = None
    context_query: str | None = None


@dataclass(slots=True)
class RouterResponse:
    content: str
    model: str
    input_tokens: int
    output_tokens: int
    cost: float
    duration_ms: float
    from_cache: bool = False
    fallback_used: bool = False
    attempts: int = 1
    context_chunk_ids: list[str] = field(default_factory=list)


@dataclass(frozen=True, slots=True)
class AdapterResult:
    """What a backend adapter returns for one successful call."""

    content: str
    input_tokens: int
    output_tokens: int
