"""Error taxonomy for retrieval and generation routing."""

from __future__ import annotations


class RouterError(Exception):
    """Base class for every error raised by rag_router."""


class RequestValidationError(RouterError):
    """The inbound request is malformed or names an unknown task/backend."""


class RetrievalError(RouterError):
    """Embedding or index lookup failed while building context."""


class BackendError(RouterError):
    """A single backend attempt failed."""

    def __init__(self, backend: str, message: str) -> None:
        super().__init__(f"{backend}: {message}")
        self.backend = backend
        self.message = message


class BackendTimeout(BackendError):
    """The backend did not answer within the attempt timeout."""


class BackendRejected(BackendError):
    """The backend refused the call (quota, auth or invalid request)."""


class RequestCancelled(RouterError):
    """The caller cancelled the request; no further fallbacks are attempted."""


class AllBackendsExhausted(RouterError):
    """Every candidate backend was skipped or failed.

    This is the only error a caller needs to branch on for "generation
    failed"; per-backend errors are folded into `last_error`.
    """

    def __init__(self, attempts: int, last_error: BaseException | None) -> None:
        detail = f"{last_error}" if last_error is not None else "no backend was available"
        super().__init__(f"All backends failed after {attempts} attempt(s). Last error: {detail}")
        self.attempts = attempts
        self.last_error = last_error
