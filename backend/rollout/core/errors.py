from __future__ import annotations

from typing import Any


class RolloutError(RuntimeError):
    """Base class for errors raised by the rollout core.

    Each subclass carries the HTTP status and the stable error code rendered by
    the API exception handlers.
    """

    status_code: int = 500
    code: str = "rollout_error"

    def __init__(self, detail: Any = None) -> None:
        self.detail = detail if detail is not None else self.__class__.__name__
        super().__init__(str(self.detail))


class ValidationError(RolloutError):
    """Missing or malformed input; raised before any state is touched."""

    status_code = 400
    code = "validation_error"


class NotFoundError(RolloutError):
    status_code = 404
    code = "not_found"


class ConflictError(RolloutError):
    """Out-of-order transition or a write that kept losing its optimistic check."""

    status_code = 409
    code = "conflict"


class TransientStoreError(RolloutError):
    status_code = 503
    code = "store_unavailable"
