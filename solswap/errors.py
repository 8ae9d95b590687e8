from __future__ import annotations

from typing import Optional


class SolSwapError(Exception):
    """Base error carrying a stable error code and HTTP status."""

    code = "INTERNAL_ERROR"
    status_code = 500

    def __init__(self, message: str, code: Optional[str] = None) -> None:
        super().__init__(message)
        self.message = message
        if code:
            self.code = code

    def to_dict(self) -> dict:
        return {"error": {"code": self.code, "message": self.message}}


class InputRejected(SolSwapError):
    """Raw chat text matched a dangerous pattern."""

    code = "INPUT_REJECTED"
    status_code = 400


class ValidationFailed(SolSwapError):
    """User-supplied data (token symbol, bank details) did not validate."""

    code = "VALIDATION_FAILED"
    status_code = 400


class DuplicateTransaction(SolSwapError):
    """Transaction signature is already recorded on another order."""

    code = "DUPLICATE_TRANSACTION"
    status_code = 409


class UpstreamUnavailable(SolSwapError):
    """Language model, pricing or payout provider failed or timed out."""

    code = "UPSTREAM_UNAVAILABLE"
    status_code = 503


class NotFound(SolSwapError):
    code = "NOT_FOUND"
    status_code = 404


class InvalidTransition(SolSwapError):
    """External event applied to an order in the wrong status."""

    code = "INVALID_TRANSITION"
    status_code = 409
