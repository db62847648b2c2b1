from __future__ import annotations

from fastapi import HTTPException


class TraceError(Exception):
    """Base for errors raised by lifecycle, verification and adapter code."""

    status_code: int = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(TraceError):
    """Missing or malformed caller input (no wallet, no reason, ...)."""

    status_code = 400


class UnsupportedOperationError(TraceError):
    status_code = 400


class ForbiddenError(TraceError):
    status_code = 403


class NotFoundError(TraceError):
    status_code = 404


class ConflictError(TraceError):
    """Requested action does not fit the current lifecycle state."""

    status_code = 409


class ChainAdapterError(TraceError):
    """The external transaction service failed in a way we cannot classify."""

    status_code = 502


def to_http_exception(exc: TraceError) -> HTTPException:
    return HTTPException(status_code=exc.status_code, detail=exc.message)
