"""Gateway error types."""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict

from webplsql.binds import BindMap


def _now() -> datetime:
    return datetime.now(timezone.utc)


class RequestError(Exception):
    """Client or configuration fault: unknown, forbidden or malformed request."""

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message
        self.timestamp = _now()


class ProcedureError(Exception):
    """Database execution fault carrying the context needed to diagnose it."""

    def __init__(
        self,
        message: str,
        environment: Dict[str, str] | None = None,
        sql: str = "",
        binds: BindMap | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.timestamp = _now()
        self.environment = environment or {}
        self.sql = sql
        self.binds = binds or {}


class UploadError(RuntimeError):
    def __init__(self, message: str, path: str | None = None) -> None:
        super().__init__(message)
        self.path = path


def error_to_string(error: Any) -> str:
    if isinstance(error, str):
        return error
    if isinstance(error, BaseException):
        text = str(error)
        name = type(error).__name__
        return f"{name}: {text}" if text else name
    return repr(error)
