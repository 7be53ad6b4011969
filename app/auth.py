"""HTTP Basic auth middleware."""

from __future__ import annotations

import base64
import binascii
import inspect
import logging
import time
from typing import Iterable, Optional, Tuple

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import PlainTextResponse

from app.config import AuthCallback

_logger = logging.getLogger("webplsql.auth")


def _get_basic_credentials(request: Request) -> Optional[Tuple[str, str]]:
    auth = request.headers.get("Authorization", "")
    scheme, _, encoded = auth.partition(" ")
    if scheme.lower() != "basic" or not encoded.strip():
        return None
    try:
        decoded = base64.b64decode(encoded.strip(), validate=True).decode("utf-8")
    except (binascii.Error, UnicodeDecodeError):
        return None
    username, sep, password = decoded.partition(":")
    if not sep or not username:
        return None
    return username, password


def _matches(path: str, prefixes: Tuple[str, ...]) -> bool:
    return any(path == prefix or path.startswith(prefix.rstrip("/") + "/") for prefix in prefixes)


def _challenge(realm: str) -> PlainTextResponse:
    escaped = realm.replace('"', '\\"')
    return PlainTextResponse(
        "Unauthorized",
        status_code=401,
        headers={"WWW-Authenticate": f'Basic realm="{escaped}"'},
    )


class BasicAuthMiddleware(BaseHTTPMiddleware):
    """Basic auth for every path, or only for ``include`` prefixes when given."""

    def __init__(
        self,
        app,
        callback: AuthCallback,
        realm: str = "PL/SQL Gateway",
        include: Optional[Iterable[str]] = None,
        exclude: Iterable[str] = (),
    ) -> None:
        super().__init__(app)
        self._callback = callback
        self._realm = realm
        self._include = tuple(include) if include is not None else None
        self._exclude = tuple(exclude)

    async def _authenticate(self, username: str, password: str) -> Optional[str]:
        result = self._callback(username, password)
        if inspect.isawaitable(result):
            result = await result
        return result or None

    async def dispatch(self, request: Request, call_next):
        start = time.perf_counter()
        if request.method == "OPTIONS":
            return await call_next(request)
        path = request.url.path
        if path in {"/health"}:
            return await call_next(request)
        if self._include is not None and not _matches(path, self._include):
            return await call_next(request)
        if _matches(path, self._exclude):
            return await call_next(request)

        credentials = _get_basic_credentials(request)
        if credentials is None:
            _logger.warning("auth_missing_credentials path=%s", request.url.path)
            return _challenge(self._realm)

        username, password = credentials
        try:
            user = await self._authenticate(username, password)
        except Exception as exc:
            _logger.error("auth_callback_failed path=%s user=%s error=%s", request.url.path, username, exc)
            return _challenge(self._realm)
        if user is None:
            _logger.warning("auth_invalid_credentials path=%s user=%s", request.url.path, username)
            return _challenge(self._realm)

        request.state.remote_user = user
        request.state.auth_ms = (time.perf_counter() - start) * 1000
        return await call_next(request)
