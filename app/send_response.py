"""Translate a parsed OWA page into a Starlette response."""

from __future__ import annotations

import logging
from typing import Any, AsyncIterator, Awaitable, Callable, Dict

import anyio
from starlette.responses import RedirectResponse, Response, StreamingResponse
from starlette.types import Receive, Scope, Send

from webplsql.parse_page import Cookie, Page

_logger = logging.getLogger("webplsql.send_response")

# called with True once the response completed, False when it did not
Finisher = Callable[[bool], Awaitable[None]]


class _FinishOnce:
    def __init__(self, finish: Finisher) -> None:
        self._finish = finish
        self.done = False

    async def __call__(self, ok: bool) -> None:
        if self.done:
            return
        self.done = True
        # runs during cancellation too, when the client has gone away
        with anyio.CancelScope(shield=True):
            await self._finish(ok)


class _FinishingResponse:
    """Runs the finisher when the ASGI call ends, however it ends."""

    finisher: _FinishOnce | None = None
    streamed = False

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        sent = False
        try:
            await super().__call__(scope, receive, send)
            sent = True
        finally:
            if self.finisher is not None:
                # a drained stream has already reported success
                await self.finisher(sent and not self.streamed)


class PageResponse(_FinishingResponse, Response):
    pass


class PageRedirectResponse(_FinishingResponse, RedirectResponse):
    pass


class PageStreamingResponse(_FinishingResponse, StreamingResponse):
    streamed = True


def _apply_cookies(response: Response, page: Page) -> Response:
    for cookie in page.head.cookies:
        _set_cookie(response, cookie)
    return response


def _set_cookie(response: Response, cookie: Cookie) -> None:
    options = cookie.options
    kwargs: Dict[str, Any] = {"path": options.path or "/"}
    if options.domain:
        kwargs["domain"] = options.domain
    if options.secure:
        kwargs["secure"] = True
    if options.httponly:
        kwargs["httponly"] = True
    if options.expires is not None:
        kwargs["expires"] = options.expires
    response.set_cookie(cookie.name, cookie.value, **kwargs)
    _logger.debug("response_cookie name=%s options=%s", cookie.name, kwargs)


def _headers(page: Page) -> Dict[str, str]:
    headers = dict(page.head.other_headers)
    if page.head.content_type:
        headers["Content-Type"] = page.head.content_type
    return headers


async def _body_iterator(body: Any, finish: Finisher | None) -> AsyncIterator[bytes]:
    completed = False
    try:
        async for chunk in body:
            yield chunk.encode("utf-8") if isinstance(chunk, str) else chunk
        completed = True
    except Exception as exc:
        _logger.error("response_stream_failed error=%s", exc)
        raise
    finally:
        if finish is not None:
            await finish(completed)


def send_response(page: Page, finish: Finisher | None = None) -> Response:
    """Build the response for ``page``.

    ``finish`` runs exactly once: after the body stream has been drained for
    streamed pages, otherwise when the response has been sent. It gets
    ``False`` when the client went away or sending failed.
    """
    head = page.head
    finisher = _FinishOnce(finish) if finish is not None else None

    if head.redirect_location:
        _logger.debug("response_redirect location=%s", head.redirect_location)
        response: Response = PageRedirectResponse(head.redirect_location, status_code=302)
    elif page.file.is_download:
        _logger.debug("response_file type=%s size=%s", page.file.file_type, page.file.file_size)
        response = PageResponse(content=page.file.file_blob or b"", status_code=200, headers=_headers(page))
    else:
        status_code = head.status_code if head.status_code is not None else 200
        headers = _headers(page)
        media_type = head.content_type or "text/html"
        if isinstance(page.body, (str, bytes)):
            response = PageResponse(content=page.body, status_code=status_code, headers=headers, media_type=media_type)
        else:
            response = PageStreamingResponse(
                _body_iterator(page.body, finisher),
                status_code=status_code,
                headers=headers,
                media_type=media_type,
            )
    response.finisher = finisher
    return _apply_cookies(response, page)
