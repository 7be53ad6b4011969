import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)
from datetime import datetime, timezone

import anyio
from starlette.requests import ClientDisconnect
from starlette.responses import StreamingResponse

from app.send_response import send_response
from webplsql.parse_page import Cookie, CookieOptions, Page, PageFile, PageHead


class _Body:
    def __init__(self, chunks, fail: bool = False) -> None:
        self._chunks = list(chunks)
        self._fail = fail

    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        if self._chunks:
            return self._chunks.pop(0)
        if self._fail:
            raise RuntimeError("ORA-03113")
        raise StopAsyncIteration


class _Stalled:
    def __aiter__(self):
        return self

    async def __anext__(self) -> str:
        await anyio.sleep_forever()
        return ""


class _Client:
    def __init__(self, fail_on: str = "", disconnect: bool = False) -> None:
        self.messages = []
        self._fail_on = fail_on
        self._disconnect = disconnect

    async def receive(self) -> dict:
        if not self._disconnect:
            await anyio.sleep_forever()
        return {"type": "http.disconnect"}

    async def send(self, message: dict) -> None:
        if message["type"] == self._fail_on:
            raise OSError("connection reset by peer")
        self.messages.append(message)

    @property
    def body(self) -> bytes:
        return b"".join(m.get("body", b"") for m in self.messages if m["type"] == "http.response.body")


def _scope(spec_version: str = "2.4") -> dict:
    return {"type": "http", "asgi": {"version": "3.0", "spec_version": spec_version}, "method": "GET", "path": "/pls/hello", "headers": []}


class _Recorder:
    def __init__(self) -> None:
        self.calls = []

    async def __call__(self, ok: bool) -> None:
        self.calls.append(ok)


class TestSendResponse(unittest.IsolatedAsyncioTestCase):
    async def test_streamed_body_finishes_after_drain(self) -> None:
        finish = _Recorder()
        page = Page(head=PageHead(content_type="text/plain", other_headers={"X-App": "1"}), body=_Body(["a", "b"]))
        response = send_response(page, finish)
        self.assertIsInstance(response, StreamingResponse)
        self.assertEqual(response.headers["content-type"], "text/plain")
        self.assertEqual(response.headers["x-app"], "1")
        self.assertEqual(finish.calls, [])
        chunks = [chunk async for chunk in response.body_iterator]
        self.assertEqual(chunks, [b"a", b"b"])
        self.assertEqual(finish.calls, [True])

    async def test_stream_failure_reports_incomplete(self) -> None:
        finish = _Recorder()
        response = send_response(Page(body=_Body(["a"], fail=True)), finish)
        with self.assertRaises(RuntimeError):
            async for _chunk in response.body_iterator:
                pass
        self.assertEqual(finish.calls, [False])

    async def test_status_override(self) -> None:
        page = Page(head=PageHead(status_code=403, status_description="Forbidden"), body=_Body(["denied"]))
        response = send_response(page)
        self.assertEqual(response.status_code, 403)
        self.assertTrue(response.headers["content-type"].startswith("text/html"))

    async def test_redirect(self) -> None:
        finish = _Recorder()
        page = Page(head=PageHead(redirect_location="/pls/next", cookies=[Cookie("sid", "1")]))
        response = send_response(page, finish)
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], "/pls/next")
        self.assertIn("sid=1", response.headers["set-cookie"])
        self.assertEqual(finish.calls, [])
        client = _Client()
        await response(_scope(), client.receive, client.send)
        self.assertEqual(client.messages[0]["status"], 302)
        self.assertEqual(finish.calls, [True])

    async def test_streamed_response_finishes_once(self) -> None:
        finish = _Recorder()
        response = send_response(Page(body=_Body(["a", "b"])), finish)
        client = _Client()
        await response(_scope(), client.receive, client.send)
        self.assertEqual(client.body, b"ab")
        self.assertEqual(finish.calls, [True])

    async def test_send_failure_before_body(self) -> None:
        finish = _Recorder()
        response = send_response(Page(body=_Body(["a"])), finish)
        client = _Client(fail_on="http.response.start")
        with self.assertRaises((OSError, ClientDisconnect)):
            await response(_scope(), client.receive, client.send)
        self.assertEqual(finish.calls, [False])

    async def test_send_failure_on_plain_body(self) -> None:
        finish = _Recorder()
        response = send_response(Page(body="ok"), finish)
        client = _Client(fail_on="http.response.body")
        with self.assertRaises(OSError):
            await response(_scope(), client.receive, client.send)
        self.assertEqual(finish.calls, [False])

    async def test_disconnect_while_waiting_for_body(self) -> None:
        finish = _Recorder()
        response = send_response(Page(body=_Stalled()), finish)
        client = _Client(disconnect=True)
        await response(_scope("2.0"), client.receive, client.send)
        self.assertEqual(finish.calls, [False])

    async def test_file_download(self) -> None:
        page = Page(
            head=PageHead(content_type="application/pdf", other_headers={"Content-Disposition": "attachment"}),
            file=PageFile(file_type="B", file_size=3, file_blob=b"PDF"),
        )
        response = send_response(page)
        self.assertEqual(response.body, b"PDF")
        self.assertEqual(response.headers["content-type"], "application/pdf")
        self.assertEqual(response.headers["content-disposition"], "attachment")

    async def test_cookie_options(self) -> None:
        expires = datetime(2030, 1, 1, tzinfo=timezone.utc)
        cookie = Cookie("sid", "abc", CookieOptions(path="/app", domain="example.org", secure=True, httponly=True, expires=expires))
        response = send_response(Page(head=PageHead(cookies=[cookie]), body="ok"))
        header = response.headers["set-cookie"]
        self.assertIn("sid=abc", header)
        self.assertIn("Path=/app", header)
        self.assertIn("Domain=example.org", header)
        self.assertIn("Secure", header)
        self.assertIn("HttpOnly", header)
        self.assertIn("2030", header)
        self.assertEqual(response.body, b"ok")


if __name__ == "__main__":
    unittest.main()
