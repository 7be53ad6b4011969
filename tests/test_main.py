import os
import sys
import unittest

ROOT = os.path.abspath(os.path.join(os.path.dirname(__file__), ".."))
SRC = os.path.join(ROOT, "src")
if ROOT not in sys.path:
    sys.path.insert(0, ROOT)
if SRC not in sys.path:
    sys.path.insert(0, SRC)
import tempfile
from typing import Optional, Tuple
from unittest.mock import patch

from fastapi.testclient import TestClient

from fake_db import FakePool, FakeSession

from app.config import HandlerConfig
from app.main import create_app

HTML_PAGE = ["Content-type: text/html\n", "\n", "<html>\n", "<p>hello</p>\n", "</html>\n"]


def _client(config: Optional[HandlerConfig] = None, **gateway) -> Tuple[TestClient, FakePool]:
    pool = FakePool(lambda: FakeSession.gateway(**gateway))
    return TestClient(create_app(config or HandlerConfig(), pool)), pool


class TestGatewayRoutes(unittest.TestCase):
    def test_health(self) -> None:
        client, pool = _client()
        response = client.get("/health")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.json(), {"ok": True})
        self.assertEqual(pool.sessions, [])

    def test_streamed_page_commits_and_releases(self) -> None:
        client, pool = _client(HandlerConfig(chunk_size=2), lines=HTML_PAGE, arguments={"p_name": "VARCHAR2"})
        response = client.get("/pls/hello?p_name=world")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.text, "<html>\n<p>hello</p>\n</html>\n")
        self.assertTrue(response.headers["content-type"].startswith("text/html"))
        session = pool.sessions[0]
        self.assertEqual(len(session.find_calls("owa.get_page")), 3)
        _sql, binds = session.find_calls("BEGIN SCOTT.HELLO")[0]
        self.assertEqual(binds["p_p_name"].value, "world")
        self.assertEqual((session.commits, session.rollbacks, session.releases), (1, 0, 1))

    def test_cgi_environment(self) -> None:
        client, pool = _client(HandlerConfig(cgi={"APP_NAME": "demo"}), lines=HTML_PAGE)
        client.get("/pls/hello", headers={"User-Agent": "tester", "Cookie": "sid=abc"})
        _sql, binds = pool.sessions[0].find_calls("owa.init_cgi_env")[0]
        env = dict(zip(binds["cginames"].value, binds["cgivalues"].value))
        self.assertEqual(env["PATH_INFO"], "hello")
        self.assertEqual(env["SCRIPT_NAME"], "/pls")
        self.assertEqual(env["HTTP_USER_AGENT"], "tester")
        self.assertEqual(env["HTTP_COOKIE"], "sid=abc;")
        self.assertEqual(env["APP_NAME"], "demo")
        self.assertEqual(env["REQUEST_METHOD"], "GET")

    def test_status_header(self) -> None:
        client, _pool = _client(lines=["Status: 403 Forbidden\n", "\n", "denied"])
        response = client.get("/pls/hello")
        self.assertEqual(response.status_code, 403)
        self.assertEqual(response.text, "denied")

    def test_redirect_and_cookies(self) -> None:
        lines = ["Location: /pls/next\n", "Set-Cookie: sid=abc; path=/; HttpOnly\n", "\n"]
        client, pool = _client(lines=lines)
        response = client.get("/pls/hello", follow_redirects=False)
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], "/pls/next")
        self.assertIn("sid=abc", response.headers["set-cookie"])
        self.assertIn("HttpOnly", response.headers["set-cookie"])
        self.assertEqual(pool.sessions[0].commits, 1)
        self.assertEqual(pool.sessions[0].releases, 1)

    def test_file_download(self) -> None:
        client, pool = _client(
            lines=["Content-type: application/pdf\n", "Content-Disposition: attachment; filename=a.pdf\n", "\n"],
            download={"fileType": "B", "fileSize": 4, "fileBlob": b"%PDF"},
        )
        response = client.get("/pls/hello")
        self.assertEqual(response.status_code, 200)
        self.assertEqual(response.content, b"%PDF")
        self.assertEqual(response.headers["content-type"], "application/pdf")
        self.assertEqual(response.headers["content-disposition"], "attachment; filename=a.pdf")
        self.assertTrue(pool.sessions[0].lobs[0].destroyed)

    def test_array_and_variable_arguments(self) -> None:
        client, pool = _client(lines=HTML_PAGE, arguments={"p_ids": "PL/SQL TABLE"})
        client.get("/pls/hello?p_ids=1&p_ids=2")
        _sql, binds = pool.sessions[0].find_calls("BEGIN SCOTT.HELLO")[0]
        self.assertEqual(binds["p_p_ids"].value, ["1", "2"])

        client.get("/pls/!hello?a=1&b=2&a=3")
        sql, binds = pool.sessions[1].find_calls("BEGIN SCOTT.HELLO")[0]
        self.assertEqual(sql, "BEGIN SCOTT.HELLO(:argnames, :argvalues); END;")
        self.assertEqual(binds["argnames"].value, ["a", "a", "b"])
        self.assertEqual(binds["argvalues"].value, ["1", "3", "2"])

    def test_form_post(self) -> None:
        client, pool = _client(lines=HTML_PAGE, arguments={"p_name": "VARCHAR2"})
        response = client.post("/pls/hello", data={"p_name": "posted"})
        self.assertEqual(response.status_code, 200)
        _sql, binds = pool.sessions[0].find_calls("BEGIN SCOTT.HELLO")[0]
        self.assertEqual(binds["p_p_name"].value, "posted")

    def test_multipart_upload(self) -> None:
        client, pool = _client(HandlerConfig(document_table="doc_table"), lines=HTML_PAGE, arguments={"p_file": "VARCHAR2"})
        response = client.post("/pls/hello", files={"p_file": ("report.txt", b"data", "text/plain")})
        self.assertEqual(response.status_code, 200)
        session = pool.sessions[0]
        _sql, insert = session.find_calls("INSERT INTO doc_table")[0]
        self.assertTrue(insert["name"].value.endswith("/report.txt"))
        self.assertEqual(insert["blob_content"].value, b"data")
        _sql, binds = session.find_calls("BEGIN SCOTT.HELLO")[0]
        self.assertEqual(binds["p_p_file"].value, insert["name"].value)

    def test_upload_temp_file_removed_without_document_table(self) -> None:
        with tempfile.TemporaryDirectory() as tmpdir, patch("app.upload.UPLOAD_DIR", tmpdir):
            client, pool = _client(lines=HTML_PAGE)
            response = client.post("/pls/hello", files={"p_file": ("report.txt", b"data", "text/plain")})
            self.assertEqual(response.status_code, 200)
            self.assertEqual(pool.sessions[0].find_calls("INSERT INTO"), [])
            self.assertEqual(os.listdir(tmpdir), [])

    def test_upload_temp_file_removed_when_insert_fails(self) -> None:
        pool = FakePool(lambda: FakeSession.gateway(lines=HTML_PAGE).on("INSERT INTO doc_table", RuntimeError("ORA-01653: unable to extend table")))
        client = TestClient(create_app(HandlerConfig(document_table="doc_table"), pool))
        with tempfile.TemporaryDirectory() as tmpdir, patch("app.upload.UPLOAD_DIR", tmpdir):
            response = client.post("/pls/hello", files={"p_file": ("report.txt", b"data", "text/plain")})
            self.assertEqual(response.status_code, 404)
            self.assertEqual(os.listdir(tmpdir), [])
        session = pool.sessions[0]
        self.assertEqual((session.commits, session.rollbacks, session.releases), (0, 1, 1))

    def test_invalid_json_body(self) -> None:
        client, pool = _client(lines=HTML_PAGE)
        response = client.post("/pls/hello", json={"p_count": 3})
        self.assertEqual(response.status_code, 404)
        self.assertEqual(pool.sessions[0].rollbacks, 1)
        self.assertEqual(pool.sessions[0].releases, 1)


class TestDefaultPageAndErrors(unittest.TestCase):
    def test_default_page_redirect(self) -> None:
        client, pool = _client(HandlerConfig(default_page="home.page"))
        response = client.get("/pls/", follow_redirects=False)
        self.assertEqual(response.status_code, 302)
        self.assertEqual(response.headers["location"], "/pls/home.page")
        self.assertEqual(pool.sessions, [])

    def test_missing_default_page(self) -> None:
        client, _pool = _client()
        response = client.get("/pls/")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.text, "Page not found")

    def test_unknown_procedure_is_basic_404(self) -> None:
        client, pool = _client()
        pool.factory = lambda: FakeSession.gateway().on("context => 1,", RuntimeError("ORA-06564: object NOPE does not exist"))
        response = client.get("/pls/nope")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(response.text, "Page not found")
        session = pool.sessions[0]
        self.assertEqual((session.commits, session.rollbacks, session.releases), (0, 1, 1))

    def test_debug_error_page(self) -> None:
        client, pool = _client(HandlerConfig(error_style="debug"))
        pool.factory = lambda: FakeSession.gateway().on("BEGIN SCOTT.HELLO", RuntimeError("ORA-20001: custom failure"))
        response = client.get("/pls/hello")
        self.assertEqual(response.status_code, 404)
        self.assertIn("ORA-20001", response.text)
        self.assertIn("<h2>PROCEDURE</h2>", response.text)

    def test_excluded_procedure(self) -> None:
        client, pool = _client()
        response = client.get("/pls/owa_util.showpage")
        self.assertEqual(response.status_code, 404)
        self.assertEqual(pool.sessions[0].calls, [])


class TestTransactionModes(unittest.TestCase):
    def test_rollback_mode(self) -> None:
        client, pool = _client(HandlerConfig(transaction_mode="rollback"), lines=HTML_PAGE)
        client.get("/pls/hello")
        session = pool.sessions[0]
        self.assertEqual((session.commits, session.rollbacks, session.releases), (0, 1, 1))

    def test_callback_mode(self) -> None:
        seen = []

        async def finish(session, name):
            seen.append(name)
            await session.commit()

        client, pool = _client(HandlerConfig(transaction_mode=finish), lines=HTML_PAGE)
        client.get("/pls/hello")
        self.assertEqual(seen, ["hello"])
        self.assertEqual(pool.sessions[0].commits, 1)
        self.assertEqual(pool.sessions[0].releases, 1)


class TestAuthAndAdmin(unittest.TestCase):
    def _auth_config(self) -> HandlerConfig:
        return HandlerConfig(auth_callback=lambda user, password: user if password == "tiger" else None, auth_realm="Demo")

    def test_missing_credentials(self) -> None:
        client, pool = _client(self._auth_config(), lines=HTML_PAGE)
        response = client.get("/pls/hello")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers["www-authenticate"], 'Basic realm="Demo"')
        self.assertEqual(pool.sessions, [])
        self.assertEqual(client.get("/health").status_code, 200)

    def test_wrong_password(self) -> None:
        client, _pool = _client(self._auth_config(), lines=HTML_PAGE)
        response = client.get("/pls/hello", auth=("scott", "lion"))
        self.assertEqual(response.status_code, 401)

    def test_remote_user(self) -> None:
        client, pool = _client(self._auth_config(), lines=HTML_PAGE)
        response = client.get("/pls/hello", auth=("scott", "tiger"))
        self.assertEqual(response.status_code, 200)
        _sql, binds = pool.sessions[0].find_calls("owa.init_cgi_env")[0]
        env = dict(zip(binds["cginames"].value, binds["cgivalues"].value))
        self.assertEqual(env["REMOTE_USER"], "scott")
        self.assertEqual(env["AUTH_TYPE"], "Basic")

    def _admin_config(self, **kwargs) -> HandlerConfig:
        return HandlerConfig(admin_user="ops", admin_password="s3cret", **kwargs)

    def test_admin_cache(self) -> None:
        client, _pool = _client(self._admin_config(), lines=HTML_PAGE)
        client.get("/pls/hello")
        admin = ("ops", "s3cret")
        stats = client.get("/admin/cache", auth=admin).json()
        self.assertEqual(stats["caches"]["procedure_name"]["size"], 1)
        self.assertEqual(stats["caches"]["argument"]["size"], 1)
        self.assertEqual(stats["pool"]["open"], 1)
        self.assertEqual(client.post("/admin/cache/clear", auth=admin).json(), {"ok": True})
        stats = client.get("/admin/cache", auth=admin).json()
        self.assertEqual(stats["caches"]["procedure_name"]["size"], 0)

    def test_admin_requires_credentials(self) -> None:
        client, _pool = _client(self._admin_config(), lines=HTML_PAGE)
        response = client.get("/admin/cache")
        self.assertEqual(response.status_code, 401)
        self.assertEqual(response.headers["www-authenticate"], 'Basic realm="PL/SQL Gateway admin"')
        self.assertEqual(client.post("/admin/cache/clear", auth=("ops", "wrong")).status_code, 401)
        self.assertEqual(client.get("/pls/hello").status_code, 200)

    def test_admin_ignores_gateway_users(self) -> None:
        config = self._admin_config(auth_callback=lambda user, password: user if password == "tiger" else None)
        client, _pool = _client(config, lines=HTML_PAGE)
        self.assertEqual(client.get("/admin/cache", auth=("scott", "tiger")).status_code, 401)
        self.assertEqual(client.get("/admin/cache", auth=("ops", "s3cret")).status_code, 200)
        self.assertEqual(client.get("/pls/hello", auth=("ops", "s3cret")).status_code, 401)
        self.assertEqual(client.get("/pls/hello", auth=("scott", "tiger")).status_code, 200)

    def test_admin_off_by_default(self) -> None:
        client, _pool = _client()
        self.assertEqual(client.get("/admin/cache").status_code, 404)
        self.assertEqual(client.post("/admin/cache/clear").status_code, 404)


if __name__ == "__main__":
    unittest.main()
