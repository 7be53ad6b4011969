"""Request processing and procedure invocation."""

from __future__ import annotations

import inspect
import json
import logging
import time
from typing import Any, Dict, List, Mapping

from starlette.datastructures import FormData, UploadFile
from starlette.requests import Request
from starlette.responses import RedirectResponse, Response

from app.config import TRANSACTION_ROLLBACK, HandlerConfig
from app.error_page import render_error
from app.errors import ProcedureError, RequestError, error_to_string
from app.owa_stream import OwaPageStream
from app.procedure import VARIABLE_ARGUMENTS_MARKER, Arguments, ProcedureCall, ResolverCaches, get_procedure, sanitize_name
from app.send_response import send_response
from app.upload import UploadedFile, collect_uploads, discard_uploads, upload_file
from webplsql.binds import Bind, BindKind, Direction
from webplsql.cache import Cache
from webplsql.cgi import Environment, RequestView, build_environment
from webplsql.parse_page import Page, PageFile, parse_page

_logger = logging.getLogger("webplsql.invoke")

SQL_RESET_PACKAGE_STATE = "BEGIN dbms_session.modify_package_state(dbms_session.reinitialize); END;"
# htbuf_len 63 keeps a buffer line within 256 bytes for AL32UTF8
SQL_INIT_CGI = "BEGIN owa.init_cgi_env(:cgicount, :cginames, :cgivalues); htp.init; htp.htbuf_len := 63; END;"
SQL_DOWNLOAD_FILE = """
DECLARE
    l_file_type VARCHAR2(32767) := '';
    l_file_size INTEGER := 0;
BEGIN
    IF (wpg_docload.is_file_download()) THEN
        wpg_docload.get_download_file(l_file_type);
        IF (l_file_type = 'B') THEN
            wpg_docload.get_download_blob(:fileBlob);
            l_file_size := dbms_lob.getlength(:fileBlob);
        END IF;
    END IF;
    :fileType := l_file_type;
    :fileSize := l_file_size;
END;
"""

# session state discarded or dependent object recompiled
INVALIDATION_CODES = ("ORA-04068", "ORA-04061", "ORA-04065", "ORA-06550")


def invalidation_code(error: BaseException) -> str | None:
    """Return the error code that requires re-resolving the procedure, if any."""
    cause = error.__cause__
    detail = cause.args[0] if cause is not None and cause.args else None
    code = getattr(detail, "full_code", None)
    if code in INVALIDATION_CODES:
        return code
    text = str(error)
    for code in INVALIDATION_CODES:
        if code in text:
            return code
    return None


async def procedure_prepare(environment: Environment, session: Any) -> None:
    try:
        await session.execute(SQL_RESET_PACKAGE_STATE, {}, query_name="session.reset")
    except Exception as exc:
        raise ProcedureError(f"procedure_prepare: error when preparing procedure\n{error_to_string(exc)}", environment, SQL_RESET_PACKAGE_STATE, {}) from exc

    binds = {
        "cgicount": Bind.number(len(environment)),
        "cginames": Bind.string_table(environment.keys()),
        "cgivalues": Bind.string_table(environment.values()),
    }
    try:
        await session.execute(SQL_INIT_CGI, binds, query_name="session.init_cgi")
    except Exception as exc:
        raise ProcedureError(f"procedure_prepare: error when preparing procedure\n{error_to_string(exc)}", environment, SQL_INIT_CGI, binds) from exc


async def procedure_execute(call: ProcedureCall, session: Any) -> None:
    sql = f"BEGIN {call.sql}; END;"
    try:
        await session.execute(sql, call.binds, query_name="procedure.execute")
    except Exception as exc:
        raise ProcedureError(f"procedure_execute: error when executing procedure:\n{sql}\n{error_to_string(exc)}", {}, call.sql, call.binds) from exc


async def procedure_download_file(lob: Any, session: Any) -> PageFile:
    binds = {
        "fileType": Bind(Direction.OUT, BindKind.STRING, max_size=32767),
        "fileSize": Bind(Direction.OUT, BindKind.NUMBER),
        "fileBlob": Bind(Direction.INOUT, BindKind.BLOB, lob),
    }
    try:
        result = await session.execute(SQL_DOWNLOAD_FILE, binds, query_name="procedure.download")
    except Exception as exc:
        raise ProcedureError(f"procedure_download_file: error when downloading files\n{error_to_string(exc)}", {}, SQL_DOWNLOAD_FILE, binds) from exc
    blob = result.get("fileBlob")
    return PageFile(
        file_type=result.get("fileType") or "",
        file_size=int(result.get("fileSize") or 0),
        file_blob=bytes(blob) if isinstance(blob, (bytes, bytearray)) else None,
    )


def evict_resolution(raw_name: str, call: ProcedureCall | None, caches: ResolverCaches) -> None:
    name = raw_name[len(VARIABLE_ARGUMENTS_MARKER) :] if raw_name.startswith(VARIABLE_ARGUMENTS_MARKER) else raw_name
    caches.names.delete(sanitize_name(name))
    if call is not None and call.resolved_name:
        caches.arguments.delete(call.resolved_name.upper())


async def invoke_procedure(
    raw_name: str,
    args: Arguments,
    environment: Environment,
    files: List[UploadedFile],
    config: HandlerConfig,
    session: Any,
    caches: ResolverCaches,
    finish: Any = None,
) -> Response:
    # 1) uploads
    if files:
        if config.document_table:
            for file in files:
                await upload_file(file, config.document_table, session)
        else:
            _logger.warning("upload_skipped count=%s reason=no_document_table", len(files))

    # 2) procedure and arguments
    if not raw_name:
        raise RequestError("No procedure name provided")
    call = await get_procedure(raw_name, args, config, session, caches)

    # 3) session
    await procedure_prepare(environment, session)

    # 4) execute
    try:
        await procedure_execute(call, session)
    except ProcedureError as exc:
        code = invalidation_code(exc)
        if code is not None:
            _logger.warning("procedure_invalidated code=%s procedure=%s resolved=%s", code, raw_name, call.resolved_name)
            evict_resolution(raw_name, call, caches)
        raise

    # 5) first chunk and file download
    stream = OwaPageStream(session, config.chunk_size)
    lines = await stream.fetch_chunk()
    lob = await session.create_lob(BindKind.BLOB)
    try:
        download = await procedure_download_file(lob, session)

        # 6) page
        page: Page = parse_page("".join(lines))
        if download.file_type and download.file_size > 0 and download.file_blob is not None:
            page.file = download
        else:
            if isinstance(page.body, str) and page.body:
                stream.add_body(page.body)
            page.body = stream
    finally:
        await lob.destroy()

    # 7) response
    return send_response(page, finish)


def _to_arguments(items: List[tuple[str, str]]) -> Arguments:
    args: Dict[str, Any] = {}
    for key, value in items:
        if key in args:
            current = args[key]
            args[key] = current + [value] if isinstance(current, list) else [current, value]
        else:
            args[key] = value
    return args


def _is_string_or_list(value: Any) -> bool:
    return isinstance(value, str) or (isinstance(value, list) and all(isinstance(item, str) for item in value))


def normalize_body(body: Mapping[str, Any] | None) -> Arguments:
    args: Arguments = {}
    for key, value in (body or {}).items():
        if not _is_string_or_list(value):
            raise RequestError(f'The element "{key}" in the body is not a string or an array of strings!\n{body!r}')
        args[key] = value
    return args


def collect_arguments(query: List[tuple[str, str]], files: List[UploadedFile], body: Mapping[str, Any] | None) -> Arguments:
    args = _to_arguments(query)
    for file in files:
        args[file.fieldname] = file.filename
    args.update(normalize_body(body))
    return args


async def read_body(request: Request) -> tuple[FormData | None, Dict[str, Any] | None]:
    content_type = request.headers.get("content-type", "").lower()
    if content_type.startswith("multipart/form-data") or content_type.startswith("application/x-www-form-urlencoded"):
        form = await request.form()
        fields = [(key, value) for key, value in form.multi_items() if not isinstance(value, UploadFile)]
        return form, _to_arguments(fields)
    if content_type.startswith("application/json"):
        raw = await request.body()
        if not raw:
            return None, None
        try:
            body = json.loads(raw)
        except ValueError as exc:
            raise RequestError(f"Invalid JSON body: {exc}") from exc
        if not isinstance(body, dict):
            raise RequestError("The JSON body must be an object")
        return None, body
    return None, None


def request_view(request: Request, name: str) -> RequestView:
    server = request.scope.get("server")
    query = request.url.query
    return RequestView(
        method=request.method,
        url=request.url.path + (f"?{query}" if query else ""),
        procedure=name,
        protocol=request.url.scheme,
        http_version=request.scope.get("http_version"),
        client_ip=request.client.host if request.client else None,
        local_port=server[1] if server else None,
        headers=dict(request.headers),
        cookies=dict(request.cookies),
    )


class _Transaction:
    """Finishes the borrowed session exactly once."""

    def __init__(self, session: Any, config: HandlerConfig, procedure: str) -> None:
        self.session = session
        self.config = config
        self.procedure = procedure
        self.done = False
        self.started = time.perf_counter()

    async def finish(self, ok: bool = True) -> None:
        if self.done:
            return
        self.done = True
        try:
            mode = self.config.transaction_mode
            if not ok:
                await self.session.rollback()
            elif callable(mode):
                result = mode(self.session, self.procedure)
                if inspect.isawaitable(result):
                    await result
            elif mode == TRANSACTION_ROLLBACK:
                await self.session.rollback()
            else:
                await self.session.commit()
        finally:
            await self.session.release()
            _logger.info(
                "request_done procedure=%s ok=%s ms=%.1f",
                self.procedure,
                ok,
                (time.perf_counter() - self.started) * 1000,
            )


async def process_request(
    request: Request,
    name: str,
    config: HandlerConfig,
    pool: Any,
    caches: ResolverCaches,
) -> Response:
    session = await pool.acquire()
    transaction = _Transaction(session, config, name)
    files: List[UploadedFile] = []
    try:
        user = getattr(request.state, "remote_user", None)
        environment = build_environment(request_view(request, name), config.document_table, config.cgi, user)
        form, body = await read_body(request)
        files = await collect_uploads(form)
        args = collect_arguments(list(request.query_params.multi_items()), files, body)
        _logger.debug("process_request procedure=%s args=%s files=%s", name, sorted(args), len(files))
        return await invoke_procedure(name, args, environment, files, config, session, caches, transaction.finish)
    except BaseException:
        await transaction.finish(False)
        raise
    finally:
        await discard_uploads(files)


class PlsqlHandler:
    """Serves one route: owns its caches and maps requests onto procedures."""

    def __init__(self, pool: Any, config: HandlerConfig) -> None:
        self.pool = pool
        self.config = config
        self.caches = ResolverCaches.create(config.cache_max_size)

    @property
    def procedure_name_cache(self) -> Cache[str]:
        return self.caches.names

    @property
    def argument_cache(self) -> Cache[Dict[str, str]]:
        return self.caches.arguments

    async def handle(self, request: Request, name: str | None) -> Response:
        try:
            if not name:
                if self.config.default_page:
                    location = f"{request.url.path.rstrip('/')}/{self.config.default_page}"
                    _logger.debug("default_page_redirect location=%s", location)
                    return RedirectResponse(location, status_code=302)
                raise RequestError("No procedure name given and no default page has been specified")
            return await process_request(request, name, self.config, self.pool, self.caches)
        except Exception as exc:
            return render_error(request, self.config, exc)
