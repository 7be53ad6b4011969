"""Spooling of multipart uploads and insertion into the document table."""

from __future__ import annotations

import logging
import os
import shutil
import tempfile
import uuid
from dataclasses import dataclass
from typing import Any, List

import anyio
from starlette.datastructures import FormData, UploadFile

from app.errors import UploadError, error_to_string
from webplsql.binds import Bind, BindKind, Direction

_logger = logging.getLogger("webplsql.upload")

UPLOAD_DIR = os.getenv("WEBPLSQL_UPLOAD_DIR", "").strip() or tempfile.gettempdir()


@dataclass
class UploadedFile:
    fieldname: str
    originalname: str
    filename: str
    path: str
    size: int
    mimetype: str


def _spool(upload: UploadFile, path: str) -> int:
    upload.file.seek(0)
    with open(path, "wb") as fh:
        shutil.copyfileobj(upload.file, fh)
    return os.path.getsize(path)


async def collect_uploads(form: FormData | None) -> List[UploadedFile]:
    """Write every uploaded file of a form to a temporary file."""
    if form is None:
        return []
    files: List[UploadedFile] = []
    for fieldname, value in form.multi_items():
        if not isinstance(value, UploadFile) or not value.filename:
            continue
        token = uuid.uuid4().hex
        path = os.path.join(UPLOAD_DIR, f"webplsql_{token}")
        try:
            size = await anyio.to_thread.run_sync(_spool, value, path)
        except OSError as exc:
            await discard_uploads(files)
            await anyio.to_thread.run_sync(_remove_if_present, path)
            raise UploadError(f'Unable to spool file "{value.filename}".\n{error_to_string(exc)}', path) from exc
        files.append(
            UploadedFile(
                fieldname=fieldname,
                originalname=value.filename,
                filename=f"{token}/{value.filename}",
                path=path,
                size=size,
                mimetype=value.content_type or "application/octet-stream",
            )
        )
    _logger.debug("upload_collect count=%s", len(files))
    return files


def _read_bytes(path: str) -> bytes:
    with open(path, "rb") as fh:
        return fh.read()


async def upload_file(file: UploadedFile, document_table: str, session: Any) -> None:
    if not document_table:
        raise UploadError(f'Unable to upload file "{file.filename}" because no document table has been configured', file.path)

    try:
        content = await anyio.to_thread.run_sync(_read_bytes, file.path)
    except OSError as exc:
        raise UploadError(f'Unable to load file "{file.path}".\n{error_to_string(exc)}', file.path) from exc

    sql = (
        f"INSERT INTO {document_table} (name, mime_type, doc_size, dad_charset, last_updated, content_type, blob_content) "
        "VALUES (:name, :mime_type, :doc_size, 'ascii', SYSDATE, 'BLOB', :blob_content)"
    )
    binds = {
        "name": Bind.string(file.filename),
        "mime_type": Bind.string(file.mimetype),
        "doc_size": Bind.number(file.size),
        "blob_content": Bind(Direction.IN, BindKind.BLOB, content),
    }
    try:
        await session.execute(sql, binds, query_name="upload.insert")
        # uploads are committed regardless of the transaction mode
        await session.commit()
    except Exception as exc:
        raise UploadError(f'Unable to insert file "{file.filename}".\n{error_to_string(exc)}', file.path) from exc

    try:
        await anyio.to_thread.run_sync(os.remove, file.path)
    except OSError as exc:
        raise UploadError(f'Unable to remove file "{file.filename}".\n{error_to_string(exc)}', file.path) from exc
    _logger.info("upload_stored name=%s size=%s table=%s", file.filename, file.size, document_table)


def _remove_if_present(path: str) -> None:
    try:
        os.remove(path)
    except FileNotFoundError:
        pass


async def discard_uploads(files: List[UploadedFile]) -> None:
    """Remove spooled files that were not stored in the document table."""
    for file in files:
        await anyio.to_thread.run_sync(_remove_if_present, file.path)
