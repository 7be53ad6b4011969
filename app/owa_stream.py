"""Pull-based reader for the OWA page buffer."""

from __future__ import annotations

import logging
from collections import deque
from typing import Any, AsyncIterator, Deque, List

from app.config import DEFAULT_CHUNK_SIZE
from app.errors import ProcedureError, error_to_string
from webplsql.binds import Bind, BindKind, Direction

_logger = logging.getLogger("webplsql.owa_stream")

OWA_GET_PAGE_SQL = "BEGIN owa.get_page(thepage=>:lines, irows=>:irows); END;"
# htp.htbuf_len is capped at 63 characters, 4 bytes each in AL32UTF8
OWA_LINE_MAX_SIZE = 256


class OwaPageStream:
    """Async iterator over the text a procedure wrote with ``htp``.

    Each step issues one ``owa.get_page`` call for up to ``chunk_size`` lines;
    a short read marks the buffer as drained. Text passed to ``add_body`` is
    yielded before the next pull. The stream is not restartable.
    """

    def __init__(self, session: Any, chunk_size: int = DEFAULT_CHUNK_SIZE) -> None:
        self.session = session
        self.chunk_size = chunk_size
        self.is_done = False
        self._pending: Deque[str] = deque()

    async def fetch_chunk(self) -> List[str]:
        if self.is_done:
            return []
        binds = {
            "lines": Bind(Direction.OUT, BindKind.STRING, array=True, max_size=OWA_LINE_MAX_SIZE, max_array_size=self.chunk_size),
            "irows": Bind(Direction.INOUT, BindKind.NUMBER, self.chunk_size),
        }
        try:
            result = await self.session.execute(OWA_GET_PAGE_SQL, binds, query_name="owa.get_page")
        except ProcedureError:
            raise
        except Exception as exc:
            raise ProcedureError(f"OwaPageStream: error when getting page\n{error_to_string(exc)}", {}, OWA_GET_PAGE_SQL, binds) from exc
        lines = [line if line is not None else "" for line in (result.get("lines") or [])]
        _logger.debug("owa_page_fetch lines=%s irows=%s", len(lines), result.get("irows"))
        if len(lines) < self.chunk_size:
            self.is_done = True
        return lines

    def add_body(self, text: str) -> None:
        if text:
            self._pending.append(text)

    def __aiter__(self) -> AsyncIterator[str]:
        return self

    async def __anext__(self) -> str:
        if self._pending:
            return self._pending.popleft()
        while not self.is_done:
            lines = await self.fetch_chunk()
            if lines:
                return "".join(lines)
        raise StopAsyncIteration

    async def read_all(self) -> str:
        return "".join([chunk async for chunk in self])
