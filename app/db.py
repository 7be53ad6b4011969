"""Async Oracle session adapter for the PL/SQL gateway."""

from __future__ import annotations

import contextvars
import logging
import os
import time
from typing import Any, Dict, List

import oracledb

from app.config import DatabaseConfig, load_database_config
from webplsql.binds import Bind, BindKind, BindMap, Direction

_logger = logging.getLogger("webplsql.db")
_query_logger = logging.getLogger("webplsql.db.query")
_DB_STATS: contextvars.ContextVar[dict] = contextvars.ContextVar("webplsql_db_stats", default=None)
_DB_QUERY_LOG: contextvars.ContextVar[list] = contextvars.ContextVar("webplsql_db_query_log", default=None)
_SLOW_MS = float(os.getenv("WEBPLSQL_QUERY_SLOW_MS", "200"))
_LOG_ALL = os.getenv("WEBPLSQL_QUERY_LOG", "").strip() == "1"

# PL/SQL VARCHAR2 upper bound
_MAX_VARCHAR = 32767

_DB_TYPES = {
    BindKind.STRING: oracledb.DB_TYPE_VARCHAR,
    BindKind.NUMBER: oracledb.DB_TYPE_NUMBER,
    BindKind.BLOB: oracledb.DB_TYPE_BLOB,
}


def _redact_value(val: Any) -> Any:
    if isinstance(val, (bytes, bytearray)):
        return f"<bytes:{len(val)}>"
    if isinstance(val, str) and len(val) > 80:
        return f"{val[:40]}…{val[-10:]}"
    if isinstance(val, list):
        return [_redact_value(item) for item in val[:20]]
    return val


def redact_binds(binds: BindMap | None) -> Dict[str, Any] | None:
    if binds is None:
        return None
    return {name: _redact_value(bind.value) for name, bind in binds.items() if bind.direction is not Direction.OUT}


def reset_db_stats() -> None:
    _DB_STATS.set({"queries": 0, "total_ms": 0.0})
    _DB_QUERY_LOG.set([])


def get_db_stats() -> dict:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        return {"queries": 0, "total_ms": 0.0}
    return stats


def get_db_query_log() -> list:
    log = _DB_QUERY_LOG.get()
    if not isinstance(log, list):
        return []
    return log


def add_db_ms(delta: float) -> None:
    stats = _DB_STATS.get()
    if not isinstance(stats, dict):
        stats = {"queries": 0, "total_ms": 0.0}
        _DB_STATS.set(stats)
    # shared with the request middleware: mutate, never replace
    stats["total_ms"] = stats.get("total_ms", 0.0) + delta
    stats["queries"] = stats.get("queries", 0) + 1


def _log_query(*, query_name: str | None, binds: BindMap | None, elapsed_ms: float) -> None:
    log = get_db_query_log()
    log.append(query_name or "unnamed")
    _DB_QUERY_LOG.set(log)
    if not query_name and not _LOG_ALL and elapsed_ms < _SLOW_MS:
        return
    message = {
        "query": query_name or "unnamed",
        "ms": round(elapsed_ms, 2),
        "binds": redact_binds(binds),
    }
    if elapsed_ms >= _SLOW_MS:
        _query_logger.warning("db_slow_query=%s", message)
    else:
        _query_logger.info("db_query=%s", message)


class OracleLob:
    """Temporary LOB handed to ``wpg_docload`` for file downloads."""

    def __init__(self, lob: Any) -> None:
        self.lob = lob

    async def destroy(self) -> None:
        # temporary LOBs are freed by the driver once the last reference is gone
        self.lob = None


def _string_size(values: List[Any]) -> int:
    longest = max((len(str(v)) for v in values if v is not None), default=1)
    return min(max(longest * 4, 1), _MAX_VARCHAR)


def _to_param(cursor: Any, bind: Bind) -> Any:
    db_type = _DB_TYPES[bind.kind]
    if bind.array:
        if bind.direction is Direction.IN:
            values = list(bind.value or [])
            var = cursor.arrayvar(db_type, max(len(values), 1), _string_size(values) if bind.kind is BindKind.STRING else 0)
            var.setvalue(0, values)
            return var
        return cursor.arrayvar(db_type, bind.max_array_size or 1, bind.max_size or _MAX_VARCHAR)
    if bind.direction is Direction.IN and bind.kind is not BindKind.BLOB:
        return bind.value
    if bind.kind is BindKind.STRING:
        var = cursor.var(db_type, bind.max_size or _MAX_VARCHAR)
    else:
        var = cursor.var(db_type)
    if bind.direction is not Direction.OUT:
        value = bind.value.lob if isinstance(bind.value, OracleLob) else bind.value
        var.setvalue(0, value)
    return var


class OracleSession:
    """One pooled connection, borrowed for the lifetime of a request."""

    def __init__(self, conn: Any, pool: Any | None = None) -> None:
        self._conn = conn
        self._pool = pool
        self._released = False

    @property
    def connection(self) -> Any:
        return self._conn

    async def execute(self, sql: str, binds: BindMap | None = None, query_name: str | None = None) -> Dict[str, Any]:
        start = time.perf_counter()
        binds = binds or {}
        cursor = self._conn.cursor()
        try:
            params = {name: _to_param(cursor, bind) for name, bind in binds.items()}
            await cursor.execute(sql, params)
            out: Dict[str, Any] = {}
            for name, bind in binds.items():
                if bind.direction is Direction.IN:
                    continue
                value = params[name].getvalue()
                if bind.kind is BindKind.BLOB and value is not None:
                    value = await value.read()
                out[name] = value
        finally:
            cursor.close()
        elapsed_ms = (time.perf_counter() - start) * 1000
        add_db_ms(elapsed_ms)
        _log_query(query_name=query_name, binds=binds, elapsed_ms=elapsed_ms)
        return out

    async def create_lob(self, kind: BindKind = BindKind.BLOB) -> OracleLob:
        lob = await self._conn.createlob(_DB_TYPES[kind])
        return OracleLob(lob)

    async def commit(self) -> None:
        await self._conn.commit()

    async def rollback(self) -> None:
        await self._conn.rollback()

    async def release(self) -> None:
        if self._released:
            return
        self._released = True
        if self._pool is not None:
            await self._pool.release(self._conn)
        else:
            await self._conn.close()
        _logger.info("db_conn returned")


class OraclePool:
    def __init__(self, config: DatabaseConfig | None = None) -> None:
        self._config = config or load_database_config()
        self._pool: Any | None = None

    def _get_pool(self) -> Any:
        if self._pool is None:
            if not self._config.dsn:
                raise RuntimeError("WEBPLSQL_DB_DSN is required")
            self._pool = oracledb.create_pool_async(
                user=self._config.user,
                password=self._config.password,
                dsn=self._config.dsn,
                min=self._config.pool_min,
                max=self._config.pool_max,
                increment=1,
            )
        return self._pool

    async def acquire(self) -> OracleSession:
        pool = self._get_pool()
        acquire_start = time.perf_counter()
        conn = await pool.acquire()
        _logger.info("db_conn borrowed acquire_ms=%.1f", (time.perf_counter() - acquire_start) * 1000)
        return OracleSession(conn, pool)

    def stats(self) -> dict:
        if self._pool is None:
            return {"open": 0, "busy": 0, "max": self._config.pool_max}
        return {"open": self._pool.opened, "busy": self._pool.busy, "max": self._pool.max}

    async def close(self) -> None:
        if self._pool is not None:
            await self._pool.close()
            self._pool = None
