"""Environment-driven configuration for the PL/SQL handler."""

from __future__ import annotations

import os
import secrets
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional, Union

from webplsql.cache import DEFAULT_CACHE_MAX_SIZE

ROOT = Path(__file__).resolve().parents[1]

TRANSACTION_COMMIT = "commit"
TRANSACTION_ROLLBACK = "rollback"
ERROR_STYLE_BASIC = "basic"
ERROR_STYLE_DEBUG = "debug"
DEFAULT_CHUNK_SIZE = 1000

TransactionCallback = Callable[[Any, str], Union[None, Awaitable[None]]]
AuthCallback = Callable[[str, str], Union[Optional[str], Awaitable[Optional[str]]]]


def load_env_file(path: Path) -> None:
    if not path.exists():
        return
    for line in path.read_text(encoding="utf-8").splitlines():
        line = line.strip()
        if not line or line.startswith("#") or "=" not in line:
            continue
        key, value = line.split("=", 1)
        key = key.strip()
        value = value.strip().strip('"').strip("'")
        if key and key not in os.environ:
            os.environ[key] = value


def _env(name: str, default: str = "") -> str:
    return os.getenv(name, default).strip()


def _env_int(name: str, default: int) -> int:
    raw = _env(name)
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError as exc:
        raise RuntimeError(f"{name} must be an integer, got {raw!r}") from exc


def _env_list(name: str) -> List[str]:
    return [item.strip().lower() for item in _env(name).split(",") if item.strip()]


def _env_users(name: str) -> Dict[str, str]:
    users: Dict[str, str] = {}
    for item in _env(name).split(","):
        if ":" not in item:
            continue
        user, password = item.split(":", 1)
        if user.strip():
            users[user.strip()] = password
    return users


@dataclass
class DatabaseConfig:
    user: str = ""
    password: str = ""
    dsn: str = ""
    pool_min: int = 1
    pool_max: int = 10


@dataclass
class HandlerConfig:
    route: str = "pls"
    default_page: str = ""
    path_alias: str = ""
    path_alias_procedure: str = ""
    document_table: str = ""
    exclusion_list: List[str] = field(default_factory=list)
    request_validation_function: str = ""
    transaction_mode: Union[str, TransactionCallback] = TRANSACTION_COMMIT
    error_style: str = ERROR_STYLE_BASIC
    cgi: Dict[str, str] = field(default_factory=dict)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    cache_max_size: int = DEFAULT_CACHE_MAX_SIZE
    auth_callback: Optional[AuthCallback] = None
    auth_realm: str = "PL/SQL Gateway"
    admin_user: str = ""
    admin_password: str = ""

    def __post_init__(self) -> None:
        self.route = self.route.strip("/")
        if not self.route:
            raise ValueError("route must not be empty")
        if self.error_style not in (ERROR_STYLE_BASIC, ERROR_STYLE_DEBUG):
            raise ValueError(f"error_style must be '{ERROR_STYLE_BASIC}' or '{ERROR_STYLE_DEBUG}'")
        if isinstance(self.transaction_mode, str) and self.transaction_mode not in (TRANSACTION_COMMIT, TRANSACTION_ROLLBACK):
            raise ValueError(f"transaction_mode must be '{TRANSACTION_COMMIT}', '{TRANSACTION_ROLLBACK}' or a callable")
        if self.path_alias and not self.path_alias_procedure:
            raise ValueError("path_alias requires path_alias_procedure")
        if self.chunk_size < 1:
            raise ValueError("chunk_size must be positive")
        if bool(self.admin_user) != bool(self.admin_password):
            raise ValueError("admin_user and admin_password must be set together")

    @property
    def admin_enabled(self) -> bool:
        return bool(self.admin_user and self.admin_password)


def static_auth(users: Dict[str, str]) -> AuthCallback:
    def check(username: str, password: str) -> Optional[str]:
        expected = users.get(username)
        if expected is not None and secrets.compare_digest(expected.encode("utf-8"), password.encode("utf-8")):
            return username
        return None

    return check


def load_database_config() -> DatabaseConfig:
    return DatabaseConfig(
        user=_env("WEBPLSQL_DB_USER"),
        password=os.getenv("WEBPLSQL_DB_PASSWORD", ""),
        dsn=_env("WEBPLSQL_DB_DSN"),
        pool_min=_env_int("WEBPLSQL_DB_POOL_MIN", 1),
        pool_max=_env_int("WEBPLSQL_DB_POOL_MAX", 10),
    )


def load_config() -> HandlerConfig:
    cgi = {
        key[len("WEBPLSQL_CGI_") :]: value
        for key, value in os.environ.items()
        if key.startswith("WEBPLSQL_CGI_") and len(key) > len("WEBPLSQL_CGI_")
    }
    users = _env_users("WEBPLSQL_AUTH_USERS")
    return HandlerConfig(
        route=_env("WEBPLSQL_ROUTE", "pls") or "pls",
        default_page=_env("WEBPLSQL_DEFAULT_PAGE"),
        path_alias=_env("WEBPLSQL_PATH_ALIAS"),
        path_alias_procedure=_env("WEBPLSQL_PATH_ALIAS_PROCEDURE"),
        document_table=_env("WEBPLSQL_DOCUMENT_TABLE"),
        exclusion_list=_env_list("WEBPLSQL_EXCLUSION_LIST"),
        request_validation_function=_env("WEBPLSQL_REQUEST_VALIDATION_FUNCTION"),
        transaction_mode=_env("WEBPLSQL_TRANSACTION_MODE", TRANSACTION_COMMIT).lower() or TRANSACTION_COMMIT,
        error_style=_env("WEBPLSQL_ERROR_STYLE", ERROR_STYLE_BASIC).lower() or ERROR_STYLE_BASIC,
        cgi=cgi,
        chunk_size=_env_int("WEBPLSQL_CHUNK_SIZE", DEFAULT_CHUNK_SIZE),
        cache_max_size=_env_int("WEBPLSQL_CACHE_MAX_SIZE", DEFAULT_CACHE_MAX_SIZE),
        auth_callback=static_auth(users) if users else None,
        auth_realm=_env("WEBPLSQL_AUTH_REALM", "PL/SQL Gateway") or "PL/SQL Gateway",
        admin_user=_env("WEBPLSQL_ADMIN_USER"),
        admin_password=os.getenv("WEBPLSQL_ADMIN_PASSWORD", ""),
    )
