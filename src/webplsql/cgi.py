"""CGI environment construction for OWA sessions."""

from __future__ import annotations

import socket
from dataclasses import dataclass, field
from typing import Dict, Mapping
from urllib.parse import urlsplit


Environment = Dict[str, str]

DEFAULT_CGI: Environment = {
    "PLSQL_GATEWAY": "WebDb",
    "GATEWAY_IVERSION": "2",
    "SERVER_SOFTWARE": "web_plsql",
    "GATEWAY_INTERFACE": "CGI/1.1",
    "SERVER_PORT": "",
    "SERVER_NAME": socket.gethostname(),
    "REQUEST_METHOD": "",
    "PATH_INFO": "",
    "SCRIPT_NAME": "",
    "REMOTE_ADDR": "",
    "SERVER_PROTOCOL": "",
    "REQUEST_PROTOCOL": "",
    "REMOTE_USER": "",
    "AUTH_TYPE": "",
    "HTTP_COOKIE": "",
    "HTTP_USER_AGENT": "",
    "HTTP_HOST": "",
    "HTTP_ACCEPT": "",
    "HTTP_ACCEPT_ENCODING": "",
    "HTTP_ACCEPT_LANGUAGE": "",
    "HTTP_REFERER": "",
    "HTTP_X_FORWARDED_FOR": "",
    "WEB_AUTHENT_PREFIX": "",
    "DAD_NAME": "",
    "DOC_ACCESS_PATH": "doc",
    "DOCUMENT_TABLE": "",
    "PATH_ALIAS": "",
    "REQUEST_CHARSET": "UTF8",
    "REQUEST_IANA_CHARSET": "UTF-8",
    "SCRIPT_PREFIX": "",
}

_HEADER_KEYS = {
    "HTTP_USER_AGENT": "user-agent",
    "HTTP_HOST": "host",
    "HTTP_ACCEPT": "accept",
    "HTTP_ACCEPT_ENCODING": "accept-encoding",
    "HTTP_ACCEPT_LANGUAGE": "accept-language",
    "HTTP_REFERER": "referer",
    "HTTP_X_FORWARDED_FOR": "x-forwarded-for",
}


@dataclass
class RequestView:
    """The parts of an HTTP request the CGI environment is derived from."""

    method: str
    url: str
    procedure: str = ""
    protocol: str | None = None
    http_version: str | None = None
    client_ip: str | None = None
    local_port: int | None = None
    headers: Mapping[str, str] = field(default_factory=dict)
    cookies: Mapping[str, str] = field(default_factory=dict)

    def header(self, name: str) -> str:
        wanted = name.lower()
        for key, value in self.headers.items():
            if key.lower() == wanted:
                return value or ""
        return ""


@dataclass(frozen=True)
class ScriptPath:
    script: str
    prefix: str
    dad: str


def _trim_slashes(value: str) -> str:
    return value.strip("/")


def split_script_path(url: str) -> ScriptPath:
    """Derive SCRIPT_NAME, SCRIPT_PREFIX and DAD_NAME from a request URL.

    ``/pls/base/package.procedure?p=1`` gives ``/pls/base``, ``/pls`` and
    ``base``.
    """
    pathname = urlsplit(url).path or "/"
    directory = _trim_slashes(pathname[: pathname.rfind("/") + 1])
    head, sep, tail = directory.partition("/")
    prefix = f"/{head}" if sep else "/"
    return ScriptPath(script=f"/{directory}", prefix=prefix, dad=tail if sep else directory)


def cookie_string(cookies: Mapping[str, str]) -> str:
    return "".join(f"{name}={value};" for name, value in cookies.items())


def build_environment(
    view: RequestView,
    document_table: str,
    overrides: Mapping[str, str] | None = None,
    authenticated_user: str | None = None,
) -> Environment:
    protocol = (view.protocol or "").upper()
    path = split_script_path(view.url)
    computed: Environment = {
        "SERVER_PORT": str(view.local_port) if isinstance(view.local_port, int) else "",
        "REQUEST_METHOD": view.method or "",
        "PATH_INFO": view.procedure or "",
        "SCRIPT_NAME": path.script,
        "REMOTE_ADDR": (view.client_ip or "").replace("::ffff:", ""),
        "SERVER_PROTOCOL": f"{protocol}/{view.http_version}" if protocol and view.http_version else protocol,
        "REQUEST_PROTOCOL": protocol,
        "HTTP_COOKIE": cookie_string(view.cookies or {}),
        "DAD_NAME": path.dad,
        "DOCUMENT_TABLE": document_table or "",
        "SCRIPT_PREFIX": path.prefix,
    }
    for key, header in _HEADER_KEYS.items():
        computed[key] = view.header(header)
    if authenticated_user:
        computed["REMOTE_USER"] = authenticated_user
        computed["AUTH_TYPE"] = "Basic"

    environment = dict(DEFAULT_CGI)
    environment.update(computed)
    for key, value in (overrides or {}).items():
        environment[key] = "" if value is None else str(value)
    return environment
