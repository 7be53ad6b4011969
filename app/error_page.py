"""Error rendering shared by every failure path of the handler."""

from __future__ import annotations

import json
import logging
import traceback
from datetime import datetime, timezone
from typing import Any, Dict, List

from jinja2 import Environment, select_autoescape
from starlette.requests import Request
from starlette.responses import HTMLResponse, PlainTextResponse, Response

from app.config import ERROR_STYLE_DEBUG, HandlerConfig
from app.db import redact_binds
from app.errors import ProcedureError, RequestError, error_to_string
from webplsql.binds import describe_binds

_logger = logging.getLogger("webplsql.error")

SEPARATOR = "=" * 100

_ERROR_TEMPLATE = """<!DOCTYPE html>
<html>
<head>
<meta charset="utf-8">
<title>{{ title }}</title>
<style>
body { font-family: monospace; margin: 1em 2em; }
h1 { font-size: 1.2em; }
h2 { font-size: 1em; border-bottom: 1px solid #999; }
pre { white-space: pre-wrap; }
table { border-collapse: collapse; }
td, th { border: 1px solid #ccc; padding: 2px 6px; text-align: left; vertical-align: top; }
</style>
</head>
<body>
<h1>{{ title }}</h1>
<h2>ERROR</h2>
<pre>{{ message }}</pre>
<h2>REQUEST</h2>
<table>
{% for key, value in request_info %}<tr><th>{{ key }}</th><td>{{ value }}</td></tr>
{% endfor %}</table>
{% if sql %}<h2>PROCEDURE</h2>
<pre>{{ sql }}</pre>
<table>
<tr><th>name</th><th>direction</th><th>type</th><th>value</th></tr>
{% for bind in binds %}<tr><td>{{ bind.name }}</td><td>{{ bind.dir }}</td><td>{{ bind.type }}</td><td>{{ bind.val }}</td></tr>
{% endfor %}</table>
{% endif %}{% if environment %}<h2>ENVIRONMENT</h2>
<table>
{% for key, value in environment %}<tr><th>{{ key }}</th><td>{{ value }}</td></tr>
{% endfor %}</table>
{% endif %}</body>
</html>
"""

_jinja = Environment(autoescape=select_autoescape(default=True, default_for_string=True))
_template = _jinja.from_string(_ERROR_TEMPLATE)


def _request_info(request: Request) -> List[tuple[str, str]]:
    client = request.client.host if request.client else ""
    return [
        ("method", request.method),
        ("url", str(request.url)),
        ("client", client),
        ("user-agent", request.headers.get("user-agent", "")),
    ]


def get_error_data(error: BaseException) -> Dict[str, Any]:
    data: Dict[str, Any] = {
        "timestamp": datetime.now(timezone.utc),
        "kind": type(error).__name__,
        "message": error_to_string(error),
        "environment": None,
        "sql": None,
        "binds": None,
    }
    if isinstance(error, (ProcedureError, RequestError)):
        data["timestamp"] = error.timestamp
        data["message"] = error.message
    if isinstance(error, ProcedureError):
        data["environment"] = error.environment or None
        data["sql"] = error.sql or None
        data["binds"] = error.binds or None
    if not isinstance(error, RequestError):
        trace = "".join(traceback.format_exception(type(error), error, error.__traceback__))
        data["message"] = f"{data['message']}\n{trace}".rstrip()
    return data


def format_text(data: Dict[str, Any], request: Request) -> str:
    lines = [
        "",
        SEPARATOR,
        f"== ERROR at {data['timestamp'].strftime('%a, %d %b %Y %H:%M:%S GMT')} on {request.url.path}",
        SEPARATOR,
        "ERROR",
        data["message"],
        "REQUEST",
    ]
    lines.extend(f"{key}: {value}" for key, value in _request_info(request))
    if data["sql"]:
        lines.extend(["PROCEDURE", data["sql"]])
        lines.extend(f"{bind['name']}: {bind}" for bind in describe_binds(data["binds"]))
    if data["environment"]:
        lines.append("ENVIRONMENT")
        lines.extend(f"{key}={value}" for key, value in data["environment"].items())
    return "\n".join(lines)


def render_html(data: Dict[str, Any], request: Request) -> str:
    return _template.render(
        title=f"ERROR at {data['timestamp'].strftime('%a, %d %b %Y %H:%M:%S GMT')} on {request.url.path}",
        message=data["message"],
        request_info=_request_info(request),
        sql=data["sql"],
        binds=describe_binds(data["binds"]),
        environment=sorted((data["environment"] or {}).items()),
    )


def render_error(request: Request, config: HandlerConfig, error: BaseException) -> Response:
    data = get_error_data(error)
    first_line = data["message"].split("\n", 1)[0]
    details = {
        "timestamp": data["timestamp"].isoformat(),
        "type": data["kind"],
        "message": first_line,
        "req": {
            "method": request.method,
            "url": str(request.url),
            "ip": request.client.host if request.client else "",
            "user_agent": request.headers.get("user-agent", ""),
        },
        "sql": data["sql"],
        "binds": redact_binds(data["binds"]),
    }
    text = format_text(data, request)
    if isinstance(error, RequestError):
        _logger.warning("request_error=%s%s", json.dumps(details, default=str), text)
    else:
        _logger.error("error=%s%s", json.dumps(details, default=str), text)

    if config.error_style == ERROR_STYLE_DEBUG:
        return HTMLResponse(render_html(data, request), status_code=404)
    return PlainTextResponse("Page not found", status_code=404)
