"""Web PL/SQL gateway kernel: cache, CGI environment, page parsing."""

from .binds import Bind, BindKind, Direction
from .cache import Cache
from .cgi import RequestView, build_environment
from .parse_page import Cookie, Page, PageParseError, parse_page

__all__ = [
    "Bind",
    "BindKind",
    "Cache",
    "Cookie",
    "Direction",
    "Page",
    "PageParseError",
    "RequestView",
    "build_environment",
    "parse_page",
]
