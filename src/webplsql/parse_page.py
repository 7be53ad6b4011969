"""Parser for the header block emitted by the PL/SQL Web Toolkit."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from email.utils import parsedate_to_datetime
from typing import Any, Dict, List

_logger = logging.getLogger("webplsql.parse_page")

_LEADING_INT_RE = re.compile(r"^[+-]?\d+")

FILE_TYPE_BLOB = "B"
FILE_TYPE_FILE = "F"
FILE_DOWNLOAD_TYPES = (FILE_TYPE_BLOB, FILE_TYPE_FILE)


class PageParseError(ValueError):
    """Raised when the toolkit output holds a malformed header."""


@dataclass
class CookieOptions:
    path: str | None = None
    domain: str | None = None
    secure: bool | None = None
    expires: datetime | None = None
    httponly: bool | None = None


@dataclass
class Cookie:
    name: str
    value: str
    options: CookieOptions = field(default_factory=CookieOptions)


@dataclass
class PageHead:
    cookies: List[Cookie] = field(default_factory=list)
    content_type: str | None = None
    content_length: int | None = None
    status_code: int | None = None
    status_description: str | None = None
    redirect_location: str | None = None
    other_headers: Dict[str, str] = field(default_factory=dict)


@dataclass
class PageFile:
    file_type: str | None = None
    file_size: int | None = None
    file_blob: bytes | None = None

    @property
    def is_download(self) -> bool:
        return self.file_type in FILE_DOWNLOAD_TYPES


@dataclass
class Page:
    head: PageHead = field(default_factory=PageHead)
    # str right after parsing; replaced by the live page stream for normal pages
    body: Any = ""
    file: PageFile = field(default_factory=PageFile)


def _split_header(line: str) -> tuple[str, str] | None:
    name, sep, value = line.partition(":")
    if not sep:
        return None
    return name.strip(), value.strip()


def _leading_int(value: str) -> int | None:
    match = _LEADING_INT_RE.match(value.strip())
    return int(match.group(0)) if match else None


def _parse_date(value: str) -> datetime | None:
    try:
        return parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None


def parse_cookie(text: str) -> Cookie | None:
    """Parse a ``Set-Cookie`` value; ``None`` when there is no usable name."""
    if not isinstance(text, str) or not text.strip():
        return None
    elements = [element.strip() for element in text.split(";")]
    first = elements[0]
    index = first.find("=")
    if index <= 0:
        return None
    cookie = Cookie(name=first[:index].strip(), value=first[index + 1 :].strip())
    if not cookie.name:
        return None
    for element in elements[1:]:
        lower = element.lower()
        if lower.startswith("path="):
            cookie.options.path = element[5:]
        elif lower.startswith("domain="):
            cookie.options.domain = element[7:]
        elif lower.startswith("secure"):
            cookie.options.secure = True
        elif lower.startswith("expires="):
            expires = _parse_date(element[8:])
            if expires is not None:
                cookie.options.expires = expires
        elif lower.startswith("httponly"):
            cookie.options.httponly = True
    return cookie


def parse_page(text: str) -> Page:
    page = Page()

    marker = text.find("\n\n")
    if marker == -1:
        head = text
    else:
        head = text[: marker + 2]
        page.body = text[marker + 2 :]

    for line in head.split("\n"):
        header = _split_header(line)
        if header is None:
            continue
        name, value = header
        key = name.lower()
        if key == "set-cookie":
            cookie = parse_cookie(value)
            if cookie is None:
                raise PageParseError(f'Unable to parse header "set-cookie" with value "{value}" received from PL/SQL')
            page.head.cookies.append(cookie)
        elif key == "content-type":
            page.head.content_type = value
        elif key == "x-db-content-length":
            length = _leading_int(value)
            if length is None:
                raise PageParseError(f'Unable to parse header "x-db-content-length" with value "{value}" received from PL/SQL')
            page.head.content_length = length
        elif key == "status":
            code = _leading_int(value)
            if code is None:
                raise PageParseError(f'Unable to parse header "status" with value "{value}" received from PL/SQL')
            page.head.status_code = code
            _, sep, description = value.partition(" ")
            if sep:
                page.head.status_description = description
        elif key == "location":
            page.head.redirect_location = value
        elif key == "x-oracle-ignore":
            continue
        else:
            page.head.other_headers[name] = value
        _logger.debug("page_header name=%s value=%s", name, value)

    return page
