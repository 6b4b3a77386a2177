"""Header Composer - builds the outbound header set for a request.

User headers come first; an Authorization header is synthesized from the
options only when the user did not supply one. Charset helpers pick the
encoding of text request bodies from the caller's Content-Type.
"""

from __future__ import annotations

import base64
import codecs
import logging
import re
from collections.abc import Iterable, Iterator, MutableMapping

from http_tasks.models import Authentication, Header, Options

logger = logging.getLogger(__name__)

AUTHORIZATION = "Authorization"
CONTENT_TYPE = "Content-Type"

_CHARSET_PARAM = re.compile(r';\s*charset\s*=\s*"?([^";\s]+)"?', re.IGNORECASE)


class HeaderMap(MutableMapping[str, str]):
    """Case-insensitive name -> value mapping.

    The first spelling of a name is kept for sending; later writes with a
    different case replace the value only (last write wins).
    """

    def __init__(self, items: Iterable[tuple[str, str]] = ()) -> None:
        self._store: dict[str, tuple[str, str]] = {}
        for name, value in items:
            self[name] = value

    def __getitem__(self, name: str) -> str:
        return self._store[name.lower()][1]

    def __setitem__(self, name: str, value: str) -> None:
        key = name.lower()
        existing = self._store.get(key)
        self._store[key] = (existing[0] if existing else name, value)

    def __delitem__(self, name: str) -> None:
        del self._store[name.lower()]

    def __iter__(self) -> Iterator[str]:
        return (name for name, _ in self._store.values())

    def __len__(self) -> int:
        return len(self._store)

    def __repr__(self) -> str:
        return f"HeaderMap({list(self.items())!r})"


def basic_authorization(username: str | None, password: str | None) -> str:
    """Return a Basic Authorization value for username:password.

    Characters outside ASCII are sent as "?".
    """
    credentials = f"{username or ''}:{password or ''}".encode("ascii", errors="replace")
    return "Basic " + base64.b64encode(credentials).decode("ascii")


def compose_headers(headers: Iterable[Header] | None, options: Options) -> HeaderMap:
    """Build the effective request headers.

    Args:
        headers: User supplied headers, in order. None means no headers.
        options: Task options; Basic and OAuth authentication synthesize an
            Authorization header.

    Returns:
        Case-insensitive header map. A user Authorization header is never
        replaced or duplicated.
    """
    header_list = list(headers or [])

    if not any(header.name.lower() == AUTHORIZATION.lower() for header in header_list):
        if options.authentication == Authentication.BASIC:
            header_list.append(
                Header(name=AUTHORIZATION, value=basic_authorization(options.username, options.password))
            )
        elif options.authentication == Authentication.OAUTH:
            header_list.append(Header(name=AUTHORIZATION, value=f"Bearer {options.token or ''}"))

    return HeaderMap((header.name, header.value) for header in header_list)


def content_type_charset(content_type: str | None) -> str | None:
    """Return the charset parameter of a Content-Type value, if any."""
    if not content_type:
        return None
    match = _CHARSET_PARAM.search(content_type)
    return match.group(1) if match else None


def strip_charset(content_type: str) -> str:
    """Remove the charset parameter from a Content-Type value."""
    return _CHARSET_PARAM.sub("", content_type).strip()


def encode_text_body(text: str | None, headers: HeaderMap) -> bytes:
    """Encode a text body with the charset named by the caller's Content-Type.

    Falls back to UTF-8 when no charset is declared or the name is unknown.
    Characters the charset cannot represent are replaced with "?".
    """
    charset = content_type_charset(headers.get(CONTENT_TYPE))
    encoding = "utf-8"
    if charset:
        try:
            encoding = codecs.lookup(charset).name
        except LookupError:
            logger.warning("Unknown request charset %r, encoding body as utf-8", charset)
    return (text or "").encode(encoding, errors="replace")
