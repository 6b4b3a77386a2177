"""Executor - sends one HTTP request over a cached client.

The Executor validates the URL, composes headers, fetches the client for the
options from the ClientCache and sends the request. Transport failures are
normalized into RequestTimeout / TransportError; caller cancellation
propagates as asyncio.CancelledError.
"""

from __future__ import annotations

import asyncio
import logging
import re

import httpx

from http_tasks.client_cache import ClientCache
from http_tasks.errors import ConfigurationError, EmptyUrlError, RequestTimeout, TransportError
from http_tasks.headers import (
    CONTENT_TYPE,
    HeaderMap,
    compose_headers,
    content_type_charset,
    encode_text_body,
    strip_charset,
)
from http_tasks.models import Method, Options, RequestSpec

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({Method.POST, Method.PUT, Method.PATCH, Method.DELETE})

# Headers describing the body rather than the request.
CONTENT_HEADERS = frozenset({
    "allow",
    "content-disposition",
    "content-encoding",
    "content-language",
    "content-length",
    "content-location",
    "content-md5",
    "content-range",
    "content-type",
    "expires",
    "last-modified",
})

# RFC 7230 token characters
_HEADER_NAME = re.compile(r"^[!#$%&'*+\-.^_`|~0-9A-Za-z]+$")


def method_allows_body(method: Method) -> bool:
    """Whether requests with this verb carry a body."""
    return method in BODY_METHODS


def _require_url(url: str | None) -> str:
    if not url or not url.strip():
        raise EmptyUrlError()
    return url.strip()


def _raw_header(name: str, value: str, encoding: str) -> tuple[bytes, bytes] | None:
    """Encode a header for the wire, or None if it cannot be sent as-is."""
    if not _HEADER_NAME.match(name) or any(char in value for char in "\r\n\0"):
        return None
    try:
        return name.encode("ascii"), value.encode(encoding)
    except UnicodeEncodeError:
        return None


def _attachable_headers(headers: HeaderMap, has_body: bool) -> list[tuple[bytes, bytes]]:
    """Convert composed headers into raw pairs, dropping the ones that cannot be sent.

    A header is first tried as a request header (ASCII value). When that
    fails and the request has a body it is tried as a body header, which
    accepts opaque Latin-1 values. Failures are logged and skipped.
    """
    attached: list[tuple[bytes, bytes]] = []
    for name, value in headers.items():
        if name.lower() in CONTENT_HEADERS and not has_body:
            logger.debug("Dropping body header %s on a request without body", name)
            continue

        raw = _raw_header(name, value, "ascii")
        if raw is None and has_body:
            raw = _raw_header(name, value, "latin-1")
        if raw is None:
            logger.warning("Could not add header %s:%s", name, value)
            continue
        attached.append(raw)
    return attached


def _encode_body(body: str | bytes | None, headers: HeaderMap) -> bytes:
    if isinstance(body, bytes):
        return body
    return encode_text_body(body, headers)


async def _send_cancellable(
    client: httpx.AsyncClient,
    request: httpx.Request,
    cancel_event: asyncio.Event | None,
    stream: bool,
) -> httpx.Response:
    """Send the request, aborting it if cancel_event is set first."""
    send = asyncio.ensure_future(client.send(request, stream=stream))
    if cancel_event is None:
        return await send

    waiter = asyncio.ensure_future(cancel_event.wait())
    try:
        done, _ = await asyncio.wait({send, waiter}, return_when=asyncio.FIRST_COMPLETED)
    finally:
        waiter.cancel()
        if not send.done():
            send.cancel()

    if send in done:
        return send.result()
    raise asyncio.CancelledError("Request was cancelled by the caller")


async def send(
    client: httpx.AsyncClient,
    method: Method,
    url: str,
    body: str | bytes | None,
    headers: HeaderMap,
    options: Options,
    cancel_event: asyncio.Event | None = None,
    stream: bool = False,
) -> httpx.Response:
    """Send a single request.

    Args:
        client: Client from the ClientCache.
        method: HTTP verb. Bodies are dropped for verbs that carry none.
        url: Absolute URL.
        body: Text body (encoded with the Content-Type charset) or raw bytes.
        headers: Composed request headers; they override client defaults.
        options: Task options.
        cancel_event: Setting it aborts the call with asyncio.CancelledError.
        stream: Return without reading the body (caller must close the response).

    Returns:
        The httpx response.

    Raises:
        EmptyUrlError: If url is empty.
        ConfigurationError: If url is malformed.
        RequestTimeout: If the transport timed out.
        TransportError: If the request failed below HTTP.
        asyncio.CancelledError: If the caller cancelled.
    """
    url = _require_url(url)
    if cancel_event is not None and cancel_event.is_set():
        raise asyncio.CancelledError("Request was cancelled by the caller")

    has_body = method_allows_body(method)
    content = _encode_body(body, headers) if has_body else None

    try:
        request = client.build_request(
            method.value,
            url,
            headers=_attachable_headers(headers, has_body),
            content=content,
        )
    except httpx.InvalidURL as e:
        raise ConfigurationError(f"Invalid url '{url}': {e}") from e

    if not has_body:
        # Client defaults describe bodies; a bodyless request must not carry them.
        request.headers.pop(CONTENT_TYPE, None)

    logger.debug("Sending request", extra={"method": method.value, "url": url})

    try:
        response = await _send_cancellable(client, request, cancel_event, stream)
    except httpx.TimeoutException as e:
        raise RequestTimeout("HTTP request was canceled, most likely due to a timeout.") from e
    except httpx.RequestError as e:
        raise TransportError(f"Request to '{url}' failed: {e}") from e

    if options.allow_invalid_response_content_type_charset:
        content_type = response.headers.get(CONTENT_TYPE)
        if content_type and content_type_charset(content_type):
            response.headers[CONTENT_TYPE] = strip_charset(content_type)

    return response


class Executor:
    """Runs RequestSpecs through the client cache.

    Usage:
        executor = Executor(ClientCache(HttpxClientBuilder()))
        response = await executor.execute(spec, options)
    """

    def __init__(self, cache: ClientCache) -> None:
        self._cache = cache

    @property
    def cache(self) -> ClientCache:
        return self._cache

    async def execute(
        self,
        spec: RequestSpec,
        options: Options,
        cancel_event: asyncio.Event | None = None,
        stream: bool = False,
    ) -> httpx.Response:
        """Execute one request.

        The URL is validated before the cache is touched, so an empty URL
        never builds a client.
        """
        _require_url(spec.url)
        headers = compose_headers(spec.headers, options)
        client = self._cache.get_or_create(options)
        return await send(
            client,
            spec.method,
            spec.url,
            spec.body,
            headers,
            options,
            cancel_event=cancel_event,
            stream=stream,
        )
