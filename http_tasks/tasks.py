"""Task operations - the caller-facing HTTP tasks.

Every task is a thin adapter over one Executor: it picks the request body,
the materialization and the result shape. HttpTasks owns the client cache, so
independent instances never share clients. The module-level functions use a
default instance created lazily for each event loop.

Usage:
    tasks = HttpTasks()
    result = await tasks.request(RequestInput(url="https://example.org"), Options())

    # Or through the default instance
    result = await request(RequestInput(url="https://example.org"), Options())
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from pathlib import Path

from http_tasks.client_cache import ClientCache
from http_tasks.client_factory import ClientBuilder, HttpxClientBuilder
from http_tasks.errors import ConfigurationError, DestinationExistsError, HttpErrorResponse
from http_tasks.executor import Executor
from http_tasks.headers import CONTENT_TYPE
from http_tasks.materializer import raise_for_error_policy, response_headers, to_bytes_result, to_result
from http_tasks.models import (
    BytesResult,
    DownloadInput,
    DownloadResult,
    Header,
    Method,
    Options,
    RequestBytesInput,
    RequestInput,
    RequestSpec,
    Result,
    ReturnFormat,
    SendBytesInput,
    UploadInput,
    UploadResponse,
)

logger = logging.getLogger(__name__)

BINARY_CONTENT_TYPE = "application/octet-stream"


def _raise_if_cancelled(cancel_event: asyncio.Event | None) -> None:
    if cancel_event is not None and cancel_event.is_set():
        raise asyncio.CancelledError("Request was cancelled by the caller")


def _with_default_content_type(headers: list[Header], content_type: str) -> list[Header]:
    """Append a Content-Type unless the caller supplied one."""
    if any(header.name.lower() == CONTENT_TYPE.lower() for header in headers):
        return headers
    return [*headers, Header(name=CONTENT_TYPE, value=content_type)]


class HttpTasks:
    """The HTTP tasks sharing one client cache.

    Args:
        builder: Transport client builder. Defaults to HttpxClientBuilder.
        cache: Client cache to use instead of building one around builder.
    """

    def __init__(self, builder: ClientBuilder | None = None, cache: ClientCache | None = None) -> None:
        self._cache = cache if cache is not None else ClientCache(builder or HttpxClientBuilder())
        self._executor = Executor(self._cache)

    @property
    def cache(self) -> ClientCache:
        return self._cache

    def clear_client_cache(self) -> None:
        """Forget every cached client; the next call builds a fresh one."""
        self._cache.clear()

    async def aclose(self) -> None:
        await self._cache.aclose()

    async def request(
        self,
        input: RequestInput,
        options: Options,
        cancel_event: asyncio.Event | None = None,
    ) -> Result:
        """Send a text request and return the body as text or parsed JSON."""
        spec = RequestSpec(method=input.method, url=input.url, headers=input.headers, body=input.message)
        response = await self._executor.execute(spec, options, cancel_event)
        _raise_if_cancelled(cancel_event)
        return to_result(response, input.return_format, input.url, options)

    async def request_bytes(
        self,
        input: RequestBytesInput,
        options: Options,
        cancel_event: asyncio.Event | None = None,
    ) -> BytesResult:
        """Send a text request and return the body as raw bytes."""
        spec = RequestSpec(method=input.method, url=input.url, headers=input.headers, body=input.message)
        response = await self._executor.execute(spec, options, cancel_event)
        _raise_if_cancelled(cancel_event)
        return to_bytes_result(response, input.url, options)

    async def send_bytes(
        self,
        input: SendBytesInput,
        options: Options,
        cancel_event: asyncio.Event | None = None,
    ) -> Result:
        """Send a raw byte body and return the response as text."""
        spec = RequestSpec(
            method=input.method,
            url=input.url,
            headers=_with_default_content_type(input.headers, BINARY_CONTENT_TYPE),
            body=input.content_bytes,
        )
        response = await self._executor.execute(spec, options, cancel_event)
        _raise_if_cancelled(cancel_event)
        return to_result(response, ReturnFormat.STRING, input.url, options)

    async def send_and_receive_bytes(
        self,
        input: SendBytesInput,
        options: Options,
        cancel_event: asyncio.Event | None = None,
    ) -> BytesResult:
        """Send a raw byte body and return the response as raw bytes."""
        spec = RequestSpec(
            method=input.method,
            url=input.url,
            headers=_with_default_content_type(input.headers, BINARY_CONTENT_TYPE),
            body=input.content_bytes,
        )
        response = await self._executor.execute(spec, options, cancel_event)
        _raise_if_cancelled(cancel_event)
        return to_bytes_result(response, input.url, options)

    async def download_file(
        self,
        input: DownloadInput,
        options: Options,
        cancel_event: asyncio.Event | None = None,
    ) -> DownloadResult:
        """Stream a GET response body into input.file_path.

        The body is written to a temporary file next to the destination and
        moved into place once complete, so an existing destination is either
        fully replaced or left untouched.

        Raises:
            DestinationExistsError: The destination exists and overwrite is off.
            HttpErrorResponse: Non-success status with throw_exception_on_error_response.
        """
        destination = Path(input.file_path)
        if destination.exists() and not input.overwrite:
            raise DestinationExistsError(str(destination))

        spec = RequestSpec(method=Method.GET, url=input.url, headers=input.headers)
        response = await self._executor.execute(spec, options, cancel_event, stream=True)
        try:
            if not response.is_success and options.throw_exception_on_error_response:
                await response.aread()
                raise HttpErrorResponse(input.url, response.status_code, response.text)

            destination.parent.mkdir(parents=True, exist_ok=True)
            fd, partial_name = tempfile.mkstemp(prefix=f".{destination.name}.", suffix=".part", dir=destination.parent)
            partial = Path(partial_name)
            try:
                with os.fdopen(fd, "wb") as f:
                    async for chunk in response.aiter_bytes():
                        _raise_if_cancelled(cancel_event)
                        f.write(chunk)

                if destination.exists() and not input.overwrite:
                    raise DestinationExistsError(str(destination))
                os.replace(partial, destination)
            except BaseException:
                partial.unlink(missing_ok=True)
                raise
        finally:
            await response.aclose()

        logger.debug("Downloaded file", extra={"url": input.url, "file_path": str(destination)})
        return DownloadResult(success=response.is_success, file_path=str(destination))

    async def upload_file(
        self,
        input: UploadInput,
        options: Options,
        cancel_event: asyncio.Event | None = None,
    ) -> UploadResponse:
        """Send a local file as the request body and return the response as text."""
        path = Path(input.file_path)
        if not path.is_file():
            raise ConfigurationError(f"File '{path}' not found.")

        spec = RequestSpec(
            method=input.method,
            url=input.url,
            headers=_with_default_content_type(input.headers, BINARY_CONTENT_TYPE),
            body=path.read_bytes(),
        )
        response = await self._executor.execute(spec, options, cancel_event)
        _raise_if_cancelled(cancel_event)

        body = response.text if response.content else ""
        upload_response = UploadResponse(
            body=body, headers=response_headers(response), status_code=response.status_code
        )
        raise_for_error_policy(response, input.url, options, body)
        return upload_response


_default_tasks: HttpTasks | None = None
_default_loop: asyncio.AbstractEventLoop | None = None


def _running_loop() -> asyncio.AbstractEventLoop | None:
    try:
        return asyncio.get_running_loop()
    except RuntimeError:
        return None


def default_tasks() -> HttpTasks:
    """The HttpTasks used by the module-level functions.

    Pooled connections belong to the event loop that opened them, so a fresh
    instance replaces the current one when called from a different loop. This
    keeps hosts that run each call with asyncio.run working.
    """
    global _default_tasks, _default_loop
    loop = _running_loop()
    if _default_tasks is None or (loop is not None and loop is not _default_loop):
        if _default_tasks is not None:
            logger.debug("Event loop changed, replacing the default HTTP tasks instance")
        _default_tasks = HttpTasks()
        _default_loop = loop
    return _default_tasks


async def request(
    input: RequestInput, options: Options, cancel_event: asyncio.Event | None = None
) -> Result:
    return await default_tasks().request(input, options, cancel_event)


async def request_bytes(
    input: RequestBytesInput, options: Options, cancel_event: asyncio.Event | None = None
) -> BytesResult:
    return await default_tasks().request_bytes(input, options, cancel_event)


async def send_bytes(
    input: SendBytesInput, options: Options, cancel_event: asyncio.Event | None = None
) -> Result:
    return await default_tasks().send_bytes(input, options, cancel_event)


async def send_and_receive_bytes(
    input: SendBytesInput, options: Options, cancel_event: asyncio.Event | None = None
) -> BytesResult:
    return await default_tasks().send_and_receive_bytes(input, options, cancel_event)


async def download_file(
    input: DownloadInput, options: Options, cancel_event: asyncio.Event | None = None
) -> DownloadResult:
    return await default_tasks().download_file(input, options, cancel_event)


async def upload_file(
    input: UploadInput, options: Options, cancel_event: asyncio.Event | None = None
) -> UploadResponse:
    return await default_tasks().upload_file(input, options, cancel_event)


def clear_client_cache() -> None:
    """Reset the default instance's client cache."""
    default_tasks().clear_client_cache()
