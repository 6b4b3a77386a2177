"""Response Materializer - turns httpx responses into task results.

Bodies are materialized as text, parsed JSON or raw bytes. After
materialization the error policy runs: a non-success status raises
HttpErrorResponse only when throw_exception_on_error_response is set.
"""

from __future__ import annotations

import json
from typing import Any

import httpx

from http_tasks.errors import HttpErrorResponse, ResponseParseError
from http_tasks.executor import CONTENT_HEADERS
from http_tasks.headers import CONTENT_TYPE
from http_tasks.models import BytesResult, Options, Result, ReturnFormat


def _merge_into(target: dict[str, str], pairs: list[tuple[str, str]]) -> None:
    """Merge pairs into target; names compare case-insensitively, values join with ';'."""
    spelling = {name.lower(): name for name in target}
    grouped: dict[str, list[str]] = {}
    for name, value in pairs:
        key = name.lower()
        if key not in spelling:
            spelling[key] = name
        grouped.setdefault(key, []).append(value)

    for key, values in grouped.items():
        target[spelling[key]] = ";".join(values)


def response_headers(response: httpx.Response) -> dict[str, str]:
    """Combine response and content headers into one map.

    Names keep the spelling they were received with. Content headers are
    applied after the others, so they win on a collision.
    """
    encoding = response.headers.encoding
    general: list[tuple[str, str]] = []
    content: list[tuple[str, str]] = []
    for raw_name, raw_value in response.headers.raw:
        name = raw_name.decode(encoding)
        value = raw_value.decode(encoding)
        (content if name.lower() in CONTENT_HEADERS else general).append((name, value))

    headers: dict[str, str] = {}
    _merge_into(headers, general)
    _merge_into(headers, content)
    return headers


def parse_structured(text: str | None) -> Any:
    """Parse a body as JSON. Blank bodies become an empty string.

    Raises:
        ResponseParseError: If the text is not valid JSON.
    """
    if text is None or not text.strip():
        return ""
    try:
        return json.loads(text)
    except json.JSONDecodeError as e:
        raise ResponseParseError(text) from e


def raise_for_error_policy(
    response: httpx.Response, url: str, options: Options, body: str | None = None
) -> None:
    """Raise HttpErrorResponse for non-success responses if the options ask for it."""
    if not response.is_success and options.throw_exception_on_error_response:
        raise HttpErrorResponse(url, response.status_code, body)


def to_result(
    response: httpx.Response,
    return_format: ReturnFormat,
    url: str,
    options: Options,
) -> Result:
    """Materialize a read response as text or parsed JSON."""
    text = response.text if response.content else None

    if return_format == ReturnFormat.STRUCTURED:
        body: Any = parse_structured(text)
    else:
        body = text

    result = Result(body=body, headers=response_headers(response), status_code=response.status_code)
    raise_for_error_policy(response, url, options, text if text is not None else "")
    return result


def to_bytes_result(response: httpx.Response, url: str, options: Options) -> BytesResult:
    """Materialize a read response as raw bytes."""
    result = BytesResult(
        body=response.content,
        content_type=response.headers.get(CONTENT_TYPE),
        headers=response_headers(response),
        status_code=response.status_code,
    )
    raise_for_error_policy(response, url, options)
    return result
