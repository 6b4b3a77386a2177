"""Data models for http-tasks.

All models use Pydantic v2. Inputs and Options are frozen: they are built
per call and never change while the call runs.
"""

from __future__ import annotations

from enum import Enum
from typing import Annotated, Any

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field, computed_field, field_validator


# =============================================================================
# Enumerations
# =============================================================================


class Method(str, Enum):
    """HTTP verbs accepted by the tasks."""

    GET = "GET"
    POST = "POST"
    PUT = "PUT"
    PATCH = "PATCH"
    DELETE = "DELETE"
    HEAD = "HEAD"
    OPTIONS = "OPTIONS"
    CONNECT = "CONNECT"


class Authentication(str, Enum):
    """How the caller authenticates to the remote endpoint."""

    NONE = "none"
    BASIC = "basic"
    WINDOWS_AUTHENTICATION = "windows_authentication"  # explicit domain\user credentials
    WINDOWS_INTEGRATED_SECURITY = "windows_integrated_security"  # ambient credentials
    OAUTH = "oauth"
    CLIENT_CERTIFICATE = "client_certificate"


class CertificateSource(str, Enum):
    """Where client certificates are loaded from."""

    CERTIFICATE_STORE = "certificate_store"
    FILE = "file"
    STRING = "string"


class CertificateStoreLocation(str, Enum):
    """Which personal certificate store a thumbprint is looked up in."""

    CURRENT_USER = "current_user"
    LOCAL_MACHINE = "local_machine"


class ReturnFormat(str, Enum):
    """How a text response body is materialized."""

    STRING = "string"
    STRUCTURED = "structured"  # parsed JSON value


# =============================================================================
# Requests
# =============================================================================


class Header(BaseModel):
    """One request header. Names compare case-insensitively."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    name: str = Field(description="Header name")
    value: str = Field(default="", description="Header value")


def _none_to_empty(value: Any) -> Any:
    return [] if value is None else value


# A missing header list means no headers.
HeaderList = Annotated[list[Header], BeforeValidator(_none_to_empty)]


class RequestSpec(BaseModel):
    """One HTTP call as seen by the executor."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: Method = Field(default=Method.GET, description="HTTP method")
    url: str = Field(default="", description="Absolute URL, query string included")
    headers: HeaderList = Field(default_factory=list, description="Ordered request headers")
    body: str | bytes | None = Field(default=None, description="Text or raw byte body")


class Options(BaseModel):
    """Connection, authentication and error-policy options shared by every task.

    Every field except token affects how the transport client is built, so
    every field except token is part of the client cache key.
    """

    model_config = ConfigDict(extra="forbid", frozen=True)

    authentication: Authentication = Field(default=Authentication.NONE)
    username: str | None = Field(
        default=None, description="Basic auth user, or 'domain\\username' for Windows authentication"
    )
    password: str | None = Field(default=None)
    token: str | None = Field(default=None, description="OAuth bearer token (request scoped)")
    client_certificate_source: CertificateSource = Field(default=CertificateSource.CERTIFICATE_STORE)
    client_certificate_file_path: str | None = Field(default=None)
    client_certificate_in_base64: str | None = Field(default=None)
    client_certificate_key_phrase: str | None = Field(
        default=None, description="Passphrase for file and string certificates"
    )
    certificate_thumbprint: str | None = Field(default=None)
    certificate_store_location: CertificateStoreLocation = Field(
        default=CertificateStoreLocation.CURRENT_USER
    )
    load_entire_chain_for_certificate: bool = Field(default=True)
    connection_timeout_seconds: float = Field(default=30, gt=0)
    follow_redirects: bool = Field(default=True)
    allow_invalid_certificate: bool = Field(default=False)
    allow_invalid_response_content_type_charset: bool = Field(default=False)
    throw_exception_on_error_response: bool = Field(default=False)
    automatic_cookie_handling: bool = Field(default=True)


class RequestInput(BaseModel):
    """Input of the generic request task."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: Method = Field(default=Method.GET)
    url: str = Field(default="")
    message: str | None = Field(default=None, description="Text body, sent for POST/PUT/PATCH/DELETE")
    headers: HeaderList = Field(default_factory=list)
    return_format: ReturnFormat = Field(default=ReturnFormat.STRING)


class RequestBytesInput(BaseModel):
    """Input of the request-bytes task: text body out, raw bytes back."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: Method = Field(default=Method.GET)
    url: str = Field(default="")
    message: str | None = Field(default=None)
    headers: HeaderList = Field(default_factory=list)


class SendBytesInput(BaseModel):
    """Input of the send-bytes and send-and-receive-bytes tasks."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: Method = Field(default=Method.POST)
    url: str = Field(default="")
    content_bytes: bytes = Field(default=b"", description="Raw request body")
    headers: HeaderList = Field(default_factory=list)


class DownloadInput(BaseModel):
    """Input of the download task."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    url: str = Field(default="")
    headers: HeaderList = Field(default_factory=list)
    file_path: str = Field(description="Destination path of the downloaded file")
    overwrite: bool = Field(default=False, description="Replace the destination if it exists")


class UploadInput(BaseModel):
    """Input of the upload task. The file content is the request body."""

    model_config = ConfigDict(extra="forbid", frozen=True)

    method: Method = Field(default=Method.POST)
    url: str = Field(default="")
    file_path: str = Field(description="Local file to send")
    headers: HeaderList = Field(default_factory=list)

    @field_validator("method")
    @classmethod
    def check_upload_method(cls, value: Method) -> Method:
        if value not in (Method.POST, Method.PUT):
            raise ValueError("upload method must be POST or PUT")
        return value


# =============================================================================
# Results
# =============================================================================


class Result(BaseModel):
    """Text or structured response of the request and send-bytes tasks."""

    model_config = ConfigDict(extra="forbid")

    body: Any = Field(default=None, description="str, parsed JSON value, or None")
    headers: dict[str, str] = Field(default_factory=dict)
    status_code: int


class BytesResult(BaseModel):
    """Raw byte response of the request-bytes and send-and-receive-bytes tasks."""

    model_config = ConfigDict(extra="forbid")

    body: bytes = Field(default=b"")
    content_type: str | None = Field(default=None)
    headers: dict[str, str] = Field(default_factory=dict)
    status_code: int

    @computed_field  # type: ignore[prop-decorator]
    @property
    def body_size_in_megabytes(self) -> float:
        return round(len(self.body) / (1024 * 1024), 3)


class DownloadResult(BaseModel):
    """Outcome of a download."""

    model_config = ConfigDict(extra="forbid")

    success: bool
    file_path: str


class UploadResponse(BaseModel):
    """Response of the upload task."""

    model_config = ConfigDict(extra="forbid")

    body: str = Field(default="")
    headers: dict[str, str] = Field(default_factory=dict)
    status_code: int
