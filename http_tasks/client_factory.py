"""Transport Client Factory - builds httpx clients from task options.

Builders are injected into the client cache, so tests can swap the real
builder for one that returns clients over an httpx.MockTransport.
"""

from __future__ import annotations

import logging
import os
import ssl
import tempfile
from http.cookiejar import CookieJar, DefaultCookiePolicy
from pathlib import Path
from typing import Any, Protocol

import certifi
import httpx
from httpx_ntlm import HttpNtlmAuth

from http_tasks.certificates import (
    CertificateStore,
    DirectoryCertificateStore,
    LoadedCertificate,
    resolve_certificates,
)
from http_tasks.errors import CertificateLoadError, InvalidUsernameFormat
from http_tasks.models import Authentication, Options

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "application/json"


class ClientBuilder(Protocol):
    """Creates a configured transport client. Must not perform network I/O."""

    def build(self, options: Options) -> httpx.AsyncClient:
        ...


def split_domain_username(username: str | None) -> tuple[str, str]:
    """Split 'domain\\username' into (domain, username).

    Raises:
        InvalidUsernameFormat: Unless the value has exactly one backslash.
    """
    parts = (username or "").split("\\")
    if len(parts) != 2:
        raise InvalidUsernameFormat(username)
    return parts[0], parts[1]


def ambient_credentials() -> httpx.Auth | None:
    """Credentials of the current user from their netrc file, if they have one."""
    netrc_file = Path(os.environ.get("NETRC") or Path.home() / ".netrc")
    if netrc_file.is_file():
        return httpx.NetRCAuth(str(netrc_file))
    logger.warning(
        "Integrated security requested but no netrc file found at %s; sending no credentials",
        netrc_file,
    )
    return None


def _load_client_certificates(context: ssl.SSLContext, certificates: list[LoadedCertificate]) -> None:
    """Present the first certificate with its key and the rest as its chain."""
    leaf = certificates[0]
    if not leaf.has_private_key:
        raise CertificateLoadError("None of the client certificates has a private key")

    # SSLContext only loads key material from files; the directory is private to this process.
    with tempfile.TemporaryDirectory(prefix="http-tasks-") as tmp:
        cert_path = Path(tmp) / "client.pem"
        key_path = Path(tmp) / "client.key"
        cert_path.write_bytes(b"".join(cert.certificate_pem() for cert in certificates))
        key_path.write_bytes(leaf.private_key_pem())
        try:
            context.load_cert_chain(cert_path, key_path)
        except ssl.SSLError as e:
            raise CertificateLoadError(f"Unable to use client certificate {leaf.thumbprint}: {e}") from e


def build_ssl_context(
    options: Options, certificates: list[LoadedCertificate]
) -> ssl.SSLContext | bool:
    """Build the verify argument for httpx.

    Returns True (httpx default verification) unless client certificates must
    be attached or server certificate validation is disabled.
    """
    if not certificates and not options.allow_invalid_certificate:
        return True

    context = ssl.create_default_context(cafile=certifi.where())
    if options.allow_invalid_certificate:
        # Accept every server certificate
        context.check_hostname = False
        context.verify_mode = ssl.CERT_NONE

    if certificates:
        _load_client_certificates(context, certificates)

    return context


def configure_client_defaults(client: httpx.AsyncClient, options: Options) -> None:
    """Apply per-call defaults owned by the client.

    Content-Type defaults to JSON for requests carrying a body (the executor
    drops it from bodyless requests), no Expect header is sent, and the
    client-wide timeout comes from the options.
    """
    client.headers.pop("Expect", None)
    client.headers["Content-Type"] = DEFAULT_CONTENT_TYPE
    client.timeout = httpx.Timeout(options.connection_timeout_seconds)


class HttpxClientBuilder:
    """Production builder: httpx.AsyncClient wired for the options' authentication."""

    def __init__(self, certificate_store: CertificateStore | None = None) -> None:
        self._certificate_store = certificate_store or DirectoryCertificateStore()

    def build(self, options: Options) -> httpx.AsyncClient:
        return httpx.AsyncClient(**self.client_kwargs(options))

    def client_kwargs(self, options: Options) -> dict[str, Any]:
        """Build kwargs for httpx.AsyncClient.

        Args:
            options: Task options.

        Returns:
            Dictionary of kwargs for the httpx.AsyncClient constructor.

        Raises:
            InvalidUsernameFormat: Windows authentication without 'domain\\username'.
            CertificateNotFound: Client certificate cannot be located.
            CertificateLoadError: Client certificate cannot be used.
        """
        kwargs: dict[str, Any] = {
            "follow_redirects": options.follow_redirects,
            "timeout": options.connection_timeout_seconds,
        }
        certificates: list[LoadedCertificate] = []

        if options.authentication == Authentication.WINDOWS_INTEGRATED_SECURITY:
            auth = ambient_credentials()
            if auth is not None:
                kwargs["auth"] = auth
        elif options.authentication == Authentication.WINDOWS_AUTHENTICATION:
            domain, user = split_domain_username(options.username)
            kwargs["auth"] = HttpNtlmAuth(f"{domain}\\{user}", options.password or "")
        elif options.authentication == Authentication.CLIENT_CERTIFICATE:
            certificates = resolve_certificates(options, self._certificate_store)

        if not options.automatic_cookie_handling:
            kwargs["cookies"] = CookieJar(policy=DefaultCookiePolicy(allowed_domains=[]))

        kwargs["verify"] = build_ssl_context(options, certificates)

        logger.debug(
            "Building HTTP client",
            extra={
                "authentication": options.authentication.value,
                "follow_redirects": options.follow_redirects,
                "client_certificates": len(certificates),
            },
        )
        return kwargs
