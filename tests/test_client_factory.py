"""Tests for transport client construction from options."""

import base64
import ssl
from http.cookiejar import CookieJar
from pathlib import Path

import httpx
import pytest
from httpx_ntlm import HttpNtlmAuth

from http_tasks.certificates import DirectoryCertificateStore
from http_tasks.client_factory import (
    DEFAULT_CONTENT_TYPE,
    HttpxClientBuilder,
    ambient_credentials,
    configure_client_defaults,
    split_domain_username,
)
from http_tasks.errors import CertificateLoadError, CertificateNotFound, InvalidUsernameFormat
from http_tasks.models import Authentication, CertificateSource, Options
from tests.conftest import pem_bundle, pkcs12_bundle


@pytest.fixture
def builder(tmp_path: Path) -> HttpxClientBuilder:
    return HttpxClientBuilder(DirectoryCertificateStore(tmp_path / "store"))


class TestSplitDomainUsername:
    def test_valid(self) -> None:
        assert split_domain_username("CONTOSO\\alice") == ("CONTOSO", "alice")

    @pytest.mark.parametrize("username", ["alice", "a\\b\\c", "", None])
    def test_invalid(self, username) -> None:
        with pytest.raises(InvalidUsernameFormat) as exc_info:
            split_domain_username(username)
        assert f"now it was '{username}'" in str(exc_info.value)


class TestAuthentication:
    """Authentication options map to httpx auth."""

    def test_no_auth_by_default(self, builder: HttpxClientBuilder) -> None:
        assert "auth" not in builder.client_kwargs(Options())

    def test_windows_authentication_uses_ntlm(self, builder: HttpxClientBuilder) -> None:
        options = Options(
            authentication=Authentication.WINDOWS_AUTHENTICATION,
            username="CONTOSO\\alice",
            password="secret",
        )
        assert isinstance(builder.client_kwargs(options)["auth"], HttpNtlmAuth)

    def test_windows_authentication_rejects_plain_username(self, builder: HttpxClientBuilder) -> None:
        options = Options(authentication=Authentication.WINDOWS_AUTHENTICATION, username="alice")
        with pytest.raises(InvalidUsernameFormat):
            builder.client_kwargs(options)

    def test_integrated_security_uses_netrc(
        self, builder: HttpxClientBuilder, tmp_path: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        netrc_file = tmp_path / "netrc"
        netrc_file.write_text("machine example.org login alice password secret\n")
        monkeypatch.setenv("NETRC", str(netrc_file))

        kwargs = builder.client_kwargs(Options(authentication=Authentication.WINDOWS_INTEGRATED_SECURITY))

        assert isinstance(kwargs["auth"], httpx.NetRCAuth)

    def test_integrated_security_without_credentials(
        self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch, caplog
    ) -> None:
        monkeypatch.setenv("NETRC", str(tmp_path / "missing"))
        assert ambient_credentials() is None
        assert "no netrc file" in caplog.text

    def test_header_based_auth_adds_no_client_auth(self, builder: HttpxClientBuilder) -> None:
        options = Options(authentication=Authentication.BASIC, username="u", password="p")
        assert "auth" not in builder.client_kwargs(options)


class TestTransportOptions:
    def test_follow_redirects_passed_through(self, builder: HttpxClientBuilder) -> None:
        assert builder.client_kwargs(Options(follow_redirects=False))["follow_redirects"] is False
        assert builder.client_kwargs(Options())["follow_redirects"] is True

    def test_default_verification(self, builder: HttpxClientBuilder) -> None:
        assert builder.client_kwargs(Options())["verify"] is True

    def test_allow_invalid_certificate_disables_verification(self, builder: HttpxClientBuilder) -> None:
        context = builder.client_kwargs(Options(allow_invalid_certificate=True))["verify"]
        assert isinstance(context, ssl.SSLContext)
        assert context.check_hostname is False
        assert context.verify_mode == ssl.CERT_NONE

    def test_cookies_enabled_by_default(self, builder: HttpxClientBuilder) -> None:
        assert "cookies" not in builder.client_kwargs(Options())

    @pytest.mark.asyncio
    async def test_disabled_cookie_handling_rejects_cookies(self, builder: HttpxClientBuilder) -> None:
        """A server cookie is never sent back when cookie handling is off."""
        seen: list[str | None] = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request.headers.get("Cookie"))
            return httpx.Response(200, headers={"Set-Cookie": "session=abc; Path=/"})

        jar = builder.client_kwargs(Options(automatic_cookie_handling=False))["cookies"]
        assert isinstance(jar, CookieJar)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler), cookies=jar) as client:
            await client.get("http://example.org/")
            await client.get("http://example.org/")

        assert seen == [None, None]


class TestClientCertificates:
    def test_file_certificate_loaded_into_context(
        self, builder: HttpxClientBuilder, tmp_path: Path, client_certificate, root_ca
    ) -> None:
        path = tmp_path / "client.pfx"
        path.write_bytes(pkcs12_bundle(client_certificate, [root_ca]))
        options = Options(
            authentication=Authentication.CLIENT_CERTIFICATE,
            client_certificate_source=CertificateSource.FILE,
            client_certificate_file_path=str(path),
            client_certificate_key_phrase="password",
        )

        assert isinstance(builder.client_kwargs(options)["verify"], ssl.SSLContext)

    def test_certificate_without_key_rejected(self, builder: HttpxClientBuilder, client_certificate) -> None:
        options = Options(
            authentication=Authentication.CLIENT_CERTIFICATE,
            client_certificate_source=CertificateSource.STRING,
            client_certificate_in_base64=base64.b64encode(
                pem_bundle(client_certificate, with_key=False)
            ).decode("ascii"),
        )
        with pytest.raises(CertificateLoadError):
            builder.client_kwargs(options)

    def test_unregistered_thumbprint(self, builder: HttpxClientBuilder) -> None:
        options = Options(
            authentication=Authentication.CLIENT_CERTIFICATE,
            certificate_thumbprint="ABCD",
        )
        with pytest.raises(CertificateNotFound):
            builder.client_kwargs(options)


class TestClientDefaults:
    @pytest.mark.asyncio
    async def test_defaults_applied(self) -> None:
        async with httpx.AsyncClient(headers={"Expect": "100-continue"}) as client:
            configure_client_defaults(client, Options(connection_timeout_seconds=5))

            assert "Expect" not in client.headers
            assert client.headers["Content-Type"] == DEFAULT_CONTENT_TYPE
            assert client.timeout == httpx.Timeout(5)

    @pytest.mark.asyncio
    async def test_build_returns_async_client(self, builder: HttpxClientBuilder) -> None:
        client = builder.build(Options(follow_redirects=False))
        try:
            assert isinstance(client, httpx.AsyncClient)
            assert client.follow_redirects is False
        finally:
            await client.aclose()
