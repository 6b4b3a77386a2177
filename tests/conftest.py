"""Pytest configuration and fixtures for http-tasks tests.

This file provides:
- StubBuilder / RecordingHandler: httpx.MockTransport-backed clients for unit tests
- Certificate helpers: self-signed and CA-issued certificates generated with cryptography
- PortReservation: Race-free port allocation for test servers
- MockServer: Subprocess management for the echo server used by integration tests
"""

from __future__ import annotations

import datetime
import socket
import subprocess
import sys
import time
from pathlib import Path
from typing import Any, Callable, Generator

import httpx
import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from http_tasks.certificates import LoadedCertificate
from http_tasks.client_cache import ClientCache
from http_tasks.models import Options
from http_tasks.tasks import HttpTasks

# Project root for fixture paths
PROJECT_ROOT = Path(__file__).parent.parent
MOCK_SERVER_MODULE = "tests.integration.mock_server"

# 1x1 PNG image: signature, IHDR, IDAT and IEND chunks
PNG_BYTES = bytes.fromhex(
    "89504e470d0a1a0a0000000d49484452000000010000000108060000001f15c489"
    "0000000d49444154789c6360000002000001e221bc330000000049454e44ae426082"
)


# =============================================================================
# Transport doubles
# =============================================================================


class RecordingHandler:
    """MockTransport handler that records requests and replies from a responder.

    Usage:
        handler = RecordingHandler(lambda request: httpx.Response(200, text="ok"))
        builder = StubBuilder(handler)
        ...
        assert handler.requests[0].headers["Authorization"] == "Bearer t"
    """

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response] | None = None) -> None:
        self.responder = responder or (lambda request: httpx.Response(200))
        self.requests: list[httpx.Request] = []

    @property
    def last_request(self) -> httpx.Request:
        return self.requests[-1]

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)


class StubBuilder:
    """ClientBuilder returning clients over an httpx.MockTransport.

    Records the options of every build so tests can count constructions.
    """

    def __init__(self, handler: Callable[[httpx.Request], Any]) -> None:
        self.handler = handler
        self.built: list[Options] = []
        self.clients: list[httpx.AsyncClient] = []

    @property
    def build_count(self) -> int:
        return len(self.built)

    def build(self, options: Options) -> httpx.AsyncClient:
        self.built.append(options)
        client = httpx.AsyncClient(
            transport=httpx.MockTransport(self.handler),
            follow_redirects=options.follow_redirects,
        )
        self.clients.append(client)
        return client


def make_tasks(
    responder: Callable[[httpx.Request], httpx.Response] | None = None,
) -> tuple[HttpTasks, RecordingHandler, StubBuilder]:
    """Create an HttpTasks over a recording stub transport.

    Prefer this over wiring HttpTasks by hand - every test gets its own
    cache, so builds never leak between tests.
    """
    handler = RecordingHandler(responder)
    builder = StubBuilder(handler)
    tasks = HttpTasks(cache=ClientCache(builder))
    # A tasks instance that built its own cache would reach the real network.
    assert tasks.cache.builder is builder
    return tasks, handler, builder


# =============================================================================
# Certificates
# =============================================================================


def make_certificate(
    common_name: str,
    issuer: LoadedCertificate | None = None,
    is_ca: bool = False,
) -> LoadedCertificate:
    """Create a certificate with a fresh EC key.

    Self-signed when issuer is None, otherwise signed by the issuer's key.
    """
    key = ec.generate_private_key(ec.SECP256R1())
    subject = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)])
    now = datetime.datetime.now(datetime.timezone.utc)

    builder = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer.certificate.subject if issuer else subject)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now - datetime.timedelta(days=1))
        .not_valid_after(now + datetime.timedelta(days=30))
        .add_extension(x509.BasicConstraints(ca=is_ca, path_length=None), critical=True)
    )
    signing_key = issuer.private_key if issuer else key
    certificate = builder.sign(signing_key, hashes.SHA256())
    return LoadedCertificate(certificate, key)


def pem_bundle(*certificates: LoadedCertificate, with_key: bool = True) -> bytes:
    """Concatenate certificates as PEM, followed by the first one's key."""
    data = b"".join(cert.certificate_pem() for cert in certificates)
    if with_key and certificates and certificates[0].has_private_key:
        data += certificates[0].private_key_pem()
    return data


def pkcs12_bundle(
    leaf: LoadedCertificate,
    extra: list[LoadedCertificate] | None = None,
    password: bytes | None = b"password",
) -> bytes:
    """Serialize a leaf with its key (and optional chain) as PKCS#12."""
    encryption = (
        serialization.BestAvailableEncryption(password)
        if password
        else serialization.NoEncryption()
    )
    return pkcs12.serialize_key_and_certificates(
        b"client",
        leaf.private_key,
        leaf.certificate,
        [cert.certificate for cert in extra or []],
        encryption,
    )


@pytest.fixture(scope="session")
def root_ca() -> LoadedCertificate:
    return make_certificate("http-tasks test root", is_ca=True)


@pytest.fixture(scope="session")
def client_certificate(root_ca: LoadedCertificate) -> LoadedCertificate:
    """Client certificate with private key, issued by root_ca."""
    return make_certificate("http-tasks test client", issuer=root_ca)


@pytest.fixture(scope="session")
def self_signed_certificate() -> LoadedCertificate:
    return make_certificate("http-tasks self-signed")


# =============================================================================
# Mock server
# =============================================================================


class PortReservation:
    """Holds a reserved port with socket kept open to prevent races.

    Usage:
        reservation = PortReservation()
        # port is held exclusively until release()
        server = MockServer(reservation)
        server.start()  # calls release() internally, then binds
    """

    def __init__(self) -> None:
        self._socket = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
        self._socket.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        self._socket.bind(("127.0.0.1", 0))  # Port 0 = OS assigns ephemeral port
        self._port = self._socket.getsockname()[1]
        self._released = False

    @property
    def port(self) -> int:
        return self._port

    def release(self) -> int:
        """Release the socket and return the port for server use.

        Safe to call multiple times - subsequent calls are no-ops.
        """
        if not self._released:
            self._socket.close()
            self._released = True
        return self._port

    def __enter__(self) -> PortReservation:
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.release()


def wait_for_server_ready(host: str, port: int, timeout: float = 10.0) -> bool:
    """Block until server accepts TCP connections, or timeout expires."""
    start = time.time()
    while time.time() - start < timeout:
        try:
            with socket.create_connection((host, port), timeout=1.0):
                return True
        except (ConnectionRefusedError, socket.timeout, OSError):
            time.sleep(0.1)
    return False


class MockServer:
    """Runs tests/integration/mock_server.py as a subprocess."""

    def __init__(self, port: int | PortReservation) -> None:
        if isinstance(port, PortReservation):
            self._reservation: PortReservation | None = port
            self.port = port.port
        else:
            self._reservation = None
            self.port = port
        self.host = "127.0.0.1"
        self.base_url = f"http://{self.host}:{self.port}"
        self._process: subprocess.Popen | None = None

    def start(self) -> None:
        """Start the mock server subprocess.

        Raises:
            RuntimeError: If server fails to start within 10 seconds.
        """
        if self._reservation:
            self._reservation.release()

        self._process = subprocess.Popen(
            [
                sys.executable, "-m", MOCK_SERVER_MODULE,
                "--host", self.host,
                "--port", str(self.port),
            ],
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=PROJECT_ROOT,
        )

        if not wait_for_server_ready(self.host, self.port):
            stderr = ""
            if self._process and self._process.stderr:
                stderr = self._process.stderr.read().decode(errors="replace")
            self.stop()
            raise RuntimeError(
                f"MockServer failed to start on port {self.port}. stderr: {stderr or '(empty)'}"
            )

    def stop(self) -> None:
        """Stop the subprocess: SIGTERM, then SIGKILL after 5s."""
        if self._process:
            self._process.terminate()
            try:
                self._process.wait(timeout=5)
            except subprocess.TimeoutExpired:
                self._process.kill()
                self._process.wait(timeout=5)
            self._process = None

    def __enter__(self) -> MockServer:
        self.start()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.stop()


@pytest.fixture(scope="session")
def mock_server() -> Generator[MockServer, None, None]:
    """Echo server shared by the integration tests.

    Session-scoped: the server starts once per test session.
    """
    with MockServer(PortReservation()) as server:
        yield server


# =============================================================================
# Pytest Hooks
# =============================================================================


def pytest_collection_modifyitems(
    config: pytest.Config, items: list[pytest.Item]
) -> None:
    """Automatically apply markers based on test location.

    Enables running subsets via:
        pytest -m integration  # only integration tests
        pytest -m unit         # only unit tests
    """
    for item in items:
        test_path = Path(item.fspath)
        if "integration" in test_path.parts:
            item.add_marker(pytest.mark.integration)
        else:
            item.add_marker(pytest.mark.unit)
