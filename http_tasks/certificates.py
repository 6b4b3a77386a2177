"""Certificate Resolver - loads client certificates for mutual TLS.

Certificates come from one of three sources:
- a personal certificate store, looked up by thumbprint (optionally with the
  whole issuer chain),
- a PKCS#12 / PEM / DER file,
- a base64 string holding the same formats.

The result is always ordered with private-key-bearing certificates first so
the transport can present the key-bearing certificate and send the rest as
its chain.
"""

from __future__ import annotations

import base64
import binascii
import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import platformdirs
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes
from cryptography.hazmat.primitives.serialization import pkcs12

from http_tasks.errors import CertificateLoadError, CertificateNotFound, ConfigurationError
from http_tasks.models import CertificateSource, CertificateStoreLocation, Options

logger = logging.getLogger(__name__)

APP_NAME = "http-tasks"
STORE_NAME = "My"  # personal store
CERTIFICATE_SUFFIXES = frozenset({".pem", ".crt", ".cer", ".der", ".pfx", ".p12"})

_NON_HEX = re.compile(r"[^0-9A-Fa-f]")
_PEM_PRIVATE_KEY = re.compile(
    rb"-----BEGIN ([A-Z ]*)PRIVATE KEY-----.+?-----END \1PRIVATE KEY-----", re.DOTALL
)
# Bounds chain walking when a store holds an issuer loop.
_MAX_CHAIN_LENGTH = 16


@dataclass(frozen=True)
class LoadedCertificate:
    """An X.509 certificate and, when available, its private key."""

    certificate: x509.Certificate
    private_key: PrivateKeyTypes | None = None

    @property
    def has_private_key(self) -> bool:
        return self.private_key is not None

    @property
    def thumbprint(self) -> str:
        """SHA-1 fingerprint as uppercase hex."""
        return self.certificate.fingerprint(hashes.SHA1()).hex().upper()

    @property
    def is_self_issued(self) -> bool:
        return self.certificate.issuer == self.certificate.subject

    def certificate_pem(self) -> bytes:
        return self.certificate.public_bytes(serialization.Encoding.PEM)

    def private_key_pem(self) -> bytes:
        if self.private_key is None:
            raise CertificateLoadError(f"Certificate {self.thumbprint} has no private key")
        return self.private_key.private_bytes(
            serialization.Encoding.PEM,
            serialization.PrivateFormat.PKCS8,
            serialization.NoEncryption(),
        )


class CertificateStore(Protocol):
    """Lookup capability over a personal certificate store."""

    def find_by_thumbprint(
        self, thumbprint: str, location: CertificateStoreLocation
    ) -> list[LoadedCertificate]:
        """Return every certificate whose thumbprint matches (normalized, uppercase)."""
        ...

    def build_chain(
        self, certificate: LoadedCertificate, location: CertificateStoreLocation
    ) -> list[LoadedCertificate]:
        """Return the certificate followed by its issuers. Revocation is not checked."""
        ...


def normalize_thumbprint(thumbprint: str | None) -> str:
    """Strip every non-hex character and uppercase the rest."""
    return _NON_HEX.sub("", thumbprint or "").upper()


def order_private_key_first(certificates: list[LoadedCertificate]) -> list[LoadedCertificate]:
    """Stable sort placing private-key-bearing certificates first."""
    return sorted(certificates, key=lambda cert: not cert.has_private_key)


def _public_key_der(key_owner: x509.Certificate | PrivateKeyTypes) -> bytes:
    public_key = key_owner.public_key()
    return public_key.public_bytes(
        serialization.Encoding.DER, serialization.PublicFormat.SubjectPublicKeyInfo
    )


def _load_pem(data: bytes, password: bytes | None) -> list[LoadedCertificate]:
    certificates = x509.load_pem_x509_certificates(data)

    key: PrivateKeyTypes | None = None
    key_match = _PEM_PRIVATE_KEY.search(data)
    if key_match:
        try:
            key = serialization.load_pem_private_key(key_match.group(0), password=password)
        except TypeError:
            if password is None:
                raise
            # Passphrase given for an unencrypted key; it is not needed.
            key = serialization.load_pem_private_key(key_match.group(0), password=None)

    if key is None:
        return [LoadedCertificate(cert) for cert in certificates]

    key_public = _public_key_der(key)
    return [
        LoadedCertificate(cert, key if _public_key_der(cert) == key_public else None)
        for cert in certificates
    ]


def _load_pkcs12(data: bytes, password: bytes | None) -> list[LoadedCertificate]:
    try:
        bundle = pkcs12.load_pkcs12(data, password)
    except ValueError:
        if password is not None:
            raise
        # Some exporters protect "no passphrase" bundles with an empty one.
        bundle = pkcs12.load_pkcs12(data, b"")

    loaded: list[LoadedCertificate] = []
    if bundle.cert is not None:
        loaded.append(LoadedCertificate(bundle.cert.certificate, bundle.key))
    loaded.extend(LoadedCertificate(extra.certificate) for extra in bundle.additional_certs)
    return loaded


def load_certificates_from_bytes(data: bytes, key_phrase: str | None = None) -> list[LoadedCertificate]:
    """Import a certificate collection from PEM, PKCS#12 or DER bytes.

    Args:
        data: Raw certificate bytes.
        key_phrase: Passphrase protecting the key. Empty or None means no passphrase.

    Returns:
        Certificates ordered private-key-bearing first.

    Raises:
        CertificateLoadError: If the data cannot be decoded or the passphrase is wrong.
    """
    password = key_phrase.encode("utf-8") if key_phrase else None

    try:
        if b"-----BEGIN" in data:
            certificates = _load_pem(data, password)
        else:
            try:
                certificates = _load_pkcs12(data, password)
            except ValueError:
                certificates = [LoadedCertificate(x509.load_der_x509_certificate(data))]
    except (ValueError, TypeError) as e:
        raise CertificateLoadError(f"Unable to load certificate data: {e}") from e

    if not certificates:
        raise CertificateLoadError("Certificate data contains no certificates")

    return order_private_key_first(certificates)


class DirectoryCertificateStore:
    """Personal certificate store kept as files in a directory per location.

    Layout: ``<root>/<location>/My/*.pem|.crt|.cer|.der|.pfx|.p12``. Without an
    explicit root the current-user store lives in the platform user data
    directory and the local-machine store in the site data directory.
    PKCS#12 files in the store must not be passphrase protected.
    """

    def __init__(self, root: Path | str | None = None) -> None:
        self._root = Path(root) if root is not None else None

    def location_path(self, location: CertificateStoreLocation) -> Path:
        if self._root is not None:
            return self._root / location.value / STORE_NAME
        if location == CertificateStoreLocation.LOCAL_MACHINE:
            base = Path(platformdirs.site_data_dir(APP_NAME))
        else:
            base = Path(platformdirs.user_data_dir(APP_NAME))
        return base / "certificates" / STORE_NAME

    def add(self, certificate: LoadedCertificate, location: CertificateStoreLocation) -> Path:
        """Install a certificate (with its key, if any) as <thumbprint>.pem."""
        directory = self.location_path(location)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / f"{certificate.thumbprint}.pem"
        content = certificate.certificate_pem()
        if certificate.has_private_key:
            content += certificate.private_key_pem()
        path.write_bytes(content)
        return path

    def remove(self, thumbprint: str, location: CertificateStoreLocation) -> None:
        (self.location_path(location) / f"{normalize_thumbprint(thumbprint)}.pem").unlink(missing_ok=True)

    def certificates(self, location: CertificateStoreLocation) -> list[LoadedCertificate]:
        """Load every readable certificate in the store. Unreadable files are skipped."""
        directory = self.location_path(location)
        if not directory.is_dir():
            return []

        loaded: list[LoadedCertificate] = []
        for path in sorted(directory.iterdir()):
            if path.suffix.lower() not in CERTIFICATE_SUFFIXES or not path.is_file():
                continue
            try:
                loaded.extend(load_certificates_from_bytes(path.read_bytes()))
            except CertificateLoadError as e:
                logger.warning("Skipping unreadable certificate file %s: %s", path, e)
        return loaded

    def find_by_thumbprint(
        self, thumbprint: str, location: CertificateStoreLocation
    ) -> list[LoadedCertificate]:
        wanted = normalize_thumbprint(thumbprint)
        return [cert for cert in self.certificates(location) if cert.thumbprint == wanted]

    def build_chain(
        self, certificate: LoadedCertificate, location: CertificateStoreLocation
    ) -> list[LoadedCertificate]:
        candidates = self.certificates(location)
        chain = [certificate]
        seen = {certificate.thumbprint}
        current = certificate

        while not current.is_self_issued and len(chain) < _MAX_CHAIN_LENGTH:
            issuer = next(
                (
                    cert
                    for cert in candidates
                    if cert.certificate.subject == current.certificate.issuer
                    and cert.thumbprint not in seen
                ),
                None,
            )
            if issuer is None:
                break
            chain.append(issuer)
            seen.add(issuer.thumbprint)
            current = issuer

        return chain


def _location_label(location: CertificateStoreLocation) -> str:
    return location.value.replace("_", " ")


def _certificates_from_store(
    store: CertificateStore,
    thumbprint: str | None,
    location: CertificateStoreLocation,
    load_entire_chain: bool,
) -> list[LoadedCertificate]:
    normalized = normalize_thumbprint(thumbprint)
    matches = store.find_by_thumbprint(normalized, location)
    if not matches:
        raise CertificateNotFound(
            f"Certificate with thumbprint: '{normalized}' not found in "
            f"{_location_label(location)} cert store.",
            normalized,
        )

    certificate = matches[0]
    if not load_entire_chain:
        return [certificate]

    return order_private_key_first(store.build_chain(certificate, location))


def _certificates_from_file(path: str | None, key_phrase: str | None) -> list[LoadedCertificate]:
    if not path or not Path(path).is_file():
        raise CertificateNotFound(f"Certificate file '{path}' not found.", path or "")
    return load_certificates_from_bytes(Path(path).read_bytes(), key_phrase)


def _certificates_from_string(content_base64: str | None, key_phrase: str | None) -> list[LoadedCertificate]:
    try:
        data = base64.b64decode(content_base64 or "", validate=True)
    except (binascii.Error, ValueError) as e:
        raise ConfigurationError(f"Client certificate is not valid base64: {e}") from e
    return load_certificates_from_bytes(data, key_phrase)


def resolve_certificates(options: Options, store: CertificateStore) -> list[LoadedCertificate]:
    """Resolve the client certificates selected by options.

    Args:
        options: Task options; client_certificate_source selects the locator used.
        store: Certificate store for thumbprint lookups.

    Returns:
        Non-empty list ordered private-key-bearing first.

    Raises:
        CertificateNotFound: Thumbprint not in the store, or certificate file missing.
        CertificateLoadError: Certificate data unreadable or passphrase wrong.
        ConfigurationError: Unsupported source or malformed base64.
    """
    source = options.client_certificate_source

    if source == CertificateSource.CERTIFICATE_STORE:
        certificates = _certificates_from_store(
            store,
            options.certificate_thumbprint,
            options.certificate_store_location,
            options.load_entire_chain_for_certificate,
        )
    elif source == CertificateSource.FILE:
        certificates = _certificates_from_file(
            options.client_certificate_file_path, options.client_certificate_key_phrase
        )
    elif source == CertificateSource.STRING:
        certificates = _certificates_from_string(
            options.client_certificate_in_base64, options.client_certificate_key_phrase
        )
    else:
        raise ConfigurationError(f"Unsupported certificate source: {source}")

    logger.debug(
        "Resolved client certificates",
        extra={"source": source.value, "thumbprints": [cert.thumbprint for cert in certificates]},
    )
    return certificates
