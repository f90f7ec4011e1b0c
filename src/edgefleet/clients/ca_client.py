"""Certificate authority client — signs device CSRs for client authentication.

Built once at startup. Loads (or, in development, generates) a root
certificate and key, and issues short-lived leaf certificates that are only
good for TLS client authentication as one specific device.
"""

from __future__ import annotations

import asyncio
import datetime
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import unquote

from cryptography import x509
from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import ExtendedKeyUsageOID, NameOID

from edgefleet.utils.crypto import Crypto

logger = logging.getLogger(__name__)

MIN_CSR_BYTES = 200
MAX_CSR_BYTES = 16 * 1024
DEVICE_URI_PREFIX = "urn:edgefleet:device:"
_BACKDATE = datetime.timedelta(minutes=5)


class InvalidCSRError(Exception):
    """Raised when a CSR is malformed, badly signed, or names the wrong subject."""


class SigningError(Exception):
    """Raised when the signing step fails or times out."""


class InvalidClientCertificateError(Exception):
    """Raised when a presented client certificate is not one we issued."""


@dataclass
class SignedCertificate:
    """Result of a successful signing operation."""

    certificate_pem: str
    ca_certificate_pem: str
    serial: str
    fingerprint: str
    not_after: datetime.datetime


class CertificateAuthorityClient:
    """Issues device certificates from a local root key."""

    def __init__(
        self,
        *,
        cert_path: str,
        key_path: str,
        auto_generate: bool = False,
        common_name: str = "edgefleet device CA",
        validity_days: int = 90,
        timeout_seconds: float = 10.0,
    ) -> None:
        self._cert_path = Path(cert_path)
        self._key_path = Path(key_path)
        self._auto_generate = auto_generate
        self._common_name = common_name
        self._validity = datetime.timedelta(days=validity_days)
        self._timeout = timeout_seconds
        self._ca_cert: x509.Certificate | None = None
        self._ca_key: ec.EllipticCurvePrivateKey | None = None

    # --- root material ---

    def _load(self) -> tuple[x509.Certificate, ec.EllipticCurvePrivateKey]:
        """Load the root, generating it first when allowed and missing."""
        if self._ca_cert is not None and self._ca_key is not None:
            return self._ca_cert, self._ca_key
        if not (self._cert_path.exists() and self._key_path.exists()):
            if not self._auto_generate:
                raise SigningError(
                    f"CA material not found at {self._cert_path} / {self._key_path}",
                )
            self._generate_root()
        cert = x509.load_pem_x509_certificate(self._cert_path.read_bytes())
        key = serialization.load_pem_private_key(
            self._key_path.read_bytes(), password=None,
        )
        if not isinstance(key, ec.EllipticCurvePrivateKey):
            raise SigningError("CA key must be an EC private key")
        self._ca_cert, self._ca_key = cert, key
        return cert, key

    def _generate_root(self) -> None:
        """Create a self-signed P-256 root and write it to the configured paths."""
        key = ec.generate_private_key(ec.SECP256R1())
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, self._common_name)])
        now = datetime.datetime.now(datetime.timezone.utc)
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - _BACKDATE)
            .not_valid_after(now + datetime.timedelta(days=3650))
            .add_extension(x509.BasicConstraints(ca=True, path_length=0), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=False,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=True,
                    crl_sign=True,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.SubjectKeyIdentifier.from_public_key(key.public_key()),
                critical=False,
            )
            .sign(key, hashes.SHA256())
        )
        self._cert_path.parent.mkdir(parents=True, exist_ok=True)
        self._key_path.parent.mkdir(parents=True, exist_ok=True)
        self._cert_path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))
        self._key_path.write_bytes(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        os.chmod(self._key_path, 0o600)
        logger.warning("Generated a new device CA at %s", self._cert_path)

    @property
    def ca_certificate_pem(self) -> str:
        """PEM of the root certificate devices must trust."""
        cert, _ = self._load()
        return cert.public_bytes(serialization.Encoding.PEM).decode()

    # --- signing ---

    @staticmethod
    def parse_csr(csr_pem: str, subject: str) -> x509.CertificateSigningRequest:
        """Reject implausible CSRs before any signing work.

        Raises:
            InvalidCSRError: If the CSR is too small or large, unparseable,
                not self-signed correctly, or not for ``subject``.
        """
        raw = csr_pem.encode()
        if len(raw) < MIN_CSR_BYTES or len(raw) > MAX_CSR_BYTES:
            raise InvalidCSRError("CSR size is not plausible")
        try:
            csr = x509.load_pem_x509_csr(raw)
        except ValueError as error:
            raise InvalidCSRError("CSR is not valid PEM PKCS#10") from error
        if not csr.is_signature_valid:
            raise InvalidCSRError("CSR signature is invalid")
        names = csr.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if len(names) != 1 or names[0].value != subject:
            raise InvalidCSRError("CSR common name must equal the device id")
        return csr

    def _sign_sync(
        self, csr: x509.CertificateSigningRequest, subject: str,
    ) -> SignedCertificate:
        """Build and sign the leaf certificate. Runs in a worker thread."""
        ca_cert, ca_key = self._load()
        now = datetime.datetime.now(datetime.timezone.utc)
        not_after = now + self._validity
        cert = (
            x509.CertificateBuilder()
            .subject_name(
                x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, subject)]),
            )
            .issuer_name(ca_cert.subject)
            .public_key(csr.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(now - _BACKDATE)
            .not_valid_after(not_after)
            .add_extension(x509.BasicConstraints(ca=False, path_length=None), critical=True)
            .add_extension(
                x509.KeyUsage(
                    digital_signature=True,
                    content_commitment=False,
                    key_encipherment=False,
                    data_encipherment=False,
                    key_agreement=False,
                    key_cert_sign=False,
                    crl_sign=False,
                    encipher_only=False,
                    decipher_only=False,
                ),
                critical=True,
            )
            .add_extension(
                x509.ExtendedKeyUsage([ExtendedKeyUsageOID.CLIENT_AUTH]),
                critical=True,
            )
            .add_extension(
                x509.SubjectAlternativeName(
                    [x509.UniformResourceIdentifier(DEVICE_URI_PREFIX + subject)],
                ),
                critical=False,
            )
            .add_extension(
                x509.AuthorityKeyIdentifier.from_issuer_public_key(ca_key.public_key()),
                critical=False,
            )
            .sign(ca_key, hashes.SHA256())
        )
        return SignedCertificate(
            certificate_pem=cert.public_bytes(serialization.Encoding.PEM).decode(),
            ca_certificate_pem=ca_cert.public_bytes(serialization.Encoding.PEM).decode(),
            serial=format(cert.serial_number, "x"),
            fingerprint=Crypto.fingerprint(cert.public_bytes(serialization.Encoding.DER)),
            not_after=not_after,
        )

    async def sign(self, csr_pem: str, subject: str) -> SignedCertificate:
        """Validate and sign a CSR for ``subject`` under a bounded timeout.

        Raises:
            InvalidCSRError: If the CSR fails the cheap checks.
            SigningError: If signing fails or exceeds the timeout.
        """
        csr = self.parse_csr(csr_pem, subject)
        try:
            signed = await asyncio.wait_for(
                asyncio.to_thread(self._sign_sync, csr, subject),
                timeout=self._timeout,
            )
        except asyncio.TimeoutError as error:
            raise SigningError("Certificate signing timed out") from error
        except SigningError:
            raise
        except (ValueError, TypeError, OSError) as error:
            raise SigningError(f"Certificate signing failed: {error}") from error
        logger.info(
            "Issued certificate serial=%s for device %s (expires %s)",
            signed.serial, subject, signed.not_after.isoformat(),
        )
        return signed

    # --- verification ---

    def verify_client_certificate(self, certificate_pem: str) -> tuple[str, str]:
        """Check a presented client certificate against the root.

        The PEM may be URL-encoded, as forwarded by TLS-terminating proxies.

        Returns:
            Tuple of (device_id, fingerprint).

        Raises:
            InvalidClientCertificateError: If the certificate was not issued
                by this CA, is outside its validity window, or is not a
                client-authentication certificate.
        """
        ca_cert, _ = self._load()
        text = certificate_pem
        if "%" in text:
            text = unquote(text)
        try:
            cert = x509.load_pem_x509_certificate(text.encode())
        except ValueError as error:
            raise InvalidClientCertificateError("Unreadable client certificate") from error
        try:
            cert.verify_directly_issued_by(ca_cert)
        except (ValueError, TypeError, InvalidSignature) as error:
            raise InvalidClientCertificateError("Certificate not issued by this CA") from error
        now = datetime.datetime.now(datetime.timezone.utc)
        if not cert.not_valid_before_utc <= now <= cert.not_valid_after_utc:
            raise InvalidClientCertificateError("Certificate is expired or not yet valid")
        try:
            usages = cert.extensions.get_extension_for_class(x509.ExtendedKeyUsage).value
        except x509.ExtensionNotFound as error:
            raise InvalidClientCertificateError("Certificate has no extended key usage") from error
        if ExtendedKeyUsageOID.CLIENT_AUTH not in usages:
            raise InvalidClientCertificateError("Certificate is not for client authentication")
        names = cert.subject.get_attributes_for_oid(NameOID.COMMON_NAME)
        if len(names) != 1:
            raise InvalidClientCertificateError("Certificate has no device common name")
        device_id = str(names[0].value)
        fingerprint = Crypto.fingerprint(cert.public_bytes(serialization.Encoding.DER))
        return device_id, fingerprint
