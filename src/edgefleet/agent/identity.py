"""Local key material: private key, CSR, and issued certificates."""

from __future__ import annotations

import os
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID


class DeviceIdentity:
    """Owns the device's private key. The key never leaves the device."""

    def __init__(self, state_dir: str | Path) -> None:
        self._dir = Path(state_dir)
        self.key_path = self._dir / "device.key"
        self.cert_path = self._dir / "device.crt"
        self.ca_path = self._dir / "ca.crt"

    def has_certificate(self) -> bool:
        """True once an issued certificate and the key are both on disk."""
        return self.cert_path.exists() and self.key_path.exists()

    def ensure_key(self) -> ec.EllipticCurvePrivateKey:
        """Load the P-256 key, generating and persisting it on first use."""
        if self.key_path.exists():
            key = serialization.load_pem_private_key(
                self.key_path.read_bytes(), password=None,
            )
            if not isinstance(key, ec.EllipticCurvePrivateKey):
                raise ValueError(f"{self.key_path} is not an EC private key")
            return key
        key = ec.generate_private_key(ec.SECP256R1())
        self._dir.mkdir(parents=True, exist_ok=True)
        self.key_path.write_bytes(
            key.private_bytes(
                encoding=serialization.Encoding.PEM,
                format=serialization.PrivateFormat.PKCS8,
                encryption_algorithm=serialization.NoEncryption(),
            )
        )
        os.chmod(self.key_path, 0o600)
        return key

    def build_csr(self, device_id: str) -> str:
        """PEM CSR binding the device key to CN=device_id."""
        key = self.ensure_key()
        csr = (
            x509.CertificateSigningRequestBuilder()
            .subject_name(
                x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, device_id)]),
            )
            .sign(key, hashes.SHA256())
        )
        return csr.public_bytes(serialization.Encoding.PEM).decode()

    def save_certificates(self, certificate_pem: str, ca_certificate_pem: str) -> None:
        """Persist the issued certificate and the CA root."""
        self._dir.mkdir(parents=True, exist_ok=True)
        self.cert_path.write_text(certificate_pem)
        self.ca_path.write_text(ca_certificate_pem)
