"""Shared fixtures for edgefleet tests."""

from __future__ import annotations

from collections.abc import AsyncIterator, Iterator
from pathlib import Path
from typing import Any
from urllib.parse import quote

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID
from jose import jwt
from litestar.testing import TestClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edgefleet.app import create_app
from edgefleet.clients.ca_client import CertificateAuthorityClient
from edgefleet.config import Settings
from edgefleet.utils.db import Database

ADMIN_SECRET = "test-admin-secret"
CERT_HEADER = "X-SSL-Client-Cert"


@pytest.fixture()
def settings(tmp_path: Path) -> Settings:
    """Test settings with in-memory SQLite and a throwaway CA."""
    return Settings(
        database_url="sqlite+aiosqlite://",
        admin_token_secret=ADMIN_SECRET,
        ca_cert_path=str(tmp_path / "ca" / "ca.crt"),
        ca_key_path=str(tmp_path / "ca" / "ca.key"),
        ca_auto_generate=True,
        trust_client_cert_header=True,
        client_cert_header=CERT_HEADER,
    )


@pytest.fixture()
def client(settings: Settings) -> Iterator[TestClient]:  # type: ignore[type-arg]
    """Litestar test client with lifespan (table creation) managed."""
    with TestClient(app=create_app(settings)) as test_client:
        yield test_client


@pytest.fixture()
async def pool() -> AsyncIterator[async_sessionmaker[AsyncSession]]:
    """Fresh in-memory database for service-level tests."""
    session_pool = Database.init("sqlite+aiosqlite://")
    await Database.create_tables()
    yield session_pool
    await Database.close()


@pytest.fixture()
def ca_client(tmp_path: Path) -> CertificateAuthorityClient:
    """Certificate authority backed by an auto-generated root in tmp_path."""
    return CertificateAuthorityClient(
        cert_path=str(tmp_path / "ca.crt"),
        key_path=str(tmp_path / "ca.key"),
        auto_generate=True,
        validity_days=30,
    )


def make_csr(common_name: str) -> str:
    """PEM CSR for ``common_name`` signed by a fresh P-256 key."""
    key = ec.generate_private_key(ec.SECP256R1())
    csr = (
        x509.CertificateSigningRequestBuilder()
        .subject_name(x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, common_name)]))
        .sign(key, hashes.SHA256())
    )
    return csr.public_bytes(serialization.Encoding.PEM).decode()


def admin_headers(
    roles: list[str] | None = None,
    secret: str = ADMIN_SECRET,
    **claims: Any,
) -> dict[str, str]:
    """Bearer headers for an operator token with the given realm roles."""
    payload: dict[str, Any] = {
        "sub": "admin-1",
        "preferred_username": "alice",
        "realm_access": {"roles": ["edge-admin"] if roles is None else roles},
        **claims,
    }
    token = jwt.encode(payload, secret, algorithm="HS256")
    return {"Authorization": f"Bearer {token}"}


def device_headers(certificate_pem: str) -> dict[str, str]:
    """Headers a TLS-terminating proxy would forward for a verified client."""
    return {CERT_HEADER: quote(certificate_pem)}


def enroll_device(
    client: TestClient,  # type: ignore[type-arg]
    device_id: str = "abc123",
    pairing_code: str = "WXYZ1234",
) -> str:
    """Run hello -> claim -> CSR over HTTP and return the device certificate."""
    client.post(
        "/api/enroll/hello",
        json={"device_id": device_id, "pairing_code": pairing_code},
    )
    claim = client.post(
        f"/api/admin/devices/{device_id}/claim",
        json={"pairing_code": pairing_code},
        headers=admin_headers(),
    )
    token = claim.json()["enrollment_token"]
    issued = client.post(
        "/api/enroll/csr",
        json={
            "device_id": device_id,
            "enrollment_token": token,
            "csr": make_csr(device_id),
        },
    )
    certificate: str = issued.json()["device_certificate"]
    return certificate
