"""Health resource — database and CA readiness."""

from __future__ import annotations

from edgefleet.clients.ca_client import CertificateAuthorityClient, SigningError
from edgefleet.utils.db import Database


class HealthResource:
    """Reports whether the registry is reachable and the CA can issue."""

    def __init__(self, ca_client: CertificateAuthorityClient) -> None:
        self._ca = ca_client

    def _ca_ready(self) -> bool:
        try:
            _ = self._ca.ca_certificate_pem
        except (SigningError, OSError, ValueError):
            return False
        return True

    async def check(self) -> dict[str, str]:
        """Return ``ok`` only when both the database and the CA are usable."""
        database = "ready" if await Database.ping() else "unavailable"
        ca = "ready" if self._ca_ready() else "unavailable"
        status = "ok" if database == ca == "ready" else "degraded"
        return {"status": status, "database": database, "ca": ca}
