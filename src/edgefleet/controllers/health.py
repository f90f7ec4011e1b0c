"""Health controller: unauthenticated readiness check."""

from __future__ import annotations

from litestar import Controller, Response, get

from edgefleet.resources.health import HealthResource


class HealthController(Controller):
    """Readiness for load balancers; 503 while degraded."""

    path = "/api"

    @get("/health")
    async def health(self, health_resource: HealthResource) -> Response[dict[str, str]]:
        """Report database and CA readiness."""
        report = await health_resource.check()
        return Response(report, status_code=200 if report["status"] == "ok" else 503)
