"""Serve the device API over mutual TLS with uvicorn.

uvicorn verifies the client certificate against ``ssl_ca_certs`` but does
not hand it to the application. ClientCertificateH11Protocol reads the
peer certificate once the handshake completes and publishes it on every
request of that connection through the ASGI TLS extension
(``scope["extensions"]["tls"]["client_cert_chain"]``), where the device
API looks for it.
"""

from __future__ import annotations

import asyncio
import ssl
from typing import Any

from litestar.types import Receive, Scope, Send
from uvicorn.protocols.http.h11_impl import H11Protocol


class _ClientCertificateApp:
    """ASGI wrapper that attaches one connection's client certificate."""

    def __init__(self, app: Any, certificate_pem: str) -> None:
        self._app = app
        self._certificate_pem = certificate_pem

    async def __call__(
        self, scope: Scope, receive: Receive, send: Send,
    ) -> None:
        if scope["type"] in ("http", "websocket"):
            extensions = dict(scope.get("extensions") or {})
            tls = dict(extensions.get("tls") or {})
            tls["client_cert_chain"] = [self._certificate_pem]
            extensions["tls"] = tls
            scope = {**scope, "extensions": extensions}  # type: ignore[assignment]
        await self._app(scope, receive, send)


class ClientCertificateH11Protocol(H11Protocol):
    """h11 protocol that exposes the verified peer certificate to the app."""

    def connection_made(  # type: ignore[override]
        self, transport: asyncio.Transport,
    ) -> None:
        super().connection_made(transport)
        ssl_object = transport.get_extra_info("ssl_object")
        if ssl_object is None:
            return
        der = ssl_object.getpeercert(binary_form=True)
        if der:
            self.app = _ClientCertificateApp(self.app, ssl.DER_cert_to_PEM_cert(der))


def uvicorn_tls_options(
    certfile: str, keyfile: str | None, ca_certfile: str,
) -> dict[str, Any]:
    """uvicorn keyword arguments for HTTPS that asks for a client certificate.

    Enrollment endpoints are called before a device has a certificate, so
    the handshake accepts clients without one (CERT_OPTIONAL); any
    certificate that is presented must chain to ``ca_certfile``.
    """
    return {
        "ssl_certfile": certfile,
        "ssl_keyfile": keyfile,
        "ssl_ca_certs": ca_certfile,
        "ssl_cert_reqs": ssl.CERT_OPTIONAL,
        "http": ClientCertificateH11Protocol,
    }
