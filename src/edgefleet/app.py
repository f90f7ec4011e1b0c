"""Litestar application factory and CLI entry point."""

from __future__ import annotations

import argparse
import asyncio
import logging
import signal
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from litestar import Litestar
from litestar.datastructures import State
from litestar.di import Provide

from edgefleet.clients.ca_client import CertificateAuthorityClient
from edgefleet.config import AgentSettings, ConfigLoader, Settings
from edgefleet.controllers.admin import AdminController
from edgefleet.controllers.device_api import DeviceApiController
from edgefleet.controllers.enrollment import EnrollmentController
from edgefleet.controllers.health import HealthController
from edgefleet.dao.device_dao import DeviceDAO
from edgefleet.dao.task_dao import TaskDAO
from edgefleet.resources.device import DeviceResource
from edgefleet.resources.health import HealthResource
from edgefleet.resources.task import TaskResource
from edgefleet.services.device_service import DeviceService
from edgefleet.services.enrollment_service import EnrollmentService
from edgefleet.services.task_service import TaskService
from edgefleet.utils.db import Database
from edgefleet.utils.token_verifier import AdminTokenVerifier

logger = logging.getLogger(__name__)

_LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"


class AppFactory:
    """Builds and configures the Litestar application. All methods are static."""

    @staticmethod
    def ca_client(settings: Settings) -> CertificateAuthorityClient:
        """Certificate authority configured from settings."""
        return CertificateAuthorityClient(
            cert_path=settings.ca_cert_path,
            key_path=settings.ca_key_path,
            auto_generate=settings.ca_auto_generate,
            common_name=settings.ca_common_name,
            validity_days=settings.certificate_validity_days,
            timeout_seconds=settings.ca_sign_timeout_seconds,
        )

    @staticmethod
    def _build(settings: Settings) -> State:
        """Construct the full object graph once.

        pool → device_dao → device_service ─┬→ enrollment_service ─┐
        ca_client ──────────────────────────┴──────────────────────┴→ DeviceResource
        pool → task_dao → task_service → TaskResource
        AdminTokenVerifier, HealthResource (standalone)
        """
        pool = Database.init(settings.database_url)
        ca_client = AppFactory.ca_client(settings)
        device_service = DeviceService(DeviceDAO(pool))
        enrollment_service = EnrollmentService(device_service, ca_client)
        task_service = TaskService(
            TaskDAO(pool),
            batch_size=settings.task_poll_batch_size,
            running_timeout_seconds=settings.task_running_timeout_seconds,
        )
        token_verifier = AdminTokenVerifier(
            secret=settings.admin_token_secret,
            algorithms=settings.admin_token_algorithms,
            jwks_url=settings.admin_jwks_url,
            issuer=settings.admin_token_issuer,
            audience=settings.admin_token_audience,
        )
        device_resource = DeviceResource(
            device_service=device_service,
            enrollment_service=enrollment_service,
            ca_client=ca_client,
        )
        return State({
            "settings": settings,
            "token_verifier": token_verifier,
            "health": HealthResource(ca_client),
            "device": device_resource,
            "task": TaskResource(task_service=task_service),
        })

    @staticmethod
    @asynccontextmanager
    async def _lifespan(app: Litestar) -> AsyncIterator[None]:
        """Create tables on startup, dispose engine on shutdown."""
        await Database.create_tables()
        yield
        await Database.close()

    @staticmethod
    def provide_health(state: State) -> HealthResource:
        """Provide the pre-built HealthResource from app state."""
        health_resource: HealthResource = state.health
        return health_resource

    @staticmethod
    def provide_device(state: State) -> DeviceResource:
        """Provide the pre-built DeviceResource from app state."""
        device_resource: DeviceResource = state.device
        return device_resource

    @staticmethod
    def provide_task(state: State) -> TaskResource:
        """Provide the pre-built TaskResource from app state."""
        task_resource: TaskResource = state.task
        return task_resource

    @staticmethod
    def create_app(settings: Settings | None = None) -> Litestar:
        """Create and configure the Litestar application."""
        if settings is None:
            settings = ConfigLoader.load_settings()
        return Litestar(
            route_handlers=[
                HealthController, EnrollmentController,
                DeviceApiController, AdminController,
            ],
            state=AppFactory._build(settings),
            lifespan=[AppFactory._lifespan],
            dependencies={
                "health_resource": Provide(AppFactory.provide_health, sync_to_thread=False),
                "device_resource": Provide(AppFactory.provide_device, sync_to_thread=False),
                "task_resource": Provide(AppFactory.provide_task, sync_to_thread=False),
            },
        )


# Public alias so conftest / uvicorn can call create_app() without knowing AppFactory.
create_app = AppFactory.create_app


class CLI:
    """Command-line interface for edgefleet."""

    @staticmethod
    def _build_parser() -> argparse.ArgumentParser:
        """Build the CLI argument parser."""
        parser = argparse.ArgumentParser(
            prog="edgefleet", description="Edge fleet enrollment and task dispatch",
        )
        parser.add_argument("--log-level", default="INFO", help="Logging level")
        subparsers = parser.add_subparsers(dest="command")

        run_parser = subparsers.add_parser("run", help="Start the server")
        run_parser.add_argument("--host", default="0.0.0.0")
        run_parser.add_argument("--port", type=int, default=8443)
        run_parser.add_argument("--reload", action="store_true", help="Auto-reload on file changes")
        run_parser.add_argument("--ssl-certfile", default=None, help="Server TLS certificate")
        run_parser.add_argument("--ssl-keyfile", default=None, help="Server TLS private key")

        agent_parser = subparsers.add_parser("agent", help="Run the device agent")
        agent_parser.add_argument(
            "--max-ticks", type=int, default=None,
            help="Stop after this many steady-state ticks",
        )

        return parser

    @staticmethod
    def _serve(args: argparse.Namespace) -> None:
        """Run the server under uvicorn.

        With --ssl-certfile the server terminates mutual TLS itself and
        verifies client certificates against the fleet CA. Without it the
        device API only works behind a proxy that forwards the certificate,
        so plain HTTP is refused unless trust_client_cert_header is set.
        """
        import uvicorn

        from edgefleet.utils.tls import ClientCertificateH11Protocol, uvicorn_tls_options

        settings = ConfigLoader.load_settings()
        options: dict[str, Any]
        if args.ssl_certfile:
            # The CA bundle must exist before uvicorn builds its SSL context.
            _ = AppFactory.ca_client(settings).ca_certificate_pem
            options = uvicorn_tls_options(
                args.ssl_certfile, args.ssl_keyfile, settings.ca_cert_path,
            )
        elif settings.trust_client_cert_header:
            logger.warning(
                "Serving plain HTTP; device certificates are read from the %s header",
                settings.client_cert_header,
            )
            options = {"http": ClientCertificateH11Protocol}
        else:
            raise RuntimeError(
                "--ssl-certfile is required unless trust_client_cert_header is enabled",
            )
        uvicorn.run(
            "edgefleet.app:create_app",
            factory=True,
            host=args.host,
            port=args.port,
            reload=args.reload,
            **options,
        )

    @staticmethod
    def _run_agent(settings: AgentSettings, max_ticks: int | None) -> None:
        """Build the agent runtime and drive it until interrupted."""
        from edgefleet.agent.runtime import AgentRuntime

        async def _main() -> None:
            stop = asyncio.Event()
            loop = asyncio.get_running_loop()
            for signum in (signal.SIGINT, signal.SIGTERM):
                try:
                    loop.add_signal_handler(signum, stop.set)
                except NotImplementedError:
                    pass
            runtime = AgentRuntime.from_settings(settings)
            try:
                await runtime.run(stop, max_ticks=max_ticks)
            finally:
                await runtime.close()

        asyncio.run(_main())

    @staticmethod
    def main(argv: list[str] | None = None) -> None:
        """CLI entry point. Catches all exceptions and exits cleanly."""
        parser = CLI._build_parser()
        args = parser.parse_args(argv)

        if args.command is None:
            parser.print_help()
            sys.exit(1)

        logging.basicConfig(
            level=getattr(logging, str(args.log_level).upper(), logging.INFO),
            format=_LOG_FORMAT,
        )

        try:
            if args.command == "run":
                CLI._serve(args)
            elif args.command == "agent":
                CLI._run_agent(ConfigLoader.load_agent_settings(), args.max_ticks)
        except KeyboardInterrupt:
            pass
        except Exception as error:
            logger.debug("CLI command failed", exc_info=True)
            print(f"Error: {error}", file=sys.stderr)
            sys.exit(1)


if __name__ == "__main__":
    CLI.main()
