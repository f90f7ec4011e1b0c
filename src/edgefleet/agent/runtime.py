"""Agent runtime — bootstrap handshake, then the heartbeat/poll/execute loop."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any, TypeVar

import httpx

from edgefleet.agent.client import FleetClient, FleetClientError
from edgefleet.agent.executor import Executor, load_executor
from edgefleet.agent.identity import DeviceIdentity
from edgefleet.agent.inventory import collect_inventory
from edgefleet.agent.state import AgentState, StateStore
from edgefleet.config import AgentSettings

logger = logging.getLogger(__name__)

T = TypeVar("T")

# Statuses that will not change on retry; the device needs a new identity.
_FATAL_ENROLLMENT_STATUSES = frozenset({400, 403, 409})
_TRANSIENT_ERRORS = (FleetClientError, httpx.HTTPError, OSError)


class EnrollmentRejectedError(Exception):
    """Raised when the server permanently refuses this device's enrollment."""


class AgentRuntime:
    """Single-threaded device runtime.

    State is passed in explicitly; ``run()`` checks the ``stop`` event on
    every wait, so callers can bound it with ``max_ticks`` or cancel it.
    """

    def __init__(
        self,
        *,
        state: AgentState,
        state_store: StateStore,
        identity: DeviceIdentity,
        client: FleetClient,
        executor: Executor,
        poll_interval: float = 5.0,
        enrollment_retry: float = 5.0,
    ) -> None:
        self.state = state
        self._store = state_store
        self._identity = identity
        self._client = client
        self._executor = executor
        self._poll_interval = poll_interval
        self._enrollment_retry = enrollment_retry

    @classmethod
    def from_settings(cls, settings: AgentSettings) -> AgentRuntime:
        """Wire a runtime from agent settings and the persisted state."""
        store = StateStore(settings.state_dir)
        return cls(
            state=store.load_or_create(),
            state_store=store,
            identity=DeviceIdentity(settings.state_dir),
            client=FleetClient(
                server_url=settings.server_url,
                server_ca_bundle=settings.server_ca_bundle,
                timeout=settings.request_timeout_seconds,
            ),
            executor=load_executor(settings.executor),
            poll_interval=settings.poll_interval_seconds,
            enrollment_retry=settings.enrollment_retry_seconds,
        )

    @staticmethod
    async def _wait(stop: asyncio.Event, seconds: float) -> bool:
        """Sleep up to ``seconds``; True if ``stop`` was set meanwhile."""
        try:
            await asyncio.wait_for(stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return stop.is_set()
        return True

    async def _retry(
        self,
        stop: asyncio.Event,
        step: str,
        call: Callable[[], Awaitable[T]],
    ) -> T | None:
        """Run ``call`` until it succeeds, waiting the fixed backoff between tries.

        Returns None if stopped first. Fatal enrollment statuses propagate as
        EnrollmentRejectedError.
        """
        while not stop.is_set():
            try:
                return await call()
            except FleetClientError as error:
                if error.status_code in _FATAL_ENROLLMENT_STATUSES:
                    raise EnrollmentRejectedError(f"{step}: {error}") from error
                logger.warning("%s failed: %s; retrying", step, error)
            except (httpx.HTTPError, OSError) as error:
                logger.warning("%s failed: %s; retrying", step, error)
            if await self._wait(stop, self._enrollment_retry):
                break
        return None

    async def _await_enrollment_token(self, stop: asyncio.Event) -> str | None:
        """Poll until an administrator has claimed this device."""
        while not stop.is_set():
            try:
                token = await self._client.fetch_enrollment_token(
                    self.state.device_id, self.state.pairing_code,
                )
            except FleetClientError as error:
                if error.status_code == 409:
                    raise EnrollmentRejectedError(
                        "Device is already enrolled but holds no certificate",
                    ) from error
                if error.status_code == 403:
                    # Server has no record of us; announce again and keep waiting.
                    await self._retry(stop, "hello", self._hello)
                else:
                    logger.warning("Enrollment token fetch failed: %s", error)
                token = None
            except (httpx.HTTPError, OSError) as error:
                logger.warning("Enrollment token fetch failed: %s", error)
                token = None
            if token is not None:
                return token
            logger.info(
                "Waiting for an administrator to claim device %s", self.state.device_id,
            )
            if await self._wait(stop, self._enrollment_retry):
                break
        return None

    async def _hello(self) -> dict[str, Any]:
        return await self._client.hello(self.state.device_id, self.state.pairing_code)

    async def bootstrap(self, stop: asyncio.Event) -> bool:
        """Drive hello -> token -> CSR -> certificate. Skipped once enrolled.

        Returns:
            True when the device holds a certificate, False if stopped first.

        Raises:
            EnrollmentRejectedError: If the server refuses enrollment for good.
        """
        if self.state.enrolled and self._identity.has_certificate():
            self._client.use_client_certificate(
                self._identity.cert_path, self._identity.key_path,
            )
            return True

        if await self._retry(stop, "hello", self._hello) is None:
            return False

        if self.state.enrollment_token is None:
            token = await self._await_enrollment_token(stop)
            if token is None:
                return False
            self.state.enrollment_token = token
            self._store.save(self.state)

        csr_pem = self._identity.build_csr(self.state.device_id)
        token = self.state.enrollment_token
        issued = await self._retry(
            stop,
            "CSR submission",
            lambda: self._client.submit_csr(self.state.device_id, token, csr_pem),
        )
        if issued is None:
            return False

        self._identity.save_certificates(
            str(issued["device_certificate"]), str(issued["ca_certificate"]),
        )
        self.state.enrolled = True
        self._store.save(self.state)
        self._client.use_client_certificate(
            self._identity.cert_path, self._identity.key_path,
        )
        logger.info(
            "Device %s enrolled; certificate valid until %s",
            self.state.device_id, issued.get("not_after"),
        )
        return True

    async def _execute_and_report(self, task: dict[str, Any]) -> None:
        """Run one task and report it; a failure here never stops the tick."""
        task_id = int(task["id"])
        try:
            result = await asyncio.to_thread(
                self._executor, str(task["type"]), task.get("payload"),
            )
            status = "DONE"
        except Exception as error:  # executor failures become FAILED reports
            logger.warning("Task %s (%s) failed: %s", task_id, task.get("type"), error)
            result = {"error": str(error)}
            status = "FAILED"
        try:
            await self._client.report_task(task_id, status, result)
        except _TRANSIENT_ERRORS as error:
            logger.error("Could not report task %s as %s: %s", task_id, status, error)

    async def tick(self) -> int:
        """One steady-state cycle: heartbeat, poll, execute sequentially.

        Returns:
            Number of tasks handled.
        """
        await self._client.heartbeat(collect_inventory())
        tasks = await self._client.poll_tasks()
        for task in tasks:
            await self._execute_and_report(task)
        return len(tasks)

    async def run(self, stop: asyncio.Event, max_ticks: int | None = None) -> None:
        """Bootstrap, then tick every ``poll_interval`` until stopped."""
        if not await self.bootstrap(stop):
            return
        ticks = 0
        while not stop.is_set():
            try:
                await self.tick()
            except _TRANSIENT_ERRORS as error:
                logger.warning("Agent tick failed: %s", error)
            ticks += 1
            if max_ticks is not None and ticks >= max_ticks:
                break
            if await self._wait(stop, self._poll_interval):
                break

    async def close(self) -> None:
        """Release network resources."""
        await self._client.close()
