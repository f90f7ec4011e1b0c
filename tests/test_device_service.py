"""Tests for the device registry state machine."""

from __future__ import annotations

from datetime import datetime, timezone

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from edgefleet.clients.ca_client import SignedCertificate
from edgefleet.dao.device_dao import DeviceDAO
from edgefleet.services.device_service import (
    DeviceAlreadyClaimedError,
    DeviceAlreadyEnrolledError,
    DeviceNotFoundError,
    DeviceService,
    InvalidDeviceCredentialsError,
    InvalidDeviceRequestError,
    PairingCodeMismatchError,
)


def _signed(fingerprint: str = "ab" * 32) -> SignedCertificate:
    """Stand-in signing result for registry-only tests."""
    return SignedCertificate(
        certificate_pem="-----BEGIN CERTIFICATE-----",
        ca_certificate_pem="-----BEGIN CERTIFICATE-----",
        serial="1f",
        fingerprint=fingerprint,
        not_after=datetime(2030, 1, 1, tzinfo=timezone.utc),
    )


@pytest.fixture()
def service(pool: async_sessionmaker[AsyncSession]) -> DeviceService:
    """DeviceService over the in-memory pool."""
    return DeviceService(DeviceDAO(pool))


@pytest.mark.asyncio
async def test_hello_creates_once(service: DeviceService) -> None:
    """The first hello creates the record; later ones are no-ops."""
    assert await service.hello("abc123", "WXYZ1234") is True
    assert await service.hello("abc123", "DIFFERENT") is False
    device = await service.get_device("abc123")
    assert device is not None
    assert device.state == "PENDING"
    assert device.pairing_code == "WXYZ1234"


@pytest.mark.asyncio
@pytest.mark.parametrize(
    ("device_id", "pairing_code"),
    [("", "WXYZ1234"), ("a/b", "WXYZ1234"), ("x" * 129, "WXYZ1234"),
     ("abc123", "abc"), ("abc123", "has space"), ("abc123\n", "WXYZ1234")],
)
async def test_hello_rejects_malformed(
    service: DeviceService, device_id: str, pairing_code: str,
) -> None:
    """Malformed identifiers never reach the database."""
    with pytest.raises(InvalidDeviceRequestError):
        await service.hello(device_id, pairing_code)
    assert await service.list_devices() == []


@pytest.mark.asyncio
async def test_claim_moves_pending_to_claimed(service: DeviceService) -> None:
    """Claim issues a token and records the operator."""
    await service.hello("abc123", "WXYZ1234")
    token = await service.claim("abc123", "WXYZ1234", "alice")
    assert token.startswith("et_")
    device = await service.get_device("abc123")
    assert device is not None
    assert device.state == "CLAIMED"
    assert device.enrollment_token == token
    assert device.claimed_by == "alice"


@pytest.mark.asyncio
async def test_claim_unknown_device(service: DeviceService) -> None:
    """Claiming a device that never said hello raises DeviceNotFoundError."""
    with pytest.raises(DeviceNotFoundError):
        await service.claim("ghost", "WXYZ1234")


@pytest.mark.asyncio
async def test_claim_wrong_code_does_not_mutate(service: DeviceService) -> None:
    """A wrong code leaves the device PENDING without a token."""
    await service.hello("abc123", "WXYZ1234")
    with pytest.raises(PairingCodeMismatchError):
        await service.claim("abc123", "wxyz1234")
    device = await service.get_device("abc123")
    assert device is not None
    assert device.state == "PENDING"
    assert device.enrollment_token is None


@pytest.mark.asyncio
async def test_double_claim_rejected(service: DeviceService) -> None:
    """A second claim fails and the first token survives."""
    await service.hello("abc123", "WXYZ1234")
    token = await service.claim("abc123", "WXYZ1234")
    with pytest.raises(DeviceAlreadyClaimedError):
        await service.claim("abc123", "WXYZ1234")
    status = await service.enrollment_status("abc123", "WXYZ1234")
    assert status == {"status": "claimed", "enrollment_token": token}


@pytest.mark.asyncio
async def test_enrollment_status_pending_then_claimed(service: DeviceService) -> None:
    """Status is pending until the claim, then carries the token."""
    await service.hello("abc123", "WXYZ1234")
    assert await service.enrollment_status("abc123", "WXYZ1234") == {
        "status": "authorization_pending",
    }
    token = await service.claim("abc123", "WXYZ1234")
    assert (await service.enrollment_status("abc123", "WXYZ1234"))["enrollment_token"] == token


@pytest.mark.asyncio
async def test_enrollment_status_rejects_bad_credentials(service: DeviceService) -> None:
    """Unknown device and wrong code raise the same error."""
    await service.hello("abc123", "WXYZ1234")
    with pytest.raises(InvalidDeviceCredentialsError):
        await service.enrollment_status("abc123", "nope")
    with pytest.raises(InvalidDeviceCredentialsError):
        await service.enrollment_status("ghost", "WXYZ1234")


@pytest.mark.asyncio
async def test_mark_enrolled_is_one_shot(service: DeviceService) -> None:
    """CLAIMED -> ENROLLED happens once; a repeat raises."""
    await service.hello("abc123", "WXYZ1234")
    token = await service.claim("abc123", "WXYZ1234")
    await service.mark_enrolled("abc123", token, _signed())
    with pytest.raises(DeviceAlreadyEnrolledError):
        await service.mark_enrolled("abc123", token, _signed("cd" * 32))
    device = await service.get_device("abc123")
    assert device is not None
    assert device.state == "ENROLLED"
    assert device.certificate_fingerprint == "ab" * 32


@pytest.mark.asyncio
async def test_mark_enrolled_requires_matching_token(service: DeviceService) -> None:
    """A wrong token cannot enroll a claimed device."""
    await service.hello("abc123", "WXYZ1234")
    await service.claim("abc123", "WXYZ1234")
    with pytest.raises(DeviceAlreadyEnrolledError):
        await service.mark_enrolled("abc123", "et_wrong", _signed())
    device = await service.get_device("abc123")
    assert device is not None
    assert device.state == "CLAIMED"


@pytest.mark.asyncio
async def test_no_backward_transitions(service: DeviceService) -> None:
    """An enrolled device cannot be re-claimed or re-registered."""
    await service.hello("abc123", "WXYZ1234")
    token = await service.claim("abc123", "WXYZ1234")
    await service.mark_enrolled("abc123", token, _signed())
    assert await service.hello("abc123", "WXYZ1234") is False
    with pytest.raises(DeviceAlreadyClaimedError):
        await service.claim("abc123", "WXYZ1234")
    with pytest.raises(DeviceAlreadyEnrolledError):
        await service.enrollment_status("abc123", "WXYZ1234")
    device = await service.get_device("abc123")
    assert device is not None
    assert device.state == "ENROLLED"


@pytest.mark.asyncio
async def test_resolve_enrolled_device_matches_fingerprint(service: DeviceService) -> None:
    """Only the recorded fingerprint of an ENROLLED device resolves."""
    await service.hello("abc123", "WXYZ1234")
    token = await service.claim("abc123", "WXYZ1234")
    with pytest.raises(DeviceNotFoundError):
        await service.resolve_enrolled_device("abc123", "ab" * 32)
    await service.mark_enrolled("abc123", token, _signed())
    device = await service.resolve_enrolled_device("abc123", "ab" * 32)
    assert device.device_id == "abc123"
    with pytest.raises(DeviceNotFoundError):
        await service.resolve_enrolled_device("abc123", "cd" * 32)


@pytest.mark.asyncio
async def test_list_devices_and_heartbeat(service: DeviceService) -> None:
    """Heartbeats show up in the serialized view; secrets never do."""
    await service.hello("dev-a", "CODE-AAAA")
    await service.hello("dev-b", "CODE-BBBB")
    await service.record_heartbeat("dev-a", {"hostname": "edge-a"})
    devices = {d["device_id"]: d for d in await service.list_devices()}
    assert devices["dev-a"]["last_health"] == {"hostname": "edge-a"}
    assert devices["dev-a"]["last_seen_at"] is not None
    assert devices["dev-b"]["last_health"] is None
    assert "pairing_code" not in devices["dev-a"]
    assert await service.list_devices("ENROLLED") == []
