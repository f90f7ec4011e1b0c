"""Tests for the certificate-authenticated device endpoints."""

from __future__ import annotations

from pathlib import Path
from urllib.parse import quote

from litestar.testing import TestClient

from edgefleet.app import create_app
from edgefleet.clients.ca_client import CertificateAuthorityClient
from edgefleet.config import Settings
from tests.conftest import CERT_HEADER, admin_headers, device_headers, enroll_device, make_csr


def _enqueue(
    client: TestClient,  # type: ignore[type-arg]
    device_id: str,
    task_type: str = "SET_PROXY",
    payload: dict[str, object] | None = None,
) -> int:
    """Queue a task as an operator and return its id."""
    response = client.post(
        f"/api/admin/devices/{device_id}/tasks",
        json={"type": task_type, "payload": payload},
        headers=admin_headers(),
    )
    assert response.status_code == 201
    task_id: int = response.json()["id"]
    return task_id


def _foreign_certificate(tmp_path: Path, device_id: str) -> str:
    """A well-formed device certificate from some other CA."""
    other = CertificateAuthorityClient(
        cert_path=str(tmp_path / "other" / "ca.crt"),
        key_path=str(tmp_path / "other" / "ca.key"),
        auto_generate=True,
    )
    csr = CertificateAuthorityClient.parse_csr(make_csr(device_id), device_id)
    return other._sign_sync(csr, device_id).certificate_pem


def test_poll_without_certificate_unauthorized(client: TestClient) -> None:  # type: ignore[type-arg]
    """No client certificate means 401."""
    assert client.get("/api/device/tasks").status_code == 401


def test_poll_with_foreign_certificate_unauthorized(
    client: TestClient, tmp_path: Path,  # type: ignore[type-arg]
) -> None:
    """A certificate from another CA is rejected even for a known device."""
    enroll_device(client)
    foreign = _foreign_certificate(tmp_path, "abc123")
    response = client.get("/api/device/tasks", headers=device_headers(foreign))
    assert response.status_code == 401


def test_poll_with_garbage_header_unauthorized(client: TestClient) -> None:  # type: ignore[type-arg]
    """An unparseable certificate header is 401, not 500."""
    response = client.get("/api/device/tasks", headers={CERT_HEADER: "not-a-cert"})
    assert response.status_code == 401


def test_superseded_certificate_unauthorized(client: TestClient) -> None:  # type: ignore[type-arg]
    """Only the fingerprint recorded at enrollment authenticates."""
    certificate = enroll_device(client)
    assert client.get("/api/device/tasks", headers=device_headers(certificate)).status_code == 200
    # Another leaf for the same CN from our CA, never recorded for the device.
    ca = client.app.state.device._ca
    csr = CertificateAuthorityClient.parse_csr(make_csr("abc123"), "abc123")
    stray = ca._sign_sync(csr, "abc123").certificate_pem
    assert client.get("/api/device/tasks", headers=device_headers(stray)).status_code == 401


def test_set_proxy_dispatch_round_trip(client: TestClient) -> None:  # type: ignore[type-arg]
    """A queued SET_PROXY task is delivered once, reported DONE, and not redelivered."""
    certificate = enroll_device(client)
    headers = device_headers(certificate)
    payload = {"http_proxy": "http://proxy.local:3128", "no_proxy": "localhost"}
    task_id = _enqueue(client, "abc123", "SET_PROXY", payload)

    first = client.get("/api/device/tasks", headers=headers)
    assert first.status_code == 200
    assert first.json() == [{"id": task_id, "type": "SET_PROXY", "payload": payload}]

    assert client.get("/api/device/tasks", headers=headers).json() == []

    report = client.post(
        f"/api/device/tasks/{task_id}/report",
        json={"status": "DONE", "result": {"changed": True}},
        headers=headers,
    )
    assert report.status_code == 200
    assert report.json() == {"id": task_id, "status": "DONE"}

    task = client.get(f"/api/admin/tasks/{task_id}", headers=admin_headers()).json()
    assert task["status"] == "DONE"
    assert task["result"] == {"changed": True}
    assert task["delivered_at"] is not None
    assert task["completed_at"] is not None
    assert client.get("/api/device/tasks", headers=headers).json() == []


def test_poll_returns_at_most_five_oldest_first(client: TestClient) -> None:  # type: ignore[type-arg]
    """Seven queued tasks are delivered as a page of five then two."""
    headers = device_headers(enroll_device(client))
    ids = [_enqueue(client, "abc123", payload={"n": n}) for n in range(7)]
    first = [t["id"] for t in client.get("/api/device/tasks", headers=headers).json()]
    second = [t["id"] for t in client.get("/api/device/tasks", headers=headers).json()]
    assert first == ids[:5]
    assert second == ids[5:]


def test_report_twice_is_conflict(client: TestClient) -> None:  # type: ignore[type-arg]
    """A terminal task cannot be reported again."""
    headers = device_headers(enroll_device(client))
    task_id = _enqueue(client, "abc123")
    client.get("/api/device/tasks", headers=headers)
    url = f"/api/device/tasks/{task_id}/report"
    assert client.post(url, json={"status": "FAILED", "result": {"error": "x"}}, headers=headers).status_code == 200
    assert client.post(url, json={"status": "DONE", "result": None}, headers=headers).status_code == 409


def test_report_before_delivery_is_conflict(client: TestClient) -> None:  # type: ignore[type-arg]
    """A QUEUED task cannot be reported."""
    headers = device_headers(enroll_device(client))
    task_id = _enqueue(client, "abc123")
    response = client.post(
        f"/api/device/tasks/{task_id}/report", json={"status": "DONE"}, headers=headers,
    )
    assert response.status_code == 409


def test_report_invalid_status(client: TestClient) -> None:  # type: ignore[type-arg]
    """Only DONE and FAILED are accepted."""
    headers = device_headers(enroll_device(client))
    task_id = _enqueue(client, "abc123")
    client.get("/api/device/tasks", headers=headers)
    url = f"/api/device/tasks/{task_id}/report"
    assert client.post(url, json={"status": "RUNNING"}, headers=headers).status_code == 400
    assert client.post(url, json={}, headers=headers).status_code == 400


def test_cross_device_report_not_found(client: TestClient) -> None:  # type: ignore[type-arg]
    """A device cannot report on another device's task."""
    first = device_headers(enroll_device(client, "dev-a", "CODE-AAAA"))
    second = device_headers(enroll_device(client, "dev-b", "CODE-BBBB"))
    task_id = _enqueue(client, "dev-a")
    client.get("/api/device/tasks", headers=first)

    response = client.post(
        f"/api/device/tasks/{task_id}/report", json={"status": "DONE"}, headers=second,
    )
    assert response.status_code == 404
    task = client.get(f"/api/admin/tasks/{task_id}", headers=admin_headers()).json()
    assert task["status"] == "RUNNING"


def test_poll_only_returns_own_tasks(client: TestClient) -> None:  # type: ignore[type-arg]
    """Tasks for one device are never delivered to another."""
    enroll_device(client, "dev-a", "CODE-AAAA")
    second = device_headers(enroll_device(client, "dev-b", "CODE-BBBB"))
    _enqueue(client, "dev-a")
    assert client.get("/api/device/tasks", headers=second).json() == []


def test_heartbeat_records_health(client: TestClient) -> None:  # type: ignore[type-arg]
    """Heartbeat stores the inventory snapshot and touches last_seen_at."""
    headers = device_headers(enroll_device(client))
    snapshot = {"hostname": "edge-1", "uptime_seconds": 42}
    response = client.post("/api/device/heartbeat", json=snapshot, headers=headers)
    assert response.status_code == 200
    assert response.json() == {"status": "ok"}
    device = client.get("/api/admin/devices/abc123", headers=admin_headers()).json()
    assert device["last_health"] == snapshot
    assert device["last_seen_at"] is not None


def test_certificate_header_ignored_when_untrusted(
    client: TestClient,  # type: ignore[type-arg]
) -> None:
    """Without trust_client_cert_header the forwarded header is not used."""
    certificate = enroll_device(client)
    client.app.state.settings.trust_client_cert_header = False
    try:
        response = client.get(
            "/api/device/tasks", headers={CERT_HEADER: quote(certificate)},
        )
    finally:
        client.app.state.settings.trust_client_cert_header = True
    assert response.status_code == 401


def test_missing_ca_material_is_unavailable(settings: Settings, tmp_path: Path) -> None:
    """Without a loadable CA root, device calls are 503 rather than 500."""
    settings.ca_auto_generate = False
    settings.ca_cert_path = str(tmp_path / "absent" / "ca.crt")
    settings.ca_key_path = str(tmp_path / "absent" / "ca.key")
    with TestClient(app=create_app(settings)) as no_ca_client:
        response = no_ca_client.get(
            "/api/device/tasks", headers={CERT_HEADER: quote("-----BEGIN CERTIFICATE-----")},
        )
    assert response.status_code == 503
    assert response.json()["detail"] == "Certificate authority unavailable"
