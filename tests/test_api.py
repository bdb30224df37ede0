"""Tests for the HTTP API."""

import pytest

from backend.models.active_session import ActiveSession, SessionSource
from backend.models.device import Device
from backend.models.subscriber import SessionType
from backend.services import probe_service
from backend.services.session_reconciler import ObservedSession, reconcile
from tests.conftest import wg_key

API = "/api"


async def onboard(client, headers, name="office"):
    response = await client.post(
        f"{API}/devices",
        json={"name": name, "api_username": "admin", "api_password": "secret"},
        headers=headers,
    )
    assert response.status_code == 201, response.text
    return response.json()


class TestService:
    """Service endpoints without authentication."""

    @pytest.mark.asyncio
    async def test_health(self, async_client):
        response = await async_client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "healthy"}

    @pytest.mark.asyncio
    async def test_info(self, async_client):
        response = await async_client.get("/api/info")
        assert response.json()["status"] == "running"


class TestAuth:
    """Admin login and token checks."""

    @pytest.mark.asyncio
    async def test_login_success(self, async_client, admin):
        response = await async_client.post(
            f"{API}/auth/login", json={"username": "operator", "password": "operator-password"}
        )
        assert response.status_code == 200
        data = response.json()
        assert data["token_type"] == "bearer"
        assert data["admin"]["username"] == "operator"

    @pytest.mark.asyncio
    async def test_login_wrong_password(self, async_client, admin):
        response = await async_client.post(f"{API}/auth/login", json={"username": "operator", "password": "nope"})
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_me(self, async_client, auth_headers):
        response = await async_client.get(f"{API}/auth/me", headers=auth_headers)
        assert response.status_code == 200
        assert response.json()["username"] == "operator"

    @pytest.mark.asyncio
    async def test_protected_endpoint_requires_token(self, async_client):
        response = await async_client.get(f"{API}/devices", headers={"Authorization": "Bearer garbage"})
        assert response.status_code == 401


class TestDevices:
    """Onboarding, lookup and removal."""

    @pytest.mark.asyncio
    async def test_onboard_allocates_address_and_console_port(self, async_client, auth_headers, runner):
        data = await onboard(async_client, auth_headers)

        assert data["tunnel_address"] == "10.100.0.2"
        assert data["console_port"] == 50000
        assert data["server_endpoint"] == "vpn.example.net"
        assert data["console_error"] is None
        assert len(runner.rules) == 3

    @pytest.mark.asyncio
    async def test_list_and_get(self, async_client, auth_headers):
        created = await onboard(async_client, auth_headers)
        await onboard(async_client, auth_headers, name="warehouse")

        listing = await async_client.get(f"{API}/devices", headers=auth_headers)
        assert listing.json()["total"] == 2

        response = await async_client.get(f"{API}/devices/{created['device_id']}", headers=auth_headers)
        assert response.status_code == 200
        body = response.json()
        assert body["name"] == "office"
        assert "api_password" not in body

    @pytest.mark.asyncio
    async def test_unknown_device(self, async_client, auth_headers):
        response = await async_client.get(f"{API}/devices/missing", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_status_and_console_links(self, async_client, auth_headers):
        created = await onboard(async_client, auth_headers)

        status_view = await async_client.get(f"{API}/devices/{created['device_id']}/status", headers=auth_headers)
        assert status_view.json()["status"] == "pending"
        assert status_view.json()["tunnel_address"] == "10.100.0.2"

        links = await async_client.get(f"{API}/devices/{created['device_id']}/console-links", headers=auth_headers)
        assert links.json()["winbox"] == "winbox://10.100.0.2:8291"

    @pytest.mark.asyncio
    async def test_delete_releases_address_and_rules(self, async_client, auth_headers, runner):
        created = await onboard(async_client, auth_headers)

        response = await async_client.delete(f"{API}/devices/{created['device_id']}", headers=auth_headers)
        assert response.status_code == 204
        assert runner.rules == set()
        assert (await async_client.get(f"{API}/devices/{created['device_id']}", headers=auth_headers)).status_code == 404

        again = await onboard(async_client, auth_headers, name="replacement")
        assert again["tunnel_address"] == "10.100.0.2"

    @pytest.mark.asyncio
    async def test_manual_probe(self, async_client, auth_headers, monkeypatch):
        created = await onboard(async_client, auth_headers)
        monkeypatch.setattr(
            probe_service, "get_system_resource",
            lambda device, timeout=None: {"uptime_seconds": 10, "cpu_load": 1.0, "memory_usage": 5.0},
        )

        response = await async_client.post(f"{API}/devices/{created['device_id']}/probe", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["outcome"] == "success"
        assert response.json()["status"] == "online"


class TestDeviceCallbacks:
    """Phone-home and heartbeat authenticated by the device sync token."""

    @pytest.mark.asyncio
    async def test_phone_home_registers_key(self, async_client, make_device, db):
        device = make_device()

        response = await async_client.post(
            f"{API}/devices/phone-home",
            json={"public_key": wg_key(40)},
            headers={"X-Device-Token": device.sync_token},
        )

        assert response.status_code == 200
        assert response.json()["tunnel_address"] == "10.100.0.2"
        db.expire_all()
        assert db.get(Device, device.id).tunnel_public_key == wg_key(40)

    @pytest.mark.asyncio
    async def test_phone_home_rejects_bad_key(self, async_client, make_device):
        device = make_device()
        response = await async_client.post(
            f"{API}/devices/phone-home",
            json={"public_key": "not-a-key"},
            headers={"X-Device-Token": device.sync_token},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_phone_home_rejects_unknown_token(self, async_client):
        response = await async_client.post(
            f"{API}/devices/phone-home", json={"public_key": wg_key(40)}, headers={"X-Device-Token": "bogus"},
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_heartbeat(self, async_client, make_device, db):
        device = make_device()
        response = await async_client.post(
            f"{API}/devices/heartbeat", json={"public_ip": "203.0.113.7"},
            headers={"X-Device-Token": device.sync_token},
        )
        assert response.status_code == 204
        db.expire_all()
        assert db.get(Device, device.id).reported_public_ip == "203.0.113.7"


class TestHubMaintenance:
    """WireGuard reconcile and NAT rebuild."""

    @pytest.mark.asyncio
    async def test_wireguard_reconcile(self, async_client, auth_headers, make_device, runner):
        make_device(tunnel_address="10.100.0.2", tunnel_public_key=wg_key(50))

        response = await async_client.post(f"{API}/wireguard/reconcile", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["added"] == 1
        assert len(runner.synced) == 1

        logs = await async_client.get(f"{API}/audit-logs", params={"action": "wireguard_reconciled"}, headers=auth_headers)
        assert logs.json()["total"] == 1

    @pytest.mark.asyncio
    async def test_rebuild_nat(self, async_client, auth_headers, runner):
        await onboard(async_client, auth_headers)
        runner.rules.clear()

        response = await async_client.post(f"{API}/wireguard/rebuild-nat", headers=auth_headers)

        assert response.json()["applied"] == 1
        assert len(runner.rules) == 3


class TestAccountingIngest:
    """RADIUS accounting packets."""

    @pytest.mark.asyncio
    async def test_start_and_stop(self, async_client):
        packet = {
            "Acct-Status-Type": "Start",
            "Acct-Session-Id": "81a00001",
            "User-Name": "carol",
            "NAS-IP-Address": "10.100.0.2",
        }
        started = await async_client.post(f"{API}/accounting", json=packet)
        assert started.status_code == 200
        assert started.json()["status"] == "Start"

        packet["Acct-Status-Type"] = "Stop"
        stopped = await async_client.post(f"{API}/accounting", json=packet)
        assert stopped.json()["radacct_id"] == started.json()["radacct_id"]

    @pytest.mark.asyncio
    async def test_accounting_on_returns_no_content(self, async_client):
        response = await async_client.post(
            f"{API}/accounting",
            json={"Acct-Status-Type": "Accounting-On", "Acct-Session-Id": "0", "NAS-IP-Address": "10.100.0.2"},
        )
        assert response.status_code == 204

    @pytest.mark.asyncio
    async def test_unknown_status_type(self, async_client):
        response = await async_client.post(
            f"{API}/accounting",
            json={"Acct-Status-Type": "Bogus", "Acct-Session-Id": "1", "NAS-IP-Address": "10.100.0.2"},
        )
        assert response.status_code == 422


class TestSessions:
    """Active sessions, subscriber flags and disconnect."""

    def _seed(self, db, device, username="alice"):
        observed = ObservedSession(
            device_id=device.id,
            username=username,
            session_type=SessionType.HOTSPOT,
            source=SessionSource.DEVICE,
            peer_address="10.10.0.5",
        )
        reconcile(db, {device.id: [observed]})
        return db.query(ActiveSession).filter(ActiveSession.username == username).one()

    @pytest.mark.asyncio
    async def test_active_sessions_and_subscriber_flag(self, async_client, auth_headers, make_device, make_subscriber, db):
        device = make_device(tunnel_address="10.100.0.2")
        subscriber = make_subscriber("alice")
        self._seed(db, device)

        listing = await async_client.get(f"{API}/sessions/active", headers=auth_headers)
        assert listing.json()["total"] == 1
        assert listing.json()["items"][0]["subscriber_id"] == subscriber.id

        online = await async_client.get(f"{API}/subscribers/{subscriber.id}/online", headers=auth_headers)
        assert online.json()["online"] is True
        assert online.json()["active_count"] == 1

    @pytest.mark.asyncio
    async def test_unknown_subscriber(self, async_client, auth_headers):
        response = await async_client.get(f"{API}/subscribers/missing/online", headers=auth_headers)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_disconnect_closes_session(self, async_client, auth_headers, make_device, make_subscriber, db, monkeypatch):
        from backend.api import sessions as sessions_api

        device = make_device(tunnel_address="10.100.0.2")
        subscriber = make_subscriber("alice")
        row = self._seed(db, device)
        monkeypatch.setattr(sessions_api, "disconnect_subscriber", lambda target, username, session_type: True)

        response = await async_client.post(f"{API}/sessions/{row.id}/disconnect", headers=auth_headers)

        assert response.status_code == 200
        assert response.json()["status"] == "disconnected"
        online = await async_client.get(f"{API}/subscribers/{subscriber.id}/online", headers=auth_headers)
        assert online.json()["online"] is False

        again = await async_client.post(f"{API}/sessions/{row.id}/disconnect", headers=auth_headers)
        assert again.status_code == 409
