"""Tests for device probing and the status state machine."""

from datetime import datetime, timedelta

from backend.models.device import DeviceStatus
from backend.services import probe_service
from backend.services.mikrotik_service import (
    DeviceTarget,
    MikroTikConnectionError,
    MikroTikCredentialsError,
)
from backend.services.probe_service import (
    ProbeOutcome,
    ProbeResult,
    apply_probe_result,
    mark_stale_devices,
    probe_device,
)

NOW = datetime(2026, 10, 19, 12, 0, 0)
STALE = timedelta(minutes=4)

RESOURCES = {
    "uptime_seconds": 3600,
    "cpu_load": 7.0,
    "memory_usage": 41.5,
    "board_name": "hAP ac2",
    "version": "7.15.3 (stable)",
}


def success(device_id):
    return ProbeResult(device_id=device_id, outcome=ProbeOutcome.SUCCESS, latency_ms=12.0, resources=RESOURCES)


def failure(device_id):
    return ProbeResult(device_id=device_id, outcome=ProbeOutcome.RECOVERABLE_FAILURE, error="timed out")


class TestApplyProbeResult:
    """Transitions pending -> online <-> offline."""

    def test_pending_to_online(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")

        status = apply_probe_result(db, device, success(device.id), now=NOW, stale_after=STALE)

        assert status == DeviceStatus.ONLINE
        assert device.last_seen_at == NOW
        assert device.online_since == NOW
        assert device.cpu_load == 7.0
        assert device.board_name == "hAP ac2"

    def test_online_since_kept_while_online(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")
        apply_probe_result(db, device, success(device.id), now=NOW, stale_after=STALE)

        later = NOW + timedelta(minutes=1)
        apply_probe_result(db, device, success(device.id), now=later, stale_after=STALE)

        assert device.online_since == NOW
        assert device.last_seen_at == later

    def test_single_failure_within_window_keeps_online(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")
        apply_probe_result(db, device, success(device.id), now=NOW, stale_after=STALE)

        status = apply_probe_result(db, device, failure(device.id), now=NOW + timedelta(minutes=2), stale_after=STALE)

        assert status == DeviceStatus.ONLINE
        assert device.last_error == "timed out"

    def test_failure_after_stale_window_goes_offline(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")
        apply_probe_result(db, device, success(device.id), now=NOW, stale_after=STALE)

        status = apply_probe_result(db, device, failure(device.id), now=NOW + timedelta(minutes=5), stale_after=STALE)

        assert status == DeviceStatus.OFFLINE
        assert device.online_since is None

    def test_never_reached_device_stays_pending(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")

        status = apply_probe_result(db, device, failure(device.id), now=NOW, stale_after=STALE)

        assert status == DeviceStatus.PENDING

    def test_configuration_failure_is_marked_and_follows_staleness(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")
        apply_probe_result(db, device, success(device.id), now=NOW, stale_after=STALE)
        fatal = ProbeResult(device_id=device.id, outcome=ProbeOutcome.FATAL_FAILURE, error="No API credentials configured")

        status = apply_probe_result(db, device, fatal, now=NOW + timedelta(minutes=2), stale_after=STALE)

        assert status == DeviceStatus.ONLINE
        assert device.last_error == "configuration: No API credentials configured"

        status = apply_probe_result(db, device, fatal, now=NOW + timedelta(minutes=5), stale_after=STALE)

        assert status == DeviceStatus.OFFLINE

    def test_offline_device_recovers(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2", status=DeviceStatus.OFFLINE, last_seen_at=NOW - timedelta(hours=1))

        status = apply_probe_result(db, device, success(device.id), now=NOW, stale_after=STALE)

        assert status == DeviceStatus.ONLINE
        assert device.online_since == NOW

    def test_skipped_without_address_resets_to_pending(self, db, make_device):
        device = make_device(status=DeviceStatus.OFFLINE)
        result = ProbeResult(device_id=device.id, outcome=ProbeOutcome.SKIPPED)

        assert apply_probe_result(db, device, result, now=NOW) == DeviceStatus.PENDING


class TestMarkStale:
    """Sweep for devices that were not probed."""

    def test_only_stale_online_devices_flip(self, db, make_device):
        stale = make_device("stale", status=DeviceStatus.ONLINE, last_seen_at=NOW - timedelta(minutes=10))
        fresh = make_device("fresh", status=DeviceStatus.ONLINE, last_seen_at=NOW - timedelta(minutes=1))

        assert mark_stale_devices(db, now=NOW, stale_after=STALE) == 1

        db.refresh(stale)
        db.refresh(fresh)
        assert stale.status == DeviceStatus.OFFLINE
        assert fresh.status == DeviceStatus.ONLINE


class TestProbeDevice:
    """Client errors become explicit outcomes."""

    def _target(self, make_device, **fields):
        fields.setdefault("tunnel_address", "10.100.0.2")
        return DeviceTarget.from_device(make_device(api_username="admin", **fields))

    def test_success_returns_resources(self, make_device, monkeypatch):
        monkeypatch.setattr(probe_service, "get_system_resource", lambda device, timeout=None: RESOURCES)
        result = probe_device(self._target(make_device))
        assert result.ok
        assert result.resources["version"] == "7.15.3 (stable)"
        assert result.latency_ms is not None

    def test_connection_error_is_recoverable(self, make_device, monkeypatch):
        def boom(device, timeout=None):
            raise MikroTikConnectionError("connect timeout")
        monkeypatch.setattr(probe_service, "get_system_resource", boom)

        result = probe_device(self._target(make_device))

        assert result.outcome == ProbeOutcome.RECOVERABLE_FAILURE
        assert result.failed

    def test_missing_credentials_is_fatal(self, make_device, monkeypatch):
        def boom(device, timeout=None):
            raise MikroTikCredentialsError("no password")
        monkeypatch.setattr(probe_service, "get_system_resource", boom)

        result = probe_device(self._target(make_device))

        assert result.outcome == ProbeOutcome.FATAL_FAILURE

    def test_device_without_tunnel_is_skipped(self, make_device):
        target = DeviceTarget.from_device(make_device())
        result = probe_device(target)
        assert result.outcome == ProbeOutcome.SKIPPED
        assert not result.failed
