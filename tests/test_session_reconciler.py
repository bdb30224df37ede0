"""Tests for subscriber session reconciliation and the online projection."""

from datetime import datetime, timedelta

from backend.models.accounting import AccountingRecord
from backend.models.active_session import ActiveSession, ActiveSessionStatus, SessionSource
from backend.models.audit_log import AuditLog
from backend.models.device import DeviceStatus
from backend.models.subscriber import SessionType
from backend.services.mikrotik_service import MikroTikConnectionError
from backend.services.session_reconciler import (
    UNKNOWN_NAS_ACTION,
    ObservedSession,
    SessionReconciler,
    fetch_device_sessions,
    load_accounting_sessions,
    make_identity_key,
    merge_sessions,
    reconcile,
)
from backend.services import session_reconciler
from backend.services.mikrotik_service import DeviceTarget

NOW = datetime(2026, 10, 19, 12, 0, 0)


def seen(device, username, address="10.10.0.5", source=SessionSource.DEVICE, **fields):
    return ObservedSession(
        device_id=device.id,
        username=username,
        session_type=fields.pop("session_type", SessionType.HOTSPOT),
        source=source,
        peer_address=address,
        **fields,
    )


def active_rows(db):
    return db.query(ActiveSession).filter(ActiveSession.status == ActiveSessionStatus.ACTIVE).all()


class TestSessionKeys:
    """Identity key normalisation."""

    def test_identity_key_ignores_case_and_spaces(self):
        assert make_identity_key("d1", " Alice ", "10.0.0.1") == make_identity_key("d1", "alice", "10.0.0.1")

    def test_identity_key_depends_on_device_and_address(self):
        base = make_identity_key("d1", "alice", "10.0.0.1")
        assert make_identity_key("d2", "alice", "10.0.0.1") != base
        assert make_identity_key("d1", "alice", "10.0.0.2") != base


class TestReconcile:
    """Canonical table follows the union of sources."""

    def test_new_session_sets_subscriber_online(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        alice = make_subscriber("alice")

        summary = reconcile(db, {device.id: [seen(device, "alice")]}, accounting=[], now=NOW)

        assert summary.created == 1
        assert summary.active_count == 1
        db.refresh(alice)
        assert alice.online is True
        row = active_rows(db)[0]
        assert row.subscriber_id == alice.id
        assert row.source == SessionSource.DEVICE

    def test_reconcile_is_idempotent(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        make_subscriber("alice")
        sessions = {device.id: [seen(device, "alice")]}

        reconcile(db, sessions, accounting=[], now=NOW)
        summary = reconcile(db, sessions, accounting=[], now=NOW + timedelta(minutes=1))

        assert summary.created == 0
        assert summary.updated == 1
        assert db.query(ActiveSession).count() == 1

    def test_disappeared_session_goes_offline(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        alice = make_subscriber("alice")
        reconcile(db, {device.id: [seen(device, "alice", "10.10.0.5")]}, accounting=[], now=NOW)

        summary = reconcile(db, {device.id: []}, accounting=[], now=NOW + timedelta(minutes=1))

        assert summary.disconnected == 1
        assert summary.forced_offline is True
        db.refresh(alice)
        assert alice.online is False
        row = db.query(ActiveSession).one()
        assert row.status == ActiveSessionStatus.DISCONNECTED
        assert row.disconnected_at == NOW + timedelta(minutes=1)

    def test_reconnect_gets_new_session_key(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        make_subscriber("alice")
        reconcile(db, {device.id: [seen(device, "alice")]}, accounting=[], now=NOW)
        reconcile(db, {device.id: []}, accounting=[], now=NOW + timedelta(minutes=1))

        reconcile(db, {device.id: [seen(device, "alice")]}, accounting=[], now=NOW + timedelta(minutes=2))

        rows = db.query(ActiveSession).order_by(ActiveSession.generation).all()
        assert [r.status for r in rows] == [ActiveSessionStatus.DISCONNECTED, ActiveSessionStatus.ACTIVE]
        assert rows[0].session_key != rows[1].session_key
        assert rows[1].generation == 1

    def test_failed_enumeration_keeps_sessions(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        alice = make_subscriber("alice")
        reconcile(db, {device.id: [seen(device, "alice")]}, accounting=[], now=NOW)

        summary = reconcile(db, {device.id: None}, accounting=[], now=NOW + timedelta(minutes=1))

        assert summary.disconnected == 0
        assert summary.failed_devices == 1
        assert len(active_rows(db)) == 1
        db.refresh(alice)
        assert alice.online is True

    def test_idle_session_closes_even_without_poll(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        make_subscriber("alice")
        reconcile(db, {device.id: [seen(device, "alice")]}, accounting=[], now=NOW)

        summary = reconcile(db, {device.id: None}, accounting=[], now=NOW + timedelta(hours=1))

        assert summary.disconnected == 1

    def test_other_device_failure_does_not_touch_polled_device(self, db, make_device, make_subscriber):
        d1 = make_device("d1", status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        d2 = make_device("d2", status=DeviceStatus.ONLINE, tunnel_address="10.100.0.3")
        make_subscriber("alice")
        make_subscriber("bob")
        reconcile(db, {d1.id: [seen(d1, "alice")], d2.id: [seen(d2, "bob")]}, accounting=[], now=NOW)

        reconcile(db, {d1.id: [], d2.id: None}, accounting=[], now=NOW + timedelta(minutes=1))

        assert [r.username for r in active_rows(db)] == ["bob"]

    def test_unknown_identity_recorded_without_flags(self, db, make_device):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")

        summary = reconcile(db, {device.id: [seen(device, "ghost")]}, accounting=[], now=NOW)

        assert summary.unknown_identities == 1
        assert summary.flags_changed == 0
        assert active_rows(db)[0].subscriber_id is None

    def test_subscriber_match_is_case_insensitive(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        alice = make_subscriber("alice")

        reconcile(db, {device.id: [seen(device, " Alice ")]}, accounting=[], now=NOW)

        assert active_rows(db)[0].subscriber_id == alice.id

    def test_accounting_only_session_closes_when_radacct_stops(self, db, make_device, make_subscriber):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        make_subscriber("carol", service_type=SessionType.PPPOE)
        radius = seen(device, "carol", source=SessionSource.ACCOUNTING, session_type=SessionType.PPPOE)
        reconcile(db, {device.id: None}, accounting=[radius], now=NOW)
        assert len(active_rows(db)) == 1

        summary = reconcile(db, {device.id: None}, accounting=[], now=NOW + timedelta(minutes=1))

        assert summary.disconnected == 1

    def test_key_conflict_retries_only_that_session(self, db, make_device, make_subscriber, monkeypatch):
        device = make_device(status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        make_subscriber("alice")
        bob = make_subscriber("bob")
        reconcile(db, {device.id: [seen(device, "alice")]}, accounting=[], now=NOW)
        reconcile(db, {device.id: []}, accounting=[], now=NOW + timedelta(minutes=1))

        # Первая попытка вставки получает уже занятое поколение, как при параллельном цикле
        real_next_generation = session_reconciler._next_generation
        calls = []

        def stale_generation(session, identity_key):
            calls.append(identity_key)
            return 0 if len(calls) == 1 else real_next_generation(session, identity_key)

        monkeypatch.setattr(session_reconciler, "_next_generation", stale_generation)
        sessions = {device.id: [seen(device, "alice"), seen(device, "bob", address="10.10.0.6")]}

        summary = reconcile(db, sessions, accounting=[], now=NOW + timedelta(minutes=2))

        assert summary.errors == []
        assert summary.created == 2
        assert summary.active_count == 2
        alice_rows = db.query(ActiveSession).filter(ActiveSession.username == "alice").order_by(ActiveSession.generation).all()
        assert [r.generation for r in alice_rows] == [0, 1]
        assert alice_rows[1].status == ActiveSessionStatus.ACTIVE
        db.refresh(bob)
        assert bob.online is True


class TestMerge:
    """Primary source wins, secondary fills gaps."""

    def test_device_and_accounting_merge_into_both(self, make_device):
        device = make_device(tunnel_address="10.100.0.2")
        primary = seen(device, "alice", bytes_in=100)
        secondary = seen(
            device, "ALICE", source=SessionSource.ACCOUNTING,
            accounting_session_id="81a0001", bytes_in=5, bytes_out=7,
        )

        merged = merge_sessions([primary], [secondary])

        assert len(merged) == 1
        session = merged[primary.key]
        assert session.source == SessionSource.BOTH
        assert session.accounting_session_id == "81a0001"
        assert session.bytes_in == 100
        assert session.bytes_out == 7


class TestAccountingSource:
    """Loading open radacct rows."""

    def _radacct(self, db, nas_ip, username, unique_id, updated):
        row = AccountingRecord(
            acct_session_id=f"sess-{unique_id}",
            acct_unique_id=unique_id,
            username=username,
            nas_ip_address=nas_ip,
            nas_port_type="Virtual",
            framed_ip_address="10.20.0.9",
            acct_start_time=updated - timedelta(minutes=30),
            acct_update_time=updated,
        )
        db.add(row)
        db.commit()
        return row

    def test_recent_rows_map_to_device_by_tunnel_address(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")
        self._radacct(db, "10.100.0.2", "carol", "u1", NOW - timedelta(minutes=2))
        self._radacct(db, "10.100.0.2", "dave", "u2", NOW - timedelta(hours=2))

        observed = load_accounting_sessions(db, [device], now=NOW)

        assert [o.username for o in observed] == ["carol"]
        assert observed[0].device_id == device.id
        assert observed[0].session_type == SessionType.PPPOE

    def test_unknown_nas_is_audited_once(self, db, make_device):
        device = make_device(tunnel_address="10.100.0.2")
        self._radacct(db, "203.0.113.7", "mallory", "u3", NOW - timedelta(minutes=1))

        assert load_accounting_sessions(db, [device], now=NOW) == []
        db.commit()
        load_accounting_sessions(db, [device], now=NOW)
        db.commit()

        assert db.query(AuditLog).filter(AuditLog.action == UNKNOWN_NAS_ACTION).count() == 1


class TestCollection:
    """Enumeration wrappers."""

    def test_fetch_failure_returns_none(self, make_device):
        target = DeviceTarget.from_device(make_device(tunnel_address="10.100.0.2"))

        def broken(t):
            raise MikroTikConnectionError("no route to host")

        assert fetch_device_sessions(target, fetch=broken) is None

    def test_malformed_enumeration_returns_none(self, make_device):
        target = DeviceTarget.from_device(make_device(tunnel_address="10.100.0.2"))

        def garbled(t):
            return ["not a session"]

        assert fetch_device_sessions(target, fetch=garbled) is None

    def test_reconciler_polls_online_devices(self, db, make_device, make_subscriber):
        online = make_device("on", status=DeviceStatus.ONLINE, tunnel_address="10.100.0.2")
        make_device("off", status=DeviceStatus.OFFLINE, tunnel_address="10.100.0.3")
        make_subscriber("alice")
        polled = []

        def fetch(target):
            polled.append(target.id)
            return [{"username": "alice", "address": "10.10.0.5", "session_type": SessionType.HOTSPOT}]

        active = SessionReconciler(db, fetch=fetch, max_workers=2).reconcile(now=NOW)

        assert active == 1
        assert polled == [online.id]
