"""Tests for RADIUS accounting ingest into radacct."""

from datetime import datetime, timedelta

import pytest

from backend.models.accounting import AccountingRecord
from backend.services.accounting_service import make_unique_id, record_accounting
from backend.services.session_reconciler import close_stale_accounting

NOW = datetime(2026, 10, 19, 12, 0, 0)


class TestRecordAccounting:
    """Start / Interim-Update / Stop handling."""

    def test_start_creates_open_record(self, db):
        record = record_accounting(
            db, "Start", "81a00001", "10.100.0.2",
            username="carol", nas_port_type="Virtual", framed_ip_address="10.20.0.9", now=NOW,
        )
        assert record.acct_start_time == NOW
        assert record.acct_stop_time is None
        assert record.acct_unique_id == make_unique_id("10.100.0.2", "81a00001", "carol")

    def test_interim_updates_counters_with_gigawords(self, db):
        record_accounting(db, "Start", "81a00001", "10.100.0.2", username="carol", now=NOW)

        record = record_accounting(
            db, "Interim-Update", "81a00001", "10.100.0.2", username="carol",
            session_time=300, input_octets=10, input_gigawords=1, output_octets=20,
            now=NOW + timedelta(minutes=5),
        )

        assert record.acct_input_octets == 2 ** 32 + 10
        assert record.acct_output_octets == 20
        assert record.acct_update_time == NOW + timedelta(minutes=5)
        assert db.query(AccountingRecord).count() == 1

    def test_interim_without_start_backdates_start(self, db):
        record = record_accounting(
            db, "Interim-Update", "81a00002", "10.100.0.2", username="dave", session_time=600, now=NOW,
        )
        assert record.acct_start_time == NOW - timedelta(seconds=600)

    def test_stop_closes_record(self, db):
        record_accounting(db, "Start", "81a00001", "10.100.0.2", username="carol", now=NOW)

        record = record_accounting(
            db, "Stop", "81a00001", "10.100.0.2", username="carol",
            terminate_cause="Idle-Timeout", now=NOW + timedelta(minutes=30),
        )

        assert record.acct_stop_time == NOW + timedelta(minutes=30)
        assert record.acct_terminate_cause == "Idle-Timeout"

    def test_accounting_on_closes_nas_sessions(self, db):
        record_accounting(db, "Start", "s1", "10.100.0.2", username="carol", now=NOW)
        record_accounting(db, "Start", "s2", "10.100.0.2", username="dave", now=NOW)
        record_accounting(db, "Start", "s3", "10.100.0.3", username="erin", now=NOW)

        assert record_accounting(db, "Accounting-On", "0", "10.100.0.2", now=NOW) is None

        open_rows = db.query(AccountingRecord).filter(AccountingRecord.acct_stop_time.is_(None)).all()
        assert [r.username for r in open_rows] == ["erin"]

    def test_unsupported_status_type(self, db):
        with pytest.raises(ValueError):
            record_accounting(db, "Bogus", "s1", "10.100.0.2")


class TestStaleAccounting:
    """Hourly cleanup of rows the NAS forgot to stop."""

    def test_rows_without_updates_are_closed(self, db):
        record_accounting(db, "Start", "old", "10.100.0.2", username="carol", now=NOW - timedelta(hours=30))
        record_accounting(db, "Start", "new", "10.100.0.2", username="dave", now=NOW - timedelta(hours=1))

        assert close_stale_accounting(db, now=NOW) == 1

        old = db.query(AccountingRecord).filter(AccountingRecord.acct_session_id == "old").one()
        assert old.acct_terminate_cause == "Stale-Session"
