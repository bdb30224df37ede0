"""
Приём пакетов учёта RADIUS в журнал radacct.

Журнал является вторичным источником для сверки сессий: сверка читает
открытые записи, обновлявшиеся недавно.
"""
import hashlib
import logging
from datetime import datetime, timedelta
from typing import Optional

from sqlalchemy.orm import Session

from backend.models.accounting import AccountingRecord

logger = logging.getLogger(__name__)

STATUS_START = "Start"
STATUS_INTERIM = "Interim-Update"
STATUS_STOP = "Stop"
STATUS_ACCOUNTING_ON = "Accounting-On"
STATUS_ACCOUNTING_OFF = "Accounting-Off"

SUPPORTED_STATUS_TYPES = {STATUS_START, STATUS_INTERIM, STATUS_STOP, STATUS_ACCOUNTING_ON, STATUS_ACCOUNTING_OFF}


def make_unique_id(nas_ip_address: str, session_id: str, username: Optional[str]) -> str:
    """Уникальный идентификатор записи, если NAS его не прислал (как acct_unique_id во FreeRADIUS)."""
    raw = f"{nas_ip_address}|{session_id}|{(username or '').strip().lower()}"
    return hashlib.md5(raw.encode("utf-8")).hexdigest()


def _octets(octets: Optional[int], gigawords: Optional[int]) -> Optional[int]:
    if octets is None and gigawords is None:
        return None
    return (gigawords or 0) * (2 ** 32) + (octets or 0)


def close_nas_sessions(db: Session, nas_ip_address: str, cause: str, now: Optional[datetime] = None) -> int:
    """Закрыть все открытые записи NAS (перезагрузка роутера: Accounting-On/Off)."""
    now = now or datetime.utcnow()
    rows = (
        db.query(AccountingRecord)
        .filter(AccountingRecord.nas_ip_address == nas_ip_address, AccountingRecord.acct_stop_time.is_(None))
        .all()
    )
    for row in rows:
        row.acct_stop_time = now
        row.acct_terminate_cause = cause
    db.commit()
    if rows:
        logger.info(f"NAS {nas_ip_address}: закрыто записей radacct {len(rows)} ({cause})")
    return len(rows)


def record_accounting(
    db: Session,
    status_type: str,
    session_id: str,
    nas_ip_address: str,
    username: Optional[str] = None,
    unique_id: Optional[str] = None,
    nas_port_type: Optional[str] = None,
    framed_ip_address: Optional[str] = None,
    calling_station_id: Optional[str] = None,
    session_time: Optional[int] = None,
    input_octets: Optional[int] = None,
    output_octets: Optional[int] = None,
    input_gigawords: Optional[int] = None,
    output_gigawords: Optional[int] = None,
    terminate_cause: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Optional[AccountingRecord]:
    """
    Обработать пакет учёта.

    Start и Interim-Update создают или обновляют запись, Stop закрывает её.
    Accounting-On/Off закрывают все открытые записи NAS и возвращают None.
    Raises:
        ValueError: неизвестный Acct-Status-Type
    """
    if status_type not in SUPPORTED_STATUS_TYPES:
        raise ValueError(f"Unsupported Acct-Status-Type: {status_type}")
    now = now or datetime.utcnow()

    if status_type in (STATUS_ACCOUNTING_ON, STATUS_ACCOUNTING_OFF):
        close_nas_sessions(db, nas_ip_address, cause="NAS-Reboot", now=now)
        return None

    unique_id = unique_id or make_unique_id(nas_ip_address, session_id, username)
    record = db.query(AccountingRecord).filter(AccountingRecord.acct_unique_id == unique_id).first()
    if record is None:
        started = now - timedelta(seconds=session_time) if session_time and status_type != STATUS_START else now
        record = AccountingRecord(
            acct_session_id=session_id,
            acct_unique_id=unique_id,
            username=username,
            nas_ip_address=nas_ip_address,
            acct_start_time=started,
        )
        db.add(record)

    if username:
        record.username = username
    if nas_port_type:
        record.nas_port_type = nas_port_type
    if framed_ip_address:
        record.framed_ip_address = framed_ip_address
    if calling_station_id:
        record.calling_station_id = calling_station_id
    if session_time is not None:
        record.acct_session_time = session_time
    in_total = _octets(input_octets, input_gigawords)
    out_total = _octets(output_octets, output_gigawords)
    if in_total is not None:
        record.acct_input_octets = in_total
    if out_total is not None:
        record.acct_output_octets = out_total

    record.acct_update_time = now
    if status_type == STATUS_STOP:
        record.acct_stop_time = now
        record.acct_terminate_cause = terminate_cause or "User-Request"

    db.commit()
    db.refresh(record)
    logger.debug(f"radacct {status_type}: {username} на {nas_ip_address} ({session_id})")
    return record
