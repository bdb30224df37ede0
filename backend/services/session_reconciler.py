"""
Сверка активных сессий абонентов.

Основной источник: живые сессии, перечисленные на устройствах.
Вторичный источник: журнал radacct (открытые записи с недавним обновлением).
Источники объединяются по ключу (устройство, имя абонента, адрес), после чего
таблица active_sessions приводится к объединению, а флаги online абонентов
пересчитываются как проекция активных сессий.
"""
import hashlib
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional, Set, Tuple

from sqlalchemy import func, or_, and_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.settings import settings
from backend.models.accounting import AccountingRecord
from backend.models.active_session import ActiveSession, ActiveSessionStatus, SessionSource
from backend.models.audit_log import AuditLog
from backend.models.device import Device, DeviceStatus
from backend.models.subscriber import SessionType
from backend.services.audit_service import create_audit_log
from backend.services.mikrotik_service import (
    DeviceTarget,
    MikroTikConnectionError,
    get_active_sessions,
)
from backend.services.subscriber_service import (
    classify_identity,
    find_subscriber,
    force_all_offline,
    normalize_username,
    recompute_online_flags,
)

logger = logging.getLogger(__name__)

UNKNOWN_NAS_ACTION = "accounting_unknown_nas"

SessionFetcher = Callable[[DeviceTarget], List[dict]]


def make_identity_key(device_id: str, username: str, peer_address: Optional[str]) -> str:
    """Ключ сессии без поколения: (устройство, имя в нижнем регистре, адрес)."""
    raw = f"{device_id}|{normalize_username(username)}|{(peer_address or '').strip()}"
    return hashlib.sha1(raw.encode("utf-8")).hexdigest()


def make_session_key(identity_key: str, generation: int) -> str:
    return hashlib.sha1(f"{identity_key}|{generation}".encode("utf-8")).hexdigest()


@dataclass
class ObservedSession:
    """Сессия, увиденная в текущем цикле (на устройстве или в radacct)."""
    device_id: str
    username: str
    session_type: SessionType
    source: SessionSource
    peer_address: Optional[str] = None
    mac_address: Optional[str] = None
    accounting_session_id: Optional[str] = None
    bytes_in: Optional[int] = None
    bytes_out: Optional[int] = None
    uptime_seconds: Optional[int] = None

    @property
    def key(self) -> str:
        return make_identity_key(self.device_id, self.username, self.peer_address)


@dataclass
class ReconcileSummary:
    active_count: int = 0
    created: int = 0
    updated: int = 0
    disconnected: int = 0
    unknown_identities: int = 0
    polled_devices: int = 0
    failed_devices: int = 0
    flags_changed: int = 0
    forced_offline: bool = False
    errors: List[str] = field(default_factory=list)


# --- Сбор ---

def fetch_device_sessions(target: DeviceTarget, fetch: Optional[SessionFetcher] = None) -> Optional[List[ObservedSession]]:
    """Перечислить сессии одного устройства. None означает, что перечисление не удалось."""
    fetch = fetch or get_active_sessions
    try:
        return [
            ObservedSession(
                device_id=target.id,
                username=raw["username"],
                session_type=raw.get("session_type") or SessionType.UNKNOWN,
                source=SessionSource.DEVICE,
                peer_address=raw.get("address"),
                mac_address=raw.get("mac_address"),
                bytes_in=raw.get("bytes_in"),
                bytes_out=raw.get("bytes_out"),
                uptime_seconds=raw.get("uptime_seconds"),
            )
            for raw in fetch(target)
            if raw.get("username")
        ]
    except MikroTikConnectionError as e:
        logger.warning(f"Не удалось получить сессии устройства {target.id}: {e}")
        return None
    except Exception as e:
        logger.error(f"Ошибка разбора сессий устройства {target.id}: {e}", exc_info=True)
        return None


def collect_device_sessions(
    devices: Iterable[Device],
    fetch: Optional[SessionFetcher] = None,
    max_workers: Optional[int] = None,
) -> Dict[str, Optional[List[ObservedSession]]]:
    """Опросить устройства параллельно. Значение None для устройства означает сбой перечисления."""
    targets = [DeviceTarget.from_device(d) for d in devices if d.tunnel_address]
    if not targets:
        return {}
    workers = max(1, min(max_workers or settings.PROBE_MAX_WORKERS, len(targets)))
    with ThreadPoolExecutor(max_workers=workers) as pool:
        results = pool.map(lambda t: fetch_device_sessions(t, fetch), targets)
        return {target.id: sessions for target, sessions in zip(targets, results)}


def _accounting_session_type(row: AccountingRecord) -> SessionType:
    port_type = (row.nas_port_type or "").lower()
    if port_type in ("virtual", "pppoe"):
        return SessionType.PPPOE
    if port_type.startswith("wireless") or port_type == "ethernet":
        return SessionType.HOTSPOT
    return classify_identity(row.username)


def _audit_unknown_nas(db: Session, row: AccountingRecord) -> None:
    already = (
        db.query(AuditLog.id)
        .filter(AuditLog.action == UNKNOWN_NAS_ACTION, AuditLog.entity_id == row.acct_unique_id)
        .first()
    )
    if already:
        return
    logger.warning(
        f"Запись radacct {row.acct_unique_id} ({row.username}) от неизвестного NAS {row.nas_ip_address}"
    )
    create_audit_log(
        db,
        action=UNKNOWN_NAS_ACTION,
        entity_type="radacct",
        entity_id=row.acct_unique_id,
        details={
            "username": row.username,
            "nas_ip_address": row.nas_ip_address,
            "framed_ip_address": row.framed_ip_address,
            "acct_session_id": row.acct_session_id,
        },
        commit=False,
    )


def load_accounting_sessions(
    db: Session,
    devices: Iterable[Device],
    now: Optional[datetime] = None,
) -> List[ObservedSession]:
    """
    Открытые записи radacct, обновлявшиеся в пределах ACCOUNTING_RECENCY_MINUTES.
    NAS сопоставляется с устройством по адресу туннеля.
    """
    now = now or datetime.utcnow()
    cutoff = now - timedelta(minutes=settings.ACCOUNTING_RECENCY_MINUTES)
    by_address = {d.tunnel_address: d for d in devices if d.tunnel_address}

    rows = (
        db.query(AccountingRecord)
        .filter(
            AccountingRecord.acct_stop_time.is_(None),
            or_(
                AccountingRecord.acct_update_time >= cutoff,
                and_(AccountingRecord.acct_update_time.is_(None), AccountingRecord.acct_start_time >= cutoff),
            ),
        )
        .all()
    )

    observed: List[ObservedSession] = []
    for row in rows:
        device = by_address.get(row.nas_ip_address)
        if device is None:
            _audit_unknown_nas(db, row)
            continue
        if not row.username:
            continue
        observed.append(
            ObservedSession(
                device_id=device.id,
                username=row.username,
                session_type=_accounting_session_type(row),
                source=SessionSource.ACCOUNTING,
                peer_address=row.framed_ip_address,
                mac_address=row.calling_station_id,
                accounting_session_id=row.acct_session_id,
                bytes_in=row.acct_input_octets,
                bytes_out=row.acct_output_octets,
                uptime_seconds=row.acct_session_time,
            )
        )
    return observed


def merge_sessions(
    primary: Iterable[ObservedSession],
    secondary: Iterable[ObservedSession],
) -> Dict[str, ObservedSession]:
    """
    Объединить источники по ключу.
    Данные устройства главнее: из radacct берутся только идентификатор сессии и пустые счётчики.
    """
    merged: Dict[str, ObservedSession] = {}
    for session in primary:
        merged[session.key] = session
    for session in secondary:
        existing = merged.get(session.key)
        if existing is None:
            merged[session.key] = session
            continue
        if existing.source == SessionSource.ACCOUNTING:
            continue
        existing.source = SessionSource.BOTH
        if not existing.accounting_session_id:
            existing.accounting_session_id = session.accounting_session_id
        if existing.bytes_in is None:
            existing.bytes_in = session.bytes_in
        if existing.bytes_out is None:
            existing.bytes_out = session.bytes_out
    return merged


# --- Сверка ---

def _next_generation(db: Session, identity_key: str) -> int:
    current = db.query(func.max(ActiveSession.generation)).filter(ActiveSession.identity_key == identity_key).scalar()
    return 0 if current is None else current + 1


def _create_row(db: Session, observed: ObservedSession, device: Optional[Device], now: datetime) -> ActiveSession:
    identity_key = observed.key
    generation = _next_generation(db, identity_key)
    subscriber = find_subscriber(db, device.owner_id if device else None, observed.username)
    session_type = observed.session_type
    if session_type == SessionType.UNKNOWN and subscriber is not None:
        session_type = subscriber.service_type

    connected_at = now - timedelta(seconds=observed.uptime_seconds) if observed.uptime_seconds else now
    row = ActiveSession(
        session_key=make_session_key(identity_key, generation),
        identity_key=identity_key,
        generation=generation,
        device_id=observed.device_id,
        subscriber_id=subscriber.id if subscriber else None,
        username=observed.username.strip(),
        peer_address=observed.peer_address,
        mac_address=observed.mac_address,
        session_type=session_type,
        source=observed.source,
        accounting_session_id=observed.accounting_session_id,
        status=ActiveSessionStatus.ACTIVE,
        connected_at=connected_at,
        last_seen_at=now,
        bytes_in=observed.bytes_in,
        bytes_out=observed.bytes_out,
    )
    db.add(row)
    return row


def _insert_row(db: Session, observed: ObservedSession, device: Optional[Device], now: datetime) -> Tuple[Optional[ActiveSession], bool]:
    """
    Вставить новую сессию в точке сохранения.

    Конфликт ключа откатывает только эту вставку: если параллельный цикл уже
    записал активную строку той же сессии, она обновляется, иначе вставка
    повторяется со свежим поколением. Возвращает (строка, создана ли она).
    """
    for attempt in range(2):
        try:
            with db.begin_nested():
                row = _create_row(db, observed, device, now)
            return row, True
        except IntegrityError as e:
            logger.warning(f"Конфликт ключа сессии {observed.username} на {observed.device_id} (попытка {attempt + 1}): {e.orig}")
            existing = (
                db.query(ActiveSession)
                .filter(ActiveSession.identity_key == observed.key, ActiveSession.status == ActiveSessionStatus.ACTIVE)
                .first()
            )
            if existing is not None:
                _refresh_row(db, existing, observed, device, now)
                return existing, False
    return None, False


def _refresh_row(db: Session, row: ActiveSession, observed: ObservedSession, device: Optional[Device], now: datetime) -> None:
    row.last_seen_at = now
    row.source = observed.source
    if observed.accounting_session_id and not row.accounting_session_id:
        row.accounting_session_id = observed.accounting_session_id
    if observed.mac_address:
        row.mac_address = observed.mac_address
    if observed.bytes_in is not None:
        row.bytes_in = observed.bytes_in
    if observed.bytes_out is not None:
        row.bytes_out = observed.bytes_out
    if row.subscriber_id is None:
        subscriber = find_subscriber(db, device.owner_id if device else None, observed.username)
        if subscriber is not None:
            row.subscriber_id = subscriber.id


def reconcile(
    db: Session,
    device_sessions: Dict[str, Optional[List[ObservedSession]]],
    accounting: Optional[List[ObservedSession]] = None,
    now: Optional[datetime] = None,
) -> ReconcileSummary:
    """
    Привести active_sessions к объединению источников текущего цикла.

    Отсутствующая в объединении активная сессия закрывается, только если её
    устройство действительно опрошено в этом цикле (или, для сессий только из
    radacct, запись учёта закрыта/устарела), а также по простою дольше
    SESSION_IDLE_MINUTES. Устройство, не ответившее на перечисление, своих
    сессий не теряет.
    """
    now = now or datetime.utcnow()
    summary = ReconcileSummary()
    idle_cutoff = now - timedelta(minutes=settings.SESSION_IDLE_MINUTES)

    polled: Set[str] = {device_id for device_id, sessions in device_sessions.items() if sessions is not None}
    summary.polled_devices = len(polled)
    summary.failed_devices = len(device_sessions) - len(polled)

    primary = [s for sessions in device_sessions.values() if sessions for s in sessions]
    union = merge_sessions(primary, accounting or [])

    device_ids = {s.device_id for s in union.values()}
    devices = {d.id: d for d in db.query(Device).filter(Device.id.in_(device_ids)).all()} if device_ids else {}

    active_rows = db.query(ActiveSession).filter(ActiveSession.status == ActiveSessionStatus.ACTIVE).all()
    active_by_identity = {row.identity_key: row for row in active_rows}
    touched: Set[str] = set()

    for identity_key, observed in union.items():
        device = devices.get(observed.device_id)
        row = active_by_identity.get(identity_key)
        if row is None:
            row, created = _insert_row(db, observed, device, now)
            if row is None:
                summary.errors.append(f"session {observed.username} on {observed.device_id}: key conflict")
                continue
            active_by_identity[identity_key] = row
            if not created:
                summary.updated += 1
            else:
                summary.created += 1
                if row.subscriber_id is None:
                    summary.unknown_identities += 1
                    logger.info(f"Сессия {observed.username} на {observed.device_id} без записи абонента")
        else:
            _refresh_row(db, row, observed, device, now)
            summary.updated += 1
        if row.subscriber_id:
            touched.add(row.subscriber_id)

    for row in active_rows:
        if row.identity_key in union:
            continue
        repolled = row.device_id in polled
        accounting_expired = accounting is not None and row.source == SessionSource.ACCOUNTING
        idle = row.last_seen_at is not None and row.last_seen_at < idle_cutoff
        if not (repolled or accounting_expired or idle):
            continue
        row.status = ActiveSessionStatus.DISCONNECTED
        row.disconnected_at = now
        summary.disconnected += 1
        if row.subscriber_id:
            touched.add(row.subscriber_id)

    db.flush()
    summary.flags_changed = recompute_online_flags(db, touched, now=now, commit=False)
    db.flush()

    summary.active_count = (
        db.query(func.count(ActiveSession.id))
        .filter(ActiveSession.status == ActiveSessionStatus.ACTIVE)
        .scalar()
    ) or 0
    if summary.active_count == 0:
        summary.flags_changed += force_all_offline(db, now=now, commit=False)
        summary.forced_offline = True

    try:
        db.commit()
    except IntegrityError as e:
        # Параллельный цикл уже вставил ту же сессию; данные догонит следующий цикл
        db.rollback()
        logger.warning(f"Конфликт при сохранении сессий, цикл пропущен: {e}")
        summary.errors.append("concurrent reconciliation conflict")
        return summary

    logger.info(
        f"Сверка сессий: активных {summary.active_count}, новых {summary.created}, "
        f"закрыто {summary.disconnected}, устройств опрошено {summary.polled_devices}, "
        f"с ошибкой {summary.failed_devices}"
    )
    return summary


class SessionReconciler:
    """Полный цикл сверки: сбор с онлайн-устройств, загрузка radacct, сверка."""

    def __init__(self, db: Session, fetch: Optional[SessionFetcher] = None, max_workers: Optional[int] = None):
        self.db = db
        self.fetch = fetch
        self.max_workers = max_workers

    def _devices(self) -> List[Device]:
        return (
            self.db.query(Device)
            .filter(Device.is_deleted.is_(False), Device.tunnel_address.isnot(None))
            .all()
        )

    def reconcile(self, now: Optional[datetime] = None, device_sessions=None) -> int:
        """Вернуть число активных сессий после сверки."""
        return self.run(now=now, device_sessions=device_sessions).active_count

    def run(self, now: Optional[datetime] = None, device_sessions=None) -> ReconcileSummary:
        now = now or datetime.utcnow()
        devices = self._devices()
        if device_sessions is None:
            online = [d for d in devices if d.status == DeviceStatus.ONLINE]
            device_sessions = collect_device_sessions(online, fetch=self.fetch, max_workers=self.max_workers)
        accounting = load_accounting_sessions(self.db, devices, now)
        return reconcile(self.db, device_sessions, accounting=accounting, now=now)


def close_stale_accounting(db: Session, now: Optional[datetime] = None) -> int:
    """Закрыть записи radacct без обновлений дольше ACCOUNTING_STALE_HOURS."""
    now = now or datetime.utcnow()
    cutoff = now - timedelta(hours=settings.ACCOUNTING_STALE_HOURS)
    rows = (
        db.query(AccountingRecord)
        .filter(
            AccountingRecord.acct_stop_time.is_(None),
            func.coalesce(AccountingRecord.acct_update_time, AccountingRecord.acct_start_time) < cutoff,
        )
        .all()
    )
    for row in rows:
        row.acct_stop_time = row.acct_update_time or row.acct_start_time or now
        row.acct_terminate_cause = "Stale-Session"
    if rows:
        db.commit()
        logger.info(f"Закрыто зависших записей radacct: {len(rows)}")
    return len(rows)
