"""
Сервис абонентов: поиск и проекция флага online.
"""
import logging
import re
from datetime import datetime
from typing import Iterable, List, Optional, Set

from sqlalchemy import func
from sqlalchemy.orm import Session

from backend.models.active_session import ActiveSession, ActiveSessionStatus
from backend.models.subscriber import Subscriber, SessionType

logger = logging.getLogger(__name__)

MAC_RE = re.compile(r"^(?:[0-9A-Fa-f]{2}[:-]){5}[0-9A-Fa-f]{2}$")


def normalize_username(username: Optional[str]) -> str:
    """Имя абонента для сравнения: без пробелов по краям, в нижнем регистре."""
    return (username or "").strip().lower()


def classify_identity(username: Optional[str]) -> SessionType:
    """Тип для абонента без записи: MAC-адрес в качестве имени означает hotspot."""
    if username and MAC_RE.match(username.strip()):
        return SessionType.HOTSPOT
    return SessionType.UNKNOWN


def find_subscriber(db: Session, owner_id: Optional[str], username: str) -> Optional[Subscriber]:
    """Найти абонента владельца без учёта регистра и пробелов."""
    normalized = normalize_username(username)
    if not normalized:
        return None
    query = db.query(Subscriber).filter(func.lower(func.trim(Subscriber.username)) == normalized)
    if owner_id is not None:
        query = query.filter(Subscriber.owner_id == owner_id)
    return query.first()


def get_subscriber(db: Session, subscriber_id: str) -> Optional[Subscriber]:
    return db.query(Subscriber).filter(Subscriber.id == subscriber_id).first()


def get_subscriber_sessions(db: Session, subscriber_id: str, active_only: bool = True) -> List[ActiveSession]:
    query = db.query(ActiveSession).filter(ActiveSession.subscriber_id == subscriber_id)
    if active_only:
        query = query.filter(ActiveSession.status == ActiveSessionStatus.ACTIVE)
    return query.order_by(ActiveSession.connected_at.desc()).all()


def _set_online(subscriber: Subscriber, online: bool, now: datetime) -> bool:
    if subscriber.online == online:
        return False
    subscriber.online = online
    subscriber.last_online_change_at = now
    logger.info(f"Абонент {subscriber.username}: {'online' if online else 'offline'}")
    return True


def recompute_online_flags(
    db: Session,
    subscriber_ids: Iterable[str],
    now: Optional[datetime] = None,
    commit: bool = True,
) -> int:
    """
    Пересчитать флаг online для указанных абонентов:
    online тогда и только тогда, когда есть активная сессия.
    Возвращает число изменённых флагов.
    """
    ids: Set[str] = {sid for sid in subscriber_ids if sid}
    if not ids:
        return 0
    now = now or datetime.utcnow()
    active_ids = {
        row[0]
        for row in db.query(ActiveSession.subscriber_id)
        .filter(
            ActiveSession.subscriber_id.in_(ids),
            ActiveSession.status == ActiveSessionStatus.ACTIVE,
        )
        .distinct()
        .all()
    }
    changed = 0
    for subscriber in db.query(Subscriber).filter(Subscriber.id.in_(ids)).all():
        if _set_online(subscriber, subscriber.id in active_ids, now):
            changed += 1
    if commit:
        db.commit()
    return changed


def force_all_offline(db: Session, now: Optional[datetime] = None, commit: bool = True) -> int:
    """Сбросить флаг online у всех абонентов (во флоте нет ни одной сессии)."""
    now = now or datetime.utcnow()
    changed = 0
    for subscriber in db.query(Subscriber).filter(Subscriber.online.is_(True)).all():
        if _set_online(subscriber, False, now):
            changed += 1
    if commit:
        db.commit()
    if changed:
        logger.info(f"Активных сессий нет, {changed} абонентов переведены в offline")
    return changed
