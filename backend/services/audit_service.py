"""
Сервис для работы с журналом аудита.
"""
from typing import Optional, List
from datetime import datetime
from sqlalchemy.orm import Session
from sqlalchemy import desc
from backend.models.audit_log import AuditLog
import json


def create_audit_log(
    db: Session,
    action: str,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    device_id: Optional[str] = None,
    admin_id: Optional[str] = None,
    details: Optional[dict] = None,
    ip_address: Optional[str] = None,
    commit: bool = True,
) -> AuditLog:
    """
    Создать запись в журнале аудита.
    commit=False позволяет записать событие в рамках текущей транзакции (например, цикла сверки).
    """
    audit_log = AuditLog(
        admin_id=admin_id,
        device_id=device_id,
        action=action,
        entity_type=entity_type,
        entity_id=entity_id,
        details=json.dumps(details, default=str) if details else None,
        ip_address=ip_address,
    )
    db.add(audit_log)
    if commit:
        db.commit()
        db.refresh(audit_log)
    return audit_log


def get_audit_logs(
    db: Session,
    skip: int = 0,
    limit: int = 100,
    action: Optional[str] = None,
    device_id: Optional[str] = None,
    admin_id: Optional[str] = None,
    start_date: Optional[datetime] = None,
) -> List[AuditLog]:
    """Получить записи журнала аудита с фильтрацией (новые первыми)."""
    query = db.query(AuditLog)

    if action:
        query = query.filter(AuditLog.action == action)
    if device_id:
        query = query.filter(AuditLog.device_id == device_id)
    if admin_id:
        query = query.filter(AuditLog.admin_id == admin_id)
    if start_date:
        query = query.filter(AuditLog.created_at >= start_date)

    return query.order_by(desc(AuditLog.created_at)).offset(skip).limit(limit).all()
