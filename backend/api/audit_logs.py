"""
API endpoints для работы с журналом аудита.
"""
from fastapi import APIRouter, Depends, HTTPException, status, Query
from sqlalchemy.orm import Session
from typing import Optional
from datetime import datetime
from backend.database import get_db
from backend.api.dependencies import get_current_admin
from backend.api.schemas import AuditLogResponse, AuditLogListResponse
from backend.services.audit_service import get_audit_logs
from backend.models.admin import Admin
import json

router = APIRouter(prefix="/audit-logs", tags=["audit-logs"])


@router.get("", response_model=AuditLogListResponse)
async def list_audit_logs(
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    action: Optional[str] = Query(None),
    device_id: Optional[str] = Query(None),
    admin_id: Optional[str] = Query(None),
    start_date: Optional[str] = Query(None, description="ISO format: YYYY-MM-DD or YYYY-MM-DDTHH:MM:SS"),
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Получить список записей журнала аудита с фильтрацией.
    """
    start_date_obj = None
    if start_date:
        try:
            start_date_obj = datetime.fromisoformat(start_date.replace('Z', '+00:00'))
        except ValueError:
            raise HTTPException(
                status_code=status.HTTP_400_BAD_REQUEST,
                detail="Invalid start_date format",
            )

    logs = get_audit_logs(
        db=db,
        skip=skip,
        limit=limit,
        action=action,
        device_id=device_id,
        admin_id=admin_id,
        start_date=start_date_obj,
    )

    items = []
    for log in logs:
        details = None
        if log.details:
            try:
                details = json.loads(log.details)
            except (json.JSONDecodeError, TypeError):
                details = {"raw": log.details}

        items.append(AuditLogResponse(
            id=log.id,
            admin_id=log.admin_id,
            device_id=log.device_id,
            action=log.action,
            entity_type=log.entity_type,
            entity_id=log.entity_id,
            details=details,
            ip_address=log.ip_address,
            created_at=log.created_at,
        ))

    return AuditLogListResponse(
        items=items,
        total=len(items),
        skip=skip,
        limit=limit,
    )
