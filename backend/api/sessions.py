"""
API endpoints для активных сессий и флагов online абонентов.
"""
import asyncio
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.api.dependencies import get_current_admin
from backend.api.schemas import (
    ActiveSessionListResponse,
    ActiveSessionResponse,
    SessionReconcileResponse,
    SubscriberOnlineResponse,
    SubscriberSessionsResponse,
)
from backend.models.active_session import ActiveSession, ActiveSessionStatus
from backend.models.admin import Admin
from backend.models.subscriber import SessionType
from backend.services.device_service import get_device
from backend.services.mikrotik_service import DeviceTarget, MikroTikConnectionError, disconnect_subscriber
from backend.services.session_reconciler import SessionReconciler
from backend.services.subscriber_service import get_subscriber, get_subscriber_sessions, recompute_online_flags

router = APIRouter(tags=["sessions"])


@router.get("/sessions/active", response_model=ActiveSessionListResponse)
async def list_active_sessions(
    device_id: Optional[str] = Query(None),
    session_type: Optional[SessionType] = Query(None),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Канонический список активных сессий флота.
    """
    query = db.query(ActiveSession).filter(ActiveSession.status == ActiveSessionStatus.ACTIVE)
    if device_id:
        query = query.filter(ActiveSession.device_id == device_id)
    if session_type:
        query = query.filter(ActiveSession.session_type == session_type)
    total = query.count()
    sessions = query.order_by(ActiveSession.connected_at.desc()).offset(skip).limit(limit).all()
    return ActiveSessionListResponse(
        items=[ActiveSessionResponse.model_validate(s) for s in sessions],
        total=total,
    )


@router.post("/sessions/reconcile", response_model=SessionReconcileResponse)
async def reconcile_sessions(
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Сверить сессии вне расписания (опрос онлайн-устройств и radacct).
    """
    summary = await asyncio.to_thread(SessionReconciler(db).run)
    return SessionReconcileResponse(**asdict(summary))


@router.post("/sessions/{session_id}/disconnect", response_model=ActiveSessionResponse)
async def disconnect_session(
    session_id: str,
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Разорвать сессию абонента на устройстве и закрыть её запись.
    """
    session = db.query(ActiveSession).filter(ActiveSession.id == session_id).first()
    if session is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    if session.status != ActiveSessionStatus.ACTIVE:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Session is not active")
    device = get_device(db, session.device_id)
    if device is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Device not found")

    target = DeviceTarget.from_device(device)
    try:
        removed = await asyncio.to_thread(disconnect_subscriber, target, session.username, session.session_type)
    except MikroTikConnectionError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    if not removed:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail=f"Session type {session.session_type.value} cannot be disconnected on the device",
        )

    now = datetime.utcnow()
    session.status = ActiveSessionStatus.DISCONNECTED
    session.disconnected_at = now
    db.flush()
    recompute_online_flags(db, [session.subscriber_id], now=now, commit=False)
    db.commit()
    db.refresh(session)
    return ActiveSessionResponse.model_validate(session)


@router.get("/subscribers/{subscriber_id}/sessions", response_model=SubscriberSessionsResponse)
async def list_subscriber_sessions(
    subscriber_id: str,
    active_only: bool = Query(True),
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Сессии абонента (по умолчанию только активные).
    """
    subscriber = get_subscriber(db, subscriber_id)
    if subscriber is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscriber not found")
    sessions = get_subscriber_sessions(db, subscriber_id, active_only=active_only)
    return SubscriberSessionsResponse(
        subscriber_id=subscriber.id,
        username=subscriber.username,
        online=subscriber.online,
        active_count=sum(1 for s in sessions if s.status == ActiveSessionStatus.ACTIVE),
        sessions=[ActiveSessionResponse.model_validate(s) for s in sessions],
    )


@router.get("/subscribers/{subscriber_id}/online", response_model=SubscriberOnlineResponse)
async def get_subscriber_online(
    subscriber_id: str,
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Флаг online абонента (проекция активных сессий).
    """
    subscriber = get_subscriber(db, subscriber_id)
    if subscriber is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Subscriber not found")
    active = get_subscriber_sessions(db, subscriber_id, active_only=True)
    return SubscriberOnlineResponse(
        subscriber_id=subscriber.id,
        online=subscriber.online,
        active_count=len(active),
        last_online_change_at=subscriber.last_online_change_at,
    )
