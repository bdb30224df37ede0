"""
Dependencies для FastAPI endpoints.
"""
import secrets
from typing import Optional

from fastapi import Depends, HTTPException, status, Header
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials
from sqlalchemy.orm import Session
from backend.database import get_db
from backend.services.auth_service import verify_token, get_admin_by_id
from backend.services.device_service import get_device, get_device_by_token
from backend.services.console_port_service import ConsolePortService
from backend.services.wireguard_service import WireGuardPeerStore, get_peer_store
from backend.models.admin import Admin
from backend.models.device import Device
from config.settings import settings

security = HTTPBearer()


async def get_current_admin(
    credentials: HTTPAuthorizationCredentials = Depends(security),
    db: Session = Depends(get_db),
) -> Admin:
    """
    Dependency для получения текущего администратора из JWT токена.
    """
    token = credentials.credentials
    payload = verify_token(token, token_type="access")
    if payload is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
            headers={"WWW-Authenticate": "Bearer"},
        )
    admin_id: str = payload.get("sub")
    if admin_id is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    admin = get_admin_by_id(db, admin_id)
    if admin is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Admin not found",
        )
    if not admin.is_active:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Admin account is inactive",
        )
    return admin


async def get_device_or_404(
    device_id: str,
    db: Session = Depends(get_db),
) -> Device:
    """Устройство из пути запроса; удалённые считаются отсутствующими."""
    device = get_device(db, device_id)
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="Device not found",
        )
    return device


async def get_calling_device(
    x_device_token: Optional[str] = Header(None),
    db: Session = Depends(get_db),
) -> Device:
    """
    Устройство, вызывающее phone-home или heartbeat.
    Аутентификация по токену устройства из заголовка X-Device-Token.
    """
    device = get_device_by_token(db, x_device_token) if x_device_token else None
    if device is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid device token",
        )
    return device


def get_console_service() -> ConsolePortService:
    return ConsolePortService()


def get_wireguard_store() -> WireGuardPeerStore:
    return get_peer_store()


async def verify_accounting_token(x_accounting_token: Optional[str] = Header(None)) -> None:
    """Проверка общего секрета RADIUS-сервера, если он задан."""
    expected = settings.ACCOUNTING_SHARED_SECRET
    if not expected:
        return
    if not x_accounting_token or not secrets.compare_digest(x_accounting_token, expected):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid accounting token",
        )
