"""
API endpoints для управления устройствами флота.
"""
import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException, Query, Request, status
from sqlalchemy.orm import Session

from backend.database import get_db
from backend.api.dependencies import (
    get_calling_device,
    get_console_service,
    get_current_admin,
    get_device_or_404,
    get_wireguard_store,
)
from backend.api.schemas import (
    ConsoleLinksResponse,
    DeviceCreate,
    DeviceListResponse,
    DeviceResponse,
    DeviceStatusView,
    HeartbeatRequest,
    OnboardingResponse,
    PhoneHomeRequest,
    PhoneHomeResponse,
    PortMappingResponse,
    ProbeResponse,
)
from backend.models.admin import Admin
from backend.models.device import Device, DeviceStatus
from backend.services.console_port_service import ConsolePortService
from backend.services.device_service import (
    console_links,
    device_status_view,
    list_devices,
    onboard_device,
    record_heartbeat,
    register_public_key,
    soft_delete_device,
)
from backend.services.exceptions import NatRuleError, PortRangeExhausted, SubnetExhausted
from backend.services.mikrotik_service import DeviceTarget
from backend.services.probe_service import apply_probe_result, probe_device
from backend.services.wireguard_service import WireGuardPeerStore
from config.settings import settings

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/devices", tags=["devices"])


@router.get("", response_model=DeviceListResponse)
async def get_devices(
    owner_id: Optional[str] = Query(None),
    device_status: Optional[DeviceStatus] = Query(None, alias="status"),
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Получить список устройств с фильтрацией по владельцу и статусу.
    """
    devices = list_devices(db, owner_id=owner_id, status=device_status, skip=skip, limit=limit)
    return DeviceListResponse(
        items=[DeviceResponse.model_validate(d) for d in devices],
        total=len(devices),
    )


@router.post("", response_model=OnboardingResponse, status_code=status.HTTP_201_CREATED)
async def create_device(
    device_data: DeviceCreate,
    db: Session = Depends(get_db),
    console: ConsolePortService = Depends(get_console_service),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Подключить новое устройство: выделить адрес туннеля и порт консоли.
    Возвращает данные для настройки WireGuard на роутере.
    """
    try:
        result = onboard_device(
            db,
            name=device_data.name,
            model=device_data.model,
            owner_id=device_data.owner_id,
            api_username=device_data.api_username,
            api_password=device_data.api_password,
            api_port=device_data.api_port,
            connection_type=device_data.connection_type,
            ssh_key_path=device_data.ssh_key_path,
            use_ssl=device_data.use_ssl,
            console=console,
            admin_id=current_admin.id,
        )
    except SubnetExhausted as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    return OnboardingResponse(**result.to_dict())


# Обратные вызовы устройств объявлены до /{device_id}, чтобы не совпасть с ним

@router.post("/phone-home", response_model=PhoneHomeResponse)
async def phone_home(
    payload: PhoneHomeRequest,
    background_tasks: BackgroundTasks,
    db: Session = Depends(get_db),
    device: Device = Depends(get_calling_device),
):
    """
    Устройство сообщает открытый ключ WireGuard после настройки туннеля.
    Пир применяется в фоне, ответ не ждёт перезагрузки интерфейса.
    """
    try:
        device = register_public_key(
            db,
            device,
            payload.public_key,
            tunnel_address=payload.tunnel_address,
            background_tasks=background_tasks,
        )
    except SubnetExhausted as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(e))

    return PhoneHomeResponse(
        device_id=device.id,
        tunnel_address=device.tunnel_address,
        server_public_key=settings.WG_SERVER_PUBLIC_KEY,
        server_endpoint=settings.WG_SERVER_ENDPOINT,
        server_port=settings.WG_SERVER_PORT,
        peer_status=device.peer_status,
    )


@router.post("/heartbeat", status_code=status.HTTP_204_NO_CONTENT)
async def heartbeat(
    payload: HeartbeatRequest,
    request: Request,
    db: Session = Depends(get_db),
    device: Device = Depends(get_calling_device),
):
    """
    Heartbeat устройства. Сохраняется только для диагностики.
    """
    public_ip = payload.public_ip or (request.client.host if request.client else None)
    record_heartbeat(db, device, public_ip)


@router.get("/{device_id}", response_model=DeviceResponse)
async def get_device_info(
    device: Device = Depends(get_device_or_404),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Получить устройство по ID.
    """
    return DeviceResponse.model_validate(device)


@router.get("/{device_id}/status", response_model=DeviceStatusView)
async def get_device_status(
    device: Device = Depends(get_device_or_404),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Краткое состояние устройства для панели оператора.
    """
    return DeviceStatusView(**device_status_view(device))


@router.delete("/{device_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_device(
    device: Device = Depends(get_device_or_404),
    db: Session = Depends(get_db),
    console: ConsolePortService = Depends(get_console_service),
    peer_store: WireGuardPeerStore = Depends(get_wireguard_store),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Удалить устройство: снять проброс консоли, удалить пир, освободить адрес.
    Если правило NAT не снимается, устройство остаётся.
    """
    try:
        soft_delete_device(db, device, console=console, peer_store=peer_store, admin_id=current_admin.id)
    except NatRuleError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/{device_id}/console-links", response_model=ConsoleLinksResponse)
async def get_console_links(
    device: Device = Depends(get_device_or_404),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Ссылки Winbox/SSH/API на адрес туннеля устройства.
    """
    return ConsoleLinksResponse(**console_links(device))


@router.post("/{device_id}/console-mapping", response_model=PortMappingResponse)
async def ensure_console_mapping(
    device: Device = Depends(get_device_or_404),
    db: Session = Depends(get_db),
    console: ConsolePortService = Depends(get_console_service),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Выделить (или подтвердить) публичный порт консоли и правила NAT.
    """
    try:
        mapping = console.ensure_mapping(db, device)
    except PortRangeExhausted as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except NatRuleError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
    return PortMappingResponse.model_validate(mapping)


@router.post("/{device_id}/probe", response_model=ProbeResponse)
async def probe_device_now(
    device: Device = Depends(get_device_or_404),
    db: Session = Depends(get_db),
    current_admin: Admin = Depends(get_current_admin),
):
    """
    Опросить устройство вне расписания и применить результат.
    """
    target = DeviceTarget.from_device(device)
    result = await asyncio.to_thread(probe_device, target)
    apply_probe_result(db, device, result)
    logger.info(f"Ручной опрос устройства {device.id}: {result.outcome.value}")
    return ProbeResponse(
        device_id=device.id,
        outcome=result.outcome.value,
        latency_ms=result.latency_ms,
        error=result.error,
        status=device.status,
    )
