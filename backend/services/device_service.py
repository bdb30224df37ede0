"""
Жизненный цикл устройства: подключение к флоту, phone-home, heartbeat, удаление.
"""
import logging
import secrets
from dataclasses import dataclass, asdict
from datetime import datetime
from typing import Optional, List, Dict, Any

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.settings import settings
from backend.models.device import Device, DeviceStatus, PeerStatus, ConnectionType
from backend.services.address_allocator import (
    allocate_tunnel_address,
    release_tunnel_address,
    is_tunnel_address,
)
from backend.services.audit_service import create_audit_log
from backend.services.console_port_service import ConsolePortService
from backend.services.exceptions import PortRangeExhausted, NatRuleError, SubnetExhausted
from backend.services.settings_service import encrypt_value
from backend.services.wireguard_service import (
    WireGuardPeerStore,
    get_peer_store,
    is_valid_public_key,
    schedule_peer_apply,
)

logger = logging.getLogger(__name__)

PUBLIC_KEY_PLACEHOLDER = "<device-public-key>"


@dataclass
class OnboardingResult:
    """Данные для инструкции по настройке нового устройства."""
    device_id: str
    tunnel_address: str
    public_key: str
    console_port: Optional[int]
    server_endpoint: str
    server_port: int
    server_public_key: str
    sync_token: str
    console_error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def generate_sync_token() -> str:
    return secrets.token_hex(32)


def get_device(db: Session, device_id: str, include_deleted: bool = False) -> Optional[Device]:
    query = db.query(Device).filter(Device.id == device_id)
    if not include_deleted:
        query = query.filter(Device.is_deleted.is_(False))
    return query.first()


def get_device_by_token(db: Session, token: str) -> Optional[Device]:
    if not token:
        return None
    return (
        db.query(Device)
        .filter(Device.sync_token == token, Device.is_deleted.is_(False))
        .first()
    )


def list_devices(
    db: Session,
    owner_id: Optional[str] = None,
    status: Optional[DeviceStatus] = None,
    skip: int = 0,
    limit: int = 100,
) -> List[Device]:
    query = db.query(Device).filter(Device.is_deleted.is_(False))
    if owner_id:
        query = query.filter(Device.owner_id == owner_id)
    if status:
        query = query.filter(Device.status == status)
    return query.order_by(Device.created_at.desc()).offset(skip).limit(limit).all()


def onboard_device(
    db: Session,
    name: str,
    model: Optional[str] = None,
    owner_id: Optional[str] = None,
    api_username: Optional[str] = None,
    api_password: Optional[str] = None,
    api_port: Optional[int] = None,
    connection_type: ConnectionType = ConnectionType.REST_API,
    ssh_key_path: Optional[str] = None,
    use_ssl: bool = False,
    console: Optional[ConsolePortService] = None,
    admin_id: Optional[str] = None,
) -> OnboardingResult:
    """
    Создать устройство, выделить адрес туннеля и порт консоли.

    Исчерпание подсети прерывает подключение (SubnetExhausted, запись устройства
    удаляется). Исчерпание портов или ошибка NAT оставляет устройство без порта,
    ошибка возвращается в console_error.
    """
    device = Device(
        name=name,
        model=model,
        owner_id=owner_id,
        api_username=api_username,
        api_password=encrypt_value(api_password) if api_password else None,
        api_port=api_port,
        connection_type=connection_type,
        ssh_key_path=ssh_key_path,
        use_ssl=use_ssl,
        sync_token=generate_sync_token(),
        status=DeviceStatus.PENDING,
        peer_status=PeerStatus.PENDING,
    )
    db.add(device)
    db.commit()
    db.refresh(device)

    try:
        tunnel_address = allocate_tunnel_address(db, device)
    except SubnetExhausted:
        db.delete(device)
        db.commit()
        raise

    console = console or ConsolePortService()
    console_error = None
    try:
        console.ensure_mapping(db, device)
    except (PortRangeExhausted, NatRuleError) as e:
        console_error = str(e)
        logger.warning(f"Устройство {device.id} создано без порта консоли: {e}")

    create_audit_log(
        db,
        action="device_onboarded",
        entity_type="device",
        entity_id=device.id,
        device_id=device.id,
        admin_id=admin_id,
        details={"name": name, "tunnel_address": tunnel_address, "console_port": device.console_port},
    )
    logger.info(f"Устройство {device.id} ({name}) подключено: {tunnel_address}, консоль {device.console_port}")

    return OnboardingResult(
        device_id=device.id,
        tunnel_address=tunnel_address,
        public_key=device.tunnel_public_key or PUBLIC_KEY_PLACEHOLDER,
        console_port=device.console_port,
        server_endpoint=settings.WG_SERVER_ENDPOINT,
        server_port=settings.WG_SERVER_PORT,
        server_public_key=settings.WG_SERVER_PUBLIC_KEY,
        sync_token=device.sync_token,
        console_error=console_error,
    )


def _address_is_free(db: Session, address: str, device: Device) -> bool:
    holder = db.query(Device.id).filter(Device.tunnel_address == address, Device.id != device.id).first()
    return holder is None


def register_public_key(
    db: Session,
    device: Device,
    public_key: str,
    tunnel_address: Optional[str] = None,
    background_tasks=None,
) -> Device:
    """
    Phone-home: устройство сообщает свой открытый ключ и, возможно, адрес туннеля.

    Сообщённый адрес принимается, только если он в подсети и свободен; иначе
    выделяется (или сохраняется) адрес по общему правилу. Пир применяется в фоне.
    Raises:
        ValueError: ключ не похож на ключ WireGuard
    """
    public_key = (public_key or "").strip()
    if not is_valid_public_key(public_key):
        raise ValueError("Invalid WireGuard public key")

    if not device.tunnel_address:
        reported = (tunnel_address or "").split("/")[0].strip()
        accepted = False
        if reported and is_tunnel_address(reported) and _address_is_free(db, reported, device):
            device.tunnel_address = reported
            device.tunnel_allowed_ips = f"{reported}/32"
            try:
                db.commit()
                accepted = True
            except IntegrityError:
                # Адрес успели занять между проверкой и записью
                db.rollback()
                logger.warning(f"Адрес {reported} устройства {device.id} уже занят, выделяем свой")
        elif reported:
            logger.warning(f"Устройство {device.id} сообщило недопустимый адрес {reported}, выделяем свой")
        if not accepted:
            allocate_tunnel_address(db, device)

    key_changed = device.tunnel_public_key != public_key
    device.tunnel_public_key = public_key
    if key_changed:
        device.peer_status = PeerStatus.PENDING
    db.commit()
    db.refresh(device)
    logger.info(f"Phone-home устройства {device.id}: ключ {public_key[:16]}..., адрес {device.tunnel_address}")

    if key_changed or device.peer_status != PeerStatus.ACTIVE:
        schedule_peer_apply(device.id, background_tasks=background_tasks)
    return device


def record_heartbeat(db: Session, device: Device, public_ip: Optional[str]) -> Device:
    """Heartbeat: только диагностика, на доступность консоли не влияет."""
    device.reported_public_ip = public_ip
    device.last_heartbeat_at = datetime.utcnow()
    db.commit()
    return device


def soft_delete_device(
    db: Session,
    device: Device,
    console: Optional[ConsolePortService] = None,
    peer_store: Optional[WireGuardPeerStore] = None,
    admin_id: Optional[str] = None,
) -> Device:
    """
    Мягкое удаление: снять проброс консоли, удалить пир, освободить адрес.

    Raises:
        NatRuleError: правило NAT не удалось удалить; устройство не удаляется
    """
    console = console or ConsolePortService()
    peer_store = peer_store or get_peer_store()

    console.remove_mapping(db, device)
    if device.tunnel_public_key or device.tunnel_address:
        if not peer_store.remove_peer(db, device):
            logger.error(f"Пир устройства {device.id} не удалён, его уберёт сверка WireGuard")

    released = release_tunnel_address(db, device, commit=False)
    device.is_deleted = True
    device.deleted_at = datetime.utcnow()
    device.status = DeviceStatus.OFFLINE
    device.online_since = None
    db.commit()

    create_audit_log(
        db,
        action="device_deleted",
        entity_type="device",
        entity_id=device.id,
        device_id=device.id,
        admin_id=admin_id,
        details={"released_address": released},
    )
    logger.info(f"Устройство {device.id} удалено, адрес {released} освобождён")
    return device


def console_links(device: Device) -> Dict[str, Optional[str]]:
    """Ссылки доступа к устройству. Всегда только адрес туннеля."""
    if not device.tunnel_address:
        return {"winbox": None, "ssh": None, "api": None}
    address = device.tunnel_address
    api_port = device.api_port or (443 if device.use_ssl else settings.MIKROTIK_REST_PORT)
    links = {
        "winbox": f"winbox://{address}:{settings.CONSOLE_TARGET_PORT}",
        "ssh": f"ssh://{address}:{settings.MIKROTIK_SSH_PORT}",
        "api": f"api://{address}:{api_port}",
    }
    # Публичная точка входа хаба (NAT), не адрес самого устройства
    if settings.CONSOLE_PUBLIC_IP and device.console_port:
        links["nat_endpoint"] = f"{settings.CONSOLE_PUBLIC_IP}:{device.console_port}"
    return links


def device_status_view(device: Device) -> Dict[str, Any]:
    return {
        "status": device.status.value if device.status else None,
        "last_seen": device.last_seen_at,
        "cpu": device.cpu_load,
        "memory": device.memory_usage,
        "uptime": device.uptime_seconds,
        "tunnel_address": device.tunnel_address,
        "console_port": device.console_port,
        "last_error": device.last_error,
    }
