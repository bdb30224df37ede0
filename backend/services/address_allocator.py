"""
Выделение адресов туннеля WireGuard для устройств.

Адрес выбирается как наименьший свободный хост подсети WG_SUBNET.
Первый хост подсети занят хабом, адреса сети и broadcast не выдаются.
Уникальность гарантирует ограничение БД на devices.tunnel_address:
при гонке двух аллокаторов проигравший откатывает транзакцию и пробует
следующий кандидат.
"""
import ipaddress
import logging
from typing import Optional, Set

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.settings import settings
from backend.models.device import Device
from backend.services.exceptions import SubnetExhausted

logger = logging.getLogger(__name__)

MAX_ALLOCATION_ATTEMPTS = 16


def _network(subnet: Optional[str] = None) -> ipaddress.IPv4Network:
    return ipaddress.ip_network(subnet or settings.WG_SUBNET, strict=False)


def hub_address(subnet: Optional[str] = None) -> str:
    """Адрес хаба: первый хост подсети (10.100.0.1 для 10.100.0.0/16)."""
    return str(next(_network(subnet).hosts()))


def is_tunnel_address(ip: Optional[str], subnet: Optional[str] = None) -> bool:
    """Адрес внутри подсети туннеля и пригоден для устройства (не хаб, не сеть, не broadcast)."""
    if not ip:
        return False
    try:
        addr = ipaddress.ip_address(ip.split("/")[0].strip())
    except ValueError:
        return False
    net = _network(subnet)
    if addr not in net:
        return False
    if addr in (net.network_address, net.broadcast_address):
        return False
    return str(addr) != hub_address(subnet)


def _load_used_addresses(db: Session) -> Set[str]:
    """Все адреса, записанные за устройствами (включая удалённые, пока адрес не освобождён)."""
    rows = db.query(Device.tunnel_address).filter(Device.tunnel_address.isnot(None)).all()
    return {row[0] for row in rows}


def _next_free_address(used: Set[str], excluded: Set[str], subnet: Optional[str] = None) -> Optional[str]:
    hub = hub_address(subnet)
    for host in _network(subnet).hosts():
        candidate = str(host)
        if candidate == hub or candidate in used or candidate in excluded:
            continue
        return candidate
    return None


def allocate_tunnel_address(db: Session, device: Device) -> str:
    """
    Выделить адрес туннеля устройству и сохранить его.

    Повторный вызов для устройства с адресом возвращает тот же адрес.
    Raises:
        SubnetExhausted: свободных адресов не осталось
    """
    if device.tunnel_address:
        return device.tunnel_address

    excluded: Set[str] = set()
    for attempt in range(MAX_ALLOCATION_ATTEMPTS):
        # Блокируем строку устройства, чтобы два запроса для одного устройства не выдали два адреса
        locked = (
            db.query(Device)
            .filter(Device.id == device.id)
            .with_for_update()
            .first()
        )
        if locked is not None and locked.tunnel_address:
            return locked.tunnel_address

        candidate = _next_free_address(_load_used_addresses(db), excluded)
        if candidate is None:
            db.rollback()
            raise SubnetExhausted(f"No free tunnel addresses left in {settings.WG_SUBNET}")

        device.tunnel_address = candidate
        device.tunnel_allowed_ips = f"{candidate}/32"
        try:
            db.commit()
        except IntegrityError:
            db.rollback()
            excluded.add(candidate)
            logger.warning(
                f"Адрес {candidate} уже занят другим устройством, повтор (попытка {attempt + 1}) для {device.id}"
            )
            continue

        db.refresh(device)
        logger.info(f"Устройству {device.id} выделен адрес туннеля {candidate}")
        return candidate

    raise SubnetExhausted(
        f"Could not allocate tunnel address for device {device.id} after {MAX_ALLOCATION_ATTEMPTS} attempts"
    )


def release_tunnel_address(db: Session, device: Device, commit: bool = True) -> Optional[str]:
    """Освободить адрес устройства. Возвращает освобождённый адрес."""
    released = device.tunnel_address
    if not released:
        return None
    device.tunnel_address = None
    device.tunnel_allowed_ips = None
    if commit:
        db.commit()
    logger.info(f"Адрес туннеля {released} освобождён (устройство {device.id})")
    return released
