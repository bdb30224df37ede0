"""
Опрос доступности устройств и машина состояний статуса.

pending -> online (успешный опрос) <-> offline (неудача при устаревшем last_seen).
Одиночная неудача в пределах порога устаревания статус не меняет.
"""
import enum
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Optional, Dict, Any

from sqlalchemy.orm import Session

from config.settings import settings
from backend.models.device import Device, DeviceStatus
from backend.services.mikrotik_service import (
    MikroTikConnectionError,
    MikroTikCredentialsError,
    DeviceLike,
    get_system_resource,
)

logger = logging.getLogger(__name__)


class ProbeOutcome(str, enum.Enum):
    """Итог опроса."""
    SUCCESS = "success"
    RECOVERABLE_FAILURE = "recoverable_failure"
    FATAL_FAILURE = "fatal_failure"
    SKIPPED = "skipped"


@dataclass
class ProbeResult:
    device_id: str
    outcome: ProbeOutcome
    latency_ms: Optional[float] = None
    resources: Dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.outcome == ProbeOutcome.SUCCESS

    @property
    def failed(self) -> bool:
        return self.outcome in (ProbeOutcome.RECOVERABLE_FAILURE, ProbeOutcome.FATAL_FAILURE)


def probe_device(device: DeviceLike, timeout: Optional[float] = None) -> ProbeResult:
    """
    Опросить устройство по адресу туннеля (`/system/resource`).

    Устройство без адреса туннеля не опрашивается. Исключения клиента
    превращаются в результат: сетевые ошибки восстановимы, отсутствие
    учётных данных фатально.
    """
    if not device.tunnel_address:
        return ProbeResult(device_id=device.id, outcome=ProbeOutcome.SKIPPED, error="no tunnel address")

    started = time.monotonic()
    try:
        resources = get_system_resource(device, timeout=timeout or settings.PROBE_TIMEOUT_SECONDS)
    except MikroTikCredentialsError as e:
        logger.error(f"Опрос устройства {device.id}: нет учётных данных ({e})")
        return ProbeResult(device_id=device.id, outcome=ProbeOutcome.FATAL_FAILURE, error=str(e))
    except MikroTikConnectionError as e:
        logger.warning(f"Опрос устройства {device.id} ({device.tunnel_address}) не удался: {e}")
        return ProbeResult(device_id=device.id, outcome=ProbeOutcome.RECOVERABLE_FAILURE, error=str(e))

    latency = round((time.monotonic() - started) * 1000, 1)
    return ProbeResult(device_id=device.id, outcome=ProbeOutcome.SUCCESS, latency_ms=latency, resources=resources)


def _is_stale(device: Device, now: datetime, stale_after: timedelta) -> bool:
    if device.last_seen_at is None:
        return True
    return now - device.last_seen_at > stale_after


def apply_probe_result(
    db: Session,
    device: Device,
    result: ProbeResult,
    now: Optional[datetime] = None,
    stale_after: Optional[timedelta] = None,
    commit: bool = True,
) -> DeviceStatus:
    """Применить результат опроса к устройству. Возвращает новый статус."""
    now = now or datetime.utcnow()
    stale_after = stale_after or timedelta(minutes=settings.DEVICE_STALE_MINUTES)
    previous = device.status

    if result.outcome == ProbeOutcome.SKIPPED:
        # Без адреса туннеля устройство не может быть онлайн
        if device.status != DeviceStatus.PENDING and not device.tunnel_address:
            device.status = DeviceStatus.PENDING
            device.online_since = None
    elif result.ok:
        res = result.resources
        device.status = DeviceStatus.ONLINE
        device.last_seen_at = now
        device.last_probe_at = now
        device.cpu_load = res.get("cpu_load")
        device.memory_usage = res.get("memory_usage")
        device.uptime_seconds = res.get("uptime_seconds")
        if res.get("board_name"):
            device.board_name = res["board_name"]
        if res.get("version"):
            device.system_version = res["version"]
        device.last_error = None
        if previous != DeviceStatus.ONLINE:
            device.online_since = now
    else:
        device.last_probe_at = now
        if result.outcome == ProbeOutcome.FATAL_FAILURE:
            # Повтор опроса не поможет, пока не исправлена конфигурация; статус решает порог устаревания
            device.last_error = f"configuration: {result.error}"
        else:
            device.last_error = result.error
        # pending без единого успешного опроса остаётся pending
        never_succeeded = previous == DeviceStatus.PENDING and device.last_seen_at is None
        if not never_succeeded and _is_stale(device, now, stale_after):
            device.status = DeviceStatus.OFFLINE
            device.online_since = None

    if device.status != previous:
        logger.info(f"Устройство {device.id}: {previous.value if previous else None} -> {device.status.value}")
    if commit:
        db.commit()
    return device.status


def mark_stale_devices(db: Session, now: Optional[datetime] = None, stale_after: Optional[timedelta] = None) -> int:
    """
    Перевести в offline все онлайн-устройства с устаревшим last_seen.
    Покрывает устройства, которые не опрашивались в этом цикле.
    """
    now = now or datetime.utcnow()
    stale_after = stale_after or timedelta(minutes=settings.DEVICE_STALE_MINUTES)
    cutoff = now - stale_after
    stale = (
        db.query(Device)
        .filter(
            Device.is_deleted.is_(False),
            Device.status == DeviceStatus.ONLINE,
            Device.last_seen_at < cutoff,
        )
        .all()
    )
    for device in stale:
        device.status = DeviceStatus.OFFLINE
        device.online_since = None
        logger.info(f"Устройство {device.id} не отвечает с {device.last_seen_at}, статус offline")
    if stale:
        db.commit()
    return len(stale)
