"""
Pydantic схемы для валидации данных API.
"""
from pydantic import BaseModel, Field
from typing import Optional, List, Dict, Any
from datetime import datetime

from backend.models.device import DeviceStatus, PeerStatus, ConnectionType
from backend.models.active_session import ActiveSessionStatus, SessionSource
from backend.models.subscriber import SessionType


# Схемы для аутентификации
class Token(BaseModel):
    """Схема токена доступа."""
    access_token: str
    token_type: str = "bearer"
    admin: Optional["AdminResponse"] = None


class LoginRequest(BaseModel):
    """Схема запроса на вход."""
    username: str
    password: str


class AdminResponse(BaseModel):
    """Схема ответа с данными администратора."""
    id: str
    username: str
    email: Optional[str] = None
    full_name: Optional[str] = None
    is_active: bool = True
    is_super_admin: bool = False
    created_at: datetime
    last_login: Optional[datetime] = None

    model_config = {"from_attributes": True}


# Схемы для устройств
class DeviceCreate(BaseModel):
    """Подключение нового устройства к флоту."""
    name: str = Field(..., min_length=1, max_length=100)
    model: Optional[str] = None
    owner_id: Optional[str] = None
    api_username: Optional[str] = None
    api_password: Optional[str] = None
    api_port: Optional[int] = Field(None, ge=1, le=65535)
    connection_type: ConnectionType = ConnectionType.REST_API
    ssh_key_path: Optional[str] = None
    use_ssl: bool = False


class DeviceResponse(BaseModel):
    """Схема ответа с данными устройства (без учётных данных)."""
    id: str
    name: str
    model: Optional[str] = None
    owner_id: Optional[str] = None
    connection_type: ConnectionType
    tunnel_address: Optional[str] = None
    tunnel_public_key: Optional[str] = None
    peer_status: PeerStatus
    console_port: Optional[int] = None
    status: DeviceStatus
    last_seen_at: Optional[datetime] = None
    online_since: Optional[datetime] = None
    last_probe_at: Optional[datetime] = None
    cpu_load: Optional[float] = None
    memory_usage: Optional[float] = None
    uptime_seconds: Optional[int] = None
    board_name: Optional[str] = None
    system_version: Optional[str] = None
    last_error: Optional[str] = None
    reported_public_ip: Optional[str] = None
    last_heartbeat_at: Optional[datetime] = None
    created_at: datetime

    model_config = {"from_attributes": True}


class DeviceListResponse(BaseModel):
    items: List[DeviceResponse]
    total: int


class OnboardingResponse(BaseModel):
    """Данные для инструкции по настройке устройства."""
    device_id: str
    tunnel_address: str
    public_key: str
    console_port: Optional[int] = None
    server_endpoint: str
    server_port: int
    server_public_key: str
    sync_token: str
    console_error: Optional[str] = None


class DeviceStatusView(BaseModel):
    status: Optional[str] = None
    last_seen: Optional[datetime] = None
    cpu: Optional[float] = None
    memory: Optional[float] = None
    uptime: Optional[int] = None
    tunnel_address: Optional[str] = None
    console_port: Optional[int] = None
    last_error: Optional[str] = None


class ConsoleLinksResponse(BaseModel):
    winbox: Optional[str] = None
    ssh: Optional[str] = None
    api: Optional[str] = None
    nat_endpoint: Optional[str] = None


class PortMappingResponse(BaseModel):
    device_id: str
    public_port: int
    target_address: str
    target_port: int
    dnat_applied: bool
    snat_applied: bool
    forward_applied: bool
    confirmed_at: Optional[datetime] = None

    model_config = {"from_attributes": True}


class ProbeResponse(BaseModel):
    device_id: str
    outcome: str
    latency_ms: Optional[float] = None
    error: Optional[str] = None
    status: DeviceStatus


# Обратные вызовы устройств
class PhoneHomeRequest(BaseModel):
    """Устройство сообщает открытый ключ WireGuard и, возможно, свой адрес туннеля."""
    public_key: str
    tunnel_address: Optional[str] = None


class PhoneHomeResponse(BaseModel):
    device_id: str
    tunnel_address: Optional[str] = None
    server_public_key: str
    server_endpoint: str
    server_port: int
    peer_status: PeerStatus


class HeartbeatRequest(BaseModel):
    public_ip: Optional[str] = None


# Сессии и абоненты
class ActiveSessionResponse(BaseModel):
    id: str
    session_key: str
    device_id: str
    subscriber_id: Optional[str] = None
    username: str
    peer_address: Optional[str] = None
    mac_address: Optional[str] = None
    session_type: SessionType
    source: SessionSource
    accounting_session_id: Optional[str] = None
    status: ActiveSessionStatus
    connected_at: Optional[datetime] = None
    last_seen_at: Optional[datetime] = None
    disconnected_at: Optional[datetime] = None
    bytes_in: Optional[int] = None
    bytes_out: Optional[int] = None

    model_config = {"from_attributes": True}


class ActiveSessionListResponse(BaseModel):
    items: List[ActiveSessionResponse]
    total: int


class SubscriberSessionsResponse(BaseModel):
    subscriber_id: str
    username: str
    online: bool
    active_count: int
    sessions: List[ActiveSessionResponse]


class SessionReconcileResponse(BaseModel):
    active_count: int
    created: int
    updated: int
    disconnected: int
    unknown_identities: int
    polled_devices: int
    failed_devices: int
    flags_changed: int
    forced_offline: bool
    errors: List[str]


class SubscriberOnlineResponse(BaseModel):
    subscriber_id: str
    online: bool
    active_count: int
    last_online_change_at: Optional[datetime] = None


# WireGuard / NAT
class PeerReconcileResponse(BaseModel):
    added: int
    updated: int
    removed: int
    failed: int
    errors: List[str]
    changes_detected: bool


class NatRebuildResponse(BaseModel):
    total: int
    applied: int
    failed: int
    errors: List[str]


# Учёт (radacct)
class AccountingRequest(BaseModel):
    """Пакет учёта в терминах атрибутов RADIUS."""
    status_type: str = Field(..., alias="Acct-Status-Type")
    session_id: str = Field(..., alias="Acct-Session-Id")
    unique_id: Optional[str] = Field(None, alias="Acct-Unique-Session-Id")
    username: Optional[str] = Field(None, alias="User-Name")
    nas_ip_address: str = Field(..., alias="NAS-IP-Address")
    nas_port_type: Optional[str] = Field(None, alias="NAS-Port-Type")
    framed_ip_address: Optional[str] = Field(None, alias="Framed-IP-Address")
    calling_station_id: Optional[str] = Field(None, alias="Calling-Station-Id")
    session_time: Optional[int] = Field(None, alias="Acct-Session-Time")
    input_octets: Optional[int] = Field(None, alias="Acct-Input-Octets")
    output_octets: Optional[int] = Field(None, alias="Acct-Output-Octets")
    input_gigawords: Optional[int] = Field(None, alias="Acct-Input-Gigawords")
    output_gigawords: Optional[int] = Field(None, alias="Acct-Output-Gigawords")
    terminate_cause: Optional[str] = Field(None, alias="Acct-Terminate-Cause")

    model_config = {"populate_by_name": True}


class AccountingResponse(BaseModel):
    radacct_id: int
    acct_unique_id: str
    status: str


# Журнал аудита
class AuditLogResponse(BaseModel):
    id: str
    admin_id: Optional[str] = None
    device_id: Optional[str] = None
    action: str
    entity_type: Optional[str] = None
    entity_id: Optional[str] = None
    details: Optional[Dict[str, Any]] = None
    ip_address: Optional[str] = None
    created_at: datetime


class AuditLogListResponse(BaseModel):
    items: List[AuditLogResponse]
    total: int
    skip: int
    limit: int


Token.model_rebuild()
