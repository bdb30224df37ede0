"""
Модель управляемого роутера MikroTik.
"""
from sqlalchemy import Column, String, Integer, Float, Boolean, Text, Enum as SQLEnum, DateTime
from sqlalchemy.orm import relationship
import enum
from .base import Base, UUIDMixin, TimestampMixin, SoftDeleteMixin


class DeviceStatus(str, enum.Enum):
    """Статусы доступности устройства."""
    PENDING = "pending"
    ONLINE = "online"
    OFFLINE = "offline"


class PeerStatus(str, enum.Enum):
    """Состояние пира в конфигурации WireGuard на хабе."""
    PENDING = "pending"
    ACTIVE = "active"
    FAILED = "failed"


class ConnectionType(str, enum.Enum):
    """Типы подключения к MikroTik."""
    REST_API = "rest_api"
    SSH_PASSWORD = "ssh_password"
    SSH_KEY = "ssh_key"


class Device(Base, UUIDMixin, TimestampMixin, SoftDeleteMixin):
    """Роутер, доступный только через VPN-туннель."""
    __tablename__ = "devices"

    name = Column(String(100), nullable=False)
    model = Column(String(100), nullable=True)
    # Владелец (тенант). Ведётся внешним CRUD-слоем, здесь только читается.
    owner_id = Column(String(36), nullable=True, index=True)

    # Учётные данные API управления
    api_username = Column(String(100), nullable=True)
    api_password = Column(String(255), nullable=True)  # Зашифрован
    api_port = Column(Integer, nullable=True)
    connection_type = Column(SQLEnum(ConnectionType), default=ConnectionType.REST_API, nullable=False)
    ssh_key_path = Column(String(500), nullable=True)
    use_ssl = Column(Boolean, default=False, nullable=False)

    # WireGuard
    tunnel_address = Column(String(45), unique=True, nullable=True, index=True)
    tunnel_public_key = Column(String(64), nullable=True, index=True)
    tunnel_allowed_ips = Column(String(64), nullable=True)
    peer_status = Column(SQLEnum(PeerStatus), default=PeerStatus.PENDING, nullable=False)
    # Токен для phone-home / heartbeat (не сессия администратора)
    sync_token = Column(String(64), unique=True, nullable=False, index=True)

    # Проброс консоли
    console_port = Column(Integer, unique=True, nullable=True)

    # Состояние и метрики
    status = Column(SQLEnum(DeviceStatus), default=DeviceStatus.PENDING, nullable=False, index=True)
    last_seen_at = Column(DateTime, nullable=True)
    online_since = Column(DateTime, nullable=True)
    last_probe_at = Column(DateTime, nullable=True)
    cpu_load = Column(Float, nullable=True)
    memory_usage = Column(Float, nullable=True)
    uptime_seconds = Column(Integer, nullable=True)
    board_name = Column(String(100), nullable=True)
    system_version = Column(String(100), nullable=True)
    last_error = Column(Text, nullable=True)

    # Диагностика: адрес, с которого пришёл heartbeat. Для доступа к консоли не используется.
    reported_public_ip = Column(String(45), nullable=True)
    last_heartbeat_at = Column(DateTime, nullable=True)

    port_mapping = relationship("PortMapping", back_populates="device", uselist=False)
    sessions = relationship("ActiveSession", back_populates="device")

    def __repr__(self):
        return f"<Device(id={self.id}, name={self.name}, tunnel={self.tunnel_address}, status={self.status})>"
