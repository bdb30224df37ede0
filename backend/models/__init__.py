"""
Модели базы данных ядра флота MikroTik.
"""
from .base import Base
from .admin import Admin
from .device import Device, DeviceStatus, PeerStatus, ConnectionType
from .port_mapping import PortMapping
from .subscriber import Subscriber, SessionType
from .active_session import ActiveSession, ActiveSessionStatus, SessionSource
from .accounting import AccountingRecord
from .setting import Setting
from .audit_log import AuditLog

__all__ = [
    "Base",
    "Admin",
    "Device",
    "DeviceStatus",
    "PeerStatus",
    "ConnectionType",
    "PortMapping",
    "Subscriber",
    "SessionType",
    "ActiveSession",
    "ActiveSessionStatus",
    "SessionSource",
    "AccountingRecord",
    "Setting",
    "AuditLog",
]
