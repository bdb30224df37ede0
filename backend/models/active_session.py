"""
Модель канонической активной сессии абонента.
"""
from sqlalchemy import Column, String, Integer, BigInteger, ForeignKey, Enum as SQLEnum, DateTime, Index
from sqlalchemy.orm import relationship
import enum
from .base import Base, UUIDMixin, TimestampMixin
from .subscriber import SessionType


class ActiveSessionStatus(str, enum.Enum):
    """Статусы сессии. Переход только active -> disconnected."""
    ACTIVE = "active"
    DISCONNECTED = "disconnected"


class SessionSource(str, enum.Enum):
    """Откуда пришла сессия в последнем цикле сверки."""
    DEVICE = "device"
    ACCOUNTING = "accounting"
    BOTH = "both"


class ActiveSession(Base, UUIDMixin, TimestampMixin):
    """
    Одна сессия абонента на роутере.

    Никогда не удаляется (аудит), только меняет статус. Повторное подключение
    после disconnected получает новый session_key (generation + 1).
    """
    __tablename__ = "active_sessions"

    session_key = Column(String(64), unique=True, nullable=False, index=True)
    # Ключ без поколения: (device, identity, peer address)
    identity_key = Column(String(64), nullable=False, index=True)
    generation = Column(Integer, default=0, nullable=False)

    device_id = Column(String(36), ForeignKey("devices.id"), nullable=False, index=True)
    subscriber_id = Column(String(36), ForeignKey("subscribers.id"), nullable=True, index=True)
    username = Column(String(100), nullable=False)
    peer_address = Column(String(45), nullable=True)
    mac_address = Column(String(32), nullable=True)
    session_type = Column(SQLEnum(SessionType), default=SessionType.UNKNOWN, nullable=False)
    source = Column(SQLEnum(SessionSource), default=SessionSource.DEVICE, nullable=False)
    accounting_session_id = Column(String(64), nullable=True, index=True)

    status = Column(SQLEnum(ActiveSessionStatus), default=ActiveSessionStatus.ACTIVE, nullable=False, index=True)
    connected_at = Column(DateTime, nullable=True)
    last_seen_at = Column(DateTime, nullable=True)
    disconnected_at = Column(DateTime, nullable=True)

    bytes_in = Column(BigInteger, nullable=True)
    bytes_out = Column(BigInteger, nullable=True)

    device = relationship("Device", back_populates="sessions")
    subscriber = relationship("Subscriber", back_populates="sessions")

    __table_args__ = (
        Index("ix_active_sessions_device_status", "device_id", "status"),
    )

    def __repr__(self):
        return f"<ActiveSession(key={self.session_key[:12]}, username={self.username}, status={self.status})>"
