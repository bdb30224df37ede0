"""
Модель абонента (пользователь hotspot / PPPoE / статика).
"""
from sqlalchemy import Column, String, Boolean, Enum as SQLEnum, DateTime, UniqueConstraint
from sqlalchemy.orm import relationship
import enum
from .base import Base, UUIDMixin, TimestampMixin


class SessionType(str, enum.Enum):
    """Тип подключения абонента. Назначается при приёме данных, а не при чтении."""
    HOTSPOT = "hotspot"
    PPPOE = "pppoe"
    STATIC = "static"
    UNKNOWN = "unknown"


class Subscriber(Base, UUIDMixin, TimestampMixin):
    """Абонент. Создаётся внешним CRUD-слоем; ядро обновляет только флаг online."""
    __tablename__ = "subscribers"

    owner_id = Column(String(36), nullable=True, index=True)
    username = Column(String(100), nullable=False, index=True)
    service_type = Column(SQLEnum(SessionType), default=SessionType.UNKNOWN, nullable=False)
    package_name = Column(String(100), nullable=True)

    # Проекция: True, если есть хотя бы одна ActiveSession со статусом active
    online = Column(Boolean, default=False, nullable=False, index=True)
    last_online_change_at = Column(DateTime, nullable=True)

    sessions = relationship("ActiveSession", back_populates="subscriber")

    __table_args__ = (
        UniqueConstraint("owner_id", "username", name="uq_subscriber_owner_username"),
    )

    def __repr__(self):
        return f"<Subscriber(id={self.id}, username={self.username}, online={self.online})>"
