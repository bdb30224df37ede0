"""
Модель проброса порта консоли (DNAT + SNAT) для устройства.
"""
from sqlalchemy import Column, String, Integer, Boolean, ForeignKey, DateTime
from sqlalchemy.orm import relationship
from .base import Base, UUIDMixin, TimestampMixin


class PortMapping(Base, UUIDMixin, TimestampMixin):
    """
    Резервирование публичного порта за устройством.

    Уникальность public_port обеспечивается на уровне БД: это и есть таблица
    аллокаций, по которой ищется свободный порт.
    """
    __tablename__ = "port_mappings"

    device_id = Column(String(36), ForeignKey("devices.id"), unique=True, nullable=False)
    public_port = Column(Integer, unique=True, nullable=False, index=True)
    target_address = Column(String(45), nullable=False)
    target_port = Column(Integer, nullable=False)

    dnat_applied = Column(Boolean, default=False, nullable=False)
    snat_applied = Column(Boolean, default=False, nullable=False)
    forward_applied = Column(Boolean, default=False, nullable=False)
    confirmed_at = Column(DateTime, nullable=True)

    device = relationship("Device", back_populates="port_mapping")

    @property
    def is_confirmed(self) -> bool:
        return bool(self.dnat_applied and self.snat_applied and self.confirmed_at)

    def __repr__(self):
        return f"<PortMapping(device_id={self.device_id}, public_port={self.public_port}, target={self.target_address}:{self.target_port})>"
