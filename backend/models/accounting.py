"""
Вторичный журнал учёта (формат FreeRADIUS radacct).
"""
from sqlalchemy import Column, String, Integer, BigInteger, DateTime, Index
from .base import Base


class AccountingRecord(Base):
    """Строка radacct: сессия открыта, пока acct_stop_time пуст."""
    __tablename__ = "radacct"

    radacct_id = Column(Integer, primary_key=True, autoincrement=True)
    acct_session_id = Column(String(64), nullable=False, index=True)
    acct_unique_id = Column(String(64), unique=True, nullable=False)
    username = Column(String(100), nullable=True, index=True)
    group_name = Column(String(100), nullable=True)
    nas_ip_address = Column(String(45), nullable=False, index=True)
    nas_port_type = Column(String(32), nullable=True)
    framed_ip_address = Column(String(45), nullable=True)
    calling_station_id = Column(String(50), nullable=True)

    acct_start_time = Column(DateTime, nullable=True)
    acct_update_time = Column(DateTime, nullable=True)
    acct_stop_time = Column(DateTime, nullable=True)
    acct_session_time = Column(Integer, nullable=True)
    acct_input_octets = Column(BigInteger, nullable=True)
    acct_output_octets = Column(BigInteger, nullable=True)
    acct_terminate_cause = Column(String(32), nullable=True)

    __table_args__ = (
        Index("ix_radacct_open", "acct_stop_time", "acct_update_time"),
    )

    def __repr__(self):
        return f"<AccountingRecord(session={self.acct_session_id}, username={self.username}, nas={self.nas_ip_address})>"
