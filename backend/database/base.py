"""
Базовые импорты для базы данных.
Импорт моделей регистрирует таблицы в Base.metadata.
"""
from backend.models.base import Base
from backend.models import (
    Admin,
    Device,
    PortMapping,
    Subscriber,
    ActiveSession,
    AccountingRecord,
    Setting,
    AuditLog,
)

__all__ = ["Base"]
