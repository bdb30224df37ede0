"""
Конфигурация и работа с базой данных.
"""
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, Session
from sqlalchemy.pool import StaticPool
from typing import Generator
import logging
import os
from config.settings import settings

logger = logging.getLogger(__name__)


def _ensure_sqlite_dir(database_url: str) -> None:
    """Создать директорию для файла SQLite, если её нет."""
    if not database_url.startswith("sqlite:///"):
        return
    db_path = database_url.replace("sqlite:///", "")
    db_dir = os.path.dirname(db_path)
    if db_dir and not os.path.exists(db_dir):
        os.makedirs(db_dir, exist_ok=True)


def build_engine(database_url: str, echo: bool = False):
    """
    Создать движок БД.
    Для SQLite используем StaticPool и check_same_thread=False: опросы устройств
    выполняются в пуле потоков.
    """
    if database_url.startswith("sqlite"):
        _ensure_sqlite_dir(database_url)
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool,
            echo=echo,
        )
    return create_engine(database_url, echo=echo, pool_pre_ping=True)


# Создание движка базы данных
engine = build_engine(settings.DATABASE_URL, echo=settings.DEBUG)

# Создание фабрики сессий
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)


def get_db() -> Generator[Session, None, None]:
    """
    Генератор для получения сессии базы данных.
    Используется как dependency в FastAPI.
    """
    db = SessionLocal()
    try:
        yield db
    finally:
        db.close()


def init_db() -> None:
    """
    Инициализация базы данных: создание всех таблиц.
    """
    from backend.database.base import Base

    _ensure_sqlite_dir(settings.DATABASE_URL)
    Base.metadata.create_all(bind=engine)
    logger.info(f"База данных инициализирована: {settings.DATABASE_URL}")
