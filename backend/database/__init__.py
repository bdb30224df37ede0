"""
Модуль для работы с базой данных.
"""
from .database import get_db, init_db, engine, SessionLocal, build_engine
from .base import Base

__all__ = ["get_db", "init_db", "engine", "SessionLocal", "build_engine", "Base"]
