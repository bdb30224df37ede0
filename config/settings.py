"""
Конфигурация приложения.
Использует pydantic-settings для управления настройками из переменных окружения.
Часть настроек (интервалы планировщика) может переопределяться через таблицу settings в БД.
"""
from pydantic_settings import BaseSettings
from typing import List, Optional
import logging

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    """Настройки приложения из переменных окружения."""

    # Основные настройки
    APP_NAME: str = "MikroTik Fleet Core"
    APP_VERSION: str = "1.0.0"
    DEBUG: bool = False
    ENVIRONMENT: str = "production"

    # База данных
    DATABASE_URL: str = "sqlite:///./data/fleet_core.db"

    # Безопасность
    SECRET_KEY: str = "change-this-secret-key-in-production"
    JWT_SECRET_KEY: Optional[str] = None  # Если не указан, используется SECRET_KEY
    JWT_ALGORITHM: str = "HS256"
    JWT_ACCESS_TOKEN_EXPIRE_MINUTES: int = 1440  # 24 часа
    INITIAL_ADMIN_USERNAME: Optional[str] = None
    INITIAL_ADMIN_PASSWORD: Optional[str] = None

    # Настройки сервера
    HOST: str = "0.0.0.0"
    PORT: int = 8000
    API_PREFIX: str = "/api"
    CORS_ORIGINS: List[str] = ["http://localhost:3000", "http://localhost:5173"]

    # Логирование
    LOG_LEVEL: str = "INFO"

    # WireGuard (VPN-хаб)
    WG_SUBNET: str = "10.100.0.0/16"
    WG_INTERFACE: str = "wg0"
    WG_CONFIG_PATH: str = "/etc/wireguard/wg0.conf"
    WG_BACKUP_DIR: str = "/etc/wireguard/backups"
    WG_BACKUP_RETENTION_DAYS: int = 30
    WG_BINARY: str = "/usr/bin/wg"
    WG_QUICK_BINARY: str = "/usr/bin/wg-quick"
    WG_USE_SUDO: bool = True
    WG_SERVER_ENDPOINT: str = ""
    WG_SERVER_PORT: int = 51820
    WG_SERVER_PUBLIC_KEY: str = ""
    WG_PERSISTENT_KEEPALIVE: int = 25
    WG_AUTO_SYNC_ENABLED: bool = True

    # Проброс консоли (Winbox) через NAT
    CONSOLE_PORT_RANGE_START: int = 50000
    CONSOLE_PORT_RANGE_END: int = 60000
    CONSOLE_TARGET_PORT: int = 8291
    CONSOLE_PUBLIC_IP: Optional[str] = None
    IPTABLES_BINARY: str = "iptables"

    # API управления роутером
    MIKROTIK_REST_PORT: int = 80
    MIKROTIK_SSH_PORT: int = 22

    # Опрос устройств
    PROBE_TIMEOUT_SECONDS: int = 3
    DEVICE_STALE_MINUTES: int = 4
    PROBE_MAX_WORKERS: int = 16

    # Планировщик
    FLEET_CYCLE_INTERVAL_SECONDS: int = 60
    FLEET_CYCLE_SOFT_DEADLINE_SECONDS: int = 45
    PEER_RECONCILE_INTERVAL_MINUTES: int = 10
    DISABLE_SCHEDULER: bool = False

    # Сессии абонентов
    ACCOUNTING_RECENCY_MINUTES: int = 10
    SESSION_IDLE_MINUTES: int = 15
    ACCOUNTING_STALE_HOURS: int = 24
    # Общий секрет для POST /accounting (заголовок X-Accounting-Token). Пусто: без проверки.
    ACCOUNTING_SHARED_SECRET: Optional[str] = None

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = True
        extra = "ignore"  # Игнорируем дополнительные поля из .env


# Глобальный экземпляр настроек
settings = Settings()
