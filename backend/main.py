"""
Основной файл FastAPI приложения.
"""
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
import logging
import sys
import os

# Добавляем корневую директорию проекта в путь
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from config.settings import settings
from backend.database import init_db, SessionLocal
import uvicorn

logging.basicConfig(
    level=getattr(logging, settings.LOG_LEVEL.upper(), logging.INFO),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)
logger = logging.getLogger(__name__)


def _seed_runtime_settings():
    """Записать в БД настройки, переопределяемые во время работы, если их ещё нет."""
    from backend.services.settings_service import get_setting_by_key, set_setting
    db = SessionLocal()
    try:
        defaults = [
            ("fleet_cycle_interval_seconds", settings.FLEET_CYCLE_INTERVAL_SECONDS, "scheduler", "Интервал цикла опроса флота (сек)"),
            ("peer_reconcile_interval_minutes", settings.PEER_RECONCILE_INTERVAL_MINUTES, "scheduler", "Интервал сверки конфигурации WireGuard (мин)"),
        ]
        for key, value, category, desc in defaults:
            if not get_setting_by_key(db, key):
                set_setting(db, key=key, value=value, category=category, description=desc, is_encrypted=False)
    finally:
        db.close()


def create_app() -> FastAPI:
    """
    Фабрика для создания FastAPI приложения.
    """
    app = FastAPI(
        title=settings.APP_NAME,
        version=settings.APP_VERSION,
        debug=settings.DEBUG,
    )

    # Настройка CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=list(settings.CORS_ORIGINS),
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Подключение роутеров API
    from backend.api import auth, devices, sessions, wireguard, accounting, audit_logs
    app.include_router(auth.router, prefix=settings.API_PREFIX)
    app.include_router(devices.router, prefix=settings.API_PREFIX)
    app.include_router(sessions.router, prefix=settings.API_PREFIX)
    app.include_router(wireguard.router, prefix=settings.API_PREFIX)
    app.include_router(accounting.router, prefix=settings.API_PREFIX)
    app.include_router(audit_logs.router, prefix=settings.API_PREFIX)

    # API endpoints для информации
    @app.get("/api/info")
    async def api_info():
        return {
            "name": settings.APP_NAME,
            "version": settings.APP_VERSION,
            "status": "running"
        }

    # Health check endpoint
    @app.get("/health")
    async def health_check():
        return {"status": "healthy"}

    # Инициализация базы данных при старте
    @app.on_event("startup")
    async def startup_event():
        init_db()

        db = SessionLocal()
        try:
            from backend.services.auth_service import ensure_initial_admin
            ensure_initial_admin(db)
        finally:
            db.close()

        try:
            _seed_runtime_settings()
        except Exception as e:
            # Не критичная ошибка: планировщик возьмёт значения из окружения
            logger.warning(f"Не удалось записать настройки по умолчанию: {e}")

        # Планировщик можно отключить через DISABLE_SCHEDULER=1 (тесты, разработка)
        if not settings.DISABLE_SCHEDULER:
            from backend.services.scheduler_service import scheduler_service
            scheduler_service.start()

    @app.on_event("shutdown")
    async def shutdown_event():
        # Останавливаем планировщик задач
        from backend.services.scheduler_service import scheduler_service
        scheduler_service.stop()

    return app


# Создание приложения
app = create_app()


if __name__ == "__main__":
    uvicorn.run(
        "backend.main:app",
        host=settings.HOST,
        port=settings.PORT,
        reload=settings.DEBUG,
    )
