"""
Сервис для работы с планировщиком задач (APScheduler).
Обеспечивает фоновые операции флота: опрос устройств и сверку сессий,
самовосстановление конфигурации WireGuard, закрытие зависших записей учёта,
восстановление правил NAT после перезапуска.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Dict, List, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from backend.database import SessionLocal
from backend.models.device import Device, DeviceStatus
from backend.services.console_port_service import ConsolePortService
from backend.services.mikrotik_service import DeviceTarget
from backend.services.probe_service import (
    ProbeOutcome,
    ProbeResult,
    apply_probe_result,
    mark_stale_devices,
    probe_device,
)
from backend.services.session_reconciler import (
    ObservedSession,
    ReconcileSummary,
    SessionFetcher,
    close_stale_accounting,
    fetch_device_sessions,
    load_accounting_sessions,
    reconcile,
)
from backend.services.settings_service import get_int_setting
from backend.services.wireguard_service import get_peer_store
from config.settings import settings

logger = logging.getLogger(__name__)
uvicorn_logger = logging.getLogger("uvicorn.error")

Prober = Callable[[DeviceTarget, float], ProbeResult]


@dataclass
class CycleReport:
    """Итоги одного цикла опроса флота."""
    started_at: datetime
    finished_at: Optional[datetime] = None
    probed: int = 0
    succeeded: int = 0
    failed: int = 0
    skipped: int = 0
    timed_out: int = 0
    abandoned: int = 0
    stale_marked: int = 0
    enumeration_failed: int = 0
    active_sessions: int = 0
    reconcile: Optional[ReconcileSummary] = None
    errors: List[str] = field(default_factory=list)

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.finished_at is None:
            return None
        return (self.finished_at - self.started_at).total_seconds()


class SchedulerService:
    """Сервис для управления планировщиком задач."""

    def __init__(
        self,
        prober: Optional[Prober] = None,
        fetch: Optional[SessionFetcher] = None,
        session_factory=None,
        max_workers: Optional[int] = None,
        probe_timeout: Optional[float] = None,
        soft_deadline: Optional[float] = None,
    ):
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.prober = prober or (lambda target, timeout: probe_device(target, timeout=timeout))
        self.fetch = fetch
        self.session_factory = session_factory or SessionLocal
        self.max_workers = max_workers or settings.PROBE_MAX_WORKERS
        self.probe_timeout = probe_timeout or settings.PROBE_TIMEOUT_SECONDS
        self.soft_deadline = soft_deadline or settings.FLEET_CYCLE_SOFT_DEADLINE_SECONDS
        self.last_report: Optional[CycleReport] = None

    @property
    def hard_timeout(self) -> float:
        """Жёсткий предел одного обращения к устройству (клиентский таймаут плюс запас)."""
        return self.probe_timeout * 2

    def start(self):
        """Запустить планировщик задач."""
        if self.scheduler and self.scheduler.running:
            logger.warning("Планировщик уже запущен")
            return

        self.scheduler = AsyncIOScheduler()

        db = self.session_factory()
        try:
            cycle_interval = get_int_setting(db, "fleet_cycle_interval_seconds", settings.FLEET_CYCLE_INTERVAL_SECONDS)
            peer_interval = get_int_setting(db, "peer_reconcile_interval_minutes", settings.PEER_RECONCILE_INTERVAL_MINUTES)
        finally:
            db.close()

        # uvicorn.error точно попадает в journal/systemd
        msg = f"Планировщик: цикл флота каждые {cycle_interval}s, сверка WireGuard каждые {peer_interval} мин"
        logger.info(msg)
        uvicorn_logger.info(msg)

        self.scheduler.add_job(
            self.run_fleet_cycle,
            trigger=IntervalTrigger(seconds=cycle_interval),
            id="fleet_cycle",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.reconcile_peers,
            trigger=IntervalTrigger(minutes=peer_interval),
            id="reconcile_peers",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        self.scheduler.add_job(
            self.close_stale_accounting,
            trigger=IntervalTrigger(hours=1),
            id="close_stale_accounting",
            replace_existing=True,
            max_instances=1,
            coalesce=True,
        )
        # Однократно при старте: после перезагрузки хаба правила iptables пусты
        self.scheduler.add_job(
            self.rebuild_nat_rules,
            trigger="date",
            id="rebuild_nat_rules",
            replace_existing=True,
        )

        self.scheduler.start()
        logger.info("Планировщик задач запущен")
        uvicorn_logger.info("Планировщик задач запущен")

    def stop(self):
        """Остановить планировщик задач."""
        if self.scheduler:
            self.scheduler.shutdown(wait=False)
            self.scheduler = None
            logger.info("Планировщик задач остановлен")

    # --- Цикл флота ---

    async def _probe_one(self, semaphore: asyncio.Semaphore, target: DeviceTarget) -> ProbeResult:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(self.prober, target, self.probe_timeout),
                    timeout=self.hard_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Опрос устройства {target.id} превысил {self.hard_timeout}s")
                return ProbeResult(
                    device_id=target.id,
                    outcome=ProbeOutcome.RECOVERABLE_FAILURE,
                    error="probe timeout",
                )
            except Exception as e:
                logger.error(f"Опрос устройства {target.id} завершился ошибкой: {e}", exc_info=True)
                return ProbeResult(
                    device_id=target.id,
                    outcome=ProbeOutcome.RECOVERABLE_FAILURE,
                    error=str(e) or type(e).__name__,
                )

    async def _probe_all(self, targets: List[DeviceTarget], report: CycleReport) -> Dict[str, ProbeResult]:
        """
        Опросить устройства параллельно (не более max_workers одновременно).
        Не завершившиеся к мягкому дедлайну опросы бросаются и считаются неудачными.
        """
        if not targets:
            return {}
        semaphore = asyncio.Semaphore(self.max_workers)
        tasks = {asyncio.ensure_future(self._probe_one(semaphore, t)): t for t in targets}
        done, pending = await asyncio.wait(tasks.keys(), timeout=self.soft_deadline)

        results: Dict[str, ProbeResult] = {}
        for task in done:
            result = task.result()
            results[result.device_id] = result
            if result.error == "probe timeout":
                report.timed_out += 1
        for task in pending:
            task.cancel()
            target = tasks[task]
            report.abandoned += 1
            results[target.id] = ProbeResult(
                device_id=target.id,
                outcome=ProbeOutcome.RECOVERABLE_FAILURE,
                error="cycle deadline exceeded",
            )
        if pending:
            logger.warning(f"Цикл флота: {len(pending)} опросов брошено по дедлайну {self.soft_deadline}s")
        return results

    async def _enumerate_one(self, semaphore: asyncio.Semaphore, target: DeviceTarget) -> Optional[List[ObservedSession]]:
        async with semaphore:
            try:
                return await asyncio.wait_for(
                    asyncio.to_thread(fetch_device_sessions, target, self.fetch),
                    timeout=self.hard_timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(f"Перечисление сессий устройства {target.id} превысило {self.hard_timeout}s")
                return None
            except Exception as e:
                logger.error(f"Перечисление сессий устройства {target.id} завершилось ошибкой: {e}", exc_info=True)
                return None

    async def _enumerate_all(self, targets: List[DeviceTarget]) -> Dict[str, Optional[List[ObservedSession]]]:
        """Собрать сессии со всех устройств. Возвращается только когда все завершились или вышли по таймауту."""
        if not targets:
            return {}
        semaphore = asyncio.Semaphore(self.max_workers)
        sessions = await asyncio.gather(*(self._enumerate_one(semaphore, t) for t in targets))
        return {target.id: result for target, result in zip(targets, sessions)}

    async def run_fleet_cycle(self) -> CycleReport:
        """
        Один цикл: опрос устройств, применение результатов, пометка устаревших,
        затем сверка сессий по свежему списку онлайн-устройств.
        """
        report = CycleReport(started_at=datetime.utcnow())
        db = self.session_factory()
        try:
            devices = db.query(Device).filter(Device.is_deleted.is_(False)).all()
            targets = [DeviceTarget.from_device(d) for d in devices if d.tunnel_address]
            report.skipped = len(devices) - len(targets)
            report.probed = len(targets)

            results = await self._probe_all(targets, report)

            now = datetime.utcnow()
            for device in devices:
                result = results.get(device.id) or ProbeResult(device_id=device.id, outcome=ProbeOutcome.SKIPPED)
                apply_probe_result(db, device, result, now=now, commit=False)
                if result.ok:
                    report.succeeded += 1
                elif result.failed:
                    report.failed += 1
            db.commit()
            report.stale_marked = mark_stale_devices(db, now=now)

            online = [
                DeviceTarget.from_device(d)
                for d in devices
                if d.status == DeviceStatus.ONLINE and d.tunnel_address
            ]
            device_sessions = await self._enumerate_all(online)
            report.enumeration_failed = sum(1 for s in device_sessions.values() if s is None)

            # Закрытие отсутствующих сессий строго после завершения всех перечислений
            accounting = load_accounting_sessions(db, devices, now=datetime.utcnow())
            summary = reconcile(db, device_sessions, accounting=accounting)
            report.reconcile = summary
            report.active_sessions = summary.active_count
            report.errors.extend(summary.errors)
        except Exception as e:
            logger.error(f"Ошибка цикла флота: {e}", exc_info=True)
            report.errors.append(str(e))
            db.rollback()
        finally:
            db.close()

        report.finished_at = datetime.utcnow()
        self.last_report = report
        logger.info(
            f"Цикл флота за {report.duration_seconds:.1f}s: опрошено {report.probed}, "
            f"успешно {report.succeeded}, ошибок {report.failed}, брошено {report.abandoned}, "
            f"активных сессий {report.active_sessions}"
        )
        return report

    # --- Обслуживание ---

    def _reconcile_peers_sync(self) -> Dict:
        db = self.session_factory()
        try:
            return get_peer_store().reconcile_all(db)
        finally:
            db.close()

    async def reconcile_peers(self):
        """Свести wg0.conf с таблицей устройств (исправляет ручные правки и прерванные пакеты)."""
        try:
            summary = await asyncio.to_thread(self._reconcile_peers_sync)
            if summary["errors"]:
                logger.warning(f"Сверка WireGuard завершилась с ошибками: {summary['errors']}")
        except Exception as e:
            logger.error(f"Ошибка при сверке WireGuard: {e}", exc_info=True)

    def _rebuild_nat_sync(self) -> Dict:
        db = self.session_factory()
        try:
            return ConsolePortService().rebuild_all_rules(db)
        finally:
            db.close()

    async def rebuild_nat_rules(self):
        """Восстановить правила проброса консоли."""
        try:
            summary = await asyncio.to_thread(self._rebuild_nat_sync)
            msg = f"Правила NAT восстановлены: {summary['applied']} из {summary['total']}"
            logger.info(msg)
            uvicorn_logger.info(msg)
        except Exception as e:
            logger.error(f"Ошибка при восстановлении правил NAT: {e}", exc_info=True)

    async def close_stale_accounting(self):
        """Закрыть записи radacct, не обновлявшиеся дольше ACCOUNTING_STALE_HOURS."""
        db = self.session_factory()
        try:
            close_stale_accounting(db)
        except Exception as e:
            logger.error(f"Ошибка при закрытии зависших записей учёта: {e}", exc_info=True)
            db.rollback()
        finally:
            db.close()


# Глобальный экземпляр планировщика
scheduler_service = SchedulerService()
