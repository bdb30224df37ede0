"""
Управление пирами WireGuard на хабе.

Конфигурация wg0.conf является источником истины для ядра WireGuard:
сервис читает файл, правит блоки [Peer], проверяет результат через
`wg-quick strip`, атомарно подменяет файл и применяет его `wg syncconf`
(без разрыва существующих туннелей). При ошибке восстанавливается резервная
копия, и в работе остаётся предыдущая конфигурация.
"""
import ipaddress
import logging
import re
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, List, Optional, Set, Tuple

from sqlalchemy.orm import Session

from config.settings import settings
from backend.database import SessionLocal
from backend.models.device import Device, PeerStatus
from backend.services.exceptions import WireGuardConfigError
from backend.services.system_commands import CommandRunner

logger = logging.getLogger(__name__)

PUBLIC_KEY_RE = re.compile(r"^[A-Za-z0-9+/]{43}=$")
BACKUP_NAME_RE = re.compile(r"\.backup\.(\d{4}-\d{2}-\d{2})_\d{6}(?:_\d{6})?$")
MANAGED_COMMENT_PREFIX = "# device:"


def is_valid_public_key(key: Optional[str]) -> bool:
    """Открытый ключ WireGuard: 32 байта в base64 (44 символа с '=' в конце)."""
    return bool(key) and bool(PUBLIC_KEY_RE.match(key.strip()))


def _short_key(key: Optional[str]) -> str:
    return f"{key[:16]}..." if key else "-"


@dataclass
class PeerRecord:
    """Блок [Peer] конфигурации."""
    public_key: str
    allowed_ips: str
    persistent_keepalive: Optional[int] = None
    comment: Optional[str] = None
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def address(self) -> Optional[str]:
        """Адрес туннеля без маски (первый из AllowedIPs)."""
        if not self.allowed_ips:
            return None
        return self.allowed_ips.split(",")[0].strip().split("/")[0]

    def same_settings(self, other: "PeerRecord") -> bool:
        return (
            self.public_key == other.public_key
            and self.allowed_ips == other.allowed_ips
            and self.persistent_keepalive == other.persistent_keepalive
        )

    def render(self) -> str:
        lines = []
        if self.comment:
            lines.append(self.comment)
        lines.append("[Peer]")
        lines.append(f"PublicKey = {self.public_key}")
        for key, value in self.extra.items():
            lines.append(f"{key} = {value}")
        lines.append(f"AllowedIPs = {self.allowed_ips}")
        if self.persistent_keepalive:
            lines.append(f"PersistentKeepalive = {self.persistent_keepalive}")
        return "\n".join(lines)


@dataclass
class WireGuardConfig:
    """Разобранный файл: строки секции [Interface] и список пиров."""
    interface_lines: List[str]
    peers: List[PeerRecord]

    def find_by_key(self, public_key: str) -> Optional[PeerRecord]:
        for peer in self.peers:
            if peer.public_key == public_key:
                return peer
        return None

    def find_by_address(self, address: str) -> Optional[PeerRecord]:
        for peer in self.peers:
            if peer.address == address:
                return peer
        return None

    def render(self) -> str:
        parts = ["\n".join(self.interface_lines).rstrip()]
        for peer in self.peers:
            parts.append(peer.render())
        return "\n\n".join(parts) + "\n"


def parse_config(content: str) -> WireGuardConfig:
    """
    Разобрать wg0.conf.

    Комментарии непосредственно перед [Peer] считаются комментарием этого пира.
    Неизвестные ключи пира (PresharedKey, Endpoint) сохраняются в extra.
    """
    interface_lines: List[str] = []
    peers: List[PeerRecord] = []
    pending_comment: List[str] = []
    current: Optional[Dict[str, str]] = None
    current_comment: Optional[str] = None
    section = None

    def flush_peer():
        if current is None:
            return
        keepalive = current.pop("PersistentKeepalive", None)
        peers.append(
            PeerRecord(
                public_key=current.pop("PublicKey", ""),
                allowed_ips=current.pop("AllowedIPs", ""),
                persistent_keepalive=int(keepalive) if keepalive and keepalive.isdigit() else None,
                comment=current_comment,
                extra=dict(current),
            )
        )

    for raw in content.splitlines():
        line = raw.strip()
        if line.lower() == "[interface]":
            section = "interface"
            interface_lines.extend(pending_comment)
            pending_comment = []
            interface_lines.append("[Interface]")
            continue
        if line.lower() == "[peer]":
            flush_peer()
            section = "peer"
            current = {}
            current_comment = "\n".join(pending_comment) if pending_comment else None
            pending_comment = []
            continue
        if line.startswith("#"):
            pending_comment.append(line)
            continue
        if not line:
            continue
        if section == "interface":
            interface_lines.extend(pending_comment)
            pending_comment = []
            interface_lines.append(raw)
        elif section == "peer" and "=" in line:
            key, value = (part.strip() for part in line.split("=", 1))
            current[key] = value

    flush_peer()
    return WireGuardConfig(interface_lines=interface_lines, peers=peers)


def validate_config(config: WireGuardConfig) -> None:
    """
    Структурная проверка перед записью.

    Raises:
        WireGuardConfigError: нет [Interface], дубли ключей/адресов, битый ключ
    """
    if "[Interface]" not in config.interface_lines:
        raise WireGuardConfigError("Configuration has no [Interface] section")
    seen_keys = set()
    seen_addresses = set()
    for peer in config.peers:
        if not is_valid_public_key(peer.public_key):
            raise WireGuardConfigError(f"Invalid peer public key: {_short_key(peer.public_key)}")
        if peer.public_key in seen_keys:
            raise WireGuardConfigError(f"Duplicate peer public key: {_short_key(peer.public_key)}")
        seen_keys.add(peer.public_key)
        if not peer.allowed_ips:
            raise WireGuardConfigError(f"Peer {_short_key(peer.public_key)} has no AllowedIPs")
        for network in peer.allowed_ips.split(","):
            try:
                ipaddress.ip_network(network.strip(), strict=False)
            except ValueError:
                raise WireGuardConfigError(f"Invalid AllowedIPs '{network.strip()}'")
        if peer.address in seen_addresses:
            raise WireGuardConfigError(f"Duplicate peer address: {peer.address}")
        seen_addresses.add(peer.address)


def build_peer(device: Device) -> PeerRecord:
    """Блок [Peer] для устройства. AllowedIPs всегда адрес туннеля /32."""
    return PeerRecord(
        public_key=device.tunnel_public_key.strip(),
        allowed_ips=f"{device.tunnel_address}/32",
        persistent_keepalive=settings.WG_PERSISTENT_KEEPALIVE or None,
        comment=f"{MANAGED_COMMENT_PREFIX} {device.id} | {device.name}",
    )


class WireGuardPeerStore:
    """
    Хранилище пиров хаба.

    Запись файла и перезагрузка интерфейса сериализованы блокировками уровня
    процесса: одновременно выполняется не больше одной перезагрузки, остальные
    писатели ждут в очереди.
    """

    _file_lock = threading.RLock()
    _reload_lock = threading.Lock()

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        config_path: Optional[str] = None,
        backup_dir: Optional[str] = None,
        interface: Optional[str] = None,
    ):
        self.runner = runner or CommandRunner(use_sudo=settings.WG_USE_SUDO)
        self.config_path = config_path or settings.WG_CONFIG_PATH
        self.backup_dir = backup_dir or settings.WG_BACKUP_DIR
        self.interface = interface or settings.WG_INTERFACE
        self.last_backup_path: Optional[str] = None
        # Пакет записей без перезагрузки: копия до первой записи пакета и его устройства
        self._batch_pending = False
        self._batch_backup_path: Optional[str] = None
        self._batch_device_ids: Set[str] = set()

    # --- Чтение/запись ---

    def read_config(self) -> WireGuardConfig:
        return parse_config(self.runner.read_text(self.config_path))

    def _backup(self) -> Optional[str]:
        if not self.runner.exists(self.config_path):
            return None
        # Микросекунды: несколько записей пакета укладываются в одну секунду
        stamp = datetime.utcnow().strftime("%Y-%m-%d_%H%M%S_%f")
        name = f"{Path(self.config_path).name}.backup.{stamp}"
        backup_path = str(Path(self.backup_dir) / name)
        self.runner.copy(self.config_path, backup_path)
        logger.info(f"Создана резервная копия конфигурации WireGuard: {backup_path}")
        self.cleanup_backups()
        return backup_path

    def cleanup_backups(self, now: Optional[datetime] = None) -> int:
        """Удалить резервные копии старше WG_BACKUP_RETENTION_DAYS."""
        now = now or datetime.utcnow()
        cutoff = (now - timedelta(days=settings.WG_BACKUP_RETENTION_DAYS)).date()
        removed = 0
        for name in self.runner.list_dir(self.backup_dir):
            match = BACKUP_NAME_RE.search(name)
            if not match:
                continue
            try:
                created = datetime.strptime(match.group(1), "%Y-%m-%d").date()
            except ValueError:
                continue
            if created < cutoff:
                self.runner.remove(str(Path(self.backup_dir) / name))
                removed += 1
        if removed:
            logger.info(f"Удалено старых резервных копий WireGuard: {removed}")
        return removed

    def _strip(self, path: str) -> str:
        result = self.runner.run([settings.WG_QUICK_BINARY, "strip", path])
        if not result.ok:
            raise WireGuardConfigError(f"wg-quick strip rejected {path}: {result.stderr.strip()}")
        return result.stdout

    def _validate_candidate(self, content: str) -> None:
        """Проверка кандидата до подмены: разбор, структура, wg-quick strip на промежуточной копии."""
        validate_config(parse_config(content))
        staged = str(Path(self.backup_dir) / "staging" / f"{self.interface}.conf")
        self.runner.write_text_atomic(staged, content)
        try:
            self._strip(staged)
        finally:
            self.runner.remove(staged)

    def _write_config(self, content: str) -> None:
        """Проверить, сделать резервную копию и атомарно подменить файл."""
        self._validate_candidate(content)
        self.last_backup_path = self._backup()
        self.runner.write_text_atomic(self.config_path, content)

    def _sync(self) -> None:
        stripped = self._strip(self.config_path)
        result = self.runner.run(
            [settings.WG_BINARY, "syncconf", self.interface, "/dev/stdin"],
            input_text=stripped,
        )
        if not result.ok:
            raise WireGuardConfigError(f"wg syncconf failed: {result.stderr.strip()}")

    def _restore_backup(self, backup_path: Optional[str]) -> None:
        if not backup_path:
            logger.error("Нет резервной копии WireGuard для восстановления")
            return
        self.runner.copy(backup_path, self.config_path)
        logger.warning(f"Конфигурация WireGuard восстановлена из {backup_path}")
        try:
            self._sync()
        except WireGuardConfigError as e:
            logger.error(f"Не удалось применить восстановленную конфигурацию: {e}")

    def apply_config_safely(self, content: Optional[str] = None) -> bool:
        """
        Применить конфигурацию к интерфейсу.

        Если передан content, он сначала проверяется и атомарно записывается
        вместо текущего файла. При ошибке проверки файл не трогается; при ошибке
        syncconf восстанавливается резервная копия. Если до этого были записи
        без перезагрузки (reload=False), восстанавливается состояние до пакета.
        """
        with self._file_lock:
            batch_pending, batch_backup = self._batch_pending, self._batch_backup_path
            self._batch_pending, self._batch_backup_path = False, None
            self._batch_device_ids = set()
            swapped = False
            try:
                if content is not None:
                    self._write_config(content)
                    swapped = True
                with self._reload_lock:
                    self._sync()
            except (WireGuardConfigError, OSError) as e:
                logger.error(f"Ошибка применения конфигурации WireGuard: {e}")
                if batch_pending:
                    self._restore_backup(batch_backup)
                elif swapped:
                    self._restore_backup(self.last_backup_path)
                return False
        logger.info(f"Конфигурация WireGuard применена к {self.interface}")
        return True

    # --- Операции с пирами ---

    @staticmethod
    def _upsert(config: WireGuardConfig, peer: PeerRecord) -> str:
        """Вставить/обновить пир. Возвращает 'added', 'updated' или 'unchanged'."""
        existing = config.find_by_key(peer.public_key)
        if existing is None:
            # Ключ мог смениться: ищем по адресу
            existing = config.find_by_address(peer.address)
        if existing is None:
            config.peers.append(peer)
            return "added"
        if existing.same_settings(peer) and existing.comment == peer.comment:
            return "unchanged"
        index = config.peers.index(existing)
        peer.extra = existing.extra if existing.public_key == peer.public_key else {}
        config.peers[index] = peer
        return "updated"

    def _commit(self, config: WireGuardConfig, reload: bool) -> bool:
        content = config.render()
        if reload:
            return self.apply_config_safely(content)
        with self._file_lock:
            try:
                self._write_config(content)
            except (WireGuardConfigError, OSError) as e:
                logger.error(f"Ошибка записи конфигурации WireGuard: {e}")
                return False
            if not self._batch_pending:
                self._batch_pending = True
                self._batch_backup_path = self.last_backup_path
        return True

    def apply_peer(self, db: Session, device: Device, reload: bool = True) -> bool:
        """Добавить или обновить пир устройства. Выставляет peer_status."""
        if not device.tunnel_public_key or not device.tunnel_address:
            logger.warning(f"Устройство {device.id} без ключа или адреса туннеля, пир не применяется")
            return False

        with self._file_lock:
            try:
                config = self.read_config()
            except OSError as e:
                logger.error(f"Не удалось прочитать {self.config_path}: {e}")
                device.peer_status = PeerStatus.FAILED
                db.commit()
                return False
            change = self._upsert(config, build_peer(device))
            if change != "unchanged":
                ok = self._commit(config, reload)
            elif reload and self._batch_pending:
                ok = self.apply_config_safely()
            else:
                ok = True
            deferred = ok and not reload and (change != "unchanged" or device.id in self._batch_device_ids)
            if deferred:
                # Пир в файле, но интерфейс ещё не перезагружен
                self._batch_device_ids.add(device.id)

        if deferred:
            device.peer_status = PeerStatus.PENDING
        else:
            device.peer_status = PeerStatus.ACTIVE if ok else PeerStatus.FAILED
        db.commit()
        if ok:
            logger.info(f"Пир {_short_key(device.tunnel_public_key)} устройства {device.id}: {change}")
        else:
            logger.error(f"Не удалось применить пир устройства {device.id}")
        return ok

    def reload_batch(self, db: Session) -> bool:
        """
        Перезагрузить интерфейс после записей с reload=False и выставить
        peer_status устройствам пакета. При ошибке файл возвращается к
        состоянию до пакета, устройства помечаются failed.
        """
        with self._file_lock:
            device_ids = set(self._batch_device_ids)
            ok = self.apply_config_safely()
        if device_ids:
            for device in db.query(Device).filter(Device.id.in_(device_ids)).all():
                device.peer_status = PeerStatus.ACTIVE if ok else PeerStatus.FAILED
            db.commit()
        return ok

    def apply_peers(self, db: Session, devices: List[Device]) -> Dict:
        """Пакетное применение: одна блокировка, одна запись файла, одна перезагрузка."""
        result = {"added": 0, "updated": 0, "unchanged": 0, "skipped": 0, "failed": 0, "errors": []}
        eligible = []
        for device in devices:
            if not device.tunnel_public_key or not device.tunnel_address:
                result["skipped"] += 1
                continue
            eligible.append(device)

        with self._file_lock:
            try:
                config = self.read_config()
            except OSError as e:
                result["failed"] = len(eligible)
                result["errors"].append(str(e))
                return result
            for device in eligible:
                result[self._upsert(config, build_peer(device))] += 1
            changed = result["added"] + result["updated"] > 0
            ok = self._commit(config, reload=True) if changed else True

        for device in eligible:
            device.peer_status = PeerStatus.ACTIVE if ok else PeerStatus.FAILED
        if not ok:
            result["failed"] = len(eligible)
            result["errors"].append("Configuration apply failed, previous configuration kept")
        db.commit()
        return result

    def remove_peer(self, db: Session, device: Device, reload: bool = True) -> bool:
        """Удалить пир устройства (по ключу, иначе по адресу). Отсутствующий пир не ошибка."""
        with self._file_lock:
            try:
                config = self.read_config()
            except OSError as e:
                logger.error(f"Не удалось прочитать {self.config_path}: {e}")
                return False
            before = len(config.peers)
            config.peers = [
                peer for peer in config.peers
                if not (
                    (device.tunnel_public_key and peer.public_key == device.tunnel_public_key)
                    or (device.tunnel_address and peer.address == device.tunnel_address)
                )
            ]
            if len(config.peers) == before:
                return True
            ok = self._commit(config, reload)

        if ok:
            device.peer_status = PeerStatus.PENDING
            db.commit()
            logger.info(f"Пир устройства {device.id} удалён из {self.interface}")
        return ok

    def _is_managed(self, peer: PeerRecord) -> bool:
        """Пир принадлежит флоту, если его адрес лежит в подсети туннелей."""
        try:
            return ipaddress.ip_address(peer.address) in ipaddress.ip_network(settings.WG_SUBNET, strict=False)
        except (TypeError, ValueError):
            return False

    def _desired_devices(self, db: Session) -> List[Device]:
        return (
            db.query(Device)
            .filter(
                Device.is_deleted.is_(False),
                Device.tunnel_public_key.isnot(None),
                Device.tunnel_address.isnot(None),
            )
            .order_by(Device.tunnel_address)
            .all()
        )

    def reconcile_all(self, db: Session) -> Dict:
        """
        Свести файл конфигурации с таблицей устройств.

        Перезапись и перезагрузка выполняются только при наличии расхождений,
        поэтому повторный запуск без изменений возвращает нули.
        """
        summary = {"added": 0, "updated": 0, "removed": 0, "failed": 0, "errors": [], "changes_detected": False}
        devices = self._desired_devices(db)

        with self._file_lock:
            try:
                config = self.read_config()
            except OSError as e:
                summary["errors"].append(str(e))
                return summary

            invalid: List[Device] = []
            desired: List[Tuple[Device, PeerRecord]] = []
            for device in devices:
                if not is_valid_public_key(device.tunnel_public_key):
                    invalid.append(device)
                    continue
                desired.append((device, build_peer(device)))

            keep_keys = {peer.public_key for _, peer in desired}
            keep_addresses = {peer.address for _, peer in desired}
            survivors = []
            for peer in config.peers:
                if self._is_managed(peer) and peer.public_key not in keep_keys and peer.address not in keep_addresses:
                    summary["removed"] += 1
                    logger.info(f"Лишний пир {_short_key(peer.public_key)} ({peer.address}) будет удалён")
                    continue
                survivors.append(peer)
            config.peers = survivors

            for _, peer in desired:
                change = self._upsert(config, peer)
                if change != "unchanged":
                    summary[change] += 1

            for device in invalid:
                summary["failed"] += 1
                summary["errors"].append(f"Device {device.id}: invalid public key")
                device.peer_status = PeerStatus.FAILED

            summary["changes_detected"] = bool(summary["added"] or summary["updated"] or summary["removed"])
            # Файл совпадает с БД, но пир мог не попасть в интерфейс (сбой перезагрузки)
            unloaded = self._batch_pending or any(device.peer_status != PeerStatus.ACTIVE for device, _ in desired)
            if summary["changes_detected"]:
                ok = self.apply_config_safely(config.render())
            elif unloaded:
                ok = self.apply_config_safely()
            else:
                ok = True

        for device, _ in desired:
            device.peer_status = PeerStatus.ACTIVE if ok else PeerStatus.FAILED
        if not ok:
            summary["failed"] += len(desired)
            summary["errors"].append("Configuration apply failed, previous configuration kept")
        db.commit()

        if summary["changes_detected"]:
            logger.info(
                f"Сверка WireGuard: добавлено {summary['added']}, обновлено {summary['updated']}, "
                f"удалено {summary['removed']}, ошибок {summary['failed']}"
            )
        return summary


_default_store: Optional[WireGuardPeerStore] = None


def get_peer_store() -> WireGuardPeerStore:
    global _default_store
    if _default_store is None:
        _default_store = WireGuardPeerStore()
    return _default_store


def _apply_peer_job(device_id: str) -> None:
    db = SessionLocal()
    try:
        device = db.query(Device).filter(Device.id == device_id, Device.is_deleted.is_(False)).first()
        if device is None:
            logger.warning(f"Фоновое применение пира: устройство {device_id} не найдено")
            return
        get_peer_store().apply_peer(db, device)
    except Exception as e:
        logger.error(f"Ошибка фонового применения пира устройства {device_id}: {e}", exc_info=True)
    finally:
        db.close()


def schedule_peer_apply(device_id: str, background_tasks=None) -> None:
    """
    Поставить применение пира в фон, не задерживая ответ устройству.
    В обработчиках FastAPI передаётся BackgroundTasks, иначе запускается поток.
    """
    if not settings.WG_AUTO_SYNC_ENABLED:
        logger.info(f"Автоприменение пиров отключено, устройство {device_id} ждёт сверки")
        return
    if background_tasks is not None:
        background_tasks.add_task(_apply_peer_job, device_id)
        return
    threading.Thread(target=_apply_peer_job, args=(device_id,), daemon=True).start()
