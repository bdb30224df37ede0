"""
Сервис для взаимодействия с роутерами MikroTik через SSH и REST API.

Подключение к устройству всегда идёт на адрес туннеля WireGuard.
Публичный адрес, с которого пришёл heartbeat, для управления не используется.
"""
import paramiko
import requests
import re
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Optional, List, Dict, Any, Iterator, Union
from backend.models.device import Device, ConnectionType
from backend.models.subscriber import SessionType
from backend.services.settings_service import decrypt_value
from config.settings import settings

logger = logging.getLogger(__name__)


class MikroTikConnectionError(Exception):
    """Исключение для ошибок подключения к MikroTik."""
    pass


class MikroTikCredentialsError(MikroTikConnectionError):
    """Для устройства не заданы учётные данные: повторный опрос не поможет."""
    pass


@dataclass(frozen=True)
class DeviceTarget:
    """
    Снимок полей устройства, нужных для подключения.
    ORM-объект после commit перечитывается лениво, поэтому в рабочие потоки передаётся снимок.
    """
    id: str
    name: str
    tunnel_address: Optional[str]
    api_username: Optional[str]
    api_password: Optional[str]
    api_port: Optional[int]
    connection_type: ConnectionType
    ssh_key_path: Optional[str]
    use_ssl: bool
    owner_id: Optional[str] = None

    @classmethod
    def from_device(cls, device: Device) -> "DeviceTarget":
        return cls(
            id=device.id,
            name=device.name,
            tunnel_address=device.tunnel_address,
            api_username=device.api_username,
            api_password=device.api_password,
            api_port=device.api_port,
            connection_type=device.connection_type,
            ssh_key_path=device.ssh_key_path,
            use_ssl=bool(device.use_ssl),
            owner_id=device.owner_id,
        )


DeviceLike = Union[Device, DeviceTarget]


class MikroTikSSHClient:
    """Клиент для работы с MikroTik через SSH."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: Optional[str] = None,
        ssh_key_path: Optional[str] = None,
        timeout: float = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.ssh_key_path = ssh_key_path
        self.timeout = timeout
        self.client: Optional[paramiko.SSHClient] = None

    def _load_private_key(self, path: str):
        """Загрузить приватный ключ: пробуем ed25519, ecdsa и rsa по очереди."""
        last_error: Optional[Exception] = None
        loaders = [
            paramiko.Ed25519Key.from_private_key_file,
            paramiko.ECDSAKey.from_private_key_file,
            paramiko.RSAKey.from_private_key_file,
        ]
        for loader in loaders:
            try:
                return loader(path)
            except (paramiko.SSHException, OSError, ValueError) as e:
                last_error = e
        raise MikroTikCredentialsError(f"Failed to load SSH private key '{path}': {last_error}")

    def _connect_interactive(self) -> None:
        """
        Часть версий RouterOS принимает пароль только через keyboard-interactive.
        Поднимаем Transport вручную и привязываем к SSHClient.
        """
        transport = paramiko.Transport((self.host, self.port))
        transport.banner_timeout = self.timeout
        transport.auth_timeout = self.timeout
        transport.start_client(timeout=self.timeout)
        transport.auth_interactive(self.username, lambda title, instructions, prompts: [self.password for _ in prompts])
        if not transport.is_authenticated():
            transport.close()
            raise MikroTikConnectionError(
                f"SSH authentication failed for {self.username}@{self.host}:{self.port}"
            )
        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        self.client._transport = transport  # noqa: SLF001

    def connect(self) -> None:
        """Подключиться к MikroTik."""
        params = dict(
            hostname=self.host,
            port=self.port,
            username=self.username,
            allow_agent=False,
            look_for_keys=False,
            timeout=self.timeout,
            banner_timeout=self.timeout,
            auth_timeout=self.timeout,
        )
        if self.ssh_key_path:
            params["pkey"] = self._load_private_key(self.ssh_key_path)
        elif self.password:
            params["password"] = self.password
        else:
            raise MikroTikCredentialsError("No password or SSH key provided")

        self.client = paramiko.SSHClient()
        self.client.set_missing_host_key_policy(paramiko.AutoAddPolicy())
        try:
            self.client.connect(**params)
        except paramiko.AuthenticationException as e:
            if not self.password:
                raise MikroTikConnectionError(
                    f"SSH key authentication failed for {self.username}@{self.host}:{self.port}"
                ) from e
            try:
                self._connect_interactive()
            except (paramiko.SSHException, OSError, EOFError) as inner:
                raise MikroTikConnectionError(
                    f"SSH authentication failed for {self.username}@{self.host}:{self.port}: {inner}"
                ) from inner
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise MikroTikConnectionError(
                f"Failed to connect to MikroTik via SSH {self.host}:{self.port}: {e}"
            ) from e

    def execute_command(self, command: str) -> str:
        """Выполнить команду на MikroTik."""
        if not self.client:
            raise MikroTikConnectionError("Not connected to MikroTik")

        try:
            stdin, stdout, stderr = self.client.exec_command(command, timeout=self.timeout)
            output = stdout.read().decode("utf-8", errors="replace")
            error = stderr.read().decode("utf-8", errors="replace")
        except (paramiko.SSHException, OSError, EOFError) as e:
            raise MikroTikConnectionError(f"Failed to execute command: {e}") from e

        if error.strip():
            raise MikroTikConnectionError(f"MikroTik command error: {error.strip()}")
        if _is_routeros_cli_error_output(output):
            raise MikroTikConnectionError(f"MikroTik command error: {output.strip()}")
        return output.strip()

    def disconnect(self) -> None:
        """Отключиться от MikroTik."""
        if self.client:
            self.client.close()
            self.client = None


class MikroTikRESTClient:
    """Клиент для работы с MikroTik через REST API (RouterOS 7)."""

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        use_https: bool = False,
        timeout: float = 10,
    ):
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.timeout = timeout
        self.protocol = "https" if use_https else "http"
        self.base_url = f"{self.protocol}://{self.host}:{self.port}/rest"
        self.session: Optional[requests.Session] = None

    def connect(self) -> None:
        """Подготовить HTTP-сессию. Сетевой запрос выполняется при первом обращении."""
        self.session = requests.Session()
        self.session.auth = (self.username, self.password)
        # Самоподписанные сертификаты роутеров; трафик и так идёт внутри туннеля
        self.session.verify = False

    def _request(self, method: str, path: str, **kwargs) -> requests.Response:
        if not self.session:
            raise MikroTikConnectionError("Not connected to MikroTik REST API")
        try:
            response = self.session.request(method, f"{self.base_url}/{path}", timeout=self.timeout, **kwargs)
            response.raise_for_status()
        except requests.RequestException as e:
            raise MikroTikConnectionError(f"REST API {method} {path} error: {e}") from e
        return response

    @staticmethod
    def _decode(response: requests.Response, path: str, empty: Any) -> Any:
        # На порту может отвечать не RouterOS (страница входа, другой сервис)
        if not response.content:
            return empty
        try:
            return response.json()
        except ValueError as e:
            raise MikroTikConnectionError(f"REST API {path}: response is not JSON: {e}") from e

    def get(self, path: str) -> Any:
        """GET запрос к REST API."""
        return self._decode(self._request("GET", path), path, [])

    def post(self, path: str, data: Dict[str, Any]) -> Any:
        """POST запрос к REST API."""
        return self._decode(self._request("POST", path, json=data), path, {})

    def delete(self, path: str) -> None:
        """DELETE запрос к REST API."""
        self._request("DELETE", path)

    def disconnect(self) -> None:
        """Закрыть сессию."""
        if self.session:
            self.session.close()
            self.session = None


def build_client(device: DeviceLike, timeout: Optional[float] = None):
    """
    Создать клиент управления для устройства.

    Raises:
        MikroTikConnectionError: у устройства нет адреса туннеля
        MikroTikCredentialsError: не заданы логин/пароль/ключ
    """
    if not device.tunnel_address:
        raise MikroTikConnectionError(f"Device {device.id} has no tunnel address")
    if not device.api_username:
        raise MikroTikCredentialsError(f"Device {device.id} has no management username")

    timeout = timeout or settings.PROBE_TIMEOUT_SECONDS
    password = decrypt_value(device.api_password) if device.api_password else None

    if device.connection_type == ConnectionType.REST_API:
        if not password:
            raise MikroTikCredentialsError(f"Device {device.id} has no management password")
        default_port = 443 if device.use_ssl else settings.MIKROTIK_REST_PORT
        return MikroTikRESTClient(
            host=device.tunnel_address,
            port=device.api_port or default_port,
            username=device.api_username,
            password=password,
            use_https=bool(device.use_ssl),
            timeout=timeout,
        )

    if device.connection_type == ConnectionType.SSH_KEY and not device.ssh_key_path:
        raise MikroTikCredentialsError(f"Device {device.id} has no SSH key path")
    return MikroTikSSHClient(
        host=device.tunnel_address,
        port=device.api_port or settings.MIKROTIK_SSH_PORT,
        username=device.api_username,
        password=password if device.connection_type == ConnectionType.SSH_PASSWORD else None,
        ssh_key_path=device.ssh_key_path if device.connection_type == ConnectionType.SSH_KEY else None,
        timeout=timeout,
    )


@contextmanager
def device_connection(device: DeviceLike, timeout: Optional[float] = None) -> Iterator[Any]:
    """Открыть подключение к устройству и гарантированно закрыть его."""
    client = build_client(device, timeout)
    client.connect()
    try:
        yield client
    finally:
        client.disconnect()


# --- Разбор вывода RouterOS ---

_UPTIME_PART_RE = re.compile(r"(\d+)([wdhms])")
_UPTIME_CLOCK_RE = re.compile(r"^(?:(\d+)d)?\s*(\d+):(\d{2}):(\d{2})$")
_UPTIME_UNITS = {"w": 604800, "d": 86400, "h": 3600, "m": 60, "s": 1}


def parse_routeros_uptime(value: Any) -> int:
    """
    Перевести uptime RouterOS в секунды.
    Поддерживаются форматы '1w2d3h4m5s', '2d03:04:05' и '03:04:05'.
    """
    if value is None:
        return 0
    if isinstance(value, (int, float)):
        return int(value)
    text = str(value).strip()
    if not text:
        return 0
    clock = _UPTIME_CLOCK_RE.match(text)
    if clock:
        days, hours, minutes, seconds = clock.groups()
        return int(days or 0) * 86400 + int(hours) * 3600 + int(minutes) * 60 + int(seconds)
    if text.isdigit():
        return int(text)
    return sum(int(amount) * _UPTIME_UNITS[unit] for amount, unit in _UPTIME_PART_RE.findall(text))


def _is_routeros_cli_error_output(output: str) -> bool:
    """
    RouterOS иногда пишет ошибки в stdout (а не в stderr),
    поэтому проверяем текст вывода на типичные маркеры ошибок.
    """
    text = (output or "").strip().lower()
    if not text:
        return False
    return (
        "bad command name" in text
        or "no such item" in text
        or "input does not match" in text
        or "syntax error" in text
        or text.startswith("failure:")
    )


# Ключи вида ".id=*1" содержат точку, значения часто без кавычек
_KV_RE = re.compile(r'([A-Za-z0-9_.-]+)=("([^"\\]|\\.)*"|\S+)')


def _parse_kv_pairs_from_line(line: str) -> Dict[str, str]:
    result: Dict[str, str] = {}
    for m in _KV_RE.finditer(line):
        key = m.group(1)
        value = m.group(2)
        if value.startswith('"') and value.endswith('"') and len(value) >= 2:
            value = value[1:-1]
        result[key] = value
    return result


def _normalize_bool(value: Any) -> Optional[bool]:
    """Нормализовать RouterOS boolean-значения (REST/CLI) в Python bool."""
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    s = str(value).strip().lower()
    if s in {"true", "yes", "enabled", "enable", "1"}:
        return True
    if s in {"false", "no", "disabled", "disable", "0"}:
        return False
    return None


def _to_int(value: Any) -> Optional[int]:
    if value is None or value == "":
        return None
    try:
        return int(str(value).strip())
    except ValueError:
        return None


def _split_routeros_index_and_flags(line: str) -> tuple:
    """
    Разобрать начало строки RouterOS вида '0 X name="user" ...', '1   name=...' или '72'.

    Returns: (number, flags, rest)
    """
    m = re.match(r"^(?P<num>\d+)\s+(?P<flags>[A-Z]+)(?:\s+(?P<rest>.+))?$", line)
    if m:
        return int(m.group("num")), m.group("flags") or "", (m.group("rest") or "").strip()
    m2 = re.match(r"^(?P<num>\d+)(?:\s+(?P<rest>.+))?$", line)
    if m2:
        return int(m2.group("num")), "", (m2.group("rest") or "").strip()
    return None, "", line.strip()


def _parse_print_detail_output(output: str) -> List[Dict[str, Any]]:
    """
    Парсинг вывода `print detail`.

    Запись начинается со строки с индексом; RouterOS переносит длинные записи,
    поэтому строки без индекса дописываются к текущей записи.
    """
    items: List[Dict[str, Any]] = []
    current: Optional[Dict[str, Any]] = None
    for raw_line in (output or "").splitlines():
        line = raw_line.strip()
        if not line or line.startswith("Flags:") or line.startswith("Columns:"):
            continue
        if ";;;" in line:
            line = line.split(";;;", 1)[0].strip()
        number, flags, rest = _split_routeros_index_and_flags(line)
        if number is not None:
            current = {"number": number, "flags": flags}
            items.append(current)
            line = rest
        if current is None:
            continue
        current.update(_parse_kv_pairs_from_line(line))

    for item in items:
        from_field = _normalize_bool(item.get("disabled"))
        item["disabled"] = from_field if from_field is not None else ("X" in item.get("flags", ""))
    return [item for item in items if len(item) > 3]


def _parse_colon_output(output: str) -> Dict[str, str]:
    """Разбор вывода вида '   uptime: 1w2d' (`/system resource print`)."""
    result: Dict[str, str] = {}
    for raw_line in (output or "").splitlines():
        if ":" not in raw_line:
            continue
        key, value = raw_line.split(":", 1)
        key = key.strip()
        if key:
            result[key] = value.strip()
    return result


# --- Нормализация ---

def normalize_system_resource(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Привести /system/resource (REST или CLI) к единому словарю метрик."""
    total = _to_int(raw.get("total-memory"))
    free = _to_int(raw.get("free-memory"))
    memory_usage = None
    if total and free is not None:
        memory_usage = round((total - free) * 100.0 / total, 1)
    cpu = raw.get("cpu-load")
    if isinstance(cpu, str):
        cpu = cpu.rstrip("%")
    return {
        "uptime_seconds": parse_routeros_uptime(raw.get("uptime")),
        "cpu_load": float(cpu) if cpu not in (None, "") else None,
        "memory_usage": memory_usage,
        "board_name": raw.get("board-name"),
        "version": raw.get("version"),
    }


def _normalize_session(raw: Dict[str, Any], session_type: SessionType) -> Optional[Dict[str, Any]]:
    """Единый формат сессии. Тип проставляется здесь и дальше не вычисляется."""
    if session_type == SessionType.HOTSPOT:
        username = raw.get("user")
        mac = raw.get("mac-address")
    elif session_type == SessionType.PPPOE:
        username = raw.get("name") or raw.get("user")
        mac = raw.get("caller-id")
    else:
        mac = raw.get("mac-address") or raw.get("active-mac-address")
        username = raw.get("comment") or raw.get("host-name") or mac
    if not username:
        return None
    return {
        "username": str(username).strip(),
        "address": raw.get("address") or raw.get("active-address"),
        "mac_address": mac,
        "session_type": session_type,
        "bytes_in": _to_int(raw.get("bytes-in")),
        "bytes_out": _to_int(raw.get("bytes-out")),
        "uptime_seconds": parse_routeros_uptime(raw.get("uptime")),
        "router_id": raw.get(".id"),
    }


_SESSION_SOURCES = (
    (SessionType.HOTSPOT, "ip/hotspot/active", "/ip hotspot active print detail without-paging"),
    (SessionType.PPPOE, "ppp/active", "/ppp active print detail without-paging"),
    (SessionType.STATIC, "ip/dhcp-server/lease", "/ip dhcp-server lease print detail without-paging where status=bound"),
)


# --- Операции над устройством ---

def get_system_resource(device: DeviceLike, timeout: Optional[float] = None) -> Dict[str, Any]:
    """Получить CPU/память/uptime/версию устройства."""
    with device_connection(device, timeout) as client:
        if isinstance(client, MikroTikRESTClient):
            raw = client.get("system/resource")
            if isinstance(raw, list):
                raw = raw[0] if raw else {}
        else:
            raw = _parse_colon_output(client.execute_command("/system resource print"))
    if not isinstance(raw, dict):
        raise MikroTikConnectionError(f"Unexpected /system/resource payload from device {device.id}")
    try:
        return normalize_system_resource(raw)
    except (TypeError, ValueError) as e:
        raise MikroTikConnectionError(f"Malformed /system/resource payload from device {device.id}: {e}") from e


def get_active_sessions(device: DeviceLike, timeout: Optional[float] = None) -> List[Dict[str, Any]]:
    """
    Перечислить активных абонентов устройства: hotspot, PPPoE и занятые DHCP-аренды (статика).

    Ошибка любого источника прерывает перечисление целиком: неполный список
    привёл бы к ложному отключению абонентов.
    """
    sessions: List[Dict[str, Any]] = []
    with device_connection(device, timeout) as client:
        for session_type, rest_path, cli_command in _SESSION_SOURCES:
            if isinstance(client, MikroTikRESTClient):
                rows = client.get(rest_path) or []
            else:
                rows = _parse_print_detail_output(client.execute_command(cli_command))
            if session_type == SessionType.STATIC:
                rows = [row for row in rows if row.get("status") == "bound"]
            for row in rows:
                normalized = _normalize_session(row, session_type)
                if normalized:
                    sessions.append(normalized)
    return sessions


def disconnect_subscriber(device: DeviceLike, username: str, session_type: SessionType) -> bool:
    """
    Разорвать активную сессию абонента на устройстве.
    Статические аренды не разрываются (False).
    """
    if session_type == SessionType.HOTSPOT:
        rest_path, match_key, cli_menu = "ip/hotspot/active", "user", "/ip hotspot active"
    elif session_type == SessionType.PPPOE:
        rest_path, match_key, cli_menu = "ppp/active", "name", "/ppp active"
    else:
        logger.info(f"Отключение {username} ({session_type}) на {device.id} не поддерживается")
        return False

    with device_connection(device) as client:
        if isinstance(client, MikroTikRESTClient):
            removed = 0
            for row in client.get(rest_path) or []:
                if row.get(match_key) == username and row.get(".id"):
                    client.delete(f"{rest_path}/{row['.id']}")
                    removed += 1
            logger.info(f"Устройство {device.id}: разорвано сессий {username}: {removed}")
            return removed > 0
        escaped = username.replace('"', '\\"')
        client.execute_command(f'{cli_menu} remove [find {match_key}="{escaped}"]')
        logger.info(f"Устройство {device.id}: сессия {username} разорвана")
        return True
