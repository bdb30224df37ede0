"""
Pytest configuration and fixtures for the fleet core tests.

Provides:
- In-memory SQLite database with all tables
- FakeRunner that emulates wg, wg-quick and iptables without root
- Device / subscriber factories and WireGuard key helper
- AsyncClient for the FastAPI app with dependency overrides
"""
import os

os.environ["DATABASE_URL"] = "sqlite://"
os.environ["DISABLE_SCHEDULER"] = "true"
os.environ["WG_AUTO_SYNC_ENABLED"] = "false"
os.environ["WG_USE_SUDO"] = "false"
os.environ["WG_SERVER_PUBLIC_KEY"] = "U2VydmVyUHVibGljS2V5U2VydmVyUHVibGljS2V5MDA="
os.environ["WG_SERVER_ENDPOINT"] = "vpn.example.net"

import base64
import secrets
from pathlib import Path
from typing import List, Optional, Sequence

import pytest
import pytest_asyncio
from httpx import AsyncClient, ASGITransport
from sqlalchemy.orm import sessionmaker

import backend.models  # noqa: F401  (регистрация таблиц в metadata)
from backend.database import Base, build_engine, get_db
from backend.models.device import Device, DeviceStatus
from backend.models.subscriber import Subscriber, SessionType
from backend.services.console_port_service import ConsolePortService
from backend.services.system_commands import CommandResult, CommandRunner
from backend.services.wireguard_service import WireGuardPeerStore

SERVER_CONFIG = """[Interface]
Address = 10.100.0.1/16
ListenPort = 51820
PrivateKey = c2VydmVyLXByaXZhdGUta2V5LXNlcnZlci1wcml2YXQ=
"""


def wg_key(seed: int) -> str:
    """Валидный по формату открытый ключ WireGuard (32 байта в base64)."""
    return base64.b64encode(bytes([seed]) * 32).decode("ascii")


class FakeRunner(CommandRunner):
    """
    Runner без subprocess. Файлы пишутся по-настоящему (use_sudo=False),
    команды wg/wg-quick/iptables эмулируются в памяти.
    """

    def __init__(self):
        super().__init__(use_sudo=False)
        self.calls: List[List[str]] = []
        self.rules = set()
        self.synced: List[Optional[str]] = []
        self.fail_syncconf = False
        self.fail_strip = False
        self.fail_iptables = set()

    def run(self, args: Sequence[str], input_text: Optional[str] = None) -> CommandResult:
        args = list(args)
        self.calls.append(args)
        binary = Path(args[0]).name
        if binary == "wg-quick":
            if self.fail_strip:
                return CommandResult(1, stderr="Line unrecognized")
            return CommandResult(0, stdout=Path(args[2]).read_text(encoding="utf-8"))
        if binary == "wg":
            if self.fail_syncconf:
                return CommandResult(1, stderr="Unable to modify interface: Protocol not supported")
            self.synced.append(input_text)
            return CommandResult(0)
        if binary == "iptables":
            table, op, chain, spec = args[3], args[4], args[5], tuple(args[6:])
            key = (table, chain, spec)
            if op == "-C":
                return CommandResult(0 if key in self.rules else 1)
            if (op, chain) in self.fail_iptables:
                return CommandResult(1, stderr="iptables: Resource temporarily unavailable")
            if op == "-I":
                self.rules.add(key)
            elif op == "-D":
                self.rules.discard(key)
            return CommandResult(0)
        return CommandResult(127, stderr=f"unexpected command {binary}")

    def commands(self, binary: str, op: Optional[str] = None) -> List[List[str]]:
        return [
            call for call in self.calls
            if Path(call[0]).name == binary and (op is None or op in call)
        ]


@pytest.fixture
def engine():
    engine = build_engine("sqlite://")
    Base.metadata.create_all(bind=engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def runner():
    return FakeRunner()


@pytest.fixture
def wg_config_path(tmp_path) -> Path:
    path = tmp_path / "wg0.conf"
    path.write_text(SERVER_CONFIG, encoding="utf-8")
    return path


@pytest.fixture
def peer_store(runner, wg_config_path, tmp_path):
    return WireGuardPeerStore(
        runner=runner,
        config_path=str(wg_config_path),
        backup_dir=str(tmp_path / "backups"),
        interface="wg0",
    )


@pytest.fixture
def console(runner):
    return ConsolePortService(runner=runner, port_range=(50000, 50009))


@pytest.fixture
def make_device(db):
    """Фабрика устройств. Учётные данные по умолчанию не задаются."""
    def _make(name: str = "router", **fields) -> Device:
        fields.setdefault("sync_token", secrets.token_hex(16))
        fields.setdefault("status", DeviceStatus.PENDING)
        device = Device(name=name, **fields)
        db.add(device)
        db.commit()
        db.refresh(device)
        return device
    return _make


@pytest.fixture
def make_subscriber(db):
    def _make(username: str, owner_id: Optional[str] = None, service_type: SessionType = SessionType.HOTSPOT) -> Subscriber:
        subscriber = Subscriber(username=username, owner_id=owner_id, service_type=service_type)
        db.add(subscriber)
        db.commit()
        db.refresh(subscriber)
        return subscriber
    return _make


@pytest.fixture
def admin(db):
    from backend.services.auth_service import create_admin
    return create_admin(db, username="operator", password="operator-password", is_super_admin=True)


@pytest.fixture
def auth_headers(admin):
    from backend.services.auth_service import create_access_token
    token = create_access_token({"sub": admin.id, "username": admin.username})
    return {"Authorization": f"Bearer {token}"}


@pytest_asyncio.fixture
async def async_client(session_factory, console, peer_store):
    """
    AsyncClient для приложения с тестовой БД и эмулированными wg/iptables.
    События startup не выполняются, планировщик не запускается.
    """
    from backend.main import app
    from backend.api.dependencies import get_console_service, get_wireguard_store

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_console_service] = lambda: console
    app.dependency_overrides[get_wireguard_store] = lambda: peer_store

    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client

    app.dependency_overrides.clear()
