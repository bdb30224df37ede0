"""
Запуск системных команд хаба (wg, wg-quick, iptables) и работа с root-файлами.

Все вызовы идут через CommandRunner, чтобы сервисы WireGuard и NAT можно было
проверять без root-доступа: в тестах подставляется runner с подменённым run().
"""
import logging
import os
import shutil
import subprocess
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Sequence

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT = 15


@dataclass
class CommandResult:
    """Результат выполнения команды."""
    returncode: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.returncode == 0


class CommandRunner:
    """
    Исполнитель команд с опциональным sudo.

    При use_sudo=False файлы читаются и пишутся напрямую (удобно для тестов и
    контейнеров, где процесс уже работает от root).
    """

    def __init__(self, use_sudo: bool = False, timeout: int = DEFAULT_COMMAND_TIMEOUT):
        self.use_sudo = use_sudo
        self.timeout = timeout

    def _prefix(self, args: Sequence[str]) -> List[str]:
        if self.use_sudo:
            return ["sudo", "-n", *args]
        return list(args)

    def run(self, args: Sequence[str], input_text: Optional[str] = None) -> CommandResult:
        """Выполнить команду. Таймаут и отсутствие бинарника возвращаются как ошибка, а не исключение."""
        cmd = self._prefix(args)
        try:
            proc = subprocess.run(
                cmd,
                input=input_text,
                capture_output=True,
                text=True,
                timeout=self.timeout,
            )
        except subprocess.TimeoutExpired:
            logger.error(f"Команда превысила таймаут {self.timeout}с: {' '.join(cmd)}")
            return CommandResult(returncode=124, stderr="timeout")
        except FileNotFoundError as e:
            logger.error(f"Команда не найдена: {cmd[0]} ({e})")
            return CommandResult(returncode=127, stderr=str(e))
        if proc.returncode != 0:
            logger.debug(f"Команда {' '.join(cmd)} завершилась с кодом {proc.returncode}: {proc.stderr.strip()}")
        return CommandResult(returncode=proc.returncode, stdout=proc.stdout or "", stderr=proc.stderr or "")

    # --- Файлы ---

    def read_text(self, path: str) -> str:
        if not self.use_sudo:
            p = Path(path)
            return p.read_text(encoding="utf-8") if p.exists() else ""
        result = self.run(["cat", path])
        if not result.ok:
            raise OSError(f"Cannot read {path}: {result.stderr.strip()}")
        return result.stdout

    def exists(self, path: str) -> bool:
        if not self.use_sudo:
            return Path(path).exists()
        return self.run(["test", "-e", path]).ok

    def write_text_atomic(self, path: str, content: str, mode: int = 0o600) -> None:
        """
        Записать файл атомарно: временный файл в том же каталоге, затем rename.
        Читатель видит либо старую, либо новую версию целиком.
        """
        target = Path(path)
        if not self.use_sudo:
            target.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_path = tempfile.mkstemp(dir=str(target.parent), prefix=f".{target.name}.")
            try:
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(content)
                os.chmod(tmp_path, mode)
                os.replace(tmp_path, path)
            except OSError:
                if os.path.exists(tmp_path):
                    os.unlink(tmp_path)
                raise
            return

        fd, local_tmp = tempfile.mkstemp(prefix="fleet-core-")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as fh:
                fh.write(content)
            staged = f"{path}.new"
            result = self.run(["install", "-m", format(mode, "o"), local_tmp, staged])
            if not result.ok:
                raise OSError(f"Cannot stage {staged}: {result.stderr.strip()}")
            result = self.run(["mv", "-f", staged, path])
            if not result.ok:
                raise OSError(f"Cannot replace {path}: {result.stderr.strip()}")
        finally:
            if os.path.exists(local_tmp):
                os.unlink(local_tmp)

    def copy(self, src: str, dst: str) -> None:
        if not self.use_sudo:
            Path(dst).parent.mkdir(parents=True, exist_ok=True)
            shutil.copy2(src, dst)
            return
        self.run(["mkdir", "-p", str(Path(dst).parent)])
        result = self.run(["cp", "-p", src, dst])
        if not result.ok:
            raise OSError(f"Cannot copy {src} -> {dst}: {result.stderr.strip()}")

    def list_dir(self, path: str) -> List[str]:
        if not self.use_sudo:
            p = Path(path)
            return sorted(child.name for child in p.iterdir()) if p.is_dir() else []
        result = self.run(["ls", "-1", path])
        if not result.ok:
            return []
        return [line.strip() for line in result.stdout.splitlines() if line.strip()]

    def remove(self, path: str) -> None:
        if not self.use_sudo:
            Path(path).unlink(missing_ok=True)
            return
        self.run(["rm", "-f", path])
