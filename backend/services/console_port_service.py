"""
Проброс консоли (Winbox) на устройства через NAT хаба.

Каждому устройству выделяется публичный порт из диапазона
CONSOLE_PORT_RANGE_START..CONSOLE_PORT_RANGE_END. Трафик на порт
перенаправляется DNAT на адрес туннеля:8291, а SNAT подменяет источник
на адрес хаба, чтобы ответ роутера вернулся через туннель.
"""
import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config.settings import settings
from backend.models.device import Device
from backend.models.port_mapping import PortMapping
from backend.services.address_allocator import hub_address
from backend.services.exceptions import NatRuleError, PortRangeExhausted
from backend.services.system_commands import CommandRunner

logger = logging.getLogger(__name__)

MAX_RESERVATION_ATTEMPTS = 16


@dataclass(frozen=True)
class NatRule:
    """Правило iptables: таблица, цепочка и спецификация совпадения/действия."""
    name: str
    table: str
    chain: str
    spec: Tuple[str, ...]


def build_rules(public_port: int, target_address: str, target_port: int, hub_ip: str) -> List[NatRule]:
    """Три правила проброса в порядке применения: DNAT, SNAT, FORWARD."""
    return [
        NatRule(
            name="dnat",
            table="nat",
            chain="PREROUTING",
            spec=("-p", "tcp", "--dport", str(public_port),
                  "-j", "DNAT", "--to-destination", f"{target_address}:{target_port}"),
        ),
        NatRule(
            name="snat",
            table="nat",
            chain="POSTROUTING",
            spec=("-p", "tcp", "-d", target_address, "--dport", str(target_port),
                  "-j", "SNAT", "--to-source", hub_ip),
        ),
        NatRule(
            name="forward",
            table="filter",
            chain="FORWARD",
            spec=("-p", "tcp", "-d", target_address, "--dport", str(target_port), "-j", "ACCEPT"),
        ),
    ]


class ConsolePortService:
    """Резервирование портов консоли и управление правилами NAT."""

    def __init__(
        self,
        runner: Optional[CommandRunner] = None,
        port_range: Optional[Tuple[int, int]] = None,
        target_port: Optional[int] = None,
    ):
        self.runner = runner or CommandRunner(use_sudo=settings.WG_USE_SUDO)
        self.port_start, self.port_end = port_range or (
            settings.CONSOLE_PORT_RANGE_START,
            settings.CONSOLE_PORT_RANGE_END,
        )
        self.target_port = target_port or settings.CONSOLE_TARGET_PORT

    # --- iptables ---

    def _iptables(self, rule: NatRule, op: str):
        return self.runner.run([settings.IPTABLES_BINARY, "-w", "-t", rule.table, op, rule.chain, *rule.spec])

    def rule_exists(self, rule: NatRule) -> bool:
        return self._iptables(rule, "-C").ok

    def apply_rule(self, rule: NatRule) -> bool:
        """Идемпотентно: -C, и только при отсутствии правила -I."""
        if self.rule_exists(rule):
            return True
        result = self._iptables(rule, "-I")
        if not result.ok:
            logger.error(f"iptables {rule.name} {rule.chain}: {result.stderr.strip()}")
            return False
        return True

    def delete_rule(self, rule: NatRule) -> bool:
        """Удалить правило. Отсутствующее правило считается удалённым."""
        if not self.rule_exists(rule):
            return True
        result = self._iptables(rule, "-D")
        if not result.ok:
            logger.error(f"Не удалось удалить правило {rule.name} {rule.chain}: {result.stderr.strip()}")
            return False
        return True

    # --- Резервирование ---

    def _used_ports(self, db: Session) -> set:
        return {row[0] for row in db.query(PortMapping.public_port).all()}

    def _next_free_port(self, used: set, excluded: set) -> Optional[int]:
        for port in range(self.port_start, self.port_end + 1):
            if port not in used and port not in excluded:
                return port
        return None

    def _reserve_port(self, db: Session, device: Device) -> PortMapping:
        excluded: set = set()
        for attempt in range(MAX_RESERVATION_ATTEMPTS):
            port = self._next_free_port(self._used_ports(db), excluded)
            if port is None:
                raise PortRangeExhausted(
                    f"No free console ports in range {self.port_start}-{self.port_end}"
                )
            mapping = PortMapping(
                device_id=device.id,
                public_port=port,
                target_address=device.tunnel_address,
                target_port=self.target_port,
            )
            db.add(mapping)
            try:
                db.commit()
            except IntegrityError:
                db.rollback()
                excluded.add(port)
                logger.warning(f"Порт {port} уже занят, повтор (попытка {attempt + 1}) для устройства {device.id}")
                continue
            db.refresh(mapping)
            logger.info(f"Порт консоли {port} зарезервирован за устройством {device.id}")
            return mapping
        raise PortRangeExhausted(
            f"Could not reserve console port for device {device.id} after {MAX_RESERVATION_ATTEMPTS} attempts"
        )

    def _get_mapping(self, db: Session, device: Device) -> Optional[PortMapping]:
        return db.query(PortMapping).filter(PortMapping.device_id == device.id).first()

    def _rules_for(self, mapping: PortMapping) -> List[NatRule]:
        return build_rules(mapping.public_port, mapping.target_address, mapping.target_port, hub_address())

    # --- Публичные операции ---

    def ensure_mapping(self, db: Session, device: Device) -> PortMapping:
        """
        Обеспечить проброс консоли для устройства.

        console_port устройства записывается только после подтверждения правил.
        Raises:
            PortRangeExhausted: диапазон портов исчерпан (console_port остаётся None)
            NatRuleError: правило не применилось; применённые части откатываются
        """
        if not device.tunnel_address:
            raise NatRuleError(f"Device {device.id} has no tunnel address, console cannot be mapped")

        mapping = self._get_mapping(db, device)
        if (
            mapping is not None
            and mapping.is_confirmed
            and device.console_port == mapping.public_port
            and mapping.target_address == device.tunnel_address
        ):
            return mapping

        if mapping is not None and mapping.target_address != device.tunnel_address:
            # Адрес туннеля сменился: старые правила указывают не туда
            for rule in self._rules_for(mapping):
                self.delete_rule(rule)
            mapping.target_address = device.tunnel_address
            mapping.dnat_applied = mapping.snat_applied = mapping.forward_applied = False
            mapping.confirmed_at = None
            db.commit()

        if mapping is None:
            mapping = self._reserve_port(db, device)

        applied: List[NatRule] = []
        for rule in self._rules_for(mapping):
            if not self.apply_rule(rule):
                self._rollback_mapping(db, device, mapping, applied)
                raise NatRuleError(
                    f"Failed to apply {rule.name} rule for device {device.id} (port {mapping.public_port})"
                )
            applied.append(rule)

        mapping.dnat_applied = True
        mapping.snat_applied = True
        mapping.forward_applied = True
        mapping.confirmed_at = datetime.utcnow()
        device.console_port = mapping.public_port
        db.commit()
        db.refresh(mapping)
        logger.info(
            f"Консоль устройства {device.id}: порт {mapping.public_port} -> "
            f"{mapping.target_address}:{mapping.target_port}"
        )
        return mapping

    def _rollback_mapping(self, db: Session, device: Device, mapping: PortMapping, applied: List[NatRule]) -> None:
        for rule in reversed(applied):
            if not self.delete_rule(rule):
                logger.error(f"Откат правила {rule.name} для устройства {device.id} не удался")
        port = mapping.public_port
        db.delete(mapping)
        device.console_port = None
        db.commit()
        logger.warning(f"Резервирование порта {port} устройства {device.id} отменено")

    def remove_mapping(self, db: Session, device: Device) -> bool:
        """
        Удалить проброс консоли. Порт освобождается только после удаления обеих половин NAT.

        Raises:
            NatRuleError: DNAT или SNAT не удалось удалить (резервирование сохраняется)
        """
        mapping = self._get_mapping(db, device)
        if mapping is None:
            if device.console_port is not None:
                device.console_port = None
                db.commit()
            return True

        dnat, snat, forward = self._rules_for(mapping)
        for rule in (dnat, snat):
            if not self.delete_rule(rule):
                raise NatRuleError(
                    f"Failed to remove {rule.name} rule for device {device.id} (port {mapping.public_port})"
                )
        if not self.delete_rule(forward):
            logger.warning(f"Правило FORWARD устройства {device.id} не удалено")

        port = mapping.public_port
        db.delete(mapping)
        device.console_port = None
        db.commit()
        logger.info(f"Порт консоли {port} устройства {device.id} освобождён")
        return True

    def rebuild_all_rules(self, db: Session) -> Dict:
        """Повторно применить правила всех резервирований (после перезапуска хаба)."""
        summary = {"total": 0, "applied": 0, "failed": 0, "errors": []}
        mappings = (
            db.query(PortMapping)
            .join(Device, Device.id == PortMapping.device_id)
            .filter(Device.is_deleted.is_(False), Device.tunnel_address.isnot(None))
            .all()
        )
        logger.info(f"Восстановление правил NAT для {len(mappings)} устройств")
        for mapping in mappings:
            summary["total"] += 1
            device = mapping.device
            if mapping.target_address != device.tunnel_address:
                mapping.target_address = device.tunnel_address
            results = {rule.name: self.apply_rule(rule) for rule in self._rules_for(mapping)}
            mapping.dnat_applied = results["dnat"]
            mapping.snat_applied = results["snat"]
            mapping.forward_applied = results["forward"]
            if all(results.values()):
                mapping.confirmed_at = datetime.utcnow()
                device.console_port = mapping.public_port
                summary["applied"] += 1
            else:
                mapping.confirmed_at = None
                summary["failed"] += 1
                failed = ", ".join(name for name, ok in results.items() if not ok)
                summary["errors"].append(f"Device {device.id}: {failed}")
        db.commit()
        return summary
