"""
Исключения предметной области ядра флота.
"""


class AllocationExhausted(Exception):
    """Пул ресурсов (адреса туннеля, порты консоли) исчерпан."""


class SubnetExhausted(AllocationExhausted):
    """В подсети WireGuard не осталось свободных адресов."""


class PortRangeExhausted(AllocationExhausted):
    """В диапазоне портов консоли не осталось свободных портов."""


class WireGuardConfigError(Exception):
    """Конфигурация WireGuard не прошла проверку или не была применена."""


class NatRuleError(Exception):
    """Не удалось применить или удалить правило NAT."""
