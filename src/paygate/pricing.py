from __future__ import annotations

from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Callable, Mapping, Protocol

from .settings import Settings

_QUANTUM = Decimal("0.001")


class CommandPricing(Protocol):
    def price(self, device_id: str, command: str) -> str: ...


class TablePricing:
    """Per-device price table with an optional time-of-day multiplier.

    Prices are decimal strings quantized to three places (``"0.010"``).
    """

    def __init__(
        self,
        prices: Mapping[str, str],
        default_price: str = "0.01",
        peak_hours: tuple[int, int] = (18, 22),
        peak_multiplier: str = "1.0",
        now: Callable[[], datetime] = datetime.now,
    ):
        self.prices = {k: Decimal(v) for k, v in prices.items()}
        self.default_price = Decimal(default_price)
        self.peak_hours = peak_hours
        self.peak_multiplier = Decimal(peak_multiplier)
        self._now = now

    def price(self, device_id: str, command: str) -> str:
        base = self.prices.get(device_id, self.default_price)
        start, end = self.peak_hours
        if start <= self._now().hour <= end:
            base = base * self.peak_multiplier
        return str(base.quantize(_QUANTUM, rounding=ROUND_HALF_UP))

    @classmethod
    def from_settings(cls, cfg: Settings) -> "TablePricing":
        return cls(cfg.device_prices, cfg.default_price, cfg.peak_hours, cfg.peak_multiplier)
