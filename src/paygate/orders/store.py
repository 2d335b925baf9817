from __future__ import annotations

import hmac
import logging
import secrets
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable

from ..errors import Reason

logger = logging.getLogger(__name__)


def iso_utc(ts: float) -> str:
    """Render a unix timestamp as ``2025-01-01T00:00:00.000Z``."""
    dt = datetime.fromtimestamp(ts, tz=timezone.utc)
    return dt.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class Order:
    order_id: str
    nonce: str
    expires_at: float
    created_at: float
    used: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)
    tx_hash: str | None = None

    @property
    def nonce_exp(self) -> str:
        return iso_utc(self.expires_at)


@dataclass
class IssuedOrder:
    order_id: str
    nonce: str
    expires_at: float

    @property
    def nonce_exp(self) -> str:
        return iso_utc(self.expires_at)


@dataclass
class OrderValidation:
    valid: bool
    order: Order | None = None
    reason: Reason | None = None


class OrderStore:
    """In-process registry of payment challenges.

    A multi-instance deployment needs a shared store offering the same
    atomic ``consume`` contract; this one only guards a single process.
    """

    def __init__(
        self,
        retention_seconds: int = 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.retention_seconds = retention_seconds
        self._clock = clock
        self._orders: dict[str, Order] = {}
        self._tx_index: dict[str, str] = {}
        self._lock = threading.Lock()
        self._sweep_lock = threading.Lock()

    def issue(self, ttl_seconds: int = 300, metadata: dict[str, Any] | None = None) -> IssuedOrder:
        now = self._clock()
        order = Order(
            order_id=f"ord_{secrets.token_hex(16)}",
            nonce=f"nx_{secrets.token_hex(16)}",
            expires_at=now + ttl_seconds,
            created_at=now,
            metadata=dict(metadata or {}),
        )
        with self._lock:
            self._orders[order.order_id] = order
        return IssuedOrder(order.order_id, order.nonce, order.expires_at)

    def _check(self, order_id: str, nonce: str) -> OrderValidation:
        order = self._orders.get(order_id)
        if order is None:
            return OrderValidation(False, reason=Reason.ORDER_NOT_FOUND)
        if order.used:
            return OrderValidation(False, order, Reason.ORDER_ALREADY_USED)
        if not hmac.compare_digest(order.nonce.encode(), (nonce or "").encode()):
            return OrderValidation(False, order, Reason.NONCE_MISMATCH)
        if order.expires_at < self._clock():
            return OrderValidation(False, order, Reason.ORDER_EXPIRED)
        return OrderValidation(True, order)

    def validate(self, order_id: str, nonce: str) -> OrderValidation:
        """Check an order without consuming it."""
        with self._lock:
            return self._check(order_id, nonce)

    def redeem(self, order_id: str, nonce: str, tx_hash: str | None = None) -> OrderValidation:
        """Validate and mark used in one critical section.

        Of several callers racing on the same ``(order_id, nonce)`` exactly one
        gets a valid result; the rest see ``ORDER_ALREADY_USED``.
        """
        with self._lock:
            result = self._check(order_id, nonce)
            if not result.valid:
                return result
            if tx_hash and self._tx_index.get(tx_hash, order_id) != order_id:
                return OrderValidation(False, result.order, Reason.TX_ALREADY_REDEEMED)
            order = result.order
            order.used = True
            if tx_hash:
                order.tx_hash = tx_hash
                self._tx_index[tx_hash] = order_id
            return result

    def consume(self, order_id: str, nonce: str, tx_hash: str | None = None) -> bool:
        return self.redeem(order_id, nonce, tx_hash).valid

    def get(self, order_id: str) -> Order | None:
        with self._lock:
            return self._orders.get(order_id)

    def get_by_tx_hash(self, tx_hash: str) -> Order | None:
        with self._lock:
            order_id = self._tx_index.get(tx_hash)
            return self._orders.get(order_id) if order_id else None

    def is_used(self, order_id: str) -> bool:
        order = self.get(order_id)
        return order.used if order else False

    def sweep(self) -> int:
        """Drop orders whose expiry plus the retention window has passed.

        Runs at most once at a time; a concurrent call returns 0 immediately.
        """
        if not self._sweep_lock.acquire(blocking=False):
            return 0
        try:
            cutoff = self._clock() - self.retention_seconds
            with self._lock:
                stale = [oid for oid, o in self._orders.items() if o.expires_at < cutoff]
                for oid in stale:
                    order = self._orders.pop(oid)
                    if order.tx_hash:
                        self._tx_index.pop(order.tx_hash, None)
            return len(stale)
        finally:
            self._sweep_lock.release()

    def stats(self) -> dict[str, int]:
        now = self._clock()
        active = used = expired = 0
        with self._lock:
            for order in self._orders.values():
                if order.used:
                    used += 1
                elif order.expires_at < now:
                    expired += 1
                else:
                    active += 1
            total = len(self._orders)
        return {
            "total_orders": total,
            "active_orders": active,
            "used_orders": used,
            "expired_orders": expired,
        }

    def reset(self) -> None:
        with self._lock:
            self._orders.clear()
            self._tx_index.clear()


class OrderSweeper:
    """Background thread calling ``OrderStore.sweep`` on a fixed interval."""

    def __init__(self, store: OrderStore, interval_seconds: float = 300):
        self.store = store
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> threading.Thread:
        if self._thread and self._thread.is_alive():
            return self._thread
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="order-sweeper", daemon=True)
        self._thread.start()
        return self._thread

    def stop(self, timeout: float | None = 5.0) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout)
            self._thread = None

    def _loop(self) -> None:  # pragma: no cover - background
        while not self._stop.wait(self.interval_seconds):
            try:
                cleaned = self.store.sweep()
            except Exception:
                logger.exception("Order sweep failed")
                continue
            if cleaned:
                logger.info("Swept %d expired orders", cleaned)
