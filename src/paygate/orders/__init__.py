from .store import IssuedOrder, Order, OrderStore, OrderSweeper, OrderValidation, iso_utc

__all__ = ["Order", "IssuedOrder", "OrderStore", "OrderSweeper", "OrderValidation", "iso_utc"]
