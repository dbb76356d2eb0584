from __future__ import annotations

import importlib
import threading
from typing import Any, Dict, Tuple, TYPE_CHECKING

# Lazy export hub: `from settlement.services import OrderService` without
# importing every service (and its models) at package import time.

_EXPORTS: Dict[str, Tuple[str, str]] = {
    "OrderService": ("settlement.services.order_splitter", "OrderService"),
    "CartLine": ("settlement.services.order_splitter", "CartLine"),
    "CreateOrderInput": ("settlement.services.order_splitter", "CreateOrderInput"),
    "split_order": ("settlement.services.order_splitter", "split_order"),
    "record_sale": ("settlement.services.ledger_service", "record_sale"),
    "record_refund": ("settlement.services.ledger_service", "record_refund"),
    "record_adjustment": ("settlement.services.ledger_service", "record_adjustment"),
    "clear_pending_funds": ("settlement.services.ledger_service", "clear_pending_funds"),
    "list_ledger": ("settlement.services.ledger_service", "list_ledger"),
    "get_wallet": ("settlement.services.wallet_service", "get_wallet"),
    "compute_balances": ("settlement.services.wallet_service", "compute_balances"),
    "request_payout": ("settlement.services.payout_service", "request_payout"),
    "admin_action": ("settlement.services.payout_service", "admin_action"),
    "reconcile_wallets": ("settlement.services.guard", "reconcile_wallets"),
    "NotificationBus": ("settlement.services.notifications", "NotificationBus"),
}

_CACHE: Dict[str, Any] = {}
_LOCK = threading.RLock()


def __getattr__(name: str) -> Any:
    spec = _EXPORTS.get(name)
    if spec is None:
        # AttributeError keeps `from settlement.services import <submodule>` working
        raise AttributeError(f"module {__name__!r} has no attribute {name!r}")

    with _LOCK:
        if name not in _CACHE:
            module, symbol = spec
            _CACHE[name] = getattr(importlib.import_module(module), symbol)
        return _CACHE[name]


def __dir__() -> list[str]:
    return sorted(_EXPORTS)


if TYPE_CHECKING:
    from settlement.services.guard import reconcile_wallets
    from settlement.services.ledger_service import (
        clear_pending_funds,
        list_ledger,
        record_adjustment,
        record_refund,
        record_sale,
    )
    from settlement.services.notifications import NotificationBus
    from settlement.services.order_splitter import CartLine, CreateOrderInput, OrderService, split_order
    from settlement.services.payout_service import admin_action, request_payout
    from settlement.services.wallet_service import compute_balances, get_wallet


__all__ = sorted(_EXPORTS)
