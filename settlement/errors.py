from __future__ import annotations

from typing import Any, Dict, List, Optional


# =============================================================================
# Settlement error taxonomy
# - code: stable machine identifier (JSON "error" field)
# - http_status: what the blueprints answer with
# =============================================================================

class SettlementError(RuntimeError):
    code = "settlement_error"
    http_status = 500

    def __init__(self, message: str = "", **details: Any):
        super().__init__(message or self.code)
        self.message = message or self.code
        self.details: Dict[str, Any] = {k: v for k, v in details.items() if v is not None}

    def to_dict(self) -> Dict[str, Any]:
        out: Dict[str, Any] = {"ok": False, "error": self.code, "message": self.message}
        if self.details:
            out["details"] = self.details
        return out


class ValidationError(SettlementError):
    code = "validation_error"
    http_status = 400


class MissingVendorAssignment(ValidationError):
    code = "missing_vendor_assignment"


class NotFound(SettlementError):
    code = "not_found"
    http_status = 404


class InsufficientStock(SettlementError):
    code = "insufficient_stock"
    http_status = 409

    def __init__(self, shortfalls: List[Dict[str, Any]]):
        names = ", ".join(str(s.get("title") or s.get("product_id")) for s in shortfalls)
        super().__init__(f"Insufficient stock for {names}", shortfalls=shortfalls)
        self.shortfalls = shortfalls


class DuplicateEvent(SettlementError):
    """Idempotency key already used. Callers treat this as success."""

    code = "duplicate_event"
    http_status = 200

    def __init__(self, message: str = "", existing: Optional[Any] = None, **details: Any):
        super().__init__(message or "event already applied", **details)
        self.existing = existing


class ReconciliationError(SettlementError):
    code = "reconciliation_error"
    http_status = 502


class PayoutRejected(SettlementError):
    code = "payout_rejected"
    http_status = 422


class InsufficientBalance(PayoutRejected):
    code = "insufficient_balance"


class BelowMinimumThreshold(PayoutRejected):
    code = "below_minimum_threshold"


class WalletFrozen(PayoutRejected):
    code = "wallet_frozen"
    http_status = 403


class WalletClosed(PayoutRejected):
    code = "wallet_closed"
    http_status = 403


class PayoutInProgress(PayoutRejected):
    code = "payout_in_progress"
    http_status = 409


class InvalidTransition(SettlementError):
    code = "invalid_transition"
    http_status = 409


class ImmutableEntryError(SettlementError):
    code = "immutable_entry"
    http_status = 409


class ConcurrencyError(SettlementError):
    code = "concurrency_conflict"
    http_status = 409


__all__ = [
    "SettlementError",
    "ValidationError",
    "MissingVendorAssignment",
    "NotFound",
    "InsufficientStock",
    "DuplicateEvent",
    "ReconciliationError",
    "PayoutRejected",
    "InsufficientBalance",
    "BelowMinimumThreshold",
    "WalletFrozen",
    "WalletClosed",
    "PayoutInProgress",
    "InvalidTransition",
    "ImmutableEntryError",
    "ConcurrencyError",
]
