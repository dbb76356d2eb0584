# settlement/services/wallet_service.py
from __future__ import annotations

"""
Wallet Aggregator
=================
A wallet balance is a pure fold over the vendor's ledger entries. Nothing
here is authoritative state: the VendorWallet row only carries admin flags
(status, minimum withdrawal, optimistic version) and an advisory copy of the
last computed balances.

Snapshot cache (Flask-Caching) is invalidated after every commit that wrote
a ledger entry or wallet row of the vendor.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Dict, Iterable, Optional, Set

from flask import current_app, has_app_context
from sqlalchemy import event, select
from sqlalchemy.orm import Session

from settlement.errors import NotFound, ValidationError
from settlement.extensions import cache
from settlement.models import (
    AuditLog,
    EntryStatus,
    EntryType,
    LedgerEntry,
    ReferenceType,
    Vendor,
    VendorWallet,
    WalletStatus,
    db,
)
from settlement.services.guard import tx
from settlement.utils import ZERO, as_utc, money, safe_str, to_decimal

log = logging.getLogger("wallet_service")

_CACHE_PREFIX = "wallet:"
_TOUCHED_KEY = "settlement_touched_vendors"


@dataclass(frozen=True)
class WalletBalances:
    pending: Decimal
    cleared: Decimal
    holds: Decimal
    in_flight_payouts: Decimal

    @property
    def frozen(self) -> Decimal:
        """Dispute and compliance holds; payout reserves are in_flight_payouts."""
        return money(self.holds - self.in_flight_payouts)

    @property
    def withdrawable(self) -> Decimal:
        return money(self.cleared - self.holds)

    @property
    def total(self) -> Decimal:
        return money(self.pending + self.withdrawable + self.frozen + self.in_flight_payouts)

    def to_dict(self) -> Dict[str, str]:
        return {
            "total": str(self.total),
            "pending": str(self.pending),
            "withdrawable": str(self.withdrawable),
            "frozen": str(self.frozen),
            "in_flight_payouts": str(self.in_flight_payouts),
        }


def fold_entries(entries: Iterable[Any]) -> WalletBalances:
    """
    Pure fold. Accepts anything exposing entry_type / status / amount
    (and reference_type for reserves).

    - VOIDED entries and COMMISSION memos do not count
    - PENDING RESERVE = active hold: a payout reserve counts as
      in_flight_payouts, any other reserve as frozen
    - otherwise PENDING -> pending, CLEARED -> cleared

    total = pending + withdrawable + frozen + in_flight_payouts, so a payout
    only lowers the total when it completes.
    """
    pending = ZERO
    cleared = ZERO
    holds = ZERO
    in_flight = ZERO

    for e in entries:
        if e.status == EntryStatus.VOIDED or e.entry_type == EntryType.COMMISSION:
            continue
        amount = money(e.amount)

        if e.entry_type == EntryType.RESERVE:
            if e.status == EntryStatus.PENDING:
                holds += -amount
                if e.reference_type == ReferenceType.PAYOUT:
                    in_flight += -amount
            # a CLEARED reserve is released: its PAYOUT/REFUND entry carries the money
            continue

        if e.status == EntryStatus.PENDING:
            pending += amount
        else:
            cleared += amount

    return WalletBalances(
        pending=money(pending),
        cleared=money(cleared),
        holds=money(holds),
        in_flight_payouts=money(in_flight),
    )


def compute_balances(vendor_id: int) -> WalletBalances:
    rows = db.session.execute(
        select(LedgerEntry.entry_type, LedgerEntry.status, LedgerEntry.amount, LedgerEntry.reference_type).where(
            LedgerEntry.vendor_id == int(vendor_id),
            LedgerEntry.status != EntryStatus.VOIDED,
            LedgerEntry.entry_type != EntryType.COMMISSION,
        )
    ).all()
    return fold_entries(rows)


# =============================================================================
# Wallet rows
# =============================================================================

def get_wallet_row(vendor_id: int) -> Optional[VendorWallet]:
    return db.session.execute(
        select(VendorWallet).where(VendorWallet.vendor_id == int(vendor_id))
    ).scalar_one_or_none()


def ensure_wallet(vendor_id: int) -> VendorWallet:
    """Wallet row for the vendor, created (not committed) on first use."""
    wallet = get_wallet_row(vendor_id)
    if wallet is not None:
        return wallet

    vendor = db.session.get(Vendor, int(vendor_id))
    if vendor is None:
        raise NotFound(f"vendor {vendor_id} not found")

    wallet = VendorWallet(
        vendor_id=vendor.id,
        status=WalletStatus.ACTIVE,
        minimum_withdrawal=money(current_app.config.get("DEFAULT_MIN_WITHDRAWAL", Decimal("500.00"))),
        version=1,
    )
    db.session.add(wallet)
    db.session.flush()
    log.info("wallet created vendor=%s", vendor.id)
    return wallet


def lock_wallet(wallet: VendorWallet) -> None:
    # SQLite has no FOR UPDATE; its single writer lock covers it
    if db.session.get_bind().dialect.name == "sqlite":
        return
    db.session.execute(
        select(VendorWallet.id).where(VendorWallet.id == wallet.id).with_for_update()
    )


def bump_wallet_version(vendor_id: int) -> VendorWallet:
    """
    Every write that lowers withdrawable goes through here: a payout request
    that read the balance before this write fails its version check and
    re-reads.
    """
    wallet = ensure_wallet(vendor_id)
    lock_wallet(wallet)
    wallet.version = VendorWallet.version + 1
    db.session.flush()
    return wallet


def sync_cached_balances(vendor_id: int) -> WalletBalances:
    """Refresh the advisory cached_* columns inside the caller's transaction."""
    db.session.flush()
    bal = compute_balances(vendor_id)
    wallet = ensure_wallet(vendor_id)
    wallet.cached_pending = bal.pending
    wallet.cached_withdrawable = bal.withdrawable
    wallet.cached_frozen = bal.frozen
    return bal


def _snapshot(wallet: VendorWallet, bal: WalletBalances) -> Dict[str, Any]:
    reconciled = as_utc(wallet.last_reconciled_at)
    return {
        "vendor_id": wallet.vendor_id,
        **bal.to_dict(),
        "minimum_withdrawal": str(money(wallet.minimum_withdrawal)),
        "status": wallet.status.value,
        "status_reason": wallet.status_reason,
        "is_frozen": wallet.is_frozen,
        "is_closed": wallet.is_closed,
        "last_reconciled_at": reconciled.isoformat() if reconciled else None,
    }


def get_wallet(vendor_id: int, *, use_cache: bool = True) -> Dict[str, Any]:
    vid = int(vendor_id)
    key = f"{_CACHE_PREFIX}{vid}"

    if use_cache:
        hit = cache.get(key)
        if hit is not None:
            return hit

    wallet = get_wallet_row(vid)
    if wallet is None:
        with tx():
            wallet = ensure_wallet(vid)

    snap = _snapshot(wallet, compute_balances(vid))
    if use_cache:
        cache.set(key, snap, timeout=int(current_app.config.get("WALLET_CACHE_TTL", 30)))
    return snap


def invalidate_wallet_cache(vendor_id: int) -> None:
    cache.delete(f"{_CACHE_PREFIX}{int(vendor_id)}")


# =============================================================================
# Admin actions
# =============================================================================

def _set_status(vendor_id: int, status: WalletStatus, *, reason: Any, actor: Any, action: str) -> VendorWallet:
    with tx():
        wallet = ensure_wallet(vendor_id)
        before = wallet.status
        if before == WalletStatus.CLOSED and status != WalletStatus.CLOSED:
            raise ValidationError(f"wallet of vendor {vendor_id} is closed")
        if before == status:
            return wallet

        wallet.status = status
        wallet.status_reason = safe_str(reason, 300) or None
        AuditLog.record(
            action=action,
            target_type="wallet",
            target_id=wallet.vendor_id,
            vendor_id=wallet.vendor_id,
            actor=actor,
            reason=reason,
            payload={"before": before.value, "after": status.value},
        )

    log.info("wallet %s vendor=%s actor=%s reason=%s", action, vendor_id, actor, reason)
    return wallet


def freeze_wallet(vendor_id: int, reason: Any = None, actor: Any = None) -> VendorWallet:
    return _set_status(vendor_id, WalletStatus.FROZEN, reason=reason, actor=actor, action="wallet.freeze")


def unfreeze_wallet(vendor_id: int, reason: Any = None, actor: Any = None) -> VendorWallet:
    return _set_status(vendor_id, WalletStatus.ACTIVE, reason=reason, actor=actor, action="wallet.unfreeze")


def close_wallet(vendor_id: int, reason: Any = None, actor: Any = None) -> VendorWallet:
    return _set_status(vendor_id, WalletStatus.CLOSED, reason=reason, actor=actor, action="wallet.close")


def set_minimum_withdrawal(vendor_id: int, amount: Any, actor: Any = None) -> VendorWallet:
    value = to_decimal(amount, allow_negative=False, field="minimum_withdrawal")
    with tx():
        wallet = ensure_wallet(vendor_id)
        before = money(wallet.minimum_withdrawal)
        wallet.minimum_withdrawal = value
        AuditLog.record(
            action="wallet.minimum_withdrawal",
            target_type="wallet",
            target_id=wallet.vendor_id,
            vendor_id=wallet.vendor_id,
            actor=actor,
            payload={"before": str(before), "after": str(value)},
        )
    return wallet


# =============================================================================
# Cache invalidation after commit
# =============================================================================

@event.listens_for(Session, "before_flush")
def _collect_touched_vendors(session, _flush_context, _instances) -> None:
    touched: Set[int] = session.info.setdefault(_TOUCHED_KEY, set())
    for obj in list(session.new) + list(session.dirty):
        if isinstance(obj, (LedgerEntry, VendorWallet)) and obj.vendor_id:
            touched.add(int(obj.vendor_id))


@event.listens_for(Session, "after_commit")
def _invalidate_touched_vendors(session) -> None:
    touched = session.info.pop(_TOUCHED_KEY, None)
    if not touched or not has_app_context():
        return
    for vid in touched:
        invalidate_wallet_cache(vid)


@event.listens_for(Session, "after_soft_rollback")
def _forget_touched_vendors(session, _previous_transaction) -> None:
    if not session.in_transaction():
        session.info.pop(_TOUCHED_KEY, None)


__all__ = [
    "WalletBalances",
    "fold_entries",
    "compute_balances",
    "get_wallet_row",
    "ensure_wallet",
    "sync_cached_balances",
    "get_wallet",
    "invalidate_wallet_cache",
    "freeze_wallet",
    "unfreeze_wallet",
    "close_wallet",
    "set_minimum_withdrawal",
]
