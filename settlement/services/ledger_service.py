# settlement/services/ledger_service.py
from __future__ import annotations

"""
Ledger Service
==============
Every money movement of a vendor is one append-only LedgerEntry.

- record_sale: PENDING SALE credit + COMMISSION memo per vendor of an order
- record_refund: REFUND debits, offsetting the still-pending sale first
- record_adjustment: signed, CLEARED manual correction
- hold_funds / release_hold: dispute holds (RESERVE, reference DISPUTE)
- clear_pending_funds: background sweep PENDING -> CLEARED
- list_ledger: newest-first pages

Idempotency: (vendor_id, idempotency_key) is unique; a repeated event finds
the existing row and the call becomes a no-op for that vendor.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy import func, select
from sqlalchemy.exc import SQLAlchemyError

from settlement.errors import InvalidTransition, NotFound, ReconciliationError, SettlementError, ValidationError
from settlement.extensions import cache
from settlement.models import (
    AuditLog,
    EntryStatus,
    EntryType,
    LedgerEntry,
    Order,
    ReferenceType,
    VendorPayoutSlice,
    WalletStatus,
    db,
)
from settlement.services.guard import insert_once, make_idempotency_key, tx
from settlement.services.wallet_service import WalletBalances, bump_wallet_version, ensure_wallet, sync_cached_balances
from settlement.utils import ZERO, money, positive_amount, require_vendor_id, safe_str, to_decimal, utcnow

log = logging.getLogger("ledger_service")

SWEEP_LOCK_KEY = "settlement:clearance_sweep"

_CLEARABLE_TYPES = (EntryType.SALE, EntryType.REFUND, EntryType.ADJUSTMENT)


# =============================================================================
# Low-level posting (no commit; callers own the transaction)
# =============================================================================

def get_entry_by_key(vendor_id: int, idempotency_key: str) -> Optional[LedgerEntry]:
    return db.session.execute(
        select(LedgerEntry).where(
            LedgerEntry.vendor_id == int(vendor_id),
            LedgerEntry.idempotency_key == idempotency_key,
        )
    ).scalar_one_or_none()


def get_entry(public_id: str) -> LedgerEntry:
    entry = db.session.execute(
        select(LedgerEntry).where(LedgerEntry.public_id == safe_str(public_id, 40))
    ).scalar_one_or_none()
    if not entry:
        raise NotFound(f"ledger entry {public_id} not found")
    return entry


def post_entry(
    *,
    vendor_id: int,
    entry_type: EntryType,
    amount: Decimal,
    status: EntryStatus,
    idempotency_key: str,
    reference_type: Optional[ReferenceType] = None,
    reference_id: Any = None,
    related_entry_id: Optional[int] = None,
    clear_at: Optional[datetime] = None,
    performed_by: Any = None,
    note: Optional[str] = None,
    meta: Any = None,
) -> Tuple[LedgerEntry, bool]:
    """Returns (entry, created). created=False means the key was already used."""
    entry = LedgerEntry(
        vendor_id=int(vendor_id),
        entry_type=entry_type,
        status=status,
        amount=money(amount),
        reference_type=reference_type,
        reference_id=safe_str(reference_id, 80) or None,
        related_entry_id=related_entry_id,
        idempotency_key=idempotency_key,
        clear_at=clear_at,
        performed_by=safe_str(performed_by, 80) or None,
        note=note,
        meta_json=meta,
    )
    return insert_once(entry, lambda: get_entry_by_key(vendor_id, idempotency_key))


def _hold_days(payment_method: str) -> int:
    if (payment_method or "").lower() == Order.PM_COD:
        return int(current_app.config.get("CLEARANCE_HOLD_DAYS_COD", 0))
    return int(current_app.config.get("CLEARANCE_HOLD_DAYS_ONLINE", 7))


def _freeze_if_overdrawn(vendor_id: int, bal: WalletBalances, reason: str) -> None:
    if bal.withdrawable >= ZERO:
        return
    wallet = ensure_wallet(vendor_id)
    if wallet.status != WalletStatus.ACTIVE:
        return
    wallet.status = WalletStatus.FROZEN
    wallet.status_reason = reason
    AuditLog.record(
        action="wallet.auto_freeze",
        target_type="wallet",
        target_id=vendor_id,
        vendor_id=vendor_id,
        actor="system",
        reason=reason,
        payload={"withdrawable": str(bal.withdrawable)},
    )
    log.warning("wallet auto-frozen vendor=%s withdrawable=%s reason=%s", vendor_id, bal.withdrawable, reason)


def _normalize_vendor_amounts(vendor_amounts: Mapping[Any, Any]) -> Dict[int, Dict[str, Any]]:
    """
    {vendor: amount} or {vendor: {"amount": .., "commission": ..}} with any
    vendor key shape -> {vendor_id: {"amount": Decimal, "commission": Decimal|None}}
    """
    out: Dict[int, Dict[str, Any]] = {}
    for raw_vid, raw in (vendor_amounts or {}).items():
        vid = require_vendor_id(raw_vid)
        if isinstance(raw, Mapping):
            amount = positive_amount(raw.get("amount"), field="refund amount")
            comm = raw.get("commission")
            commission = to_decimal(comm, allow_negative=False, field="commission") if comm not in (None, "") else None
        else:
            amount = positive_amount(raw, field="refund amount")
            commission = None
        out[vid] = {"amount": amount, "commission": commission}
    return out


# =============================================================================
# Sales
# =============================================================================

def record_sale(
    order_id: int,
    per_vendor_entries: Optional[Mapping[Any, Mapping[str, Any]]] = None,
    performed_by: Any = None,
    *,
    now: Optional[datetime] = None,
) -> List[LedgerEntry]:
    """
    Post a PENDING SALE (+ COMMISSION memo) for each vendor of the order.

    per_vendor_entries: {vendor_id: {"vendor_earnings": .., "commission": ..}};
    defaults to the order's item snapshots.
    """
    order = db.session.get(Order, int(order_id))
    if not order:
        raise NotFound(f"order {order_id} not found")
    if order.order_status in {Order.STATUS_CANCELLED, Order.STATUS_REFUNDED}:
        raise InvalidTransition(f"order {order.number} is {order.order_status}, no sale to post")

    rows = per_vendor_entries if per_vendor_entries is not None else order.vendor_totals()
    now = now or utcnow()
    clear_at = now + timedelta(days=_hold_days(order.payment_method))

    posted: List[LedgerEntry] = []
    try:
        with tx():
            for raw_vid, row in rows.items():
                vid = require_vendor_id(raw_vid)
                earnings = money(row.get("vendor_earnings"))
                commission = money(row.get("commission"))
                if earnings <= ZERO:
                    log.warning("order %s vendor %s has no earnings to post", order.id, vid)
                    continue

                sale, created = post_entry(
                    vendor_id=vid,
                    entry_type=EntryType.SALE,
                    amount=earnings,
                    status=EntryStatus.PENDING,
                    idempotency_key=make_idempotency_key(order.id, vid, EntryType.SALE),
                    reference_type=ReferenceType.ORDER,
                    reference_id=order.id,
                    clear_at=clear_at,
                    performed_by=performed_by,
                    note=f"Sale order {order.number}",
                    meta={"order_number": order.number, "payment_method": order.payment_method},
                )
                posted.append(sale)

                if not created:
                    log.info("sale already recorded order=%s vendor=%s", order.id, vid)
                    continue

                if commission > ZERO:
                    post_entry(
                        vendor_id=vid,
                        entry_type=EntryType.COMMISSION,
                        amount=-commission,
                        status=EntryStatus.CLEARED,
                        idempotency_key=make_idempotency_key(order.id, vid, EntryType.COMMISSION),
                        reference_type=ReferenceType.ORDER,
                        reference_id=order.id,
                        related_entry_id=sale.id,
                        performed_by=performed_by,
                        note=f"Platform commission order {order.number}",
                    )

                slice_ = order.slice_for(vid)
                if slice_ is not None and slice_.status == VendorPayoutSlice.STATUS_HELD:
                    slice_.status = VendorPayoutSlice.STATUS_PENDING

                sync_cached_balances(vid)
                log.info("sale posted order=%s vendor=%s amount=%s clear_at=%s", order.id, vid, earnings, clear_at)
    except (SQLAlchemyError, ValidationError) as e:
        log.exception("record_sale failed order=%s", order_id)
        raise ReconciliationError(f"could not record sale for order {order_id}: {e}") from e

    return posted


# =============================================================================
# Refunds
# =============================================================================

def _refunded_against(sale: LedgerEntry) -> Decimal:
    total = db.session.execute(
        select(func.coalesce(func.sum(LedgerEntry.amount), 0)).where(
            LedgerEntry.related_entry_id == sale.id,
            LedgerEntry.entry_type == EntryType.REFUND,
            LedgerEntry.status != EntryStatus.VOIDED,
        )
    ).scalar_one()
    return -money(total)


def record_refund(
    order_id: int,
    refund_id: Any,
    vendor_amounts: Mapping[Any, Any],
    performed_by: Any = None,
) -> List[LedgerEntry]:
    """
    A refund first offsets the part of the SALE that is still pending (the
    refund stays PENDING and clears together with the sale); once the sale
    has cleared the refund is CLEARED and draws from withdrawable.
    """
    ref = safe_str(refund_id, 80)
    if not ref:
        raise ValidationError("refund_id is required")

    order = db.session.get(Order, int(order_id))
    if not order:
        raise NotFound(f"order {order_id} not found")

    amounts = _normalize_vendor_amounts(vendor_amounts)
    if not amounts:
        raise ValidationError("refund needs at least one vendor amount")
    on_order = order.vendor_totals()
    outsiders = sorted(vid for vid in amounts if vid not in on_order)
    if outsiders:
        raise ValidationError(f"vendors {outsiders} have no items on order {order.number}")

    posted: List[LedgerEntry] = []
    try:
        with tx():
            for vid, row in amounts.items():
                sale = get_entry_by_key(vid, make_idempotency_key(order.id, vid, EntryType.SALE))
                if sale is None or sale.status == EntryStatus.VOIDED:
                    # sale posting failed and is flagged
                    raise ReconciliationError(
                        f"refund {ref}: sale of order {order.number} for vendor {vid} is not posted"
                    )

                key = make_idempotency_key(ref, vid, EntryType.REFUND)
                existing = get_entry_by_key(vid, key)
                if existing is not None:
                    posted.append(existing)
                    continue

                amount = row["amount"]
                if _refunded_against(sale) + amount > money(sale.amount):
                    raise ValidationError(
                        f"refund exceeds sale for vendor {vid}: sale {sale.amount}, "
                        f"already refunded {_refunded_against(sale)}, requested {amount}"
                    )

                bump_wallet_version(vid)
                sale_pending = sale.status == EntryStatus.PENDING
                entry, _created = post_entry(
                    vendor_id=vid,
                    entry_type=EntryType.REFUND,
                    amount=-amount,
                    status=EntryStatus.PENDING if sale_pending else EntryStatus.CLEARED,
                    idempotency_key=key,
                    reference_type=ReferenceType.REFUND,
                    reference_id=ref,
                    related_entry_id=sale.id,
                    clear_at=sale.clear_at if sale_pending else None,
                    performed_by=performed_by,
                    note=f"Refund {ref} order {order.number}",
                    meta={"order_id": order.id},
                )
                posted.append(entry)

                if row["commission"] is not None and row["commission"] > ZERO:
                    post_entry(
                        vendor_id=vid,
                        entry_type=EntryType.COMMISSION,
                        amount=row["commission"],
                        status=EntryStatus.CLEARED,
                        idempotency_key=make_idempotency_key(ref, vid, EntryType.COMMISSION),
                        reference_type=ReferenceType.REFUND,
                        reference_id=ref,
                        related_entry_id=entry.id,
                        performed_by=performed_by,
                        note=f"Commission reversal refund {ref}",
                    )

                bal = sync_cached_balances(vid)
                _freeze_if_overdrawn(vid, bal, f"negative balance after refund {ref}")
                log.info("refund posted ref=%s order=%s vendor=%s amount=%s pending=%s",
                         ref, order.id, vid, amount, sale_pending)
    except SQLAlchemyError as e:
        log.exception("record_refund failed order=%s refund=%s", order_id, ref)
        raise ReconciliationError(f"could not record refund {ref}: {e}") from e

    return posted


# =============================================================================
# Adjustments & holds
# =============================================================================

def record_adjustment(
    vendor_id: Any,
    amount: Any,
    reason: Any,
    *,
    idempotency_key: Optional[str] = None,
    performed_by: Any = None,
) -> LedgerEntry:
    vid = require_vendor_id(vendor_id)
    amt = to_decimal(amount, allow_negative=True)
    if amt == ZERO:
        raise ValidationError("adjustment amount must be non-zero")
    why = safe_str(reason, 300)
    if not why:
        raise ValidationError("adjustment reason is required")

    key = safe_str(idempotency_key, 128) or make_idempotency_key(vid, amt, why, EntryType.ADJUSTMENT)

    with tx():
        if amt < ZERO:
            bump_wallet_version(vid)
        else:
            ensure_wallet(vid)
        entry, created = post_entry(
            vendor_id=vid,
            entry_type=EntryType.ADJUSTMENT,
            amount=amt,
            status=EntryStatus.CLEARED,
            idempotency_key=key,
            reference_type=ReferenceType.MANUAL,
            performed_by=performed_by,
            note=why,
        )
        if created:
            AuditLog.record(
                action="ledger.adjustment",
                target_type="ledger_entry",
                target_id=entry.public_id,
                vendor_id=vid,
                actor=performed_by,
                reason=why,
                payload={"amount": str(amt)},
            )
            bal = sync_cached_balances(vid)
            _freeze_if_overdrawn(vid, bal, "negative balance after adjustment")

    log.info("adjustment vendor=%s amount=%s created=%s by=%s", vid, amt, created, performed_by)
    return entry


def hold_funds(
    vendor_id: Any,
    amount: Any,
    dispute_id: Any,
    reason: Any = None,
    performed_by: Any = None,
) -> LedgerEntry:
    """
    A hold larger than withdrawable is still placed and freezes the wallet.
    """
    vid = require_vendor_id(vendor_id)
    amt = positive_amount(amount)
    ref = safe_str(dispute_id, 80)
    if not ref:
        raise ValidationError("dispute_id is required")

    with tx():
        bump_wallet_version(vid)
        entry, created = post_entry(
            vendor_id=vid,
            entry_type=EntryType.RESERVE,
            amount=-amt,
            status=EntryStatus.PENDING,
            idempotency_key=make_idempotency_key(ref, vid, EntryType.RESERVE),
            reference_type=ReferenceType.DISPUTE,
            reference_id=ref,
            performed_by=performed_by,
            note=safe_str(reason, 300) or f"Dispute hold {ref}",
        )
        if created:
            AuditLog.record(
                action="ledger.hold",
                target_type="dispute",
                target_id=ref,
                vendor_id=vid,
                actor=performed_by,
                reason=reason,
                payload={"amount": str(amt), "entry": entry.public_id},
            )
            bal = sync_cached_balances(vid)
            _freeze_if_overdrawn(vid, bal, f"negative balance after dispute hold {ref}")

    log.info("funds held vendor=%s dispute=%s amount=%s", vid, ref, amt)
    return entry


def release_hold(vendor_id: Any, dispute_id: Any, outcome: str, performed_by: Any = None) -> LedgerEntry:
    """
    outcome=won: the hold is voided, funds return to withdrawable.
    outcome=lost: the hold clears and a CLEARED REFUND takes the money.
    """
    vid = require_vendor_id(vendor_id)
    ref = safe_str(dispute_id, 80)
    result = (outcome or "").strip().lower()
    if result not in {"won", "lost"}:
        raise ValidationError("outcome must be 'won' or 'lost'")

    with tx():
        hold = get_entry_by_key(vid, make_idempotency_key(ref, vid, EntryType.RESERVE))
        if hold is None:
            raise NotFound(f"no hold for dispute {ref} vendor {vid}")
        if hold.is_final:
            return hold

        now = utcnow()
        if result == "won":
            hold.status = EntryStatus.VOIDED
            hold.voided_at = now
        else:
            hold.status = EntryStatus.CLEARED
            hold.cleared_at = now
            post_entry(
                vendor_id=vid,
                entry_type=EntryType.REFUND,
                amount=money(hold.amount),
                status=EntryStatus.CLEARED,
                idempotency_key=make_idempotency_key(ref, vid, EntryType.REFUND),
                reference_type=ReferenceType.DISPUTE,
                reference_id=ref,
                related_entry_id=hold.id,
                performed_by=performed_by,
                note=f"Dispute {ref} lost",
            )

        AuditLog.record(
            action=f"ledger.release_hold.{result}",
            target_type="dispute",
            target_id=ref,
            vendor_id=vid,
            actor=performed_by,
            payload={"entry": hold.public_id, "amount": str(money(hold.amount))},
        )
        sync_cached_balances(vid)

    log.info("hold released vendor=%s dispute=%s outcome=%s", vid, ref, result)
    return hold


# =============================================================================
# Clearance sweep
# =============================================================================

def _acquire_sweep_lock() -> bool:
    ttl = int(current_app.config.get("SWEEP_LOCK_TTL", 300))
    return bool(cache.add(SWEEP_LOCK_KEY, "1", timeout=max(1, ttl)))


def _release_sweep_lock() -> None:
    cache.delete(SWEEP_LOCK_KEY)


def clear_pending_funds(now: Optional[datetime] = None, batch_size: Optional[int] = None) -> Dict[str, Any]:
    """
    Mark due PENDING SALE/REFUND/ADJUSTMENT entries CLEARED. One savepoint per
    entry so a bad row never blocks the batch. Only one sweep runs at a time.
    """
    now = now or utcnow()
    limit = int(batch_size or current_app.config.get("CLEARANCE_BATCH_SIZE", 500))

    if not _acquire_sweep_lock():
        log.info("clearance sweep already running, skipped")
        return {"cleared": 0, "failed": 0, "locked": True}

    cleared = 0
    failed = 0
    vendors: set = set()
    try:
        ids = db.session.execute(
            select(LedgerEntry.id)
            .where(
                LedgerEntry.status == EntryStatus.PENDING,
                LedgerEntry.entry_type.in_(_CLEARABLE_TYPES),
                LedgerEntry.clear_at.is_not(None),
                LedgerEntry.clear_at <= now,
            )
            .order_by(LedgerEntry.clear_at, LedgerEntry.id)
            .limit(max(1, limit))
        ).scalars().all()

        with tx():
            for entry_id in ids:
                try:
                    with db.session.begin_nested():
                        entry = db.session.get(LedgerEntry, entry_id)
                        if entry is None or entry.status != EntryStatus.PENDING:
                            continue
                        entry.status = EntryStatus.CLEARED
                        entry.cleared_at = now
                        db.session.flush()
                    cleared += 1
                    vendors.add(entry.vendor_id)
                except (SettlementError, SQLAlchemyError):
                    failed += 1
                    log.exception("clearance failed for ledger entry id=%s", entry_id)

            for vid in sorted(vendors):
                sync_cached_balances(vid)
    finally:
        _release_sweep_lock()

    log.info("clearance sweep done cleared=%d failed=%d vendors=%d", cleared, failed, len(vendors))
    return {"cleared": cleared, "failed": failed, "vendors": sorted(vendors), "locked": False}


# =============================================================================
# Reads
# =============================================================================

def list_ledger(
    vendor_id: Any,
    page: Any = 1,
    page_size: Any = None,
    *,
    entry_type: Optional[str] = None,
    status: Optional[str] = None,
) -> Dict[str, Any]:
    vid = require_vendor_id(vendor_id)
    cfg = current_app.config
    max_size = int(cfg.get("LEDGER_MAX_PAGE_SIZE", 100))
    try:
        page_i = max(1, int(page or 1))
        size_i = int(page_size or cfg.get("LEDGER_PAGE_SIZE", 20))
    except (TypeError, ValueError) as e:
        raise ValidationError("page and page_size must be integers") from e
    size_i = max(1, min(size_i, max_size))

    q = select(LedgerEntry).where(LedgerEntry.vendor_id == vid)
    try:
        if entry_type:
            q = q.where(LedgerEntry.entry_type == EntryType(str(entry_type).upper()))
        if status:
            q = q.where(LedgerEntry.status == EntryStatus(str(status).upper()))
    except ValueError as e:
        raise ValidationError(str(e)) from e
    q = q.order_by(LedgerEntry.created_at.desc(), LedgerEntry.id.desc())

    pg = db.paginate(q, page=page_i, per_page=size_i, max_per_page=max_size, error_out=False)
    return {
        "items": [e.to_dict() for e in pg.items],
        "page": pg.page,
        "page_size": pg.per_page,
        "total": pg.total,
        "pages": pg.pages,
    }


__all__ = [
    "get_entry",
    "get_entry_by_key",
    "post_entry",
    "record_sale",
    "record_refund",
    "record_adjustment",
    "hold_funds",
    "release_hold",
    "clear_pending_funds",
    "list_ledger",
]
