# settlement/services/payout_service.py
from __future__ import annotations

"""
Payout Workflow
===============
REQUESTED -> APPROVED -> PROCESSING -> COMPLETED
REQUESTED | APPROVED | PROCESSING -> FAILED      (reject)
REQUESTED | APPROVED              -> CANCELLED

request_payout reserves the amount with a PENDING RESERVE entry in the same
transaction that creates the request. Two requests racing on one wallet are
serialized by an optimistic version bump on the VendorWallet row (plus
SELECT ... FOR UPDATE where the database has it); the loser re-reads the
balance and tries again.
"""

import logging
from datetime import datetime
from typing import Any, Dict, FrozenSet, Iterable, List, Mapping, Optional, Tuple

from flask import current_app
from sqlalchemy import select, update

from settlement.errors import (
    BelowMinimumThreshold,
    ConcurrencyError,
    DuplicateEvent,
    InsufficientBalance,
    InvalidTransition,
    NotFound,
    PayoutInProgress,
    ValidationError,
    WalletClosed,
    WalletFrozen,
)
from settlement.models import (
    AuditLog,
    EntryStatus,
    EntryType,
    PayoutRequest,
    PayoutStatus,
    ReferenceType,
    Vendor,
    VendorPayoutSlice,
    VendorWallet,
    db,
)
from settlement.models.payout import IN_FLIGHT_STATUSES
from settlement.services.guard import insert_once, make_idempotency_key, tx
from settlement.services.ledger_service import get_entry_by_key, post_entry
from settlement.services.notifications import notify
from settlement.services.wallet_service import compute_balances, ensure_wallet, lock_wallet, sync_cached_balances
from settlement.utils import gen_public_id, money, positive_amount, require_vendor_id, safe_str, utcnow

log = logging.getLogger("payout_service")


# action -> (allowed from, target)
_TRANSITIONS: Dict[str, Tuple[FrozenSet[PayoutStatus], PayoutStatus]] = {
    "approve": (frozenset({PayoutStatus.REQUESTED}), PayoutStatus.APPROVED),
    "process": (frozenset({PayoutStatus.APPROVED}), PayoutStatus.PROCESSING),
    "complete": (frozenset({PayoutStatus.APPROVED, PayoutStatus.PROCESSING}), PayoutStatus.COMPLETED),
    "reject": (
        frozenset({PayoutStatus.REQUESTED, PayoutStatus.APPROVED, PayoutStatus.PROCESSING}),
        PayoutStatus.FAILED,
    ),
    "cancel": (frozenset({PayoutStatus.REQUESTED, PayoutStatus.APPROVED}), PayoutStatus.CANCELLED),
}

ACTIONS = tuple(_TRANSITIONS)


# =============================================================================
# Lookups
# =============================================================================

def get_payout(payout_id: Any) -> PayoutRequest:
    """By public id ("po_...") or numeric primary key."""
    p: Optional[PayoutRequest] = None
    if isinstance(payout_id, int) or (isinstance(payout_id, str) and payout_id.isdigit()):
        p = db.session.get(PayoutRequest, int(payout_id))
    if p is None:
        p = db.session.execute(
            select(PayoutRequest).where(PayoutRequest.public_id == safe_str(payout_id, 40))
        ).scalar_one_or_none()
    if p is None:
        raise NotFound(f"payout {payout_id} not found")
    return p


def _by_key(key: str) -> Optional[PayoutRequest]:
    return db.session.execute(
        select(PayoutRequest).where(PayoutRequest.idempotency_key == key)
    ).scalar_one_or_none()


def list_payouts(
    *,
    vendor_id: Any = None,
    status: Optional[str] = None,
    limit: int = 100,
) -> List[PayoutRequest]:
    q = select(PayoutRequest)
    if vendor_id is not None:
        q = q.where(PayoutRequest.vendor_id == require_vendor_id(vendor_id))
    if status and status.lower() != "all":
        try:
            q = q.where(PayoutRequest.status == PayoutStatus(status.upper()))
        except ValueError as e:
            raise ValidationError(f"unknown payout status {status!r}") from e
    q = q.order_by(PayoutRequest.request_date.desc(), PayoutRequest.id.desc()).limit(max(1, min(int(limit), 500)))
    return list(db.session.execute(q).scalars().all())


def _reserve_key(payout: PayoutRequest) -> str:
    return make_idempotency_key(payout.public_id, EntryType.RESERVE)


def _notify(payout: PayoutRequest, event: str) -> None:
    vendor = db.session.get(Vendor, payout.vendor_id)
    notify(
        event,
        to=vendor.email if vendor else None,
        vendor_name=vendor.name if vendor else None,
        vendor_id=payout.vendor_id,
        payout_id=payout.public_id,
        amount=str(money(payout.amount)),
        status=payout.status.value,
        external_transaction_id=payout.external_transaction_id,
        failure_reason=payout.failure_reason,
    )


# =============================================================================
# Request
# =============================================================================

def _request_once(
    vendor_id: int,
    amount,
    key: str,
    *,
    notes: Optional[str],
    order_ids: Iterable[int],
    requested_by: Any,
) -> Tuple[PayoutRequest, bool]:
    with tx() as s:
        wallet = ensure_wallet(vendor_id)
        lock_wallet(wallet)
        s.refresh(wallet)
        read_version = int(wallet.version)

        if wallet.is_closed:
            raise WalletClosed(f"wallet of vendor {vendor_id} is closed")
        if wallet.is_frozen:
            raise WalletFrozen(f"wallet of vendor {vendor_id} is frozen", reason=wallet.status_reason)

        minimum = money(wallet.minimum_withdrawal)
        if amount < minimum:
            raise BelowMinimumThreshold(f"minimum withdrawal is {minimum}", minimum=str(minimum))

        if current_app.config.get("PAYOUT_ONE_IN_FLIGHT"):
            in_flight = s.execute(
                select(PayoutRequest.public_id).where(
                    PayoutRequest.vendor_id == vendor_id,
                    PayoutRequest.status.in_(list(IN_FLIGHT_STATUSES)),
                ).limit(1)
            ).scalar_one_or_none()
            if in_flight:
                raise PayoutInProgress(f"payout {in_flight} is still in flight", payout_id=in_flight)

        bal = compute_balances(vendor_id)
        if amount > bal.withdrawable:
            raise InsufficientBalance(
                f"withdrawable {bal.withdrawable} < requested {amount}",
                withdrawable=str(bal.withdrawable),
            )

        res = s.execute(
            update(VendorWallet)
            .where(VendorWallet.id == wallet.id, VendorWallet.version == read_version)
            .values(version=read_version + 1, updated_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise ConcurrencyError(f"wallet of vendor {vendor_id} changed while reserving")

        payout = PayoutRequest(
            vendor_id=vendor_id,
            amount=amount,
            status=PayoutStatus.REQUESTED,
            idempotency_key=key,
            notes=notes,
            requested_by=safe_str(requested_by, 80) or None,
        )
        payout.order_ids = list(order_ids or [])
        payout, created = insert_once(payout, lambda: _by_key(key))
        if not created:
            return payout, False

        post_entry(
            vendor_id=vendor_id,
            entry_type=EntryType.RESERVE,
            amount=-amount,
            status=EntryStatus.PENDING,
            idempotency_key=_reserve_key(payout),
            reference_type=ReferenceType.PAYOUT,
            reference_id=payout.public_id,
            performed_by=requested_by,
            note=f"Reserve for payout {payout.public_id}",
        )
        sync_cached_balances(vendor_id)
        AuditLog.record(
            action="payout.request",
            target_type="payout",
            target_id=payout.public_id,
            vendor_id=vendor_id,
            actor=requested_by,
            payload={"amount": str(amount), "withdrawable_before": str(bal.withdrawable)},
        )
    return payout, True


def request_payout(
    vendor_id: Any,
    amount: Any,
    *,
    idempotency_key: Optional[str] = None,
    notes: Optional[str] = None,
    order_ids: Optional[Iterable[int]] = None,
    requested_by: Any = None,
    raise_duplicate: bool = False,
) -> PayoutRequest:
    """raise_duplicate: a replayed key raises DuplicateEvent instead of returning the existing request."""
    vid = require_vendor_id(vendor_id)
    amt = positive_amount(amount)

    client_key = safe_str(idempotency_key, 128)
    # no client key: every call is a new request
    key = client_key or make_idempotency_key(vid, gen_public_id("preq"), "PAYOUT_REQUEST")

    existing = _by_key(key) if client_key else None
    if existing is not None:
        if existing.vendor_id != vid:
            raise ValidationError("idempotency_key already used by another vendor")
        log.info("payout request replayed key=%s payout=%s", key[:12], existing.public_id)
        if raise_duplicate:
            raise DuplicateEvent("payout request already received", existing=existing)
        return existing

    retries = max(1, int(current_app.config.get("PAYOUT_MAX_RETRIES", 3)))
    for attempt in range(1, retries + 1):
        try:
            payout, created = _request_once(
                vid, amt, key, notes=notes, order_ids=order_ids or [], requested_by=requested_by
            )
            break
        except ConcurrencyError:
            log.warning("payout reserve lost race vendor=%s attempt=%d/%d", vid, attempt, retries)
            if attempt == retries:
                raise

    if created:
        log.info("payout requested vendor=%s amount=%s payout=%s", vid, amt, payout.public_id)
        _notify(payout, "payout.requested")
    return payout


# =============================================================================
# Transitions
# =============================================================================

def _check(payout: PayoutRequest, action: str) -> bool:
    """True if the action must run, False if it was already applied."""
    allowed, target = _TRANSITIONS[action]
    if payout.status == target:
        return False
    if payout.status not in allowed:
        raise InvalidTransition(
            f"cannot {action} payout {payout.public_id} in status {payout.status.value}",
            status=payout.status.value,
        )
    return True


def _audit(payout: PayoutRequest, action: str, before: PayoutStatus, actor: Any, reason: Any = None) -> None:
    AuditLog.record(
        action=f"payout.{action}",
        target_type="payout",
        target_id=payout.public_id,
        vendor_id=payout.vendor_id,
        actor=actor,
        reason=reason,
        payload={"before": before.value, "after": payout.status.value, "amount": str(money(payout.amount))},
    )


def _reserve_of(payout: PayoutRequest):
    return get_entry_by_key(payout.vendor_id, _reserve_key(payout))


def approve(payout_id: Any, *, actor: Any = None, notes: Optional[str] = None) -> PayoutRequest:
    with tx():
        payout = get_payout(payout_id)
        if not _check(payout, "approve"):
            return payout
        before = payout.status
        payout.status = PayoutStatus.APPROVED
        payout.approved_by = safe_str(actor, 80) or None
        payout.approved_at = utcnow()
        if notes:
            payout.notes = notes
        _audit(payout, "approve", before, actor)

    log.info("payout approved %s by=%s", payout.public_id, actor)
    _notify(payout, "payout.approved")
    return payout


def mark_processing(payout_id: Any, *, actor: Any = None, notes: Optional[str] = None) -> PayoutRequest:
    with tx():
        payout = get_payout(payout_id)
        if not _check(payout, "process"):
            return payout
        before = payout.status
        payout.status = PayoutStatus.PROCESSING
        if notes:
            payout.notes = notes
        _audit(payout, "process", before, actor)

    log.info("payout processing %s by=%s", payout.public_id, actor)
    _notify(payout, "payout.processing")
    return payout


def complete(
    payout_id: Any,
    external_transaction_id: Any,
    *,
    actor: Any = None,
    notes: Optional[str] = None,
    now: Optional[datetime] = None,
) -> PayoutRequest:
    ref = safe_str(external_transaction_id, 120)
    if not ref:
        raise ValidationError("external_transaction_id is required to complete a payout")

    with tx():
        payout = get_payout(payout_id)
        if not _check(payout, "complete"):
            return payout
        before = payout.status
        now = now or utcnow()

        reserve = _reserve_of(payout)
        if reserve is None or reserve.status != EntryStatus.PENDING:
            raise InvalidTransition(f"payout {payout.public_id} has no active reserve")

        post_entry(
            vendor_id=payout.vendor_id,
            entry_type=EntryType.PAYOUT,
            amount=-money(payout.amount),
            status=EntryStatus.CLEARED,
            idempotency_key=make_idempotency_key(payout.public_id, EntryType.PAYOUT),
            reference_type=ReferenceType.PAYOUT,
            reference_id=payout.public_id,
            related_entry_id=reserve.id,
            performed_by=actor,
            note=f"Payout {payout.public_id} ref {ref}",
            meta={"external_transaction_id": ref},
        )
        reserve.status = EntryStatus.CLEARED
        reserve.cleared_at = now

        payout.status = PayoutStatus.COMPLETED
        payout.external_transaction_id = ref
        payout.processed_date = now
        if notes:
            payout.notes = notes

        if payout.order_ids:
            for slice_ in db.session.execute(
                select(VendorPayoutSlice).where(
                    VendorPayoutSlice.vendor_id == payout.vendor_id,
                    VendorPayoutSlice.order_id.in_(payout.order_ids),
                )
            ).scalars():
                slice_.status = VendorPayoutSlice.STATUS_RELEASED

        sync_cached_balances(payout.vendor_id)
        _audit(payout, "complete", before, actor)

    log.info("payout completed %s ref=%s by=%s", payout.public_id, ref, actor)
    _notify(payout, "payout.completed")
    return payout


def _release_reserve(payout: PayoutRequest, target: PayoutStatus, action: str,
                     reason: Optional[str], actor: Any) -> PayoutRequest:
    with tx():
        payout = get_payout(payout.id)
        if not _check(payout, action):
            return payout
        before = payout.status
        now = utcnow()

        reserve = _reserve_of(payout)
        if reserve is not None and reserve.status == EntryStatus.PENDING:
            reserve.status = EntryStatus.VOIDED
            reserve.voided_at = now

        payout.status = target
        payout.failure_reason = reason
        payout.processed_date = now

        sync_cached_balances(payout.vendor_id)
        _audit(payout, action, before, actor, reason=reason)

    log.info("payout %s %s by=%s reason=%s", payout.public_id, target.value.lower(), actor, reason)
    _notify(payout, f"payout.{target.value.lower()}")
    return payout


def reject(payout_id: Any, reason: Any, *, actor: Any = None) -> PayoutRequest:
    why = safe_str(reason, 300)
    if not why:
        raise ValidationError("a reason is required to reject a payout")
    return _release_reserve(get_payout(payout_id), PayoutStatus.FAILED, "reject", why, actor)


def cancel(payout_id: Any, *, reason: Any = None, actor: Any = None, vendor_id: Any = None) -> PayoutRequest:
    payout = get_payout(payout_id)
    if vendor_id is not None and payout.vendor_id != require_vendor_id(vendor_id):
        raise NotFound(f"payout {payout_id} not found")
    why = safe_str(reason, 300) or "cancelled"
    return _release_reserve(payout, PayoutStatus.CANCELLED, "cancel", why, actor)


def admin_action(payout_id: Any, action: str, payload: Optional[Mapping[str, Any]] = None,
                 *, actor: Any = None) -> PayoutRequest:
    data = dict(payload or {})
    act = (action or "").strip().lower()
    notes = data.get("notes")

    if act == "approve":
        return approve(payout_id, actor=actor, notes=notes)
    if act == "process":
        return mark_processing(payout_id, actor=actor, notes=notes)
    if act == "complete":
        return complete(payout_id, data.get("external_transaction_id") or data.get("transaction_id"),
                        actor=actor, notes=notes)
    if act == "reject":
        return reject(payout_id, data.get("failure_reason") or data.get("reason"), actor=actor)
    if act == "cancel":
        return cancel(payout_id, reason=data.get("reason"), actor=actor)
    raise ValidationError(f"unknown payout action {action!r}; expected one of {', '.join(ACTIONS)}")


__all__ = [
    "ACTIONS",
    "get_payout",
    "list_payouts",
    "request_payout",
    "approve",
    "mark_processing",
    "complete",
    "reject",
    "cancel",
    "admin_action",
]
