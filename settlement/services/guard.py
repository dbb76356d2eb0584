# settlement/services/guard.py
from __future__ import annotations

"""
Reconciliation Guard
====================
- tx(): commit on success, rollback + re-raise on error
- make_idempotency_key(): sha256 over canonical parts
- insert_once(): savepoint insert; a unique-key hit returns the existing row
- flag_for_reconciliation() / retry_issue(): operator work queue for ledger
  writes that failed after money already moved
- reconcile_wallets(): recompute every wallet from its ledger and report drift
"""

import enum
import hashlib
import logging
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple, TypeVar

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from settlement.errors import NotFound, ReconciliationError, SettlementError
from settlement.models import IssueStatus, ReconciliationIssue, VendorWallet, db
from settlement.utils import json_dumps_compact, money, safe_str, utcnow

log = logging.getLogger("guard")

T = TypeVar("T")


# =============================================================================
# Transaction
# =============================================================================

class tx:
    def __enter__(self):
        return db.session

    def __exit__(self, exc_type, exc, tb):
        if exc_type:
            db.session.rollback()
            return False
        try:
            db.session.commit()
        except Exception:
            db.session.rollback()
            raise
        return False


# =============================================================================
# Idempotency
# =============================================================================

def _canon_part(v: Any) -> str:
    if v is None:
        return ""
    if isinstance(v, enum.Enum):
        return str(v.value)
    if isinstance(v, Decimal):
        return str(money(v))
    if isinstance(v, (datetime, date)):
        return v.isoformat()
    return str(v).strip()


def make_idempotency_key(*parts: Any) -> str:
    raw = "|".join(_canon_part(p) for p in parts)
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def insert_once(obj: T, lookup: Callable[[], Optional[T]]) -> Tuple[T, bool]:
    """
    Insert `obj` inside a savepoint. If a uniqueness constraint fires, the
    savepoint alone is rolled back and the row that won is returned.

    Returns (row, created).
    """
    existing = lookup()
    if existing is not None:
        return existing, False

    try:
        with db.session.begin_nested():
            db.session.add(obj)
            db.session.flush()
    except IntegrityError:
        winner = lookup()
        if winner is None:
            raise
        log.info("duplicate event ignored: %r", winner)
        return winner, False

    return obj, True


# =============================================================================
# Reconciliation queue
# =============================================================================

def flag_for_reconciliation(
    kind: str,
    reference_id: Any,
    *,
    reference_type: Optional[str] = None,
    vendor_id: Optional[int] = None,
    error: Any = None,
    payload: Optional[Dict[str, Any]] = None,
) -> Optional[ReconciliationIssue]:
    """
    Record an OPEN issue for a failed ledger write. Runs in its own
    transaction: whatever the session still holds from the failed write is
    discarded first.
    """
    ref = safe_str(reference_id, 80)
    log.error("reconciliation needed kind=%s ref=%s vendor=%s error=%s", kind, ref, vendor_id, error)

    db.session.rollback()
    try:
        with tx() as s:
            issue = s.execute(
                select(ReconciliationIssue).where(
                    ReconciliationIssue.kind == kind,
                    ReconciliationIssue.reference_id == ref,
                )
            ).scalar_one_or_none()

            if issue is None:
                issue = ReconciliationIssue(
                    kind=kind,
                    reference_type=reference_type,
                    reference_id=ref,
                    vendor_id=vendor_id,
                    attempts=1,
                    status=IssueStatus.OPEN,
                )
                s.add(issue)
            else:
                issue.attempts = int(issue.attempts or 0) + 1
                issue.status = IssueStatus.OPEN
                issue.resolved_at = None

            issue.error = safe_str(error, 500) or None
            if payload is not None:
                issue.payload = json_dumps_compact(payload) or None
        return issue
    except SQLAlchemyError:
        log.exception("could not persist reconciliation issue kind=%s ref=%s", kind, ref)
        return None


def list_issues(status: Optional[IssueStatus] = IssueStatus.OPEN, limit: int = 100) -> List[ReconciliationIssue]:
    q = select(ReconciliationIssue).order_by(ReconciliationIssue.created_at.desc(), ReconciliationIssue.id.desc())
    if status is not None:
        q = q.where(ReconciliationIssue.status == status)
    return list(db.session.execute(q.limit(max(1, min(int(limit), 500)))).scalars().all())


def _replay(issue: ReconciliationIssue) -> None:
    from settlement.services import ledger_service

    data = issue.payload_data
    if issue.kind == "record_sale":
        ledger_service.record_sale(int(issue.reference_id), performed_by="reconciliation")
    elif issue.kind == "record_refund":
        ledger_service.record_refund(
            int(data["order_id"]),
            data["refund_id"],
            data.get("vendor_amounts") or {},
            performed_by="reconciliation",
        )
        if data.get("full"):
            from settlement.services.order_splitter import OrderService

            OrderService.mark_refunded(int(data["order_id"]))
    else:
        raise ReconciliationError(f"no replay handler for issue kind {issue.kind!r}")


def retry_issue(issue_id: int) -> ReconciliationIssue:
    issue = db.session.get(ReconciliationIssue, int(issue_id))
    if not issue:
        raise NotFound(f"reconciliation issue {issue_id} not found")
    if issue.status == IssueStatus.RESOLVED:
        return issue

    try:
        _replay(issue)
    except SettlementError as e:
        flag_for_reconciliation(issue.kind, issue.reference_id, error=e)
        raise ReconciliationError(f"retry failed for {issue.kind}:{issue.reference_id}: {e}") from e

    with tx():
        issue.status = IssueStatus.RESOLVED
        issue.resolved_at = utcnow()
        issue.error = None
    log.info("reconciliation issue resolved kind=%s ref=%s", issue.kind, issue.reference_id)
    return issue


# =============================================================================
# Wallet drift
# =============================================================================

def reconcile_wallets(vendor_ids: Optional[Sequence[int]] = None) -> Dict[str, Any]:
    """
    Recompute balances from the ledger and compare with the cached columns
    the services keep in step with every write. A mismatch means the ledger
    was written around the services; the ledger always wins.
    """
    from settlement.services.wallet_service import compute_balances, invalidate_wallet_cache

    q = select(VendorWallet).order_by(VendorWallet.vendor_id)
    if vendor_ids:
        q = q.where(VendorWallet.vendor_id.in_([int(v) for v in vendor_ids]))

    drift: List[Dict[str, Any]] = []
    checked = 0
    now = utcnow()

    with tx() as s:
        for wallet in s.execute(q).scalars().all():
            checked += 1
            bal = compute_balances(wallet.vendor_id)
            cached = {
                "pending": money(wallet.cached_pending),
                "withdrawable": money(wallet.cached_withdrawable),
                "frozen": money(wallet.cached_frozen),
            }
            actual = {"pending": bal.pending, "withdrawable": bal.withdrawable, "frozen": bal.frozen}
            if cached != actual:
                drift.append({
                    "vendor_id": wallet.vendor_id,
                    "cached": {k: str(v) for k, v in cached.items()},
                    "ledger": {k: str(v) for k, v in actual.items()},
                })
                log.warning("wallet drift vendor=%s cached=%s ledger=%s", wallet.vendor_id, cached, actual)

            wallet.cached_pending = bal.pending
            wallet.cached_withdrawable = bal.withdrawable
            wallet.cached_frozen = bal.frozen
            wallet.last_reconciled_at = now

    for d in drift:
        invalidate_wallet_cache(d["vendor_id"])

    log.info("reconcile_wallets checked=%d drift=%d", checked, len(drift))
    return {"checked": checked, "drift": drift, "reconciled_at": now.isoformat()}


__all__ = [
    "tx",
    "make_idempotency_key",
    "insert_once",
    "flag_for_reconciliation",
    "list_issues",
    "retry_issue",
    "reconcile_wallets",
]
