# settlement/routes/admin_routes.py
from __future__ import annotations

from flask import Blueprint, request
from sqlalchemy import select

from settlement.errors import ValidationError
from settlement.models import AuditLog, IssueStatus, db
from settlement.services import guard, ledger_service, payout_service, wallet_service
from settlement.utils import require_vendor_id
from settlement.utils.http import actor, bearer_gate, int_arg, json_body, json_ok

admin_bp = Blueprint("admin", __name__, url_prefix="/admin")


@admin_bp.before_request
def _admin_gate():
    return bearer_gate("ADMIN_API_TOKEN")


# ------------------------------------------------------------------
# Payouts
# ------------------------------------------------------------------

@admin_bp.get("/payouts")
def payouts():
    vendor_id = request.args.get("vendor_id")
    rows = payout_service.list_payouts(
        vendor_id=vendor_id or None,
        status=request.args.get("status"),
        limit=int_arg("limit", 100),
    )
    return json_ok({"payouts": [p.to_dict() for p in rows]})


@admin_bp.post("/payouts/<payout_id>")
def payout_action(payout_id: str):
    data = json_body()
    action = (data.get("action") or "").strip().lower()
    if not action:
        raise ValidationError(f"action is required: one of {', '.join(payout_service.ACTIONS)}")
    payout = payout_service.admin_action(payout_id, action, data, actor=actor() or "admin")
    return json_ok({"payout": payout.to_dict()})


# ------------------------------------------------------------------
# Wallets & ledger corrections
# ------------------------------------------------------------------

_WALLET_ACTIONS = {
    "freeze": wallet_service.freeze_wallet,
    "unfreeze": wallet_service.unfreeze_wallet,
    "close": wallet_service.close_wallet,
}


@admin_bp.post("/wallets/<int:vendor_id>/<action>")
def wallet_action(vendor_id: int, action: str):
    data = json_body()
    act = action.strip().lower()
    if act == "minimum":
        wallet_service.set_minimum_withdrawal(vendor_id, data.get("amount"), actor=actor() or "admin")
    elif act in _WALLET_ACTIONS:
        _WALLET_ACTIONS[act](vendor_id, reason=data.get("reason"), actor=actor() or "admin")
    else:
        raise ValidationError(f"unknown wallet action {action!r}")
    return json_ok({"wallet": wallet_service.get_wallet(vendor_id, use_cache=False)})


@admin_bp.post("/adjustments")
def adjustment():
    data = json_body()
    entry = ledger_service.record_adjustment(
        data.get("vendor_id"),
        data.get("amount"),
        data.get("reason"),
        idempotency_key=request.headers.get("Idempotency-Key") or data.get("idempotency_key"),
        performed_by=actor() or "admin",
    )
    return json_ok({"entry": entry.to_dict()}, 201)


@admin_bp.post("/holds")
def hold():
    data = json_body()
    entry = ledger_service.hold_funds(
        data.get("vendor_id"),
        data.get("amount"),
        data.get("dispute_id"),
        reason=data.get("reason"),
        performed_by=actor() or "admin",
    )
    return json_ok({"entry": entry.to_dict()}, 201)


@admin_bp.post("/holds/<dispute_id>/release")
def release(dispute_id: str):
    data = json_body()
    entry = ledger_service.release_hold(
        data.get("vendor_id"), dispute_id, data.get("outcome"), performed_by=actor() or "admin"
    )
    return json_ok({"entry": entry.to_dict()})


@admin_bp.get("/audit")
def audit():
    q = select(AuditLog).order_by(AuditLog.created_at.desc(), AuditLog.id.desc())
    vendor_id = request.args.get("vendor_id")
    if vendor_id:
        q = q.where(AuditLog.vendor_id == require_vendor_id(vendor_id))
    rows = db.session.execute(q.limit(max(1, min(int_arg("limit", 100), 500)))).scalars().all()
    return json_ok({"audit": [r.to_dict() for r in rows]})


# ------------------------------------------------------------------
# Reconciliation
# ------------------------------------------------------------------

@admin_bp.get("/reconciliation")
def issues():
    raw = (request.args.get("status") or "OPEN").strip().upper()
    if raw == "ALL":
        status = None
    else:
        try:
            status = IssueStatus(raw)
        except ValueError as e:
            raise ValidationError(f"unknown issue status {raw!r}") from e
    rows = guard.list_issues(status, limit=int_arg("limit", 100))
    return json_ok({"issues": [i.to_dict() for i in rows]})


@admin_bp.post("/reconciliation/run")
def run_reconciliation():
    data = json_body()
    report = guard.reconcile_wallets(data.get("vendor_ids") or None)
    return json_ok({"report": report})


@admin_bp.post("/reconciliation/<int:issue_id>/retry")
def retry_issue(issue_id: int):
    issue = guard.retry_issue(issue_id)
    return json_ok({"issue": issue.to_dict()})
