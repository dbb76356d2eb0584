# settlement/routes/vendor_routes.py
from __future__ import annotations

from flask import Blueprint, request

from settlement.services import ledger_service, payout_service, wallet_service
from settlement.utils.http import actor, int_arg, json_body, json_ok

vendors_bp = Blueprint("vendors", __name__, url_prefix="/api/vendors")


@vendors_bp.get("/<int:vendor_id>/wallet")
def wallet(vendor_id: int):
    return json_ok({"wallet": wallet_service.get_wallet(vendor_id)})


@vendors_bp.get("/<int:vendor_id>/ledger")
def ledger(vendor_id: int):
    page = ledger_service.list_ledger(
        vendor_id,
        page=int_arg("page", 1),
        page_size=int_arg("page_size", 0) or None,
        entry_type=request.args.get("type"),
        status=request.args.get("status"),
    )
    return json_ok(page)


@vendors_bp.get("/<int:vendor_id>/payouts")
def list_payouts(vendor_id: int):
    rows = payout_service.list_payouts(vendor_id=vendor_id, status=request.args.get("status"))
    return json_ok({"payouts": [p.to_dict() for p in rows]})


@vendors_bp.post("/<int:vendor_id>/payouts")
def request_payout(vendor_id: int):
    data = json_body()
    payout = payout_service.request_payout(
        vendor_id,
        data.get("amount"),
        idempotency_key=request.headers.get("Idempotency-Key") or data.get("idempotency_key"),
        notes=data.get("notes"),
        order_ids=data.get("order_ids") or [],
        requested_by=actor() or f"vendor:{vendor_id}",
        raise_duplicate=True,
    )
    return json_ok({"payout": payout.to_dict()}, 201)


@vendors_bp.post("/<int:vendor_id>/payouts/<payout_id>/cancel")
def cancel_payout(vendor_id: int, payout_id: str):
    data = json_body()
    payout = payout_service.cancel(
        payout_id,
        reason=data.get("reason") or "cancelled by vendor",
        actor=actor() or f"vendor:{vendor_id}",
        vendor_id=vendor_id,
    )
    return json_ok({"payout": payout.to_dict()})
