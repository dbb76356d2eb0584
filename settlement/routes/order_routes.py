# settlement/routes/order_routes.py
from __future__ import annotations

from typing import Any, Dict, List

from flask import Blueprint, request

from settlement.errors import ValidationError
from settlement.services.order_splitter import CartLine, CreateOrderInput, OrderService
from settlement.utils.http import actor, json_body, json_ok, require_token

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _cart_lines(raw: Any) -> List[CartLine]:
    if not isinstance(raw, list) or not raw:
        raise ValidationError("lines must be a non-empty list")
    out: List[CartLine] = []
    for i, ln in enumerate(raw):
        if not isinstance(ln, dict) or "product_id" not in ln:
            raise ValidationError(f"lines[{i}] needs a product_id")
        try:
            out.append(CartLine(product_id=int(ln["product_id"]), qty=int(ln.get("qty", ln.get("quantity", 1))),
                                size=ln.get("size")))
        except (TypeError, ValueError) as e:
            raise ValidationError(f"lines[{i}] has a non-integer product_id/qty") from e
    return out


@orders_bp.post("")
def create_order():
    data: Dict[str, Any] = json_body()
    order = OrderService.create_order(
        _cart_lines(data.get("lines")),
        CreateOrderInput(
            customer_id=data.get("customer_id"),
            payment_method=data.get("payment_method") or "online",
            payment_status=data.get("payment_status") or "pending",
            payment_ref=data.get("payment_ref"),
            idempotency_key=request.headers.get("Idempotency-Key") or data.get("idempotency_key"),
        ),
    )
    return json_ok({"order": order.to_dict()}, 201)


@orders_bp.get("/<int:order_id>")
def get_order(order_id: int):
    return json_ok({"order": OrderService.get_order(order_id).to_dict()})


@orders_bp.post("/<int:order_id>/payment-confirmed")
@require_token("ADMIN_API_TOKEN")
def payment_confirmed(order_id: int):
    data = json_body()
    order = OrderService.confirm_payment(order_id, data.get("payment_ref"))
    return json_ok({"order": order.to_dict()})


@orders_bp.post("/<int:order_id>/delivered")
@require_token("ADMIN_API_TOKEN")
def delivered(order_id: int):
    return json_ok({"order": OrderService.mark_delivered(order_id).to_dict()})


@orders_bp.post("/<int:order_id>/refunds")
@require_token("ADMIN_API_TOKEN")
def refund(order_id: int):
    data = json_body()
    refund_id = (str(data.get("refund_id") or "")).strip()
    if not refund_id:
        raise ValidationError("refund_id is required")
    vendor_amounts = data.get("vendor_amounts")
    if vendor_amounts is not None and not isinstance(vendor_amounts, dict):
        raise ValidationError("vendor_amounts must be an object {vendor_id: amount}")
    order = OrderService.refund_order(order_id, refund_id, vendor_amounts, performed_by=actor())
    return json_ok({"order": order.to_dict()})
