from __future__ import annotations

"""
Order Splitter
==============
One customer order, many vendors.

- split_order(): pure money split per item and per vendor
- OrderService.create_order(): stock check for every line first, then order,
  item snapshots, payout slices, stock decrements and vendor stats in ONE
  transaction (all or nothing)
- confirm_payment / mark_delivered: the two events that post the sale
- refund_order: drives the ledger refund
"""

import logging
import secrets
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

from flask import current_app
from sqlalchemy import func, select, update

from settlement.errors import (
    InsufficientStock,
    InvalidTransition,
    MissingVendorAssignment,
    NotFound,
    ReconciliationError,
    ValidationError,
)
from settlement.models import Order, OrderItem, Product, ProductVariant, Vendor, VendorPayoutSlice, db
from settlement.services import ledger_service
from settlement.services.guard import flag_for_reconciliation, tx
from settlement.services.wallet_service import ensure_wallet
from settlement.utils import ZERO, canonical_vendor_id, commission_for, money, safe_str, to_decimal, utcnow

log = logging.getLogger("order_service")


# =============================================================================
# Pure split
# =============================================================================

@dataclass(frozen=True)
class SplitLine:
    vendor: Any
    quantity: int
    unit_price: Decimal
    commission_rate_bps: int
    product_id: Optional[int] = None
    title: Optional[str] = None
    size: Optional[str] = None


@dataclass(frozen=True)
class ItemSplit:
    line: SplitLine
    vendor_id: int
    item_total: Decimal
    platform_commission: Decimal
    vendor_earnings: Decimal


@dataclass
class VendorSplit:
    vendor_id: int
    amount: Decimal = ZERO
    commission: Decimal = ZERO
    gross: Decimal = ZERO
    items: List[ItemSplit] = field(default_factory=list)


def _coerce_line(raw: Any) -> SplitLine:
    if isinstance(raw, SplitLine):
        return raw
    if not isinstance(raw, Mapping):
        raise ValidationError(f"order line must be a mapping, got {type(raw).__name__}")
    vendor = raw.get("vendor", raw.get("vendor_id"))
    try:
        qty = int(raw.get("quantity", raw.get("qty", 1)))
        bps = int(raw.get("commission_rate_bps"))
    except (TypeError, ValueError) as e:
        raise ValidationError("quantity and commission_rate_bps must be integers") from e
    return SplitLine(
        vendor=vendor,
        quantity=qty,
        unit_price=to_decimal(raw.get("unit_price", raw.get("price")), allow_negative=False, field="unit_price"),
        commission_rate_bps=bps,
        product_id=raw.get("product_id"),
        title=raw.get("title"),
        size=raw.get("size"),
    )


def split_item(item_total: Decimal, rate_bps: int) -> Tuple[Decimal, Decimal]:
    """(platform_commission, vendor_earnings); the two always sum to item_total."""
    total = money(item_total)
    commission = commission_for(total, rate_bps)
    return commission, money(total - commission)


def split_order(lines: Sequence[Any]) -> Dict[int, VendorSplit]:
    out: Dict[int, VendorSplit] = {}
    for raw in lines:
        line = _coerce_line(raw)
        vid = canonical_vendor_id(line.vendor)
        if vid is None:
            raise MissingVendorAssignment(
                f"line for product {line.product_id or line.title or '?'} has no vendor",
                product_id=line.product_id,
            )
        if line.quantity < 1:
            raise ValidationError("quantity must be >= 1")
        if not 0 <= line.commission_rate_bps <= 10000:
            raise ValidationError("commission_rate_bps must be between 0 and 10000")

        item_total = money(line.unit_price * line.quantity)
        commission, earnings = split_item(item_total, line.commission_rate_bps)

        vs = out.setdefault(vid, VendorSplit(vendor_id=vid))
        vs.items.append(ItemSplit(line, vid, item_total, commission, earnings))
        vs.amount = money(vs.amount + earnings)
        vs.commission = money(vs.commission + commission)
        vs.gross = money(vs.gross + item_total)
    return out


# =============================================================================
# DTOs
# =============================================================================

@dataclass(frozen=True)
class CartLine:
    product_id: int
    qty: int = 1
    size: Optional[str] = None


@dataclass(frozen=True)
class CreateOrderInput:
    customer_id: Optional[int] = None
    payment_method: str = Order.PM_ONLINE
    # "completed" when the gateway confirmed before the order was written
    payment_status: str = Order.PAY_PENDING
    payment_ref: Optional[str] = None
    idempotency_key: Optional[str] = None


@dataclass(frozen=True)
class _Resolved:
    line: CartLine
    product: Product
    variant: Optional[ProductVariant]
    vendor: Vendor


# =============================================================================
# OrderService
# =============================================================================

class OrderService:

    @classmethod
    def get_order(cls, order_id: int) -> Order:
        order = db.session.get(Order, int(order_id))
        if not order:
            raise NotFound(f"order {order_id} not found")
        return order

    # -------------------------------------------------------------------------
    # CREATE ORDER
    # -------------------------------------------------------------------------

    @classmethod
    def create_order(cls, lines: Sequence[CartLine], data: CreateOrderInput) -> Order:
        if not lines:
            raise ValidationError("order has no lines")

        pm = (data.payment_method or "").strip().lower()
        if pm not in {Order.PM_ONLINE, Order.PM_COD}:
            raise ValidationError(f"unknown payment_method {data.payment_method!r}")
        paid = (data.payment_status or "").strip().lower() == Order.PAY_COMPLETED

        ikey = safe_str(data.idempotency_key, 120) or None
        if ikey:
            existing = db.session.execute(select(Order).where(Order.idempotency_key == ikey)).scalar_one_or_none()
            if existing is not None:
                log.info("checkout replayed key=%s order=%s", ikey[:12], existing.number)
                return existing

        resolved = [cls._resolve(ln) for ln in lines]
        cls._check_stock(resolved)

        split = split_order([
            SplitLine(
                vendor=r.vendor.id,
                quantity=r.line.qty,
                unit_price=money(r.product.price),
                commission_rate_bps=cls._rate_for(r.vendor),
                product_id=r.product.id,
                title=r.product.title,
                size=r.line.size,
            )
            for r in resolved
        ])

        now = utcnow()

        with tx() as s:
            order = Order(
                number=cls._new_order_number(s),
                customer_id=data.customer_id,
                payment_method=pm,
                payment_status=Order.PAY_COMPLETED if paid else Order.PAY_PENDING,
                payment_ref=safe_str(data.payment_ref, 120) or None,
                order_status=Order.STATUS_CONFIRMED if paid else Order.STATUS_PENDING,
                total_amount=money(sum((vs.gross for vs in split.values()), ZERO)),
                idempotency_key=ikey,
                paid_at=now if paid else None,
            )
            s.add(order)
            s.flush()

            for vs in split.values():
                for item in vs.items:
                    ln = item.line
                    s.add(OrderItem(
                        order_id=order.id,
                        product_id=ln.product_id,
                        vendor_id=vs.vendor_id,
                        commission_rate_bps=ln.commission_rate_bps,
                        title_snapshot=safe_str(ln.title, 180) or None,
                        size=ln.size,
                        quantity=ln.quantity,
                        unit_price=money(ln.unit_price),
                        line_total=item.item_total,
                        vendor_earnings=item.vendor_earnings,
                        platform_commission=item.platform_commission,
                    ))
                s.add(VendorPayoutSlice(
                    order_id=order.id,
                    vendor_id=vs.vendor_id,
                    amount=vs.amount,
                    status=VendorPayoutSlice.STATUS_HELD,
                ))
                ensure_wallet(vs.vendor_id)

            for r in resolved:
                cls._decrement_stock(s, r)

            for vs in split.values():
                s.execute(
                    update(Vendor)
                    .where(Vendor.id == vs.vendor_id)
                    .values(total_orders=Vendor.total_orders + 1, total_revenue=Vendor.total_revenue + vs.gross)
                    .execution_options(synchronize_session=False)
                )

        log.info("order created number=%s vendors=%s total=%s pm=%s", order.number, sorted(split), order.total_amount, pm)

        if paid and pm == Order.PM_ONLINE:
            cls._post_sale(order)
        return order

    # -------------------------------------------------------------------------
    # PAYMENT / FULFILLMENT
    # -------------------------------------------------------------------------

    @classmethod
    def confirm_payment(cls, order_id: int, payment_ref: Optional[str] = None) -> Order:
        """
        Consumes an already verified gateway confirmation. Replays are safe:
        the sale posting is idempotent per (order, vendor).
        """
        ref = safe_str(payment_ref, 120) or None
        with tx():
            order = cls.get_order(order_id)
            if order.order_status in {Order.STATUS_CANCELLED, Order.STATUS_REFUNDED}:
                raise InvalidTransition(f"order {order.number} is {order.order_status}")
            if order.payment_method != Order.PM_ONLINE:
                raise InvalidTransition(f"order {order.number} is cash on delivery")
            if order.is_paid and ref and order.payment_ref and order.payment_ref != ref:
                raise InvalidTransition(
                    f"order {order.number} already paid with a different reference",
                    payment_ref=order.payment_ref,
                )
            if not order.is_paid:
                order.payment_status = Order.PAY_COMPLETED
                order.payment_ref = ref or order.payment_ref
                order.paid_at = utcnow()
                if order.order_status == Order.STATUS_PENDING:
                    order.order_status = Order.STATUS_CONFIRMED

        log.info("payment confirmed order=%s ref=%s", order.number, ref)
        cls._post_sale(order)
        return order

    @classmethod
    def mark_delivered(cls, order_id: int) -> Order:
        with tx():
            order = cls.get_order(order_id)
            if order.order_status in {Order.STATUS_CANCELLED, Order.STATUS_REFUNDED}:
                raise InvalidTransition(f"order {order.number} is {order.order_status}")
            if order.payment_method == Order.PM_ONLINE and not order.is_paid:
                raise InvalidTransition(f"order {order.number} is not paid")

            now = utcnow()
            if order.order_status != Order.STATUS_DELIVERED:
                order.order_status = Order.STATUS_DELIVERED
                order.delivered_at = now
            if order.payment_method == Order.PM_COD and not order.is_paid:
                order.payment_status = Order.PAY_COMPLETED
                order.paid_at = now

        log.info("order delivered number=%s pm=%s", order.number, order.payment_method)
        if order.payment_method == Order.PM_COD:
            cls._post_sale(order)
        return order

    @classmethod
    def refund_order(
        cls,
        order_id: int,
        refund_id: str,
        vendor_amounts: Optional[Mapping[Any, Any]] = None,
        *,
        performed_by: Any = None,
    ) -> Order:
        """vendor_amounts=None refunds every vendor's full share (with commission reversal)."""
        order = cls.get_order(order_id)
        if not order.is_paid:
            raise InvalidTransition(f"order {order.number} has no completed payment to refund")

        full = vendor_amounts is None
        if full:
            vendor_amounts = {
                vid: {"amount": row["vendor_earnings"], "commission": row["commission"]}
                for vid, row in order.vendor_totals().items()
            }

        try:
            ledger_service.record_refund(order.id, refund_id, vendor_amounts, performed_by=performed_by)
        except ReconciliationError as e:
            flag_for_reconciliation(
                "record_refund",
                refund_id,
                reference_type="REFUND",
                error=e,
                payload={
                    "order_id": order.id,
                    "refund_id": refund_id,
                    "full": full,
                    "vendor_amounts": {str(k): cls._jsonable(v) for k, v in vendor_amounts.items()},
                },
            )
            raise

        if full:
            order = cls.mark_refunded(order.id)
        log.info("order refund recorded number=%s refund=%s full=%s", order.number, refund_id, full)
        return order

    @classmethod
    def mark_refunded(cls, order_id: int) -> Order:
        with tx():
            order = cls.get_order(order_id)
            order.payment_status = Order.PAY_REFUNDED
            order.order_status = Order.STATUS_REFUNDED
        return order

    # -------------------------------------------------------------------------
    # INTERNALS
    # -------------------------------------------------------------------------

    @classmethod
    def _post_sale(cls, order: Order) -> None:
        """Money already moved: a failed ledger write is flagged, never raised."""
        try:
            ledger_service.record_sale(order.id, performed_by="order_service")
        except ReconciliationError as e:
            flag_for_reconciliation(
                "record_sale",
                order.id,
                reference_type="ORDER",
                error=e,
                payload={"order_id": order.id, "number": order.number},
            )

    @staticmethod
    def _jsonable(v: Any) -> Any:
        if isinstance(v, Mapping):
            return {k: (str(x) if isinstance(x, Decimal) else x) for k, x in v.items()}
        return str(v)

    @classmethod
    def _rate_for(cls, vendor: Vendor) -> int:
        if vendor.commission_rate_bps is None:
            return int(current_app.config.get("DEFAULT_COMMISSION_BPS", 1000))
        return int(vendor.commission_rate_bps)

    @classmethod
    def _new_order_number(cls, session) -> str:
        for _ in range(10):
            n = f"MK-{utcnow().strftime('%Y%m%d%H%M%S')}-{secrets.token_hex(2).upper()}"
            if not session.execute(select(func.count(Order.id)).where(Order.number == n)).scalar():
                return n
        raise ValidationError("could not allocate an order number")

    @classmethod
    def _resolve(cls, ln: CartLine) -> _Resolved:
        try:
            qty = int(ln.qty)
        except (TypeError, ValueError) as e:
            raise ValidationError("qty must be an integer") from e
        if qty < 1:
            raise ValidationError("qty must be >= 1")

        prod = db.session.get(Product, int(ln.product_id))
        if not prod:
            raise NotFound(f"product {ln.product_id} not found")

        vid = canonical_vendor_id(prod.vendor_id)
        vendor = db.session.get(Vendor, vid) if vid else None
        if vendor is None:
            raise MissingVendorAssignment(f"product '{prod.title}' has no vendor", product_id=prod.id)

        size = safe_str(ln.size, 40) or None
        variant = None
        if size:
            variant = prod.variant_for(size)
            if variant is None:
                raise ValidationError(f"product '{prod.title}' has no size {size!r}", product_id=prod.id)

        return _Resolved(line=CartLine(product_id=prod.id, qty=qty, size=size), product=prod, variant=variant,
                         vendor=vendor)

    @classmethod
    def _check_stock(cls, resolved: Sequence[_Resolved]) -> None:
        """Every line is checked before anything is written; all shortfalls reported at once."""
        wanted: Dict[Tuple[int, Optional[str]], int] = {}
        by_key: Dict[Tuple[int, Optional[str]], _Resolved] = {}
        for r in resolved:
            key = (r.product.id, r.line.size)
            wanted[key] = wanted.get(key, 0) + r.line.qty
            by_key[key] = r

        shortfalls: List[Dict[str, Any]] = []
        for key, qty in wanted.items():
            r = by_key[key]
            if r.variant is None and r.product.stock_mode != "finite":
                continue
            available = int(r.variant.stock_qty if r.variant is not None else r.product.stock_qty)
            if available < qty:
                shortfalls.append({
                    "product_id": r.product.id,
                    "title": r.product.title,
                    "size": r.line.size,
                    "requested": qty,
                    "available": available,
                })

        if shortfalls:
            raise InsufficientStock(shortfalls)

    @classmethod
    def _decrement_stock(cls, session, r: _Resolved) -> None:
        qty = r.line.qty
        if r.variant is not None:
            model, row_id = ProductVariant, r.variant.id
        elif r.product.stock_mode == "finite":
            model, row_id = Product, r.product.id
        else:
            return

        res = session.execute(
            update(model)
            .where(model.id == row_id, model.stock_qty >= qty)
            .values(stock_qty=model.stock_qty - qty)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            raise InsufficientStock([{
                "product_id": r.product.id,
                "title": r.product.title,
                "size": r.line.size,
                "requested": qty,
            }])


__all__ = [
    "SplitLine",
    "ItemSplit",
    "VendorSplit",
    "split_item",
    "split_order",
    "CartLine",
    "CreateOrderInput",
    "OrderService",
]
