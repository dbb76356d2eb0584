# Orders, order items and per-vendor payout slices
from __future__ import annotations

from decimal import Decimal
from typing import Any, Dict

from settlement.models import db
from settlement.utils import money, utcnow


class Order(db.Model):
    """
    Order:
    - payment_method: online | cod
    - payment_status: pending | completed | failed | refunded
    - order_status: pending | confirmed | shipped | delivered | cancelled | refunded
    """
    __tablename__ = "orders"

    PM_ONLINE = "online"
    PM_COD = "cod"

    PAY_PENDING = "pending"
    PAY_COMPLETED = "completed"
    PAY_FAILED = "failed"
    PAY_REFUNDED = "refunded"

    STATUS_PENDING = "pending"
    STATUS_CONFIRMED = "confirmed"
    STATUS_SHIPPED = "shipped"
    STATUS_DELIVERED = "delivered"
    STATUS_CANCELLED = "cancelled"
    STATUS_REFUNDED = "refunded"

    id = db.Column(db.Integer, primary_key=True)
    number = db.Column(db.String(40), unique=True, index=True, nullable=False)

    customer_id = db.Column(db.Integer, nullable=True, index=True)

    payment_method = db.Column(db.String(20), nullable=False, default=PM_ONLINE)
    payment_status = db.Column(db.String(20), nullable=False, default=PAY_PENDING)
    payment_ref = db.Column(db.String(120), nullable=True, index=True)
    order_status = db.Column(db.String(20), nullable=False, default=STATUS_PENDING)

    total_amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    # checkout retries land on the same order
    idempotency_key = db.Column(db.String(120), nullable=True, unique=True)

    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)
    delivered_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    items = db.relationship(
        "OrderItem", back_populates="order", cascade="all, delete-orphan", lazy="select", order_by="OrderItem.id"
    )
    payout_slices = db.relationship(
        "VendorPayoutSlice", back_populates="order", cascade="all, delete-orphan", lazy="select"
    )

    @property
    def is_paid(self) -> bool:
        return self.payment_status == self.PAY_COMPLETED

    def slice_for(self, vendor_id: int):
        for s in self.payout_slices or []:
            if s.vendor_id == vendor_id:
                return s
        return None

    def vendor_totals(self) -> Dict[int, Dict[str, Decimal]]:
        out: Dict[int, Dict[str, Decimal]] = {}
        for it in self.items or []:
            row = out.setdefault(it.vendor_id, {"vendor_earnings": Decimal("0.00"), "commission": Decimal("0.00")})
            row["vendor_earnings"] += money(it.vendor_earnings)
            row["commission"] += money(it.platform_commission)
        return out

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "number": self.number,
            "customer_id": self.customer_id,
            "payment_method": self.payment_method,
            "payment_status": self.payment_status,
            "order_status": self.order_status,
            "total_amount": str(money(self.total_amount)),
            "items": [it.to_dict() for it in self.items or []],
            "vendor_payouts": [s.to_dict() for s in self.payout_slices or []],
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<Order id={self.id} number={self.number} status={self.order_status}>"


class OrderItem(db.Model):
    __tablename__ = "order_items"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id", ondelete="SET NULL"), nullable=True)

    # snapshot so later vendor/commission changes never touch old orders
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)
    commission_rate_bps = db.Column(db.Integer, nullable=False)
    title_snapshot = db.Column(db.String(180), nullable=True)
    size = db.Column(db.String(40), nullable=True)

    quantity = db.Column(db.Integer, nullable=False, default=1)
    unit_price = db.Column(db.Numeric(12, 2), nullable=False, default=0)
    line_total = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    vendor_earnings = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    platform_commission = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    order = db.relationship("Order", back_populates="items", lazy="select")

    __table_args__ = (
        db.CheckConstraint("quantity >= 1", name="ck_order_item_qty_pos"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "product_id": self.product_id,
            "vendor_id": self.vendor_id,
            "quantity": self.quantity,
            "size": self.size,
            "unit_price": str(money(self.unit_price)),
            "commission_rate_bps": self.commission_rate_bps,
            "vendor_earnings": str(money(self.vendor_earnings)),
            "platform_commission": str(money(self.platform_commission)),
        }

    def __repr__(self) -> str:
        return f"<OrderItem id={self.id} order_id={self.order_id} qty={self.quantity}>"


class VendorPayoutSlice(db.Model):
    """
    Denormalized mirror of a vendor's ledger state for one order.
    status: held (not paid yet) | pending (sale posted) | released (paid out)
    """
    __tablename__ = "vendor_payout_slices"

    STATUS_HELD = "held"
    STATUS_PENDING = "pending"
    STATUS_RELEASED = "released"

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id", ondelete="CASCADE"), nullable=False, index=True)
    vendor_id = db.Column(db.Integer, db.ForeignKey("vendors.id"), nullable=False, index=True)

    amount = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    status = db.Column(db.String(20), nullable=False, default=STATUS_HELD)

    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    order = db.relationship("Order", back_populates="payout_slices", lazy="select")

    __table_args__ = (
        db.UniqueConstraint("order_id", "vendor_id", name="uq_payout_slice_order_vendor"),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {"vendor_id": self.vendor_id, "amount": str(money(self.amount)), "status": self.status}

    def __repr__(self) -> str:
        return f"<VendorPayoutSlice order_id={self.order_id} vendor_id={self.vendor_id} status={self.status}>"
