from __future__ import annotations

import enum
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, List, Optional

from sqlalchemy import CheckConstraint, DateTime, Enum, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, validates

from settlement.models import db
from settlement.utils import gen_public_id, json_dumps_compact, json_loads_safe, money, safe_str, utcnow


class PayoutStatus(str, enum.Enum):
    REQUESTED = "REQUESTED"
    APPROVED = "APPROVED"
    PROCESSING = "PROCESSING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"


TERMINAL_STATUSES: FrozenSet[PayoutStatus] = frozenset(
    {PayoutStatus.COMPLETED, PayoutStatus.FAILED, PayoutStatus.CANCELLED}
)
IN_FLIGHT_STATUSES: FrozenSet[PayoutStatus] = frozenset(
    {PayoutStatus.REQUESTED, PayoutStatus.APPROVED, PayoutStatus.PROCESSING}
)


class PayoutRequest(db.Model):
    __tablename__ = "payout_requests"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(40), nullable=False, unique=True, index=True, default=lambda: gen_public_id("po")
    )

    vendor_id: Mapped[int] = mapped_column(Integer, ForeignKey("vendors.id"), nullable=False, index=True)
    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    status: Mapped[PayoutStatus] = mapped_column(
        Enum(PayoutStatus, name="payout_status"), nullable=False, index=True, default=PayoutStatus.REQUESTED
    )

    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)

    external_transaction_id: Mapped[Optional[str]] = mapped_column(String(120), nullable=True, index=True)
    failure_reason: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    notes: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)

    # orders whose cleared sales this payout settles (JSON list of ids)
    order_ids_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    requested_by: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    approved_by: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)

    request_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    approved_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    processed_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow)

    __table_args__ = (
        CheckConstraint("amount > 0", name="ck_payout_amount_pos"),
        Index("ix_payout_vendor_status", "vendor_id", "status"),
        Index("ix_payout_status_requested", "status", "request_date"),
    )

    @validates("failure_reason", "notes")
    def _v_text(self, _key: str, v: Any) -> Optional[str]:
        return safe_str(v, 300) or None

    @validates("external_transaction_id")
    def _v_ref(self, _key: str, v: Any) -> Optional[str]:
        return safe_str(v, 120) or None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    @property
    def order_ids(self) -> List[int]:
        return [int(x) for x in json_loads_safe(self.order_ids_json, default=[]) or []]

    @order_ids.setter
    def order_ids(self, ids: List[int]) -> None:
        self.order_ids_json = json_dumps_compact(sorted({int(i) for i in ids})) if ids else None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.public_id,
            "vendor_id": self.vendor_id,
            "amount": str(money(self.amount)),
            "status": self.status.value,
            "external_transaction_id": self.external_transaction_id,
            "failure_reason": self.failure_reason,
            "notes": self.notes,
            "order_ids": self.order_ids,
            "request_date": self.request_date.isoformat() if self.request_date else None,
            "approved_at": self.approved_at.isoformat() if self.approved_at else None,
            "processed_date": self.processed_date.isoformat() if self.processed_date else None,
        }

    def __repr__(self) -> str:
        return f"<PayoutRequest {self.public_id} vendor={self.vendor_id} {self.amount} {self.status}>"


@db.event.listens_for(PayoutRequest, "before_insert")
def _before_insert_payout(_mapper, _conn, target: PayoutRequest) -> None:
    target.amount = money(target.amount)
    if not target.public_id:
        target.public_id = gen_public_id("po")
    target.request_date = target.request_date or utcnow()
    target.updated_at = target.updated_at or utcnow()


@db.event.listens_for(PayoutRequest, "before_update")
def _before_update_payout(_mapper, _conn, target: PayoutRequest) -> None:
    target.updated_at = utcnow()


__all__ = ["PayoutStatus", "PayoutRequest", "TERMINAL_STATUSES", "IN_FLIGHT_STATUSES"]
