# Vendors and their wallet rows
from __future__ import annotations

import enum
from decimal import Decimal
from typing import Any, Dict

from settlement.models import db
from settlement.utils import money, utcnow


class WalletStatus(str, enum.Enum):
    ACTIVE = "ACTIVE"
    FROZEN = "FROZEN"
    CLOSED = "CLOSED"


class Vendor(db.Model):
    """
    Vendor (shop) as seen by the settlement engine:
    - commission_rate_bps: CURRENT rate, copied into order items at checkout
    - total_orders / total_revenue: aggregate stats bumped by the order splitter
    """
    __tablename__ = "vendors"

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    email = db.Column(db.String(255), nullable=True)

    commission_rate_bps = db.Column(db.Integer, nullable=False, default=1000)

    total_orders = db.Column(db.Integer, nullable=False, default=0)
    total_revenue = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    wallet = db.relationship("VendorWallet", back_populates="vendor", uselist=False, lazy="select")

    __table_args__ = (
        db.CheckConstraint(
            "commission_rate_bps >= 0 AND commission_rate_bps <= 10000",
            name="ck_vendor_commission_bps_range",
        ),
    )

    def __repr__(self) -> str:
        return f"<Vendor id={self.id} name={self.name}>"


class VendorWallet(db.Model):
    """
    Administrative state of a vendor wallet.

    Balances are NOT authoritative here: the ledger is. cached_* columns are
    an advisory copy refreshed by reconciliation; `version` is the optimistic
    lock bumped by every reserve so concurrent payout requests serialize.
    """
    __tablename__ = "vendor_wallets"

    id = db.Column(db.Integer, primary_key=True)
    vendor_id = db.Column(
        db.Integer, db.ForeignKey("vendors.id", ondelete="CASCADE"), nullable=False, unique=True, index=True
    )

    status = db.Column(db.Enum(WalletStatus, name="wallet_status"), nullable=False, default=WalletStatus.ACTIVE)
    status_reason = db.Column(db.String(300), nullable=True)

    minimum_withdrawal = db.Column(db.Numeric(18, 2), nullable=False, default=Decimal("500.00"))

    cached_pending = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    cached_withdrawable = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    cached_frozen = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    last_reconciled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False, default=1)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    vendor = db.relationship("Vendor", back_populates="wallet", lazy="select")

    __table_args__ = (
        db.CheckConstraint("version >= 1", name="ck_wallet_version_gte_1"),
        db.CheckConstraint("minimum_withdrawal >= 0", name="ck_wallet_min_withdrawal_nonneg"),
    )

    @property
    def is_frozen(self) -> bool:
        return self.status == WalletStatus.FROZEN

    @property
    def is_closed(self) -> bool:
        return self.status == WalletStatus.CLOSED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "vendor_id": self.vendor_id,
            "status": self.status.value,
            "status_reason": self.status_reason,
            "minimum_withdrawal": str(money(self.minimum_withdrawal)),
            "cached_pending": str(money(self.cached_pending)),
            "cached_withdrawable": str(money(self.cached_withdrawable)),
            "cached_frozen": str(money(self.cached_frozen)),
            "last_reconciled_at": self.last_reconciled_at.isoformat() if self.last_reconciled_at else None,
            "version": self.version,
        }

    def __repr__(self) -> str:
        return f"<VendorWallet vendor_id={self.vendor_id} status={self.status}>"
