from __future__ import annotations

import enum
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, FrozenSet, Optional

from sqlalchemy import (
    BigInteger,
    CheckConstraint,
    DateTime,
    Enum,
    ForeignKey,
    Index,
    Integer,
    Numeric,
    String,
    Text,
    UniqueConstraint,
    inspect,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship, validates

from settlement.errors import ImmutableEntryError, ValidationError
from settlement.models import db
from settlement.utils import ZERO, gen_public_id, json_dumps_compact, money, safe_str, utcnow


class EntryType(str, enum.Enum):
    SALE = "SALE"
    COMMISSION = "COMMISSION"
    REFUND = "REFUND"
    PAYOUT = "PAYOUT"
    ADJUSTMENT = "ADJUSTMENT"
    RESERVE = "RESERVE"


class EntryStatus(str, enum.Enum):
    PENDING = "PENDING"
    CLEARED = "CLEARED"
    VOIDED = "VOIDED"


class ReferenceType(str, enum.Enum):
    ORDER = "ORDER"
    PAYOUT = "PAYOUT"
    REFUND = "REFUND"
    DISPUTE = "DISPUTE"
    MANUAL = "MANUAL"


FINAL_STATUSES: FrozenSet[EntryStatus] = frozenset({EntryStatus.CLEARED, EntryStatus.VOIDED})

# columns a PENDING entry may still change when it settles
_SETTLE_COLUMNS = frozenset({"status", "cleared_at", "voided_at", "version", "note"})


@dataclass(frozen=True)
class EntryRule:
    amount_sign: str
    insert_statuses: FrozenSet[EntryStatus]


_ANY_LIVE = frozenset({EntryStatus.PENDING, EntryStatus.CLEARED})

_RULES: Dict[EntryType, EntryRule] = {
    EntryType.SALE: EntryRule("pos", _ANY_LIVE),
    # memo of the platform's cut; never part of a vendor balance
    EntryType.COMMISSION: EntryRule("nonzero", frozenset({EntryStatus.CLEARED})),
    EntryType.REFUND: EntryRule("neg", _ANY_LIVE),
    EntryType.PAYOUT: EntryRule("neg", frozenset({EntryStatus.CLEARED})),
    EntryType.ADJUSTMENT: EntryRule("nonzero", _ANY_LIVE),
    # PENDING reserve == active hold
    EntryType.RESERVE: EntryRule("neg", frozenset({EntryStatus.PENDING})),
}


def enforce_rule(entry_type: EntryType, amount: Decimal, status: EntryStatus) -> None:
    rule = _RULES.get(entry_type)
    if not rule:
        raise ValidationError(f"unknown entry_type {entry_type!r}")

    sign = rule.amount_sign
    ok = (
        (sign == "pos" and amount > ZERO)
        or (sign == "neg" and amount < ZERO)
        or (sign == "nonzero" and amount != ZERO)
    )
    if not ok:
        raise ValidationError(f"{entry_type.value} amount violates rule: expected {sign}, got {amount}")
    if status not in rule.insert_statuses:
        raise ValidationError(f"{entry_type.value} cannot be inserted as {status.value}")


class LedgerEntry(db.Model):
    """
    Immutable journal line affecting one vendor.

    Signed amount: credits > 0, debits < 0. Uniqueness of
    (vendor_id, idempotency_key) is what makes repeated events harmless.
    """
    __tablename__ = "ledger_entries"

    id: Mapped[int] = mapped_column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    public_id: Mapped[str] = mapped_column(
        String(40), nullable=False, unique=True, index=True, default=lambda: gen_public_id("le")
    )

    vendor_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("vendors.id", ondelete="RESTRICT"), nullable=False, index=True
    )

    entry_type: Mapped[EntryType] = mapped_column(Enum(EntryType, name="ledger_entry_type"), nullable=False, index=True)
    status: Mapped[EntryStatus] = mapped_column(
        Enum(EntryStatus, name="ledger_entry_status"), nullable=False, index=True, default=EntryStatus.PENDING
    )

    amount: Mapped[Decimal] = mapped_column(Numeric(18, 2), nullable=False)

    reference_type: Mapped[Optional[ReferenceType]] = mapped_column(
        Enum(ReferenceType, name="ledger_reference_type"), nullable=True
    )
    reference_id: Mapped[Optional[str]] = mapped_column(String(80), nullable=True, index=True)

    related_entry_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("ledger_entries.id", ondelete="SET NULL"), nullable=True, index=True
    )
    related_entry = relationship("LedgerEntry", remote_side=[id], lazy="select")

    idempotency_key: Mapped[str] = mapped_column(String(128), nullable=False)

    performed_by: Mapped[Optional[str]] = mapped_column(String(80), nullable=True)
    note: Mapped[Optional[str]] = mapped_column(String(300), nullable=True)
    meta_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    clear_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True, index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)
    cleared_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    voided_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)

    __table_args__ = (
        UniqueConstraint("vendor_id", "idempotency_key", name="uq_ledger_vendor_idempotency"),
        CheckConstraint("version >= 1", name="ck_ledger_version_gte_1"),
        CheckConstraint(
            "amount <= 999999999999.99 AND amount >= -999999999999.99",
            name="ck_ledger_amount_range",
        ),
        Index("ix_ledger_vendor_created", "vendor_id", "created_at"),
        Index("ix_ledger_vendor_status", "vendor_id", "status"),
        Index("ix_ledger_reference", "reference_type", "reference_id"),
        Index("ix_ledger_status_clear_at", "status", "clear_at"),
    )

    @validates("note")
    def _v_note(self, _key: str, v: Any) -> Optional[str]:
        return safe_str(v, 300) or None

    @validates("idempotency_key")
    def _v_ikey(self, _key: str, v: Any) -> str:
        s = safe_str(v, 128)
        if not s:
            raise ValidationError("idempotency_key is required")
        return s

    @validates("meta_json")
    def _v_meta(self, _key: str, v: Any) -> Optional[str]:
        return json_dumps_compact(v) or None

    @property
    def is_final(self) -> bool:
        return self.status in FINAL_STATUSES

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.public_id,
            "vendor_id": self.vendor_id,
            "type": self.entry_type.value,
            "status": self.status.value,
            "amount": str(money(self.amount)),
            "reference_type": self.reference_type.value if self.reference_type else None,
            "reference_id": self.reference_id,
            "idempotency_key": self.idempotency_key,
            "note": self.note,
            "clear_at": self.clear_at.isoformat() if self.clear_at else None,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "cleared_at": self.cleared_at.isoformat() if self.cleared_at else None,
            "voided_at": self.voided_at.isoformat() if self.voided_at else None,
        }

    def __repr__(self) -> str:
        return f"<LedgerEntry {self.public_id} {self.entry_type} {self.amount} {self.status}>"


@db.event.listens_for(LedgerEntry, "before_insert")
def _before_insert_entry(_mapper, _conn, target: LedgerEntry) -> None:
    target.amount = money(target.amount)
    target.status = target.status or EntryStatus.PENDING
    target.created_at = target.created_at or utcnow()
    if not target.public_id:
        target.public_id = gen_public_id("le")
    if target.status == EntryStatus.CLEARED and target.cleared_at is None:
        target.cleared_at = target.created_at

    enforce_rule(target.entry_type, target.amount, target.status)


@db.event.listens_for(LedgerEntry, "before_update")
def _before_update_entry(_mapper, _conn, target: LedgerEntry) -> None:
    state = inspect(target)

    hist = state.attrs.status.history
    previous = hist.deleted[0] if hist.deleted else target.status
    if previous in FINAL_STATUSES:
        raise ImmutableEntryError(f"ledger entry {target.public_id} is {previous.value} and immutable")

    for attr in state.mapper.column_attrs:
        if attr.key in _SETTLE_COLUMNS:
            continue
        if state.attrs[attr.key].history.has_changes():
            raise ImmutableEntryError(f"ledger entry field '{attr.key}' cannot change")

    target.version = int(target.version or 1) + 1


@db.event.listens_for(LedgerEntry, "before_delete")
def _before_delete_entry(_mapper, _conn, target: LedgerEntry) -> None:
    raise ImmutableEntryError(f"ledger entry {target.public_id} cannot be deleted (append-only)")


__all__ = [
    "EntryType",
    "EntryStatus",
    "ReferenceType",
    "FINAL_STATUSES",
    "LedgerEntry",
    "enforce_rule",
]
