# settlement/models/audit.py
from __future__ import annotations

import enum
from typing import Any, Dict

from sqlalchemy import Index

from settlement.errors import ImmutableEntryError
from settlement.models import db
from settlement.utils import json_dumps_compact, json_loads_safe, utcnow


class AuditLog(db.Model):
    """
    Write-once trail of administrative actions:
    - wallet freeze/unfreeze/close, payout transitions, adjustments
    - who (actor), what (action), on which object (target_type/target_id)
    """

    __tablename__ = "audit_logs"

    id = db.Column(db.Integer, primary_key=True)

    actor = db.Column(db.String(80), nullable=True, index=True)
    action = db.Column(db.String(80), nullable=False, index=True)

    target_type = db.Column(db.String(40), nullable=False)
    target_id = db.Column(db.String(80), nullable=False)
    vendor_id = db.Column(db.Integer, nullable=True, index=True)

    reason = db.Column(db.String(300), nullable=True)
    payload = db.Column(db.Text, nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, index=True)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "actor": self.actor,
            "action": self.action,
            "target_type": self.target_type,
            "target_id": self.target_id,
            "vendor_id": self.vendor_id,
            "reason": self.reason,
            "payload": json_loads_safe(self.payload, default={}),
            "created_at": self.created_at.isoformat() if self.created_at else None,
        }

    def __repr__(self) -> str:
        return f"<AuditLog {self.action} {self.target_type}:{self.target_id}>"

    @classmethod
    def record(cls, *, action: str, target_type: str, target_id: Any, actor: Any = None,
               vendor_id: Any = None, reason: Any = None, payload: Any = None) -> "AuditLog":
        row = cls(
            actor=(str(actor)[:80] if actor else None),
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            vendor_id=vendor_id,
            reason=(str(reason)[:300] if reason else None),
            payload=json_dumps_compact(payload) or None,
        )
        db.session.add(row)
        return row


@db.event.listens_for(AuditLog, "before_update")
def _audit_is_write_once(_mapper, _conn, target: AuditLog) -> None:
    raise ImmutableEntryError(f"audit log #{target.id} is write-once")


class IssueStatus(str, enum.Enum):
    OPEN = "OPEN"
    RESOLVED = "RESOLVED"


class ReconciliationIssue(db.Model):
    """
    Money moved outside (payment confirmed, refund issued) but the ledger write
    failed. One row per (kind, reference_id); repeated failures bump `attempts`.
    """

    __tablename__ = "reconciliation_issues"

    id = db.Column(db.Integer, primary_key=True)

    # record_sale | record_refund | ...
    kind = db.Column(db.String(40), nullable=False, index=True)

    reference_type = db.Column(db.String(40), nullable=True)
    reference_id = db.Column(db.String(80), nullable=False)
    vendor_id = db.Column(db.Integer, nullable=True, index=True)

    error = db.Column(db.String(500), nullable=True)
    # everything needed to replay the write
    payload = db.Column(db.Text, nullable=True)

    attempts = db.Column(db.Integer, nullable=False, default=1)
    status = db.Column(db.Enum(IssueStatus, name="reconciliation_issue_status"), nullable=False,
                       default=IssueStatus.OPEN, index=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)
    resolved_at = db.Column(db.DateTime(timezone=True), nullable=True)

    __table_args__ = (
        db.UniqueConstraint("kind", "reference_id", name="uq_reconciliation_kind_ref"),
    )

    @property
    def payload_data(self) -> Dict[str, Any]:
        return json_loads_safe(self.payload, default={}) or {}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "kind": self.kind,
            "reference_type": self.reference_type,
            "reference_id": self.reference_id,
            "vendor_id": self.vendor_id,
            "error": self.error,
            "payload": self.payload_data,
            "attempts": self.attempts,
            "status": self.status.value,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "resolved_at": self.resolved_at.isoformat() if self.resolved_at else None,
        }

    def __repr__(self) -> str:
        return f"<ReconciliationIssue {self.kind}:{self.reference_id} {self.status}>"


Index("ix_audit_target_created", AuditLog.target_type, AuditLog.target_id, AuditLog.created_at)
Index("ix_reconciliation_status_created", ReconciliationIssue.status, ReconciliationIssue.created_at)
