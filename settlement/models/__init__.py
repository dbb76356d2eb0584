# settlement/models/__init__.py
from __future__ import annotations

import logging
import sqlite3
from typing import Any, Dict

from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from sqlalchemy import event
from sqlalchemy.engine import Engine

# ==========================================================
# Models HUB
# - one global db
# - init_models(app)
# - real exports: from settlement.models import LedgerEntry, PayoutRequest, ...
# ==========================================================

log = logging.getLogger("models")

db = SQLAlchemy()


# ---------- SQLite transactional behaviour ----------
# pysqlite opens transactions lazily and treats SAVEPOINT as a plain statement,
# which breaks nested (savepoint) inserts. Hand BEGIN back to SQLAlchemy.
@event.listens_for(Engine, "connect")
def _sqlite_on_connect(dbapi_connection, _record) -> None:
    if isinstance(dbapi_connection, sqlite3.Connection):
        dbapi_connection.isolation_level = None
        cur = dbapi_connection.cursor()
        cur.execute("PRAGMA foreign_keys=ON")
        cur.close()


@event.listens_for(Engine, "begin")
def _sqlite_on_begin(conn) -> None:
    if conn.dialect.name == "sqlite":
        conn.exec_driver_sql("BEGIN")


# ---------- init of DB + tables ----------
def init_models(app: Flask, auto_create_tables: bool = False) -> Dict[str, Any]:
    """
    db.init_app + register every model + create tables (local/dev/tests only).
    """
    db.init_app(app)

    out: Dict[str, Any] = {"ok": True, "tables": sorted(db.metadata.tables.keys())}

    if auto_create_tables:
        with app.app_context():
            db.create_all()
        log.info("db.create_all() OK (%d tables)", len(out["tables"]))

    return out


# ==========================================================
# EXPORTS (imported after db exists: every module does `from settlement.models import db`)
# ==========================================================

from settlement.models.vendor import Vendor, VendorWallet, WalletStatus  # noqa: E402
from settlement.models.product import Product, ProductVariant  # noqa: E402
from settlement.models.order import Order, OrderItem, VendorPayoutSlice  # noqa: E402
from settlement.models.ledger import (  # noqa: E402
    EntryStatus,
    EntryType,
    LedgerEntry,
    ReferenceType,
)
from settlement.models.payout import PayoutRequest, PayoutStatus  # noqa: E402
from settlement.models.audit import AuditLog, IssueStatus, ReconciliationIssue  # noqa: E402

__all__ = [
    "db",
    "init_models",
    "Vendor",
    "VendorWallet",
    "WalletStatus",
    "Product",
    "ProductVariant",
    "Order",
    "OrderItem",
    "VendorPayoutSlice",
    "LedgerEntry",
    "EntryType",
    "EntryStatus",
    "ReferenceType",
    "PayoutRequest",
    "PayoutStatus",
    "AuditLog",
    "ReconciliationIssue",
    "IssueStatus",
]
