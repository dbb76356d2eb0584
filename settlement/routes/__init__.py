"""Settlement · Routes Package

JSON blueprints of the settlement engine:
- orders_bp   → /api/orders (checkout, payment/delivery events, refunds)
- vendors_bp  → /api/vendors (wallet, ledger, payout requests)
- admin_bp    → /admin (payout workflow, wallet actions, reconciliation)
- cron_bp     → /cron (clearance sweep)
"""

from __future__ import annotations

from flask import Flask

from .admin_routes import admin_bp
from .cron_routes import cron_bp
from .order_routes import orders_bp
from .vendor_routes import vendors_bp

BLUEPRINTS = (orders_bp, vendors_bp, admin_bp, cron_bp)


def register_blueprints(app: Flask) -> None:
    for bp in BLUEPRINTS:
        app.register_blueprint(bp)


__all__ = ["orders_bp", "vendors_bp", "admin_bp", "cron_bp", "register_blueprints"]
