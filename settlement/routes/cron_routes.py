# settlement/routes/cron_routes.py
from __future__ import annotations

from flask import Blueprint

from settlement.services.ledger_service import clear_pending_funds
from settlement.utils.http import bearer_gate, json_ok

cron_bp = Blueprint("cron", __name__, url_prefix="/cron")


@cron_bp.before_request
def _cron_gate():
    return bearer_gate("CRON_SECRET")


@cron_bp.post("/clear-funds")
def clear_funds():
    return json_ok({"sweep": clear_pending_funds()})
