"""
Settlement utils hub
-------------------
Shared helpers: money, ids, JSON.

Rules:
- NO business logic here
- no imports from settlement.models / settlement.services (avoids cycles)
"""

from __future__ import annotations

import json
import secrets
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Mapping, Optional

from settlement.errors import ValidationError

TWOPLACES = Decimal("0.01")
ZERO = Decimal("0.00")
MAX_ABS_AMOUNT = Decimal("999999999999.99")
BPS_DENOMINATOR = Decimal("10000")
META_JSON_MAX_BYTES = 32_000


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    # SQLite hands back naive datetimes even for timezone=True columns
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def safe_str(v: Any, max_len: int) -> str:
    s = "" if v is None else str(v)
    s = s.strip()
    if len(s) > max_len:
        s = s[:max_len]
    return s


def to_decimal(v: Any, *, allow_negative: bool = True, field: str = "amount") -> Decimal:
    if v is None or (isinstance(v, str) and not v.strip()):
        raise ValidationError(f"{field} is required")
    if isinstance(v, bool):
        raise ValidationError(f"Invalid decimal value for {field}: {v!r}")
    try:
        d = v if isinstance(v, Decimal) else Decimal(str(v).strip())
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid decimal value for {field}: {v!r}") from e

    if d.is_nan() or d.is_infinite():
        raise ValidationError(f"{field} cannot be NaN/Infinity")

    d = d.quantize(TWOPLACES, rounding=ROUND_HALF_UP)

    if not allow_negative and d < 0:
        raise ValidationError(f"{field} cannot be negative")
    if abs(d) > MAX_ABS_AMOUNT:
        raise ValidationError(f"{field} out of allowed range")
    return d


def money(v: Any) -> Decimal:
    """Quantize an already-trusted numeric (DB value, sum) to 2 places."""
    if v is None:
        return ZERO
    d = v if isinstance(v, Decimal) else Decimal(str(v))
    return d.quantize(TWOPLACES, rounding=ROUND_HALF_UP)


def positive_amount(v: Any, *, field: str = "amount") -> Decimal:
    d = to_decimal(v, allow_negative=False, field=field)
    if d <= ZERO:
        raise ValidationError(f"{field} must be > 0")
    return d


def commission_for(item_total: Decimal, rate_bps: int) -> Decimal:
    return (money(item_total) * Decimal(int(rate_bps)) / BPS_DENOMINATOR).quantize(
        TWOPLACES, rounding=ROUND_HALF_UP
    )


def canonical_vendor_id(raw: Any) -> Optional[int]:
    """
    Vendor references arrive as ints, numeric strings, populated dicts
    ({"id": ..} / {"_id": ..} / {"vendor_id": ..}) or ORM objects.
    Returns the integer id or None when nothing usable is present.
    """
    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw if raw > 0 else None
    if isinstance(raw, str):
        s = raw.strip()
        return int(s) if s.isdigit() and int(s) > 0 else None
    if isinstance(raw, Mapping):
        for key in ("id", "_id", "vendor_id"):
            if key in raw:
                return canonical_vendor_id(raw[key])
        return None
    inner = getattr(raw, "id", None)
    if inner is not None and inner is not raw:
        return canonical_vendor_id(inner)
    return None


def require_vendor_id(raw: Any) -> int:
    vid = canonical_vendor_id(raw)
    if vid is None:
        raise ValidationError(f"Invalid vendor id: {raw!r}")
    return vid


def gen_public_id(prefix: str) -> str:
    return f"{prefix}_{secrets.token_urlsafe(12)}"


def json_dumps_compact(obj: Any) -> str:
    if obj is None:
        return ""
    if isinstance(obj, str):
        s = obj.strip()
        if len(s.encode("utf-8")) > META_JSON_MAX_BYTES:
            raise ValidationError("meta_json too large")
        return s
    try:
        s2 = json.dumps(obj, ensure_ascii=False, separators=(",", ":"), sort_keys=True, default=str)
    except (TypeError, ValueError) as e:
        raise ValidationError("meta_json is not JSON-serializable") from e
    if len(s2.encode("utf-8")) > META_JSON_MAX_BYTES:
        raise ValidationError("meta_json too large")
    return s2


def json_loads_safe(s: Optional[str], default: Any = None) -> Any:
    if not s:
        return default
    try:
        return json.loads(s)
    except ValueError:
        return default


__all__ = [
    "TWOPLACES",
    "ZERO",
    "utcnow",
    "as_utc",
    "safe_str",
    "to_decimal",
    "money",
    "positive_amount",
    "commission_for",
    "canonical_vendor_id",
    "require_vendor_id",
    "gen_public_id",
    "json_dumps_compact",
    "json_loads_safe",
]
