from __future__ import annotations

from datetime import date, timedelta
from typing import Optional

from fastapi import HTTPException

from .config import settings
from .validation import ExpiryStatus


def total_stock(row: dict) -> int:
    return int(row.get("stock_foh") or 0) + int(row.get("stock_boh") or 0)


def is_low_stock(total: int, threshold: Optional[int] = None) -> bool:
    limit = settings.low_stock_threshold if threshold is None else threshold
    return int(total) <= limit


def expiry_status(expiry_date: Optional[date], today: date, warning_days: Optional[int] = None) -> ExpiryStatus:
    """none | expired | expiring_soon | valid. A product expiring today counts as expired."""
    if not expiry_date:
        return "none"
    days = settings.expiry_warning_days if warning_days is None else warning_days
    if expiry_date <= today:
        return "expired"
    if expiry_date <= today + timedelta(days=days):
        return "expiring_soon"
    return "valid"


def is_expiring_soon(expiry_date: Optional[date], today: date, alert_days: Optional[int] = None) -> bool:
    """Alert window is [today, today + alert_days)."""
    if not expiry_date:
        return False
    days = settings.expiry_alert_days if alert_days is None else alert_days
    return today <= expiry_date < today + timedelta(days=days)


def decorate_product(row: dict, today: date) -> dict:
    out = dict(row)
    total = total_stock(row)
    out["total_stock"] = total
    out["is_low_stock"] = is_low_stock(total)
    out["expiry_status"] = expiry_status(row.get("expiry_date"), today)
    return out


def resolve_store(cur, company_id: str, ref: Optional[str]) -> Optional[dict]:
    """Look a store up by id or by code ("Downtown")."""
    ref = (ref or "").strip()
    if not ref:
        return None
    cur.execute(
        """
        SELECT id, code, name
        FROM stores
        WHERE company_id = %s AND (id::text = %s OR lower(code) = lower(%s))
        LIMIT 1
        """,
        (company_id, ref, ref),
    )
    return cur.fetchone()


def require_store(cur, company_id: str, ref: Optional[str]) -> dict:
    store = resolve_store(cur, company_id, ref)
    if not store:
        raise HTTPException(status_code=404, detail="store not found")
    return store

