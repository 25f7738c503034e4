from fastapi import APIRouter, Depends, HTTPException
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, Optional
import calendar

from ..config import settings
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_membership, require_permission
from ..permissions import ADMIN, OWNER
from .inventory import expiring_products, low_stock_products

router = APIRouter(prefix="/analytics", tags=["analytics"])


def _utc(d: date) -> datetime:
    return datetime.combine(d, time.min, tzinfo=timezone.utc)


def monthly_buckets(rows: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """12 buckets (Jan..Dec); rows carry bucket=1..12, revenue, sales."""
    by_month = {int(r["bucket"]): r for r in rows}
    out = []
    for m in range(1, 13):
        r = by_month.get(m) or {}
        out.append(
            {
                "month": calendar.month_abbr[m],
                "revenue": float(r.get("revenue") or 0),
                "sales": int(r.get("sales") or 0),
            }
        )
    return out


def daily_buckets(rows: list[dict[str, Any]], year: int, month: int) -> list[dict[str, Any]]:
    by_day = {int(r["bucket"]): r for r in rows}
    days = calendar.monthrange(year, month)[1]
    return [
        {
            "date": date(year, month, d).isoformat(),
            "revenue": float((by_day.get(d) or {}).get("revenue") or 0),
            "sales": int((by_day.get(d) or {}).get("sales") or 0),
        }
        for d in range(1, days + 1)
    ]


def _series(cur, company_id: str, part: str, start: date, end: date) -> list[dict[str, Any]]:
    # part is a fixed literal ('month' or 'day').
    cur.execute(
        f"""
        SELECT EXTRACT({part} FROM sold_at AT TIME ZONE 'UTC')::int AS bucket,
               COALESCE(SUM(amount), 0) AS revenue,
               COUNT(*)::int AS sales
        FROM sales
        WHERE company_id = %s AND sold_at >= %s AND sold_at < %s
        GROUP BY 1
        ORDER BY 1
        """,
        (company_id, _utc(start), _utc(end)),
    )
    return cur.fetchall()


def _year_series(cur, company_id: str, year: int):
    return monthly_buckets(_series(cur, company_id, "month", date(year, 1, 1), date(year + 1, 1, 1)))


def _month_series(cur, company_id: str, year: int, month: int):
    start = date(year, month, 1)
    end = date(year + 1, 1, 1) if month == 12 else date(year, month + 1, 1)
    return daily_buckets(_series(cur, company_id, "day", start, end), year, month)


def parse_month(raw: Optional[str], today: date) -> tuple[int, int]:
    if not raw:
        return today.year, today.month
    try:
        y, m = raw.split("-", 1)
        year, month = int(y), int(m)
    except ValueError:
        raise HTTPException(status_code=400, detail="month must be YYYY-MM")
    if not 1 <= month <= 12:
        raise HTTPException(status_code=400, detail="month must be YYYY-MM")
    return year, month


@router.get("/dashboard", dependencies=[Depends(require_permission("dashboard:read"))])
def dashboard(company_id: str = Depends(get_company_id), membership=Depends(get_membership)):
    today = date.today()
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(SUM(amount), 0) AS total_revenue, COUNT(*)::int AS total_sales
                FROM sales
                WHERE company_id = %s
                """,
                (company_id,),
            )
            totals = cur.fetchone() or {}
            cur.execute("SELECT COUNT(*)::int AS n FROM products WHERE company_id = %s", (company_id,))
            total_products = (cur.fetchone() or {}).get("n") or 0
            cur.execute(
                """
                SELECT COUNT(*)::int AS n
                FROM user_roles ur
                JOIN users u ON u.id = ur.user_id
                WHERE ur.company_id = %s AND u.is_active = true
                """,
                (company_id,),
            )
            active_users = (cur.fetchone() or {}).get("n") or 0
            cur.execute(
                """
                SELECT sa.id, sa.sold_at, sa.customer_name, sa.amount, st.code AS store_code
                FROM sales sa
                LEFT JOIN stores st ON st.id = sa.store_id
                WHERE sa.company_id = %s
                ORDER BY sa.sold_at DESC
                LIMIT 5
                """,
                (company_id,),
            )
            recent = cur.fetchall()

            out = {
                "total_revenue": Decimal(totals.get("total_revenue") or 0),
                "total_sales": int(totals.get("total_sales") or 0),
                "total_products": int(total_products),
                "active_users": int(active_users),
                "recent_sales": recent,
                "monthly": _year_series(cur, company_id, today.year),
                "daily": _month_series(cur, company_id, today.year, today.month),
            }
            if membership["role"] in (OWNER, ADMIN):
                scope = None if membership["role"] == OWNER else membership["store_id"]
                out["low_stock"] = low_stock_products(cur, company_id, scope, settings.low_stock_threshold)
                out["expiring_soon"] = expiring_products(cur, company_id, scope, today, settings.expiry_alert_days)
            return out


@router.get("/sales", dependencies=[Depends(require_permission("analytics:read"))])
def sales_analytics(month: Optional[str] = None, company_id: str = Depends(get_company_id)):
    today = date.today()
    year, mon = parse_month(month, today)
    start = date(year, mon, 1)
    end = date(year + 1, 1, 1) if mon == 12 else date(year, mon + 1, 1)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(SUM(amount), 0) AS total_revenue, COUNT(*)::int AS sales_count
                FROM sales
                WHERE company_id = %s AND sold_at >= %s AND sold_at < %s
                """,
                (company_id, _utc(start), _utc(end)),
            )
            totals = cur.fetchone() or {}
            cur.execute("SELECT COUNT(*)::int AS n FROM customers WHERE company_id = %s", (company_id,))
            customers = (cur.fetchone() or {}).get("n") or 0
            monthly = _year_series(cur, company_id, today.year)
            daily = _month_series(cur, company_id, year, mon)

    revenue = Decimal(totals.get("total_revenue") or 0)
    count = int(totals.get("sales_count") or 0)
    return {
        "month": f"{year:04d}-{mon:02d}",
        "total_revenue": revenue,
        "sales_count": count,
        "average_sale_value": (revenue / count).quantize(Decimal("0.01")) if count else Decimal("0.00"),
        "customer_count": int(customers),
        "monthly": monthly,
        "daily": daily,
    }
