from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from typing import Optional
from datetime import date, datetime, time, timedelta, timezone
import json
import uuid

from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..importers.csv_rows import parse_sale_row, read_csv_upload
from ..stock_rules import resolve_store

router = APIRouter(prefix="/sales", tags=["sales"])

SALE_SELECT = """
    SELECT sa.id, sa.sold_at, sa.customer_id, sa.customer_name, sa.customer_email,
           sa.amount, sa.items, sa.source, sa.store_id, st.code AS store_code
    FROM sales sa
    LEFT JOIN stores st ON st.id = sa.store_id
"""


def day_bounds(start: Optional[date], end: Optional[date]):
    """[start 00:00, end+1 00:00) in UTC; either side may be open."""
    lo = datetime.combine(start, time.min, tzinfo=timezone.utc) if start else None
    hi = datetime.combine(end + timedelta(days=1), time.min, tzinfo=timezone.utc) if end else None
    return lo, hi


def fetch_sales(cur, company_id: str, start: Optional[date] = None, end: Optional[date] = None, limit: int = 5000):
    lo, hi = day_bounds(start, end)
    cur.execute(
        f"""
        {SALE_SELECT}
        WHERE sa.company_id = %s
          AND (%s::timestamptz IS NULL OR sa.sold_at >= %s::timestamptz)
          AND (%s::timestamptz IS NULL OR sa.sold_at < %s::timestamptz)
        ORDER BY sa.sold_at DESC
        LIMIT %s
        """,
        (company_id, lo, lo, hi, hi, limit),
    )
    return cur.fetchall()


@router.get("", dependencies=[Depends(require_permission("sales:read"))])
def list_sales(
    start_date: Optional[date] = None,
    end_date: Optional[date] = None,
    company_id: str = Depends(get_company_id),
):
    if start_date and end_date and end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must be on or after start_date")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            return {"sales": fetch_sales(cur, company_id, start_date, end_date)}


@router.get("/monthly-stats", dependencies=[Depends(require_permission("sales:read"))])
def monthly_stats(company_id: str = Depends(get_company_id)):
    """Highest and lowest selling product (by units) this month."""
    today = date.today()
    start = today.replace(day=1)
    lo, _ = day_bounds(start, None)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT COALESCE(it->>'product_id', it->>'name') AS product_key,
                       MAX(it->>'name') AS name,
                       SUM(COALESCE((it->>'quantity')::int, 0))::int AS units
                FROM sales sa
                CROSS JOIN LATERAL jsonb_array_elements(sa.items) AS it
                WHERE sa.company_id = %s AND sa.sold_at >= %s
                GROUP BY 1
                HAVING SUM(COALESCE((it->>'quantity')::int, 0)) > 0
                ORDER BY units DESC, name
                """,
                (company_id, lo),
            )
            rows = cur.fetchall()
    if not rows:
        return {"month": start.isoformat()[:7], "highest": None, "lowest": None}
    return {
        "month": start.isoformat()[:7],
        "highest": {"name": rows[0]["name"], "units": rows[0]["units"]},
        "lowest": {"name": rows[-1]["name"], "units": rows[-1]["units"]},
    }


@router.get("/{sale_id}", dependencies=[Depends(require_permission("sales:read"))])
def get_sale(sale_id: uuid.UUID, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(f"{SALE_SELECT} WHERE sa.company_id = %s AND sa.id = %s", (company_id, sale_id))
            sale = cur.fetchone()
            if not sale:
                raise HTTPException(status_code=404, detail="sale not found")
            return {"sale": sale}


@router.post("/import", dependencies=[Depends(require_permission("sales:import"))])
def import_sales(
    file: UploadFile = File(...),
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    """
    Historical sales from CSV: date, customer_name, customer_email, store_id,
    amount, items (JSON array). Bad rows are reported and skipped.
    """
    rows = read_csv_upload(file)
    imported = 0
    errors = []
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                stores: dict[str, Optional[dict]] = {}
                for n, raw in enumerate(rows, start=2):
                    try:
                        row = parse_sale_row(raw)
                    except ValueError as exc:
                        errors.append({"row": n, "reason": str(exc)})
                        continue
                    ref = row["store"]
                    if ref not in stores:
                        stores[ref] = resolve_store(cur, company_id, ref)
                    store = stores[ref]
                    if not store:
                        errors.append({"row": n, "reason": f"unknown store: {ref}"})
                        continue
                    cur.execute(
                        "SELECT id FROM customers WHERE company_id = %s AND lower(email) = %s LIMIT 1",
                        (company_id, row["customer_email"]),
                    )
                    customer = cur.fetchone()
                    cur.execute(
                        """
                        INSERT INTO sales
                          (id, company_id, store_id, customer_id, customer_name, customer_email,
                           amount, items, source, sold_at, created_by_user_id)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s::jsonb, 'import', %s, %s)
                        """,
                        (
                            company_id,
                            store["id"],
                            customer["id"] if customer else None,
                            row["customer_name"],
                            row["customer_email"],
                            row["amount"],
                            json.dumps(row["items"]),
                            row["sold_at"],
                            user["user_id"],
                        ),
                    )
                    imported += 1

                if imported == 0 and errors:
                    raise HTTPException(status_code=400, detail=f"no valid sales found ({len(errors)} row(s) rejected)")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'sales.import', 'sale', NULL, %s::jsonb)
                    """,
                    (company_id, user["user_id"], json.dumps({"imported": imported, "errors": len(errors)})),
                )
    return {"imported": imported, "skipped": len(errors), "errors": errors[:50]}
