from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from datetime import date, timedelta
import json

from ..config import settings
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_membership, get_store_scope, require_permission
from ..stock_rules import decorate_product, resolve_store

router = APIRouter(prefix="/inventory", tags=["inventory"])


class StockScanIn(BaseModel):
    barcode: str
    # Owners may scan into a specific store when a barcode exists in several.
    store: Optional[str] = None


@router.get("", dependencies=[Depends(require_permission("inventory:read"))])
def stock_levels(company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, c.name AS category, p.barcode, p.price,
                       p.stock_foh, p.stock_boh, p.expiry_date,
                       p.store_id, s.code AS store_code
                FROM products p
                JOIN categories c ON c.id = p.category_id
                JOIN stores s ON s.id = p.store_id
                WHERE p.company_id = %s
                  AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
                ORDER BY s.code, p.name
                """,
                (company_id, scope, scope),
            )
            rows = cur.fetchall()
    today = date.today()
    items = [decorate_product(r, today) for r in rows]
    return {
        "items": items,
        "low_stock_threshold": settings.low_stock_threshold,
        "low_stock_count": sum(1 for i in items if i["is_low_stock"]),
        "total_units": sum(i["total_stock"] for i in items),
    }


@router.post("/scan", dependencies=[Depends(require_permission("inventory:scan"))])
def scan_to_stock(
    data: StockScanIn,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    """
    Receiving: each scan of a known product adds one unit to back-of-house.
    Unknown codes send the user to the create-product form.
    """
    barcode = (data.barcode or "").strip()
    if not barcode:
        raise HTTPException(status_code=400, detail="barcode is required")

    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                store_filter = scope
                if scope is None and data.store:
                    store = resolve_store(cur, company_id, data.store)
                    if not store:
                        raise HTTPException(status_code=404, detail="store not found")
                    store_filter = str(store["id"])

                cur.execute(
                    """
                    SELECT p.id, p.name, p.stock_foh, p.stock_boh, p.store_id, s.code AS store_code
                    FROM products p
                    JOIN stores s ON s.id = p.store_id
                    WHERE p.company_id = %s AND p.barcode = %s
                      AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
                    FOR UPDATE OF p
                    """,
                    (company_id, barcode, store_filter, store_filter),
                )
                matches = cur.fetchall()
                if not matches:
                    return {"found": False, "barcode": barcode, "next": "create_product"}
                if len(matches) > 1:
                    raise HTTPException(status_code=409, detail="barcode exists in several stores; choose a store")

                p = matches[0]
                cur.execute(
                    """
                    UPDATE products
                    SET stock_boh = stock_boh + 1, updated_at = now()
                    WHERE company_id = %s AND id = %s
                    RETURNING stock_foh, stock_boh
                    """,
                    (company_id, p["id"]),
                )
                levels = cur.fetchone()
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'inventory.scan_in', 'product', %s, %s::jsonb)
                    """,
                    (company_id, actor["user_id"], p["id"], json.dumps({"barcode": barcode, "delta_boh": 1})),
                )
                return {
                    "found": True,
                    "product_id": p["id"],
                    "name": p["name"],
                    "store_code": p["store_code"],
                    "stock_foh": levels["stock_foh"],
                    "stock_boh": levels["stock_boh"],
                    "total_stock": int(levels["stock_foh"]) + int(levels["stock_boh"]),
                }


def low_stock_products(cur, company_id: str, scope: Optional[str], threshold: int):
    cur.execute(
        """
        SELECT p.id, p.name, p.stock_foh, p.stock_boh,
               (p.stock_foh + p.stock_boh) AS total_stock,
               p.store_id, s.code AS store_code
        FROM products p
        JOIN stores s ON s.id = p.store_id
        WHERE p.company_id = %s
          AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
          AND (p.stock_foh + p.stock_boh) <= %s
        ORDER BY (p.stock_foh + p.stock_boh), p.name
        """,
        (company_id, scope, scope, threshold),
    )
    return cur.fetchall()


def expiring_products(cur, company_id: str, scope: Optional[str], today: date, days: int):
    cur.execute(
        """
        SELECT p.id, p.name, p.expiry_date, p.stock_foh, p.stock_boh,
               p.store_id, s.code AS store_code
        FROM products p
        JOIN stores s ON s.id = p.store_id
        WHERE p.company_id = %s
          AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
          AND p.expiry_date >= %s
          AND p.expiry_date < %s
        ORDER BY p.expiry_date, p.name
        """,
        (company_id, scope, scope, today, today + timedelta(days=days)),
    )
    rows = cur.fetchall()
    for r in rows:
        r["days_left"] = (r["expiry_date"] - today).days
    return rows


@router.get("/alerts/low-stock", dependencies=[Depends(require_permission("alerts:read"))])
def low_stock_alerts(company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            rows = low_stock_products(cur, company_id, scope, settings.low_stock_threshold)
    return {"threshold": settings.low_stock_threshold, "products": rows}


@router.get("/alerts/expiring", dependencies=[Depends(require_permission("alerts:read"))])
def expiring_alerts(company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            rows = expiring_products(cur, company_id, scope, date.today(), settings.expiry_alert_days)
    return {"days": settings.expiry_alert_days, "products": rows}
