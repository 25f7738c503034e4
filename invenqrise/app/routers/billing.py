from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from typing import List, Optional
from datetime import datetime, timezone
from decimal import Decimal
import json
import uuid

from ..config import settings
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_membership, get_store_scope, require_permission
from ..logs import json_log
from ..mailer import send_low_stock_email, send_receipt_email
from ..stock_rules import is_low_stock, require_store

router = APIRouter(prefix="/billing", tags=["billing"])


class CartLine(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(ge=1)


class BillingScanIn(BaseModel):
    barcode: str
    store: Optional[str] = None
    cart: List[CartLine] = []


class SaleIn(BaseModel):
    customer_id: Optional[uuid.UUID] = None
    items: List[CartLine] = []


def _in_cart(cart: List[CartLine], product_id) -> int:
    return sum(line.quantity for line in cart if str(line.product_id) == str(product_id))


@router.post("/scan", dependencies=[Depends(require_permission("billing:write"))])
def scan_for_checkout(
    data: BillingScanIn,
    company_id: str = Depends(get_company_id),
    scope: Optional[str] = Depends(get_store_scope),
):
    barcode = (data.barcode or "").strip()
    if not barcode:
        raise HTTPException(status_code=400, detail="barcode is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            store_filter = scope
            if scope is None and data.store:
                store_filter = str(require_store(cur, company_id, data.store)["id"])
            cur.execute(
                """
                SELECT p.id, p.name, p.price, p.barcode, p.stock_foh, p.stock_boh,
                       p.store_id, s.code AS store_code
                FROM products p
                JOIN stores s ON s.id = p.store_id
                WHERE p.company_id = %s AND p.barcode = %s
                  AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
                """,
                (company_id, barcode, store_filter, store_filter),
            )
            matches = cur.fetchall()
    if not matches:
        raise HTTPException(status_code=404, detail="product not found")
    if len(matches) > 1:
        raise HTTPException(status_code=409, detail="barcode exists in several stores; choose a store")
    p = matches[0]
    foh = int(p["stock_foh"] or 0)
    if foh <= 0:
        raise HTTPException(status_code=409, detail=f"{p['name']} is out of stock")
    available = foh - _in_cart(data.cart, p["id"])
    if available <= 0:
        raise HTTPException(status_code=409, detail=f"{p['name']} is out of stock")
    return {"product": p, "available": available}


def _notify_after_sale(sale: dict, cashier_email: str, low_stock: list[dict]) -> None:
    if sale.get("customer_email"):
        res = send_receipt_email(
            recipient_email=sale["customer_email"],
            customer_name=sale["customer_name"],
            sale_id=str(sale["id"]),
            sale_date=sale["sold_at"],
            store=sale["store_code"],
            items=sale["items"],
            total_amount=sale["amount"],
        )
        if not res.get("success"):
            json_log("warning", "billing.receipt_not_sent", sale_id=str(sale["id"]), error=res.get("message"))
    for p in low_stock:
        send_low_stock_email(
            recipient_email=cashier_email,
            product_name=p["name"],
            store=sale["store_code"],
            current_stock=p["total_stock"],
        )


@router.post("/sales", dependencies=[Depends(require_permission("billing:write"))])
def create_sale(
    data: SaleIn,
    background_tasks: BackgroundTasks,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    """
    Check out a cart.

    Front-of-house stock is decremented under row locks in the same transaction
    that records the sale, so two tills can never sell the same last unit.
    Receipt and low-stock emails go out after the response.
    """
    if not data.items:
        raise HTTPException(status_code=400, detail="cart is empty")
    if not data.customer_id:
        raise HTTPException(status_code=400, detail="customer is required")

    qty_by_product: dict[str, int] = {}
    for line in data.items:
        key = str(line.product_id)
        qty_by_product[key] = qty_by_product.get(key, 0) + line.quantity

    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name, email FROM customers WHERE company_id = %s AND id = %s",
                    (company_id, data.customer_id),
                )
                customer = cur.fetchone()
                if not customer:
                    raise HTTPException(status_code=404, detail="customer not found")

                # Lock in id order so concurrent checkouts cannot deadlock.
                cur.execute(
                    """
                    SELECT p.id, p.name, p.price, p.stock_foh, p.stock_boh, p.store_id, s.code AS store_code
                    FROM products p
                    JOIN stores s ON s.id = p.store_id
                    WHERE p.company_id = %s AND p.id = ANY(%s::uuid[])
                      AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
                    ORDER BY p.id
                    FOR UPDATE OF p
                    """,
                    (company_id, list(qty_by_product.keys()), scope, scope),
                )
                products = {str(r["id"]): r for r in cur.fetchall()}
                missing = [pid for pid in qty_by_product if pid not in products]
                if missing:
                    raise HTTPException(status_code=404, detail="product not found")
                stores = {str(p["store_id"]) for p in products.values()}
                if len(stores) > 1:
                    raise HTTPException(status_code=400, detail="all items must come from the same store")

                items = []
                amount = Decimal("0")
                for pid, qty in qty_by_product.items():
                    p = products[pid]
                    if int(p["stock_foh"] or 0) < qty:
                        raise HTTPException(
                            status_code=409,
                            detail=f"insufficient front-of-house stock for {p['name']}",
                        )
                    price = Decimal(p["price"])
                    amount += price * qty
                    items.append({"product_id": pid, "name": p["name"], "quantity": qty, "price": float(price)})

                low_stock = []
                for pid, qty in qty_by_product.items():
                    cur.execute(
                        """
                        UPDATE products
                        SET stock_foh = stock_foh - %s, updated_at = now()
                        WHERE company_id = %s AND id = %s
                        RETURNING stock_foh, stock_boh
                        """,
                        (qty, company_id, pid),
                    )
                    levels = cur.fetchone()
                    total = int(levels["stock_foh"]) + int(levels["stock_boh"])
                    if is_low_stock(total):
                        low_stock.append({"product_id": pid, "name": products[pid]["name"], "total_stock": total})

                first = next(iter(products.values()))
                sold_at = datetime.now(timezone.utc)
                cur.execute(
                    """
                    INSERT INTO sales
                      (id, company_id, store_id, customer_id, customer_name, customer_email,
                       amount, items, source, sold_at, created_by_user_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s::jsonb, 'pos', %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        first["store_id"],
                        customer["id"],
                        customer["name"],
                        customer["email"],
                        amount.quantize(Decimal("0.01")),
                        json.dumps(items),
                        sold_at,
                        actor["user_id"],
                    ),
                )
                sale_id = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'billing.sale', 'sale', %s, %s::jsonb)
                    """,
                    (company_id, actor["user_id"], sale_id, json.dumps({"amount": str(amount), "lines": len(items)})),
                )

    sale = {
        "id": sale_id,
        "store_id": first["store_id"],
        "store_code": first["store_code"],
        "customer_id": customer["id"],
        "customer_name": customer["name"],
        "customer_email": customer["email"],
        "amount": amount.quantize(Decimal("0.01")),
        "items": items,
        "sold_at": sold_at,
    }
    background_tasks.add_task(_notify_after_sale, sale, actor["email"], low_stock)
    return {"sale": sale, "low_stock": low_stock, "low_stock_threshold": settings.low_stock_threshold}
