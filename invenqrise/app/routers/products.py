from fastapi import APIRouter, Depends, HTTPException, UploadFile, File
from fastapi.responses import Response
from pydantic import BaseModel, Field
from typing import Optional
from datetime import date
from decimal import Decimal
import json
import uuid

from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_membership, get_store_scope, require_permission
from ..importers.csv_rows import parse_product_row, read_csv_upload
from ..labels import qr_label_png
from ..permissions import OWNER
from ..stock_rules import decorate_product, resolve_store
from ..validation import ProductName

router = APIRouter(prefix="/products", tags=["products"])

RECENT_COUNT = 3
DEFAULT_OWNER_STORE = "Online"

PRODUCT_SELECT = """
    SELECT p.id, p.name, p.category_id, c.name AS category, p.price,
           p.stock_foh, p.stock_boh, p.barcode, p.image_url, p.ai_hint, p.expiry_date,
           p.store_id, s.code AS store_code, p.created_at, p.updated_at
    FROM products p
    JOIN categories c ON c.id = p.category_id
    JOIN stores s ON s.id = p.store_id
"""


class ProductIn(BaseModel):
    name: ProductName
    category: str
    price: Decimal = Field(ge=0, decimal_places=2)
    stock_foh: int = Field(0, ge=0)
    stock_boh: int = Field(0, ge=0)
    barcode: Optional[str] = None
    store: Optional[str] = None
    expiry_date: Optional[date] = None


class ProductUpdate(BaseModel):
    name: Optional[ProductName] = None
    category: Optional[str] = None
    price: Optional[Decimal] = Field(None, ge=0, decimal_places=2)
    stock_foh: Optional[int] = Field(None, ge=0)
    stock_boh: Optional[int] = Field(None, ge=0)
    barcode: Optional[str] = None
    store: Optional[str] = None
    expiry_date: Optional[date] = None


class ScanIn(BaseModel):
    barcode: str


def ai_hint_for(name: str) -> str:
    return " ".join((name or "").split()[:2]).lower()


def placeholder_image_url() -> str:
    return f"https://picsum.photos/seed/{uuid.uuid4().hex[:12]}/400/400"


def _resolve_category(cur, company_id: str, ref: str) -> dict:
    ref = (ref or "").strip()
    cur.execute(
        """
        SELECT id, name
        FROM categories
        WHERE company_id = %s AND (id::text = %s OR lower(name) = lower(%s))
        LIMIT 1
        """,
        (company_id, ref, ref),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=400, detail="category not found")
    return row


def _target_store(cur, company_id: str, actor: dict, requested: Optional[str]) -> dict:
    """Owners choose the store (default Online); everyone else writes to their own."""
    if actor["role"] == OWNER:
        store = resolve_store(cur, company_id, requested or DEFAULT_OWNER_STORE)
        if not store:
            raise HTTPException(status_code=404, detail="store not found")
        return store
    if not actor["store_id"]:
        raise HTTPException(status_code=400, detail="you are not assigned to a store")
    return {"id": actor["store_id"], "code": actor["store_code"]}


def _assert_barcode_free(cur, company_id: str, store_id, barcode: Optional[str], exclude_id=None):
    if not barcode:
        return
    cur.execute(
        """
        SELECT id
        FROM products
        WHERE company_id = %s AND store_id = %s AND barcode = %s
          AND (%s::uuid IS NULL OR id <> %s::uuid)
        LIMIT 1
        """,
        (company_id, store_id, barcode, exclude_id, exclude_id),
    )
    if cur.fetchone():
        raise HTTPException(status_code=409, detail="barcode already exists in this store")


def _load_product(cur, company_id: str, product_id: str, scope: Optional[str], *, for_update: bool = False) -> dict:
    cur.execute(
        PRODUCT_SELECT
        + """
        WHERE p.company_id = %s AND p.id = %s
        """
        + (" FOR UPDATE OF p" if for_update else ""),
        (company_id, product_id),
    )
    row = cur.fetchone()
    if not row:
        raise HTTPException(status_code=404, detail="product not found")
    if scope is not None and str(row["store_id"]) != scope:
        raise HTTPException(status_code=404, detail="product not found")
    return row


@router.get("", dependencies=[Depends(require_permission("products:read"))])
def list_products(company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                PRODUCT_SELECT
                + """
                WHERE p.company_id = %s
                  AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
                ORDER BY p.created_at DESC, p.name
                """,
                (company_id, scope, scope),
            )
            rows = cur.fetchall()
    today = date.today()
    products = [decorate_product(r, today) for r in rows]
    return {"recent": products[:RECENT_COUNT], "products": products[RECENT_COUNT:], "total": len(products)}


@router.post("", dependencies=[Depends(require_permission("products:write"))])
def create_product(data: ProductIn, company_id: str = Depends(get_company_id), actor=Depends(get_membership)):
    barcode = (data.barcode or "").strip() or None
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                store = _target_store(cur, company_id, actor, data.store)
                category = _resolve_category(cur, company_id, data.category)
                _assert_barcode_free(cur, company_id, store["id"], barcode)
                cur.execute(
                    """
                    INSERT INTO products (id, company_id, store_id, category_id, name, price,
                                          stock_foh, stock_boh, barcode, image_url, ai_hint, expiry_date)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        store["id"],
                        category["id"],
                        data.name,
                        data.price,
                        data.stock_foh,
                        data.stock_boh,
                        barcode,
                        placeholder_image_url(),
                        ai_hint_for(data.name),
                        data.expiry_date,
                    ),
                )
                pid = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'products.create', 'product', %s, %s::jsonb)
                    """,
                    (
                        company_id,
                        actor["user_id"],
                        pid,
                        json.dumps({"name": data.name, "store": store["code"], "barcode": barcode}),
                    ),
                )
                return {"id": pid, "store_id": store["id"], "store_code": store["code"]}


@router.post("/scan", dependencies=[Depends(require_permission("products:read"))])
def scan_product(data: ScanIn, company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    """
    Resolve a scanned QR code: an existing product opens its editor, an unknown
    code opens the create form prefilled with the barcode.
    """
    barcode = (data.barcode or "").strip()
    if not barcode:
        raise HTTPException(status_code=400, detail="barcode is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT p.id, p.name, s.code AS store_code
                FROM products p
                JOIN stores s ON s.id = p.store_id
                WHERE p.company_id = %s AND p.barcode = %s
                  AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
                ORDER BY p.created_at DESC
                LIMIT 1
                """,
                (company_id, barcode, scope, scope),
            )
            row = cur.fetchone()
    if not row:
        return {"found": False, "barcode": barcode, "next": "create_product"}
    return {"found": True, "product_id": row["id"], "name": row["name"], "store_code": row["store_code"], "next": "edit_product"}


@router.post("/import", dependencies=[Depends(require_permission("products:write"))])
def import_products(
    file: UploadFile = File(...),
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
):
    """
    Bulk-create products from CSV (name, category, price, stock_foh, stock_boh, barcode, storeId).
    Unknown categories are created. storeId is honoured for Owners only.
    """
    rows = read_csv_upload(file)
    is_owner = actor["role"] == OWNER
    if not is_owner and not actor["store_id"]:
        raise HTTPException(status_code=400, detail="you are not assigned to a store")

    imported = 0
    errors = []
    created_categories = []
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute("SELECT id, name FROM categories WHERE company_id = %s", (company_id,))
                categories = {r["name"].lower(): r["id"] for r in cur.fetchall()}
                stores: dict[str, Optional[dict]] = {}
                seen: set[tuple[str, str]] = set()

                for n, raw in enumerate(rows, start=2):
                    try:
                        row = parse_product_row(raw)
                    except ValueError as exc:
                        errors.append({"row": n, "reason": str(exc)})
                        continue

                    if is_owner:
                        ref = row["store"] or ""
                        if ref not in stores:
                            stores[ref] = resolve_store(cur, company_id, ref)
                        store = stores[ref]
                    else:
                        store = {"id": actor["store_id"], "code": actor["store_code"]}
                    if not store:
                        errors.append({"row": n, "reason": "unknown or missing store"})
                        continue

                    barcode = row["barcode"]
                    if barcode:
                        key = (str(store["id"]), barcode)
                        cur.execute(
                            "SELECT 1 FROM products WHERE company_id = %s AND store_id = %s AND barcode = %s",
                            (company_id, store["id"], barcode),
                        )
                        if key in seen or cur.fetchone():
                            errors.append({"row": n, "reason": "duplicate barcode in store"})
                            continue
                        seen.add(key)

                    cat_id = categories.get(row["category"].lower())
                    if not cat_id:
                        cur.execute(
                            "INSERT INTO categories (id, company_id, name) VALUES (gen_random_uuid(), %s, %s) RETURNING id",
                            (company_id, row["category"]),
                        )
                        cat_id = cur.fetchone()["id"]
                        categories[row["category"].lower()] = cat_id
                        created_categories.append(row["category"])

                    cur.execute(
                        """
                        INSERT INTO products (id, company_id, store_id, category_id, name, price,
                                              stock_foh, stock_boh, barcode, image_url, ai_hint)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                        """,
                        (
                            company_id,
                            store["id"],
                            cat_id,
                            row["name"],
                            row["price"],
                            row["stock_foh"],
                            row["stock_boh"],
                            barcode,
                            placeholder_image_url(),
                            ai_hint_for(row["name"]),
                        ),
                    )
                    imported += 1

                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'products.import', 'product', NULL, %s::jsonb)
                    """,
                    (
                        company_id,
                        actor["user_id"],
                        json.dumps({"imported": imported, "skipped": len(errors), "created_categories": created_categories}),
                    ),
                )
    return {
        "imported": imported,
        "skipped": len(errors),
        "errors": errors[:50],
        "created_categories": created_categories,
    }


@router.get("/{product_id}", dependencies=[Depends(require_permission("products:read"))])
def get_product(product_id: uuid.UUID, company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            row = _load_product(cur, company_id, str(product_id), scope)
    return {"product": decorate_product(row, date.today())}


@router.patch("/{product_id}", dependencies=[Depends(require_permission("products:write"))])
def update_product(
    product_id: uuid.UUID,
    data: ProductUpdate,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}
    pid = str(product_id)

    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                current = _load_product(cur, company_id, pid, scope, for_update=True)
                fields = []
                params = []

                store_id = current["store_id"]
                if "store" in patch:
                    if actor["role"] != OWNER:
                        raise HTTPException(status_code=403, detail="only owners can move products between stores")
                    if not patch["store"]:
                        raise HTTPException(status_code=422, detail="store cannot be empty")
                    store_id = _target_store(cur, company_id, actor, patch["store"])["id"]
                    fields.append("store_id = %s")
                    params.append(store_id)

                if "name" in patch:
                    if patch["name"] is None:
                        raise HTTPException(status_code=422, detail="name cannot be empty")
                    fields += ["name = %s", "ai_hint = %s"]
                    params += [patch["name"], ai_hint_for(patch["name"])]
                if "category" in patch:
                    fields.append("category_id = %s")
                    params.append(_resolve_category(cur, company_id, patch["category"] or "")["id"])
                for key in ("price", "stock_foh", "stock_boh"):
                    if key in patch:
                        if patch[key] is None:
                            raise HTTPException(status_code=422, detail=f"{key} cannot be empty")
                        fields.append(f"{key} = %s")
                        params.append(patch[key])
                if "expiry_date" in patch:
                    fields.append("expiry_date = %s")
                    params.append(patch["expiry_date"])

                barcode = current["barcode"]
                if "barcode" in patch:
                    barcode = (patch["barcode"] or "").strip() or None
                    fields.append("barcode = %s")
                    params.append(barcode)
                if "barcode" in patch or "store" in patch:
                    _assert_barcode_free(cur, company_id, store_id, barcode, exclude_id=pid)

                cur.execute(
                    f"""
                    UPDATE products
                    SET {', '.join(fields)}, updated_at = now()
                    WHERE company_id = %s AND id = %s
                    """,
                    [*params, company_id, pid],
                )
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'products.update', 'product', %s, %s::jsonb)
                    """,
                    (company_id, actor["user_id"], pid, json.dumps(patch, default=str)),
                )
                return {"ok": True}


@router.delete("/{product_id}", dependencies=[Depends(require_permission("products:write"))])
def delete_product(
    product_id: uuid.UUID,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    pid = str(product_id)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                current = _load_product(cur, company_id, pid, scope, for_update=True)
                cur.execute(
                    """
                    SELECT 1
                    FROM stock_transfer_lines l
                    JOIN stock_transfers t ON t.id = l.transfer_id
                    WHERE l.company_id = %s AND l.product_id = %s AND t.status <> 'Completed'
                    LIMIT 1
                    """,
                    (company_id, pid),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="product has open stock transfers")
                # Completed transfer lines only keep history; drop them with the product.
                cur.execute("DELETE FROM stock_transfer_lines WHERE company_id = %s AND product_id = %s", (company_id, pid))
                cur.execute("DELETE FROM products WHERE company_id = %s AND id = %s", (company_id, pid))
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'products.delete', 'product', %s, %s::jsonb)
                    """,
                    (company_id, actor["user_id"], pid, json.dumps({"name": current["name"], "barcode": current["barcode"]})),
                )
                return {"ok": True}


@router.get("/{product_id}/qr.png", dependencies=[Depends(require_permission("products:read"))])
def product_qr_label(product_id: uuid.UUID, company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            row = _load_product(cur, company_id, str(product_id), scope)
    if not row["barcode"]:
        raise HTTPException(status_code=404, detail="product has no barcode")
    png = qr_label_png(row["barcode"], caption=row["name"], subcaption=f"{float(row['price']):.2f}")
    return Response(
        content=png,
        media_type="image/png",
        # Barcodes are free QR text; keep the header ASCII.
        headers={"Content-Disposition": f'inline; filename="product-{product_id}.png"'},
    )
