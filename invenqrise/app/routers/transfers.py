from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from typing import List, Optional
import json
import uuid

from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_membership, get_store_scope, require_permission
from ..permissions import OWNER
from ..stock_rules import require_store
from ..validation import StockLocation, TransferStatus

router = APIRouter(prefix="/transfers", tags=["transfers"])

# Location name -> products column. Only these two values ever reach SQL.
LOCATION_COLUMNS = {"front-of-house": "stock_foh", "back-of-house": "stock_boh"}

PENDING: TransferStatus = "Pending Approval"
IN_TRANSIT: TransferStatus = "In Transit"
COMPLETED: TransferStatus = "Completed"


class TransferLineIn(BaseModel):
    product_id: uuid.UUID
    quantity: int = Field(ge=1)


class TransferIn(BaseModel):
    from_store: Optional[str] = None
    from_location: StockLocation
    to_store: Optional[str] = None
    to_location: StockLocation
    memo: Optional[str] = None
    lines: List[TransferLineIn] = Field(min_length=1)


# Non-owners see transfers touching their store on either side.
_VISIBLE = "(%s::uuid IS NULL OR t.from_store_id = %s::uuid OR t.to_store_id = %s::uuid)"


def _load_transfer(cur, company_id: str, transfer_id, scope: Optional[str], lock: bool = False):
    cur.execute(
        f"""
        SELECT t.id, t.status, t.from_store_id, fs.code AS from_store_code, t.from_location,
               t.to_store_id, ts.code AS to_store_code, t.to_location, t.memo,
               t.requested_by_user_id, t.approved_by_user_id, t.approved_at,
               t.completed_by_user_id, t.completed_at, t.created_at
        FROM stock_transfers t
        JOIN stores fs ON fs.id = t.from_store_id
        JOIN stores ts ON ts.id = t.to_store_id
        WHERE t.company_id = %s AND t.id = %s AND {_VISIBLE}
        {"FOR UPDATE OF t" if lock else ""}
        """,
        (company_id, transfer_id, scope, scope, scope),
    )
    tr = cur.fetchone()
    if not tr:
        raise HTTPException(status_code=404, detail="transfer not found")
    return tr


def _load_lines(cur, company_id: str, transfer_id):
    cur.execute(
        """
        SELECT l.id, l.product_id, p.name, p.barcode, l.quantity
        FROM stock_transfer_lines l
        JOIN products p ON p.id = l.product_id
        WHERE l.company_id = %s AND l.transfer_id = %s
        ORDER BY p.name
        """,
        (company_id, transfer_id),
    )
    return cur.fetchall()


def _audit(cur, company_id: str, user_id, action: str, transfer_id, details: dict):
    cur.execute(
        """
        INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
        VALUES (gen_random_uuid(), %s, %s, %s, 'stock_transfer', %s, %s::jsonb)
        """,
        (company_id, user_id, action, transfer_id, json.dumps(details)),
    )


@router.get("", dependencies=[Depends(require_permission("transfers:read"))])
def list_transfers(
    status: Optional[TransferStatus] = Query(None),
    company_id: str = Depends(get_company_id),
    scope: Optional[str] = Depends(get_store_scope),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                f"""
                SELECT t.id, t.status, fs.code AS from_store_code, t.from_location,
                       ts.code AS to_store_code, t.to_location, t.memo, t.created_at,
                       (SELECT COALESCE(SUM(l.quantity), 0)::int
                        FROM stock_transfer_lines l
                        WHERE l.transfer_id = t.id) AS total_units
                FROM stock_transfers t
                JOIN stores fs ON fs.id = t.from_store_id
                JOIN stores ts ON ts.id = t.to_store_id
                WHERE t.company_id = %s
                  AND (%s::text IS NULL OR t.status = %s)
                  AND {_VISIBLE}
                ORDER BY t.created_at DESC
                LIMIT 500
                """,
                (company_id, status, status, scope, scope, scope),
            )
            return {"transfers": cur.fetchall()}


@router.get("/{transfer_id}", dependencies=[Depends(require_permission("transfers:read"))])
def get_transfer(
    transfer_id: uuid.UUID,
    company_id: str = Depends(get_company_id),
    scope: Optional[str] = Depends(get_store_scope),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            tr = _load_transfer(cur, company_id, transfer_id, scope)
            tr["lines"] = _load_lines(cur, company_id, transfer_id)
            return {"transfer": tr}


@router.post("", dependencies=[Depends(require_permission("transfers:write"))])
def create_transfer(
    data: TransferIn,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    """
    Request a stock movement. Products are taken from the source store; staff
    outside the Owner role always move stock out of their own store.
    """
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                if actor["role"] == OWNER:
                    if not data.from_store:
                        raise HTTPException(status_code=400, detail="from_store is required")
                    from_store_id = str(require_store(cur, company_id, data.from_store)["id"])
                else:
                    from_store_id = scope
                to_store_id = str(require_store(cur, company_id, data.to_store)["id"]) if data.to_store else from_store_id

                if from_store_id == to_store_id and data.from_location == data.to_location:
                    raise HTTPException(status_code=400, detail="source and destination must differ")

                qty_by_product: dict[str, int] = {}
                for ln in data.lines:
                    key = str(ln.product_id)
                    qty_by_product[key] = qty_by_product.get(key, 0) + ln.quantity

                cur.execute(
                    """
                    SELECT id FROM products
                    WHERE company_id = %s AND store_id = %s AND id = ANY(%s::uuid[])
                    """,
                    (company_id, from_store_id, list(qty_by_product.keys())),
                )
                found = {str(r["id"]) for r in cur.fetchall()}
                missing = [pid for pid in qty_by_product if pid not in found]
                if missing:
                    raise HTTPException(status_code=400, detail=f"product not in source store: {missing[0]}")

                cur.execute(
                    """
                    INSERT INTO stock_transfers
                      (id, company_id, from_store_id, from_location, to_store_id, to_location,
                       status, memo, requested_by_user_id)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (
                        company_id,
                        from_store_id,
                        data.from_location,
                        to_store_id,
                        data.to_location,
                        PENDING,
                        (data.memo or "").strip() or None,
                        actor["user_id"],
                    ),
                )
                transfer_id = cur.fetchone()["id"]
                for pid, qty in qty_by_product.items():
                    cur.execute(
                        """
                        INSERT INTO stock_transfer_lines (id, company_id, transfer_id, product_id, quantity)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s)
                        """,
                        (company_id, transfer_id, pid, qty),
                    )
                _audit(cur, company_id, actor["user_id"], "stock_transfer.create", transfer_id, {"lines": len(qty_by_product)})
                return {"id": transfer_id, "status": PENDING}


@router.post("/{transfer_id}/approve", dependencies=[Depends(require_permission("transfers:approve"))])
def approve_transfer(
    transfer_id: uuid.UUID,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                tr = _load_transfer(cur, company_id, transfer_id, scope, lock=True)
                if tr["status"] != PENDING:
                    raise HTTPException(status_code=409, detail=f"transfer is {tr['status']}")
                cur.execute(
                    """
                    UPDATE stock_transfers
                    SET status = %s, approved_by_user_id = %s, approved_at = now()
                    WHERE company_id = %s AND id = %s
                    """,
                    (IN_TRANSIT, actor["user_id"], company_id, transfer_id),
                )
                _audit(cur, company_id, actor["user_id"], "stock_transfer.approve", transfer_id, {})
                return {"ok": True, "status": IN_TRANSIT}


def _destination_ids(cur, company_id: str, lines, to_store_id) -> dict:
    """Barcode -> product id in the destination store, read without locks."""
    barcodes = sorted({ln["barcode"] for ln in lines if ln["barcode"]})
    if not barcodes:
        return {}
    cur.execute(
        """
        SELECT id, barcode
        FROM products
        WHERE company_id = %s AND store_id = %s AND barcode = ANY(%s)
        """,
        (company_id, to_store_id, barcodes),
    )
    return {r["barcode"]: r["id"] for r in cur.fetchall()}


def _lock_products(cur, company_id: str, ids) -> dict:
    # Single statement in id order, the same lock order checkout uses.
    cur.execute(
        """
        SELECT id, name, barcode, store_id, stock_foh, stock_boh
        FROM products
        WHERE company_id = %s AND id = ANY(%s::uuid[])
        ORDER BY id
        FOR UPDATE
        """,
        (company_id, sorted({str(i) for i in ids})),
    )
    return {str(r["id"]): r for r in cur.fetchall()}


def _destination_product(source: dict, to_store_id, dest_ids: dict, locked: dict) -> dict:
    """Same store: the product itself. Across stores: the product with the same barcode."""
    if str(source["store_id"]) == str(to_store_id):
        return source
    if not source.get("barcode"):
        raise HTTPException(status_code=409, detail=f"{source['name']} has no barcode to match in the destination store")
    dest_id = dest_ids.get(source["barcode"])
    dest = locked.get(str(dest_id)) if dest_id else None
    # Recheck under the lock; the barcode lookup ran before it.
    if not dest or dest["barcode"] != source["barcode"] or str(dest["store_id"]) != str(to_store_id):
        raise HTTPException(status_code=409, detail=f"{source['name']} is not stocked in the destination store")
    return dest


@router.post("/{transfer_id}/complete", dependencies=[Depends(require_permission("transfers:write"))])
def complete_transfer(
    transfer_id: uuid.UUID,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                tr = _load_transfer(cur, company_id, transfer_id, scope, lock=True)
                if tr["status"] != IN_TRANSIT:
                    raise HTTPException(status_code=409, detail=f"transfer is {tr['status']}")

                src_col = LOCATION_COLUMNS[tr["from_location"]]
                dst_col = LOCATION_COLUMNS[tr["to_location"]]
                lines = _load_lines(cur, company_id, transfer_id)
                dest_ids = {}
                if str(tr["from_store_id"]) != str(tr["to_store_id"]):
                    dest_ids = _destination_ids(cur, company_id, lines, tr["to_store_id"])
                locked = _lock_products(cur, company_id, [ln["product_id"] for ln in lines] + list(dest_ids.values()))

                moved = []
                for ln in lines:
                    src = locked.get(str(ln["product_id"]))
                    if not src:
                        raise HTTPException(status_code=409, detail="product no longer exists")
                    qty = int(ln["quantity"])
                    if int(src[src_col] or 0) < qty:
                        raise HTTPException(
                            status_code=409,
                            detail=f"insufficient {tr['from_location']} stock for {src['name']}",
                        )
                    dest = _destination_product(src, tr["to_store_id"], dest_ids, locked)
                    cur.execute(
                        f"UPDATE products SET {src_col} = {src_col} - %s, updated_at = now() WHERE company_id = %s AND id = %s",
                        (qty, company_id, src["id"]),
                    )
                    cur.execute(
                        f"UPDATE products SET {dst_col} = {dst_col} + %s, updated_at = now() WHERE company_id = %s AND id = %s",
                        (qty, company_id, dest["id"]),
                    )
                    # Later lines for the same product see this line's move.
                    src[src_col] = int(src[src_col] or 0) - qty
                    dest[dst_col] = int(dest[dst_col] or 0) + qty
                    moved.append({"from_product_id": str(src["id"]), "to_product_id": str(dest["id"]), "quantity": qty})

                cur.execute(
                    """
                    UPDATE stock_transfers
                    SET status = %s, completed_by_user_id = %s, completed_at = now()
                    WHERE company_id = %s AND id = %s
                    """,
                    (COMPLETED, actor["user_id"], company_id, transfer_id),
                )
                _audit(cur, company_id, actor["user_id"], "stock_transfer.complete", transfer_id, {"moved": moved})
                return {"ok": True, "status": COMPLETED, "moved": moved}


@router.delete("/{transfer_id}", dependencies=[Depends(require_permission("transfers:write"))])
def delete_transfer(
    transfer_id: uuid.UUID,
    company_id: str = Depends(get_company_id),
    actor=Depends(get_membership),
    scope: Optional[str] = Depends(get_store_scope),
):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                tr = _load_transfer(cur, company_id, transfer_id, scope, lock=True)
                if tr["status"] == COMPLETED:
                    raise HTTPException(status_code=409, detail="completed transfers cannot be deleted")
                cur.execute("DELETE FROM stock_transfers WHERE company_id = %s AND id = %s", (company_id, transfer_id))
                _audit(cur, company_id, actor["user_id"], "stock_transfer.delete", transfer_id, {"status": tr["status"]})
                return {"ok": True}
