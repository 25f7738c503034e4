import json
import uuid
from fastapi import APIRouter, Depends, File, HTTPException, UploadFile
from pydantic import BaseModel, ValidationError
from ..db import get_conn, set_company_context
from ..deps import get_company_id, require_permission, get_current_user
from ..importers.csv_rows import parse_customer_row, read_csv_upload
from ..validation import City, Email, PersonName, Phone

router = APIRouter(prefix="/customers", tags=["customers"])


class CustomerIn(BaseModel):
    name: PersonName
    email: Email
    phone: Phone
    city: City


@router.get("", dependencies=[Depends(require_permission("customers:read"))])
def list_customers(q: str = "", company_id: str = Depends(get_company_id)):
    needle = f"%{q.strip()}%" if q.strip() else ""
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, email, phone, city, created_at
                FROM customers
                WHERE company_id = %s
                  AND (%s = '' OR name ILIKE %s OR email ILIKE %s OR phone ILIKE %s)
                ORDER BY name
                LIMIT 1000
                """,
                (company_id, needle, needle, needle, needle),
            )
            return {"customers": cur.fetchall()}


@router.get("/{customer_id}", dependencies=[Depends(require_permission("customers:read"))])
def get_customer(customer_id: uuid.UUID, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, name, email, phone, city, created_at
                FROM customers
                WHERE company_id = %s AND id = %s
                """,
                (company_id, customer_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=404, detail="customer not found")
            cur.execute(
                """
                SELECT COUNT(*)::int AS sales_count, COALESCE(SUM(amount), 0) AS total_spent
                FROM sales
                WHERE company_id = %s AND customer_id = %s
                """,
                (company_id, customer_id),
            )
            row.update(cur.fetchone() or {})
            return {"customer": row}


@router.post("", dependencies=[Depends(require_permission("customers:write"))])
def create_customer(data: CustomerIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    INSERT INTO customers (id, company_id, name, email, phone, city)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    RETURNING id, name, email, phone, city, created_at
                    """,
                    (company_id, data.name, data.email, data.phone, data.city),
                )
                row = cur.fetchone()
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'customers.create', 'customer', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], row["id"], json.dumps({"email": data.email})),
                )
                return {"customer": row}


@router.delete("/{customer_id}", dependencies=[Depends(require_permission("customers:write"))])
def delete_customer(customer_id: uuid.UUID, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    # Past sales keep their customer name/email snapshot; customer_id is nulled by the FK.
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM customers WHERE company_id = %s AND id = %s RETURNING email",
                    (company_id, customer_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="customer not found")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'customers.delete', 'customer', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], customer_id, json.dumps({"email": row["email"]})),
                )
                return {"ok": True}


@router.post("/import", dependencies=[Depends(require_permission("customers:write"))])
def import_customers(
    file: UploadFile = File(...),
    company_id: str = Depends(get_company_id),
    user=Depends(get_current_user),
):
    rows = read_csv_upload(file)
    imported = 0
    errors = []
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                for n, raw in enumerate(rows, start=2):
                    try:
                        data = CustomerIn(**parse_customer_row(raw))
                    except ValueError as exc:
                        # pydantic's ValidationError is a ValueError.
                        reason = "invalid field values" if isinstance(exc, ValidationError) else str(exc)
                        errors.append({"row": n, "reason": reason})
                        continue
                    cur.execute(
                        """
                        INSERT INTO customers (id, company_id, name, email, phone, city)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                        """,
                        (company_id, data.name, data.email, data.phone, data.city),
                    )
                    imported += 1
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'customers.import', 'customer', NULL, %s::jsonb)
                    """,
                    (company_id, user["user_id"], json.dumps({"imported": imported, "skipped": len(errors)})),
                )
    return {"imported": imported, "skipped": len(errors), "errors": errors[:50]}
