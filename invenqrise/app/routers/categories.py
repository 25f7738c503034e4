from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from psycopg.errors import UniqueViolation  # type: ignore
import json

from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, get_store_scope, require_permission
from ..validation import CategoryName

router = APIRouter(prefix="/categories", tags=["categories"])


class CategoryIn(BaseModel):
    name: CategoryName


@router.get("", dependencies=[Depends(require_permission("categories:read"))])
def list_categories(company_id: str = Depends(get_company_id), scope: Optional[str] = Depends(get_store_scope)):
    # product_count only counts products the caller can see.
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.created_at,
                       COUNT(p.id)::int AS product_count
                FROM categories c
                LEFT JOIN products p
                  ON p.category_id = c.id
                 AND p.company_id = c.company_id
                 AND (%s::uuid IS NULL OR p.store_id = %s::uuid)
                WHERE c.company_id = %s
                GROUP BY c.id, c.name, c.created_at
                ORDER BY c.name
                """,
                (scope, scope, company_id),
            )
            return {"categories": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("categories:write"))])
def create_category(data: CategoryIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT 1 FROM categories WHERE company_id = %s AND lower(name) = lower(%s)",
                    (company_id, data.name),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="category already exists")
                try:
                    cur.execute(
                        """
                        INSERT INTO categories (id, company_id, name)
                        VALUES (gen_random_uuid(), %s, %s)
                        RETURNING id
                        """,
                        (company_id, data.name),
                    )
                except UniqueViolation:
                    raise HTTPException(status_code=409, detail="category already exists")
                cid = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'categories.create', 'category', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], cid, json.dumps({"name": data.name})),
                )
                return {"id": cid, "name": data.name}


@router.delete("/{category_id}", dependencies=[Depends(require_permission("categories:write"))])
def delete_category(category_id: str, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT id, name FROM categories WHERE company_id = %s AND id = %s FOR UPDATE",
                    (company_id, category_id),
                )
                cat = cur.fetchone()
                if not cat:
                    raise HTTPException(status_code=404, detail="category not found")
                cur.execute(
                    "SELECT COUNT(*)::int AS n FROM products WHERE company_id = %s AND category_id = %s",
                    (company_id, category_id),
                )
                in_use = int((cur.fetchone() or {}).get("n") or 0)
                if in_use:
                    raise HTTPException(status_code=409, detail=f"category is used by {in_use} product(s)")
                cur.execute(
                    "SELECT 1 FROM campaigns WHERE company_id = %s AND category_id = %s LIMIT 1",
                    (company_id, category_id),
                )
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="category is used by a campaign")
                cur.execute("DELETE FROM categories WHERE company_id = %s AND id = %s", (company_id, category_id))
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'categories.delete', 'category', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], category_id, json.dumps({"name": cat["name"]})),
                )
                return {"ok": True}
