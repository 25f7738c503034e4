import json
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from psycopg.errors import UniqueViolation  # type: ignore
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..validation import StoreCode

router = APIRouter(prefix="/stores", tags=["stores"])

DEFAULT_STORES = (("Online", "Online Store"), ("Downtown", "Downtown"), ("Northside", "Northside"))


class StoreIn(BaseModel):
    code: StoreCode
    name: str


@router.get("", dependencies=[Depends(require_permission("dashboard:read"))])
def list_stores(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT id, code, name, created_at
                FROM stores
                WHERE company_id = %s
                ORDER BY code
                """,
                (company_id,),
            )
            return {"stores": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("stores:write"))])
def create_store(data: StoreIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    name = (data.name or "").strip()
    if not name:
        raise HTTPException(status_code=422, detail="name is required")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                try:
                    cur.execute(
                        """
                        INSERT INTO stores (id, company_id, code, name)
                        VALUES (gen_random_uuid(), %s, %s, %s)
                        RETURNING id, code, name
                        """,
                        (company_id, data.code, name),
                    )
                except UniqueViolation:
                    raise HTTPException(status_code=409, detail="store code already exists")
                row = cur.fetchone()
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'stores.create', 'store', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], row["id"], json.dumps({"code": data.code, "name": name})),
                )
                return row
