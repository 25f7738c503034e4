from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel, Field, model_validator
from typing import List
from datetime import date
import json
import uuid

from ..ai.flows import suggest_campaign_name
from ..ai.providers import resolve_llm_config
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_current_user, require_permission
from ..validation import CampaignName, CampaignStatus

router = APIRouter(prefix="/campaigns", tags=["campaigns"])


class CampaignIn(BaseModel):
    name: CampaignName
    category_id: uuid.UUID
    start_date: date
    end_date: date
    product_ids: List[uuid.UUID] = Field(min_length=1)

    @model_validator(mode="after")
    def _dates(self):
        if self.end_date < self.start_date:
            raise ValueError("end_date must be on or after start_date")
        return self


class SuggestNameIn(BaseModel):
    category_id: uuid.UUID
    product_ids: List[uuid.UUID] = Field(min_length=1)


def campaign_status(start_date: date, end_date: date, today: date) -> CampaignStatus:
    if today < start_date:
        return "Upcoming"
    if today <= end_date:
        return "Active"
    return "Finished"


def _category_products(cur, company_id: str, category_id, product_ids) -> tuple[dict, list[dict]]:
    cur.execute("SELECT id, name FROM categories WHERE company_id = %s AND id = %s", (company_id, category_id))
    category = cur.fetchone()
    if not category:
        raise HTTPException(status_code=400, detail="category not found")
    ids = list(dict.fromkeys(str(p) for p in product_ids))
    cur.execute(
        """
        SELECT id, name, category_id
        FROM products
        WHERE company_id = %s AND id = ANY(%s::uuid[])
        """,
        (company_id, ids),
    )
    products = cur.fetchall()
    if len(products) != len(ids):
        raise HTTPException(status_code=400, detail="product not found")
    if any(str(p["category_id"]) != str(category["id"]) for p in products):
        raise HTTPException(status_code=400, detail="all products must belong to the campaign category")
    return category, products


@router.get("", dependencies=[Depends(require_permission("campaigns:read"))])
def list_campaigns(company_id: str = Depends(get_company_id)):
    today = date.today()
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT c.id, c.name, c.start_date, c.end_date, c.created_at,
                       c.category_id, cat.name AS category,
                       COALESCE(
                         json_agg(json_build_object('id', p.id, 'name', p.name) ORDER BY p.name)
                           FILTER (WHERE p.id IS NOT NULL),
                         '[]'::json
                       ) AS products
                FROM campaigns c
                JOIN categories cat ON cat.id = c.category_id
                LEFT JOIN campaign_products cp ON cp.campaign_id = c.id
                LEFT JOIN products p ON p.id = cp.product_id
                WHERE c.company_id = %s
                GROUP BY c.id, cat.name
                ORDER BY c.start_date DESC, c.name
                """,
                (company_id,),
            )
            rows = cur.fetchall()
    for r in rows:
        r["status"] = campaign_status(r["start_date"], r["end_date"], today)
    return {"campaigns": rows}


@router.post("", dependencies=[Depends(require_permission("campaigns:write"))])
def create_campaign(data: CampaignIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                category, products = _category_products(cur, company_id, data.category_id, data.product_ids)
                cur.execute(
                    """
                    INSERT INTO campaigns (id, company_id, name, category_id, start_date, end_date)
                    VALUES (gen_random_uuid(), %s, %s, %s, %s, %s)
                    RETURNING id
                    """,
                    (company_id, data.name, category["id"], data.start_date, data.end_date),
                )
                campaign_id = cur.fetchone()["id"]
                for p in products:
                    cur.execute(
                        "INSERT INTO campaign_products (campaign_id, product_id) VALUES (%s, %s)",
                        (campaign_id, p["id"]),
                    )
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'campaigns.create', 'campaign', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], campaign_id, json.dumps({"name": data.name, "products": len(products)})),
                )
    return {
        "id": campaign_id,
        "name": data.name,
        "status": campaign_status(data.start_date, data.end_date, date.today()),
    }


@router.post("/suggest-name", dependencies=[Depends(require_permission("campaigns:write"))])
def suggest_name(data: SuggestNameIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            category, products = _category_products(cur, company_id, data.category_id, data.product_ids)
            config = resolve_llm_config(cur, company_id)
    return suggest_campaign_name(category["name"], [p["name"] for p in products], config=config)


@router.delete("/{campaign_id}", dependencies=[Depends(require_permission("campaigns:write"))])
def delete_campaign(campaign_id: uuid.UUID, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "DELETE FROM campaigns WHERE company_id = %s AND id = %s RETURNING name",
                    (company_id, campaign_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=404, detail="campaign not found")
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'campaigns.delete', 'campaign', %s, %s::jsonb)
                    """,
                    (company_id, user["user_id"], campaign_id, json.dumps({"name": row["name"]})),
                )
                return {"ok": True}
