from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from ..ai.flows import suggest_product_category
from ..ai.providers import is_external_ai_allowed, resolve_llm_config
from ..db import get_conn, set_company_context
from ..deps import get_company_id, require_permission
from ..validation import ProductName

router = APIRouter(prefix="/ai", tags=["ai"])


class SuggestCategoryIn(BaseModel):
    product_name: ProductName
    product_description: str = ""


@router.get("/status", dependencies=[Depends(require_permission("ai:use"))])
def ai_status(company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            allowed = is_external_ai_allowed(cur, company_id)
            config = resolve_llm_config(cur, company_id)
    return {
        "external_processing_allowed": allowed,
        "llm_configured": bool(config),
        "model": config["model"] if config else None,
    }


@router.post("/suggest-category", dependencies=[Depends(require_permission("ai:use"))])
def suggest_category(data: SuggestCategoryIn, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute("SELECT name FROM categories WHERE company_id = %s ORDER BY name", (company_id,))
            existing = [r["name"] for r in cur.fetchall()]
            config = resolve_llm_config(cur, company_id)
    if not existing:
        raise HTTPException(status_code=400, detail="create at least one category first")
    return suggest_product_category(data.product_name, data.product_description.strip(), existing, config=config)
