from __future__ import annotations

import os
from typing import Optional

DEFAULT_MODEL = "gpt-4o-mini"


def _company_ai_settings(cur, company_id: str) -> dict:
    """
    company_settings.key = 'ai', value_json may include:
      provider: 'openai' | 'openai_compatible'
      base_url: string (OpenAI-compatible endpoint root)
      api_key: string
      model: string
      allow_external_processing: bool
    """
    cur.execute(
        """
        SELECT value_json
        FROM company_settings
        WHERE company_id = %s AND key = 'ai'
        LIMIT 1
        """,
        (company_id,),
    )
    row = cur.fetchone()
    v = (row or {}).get("value_json") or {}
    return v if isinstance(v, dict) else {}


def is_external_ai_allowed(cur, company_id: str) -> bool:
    """
    Company-level gate for sending sales/product data to an external provider.
    Unset means allowed; only an explicit false denies.
    """
    flag = _company_ai_settings(cur, company_id).get("allow_external_processing")
    if flag is None:
        return True
    return bool(flag)


def get_ai_provider_config(cur, company_id: str) -> dict:
    provider = (os.environ.get("AI_PROVIDER") or "openai").strip().lower()
    base_url = (os.environ.get("OPENAI_BASE_URL") or "https://api.openai.com").strip().rstrip("/")
    api_key = (os.environ.get("OPENAI_API_KEY") or "").strip()
    model = (os.environ.get("AI_DEFAULT_MODEL") or "").strip()

    v = _company_ai_settings(cur, company_id)
    provider = str(v.get("provider") or provider).strip().lower()
    base_url = str(v.get("base_url") or base_url).strip().rstrip("/")
    api_key = str(v.get("api_key") or api_key).strip()
    model = str(v.get("model") or model).strip() or DEFAULT_MODEL

    if provider not in {"openai", "openai_compatible"}:
        provider = "openai"

    return {"provider": provider, "base_url": base_url, "api_key": api_key, "model": model}


def resolve_llm_config(cur, company_id: str) -> Optional[dict]:
    """Provider config when an LLM call is allowed and possible, else None (use heuristics)."""
    if not is_external_ai_allowed(cur, company_id):
        return None
    cfg = get_ai_provider_config(cur, company_id)
    if not cfg["api_key"]:
        return None
    return cfg
