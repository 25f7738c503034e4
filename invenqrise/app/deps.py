from fastapi import Header, HTTPException, Depends, Cookie
from .db import get_admin_conn, get_conn, set_company_context
from .permissions import has_permission, store_scope
from .security import hash_session_token
from datetime import datetime, timezone
from typing import Optional


SESSION_COOKIE_NAME = "invenqrise_session"


def _extract_session_token(authorization: Optional[str], cookie_token: Optional[str]) -> str:
    if authorization and authorization.lower().startswith("bearer "):
        return authorization.split(" ", 1)[1].strip()
    if cookie_token:
        return cookie_token
    raise HTTPException(status_code=401, detail="missing token")


def get_session(
    authorization: Optional[str] = Header(None),
    cookie_token: Optional[str] = Cookie(None, alias=SESSION_COOKIE_NAME),
):
    token = _extract_session_token(authorization, cookie_token)
    # Sessions are not tenant-scoped, so resolve them on the admin pool.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT s.id AS session_id, s.user_id, u.email, u.full_name, u.is_active AS user_active,
                       s.expires_at, s.is_active, s.active_company_id
                FROM auth_sessions s
                JOIN users u ON u.id = s.user_id
                WHERE s.token_hash = %s
                """,
                (hash_session_token(token),),
            )
            row = cur.fetchone()
            now = datetime.now(timezone.utc)
            if not row or not row["is_active"] or not row["user_active"] or row["expires_at"] < now:
                raise HTTPException(status_code=401, detail="invalid token")
            return {
                "session_id": row["session_id"],
                "user_id": row["user_id"],
                "email": row["email"],
                "full_name": row["full_name"],
                "active_company_id": row["active_company_id"],
                "token": token,
            }


def get_current_user(session=Depends(get_session)):
    return {"user_id": session["user_id"], "email": session["email"], "full_name": session.get("full_name")}


def get_company_id(
    x_company_id: Optional[str] = Header(None, alias="X-Company-Id"),
    session=Depends(get_session),
) -> str:
    if x_company_id:
        return x_company_id
    if session.get("active_company_id"):
        return str(session["active_company_id"])
    raise HTTPException(status_code=400, detail="missing company id")


def get_membership(company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    """
    The caller's role and store inside the active company.

    FastAPI caches dependencies per request, so permission checks and handlers
    that need the role share one lookup.
    """
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT ur.role, ur.store_id, s.code AS store_code
                FROM user_roles ur
                LEFT JOIN stores s ON s.id = ur.store_id
                WHERE ur.user_id = %s AND ur.company_id = %s
                """,
                (user["user_id"], company_id),
            )
            row = cur.fetchone()
            if not row:
                raise HTTPException(status_code=403, detail="no company access")
    return {
        "user_id": user["user_id"],
        "email": user["email"],
        "full_name": user.get("full_name"),
        "role": row["role"],
        "store_id": str(row["store_id"]) if row["store_id"] else None,
        "store_code": row["store_code"],
    }


def require_company_access(membership=Depends(get_membership)):
    return True


def require_permission(code: str):
    def _dep(membership=Depends(get_membership)):
        if not has_permission(membership["role"], code):
            raise HTTPException(status_code=403, detail="permission denied")
        return True
    return _dep


def get_store_scope(membership=Depends(get_membership)) -> Optional[str]:
    """Store id the caller is limited to, or None for company-wide access."""
    try:
        return store_scope(membership["role"], membership["store_id"])
    except LookupError:
        raise HTTPException(status_code=403, detail="you are not assigned to a store")
