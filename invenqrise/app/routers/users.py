from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel
from typing import Optional
from psycopg.errors import UniqueViolation  # type: ignore
from ..db import get_conn, set_company_context
from ..deps import get_company_id, get_membership, require_permission
from ..permissions import ADMIN, OWNER
from ..security import hash_password
from ..stock_rules import require_store
from ..validation import AssignableRole, Email, Password, PersonName, Role
import json

router = APIRouter(prefix="/users", tags=["users"])


class UserIn(BaseModel):
    full_name: PersonName
    email: Email
    password: Password
    role: AssignableRole
    store_id: Optional[str] = None


class UserUpdate(BaseModel):
    role: Optional[AssignableRole] = None
    store_id: Optional[str] = None
    is_active: Optional[bool] = None


def _assign_store(cur, company_id: str, actor: dict, role: str, requested: Optional[str]) -> str:
    """
    Owners pick any store; Admins can only staff their own store.
    Every assignable role is store-bound.
    """
    if actor["role"] == ADMIN:
        if role == ADMIN:
            raise HTTPException(status_code=403, detail="admins cannot create or promote admins")
        if not actor["store_id"]:
            raise HTTPException(status_code=403, detail="you are not assigned to a store")
        return actor["store_id"]
    if not (requested or "").strip():
        raise HTTPException(status_code=400, detail="store is required for this role")
    return str(require_store(cur, company_id, requested)["id"])


@router.get("", dependencies=[Depends(require_permission("users:read"))])
def list_users(role: Optional[Role] = None, company_id: str = Depends(get_company_id)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            cur.execute(
                """
                SELECT u.id, u.email, u.full_name, u.is_active, u.created_at,
                       ur.role, ur.store_id, s.code AS store_code
                FROM user_roles ur
                JOIN users u ON u.id = ur.user_id
                LEFT JOIN stores s ON s.id = ur.store_id
                WHERE ur.company_id = %s
                  AND (%s::text IS NULL OR ur.role = %s)
                ORDER BY u.full_name NULLS LAST, u.email
                """,
                (company_id, role, role),
            )
            return {"users": cur.fetchall()}


@router.post("", dependencies=[Depends(require_permission("users:write"))])
def create_user(data: UserIn, company_id: str = Depends(get_company_id), actor=Depends(get_membership)):
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                store_id = _assign_store(cur, company_id, actor, data.role, data.store_id)
                cur.execute("SELECT 1 FROM users WHERE lower(email) = %s", (data.email,))
                if cur.fetchone():
                    raise HTTPException(status_code=409, detail="email already in use")
                try:
                    cur.execute(
                        """
                        INSERT INTO users (id, email, hashed_password, full_name)
                        VALUES (gen_random_uuid(), %s, %s, %s)
                        RETURNING id
                        """,
                        (data.email, hash_password(data.password), data.full_name),
                    )
                except UniqueViolation:
                    # Lost a race with a concurrent signup.
                    raise HTTPException(status_code=409, detail="email already in use")
                uid = cur.fetchone()["id"]
                cur.execute(
                    """
                    INSERT INTO user_roles (user_id, company_id, role, store_id)
                    VALUES (%s, %s, %s, %s)
                    """,
                    (uid, company_id, data.role, store_id),
                )
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'users.create', 'user', %s, %s::jsonb)
                    """,
                    (
                        company_id,
                        actor["user_id"],
                        uid,
                        json.dumps({"email": data.email, "role": data.role, "store_id": store_id}),
                    ),
                )
                return {
                    "id": uid,
                    "email": data.email,
                    "full_name": data.full_name,
                    "role": data.role,
                    "store_id": store_id,
                }


@router.patch("/{user_id}", dependencies=[Depends(require_permission("users:write"))])
def update_user(user_id: str, data: UserUpdate, company_id: str = Depends(get_company_id), actor=Depends(get_membership)):
    patch = data.model_dump(exclude_unset=True)
    if not patch:
        return {"ok": True}

    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT role, store_id
                    FROM user_roles
                    WHERE user_id = %s AND company_id = %s
                    FOR UPDATE
                    """,
                    (user_id, company_id),
                )
                target = cur.fetchone()
                if not target:
                    raise HTTPException(status_code=404, detail="user not found")
                if target["role"] == OWNER:
                    raise HTTPException(status_code=403, detail="owner accounts cannot be modified")
                if actor["role"] == ADMIN:
                    if target["role"] == ADMIN and str(user_id) != str(actor["user_id"]):
                        raise HTTPException(status_code=403, detail="admins cannot modify other admins")
                    if str(target["store_id"]) != str(actor["store_id"]):
                        raise HTTPException(status_code=404, detail="user not found")

                role = patch.get("role") or target["role"]
                if "role" in patch or "store_id" in patch:
                    requested = patch.get("store_id") or (str(target["store_id"]) if target["store_id"] else None)
                    store_id = _assign_store(cur, company_id, actor, role, requested)
                    cur.execute(
                        """
                        UPDATE user_roles
                        SET role = %s, store_id = %s
                        WHERE user_id = %s AND company_id = %s
                        """,
                        (role, store_id, user_id, company_id),
                    )
                if "is_active" in patch and patch["is_active"] is not None:
                    cur.execute(
                        "UPDATE users SET is_active = %s, updated_at = now() WHERE id = %s",
                        (bool(patch["is_active"]), user_id),
                    )
                # Role, store and activation changes apply on the next login.
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'users.update', 'user', %s, %s::jsonb)
                    """,
                    (company_id, actor["user_id"], user_id, json.dumps(patch)),
                )
                return {"ok": True}


@router.delete("/{user_id}", dependencies=[Depends(require_permission("users:delete"))])
def delete_user(user_id: str, company_id: str = Depends(get_company_id), actor=Depends(get_membership)):
    if str(user_id) == str(actor["user_id"]):
        raise HTTPException(status_code=400, detail="you cannot delete your own account")
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    "SELECT role FROM user_roles WHERE user_id = %s AND company_id = %s",
                    (user_id, company_id),
                )
                target = cur.fetchone()
                if not target:
                    raise HTTPException(status_code=404, detail="user not found")
                if target["role"] == OWNER:
                    raise HTTPException(status_code=403, detail="owner accounts cannot be deleted")

                cur.execute(
                    "DELETE FROM user_roles WHERE user_id = %s AND company_id = %s",
                    (user_id, company_id),
                )
                cur.execute("UPDATE auth_sessions SET is_active = false WHERE user_id = %s", (user_id,))
                cur.execute(
                    """
                    INSERT INTO audit_logs (id, company_id, user_id, action, entity_type, entity_id, details)
                    VALUES (gen_random_uuid(), %s, %s, 'users.delete', 'user', %s, %s::jsonb)
                    """,
                    (company_id, actor["user_id"], user_id, json.dumps({"role": target["role"]})),
                )
                return {"ok": True}
