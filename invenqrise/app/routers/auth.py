from fastapi import APIRouter, HTTPException, Depends
from fastapi.responses import JSONResponse
from pydantic import BaseModel
from datetime import datetime, timedelta, timezone
import uuid
from ..config import settings
from ..db import get_admin_conn, get_conn, set_company_context
from ..deps import get_session, SESSION_COOKIE_NAME
from ..logs import json_log
from ..mailer import send_otp_email
from ..permissions import OTP_REQUIRED_ROLES
from ..security import (
    hash_password,
    verify_password,
    needs_rehash,
    hash_session_token,
    new_session_token,
    new_otp_code,
    hash_otp_code,
    verify_otp_code,
)
from ..validation import PersonName

router = APIRouter(prefix="/auth", tags=["auth"])
SESSION_DAYS = 7
OTP_MAX_ATTEMPTS = 5


class LoginIn(BaseModel):
    email: str
    password: str


def _memberships(cur, user_id):
    cur.execute(
        """
        SELECT ur.company_id, c.name AS company_name, ur.role, ur.store_id
        FROM user_roles ur
        JOIN companies c ON c.id = ur.company_id
        WHERE ur.user_id = %s
        ORDER BY ur.created_at, ur.company_id
        """,
        (user_id,),
    )
    return cur.fetchall()


def _start_session(cur, user_id, active_company_id) -> str:
    token = new_session_token()
    expires = datetime.now(timezone.utc) + timedelta(days=SESSION_DAYS)
    cur.execute(
        """
        INSERT INTO auth_sessions (id, user_id, token_hash, expires_at, active_company_id)
        VALUES (gen_random_uuid(), %s, %s, %s, %s)
        """,
        (user_id, hash_session_token(token), expires, active_company_id),
    )
    return token


def _session_response(token: str, user_id, memberships) -> JSONResponse:
    active = memberships[0] if memberships else None
    resp = JSONResponse(
        {
            "token": token,
            "user_id": str(user_id),
            "companies": [str(m["company_id"]) for m in memberships],
            "active_company_id": str(active["company_id"]) if active else None,
            "role": active["role"] if active else None,
        }
    )
    resp.set_cookie(
        key=SESSION_COOKIE_NAME,
        value=token,
        httponly=True,
        samesite="lax",
        secure=not settings.is_dev,
        max_age=SESSION_DAYS * 24 * 60 * 60,
        path="/",
    )
    return resp


def _send_code(user, code: str):
    res = send_otp_email(user["email"], user.get("full_name") or "", code)
    if not res["success"]:
        # Raising rolls the challenge back, so an undelivered code is never usable.
        raise HTTPException(status_code=502, detail="failed to send verification code")


@router.post("/login")
def login(data: LoginIn):
    email = (data.email or "").strip().lower()
    # Admin connection: memberships span companies.
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, email, full_name, hashed_password, is_active
                    FROM users
                    WHERE lower(email) = %s
                    """,
                    (email,),
                )
                user = cur.fetchone()
                if not user or not user["is_active"]:
                    raise HTTPException(status_code=401, detail="invalid credentials")
                if not verify_password(data.password, user["hashed_password"]):
                    raise HTTPException(status_code=401, detail="invalid credentials")

                if needs_rehash(user["hashed_password"]):
                    cur.execute(
                        "UPDATE users SET hashed_password = %s, updated_at = now() WHERE id = %s",
                        (hash_password(data.password), user["id"]),
                    )

                memberships = _memberships(cur, user["id"])
                active = memberships[0] if memberships else None

                # Any Owner/Admin membership needs the code: a session can switch companies later.
                if any(m["role"] in OTP_REQUIRED_ROLES for m in memberships):
                    otp_token = new_session_token()
                    code = new_otp_code()
                    cur.execute(
                        """
                        INSERT INTO auth_otp_challenges (id, user_id, token_hash, code_hash, expires_at)
                        VALUES (gen_random_uuid(), %s, %s, %s, %s)
                        """,
                        (
                            user["id"],
                            hash_session_token(otp_token),
                            hash_otp_code(code, otp_token),
                            datetime.now(timezone.utc) + timedelta(minutes=settings.otp_ttl_minutes),
                        ),
                    )
                    _send_code(user, code)
                    json_log("info", "auth.otp_issued", user_id=user["id"])
                    return {
                        "otp_required": True,
                        "otp_token": otp_token,
                        "user_id": str(user["id"]),
                        "email": user["email"],
                        "expires_in_seconds": settings.otp_ttl_minutes * 60,
                    }

                token = _start_session(cur, user["id"], active["company_id"] if active else None)
                return _session_response(token, user["id"], memberships)


class OtpVerifyIn(BaseModel):
    otp_token: str
    code: str


@router.post("/otp/verify")
def otp_verify(data: OtpVerifyIn):
    """
    Complete an Owner/Admin login: check the emailed code against its challenge and
    mint a session. Wrong codes count toward OTP_MAX_ATTEMPTS.
    """
    token = (data.otp_token or "").strip()
    code = (data.code or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="otp_token is required")
    if not code:
        raise HTTPException(status_code=400, detail="code is required")

    now = datetime.now(timezone.utc)
    failure = None
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT id, user_id, code_hash, expires_at, attempts, consumed_at
                    FROM auth_otp_challenges
                    WHERE token_hash = %s
                    FOR UPDATE
                    """,
                    (hash_session_token(token),),
                )
                ch = cur.fetchone()
                if not ch or ch["consumed_at"] is not None or ch["expires_at"] < now:
                    raise HTTPException(status_code=401, detail="invalid or expired verification code")

                if int(ch["attempts"] or 0) >= OTP_MAX_ATTEMPTS:
                    cur.execute("UPDATE auth_otp_challenges SET consumed_at = now() WHERE id = %s", (ch["id"],))
                    failure = "too many attempts"
                elif not verify_otp_code(code, token, ch["code_hash"]):
                    # Persist the attempt before failing the request.
                    cur.execute("UPDATE auth_otp_challenges SET attempts = attempts + 1 WHERE id = %s", (ch["id"],))
                    failure = "invalid verification code"
                else:
                    cur.execute("UPDATE auth_otp_challenges SET consumed_at = now() WHERE id = %s", (ch["id"],))
                    cur.execute("SELECT id, is_active FROM users WHERE id = %s", (ch["user_id"],))
                    user = cur.fetchone()
                    if not user or not user["is_active"]:
                        raise HTTPException(status_code=401, detail="invalid credentials")
                    memberships = _memberships(cur, user["id"])
                    session_token = _start_session(
                        cur, user["id"], memberships[0]["company_id"] if memberships else None
                    )
                    json_log("info", "auth.otp_verified", user_id=user["id"])
                    return _session_response(session_token, user["id"], memberships)

    json_log("warning", "auth.otp_rejected", reason=failure)
    raise HTTPException(status_code=401, detail=failure)


class OtpResendIn(BaseModel):
    otp_token: str


@router.post("/otp/resend")
def otp_resend(data: OtpResendIn):
    token = (data.otp_token or "").strip()
    if not token:
        raise HTTPException(status_code=400, detail="otp_token is required")
    now = datetime.now(timezone.utc)
    with get_admin_conn() as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT ch.id, ch.expires_at, ch.consumed_at, u.email, u.full_name
                    FROM auth_otp_challenges ch
                    JOIN users u ON u.id = ch.user_id
                    WHERE ch.token_hash = %s
                    FOR UPDATE OF ch
                    """,
                    (hash_session_token(token),),
                )
                ch = cur.fetchone()
                if not ch or ch["consumed_at"] is not None or ch["expires_at"] < now:
                    raise HTTPException(status_code=401, detail="invalid or expired verification code")
                code = new_otp_code()
                cur.execute(
                    """
                    UPDATE auth_otp_challenges
                    SET code_hash = %s, attempts = 0, expires_at = %s
                    WHERE id = %s
                    """,
                    (hash_otp_code(code, token), now + timedelta(minutes=settings.otp_ttl_minutes), ch["id"]),
                )
                _send_code(ch, code)
    return {"ok": True, "expires_in_seconds": settings.otp_ttl_minutes * 60}


@router.get("/me")
def me(session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            memberships = _memberships(cur, session["user_id"])
    active_id = str(session["active_company_id"]) if session.get("active_company_id") else None
    active = next((m for m in memberships if str(m["company_id"]) == active_id), None)
    return {
        "user_id": str(session["user_id"]),
        "email": session["email"],
        "full_name": session.get("full_name"),
        "active_company_id": active_id,
        "role": active["role"] if active else None,
        "store_id": str(active["store_id"]) if active and active["store_id"] else None,
        "companies": [
            {"company_id": str(m["company_id"]), "name": m["company_name"], "role": m["role"]}
            for m in memberships
        ],
    }


class ProfileUpdateIn(BaseModel):
    full_name: PersonName


@router.patch("/profile")
def update_profile(data: ProfileUpdateIn, session=Depends(get_session)):
    # Email is the login identity and is not editable here.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                """
                UPDATE users
                SET full_name = %s, updated_at = now()
                WHERE id = %s
                """,
                (data.full_name, session["user_id"]),
            )
    return {"ok": True, "full_name": data.full_name}


@router.post("/logout")
def logout(session=Depends(get_session)):
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE token_hash = %s",
                (hash_session_token(session["token"]),),
            )
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp


@router.post("/logout-all")
def logout_all(session=Depends(get_session)):
    """
    Revoke every session of the current user (after a password change or a leaked token).
    """
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET is_active = false WHERE user_id = %s",
                (session["user_id"],),
            )
    resp = JSONResponse({"ok": True})
    resp.delete_cookie(key=SESSION_COOKIE_NAME, path="/")
    return resp


class SelectCompanyIn(BaseModel):
    company_id: uuid.UUID


@router.post("/select-company")
def select_company(data: SelectCompanyIn, session=Depends(get_session)):
    company_id = str(data.company_id)
    with get_conn() as conn:
        with conn.transaction():
            set_company_context(conn, company_id)
            with conn.cursor() as cur:
                cur.execute(
                    """
                    SELECT role
                    FROM user_roles
                    WHERE user_id = %s AND company_id = %s
                    """,
                    (session["user_id"], company_id),
                )
                row = cur.fetchone()
                if not row:
                    raise HTTPException(status_code=403, detail="no company access")
    # auth_sessions is not tenant-scoped.
    with get_admin_conn() as conn:
        with conn.cursor() as cur:
            cur.execute(
                "UPDATE auth_sessions SET active_company_id = %s WHERE id = %s",
                (company_id, session["session_id"]),
            )
    return {"ok": True, "active_company_id": company_id, "role": row["role"]}
