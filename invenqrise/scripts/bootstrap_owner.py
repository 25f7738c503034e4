#!/usr/bin/env python3
import os
import secrets
import sys

import psycopg
from psycopg.rows import dict_row

from invenqrise.app.routers.stores import DEFAULT_STORES
from invenqrise.app.security import hash_password


def _truthy(v: str) -> bool:
    return (v or "").strip().lower() in {"1", "true", "yes", "y", "on"}


def _generate_password() -> str:
    # URL-safe and copy/paste friendly.
    return secrets.token_urlsafe(16)


def ensure_company(cur, name: str):
    cur.execute("SELECT id FROM companies WHERE name = %s ORDER BY created_at ASC LIMIT 1", (name,))
    row = cur.fetchone()
    if row:
        return row["id"], False
    cur.execute("INSERT INTO companies (id, name) VALUES (gen_random_uuid(), %s) RETURNING id", (name,))
    return cur.fetchone()["id"], True


def ensure_stores(cur, company_id) -> int:
    created = 0
    for code, name in DEFAULT_STORES:
        cur.execute(
            """
            INSERT INTO stores (id, company_id, code, name)
            VALUES (gen_random_uuid(), %s, %s, %s)
            ON CONFLICT (company_id, code) DO NOTHING
            RETURNING id
            """,
            (company_id, code, name),
        )
        if cur.fetchone():
            created += 1
    return created


def main() -> int:
    if not _truthy(os.getenv("BOOTSTRAP_OWNER", "")):
        return 0

    db_url = os.getenv("DATABASE_URL_ADMIN") or os.getenv("DATABASE_URL")
    if not db_url:
        print("bootstrap_owner: missing DATABASE_URL", file=sys.stderr)
        return 2

    email = os.getenv("BOOTSTRAP_OWNER_EMAIL", "owner@invenqrise.local").strip().lower()
    if not email:
        print("bootstrap_owner: BOOTSTRAP_OWNER_EMAIL is empty", file=sys.stderr)
        return 2
    full_name = os.getenv("BOOTSTRAP_OWNER_NAME", "Store Owner").strip() or "Store Owner"
    company_name = os.getenv("BOOTSTRAP_COMPANY_NAME", "InvenQrise Supermarket").strip() or "InvenQrise Supermarket"

    password = os.getenv("BOOTSTRAP_OWNER_PASSWORD")
    generated_password = False
    if not password:
        password = _generate_password()
        generated_password = True

    with psycopg.connect(db_url, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                company_id, company_created = ensure_company(cur, company_name)
                stores_created = ensure_stores(cur, company_id)

                cur.execute("SELECT id FROM users WHERE lower(email) = %s", (email,))
                row = cur.fetchone()
                user_created = False
                if row:
                    user_id = row["id"]
                else:
                    cur.execute(
                        """
                        INSERT INTO users (id, email, hashed_password, full_name, is_active)
                        VALUES (gen_random_uuid(), %s, %s, %s, true)
                        RETURNING id
                        """,
                        (email, hash_password(password), full_name),
                    )
                    user_id = cur.fetchone()["id"]
                    user_created = True

                # Owners are company-wide; no store assignment.
                cur.execute(
                    """
                    INSERT INTO user_roles (user_id, company_id, role, store_id)
                    VALUES (%s, %s, 'Owner', NULL)
                    ON CONFLICT (user_id, company_id) DO NOTHING
                    """,
                    (user_id, company_id),
                )

    print(f"company: {company_name} ({'created' if company_created else 'existing'}, {stores_created} store(s) added)")
    if not user_created:
        print(f"owner: {email} (existing, password unchanged)")
        return 0
    print("BOOTSTRAP_OWNER_CREATED")
    print(f"email: {email}")
    if generated_password:
        print(f"password: {password}")
    else:
        print("password: (provided via BOOTSTRAP_OWNER_PASSWORD)")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
