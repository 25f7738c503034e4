#!/usr/bin/env python3
import argparse
from datetime import date

import psycopg
from psycopg.rows import dict_row

from invenqrise.app.config import settings
from invenqrise.app.logs import json_log
from invenqrise.app.mailer import send_stock_digest_email
from invenqrise.app.routers.inventory import expiring_products, low_stock_products

DB_URL_DEFAULT = settings.db_admin_url


def get_conn(db_url):
    return psycopg.connect(db_url, row_factory=dict_row)


def set_company_context(cur, company_id: str):
    cur.execute("SELECT set_config('app.current_company_id', %s::text, true)", (company_id,))


def recipients(cur, company_id: str) -> list[str]:
    cur.execute(
        """
        SELECT u.email
        FROM user_roles ur
        JOIN users u ON u.id = ur.user_id
        WHERE ur.company_id = %s
          AND ur.role IN ('Owner', 'Admin')
          AND u.is_active = true
        ORDER BY u.email
        """,
        (company_id,),
    )
    return [r["email"] for r in cur.fetchall()]


def run_stock_alerts(db_url: str, company_id: str, *, threshold: int, days: int, always: bool = False) -> dict:
    """
    Company-wide low-stock / expiring-soon scan, mailed as one digest to every
    active Owner and Admin. Nothing is sent when both lists are empty unless
    `always` is set.
    """
    today = date.today()
    with get_conn(db_url) as conn:
        with conn.cursor() as cur:
            set_company_context(cur, company_id)
            low = low_stock_products(cur, company_id, None, threshold)
            expiring = expiring_products(cur, company_id, None, today, days)
            to = recipients(cur, company_id)

    sent = 0
    if low or expiring or always:
        for email in to:
            res = send_stock_digest_email(recipient_email=email, low_stock=low, expiring=expiring)
            if res["success"]:
                sent += 1
    json_log(
        "info",
        "worker.stock_alerts",
        company_id=company_id,
        low_stock=len(low),
        expiring=len(expiring),
        recipients=len(to),
        sent=sent,
    )
    return {"low_stock": len(low), "expiring": len(expiring), "sent": sent}


def main():
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--company-id", required=True)
    parser.add_argument("--threshold", type=int, default=settings.low_stock_threshold)
    parser.add_argument("--days", type=int, default=settings.expiry_alert_days)
    parser.add_argument("--always", action="store_true", help="send the digest even when nothing needs attention")
    args = parser.parse_args()
    run_stock_alerts(args.db, args.company_id, threshold=args.threshold, days=args.days, always=args.always)


if __name__ == "__main__":
    main()
