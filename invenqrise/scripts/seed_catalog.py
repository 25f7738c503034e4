#!/usr/bin/env python3
"""
Load the sample supermarket catalog into one store of a company.

Existing categories are reused and products whose barcode already exists in
the store are skipped, so the script can be re-run.
"""
import argparse
import sys
from decimal import Decimal

import psycopg
from psycopg.rows import dict_row

from invenqrise.app.config import settings
from invenqrise.app.routers.products import ai_hint_for, placeholder_image_url

DB_URL_DEFAULT = settings.db_admin_url

# barcode, name, category, price, front-of-house, back-of-house
SAMPLE_PRODUCTS = [
    ("P-FP-001", "Organic Apples", "Fresh Produce", Decimal("2.99"), 50, 150),
    ("P-FP-002", "Avocado", "Fresh Produce", Decimal("1.99"), 80, 200),
    ("P-FP-003", "Bananas", "Fresh Produce", Decimal("0.59"), 120, 300),
    ("P-FP-004", "Strawberries (1lb)", "Fresh Produce", Decimal("4.50"), 40, 80),
    ("P-FP-005", "Romaine Lettuce", "Fresh Produce", Decimal("2.49"), 60, 100),
    ("P-BK-001", "Sourdough Bread", "Bakery", Decimal("5.49"), 25, 75),
    ("P-BK-002", "Croissants (Pack of 4)", "Bakery", Decimal("6.99"), 30, 60),
    ("P-BK-003", "Blueberry Muffins", "Bakery", Decimal("3.99"), 40, 90),
    ("P-DE-001", "Free-Range Eggs", "Dairy & Eggs", Decimal("4.99"), 60, 120),
    ("P-DE-002", "Whole Milk", "Dairy & Eggs", Decimal("3.50"), 100, 150),
    ("P-DE-003", "Greek Yogurt", "Dairy & Eggs", Decimal("5.49"), 70, 130),
    ("P-DE-004", "Cheddar Cheese Block", "Dairy & Eggs", Decimal("8.99"), 50, 100),
    ("P-MS-001", "Ground Beef", "Meat & Seafood", Decimal("7.99"), 30, 90),
    ("P-MS-002", "Wild Salmon", "Meat & Seafood", Decimal("14.99"), 15, 30),
    ("P-MS-003", "Chicken Breast", "Meat & Seafood", Decimal("9.99"), 40, 120),
    ("P-PA-001", "Quinoa", "Pantry", Decimal("6.25"), 40, 100),
    ("P-PA-002", "Almond Butter", "Pantry", Decimal("9.99"), 30, 70),
    ("P-PA-003", "Olive Oil", "Pantry", Decimal("12.49"), 50, 90),
    ("P-PA-004", "Pasta (Spaghetti)", "Pantry", Decimal("2.29"), 100, 250),
    ("P-FF-001", "Frozen Pizza", "Frozen Foods", Decimal("8.99"), 35, 80),
    ("P-FF-002", "Frozen Berries Mix", "Frozen Foods", Decimal("7.99"), 40, 100),
    ("P-BV-001", "Kombucha", "Beverages", Decimal("3.99"), 70, 200),
    ("P-BV-002", "Sparkling Water", "Beverages", Decimal("1.99"), 150, 400),
    ("P-SN-001", "Potato Chips", "Snacks", Decimal("2.50"), 100, 300),
    ("P-SN-002", "Trail Mix", "Snacks", Decimal("6.49"), 60, 120),
    ("P-HH-001", "Paper Towels", "Household", Decimal("12.99"), 40, 60),
    ("P-HH-002", "Dish Soap", "Household", Decimal("4.29"), 80, 150),
    ("P-HB-001", "Shampoo", "Health & Beauty", Decimal("7.50"), 50, 100),
    ("P-HB-002", "Toothpaste", "Health & Beauty", Decimal("3.49"), 100, 200),
    ("P-BT-001", "Baby Diapers", "Baby & Toddler", Decimal("24.99"), 20, 50),
    ("P-PE-001", "Dry Dog Food", "Pets", Decimal("35.00"), 15, 40),
    ("P-DP-001", "Rotisserie Chicken", "Deli & Prepared Foods", Decimal("9.99"), 20, 10),
    ("P-CG-001", "Canned Tomatoes", "Canned Goods", Decimal("1.50"), 120, 400),
    ("P-BS-001", "All-Purpose Flour", "Baking Supplies", Decimal("4.00"), 80, 200),
    ("P-CS-001", "Ketchup", "Condiments & Sauces", Decimal("3.29"), 90, 250),
    ("P-CB-001", "Oat Cereal", "Cereal & Breakfast", Decimal("4.79"), 75, 150),
    ("P-OR-001", "Organic Spinach", "Organic", Decimal("3.99"), 45, 80),
    ("P-IN-001", "Soy Sauce", "International", Decimal("2.99"), 60, 140),
    ("P-WB-001", "Cabernet Sauvignon", "Wine & Beer", Decimal("15.99"), 25, 60),
]

SAMPLE_CATEGORIES = list(dict.fromkeys(p[2] for p in SAMPLE_PRODUCTS))


def seed(cur, company_id, store_code: str) -> dict:
    cur.execute(
        "SELECT id FROM stores WHERE company_id = %s AND lower(code) = lower(%s)",
        (company_id, store_code),
    )
    store = cur.fetchone()
    if not store:
        raise SystemExit(f"seed_catalog: store not found: {store_code}")

    categories = {}
    for name in SAMPLE_CATEGORIES:
        cur.execute(
            """
            INSERT INTO categories (id, company_id, name)
            VALUES (gen_random_uuid(), %s, %s)
            ON CONFLICT (company_id, lower(name)) DO NOTHING
            """,
            (company_id, name),
        )
        cur.execute(
            "SELECT id FROM categories WHERE company_id = %s AND lower(name) = lower(%s)",
            (company_id, name),
        )
        categories[name] = cur.fetchone()["id"]

    created = 0
    for barcode, name, category, price, foh, boh in SAMPLE_PRODUCTS:
        cur.execute(
            "SELECT 1 FROM products WHERE company_id = %s AND store_id = %s AND barcode = %s",
            (company_id, store["id"], barcode),
        )
        if cur.fetchone():
            continue
        cur.execute(
            """
            INSERT INTO products (id, company_id, store_id, category_id, name, price,
                                  stock_foh, stock_boh, barcode, image_url, ai_hint)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
            """,
            (
                company_id,
                store["id"],
                categories[category],
                name,
                price,
                foh,
                boh,
                barcode,
                placeholder_image_url(),
                ai_hint_for(name),
            ),
        )
        created += 1
    return {"categories": len(categories), "products_created": created}


def main() -> int:
    parser = argparse.ArgumentParser()
    parser.add_argument("--db", default=DB_URL_DEFAULT)
    parser.add_argument("--company-id", required=True)
    parser.add_argument("--store", default="Online")
    args = parser.parse_args()

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                res = seed(cur, args.company_id, args.store)
    print(f"seed_catalog: {res['categories']} categories, {res['products_created']} product(s) created", file=sys.stderr)
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
