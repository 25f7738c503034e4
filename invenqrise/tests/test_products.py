import io
import uuid
from datetime import datetime, timedelta
from decimal import Decimal

import pytest
from fastapi import HTTPException, UploadFile

from invenqrise.app.routers import products as products_router

COMPANY = "00000000-0000-0000-0000-000000000001"
ONLINE = "55555555-5555-5555-5555-555555555555"
DOWNTOWN = "66666666-6666-6666-6666-666666666666"
DAIRY = "77777777-7777-7777-7777-777777777777"
PRODUCT_ID = uuid.UUID("88888888-8888-8888-8888-888888888888")

STORES = {"online": {"id": ONLINE, "code": "Online", "name": "Online"}, "downtown": {"id": DOWNTOWN, "code": "Downtown", "name": "Downtown"}}


def _norm(sql):
    return " ".join(sql.split())


class FakeCursor:
    """Tiny in-memory catalog: stores, categories and product barcodes."""

    def __init__(self, *, categories=None, barcodes=(), product=None):
        self.categories = dict(categories or {"dairy": DAIRY})
        self.barcodes = set(barcodes)
        self.product = product
        self.executed = []
        self._next = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        q = _norm(sql)
        self.executed.append((q, params))
        self._next = None
        if "FROM stores" in q:
            self._next = STORES.get((params[1] or "").lower())
        elif q.startswith("SELECT id, name FROM categories WHERE company_id = %s AND (id::text"):
            key = params[1].lower()
            self._next = {"id": self.categories[key], "name": params[1]} if key in self.categories else None
        elif q.startswith("SELECT id, name FROM categories"):
            self._next = [{"id": cid, "name": name.title()} for name, cid in self.categories.items()]
        elif q.startswith("INSERT INTO categories"):
            cid = f"cat-{len(self.categories)}"
            self.categories[params[1].lower()] = cid
            self._next = {"id": cid}
        elif "FROM products" in q and "barcode = %s" in q and q.startswith("SELECT"):
            self._next = {"id": "dup"} if (str(params[1]), params[2]) in self.barcodes else None
        elif "FROM products p" in q and "p.id = %s" in q:
            self._next = self.product
        elif q.startswith("INSERT INTO products") and "RETURNING id" in q:
            self._next = {"id": "new-product"}

    def fetchone(self):
        return self._next

    def fetchall(self):
        return self._next or []

    def statements(self, prefix):
        return [(q, p) for q, p in self.executed if q.startswith(prefix)]


class FakeTransaction:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class FakeConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur

    def transaction(self):
        return FakeTransaction()


def _patch(monkeypatch, cur):
    monkeypatch.setattr(products_router, "get_conn", lambda: FakeConn(cur))
    monkeypatch.setattr(products_router, "set_company_context", lambda _conn, _cid: None)


def _member(role, store_id=DOWNTOWN, store_code="Downtown"):
    return {"user_id": "u-1", "role": role, "store_id": store_id, "store_code": store_code}


def _product_in(**kw):
    data = {"name": "Whole Milk", "category": "Dairy", "price": Decimal("2.50")}
    data.update(kw)
    return products_router.ProductIn(**data)


def _upload(text):
    return UploadFile(io.BytesIO(text.encode("utf-8")), filename="products.csv")


def test_non_owner_writes_to_own_store_whatever_they_ask(monkeypatch):
    cur = FakeCursor()
    _patch(monkeypatch, cur)
    res = products_router.create_product(_product_in(store="Online"), company_id=COMPANY, actor=_member("Inventory Manager"))
    assert res["store_id"] == DOWNTOWN
    assert not [q for q, _ in cur.executed if "FROM stores" in q]
    (_, params), = cur.statements("INSERT INTO products")
    assert params[1] == DOWNTOWN
    assert params[8].startswith("https://picsum.photos/seed/")
    assert params[9] == "whole milk"


def test_owner_defaults_to_online_store(monkeypatch):
    cur = FakeCursor()
    _patch(monkeypatch, cur)
    res = products_router.create_product(_product_in(), company_id=COMPANY, actor=_member("Owner", None, None))
    assert res == {"id": "new-product", "store_id": ONLINE, "store_code": "Online"}


def test_unassigned_member_cannot_create(monkeypatch):
    _patch(monkeypatch, FakeCursor())
    with pytest.raises(HTTPException) as exc:
        products_router.create_product(_product_in(), company_id=COMPANY, actor=_member("Stock Keeper", None, None))
    assert exc.value.status_code == 400
    assert exc.value.detail == "you are not assigned to a store"


def test_barcode_must_be_unique_in_store(monkeypatch):
    cur = FakeCursor(barcodes={(DOWNTOWN, "4006381333931")})
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        products_router.create_product(
            _product_in(barcode=" 4006381333931 "), company_id=COMPANY, actor=_member("Admin")
        )
    assert exc.value.status_code == 409
    assert not cur.statements("INSERT INTO products")


def test_unknown_category_is_rejected_on_create(monkeypatch):
    _patch(monkeypatch, FakeCursor())
    with pytest.raises(HTTPException) as exc:
        products_router.create_product(_product_in(category="Frozen"), company_id=COMPANY, actor=_member("Admin"))
    assert exc.value.status_code == 400


def test_list_splits_three_most_recent(monkeypatch):
    now = datetime(2026, 3, 1, 12, 0)
    rows = [
        {
            "id": f"p{i}",
            "name": f"Product {i}",
            "stock_foh": 10,
            "stock_boh": i,
            "expiry_date": None,
            "created_at": now - timedelta(hours=i),
        }
        for i in range(5)
    ]
    cur = FakeCursor()
    cur.execute = lambda sql, params=None: setattr(cur, "_next", rows)
    _patch(monkeypatch, cur)
    res = products_router.list_products(company_id=COMPANY, scope=None)
    assert [p["id"] for p in res["recent"]] == ["p0", "p1", "p2"]
    assert [p["id"] for p in res["products"]] == ["p3", "p4"]
    assert res["total"] == 5
    assert res["recent"][0]["total_stock"] == 10


def test_import_skips_bad_rows_and_creates_categories(monkeypatch):
    cur = FakeCursor(barcodes={(ONLINE, "111")})
    _patch(monkeypatch, cur)
    csv_text = (
        "name,category,price,stockFoh,stockBoh,barcode,storeId\n"
        "Oat Milk,Dairy,3.10,5,5,222,Online\n"
        "Sourdough,Bakery,4.00,2,0,333,Downtown\n"
        ",Dairy,1.00,1,1,444,Online\n"
        "Butter,Dairy,2.00,1,1,111,Online\n"
        "Cheddar,Dairy,5.00,1,1,222,Online\n"
        "Yogurt,Dairy,1.20,1,1,555,Uptown\n"
        "Cream,Dairy,abc,1,1,666,Online\n"
        "Croissant,bakery,1.50,4,0,,Downtown\n"
    )
    res = products_router.import_products(_upload(csv_text), company_id=COMPANY, actor=_member("Owner", None, None))

    assert res["imported"] == 3
    assert res["skipped"] == 5
    assert [e["row"] for e in res["errors"]] == [4, 5, 6, 7, 8]
    reasons = [e["reason"] for e in res["errors"]]
    assert reasons[1] == reasons[2] == "duplicate barcode in store"
    assert reasons[3] == "unknown or missing store"
    # "Bakery" is created once; the later lower-case reference reuses it.
    assert res["created_categories"] == ["Bakery"]
    assert len(cur.statements("INSERT INTO categories")) == 1
    stores = [p[1] for _, p in cur.statements("INSERT INTO products")]
    assert stores == [ONLINE, DOWNTOWN, DOWNTOWN]


def test_import_forces_member_store(monkeypatch):
    cur = FakeCursor()
    _patch(monkeypatch, cur)
    res = products_router.import_products(
        _upload("name,category,price,storeId\nEggs,Dairy,3.00,Online\n"),
        company_id=COMPANY,
        actor=_member("Inventory Manager"),
    )
    assert res["imported"] == 1
    (_, params), = cur.statements("INSERT INTO products")
    assert params[1] == DOWNTOWN


def test_import_needs_a_store_for_members(monkeypatch):
    _patch(monkeypatch, FakeCursor())
    with pytest.raises(HTTPException) as exc:
        products_router.import_products(
            _upload("name,category,price\nEggs,Dairy,3.00\n"),
            company_id=COMPANY,
            actor=_member("Stock Keeper", None, None),
        )
    assert exc.value.status_code == 400


def _stored_product(**kw):
    row = {
        "id": str(PRODUCT_ID),
        "name": "Fresh Milk",
        "price": Decimal("1.99"),
        "barcode": "4006381333931",
        "store_id": DOWNTOWN,
        "store_code": "Downtown",
    }
    row.update(kw)
    return row


def test_qr_label_filename_is_ascii_for_any_barcode(monkeypatch):
    _patch(monkeypatch, FakeCursor(product=_stored_product(barcode="牛奶-001")))
    res = products_router.product_qr_label(PRODUCT_ID, company_id=COMPANY, scope=None)
    disposition = res.headers["content-disposition"]
    assert disposition == f'inline; filename="product-{PRODUCT_ID}.png"'
    disposition.encode("ascii")
    assert res.media_type == "image/png"
    assert res.body.startswith(b"\x89PNG")


def test_qr_label_needs_a_barcode(monkeypatch):
    _patch(monkeypatch, FakeCursor(product=_stored_product(barcode=None)))
    with pytest.raises(HTTPException) as exc:
        products_router.product_qr_label(PRODUCT_ID, company_id=COMPANY, scope=None)
    assert exc.value.status_code == 404


def test_owner_cannot_clear_product_store(monkeypatch):
    cur = FakeCursor(product=_stored_product())
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        products_router.update_product(
            PRODUCT_ID,
            products_router.ProductUpdate(store=None),
            company_id=COMPANY,
            actor=_member("Owner", None, None),
            scope=None,
        )
    assert exc.value.status_code == 422
    assert not cur.statements("UPDATE products")


def test_only_owner_moves_products(monkeypatch):
    cur = FakeCursor(product=_stored_product())
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        products_router.update_product(
            PRODUCT_ID,
            products_router.ProductUpdate(store="Online"),
            company_id=COMPANY,
            actor=_member("Admin"),
            scope=DOWNTOWN,
        )
    assert exc.value.status_code == 403


def test_owner_moves_product_and_rechecks_barcode(monkeypatch):
    cur = FakeCursor(product=_stored_product())
    _patch(monkeypatch, cur)
    res = products_router.update_product(
        PRODUCT_ID,
        products_router.ProductUpdate(store="Online"),
        company_id=COMPANY,
        actor=_member("Owner", None, None),
        scope=None,
    )
    assert res == {"ok": True}
    (_, params), = cur.statements("UPDATE products")
    assert params[0] == ONLINE
    barcode_checks = [p for q, p in cur.executed if q.startswith("SELECT id FROM products")]
    assert barcode_checks == [(COMPANY, ONLINE, "4006381333931", str(PRODUCT_ID), str(PRODUCT_ID))]
