import pytest
from fastapi import HTTPException

from invenqrise.app.routers import categories as categories_router

COMPANY = "00000000-0000-0000-0000-000000000001"
CATEGORY = "77777777-7777-7777-7777-777777777777"
USER = {"user_id": "u-1"}


class DummyCursor:
    def __init__(self, *, category=True, products=0, campaign=False):
        self.category = {"id": CATEGORY, "name": "Dairy & Eggs"} if category else None
        self.products = products
        self.campaign = campaign
        self.executed = []
        self._next = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql.strip(), params))
        if "FROM categories" in sql:
            self._next = self.category
        elif "FROM products" in sql:
            self._next = {"n": self.products}
        elif "FROM campaigns" in sql:
            self._next = {"?column?": 1} if self.campaign else None
        else:
            self._next = None

    def fetchone(self):
        return self._next

    def deleted(self):
        return [s for s, _ in self.executed if s.startswith("DELETE FROM categories")]


class DummyTransaction:
    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False


class DummyConn:
    def __init__(self, cur):
        self._cur = cur

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cur

    def transaction(self):
        return DummyTransaction()


def _patch(monkeypatch, cur):
    monkeypatch.setattr(categories_router, "get_conn", lambda: DummyConn(cur))
    monkeypatch.setattr(categories_router, "set_company_context", lambda _conn, _cid: None)


def test_category_in_use_cannot_be_deleted(monkeypatch):
    cur = DummyCursor(products=4)
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        categories_router.delete_category(CATEGORY, company_id=COMPANY, user=USER)
    assert exc.value.status_code == 409
    assert exc.value.detail == "category is used by 4 product(s)"
    assert not cur.deleted()


def test_category_used_by_campaign_cannot_be_deleted(monkeypatch):
    cur = DummyCursor(campaign=True)
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        categories_router.delete_category(CATEGORY, company_id=COMPANY, user=USER)
    assert exc.value.status_code == 409
    assert not cur.deleted()


def test_unused_category_is_deleted(monkeypatch):
    cur = DummyCursor()
    _patch(monkeypatch, cur)
    assert categories_router.delete_category(CATEGORY, company_id=COMPANY, user=USER) == {"ok": True}
    assert len(cur.deleted()) == 1
    audit = [p for s, p in cur.executed if s.startswith("INSERT INTO audit_logs")]
    assert audit and '"Dairy & Eggs"' in audit[0][3]


def test_unknown_category(monkeypatch):
    _patch(monkeypatch, DummyCursor(category=False))
    with pytest.raises(HTTPException) as exc:
        categories_router.delete_category(CATEGORY, company_id=COMPANY, user=USER)
    assert exc.value.status_code == 404


def test_duplicate_category_name(monkeypatch):
    cur = DummyCursor()
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        categories_router.create_category(categories_router.CategoryIn(name="dairy & eggs"), company_id=COMPANY, user=USER)
    assert exc.value.status_code == 409
