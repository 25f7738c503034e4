import io

import pytest
from fastapi import UploadFile
from pydantic import ValidationError

from invenqrise.app.routers import customers as customers_router

COMPANY = "00000000-0000-0000-0000-000000000001"
USER = {"user_id": "u-1"}


class DummyCursor:
    def __init__(self):
        self.executed = []
        self._next = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql.strip(), params))
        self._next = None
        if "INSERT INTO customers" in sql and "RETURNING" in sql:
            _company, name, email, phone, city = params
            self._next = {"id": "c-1", "name": name, "email": email, "phone": phone, "city": city, "created_at": None}

    def fetchone(self):
        return self._next

    def inserts(self):
        return [p for s, p in self.executed if s.startswith("INSERT INTO customers")]


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
    monkeypatch.setattr(customers_router, "get_conn", lambda: DummyConn(cur))
    monkeypatch.setattr(customers_router, "set_company_context", lambda _conn, _cid: None)


def test_create_customer_normalizes_fields(monkeypatch):
    cur = DummyCursor()
    _patch(monkeypatch, cur)
    data = customers_router.CustomerIn(name="  Ana Lima ", email="Ana@Example.COM", phone="+1 555 010 0199", city="Porto")
    res = customers_router.create_customer(data, company_id=COMPANY, user=USER)
    assert res["customer"]["email"] == "ana@example.com"
    assert cur.inserts() == [(COMPANY, "Ana Lima", "ana@example.com", "+1 555 010 0199", "Porto")]
    assert any(s.startswith("INSERT INTO audit_logs") for s, _ in cur.executed)


@pytest.mark.parametrize(
    "field,value",
    [("email", "not-an-email"), ("phone", "12345"), ("name", "A")],
)
def test_create_customer_rejects_bad_fields(field, value):
    data = {"name": "Ana Lima", "email": "ana@example.com", "phone": "+1 555 010 0199", "city": "Porto"}
    data[field] = value
    with pytest.raises(ValidationError):
        customers_router.CustomerIn(**data)


def test_import_skips_invalid_rows(monkeypatch):
    cur = DummyCursor()
    _patch(monkeypatch, cur)
    csv_text = (
        "Name,Email,Phone,City\n"
        "Ana Lima,ANA@example.com,+1 555 010 0199,Porto\n"
        "Bo Chen,bo@example.com,,Lisbon\n"
        "Cy Diaz,not-an-email,+1 555 010 0200,Faro\n"
        ",,,\n"
        "Di Evans,di@example.com,+1 555 010 0201,Braga\n"
    )
    upload = UploadFile(io.BytesIO(csv_text.encode("utf-8")), filename="customers.csv")
    res = customers_router.import_customers(upload, company_id=COMPANY, user=USER)

    assert res["imported"] == 2
    assert res["skipped"] == 2
    assert res["errors"] == [
        {"row": 3, "reason": "name, email, phone and city are required"},
        {"row": 4, "reason": "invalid field values"},
    ]
    assert [p[2] for p in cur.inserts()] == ["ana@example.com", "di@example.com"]
