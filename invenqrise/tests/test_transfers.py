import re
import uuid

import pytest
from fastapi import HTTPException

from invenqrise.app.routers import transfers as transfers_router

TRANSFER_ID = uuid.UUID("99999999-9999-9999-9999-999999999999")
DOWNTOWN = "s-downtown"
NORTHSIDE = "s-northside"


class FakeCursor:
    def __init__(self, transfer, lines, products):
        self.transfer = transfer
        self.lines = lines
        self.products = {p["id"]: dict(p) for p in products}
        self.locks = []
        self.executed = []
        self._next = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))
        s = sql.strip()
        self._next = None
        if "FROM stock_transfer_lines" in s:
            self._next = list(self.lines)
        elif "FROM stock_transfers t" in s:
            self._next = dict(self.transfer) if self.transfer else None
        elif s.startswith("SELECT") and "FROM products" in s and "barcode = ANY" in s:
            _company, store_id, barcodes = params
            self._next = [
                {"id": p["id"], "barcode": p["barcode"]}
                for p in self.products.values()
                if p["store_id"] == store_id and p["barcode"] in barcodes
            ]
        elif s.startswith("SELECT") and "FROM products" in s and "FOR UPDATE" in s:
            self.locks.append(list(params[1]))
            self._next = [dict(self.products[pid]) for pid in sorted(params[1]) if pid in self.products]
        elif s.startswith("UPDATE products"):
            col, sign = re.match(r"UPDATE products SET (\w+) = \w+ ([+-]) %s", s).groups()
            qty, _company, pid = params
            self.products[pid][col] += qty if sign == "+" else -qty
        elif s.startswith("UPDATE stock_transfers"):
            self.transfer["status"] = params[0]

    def fetchone(self):
        return self._next

    def fetchall(self):
        return self._next or []


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
    monkeypatch.setattr(transfers_router, "get_conn", lambda: FakeConn(cur))
    monkeypatch.setattr(transfers_router, "set_company_context", lambda *_a, **_k: None)


def _transfer(status, from_store=DOWNTOWN, from_loc="back-of-house", to_store=DOWNTOWN, to_loc="front-of-house"):
    return {
        "id": TRANSFER_ID,
        "status": status,
        "from_store_id": from_store,
        "from_location": from_loc,
        "to_store_id": to_store,
        "to_location": to_loc,
    }


def _milk(pid="p-milk", store=DOWNTOWN, foh=5, boh=40):
    return {"id": pid, "name": "Whole Milk", "barcode": "P-DE-002", "store_id": store, "stock_foh": foh, "stock_boh": boh}


def _line(pid, quantity, name="Whole Milk", barcode="P-DE-002"):
    return {"product_id": pid, "name": name, "barcode": barcode, "quantity": quantity}


ACTOR = {"user_id": "u1", "role": "Inventory Manager", "store_id": DOWNTOWN}


def test_restock_shelf_from_back_room(monkeypatch):
    cur = FakeCursor(_transfer("In Transit"), [_line("p-milk", 10)], [_milk()])
    _patch(monkeypatch, cur)
    res = transfers_router.complete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=DOWNTOWN)
    assert res["status"] == "Completed"
    assert cur.products["p-milk"]["stock_boh"] == 30
    assert cur.products["p-milk"]["stock_foh"] == 15


def test_cross_store_transfer_matches_by_barcode(monkeypatch):
    cur = FakeCursor(
        _transfer("In Transit", to_store=NORTHSIDE, to_loc="back-of-house"),
        [_line("p-milk", 4)],
        [_milk(), _milk(pid="p-milk-north", store=NORTHSIDE, foh=0, boh=1)],
    )
    _patch(monkeypatch, cur)
    res = transfers_router.complete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=None)
    assert res["moved"] == [{"from_product_id": "p-milk", "to_product_id": "p-milk-north", "quantity": 4}]
    assert cur.products["p-milk"]["stock_boh"] == 36
    assert cur.products["p-milk-north"]["stock_boh"] == 5


def test_cross_store_transfer_needs_destination_product(monkeypatch):
    cur = FakeCursor(
        _transfer("In Transit", to_store=NORTHSIDE),
        [_line("p-milk", 1)],
        [_milk()],
    )
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        transfers_router.complete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=None)
    assert exc.value.status_code == 409


def test_completion_locks_both_stores_once_in_id_order(monkeypatch):
    bread = {"id": "p-bread", "name": "Bread", "barcode": "P-BK-001", "store_id": DOWNTOWN, "stock_foh": 0, "stock_boh": 9}
    north_bread = dict(bread, id="p-aa-bread", store_id=NORTHSIDE, stock_boh=0)
    cur = FakeCursor(
        _transfer("In Transit", to_store=NORTHSIDE, to_loc="back-of-house"),
        # Lines arrive in name order, which is not id order.
        [_line("p-bread", 2, name="Bread", barcode="P-BK-001"), _line("p-milk", 3)],
        [bread, north_bread, _milk(), _milk(pid="p-milk-north", store=NORTHSIDE, foh=0, boh=0)],
    )
    _patch(monkeypatch, cur)
    transfers_router.complete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=None)

    assert cur.locks == [["p-aa-bread", "p-bread", "p-milk", "p-milk-north"]]
    lock_sql = [sql for sql, _ in cur.executed if "FOR UPDATE" in sql and "FROM products" in sql]
    assert len(lock_sql) == 1 and "ORDER BY id" in lock_sql[0]
    first_update = next(i for i, (sql, _) in enumerate(cur.executed) if sql.startswith("UPDATE products"))
    lock_at = next(i for i, (sql, _) in enumerate(cur.executed) if sql in lock_sql)
    assert lock_at < first_update
    assert cur.products["p-aa-bread"]["stock_boh"] == 2
    assert cur.products["p-milk-north"]["stock_boh"] == 3


def test_repeated_product_lines_share_the_stock_check(monkeypatch):
    cur = FakeCursor(_transfer("In Transit"), [_line("p-milk", 30), _line("p-milk", 30)], [_milk()])
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        transfers_router.complete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=DOWNTOWN)
    assert exc.value.status_code == 409


def test_insufficient_source_stock(monkeypatch):
    cur = FakeCursor(_transfer("In Transit"), [_line("p-milk", 50)], [_milk()])
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        transfers_router.complete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=DOWNTOWN)
    assert exc.value.status_code == 409
    assert "insufficient back-of-house stock" in exc.value.detail
    assert cur.products["p-milk"]["stock_boh"] == 40


def test_complete_requires_approval(monkeypatch):
    cur = FakeCursor(_transfer("Pending Approval"), [], [])
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        transfers_router.complete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=DOWNTOWN)
    assert exc.value.status_code == 409


def test_approve_moves_to_in_transit(monkeypatch):
    cur = FakeCursor(_transfer("Pending Approval"), [], [])
    _patch(monkeypatch, cur)
    res = transfers_router.approve_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=DOWNTOWN)
    assert res["status"] == "In Transit"
    assert cur.transfer["status"] == "In Transit"


def test_completed_transfer_cannot_be_deleted(monkeypatch):
    cur = FakeCursor(_transfer("Completed"), [], [])
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        transfers_router.delete_transfer(TRANSFER_ID, company_id="c1", actor=ACTOR, scope=DOWNTOWN)
    assert exc.value.status_code == 409


def test_unknown_transfer(monkeypatch):
    cur = FakeCursor(None, [], [])
    _patch(monkeypatch, cur)
    with pytest.raises(HTTPException) as exc:
        transfers_router.get_transfer(TRANSFER_ID, company_id="c1", scope=DOWNTOWN)
    assert exc.value.status_code == 404


def test_transfer_payload_validation():
    with pytest.raises(ValueError):
        transfers_router.TransferIn(from_location="boh", to_location="foh", lines=[])
    with pytest.raises(ValueError):
        transfers_router.TransferIn(
            from_location="boh", to_location="foh", lines=[{"product_id": str(uuid.uuid4()), "quantity": 0}]
        )
    t = transfers_router.TransferIn(
        from_location="boh", to_location="foh", lines=[{"product_id": str(uuid.uuid4()), "quantity": 3}]
    )
    assert (t.from_location, t.to_location) == ("back-of-house", "front-of-house")


def test_list_filters_by_known_status_only(monkeypatch):
    from fastapi.testclient import TestClient

    from invenqrise.app.deps import get_company_id, get_membership
    from invenqrise.app.main import app

    cur = FakeCursor(None, [], [])
    _patch(monkeypatch, cur)
    app.dependency_overrides[get_company_id] = lambda: "c1"
    app.dependency_overrides[get_membership] = lambda: {"user_id": "u0", "role": "Owner", "store_id": None}
    try:
        client = TestClient(app)
        ok = client.get("/transfers", params={"status": "In Transit"})
        bad = client.get("/transfers", params={"status": "Shipped"})
    finally:
        app.dependency_overrides.clear()
    assert ok.status_code == 200
    assert ok.json() == {"transfers": []}
    assert cur.executed[-1][1][:3] == ("c1", "In Transit", "In Transit")
    assert bad.status_code == 422
