import csv
import io
from datetime import date, datetime, timezone
from decimal import Decimal

import pytest
from fastapi import HTTPException

from invenqrise.app.routers import reports as reports_router
from invenqrise.app.routers.reports import default_projection_window, format_items, sales_csv


class _DummyCursor:
    def __init__(self, rows):
        self._rows = rows
        self.executed = []

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def execute(self, sql, params=None):
        self.executed.append((sql, params))

    def fetchall(self):
        return list(self._rows)

    def fetchone(self):
        return None


class _DummyConn:
    def __init__(self, cursor):
        self._cursor = cursor

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def cursor(self):
        return self._cursor


def _patch_db(monkeypatch, rows):
    cur = _DummyCursor(rows)
    conn = _DummyConn(cur)
    monkeypatch.setattr(reports_router, "get_conn", lambda: conn)
    monkeypatch.setattr(reports_router, "set_company_context", lambda *_args, **_kwargs: None)
    return cur


def _sale(i, day):
    return {
        "id": f"sale-{i}",
        "sold_at": datetime(2026, 1, day, 9, 0, tzinfo=timezone.utc),
        "customer_name": "Asha",
        "customer_email": "asha@example.com",
        "store_code": "Downtown",
        "amount": Decimal("10.50"),
        "items": [{"name": "Milk", "quantity": 2}, {"name": "Bread", "quantity": 1}],
    }


def test_format_items():
    assert format_items([{"name": "Milk", "quantity": 2}, {"name": "Other", "quantity": 1}]) == "2x Milk; 1x Other"
    assert format_items(None) == ""


def test_sales_csv_headers_and_rows():
    out = sales_csv([_sale(1, 2)])
    rows = list(csv.reader(io.StringIO(out)))
    assert rows[0] == ["SaleID", "Date", "CustomerName", "CustomerEmail", "Store", "TotalAmount", "Items"]
    assert rows[1] == ["sale-1", "2026-01-02T09:00:00+00:00", "Asha", "asha@example.com", "Downtown", "10.50", "2x Milk; 1x Bread"]


def test_export_is_oldest_first(monkeypatch):
    # fetch_sales returns newest first.
    _patch_db(monkeypatch, [_sale(2, 5), _sale(1, 2)])
    resp = reports_router.export_sales_csv(start_date=date(2026, 1, 1), end_date=date(2026, 1, 31), company_id="c1")
    assert resp.media_type == "text/csv"
    assert 'filename="sales-report-2026-01-01-to-2026-01-31.csv"' in resp.headers["content-disposition"]
    lines = resp.body.decode("utf-8").splitlines()
    assert lines[1].startswith("sale-1,")
    assert lines[2].startswith("sale-2,")


def test_export_without_sales_is_404(monkeypatch):
    _patch_db(monkeypatch, [])
    with pytest.raises(HTTPException) as exc:
        reports_router.export_sales_csv(start_date=date(2026, 1, 1), end_date=date(2026, 1, 31), company_id="c1")
    assert exc.value.status_code == 404
    assert exc.value.detail == "no sales in the selected date range"


def test_export_rejects_inverted_range(monkeypatch):
    _patch_db(monkeypatch, [])
    with pytest.raises(HTTPException) as exc:
        reports_router.export_sales_csv(start_date=date(2026, 2, 1), end_date=date(2026, 1, 1), company_id="c1")
    assert exc.value.status_code == 400


def test_default_projection_window():
    start, end = default_projection_window(date(2026, 3, 17))
    assert start == date(2025, 12, 1)
    assert end == date(2026, 3, 31)


def test_projection_needs_ten_sales(monkeypatch):
    _patch_db(monkeypatch, [_sale(i, 1 + i) for i in range(9)])
    with pytest.raises(HTTPException) as exc:
        reports_router.sales_projection(reports_router.ProjectionIn(), company_id="c1")
    assert exc.value.status_code == 400


def test_projection_uses_heuristic_without_llm(monkeypatch):
    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    _patch_db(monkeypatch, [_sale(i, 1 + i) for i in range(10)])
    res = reports_router.sales_projection(
        reports_router.ProjectionIn(start_date=date(2026, 1, 1), end_date=date(2026, 1, 10)),
        company_id="c1",
    )
    assert res["sales_count"] == 10
    assert res["projection"]["source"] == "heuristic"
    # 105.00 over 10 days -> 10.50 a day -> 315.00 for 30 days.
    assert res["projection"]["projected_revenue"] == 315.0


def test_email_report_defaults_to_current_user(monkeypatch):
    _patch_db(monkeypatch, [_sale(1, 2)])
    captured = {}

    def _send(**kwargs):
        captured.update(kwargs)
        return {"success": True, "message": "sent"}

    monkeypatch.setattr(reports_router, "send_report_email", _send)
    res = reports_router.email_sales_report(
        reports_router.ReportEmailIn(start_date=date(2026, 1, 1), end_date=date(2026, 1, 31)),
        company_id="c1",
        user={"user_id": "u1", "email": "me@example.com"},
    )
    assert res["recipient"] == "me@example.com"
    assert captured["record_count"] == 1
    assert captured["csv_text"].startswith("SaleID,")


def test_projection_accepts_an_empty_request(monkeypatch):
    from fastapi.testclient import TestClient

    from invenqrise.app.deps import get_company_id, get_membership
    from invenqrise.app.main import app

    monkeypatch.delenv("OPENAI_API_KEY", raising=False)
    _patch_db(monkeypatch, [_sale(i, 1 + i) for i in range(12)])
    app.dependency_overrides[get_company_id] = lambda: "c1"
    app.dependency_overrides[get_membership] = lambda: {"user_id": "u1", "role": "Owner", "store_id": None}
    try:
        res = TestClient(app).post("/reports/sales-projection")
    finally:
        app.dependency_overrides.clear()
    assert res.status_code == 200
    start, end = default_projection_window(date.today())
    assert res.json()["start_date"] == start.isoformat()
    assert res.json()["end_date"] == end.isoformat()
