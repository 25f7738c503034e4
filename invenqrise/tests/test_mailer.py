import base64
import io
import json
import urllib.error
import urllib.request
from datetime import datetime

from invenqrise.app import mailer
from invenqrise.app.config import settings


class _FakeResponse:
    def __init__(self, body: dict):
        self._body = json.dumps(body).encode("utf-8")

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        return False

    def read(self):
        return self._body


def _capture(monkeypatch, *, sandbox=""):
    sent = []

    def _urlopen(req, timeout=None):
        sent.append({"url": req.full_url, "headers": dict(req.header_items()), "payload": json.loads(req.data.decode("utf-8"))})
        return _FakeResponse({"id": "email_123"})

    monkeypatch.setattr(settings, "resend_api_key", "re_test")
    monkeypatch.setattr(settings, "resend_sandbox_recipient", sandbox)
    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    return sent


def test_send_email_posts_to_resend(monkeypatch):
    sent = _capture(monkeypatch)
    res = mailer.send_email(to="cashier@example.com", subject="Hello", body_html="<p>hi</p>", sender="Alerts")
    assert res == {"success": True, "message": "Email sent to cashier@example.com.", "id": "email_123"}
    assert sent[0]["url"].endswith("/emails")
    assert sent[0]["headers"]["Authorization"] == "Bearer re_test"
    assert sent[0]["payload"]["to"] == ["cashier@example.com"]
    assert sent[0]["payload"]["from"].startswith("InvenQrise Alerts <")


def test_sandbox_redirects_with_banner(monkeypatch):
    sent = _capture(monkeypatch, sandbox="owner@example.com")
    res = mailer.send_email(to="customer@example.com", subject="Receipt", body_html="<p>x</p>", sender="Billing")
    assert res["success"] is True
    payload = sent[0]["payload"]
    assert payload["to"] == ["owner@example.com"]
    assert payload["subject"] == "TEST: Receipt"
    assert "customer@example.com" in payload["html"]


def test_missing_api_key_returns_failure(monkeypatch):
    monkeypatch.setattr(settings, "resend_api_key", "")
    res = mailer.send_email(to="a@example.com", subject="s", body_html="b", sender="Alerts")
    assert res["success"] is False
    assert "RESEND_API_KEY" in res["message"]


def test_http_error_returns_failure(monkeypatch):
    monkeypatch.setattr(settings, "resend_api_key", "re_test")
    monkeypatch.setattr(settings, "resend_sandbox_recipient", "")

    def _urlopen(req, timeout=None):
        raise urllib.error.HTTPError(req.full_url, 422, "Unprocessable", {}, io.BytesIO(b'{"message":"bad from"}'))

    monkeypatch.setattr(urllib.request, "urlopen", _urlopen)
    res = mailer.send_email(to="a@example.com", subject="s", body_html="b", sender="Alerts")
    assert res["success"] is False
    assert "Resend HTTP 422" in res["message"]


def test_empty_recipient_is_rejected():
    assert mailer.send_email(to=" ", subject="s", body_html="b", sender="Alerts")["success"] is False


def test_receipt_lists_items_and_total(monkeypatch):
    monkeypatch.setattr(settings, "currency_symbol", "₹")
    body = mailer.receipt_html(
        customer_name="Asha",
        sale_id="abc1234xyz",
        sale_date=datetime(2026, 3, 4, 10, 30),
        store="Downtown",
        items=[{"name": "Bananas", "quantity": 2, "price": 0.59}, {"name": "Milk <1L>", "quantity": 1, "price": 3.5}],
        total_amount=4.68,
    )
    assert "Bananas" in body
    assert "Milk &lt;1L&gt;" in body
    assert "₹1.18" in body
    assert "₹4.68" in body
    assert "March 04, 2026" in body


def test_report_email_attaches_csv(monkeypatch):
    sent = _capture(monkeypatch)
    res = mailer.send_report_email(
        recipient_email="owner@example.com",
        date_from="2026-01-01",
        date_to="2026-01-31",
        csv_text="SaleID,Date\n1,2026-01-02\n",
        record_count=1,
    )
    assert res["success"] is True
    assert res["message"] == "An email report has been successfully sent to owner@example.com."
    att = sent[0]["payload"]["attachments"][0]
    assert att["filename"] == "sales-report-2026-01-01-to-2026-01-31.csv"
    assert base64.b64decode(att["content"]).decode("utf-8").startswith("SaleID,Date")
