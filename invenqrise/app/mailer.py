"""
Transactional email through the Resend HTTP API.

Every sender returns `{"success": bool, "message": str}` and never raises:
email is follow-up work (receipts, alerts) and must not fail the request that
triggered it. Login OTP is the exception, where the caller checks `success`.
"""

from __future__ import annotations

import base64
import html
import json
import urllib.error
import urllib.request
from datetime import datetime
from typing import Any, Iterable, Optional

from .config import settings
from .logs import json_log


def _resend_call(payload: dict[str, Any]) -> dict[str, Any]:
    if not settings.resend_api_key:
        raise RuntimeError("RESEND_API_KEY is not configured")
    req = urllib.request.Request(
        f"{settings.resend_base_url}/emails",
        data=json.dumps(payload).encode("utf-8"),
        headers={"Authorization": f"Bearer {settings.resend_api_key}", "Content-Type": "application/json"},
        method="POST",
    )
    try:
        with urllib.request.urlopen(req, timeout=20) as resp:
            return json.loads(resp.read().decode("utf-8") or "{}")
    except urllib.error.HTTPError as e:
        body = e.read().decode("utf-8", errors="replace") if hasattr(e, "read") else str(e)
        raise RuntimeError(f"Resend HTTP {getattr(e, 'code', '?')}: {body}") from e


def money(amount) -> str:
    return f"{settings.currency_symbol}{float(amount or 0):.2f}"


def _sandbox_banner(original: str) -> str:
    return (
        '<div style="background-color: #f8d7da; color: #721c24; padding: 10px; border-radius: 5px; '
        'margin-bottom: 15px; text-align: center;">'
        "<strong>TEST EMAIL:</strong> This email was redirected for testing. "
        f"The original recipient would have been {html.escape(original)}."
        "</div>"
    )


def send_email(
    *,
    to: str,
    subject: str,
    body_html: str,
    sender: str,
    attachments: Optional[list[dict[str, str]]] = None,
) -> dict[str, Any]:
    recipient = (to or "").strip()
    if not recipient:
        return {"success": False, "message": "recipient email is required"}

    sandbox = settings.resend_sandbox_recipient
    if sandbox and sandbox.lower() != recipient.lower():
        body_html = _sandbox_banner(recipient) + body_html
        subject = f"TEST: {subject}"
        deliver_to = sandbox
    else:
        deliver_to = recipient

    payload: dict[str, Any] = {
        "from": f"{settings.brand_name} {sender} <{settings.resend_from_email}>",
        "to": [deliver_to],
        "subject": subject,
        "html": body_html,
    }
    if attachments:
        payload["attachments"] = attachments

    try:
        res = _resend_call(payload)
    except (RuntimeError, urllib.error.URLError, OSError, ValueError) as exc:
        json_log("warning", "email.send_failed", sender=sender, to=deliver_to, subject=subject, error=str(exc))
        return {"success": False, "message": f"Failed to send email: {exc}"}

    json_log("info", "email.sent", sender=sender, to=deliver_to, subject=subject, email_id=res.get("id"))
    return {"success": True, "message": f"Email sent to {deliver_to}.", "id": res.get("id")}


def send_otp_email(email: str, name: str, code: str) -> dict[str, Any]:
    body = f"""
<div style="font-family: sans-serif; text-align: center; padding: 20px;">
  <h2>Hi {html.escape(name or "there")},</h2>
  <p>Your One-Time Password (OTP) for {html.escape(settings.brand_name)} is:</p>
  <p style="font-size: 24px; font-weight: bold; letter-spacing: 4px; border: 1px solid #ccc; padding: 10px; display: inline-block;">{html.escape(code)}</p>
  <p>This code will expire in {settings.otp_ttl_minutes} minutes. If you did not request this, please secure your account.</p>
</div>
"""
    return send_email(
        to=email,
        subject=f"Your {settings.brand_name} Verification Code",
        body_html=body,
        sender="Security",
    )


def receipt_html(
    *,
    customer_name: str,
    sale_id: str,
    sale_date: datetime,
    store: str,
    items: Iterable[dict[str, Any]],
    total_amount,
) -> str:
    rows = []
    for it in items:
        qty = int(it.get("quantity") or 0)
        price = float(it.get("price") or 0)
        rows.append(
            "<tr>"
            f'<td style="padding: 8px; border-bottom: 1px solid #eee;">{html.escape(str(it.get("name") or ""))}</td>'
            f'<td style="padding: 8px; border-bottom: 1px solid #eee; text-align: center;">{qty}</td>'
            f'<td style="padding: 8px; border-bottom: 1px solid #eee; text-align: right;">{money(price)}</td>'
            f'<td style="padding: 8px; border-bottom: 1px solid #eee; text-align: right;">{money(qty * price)}</td>'
            "</tr>"
        )
    return f"""
<div style="font-family: sans-serif; max-width: 600px; margin: auto; border: 1px solid #eee; padding: 20px;">
  <h1 style="color: #333; text-align: center;">Thank you for your purchase!</h1>
  <p>Hi {html.escape(customer_name or "there")},</p>
  <p>Here is your receipt from {html.escape(settings.brand_name)} ({html.escape(store or "")}).</p>
  <hr style="border: none; border-top: 1px solid #eee;" />
  <p><strong>Sale ID:</strong> {html.escape(str(sale_id))}<br>
     <strong>Date:</strong> {sale_date.strftime("%B %d, %Y %I:%M %p")}</p>
  <table style="width: 100%; border-collapse: collapse;">
    <thead>
      <tr>
        <th style="padding: 8px; border-bottom: 2px solid #ddd; text-align: left;">Item</th>
        <th style="padding: 8px; border-bottom: 2px solid #ddd; text-align: center;">Qty</th>
        <th style="padding: 8px; border-bottom: 2px solid #ddd; text-align: right;">Price</th>
        <th style="padding: 8px; border-bottom: 2px solid #ddd; text-align: right;">Total</th>
      </tr>
    </thead>
    <tbody>{"".join(rows)}</tbody>
    <tfoot>
      <tr>
        <td colspan="3" style="padding: 10px 8px; text-align: right; font-weight: bold;">Grand Total</td>
        <td style="padding: 10px 8px; text-align: right; font-weight: bold; border-top: 2px solid #ddd;">{money(total_amount)}</td>
      </tr>
    </tfoot>
  </table>
  <p style="text-align: center; margin-top: 20px; font-size: 12px; color: #888;">Powered by {html.escape(settings.brand_name)}</p>
</div>
"""


def send_receipt_email(
    *,
    recipient_email: str,
    customer_name: str,
    sale_id: str,
    sale_date: datetime,
    store: str,
    items: list[dict[str, Any]],
    total_amount,
) -> dict[str, Any]:
    body = receipt_html(
        customer_name=customer_name,
        sale_id=sale_id,
        sale_date=sale_date,
        store=store,
        items=items,
        total_amount=total_amount,
    )
    return send_email(
        to=recipient_email,
        subject=f"Receipt for {customer_name} (Sale #{str(sale_id)[:7]})",
        body_html=body,
        sender="Billing",
    )


def send_report_email(
    *,
    recipient_email: str,
    date_from: str,
    date_to: str,
    csv_text: str,
    record_count: int,
) -> dict[str, Any]:
    body = f"""
<h1>{html.escape(settings.brand_name)} Sales Report</h1>
<p>Hi there,</p>
<p>Attached is the sales report you requested for the period of <strong>{html.escape(date_from)}</strong> to <strong>{html.escape(date_to)}</strong>.</p>
<p>Number of sales records: {int(record_count)}</p>
<p>Thank you for using {html.escape(settings.brand_name)}.</p>
"""
    attachment = {
        "filename": f"sales-report-{date_from}-to-{date_to}.csv",
        "content": base64.b64encode(csv_text.encode("utf-8")).decode("ascii"),
    }
    res = send_email(
        to=recipient_email,
        subject=f"Your Sales Report: {date_from} to {date_to}",
        body_html=body,
        sender="Reports",
        attachments=[attachment],
    )
    if res["success"]:
        res["message"] = f"An email report has been successfully sent to {recipient_email}."
    return res


def send_low_stock_email(*, recipient_email: str, product_name: str, store: str, current_stock: int) -> dict[str, Any]:
    body = f"""
<div style="font-family: sans-serif; padding: 20px;">
  <h2 style="color: #d9534f;">Low Stock Warning</h2>
  <p>This is an automated alert to inform you that a product is running low on stock.</p>
  <ul>
    <li><strong>Product:</strong> {html.escape(product_name)}</li>
    <li><strong>Store:</strong> {html.escape(store or "")}</li>
    <li><strong>Remaining Stock:</strong> {int(current_stock)}</li>
  </ul>
  <p>Please consider reordering soon to avoid a stockout.</p>
  <p>Thank you,<br/>{html.escape(settings.brand_name)} System</p>
</div>
"""
    return send_email(
        to=recipient_email,
        subject=f"Low Stock Warning: {product_name}",
        body_html=body,
        sender="Alerts",
    )


def send_stock_digest_email(
    *,
    recipient_email: str,
    low_stock: list[dict[str, Any]],
    expiring: list[dict[str, Any]],
) -> dict[str, Any]:
    def _rows(items, value_key, label):
        if not items:
            return f"<p>No {label}.</p>"
        lis = "".join(
            f"<li><strong>{html.escape(str(p.get('name') or ''))}</strong> ({html.escape(str(p.get('store_code') or ''))}): "
            f"{html.escape(str(p.get(value_key)))}</li>"
            for p in items
        )
        return f"<ul>{lis}</ul>"

    body = f"""
<div style="font-family: sans-serif; padding: 20px;">
  <h2>Daily stock digest</h2>
  <h3 style="color: #d9534f;">Low stock ({len(low_stock)})</h3>
  {_rows(low_stock, "total_stock", "low-stock products")}
  <h3 style="color: #f0ad4e;">Expiring soon ({len(expiring)})</h3>
  {_rows(expiring, "expiry_date", "products expiring soon")}
  <p>Thank you,<br/>{html.escape(settings.brand_name)} System</p>
</div>
"""
    return send_email(
        to=recipient_email,
        subject=f"Stock digest: {len(low_stock)} low, {len(expiring)} expiring",
        body_html=body,
        sender="Alerts",
    )
