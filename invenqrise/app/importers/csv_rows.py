"""
CSV uploads for the product, customer and sales import dialogs.

Headers are matched loosely (`storeId`, `store_id` and `Store ID` are the same
column). Row parsers raise ValueError with a short reason; the routers count
those rows as skipped instead of failing the whole upload.
"""

from __future__ import annotations

import csv
import io
import json
import math
import re
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from fastapi import HTTPException, UploadFile

MAX_CSV_BYTES = 5 * 1024 * 1024
MAX_CSV_ROWS = 10000

# Column limits: numeric(12,2) money and int4 stock counts.
MAX_MONEY = Decimal("9999999999.99")
MAX_STOCK = 2**31 - 1

_INT_RE = re.compile(r"^\s*([-+]?\d+)")
_NUM_RE = re.compile(r"^\s*([-+]?(?:\d+(?:\.\d*)?|\.\d+))")


def _key(header: str) -> str:
    return re.sub(r"[^a-z0-9]", "", (header or "").lower())


def parse_csv_text(text: str) -> list[dict[str, str]]:
    reader = csv.DictReader(io.StringIO(text))
    rows: list[dict[str, str]] = []
    for raw in reader:
        row = {_key(k): (v or "").strip() for k, v in raw.items() if k is not None and isinstance(v, str)}
        if not any(row.values()):
            continue
        rows.append(row)
    return rows


def read_csv_upload(file: UploadFile) -> list[dict[str, str]]:
    raw = file.file.read() or b""
    if len(raw) > MAX_CSV_BYTES:
        raise HTTPException(status_code=413, detail="file too large (max 5MB)")
    try:
        text = raw.decode("utf-8-sig")
    except UnicodeDecodeError:
        raise HTTPException(status_code=400, detail="file must be UTF-8 encoded CSV")
    try:
        rows = parse_csv_text(text)
    except csv.Error as exc:
        raise HTTPException(status_code=400, detail=f"failed to parse CSV file: {exc}")
    if not rows:
        raise HTTPException(status_code=400, detail="the selected CSV file is empty or invalid")
    if len(rows) > MAX_CSV_ROWS:
        raise HTTPException(status_code=400, detail=f"too many rows (max {MAX_CSV_ROWS})")
    return rows


def lenient_int(raw: Optional[str], default: int = 0) -> int:
    """Leading integer of the cell ("12 units" -> 12); anything else is the default."""
    m = _INT_RE.match(raw or "")
    return int(m.group(1)) if m else default


def leading_decimal(raw: Optional[str]) -> Optional[Decimal]:
    m = _NUM_RE.match(raw or "")
    if not m:
        return None
    try:
        return Decimal(m.group(1))
    except InvalidOperation:
        return None


def money(raw: Optional[str], field: str) -> Decimal:
    value = leading_decimal(raw)
    if value is None or value < 0:
        raise ValueError(f"{field} must be a number")
    try:
        value = value.quantize(Decimal("0.01"))
    except ArithmeticError:
        raise ValueError(f"{field} is out of range")
    if value > MAX_MONEY:
        raise ValueError(f"{field} is out of range")
    return value


def stock_count(raw: Optional[str], field: str) -> int:
    n = max(0, lenient_int(raw))
    if n > MAX_STOCK:
        raise ValueError(f"{field} is out of range")
    return n


def parse_datetime(raw: str) -> datetime:
    s = (raw or "").strip()
    if not s:
        raise ValueError("missing date")
    try:
        dt = datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        for fmt in ("%m/%d/%Y %H:%M:%S", "%m/%d/%Y %H:%M", "%m/%d/%Y"):
            try:
                dt = datetime.strptime(s, fmt)
                break
            except ValueError:
                continue
        else:
            raise ValueError(f"unparsable date: {s}")
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


def parse_product_row(row: dict[str, str]) -> dict[str, Any]:
    name = row.get("name") or ""
    category = row.get("category") or ""
    if not name or not category:
        raise ValueError("name and category are required")
    price = money(row.get("price"), "price")
    return {
        "name": name[:200],
        "category": category,
        "price": price,
        "stock_foh": stock_count(row.get("stockfoh"), "stock_foh"),
        "stock_boh": stock_count(row.get("stockboh"), "stock_boh"),
        "barcode": row.get("barcode") or None,
        "store": row.get("storeid") or row.get("store") or None,
    }


def parse_customer_row(row: dict[str, str]) -> dict[str, str]:
    out = {k: row.get(k) or "" for k in ("name", "email", "phone", "city")}
    if not all(out.values()):
        raise ValueError("name, email, phone and city are required")
    out["email"] = out["email"].lower()
    return out


def parse_sale_items(raw: str) -> list[dict[str, Any]]:
    try:
        items = json.loads(raw)
    except ValueError:
        raise ValueError("items is not valid JSON")
    if not isinstance(items, list):
        raise ValueError("items must be a JSON array")
    out = []
    for it in items:
        if not isinstance(it, dict):
            raise ValueError("each item must be an object")
        try:
            quantity = int(it.get("quantity") or 0)
            price = float(it.get("price") or 0)
        except (TypeError, ValueError, ArithmeticError):
            raise ValueError("item quantity and price must be numbers")
        if not math.isfinite(price) or abs(quantity) > MAX_STOCK:
            raise ValueError("item quantity or price is out of range")
        out.append(
            {
                "product_id": it.get("product_id") or it.get("productId"),
                "name": str(it.get("name") or ""),
                "quantity": quantity,
                "price": price,
            }
        )
    return out


def parse_sale_row(row: dict[str, str]) -> dict[str, Any]:
    required = ("date", "customername", "customeremail", "amount", "items")
    if not all(row.get(k) for k in required):
        raise ValueError("missing data")
    amount = money(row["amount"], "amount")
    return {
        "sold_at": parse_datetime(row["date"]),
        "customer_name": row["customername"],
        "customer_email": row["customeremail"].lower(),
        "store": row.get("storeid") or "Online",
        "amount": amount,
        "items": parse_sale_items(row["items"]),
    }
