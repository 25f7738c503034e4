from fastapi import APIRouter, Depends, Response, HTTPException
from pydantic import BaseModel
from datetime import date, timedelta
from typing import Any, Iterable, Optional
import calendar
import csv
import io

from ..ai.flows import generate_inventory_insights, generate_sales_projection
from ..ai.providers import resolve_llm_config
from ..db import get_conn, set_company_context
from ..deps import get_company_id, require_permission, get_current_user
from ..mailer import send_report_email
from ..validation import Email
from .sales import fetch_sales

router = APIRouter(prefix="/reports", tags=["reports"])

SALES_CSV_HEADERS = ["SaleID", "Date", "CustomerName", "CustomerEmail", "Store", "TotalAmount", "Items"]
PROJECTION_LOOKBACK_DAYS = 90
PROJECTION_MIN_SALES = 10
INSIGHTS_DAYS = 30
INSIGHTS_MIN_SALES = 5


class ReportEmailIn(BaseModel):
    recipient_email: Optional[Email] = None
    start_date: date
    end_date: date


class ProjectionIn(BaseModel):
    start_date: Optional[date] = None
    end_date: Optional[date] = None


def format_items(items: Optional[Iterable[dict[str, Any]]]) -> str:
    return "; ".join(f"{int(it.get('quantity') or 0)}x {it.get('name') or ''}" for it in (items or []))


def sales_csv(rows: list[dict[str, Any]]) -> str:
    output = io.StringIO()
    writer = csv.writer(output)
    writer.writerow(SALES_CSV_HEADERS)
    for r in rows:
        writer.writerow(
            [
                r["id"],
                r["sold_at"].isoformat(),
                r["customer_name"],
                r.get("customer_email") or "",
                r.get("store_code") or "",
                f"{float(r['amount']):.2f}",
                format_items(r.get("items")),
            ]
        )
    return output.getvalue()


def _check_range(start_date: date, end_date: date) -> None:
    if end_date < start_date:
        raise HTTPException(status_code=400, detail="end_date must be on or after start_date")


def _range_sales(company_id: str, start_date: date, end_date: date) -> list[dict[str, Any]]:
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            rows = fetch_sales(cur, company_id, start_date, end_date, limit=100000)
    if not rows:
        raise HTTPException(status_code=404, detail="no sales in the selected date range")
    # Oldest first reads better in a spreadsheet.
    rows.reverse()
    return rows


@router.get("/sales.csv", dependencies=[Depends(require_permission("reports:read"))])
def export_sales_csv(start_date: date, end_date: date, company_id: str = Depends(get_company_id)):
    _check_range(start_date, end_date)
    rows = _range_sales(company_id, start_date, end_date)
    filename = f"sales-report-{start_date.isoformat()}-to-{end_date.isoformat()}.csv"
    return Response(
        content=sales_csv(rows),
        media_type="text/csv",
        headers={"Content-Disposition": f'attachment; filename="{filename}"'},
    )


@router.post("/email", dependencies=[Depends(require_permission("reports:read"))])
def email_sales_report(data: ReportEmailIn, company_id: str = Depends(get_company_id), user=Depends(get_current_user)):
    _check_range(data.start_date, data.end_date)
    rows = _range_sales(company_id, data.start_date, data.end_date)
    recipient = data.recipient_email or user["email"]
    res = send_report_email(
        recipient_email=recipient,
        date_from=data.start_date.isoformat(),
        date_to=data.end_date.isoformat(),
        csv_text=sales_csv(rows),
        record_count=len(rows),
    )
    if not res["success"]:
        raise HTTPException(status_code=502, detail="failed to send report email")
    return {"success": True, "message": res["message"], "recipient": recipient, "records": len(rows)}


def default_projection_window(today: date) -> tuple[date, date]:
    """90 days before the first of this month through the end of this month."""
    month_start = today.replace(day=1)
    month_end = today.replace(day=calendar.monthrange(today.year, today.month)[1])
    return month_start - timedelta(days=PROJECTION_LOOKBACK_DAYS), month_end


@router.post("/sales-projection", dependencies=[Depends(require_permission("insights:read"))])
def sales_projection(data: Optional[ProjectionIn] = None, company_id: str = Depends(get_company_id)):
    # The dialog may post no body at all; both bounds default.
    data = data or ProjectionIn()
    start, end = default_projection_window(date.today())
    start = data.start_date or start
    end = data.end_date or end
    _check_range(start, end)
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            rows = fetch_sales(cur, company_id, start, end, limit=100000)
            config = resolve_llm_config(cur, company_id)
    if len(rows) < PROJECTION_MIN_SALES:
        raise HTTPException(
            status_code=400,
            detail=f"not enough sales data to generate a projection (need at least {PROJECTION_MIN_SALES})",
        )
    history = [{"date": r["sold_at"], "amount": float(r["amount"])} for r in rows]
    projection = generate_sales_projection(history, window_days=(end - start).days + 1, config=config)
    return {"start_date": start, "end_date": end, "sales_count": len(rows), "projection": projection}


@router.post("/inventory-insights", dependencies=[Depends(require_permission("insights:read"))])
def inventory_insights(company_id: str = Depends(get_company_id)):
    today = date.today()
    with get_conn() as conn:
        set_company_context(conn, company_id)
        with conn.cursor() as cur:
            sales = fetch_sales(cur, company_id, today - timedelta(days=INSIGHTS_DAYS), today, limit=100000)
            if len(sales) < INSIGHTS_MIN_SALES:
                raise HTTPException(
                    status_code=400,
                    detail=f"not enough sales in the last {INSIGHTS_DAYS} days (need at least {INSIGHTS_MIN_SALES})",
                )
            cur.execute(
                """
                SELECT p.id, p.name, c.name AS category,
                       p.stock_foh AS front_of_house, p.stock_boh AS back_of_house
                FROM products p
                JOIN categories c ON c.id = p.category_id
                WHERE p.company_id = %s
                ORDER BY p.name
                """,
                (company_id,),
            )
            products = cur.fetchall()
            config = resolve_llm_config(cur, company_id)
    sales_data = [{"date": s["sold_at"], "items": s["items"]} for s in sales]
    return {"insights": generate_inventory_insights(sales_data, products, config=config)}
