"""
Prompt flows behind the AI tools, campaign and report pages.

Each flow takes an optional provider config (see `providers.resolve_llm_config`).
Without one, or when the provider call fails, the flow answers from a
deterministic heuristic so the dashboard keeps working offline. Every result
carries `source: "llm" | "heuristic"`.
"""

from __future__ import annotations

import json
import math
import re
import zlib
from collections import defaultdict
from datetime import date, datetime
from typing import Any, Optional

from ..logs import json_log
from .llm import structured_completion

_FLOW_ERRORS = (RuntimeError, ValueError, KeyError, TypeError, OverflowError)

# Category word -> product words that usually belong to it.
_CATEGORY_HINTS: dict[str, set[str]] = {
    "produce": {"apple", "banana", "avocado", "lettuce", "spinach", "strawberry", "berry", "tomato", "onion", "potato", "fruit", "vegetable", "carrot", "lemon", "orange", "grape"},
    "bakery": {"bread", "sourdough", "croissant", "muffin", "bagel", "cake", "bun", "roll", "baguette", "pastry"},
    "dairy": {"milk", "cheese", "cheddar", "yogurt", "butter", "cream", "paneer", "curd"},
    "egg": {"egg"},
    "meat": {"beef", "chicken", "pork", "lamb", "mutton", "steak", "sausage", "bacon", "ham", "turkey"},
    "seafood": {"salmon", "tuna", "shrimp", "prawn", "fish", "crab", "cod"},
    "frozen": {"frozen", "ice"},
    "beverage": {"water", "juice", "soda", "coffee", "tea", "kombucha", "drink", "cola", "sparkling"},
    "snack": {"chip", "crisp", "nut", "cookie", "cracker", "popcorn", "chocolate", "trail", "biscuit"},
    "household": {"towel", "soap", "detergent", "tissue", "cleaner", "bleach", "sponge", "dish", "paper"},
    "beauty": {"shampoo", "toothpaste", "lotion", "conditioner", "deodorant", "toothbrush"},
    "health": {"vitamin", "bandage", "medicine", "toothpaste"},
    "baby": {"diaper", "wipe", "formula", "baby"},
    "pet": {"dog", "cat", "pet", "kibble"},
    "wine": {"wine", "cabernet", "merlot", "sauvignon", "chardonnay"},
    "beer": {"beer", "lager", "ale", "stout"},
    "cereal": {"cereal", "oat", "granola", "muesli", "cornflake"},
    "breakfast": {"pancake", "syrup", "oat", "cereal"},
    "condiment": {"ketchup", "mustard", "mayonnaise", "relish"},
    "sauce": {"sauce", "salsa", "pesto"},
    "pantry": {"rice", "pasta", "spaghetti", "quinoa", "oil", "sugar", "lentil", "bean", "almond"},
    "canned": {"canned", "tin", "tinned"},
    "baking": {"flour", "yeast", "baking", "cocoa"},
    "deli": {"rotisserie", "sandwich", "salad", "hummus"},
    "international": {"soy", "curry", "noodle", "tortilla", "kimchi"},
    "organic": {"organic"},
}


def _stem(word: str) -> str:
    w = word.lower()
    if len(w) > 4 and w.endswith("ies"):
        return w[:-3] + "y"
    if len(w) > 4 and w.endswith("oes"):
        return w[:-2]
    if len(w) > 3 and w.endswith("s") and not w.endswith("ss"):
        return w[:-1]
    return w


def _tokens(text: str) -> set[str]:
    return {_stem(t) for t in re.findall(r"[a-z0-9]+", (text or "").lower()) if len(t) > 1}


def _match_existing(value: str, existing: list[str]) -> Optional[str]:
    v = (value or "").strip().lower()
    for c in existing:
        if c.strip().lower() == v:
            return c
    return None


def heuristic_product_category(product_name: str, product_description: str, existing_categories: list[str]) -> dict[str, Any]:
    if not existing_categories:
        raise ValueError("no categories to choose from")
    words = _tokens(f"{product_name} {product_description}")

    best, best_score = existing_categories[0], 0
    for cat in existing_categories:
        cat_words = _tokens(cat)
        hints = set(cat_words)
        for w in cat_words:
            hints |= {_stem(h) for h in _CATEGORY_HINTS.get(w, ())}
        # Direct category-name hits weigh more than hint hits.
        score = 2 * len(words & cat_words) + len(words & hints)
        if score > best_score:
            best, best_score = cat, score

    if best_score == 0:
        reasoning = f"No strong keyword match; defaulted to {best}."
    else:
        reasoning = f"The product name and description share keywords with typical {best} products."
    return {"suggested_category": best, "reasoning": reasoning, "source": "heuristic"}


def suggest_product_category(
    product_name: str,
    product_description: str,
    existing_categories: list[str],
    *,
    config: Optional[dict] = None,
) -> dict[str, Any]:
    if config:
        schema = {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "suggested_category": {"type": "string", "enum": list(existing_categories)},
                "reasoning": {"type": "string"},
            },
            "required": ["suggested_category", "reasoning"],
        }
        prompt = (
            "You are an AI assistant helping inventory managers categorize new products in a supermarket.\n"
            "Given the product name and description, and a list of existing categories, suggest the most relevant category.\n"
            "Also provide a brief reasoning for your suggestion, based on customer insights and preferences.\n"
            f"Product Name: {product_name}\n"
            f"Product Description: {product_description}\n"
            f"Existing Categories: {', '.join(existing_categories)}\n"
            "Your suggested category must be one of the existing categories provided.\n"
        )
        try:
            obj = structured_completion(config, name="product_category", schema=schema, prompt=prompt)
            cat = _match_existing(str(obj.get("suggested_category") or ""), existing_categories)
            if cat:
                return {
                    "suggested_category": cat,
                    "reasoning": str(obj.get("reasoning") or "").strip()[:500],
                    "source": "llm",
                }
            json_log("warning", "ai.category.unknown_suggestion", suggestion=obj.get("suggested_category"))
        except _FLOW_ERRORS as exc:
            json_log("warning", "ai.flow_failed", flow="product_category", error=str(exc))
    return heuristic_product_category(product_name, product_description, existing_categories)


_CAMPAIGN_TEMPLATES = (
    "{category} Fresh Picks",
    "Best of {category}",
    "{category} Super Savers",
    "{category} Spotlight Week",
    "{lead} & More Festival",
)


def heuristic_campaign_name(category: str, products: list[str]) -> dict[str, Any]:
    cat = (category or "").strip() or "Store"
    lead = (products[0].strip() if products and products[0].strip() else cat)
    key = (cat + "|" + "|".join(products or [])).encode("utf-8")
    template = _CAMPAIGN_TEMPLATES[zlib.crc32(key) % len(_CAMPAIGN_TEMPLATES)]
    name = template.format(category=cat, lead=lead)[:80]
    return {
        "campaign_name": name,
        "reasoning": f"Highlights the {cat} category and its {len(products or [])} featured product(s).",
        "source": "heuristic",
    }


def suggest_campaign_name(category: str, products: list[str], *, config: Optional[dict] = None) -> dict[str, Any]:
    if config:
        schema = {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "campaign_name": {"type": "string"},
                "reasoning": {"type": "string"},
            },
            "required": ["campaign_name", "reasoning"],
        }
        lines = "\n".join(f"- {p}" for p in products)
        prompt = (
            "You are an expert marketing assistant for a supermarket. Generate a creative and catchy campaign name.\n"
            f'The campaign is for the "{category}" category and includes the following products:\n'
            f"{lines}\n"
            "Generate a short, memorable campaign name relevant to the products and category, "
            "and a brief reasoning for your suggestion.\n"
        )
        try:
            obj = structured_completion(config, name="campaign_name", schema=schema, prompt=prompt)
            name = str(obj.get("campaign_name") or "").strip()[:80]
            if len(name) >= 3:
                return {"campaign_name": name, "reasoning": str(obj.get("reasoning") or "").strip()[:500], "source": "llm"}
        except _FLOW_ERRORS as exc:
            json_log("warning", "ai.flow_failed", flow="campaign_name", error=str(exc))
    return heuristic_campaign_name(category, products)


def _as_date(v) -> date:
    if isinstance(v, datetime):
        return v.date()
    if isinstance(v, date):
        return v
    return datetime.fromisoformat(str(v).replace("Z", "+00:00")).date()


def heuristic_sales_projection(
    historical_sales: list[dict[str, Any]],
    *,
    window_days: Optional[int] = None,
    horizon_days: int = 30,
) -> dict[str, Any]:
    """
    Average daily rate over the window, scaled to the horizon. The trend compares
    revenue in the first and second half of the window.
    """
    if not historical_sales:
        return {
            "projected_revenue": 0.0,
            "projected_sales_count": 0,
            "summary": "No historical sales to project from.",
            "source": "heuristic",
        }
    days = sorted(_as_date(s["date"]) for s in historical_sales)
    first, last = days[0], days[-1]
    span = window_days or ((last - first).days + 1)
    span = max(1, int(span))

    total = sum(float(s.get("amount") or 0) for s in historical_sales)
    revenue = round(total / span * horizon_days, 2)
    count = int(round(len(historical_sales) / span * horizon_days))

    mid = first.toordinal() + ((last - first).days + 1) / 2
    early = sum(float(s.get("amount") or 0) for s in historical_sales if _as_date(s["date"]).toordinal() < mid)
    late = total - early
    if early and late > early * 1.1:
        trend = "an upward trend"
    elif early and late < early * 0.9:
        trend = "a downward trend"
    else:
        trend = "steady sales"

    summary = (
        f"Based on {len(historical_sales)} sales over {span} days, the store averages "
        f"{total / span:.2f} in revenue per day with {trend}. "
        f"Projected for the next {horizon_days} days: {revenue:.2f} across about {count} sales."
    )
    return {"projected_revenue": revenue, "projected_sales_count": count, "summary": summary, "source": "heuristic"}


def generate_sales_projection(
    historical_sales: list[dict[str, Any]],
    *,
    window_days: Optional[int] = None,
    config: Optional[dict] = None,
) -> dict[str, Any]:
    if config:
        schema = {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "projected_revenue": {"type": "number"},
                "projected_sales_count": {"type": "number"},
                "summary": {"type": "string"},
            },
            "required": ["projected_revenue", "projected_sales_count", "summary"],
        }
        data = [{"date": _as_date(s["date"]).isoformat(), "amount": float(s.get("amount") or 0)} for s in historical_sales]
        prompt = (
            "You are a data analyst for a supermarket chain. Generate a sales projection for the next 30 days "
            "based on the provided historical sales data.\n"
            "Analyze the data to identify trends, seasonality, and growth patterns.\n"
            f"Historical Sales Data (JSON format):\n{json.dumps(data)}\n"
            "Return projected_revenue (total revenue), projected_sales_count (number of transactions) and a concise, "
            "professional summary highlighting notable trends.\n"
        )
        try:
            obj = structured_completion(config, name="sales_projection", schema=schema, prompt=prompt)
            return {
                "projected_revenue": round(max(0.0, float(obj["projected_revenue"])), 2),
                "projected_sales_count": max(0, int(round(float(obj["projected_sales_count"])))),
                "summary": str(obj.get("summary") or "").strip()[:2000],
                "source": "llm",
            }
        except _FLOW_ERRORS as exc:
            json_log("warning", "ai.flow_failed", flow="sales_projection", error=str(exc))
    return heuristic_sales_projection(historical_sales, window_days=window_days)


def purchase_quantity(predicted_sales: int, current_stock: int) -> int:
    """Units to reorder for a 30-day supply plus a 25% safety buffer."""
    return int(math.ceil(predicted_sales * 1.25 - current_stock))


def heuristic_inventory_insights(
    sales_data: list[dict[str, Any]],
    products_data: list[dict[str, Any]],
) -> dict[str, Any]:
    units: dict[str, int] = defaultdict(int)
    names: dict[str, str] = {}
    for p in products_data:
        pid = str(p["id"])
        units[pid] += 0
        names[pid] = p.get("name") or pid
    for sale in sales_data:
        for it in sale.get("items") or []:
            pid = str(it.get("product_id") or it.get("name"))
            units[pid] += int(it.get("quantity") or 0)
            names.setdefault(pid, it.get("name") or pid)

    ranked = sorted(units.items(), key=lambda kv: (-kv[1], names[kv[0]]))
    sellers = [(pid, n) for pid, n in ranked if n > 0]
    best = sellers[:5]
    best_ids = {pid for pid, _ in best}
    worst = sorted(
        [(pid, n) for pid, n in units.items() if pid not in best_ids],
        key=lambda kv: (kv[1], names[kv[0]]),
    )[:5]

    by_id = {str(p["id"]): p for p in products_data}
    suggestions = []
    for pid, sold in sellers[:10]:
        p = by_id.get(pid) or {}
        current = int(p.get("front_of_house") or 0) + int(p.get("back_of_house") or 0)
        qty = purchase_quantity(sold, current)
        if qty > 0:
            suggestions.append(
                {
                    "product_name": names[pid],
                    "current_stock": current,
                    "predicted_sales": sold,
                    "suggested_purchase_quantity": qty,
                }
            )

    cat_units: dict[str, int] = defaultdict(int)
    for pid, n in units.items():
        cat = (by_id.get(pid) or {}).get("category")
        if cat:
            cat_units[cat] += n
    parts = []
    if cat_units and max(cat_units.values()) > 0:
        top_cat = max(sorted(cat_units), key=lambda c: cat_units[c])
        parts.append(f"{top_cat} is the top-performing category with {cat_units[top_cat]} units sold.")
    if best:
        parts.append(f"{names[best[0][0]]} leads sales with {best[0][1]} units.")
    if suggestions:
        parts.append(f"{len(suggestions)} product(s) need reordering to cover the next 30 days.")
    if worst:
        slow = ", ".join(names[pid] for pid, _ in worst[:3])
        parts.append(f"Consider a discount campaign for slow movers such as {slow}.")

    return {
        "best_sellers": [{"product_name": names[pid], "units_sold": n} for pid, n in best],
        "worst_sellers": [{"product_name": names[pid], "units_sold": n} for pid, n in worst],
        "purchase_suggestions": suggestions,
        "summary": " ".join(parts) or "Not enough sales activity for insights.",
        "source": "heuristic",
    }


def _seller_schema() -> dict:
    return {
        "type": "array",
        "items": {
            "type": "object",
            "additionalProperties": False,
            "properties": {"product_name": {"type": "string"}, "units_sold": {"type": "number"}},
            "required": ["product_name", "units_sold"],
        },
    }


def generate_inventory_insights(
    sales_data: list[dict[str, Any]],
    products_data: list[dict[str, Any]],
    *,
    config: Optional[dict] = None,
) -> dict[str, Any]:
    if config:
        schema = {
            "type": "object",
            "additionalProperties": False,
            "properties": {
                "best_sellers": _seller_schema(),
                "worst_sellers": _seller_schema(),
                "purchase_suggestions": {
                    "type": "array",
                    "items": {
                        "type": "object",
                        "additionalProperties": False,
                        "properties": {
                            "product_name": {"type": "string"},
                            "current_stock": {"type": "number"},
                            "predicted_sales": {"type": "number"},
                            "suggested_purchase_quantity": {"type": "number"},
                        },
                        "required": ["product_name", "current_stock", "predicted_sales", "suggested_purchase_quantity"],
                    },
                },
                "summary": {"type": "string"},
            },
            "required": ["best_sellers", "worst_sellers", "purchase_suggestions", "summary"],
        }
        sales_json = [
            {
                "date": _as_date(s["date"]).isoformat(),
                "items": [
                    {"product_id": str(i.get("product_id") or ""), "name": i.get("name"), "quantity": int(i.get("quantity") or 0)}
                    for i in (s.get("items") or [])
                ],
            }
            for s in sales_data
        ]
        products_json = [
            {
                "id": str(p["id"]),
                "name": p.get("name"),
                "category": p.get("category"),
                "front_of_house": int(p.get("front_of_house") or 0),
                "back_of_house": int(p.get("back_of_house") or 0),
            }
            for p in products_data
        ]
        prompt = (
            "You are a supermarket inventory analyst. Provide actionable insights based on the provided data.\n"
            "Analyze the last 30 days of sales data and the current product stock levels.\n"
            f"Sales Data:\n{json.dumps(sales_json)}\n"
            f"Current Product Stock:\n{json.dumps(products_json)}\n"
            "1. Calculate total units sold per product. List the top 5 best-selling and top 5 worst-selling products.\n"
            "2. For the top 10 best sellers, current_stock is front_of_house + back_of_house and predicted_sales is "
            "last month's units sold. suggested_purchase_quantity = ceil(predicted_sales * 1.25 - current_stock); "
            "only include suggestions greater than 0.\n"
            "3. Write a brief summary naming the top-performing category and an action for the worst sellers.\n"
        )
        try:
            obj = structured_completion(config, name="inventory_insights", schema=schema, prompt=prompt)

            def _sellers(rows):
                return [
                    {"product_name": str(r["product_name"])[:200], "units_sold": max(0, int(r["units_sold"]))}
                    for r in (rows or [])[:5]
                ]

            suggestions = []
            for r in (obj.get("purchase_suggestions") or [])[:10]:
                qty = int(math.ceil(float(r["suggested_purchase_quantity"])))
                if qty <= 0:
                    continue
                suggestions.append(
                    {
                        "product_name": str(r["product_name"])[:200],
                        "current_stock": int(r["current_stock"]),
                        "predicted_sales": int(r["predicted_sales"]),
                        "suggested_purchase_quantity": qty,
                    }
                )
            return {
                "best_sellers": _sellers(obj.get("best_sellers")),
                "worst_sellers": _sellers(obj.get("worst_sellers")),
                "purchase_suggestions": suggestions,
                "summary": str(obj.get("summary") or "").strip()[:2000],
                "source": "llm",
            }
        except _FLOW_ERRORS as exc:
            json_log("warning", "ai.flow_failed", flow="inventory_insights", error=str(exc))
    return heuristic_inventory_insights(sales_data, products_data)
