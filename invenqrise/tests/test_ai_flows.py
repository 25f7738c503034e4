from datetime import date, timedelta

import pytest

from invenqrise.app.ai import flows
from invenqrise.app.ai.flows import (
    generate_inventory_insights,
    generate_sales_projection,
    heuristic_campaign_name,
    heuristic_inventory_insights,
    heuristic_product_category,
    heuristic_sales_projection,
    purchase_quantity,
    suggest_campaign_name,
    suggest_product_category,
)

CONFIG = {"provider": "openai", "base_url": "https://api.openai.com", "api_key": "sk-test", "model": "gpt-4o-mini"}
CATEGORIES = ["Bakery", "Dairy & Eggs", "Fresh Produce", "Organic"]


def test_category_keyword_match():
    assert heuristic_product_category("Bananas", "", CATEGORIES)["suggested_category"] == "Fresh Produce"
    assert heuristic_product_category("Sourdough Bread", "crusty loaf", CATEGORIES)["suggested_category"] == "Bakery"
    assert heuristic_product_category("Whole Milk", "", CATEGORIES)["suggested_category"] == "Dairy & Eggs"


def test_category_name_hit_beats_hint_hit():
    res = heuristic_product_category("Organic Apples", "", CATEGORIES)
    assert res["suggested_category"] == "Organic"
    assert res["source"] == "heuristic"


def test_category_requires_existing_categories():
    with pytest.raises(ValueError):
        heuristic_product_category("Milk", "", [])


def test_llm_category_must_be_existing(monkeypatch):
    monkeypatch.setattr(flows, "structured_completion", lambda *_a, **_k: {"suggested_category": "dairy & eggs", "reasoning": "milk"})
    res = suggest_product_category("Whole Milk", "", CATEGORIES, config=CONFIG)
    assert res == {"suggested_category": "Dairy & Eggs", "reasoning": "milk", "source": "llm"}

    monkeypatch.setattr(flows, "structured_completion", lambda *_a, **_k: {"suggested_category": "Spaceships", "reasoning": "?"})
    res = suggest_product_category("Whole Milk", "", CATEGORIES, config=CONFIG)
    assert res["source"] == "heuristic"
    assert res["suggested_category"] == "Dairy & Eggs"


def test_llm_failure_falls_back(monkeypatch):
    def _boom(*_a, **_k):
        raise RuntimeError("OpenAI HTTP 500")

    monkeypatch.setattr(flows, "structured_completion", _boom)
    res = suggest_campaign_name("Bakery", ["Sourdough Bread"], config=CONFIG)
    assert res["source"] == "heuristic"
    assert res == heuristic_campaign_name("Bakery", ["Sourdough Bread"])


def test_campaign_name_is_deterministic():
    a = heuristic_campaign_name("Dairy & Eggs", ["Whole Milk", "Greek Yogurt"])
    b = heuristic_campaign_name("Dairy & Eggs", ["Whole Milk", "Greek Yogurt"])
    assert a == b
    assert len(a["campaign_name"]) >= 3


def test_short_llm_campaign_name_is_rejected(monkeypatch):
    monkeypatch.setattr(flows, "structured_completion", lambda *_a, **_k: {"campaign_name": "Go", "reasoning": ""})
    assert suggest_campaign_name("Bakery", ["Muffins"], config=CONFIG)["source"] == "heuristic"


def test_sales_projection_average_daily_rate():
    start = date(2026, 1, 1)
    history = [{"date": start + timedelta(days=i), "amount": 100} for i in range(10)]
    res = heuristic_sales_projection(history, window_days=10)
    assert res["projected_revenue"] == 3000.0
    assert res["projected_sales_count"] == 30
    assert "steady" in res["summary"]


def test_sales_projection_detects_upward_trend():
    start = date(2026, 1, 1)
    history = [{"date": start + timedelta(days=i), "amount": 50 if i < 5 else 150} for i in range(10)]
    assert "upward" in heuristic_sales_projection(history)["summary"]


def test_sales_projection_without_history():
    res = heuristic_sales_projection([])
    assert res["projected_revenue"] == 0.0
    assert res["projected_sales_count"] == 0


def test_purchase_quantity_formula():
    assert purchase_quantity(10, 5) == 8
    assert purchase_quantity(8, 10) == 0
    assert purchase_quantity(0, 0) == 0


def _products():
    return [
        {"id": "a", "name": "Bananas", "category": "Fresh Produce", "front_of_house": 3, "back_of_house": 2},
        {"id": "b", "name": "Whole Milk", "category": "Dairy & Eggs", "front_of_house": 6, "back_of_house": 4},
        {"id": "c", "name": "Ketchup", "category": "Condiments & Sauces", "front_of_house": 50, "back_of_house": 0},
    ]


def _sales():
    return [
        {"date": date(2026, 1, 2), "items": [{"product_id": "a", "name": "Bananas", "quantity": 6}]},
        {"date": date(2026, 1, 3), "items": [{"product_id": "a", "name": "Bananas", "quantity": 4}, {"product_id": "b", "name": "Whole Milk", "quantity": 2}]},
    ]


def test_inventory_insights_heuristic():
    res = heuristic_inventory_insights(_sales(), _products())
    assert res["best_sellers"] == [
        {"product_name": "Bananas", "units_sold": 10},
        {"product_name": "Whole Milk", "units_sold": 2},
    ]
    assert res["worst_sellers"] == [{"product_name": "Ketchup", "units_sold": 0}]
    # Bananas: ceil(10 * 1.25 - 5) = 8; Whole Milk: ceil(2.5 - 10) <= 0 is dropped.
    assert res["purchase_suggestions"] == [
        {"product_name": "Bananas", "current_stock": 5, "predicted_sales": 10, "suggested_purchase_quantity": 8}
    ]
    assert res["summary"].startswith("Fresh Produce is the top-performing category")


def test_inventory_insights_llm_output_is_clipped(monkeypatch):
    monkeypatch.setattr(
        flows,
        "structured_completion",
        lambda *_a, **_k: {
            "best_sellers": [{"product_name": f"P{i}", "units_sold": 10 - i} for i in range(8)],
            "worst_sellers": [],
            "purchase_suggestions": [
                {"product_name": "P0", "current_stock": 1, "predicted_sales": 10, "suggested_purchase_quantity": 11.2},
                {"product_name": "P1", "current_stock": 50, "predicted_sales": 1, "suggested_purchase_quantity": -3},
            ],
            "summary": "ok",
        },
    )
    res = generate_inventory_insights(_sales(), _products(), config=CONFIG)
    assert res["source"] == "llm"
    assert len(res["best_sellers"]) == 5
    assert res["purchase_suggestions"] == [
        {"product_name": "P0", "current_stock": 1, "predicted_sales": 10, "suggested_purchase_quantity": 12}
    ]


def test_infinite_llm_numbers_fall_back_to_heuristics(monkeypatch):
    inf = float("inf")
    monkeypatch.setattr(
        flows,
        "structured_completion",
        lambda *_a, **_k: {"projected_revenue": 10.0, "projected_sales_count": inf, "summary": "x"},
    )
    history = [{"date": date(2026, 1, 1) + timedelta(days=i), "amount": 100} for i in range(10)]
    assert generate_sales_projection(history, window_days=10, config=CONFIG)["source"] == "heuristic"

    monkeypatch.setattr(
        flows,
        "structured_completion",
        lambda *_a, **_k: {
            "best_sellers": [{"product_name": "P0", "units_sold": inf}],
            "worst_sellers": [],
            "purchase_suggestions": [
                {"product_name": "P0", "current_stock": 1, "predicted_sales": 10, "suggested_purchase_quantity": inf}
            ],
            "summary": "ok",
        },
    )
    assert generate_inventory_insights(_sales(), _products(), config=CONFIG)["source"] == "heuristic"
