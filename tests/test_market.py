"""Marketplace rules and the sell advisor tools."""

from unittest.mock import patch

import pytest

import market

ROWS = [
    {"id": "p3", "commodity": "Wheat", "price": 26.0, "unit": "kg", "location": "Karnal", "active": True,
     "created_at": "2025-06-03", "vendor_user_id": "v1", "vendors": [{"name": "Sharma Traders", "contact": "98765", "location": "Karnal"}]},
    {"id": "p2", "commodity": "Rice", "price": 40.0, "unit": "kg", "location": "Karnal", "active": False,
     "created_at": "2025-06-02", "vendor_user_id": None, "vendors": None},
    {"id": "p1", "commodity": "Wheat", "price": 22.0, "unit": "kg", "location": "Panipat", "active": True,
     "created_at": "2025-06-01", "vendors": [{"name": "Haryana Mills", "contact": "91234", "location": "Panipat"}]},
]


def test_search_prices_requires_a_term():
    with pytest.raises(ValueError, match="commodity name or location"):
        market.search_prices("  ", "")


def test_search_prices_normalizes_vendor_fields():
    with patch("market.db.search_market_prices", return_value=ROWS) as search:
        prices = market.search_prices(" wheat ", "")
    search.assert_called_once_with("wheat", "")
    assert prices[1]["vendors"] == []
    assert prices[1]["vendor_user_id"] is None
    assert prices[2]["vendor_user_id"] is None
    assert prices[0]["vendors"][0]["name"] == "Sharma Traders"


def test_latest_per_commodity_keeps_first_seen():
    latest = market.latest_per_commodity(ROWS)
    assert [row["id"] for row in latest] == ["p3", "p2"]


class TestValidatePriceEntry:

    def test_defaults(self):
        entry = market.validate_price_entry(" Onion ", "18.5", unit="", location=" Nashik ")
        assert entry == {"commodity": "Onion", "price": 18.5, "unit": "kg", "location": "Nashik", "active": True}

    @pytest.mark.parametrize("commodity,price", [("", 10), ("Onion", ""), ("Onion", None)])
    def test_required_fields(self, commodity, price):
        with pytest.raises(ValueError, match="required fields"):
            market.validate_price_entry(commodity, price)

    @pytest.mark.parametrize("price", ["abc", 0, -4])
    def test_bad_price(self, price):
        with pytest.raises(ValueError):
            market.validate_price_entry("Onion", price)


@pytest.mark.parametrize("amount,expected", [
    (0, "₹0.00"),
    (999.5, "₹999.50"),
    (1000, "₹1,000.00"),
    (123456.5, "₹1,23,456.50"),
    (12345678, "₹1,23,45,678.00"),
    (-2500, "-₹2,500.00"),
])
def test_format_inr(amount, expected):
    assert market.format_inr(amount) == expected


class TestTargetPrice:

    def test_never_below_minimum(self):
        assert market.target_price(2000, 1500, 1) == 2000

    def test_strong_market_premium(self):
        assert market.target_price(2000, 2300, 2) == 2100

    def test_deep_and_strong_market(self):
        assert market.target_price(2000, 2300, 5) == 2140

    def test_tool_reports_bad_input(self):
        assert "error" in market.calculate_target_price.func("abc,1,2")


def test_scan_and_analyze_use_active_listings_only():
    with patch("market.db.search_market_prices", return_value=ROWS):
        scan = market.scan_listings.func("Wheat,")
        analysis = market.analyze_listing_prices.func("Wheat,")
    assert scan["count"] == 2
    assert {listing["vendor_name"] for listing in scan["listings"]} == {"Sharma Traders", "Haryana Mills"}
    assert analysis["average_price"] == 24.0
    assert analysis["lowest_price"] == 22.0
    assert analysis["highest_price"] == 26.0


def test_vendor_embedded_as_object():
    row = {**ROWS[0], "vendors": {"name": "Sharma Traders", "contact": "98765", "location": "Karnal"}}
    with patch("market.db.search_market_prices", return_value=[row]):
        scan = market.scan_listings.func("Wheat,")
        prices = market.search_prices("Wheat", "")
    assert scan["listings"][0]["vendor_name"] == "Sharma Traders"
    assert prices[0]["vendors"] == [{"name": "Sharma Traders", "contact": "98765", "location": "Karnal"}]


def test_listing_without_vendor_has_no_name():
    row = {**ROWS[0], "vendors": []}
    with patch("market.db.search_market_prices", return_value=[row]):
        scan = market.scan_listings.func("Wheat,")
    assert scan["listings"][0]["vendor_name"] is None


def test_demo_advice_without_listings():
    profile = {"farmer_name": "Ramesh", "commodity": "Saffron", "minimum_price": 1500, "unit": "kg"}
    with patch("market.db.search_market_prices", return_value=[]):
        advice = market.demo_advice(profile)
    assert advice.startswith("No active vendor listings for Saffron")
    assert "₹1,500.00/kg" in advice


def test_sell_advisor_demo_mode():
    profile = {"farmer_name": "Ramesh", "commodity": "Wheat", "minimum_price": 20.0, "unit": "kg", "location": ""}
    with patch("market.logic.API_KEY", None), \
            patch("market.db.search_market_prices", return_value=ROWS):
        result = market.run_sell_advisor(profile)
    assert result["mode"] == "demo"
    assert "Ask ₹21.00/kg" in result["advice"]
    assert "Sharma Traders in Karnal" in result["advice"]
