import logging
from typing import Any, Dict, List

# LangChain for the Sell Advisor
from langchain.agents import AgentExecutor, create_react_agent
from langchain.tools import tool
from langchain_core.prompts import PromptTemplate
from langchain_google_genai import ChatGoogleGenerativeAI

import db
import logic

logger = logging.getLogger(__name__)

ADVISOR_MODEL = "gemini-2.0-flash"
DEFAULT_UNIT = "kg"
# Listing average this far above the farmer's floor earns a premium
STRONG_MARKET_MARGIN = 0.10
STRONG_MARKET_PREMIUM = 0.05
DEEP_MARKET_LISTINGS = 5
DEEP_MARKET_PREMIUM = 0.02


# --- Price search and vendor dashboard ---

def search_prices(commodity: str = "", location: str = "") -> List[Dict[str, Any]]:
    """Farmer-side search over vendor price listings, newest first."""
    commodity = (commodity or "").strip()
    location = (location or "").strip()
    if not commodity and not location:
        raise ValueError("Please enter a commodity name or location to search")

    rows = db.search_market_prices(commodity, location)
    if not rows:
        logger.info("No prices found for commodity=%r location=%r", commodity, location)
    return [
        {**row, "vendors": _vendor_list(row), "vendor_user_id": row.get("vendor_user_id") or None}
        for row in rows
    ]


def latest_per_commodity(rows: List[Dict[str, Any]]) -> List[Dict[str, Any]]:
    """Keeps the newest entry of each commodity; rows must already be newest first."""
    latest: Dict[str, Dict[str, Any]] = {}
    for row in rows:
        latest.setdefault(row["commodity"], row)
    return list(latest.values())


def _vendor_list(row: Dict[str, Any]) -> List[Dict[str, Any]]:
    """PostgREST embeds a to-one relation as an object and a to-many one as a list."""
    vendors = row.get("vendors")
    if isinstance(vendors, dict):
        return [vendors]
    return [v for v in vendors or [] if v]


def validate_price_entry(commodity: str, price, unit: str = DEFAULT_UNIT, location: str = "", active: bool = True) -> Dict[str, Any]:
    if not (commodity or "").strip() or price in (None, ""):
        raise ValueError("Please fill in required fields (Commodity and Price)")
    try:
        price = float(price)
    except (TypeError, ValueError):
        raise ValueError("Price must be a number")
    if price <= 0:
        raise ValueError("Price must be greater than zero")
    return {
        "commodity": commodity.strip(),
        "price": price,
        "unit": (unit or DEFAULT_UNIT).strip(),
        "location": (location or "").strip(),
        "active": active,
    }


def format_inr(amount) -> str:
    """Formats an amount as Indian rupees with lakh/crore digit grouping."""
    amount = float(amount)
    sign = "-" if amount < 0 else ""
    whole, fraction = f"{abs(amount):.2f}".split(".")
    if len(whole) > 3:
        head, tail = whole[:-3], whole[-3:]
        groups = []
        while len(head) > 2:
            groups.insert(0, head[-2:])
            head = head[:-2]
        if head:
            groups.insert(0, head)
        whole = ",".join(groups + [tail])
    return f"{sign}₹{whole}.{fraction}"


# --- AI Tools for the Sell Advisor ---

def _split_input(input_string: str, expected: int) -> List[str]:
    parts = [p.strip() for p in input_string.split(",")]
    parts += [""] * (expected - len(parts))
    return parts[:expected]


def _active_listings(commodity: str, location: str = "") -> List[Dict[str, Any]]:
    rows = db.search_market_prices(commodity, location)
    listings = []
    for row in rows:
        if not row.get("active"):
            continue
        vendor = next(iter(_vendor_list(row)), {})
        listings.append({
            "id": row.get("id"),
            "commodity": row.get("commodity"),
            "price": float(row.get("price") or 0),
            "unit": row.get("unit") or DEFAULT_UNIT,
            "location": row.get("location"),
            "vendor_name": vendor.get("name"),
        })
    return listings


@tool
def scan_listings(input_string: str) -> Dict[str, Any]:
    """Scans active vendor price listings for a commodity.
    Input format: 'commodity,location' where location may be empty (e.g., 'Wheat,' or 'Rice,Karnal')
    """
    commodity, location = _split_input(input_string, 2)
    if not commodity:
        return {"error": "Input format should be 'commodity,location'", "listings": []}

    logger.info("Scanning listings for %r in %r", commodity, location or "all locations")
    listings = _active_listings(commodity, location)
    return {
        "listings": listings,
        "count": len(listings),
        "search_attempted": True,
    }


@tool
def analyze_listing_prices(input_string: str) -> Dict[str, Any]:
    """Summarizes listing prices (average, lowest, highest) for pricing decisions.
    Input format: 'commodity,location' where location may be empty.
    """
    commodity, location = _split_input(input_string, 2)
    prices = [listing["price"] for listing in _active_listings(commodity, location)]
    if not prices:
        return {
            "commodity": commodity,
            "count": 0,
            "recommendation": "No active listings - price from your own costs and local mandi rates",
        }

    average = sum(prices) / len(prices)
    analysis = {
        "commodity": commodity,
        "count": len(prices),
        "average_price": round(average, 2),
        "lowest_price": min(prices),
        "highest_price": max(prices),
    }
    spread = (analysis["highest_price"] - analysis["lowest_price"]) / average if average else 0
    if spread > 0.25:
        analysis["recommendation"] = "Vendor prices vary widely - approach the highest bidders first"
    else:
        analysis["recommendation"] = "Vendor prices are consistent - standard pricing recommended"
    return analysis


def target_price(farmer_min_price: float, listing_average: float, listing_count: int) -> float:
    """Asking price for the farmer; never below their minimum."""
    premium = 0.0
    if listing_average > farmer_min_price * (1 + STRONG_MARKET_MARGIN):
        premium += STRONG_MARKET_PREMIUM
    if listing_count >= DEEP_MARKET_LISTINGS:
        premium += DEEP_MARKET_PREMIUM
    return round(max(farmer_min_price * (1 + premium), farmer_min_price), 2)


@tool
def calculate_target_price(input_string: str) -> Dict[str, Any]:
    """
    Calculates the asking price. IMPORTANT: it is never less than the farmer's minimum price.
    Input format: 'farmer_min_price,listing_average,listing_count'
    Example: '2200.0,2600.0,6'
    """
    try:
        min_price, average, count = _split_input(input_string, 3)
        min_price, average, count = float(min_price), float(average or 0), int(float(count or 0))
    except ValueError as e:
        return {"error": f"Invalid input format: {e}"}
    return {"target_price": target_price(min_price, average, count)}


ADVISOR_TOOLS = [scan_listings, analyze_listing_prices, calculate_target_price]

PROMPT_TEMPLATE = """
You are a savvy market advisor for Indian farmers. Use your tools to study the vendor price listings and
recommend how the farmer should sell.

AVAILABLE TOOLS:
{tools}

RESPONSE FORMAT (Follow this EXACTLY):
Thought: [Your reasoning about the next step]
Action: [Tool name from: {tool_names}]
Action Input: [Single string with comma-separated values]
Observation: [Tool result will appear here]
... (repeat Thought/Action/Action Input/Observation)
Thought: [Your final thought]
Final Answer: [Which vendors to approach, the asking price, and why]

FARMER PROFILE:
• Name: {farmer_name}
• Commodity: {commodity}
• Location: {location}
• Minimum Price: ₹{minimum_price}/{unit}

WORKFLOW:
1. SCAN the active listings for the commodity.
2. IF NO LISTINGS: give a Final Answer saying no vendors are buying right now.
3. ANALYZE the listing prices.
4. CALCULATE the asking price from the farmer's minimum and the listing statistics.
5. Give the Final Answer.

Begin:
{input}
{agent_scratchpad}"""


def demo_advice(profile: Dict[str, Any]) -> str:
    """Runs the advisor tools in order without an LLM."""
    query = f"{profile['commodity']},{profile.get('location', '')}"
    scan = scan_listings.func(query)
    if not scan["listings"]:
        return (
            f"No active vendor listings for {profile['commodity']} right now. "
            f"Hold your stock above {format_inr(profile['minimum_price'])}/{profile.get('unit', DEFAULT_UNIT)} "
            "and check the marketplace again later."
        )

    analysis = analyze_listing_prices.func(query)
    target = calculate_target_price.func(
        f"{profile['minimum_price']},{analysis['average_price']},{analysis['count']}"
    )["target_price"]
    best = max(scan["listings"], key=lambda listing: listing["price"])
    return (
        f"{analysis['count']} vendors list {profile['commodity']} between "
        f"{format_inr(analysis['lowest_price'])} and {format_inr(analysis['highest_price'])} "
        f"(average {format_inr(analysis['average_price'])}). "
        f"Ask {format_inr(target)}/{profile.get('unit', DEFAULT_UNIT)}; start with "
        f"{best['vendor_name'] or 'the top listing'} in {best['location']}. {analysis['recommendation']}."
    )


def run_sell_advisor(profile: Dict[str, Any]) -> Dict[str, str]:
    """Runs the LLM agent when Gemini is configured, the deterministic advisor otherwise."""
    logger.info("Sell advisor activated for %s (%s)", profile["farmer_name"], profile["commodity"])
    if not logic.API_KEY:
        return {"mode": "demo", "advice": demo_advice(profile)}

    llm = ChatGoogleGenerativeAI(model=ADVISOR_MODEL, temperature=logic.TEMPERATURE, google_api_key=logic.API_KEY)
    prompt = PromptTemplate.from_template(PROMPT_TEMPLATE)
    agent = create_react_agent(llm, ADVISOR_TOOLS, prompt)
    agent_executor = AgentExecutor(
        agent=agent, tools=ADVISOR_TOOLS, verbose=False, handle_parsing_errors=True,
        max_iterations=8,
    )

    try:
        result = agent_executor.invoke({
            "input": "Study the listings and advise the farmer.",
            "farmer_name": profile["farmer_name"],
            "commodity": profile["commodity"],
            "location": profile.get("location") or "any",
            "minimum_price": profile["minimum_price"],
            "unit": profile.get("unit", DEFAULT_UNIT),
        })
        return {"mode": "agent", "advice": result["output"]}
    except Exception as e:
        logger.error("Sell advisor agent failed: %s", e)
        return {"mode": "agent", "advice": f"An error occurred during agent execution: {e}"}
