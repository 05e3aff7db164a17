import os
import logging
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv
from supabase import Client, ClientOptions, create_client

load_dotenv()

logger = logging.getLogger(__name__)

SUPABASE_URL = os.getenv("SUPABASE_URL")
SUPABASE_KEY = os.getenv("SUPABASE_ANON_KEY")

# User types
ROLES = ("farmer", "vendor")

MARKET_SEARCH_COLUMNS = """
    id,
    commodity,
    price,
    unit,
    location,
    active,
    created_at,
    vendor_user_id,
    vendors (
        name,
        contact,
        location
    )
"""


class DatabaseError(Exception):
    """Raised when Supabase rejects a query or an auth call."""


_anon_client: Optional[Client] = None


def get_client(access_token: Optional[str] = None) -> Client:
    """
    Returns a Supabase client. With an access token the table queries run as
    that user, so row level security applies to them.
    """
    global _anon_client
    _require_config()

    if access_token is None:
        if _anon_client is None:
            _anon_client = create_client(SUPABASE_URL, SUPABASE_KEY)
        return _anon_client

    client = create_client(SUPABASE_URL, SUPABASE_KEY)
    client.postgrest.auth(access_token)
    return client


def _require_config() -> None:
    if not SUPABASE_URL or not SUPABASE_KEY:
        raise DatabaseError("Supabase is not configured")


def _auth_client() -> Client:
    """
    A throwaway client for auth calls. A sign-in on a client rewrites its
    Authorization header to the user's token, so the shared anonymous client
    must never see one.
    """
    _require_config()
    return create_client(
        SUPABASE_URL,
        SUPABASE_KEY,
        options=ClientOptions(persist_session=False, auto_refresh_token=False),
    )


def _execute(query, action: str) -> List[Dict[str, Any]]:
    try:
        response = query.execute()
    except Exception as e:
        logger.error("Supabase error while %s: %s", action, e)
        raise DatabaseError(getattr(e, "message", None) or str(e)) from e
    return response.data or []


# --- Auth ---

def sign_up_vendor(email: str, password: str, full_name: str, location: str, phone_number: str) -> Dict[str, Any]:
    """Creates the auth user, then the vendors row that makes them searchable."""
    if not (location or "").strip():
        raise ValueError("Location is required to help farmers find you")

    try:
        result = _auth_client().auth.sign_up({
            "email": email,
            "password": password,
            "options": {
                "data": {
                    "full_name": full_name,
                    "location": location,
                    "phone_number": phone_number,
                    "role": "vendor",
                },
            },
        })
    except Exception as e:
        logger.error("Vendor sign-up failed for %s: %s", email, e)
        raise DatabaseError(getattr(e, "message", None) or str(e)) from e

    user = result.user
    if user is None:
        raise DatabaseError("Sign-up did not return a user")

    session = result.session
    writer = get_client(session.access_token) if session else get_client()
    _execute(
        writer.table("vendors").insert([{
            "user_id": user.id,
            "name": full_name,
            "location": location,
            "contact": phone_number,
            "description": f"Vendor based in {location}",
        }]),
        "creating vendor profile",
    )
    return {
        "user_id": user.id,
        "email": user.email,
        "access_token": session.access_token if session else None,
    }


def sign_in(email: str, password: str) -> Dict[str, Any]:
    try:
        result = _auth_client().auth.sign_in_with_password({"email": email, "password": password})
    except Exception as e:
        logger.warning("Login failed for %s: %s", email, e)
        raise DatabaseError(getattr(e, "message", None) or str(e)) from e
    return {
        "access_token": result.session.access_token,
        "refresh_token": result.session.refresh_token,
        "user_id": result.user.id,
        "email": result.user.email,
    }


def get_user(access_token: str) -> Optional[Dict[str, Any]]:
    """Returns {id, email, role} for a valid token, None otherwise."""
    client = _auth_client()
    try:
        result = client.auth.get_user(access_token)
    except Exception as e:
        logger.info("Rejected access token: %s", e)
        return None
    if result is None or result.user is None:
        return None
    metadata = result.user.user_metadata or {}
    return {
        "id": result.user.id,
        "email": result.user.email,
        "role": metadata.get("role", "farmer"),
    }


def sign_out(access_token: str) -> None:
    try:
        _auth_client().auth.admin.sign_out(access_token)
    except Exception as e:
        logger.error("Sign-out failed: %s", e)
        raise DatabaseError(getattr(e, "message", None) or str(e)) from e


def vendor_locations() -> List[str]:
    rows = _execute(
        get_client().table("vendors").select("location").order("location"),
        "fetching vendor locations",
    )
    # Unique, ordered, no blanks
    return list(dict.fromkeys(row["location"] for row in rows if row.get("location")))


# --- Weather & soil history ---

def save_weather_history(user_id: str, report: Dict[str, Any], access_token: Optional[str] = None):
    current = report["current"]
    return _execute(
        get_client(access_token).table("weather_history").insert({
            "user_id": user_id,
            "location": current["name"],
            "temperature": current["temp"],
            "humidity": current["humidity"],
            "description": current["description"],
        }),
        "saving weather history",
    )


def save_soil_data(location: str, soil: Dict[str, Any]):
    return _execute(
        get_client().table("soil_data").insert({
            "location": location,
            "soil_type": soil["type"],
            "characteristics": soil["characteristics"],
            "suitable_crops": soil["suitableCrops"],
        }),
        "saving soil data",
    )


def record_poll_vote(location: str, accurate: bool):
    return _execute(
        get_client().table("weather_polls").insert({"location": location, "accurate": accurate}),
        "recording poll vote",
    )


def poll_votes(location: str) -> List[Dict[str, Any]]:
    return _execute(
        get_client().table("weather_polls").select("accurate").eq("location", location),
        "fetching poll votes",
    )


def accuracy_records(location: str) -> List[Dict[str, Any]]:
    return _execute(
        get_client().table("forecast_accuracy")
        .select("date, predicted, actual")
        .eq("location", location)
        .order("date"),
        "fetching accuracy records",
    )


# --- Market prices ---

def get_market_prices(location: str) -> List[Dict[str, Any]]:
    return _execute(
        get_client().table("market_prices").select("*").eq("location", location),
        "fetching market prices",
    )


def save_market_price(market_price: Dict[str, Any], access_token: Optional[str] = None):
    return _execute(
        get_client(access_token).table("market_prices").insert(market_price),
        "saving market price",
    )


def search_market_prices(commodity: str = "", location: str = "") -> List[Dict[str, Any]]:
    query = (
        get_client()
        .table("market_prices")
        .select(MARKET_SEARCH_COLUMNS)
        .order("created_at", desc=True)
    )
    if commodity.strip():
        query = query.ilike("commodity", f"%{commodity.strip()}%")
    if location.strip():
        query = query.ilike("location", f"%{location.strip()}%")
    return _execute(query, "searching market prices")


def list_vendor_prices(vendor_id: str, access_token: Optional[str] = None) -> List[Dict[str, Any]]:
    return _execute(
        get_client(access_token)
        .table("market_prices")
        .select("*")
        .eq("vendor_id", vendor_id)
        .order("created_at", desc=True),
        "fetching vendor prices",
    )


def insert_price(vendor_id: str, entry: Dict[str, Any], access_token: Optional[str] = None) -> Dict[str, Any]:
    row = dict(entry, vendor_id=vendor_id, vendor_user_id=vendor_id)
    rows = save_market_price([row], access_token)
    return rows[0] if rows else row


def delete_vendor_commodity(vendor_id: str, commodity: str, access_token: Optional[str] = None):
    return _execute(
        get_client(access_token)
        .table("market_prices")
        .delete()
        .eq("vendor_id", vendor_id)
        .eq("commodity", commodity),
        "deleting commodity",
    )
