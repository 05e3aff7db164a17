# --- PART 0: All Library Imports ---

# Standard Libraries

import os
import logging
from typing import Any, Dict, Optional

# FastAPI and Uvicorn
from fastapi import FastAPI, Depends, Header, HTTPException, Query, Request
from fastapi.concurrency import run_in_threadpool
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

# Pydantic for data validation
from pydantic import BaseModel, Field

from dotenv import load_dotenv

import db
import logic
import market
import weather

# --- PART 1: FastAPI App Initialization ---

load_dotenv()
logging.basicConfig(
    level=os.getenv("LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger("agrimitra")

app = FastAPI(
    title="AgriMitra",
    description="An API for farmers and vendors providing weather insights, soil analysis, crop recommendations and a commodity price marketplace.",
    version="1.0.0",
)

origins = [o.strip() for o in os.getenv("ALLOWED_ORIGINS", "http://localhost:5173").split(",") if o.strip()]

app.add_middleware(
    CORSMiddleware,
    allow_origins=origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"]
)


# --- Error translation ---

@app.exception_handler(ValueError)
async def value_error_handler(request: Request, exc: ValueError):
    return JSONResponse(status_code=400, content={"detail": str(exc)})


@app.exception_handler(weather.LocationNotFound)
async def location_not_found_handler(request: Request, exc: weather.LocationNotFound):
    return JSONResponse(status_code=404, content={"detail": str(exc)})


@app.exception_handler(weather.WeatherServiceError)
async def weather_service_error_handler(request: Request, exc: weather.WeatherServiceError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(logic.GeminiError)
async def gemini_error_handler(request: Request, exc: logic.GeminiError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


@app.exception_handler(db.DatabaseError)
async def database_error_handler(request: Request, exc: db.DatabaseError):
    return JSONResponse(status_code=502, content={"detail": str(exc)})


# --- Pydantic Models for API Input Validation ---

class SoilOption(BaseModel):
    id: str = Field(..., examples=["alluvial"])
    name: str = Field(..., examples=["Alluvial Soil"])
    description: str = Field("", examples=["Fertile, well-drained soil deposited by rivers."])


class SoilDetailsInput(BaseModel):
    location: str = Field(..., examples=["Karnal, Haryana"])
    soil: SoilOption


class LocationInput(BaseModel):
    location: str = Field(..., examples=["Nashik, Maharashtra"], description="Free-text location (city, district, state).")


class CropRecommendationInput(BaseModel):
    """The analysis returned by /crops/analyze plus the soil the farmer picked."""
    location: str = Field(..., examples=["Nashik, Maharashtra"])
    soil_id: str = Field(..., examples=["black"])
    analysis: Dict[str, Any] = Field(..., description="Body returned by /crops/analyze.")


class TranslateInput(BaseModel):
    language: str = Field(..., examples=["hi"], description="Target language code.")
    texts: Dict[str, str] = Field(..., examples=[{"pageTitle": "Weather Insights for Farmers"}])


class PollVote(BaseModel):
    location: str = Field(..., examples=["Warangal, Telangana"])
    accurate: bool = Field(..., description="True when today's forecast matched local conditions.")


class PriceEntry(BaseModel):
    commodity: str = Field(..., examples=["Wheat"])
    price: float = Field(..., examples=[24.5], description="Price per unit in INR.")
    unit: str = Field("kg", examples=["quintal"])
    location: str = Field("", examples=["Karnal, Haryana"])
    active: bool = True


class FarmerProfile(BaseModel):
    """Input model for the sell advisor."""
    farmer_name: str = Field(..., examples=["Ramesh Kumar"], description="The farmer's full name.")
    commodity: str = Field(..., examples=["Wheat"], description="The commodity the farmer is selling.")
    minimum_price: float = Field(..., gt=0, examples=[22.0], description="The farmer's minimum acceptable price per unit.")
    unit: str = Field("kg", examples=["kg"])
    location: str = Field("", examples=["Karnal, Haryana"], description="Optional location filter for vendor listings.")


class SignupInput(BaseModel):
    email: str = Field(..., examples=["vendor@example.com"])
    password: str = Field(..., min_length=6)
    full_name: str = Field(..., examples=["Sharma Traders"])
    location: str = Field(..., examples=["Karnal, Haryana"], description='Use format: "City, District, State" for best visibility.')
    phone_number: str = Field("", examples=["+91 98765 43210"])


class LoginInput(BaseModel):
    email: str
    password: str


# --- Auth dependencies ---

def get_token(authorization: Optional[str] = Header(None)) -> str:
    """Extract the Bearer token from the Authorization header."""
    if not authorization:
        raise HTTPException(status_code=401, detail="Missing token")
    parts = authorization.split()
    if len(parts) != 2 or parts[0].lower() != "bearer":
        raise HTTPException(status_code=401, detail="Invalid authorization header")
    return parts[1]


def get_current_user(token: str = Depends(get_token)) -> Dict[str, Any]:
    user = db.get_user(token)
    if user is None:
        raise HTTPException(status_code=401, detail="Invalid or expired token")
    return {**user, "access_token": token}


def get_optional_user(authorization: Optional[str] = Header(None)) -> Optional[Dict[str, Any]]:
    """The signed-in user, or None. A bad token downgrades the request to anonymous."""
    if not authorization:
        return None
    try:
        return get_current_user(get_token(authorization))
    except HTTPException as e:
        logger.info("Ignoring authorization header: %s", e.detail)
        return None


def require_vendor(user: Dict[str, Any] = Depends(get_current_user)) -> Dict[str, Any]:
    if user["role"] != "vendor":
        raise HTTPException(status_code=403, detail="Vendor account required")
    return user


# --- API Endpoints ---

@app.get("/")
def read_root():
    """A default root endpoint to welcome users."""
    return {"message": "Welcome to the AgriMitra Farmer & Vendor API!"}


# Weather

@app.get("/places")
def place_suggestions(q: str = Query("", description="Partial location typed by the user.")):
    return {"suggestions": weather.search_places(q)}


@app.get("/weather")
async def get_weather(
    location: str,
    detailed: bool = False,
    crop: str = "Rice",
    language: str = "English",
    user: Optional[Dict[str, Any]] = Depends(get_optional_user),
):
    """Current weather, hourly and 5-day forecast with a farming advisory."""
    report = await run_in_threadpool(weather.get_weather_report, location)
    if detailed:
        logger.info("Requesting detailed advisory for %s at %s", crop, report["location"])
        report["detailed_advisory"] = await weather.generate_llm_advisory(report, crop, language)
    if user:
        await run_in_threadpool(db.save_weather_history, user["id"], report, user["access_token"])
    return report


@app.get("/weather/poll")
def get_poll(location: str):
    return weather.tally_votes(db.poll_votes(location))


@app.post("/weather/poll")
def vote_poll(vote: PollVote):
    db.record_poll_vote(vote.location, vote.accurate)
    return weather.tally_votes(db.poll_votes(vote.location))


@app.get("/weather/accuracy")
def get_accuracy(location: str):
    records = db.accuracy_records(location)
    return {
        "records": [
            {**r, "difference": round(abs(float(r["predicted"]) - float(r["actual"])), 1)} for r in records
        ],
        "accuracy": round(weather.calculate_accuracy(records)),
    }


# Soils

@app.get("/soils")
async def get_soil_types(location: str):
    if not location.strip():
        raise HTTPException(status_code=400, detail="Please enter a location to get soil data.")
    place = await run_in_threadpool(weather.geocode, location)
    return {
        "location": location,
        "place": place,
        "soilTypes": await logic.fetch_soil_types(location),
    }


@app.post("/soils/details")
async def get_soil_details(body: SoilDetailsInput):
    soil = await logic.fetch_soil_details(body.location, body.soil.model_dump())
    try:
        await run_in_threadpool(db.save_soil_data, body.location, soil)
    except db.DatabaseError as e:
        logger.warning("Soil data not saved for %s: %s", body.location, e)
    return soil


# Crops

@app.post("/crops/analyze")
async def analyze_crops(body: LocationInput):
    """Weather check, soil types, market trends and history for a location."""
    return await logic.analyze_location(body.location)


@app.post("/crops/recommend")
async def recommend_crops(body: CropRecommendationInput):
    try:
        return await logic.recommend_crops(body.location, body.soil_id, body.analysis)
    except LookupError as e:
        raise HTTPException(status_code=404, detail=str(e))


@app.post("/translate")
async def translate(body: TranslateInput):
    return {"language": body.language, "texts": await logic.translate_texts(body.texts, body.language)}


# Market

@app.get("/market/prices")
def market_prices(commodity: str = "", location: str = ""):
    prices = market.search_prices(commodity, location)
    return {
        "prices": [{**p, "price_display": market.format_inr(p["price"])} for p in prices],
    }


@app.post("/market/advisor")
def sell_advisor(profile: FarmerProfile):
    """Studies vendor listings and recommends an asking price to the farmer."""
    return market.run_sell_advisor(profile.model_dump())


@app.get("/vendor/prices")
def vendor_prices(user: Dict[str, Any] = Depends(require_vendor)):
    rows = db.list_vendor_prices(user["id"], user["access_token"])
    return {"prices": market.latest_per_commodity(rows)}


@app.post("/vendor/prices", status_code=201)
def add_vendor_price(entry: PriceEntry, user: Dict[str, Any] = Depends(require_vendor)):
    clean = market.validate_price_entry(entry.commodity, entry.price, entry.unit, entry.location, entry.active)
    row = db.insert_price(user["id"], clean, user["access_token"])
    return {"message": "Price entry added successfully!", "price": row}


@app.delete("/vendor/prices/{commodity}")
def delete_vendor_commodity(commodity: str, user: Dict[str, Any] = Depends(require_vendor)):
    db.delete_vendor_commodity(user["id"], commodity, user["access_token"])
    return {"message": "Commodity deleted successfully"}


# Auth

@app.post("/auth/signup", status_code=201)
def signup(body: SignupInput):
    return db.sign_up_vendor(body.email, body.password, body.full_name, body.location, body.phone_number)


@app.post("/auth/login")
def login(body: LoginInput):
    try:
        return db.sign_in(body.email, body.password)
    except db.DatabaseError as e:
        raise HTTPException(status_code=401, detail=str(e))


@app.post("/auth/logout")
def logout(token: str = Depends(get_token)):
    db.sign_out(token)
    return {"message": "Signed out"}


@app.get("/auth/me")
def me(user: Dict[str, Any] = Depends(get_current_user)):
    return {"id": user["id"], "email": user["email"], "role": user["role"]}


@app.get("/auth/locations")
def locations():
    return {"locations": db.vendor_locations()}
