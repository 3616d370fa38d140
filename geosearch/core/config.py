from pydantic_settings import BaseSettings, SettingsConfigDict
from pydantic import Field
from typing import Optional

class Settings(BaseSettings):
    PROJECT_NAME: str = "Geo Search Engine"
    VERSION: str = "0.2.0"
    BRIEF_DESCRIPTION: str = "Nearby, postal-code and text search over a remote entity store with tiered caching and freemium gating."

    ENV: str = Field("development", description="Application environment (e.g., production, development)")
    LOG_LEVEL: str = Field("INFO", description="Root log level (DEBUG, INFO, WARNING, ...)")

    # --- Entity Store ---
    ENTITY_STORE_URL: str = Field("http://localhost:5000/api", description="Base URL of the entity store API")
    BACKEND_TIMEOUT: float = Field(10.0, description="Timeout for entity store calls (seconds)")

    # --- Geocoding Provider ---
    GEOCODING_API_KEY: Optional[str] = Field(None, description="Geocoding provider API key. Geocoding is disabled when unset.")
    GEOCODING_URL: str = Field("https://maps.googleapis.com/maps/api/geocode/json", description="Forward/reverse geocoding endpoint")
    GEOCODING_REGION: str = Field("India", description="Region appended to postal codes before forward geocoding")
    GEOCODING_TIMEOUT: float = 15.0 # seconds
    GEOCODING_MAX_RETRIES: int = 2
    GEOCODING_INITIAL_BACKOFF: float = 1.0 # seconds

    # --- Distance Matrix Provider ---
    DISTANCE_MATRIX_API_KEY: Optional[str] = Field(None, description="Distance matrix API key. Road distances are disabled when unset.")
    DISTANCE_MATRIX_URL: str = Field("https://maps.googleapis.com/maps/api/distancematrix/json", description="Distance matrix endpoint")
    DISTANCE_MATRIX_TIMEOUT: float = 10.0 # seconds
    # Provider accepts at most 25 destinations per request
    DISTANCE_BATCH_SIZE: int = 20
    DISTANCE_BATCH_DELAY: float = 0.2 # seconds between batches

    # --- Caching ---
    CACHE_TTL_SECONDS: float = Field(300.0, description="TTL for every query-shape cache (5 minutes)")
    CACHE_COORDINATE_PRECISION: int = Field(3, description="Decimal places kept when coordinates go into cache keys (~111 m)")
    LOCATION_CACHE_TTL: float = 300.0
    GEOLOCATION_TIMEOUT: float = 15.0

    # Fallback position for "current location" lookups
    DEFAULT_LATITUDE: Optional[float] = None
    DEFAULT_LONGITUDE: Optional[float] = None

    # --- Search & Tiers ---
    DEFAULT_RADIUS_KM: float = 10.0
    FREE_TIER_LIMIT: int = Field(3, description="Results visible to callers without a paid entitlement")
    PREMIUM_RESULT_LIMIT: int = 50
    ALL_RESULT_LIMIT: int = 100

    # Pydantic configuration
    model_config = SettingsConfigDict(
        env_file=".env",
        extra="ignore"
    )

settings = Settings()
