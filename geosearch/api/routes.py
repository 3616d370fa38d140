# geosearch/api/routes.py
# HTTP surface for the search orchestrator: search, current location, reverse
# geocoding and cache administration.

from typing import Any, Dict

from fastapi import APIRouter, Depends, HTTPException, Query, Request, status
import structlog

from geosearch.core.errors import InvalidInput, NoLocation
from geosearch.models.dto import (
    AddressLookup,
    Coordinate,
    ErrorResponse,
    ResultEnvelope,
    SearchOptions,
)
from geosearch.services.cache_layer import CacheName
from geosearch.services.orchestrator import SearchOrchestrator

router = APIRouter()
logger = structlog.get_logger(__name__)

CACHE_SCOPES = ["all"] + [name.value for name in CacheName]


def get_orchestrator(request: Request) -> SearchOrchestrator:
    return request.app.state.orchestrator


# ----------------------------------------------------------------------
# Search
# ----------------------------------------------------------------------
@router.post("/search", response_model=ResultEnvelope)
async def search(
    options: SearchOptions,
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
):
    """Run a search. Backend outages degrade the result, they never fail the request."""
    return await orchestrator.search(options)


# ----------------------------------------------------------------------
# Location
# ----------------------------------------------------------------------
@router.get(
    "/location",
    response_model=Coordinate,
    responses={404: {"model": ErrorResponse}},
)
async def current_location(orchestrator: SearchOrchestrator = Depends(get_orchestrator)):
    try:
        return await orchestrator.get_current_location()
    except NoLocation as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorResponse(
                error="NO_LOCATION",
                detail=f"Current location unavailable: {e}",
            ).model_dump(),
        )


@router.get(
    "/location/address",
    response_model=AddressLookup,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def location_address(
    lat: float = Query(..., description="Latitude"),
    lng: float = Query(..., description="Longitude"),
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
):
    """Reverse geocode a coordinate to an address and postal code."""
    try:
        lookup = await orchestrator.describe_location(Coordinate(latitude=lat, longitude=lng))
    except InvalidInput:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ErrorResponse(
                error="INVALID_COORDINATE",
                detail="Latitude must be within [-90, 90] and longitude within [-180, 180].",
            ).model_dump(),
        )

    if lookup is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=ErrorResponse(
                error="ADDRESS_NOT_FOUND",
                detail="No address could be resolved for this location.",
            ).model_dump(),
        )
    return lookup


# ----------------------------------------------------------------------
# Cache administration
# ----------------------------------------------------------------------
@router.delete(
    "/cache",
    responses={400: {"model": ErrorResponse}},
)
async def clear_cache(
    scope: str = Query("all", description=f"One of: {', '.join(CACHE_SCOPES)}"),
    orchestrator: SearchOrchestrator = Depends(get_orchestrator),
) -> Dict[str, Any]:
    if scope not in CACHE_SCOPES:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=ErrorResponse(
                error="INVALID_CACHE_SCOPE",
                detail=f"Unknown cache scope '{scope}'. Expected one of: {', '.join(CACHE_SCOPES)}.",
            ).model_dump(),
        )

    cleared = orchestrator.clear_cache(scope)
    logger.info("cache_cleared_via_api", scope=scope, cleared=cleared)
    return {"scope": scope, "cleared": cleared}


@router.get("/cache/stats")
async def cache_stats(orchestrator: SearchOrchestrator = Depends(get_orchestrator)) -> Dict[str, Any]:
    return orchestrator.cache_stats()
