"""Bus trips awaiting revenue, mirrored from the Operations system."""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, Response
from slowapi import Limiter
from slowapi.util import get_remote_address

from ftms.api.deps import get_store
from ftms.repository import RevenueStore
from ftms.schemas import BusTripRefreshResponse, BusTripResponse
from ftms.services import operations_sync

logger = logging.getLogger(__name__)
router = APIRouter()
limiter = Limiter(key_func=get_remote_address)


@router.get("", response_model=list[BusTripResponse])
async def list_unrecorded_trips(
    response: Response,
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    assignment_type: Optional[str] = Query(None),
    store: RevenueStore = Depends(get_store),
):
    items, total = await operations_sync.list_unrecorded_trips(
        store, limit=limit, offset=offset, assignment_type=assignment_type
    )
    response.headers["X-Total-Count"] = str(total)
    return [
        BusTripResponse(
            id=item.trip.id,
            assignment_id=item.trip.assignment_id,
            bus_trip_id=item.trip.bus_trip_id,
            bus_plate_number=item.trip.bus_plate_number,
            bus_route=item.trip.bus_route,
            assignment_type=item.trip.assignment_type,
            assignment_value=item.trip.assignment_value,
            trip_revenue=item.trip.trip_revenue,
            trip_fuel_expense=item.trip.trip_fuel_expense,
            date_assigned=item.trip.date_assigned,
            driver_name=item.trip.driver_name,
            conductor_name=item.trip.conductor_name,
            expected_remittance=item.expected_remittance,
            boundary_loss=item.boundary_loss,
        )
        for item in items
    ]


@router.post("/refresh", response_model=BusTripRefreshResponse)
@limiter.limit("6/minute")
async def refresh_trips(request: Request, store: RevenueStore = Depends(get_store)):
    result = await operations_sync.refresh_bus_trip_cache(store)
    return BusTripRefreshResponse(
        fetched=result.fetched, created=result.created, updated=result.updated
    )
