"""Bus-trip mirror of the Operations system.

Trips are pulled from ``<OPERATIONS_API_URL>/api/Bus-Trips-Details`` and
upserted into ``bus_trip_cache`` keyed by (assignment_id, bus_trip_id).  A
refresh never clears ``is_revenue_recorded``: that flag belongs to FTMS.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

import httpx
from dateutil import parser as date_parser

from ftms.config import settings
from ftms.models.bus_trip import BusTripCache
from ftms.repository import RevenueStore
from ftms.services.errors import DependencyError
from ftms.services.revenue_calc import (
    ZERO, compute_expected_remittance, get_boundary_loss_info, safe_decimal,
)

logger = logging.getLogger(__name__)

TRIPS_PATH = "/api/Bus-Trips-Details"


@dataclass
class SyncResult:
    fetched: int = 0
    created: int = 0
    updated: int = 0


@dataclass
class UnrecordedTrip:
    trip: BusTripCache
    expected_remittance: Decimal
    boundary_loss: Decimal


def _employee(value: Any) -> tuple[Optional[str], Optional[str]]:
    """(name, employee_number) from either a plain name or an employee object."""
    if not value:
        return None, None
    if isinstance(value, str):
        return value.strip() or None, None
    if isinstance(value, dict):
        name = value.get("name") or " ".join(
            part for part in (value.get("first_name"), value.get("last_name")) if part
        )
        return (name or None), value.get("employee_number")
    return None, None


def _parse_datetime(value: Any) -> Optional[datetime]:
    if not value:
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = date_parser.isoparse(str(value))
        except ValueError:
            logger.warning("Unparseable date_assigned %r", value)
            return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


async def fetch_bus_trips(since: Optional[datetime] = None) -> list[dict[str, Any]]:
    if not settings.operations_api_url:
        raise DependencyError("OPERATIONS_API_URL is not configured", field="operations_api_url")

    url = settings.operations_api_url.rstrip("/") + TRIPS_PATH
    headers = {"Accept": "application/json"}
    if settings.operations_api_key:
        headers["x-api-key"] = settings.operations_api_key
    params = {"since": since.isoformat()} if since else None

    try:
        async with httpx.AsyncClient() as client:
            response = await client.get(
                url, headers=headers, params=params, timeout=settings.operations_timeout_seconds
            )
        response.raise_for_status()
        payload = response.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.error("Operations trip fetch failed: %s", exc)
        raise DependencyError(f"Operations API request failed: {exc}") from exc

    trips = payload.get("data", payload) if isinstance(payload, dict) else payload
    if not isinstance(trips, list):
        raise DependencyError("Operations API returned an unexpected payload")
    return [t for t in trips if isinstance(t, dict)]


async def upsert_bus_trip_cache(
    store: RevenueStore, trips: list[dict[str, Any]]
) -> SyncResult:
    result = SyncResult(fetched=len(trips))
    for raw in trips:
        assignment_id = raw.get("assignment_id")
        bus_trip_id = raw.get("bus_trip_id")
        if not assignment_id or not bus_trip_id:
            logger.warning("Skipping trip without assignment_id/bus_trip_id: %r", raw)
            continue

        driver_name, driver_no = _employee(raw.get("employee_driver"))
        conductor_name, conductor_no = _employee(raw.get("employee_conductor"))
        values = dict(
            bus_plate_number=raw.get("bus_plate_number"),
            bus_route=raw.get("bus_route"),
            assignment_type=raw.get("assignment_type"),
            assignment_value=safe_decimal(raw.get("assignment_value")),
            trip_revenue=safe_decimal(raw.get("trip_revenue")),
            trip_fuel_expense=safe_decimal(raw.get("trip_fuel_expense")),
            payment_method=raw.get("payment_method"),
            date_assigned=_parse_datetime(raw.get("date_assigned")),
            driver_name=driver_name,
            driver_employee_number=driver_no,
            conductor_name=conductor_name,
            conductor_employee_number=conductor_no,
            is_deleted=bool(raw.get("is_deleted", False)),
        )

        cached = await store.get_bus_trip(str(bus_trip_id), str(assignment_id))
        if cached is None:
            await store.add_bus_trip(BusTripCache(
                assignment_id=str(assignment_id),
                bus_trip_id=str(bus_trip_id),
                is_revenue_recorded=bool(raw.get("is_revenue_recorded", False)),
                **values,
            ))
            result.created += 1
        else:
            for key, value in values.items():
                setattr(cached, key, value)
            if raw.get("is_revenue_recorded"):
                cached.is_revenue_recorded = True
            result.updated += 1

    await store.flush()
    return result


async def refresh_bus_trip_cache(store: RevenueStore) -> SyncResult:
    trips = await fetch_bus_trips()
    result = await upsert_bus_trip_cache(store, trips)
    await store.commit()
    logger.info(
        "Bus trip cache refreshed: %d fetched, %d new, %d updated",
        result.fetched, result.created, result.updated,
    )
    return result


async def list_unrecorded_trips(
    store: RevenueStore,
    limit: int = 50,
    offset: int = 0,
    assignment_type: Optional[str] = None,
) -> tuple[list[UnrecordedTrip], int]:
    trips, total = await store.list_unrecorded_trips(limit, offset, assignment_type)
    items = []
    for trip in trips:
        loss = get_boundary_loss_info(trip.assignment_type, trip)
        items.append(UnrecordedTrip(
            trip=trip,
            expected_remittance=compute_expected_remittance(
                trip.assignment_type, trip.trip_revenue, trip.assignment_value,
                trip.trip_fuel_expense,
            ),
            boundary_loss=loss.loss_amount if loss.is_loss else ZERO,
        ))
    return items, total
