"""
Trip duration estimation and pricing.

Pure functions; callers pass in the places and settings they need.
"""

import math
from datetime import datetime, timedelta
from typing import Any, Dict, List, Mapping, Optional

from backend.app.core.config import settings
from backend.app.core.exceptions import InputValidationError

# Degrees to kilometres for the flat distance approximation
KM_PER_DEGREE = 111.0
MIN_LEG_BUFFER_MINUTES = 5.0
LEG_BUFFER_RATIO = 0.1


def round_half_up(value: float, digits: int = 0) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def haversine_distance(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """
    Calculate the great-circle distance between two points on Earth.

    Args:
        lat1, lon1: First point coordinates (degrees)
        lat2, lon2: Second point coordinates (degrees)

    Returns:
        Distance in kilometers
    """
    R = 6371.0

    lat1_rad = math.radians(lat1)
    lat2_rad = math.radians(lat2)
    dlat = lat2_rad - lat1_rad
    dlon = math.radians(lon2) - math.radians(lon1)

    a = math.sin(dlat / 2) ** 2 + math.cos(lat1_rad) * math.cos(lat2_rad) * math.sin(dlon / 2) ** 2
    c = 2 * math.atan2(math.sqrt(a), math.sqrt(1 - a))
    return R * c


def flat_distance_km(lat1: float, lng1: float, lat2: float, lng2: float) -> float:
    """
    Euclidean distance in degrees scaled to km.

    Not a geodesic. Good enough for the short distances inside a single
    governorate, and candidate filtering depends on this exact figure.
    """
    return math.sqrt((lat2 - lat1) ** 2 + (lng2 - lng1) ** 2) * KM_PER_DEGREE


def estimate_itinerary(
    stops: List[Mapping[str, Any]],
    places: Mapping[int, Any],
    start_at: datetime,
    average_speed_kmh: Optional[float] = None,
    safety_buffer_minutes: Optional[float] = None
) -> Dict[str, Any]:
    """
    Estimate how long an itinerary takes.

    Each leg between consecutive places costs haversine travel time at the
    average speed plus a buffer of max(5 min, 10% of the leg). A fixed
    safety buffer is added once.

    Args:
        stops: Ordered dicts with ``place_id`` and ``visit_duration_minutes``
        places: Place rows keyed by id (must carry ``lat``/``lng``)
        start_at: Trip start

    Returns:
        dict with total_visit_minutes, travel_estimate_minutes,
        total_minutes and end_at

    Raises:
        InputValidationError: empty itinerary, unknown place or missing coordinates
    """
    if not stops:
        raise InputValidationError("Itinerary must contain at least one place")
    if start_at is None:
        raise InputValidationError("Start time is required")

    speed = average_speed_kmh or settings.average_speed_kmh
    safety = settings.safety_buffer_minutes if safety_buffer_minutes is None else safety_buffer_minutes

    ordered_places = []
    for stop in stops:
        place = places.get(stop["place_id"])
        if place is None:
            raise InputValidationError(f"Place not found: {stop['place_id']}", {"place_id": stop["place_id"]})
        ordered_places.append(place)

    total_visit = sum(int(stop.get("visit_duration_minutes") or 0) for stop in stops)

    travel = 0.0
    for origin, destination in zip(ordered_places, ordered_places[1:]):
        if None in (origin.lat, origin.lng, destination.lat, destination.lng):
            raise InputValidationError(
                f"Missing coordinates for place {origin.id} or {destination.id}",
                {"place_ids": [origin.id, destination.id]}
            )
        km = haversine_distance(origin.lat, origin.lng, destination.lat, destination.lng)
        leg_minutes = km / speed * 60
        travel += leg_minutes + max(MIN_LEG_BUFFER_MINUTES, leg_minutes * LEG_BUFFER_RATIO)

    total_minutes = int(math.ceil(total_visit + travel + safety))

    return {
        "total_visit_minutes": total_visit,
        "travel_estimate_minutes": int(math.ceil(travel)),
        "total_minutes": total_minutes,
        "end_at": start_at + timedelta(minutes=total_minutes),
    }


def ticket_total(stops: List[Mapping[str, Any]], places: Mapping[int, Any]) -> float:
    """Sum of ticket prices for stops flagged ``ticket_required``."""
    total = 0.0
    for stop in stops:
        if not stop.get("ticket_required"):
            continue
        place = places.get(stop["place_id"])
        if place is not None and place.ticket_price:
            total += place.ticket_price
    return total


def build_price_breakdown(
    guide_fee: float,
    tickets: float,
    service_fee_percent: Optional[float] = None
) -> Dict[str, float]:
    """guide fee + tickets + service fee = total, each rounded to cents."""
    pct = settings.service_fee_percent if service_fee_percent is None else service_fee_percent
    service_fee = (guide_fee + tickets) * (pct / 100)
    return {
        "guide_fee": round_half_up(guide_fee, 2),
        "tickets": round_half_up(tickets, 2),
        "service_fee": round_half_up(service_fee, 2),
        "total": round_half_up(guide_fee + tickets + service_fee, 2),
    }


def hourly_guide_fee(duration_minutes: int, price_per_hour: Optional[float]) -> float:
    rate = price_per_hour or settings.default_guide_hourly_rate
    return rate * (duration_minutes / 60)


def auto_price(duration_minutes: Optional[int], price_per_hour: Optional[float]) -> float:
    """Whole-unit price used when a guide accepts straight out of a call."""
    minutes = duration_minutes or settings.default_trip_duration_minutes
    return round_half_up(hourly_guide_fee(minutes, price_per_hour))


def amount_in_minor_units(amount: float) -> int:
    """Convert a price to cents for the payment provider."""
    return int(round_half_up(amount * 100))
