from __future__ import annotations

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

import requests

from tripcal.errors import SourceMalformed, SourceUnavailable
from tripcal.models import (
    STATUS_CANCELLED,
    STATUS_SCHEDULED,
    STATUS_UNKNOWN,
    FlightSegment,
    Trip,
    TripItConfig,
)

logger = logging.getLogger("tripcal.tripit")

CANCELLED_FLIGHT_STATUS = "400"


def _as_list(value: Any, name: str) -> list[dict[str, Any]]:
    # TripIt collapses single-element lists into a bare object.
    if value is None:
        return []
    if isinstance(value, dict):
        return [value]
    if isinstance(value, list) and all(isinstance(item, dict) for item in value):
        return value
    raise SourceMalformed(f"Unexpected shape for {name}: {type(value).__name__}")


def _parse_offset(value: str) -> tzinfo | None:
    text = value.strip()
    if not text:
        return None
    if text in {"Z", "+00:00", "-00:00"}:
        return timezone.utc
    sign = -1 if text.startswith("-") else 1
    digits = text.lstrip("+-")
    hours, _, minutes = digits.partition(":")
    try:
        delta = timedelta(hours=int(hours), minutes=int(minutes or 0))
    except ValueError:
        return None
    return timezone(sign * delta)


def _resolve_tz(timezone_name: str, utc_offset: str) -> tzinfo | None:
    if timezone_name:
        try:
            return ZoneInfo(timezone_name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.debug("Unknown timezone %r, falling back to offset %r", timezone_name, utc_offset)
    return _parse_offset(utc_offset)


def parse_tripit_datetime(payload: Any) -> datetime | None:
    """Build an aware datetime from a TripIt ``DateTime`` object.

    Returns None when the date, time or zone is missing or unreadable.
    """
    if not isinstance(payload, dict):
        return None
    date_text = str(payload.get("date", "") or "").strip()
    time_text = str(payload.get("time", "") or "").strip()
    if not date_text or not time_text:
        return None
    try:
        naive = datetime.fromisoformat(f"{date_text}T{time_text}")
    except ValueError:
        return None
    tz = _resolve_tz(
        str(payload.get("timezone", "") or "").strip(),
        str(payload.get("utc_offset", "") or ""),
    )
    if tz is None:
        return None
    return naive.replace(tzinfo=tz)


def parse_segment_status(segment: dict[str, Any]) -> str:
    status = segment.get("Status")
    if not isinstance(status, dict):
        return STATUS_UNKNOWN
    code = str(status.get("flight_status", "") or "").strip()
    if not code:
        return STATUS_UNKNOWN
    if code == CANCELLED_FLIGHT_STATUS:
        return STATUS_CANCELLED
    return STATUS_SCHEDULED


def parse_segment(segment: dict[str, Any]) -> FlightSegment:
    return FlightSegment(
        carrier_code=str(segment.get("marketing_airline_code", "") or "").strip(),
        flight_number=str(segment.get("marketing_flight_number", "") or "").strip(),
        origin=str(segment.get("start_airport_code", "") or "").strip(),
        destination=str(segment.get("end_airport_code", "") or "").strip(),
        departure=parse_tripit_datetime(segment.get("StartDateTime")),
        arrival=parse_tripit_datetime(segment.get("EndDateTime")),
        status=parse_segment_status(segment),
    )


def parse_trip_list(payload: Any, *, is_past: bool) -> list[Trip]:
    if not isinstance(payload, dict):
        raise SourceMalformed("TripIt response root must be an object.")
    trips: dict[str, Trip] = {}
    for raw_trip in _as_list(payload.get("Trip"), "Trip"):
        trip_id = str(raw_trip.get("id", "")).strip()
        if not trip_id:
            raise SourceMalformed("Trip without id in TripIt response.")
        trips[trip_id] = Trip(
            trip_id=trip_id,
            is_past=is_past,
            display_name=str(raw_trip.get("display_name", "") or ""),
        )
    for air in _as_list(payload.get("AirObject"), "AirObject"):
        trip_id = str(air.get("trip_id", "")).strip()
        trip = trips.get(trip_id)
        if trip is None:
            trip = trips[trip_id] = Trip(trip_id=trip_id, is_past=is_past)
        for raw_segment in _as_list(air.get("Segment"), "AirObject.Segment"):
            trip.segments.append(parse_segment(raw_segment))
    return list(trips.values())


class TripItService:
    def __init__(self, config: TripItConfig) -> None:
        self.config = config

    def _list_url(self, past: bool) -> str:
        flag = "true" if past else "false"
        return f"{self.config.base_url}/v1/list/trip/past/{flag}/include_objects/true/format/json"

    def _get(self, url: str) -> Any:
        if not self.config.username or not self.config.token:
            raise SourceUnavailable("TripIt credentials are not configured.")
        try:
            response = requests.get(
                url,
                auth=(self.config.username, self.config.token),
                headers={"Accept": "application/json"},
                timeout=self.config.timeout_seconds,
            )
        except requests.RequestException as exc:
            raise SourceUnavailable(f"{type(exc).__name__}: {exc}") from exc
        if not response.ok:
            raise SourceUnavailable(f"HTTP {response.status_code}: {response.text[:300]}")
        try:
            return response.json()
        except ValueError as exc:
            raise SourceMalformed(f"TripIt response is not JSON: {exc}") from exc

    def list_trips(self, include_past: bool = True, include_cancelled: bool = False) -> list[Trip]:
        trips: dict[str, Trip] = {}
        listings = [False, True] if include_past else [False]
        for past in listings:
            for trip in parse_trip_list(self._get(self._list_url(past)), is_past=past):
                # A trip listed as both upcoming and past keeps the first listing.
                trips.setdefault(trip.trip_id, trip)

        result = list(trips.values())
        if not include_cancelled:
            for trip in result:
                trip.segments = [seg for seg in trip.segments if seg.status != STATUS_CANCELLED]
        logger.debug(
            "Fetched %d trips with %d flight segments",
            len(result),
            sum(len(trip.segments) for trip in result),
        )
        return result
