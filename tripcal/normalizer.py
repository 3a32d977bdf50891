from __future__ import annotations

import logging
from typing import Iterable

from tripcal.errors import SegmentIncomplete
from tripcal.models import STATUS_CANCELLED, CalendarEvent, FlightSegment, Trip

logger = logging.getLogger("tripcal.normalizer")


def external_key(segment: FlightSegment) -> str:
    """Carrier, flight number and local departure date, e.g. ``AB123-2024-05-01``.

    The date comes from the departure's own offset so a red-eye keeps the
    date printed on the boarding pass. Arrival never contributes.
    """
    if segment.departure is None:
        return ""
    return f"{segment.flight_code}-{segment.departure.date().isoformat()}"


def event_title(segment: FlightSegment) -> str:
    return f"{segment.flight_code} {segment.origin.strip().upper()}→{segment.destination.strip().upper()}"


def event_location(segment: FlightSegment) -> str:
    return f"{segment.origin.strip().upper()} → {segment.destination.strip().upper()}"


def skip_reason(segment: FlightSegment) -> str:
    if segment.status == STATUS_CANCELLED:
        return "cancelled"
    if segment.departure is None or segment.arrival is None:
        return "missing_time"
    if not segment.origin.strip() or not segment.destination.strip():
        return "missing_airport"
    if not segment.carrier_code.strip() or not segment.flight_number.strip():
        return "missing_flight_number"
    if segment.departure.tzinfo is None or segment.arrival.tzinfo is None:
        return "missing_timezone"
    if segment.departure >= segment.arrival:
        return "departure_not_before_arrival"
    return ""


def normalize(segment: FlightSegment, trip: Trip) -> CalendarEvent | None:
    reason = skip_reason(segment)
    if reason:
        logger.debug(
            "Skipping segment %s in trip %s (%s: %s)",
            segment.flight_code or "?",
            trip.trip_id,
            SegmentIncomplete.kind,
            reason,
        )
        return None
    return CalendarEvent(
        key=external_key(segment),
        title=event_title(segment),
        start=segment.departure,
        end=segment.arrival,
        location=event_location(segment),
        trip_id=trip.trip_id,
    )


def desired_events(trips: Iterable[Trip]) -> list[CalendarEvent]:
    events: dict[str, CalendarEvent] = {}
    for trip in trips:
        for segment in trip.segments:
            event = normalize(segment, trip)
            if event is None:
                continue
            if event.key in events:
                # Same flight listed under a reissued trip id.
                logger.debug("Duplicate flight %s in trip %s ignored", event.key, trip.trip_id)
                continue
            events[event.key] = event
    return list(events.values())
