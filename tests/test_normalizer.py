import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from tripcal.models import STATUS_CANCELLED, STATUS_SCHEDULED, STATUS_UNKNOWN, FlightSegment, Trip
from tripcal.normalizer import desired_events, external_key, normalize, skip_reason

NEW_YORK = ZoneInfo("America/New_York")
LONDON = ZoneInfo("Europe/London")


def _segment(**overrides) -> FlightSegment:
    values = {
        "carrier_code": "AB",
        "flight_number": "123",
        "origin": "JFK",
        "destination": "LHR",
        "departure": datetime(2024, 5, 1, 18, 0, tzinfo=NEW_YORK),
        "arrival": datetime(2024, 5, 2, 6, 0, tzinfo=LONDON),
        "status": STATUS_SCHEDULED,
    }
    values.update(overrides)
    return FlightSegment(**values)


class NormalizeTests(unittest.TestCase):
    def setUp(self) -> None:
        self.trip = Trip(trip_id="trip-1")

    def test_scheduled_segment_becomes_event(self) -> None:
        event = normalize(_segment(), self.trip)
        self.assertIsNotNone(event)
        self.assertEqual(event.key, "AB123-2024-05-01")
        self.assertEqual(event.title, "AB123 JFK→LHR")
        self.assertEqual(event.location, "JFK → LHR")
        self.assertEqual(event.trip_id, "trip-1")

    def test_start_and_end_keep_local_timezone(self) -> None:
        event = normalize(_segment(), self.trip)
        self.assertIs(event.start.tzinfo, NEW_YORK)
        self.assertIs(event.end.tzinfo, LONDON)
        self.assertEqual(event.start.utcoffset(), timedelta(hours=-4))
        self.assertEqual(event.end.utcoffset(), timedelta(hours=1))

    def test_unknown_status_is_still_placed(self) -> None:
        self.assertIsNotNone(normalize(_segment(status=STATUS_UNKNOWN), self.trip))

    def test_incomplete_segments_are_skipped(self) -> None:
        cases = {
            "cancelled": _segment(status=STATUS_CANCELLED),
            "no departure": _segment(departure=None),
            "no arrival": _segment(arrival=None),
            "no times": _segment(departure=None, arrival=None),
            "no origin": _segment(origin=""),
            "blank destination": _segment(destination="  "),
            "no flight number": _segment(flight_number=""),
            "arrival before departure": _segment(arrival=datetime(2024, 5, 1, 12, 0, tzinfo=NEW_YORK)),
        }
        for name, segment in cases.items():
            with self.subTest(name):
                self.assertIsNone(normalize(segment, self.trip))

    def test_naive_instant_is_skipped_not_compared(self) -> None:
        naive_arrival = _segment(arrival=datetime(2024, 5, 2, 6, 0))
        naive_departure = _segment(departure=datetime(2024, 5, 1, 18, 0))
        for segment in (naive_arrival, naive_departure):
            with self.subTest(departure=segment.departure, arrival=segment.arrival):
                self.assertEqual(skip_reason(segment), "missing_timezone")
                self.assertIsNone(normalize(segment, self.trip))

    def test_key_ignores_arrival_estimate(self) -> None:
        base = normalize(_segment(), self.trip)
        shifted = normalize(
            _segment(
                departure=datetime(2024, 5, 1, 18, 25, tzinfo=NEW_YORK),
                arrival=datetime(2024, 5, 2, 6, 47, tzinfo=LONDON),
            ),
            self.trip,
        )
        self.assertEqual(base.key, shifted.key)

    def test_key_differs_for_same_flight_on_another_day(self) -> None:
        next_day = _segment(
            departure=datetime(2024, 5, 2, 18, 0, tzinfo=NEW_YORK),
            arrival=datetime(2024, 5, 3, 6, 0, tzinfo=LONDON),
        )
        self.assertNotEqual(normalize(_segment(), self.trip).key, normalize(next_day, self.trip).key)

    def test_key_uses_local_departure_date(self) -> None:
        # 21:30 in New York is already the next day in UTC.
        late = _segment(departure=datetime(2024, 5, 1, 21, 30, tzinfo=NEW_YORK))
        self.assertEqual(external_key(late), "AB123-2024-05-01")

    def test_key_normalizes_case_and_whitespace(self) -> None:
        segment = _segment(carrier_code=" ab ", flight_number="123 ")
        self.assertEqual(external_key(segment), "AB123-2024-05-01")

    def test_fixed_offset_departure(self) -> None:
        segment = _segment(
            departure=datetime(2024, 5, 1, 18, 0, tzinfo=timezone(timedelta(hours=-4))),
            arrival=datetime(2024, 5, 2, 6, 0, tzinfo=timezone(timedelta(hours=1))),
        )
        self.assertEqual(normalize(segment, self.trip).key, "AB123-2024-05-01")


class DesiredEventsTests(unittest.TestCase):
    def test_collects_events_across_trips_and_drops_skipped(self) -> None:
        trips = [
            Trip(trip_id="t1", segments=[_segment(), _segment(status=STATUS_CANCELLED, flight_number="9")]),
            Trip(
                trip_id="t2",
                segments=[
                    _segment(
                        carrier_code="CD",
                        flight_number="45",
                        departure=datetime(2024, 5, 10, 8, 0, tzinfo=LONDON),
                        arrival=datetime(2024, 5, 10, 11, 0, tzinfo=NEW_YORK),
                        origin="LHR",
                        destination="JFK",
                    )
                ],
            ),
        ]
        keys = [event.key for event in desired_events(trips)]
        self.assertEqual(keys, ["AB123-2024-05-01", "CD45-2024-05-10"])

    def test_reissued_trip_does_not_duplicate_flight(self) -> None:
        trips = [
            Trip(trip_id="old-id", segments=[_segment()]),
            Trip(trip_id="new-id", segments=[_segment()]),
        ]
        events = desired_events(trips)
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].trip_id, "old-id")


if __name__ == "__main__":
    unittest.main()
