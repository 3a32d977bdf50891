import unittest
from datetime import datetime, timedelta
from unittest import mock
from zoneinfo import ZoneInfo

import requests

from tripcal.errors import SourceMalformed, SourceUnavailable
from tripcal.models import STATUS_CANCELLED, STATUS_SCHEDULED, STATUS_UNKNOWN, TripItConfig
from tripcal.tripit_client import TripItService, parse_trip_list, parse_tripit_datetime


def _segment_payload(**overrides) -> dict:
    payload = {
        "marketing_airline_code": "AB",
        "marketing_flight_number": "123",
        "start_airport_code": "JFK",
        "end_airport_code": "LHR",
        "StartDateTime": {
            "date": "2024-05-01",
            "time": "18:00:00",
            "timezone": "America/New_York",
            "utc_offset": "-04:00",
        },
        "EndDateTime": {
            "date": "2024-05-02",
            "time": "06:00:00",
            "timezone": "Europe/London",
            "utc_offset": "+01:00",
        },
        "Status": {"flight_status": "300"},
    }
    payload.update(overrides)
    return payload


def _response(payload=None, status_code: int = 200, json_error: bool = False) -> mock.Mock:
    response = mock.Mock()
    response.status_code = status_code
    response.ok = status_code < 400
    response.text = "body"
    if json_error:
        response.json.side_effect = ValueError("Expecting value")
    else:
        response.json.return_value = payload
    return response


class ParseTripItDatetimeTests(unittest.TestCase):
    def test_uses_named_timezone(self) -> None:
        value = parse_tripit_datetime(
            {"date": "2024-05-01", "time": "18:00:00", "timezone": "America/New_York", "utc_offset": "-04:00"}
        )
        self.assertEqual(value, datetime(2024, 5, 1, 18, 0, tzinfo=ZoneInfo("America/New_York")))
        self.assertEqual(value.utcoffset(), timedelta(hours=-4))

    def test_falls_back_to_offset(self) -> None:
        value = parse_tripit_datetime(
            {"date": "2024-05-01", "time": "18:00:00", "timezone": "Nowhere/Invalid", "utc_offset": "+05:30"}
        )
        self.assertEqual(value.utcoffset(), timedelta(hours=5, minutes=30))

    def test_missing_parts_yield_none(self) -> None:
        self.assertIsNone(parse_tripit_datetime(None))
        self.assertIsNone(parse_tripit_datetime({"date": "2024-05-01"}))
        self.assertIsNone(parse_tripit_datetime({"date": "2024-05-01", "time": "18:00:00"}))
        self.assertIsNone(parse_tripit_datetime({"date": "bad", "time": "18:00:00", "utc_offset": "+00:00"}))


class ParseTripListTests(unittest.TestCase):
    def test_single_objects_and_lists_are_accepted(self) -> None:
        payload = {
            "Trip": {"id": "1001", "display_name": "London"},
            "AirObject": [
                {"trip_id": "1001", "Segment": _segment_payload()},
                {
                    "trip_id": "1001",
                    "Segment": [
                        _segment_payload(marketing_flight_number="124", Status={"flight_status": "400"}),
                        _segment_payload(marketing_flight_number="125", Status=None),
                    ],
                },
            ],
        }
        trips = parse_trip_list(payload, is_past=False)
        self.assertEqual(len(trips), 1)
        trip = trips[0]
        self.assertEqual(trip.trip_id, "1001")
        self.assertEqual(trip.display_name, "London")
        self.assertEqual(
            [(seg.flight_number, seg.status) for seg in trip.segments],
            [("123", STATUS_SCHEDULED), ("124", STATUS_CANCELLED), ("125", STATUS_UNKNOWN)],
        )
        self.assertEqual(trip.segments[0].origin, "JFK")
        self.assertEqual(trip.segments[0].destination, "LHR")

    def test_empty_listing(self) -> None:
        self.assertEqual(parse_trip_list({"timestamp": "1"}, is_past=True), [])

    def test_malformed_shapes_raise(self) -> None:
        with self.assertRaises(SourceMalformed):
            parse_trip_list([], is_past=False)
        with self.assertRaises(SourceMalformed):
            parse_trip_list({"Trip": "oops"}, is_past=False)
        with self.assertRaises(SourceMalformed):
            parse_trip_list({"Trip": {"display_name": "no id"}}, is_past=False)


class TripItServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.service = TripItService(TripItConfig(username="me", token="secret"))

    def test_include_past_fetches_both_listings(self) -> None:
        upcoming = {"Trip": {"id": "1"}, "AirObject": {"trip_id": "1", "Segment": _segment_payload()}}
        past = {"Trip": [{"id": "1"}, {"id": "2"}]}
        with mock.patch("tripcal.tripit_client.requests.get", side_effect=[_response(upcoming), _response(past)]) as get:
            trips = self.service.list_trips(include_past=True)
        urls = [call.args[0] for call in get.call_args_list]
        self.assertEqual(
            urls,
            [
                "https://api.tripit.com/v1/list/trip/past/false/include_objects/true/format/json",
                "https://api.tripit.com/v1/list/trip/past/true/include_objects/true/format/json",
            ],
        )
        self.assertEqual(get.call_args.kwargs["auth"], ("me", "secret"))
        self.assertEqual([(trip.trip_id, trip.is_past) for trip in trips], [("1", False), ("2", True)])
        self.assertEqual(len(trips[0].segments), 1)

    def test_cancelled_segments_dropped_unless_requested(self) -> None:
        payload = {
            "Trip": {"id": "1"},
            "AirObject": {"trip_id": "1", "Segment": _segment_payload(Status={"flight_status": "400"})},
        }
        with mock.patch("tripcal.tripit_client.requests.get", return_value=_response(payload)):
            self.assertEqual(self.service.list_trips(include_past=False)[0].segments, [])
        with mock.patch("tripcal.tripit_client.requests.get", return_value=_response(payload)):
            kept = self.service.list_trips(include_past=False, include_cancelled=True)[0].segments
        self.assertEqual(len(kept), 1)

    def test_transport_error_is_unavailable(self) -> None:
        with mock.patch(
            "tripcal.tripit_client.requests.get", side_effect=requests.ConnectionError("refused")
        ):
            with self.assertRaises(SourceUnavailable):
                self.service.list_trips()

    def test_auth_failure_is_unavailable(self) -> None:
        with mock.patch("tripcal.tripit_client.requests.get", return_value=_response(status_code=401)):
            with self.assertRaises(SourceUnavailable):
                self.service.list_trips()

    def test_non_json_is_malformed(self) -> None:
        with mock.patch("tripcal.tripit_client.requests.get", return_value=_response(json_error=True)):
            with self.assertRaises(SourceMalformed):
                self.service.list_trips()

    def test_missing_credentials(self) -> None:
        service = TripItService(TripItConfig())
        with self.assertRaises(SourceUnavailable):
            service.list_trips()


if __name__ == "__main__":
    unittest.main()
