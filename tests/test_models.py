import unittest
from datetime import datetime, timedelta, timezone

from tripcal.models import AppConfig, CalendarEvent, SyncConfig


class ModelsTests(unittest.TestCase):
    def test_sync_config_is_clamped(self) -> None:
        cfg = SyncConfig.from_dict({"interval_seconds": 0, "max_workers": 99, "lookback_days": "bad"})
        self.assertEqual(cfg.interval_seconds, 1)
        self.assertEqual(cfg.max_workers, 16)
        self.assertEqual(cfg.lookback_days, 30)

    def test_validate_lists_missing_settings(self) -> None:
        self.assertEqual(
            AppConfig().validate(),
            ["tripit.username", "tripit.token", "caldav.base_url", "caldav.username", "caldav.calendar_id"],
        )
        complete = AppConfig.from_dict(
            {
                "tripit": {"username": "me", "token": "t"},
                "caldav": {"base_url": "https://dav", "username": "u", "calendar_id": "Flights"},
            }
        )
        self.assertEqual(complete.validate(), [])

    def test_tripit_base_url_trailing_slash(self) -> None:
        cfg = AppConfig.from_dict({"tripit": {"base_url": "https://api.tripit.com/"}})
        self.assertEqual(cfg.tripit.base_url, "https://api.tripit.com")

    def test_calendar_event_to_dict_keeps_offset(self) -> None:
        event = CalendarEvent(
            key="AB123-2024-05-01",
            title="AB123 JFK→LHR",
            start=datetime(2024, 5, 1, 18, 0, tzinfo=timezone(timedelta(hours=-4))),
            end=datetime(2024, 5, 2, 6, 0, tzinfo=timezone(timedelta(hours=1))),
            location="JFK → LHR",
        )
        payload = event.to_dict()
        self.assertEqual(payload["start"], "2024-05-01T18:00:00-04:00")
        self.assertEqual(payload["end"], "2024-05-02T06:00:00+01:00")


if __name__ == "__main__":
    unittest.main()
