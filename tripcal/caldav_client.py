from __future__ import annotations

import contextlib
import hashlib
import logging
import re
from datetime import date, datetime, timedelta, timezone
from typing import Any, Iterator
from zoneinfo import ZoneInfo

import caldav
from caldav.lib import error as dav_error
from icalendar import Calendar as ICalendar
from icalendar import Event as ICEvent
from icalendar import Timezone as ICTimezone
from icalendar import TimezoneStandard as ICTimezoneStandard

from tripcal.errors import TargetRejected, TargetUnavailable
from tripcal.models import CalDAVConfig, CalendarEvent, ObservedEvent

logger = logging.getLogger("tripcal.caldav")

KEY_PROPERTY = "X-TRIPCAL-KEY"
TRIP_PROPERTY = "X-TRIPCAL-TRIP"
PRODID = "-//tripcal//Flight Calendar Sync//EN"
LIST_HORIZON = timedelta(days=730)

FIELD_PROPERTIES = {
    "title": "SUMMARY",
    "location": "LOCATION",
    "start": "DTSTART",
    "end": "DTEND",
}


def _data_hash(raw_ical: str) -> str:
    return hashlib.sha1(raw_ical.encode("utf-8")).hexdigest()  # nosec B324


def _normalize_calendar_id(value: str) -> str:
    return str(value or "").strip().rstrip("/")


def _normalize_calendar_name(value: str) -> str:
    return re.sub(r"\s+", " ", str(value or "").strip()).casefold()


def event_uid(key: str) -> str:
    return f"{key}@tripcal"


def _coerce_datetime(value: Any) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value
    if isinstance(value, date):
        return datetime.combine(value, datetime.min.time(), tzinfo=timezone.utc)
    return None


def _ical_datetime(value: datetime) -> datetime:
    if isinstance(value.tzinfo, ZoneInfo) or value.tzinfo is timezone.utc:
        return value
    return value.astimezone(timezone.utc)


def _fixed_offset(value: datetime) -> timedelta | None:
    if isinstance(value.tzinfo, timezone) and value.utcoffset():
        return value.utcoffset()
    return None


def offset_tzid(offset: timedelta) -> str:
    total_minutes = int(offset.total_seconds()) // 60
    sign = "+" if total_minutes >= 0 else "-"
    hours, minutes = divmod(abs(total_minutes), 60)
    return f"UTC{sign}{hours:02d}{minutes:02d}"


def _offset_vtimezone(tzid: str, offset: timedelta) -> ICTimezone:
    vtimezone = ICTimezone()
    vtimezone.add("TZID", tzid)
    standard = ICTimezoneStandard()
    standard.add("DTSTART", datetime(1970, 1, 1))
    standard.add("TZOFFSETFROM", offset)
    standard.add("TZOFFSETTO", offset)
    standard.add("TZNAME", tzid)
    vtimezone.add_component(standard)
    return vtimezone


def _add_datetime(calendar_obj: ICalendar, vevent: ICEvent, name: str, value: datetime) -> None:
    """Add a datetime property, keeping a fixed UTC offset as local time.

    A fixed offset has no IANA name, so the calendar gets its own VTIMEZONE
    (``UTC-0400`` and so on) and the property references it by TZID.
    """
    offset = _fixed_offset(value)
    if offset is None:
        vevent.add(name, _ical_datetime(value))
        return
    tzid = offset_tzid(offset)
    vevent.add(name, value.replace(tzinfo=None), parameters={"TZID": tzid})
    if not any(str(component.get("TZID", "")) == tzid for component in calendar_obj.walk("VTIMEZONE")):
        calendar_obj.subcomponents.insert(0, _offset_vtimezone(tzid, offset))


def _first_vevent(calendar_obj: ICalendar) -> ICEvent | None:
    for component in calendar_obj.walk():
        if component.name == "VEVENT":
            return component
    return None


def _decode_raw_ical(raw_data: Any) -> str:
    if isinstance(raw_data, bytes):
        return raw_data.decode("utf-8", errors="replace")
    return str(raw_data)


def _set_property(calendar_obj: ICalendar, vevent: ICEvent, name: str, value: Any) -> None:
    if name in vevent:
        del vevent[name]
    if isinstance(value, datetime):
        _add_datetime(calendar_obj, vevent, name, value)
    else:
        vevent.add(name, value)


@contextlib.contextmanager
def _target_errors(action: str) -> Iterator[None]:
    try:
        yield
    except (TargetRejected, TargetUnavailable):
        raise
    except dav_error.AuthorizationError as exc:
        raise TargetUnavailable(f"{action}: authorization failed: {exc}") from exc
    except (dav_error.NotFoundError, dav_error.PutError) as exc:
        raise TargetRejected(f"{action}: {exc}") from exc
    except Exception as exc:
        raise TargetUnavailable(f"{action}: {type(exc).__name__}: {exc}") from exc


class CalDAVService:
    def __init__(self, config: CalDAVConfig) -> None:
        self.config = config
        self._client: Any = None
        self._principal: Any = None
        self._calendar_cache: dict[str, Any] = {}

    def _connect(self) -> None:
        if self._principal is not None:
            return
        if not self.config.base_url or not self.config.username:
            raise TargetUnavailable("CalDAV config is incomplete.")
        with _target_errors("connect"):
            self._client = caldav.DAVClient(
                url=self.config.base_url,
                username=self.config.username,
                password=self.config.password,
            )
            self._principal = self._client.principal()

    def _get_calendar(self, calendar_id: str) -> Any:
        self._connect()
        if calendar_id in self._calendar_cache:
            return self._calendar_cache[calendar_id]
        wanted_id = _normalize_calendar_id(calendar_id)
        wanted_name = _normalize_calendar_name(calendar_id)
        with _target_errors("list calendars"):
            calendars = list(self._principal.calendars())
        for calendar in calendars:
            name = getattr(calendar, "name", "") or ""
            if _normalize_calendar_id(str(calendar.url)) == wanted_id or (
                wanted_name and _normalize_calendar_name(name) == wanted_name
            ):
                self._calendar_cache[calendar_id] = calendar
                return calendar
        raise TargetRejected(f"Calendar not found: {calendar_id}")

    def _parse_resource(self, resource: Any) -> ObservedEvent:
        raw_ical = _decode_raw_ical(resource.data)
        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise TargetRejected("VEVENT missing in calendar resource.")

        dtstart_raw = vevent.decoded("DTSTART") if vevent.get("DTSTART") is not None else None
        dtend_raw = vevent.decoded("DTEND") if vevent.get("DTEND") is not None else None
        return ObservedEvent(
            event_id=str(getattr(resource, "url", "") or ""),
            key=str(vevent.get(KEY_PROPERTY, "")).strip(),
            title=str(vevent.get("SUMMARY", "")).strip(),
            start=_coerce_datetime(dtstart_raw),
            end=_coerce_datetime(dtend_raw),
            location=str(vevent.get("LOCATION", "")).strip(),
            trip_id=str(vevent.get(TRIP_PROPERTY, "")).strip(),
            etag=_data_hash(raw_ical),
        )

    def build_ical(self, event: CalendarEvent) -> str:
        calendar_obj = ICalendar()
        calendar_obj.add("PRODID", PRODID)
        calendar_obj.add("VERSION", "2.0")
        vevent = ICEvent()
        vevent.add("UID", event_uid(event.key))
        vevent.add("DTSTAMP", datetime.now(timezone.utc))
        vevent.add("SUMMARY", event.title)
        vevent.add("LOCATION", event.location)
        _add_datetime(calendar_obj, vevent, "DTSTART", event.start)
        _add_datetime(calendar_obj, vevent, "DTEND", event.end)
        vevent.add(KEY_PROPERTY, event.key)
        if event.trip_id:
            vevent.add(TRIP_PROPERTY, event.trip_id)
        calendar_obj.add_component(vevent)
        calendar_obj.add_missing_timezones()
        return calendar_obj.to_ical().decode("utf-8")

    def list_events(self, calendar_id: str, time_from: datetime) -> list[ObservedEvent]:
        calendar = self._get_calendar(calendar_id)
        with _target_errors("list events"):
            resources = calendar.search(start=time_from, end=time_from + LIST_HORIZON, event=True)
        events: list[ObservedEvent] = []
        for resource in resources:
            try:
                events.append(self._parse_resource(resource))
            except (TargetRejected, ValueError) as exc:
                # Unreadable entries cannot belong to us; leave them alone.
                logger.debug("Ignoring unreadable event %s: %s", getattr(resource, "url", ""), exc)
        return events

    def create_event(self, calendar_id: str, event: CalendarEvent) -> ObservedEvent:
        calendar = self._get_calendar(calendar_id)
        raw_ical = self.build_ical(event)
        with _target_errors(f"create {event.key}"):
            resource = calendar.save_event(raw_ical)
        return self._parse_resource(resource)

    def update_event(
        self,
        calendar_id: str,
        event_id: str,
        changes: dict[str, Any],
        etag: str = "",
    ) -> ObservedEvent:
        """Rewrite only the changed properties of a stored event.

        Raises TargetRejected when the stored event no longer matches ``etag``.
        """
        calendar = self._get_calendar(calendar_id)
        with _target_errors(f"load {event_id}"):
            resource = calendar.event_by_url(event_id)
        raw_ical = _decode_raw_ical(resource.data)
        if etag and _data_hash(raw_ical) != etag:
            raise TargetRejected(f"Event {event_id} changed since it was listed.")

        calendar_obj = ICalendar.from_ical(raw_ical)
        vevent = _first_vevent(calendar_obj)
        if vevent is None:
            raise TargetRejected(f"VEVENT missing in {event_id}.")
        for field_name, value in changes.items():
            prop = FIELD_PROPERTIES.get(field_name)
            if prop is None:
                raise TargetRejected(f"Field {field_name!r} cannot be updated.")
            _set_property(calendar_obj, vevent, prop, value)
        _set_property(calendar_obj, vevent, "DTSTAMP", datetime.now(timezone.utc))
        _set_property(calendar_obj, vevent, "SEQUENCE", int(vevent.get("SEQUENCE", 0) or 0) + 1)
        calendar_obj.add_missing_timezones()

        with _target_errors(f"update {event_id}"):
            resource.data = calendar_obj.to_ical().decode("utf-8")
            resource.save()
        return self._parse_resource(resource)
