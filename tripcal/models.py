from __future__ import annotations

from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Any


STATUS_SCHEDULED = "scheduled"
STATUS_CANCELLED = "cancelled"
STATUS_UNKNOWN = "unknown"

EVENT_FIELDS = ("title", "start", "end", "location")


def _ensure_tz(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt


def serialize_datetime(value: datetime | None) -> str | None:
    if value is None:
        return None
    return _ensure_tz(value).isoformat()


def _clamp(value: Any, default: int, low: int, high: int | None = None) -> int:
    try:
        number = int(value)
    except (TypeError, ValueError):
        number = default
    number = max(low, number)
    if high is not None:
        number = min(high, number)
    return number


@dataclass
class TripItConfig:
    base_url: str = "https://api.tripit.com"
    username: str = ""
    token: str = ""
    timeout_seconds: int = 30

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TripItConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "https://api.tripit.com")).strip().rstrip("/")
            or "https://api.tripit.com",
            username=str(data.get("username", "")).strip(),
            token=str(data.get("token", "")).strip(),
            timeout_seconds=_clamp(data.get("timeout_seconds", 30), 30, 1),
        )


@dataclass
class CalDAVConfig:
    base_url: str = ""
    username: str = ""
    password: str = ""
    calendar_id: str = ""

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "CalDAVConfig":
        data = data or {}
        return cls(
            base_url=str(data.get("base_url", "")).strip(),
            username=str(data.get("username", "")).strip(),
            password=str(data.get("password", "")).strip(),
            calendar_id=str(data.get("calendar_id", "")).strip(),
        )


@dataclass
class SyncConfig:
    interval_seconds: int = 60
    run_once: bool = False
    include_past_trips: bool = True
    include_cancelled: bool = False
    lookback_days: int = 30
    max_workers: int = 1

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "SyncConfig":
        data = data or {}
        return cls(
            interval_seconds=_clamp(data.get("interval_seconds", 60), 60, 1),
            run_once=bool(data.get("run_once", False)),
            include_past_trips=bool(data.get("include_past_trips", True)),
            include_cancelled=bool(data.get("include_cancelled", False)),
            lookback_days=_clamp(data.get("lookback_days", 30), 30, 0),
            max_workers=_clamp(data.get("max_workers", 1), 1, 1, 16),
        )


@dataclass
class LoggingConfig:
    level: str = "INFO"

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "LoggingConfig":
        data = data or {}
        return cls(level=str(data.get("level", "INFO")).strip().upper() or "INFO")


@dataclass
class AppConfig:
    tripit: TripItConfig = field(default_factory=TripItConfig)
    caldav: CalDAVConfig = field(default_factory=CalDAVConfig)
    sync: SyncConfig = field(default_factory=SyncConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AppConfig":
        data = data or {}
        return cls(
            tripit=TripItConfig.from_dict(data.get("tripit")),
            caldav=CalDAVConfig.from_dict(data.get("caldav")),
            sync=SyncConfig.from_dict(data.get("sync")),
            logging=LoggingConfig.from_dict(data.get("logging")),
        )

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    def validate(self) -> list[str]:
        """Names of required settings that are still empty."""
        missing: list[str] = []
        if not self.tripit.username:
            missing.append("tripit.username")
        if not self.tripit.token:
            missing.append("tripit.token")
        if not self.caldav.base_url:
            missing.append("caldav.base_url")
        if not self.caldav.username:
            missing.append("caldav.username")
        if not self.caldav.calendar_id:
            missing.append("caldav.calendar_id")
        return missing


def default_app_config() -> AppConfig:
    return AppConfig()


@dataclass
class FlightSegment:
    carrier_code: str
    flight_number: str
    origin: str = ""
    destination: str = ""
    departure: datetime | None = None
    arrival: datetime | None = None
    status: str = STATUS_UNKNOWN

    @property
    def flight_code(self) -> str:
        return f"{self.carrier_code.strip().upper()}{self.flight_number.strip().upper()}"


@dataclass
class Trip:
    trip_id: str
    segments: list[FlightSegment] = field(default_factory=list)
    is_past: bool = False
    display_name: str = ""


@dataclass(frozen=True)
class CalendarEvent:
    """Desired state for one flight, rebuilt from the itinerary on every pass."""

    key: str
    title: str
    start: datetime
    end: datetime
    location: str
    trip_id: str = ""

    def field_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in EVENT_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        return {
            "key": self.key,
            "title": self.title,
            "start": serialize_datetime(self.start),
            "end": serialize_datetime(self.end),
            "location": self.location,
            "trip_id": self.trip_id,
        }


@dataclass
class ObservedEvent:
    event_id: str
    key: str = ""
    title: str = ""
    start: datetime | None = None
    end: datetime | None = None
    location: str = ""
    trip_id: str = ""
    etag: str = ""

    @property
    def is_managed(self) -> bool:
        return bool(self.key)

    def field_values(self) -> dict[str, Any]:
        return {name: getattr(self, name) for name in EVENT_FIELDS}

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["start"] = serialize_datetime(self.start)
        payload["end"] = serialize_datetime(self.end)
        return payload


@dataclass
class SyncResult:
    status: str
    message: str
    duration_ms: int
    trigger: str
    created: int = 0
    updated: int = 0
    unchanged: int = 0
    failures: list[dict[str, str]] = field(default_factory=list)
    orphaned: list[str] = field(default_factory=list)
    run_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def failed(self) -> int:
        return len(self.failures)

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "message": self.message,
            "duration_ms": self.duration_ms,
            "trigger": self.trigger,
            "created": self.created,
            "updated": self.updated,
            "unchanged": self.unchanged,
            "failed": self.failed,
            "failures": list(self.failures),
            "orphaned": list(self.orphaned),
            "run_at": serialize_datetime(self.run_at),
        }
