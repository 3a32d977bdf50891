from __future__ import annotations

import argparse
import logging
import math
import os
import re
import signal
import sys
from typing import Any, Sequence

import uvicorn

from tripcal.config_manager import ConfigManager
from tripcal.scheduler import SyncScheduler
from tripcal.state_store import StateStore
from tripcal.sync_engine import SyncEngine

__version__ = "0.1.0"

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s - %(message)s"

DURATION_UNITS = {"ms": 0.001, "s": 1.0, "m": 60.0, "h": 3600.0}
_DURATION_PART = re.compile(r"(\d+(?:\.\d+)?)(ms|s|m|h)")
_PLAIN_SECONDS = re.compile(r"\d+(?:\.\d+)?")

# Flags that only apply to the foreground loop, as (dest, flag).
LOOP_FLAGS = (
    ("interval", "--interval"),
    ("include_past", "--include-past"),
    ("tripit_username", "--tripit-username"),
    ("tripit_token", "--tripit-token"),
    ("calendar", "--calendar"),
)

logger = logging.getLogger("tripcal")


def parse_duration(text: str) -> float:
    """Parse "90", "10s", "1m", "1h30m" or "500ms" into seconds."""
    value = text.strip().lower()
    if _PLAIN_SECONDS.fullmatch(value):
        total = float(value)
    else:
        position = 0
        total = 0.0
        for match in _DURATION_PART.finditer(value):
            if match.start() != position:
                break
            total += float(match.group(1)) * DURATION_UNITS[match.group(2)]
            position = match.end()
        if not value or position != len(value):
            raise argparse.ArgumentTypeError(f"invalid duration {text!r} (use e.g. 5ms, 10s, 1m, 3h)")
    if total <= 0:
        raise argparse.ArgumentTypeError(f"duration must be positive, got {text!r}")
    return total


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="tripcal",
        description="Mirror TripIt flights into a CalDAV calendar.",
    )
    parser.add_argument(
        "--config",
        default=os.getenv("TRIPCAL_CONFIG_PATH", "config.yaml"),
        help="Path to the YAML config file (or env TRIPCAL_CONFIG_PATH)",
    )
    parser.add_argument(
        "--state",
        default=os.getenv("TRIPCAL_STATE_PATH", "data/state.db"),
        help="Path to the run history database (or env TRIPCAL_STATE_PATH)",
    )
    parser.add_argument(
        "--interval",
        type=parse_duration,
        default=None,
        help="Time between passes, e.g. 30s, 5m, 1h (whole seconds, at least 1)",
    )
    parser.add_argument("--once", action="store_true", help="Run one pass and exit")
    parser.add_argument(
        "--include-past",
        dest="include_past",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Also mirror flights from past trips",
    )
    parser.add_argument("--tripit-username", default=None, help="TripIt username (or env TRIPIT_USERNAME)")
    parser.add_argument("--tripit-token", default=None, help="TripIt password or token (or env TRIPIT_TOKEN)")
    parser.add_argument("--calendar", default=None, help="Calendar URL or name (or env CALDAV_CALENDAR_ID)")
    parser.add_argument("-d", "--debug", action="store_true", help="Log at DEBUG level")
    parser.add_argument("--serve", action="store_true", help="Run the web admin instead of the foreground loop")
    parser.add_argument("--host", default=os.getenv("TRIPCAL_HOST", "0.0.0.0"))
    parser.add_argument("--port", type=int, default=int(os.getenv("TRIPCAL_PORT", "8080")))
    parser.add_argument("-v", "--version", action="version", version=f"tripcal {__version__}")
    return parser


def configure_logging(level: str, debug: bool = False) -> None:
    logging.basicConfig(
        level=logging.DEBUG if debug else level.upper(),
        format=LOG_FORMAT,
    )


def cli_overrides(args: argparse.Namespace) -> dict[str, Any]:
    overrides: dict[str, dict[str, Any]] = {}
    if args.interval is not None:
        overrides.setdefault("sync", {})["interval_seconds"] = max(1, math.ceil(args.interval))
    if args.include_past is not None:
        overrides.setdefault("sync", {})["include_past_trips"] = args.include_past
    if args.once:
        overrides.setdefault("sync", {})["run_once"] = True
    if args.tripit_username is not None:
        overrides.setdefault("tripit", {})["username"] = args.tripit_username
    if args.tripit_token is not None:
        overrides.setdefault("tripit", {})["token"] = args.tripit_token
    if args.calendar is not None:
        overrides.setdefault("caldav", {})["calendar_id"] = args.calendar
    return overrides


def loop_only_flags(args: argparse.Namespace) -> list[str]:
    used = [flag for dest, flag in LOOP_FLAGS if getattr(args, dest) is not None]
    if args.once:
        used.insert(0, "--once")
    return used


def install_signal_handlers(scheduler: SyncScheduler):
    def _handle_signal(signum: int, _frame: object) -> None:
        logger.info("Received %s, stopping after the current pass.", signal.Signals(signum).name)
        scheduler.request_stop()

    signal.signal(signal.SIGINT, _handle_signal)
    signal.signal(signal.SIGTERM, _handle_signal)
    return _handle_signal


def main(argv: Sequence[str] | None = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    if args.serve:
        rejected = loop_only_flags(args)
        if rejected:
            parser.error(f"--serve reads its settings from the config file; drop {', '.join(rejected)}")
        os.environ["TRIPCAL_CONFIG_PATH"] = args.config
        os.environ["TRIPCAL_STATE_PATH"] = args.state
        configure_logging("INFO", args.debug)
        uvicorn.run("tripcal.web_admin:create_app", factory=True, host=args.host, port=args.port, reload=False)
        return 0

    config_manager = ConfigManager(args.config, overrides=cli_overrides(args))
    config = config_manager.load()
    configure_logging(config.logging.level, args.debug)

    missing = config.validate()
    if missing:
        logger.error("Missing required settings: %s", ", ".join(missing))
        return 1

    engine = SyncEngine(config_manager, StateStore(args.state))
    scheduler = SyncScheduler(engine, config_manager)
    install_signal_handlers(scheduler)

    if config.sync.run_once:
        result = scheduler.run_once(trigger="once")
        return 1 if result is None or result.status == "error" else 0

    logger.info("Mirroring TripIt flights every %ss", config.sync.interval_seconds)
    scheduler.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
