from __future__ import annotations

import logging
import traceback
from datetime import datetime, timedelta, timezone
from typing import Any

from tripcal.caldav_client import LIST_HORIZON, CalDAVService
from tripcal.config_manager import ConfigManager
from tripcal.errors import SourceError, TargetError, error_kind
from tripcal.models import AppConfig, CalendarEvent, SyncResult
from tripcal.normalizer import desired_events
from tripcal.reconciler import ApplyReport, ReconcilePlan, apply_plan, reconcile
from tripcal.state_store import StateStore
from tripcal.tripit_client import TripItService

logger = logging.getLogger("tripcal.sync")


def sync_window_start(now: datetime, lookback_days: int) -> datetime:
    return now - timedelta(days=max(0, lookback_days))


def _in_window(event: CalendarEvent, window_start: datetime) -> bool:
    # The calendar is only listed over [window_start, window_start + LIST_HORIZON);
    # events outside that range are never observed and must not be planned.
    return event.end >= window_start and event.start < window_start + LIST_HORIZON


class SyncEngine:
    def __init__(self, config_manager: ConfigManager, state_store: StateStore) -> None:
        self.config_manager = config_manager
        self.state_store = state_store

    def _duration_ms(self, started_at: datetime) -> int:
        return int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)

    def _finish_aborted(
        self,
        *,
        trigger: str,
        started_at: datetime,
        status: str,
        message: str,
        details: dict[str, Any] | None = None,
    ) -> SyncResult:
        duration_ms = self._duration_ms(started_at)
        run_id = self.state_store.record_sync_run(
            trigger=trigger,
            status=status,
            message=message,
            duration_ms=duration_ms,
        )
        if details is not None:
            self.state_store.record_audit_event(
                event_key="sync",
                action="run_error",
                details=details,
                run_id=run_id,
            )
        return SyncResult(status=status, message=message, duration_ms=duration_ms, trigger=trigger)

    def _record_outcome(self, run_id: int, trigger: str, plan: ReconcilePlan, report: ApplyReport) -> None:
        for event in report.created:
            self.state_store.record_audit_event(
                event_key=event.key,
                action="create",
                details={"trigger": trigger, "event_id": event.event_id},
                run_id=run_id,
            )
        updated_ids = {event.event_id for event in report.updated}
        for update in plan.to_update:
            if update.event_id not in updated_ids:
                continue
            self.state_store.record_audit_event(
                event_key=update.key,
                action="update",
                details={"trigger": trigger, "event_id": update.event_id, "fields": sorted(update.changes)},
                run_id=run_id,
            )
        for failure in report.failures:
            self.state_store.record_audit_event(
                event_key=failure.key,
                action="apply_failed",
                details={"trigger": trigger, **failure.to_dict()},
                run_id=run_id,
            )
        for key in plan.orphaned:
            self.state_store.record_audit_event(
                event_key=key,
                action="orphaned",
                details={"trigger": trigger},
                run_id=run_id,
            )
        for duplicate in plan.duplicates:
            self.state_store.record_audit_event(
                event_key=duplicate.key,
                action="duplicate_key",
                details={"trigger": trigger, "event_id": duplicate.event_id},
                run_id=run_id,
            )

    def _run_pass(self, config: AppConfig, trigger: str, started_at: datetime) -> SyncResult:
        source = TripItService(config.tripit)
        try:
            trips = source.list_trips(
                include_past=config.sync.include_past_trips,
                include_cancelled=config.sync.include_cancelled,
            )
        except SourceError as exc:
            message = f"Trip fetch failed, pass aborted: {exc.kind}: {exc}"
            logger.error(message)
            return self._finish_aborted(
                trigger=trigger,
                started_at=started_at,
                status="error",
                message=message,
                details={"trigger": trigger, "stage": "fetch_trips", "kind": exc.kind, "error": str(exc)},
            )

        window_start = sync_window_start(started_at, config.sync.lookback_days)
        desired = [event for event in desired_events(trips) if _in_window(event, window_start)]

        target = CalDAVService(config.caldav)
        calendar_id = config.caldav.calendar_id
        try:
            observed = target.list_events(calendar_id, window_start)
        except TargetError as exc:
            message = f"Calendar listing failed, pass aborted: {exc.kind}: {exc}"
            logger.error(message)
            return self._finish_aborted(
                trigger=trigger,
                started_at=started_at,
                status="error",
                message=message,
                details={"trigger": trigger, "stage": "list_events", "kind": exc.kind, "error": str(exc)},
            )

        plan = reconcile(desired, observed)
        for key in plan.orphaned:
            logger.warning("Event %s has no matching flight; left in place", key)
        for duplicate in plan.duplicates:
            logger.warning("Event %s duplicates key %s; left in place", duplicate.event_id, duplicate.key)

        report = apply_plan(plan, target, calendar_id, max_workers=config.sync.max_workers)
        failures = [failure.to_dict() for failure in report.failures]
        status = "partial" if failures else "success"
        message = (
            f"{len(trips)} trips, {len(desired)} flights: created={len(report.created)} "
            f"updated={len(report.updated)} unchanged={plan.unchanged} failed={len(failures)}"
        )
        if plan.orphaned:
            message += f" orphaned={len(plan.orphaned)}"
        duration_ms = self._duration_ms(started_at)
        run_id = self.state_store.record_sync_run(
            trigger=trigger,
            status=status,
            message=message,
            duration_ms=duration_ms,
            created=len(report.created),
            updated=len(report.updated),
            unchanged=plan.unchanged,
            failed=len(failures),
        )
        self._record_outcome(run_id, trigger, plan, report)
        if failures:
            logger.warning("Pass completed with errors: %s", message)
            for failure in failures:
                logger.warning("  %s %s: %s", failure["action"], failure["key"], failure["kind"])
        else:
            logger.info("Pass completed: %s", message)
        return SyncResult(
            status=status,
            message=message,
            duration_ms=duration_ms,
            trigger=trigger,
            created=len(report.created),
            updated=len(report.updated),
            unchanged=plan.unchanged,
            failures=failures,
            orphaned=list(plan.orphaned),
        )

    def run_once(self, trigger: str = "manual") -> SyncResult:
        started_at = datetime.now(timezone.utc)
        try:
            config = self.config_manager.load()
            missing = config.validate()
            if missing:
                message = f"Config missing {', '.join(missing)}. Sync skipped."
                logger.warning(message)
                return self._finish_aborted(
                    trigger=trigger,
                    started_at=started_at,
                    status="skipped",
                    message=message,
                )
            return self._run_pass(config, trigger, started_at)
        except Exception as exc:
            error_message = f"{error_kind(exc)}: {exc}"
            logger.exception("Pass failed unexpectedly")
            return self._finish_aborted(
                trigger=trigger,
                started_at=started_at,
                status="error",
                message=error_message,
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
