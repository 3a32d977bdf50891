from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, Iterable, Protocol

from tripcal.errors import error_kind
from tripcal.models import EVENT_FIELDS, CalendarEvent, ObservedEvent

logger = logging.getLogger("tripcal.reconciler")


class EventTarget(Protocol):
    def create_event(self, calendar_id: str, event: CalendarEvent) -> ObservedEvent: ...

    def update_event(
        self,
        calendar_id: str,
        event_id: str,
        changes: dict[str, Any],
        etag: str = "",
    ) -> ObservedEvent: ...


@dataclass
class EventUpdate:
    event_id: str
    key: str
    etag: str
    changes: dict[str, Any]
    desired: CalendarEvent


@dataclass
class ReconcilePlan:
    to_create: list[CalendarEvent] = field(default_factory=list)
    to_update: list[EventUpdate] = field(default_factory=list)
    unchanged: int = 0
    orphaned: list[str] = field(default_factory=list)
    duplicates: list[ObservedEvent] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.to_create and not self.to_update


@dataclass
class ApplyFailure:
    key: str
    action: str
    kind: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"key": self.key, "action": self.action, "kind": self.kind, "message": self.message}


@dataclass
class ApplyReport:
    created: list[ObservedEvent] = field(default_factory=list)
    updated: list[ObservedEvent] = field(default_factory=list)
    failures: list[ApplyFailure] = field(default_factory=list)


def _sort_key(event: CalendarEvent) -> tuple[Any, str]:
    return (event.start, event.key)


def index_observed(observed: Iterable[ObservedEvent]) -> tuple[dict[str, ObservedEvent], list[ObservedEvent]]:
    """Map key to observed event, skipping events this system did not create.

    When a key appears more than once the lowest event id wins and the rest
    are returned as duplicates.
    """
    by_key: dict[str, ObservedEvent] = {}
    duplicates: list[ObservedEvent] = []
    for event in sorted(observed, key=lambda item: (item.key, item.event_id)):
        if not event.is_managed:
            continue
        if event.key in by_key:
            duplicates.append(event)
            continue
        by_key[event.key] = event
    return by_key, duplicates


def diff_fields(current: ObservedEvent, desired: CalendarEvent) -> dict[str, Any]:
    changes: dict[str, Any] = {}
    for name in EVENT_FIELDS:
        wanted = getattr(desired, name)
        if getattr(current, name) != wanted:
            changes[name] = wanted
    return changes


def reconcile(desired: Iterable[CalendarEvent], observed: Iterable[ObservedEvent]) -> ReconcilePlan:
    by_key, duplicates = index_observed(observed)
    plan = ReconcilePlan(duplicates=duplicates)
    seen: set[str] = set()

    for event in sorted(desired, key=_sort_key):
        if event.key in seen:
            continue
        seen.add(event.key)
        current = by_key.get(event.key)
        if current is None:
            plan.to_create.append(event)
            continue
        changes = diff_fields(current, event)
        if not changes:
            plan.unchanged += 1
            continue
        plan.to_update.append(
            EventUpdate(
                event_id=current.event_id,
                key=event.key,
                etag=current.etag,
                changes=changes,
                desired=event,
            )
        )

    plan.orphaned = sorted(key for key in by_key if key not in seen)
    return plan


def _run_operation(target: EventTarget, calendar_id: str, action: str, item: Any) -> ObservedEvent:
    if action == "create":
        return target.create_event(calendar_id, item)
    return target.update_event(calendar_id, item.event_id, item.changes, etag=item.etag)


def apply_plan(
    plan: ReconcilePlan,
    target: EventTarget,
    calendar_id: str,
    *,
    max_workers: int = 1,
) -> ApplyReport:
    operations: list[tuple[str, str, Any]] = [("create", event.key, event) for event in plan.to_create]
    operations.extend(("update", update.key, update) for update in plan.to_update)
    report = ApplyReport()
    if not operations:
        return report

    outcomes: list[tuple[ObservedEvent | None, Exception | None]] = []
    if max_workers <= 1 or len(operations) == 1:
        for action, _key, item in operations:
            try:
                outcomes.append((_run_operation(target, calendar_id, action, item), None))
            except Exception as exc:
                outcomes.append((None, exc))
    else:
        with ThreadPoolExecutor(max_workers=max_workers, thread_name_prefix="tripcal-apply") as pool:
            futures = [
                pool.submit(_run_operation, target, calendar_id, action, item)
                for action, _key, item in operations
            ]
            for future in futures:
                try:
                    outcomes.append((future.result(), None))
                except Exception as exc:
                    outcomes.append((None, exc))

    for (action, key, _item), (result, exc) in zip(operations, outcomes):
        if exc is not None:
            failure = ApplyFailure(key=key, action=action, kind=error_kind(exc), message=str(exc))
            logger.warning("Failed to %s event %s: %s: %s", action, key, failure.kind, failure.message)
            report.failures.append(failure)
            continue
        if action == "create":
            logger.info("Created event %s", key)
            report.created.append(result)
        else:
            logger.info("Updated event %s", key)
            report.updated.append(result)
    return report
