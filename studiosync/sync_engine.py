from __future__ import annotations

import copy
import json
import logging
import threading
import time
import traceback
from datetime import datetime, timezone
from typing import Any, Callable

from studiosync.aggregate import AppDataAggregate, CalendarOccurrence, WeekNotes
from studiosync.config_manager import ConfigManager
from studiosync.feed_client import FeedError, FeedFetcher
from studiosync.identity import build_occurrences
from studiosync.merge import integrate_occurrences, merge_aggregates
from studiosync.models import (
    AppConfig,
    SyncResult,
    SyncStatus,
    SyncWarning,
    occurrence_window,
    serialize_datetime,
)
from studiosync.remote_client import (
    PayloadTooLargeError,
    RemoteAuthError,
    RemoteStoreClient,
    RemoteStoreError,
)
from studiosync.snapshot_store import LocalSnapshotStore, StorageQuotaError
from studiosync.state_store import StateStore

logger = logging.getLogger(__name__)

WARNING_SYNC_FAILURES = "sync-failures"
WARNING_REMOTE_CAPACITY = "remote-capacity"
WARNING_LOCAL_CAPACITY = "local-capacity"
WARNING_STORAGE = "storage-usage"


class SyncCoordinator:
    """Owns the local snapshot, the pending push and the sync status for one process."""

    def __init__(
        self,
        config_manager: ConfigManager,
        state_store: StateStore,
        *,
        remote_client: RemoteStoreClient | None = None,
        feed_fetcher: FeedFetcher | None = None,
        snapshot_store: LocalSnapshotStore | None = None,
        clock: Callable[[], float] = time.monotonic,
        timer_factory: Callable[..., Any] = threading.Timer,
    ) -> None:
        config = config_manager.load()
        self.config_manager = config_manager
        self.state_store = state_store
        self.remote = remote_client or RemoteStoreClient(config.remote)
        self.feed_fetcher = feed_fetcher or FeedFetcher(config.remote, remote_client=self.remote)
        self.snapshots = snapshot_store or LocalSnapshotStore(state_store, config.storage, clock=clock)
        self._clock = clock
        self._timer_factory = timer_factory
        self._lock = threading.RLock()
        self._status = SyncStatus.IDLE
        self._status_changed_at = clock()
        self._status_display_seconds = config.sync.status_display_seconds
        self._online = True
        self._in_flight = False
        self._last_success_at: float | None = None
        self._consecutive_failures = 0
        self._pending: dict[str, Any] | None = None
        self._parked: dict[str, Any] | None = None
        self._debounce_timer: Any = None
        self._write_generation = 0
        self._warnings: dict[str, SyncWarning] = {}
        self.last_result: SyncResult | None = None

    # -- configuration and status ------------------------------------------

    def _load_config(self) -> AppConfig:
        config = self.config_manager.load()
        if self.remote.config != config.remote:
            self.remote.config = config.remote
            self.remote.invalidate_token()
        self.feed_fetcher.config = config.remote
        self.snapshots.config = config.storage
        self._status_display_seconds = config.sync.status_display_seconds
        return config

    def _set_status(self, status: SyncStatus) -> None:
        with self._lock:
            self._status = status
            self._status_changed_at = self._clock()

    @property
    def status(self) -> SyncStatus:
        with self._lock:
            if (
                self._status in (SyncStatus.SUCCESS, SyncStatus.ERROR)
                and self._clock() - self._status_changed_at >= self._status_display_seconds
            ):
                self._status = SyncStatus.IDLE
            return self._status

    @property
    def online(self) -> bool:
        with self._lock:
            return self._online

    def status_snapshot(self) -> dict[str, Any]:
        status = self.status
        last_success_at = self.state_store.get_meta("last_sync_success_at")
        with self._lock:
            return {
                "last_success_at": last_success_at or None,
                "status": status.value,
                "online": self._online,
                "in_flight": self._in_flight,
                "pending": self._pending is not None,
                "parked": self._parked is not None,
                "consecutive_failures": self._consecutive_failures,
                "last_result": self.last_result.to_dict() if self.last_result else None,
                "warnings": [warning.to_dict() for warning in self._warnings.values()],
            }

    def pending_payload(self) -> dict[str, Any] | None:
        with self._lock:
            return copy.deepcopy(self._pending)

    # -- warnings -------------------------------------------------------------

    def _raise_warning(self, warning_id: str, kind: str, message: str, retryable: bool) -> None:
        with self._lock:
            self._warnings[warning_id] = SyncWarning(
                id=warning_id,
                kind=kind,
                message=message,
                retryable=retryable,
            )
        logger.warning("%s: %s", kind, message)

    def warnings(self) -> list[SyncWarning]:
        with self._lock:
            return list(self._warnings.values())

    def dismiss_warning(self, warning_id: str) -> bool:
        with self._lock:
            return self._warnings.pop(warning_id, None) is not None

    def _check_storage_usage(self) -> None:
        if self.snapshots.near_quota():
            self._raise_warning(
                WARNING_STORAGE,
                "storage",
                "Local storage is over 80% full. Export a backup and remove old media.",
                retryable=False,
            )

    # -- result bookkeeping ---------------------------------------------------

    def _elapsed_ms(self, started: float) -> int:
        return int((self._clock() - started) * 1000)

    def _finish(
        self,
        *,
        trigger: str,
        status: str,
        message: str,
        started: float,
        merged: Any = None,
        notes_merged: int = 0,
        pushed: bool = False,
        record: bool = True,
    ) -> SyncResult:
        result = SyncResult(
            status=status,
            message=message,
            duration_ms=self._elapsed_ms(started),
            trigger=trigger,
            merged=merged,
        )
        if record:
            self.state_store.record_sync_run(
                trigger=trigger,
                status=status,
                message=message,
                duration_ms=result.duration_ms,
                notes_merged=notes_merged,
                pushed=pushed,
            )
        with self._lock:
            self.last_result = result
        return result

    def _skip(self, trigger: str, message: str, started: float) -> SyncResult:
        logger.debug("Sync skipped (%s): %s", trigger, message)
        return SyncResult(
            status="skipped",
            message=message,
            duration_ms=self._elapsed_ms(started),
            trigger=trigger,
        )

    def _register_failure(self, message: str, threshold: int) -> None:
        with self._lock:
            self._consecutive_failures += 1
            failures = self._consecutive_failures
        self._set_status(SyncStatus.ERROR)
        if failures >= threshold:
            self._raise_warning(
                WARNING_SYNC_FAILURES,
                "sync",
                f"Cloud sync has failed {failures} times in a row. Local changes are kept. Last error: {message}",
                retryable=True,
            )

    def _register_success(self) -> None:
        with self._lock:
            self._consecutive_failures = 0
            self._last_success_at = self._clock()
            self._warnings.pop(WARNING_SYNC_FAILURES, None)
        self._set_status(SyncStatus.SUCCESS)
        self.state_store.set_meta("last_sync_success_at", serialize_datetime(datetime.now(timezone.utc)) or "")

    # -- pushing --------------------------------------------------------------

    def _push_payload(self, payload: dict[str, Any], config: AppConfig) -> tuple[str, str]:
        """Push ``payload``; returns ``(status, message)`` and updates pending state."""
        try:
            self.remote.push(payload)
        except RemoteAuthError as exc:
            self._set_status(SyncStatus.IDLE)
            return "unauthorized", str(exc)
        except PayloadTooLargeError as exc:
            with self._lock:
                self._parked = payload
                if self._pending is payload:
                    self._pending = None
            self._set_status(SyncStatus.ERROR)
            self._raise_warning(
                WARNING_REMOTE_CAPACITY,
                "capacity",
                "The cloud store rejected your data as too large. Remove old media, then retry.",
                retryable=True,
            )
            self.state_store.record_audit_event(
                scope="remote",
                subject="app-data",
                action="capacity_rejected",
                details={"bytes": len(json.dumps(payload, ensure_ascii=False).encode("utf-8"))},
            )
            return "capacity", str(exc)
        except RemoteStoreError as exc:
            message = f"{type(exc).__name__}: {exc}"
            self._register_failure(message, config.sync.failure_warning_threshold)
            return "error", message
        with self._lock:
            if self._pending is payload:
                self._pending = None
        self._register_success()
        return "success", "Pushed to cloud."

    def _debounced_push(self) -> None:
        with self._lock:
            self._debounce_timer = None
        if not self.remote.is_configured():
            return
        # Merge with the cloud copy before pushing.
        result = self.sync_from_cloud(trigger="debounce", force=True)
        if result.status == "skipped" and self.pending_payload() is not None and self.online:
            # A sync was running; try again once it has finished.
            self._schedule_push(self._load_config().sync.debounce_seconds)

    def _schedule_push(self, delay_seconds: float) -> None:
        with self._lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
            timer = self._timer_factory(delay_seconds, self._debounced_push)
            timer.daemon = True
            self._debounce_timer = timer
            timer.start()

    def push_to_cloud(self) -> SyncResult:
        """Merge with the cloud and push immediately, bypassing the debounce."""
        with self._lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
            self._pending = self.snapshots.load().to_dict()
        return self.sync_from_cloud(trigger="manual_push", force=True)

    def retry_push(self) -> SyncResult:
        """Resume pushing after a capacity rejection."""
        with self._lock:
            self._parked = None
            self._pending = self.snapshots.load().to_dict()
            self._warnings.pop(WARNING_REMOTE_CAPACITY, None)
            self._warnings.pop(WARNING_SYNC_FAILURES, None)
        return self.sync_from_cloud(trigger="retry", force=True)

    def flush_pending(self) -> bool:
        """Send any pending write through the beacon; safe to call on shutdown."""
        with self._lock:
            if self._debounce_timer is not None:
                self._debounce_timer.cancel()
                self._debounce_timer = None
            payload = self._pending
        if payload is None or not self.remote.is_configured():
            return False
        sent = self.remote.send_beacon(payload)
        self.state_store.record_audit_event(
            scope="remote",
            subject="app-data",
            action="beacon_flush",
            details={"sent": sent, "bytes": len(json.dumps(payload, ensure_ascii=False).encode("utf-8"))},
        )
        if sent:
            with self._lock:
                if self._pending is payload:
                    self._pending = None
        return sent

    # -- pulling --------------------------------------------------------------

    def sync_from_cloud(self, trigger: str = "manual", force: bool = False) -> SyncResult:
        started = self._clock()
        config = self._load_config()
        with self._lock:
            if not self._online:
                return self._skip(trigger, "Offline.", started)
            if not self.remote.is_configured():
                return self._skip(trigger, "Remote store is not configured.", started)
            if self._in_flight:
                return self._skip(trigger, "Sync already in progress.", started)
            if (
                not force
                and self._last_success_at is not None
                and self._clock() - self._last_success_at < config.sync.cooldown_seconds
            ):
                return self._skip(trigger, "Synced recently.", started)
            if not force and self.snapshots.recently_saved(config.sync.local_grace_seconds):
                return self._skip(trigger, "Local changes were saved moments ago.", started)
            self._in_flight = True
            generation = self._write_generation
        self._set_status(SyncStatus.SYNCING)
        try:
            return self._pull_and_merge(trigger, config, started, generation)
        except Exception as exc:
            error_message = f"{type(exc).__name__}: {exc}"
            self._set_status(SyncStatus.ERROR)
            self.state_store.record_audit_event(
                scope="system",
                subject="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
            )
            return self._finish(trigger=trigger, status="error", message=error_message, started=started)
        finally:
            with self._lock:
                self._in_flight = False

    def _pull_and_merge(self, trigger: str, config: AppConfig, started: float, generation: int) -> SyncResult:
        try:
            remote_payload = self.remote.fetch()
        except RemoteAuthError as exc:
            self._set_status(SyncStatus.IDLE)
            return self._finish(trigger=trigger, status="unauthorized", message=str(exc), started=started)
        except RemoteStoreError as exc:
            message = f"{type(exc).__name__}: {exc}"
            self._register_failure(message, config.sync.failure_warning_threshold)
            return self._finish(trigger=trigger, status="error", message=message, started=started)

        if remote_payload is None:
            with self._lock:
                local = self.snapshots.load()
                if self._parked is not None:
                    return self._hold_parked(trigger, started, local)
                self._pending = local.to_dict()
                payload = self._pending
            status, message = self._push_payload(payload, config)
            if status == "success":
                message = "Remote store was empty; seeded it with local data."
            return self._finish(
                trigger=trigger,
                status=status,
                message=message,
                started=started,
                merged=local,
                pushed=status == "success",
            )

        remote = AppDataAggregate.from_dict(remote_payload)
        with self._lock:
            if self._write_generation != generation:
                self._set_status(SyncStatus.IDLE)
                return self._skip(trigger, "Local changes were saved during the sync.", started)
            local = self.snapshots.load()
            outcome = merge_aggregates(local, remote)
            try:
                stored = self.snapshots.save(outcome.aggregate, mark_local_write=False)
            except StorageQuotaError as exc:
                self._set_status(SyncStatus.ERROR)
                self._raise_warning(WARNING_LOCAL_CAPACITY, "capacity", str(exc), retryable=False)
                return self._finish(trigger=trigger, status="capacity", message=str(exc), started=started)
            self._pending = stored.to_dict()
            payload = self._pending
        self._check_storage_usage()
        self.state_store.record_audit_event(
            scope="sync",
            subject="app-data",
            action="merged",
            details={
                "trigger": trigger,
                "base": outcome.base,
                "notes_from_remote": outcome.notes_from_remote,
                "notes_from_local": outcome.notes_from_local,
            },
        )

        with self._lock:
            if self._parked is not None:
                return self._hold_parked(
                    trigger,
                    started,
                    stored,
                    notes_merged=outcome.notes_from_remote + outcome.notes_from_local,
                )

        status, message = self._push_payload(payload, config)
        if status == "success":
            message = (
                f"Merged with cloud ({outcome.base} base, "
                f"{outcome.notes_from_remote} notes from cloud, {outcome.notes_from_local} from this device)."
            )
        return self._finish(
            trigger=trigger,
            status=status,
            message=message,
            started=started,
            merged=stored,
            notes_merged=outcome.notes_from_remote + outcome.notes_from_local,
            pushed=status == "success",
        )

    def _hold_parked(
        self,
        trigger: str,
        started: float,
        merged: AppDataAggregate,
        notes_merged: int = 0,
    ) -> SyncResult:
        """Keep the merged snapshot as the parked payload; pushes wait for ``retry_push``."""
        self._parked = merged.to_dict()
        self._pending = None
        self._set_status(SyncStatus.IDLE)
        return self._finish(
            trigger=trigger,
            status="capacity",
            message="Merged locally; cloud push paused until retry.",
            started=started,
            merged=merged,
            notes_merged=notes_merged,
        )

    def set_online(self, online: bool) -> SyncResult | None:
        with self._lock:
            was_online = self._online
            self._online = bool(online)
        if not online:
            with self._lock:
                if self._debounce_timer is not None:
                    self._debounce_timer.cancel()
                    self._debounce_timer = None
            self._set_status(SyncStatus.OFFLINE)
            return None
        if was_online:
            return None
        self._set_status(SyncStatus.IDLE)
        return self.sync_from_cloud(trigger="online", force=True)

    def notify_visible(self) -> SyncResult:
        return self.sync_from_cloud(trigger="visible")

    # -- local writes ---------------------------------------------------------

    def load_data(self) -> AppDataAggregate:
        return self.snapshots.load()

    def save_data(
        self,
        aggregate: AppDataAggregate,
        trigger: str = "save",
        mark_local_write: bool = True,
    ) -> SyncResult:
        started = self._clock()
        config = self._load_config()
        with self._lock:
            try:
                stored = self.snapshots.save(aggregate, mark_local_write=mark_local_write)
            except StorageQuotaError as exc:
                self._raise_warning(WARNING_LOCAL_CAPACITY, "capacity", str(exc), retryable=False)
                return self._finish(
                    trigger=trigger,
                    status="capacity",
                    message=str(exc),
                    started=started,
                    record=False,
                )
            self._write_generation += 1
            self._pending = stored.to_dict()
            if self._online and self.remote.is_configured():
                self._schedule_push(config.sync.debounce_seconds)
        self._check_storage_usage()
        return SyncResult(
            status="success",
            message="Saved locally.",
            duration_ms=self._elapsed_ms(started),
            trigger=trigger,
            merged=stored,
        )

    def _mutate(
        self,
        trigger: str,
        mutation: Callable[[AppDataAggregate], None],
        mark_local_write: bool = True,
    ) -> SyncResult:
        with self._lock:
            aggregate = self.snapshots.load()
            mutation(aggregate)
            return self.save_data(aggregate, trigger=trigger, mark_local_write=mark_local_write)

    def save_week_notes(self, week_notes: WeekNotes) -> SyncResult:
        def apply(aggregate: AppDataAggregate) -> None:
            for index, existing in enumerate(aggregate.week_notes):
                if existing.week_of == week_notes.week_of:
                    aggregate.week_notes[index] = copy.deepcopy(week_notes)
                    return
            aggregate.week_notes.append(copy.deepcopy(week_notes))

        return self._mutate("week_notes", apply)

    def update_self_care(self, updates: dict[str, Any]) -> SyncResult:
        now = datetime.now(timezone.utc)

        def apply(aggregate: AppDataAggregate) -> None:
            for key, value in updates.items():
                if key in ("selfCareModified", "selfCareFieldModified"):
                    continue
                aggregate.self_care.values[key] = copy.deepcopy(value)
                aggregate.self_care.field_modified[key] = now
            aggregate.self_care.modified = now

        return self._mutate("self_care", apply)

    def update_calendar_events(
        self,
        occurrences: list[CalendarOccurrence],
        trigger: str = "calendar",
        mark_local_write: bool = True,
    ) -> SyncResult:
        def apply(aggregate: AppDataAggregate) -> None:
            aggregate.calendar_events = integrate_occurrences(aggregate.calendar_events, occurrences)

        return self._mutate(trigger, apply, mark_local_write=mark_local_write)

    def set_occurrence_links(self, occurrence_id: str, annotation_ids: list[str]) -> SyncResult | None:
        """Replace the annotation links of one occurrence; ``None`` if the id is unknown."""
        with self._lock:
            aggregate = self.snapshots.load()
            target = next((item for item in aggregate.calendar_events if item.id == occurrence_id), None)
            if target is None:
                return None
            target.linked_annotation_ids = [str(item) for item in annotation_ids]
            return self.save_data(aggregate, trigger="links")

    def update_settings(self, partial: dict[str, Any]) -> SyncResult:
        def apply(aggregate: AppDataAggregate) -> None:
            aggregate.settings.update(copy.deepcopy(partial))

        return self._mutate("settings", apply)

    def export_data(self) -> str:
        return json.dumps(self.snapshots.load().to_dict(), ensure_ascii=False, indent=2)

    def import_data(self, json_text: str) -> SyncResult:
        started = self._clock()
        try:
            data = json.loads(json_text)
        except ValueError as exc:
            return self._finish(
                trigger="import",
                status="error",
                message=f"Invalid backup file: {exc}",
                started=started,
                record=False,
            )
        if not isinstance(data, dict) or not isinstance(data.get("weekNotes"), list):
            return self._finish(
                trigger="import",
                status="error",
                message="Invalid backup file: weekNotes must be a list.",
                started=started,
                record=False,
            )
        return self.save_data(AppDataAggregate.from_dict(data), trigger="import")

    # -- calendar feeds -------------------------------------------------------

    def refresh_calendars(self, trigger: str = "feeds") -> SyncResult:
        started = self._clock()
        config = self._load_config()
        if not config.feeds:
            return self._skip(trigger, "No calendar feeds configured.", started)
        tz = config.sync.tzinfo
        window = occurrence_window(
            datetime.now(tz).date(),
            config.sync.window_days_before,
            config.sync.window_days_after,
        )
        occurrences: list[CalendarOccurrence] = []
        seen: set[str] = set()
        failures: list[str] = []
        for feed in config.feeds:
            try:
                text = self.feed_fetcher.fetch(feed.url)
            except FeedError as exc:
                failures.append(f"{feed.name}: {exc}")
                self.state_store.record_audit_event(
                    scope="feed",
                    subject=feed.name,
                    action="feed_error",
                    details={"url": feed.url, "status_code": exc.status_code, "error": str(exc)},
                )
                continue
            for occurrence in build_occurrences(text, window, tz):
                if occurrence.id not in seen:
                    seen.add(occurrence.id)
                    occurrences.append(occurrence)

        if failures:
            message = f"Kept existing calendar; {len(failures)} feed(s) failed: " + "; ".join(failures)
            return self._finish(trigger=trigger, status="error", message=message, started=started)

        # Feed data is not a user edit and must not hold off the next pull.
        saved = self.update_calendar_events(occurrences, trigger=trigger, mark_local_write=False)
        if saved.status != "success":
            return self._finish(trigger=trigger, status=saved.status, message=saved.message, started=started)
        return self._finish(
            trigger=trigger,
            status="success",
            message=f"Loaded {len(occurrences)} occurrences from {len(config.feeds)} feed(s).",
            started=started,
            merged=saved.merged,
        )
