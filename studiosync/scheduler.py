from __future__ import annotations

import logging
import threading
import time
from typing import Callable, Optional

from studiosync.config_manager import ConfigManager
from studiosync.sync_engine import SyncCoordinator

logger = logging.getLogger(__name__)

TRIGGER_MANUAL = "manual"
TRIGGER_VISIBLE = "visible"
TRIGGER_FEEDS = "feeds"


class SyncScheduler:
    def __init__(
        self,
        coordinator: SyncCoordinator,
        config_manager: ConfigManager,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.coordinator = coordinator
        self.config_manager = config_manager
        self._clock = clock
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._wake_event = threading.Event()
        self._requests_lock = threading.Lock()
        self._requests: list[str] = []

    def start(self) -> None:
        if self._thread and self._thread.is_alive():
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="studiosync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._wake_event.set()
        if self._thread:
            self._thread.join(timeout=5)
        self.coordinator.flush_pending()

    def _request(self, kind: str) -> None:
        with self._requests_lock:
            if kind not in self._requests:
                self._requests.append(kind)
        self._wake_event.set()

    def trigger_manual(self) -> None:
        self._request(TRIGGER_MANUAL)

    def notify_visible(self) -> None:
        self._request(TRIGGER_VISIBLE)

    def trigger_feeds(self) -> None:
        self._request(TRIGGER_FEEDS)

    def _drain_requests(self) -> list[str]:
        with self._requests_lock:
            requests, self._requests = self._requests, []
        return requests

    def _run_request(self, kind: str) -> None:
        logger.debug("Running %s trigger", kind)
        if kind == TRIGGER_VISIBLE:
            self.coordinator.notify_visible()
        elif kind == TRIGGER_FEEDS:
            self.coordinator.refresh_calendars(trigger=TRIGGER_MANUAL)
        else:
            self.coordinator.sync_from_cloud(trigger=TRIGGER_MANUAL)

    def _run_due(self, now: float, next_data: float, next_feeds: float) -> tuple[float, float]:
        """Run whichever jobs are due; the cloud pull always goes before the feed refresh."""
        config = self.config_manager.load()
        if now >= next_data:
            self.coordinator.sync_from_cloud(trigger="scheduled")
            next_data = now + config.sync.data_interval_seconds
        if now >= next_feeds:
            self.coordinator.refresh_calendars(trigger="scheduled")
            next_feeds = now + config.sync.feed_interval_seconds
        return next_data, next_feeds

    def _loop(self) -> None:
        # Pull before loading feeds so the feed write cannot be pushed over newer cloud data.
        self.coordinator.sync_from_cloud(trigger="startup")
        self.coordinator.refresh_calendars(trigger="startup")

        config = self.config_manager.load()
        started = self._clock()
        next_data = started + config.sync.data_interval_seconds
        next_feeds = started + config.sync.feed_interval_seconds
        while not self._stop_event.is_set():
            timeout = max(0.0, min(next_data, next_feeds) - self._clock())
            woken = self._wake_event.wait(timeout=timeout)
            self._wake_event.clear()
            if self._stop_event.is_set():
                break
            if woken:
                for kind in self._drain_requests():
                    self._run_request(kind)
                continue
            next_data, next_feeds = self._run_due(self._clock(), next_data, next_feeds)
