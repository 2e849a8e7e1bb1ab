import logging
import threading
from datetime import datetime
from threading import Thread
from typing import Any, Callable, Optional

from dateutil.tz import tzutc

from hogclient.types import DefinitionSnapshot

UNINITIALIZED = "uninitialized"
POLLING = "polling"
IDLE = "idle"


class FlagDefinitionStore(object):
    """Holds the current flag ruleset. Readers never wait on a poll."""

    def __init__(self):
        self._lock = threading.Lock()
        self._snapshot = DefinitionSnapshot()

    def get_feature_flags(self) -> DefinitionSnapshot:
        # Snapshots are immutable and replaced by reference, so a plain read is
        # always a complete ruleset.
        return self._snapshot

    def replace(
        self, flags, group_type_mapping, cohorts, last_updated: Optional[datetime] = None
    ) -> DefinitionSnapshot:
        snapshot = DefinitionSnapshot.build(
            flags,
            group_type_mapping,
            cohorts,
            last_updated or datetime.now(tz=tzutc()),
        )
        with self._lock:
            self._snapshot = snapshot
        return snapshot


class FlagDefinitionPoller(Thread):
    """
    Periodically fetches flag definitions into a `FlagDefinitionStore`.

    The thread sleeps until a poll is requested, either by its own timer or by
    `refresh()`. Requests that arrive while a poll is pending or in flight
    collapse into a single follow-up poll. Failed fetches never touch the
    stored snapshot.
    """

    log = logging.getLogger("hogclient")

    def __init__(
        self,
        fetch: Callable[[float], Any],
        store: Optional[FlagDefinitionStore] = None,
        enabled: bool = True,
        poll_interval_ms: int = 30_000,
        request_timeout_ms: int = 3_000,
    ):
        Thread.__init__(self, name="hogclient-flag-poller")
        # Make the poller a daemon thread so that it doesn't block program exit
        self.daemon = True
        self.fetch = fetch
        self.store = store or FlagDefinitionStore()
        self.enabled = enabled
        self.poll_interval = poll_interval_ms / 1000
        self.request_timeout = request_timeout_ms / 1000
        self.state = UNINITIALIZED
        self.running = True
        self._condition = threading.Condition()
        self._poll_requested = False
        self._timer: Optional[threading.Timer] = None
        self._timer_token: Optional[object] = None
        self._completed_polls = 0

    @property
    def local_evaluation_enabled(self) -> bool:
        return self.enabled

    def get_feature_flags(self) -> DefinitionSnapshot:
        return self.store.get_feature_flags()

    def can_evaluate_locally(self, flag_key: str) -> bool:
        return self.enabled and flag_key in self.store.get_feature_flags()

    def start(self):
        if not self.enabled:
            self.log.info(
                "[FEATURE FLAGS] Local evaluation disabled - personal_api_key not configured"
            )
            self.state = IDLE
            return

        with self._condition:
            self._poll_requested = True
        Thread.start(self)

    def refresh(self):
        """Ask for a poll as soon as possible."""
        if not self.enabled:
            return

        with self._condition:
            self._poll_requested = True
            self._condition.notify_all()

    def stop(self):
        with self._condition:
            self.running = False
            self._cancel_timer()
            self._condition.notify_all()

        if self.is_alive():
            self.join()

    def wait_for_polls(self, count: int = 1, timeout: Optional[float] = None) -> bool:
        """Block until at least `count` polls have completed, successful or not."""
        with self._condition:
            return self._condition.wait_for(
                lambda: self._completed_polls >= count, timeout
            )

    def run(self):
        self.log.debug("flag poller is running...")
        while True:
            with self._condition:
                while self.running and not self._poll_requested:
                    self._condition.wait()
                if not self.running:
                    break
                self._poll_requested = False
                self._cancel_timer()
                self.state = POLLING

            try:
                self.poll()
            except Exception as e:
                self.log.exception(f"[FEATURE FLAGS] Unexpected error while polling: {e}")
            finally:
                with self._condition:
                    self.state = IDLE
                    self._completed_polls += 1
                    self._schedule_next_poll()
                    self._condition.notify_all()

        self.log.debug("flag poller exited.")

    def poll(self) -> bool:
        """Fetch definitions once. Returns whether the stored snapshot was replaced."""
        try:
            response = self.fetch(self.request_timeout)
        except Exception as e:
            self.log.warning(
                "[FEATURE FLAGS] Fetching feature flags failed with following error. We will retry in %s seconds.",
                self.poll_interval,
            )
            self.log.warning(e)
            return False

        status, body = response.status, response.body

        if status == 200 and isinstance(body, dict):
            self.store.replace(
                body.get("flags") or [],
                body.get("group_type_mapping") or {},
                body.get("cohorts") or {},
            )
            self.log.debug("[FEATURE FLAGS] Successfully fetched feature flags")
            return True

        if status == 401:
            self.log.error(
                "[FEATURE FLAGS] Error loading feature flags: To use feature flags, please set a valid personal_api_key."
            )
        elif status == 402:
            self.log.warning(
                "[FEATURE FLAGS] Feature flags quota limited, keeping the last known feature flag definitions."
            )
        else:
            self.log.warning(
                "[FEATURE FLAGS] Unexpected response while loading feature flags: %s %s",
                status,
                body,
            )
        return False

    def _schedule_next_poll(self):
        # Caller holds self._condition
        self._cancel_timer()
        if not self.running:
            return

        token = object()
        self._timer_token = token
        self._timer = threading.Timer(self.poll_interval, self._on_timer, args=(token,))
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self):
        # Caller holds self._condition
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_token = None

    def _on_timer(self, token):
        with self._condition:
            if token is None or token is not self._timer_token:
                self.log.debug("[FEATURE FLAGS] Ignoring superseded poll timer")
                return
            self._timer = None
            self._timer_token = None
            self._poll_requested = True
            self._condition.notify_all()
