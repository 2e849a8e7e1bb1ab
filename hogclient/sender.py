import logging
import queue
import random
import threading
from concurrent.futures import Future, wait
from threading import Thread
from typing import Any, Callable, Dict, List, Optional, Tuple

import backoff

from hogclient.request import APIError, api_error
from hogclient.types import FlushFailure, FlushResult

AVAILABLE = "available"
BUSY = "busy"

# Inbox message kinds
EVENT = "event"
BATCH_TIMEOUT = "batch_timeout"
FLUSH = "flush"
FLUSH_SYNC = "flush_sync"
STOP = "stop"


class AvailabilityRegistry(object):
    """Published availability of every sender worker, keyed by worker index."""

    def __init__(self):
        self._lock = threading.Lock()
        self._entries: Dict[int, Tuple[Any, str]] = {}

    def register(self, index: int, worker, state: str = AVAILABLE):
        with self._lock:
            self._entries[index] = (worker, state)

    def update(self, index: int, state: str):
        with self._lock:
            if index in self._entries:
                self._entries[index] = (self._entries[index][0], state)

    def unregister(self, index: int):
        with self._lock:
            self._entries.pop(index, None)

    def lookup(self, index: int) -> Optional[str]:
        with self._lock:
            entry = self._entries.get(index)
        return entry[1] if entry else None

    def select(self) -> List[Tuple[int, Any, str]]:
        with self._lock:
            return [
                (index, worker, state)
                for index, (worker, state) in sorted(self._entries.items())
            ]

    def __len__(self):
        with self._lock:
            return len(self._entries)


class SenderWorker(Thread):
    """Buffers events and sends them in batches. All buffer access happens on this thread."""

    log = logging.getLogger("hogclient")

    def __init__(
        self,
        index: int,
        send_batch: Callable[[List[dict]], Any],
        registry: AvailabilityRegistry,
        max_batch_events: int = 100,
        max_batch_time_ms: int = 10_000,
        retries: int = 3,
        on_error=None,
    ):
        Thread.__init__(self, name=f"hogclient-sender-{index}")
        # Make the worker a daemon thread so that it doesn't block program exit
        self.daemon = True
        self.index = index
        self.send_batch = send_batch
        self.registry = registry
        self.max_batch_events = max_batch_events
        self.batch_time = max_batch_time_ms / 1000
        self.retries = retries
        self.on_error = on_error
        self.inbox: "queue.Queue[Tuple[str, Any]]" = queue.Queue()
        self.events: List[dict] = []
        self.num_events = 0
        self.running = True
        self._timer: Optional[threading.Timer] = None
        self._timer_token: Optional[object] = None

    def push(self, event: dict):
        self.inbox.put((EVENT, event))

    def flush_async(self):
        self.inbox.put((FLUSH, None))

    def flush_sync(self) -> Future:
        """Queue a flush and return a future resolved once the batch was sent."""
        future: Future = Future()
        self.inbox.put((FLUSH_SYNC, future))
        return future

    def stop(self):
        self.inbox.put((STOP, None))

    def run(self):
        self.log.debug("sender %s is running...", self.index)
        while self.running:
            try:
                self._process_inbox()
            except Exception as e:
                self.log.exception("sender %s crashed, restarting: %s", self.index, e)
                self._restart()

        self.registry.unregister(self.index)
        self.log.debug("sender %s exited.", self.index)

    def _process_inbox(self):
        while self.running:
            kind, payload = self.inbox.get()
            self.handle(kind, payload)

    def handle(self, kind: str, payload: Any):
        if kind == EVENT:
            self._add(payload)
        elif kind == BATCH_TIMEOUT:
            if payload is None or payload is not self._timer_token:
                self.log.debug("sender %s ignoring superseded batch timer", self.index)
                return
            self._timer = None
            self._timer_token = None
            self.flush()
        elif kind == FLUSH:
            self.flush()
        elif kind == FLUSH_SYNC:
            self._flush_sync(payload)
        elif kind == STOP:
            try:
                self.flush()
            finally:
                self.running = False
        else:
            self.log.warning("sender %s received unknown message %s", self.index, kind)

    def _add(self, event: dict):
        self.events.append(event)
        self.num_events += 1
        if self.num_events >= self.max_batch_events:
            self.log.debug("sender %s hit batch size limit", self.index)
            self.flush()
        elif self.num_events == 1:
            self._start_timer()

    def flush(self, raise_errors: bool = False):
        """Send the buffered events as one batch, if there are any."""
        self._cancel_timer()
        if not self.events:
            return

        batch = self.events
        self.registry.update(self.index, BUSY)
        try:
            self.request(batch)
        except Exception as e:
            self.log.error("error uploading: %s", e)
            if self.on_error:
                self.on_error(e, batch)
            if raise_errors:
                raise
        finally:
            self.events = []
            self.num_events = 0
            self.registry.update(self.index, AVAILABLE)

    def _flush_sync(self, future: Future):
        if not future.set_running_or_notify_cancel():
            return
        try:
            self.flush(raise_errors=True)
        except Exception as e:
            future.set_exception(e)
        else:
            future.set_result(True)

    def request(self, batch: List[dict]):
        """Attempt to upload the batch and retry before raising an error"""

        def fatal_exception(exc):
            if isinstance(exc, APIError):
                # retry on server errors and client errors
                # with 429 status code (rate limited),
                # don't retry on other client errors
                if not isinstance(exc.status, int):
                    return False
                return (400 <= exc.status < 500) and exc.status != 429
            else:
                # retry on all other errors (eg. network)
                return False

        @backoff.on_exception(
            backoff.expo,
            Exception,
            max_tries=self.retries + 1,
            giveup=fatal_exception,
        )
        def send_request():
            response = self.send_batch(batch)
            if response.status != 200:
                raise api_error(response.status, response.body)
            self.log.debug("sender %s uploaded %d events", self.index, len(batch))

        send_request()

    def _start_timer(self):
        token = object()
        self._timer_token = token
        self._timer = threading.Timer(
            self.batch_time, self.inbox.put, args=((BATCH_TIMEOUT, token),)
        )
        self._timer.daemon = True
        self._timer.start()

    def _cancel_timer(self):
        if self._timer is not None:
            self._timer.cancel()
        self._timer = None
        self._timer_token = None

    def _restart(self):
        # Events buffered at the time of a crash are lost
        self._cancel_timer()
        if self.events:
            self.log.warning(
                "sender %s dropping %d buffered events after a crash",
                self.index,
                len(self.events),
            )
        self.events = []
        self.num_events = 0
        self.registry.register(self.index, self, AVAILABLE)


class SenderPool(object):
    """Routes events to a fixed set of `SenderWorker` threads."""

    log = logging.getLogger("hogclient")

    def __init__(
        self,
        send_batch: Callable[[List[dict]], Any],
        size: int = 2,
        max_batch_events: int = 100,
        max_batch_time_ms: int = 10_000,
        retries: int = 3,
        on_error=None,
    ):
        self.registry = AvailabilityRegistry()
        self.workers = [
            SenderWorker(
                index,
                send_batch,
                self.registry,
                max_batch_events=max_batch_events,
                max_batch_time_ms=max_batch_time_ms,
                retries=retries,
                on_error=on_error,
            )
            for index in range(1, size + 1)
        ]

    def start(self):
        for worker in self.workers:
            self.registry.register(worker.index, worker, AVAILABLE)
            worker.start()

    def send(self, event: dict) -> bool:
        """
        Hand an event to a worker. Available workers are preferred; when every
        worker is busy the event queues behind a random one.
        """
        entries = self.registry.select()
        if not entries:
            self.log.error("no sender workers running, dropping event %s", event)
            return False

        available = [entry for entry in entries if entry[2] == AVAILABLE]
        index, worker, _ = available[0] if available else random.choice(entries)
        self.log.debug("dispatching event to sender %s", index)
        worker.push(event)
        return True

    def flush(self, blocking: bool = False, timeout: float = 5.0) -> Optional[FlushResult]:
        """
        Flush every worker.

        Non-blocking flushes are fire and forget and return None. Blocking
        flushes wait up to `timeout` seconds for every worker and report the
        workers that failed, timed out or were no longer running.
        """
        if not blocking:
            for worker in self.workers:
                if worker.is_alive():
                    worker.flush_async()
            return None

        failures = []
        futures: Dict[Future, SenderWorker] = {}
        for worker in self.workers:
            if not worker.is_alive():
                failures.append(FlushFailure(worker.index, "exited"))
                continue
            futures[worker.flush_sync()] = worker

        _, not_done = wait(futures, timeout=timeout)
        for future, worker in futures.items():
            if future in not_done:
                failures.append(FlushFailure(worker.index, "timeout"))
            elif future.exception() is not None:
                failures.append(
                    FlushFailure(worker.index, "api_error", future.exception())
                )

        failures.sort(key=lambda failure: failure.index)
        if failures:
            self.log.warning("some flushes failed: %s", failures)
        return FlushResult(tuple(failures))

    def shutdown(self, timeout: Optional[float] = None):
        """Drain every worker and wait for them to exit."""
        for worker in self.workers:
            if worker.is_alive():
                worker.stop()
        for worker in self.workers:
            if worker.is_alive():
                worker.join(timeout)
