"""Dispatcher: delivers events to a sink with retry, backoff and backpressure."""

import logging
import threading
import time
from collections import deque

from logrelay.errors import PermanentDeliveryError, TransientDeliveryError
from logrelay.models import DeliveryState, DeliveryStatus, Event

logger = logging.getLogger(__name__)


class Dispatcher:
    """Single delivery thread draining a bounded in-memory queue.

    Delivery is head-of-line: a transiently failing event is retried before
    anything queued behind it, which keeps per-file order end to end.

    - `accepting` turns False once `capacity` events are outstanding; the
      watcher stops forwarding until it turns True again.
    - Beyond `max_queue_size` queued events, or once an event has waited
      longer than `max_queue_age` seconds, the oldest queued events are
      dropped. One system event reporting every drop since the last report
      is delivered ahead of the rest of the queue.
    - `on_settled` is called for events that reached a final outcome
      (delivered, rejected, out of attempts, dropped). Events cut off by
      shutdown are not settled, so their offsets stay uncommitted.
    """

    def __init__(
        self,
        sink,
        capacity: int = 1000,
        max_queue_size: int = 5000,
        max_queue_age: float = 3600.0,
        max_attempts: int = 5,
        backoff_base: float = 1.0,
        backoff_max: float = 60.0,
        on_settled=None,
    ):
        self._sink = sink
        self._capacity = capacity
        self._max_queue_size = max(max_queue_size, capacity)
        self._max_queue_age = max_queue_age
        self._max_attempts = max(1, max_attempts)
        self._backoff_base = backoff_base
        self._backoff_max = backoff_max
        self._on_settled = on_settled

        self._queue: deque[DeliveryState] = deque()
        self._in_flight: DeliveryState | None = None
        self._unreported_drops = 0
        self._cond = threading.Condition()
        self._closing = False
        self._abort = threading.Event()
        self._thread: threading.Thread | None = None

        self._delivered = 0
        self._failed = 0
        self._dropped = 0
        self._retries = 0
        self._lost = 0

    # Public API

    @property
    def accepting(self) -> bool:
        with self._cond:
            return not self._closing and self._outstanding_locked() < self._capacity

    def stats(self) -> dict:
        with self._cond:
            return {
                "delivered": self._delivered,
                "failed": self._failed,
                "dropped": self._dropped,
                "retries": self._retries,
                "lost": self._lost,
                "outstanding": self._outstanding_locked(),
            }

    def backoff_delay(self, attempt: int) -> float:
        """Delay before retry number `attempt` (1-based): base * 2^(attempt-1), capped."""
        return min(self._backoff_base * (2 ** (attempt - 1)), self._backoff_max)

    def start(self):
        self._thread = threading.Thread(target=self._run, name="dispatcher", daemon=True)
        self._thread.start()

    def submit(self, event: Event) -> bool:
        """Queue an event for delivery. Returns False once the dispatcher is closing."""
        with self._cond:
            if self._closing:
                logger.warning("Dispatcher closing, event from %s not queued: %s",
                               event.source_file, event.message[:80])
                return False
            self._queue.append(DeliveryState(event=event, enqueued_at=time.monotonic()))
            dropped = self._enforce_limits_locked()
            self._cond.notify_all()
        self._settle_all(dropped)
        return True

    def wait_for_capacity(self, timeout: float | None = None) -> bool:
        """Block until the outstanding count drops below capacity (or closing)."""
        with self._cond:
            self._cond.wait_for(
                lambda: self._closing or self._outstanding_locked() < self._capacity,
                timeout,
            )
            return not self._closing and self._outstanding_locked() < self._capacity

    def close(self, timeout: float = 10.0):
        """Stop accepting events and keep delivering for at most `timeout` seconds.

        Whatever is still queued or in backoff after that is abandoned, not
        settled, so it is read again on the next start.
        """
        with self._cond:
            self._closing = True
            self._cond.notify_all()

        if self._thread is not None:
            self._thread.join(timeout)
            if self._thread.is_alive():
                self._abort.set()
                self._thread.join(5)

        with self._cond:
            lost = list(self._queue)
            self._queue.clear()
            self._lost += len(lost)
            self._cond.notify_all()
        for state in lost:
            state.status = DeliveryStatus.ABANDONED
        if lost:
            logger.warning("Shutdown timeout reached, %d undelivered event(s) left for the next start",
                           len(lost))
        s = self.stats()
        logger.info("Dispatcher stopped: delivered=%d, failed=%d, dropped=%d, retries=%d, lost=%d",
                    s["delivered"], s["failed"], s["dropped"], s["retries"], s["lost"])

    # Internal helpers

    def _outstanding_locked(self) -> int:
        return len(self._queue) + (1 if self._in_flight is not None else 0)

    def _enforce_limits_locked(self) -> list[DeliveryState]:
        dropped: list[DeliveryState] = []
        while len(self._queue) > self._max_queue_size:
            dropped.append(self._queue.popleft())

        now = time.monotonic()
        while self._queue and now - self._queue[0].enqueued_at > self._max_queue_age:
            dropped.append(self._queue.popleft())

        if dropped:
            for state in dropped:
                state.status = DeliveryStatus.FAILED
            self._dropped += len(dropped)
            self._unreported_drops += len(dropped)
            logger.warning("Delivery backlog over limits, dropped %d oldest event(s)", len(dropped))
        return dropped

    def _drop_notice_locked(self) -> DeliveryState:
        count, self._unreported_drops = self._unreported_drops, 0
        notice = Event.system(
            "", f"Dropped {count} queued event(s): delivery backlog exceeded its limits"
        )
        return DeliveryState(event=notice, enqueued_at=time.monotonic())

    def _next(self) -> DeliveryState | None:
        with self._cond:
            while not self._queue and not self._unreported_drops and not self._closing:
                self._cond.wait(0.5)
            expired = self._enforce_limits_locked()
            if self._unreported_drops:
                state = self._drop_notice_locked()
            else:
                state = self._queue.popleft() if self._queue else None
            self._in_flight = state
        self._settle_all(expired)
        return state

    def _run(self):
        while not self._abort.is_set():
            state = self._next()
            if state is None:
                with self._cond:
                    if self._closing and not self._queue:
                        return
                continue

            self._deliver(state)
            with self._cond:
                self._in_flight = None
                self._cond.notify_all()
            if state.status is not DeliveryStatus.ABANDONED:
                self._settle_all([state])

    def _deliver(self, state: DeliveryState):
        event = state.event
        while True:
            state.attempts += 1
            state.status = DeliveryStatus.DELIVERING
            try:
                self._sink.send(event)
            except PermanentDeliveryError as e:
                logger.error("Sink rejected %s event from %s, dropping: %s",
                             event.kind.value, event.source_file or "relay", e)
                self._record_failure(state)
                return
            except TransientDeliveryError as e:
                if not self._schedule_retry(state, e, e.retry_after):
                    return
                continue
            except Exception as e:
                logger.exception("Unexpected sink error")
                if not self._schedule_retry(state, e, None):
                    return
                continue

            state.status = DeliveryStatus.DELIVERED
            with self._cond:
                self._delivered += 1
            return

    def _schedule_retry(self, state: DeliveryState, error: Exception, retry_after: float | None) -> bool:
        """Wait out the backoff for the next attempt. False means stop trying."""
        if state.attempts >= self._max_attempts:
            logger.error("Giving up on %s event after %d attempt(s): %s",
                         state.event.kind.value, state.attempts, error)
            self._record_failure(state)
            return False

        delay = self.backoff_delay(state.attempts)
        if retry_after is not None:
            delay = max(delay, retry_after)
        state.delays.append(delay)
        state.next_retry_at = time.monotonic() + delay
        state.status = DeliveryStatus.RETRY_SCHEDULED
        with self._cond:
            self._retries += 1
        logger.warning("Delivery attempt %d failed: %s. Retrying in %.2fs",
                       state.attempts, error, delay)

        if self._abort.wait(delay):
            logger.warning("Shutdown during backoff, %s event left for the next start",
                           state.event.kind.value)
            state.status = DeliveryStatus.ABANDONED
            with self._cond:
                self._lost += 1
            return False
        return True

    def _record_failure(self, state: DeliveryState):
        state.status = DeliveryStatus.FAILED
        with self._cond:
            self._failed += 1

    def _settle_all(self, states: list[DeliveryState]):
        if self._on_settled is None:
            return
        for state in states:
            try:
                self._on_settled(state)
            except Exception:
                logger.exception("on_settled callback failed")
