"""
Alert Dispatcher
================

Bounded Context: Alert Hand-off to Presentation

Receives AlarmEvents from the message path and hands them to an AlertSink
(notification, toast, sound... all outside this package).

Design:
- dispatch() is queue-and-return: the paho network thread never waits on
  presentation work longer than enqueue_timeout
- A single worker thread drains the queue in order
- Sink failures are logged; the worker keeps running

Threading:
    dispatch(): caller thread (paho network thread)
    _dispatch_loop(): AlertDispatcherThread (ours)

Example:
    >>> dispatcher = AlertDispatcher(sink=LoggingAlertSink(logger), logger=logger)
    >>> dispatcher.start()
    >>> dispatcher.dispatch(alarm_event)
    True
    >>> dispatcher.stop()
"""

import queue
import threading
import time
from typing import Any, Dict, Optional, Protocol

from firealarm_mqtt.logging import StructuredLogger, LogEvent
from firealarm_mqtt.schemas import AlarmEvent

DEFAULT_QUEUE_SIZE = 256
DEFAULT_ENQUEUE_TIMEOUT = 0.1


class AlertSink(Protocol):
    """
    Presentation collaborator.

    Any object with a notify(event) method can receive alarms.
    """

    def notify(self, event: AlarmEvent) -> None:
        ...


class LoggingAlertSink:
    """Sink that records each alarm as a structured log entry."""

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def notify(self, event: AlarmEvent) -> None:
        self.logger.warning(
            event=LogEvent.ALARM_RAISED,
            message=f"Fire alarm from device {event.device_id}: {event.raw_payload}",
            metadata=event.to_dict()
        )


class AlertDispatcher:
    """
    Bounded queue plus worker thread in front of an AlertSink.

    Attributes:
        sink: Presentation collaborator
        logger: Structured logger instance
        enqueue_timeout: Longest dispatch() may block on a full queue
    """

    def __init__(
        self,
        sink: AlertSink,
        logger: StructuredLogger,
        queue_size: int = DEFAULT_QUEUE_SIZE,
        enqueue_timeout: float = DEFAULT_ENQUEUE_TIMEOUT
    ):
        if queue_size <= 0:
            raise ValueError(f"queue_size must be > 0, got {queue_size}")
        if enqueue_timeout < 0:
            raise ValueError(f"enqueue_timeout must be >= 0, got {enqueue_timeout}")

        self.sink = sink
        self.logger = logger
        self.enqueue_timeout = enqueue_timeout

        self._queue: "queue.Queue[AlarmEvent]" = queue.Queue(maxsize=queue_size)
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None

        self._stats_lock = threading.Lock()
        self._stats = {'queued': 0, 'delivered': 0, 'dropped': 0, 'sink_errors': 0}

    def start(self) -> None:
        """Start the delivery worker (idempotent)."""
        if self._worker is not None and self._worker.is_alive():
            return

        self._stop_event.clear()
        self._worker = threading.Thread(
            target=self._dispatch_loop,
            name="AlertDispatcherThread",
            daemon=True
        )
        self._worker.start()

    def stop(self, drain: bool = True, timeout: float = 5.0) -> None:
        """
        Stop the worker.

        Args:
            drain: Deliver events already queued before stopping
            timeout: Join timeout in seconds
        """
        if drain and self._worker is not None and self._worker.is_alive():
            self._join_queue(timeout)

        self._stop_event.set()
        if self._worker is not None:
            self._worker.join(timeout=timeout)
            self._worker = None

    def dispatch(self, event: AlarmEvent) -> bool:
        """
        Queue an alarm for delivery and return.

        Returns:
            True if queued, False if dropped because the queue stayed full
        """
        try:
            self._queue.put(event, timeout=self.enqueue_timeout)
        except queue.Full:
            with self._stats_lock:
                self._stats['dropped'] += 1
            self.logger.error(
                event=LogEvent.DISPATCH_ERROR,
                message="Alert queue full, alarm dropped",
                metadata={**event.to_dict(), 'queue_size': self._queue.maxsize}
            )
            return False

        with self._stats_lock:
            self._stats['queued'] += 1
        return True

    def notify(self, event: AlarmEvent) -> None:
        """AlertSink form of dispatch(), so the dispatcher can sit downstream of AlarmBoard."""
        self.dispatch(event)

    def pending(self) -> int:
        return self._queue.qsize()

    def get_stats(self) -> Dict[str, Any]:
        with self._stats_lock:
            stats = dict(self._stats)
        stats['pending'] = self._queue.qsize()
        stats['running'] = self._worker is not None and self._worker.is_alive()
        return stats

    def _join_queue(self, timeout: float) -> None:
        """Wait until every queued event is handled, at most `timeout` seconds."""
        deadline = time.monotonic() + timeout
        with self._queue.all_tasks_done:
            while self._queue.unfinished_tasks:
                remaining = deadline - time.monotonic()
                if remaining <= 0:
                    break
                self._queue.all_tasks_done.wait(remaining)
            pending = self._queue.unfinished_tasks

        if pending:
            self.logger.warning(
                event=LogEvent.DISPATCH_ERROR,
                message="Alert queue not drained before timeout",
                metadata={'pending': pending}
            )

    def _dispatch_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                event = self._queue.get(timeout=0.1)
            except queue.Empty:
                continue

            try:
                self.sink.notify(event)
            except Exception as e:
                with self._stats_lock:
                    self._stats['sink_errors'] += 1
                self.logger.error(
                    event=LogEvent.DISPATCH_ERROR,
                    message="Alert sink raised",
                    exc_info=e,
                    metadata={'device_id': event.device_id, 'topic': event.topic}
                )
            else:
                with self._stats_lock:
                    self._stats['delivered'] += 1
                self.logger.info(
                    event=LogEvent.ALARM_DISPATCHED,
                    message="Alarm delivered",
                    metadata={'device_id': event.device_id, 'topic': event.topic}
                )
            finally:
                self._queue.task_done()
