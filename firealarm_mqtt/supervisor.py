"""
Reconnect Supervisor
====================

Bounded Context: Session Recovery

Single owner of reconnect attempts. Listens for ConnectionLostEvent from a
BrokerConnection and restores the session with the original parameters,
then re-applies the subscription plan.

Policy:
- At most one reconnect worker in flight; a loss during an attempt does not
  spawn a second one
- Keep trying forever (the client runs unattended)
- First retry immediate, then bounded exponential backoff (1 s → 30 s)
- Failures are logged, never raised into the paho thread

Threading:
    Loss events arrive in the paho network thread; the attempt loop runs in
    its own daemon thread so the network thread is never blocked.

Example:
    >>> supervisor = ReconnectSupervisor(
    ...     connection=connection,
    ...     params=params,
    ...     plan=DEFAULT_PLAN,
    ...     logger=create_logger("supervisor")
    ... )
    >>> supervisor.start()
    >>> # ... later
    >>> supervisor.stop()
"""

import threading
from dataclasses import dataclass
from typing import Any, Dict, Optional

from .connection import BrokerConnection
from .errors import ConnectError, ConnectFailure, SubscribeError
from .logging import StructuredLogger, LogEvent
from .schemas import ConnectionParameters, TopicSubscriptionPlan, ConnectionLostEvent


@dataclass(frozen=True)
class BackoffPolicy:
    """
    Bounded exponential backoff between reconnect attempts.

    Attempt 0 runs immediately; attempt n waits
    min(initial * multiplier ** (n - 1), maximum).

    Example:
        >>> [BackoffPolicy().delay(n) for n in range(7)]
        [0.0, 1.0, 2.0, 4.0, 8.0, 16.0, 30.0]
    """
    initial: float = 1.0
    maximum: float = 30.0
    multiplier: float = 2.0

    def __post_init__(self):
        if self.initial < 0:
            raise ValueError(f"initial backoff must be >= 0, got {self.initial}")
        if self.maximum < self.initial:
            raise ValueError(
                f"maximum backoff ({self.maximum}) must be >= initial ({self.initial})"
            )
        if self.multiplier < 1.0:
            raise ValueError(f"multiplier must be >= 1.0, got {self.multiplier}")

    def delay(self, attempt: int) -> float:
        if attempt <= 0:
            return 0.0
        return min(self.initial * self.multiplier ** (attempt - 1), self.maximum)


class ReconnectSupervisor:
    """
    Drives reconnection for one BrokerConnection.

    Attributes:
        connection: Connection being supervised (public operations only)
        params: Parameters of the original connect, reused verbatim
        plan: Subscription plan re-applied after each reconnect
        backoff: Delay policy between failed attempts
        logger: Structured logger instance
    """

    def __init__(
        self,
        connection: BrokerConnection,
        params: ConnectionParameters,
        plan: TopicSubscriptionPlan,
        logger: StructuredLogger,
        backoff: Optional[BackoffPolicy] = None
    ):
        self.connection = connection
        self.params = params
        self.plan = plan
        self.logger = logger
        self.backoff = backoff or BackoffPolicy()

        self._lock = threading.Lock()
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._active = False
        self._started = False

        self._stats = {
            'loss_events': 0,
            'reconnects': 0,
            'failed_attempts': 0,
            'coalesced_events': 0,
        }

    def start(self) -> None:
        """Begin listening for connection-loss events."""
        with self._lock:
            self._stop_event.clear()
            if self._started:
                return
            self._started = True
        self.connection.add_connection_lost_handler(self._on_connection_lost)

    def stop(self, timeout: float = 5.0, wait: bool = True) -> None:
        """
        Stop reconnecting. Interrupts any backoff wait and joins the worker.

        Does not disconnect the connection; the owner does that. An attempt
        blocked in connect() only ends once the owner disconnects, so owners
        call stop(wait=False), disconnect, then join().

        Args:
            timeout: Join timeout in seconds
            wait: Join the worker before returning
        """
        self._stop_event.set()
        if wait:
            self.join(timeout=timeout)

    def is_reconnecting(self) -> bool:
        return self._active

    def request_reconnect(self, cause: str) -> bool:
        """
        Hand a broken or never-established session to the supervisor.

        Args:
            cause: Why a reconnect is needed (logged)

        Returns:
            True if a worker was started, False if one was already running
            or the supervisor is stopped
        """
        with self._lock:
            if self._stop_event.is_set():
                return False
            if self._active:
                self._stats['coalesced_events'] += 1
                return False
            self._active = True
            self._worker = threading.Thread(
                target=self._reconnect_loop,
                args=(cause,),
                name="ReconnectSupervisorThread",
                daemon=True
            )
            worker = self._worker

        worker.start()
        return True

    def join(self, timeout: Optional[float] = None) -> bool:
        """
        Wait for the current worker to finish.

        Returns:
            True if no worker is running afterwards
        """
        with self._lock:
            worker = self._worker
        if worker is not None and worker is not threading.current_thread():
            worker.join(timeout=timeout)
            return not worker.is_alive()
        return True

    def get_stats(self) -> Dict[str, Any]:
        with self._lock:
            stats = dict(self._stats)
            stats['reconnecting'] = self._active
            return stats

    def _on_connection_lost(self, event: ConnectionLostEvent) -> None:
        with self._lock:
            self._stats['loss_events'] += 1
        if not self.request_reconnect(event.cause):
            self.logger.debug(
                event=LogEvent.MQTT_RECONNECTING,
                message="Reconnect already in progress, loss event coalesced",
                metadata={'session': event.session}
            )

    def _reconnect_loop(self, cause: str) -> None:
        attempt = 0

        while not self._stop_event.is_set():
            delay = self.backoff.delay(attempt)
            if delay and self._stop_event.wait(timeout=delay):
                break
            attempt += 1

            self.logger.info(
                event=LogEvent.MQTT_RECONNECTING,
                message="Attempting to restore broker session",
                metadata={
                    'attempt': attempt,
                    'cause': cause,
                    'broker': self.params.broker
                }
            )

            try:
                if not self.connection.is_connected():
                    self.connection.connect(self.params)
                self.connection.subscribe(self.plan)

            except ConnectError as e:
                if e.reason is ConnectFailure.CANCELLED:
                    break
                self._record_failure(attempt, e)
                continue
            except SubscribeError as e:
                self._record_failure(attempt, e)
                continue

            with self._lock:
                # A loss between subscribe() and here was coalesced; go again
                if not self.connection.is_connected():
                    continue
                self._stats['reconnects'] += 1
                self._active = False

            self.logger.info(
                event=LogEvent.MQTT_RECONNECTED,
                message="Broker session and subscriptions restored",
                metadata={
                    'attempts': attempt,
                    'session': self.connection.session,
                    'plan_version': self.plan.version
                }
            )
            return

        with self._lock:
            self._active = False

    def _record_failure(self, attempt: int, error: Exception) -> None:
        with self._lock:
            self._stats['failed_attempts'] += 1
        self.logger.warning(
            event=LogEvent.MQTT_RECONNECTING,
            message="Reconnect attempt failed",
            exc_info=error,
            metadata={
                'attempt': attempt,
                'next_delay': self.backoff.delay(attempt)
            }
        )
