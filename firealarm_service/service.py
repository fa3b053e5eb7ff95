"""
FireAlarmService - Main orchestrator for the fire alarm client.

This module wires the broker session, reconnect supervision, alarm
classification and alert dispatch into one long-running service.

Message Flow:
    paho network thread
        → BrokerConnection._on_message
        → AlarmClassifier.classify          (pure, non-blocking)
        → AlarmBoard.notify                 (alarm: first one per device)
          AlarmBoard.observe_status         (other in-plan topics: clears the device)
        → AlertDispatcher.dispatch          (queue-and-return)
    AlertDispatcherThread
        → AlertSink.notify                  (presentation)

Threading Model:
- paho Network Thread (message delivery, loss detection)
- ReconnectSupervisorThread (reconnect attempts, only while recovering)
- AlertDispatcherThread (sink delivery)
- Caller thread (start/stop/wait)
"""

import logging
import threading
from typing import Any, Dict, Optional

from firealarm_mqtt import (
    BrokerConnection,
    ReconnectSupervisor,
    ConnectError,
    SubscribeError,
    ClassifyError,
    InboundMessage,
    create_logger,
)
from firealarm_mqtt.connection import ClientFactory
from firealarm_alerts import (
    AlarmClassifier,
    extract_device_id,
    AlarmBoard,
    AlertDispatcher,
    AlertSink,
    LoggingAlertSink,
)

from .config import FireAlarmConfig

logger = logging.getLogger(__name__)


class FireAlarmService:
    """
    Long-running fire alarm client.

    Lifecycle:
        service = FireAlarmService(config)
        service.start()     # non-blocking; reconnects in background on failure
        service.wait()      # block until stop()
        service.stop()

    Attributes:
        config: Resolved service configuration
        connection: Broker session
        supervisor: Reconnect owner for the session
        classifier: Alarm classifier
        board: Per-device alarm state
        dispatcher: Alert hand-off queue
    """

    def __init__(
        self,
        config: FireAlarmConfig,
        sink: Optional[AlertSink] = None,
        client_factory: Optional[ClientFactory] = None
    ):
        """
        Initialize the service (no network activity).

        Args:
            config: Service configuration
            sink: Presentation sink for new alarms (default: structured log)
            client_factory: MQTT client factory override (tests)
        """
        self.config = config
        level = config.logging_level

        self.connection = BrokerConnection(
            logger=create_logger("connection", level),
            client_factory=client_factory,
        )
        self.supervisor = ReconnectSupervisor(
            connection=self.connection,
            params=config.broker,
            plan=config.plan,
            logger=create_logger("supervisor", level),
            backoff=config.reconnect,
        )
        self.classifier = AlarmClassifier(create_logger("classifier", level))

        alerts_logger = create_logger("alerts", level)
        self.dispatcher = AlertDispatcher(
            sink=sink or LoggingAlertSink(alerts_logger),
            logger=alerts_logger,
            queue_size=config.dispatcher.queue_size,
            enqueue_timeout=config.dispatcher.enqueue_timeout,
        )
        self.board = AlarmBoard(logger=alerts_logger, downstream=self.dispatcher)

        self.connection.add_message_handler(self._on_message)

        self._running = False
        self._stopped_event = threading.Event()

    def start(self) -> None:
        """
        Start the service.

        Lifecycle:
        1. Start alert dispatcher
        2. Start reconnect supervisor
        3. Connect and apply the subscription plan
        4. On failure, hand the session to the supervisor (never raises)
        """
        if self._running:
            logger.warning("Service already running")
            return

        logger.info(f"Starting fire alarm service (broker={self.config.broker.broker})")

        self._stopped_event.clear()
        self.dispatcher.start()
        self.supervisor.start()
        self._running = True

        try:
            self.connection.connect(self.config.broker)
            self.connection.subscribe(self.config.plan)
        except ConnectError as e:
            logger.warning(f"Initial connect failed ({e.reason.value}), retrying in background")
            self.supervisor.request_reconnect(f"initial connect failed: {e.reason.value}")
        except SubscribeError as e:
            logger.warning(f"Initial subscribe failed for {sorted(e.failed_filters)}, retrying in background")
            self.supervisor.request_reconnect("initial subscribe failed")
        else:
            logger.info("Fire alarm service started")

    def wait(self, timeout: Optional[float] = None) -> bool:
        """
        Block until stop() is called.

        Returns:
            True if the service stopped, False on timeout
        """
        return self._stopped_event.wait(timeout=timeout)

    def stop(self) -> None:
        """
        Stop the service gracefully.

        Lifecycle:
        1. Stop reconnect supervisor (no new attempts)
        2. Disconnect from broker (suppresses loss events, cancels an
           attempt the supervisor has in flight)
        3. Join the supervisor worker
        4. Drain and stop alert dispatcher
        """
        if not self._running:
            logger.warning("Service not running")
            return

        logger.info("Stopping fire alarm service")

        self.supervisor.stop(wait=False)
        self.connection.disconnect()
        if not self.supervisor.join(timeout=5.0):
            logger.warning("Reconnect worker still running after shutdown timeout")
        self.dispatcher.stop(drain=True)

        self._running = False
        self._stopped_event.set()
        logger.info("Fire alarm service stopped")

    def is_running(self) -> bool:
        return self._running

    def acknowledge(self, device_id: str) -> bool:
        """Acknowledge a device's active alarm."""
        return self.board.acknowledge(device_id)

    def get_stats(self) -> Dict[str, Any]:
        return {
            'running': self._running,
            'connection': self.connection.get_stats(),
            'supervisor': self.supervisor.get_stats(),
            'dispatcher': self.dispatcher.get_stats(),
            'active_alarms': len(self.board.active_alarms()),
        }

    def _on_message(self, message: InboundMessage) -> None:
        """Classify and update device state (paho network thread)."""
        event = self.classifier.classify(message)
        if event is not None:
            self.board.notify(event)
            return

        # a persistent session can still carry filters from an older plan
        if not self.config.plan.matches(message.topic):
            return
        try:
            device_id = extract_device_id(message.topic)
        except ClassifyError:
            return
        self.board.observe_status(device_id, seen_at=message.received_at)
