"""
Broker Connection
=================

Bounded Context: MQTT Session Lifecycle

Owns exactly one physical session to the broker at a time: connect,
subscribe, disconnect, plus handler channels for inbound messages and
connection-loss events.

Design:
- A fresh paho client per connect() (one client == one session)
- Every client carries its session number as paho userdata; callbacks from
  an older session are dropped
- Transport-level reconnect is off (reconnect_on_failure=False): paho's
  network loop exits on loss, ReconnectSupervisor owns every retry
- A loss between CONNACK and connect() returning fails that connect();
  messages in that window are delivered
- paho and socket exceptions are translated into ConnectError/SubscribeError

State Machine:
    DISCONNECTED ──connect()──▶ CONNECTING ──CONNACK ok──▶ CONNECTED
    CONNECTED ──transport loss──▶ RECONNECT_PENDING ──connect()──▶ CONNECTING
    any state ──disconnect()──▶ DISCONNECTED

Threading:
    - connect()/subscribe() block the calling thread (bounded, 10 s)
    - paho callbacks run in the paho network thread
    - Handlers are invoked in the paho thread; keep them fast

Example:
    >>> from firealarm_mqtt import BrokerConnection, ConnectionParameters, DEFAULT_PLAN, create_logger
    >>> connection = BrokerConnection(logger=create_logger("connection"))
    >>> connection.add_message_handler(lambda msg: print(msg.topic, msg.text))
    >>> connection.connect(ConnectionParameters(host="localhost", client_id="fire-alarm-01"))
    >>> connection.subscribe(DEFAULT_PLAN)
    >>> # ... later
    >>> connection.disconnect()
"""

import socket
import threading
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import paho.mqtt.client as mqtt

from .errors import ConnectError, ConnectFailure, SubscribeError
from .logging import StructuredLogger, LogEvent
from .schemas import (
    ConnectionParameters,
    TopicSubscriptionPlan,
    InboundMessage,
    ConnectionLostEvent,
)

CONNECT_TIMEOUT = 10.0
SUBSCRIBE_TIMEOUT = 10.0

# CONNACK refusals meaning bad credentials: MQTT 3.1.1 codes 4/5 and the
# MQTT 5 reason codes paho maps them to (0x86 bad user/password, 0x87 not authorized)
AUTH_REASON_CODES = frozenset({4, 5, 0x86, 0x87})

# SUBACK granted-QoS values >= 0x80 are refusals
SUBACK_FAILURE = 0x80

# Socket closed before any CONNACK arrived
NO_CONNACK = -1

MessageHandler = Callable[[InboundMessage], None]
ConnectionLostHandler = Callable[[ConnectionLostEvent], None]
ClientFactory = Callable[[ConnectionParameters, int], Any]


class ConnectionState(str, Enum):
    """Lifecycle state of a BrokerConnection."""

    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECT_PENDING = "reconnect_pending"


def create_paho_client(params: ConnectionParameters, session: int) -> mqtt.Client:
    """
    Build a paho client for one session.

    Args:
        params: Resolved connection parameters
        session: Session number, stored as paho userdata

    Returns:
        Configured (not yet connected) paho client
    """
    client = mqtt.Client(
        callback_api_version=mqtt.CallbackAPIVersion.VERSION2,
        client_id=params.client_id,
        clean_session=params.clean_session,
        userdata=session,
        protocol=mqtt.MQTTv311,
        reconnect_on_failure=False,
    )
    if params.username:
        client.username_pw_set(params.username, params.password)
    client.connect_timeout = CONNECT_TIMEOUT
    return client


def reason_value(reason_code: Any) -> Optional[int]:
    """Numeric value of a paho ReasonCode (or plain int)."""
    if reason_code is None:
        return None
    return int(getattr(reason_code, 'value', reason_code))


class _PendingSubscribe:
    """SUBACK rendezvous for one batched SUBSCRIBE."""

    def __init__(self, filters: List[str]):
        self.filters = filters
        self.done = threading.Event()
        self.reason_codes: List[Optional[int]] = []
        self.cancelled = False

    def failed_filters(self) -> List[str]:
        if self.cancelled:
            return list(self.filters)
        failed = []
        for i, topic_filter in enumerate(self.filters):
            code = self.reason_codes[i] if i < len(self.reason_codes) else None
            if code is None or code >= SUBACK_FAILURE:
                failed.append(topic_filter)
        return failed


class BrokerConnection:
    """
    One MQTT session to the broker, driven through paho-mqtt.

    Attributes:
        logger: Structured logger instance
        connect_timeout: CONNACK wait bound in seconds
        subscribe_timeout: SUBACK wait bound in seconds

    Thread Safety:
        State transitions are serialised by an RLock. Handlers are called
        outside the lock, in the paho network thread.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        client_factory: Optional[ClientFactory] = None,
        connect_timeout: float = CONNECT_TIMEOUT,
        subscribe_timeout: float = SUBSCRIBE_TIMEOUT
    ):
        """
        Initialize connection (does not connect).

        Args:
            logger: Structured logger instance
            client_factory: Builds a client per session (default: paho)
            connect_timeout: Seconds to wait for CONNACK (default: 10)
            subscribe_timeout: Seconds to wait for SUBACK (default: 10)
        """
        self.logger = logger
        self.connect_timeout = connect_timeout
        self.subscribe_timeout = subscribe_timeout
        self._client_factory = client_factory or create_paho_client

        self._lock = threading.RLock()
        self._state = ConnectionState.DISCONNECTED
        self._client: Optional[Any] = None
        self._params: Optional[ConnectionParameters] = None
        self._session = 0

        self._connack = threading.Event()
        self._connack_rc: Optional[int] = None
        self._lost_after_connack: Optional[int] = None
        self._pending_subscribes: Dict[Tuple[int, int], _PendingSubscribe] = {}

        self._message_handlers: List[MessageHandler] = []
        self._lost_handlers: List[ConnectionLostHandler] = []

        self._stats = {
            'connections': 0,
            'connection_losses': 0,
            'messages_received': 0,
            'stale_callbacks': 0,
        }

    # ------------------------------------------------------------------
    # Handler registration
    # ------------------------------------------------------------------

    def add_message_handler(self, handler: MessageHandler) -> None:
        """Register a handler for every inbound message (all sessions)."""
        with self._lock:
            self._message_handlers.append(handler)

    def add_connection_lost_handler(self, handler: ConnectionLostHandler) -> None:
        """Register a handler for transport-detected connection losses."""
        with self._lock:
            self._lost_handlers.append(handler)

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def session(self) -> int:
        return self._session

    @property
    def params(self) -> Optional[ConnectionParameters]:
        return self._params

    def is_connected(self) -> bool:
        """Check if currently connected to broker."""
        return self._state is ConnectionState.CONNECTED

    def connect(self, params: ConnectionParameters) -> None:
        """
        Establish a new broker session.

        Blocks until the broker acknowledges the session or the timeout
        expires.

        Args:
            params: Resolved connection parameters

        Raises:
            ConnectError: AUTH_FAILURE, NETWORK_UNREACHABLE, TIMEOUT,
                ALREADY_CONNECTING, or CANCELLED if disconnect() interrupts
        """
        with self._lock:
            if self._state in (ConnectionState.CONNECTING, ConnectionState.CONNECTED):
                raise ConnectError(
                    ConnectFailure.ALREADY_CONNECTING,
                    f"connect() rejected: connection is {self._state.value}"
                )
            fallback_state = (
                ConnectionState.RECONNECT_PENDING
                if self._state is ConnectionState.RECONNECT_PENDING
                else ConnectionState.DISCONNECTED
            )
            previous_client = self._client
            self._client = None
            self._session += 1
            session = self._session
            self._state = ConnectionState.CONNECTING
            self._params = params
            self._connack = threading.Event()
            self._connack_rc = None
            self._lost_after_connack = None
            connack = self._connack

        if previous_client is not None:
            self._close_client(previous_client)

        self.logger.info(
            event=LogEvent.MQTT_CONNECTING,
            message="Connecting to MQTT broker",
            metadata={
                'broker': params.broker,
                'client_id': params.client_id,
                'session': session
            }
        )

        client = None
        try:
            client = self._client_factory(params, session)
            client.on_connect = self._on_connect
            client.on_disconnect = self._on_disconnect
            client.on_message = self._on_message
            client.on_subscribe = self._on_subscribe

            with self._lock:
                if self._session != session:
                    raise ConnectError(ConnectFailure.CANCELLED, "disconnect() during connect")
                self._client = client

            client.connect(params.host, params.port, keepalive=params.keepalive)
            client.loop_start()

        except ConnectError as e:
            self._close_client(client)
            raise self._connect_failed(session, params, e, fallback_state)
        except socket.timeout as e:
            raise self._connect_failed(
                session, params,
                ConnectError(ConnectFailure.TIMEOUT, f"socket timeout: {e}"),
                fallback_state, cause=e
            )
        except Exception as e:
            raise self._connect_failed(
                session, params,
                ConnectError(ConnectFailure.NETWORK_UNREACHABLE, f"{type(e).__name__}: {e}"),
                fallback_state, cause=e
            )

        if not connack.wait(timeout=self.connect_timeout):
            raise self._connect_failed(
                session, params,
                ConnectError(
                    ConnectFailure.TIMEOUT,
                    f"no CONNACK within {self.connect_timeout}s"
                ),
                fallback_state
            )

        with self._lock:
            if self._session != session:
                cancelled = True
            else:
                cancelled = False
                rc = self._connack_rc
                lost_code = self._lost_after_connack
                if rc == 0 and lost_code is None:
                    self._state = ConnectionState.CONNECTED
                    self._stats['connections'] += 1

        if cancelled:
            self._close_client(client)
            raise self._connect_failed(
                session, params,
                ConnectError(ConnectFailure.CANCELLED, "disconnect() during connect"),
                fallback_state
            )

        if rc == 0 and lost_code is not None:
            raise self._connect_failed(
                session, params,
                ConnectError(
                    ConnectFailure.NETWORK_UNREACHABLE,
                    f"connection dropped right after CONNACK (rc={lost_code})",
                    reason_code=lost_code
                ),
                fallback_state
            )

        if rc == 0:
            self.logger.info(
                event=LogEvent.MQTT_CONNECTED,
                message="Connected to MQTT broker",
                metadata={
                    'broker': params.broker,
                    'client_id': params.client_id,
                    'session': session
                }
            )
            return

        if rc in AUTH_REASON_CODES:
            error = ConnectError(
                ConnectFailure.AUTH_FAILURE,
                f"broker refused credentials (rc={rc})",
                reason_code=rc
            )
        else:
            error = ConnectError(
                ConnectFailure.NETWORK_UNREACHABLE,
                f"broker refused connection (rc={rc})",
                reason_code=rc
            )
        raise self._connect_failed(session, params, error, fallback_state)

    def subscribe(self, plan: TopicSubscriptionPlan) -> None:
        """
        Apply a subscription plan as one batched SUBSCRIBE.

        Args:
            plan: Topic filters and QoS to subscribe

        Raises:
            SubscribeError: If any filter was refused, the SUBACK timed out,
                or the connection is not connected. failed_filters names them.
        """
        filters = plan.filters()

        with self._lock:
            client = self._client
            session = self._session
            if self._state is not ConnectionState.CONNECTED or client is None:
                error = SubscribeError(filters, f"cannot subscribe: connection is {self._state.value}")
                self._log_subscribe_failure(plan, error)
                raise error

            pending = _PendingSubscribe(filters)
            try:
                result, mid = client.subscribe([s.to_tuple() for s in plan])
            except Exception as e:
                error = SubscribeError(filters, f"subscribe raised {type(e).__name__}: {e}")
                self._log_subscribe_failure(plan, error, exc_info=e)
                raise error from e

            if result != mqtt.MQTT_ERR_SUCCESS or mid is None:
                error = SubscribeError(filters, f"subscribe rejected locally (rc={result})")
                self._log_subscribe_failure(plan, error)
                raise error

            key = (session, mid)
            self._pending_subscribes[key] = pending

        try:
            acknowledged = pending.done.wait(timeout=self.subscribe_timeout)
        finally:
            with self._lock:
                self._pending_subscribes.pop(key, None)

        failed = filters if not acknowledged else pending.failed_filters()
        if failed:
            error = SubscribeError(failed)
            self._log_subscribe_failure(plan, error)
            raise error

        self.logger.info(
            event=LogEvent.MQTT_SUBSCRIBED,
            message="Subscription plan applied",
            metadata={
                'plan_version': plan.version,
                'filters': filters,
                'session': session
            }
        )

    def disconnect(self) -> None:
        """
        Close the session gracefully. Never raises.

        Safe to call when already disconnected (no-op). Aborts in-flight
        connect()/subscribe() calls and suppresses any later loss event
        from the closed session.
        """
        with self._lock:
            if self._state is ConnectionState.DISCONNECTED and self._client is None:
                return

            client = self._client
            self._client = None
            self._state = ConnectionState.DISCONNECTED
            self._session += 1
            self._connack.set()
            for pending in self._pending_subscribes.values():
                pending.cancelled = True
                pending.done.set()

        if client is not None:
            self._close_client(client)

        self.logger.info(
            event=LogEvent.MQTT_DISCONNECTED,
            message="Disconnected from broker",
            metadata=self.get_stats()
        )

    def get_stats(self) -> Dict[str, Any]:
        """
        Get connection statistics.

        Returns:
            Dictionary with counters and current state
        """
        with self._lock:
            stats = dict(self._stats)
            stats['state'] = self._state.value
            stats['session'] = self._session
            stats['broker'] = self._params.broker if self._params else None
            return stats

    # ------------------------------------------------------------------
    # paho callbacks (paho network thread)
    # ------------------------------------------------------------------

    def _on_connect(
        self,
        client: Any,
        userdata: Any,
        flags: Any,
        reason_code: Any,
        properties: Any = None
    ) -> None:
        with self._lock:
            if userdata != self._session or self._state is not ConnectionState.CONNECTING:
                self._stats['stale_callbacks'] += 1
                return
            self._connack_rc = reason_value(reason_code)
            self._connack.set()

    def _on_disconnect(
        self,
        client: Any,
        userdata: Any,
        disconnect_flags: Any = None,
        reason_code: Any = None,
        properties: Any = None
    ) -> None:
        code = reason_value(reason_code)

        with self._lock:
            if userdata != self._session:
                self._stats['stale_callbacks'] += 1
                return

            if self._state is ConnectionState.CONNECTING:
                # connect() reports this one, even when CONNACK already granted
                if not self._connack.is_set():
                    self._connack_rc = code if code else NO_CONNACK
                    self._connack.set()
                elif self._lost_after_connack is None:
                    self._lost_after_connack = code if code else NO_CONNACK
                return
            if self._state is not ConnectionState.CONNECTED:
                return

            self._state = ConnectionState.RECONNECT_PENDING
            self._stats['connection_losses'] += 1
            lost = ConnectionLostEvent(
                cause=str(reason_code) if reason_code is not None else "connection lost",
                reason_code=code,
                session=userdata
            )
            handlers = list(self._lost_handlers)

        self.logger.warning(
            event=LogEvent.MQTT_CONNECTION_LOST,
            message="Connection to MQTT broker lost",
            metadata={
                'broker': self._params.broker if self._params else None,
                'reason_code': code,
                'session': userdata
            }
        )

        for handler in handlers:
            try:
                handler(lost)
            except Exception as e:
                self.logger.error(
                    event=LogEvent.HANDLER_ERROR,
                    message="Connection-lost handler raised",
                    exc_info=e,
                    metadata={'session': userdata}
                )

    def _on_message(
        self,
        client: Any,
        userdata: Any,
        message: Any
    ) -> None:
        with self._lock:
            if userdata != self._session or not self._session_granted():
                self._stats['stale_callbacks'] += 1
                return
            self._stats['messages_received'] += 1
            handlers = list(self._message_handlers)

        inbound = InboundMessage(
            topic=message.topic,
            payload=bytes(message.payload),
            qos=message.qos,
            retain=bool(message.retain),
            session=userdata
        )

        self.logger.debug(
            event=LogEvent.MQTT_MESSAGE_RECEIVED,
            message="Received message",
            metadata={'topic': inbound.topic, 'bytes': len(inbound.payload), 'session': userdata}
        )

        for handler in handlers:
            try:
                handler(inbound)
            except Exception as e:
                self.logger.error(
                    event=LogEvent.HANDLER_ERROR,
                    message="Message handler raised",
                    exc_info=e,
                    metadata={'topic': inbound.topic}
                )

    def _on_subscribe(
        self,
        client: Any,
        userdata: Any,
        mid: int,
        reason_code_list: Any,
        properties: Any = None
    ) -> None:
        with self._lock:
            pending = self._pending_subscribes.get((userdata, mid))
            if pending is None:
                self._stats['stale_callbacks'] += 1
                return
            pending.reason_codes = [reason_value(rc) for rc in reason_code_list]
            pending.done.set()

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _connect_failed(
        self,
        session: int,
        params: ConnectionParameters,
        error: ConnectError,
        fallback_state: ConnectionState,
        cause: Optional[BaseException] = None
    ) -> ConnectError:
        """Tear down the attempt's client and return the error to raise."""
        client = None
        with self._lock:
            if self._session == session:
                client = self._client
                self._client = None
                self._session += 1
                self._state = fallback_state

        if client is not None:
            self._close_client(client)

        self.logger.error(
            event=LogEvent.MQTT_CONNECTION_ERROR,
            message=f"Failed to connect to broker ({error.reason.value})",
            exc_info=cause,
            metadata={
                'broker': params.broker,
                'reason': error.reason.value,
                'reason_code': error.reason_code,
                'detail': str(error)
            }
        )
        if cause is not None:
            error.__cause__ = cause
        return error

    def _session_granted(self) -> bool:
        """True once the broker accepted the current session and it is still up."""
        if self._state is ConnectionState.CONNECTED:
            return True
        # paho has already acked messages queued for a persistent session
        # that arrive between CONNACK and connect() returning
        return (
            self._state is ConnectionState.CONNECTING
            and self._connack.is_set()
            and self._connack_rc == 0
            and self._lost_after_connack is None
        )

    def _close_client(self, client: Any) -> None:
        if client is None:
            return
        try:
            client.loop_stop()
            client.disconnect()
        except Exception as e:
            self.logger.warning(
                event=LogEvent.MQTT_CONNECTION_ERROR,
                message="Error while closing MQTT client",
                exc_info=e
            )

    def _log_subscribe_failure(
        self,
        plan: TopicSubscriptionPlan,
        error: SubscribeError,
        exc_info: Optional[BaseException] = None
    ) -> None:
        self.logger.error(
            event=LogEvent.MQTT_SUBSCRIBE_ERROR,
            message=str(error),
            exc_info=exc_info,
            metadata={
                'plan_version': plan.version,
                'failed_filters': sorted(error.failed_filters)
            }
        )
