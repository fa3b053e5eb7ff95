"""
Fire Alarm MQTT Package
=======================

Bounded Context: Broker Session for Fire Alarm Monitoring

Keeps a persistent MQTT session to the broker, subscribes to the device
topics and survives transient network loss.

Architecture:
- schemas/: Immutable value objects (parameters, plan, messages, events)
- connection.py: BrokerConnection (one physical session, paho-mqtt)
- supervisor.py: ReconnectSupervisor (single owner of reconnects)
- errors.py: Typed error taxonomy
- logging/: Structured JSON logging

Public API
----------
Schemas:
    Timestamp, ConnectionParameters
    Subscription, TopicSubscriptionPlan, DEFAULT_PLAN
    InboundMessage, AlarmEvent, ConnectionLostEvent

Session:
    BrokerConnection, ConnectionState
    ReconnectSupervisor, BackoffPolicy

Errors:
    FireAlarmError, ConnectError, ConnectFailure, SubscribeError, ClassifyError

Logging:
    LogEvent, StructuredLogger, create_logger

Example:
    >>> from firealarm_mqtt import (
    ...     BrokerConnection, ReconnectSupervisor, ConnectionParameters,
    ...     DEFAULT_PLAN, create_logger
    ... )
    >>> params = ConnectionParameters(host="localhost", client_id="fire-alarm-01")
    >>> connection = BrokerConnection(logger=create_logger("connection"))
    >>> supervisor = ReconnectSupervisor(connection, params, DEFAULT_PLAN,
    ...                                  logger=create_logger("supervisor"))
    >>> supervisor.start()
    >>> connection.connect(params)
    >>> connection.subscribe(DEFAULT_PLAN)
"""

__version__ = "1.0.0"

from .schemas import (
    Timestamp,
    ConnectionParameters,
    Subscription,
    TopicSubscriptionPlan,
    DEFAULT_PLAN,
    InboundMessage,
    AlarmEvent,
    ConnectionLostEvent,
)

from .errors import (
    FireAlarmError,
    ConnectError,
    ConnectFailure,
    SubscribeError,
    ClassifyError,
)

from .connection import BrokerConnection, ConnectionState
from .supervisor import ReconnectSupervisor, BackoffPolicy

from .logging import (
    LogEvent,
    StructuredLogger,
    create_logger,
)

__all__ = [
    '__version__',
    # Schemas
    'Timestamp',
    'ConnectionParameters',
    'Subscription',
    'TopicSubscriptionPlan',
    'DEFAULT_PLAN',
    'InboundMessage',
    'AlarmEvent',
    'ConnectionLostEvent',
    # Errors
    'FireAlarmError',
    'ConnectError',
    'ConnectFailure',
    'SubscribeError',
    'ClassifyError',
    # Session
    'BrokerConnection',
    'ConnectionState',
    'ReconnectSupervisor',
    'BackoffPolicy',
    # Logging
    'LogEvent',
    'StructuredLogger',
    'create_logger',
]
