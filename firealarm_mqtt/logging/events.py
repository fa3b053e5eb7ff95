"""
Structured Log Event Types
==========================

Bounded Context: Observability Event Taxonomy

Typed event names for the fire alarm client's structured logs.

Event Naming Convention:
    <component>.<category>.<action>

    component: mqtt, alarm, error
    category: connected, subscribe, dispatched
    action: success, failed

Example Log Query (Loki):
    {component="connection"} | json | event="mqtt.connection.lost"
"""

from enum import Enum


class LogEvent(str, Enum):
    """
    Typed log event names for structured logging.

    Categories:
    - mqtt.*: Broker session lifecycle
    - alarm.*: Classification and alert hand-off
    - error.*: Error conditions
    """

    # ========== MQTT Events ==========
    MQTT_CONNECTING = "mqtt.connecting"
    """Connection attempt started."""

    MQTT_CONNECTED = "mqtt.connected"
    """Broker acknowledged the session."""

    MQTT_DISCONNECTED = "mqtt.disconnected"
    """Session closed on request."""

    MQTT_CONNECTION_LOST = "mqtt.connection.lost"
    """Transport reported an unexpected loss."""

    MQTT_SUBSCRIBED = "mqtt.subscribe.success"
    """Subscription plan acknowledged by broker."""

    MQTT_RECONNECTING = "mqtt.reconnecting"
    """Supervisor is attempting to restore the session."""

    MQTT_RECONNECTED = "mqtt.reconnected"
    """Supervisor restored session and subscriptions."""

    MQTT_MESSAGE_RECEIVED = "mqtt.message.received"
    """Inbound message delivered to handlers."""

    # ========== Alarm Events ==========
    ALARM_DETECTED = "alarm.detected"
    """Inbound message classified as an alarm."""

    ALARM_DISPATCHED = "alarm.dispatched"
    """Alarm event delivered to the alert sink."""

    ALARM_RAISED = "alarm.raised"
    """Alarm surfaced to the presentation layer."""

    ALARM_ACKNOWLEDGED = "alarm.acknowledged"
    """Device alarm acknowledged by the user."""

    ALARM_CLEARED = "alarm.cleared"
    """Alarming device reported a normal status."""

    # ========== Error Events ==========
    MQTT_CONNECTION_ERROR = "error.mqtt_connection"
    """Failed to connect to MQTT broker."""

    MQTT_SUBSCRIBE_ERROR = "error.mqtt_subscribe"
    """One or more topic filters were refused."""

    MALFORMED_TOPIC = "error.malformed_topic"
    """Device id could not be extracted from the topic."""

    HANDLER_ERROR = "error.handler"
    """A registered callback raised."""

    DISPATCH_ERROR = "error.dispatch"
    """Alert could not be queued or delivered."""
