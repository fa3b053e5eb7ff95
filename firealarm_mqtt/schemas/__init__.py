"""
Fire Alarm MQTT Schemas
=======================

Immutable value objects for broker sessions, subscriptions, inbound
messages and alarm events.

Public API
----------
Common:
    Timestamp

Connection:
    ConnectionParameters, DEFAULT_PORT

Subscription:
    Subscription, TopicSubscriptionPlan, DEFAULT_PLAN, topic_matches
    AT_MOST_ONCE, AT_LEAST_ONCE, EXACTLY_ONCE

Messages:
    InboundMessage, AlarmEvent, ConnectionLostEvent
"""

from .common import Timestamp
from .connection import ConnectionParameters, DEFAULT_PORT
from .subscription import (
    Subscription,
    TopicSubscriptionPlan,
    DEFAULT_PLAN,
    topic_matches,
    AT_MOST_ONCE,
    AT_LEAST_ONCE,
    EXACTLY_ONCE,
)
from .messages import InboundMessage, AlarmEvent, ConnectionLostEvent

__all__ = [
    'Timestamp',
    'ConnectionParameters',
    'DEFAULT_PORT',
    'Subscription',
    'TopicSubscriptionPlan',
    'DEFAULT_PLAN',
    'topic_matches',
    'AT_MOST_ONCE',
    'AT_LEAST_ONCE',
    'EXACTLY_ONCE',
    'InboundMessage',
    'AlarmEvent',
    'ConnectionLostEvent',
]
