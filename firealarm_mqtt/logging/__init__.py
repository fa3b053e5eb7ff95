"""
Structured Logging for the Fire Alarm Client
============================================

Bounded Context: Observability

JSON-structured logging with a typed event taxonomy.

Public API
----------
    LogEvent: Typed event names (enum)
    StructuredLogger: JSON logger implementation
    create_logger: Factory function

Example:
    >>> from firealarm_mqtt.logging import create_logger, LogEvent
    >>> logger = create_logger("classifier")
    >>> logger.info(
    ...     event=LogEvent.ALARM_DETECTED,
    ...     message="Alarm from sensor7",
    ...     metadata={'topic': 'devices/sensor7/alarm'}
    ... )
"""

from .events import LogEvent
from .structured import StructuredLogger, create_logger

__all__ = [
    'LogEvent',
    'StructuredLogger',
    'create_logger',
]
