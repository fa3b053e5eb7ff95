"""
Structured JSON Logger
=====================

Bounded Context: Observability Infrastructure

Wraps Python's logging module so every record is a single JSON document.
Connection, supervisor and dispatcher components all log through this
class; the entry script decides where records end up (console, file).

Example:
    >>> logger = StructuredLogger(component="connection")
    >>> logger.info(
    ...     event=LogEvent.MQTT_CONNECTED,
    ...     message="Connected to broker",
    ...     metadata={'broker': 'localhost:1883', 'session': 1}
    ... )

Output:
    {
        "timestamp": "2025-10-24T15:30:45.123456+00:00",
        "level": "INFO",
        "component": "connection",
        "event": "mqtt.connected",
        "message": "Connected to broker",
        "metadata": {"broker": "localhost:1883", "session": 1}
    }
"""

import json
import logging
from datetime import datetime, timezone
from typing import Dict, Any, Optional
from .events import LogEvent


class StructuredLogger:
    """
    JSON structured logger.

    Attributes:
        component: Component name (e.g., "connection", "supervisor")
        logger: Underlying Python logger instance

    Thread Safety:
        Thread-safe via Python's logging module. The paho network thread,
        the supervisor worker and the dispatcher worker share instances.
    """

    def __init__(
        self,
        component: str,
        level: int = logging.INFO,
        logger_name: Optional[str] = None
    ):
        """
        Initialize structured logger.

        Args:
            component: Component identifier (e.g., "connection")
            level: Logging level (default: INFO)
            logger_name: Custom logger name (default: firealarm.<component>)
        """
        self.component = component
        self.logger_name = logger_name or f"firealarm.{component}"
        self.logger = logging.getLogger(self.logger_name)
        self.logger.setLevel(level)

        if not self.logger.handlers:
            handler = logging.StreamHandler()
            handler.setFormatter(JSONFormatter())
            self.logger.addHandler(handler)

    def _log(
        self,
        level: str,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        exc_info: Optional[BaseException] = None
    ) -> None:
        log_level = getattr(logging, level)
        if not self.logger.isEnabledFor(log_level):
            return

        log_entry = {
            'timestamp': datetime.now(timezone.utc).isoformat(),
            'level': level,
            'component': self.component,
            'event': event.value,
            'message': message,
        }

        if metadata:
            log_entry['metadata'] = metadata

        if exc_info:
            log_entry['exception'] = {
                'type': type(exc_info).__name__,
                'message': str(exc_info)
            }

        self.logger.log(
            log_level,
            json.dumps(log_entry, default=str),
            exc_info=exc_info if level == 'ERROR' else None
        )

    def debug(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Log DEBUG level message."""
        self._log('DEBUG', event, message, metadata)

    def info(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """
        Log INFO level message.

        Args:
            event: Typed log event
            message: Human-readable message
            metadata: Additional context
        """
        self._log('INFO', event, message, metadata)

    def warning(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        exc_info: Optional[BaseException] = None
    ) -> None:
        """
        Log WARNING level message.

        Args:
            event: Typed log event
            message: Human-readable message
            metadata: Additional context
            exc_info: Exception summarised in the entry (no traceback)

        Example:
            >>> logger.warning(
            ...     event=LogEvent.MQTT_CONNECTION_LOST,
            ...     message="Lost connection to broker",
            ...     metadata={'broker': 'localhost:1883'}
            ... )
        """
        self._log('WARNING', event, message, metadata, exc_info)

    def error(
        self,
        event: LogEvent,
        message: str,
        metadata: Optional[Dict[str, Any]] = None,
        exc_info: Optional[BaseException] = None
    ) -> None:
        """
        Log ERROR level message.

        Args:
            event: Typed log event
            message: Human-readable message
            metadata: Additional context
            exc_info: Exception instance for traceback

        Example:
            >>> try:
            ...     sink.notify(alarm)
            ... except Exception as e:
            ...     logger.error(
            ...         event=LogEvent.DISPATCH_ERROR,
            ...         message="Alert sink failed",
            ...         exc_info=e,
            ...         metadata={'device_id': alarm.device_id}
            ...     )
        """
        self._log('ERROR', event, message, metadata, exc_info)


class JSONFormatter(logging.Formatter):
    """
    Pass-through formatter: StructuredLogger already renders JSON.
    """

    def format(self, record: logging.LogRecord) -> str:
        return record.getMessage()


def create_logger(
    component: str,
    level: int = logging.INFO
) -> StructuredLogger:
    """
    Factory function to create configured StructuredLogger.

    Args:
        component: Component identifier
        level: Logging level (default: INFO)

    Returns:
        Configured StructuredLogger instance

    Example:
        >>> logger = create_logger("supervisor", level=logging.DEBUG)
    """
    return StructuredLogger(component=component, level=level)
