"""
Fire Alarm Service Package

Long-running client that keeps an MQTT session to the broker, classifies
device messages and raises alerts on fire alarms.

Components:
- FireAlarmService: Main orchestrator
- FireAlarmConfig: YAML configuration schema
- DispatcherConfig: Alert queue settings

Example:
    >>> from firealarm_service import FireAlarmService, FireAlarmConfig
    >>> config = FireAlarmConfig.from_yaml("config/fire_alarm.yaml")
    >>> service = FireAlarmService(config)
    >>> service.start()
    >>> service.wait()
"""

from .config import FireAlarmConfig, DispatcherConfig, generate_client_id
from .service import FireAlarmService

__all__ = [
    "FireAlarmService",
    "FireAlarmConfig",
    "DispatcherConfig",
    "generate_client_id",
]
