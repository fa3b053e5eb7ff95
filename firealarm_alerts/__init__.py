"""
Fire Alarm Alerts
=================

Bounded Context: Alarm Detection and Alert Hand-off

Public API
----------
Classification:
    classify, extract_device_id, AlarmClassifier, UNKNOWN_DEVICE

Dispatch:
    AlertSink, AlertDispatcher, LoggingAlertSink

State:
    AlarmBoard, AlarmRecord
"""

from .classifier import (
    classify,
    extract_device_id,
    is_alarm,
    AlarmClassifier,
    UNKNOWN_DEVICE,
)
from .dispatcher import AlertSink, AlertDispatcher, LoggingAlertSink
from .board import AlarmBoard, AlarmRecord

__all__ = [
    'classify',
    'extract_device_id',
    'is_alarm',
    'AlarmClassifier',
    'UNKNOWN_DEVICE',
    'AlertSink',
    'AlertDispatcher',
    'LoggingAlertSink',
    'AlarmBoard',
    'AlarmRecord',
]
