"""
Alarm Board
===========

Bounded Context: Device Alarm State

Remembers which devices are currently alarming. The first alarm from a
quiet device is recorded and forwarded downstream; repeats while the device
is still alarming only refresh last_seen. A device leaves the alarming state
when the user acknowledges it or when it reports a normal status again, so
its next alarm surfaces as a new one.

Every message from a device refreshes its last_update.

Runs on the message path, ahead of the dispatcher:

    AlarmClassifier → AlarmBoard → AlertDispatcher → AlertSink

Keeping it on the paho network thread means alarm and status messages from
one device are applied in arrival order.
"""

import threading
from dataclasses import dataclass, replace
from typing import Dict, List, Optional

from firealarm_mqtt.logging import StructuredLogger, LogEvent
from firealarm_mqtt.schemas import AlarmEvent, Timestamp

from .dispatcher import AlertSink


@dataclass(frozen=True)
class AlarmRecord:
    """
    One raised alarm.

    Attributes:
        event: AlarmEvent that raised it
        acknowledged: Set once the user acknowledges the device
        repeats: Further alarms seen while the device kept alarming
        last_seen: Time of the latest alarm for the device
        cleared_at: Time the device reported a normal status, if it did
    """
    event: AlarmEvent
    acknowledged: bool = False
    repeats: int = 0
    last_seen: Optional[Timestamp] = None
    cleared_at: Optional[Timestamp] = None

    @property
    def device_id(self) -> str:
        return self.event.device_id


class AlarmBoard:
    """
    Per-device alarm state with acknowledgement.

    Thread Safety:
        notify()/observe_status() run in the paho network thread,
        acknowledge() in whatever thread the UI uses; all go through one lock.
        The downstream sink is called outside the lock.
    """

    def __init__(
        self,
        logger: StructuredLogger,
        downstream: Optional[AlertSink] = None
    ):
        self.logger = logger
        self.downstream = downstream
        self._lock = threading.Lock()
        self._active: Dict[str, AlarmRecord] = {}
        self._history: List[AlarmRecord] = []
        self._last_update: Dict[str, Timestamp] = {}

    def notify(self, event: AlarmEvent) -> None:
        """Record an alarm; forward it downstream if the device was quiet."""
        with self._lock:
            self._last_update[event.device_id] = event.detected_at
            current = self._active.get(event.device_id)
            if current is not None:
                self._active[event.device_id] = replace(
                    current,
                    repeats=current.repeats + 1,
                    last_seen=event.detected_at
                )
                return

            self._active[event.device_id] = AlarmRecord(event=event, last_seen=event.detected_at)

        if self.downstream is not None:
            self.downstream.notify(event)

    def observe_status(self, device_id: str, seen_at: Optional[Timestamp] = None) -> bool:
        """
        Record a non-alarm message from a device.

        Args:
            device_id: Device that reported
            seen_at: Message time (default: now)

        Returns:
            True if the device was alarming and is now cleared
        """
        seen_at = seen_at or Timestamp.now()
        with self._lock:
            self._last_update[device_id] = seen_at
            record = self._active.pop(device_id, None)
            if record is None:
                return False
            record = replace(record, cleared_at=seen_at)
            self._history.append(record)

        self.logger.info(
            event=LogEvent.ALARM_CLEARED,
            message=f"Device {device_id} back to normal",
            metadata={'device_id': device_id, 'repeats': record.repeats}
        )
        return True

    def acknowledge(self, device_id: str) -> bool:
        """
        Acknowledge a device's alarm.

        Returns:
            True if the device was alarming
        """
        with self._lock:
            record = self._active.pop(device_id, None)
            if record is None:
                return False
            record = replace(record, acknowledged=True)
            self._history.append(record)

        self.logger.info(
            event=LogEvent.ALARM_ACKNOWLEDGED,
            message=f"Alarm acknowledged for device {device_id}",
            metadata={'device_id': device_id, 'repeats': record.repeats}
        )
        return True

    def is_alarming(self, device_id: str) -> bool:
        with self._lock:
            return device_id in self._active

    def last_update(self, device_id: str) -> Optional[Timestamp]:
        """Time of the latest message from a device, None if never seen."""
        with self._lock:
            return self._last_update.get(device_id)

    def active_alarms(self) -> List[AlarmRecord]:
        """Snapshot of alarming devices, oldest first."""
        with self._lock:
            return list(self._active.values())

    def history(self) -> List[AlarmRecord]:
        """Snapshot of acknowledged or cleared alarms, in the order they ended."""
        with self._lock:
            return list(self._history)
