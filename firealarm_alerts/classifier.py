"""
Alarm Classifier
================

Bounded Context: Alarm Detection

Decides whether an inbound message is a fire alarm.

Rule:
    alarm = topic ends with "/alarm"
            OR payload text contains "alarm" (case-insensitive)

On a match the device id is the second topic level ("devices/<id>/...").
A topic without that level still raises the alarm, with device_id
"unknown": a malformed topic must never suppress a real alarm.

classify() is pure and stateless; AlarmClassifier adds logging around it.
"""

from typing import Callable, Optional

from firealarm_mqtt.errors import ClassifyError
from firealarm_mqtt.logging import StructuredLogger, LogEvent
from firealarm_mqtt.schemas import AlarmEvent, InboundMessage, Timestamp

ALARM_TOPIC_SUFFIX = "/alarm"
ALARM_KEYWORD = "alarm"
UNKNOWN_DEVICE = "unknown"
DEVICE_SEGMENT = 1


def is_alarm(topic: str, payload_text: str) -> bool:
    return topic.endswith(ALARM_TOPIC_SUFFIX) or ALARM_KEYWORD in payload_text.lower()


def extract_device_id(topic: str) -> str:
    """
    Device id from the second topic level.

    Raises:
        ClassifyError: If the topic has no (non-empty) second level
    """
    segments = topic.split("/")
    if len(segments) <= DEVICE_SEGMENT or not segments[DEVICE_SEGMENT]:
        raise ClassifyError(topic)
    return segments[DEVICE_SEGMENT]


def classify(
    message: InboundMessage,
    now: Optional[Timestamp] = None,
    on_malformed: Optional[Callable[[ClassifyError], None]] = None
) -> Optional[AlarmEvent]:
    """
    Classify one inbound message.

    Args:
        message: Message received from the broker
        now: Detection time override (default: current time)
        on_malformed: Called with the ClassifyError when an alarm topic has
            no device level (the alarm is still raised)

    Returns:
        AlarmEvent on a match, None otherwise

    Example:
        >>> classify(InboundMessage("devices/sensor7/alarm", b"OK")).device_id
        'sensor7'
        >>> classify(InboundMessage("devices/x/status", b"temperature 21C")) is None
        True
    """
    text = message.text
    if not is_alarm(message.topic, text):
        return None

    try:
        device_id = extract_device_id(message.topic)
    except ClassifyError as e:
        if on_malformed is not None:
            on_malformed(e)
        device_id = UNKNOWN_DEVICE

    return AlarmEvent(
        device_id=device_id,
        topic=message.topic,
        raw_payload=text,
        detected_at=now or Timestamp.now()
    )


class AlarmClassifier:
    """
    classify() with structured logging of detections and malformed topics.

    Holds no mutable state; safe to share between threads.
    """

    def __init__(self, logger: StructuredLogger):
        self.logger = logger

    def __call__(self, message: InboundMessage) -> Optional[AlarmEvent]:
        return self.classify(message)

    def classify(self, message: InboundMessage) -> Optional[AlarmEvent]:
        event = classify(message, on_malformed=self._log_malformed)
        if event is None:
            return None

        self.logger.info(
            event=LogEvent.ALARM_DETECTED,
            message=f"Alarm detected from device {event.device_id}",
            metadata={
                'device_id': event.device_id,
                'topic': event.topic,
                'session': message.session
            }
        )
        return event

    def _log_malformed(self, error: ClassifyError) -> None:
        self.logger.debug(
            event=LogEvent.MALFORMED_TOPIC,
            message=f"{error}, raising as device {UNKNOWN_DEVICE!r}",
            metadata={'topic': error.topic}
        )
