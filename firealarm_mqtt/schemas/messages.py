"""
Message and Event Schemas
=========================

Bounded Context: Inbound Messages and Alarm Events

Transient DTOs that flow between the connection, the classifier and the
alert dispatcher. All frozen: once created they are never mutated.

Flow:
    paho MQTTMessage → InboundMessage → classify() → AlarmEvent → AlertSink
    paho on_disconnect → ConnectionLostEvent → ReconnectSupervisor
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional

from .common import Timestamp


@dataclass(frozen=True)
class InboundMessage:
    """
    Message received from the broker.

    Produced by BrokerConnection, consumed immediately by the classifier,
    not retained.

    Attributes:
        topic: Concrete topic the message was published on
        payload: Raw payload bytes
        received_at: Receive time
        qos: QoS the message was delivered at
        retain: Broker retained flag
        session: BrokerConnection session number that delivered it
    """
    topic: str
    payload: bytes
    received_at: Timestamp = field(default_factory=Timestamp.now)
    qos: int = 0
    retain: bool = False
    session: int = 0

    @property
    def text(self) -> str:
        """Payload decoded as UTF-8 (undecodable bytes replaced)."""
        return self.payload.decode('utf-8', errors='replace')


@dataclass(frozen=True)
class AlarmEvent:
    """
    Alarm condition detected on an inbound message.

    Attributes:
        device_id: Second topic level, or "unknown" for malformed topics
        topic: Topic the alarm arrived on
        raw_payload: Payload text as received
        detected_at: Classification time

    Example:
        >>> event.to_dict()
        {'device_id': 'sensor7', 'topic': 'devices/sensor7/alarm',
         'raw_payload': 'OK', 'detected_at': '2025-10-24T15:30:45+00:00'}
    """
    device_id: str
    topic: str
    raw_payload: str
    detected_at: Timestamp = field(default_factory=Timestamp.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'device_id': self.device_id,
            'topic': self.topic,
            'raw_payload': self.raw_payload,
            'detected_at': self.detected_at.to_dict(),
        }


@dataclass(frozen=True)
class ConnectionLostEvent:
    """
    One transport-detected loss of a broker session.

    Attributes:
        cause: Human-readable cause (paho reason string)
        reason_code: Numeric reason code, when paho reported one
        session: Session number that was lost
        lost_at: Detection time
    """
    cause: str
    reason_code: Optional[int] = None
    session: int = 0
    lost_at: Timestamp = field(default_factory=Timestamp.now)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'cause': self.cause,
            'reason_code': self.reason_code,
            'session': self.session,
            'lost_at': self.lost_at.to_dict(),
        }
