"""
Error Taxonomy
==============

Typed failures for the fire alarm core. Transport exceptions from paho and
the socket layer are translated into these at the BrokerConnection boundary;
nothing raw crosses into the classifier or the dispatcher.
"""

from enum import Enum
from typing import FrozenSet, Iterable, Optional


class ConnectFailure(str, Enum):
    """Why a connect() call failed."""

    AUTH_FAILURE = "auth_failure"
    NETWORK_UNREACHABLE = "network_unreachable"
    TIMEOUT = "timeout"
    ALREADY_CONNECTING = "already_connecting"
    CANCELLED = "cancelled"


class SubscribeFailure(str, Enum):
    PARTIAL_FAILURE = "partial_failure"


class ClassifyFailure(str, Enum):
    MALFORMED_TOPIC = "malformed_topic"


class FireAlarmError(Exception):
    """Base class for all fire alarm client errors."""
    pass


class ConnectError(FireAlarmError):
    """
    Raised when a broker session could not be established.

    Attributes:
        reason: ConnectFailure kind
        reason_code: Broker/paho reason code, when one was reported
    """

    def __init__(
        self,
        reason: ConnectFailure,
        message: str = "",
        reason_code: Optional[int] = None
    ):
        self.reason = reason
        self.reason_code = reason_code
        super().__init__(message or reason.value)


class SubscribeError(FireAlarmError):
    """
    Raised when any filter of a subscription batch was not granted.

    The batch is all-or-nothing from the caller's point of view: retry the
    whole plan.

    Attributes:
        failed_filters: Filters the broker refused or never acknowledged
    """

    reason = SubscribeFailure.PARTIAL_FAILURE

    def __init__(self, failed_filters: Iterable[str], message: str = ""):
        self.failed_filters: FrozenSet[str] = frozenset(failed_filters)
        super().__init__(
            message or f"subscription failed for: {', '.join(sorted(self.failed_filters))}"
        )


class ClassifyError(FireAlarmError):
    """
    Raised when a device id cannot be extracted from a topic.

    Non-fatal: the classifier still raises the alarm with device_id "unknown".
    """

    reason = ClassifyFailure.MALFORMED_TOPIC

    def __init__(self, topic: str):
        self.topic = topic
        super().__init__(f"malformed topic, no device segment: {topic!r}")
