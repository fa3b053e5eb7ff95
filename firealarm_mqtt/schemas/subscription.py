"""
Topic Subscription Plan
=======================

Bounded Context: Subscription Topology

The fixed, versioned set of topic filters the client must hold after every
successful (re)connect. Kept as plain data so it can be unit-tested and
swapped without touching connection logic.

Topic Structure:
    devices/
    └── {device_id}/
        ├── status        # periodic device state ("OK", "ALARM", ...)
        └── alarm         # dedicated alarm channel
"""

from dataclasses import dataclass
from typing import Dict, Any, Iterator, List, Tuple

AT_MOST_ONCE = 0
AT_LEAST_ONCE = 1
EXACTLY_ONCE = 2


@dataclass(frozen=True)
class Subscription:
    """
    One topic filter at a desired QoS.

    Invariants:
        - topic_filter is non-empty
        - qos in {0, 1, 2}
        - '#' only as the last level
    """
    topic_filter: str
    qos: int = AT_LEAST_ONCE

    def __post_init__(self):
        if not self.topic_filter:
            raise ValueError("topic_filter cannot be empty")

        if self.qos not in {AT_MOST_ONCE, AT_LEAST_ONCE, EXACTLY_ONCE}:
            raise ValueError(
                f"MQTT QoS must be 0, 1, or 2, got {self.qos}"
            )

        levels = self.topic_filter.split("/")
        if "#" in levels[:-1]:
            raise ValueError(
                f"'#' must be the last level of a filter: {self.topic_filter}"
            )

    def matches(self, topic: str) -> bool:
        return topic_matches(self.topic_filter, topic)

    def to_tuple(self) -> Tuple[str, int]:
        """(filter, qos) pair in the shape paho's batch subscribe accepts."""
        return (self.topic_filter, self.qos)


@dataclass(frozen=True)
class TopicSubscriptionPlan:
    """
    Ordered, immutable batch of subscriptions.

    Order does not affect correctness; the batch is always applied as one
    SUBSCRIBE after each connect.

    Attributes:
        subscriptions: Subscriptions in application order
        version: Plan revision, logged on every apply

    Example:
        >>> DEFAULT_PLAN.filters()
        ['devices/+/status', 'devices/+/alarm']
    """
    subscriptions: Tuple[Subscription, ...]
    version: str = "1"

    def __post_init__(self):
        if not self.subscriptions:
            raise ValueError("subscription plan cannot be empty")

        filters = [s.topic_filter for s in self.subscriptions]
        if len(set(filters)) != len(filters):
            raise ValueError(f"duplicate topic filters in plan: {filters}")

    def __iter__(self) -> Iterator[Subscription]:
        return iter(self.subscriptions)

    def __len__(self) -> int:
        return len(self.subscriptions)

    def filters(self) -> List[str]:
        return [s.topic_filter for s in self.subscriptions]

    def matches(self, topic: str) -> bool:
        """True if any filter in the plan matches the topic."""
        return any(s.matches(topic) for s in self.subscriptions)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'version': self.version,
            'subscriptions': [
                {'topic_filter': s.topic_filter, 'qos': s.qos}
                for s in self.subscriptions
            ],
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'TopicSubscriptionPlan':
        """Deserialize from dict.

        Raises:
            ValueError: If required keys missing or invalid values
        """
        try:
            subscriptions = tuple(
                Subscription(
                    topic_filter=item['topic_filter'],
                    qos=int(item.get('qos', AT_LEAST_ONCE))
                )
                for item in data['subscriptions']
            )
        except KeyError as e:
            raise ValueError(f"Missing required subscription field: {e}")
        except (TypeError, AttributeError) as e:
            raise ValueError(f"Invalid subscription data: {e}")

        return cls(subscriptions=subscriptions, version=str(data.get('version', "1")))


def topic_matches(topic_filter: str, topic: str) -> bool:
    """
    Check if a topic matches an MQTT subscription filter.

    Args:
        topic_filter: Filter (may contain + and # wildcards)
        topic: Concrete topic

    Returns:
        True if topic matches the filter
    """
    filter_parts = topic_filter.split("/")
    topic_parts = topic.split("/")

    for i, part in enumerate(filter_parts):
        if part == "#":
            return True
        if i >= len(topic_parts):
            return False
        if part == "+":
            continue
        if part != topic_parts[i]:
            return False

    return len(filter_parts) == len(topic_parts)


DEFAULT_PLAN = TopicSubscriptionPlan(
    subscriptions=(
        Subscription("devices/+/status", AT_LEAST_ONCE),
        Subscription("devices/+/alarm", AT_LEAST_ONCE),
    ),
    version="1",
)
