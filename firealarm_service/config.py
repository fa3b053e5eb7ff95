"""
Configuration schema for the fire alarm service.

Loads broker parameters, the subscription plan, reconnect backoff and alert
dispatch settings from YAML and resolves them into the immutable value
objects the core consumes.
"""

import logging
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

import yaml

from firealarm_mqtt.schemas import (
    ConnectionParameters,
    TopicSubscriptionPlan,
    DEFAULT_PLAN,
    DEFAULT_PORT,
)
from firealarm_mqtt.supervisor import BackoffPolicy
from firealarm_alerts.dispatcher import DEFAULT_QUEUE_SIZE, DEFAULT_ENQUEUE_TIMEOUT

VALID_LOG_LEVELS = {"DEBUG", "INFO", "WARNING", "ERROR"}


def generate_client_id() -> str:
    """Random broker-unique client id, e.g. fire-alarm-3f9a1c2e."""
    return f"fire-alarm-{uuid.uuid4().hex[:8]}"


@dataclass(frozen=True)
class DispatcherConfig:
    """Alert queue settings."""

    queue_size: int = DEFAULT_QUEUE_SIZE
    enqueue_timeout: float = DEFAULT_ENQUEUE_TIMEOUT

    def __post_init__(self):
        if self.queue_size <= 0:
            raise ValueError(f"queue_size must be > 0, got {self.queue_size}")
        if not 0.0 <= self.enqueue_timeout <= 1.0:
            raise ValueError(
                f"enqueue_timeout must be in [0.0, 1.0], got {self.enqueue_timeout}"
            )


@dataclass(frozen=True)
class FireAlarmConfig:
    """
    Main configuration for the fire alarm service.

    Immutable after construction (frozen dataclass).
    """

    broker: ConnectionParameters
    plan: TopicSubscriptionPlan = DEFAULT_PLAN
    reconnect: BackoffPolicy = field(default_factory=BackoffPolicy)
    dispatcher: DispatcherConfig = field(default_factory=DispatcherConfig)
    log_level: str = "INFO"

    def __post_init__(self):
        if self.log_level not in VALID_LOG_LEVELS:
            raise ValueError(
                f"Invalid log_level: {self.log_level}. "
                f"Must be one of {sorted(VALID_LOG_LEVELS)}"
            )

    @property
    def logging_level(self) -> int:
        return getattr(logging, self.log_level)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "FireAlarmConfig":
        """
        Build configuration from a parsed YAML mapping.

        Raises:
            ValueError: If a section is missing or invalid
        """
        if not isinstance(data, dict):
            raise ValueError("configuration must be a mapping")

        broker_data = data.get("broker")
        if not isinstance(broker_data, dict):
            raise ValueError("missing 'broker' section")

        try:
            broker = ConnectionParameters(
                host=broker_data["host"],
                port=int(broker_data.get("port", DEFAULT_PORT)),
                client_id=broker_data.get("client_id") or generate_client_id(),
                username=broker_data.get("username"),
                password=_optional_str(broker_data.get("password")),
                keepalive=int(broker_data.get("keepalive", 60)),
                clean_session=bool(broker_data.get("clean_session", True)),
            )
        except KeyError as e:
            raise ValueError(f"Missing required broker field: {e}")
        except TypeError as e:
            raise ValueError(f"Invalid broker data: {e}")

        plan_data = data.get("subscriptions")
        plan = TopicSubscriptionPlan.from_dict(plan_data) if plan_data else DEFAULT_PLAN

        try:
            reconnect = BackoffPolicy(**data.get("reconnect", {}))
            dispatcher = DispatcherConfig(**data.get("dispatcher", {}))
        except TypeError as e:
            raise ValueError(f"Invalid configuration section: {e}")

        return cls(
            broker=broker,
            plan=plan,
            reconnect=reconnect,
            dispatcher=dispatcher,
            log_level=str(data.get("log_level", "INFO")).upper(),
        )

    @classmethod
    def from_yaml(cls, yaml_path: Path) -> "FireAlarmConfig":
        """
        Load configuration from YAML file.

        Example YAML:
            broker:
              host: "broker.local"
              port: 1883
              client_id: "fire-alarm-01"   # omitted: fire-alarm-<random>
              username: null
              password: null

            subscriptions:                 # omitted: devices/+/status, devices/+/alarm
              version: "1"
              subscriptions:
                - topic_filter: "devices/+/status"
                  qos: 1
                - topic_filter: "devices/+/alarm"
                  qos: 1

            reconnect:
              initial: 1.0
              maximum: 30.0

            dispatcher:
              queue_size: 256

            log_level: "INFO"

        Raises:
            FileNotFoundError: If the file does not exist
            ValueError: If YAML is invalid or fails validation
        """
        path = Path(yaml_path)
        if not path.exists():
            raise FileNotFoundError(f"Config file not found: {yaml_path}")

        try:
            with open(path) as f:
                data = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"Invalid YAML in {yaml_path}: {e}")

        return cls.from_dict(data or {})


def _optional_str(value: Optional[Any]) -> Optional[str]:
    return None if value is None else str(value)
