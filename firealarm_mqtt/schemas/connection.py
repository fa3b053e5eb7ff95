"""
Connection Parameters
=====================

Bounded Context: Broker Session Configuration

Resolved, immutable parameters for one broker session. Held read-only by
BrokerConnection and ReconnectSupervisor; a reconnect always reuses the
exact instance the first connect used.
"""

from dataclasses import dataclass, field
from typing import Dict, Any, Optional

DEFAULT_PORT = 1883


@dataclass(frozen=True)
class ConnectionParameters:
    """
    Immutable broker connection parameters.

    Attributes:
        host: Broker hostname
        port: Broker TCP port (default: 1883)
        client_id: MQTT client identifier, unique per broker
        username: Optional authentication username
        password: Optional authentication password (hidden from repr)
        keepalive: Keepalive interval in seconds
        clean_session: Start each session without broker-side state

    Invariants:
        - host is non-empty
        - 1 <= port <= 65535
        - client_id is non-empty

    Example:
        >>> params = ConnectionParameters(host="broker.local", client_id="fire-alarm-01")
        >>> params.broker
        'broker.local:1883'
    """
    host: str
    client_id: str
    port: int = DEFAULT_PORT
    username: Optional[str] = None
    password: Optional[str] = field(default=None, repr=False)
    keepalive: int = 60
    clean_session: bool = True

    def __post_init__(self):
        """Validate invariants."""
        if not self.host:
            raise ValueError("host cannot be empty")

        if not isinstance(self.port, int) or isinstance(self.port, bool):
            raise ValueError(f"port must be an integer, got {self.port!r}")

        if not 1 <= self.port <= 65535:
            raise ValueError(
                f"MQTT port must be in [1, 65535], got {self.port}"
            )

        if not self.client_id:
            raise ValueError("client_id cannot be empty")

        if self.keepalive <= 0:
            raise ValueError(f"keepalive must be > 0, got {self.keepalive}")

    @property
    def broker(self) -> str:
        """host:port label used in log metadata."""
        return f"{self.host}:{self.port}"

    @property
    def has_credentials(self) -> bool:
        return bool(self.username)

    def to_dict(self) -> Dict[str, Any]:
        """Serialize without the password."""
        return {
            'host': self.host,
            'port': self.port,
            'client_id': self.client_id,
            'username': self.username,
            'keepalive': self.keepalive,
            'clean_session': self.clean_session,
        }
