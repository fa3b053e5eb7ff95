"""
Common Schema Types
==================

Bounded Context: Shared Data Structures

Types shared by the connection, classifier and alert schemas.
"""

from dataclasses import dataclass
from datetime import datetime, timezone


@dataclass(frozen=True)
class Timestamp:
    """
    ISO 8601 timestamp (UTC) carried on messages and alarm events.

    Stored as the rendered string so events serialize without conversion.

    Example:
        >>> Timestamp.now().value
        '2025-10-24T15:30:45.123456+00:00'
    """
    value: str

    @classmethod
    def now(cls) -> 'Timestamp':
        return cls(value=datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> str:
        return self.value
