"""
Wire messages exchanged on sync channels.

Channel envelope (produced by the transport):

    {"channel-id": str, "data": <payload>, "from": origin}

Sync message payload:

    {"state-id": str, "value": any, "version": int >= 0, "timestamp": int}

Current-value request payload:

    {"state-id": str, "request": "current", "timestamp": int}
"""

import time
from dataclasses import dataclass, field
from typing import Any, Dict, Mapping, Optional

from .utils.errors import ValidationError


STATE_ID = "state-id"
VALUE = "value"
VERSION = "version"
TIMESTAMP = "timestamp"
REQUEST = "request"
REQUEST_CURRENT = "current"

CHANNEL_ID = "channel-id"
DATA = "data"
FROM = "from"


def now_ms() -> int:
    """Wall-clock milliseconds since the epoch."""
    return int(time.time() * 1000)


@dataclass(frozen=True, order=True)
class Provenance:
    """Last-write-wins ordering key of an update.

    Field order is the comparison order: version first, then timestamp, then
    origin, so ``max()`` over provenances picks the same winner everywhere.
    """
    version: int
    timestamp: int
    origin: str = ""

    def __str__(self) -> str:
        return f"v{self.version}@{self.timestamp}/{self.origin}"


@dataclass(frozen=True)
class SyncMessage:
    """A versioned snapshot of one state identifier."""
    state_id: str
    value: Any
    version: int
    timestamp: int = field(default_factory=now_ms)

    def to_dict(self) -> Dict[str, Any]:
        return {
            STATE_ID: self.state_id,
            VALUE: self.value,
            VERSION: self.version,
            TIMESTAMP: self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "SyncMessage":
        """Parse and validate a wire payload."""
        if not isinstance(data, Mapping):
            raise ValidationError("data", data, "must be a mapping")

        state_id = data.get(STATE_ID)
        if not isinstance(state_id, str) or not state_id:
            raise ValidationError(STATE_ID, state_id, "must be a non-empty string")

        version = data.get(VERSION)
        if isinstance(version, bool) or not isinstance(version, int) or version < 0:
            raise ValidationError(VERSION, version, "must be an integer >= 0")

        timestamp = data.get(TIMESTAMP)
        if isinstance(timestamp, bool) or not isinstance(timestamp, int):
            raise ValidationError(TIMESTAMP, timestamp, "must be an integer")

        return cls(
            state_id=state_id,
            value=data.get(VALUE),
            version=version,
            timestamp=timestamp,
        )

    def provenance(self, origin: str) -> Provenance:
        return Provenance(self.version, self.timestamp, origin)


def is_sync_payload(data: Any) -> bool:
    return isinstance(data, Mapping) and VERSION in data and REQUEST not in data


def is_current_request(data: Any) -> bool:
    return isinstance(data, Mapping) and data.get(REQUEST) == REQUEST_CURRENT


def current_request(state_id: str) -> Dict[str, Any]:
    """Payload asking publishers of ``state_id`` to re-send their value."""
    return {STATE_ID: state_id, REQUEST: REQUEST_CURRENT, TIMESTAMP: now_ms()}


@dataclass(frozen=True)
class ChannelEnvelope:
    """A message as delivered by the transport."""
    channel_id: str
    data: Any
    from_origin: Optional[str] = None

    @property
    def state_id(self) -> Optional[str]:
        if isinstance(self.data, Mapping):
            return self.data.get(STATE_ID)
        return None

    def to_dict(self) -> Dict[str, Any]:
        return {CHANNEL_ID: self.channel_id, DATA: self.data, FROM: self.from_origin}

    @classmethod
    def from_dict(cls, envelope: Mapping[str, Any]) -> "ChannelEnvelope":
        channel_id = envelope.get(CHANNEL_ID)
        if not isinstance(channel_id, str):
            raise ValidationError(CHANNEL_ID, channel_id, "must be a string")
        return cls(
            channel_id=channel_id,
            data=envelope.get(DATA),
            from_origin=envelope.get(FROM),
        )


__all__ = [
    'Provenance',
    'SyncMessage',
    'ChannelEnvelope',
    'current_request',
    'is_current_request',
    'is_sync_payload',
    'now_ms',
]
