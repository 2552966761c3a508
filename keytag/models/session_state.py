from __future__ import annotations

from dataclasses import asdict, dataclass
from enum import Enum
from typing import Any, Dict, Optional


class ConnectionPhase(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


@dataclass(frozen=True, slots=True)
class SessionSnapshot:
    """Read-only view of a session, for the API and CLI."""

    address: str
    phase: ConnectionPhase
    signal_strength: Optional[int]
    ring_active: bool
    was_previously_disconnected: bool
    reconnect_pending: bool
    ring_timer_pending: bool

    def to_dict(self) -> Dict[str, Any]:
        payload = asdict(self)
        payload["phase"] = self.phase.value
        return payload
