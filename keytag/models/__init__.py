"""Value types shared across the keytag package."""
from .pairing_candidate import PairingCandidate
from .session_state import ConnectionPhase, SessionSnapshot
from .tag_identity import TagIdentity, to_connection_id

__all__ = [
    "ConnectionPhase",
    "PairingCandidate",
    "SessionSnapshot",
    "TagIdentity",
    "to_connection_id",
]
