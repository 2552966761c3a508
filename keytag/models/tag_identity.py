from __future__ import annotations

import re
from dataclasses import dataclass

_ADDRESS_RE = re.compile(r"[0-9A-Fa-f]{2}(?::[0-9A-Fa-f]{2}){5}")


def to_connection_id(address: str) -> str:
    """Strip separators and lowercase: ``AA:BB:..`` -> ``aabb..``."""
    return address.replace(":", "").replace("-", "").lower()


@dataclass(frozen=True, slots=True)
class TagIdentity:
    """Hardware identity of one paired tag; never mutated after pairing."""

    address: str

    def __post_init__(self) -> None:
        if not _ADDRESS_RE.fullmatch(self.address):
            raise ValueError(f"not a 48-bit colon-hex address: {self.address!r}")
        object.__setattr__(self, "address", self.address.upper())

    @property
    def connection_id(self) -> str:
        return to_connection_id(self.address)

    def __str__(self) -> str:
        return self.address
