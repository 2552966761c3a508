from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Optional

from keytag import const


@dataclass(frozen=True, slots=True)
class PairingCandidate:
    """A tag found during a pairing scan."""

    address: str
    manufacturer_data: str
    rssi: Optional[int] = None

    @property
    def name(self) -> str:
        return f"{const.DISPLAY_PREFIX} {self.address}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "data": {"id": self.address},
            "store": {
                "address": self.address,
                "manufacturer_data": self.manufacturer_data,
            },
            "rssi": self.rssi,
        }
