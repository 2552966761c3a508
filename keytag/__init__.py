"""keytag: connection manager for BLE key-finder tags."""

__version__ = "0.1.0"
