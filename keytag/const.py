"""Protocol and hub constants for iTAG key-finder tags."""
from __future__ import annotations

# iTAG firmware pads its advertised name to 16 characters.
PRODUCT_NAME = "iTAG            "
DISPLAY_PREFIX = "iTAG"

# GATT layout
CONTROL_SERVICE_UUID = "0000ffe0-0000-1000-8000-00805f9b34fb"
BUTTON_CHAR_UUID = "0000ffe1-0000-1000-8000-00805f9b34fb"
LINK_LOSS_CHAR_UUID = "0000ffe2-0000-1000-8000-00805f9b34fb"
ALERT_SERVICE_UUID = "00001802-0000-1000-8000-00805f9b34fb"
ALERT_LEVEL_CHAR_UUID = "00002a06-0000-1000-8000-00805f9b34fb"

LINK_LOSS_DISABLE = bytes([0x00])
ALERT_START = bytes([0x02])
ALERT_STOP = bytes([0x00])

# Timings (seconds)
DEFAULT_RECONNECT_DELAY = 7.0
DEFAULT_RING_DURATION = 10.0
DEFAULT_RSSI_INTERVAL = 5.0
DEFAULT_SCAN_TIMEOUT = 5.0
DEFAULT_CONNECT_TIMEOUT = 10.0

# Hub capabilities
CAP_RING = "ring"
CAP_SIGNAL_STRENGTH = "measure_signal_strength"
CAP_ALARM_DISCONNECTED = "alarm_disconnected"

CAPABILITIES = {
    CAP_RING: bool,
    CAP_SIGNAL_STRENGTH: int,
    CAP_ALARM_DISCONNECTED: bool,
}

# Automation
TRIGGER_DEVICE_DISCONNECTED = "device_disconnected"
TRIGGER_DEVICE_RECONNECTED = "device_reconnected"
ACTION_START_RINGING = "start_ringing"
ACTION_STOP_RINGING = "stop_ringing"

TRIGGERS = (TRIGGER_DEVICE_DISCONNECTED, TRIGGER_DEVICE_RECONNECTED)
ACTIONS = (ACTION_START_RINGING, ACTION_STOP_RINGING)
