# insulctrl/const.py
"""Constants shared by the client and the appliance."""

from __future__ import annotations

from typing import Final

# ────────────────────────────────────────────────────────────────
# GATT identifiers (single characteristic: write commands, notify state)
# ────────────────────────────────────────────────────────────────
SERVICE_UUID: Final = "0000aaaa-0000-1000-8000-00805f9b34fb"
CHAR_UUID_CMD: Final = "0000bbbb-0000-1000-8000-00805f9b34fb"

# ────────────────────────────────────────────────────────────────
# Link handling
# ────────────────────────────────────────────────────────────────
DEFAULT_ATTEMPTS = 3
SCAN_TIMEOUT = 10.0

# ────────────────────────────────────────────────────────────────
# Timers
# ────────────────────────────────────────────────────────────────
TICK_INTERVAL = 1.0      # simulated appliance clock, 1 Hz
REFRESH_INTERVAL = 1.0   # render tick

# ────────────────────────────────────────────────────────────────
# Defaults
# ────────────────────────────────────────────────────────────────
DEFAULT_ALARM_HOUR = 7
DEFAULT_ALARM_MINUTE = 30
COUNTDOWN_PLACEHOLDER = "--:--:--"
SECONDS_PER_DAY = 24 * 60 * 60

# Diagnostic ring sizes per wire profile
LOG_CAPACITY_JSON = 50
LOG_CAPACITY_COMPACT = 20

# Device address that selects the simulated appliance in the CLI
SIMULATED_ADDRESS = "sim"
