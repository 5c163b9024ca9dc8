from __future__ import annotations

# State file
STATE_FILENAME = "state.json"
STATE_VERSION = 1
DEFAULT_DATA_DIR = "data"

DEFAULT_TIMEZONE = "UTC"

# Reminders
DEFAULT_REMINDER_OFFSETS = (1440, 60, 15, 0)
MAX_REMINDER_OFFSET_MINUTES = 60 * 24 * 60
REMINDER_MISSED_WINDOW_MINUTES = 5
REMINDER_TICK_SECONDS = 60
MIN_REMINDER_TICK_SECONDS = 10
UPCOMING_SCHEDULE_LIMIT = 25

# Roles
MAYOR_AGGREGATE_ROLE_NAME = "Mayor"

SETTLEMENT_TIER_NAMES = {
    0: "Wilderness",
    1: "Expedition",
    2: "Encampment",
    3: "Village",
    4: "Town",
    5: "City",
}
