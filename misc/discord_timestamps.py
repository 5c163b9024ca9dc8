from __future__ import annotations

"""Builds Discord <t:...> timestamp tags and the relative labels used in reminder text."""

from datetime import datetime
from datetime import timezone


DISCORD_TIMESTAMP_STYLES = {"t", "T", "d", "D", "f", "F", "R"}


def _validate_style(style: str) -> str:
    clean = str(style or "").strip() or "f"
    if clean not in DISCORD_TIMESTAMP_STYLES:
        raise ValueError(f"Invalid Discord timestamp style: {clean}")
    return clean


def _require_aware_datetime(value: datetime, *, arg_name: str) -> datetime:
    if not isinstance(value, datetime):
        raise ValueError(f"{arg_name} must be a datetime")
    if value.tzinfo is None or value.utcoffset() is None:
        raise ValueError(f"{arg_name} must be timezone-aware")
    return value


def format_discord_timestamp(dt: datetime, style: str = "f") -> str:
    aware = _require_aware_datetime(dt, arg_name="dt")
    style_clean = _validate_style(style)
    return f"<t:{int(aware.timestamp())}:{style_clean}>"


def timestamp_tag_from_ms(epoch_ms: int, style: str = "F") -> str:
    # floor to whole seconds, negative values included
    dt = datetime.fromtimestamp(int(epoch_ms) // 1000, tz=timezone.utc)
    return format_discord_timestamp(dt, style=style)


def format_offset_label(offset_minutes: int) -> str:
    """
    Label shown in front of a reminder: "Now", "In 1d", "In 2h", "In 15m".

    Whole days win over whole hours, which win over minutes.
    """
    offset = int(offset_minutes)
    if offset == 0:
        return "Now"
    if offset % (60 * 24) == 0:
        return f"In {offset // (60 * 24)}d"
    if offset % 60 == 0:
        return f"In {offset // 60}h"
    return f"In {offset}m"
