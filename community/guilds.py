from __future__ import annotations

from zoneinfo import ZoneInfo
from zoneinfo import ZoneInfoNotFoundError

from config.defaults import DEFAULT_TIMEZONE
from state.schema import CONFIG_ID_ATTRS
from state.schema import GuildState
from state.schema import RootState


class GuildNotSetUpError(LookupError):
    def __init__(self, guild_id: str):
        super().__init__(f"Guild {guild_id} is not set up; run setup first")
        self.guild_id = guild_id


def require_guild(state: RootState, guild_id: str) -> GuildState:
    guild_state = state.guilds.get(str(guild_id))
    if guild_state is None:
        raise GuildNotSetUpError(str(guild_id))
    return guild_state


def validate_timezone(timezone_name: str | None) -> str:
    clean = str(timezone_name or "").strip() or DEFAULT_TIMEZONE
    try:
        ZoneInfo(clean)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {clean}") from exc
    return clean


async def ensure_guild_state(
    store,
    guild_id: str,
    *,
    timezone: str | None = None,
    default_timezone: str = DEFAULT_TIMEZONE,
) -> GuildState:
    guild_id = str(guild_id)
    tz = validate_timezone(timezone) if timezone else None

    def _mutate(state: RootState) -> None:
        guild_state = state.guilds.get(guild_id)
        if guild_state is None:
            guild_state = GuildState()
            guild_state.config.timezone = tz or validate_timezone(default_timezone)
            state.guilds[guild_id] = guild_state
            print(f"[Setup] created state for guild={guild_id}")
        elif tz:
            guild_state.config.timezone = tz

    await store.mutate(_mutate)
    return store.get().guilds[guild_id]


async def update_guild_config(store, guild_id: str, **fields) -> None:
    unknown = sorted(k for k in fields if k not in CONFIG_ID_ATTRS and k != "timezone")
    if unknown:
        raise ValueError(f"Unknown guild config fields: {', '.join(unknown)}")
    if "timezone" in fields:
        fields["timezone"] = validate_timezone(fields["timezone"])
    for key, value in fields.items():
        if key != "timezone" and value is not None:
            fields[key] = str(value)

    def _mutate(state: RootState) -> None:
        config = require_guild(state, guild_id).config
        for key, value in fields.items():
            setattr(config, key, value)

    await store.mutate(_mutate)
