from __future__ import annotations

import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Mapping

import yaml

from config.defaults import DEFAULT_DATA_DIR
from config.defaults import DEFAULT_REMINDER_OFFSETS
from config.defaults import DEFAULT_TIMEZONE
from config.defaults import MAYOR_AGGREGATE_ROLE_NAME
from config.defaults import MAX_REMINDER_OFFSET_MINUTES
from config.defaults import MIN_REMINDER_TICK_SECONDS
from config.defaults import REMINDER_MISSED_WINDOW_MINUTES
from config.defaults import REMINDER_TICK_SECONDS


@dataclass(slots=True)
class RuntimeSettings:
    data_dir: str = DEFAULT_DATA_DIR
    default_timezone: str = DEFAULT_TIMEZONE
    reminder_tick_seconds: int = REMINDER_TICK_SECONDS
    missed_window_minutes: int = REMINDER_MISSED_WINDOW_MINUTES
    default_reminder_offsets: list[int] = field(default_factory=lambda: list(DEFAULT_REMINDER_OFFSETS))
    mayor_aggregate_role_name: str = MAYOR_AGGREGATE_ROLE_NAME


@dataclass(frozen=True, slots=True)
class EnvConfig:
    discord_token: str
    commands_mode: str
    settings_path: str | None


def default_settings_path() -> str:
    # repo-root/config/verravoice.yml when running from a source checkout.
    return str(Path(__file__).resolve().parent / "verravoice.yml")


def _as_int(value: Any, default: int, *, minimum: int = 0) -> int:
    if isinstance(value, bool):
        return default
    try:
        out = int(value)
    except (TypeError, ValueError):
        return default
    return out if out >= minimum else default


def _as_offsets(value: Any, default: list[int]) -> list[int]:
    if not isinstance(value, list):
        return list(default)
    out: list[int] = []
    for item in value:
        if isinstance(item, bool) or not isinstance(item, int):
            continue
        if item < 0 or item > MAX_REMINDER_OFFSET_MINUTES or item in out:
            continue
        out.append(item)
    return out or list(default)


def load_runtime_settings(path: str | Path | None) -> tuple[RuntimeSettings, str | None]:
    """
    Returns (settings, warning_message). warning_message is None on clean load.
    """
    defaults = RuntimeSettings()
    if not path:
        return (defaults, None)

    p = Path(path)
    if not p.exists():
        return (defaults, f"Settings file not found at {p}; using built-in defaults.")

    try:
        payload = yaml.safe_load(p.read_text(encoding="utf-8"))
    except Exception as exc:
        return (defaults, f"Failed to read settings from {p}: {exc}; using built-in defaults.")

    if payload is None:
        return (defaults, None)
    if not isinstance(payload, dict):
        return (defaults, f"Invalid settings format in {p}; using built-in defaults.")

    reminders = payload.get("reminders") if isinstance(payload.get("reminders"), dict) else {}
    roles = payload.get("roles") if isinstance(payload.get("roles"), dict) else {}

    settings = RuntimeSettings(
        data_dir=str(payload.get("data_dir") or defaults.data_dir).strip() or defaults.data_dir,
        default_timezone=str(payload.get("default_timezone") or defaults.default_timezone).strip()
        or defaults.default_timezone,
        reminder_tick_seconds=_as_int(
            reminders.get("tick_seconds"),
            defaults.reminder_tick_seconds,
            minimum=MIN_REMINDER_TICK_SECONDS,
        ),
        missed_window_minutes=_as_int(reminders.get("missed_window_minutes"), defaults.missed_window_minutes),
        default_reminder_offsets=_as_offsets(reminders.get("default_offsets"), defaults.default_reminder_offsets),
        mayor_aggregate_role_name=str(roles.get("mayor_aggregate_name") or defaults.mayor_aggregate_role_name).strip()
        or defaults.mayor_aggregate_role_name,
    )
    return (settings, None)


def _first_env(env: Mapping[str, str], *names: str) -> str | None:
    for name in names:
        raw = env.get(name)
        if raw is not None and raw.strip():
            return raw.strip()
    return None


def apply_env_overrides(settings: RuntimeSettings, env: Mapping[str, str] | None = None) -> RuntimeSettings:
    env = os.environ if env is None else env
    out = replace(settings, default_reminder_offsets=list(settings.default_reminder_offsets))

    data_dir = _first_env(env, "VERRA_DATA_DIR", "DATA_DIR")
    if data_dir:
        out.data_dir = data_dir

    tz = _first_env(env, "VERRA_DEFAULT_TIMEZONE", "DEFAULT_TIMEZONE")
    if tz:
        out.default_timezone = tz

    raw_tick = _first_env(env, "VERRA_REMINDER_TICK_SECONDS")
    if raw_tick is not None:
        tick = _as_int(raw_tick, -1, minimum=MIN_REMINDER_TICK_SECONDS)
        if tick < 0:
            print(f"[CFG] invalid VERRA_REMINDER_TICK_SECONDS={raw_tick!r}; keeping {out.reminder_tick_seconds}")
        else:
            out.reminder_tick_seconds = tick

    raw_window = _first_env(env, "VERRA_MISSED_WINDOW_MINUTES")
    if raw_window is not None:
        window = _as_int(raw_window, -1)
        if window < 0:
            print(f"[CFG] invalid VERRA_MISSED_WINDOW_MINUTES={raw_window!r}; keeping {out.missed_window_minutes}")
        else:
            out.missed_window_minutes = window

    return out


def load_env_config(env: Mapping[str, str] | None = None) -> EnvConfig:
    env = os.environ if env is None else env
    token = _first_env(env, "DISCORD_TOKEN")
    if not token:
        raise RuntimeError("Missing DISCORD_TOKEN env var")

    dev_guild_id = _first_env(env, "DEV_GUILD_ID")
    mode = (_first_env(env, "COMMANDS_MODE") or "").lower()
    if mode not in {"global", "guild"}:
        if mode:
            print(f"[CFG] invalid COMMANDS_MODE={mode!r}; deriving from DEV_GUILD_ID")
        mode = "guild" if dev_guild_id else "global"

    return EnvConfig(
        discord_token=token,
        commands_mode=mode,
        settings_path=_first_env(env, "VERRA_SETTINGS_PATH"),
    )
