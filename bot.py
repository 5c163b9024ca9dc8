import asyncio
import os

import discord
from discord.ext import commands

from config.settings import apply_env_overrides
from config.settings import default_settings_path
from config.settings import load_env_config
from config.settings import load_runtime_settings
from jobs.reminders import ReminderScheduler
from jobs.reminders import reminder_loop as reminder_loop_service
from misc.discord_io import DiscordMessaging
from misc.events_runtime import register_runtime_events
from misc.runtime_deps import RuntimeDeps
from state.store import StateStore
from state.store import describe_state

# =========================
# ENV
# =========================
ENV = load_env_config(os.environ)

SETTINGS_PATH = ENV.settings_path or default_settings_path()
SETTINGS, SETTINGS_WARNING = load_runtime_settings(SETTINGS_PATH)
if SETTINGS_WARNING:
    print(f"[CFG] {SETTINGS_WARNING}")
SETTINGS = apply_env_overrides(SETTINGS, os.environ)

DATA_DIR = os.path.abspath(SETTINGS.data_dir)

print(
    f"[CFG] data_dir={DATA_DIR} default_tz={SETTINGS.default_timezone} "
    f"tick_s={SETTINGS.reminder_tick_seconds} missed_window_m={SETTINGS.missed_window_minutes} "
    f"mayor_role={SETTINGS.mayor_aggregate_role_name!r} commands_mode={ENV.commands_mode}"
)

# =========================
# STATE
# =========================
store = StateStore(DATA_DIR)

# =========================
# DISCORD BOT
# =========================
intents = discord.Intents.default()
intents.members = True

bot = commands.Bot(command_prefix="!", intents=intents)

reminder_scheduler = ReminderScheduler(
    store=store,
    messaging=DiscordMessaging(bot),
    missed_window_minutes=SETTINGS.missed_window_minutes,
)

async def reminder_loop() -> None:
    return await reminder_loop_service(
        scheduler=reminder_scheduler,
        interval_seconds=SETTINGS.reminder_tick_seconds,
    )

register_runtime_events(
    bot,
    deps=RuntimeDeps(
        store=store,
        settings=SETTINGS,
        reminder_scheduler=reminder_scheduler,
        reminder_loop_func=reminder_loop,
        mayor_aggregate_role_name=SETTINGS.mayor_aggregate_role_name,
    ),
)


async def main() -> None:
    state = await store.load()
    print(f"[State] loaded {store.path} {describe_state(state)}")
    async with bot:
        await bot.start(ENV.discord_token)


if __name__ == "__main__":
    asyncio.run(main())
