from __future__ import annotations

import asyncio

import discord

from community.mayor_aggregate import handle_member_role_update
from misc.discord_io import DiscordMember
from misc.discord_io import role_ids_of
from misc.runtime_deps import RuntimeDeps


async def on_member_roles_changed(deps: RuntimeDeps, before: discord.Member, after: discord.Member) -> str | None:
    before_ids = role_ids_of(before)
    if before_ids == role_ids_of(after):
        return None
    try:
        return await handle_member_role_update(
            deps.store,
            after.guild,
            before_ids,
            DiscordMember(after),
            deps.mayor_aggregate_role_name,
        )
    except Exception as e:
        print(f"[Events] member update handling failed guild={after.guild.id} member={after.id}: {e}")
        return None


def register_runtime_events(bot: discord.Client, *, deps: RuntimeDeps) -> None:
    @bot.event
    async def on_ready():
        print(f"VerraVoice is online as {bot.user}")
        if not getattr(bot, "_reminder_task", None):
            bot._reminder_task = asyncio.create_task(deps.reminder_loop_func())
            print(f"[Reminders] scheduler loop started (tick_s={deps.settings.reminder_tick_seconds})")

    @bot.event
    async def on_member_update(before: discord.Member, after: discord.Member):
        await on_member_roles_changed(deps, before, after)
