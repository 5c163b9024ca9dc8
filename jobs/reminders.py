from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from typing import Callable

from config.defaults import MIN_REMINDER_TICK_SECONDS
from config.defaults import REMINDER_MISSED_WINDOW_MINUTES
from config.defaults import REMINDER_TICK_SECONDS
from misc.discord_timestamps import format_offset_label
from misc.discord_timestamps import timestamp_tag_from_ms
from state.schema import RootState
from state.schema import ScheduleItem


def _now_ms() -> int:
    return int(time.time() * 1000)


def build_reminder_content(item: ScheduleItem, offset: int) -> str:
    mention = f"<@&{item.mention_role_id}> " if item.mention_role_id else ""
    description = (item.description or "").strip()
    tail = f"\n{description}" if description else ""
    return (
        f"{mention}**{format_offset_label(offset)}** - {item.title} "
        f"({timestamp_tag_from_ms(item.starts_at_ms, 'F')}).{tail}"
    )


@dataclass(slots=True)
class TickReport:
    delivered: int = 0
    skipped_missed: int = 0
    failed: int = 0


class ReminderScheduler:
    """Delivers each reminder offset of each schedule item at most once.

    The durable cursor is ``ScheduleItem.sent_offset_minutes``. An offset is marked sent
    after delivery, after a failed delivery, and when it is found more than
    ``missed_window_minutes`` late (typically after downtime).
    """

    def __init__(
        self,
        *,
        store,
        messaging,
        missed_window_minutes: int = REMINDER_MISSED_WINDOW_MINUTES,
        clock: Callable[[], int] | None = None,
    ) -> None:
        self.store = store
        self.messaging = messaging
        self.missed_window_ms = max(0, int(missed_window_minutes)) * 60_000
        self.clock = clock or _now_ms

    async def _mark_sent(self, guild_id: str, item_id: str, offset: int) -> None:
        def _mutate(state: RootState) -> None:
            guild = state.guilds.get(guild_id)
            item = guild.schedule.get(item_id) if guild else None
            if item is None:
                return
            if offset not in item.sent_offset_minutes:
                item.sent_offset_minutes.append(offset)

        await self.store.mutate(_mutate)

    def _still_scheduled(self, guild_id: str, item_id: str) -> bool:
        guild = self.store.get().guilds.get(guild_id)
        return guild is not None and item_id in guild.schedule

    async def _deliver(self, guild_id: str, item: ScheduleItem, offset: int) -> bool:
        try:
            channel = await self.messaging.fetch_text_channel(guild_id, item.announce_channel_id)
        except Exception as e:
            print(f"[Reminders] channel lookup failed guild={guild_id} item={item.id} channel={item.announce_channel_id}: {e}")
            return False
        if channel is None:
            print(f"[Reminders] channel missing or not text guild={guild_id} item={item.id} channel={item.announce_channel_id}")
            return False
        try:
            await self.messaging.send_text(
                channel,
                build_reminder_content(item, offset),
                mention_role_id=item.mention_role_id,
            )
        except Exception as e:
            print(f"[Reminders] send failed guild={guild_id} item={item.id} offset={offset}: {e}")
            return False
        return True

    async def run_tick(self, now_ms: int | None = None) -> TickReport:
        now = self.clock() if now_ms is None else int(now_ms)
        report = TickReport()
        state = self.store.get()

        for guild_id, guild_state in state.guilds.items():
            if not self.messaging.has_guild(guild_id):
                continue
            for item in guild_state.schedule.values():
                for offset in item.pending_offsets():
                    fire_at = item.fire_at_ms(offset)
                    if now < fire_at:
                        continue
                    if now - fire_at > self.missed_window_ms:
                        await self._mark_sent(guild_id, item.id, offset)
                        report.skipped_missed += 1
                    else:
                        ok = await self._deliver(guild_id, item, offset)
                        await self._mark_sent(guild_id, item.id, offset)
                        if ok:
                            report.delivered += 1
                        else:
                            report.failed += 1
                    if not self._still_scheduled(guild_id, item.id):
                        # cancelled while this tick was running
                        break

        if report.delivered or report.skipped_missed or report.failed:
            print(
                "[Reminders] tick "
                f"delivered={report.delivered} missed={report.skipped_missed} failed={report.failed}"
            )
        return report


async def reminder_loop(
    *,
    scheduler: ReminderScheduler,
    interval_seconds: int = REMINDER_TICK_SECONDS,
) -> None:
    while True:
        try:
            await scheduler.run_tick()
        except Exception as e:
            print(f"[Reminders] loop error: {e}")
        await asyncio.sleep(max(MIN_REMINDER_TICK_SECONDS, int(interval_seconds)))
