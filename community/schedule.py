from __future__ import annotations

import math
import time
import uuid
from datetime import datetime
from zoneinfo import ZoneInfo

from community.guilds import require_guild
from community.guilds import validate_timezone
from community.settlements import release_mayor_role
from community.settlements import require_settlement
from config.defaults import DEFAULT_REMINDER_OFFSETS
from config.defaults import MAYOR_AGGREGATE_ROLE_NAME
from config.defaults import MAX_REMINDER_OFFSET_MINUTES
from config.defaults import UPCOMING_SCHEDULE_LIMIT
from state.schema import WAR_KINDS
from state.schema import GuildState
from state.schema import RootState
from state.schema import ScheduleItem


WHEN_FORMATS = ("%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%dT%H:%M:%S")
HOUR_MS = 60 * 60 * 1000
DAY_MS = 24 * HOUR_MS


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:12]}"


def parse_reminder_offsets(raw: str | None, default: list[int] | tuple[int, ...] = DEFAULT_REMINDER_OFFSETS) -> list[int]:
    if not raw or not raw.strip():
        return list(default)
    out: set[int] = set()
    for part in raw.split(","):
        token = part.strip()
        if not token:
            continue
        try:
            value = float(token)
        except ValueError:
            continue
        if not math.isfinite(value) or value < 0:
            continue
        out.add(min(int(math.floor(value)), MAX_REMINDER_OFFSET_MINUTES))
    if not out:
        return list(default)
    return sorted(out, reverse=True)


def parse_when(raw: str | None, timezone_name: str) -> datetime | None:
    text = (raw or "").strip()
    if not text:
        return None
    tz = ZoneInfo(validate_timezone(timezone_name))
    for fmt in WHEN_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=tz)
        except ValueError:
            continue
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=tz)
    return parsed


def to_epoch_ms(dt: datetime) -> int:
    return int(dt.timestamp() * 1000)


def _new_item(
    *,
    item_id: str,
    title: str,
    announce_channel_id: str,
    starts_at_ms: int,
    created_by_user_id: str,
    created_at_ms: int,
    offsets: list[int],
    item_type: str = "generic",
    settlement_id: str | None = None,
    war_defender_settlement_id: str | None = None,
    war_kind: str | None = None,
    description: str | None = None,
    mention_role_id: str | None = None,
) -> ScheduleItem:
    return ScheduleItem(
        id=item_id,
        type=item_type,
        settlement_id=settlement_id,
        war_defender_settlement_id=war_defender_settlement_id,
        war_kind=war_kind,
        title=title,
        description=description,
        announce_channel_id=str(announce_channel_id),
        mention_role_id=str(mention_role_id) if mention_role_id else None,
        starts_at_ms=int(starts_at_ms),
        reminder_offsets_minutes=list(offsets),
        sent_offset_minutes=[],
        created_by_user_id=str(created_by_user_id),
        created_at_ms=int(created_at_ms),
    )


def _clean_offsets(offsets) -> list[int]:
    out: list[int] = []
    for value in offsets:
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            raise ValueError(f"Invalid reminder offset: {value!r}")
        value = min(value, MAX_REMINDER_OFFSET_MINUTES)
        if value not in out:
            out.append(value)
    return out


async def create_schedule_item(
    store,
    guild_id: str,
    *,
    title: str,
    starts_at_ms: int,
    announce_channel_id: str,
    created_by_user_id: str,
    reminder_offsets: list[int] | None = None,
    default_offsets: list[int] | tuple[int, ...] = DEFAULT_REMINDER_OFFSETS,
    mention_role_id: str | None = None,
    description: str | None = None,
    settlement_id: str | None = None,
    now_ms: int | None = None,
) -> ScheduleItem:
    clean_title = (title or "").strip()
    if not clean_title:
        raise ValueError("Schedule title is required")
    if not announce_channel_id:
        raise ValueError("Announce channel is required")
    offsets = _clean_offsets(reminder_offsets if reminder_offsets is not None else default_offsets)
    if not offsets:
        offsets = _clean_offsets(default_offsets) or list(DEFAULT_REMINDER_OFFSETS)
    now = _now_ms() if now_ms is None else int(now_ms)
    item = _new_item(
        item_id=new_id("sched"),
        title=clean_title,
        announce_channel_id=announce_channel_id,
        starts_at_ms=starts_at_ms,
        created_by_user_id=created_by_user_id,
        created_at_ms=now,
        offsets=offsets,
        description=(description or "").strip() or None,
        mention_role_id=mention_role_id,
        settlement_id=settlement_id,
    )

    def _mutate(state: RootState) -> None:
        require_guild(state, guild_id).schedule[item.id] = item

    await store.mutate(_mutate)
    return store.get().guilds[str(guild_id)].schedule[item.id]


async def cancel_schedule_item(store, guild_id: str, item_id: str) -> bool:
    def _mutate(state: RootState) -> bool:
        return require_guild(state, guild_id).schedule.pop(item_id, None) is not None

    return await store.mutate(_mutate)


def list_upcoming(guild_state: GuildState | None, now_ms: int | None = None, limit: int = UPCOMING_SCHEDULE_LIMIT) -> list[ScheduleItem]:
    if guild_state is None:
        return []
    now = _now_ms() if now_ms is None else int(now_ms)
    items = [i for i in guild_state.schedule.values() if i.starts_at_ms > now - 60_000]
    items.sort(key=lambda i: i.starts_at_ms)
    return items[: max(0, int(limit))]


async def set_election_schedule(
    store,
    guild_id: str,
    settlement_key: str,
    *,
    registration_start_ms: int,
    voting_start_ms: int,
    voting_end_ms: int,
    announce_channel_id: str,
    created_by_user_id: str,
    mention_role_id: str | None = None,
    now_ms: int | None = None,
) -> list[str]:
    """
    Replace a settlement's election reminders with a fresh set of items.

    Items are immutable by id: the previous election items are deleted and new ones
    created, so no stale sent-offset cursor carries over.
    """
    if not (registration_start_ms < voting_start_ms < voting_end_ms):
        raise ValueError("Times must be increasing: registration_start < voting_start < voting_end")
    now = _now_ms() if now_ms is None else int(now_ms)
    if voting_end_ms <= now:
        raise ValueError("Voting end must be in the future")

    ends_soon_at = voting_end_ms - DAY_MS
    created: list[str] = []

    def _mutate(state: RootState) -> None:
        guild_state = require_guild(state, guild_id)
        settlement = require_settlement(guild_state, settlement_key)
        for old_id in settlement.election.schedule_item_ids:
            guild_state.schedule.pop(old_id, None)

        plan = [
            ("election_reg", f"{settlement.name}: Election registration opens", registration_start_ms),
            ("election_voteopen", f"{settlement.name}: Election voting is open", voting_start_ms),
        ]
        if ends_soon_at > now:
            plan.append(("election_voteends", f"{settlement.name}: Voting ends in 24h", ends_soon_at))
        plan.append(("election_voteclose", f"{settlement.name}: Voting has ended", voting_end_ms))

        for prefix, title, starts_at in plan:
            item = _new_item(
                item_id=new_id(prefix),
                item_type="election",
                settlement_id=settlement.id,
                title=title,
                announce_channel_id=announce_channel_id,
                mention_role_id=mention_role_id,
                starts_at_ms=starts_at,
                offsets=[0],
                created_by_user_id=created_by_user_id,
                created_at_ms=now,
            )
            guild_state.schedule[item.id] = item
            created.append(item.id)

        settlement.election.registration_start_ms = registration_start_ms
        settlement.election.voting_start_ms = voting_start_ms
        settlement.election.voting_end_ms = voting_end_ms
        settlement.election.schedule_item_ids = list(created)
        settlement.updated_at_ms = now

    await store.mutate(_mutate)
    return created


async def clear_election_schedule(store, guild_id: str, settlement_key: str, *, now_ms: int | None = None) -> int:
    now = _now_ms() if now_ms is None else int(now_ms)

    def _mutate(state: RootState) -> int:
        guild_state = require_guild(state, guild_id)
        settlement = require_settlement(guild_state, settlement_key)
        removed = 0
        for old_id in settlement.election.schedule_item_ids:
            if guild_state.schedule.pop(old_id, None) is not None:
                removed += 1
        settlement.election.registration_start_ms = None
        settlement.election.voting_start_ms = None
        settlement.election.voting_end_ms = None
        settlement.election.schedule_item_ids = []
        settlement.updated_at_ms = now
        return removed

    return await store.mutate(_mutate)


async def trigger_unscheduled_election(
    store,
    guild,
    settlement_key: str,
    *,
    announce_channel_id: str,
    created_by_user_id: str,
    mention_role_id: str | None = None,
    reason: str | None = None,
    role_name: str = MAYOR_AGGREGATE_ROLE_NAME,
    now_ms: int | None = None,
) -> list[str]:
    """Strip the current mayor's role and schedule voting for +24h, closing at +48h."""
    guild_id = str(guild.id)
    settlement = require_settlement(require_guild(store.get(), guild_id), settlement_key)
    await release_mayor_role(store, guild, settlement, role_name)

    now = _now_ms() if now_ms is None else int(now_ms)
    vote_start = now + DAY_MS
    vote_end = now + 2 * DAY_MS
    note = (reason or "").strip() or None
    created: list[str] = []

    def _mutate(state: RootState) -> None:
        guild_state = require_guild(state, guild_id)
        s = guild_state.settlements.get(settlement.id)
        if s is None:
            return
        for old_id in s.election.schedule_item_ids:
            guild_state.schedule.pop(old_id, None)
        for prefix, title, starts_at in (
            ("election_voteopen", f"{s.name}: Unscheduled election voting is open", vote_start),
            ("election_voteclose", f"{s.name}: Unscheduled election voting ends", vote_end),
        ):
            item = _new_item(
                item_id=new_id(prefix),
                item_type="election",
                settlement_id=s.id,
                title=title,
                description=note,
                announce_channel_id=announce_channel_id,
                mention_role_id=mention_role_id,
                starts_at_ms=starts_at,
                offsets=[0],
                created_by_user_id=created_by_user_id,
                created_at_ms=now,
            )
            guild_state.schedule[item.id] = item
            created.append(item.id)
        s.mayor_user_id = None
        s.mayor_guild_name = None
        s.mayor_since_ms = None
        s.mayor_until_ms = None
        s.election.registration_start_ms = now
        s.election.voting_start_ms = vote_start
        s.election.voting_end_ms = vote_end
        s.election.schedule_item_ids = list(created)
        s.updated_at_ms = now

    await store.mutate(_mutate)
    return created


async def schedule_war(
    store,
    guild_id: str,
    *,
    attacker_key: str,
    defender_key: str,
    kind: str,
    title: str,
    starts_at_ms: int,
    announce_channel_id: str,
    created_by_user_id: str,
    description: str | None = None,
    mention_role_id: str | None = None,
    reminder_offsets: list[int] | None = None,
    default_offsets: list[int] | tuple[int, ...] = DEFAULT_REMINDER_OFFSETS,
    now_ms: int | None = None,
) -> ScheduleItem:
    if kind not in WAR_KINDS:
        raise ValueError(f"War kind must be one of {sorted(WAR_KINDS)}")
    clean_title = (title or "").strip()
    if not clean_title:
        raise ValueError("War title is required")
    offsets = _clean_offsets(reminder_offsets if reminder_offsets is not None else default_offsets)
    if not offsets:
        offsets = _clean_offsets(default_offsets) or list(DEFAULT_REMINDER_OFFSETS)
    now = _now_ms() if now_ms is None else int(now_ms)
    item_id = new_id("war")

    def _mutate(state: RootState) -> None:
        guild_state = require_guild(state, guild_id)
        attacker = require_settlement(guild_state, attacker_key)
        defender = require_settlement(guild_state, defender_key)
        if attacker.id == defender.id:
            raise ValueError("A settlement cannot go to war with itself")
        label = "Siege" if kind == "siege" else "War"
        guild_state.schedule[item_id] = _new_item(
            item_id=item_id,
            item_type="war",
            settlement_id=attacker.id,
            war_defender_settlement_id=defender.id,
            war_kind=kind,
            title=f"{label}: {attacker.name} vs {defender.name} - {clean_title}",
            description=(description or "").strip() or None,
            announce_channel_id=announce_channel_id,
            mention_role_id=mention_role_id,
            starts_at_ms=starts_at_ms,
            offsets=offsets,
            created_by_user_id=created_by_user_id,
            created_at_ms=now,
        )

    await store.mutate(_mutate)
    return store.get().guilds[str(guild_id)].schedule[item_id]
