from __future__ import annotations

import time
import uuid

from community.guilds import require_guild
from community.mayor_aggregate import resync_members
from config.defaults import MAYOR_AGGREGATE_ROLE_NAME
from config.defaults import SETTLEMENT_TIER_NAMES
from misc.discord_io import fetch_member
from state.schema import MAX_TIER
from state.schema import MIN_TIER
from state.schema import GuildState
from state.schema import RootState
from state.schema import Settlement


EDITABLE_SETTLEMENT_FIELDS = {
    "name",
    "zone",
    "tier",
    "mayor_role_id",
    "citizen_role_id",
    "view_role_id",
    "channel_id",
    "status_card_message_id",
    "buildings",
    "buy_orders",
    "notes",
    "mayor_until_ms",
}

MAYOR_ROLE_REASON = "VerraVoice: settlement mayor change"


class SettlementNotFoundError(LookupError):
    pass


def _now_ms() -> int:
    return int(time.time() * 1000)


def new_settlement_id() -> str:
    return f"settlement_{uuid.uuid4().hex[:12]}"


def tier_name(tier: int) -> str:
    return SETTLEMENT_TIER_NAMES.get(int(tier), "Unknown")


def _validate_tier(tier) -> int:
    if isinstance(tier, bool) or not isinstance(tier, int) or tier < MIN_TIER or tier > MAX_TIER:
        raise ValueError(f"Tier must be an integer {MIN_TIER}..{MAX_TIER}")
    return tier


def find_settlement(guild_state: GuildState | None, key: str | None) -> Settlement | None:
    if guild_state is None or not key:
        return None
    by_id = guild_state.settlements.get(key)
    if by_id is not None:
        return by_id
    lower = key.strip().lower()
    for settlement in guild_state.settlements.values():
        if settlement.name.lower() == lower:
            return settlement
    return None


def require_settlement(guild_state: GuildState, key: str) -> Settlement:
    settlement = find_settlement(guild_state, key)
    if settlement is None:
        raise SettlementNotFoundError(f"Settlement not found: {key}")
    return settlement


async def add_settlement(
    store,
    guild_id: str,
    *,
    name: str,
    zone: str = "",
    tier: int = 0,
    mayor_role_id: str | None = None,
    citizen_role_id: str | None = None,
    view_role_id: str | None = None,
    channel_id: str | None = None,
    now_ms: int | None = None,
) -> Settlement:
    clean_name = (name or "").strip()
    if not clean_name:
        raise ValueError("Settlement name is required")
    tier = _validate_tier(tier)
    now = _now_ms() if now_ms is None else int(now_ms)
    settlement_id = new_settlement_id()

    def _mutate(state: RootState) -> None:
        guild_state = require_guild(state, guild_id)
        if find_settlement(guild_state, clean_name) is not None:
            raise ValueError(f"Settlement already exists: {clean_name}")
        guild_state.settlements[settlement_id] = Settlement(
            id=settlement_id,
            name=clean_name,
            zone=(zone or "").strip(),
            tier=tier,
            mayor_role_id=mayor_role_id or None,
            citizen_role_id=citizen_role_id or None,
            view_role_id=view_role_id or None,
            channel_id=channel_id or None,
            created_at_ms=now,
            updated_at_ms=now,
        )

    await store.mutate(_mutate)
    return store.get().guilds[str(guild_id)].settlements[settlement_id]


async def update_settlement(store, guild_id: str, key: str, *, now_ms: int | None = None, **fields) -> Settlement:
    unknown = sorted(k for k in fields if k not in EDITABLE_SETTLEMENT_FIELDS)
    if unknown:
        raise ValueError(f"Unknown settlement fields: {', '.join(unknown)}")
    if "tier" in fields:
        fields["tier"] = _validate_tier(fields["tier"])
    if "name" in fields:
        fields["name"] = (fields["name"] or "").strip()
        if not fields["name"]:
            raise ValueError("Settlement name is required")
    now = _now_ms() if now_ms is None else int(now_ms)
    found: dict[str, str] = {}

    def _mutate(state: RootState) -> None:
        settlement = require_settlement(require_guild(state, guild_id), key)
        for attr, value in fields.items():
            setattr(settlement, attr, value)
        settlement.updated_at_ms = now
        found["id"] = settlement.id

    await store.mutate(_mutate)
    return store.get().guilds[str(guild_id)].settlements[found["id"]]


async def set_mayor(
    store,
    guild,
    key: str,
    new_mayor_user_id: str | None,
    *,
    guild_name: str | None = None,
    role_name: str = MAYOR_AGGREGATE_ROLE_NAME,
    now_ms: int | None = None,
) -> Settlement:
    """
    Move a settlement's mayor role to ``new_mayor_user_id`` (or clear it with None).

    Platform role edits are best effort; the aggregate role is re-synchronized for both
    the previous and the new holder, then the settlement record is persisted.
    """
    guild_id = str(guild.id)
    settlement = require_settlement(require_guild(store.get(), guild_id), key)
    role_id = settlement.mayor_role_id
    now = _now_ms() if now_ms is None else int(now_ms)

    prev_member = None
    new_member = None
    if role_id:
        if settlement.mayor_user_id and settlement.mayor_user_id != new_mayor_user_id:
            prev_member = await fetch_member(guild, settlement.mayor_user_id)
            if prev_member is not None:
                try:
                    await prev_member.remove_role(role_id, reason=MAYOR_ROLE_REASON)
                except Exception as e:
                    print(f"[MayorRole] remove failed member={prev_member.id} role={role_id}: {e}")
        if new_mayor_user_id:
            new_member = await fetch_member(guild, new_mayor_user_id)
            if new_member is not None:
                try:
                    await new_member.add_role(role_id, reason=MAYOR_ROLE_REASON)
                except Exception as e:
                    print(f"[MayorRole] add failed member={new_member.id} role={role_id}: {e}")
        await resync_members(store, guild, [prev_member, new_member], role_name)

    def _mutate(state: RootState) -> None:
        s = require_guild(state, guild_id).settlements.get(settlement.id)
        if s is None:
            return
        if new_mayor_user_id:
            if s.mayor_user_id != new_mayor_user_id:
                s.mayor_since_ms = now
            s.mayor_user_id = str(new_mayor_user_id)
            s.mayor_guild_name = (guild_name or "").strip() or s.mayor_guild_name
        else:
            s.mayor_user_id = None
            s.mayor_guild_name = None
            s.mayor_since_ms = None
            s.mayor_until_ms = None
        s.updated_at_ms = now

    await store.mutate(_mutate)
    return store.get().guilds[guild_id].settlements[settlement.id]


async def release_mayor_role(store, guild, settlement: Settlement, role_name: str = MAYOR_AGGREGATE_ROLE_NAME) -> None:
    if not (settlement.mayor_role_id and settlement.mayor_user_id):
        return
    prev_member = await fetch_member(guild, settlement.mayor_user_id)
    if prev_member is None:
        return
    try:
        await prev_member.remove_role(settlement.mayor_role_id, reason=MAYOR_ROLE_REASON)
    except Exception as e:
        print(f"[MayorRole] remove failed member={prev_member.id} role={settlement.mayor_role_id}: {e}")
    await resync_members(store, guild, [prev_member], role_name)


async def mark_destroyed(
    store,
    guild,
    key: str,
    *,
    reason: str | None = None,
    role_name: str = MAYOR_AGGREGATE_ROLE_NAME,
    now_ms: int | None = None,
) -> Settlement:
    guild_id = str(guild.id)
    settlement = require_settlement(require_guild(store.get(), guild_id), key)
    await release_mayor_role(store, guild, settlement, role_name)
    now = _now_ms() if now_ms is None else int(now_ms)
    note = (reason or "").strip()

    def _mutate(state: RootState) -> None:
        s = require_guild(state, guild_id).settlements.get(settlement.id)
        if s is None:
            return
        s.tier = 0
        s.mayor_user_id = None
        s.mayor_guild_name = None
        s.mayor_since_ms = None
        s.mayor_until_ms = None
        s.buildings = ""
        s.buy_orders = ""
        if note:
            s.notes = f"Destroyed: {note}"
        s.updated_at_ms = now

    await store.mutate(_mutate)
    print(f"[Settlements] destroyed settlement={settlement.id} guild={guild_id}")
    return store.get().guilds[guild_id].settlements[settlement.id]
