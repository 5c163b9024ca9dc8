from __future__ import annotations

"""Keeps the aggregate "Mayor" role equal to: member holds any settlement mayor role."""

from config.defaults import MAYOR_AGGREGATE_ROLE_NAME
from state.schema import GuildState
from state.schema import RootState


AGGREGATE_REASON = "VerraVoice: sync aggregate Mayor role"


def all_settlement_mayor_role_ids(guild_state: GuildState | None) -> list[str]:
    if guild_state is None:
        return []
    out: list[str] = []
    for settlement in guild_state.settlements.values():
        rid = settlement.mayor_role_id
        if rid and rid not in out:
            out.append(rid)
    return out


async def sync_mayor_aggregate_for_member(
    member,
    aggregate_role_id: str,
    source_role_ids: list[str] | set[str],
) -> str | None:
    """
    Grant or revoke the aggregate role so it matches the member's source roles.

    Returns "added", "removed", or None when nothing changed (or the call failed;
    the next role change re-evaluates).
    """
    if member is None or not aggregate_role_id:
        return None

    should_have = any(member.has_role(rid) for rid in source_role_ids)
    has = member.has_role(aggregate_role_id)

    if should_have and not has:
        try:
            await member.add_role(aggregate_role_id, reason=AGGREGATE_REASON)
        except Exception as e:
            print(f"[MayorRole] grant failed member={member.id} role={aggregate_role_id}: {e}")
            return None
        return "added"
    if not should_have and has:
        try:
            await member.remove_role(aggregate_role_id, reason=AGGREGATE_REASON)
        except Exception as e:
            print(f"[MayorRole] revoke failed member={member.id} role={aggregate_role_id}: {e}")
            return None
        return "removed"
    return None


async def ensure_mayor_aggregate_role(guild, role_name: str = MAYOR_AGGREGATE_ROLE_NAME) -> str:
    wanted = role_name.strip().lower()
    for role in guild.roles:
        if role.name.lower() == wanted:
            if not role.hoist:
                try:
                    await role.edit(hoist=True, reason="VerraVoice: show mayors separately")
                except Exception as e:
                    print(f"[MayorRole] could not hoist role={role.id} guild={guild.id}: {e}")
            return str(role.id)

    created = await guild.create_role(
        name=role_name,
        hoist=True,
        mentionable=False,
        reason="VerraVoice: create aggregate Mayor role",
    )
    print(f"[MayorRole] created aggregate role={created.id} guild={guild.id}")
    return str(created.id)


async def get_or_create_mayor_aggregate_role_id(
    store,
    guild,
    role_name: str = MAYOR_AGGREGATE_ROLE_NAME,
) -> str | None:
    guild_id = str(guild.id)
    guild_state = store.get().guilds.get(guild_id)
    if guild_state is None:
        return None
    if guild_state.config.mayor_aggregate_role_id:
        return guild_state.config.mayor_aggregate_role_id

    try:
        role_id = await ensure_mayor_aggregate_role(guild, role_name)
    except Exception as e:
        print(f"[MayorRole] could not ensure aggregate role guild={guild_id}: {e}")
        return None

    def _record(state: RootState) -> None:
        g = state.guilds.get(guild_id)
        if g is not None:
            g.config.mayor_aggregate_role_id = role_id

    await store.mutate(_record)
    return role_id


async def resync_members(
    store,
    guild,
    members,
    role_name: str = MAYOR_AGGREGATE_ROLE_NAME,
) -> list[str | None]:
    """Run the synchronizer for members whose settlement roles were just edited."""
    members = [m for m in members if m is not None]
    if not members:
        return []
    aggregate_role_id = await get_or_create_mayor_aggregate_role_id(store, guild, role_name)
    if not aggregate_role_id:
        return []
    source_role_ids = all_settlement_mayor_role_ids(store.get().guilds.get(str(guild.id)))
    out: list[str | None] = []
    for member in members:
        out.append(await sync_mayor_aggregate_for_member(member, aggregate_role_id, source_role_ids))
    return out


async def handle_member_role_update(
    store,
    guild,
    before_role_ids: set[str],
    member,
    role_name: str = MAYOR_AGGREGATE_ROLE_NAME,
) -> str | None:
    """Passive listener: re-sync only when a settlement mayor role changed on the member."""
    guild_state = store.get().guilds.get(str(guild.id))
    if guild_state is None:
        return None
    source_role_ids = all_settlement_mayor_role_ids(guild_state)
    if not source_role_ids:
        return None
    changed = any((rid in before_role_ids) != member.has_role(rid) for rid in source_role_ids)
    if not changed:
        return None

    aggregate_role_id = await get_or_create_mayor_aggregate_role_id(store, guild, role_name)
    if not aggregate_role_id:
        return None
    return await sync_mayor_aggregate_for_member(member, aggregate_role_id, source_role_ids)
