from __future__ import annotations

import discord


def _as_int_id(value) -> int | None:
    try:
        out = int(value)
    except (TypeError, ValueError):
        return None
    return out if out > 0 else None


class DiscordMember:
    """Role view over a discord.Member.

    discord.py does not refresh ``member.roles`` after add_roles/remove_roles, so the
    wrapper keeps its own role-id set and updates it when a call succeeds.
    """

    def __init__(self, member: discord.Member) -> None:
        self.member = member
        self.id = str(member.id)
        self._role_ids = {str(r.id) for r in getattr(member, "roles", [])}

    def has_role(self, role_id: str | None) -> bool:
        return bool(role_id) and str(role_id) in self._role_ids

    async def add_role(self, role_id: str, *, reason: str | None = None) -> None:
        rid = _as_int_id(role_id)
        if rid is None:
            raise ValueError(f"Invalid role id: {role_id!r}")
        await self.member.add_roles(discord.Object(id=rid), reason=reason)
        self._role_ids.add(str(rid))

    async def remove_role(self, role_id: str, *, reason: str | None = None) -> None:
        rid = _as_int_id(role_id)
        if rid is None:
            raise ValueError(f"Invalid role id: {role_id!r}")
        await self.member.remove_roles(discord.Object(id=rid), reason=reason)
        self._role_ids.discard(str(rid))


async def fetch_member(guild: discord.Guild, user_id: str | None) -> DiscordMember | None:
    uid = _as_int_id(user_id)
    if uid is None:
        return None
    member = guild.get_member(uid)
    if member is None:
        try:
            member = await guild.fetch_member(uid)
        except (discord.NotFound, discord.Forbidden):
            return None
        except discord.HTTPException as e:
            print(f"[Members] fetch failed guild={guild.id} user={uid}: {e}")
            return None
    return DiscordMember(member)


def role_ids_of(member) -> set[str]:
    return {str(r.id) for r in getattr(member, "roles", [])}


class DiscordMessaging:
    def __init__(self, bot: discord.Client) -> None:
        self.bot = bot

    def _guild(self, guild_id: str) -> discord.Guild | None:
        gid = _as_int_id(guild_id)
        if gid is None:
            return None
        return self.bot.get_guild(gid)

    def has_guild(self, guild_id: str) -> bool:
        return self._guild(guild_id) is not None

    async def fetch_text_channel(self, guild_id: str, channel_id: str) -> discord.TextChannel | None:
        guild = self._guild(guild_id)
        cid = _as_int_id(channel_id)
        if guild is None or cid is None:
            return None
        channel = guild.get_channel(cid)
        if channel is None:
            try:
                channel = await guild.fetch_channel(cid)
            except (discord.NotFound, discord.Forbidden, discord.InvalidData):
                return None
        if not isinstance(channel, discord.TextChannel):
            return None
        return channel

    async def send_text(self, channel: discord.TextChannel, content: str, *, mention_role_id: str | None = None):
        rid = _as_int_id(mention_role_id)
        if rid is not None:
            allowed = discord.AllowedMentions(everyone=False, users=False, roles=[discord.Object(id=rid)])
        else:
            allowed = discord.AllowedMentions.none()
        return await channel.send(content, allowed_mentions=allowed)
