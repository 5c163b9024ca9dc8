"""Typed state tree persisted to ``state.json``.

The on-disk document keeps camelCase keys::

    {"version": 1, "guilds": {"<guildId>": {"config": {...}, "settlements": {...},
     "mayorRequests": {...}, "roleRequests": {...}, "schedule": {...}}}}

Parsing rules:
- missing keys take their defaults, so older files keep loading;
- unknown keys are dropped;
- a present value of the wrong shape raises ``CorruptStateError``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from config.defaults import DEFAULT_REMINDER_OFFSETS
from config.defaults import DEFAULT_TIMEZONE
from config.defaults import STATE_VERSION


SCHEDULE_ITEM_TYPES = {"generic", "election", "war"}
WAR_KINDS = {"war", "siege"}
REQUEST_STATUSES = {"pending", "approved", "denied", "canceled"}
ROLE_REQUEST_TYPES = {"guild_leader", "guild_officer"}
MIN_TIER = 0
MAX_TIER = 5


class CorruptStateError(ValueError):
    pass


def _fail(where: str, key: str, expected: str) -> CorruptStateError:
    return CorruptStateError(f"{where}.{key}: expected {expected}")


def _is_int(value: Any) -> bool:
    return isinstance(value, int) and not isinstance(value, bool)


def _obj(raw: Any, where: str) -> dict[str, Any]:
    if not isinstance(raw, dict):
        raise CorruptStateError(f"{where}: expected object")
    return raw


def _req_str(raw: dict[str, Any], key: str, where: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value:
        raise _fail(where, key, "non-empty string")
    return value


def _opt_id(raw: dict[str, Any], key: str, where: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str) or not value:
        raise _fail(where, key, "non-empty string or null")
    return value


def _text(raw: dict[str, Any], key: str, where: str, default: str = "") -> str:
    value = raw.get(key)
    if value is None:
        return default
    if not isinstance(value, str):
        raise _fail(where, key, "string")
    return value


def _opt_text(raw: dict[str, Any], key: str, where: str) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise _fail(where, key, "string or null")
    return value


def _req_int(raw: dict[str, Any], key: str, where: str) -> int:
    value = raw.get(key)
    if not _is_int(value):
        raise _fail(where, key, "integer")
    return value


def _opt_int(raw: dict[str, Any], key: str, where: str) -> int | None:
    value = raw.get(key)
    if value is None:
        return None
    if not _is_int(value):
        raise _fail(where, key, "integer or null")
    return value


def _enum(raw: dict[str, Any], key: str, where: str, allowed: set[str], default: str) -> str:
    value = raw.get(key)
    if value is None:
        return default
    if value not in allowed:
        raise _fail(where, key, f"one of {sorted(allowed)}")
    return value


def _opt_enum(raw: dict[str, Any], key: str, where: str, allowed: set[str]) -> str | None:
    value = raw.get(key)
    if value is None:
        return None
    if value not in allowed:
        raise _fail(where, key, f"one of {sorted(allowed)} or null")
    return value


def _offsets(raw: dict[str, Any], key: str, where: str, default: list[int]) -> list[int]:
    value = raw.get(key)
    if value is None:
        return list(default)
    if not isinstance(value, list):
        raise _fail(where, key, "list of integers")
    out: list[int] = []
    for item in value:
        if not _is_int(item) or item < 0:
            raise _fail(where, key, "list of non-negative integers")
        if item not in out:
            out.append(item)
    return out


def _str_list(raw: dict[str, Any], key: str, where: str) -> list[str]:
    value = raw.get(key)
    if value is None:
        return []
    if not isinstance(value, list) or not all(isinstance(x, str) for x in value):
        raise _fail(where, key, "list of strings")
    return list(value)


def _str_map(raw: dict[str, Any], key: str, where: str) -> dict[str, str]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict) or not all(isinstance(v, str) for v in value.values()):
        raise _fail(where, key, "mapping of strings")
    return {str(k): v for k, v in value.items()}


def _records(raw: dict[str, Any], key: str, where: str, parse) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise _fail(where, key, "object")
    return {str(k): parse(v, f"{where}.{key}[{k}]") for k, v in value.items()}


# attribute name -> persisted key, all nullable ids
_CONFIG_ID_FIELDS = (
    ("settlements_category_id", "settlementsCategoryId"),
    ("moderation_category_id", "moderationCategoryId"),
    ("announcements_channel_id", "announcementsChannelId"),
    ("admin_role_id", "adminRoleId"),
    ("moderator_role_id", "moderatorRoleId"),
    ("mayor_aggregate_role_id", "mayorAggregateRoleId"),
    ("mayor_how_to_channel_id", "mayorHowToChannelId"),
    ("mayor_how_to_message_id", "mayorHowToMessageId"),
    ("admin_chat_channel_id", "adminChatChannelId"),
    ("moderator_chat_channel_id", "moderatorChatChannelId"),
    ("all_mayors_channel_id", "allMayorsChannelId"),
    ("guild_leadership_channel_id", "guildLeadershipChannelId"),
    ("info_category_id", "infoCategoryId"),
    ("general_category_id", "generalCategoryId"),
    ("server_announcements_channel_id", "serverAnnouncementsChannelId"),
    ("rules_channel_id", "rulesChannelId"),
    ("rules_message_id", "rulesMessageId"),
    ("self_assign_channel_id", "selfAssignChannelId"),
    ("self_assign_message_id", "selfAssignMessageId"),
    ("mayor_info_channel_id", "mayorInfoChannelId"),
    ("mayor_info_message_id", "mayorInfoMessageId"),
    ("requests_channel_id", "requestsChannelId"),
    ("overview_channel_id", "overviewChannelId"),
    ("overview_message_id", "overviewMessageId"),
)

CONFIG_ID_ATTRS = frozenset(attr for attr, _ in _CONFIG_ID_FIELDS)


@dataclass(slots=True)
class GuildConfig:
    timezone: str = DEFAULT_TIMEZONE
    settlements_category_id: str | None = None
    moderation_category_id: str | None = None
    announcements_channel_id: str | None = None
    admin_role_id: str | None = None
    moderator_role_id: str | None = None
    mayor_aggregate_role_id: str | None = None
    mayor_how_to_channel_id: str | None = None
    mayor_how_to_message_id: str | None = None
    admin_chat_channel_id: str | None = None
    moderator_chat_channel_id: str | None = None
    all_mayors_channel_id: str | None = None
    guild_leadership_channel_id: str | None = None
    info_category_id: str | None = None
    general_category_id: str | None = None
    server_announcements_channel_id: str | None = None
    rules_channel_id: str | None = None
    rules_message_id: str | None = None
    self_assign_channel_id: str | None = None
    self_assign_message_id: str | None = None
    mayor_info_channel_id: str | None = None
    mayor_info_message_id: str | None = None
    requests_channel_id: str | None = None
    overview_channel_id: str | None = None
    overview_message_id: str | None = None
    zone_mayor_channel_ids: dict[str, str] = field(default_factory=dict)
    zone_view_role_ids: dict[str, str] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any, where: str = "config") -> GuildConfig:
        raw = _obj(raw, where)
        timezone = raw.get("timezone")
        if timezone is not None and (not isinstance(timezone, str) or not timezone):
            raise _fail(where, "timezone", "non-empty string")
        kwargs: dict[str, Any] = {attr: _opt_id(raw, key, where) for attr, key in _CONFIG_ID_FIELDS}
        return cls(
            timezone=timezone or DEFAULT_TIMEZONE,
            zone_mayor_channel_ids=_str_map(raw, "zoneMayorChannelIds", where),
            zone_view_role_ids=_str_map(raw, "zoneViewRoleIds", where),
            **kwargs,
        )

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"timezone": self.timezone}
        for attr, key in _CONFIG_ID_FIELDS:
            out[key] = getattr(self, attr)
        out["zoneMayorChannelIds"] = dict(self.zone_mayor_channel_ids)
        out["zoneViewRoleIds"] = dict(self.zone_view_role_ids)
        return out


@dataclass(slots=True)
class ElectionConfig:
    registration_start_ms: int | None = None
    voting_start_ms: int | None = None
    voting_end_ms: int | None = None
    schedule_item_ids: list[str] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any, where: str = "election") -> ElectionConfig:
        raw = _obj(raw, where)
        return cls(
            registration_start_ms=_opt_int(raw, "registrationStartMs", where),
            voting_start_ms=_opt_int(raw, "votingStartMs", where),
            voting_end_ms=_opt_int(raw, "votingEndMs", where),
            schedule_item_ids=_str_list(raw, "scheduleItemIds", where),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "registrationStartMs": self.registration_start_ms,
            "votingStartMs": self.voting_start_ms,
            "votingEndMs": self.voting_end_ms,
            "scheduleItemIds": list(self.schedule_item_ids),
        }


@dataclass(slots=True)
class Settlement:
    id: str
    name: str
    created_at_ms: int
    updated_at_ms: int
    zone: str = ""
    tier: int = 0
    mayor_user_id: str | None = None
    mayor_guild_name: str | None = None
    mayor_since_ms: int | None = None
    mayor_until_ms: int | None = None
    mayor_role_id: str | None = None
    citizen_role_id: str | None = None
    view_role_id: str | None = None
    channel_id: str | None = None
    status_card_message_id: str | None = None
    buildings: str = ""
    buy_orders: str = ""
    notes: str = ""
    election: ElectionConfig = field(default_factory=ElectionConfig)

    @classmethod
    def from_dict(cls, raw: Any, where: str = "settlement") -> Settlement:
        raw = _obj(raw, where)
        tier = raw.get("tier")
        if tier is None:
            tier = 0
        if not _is_int(tier) or tier < MIN_TIER or tier > MAX_TIER:
            raise _fail(where, "tier", f"integer {MIN_TIER}..{MAX_TIER}")
        election_raw = raw.get("election")
        return cls(
            id=_req_str(raw, "id", where),
            name=_req_str(raw, "name", where),
            zone=_text(raw, "zone", where),
            tier=tier,
            mayor_user_id=_opt_id(raw, "mayorUserId", where),
            mayor_guild_name=_opt_id(raw, "mayorGuildName", where),
            mayor_since_ms=_opt_int(raw, "mayorSinceMs", where),
            mayor_until_ms=_opt_int(raw, "mayorUntilMs", where),
            mayor_role_id=_opt_id(raw, "mayorRoleId", where),
            citizen_role_id=_opt_id(raw, "citizenRoleId", where),
            view_role_id=_opt_id(raw, "viewRoleId", where),
            channel_id=_opt_id(raw, "channelId", where),
            status_card_message_id=_opt_id(raw, "statusCardMessageId", where),
            buildings=_text(raw, "buildings", where),
            buy_orders=_text(raw, "buyOrders", where),
            notes=_text(raw, "notes", where),
            election=ElectionConfig.from_dict(election_raw, f"{where}.election")
            if election_raw is not None
            else ElectionConfig(),
            created_at_ms=_req_int(raw, "createdAtMs", where),
            updated_at_ms=_req_int(raw, "updatedAtMs", where),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "zone": self.zone,
            "tier": self.tier,
            "mayorUserId": self.mayor_user_id,
            "mayorGuildName": self.mayor_guild_name,
            "mayorSinceMs": self.mayor_since_ms,
            "mayorUntilMs": self.mayor_until_ms,
            "mayorRoleId": self.mayor_role_id,
            "citizenRoleId": self.citizen_role_id,
            "viewRoleId": self.view_role_id,
            "channelId": self.channel_id,
            "statusCardMessageId": self.status_card_message_id,
            "buildings": self.buildings,
            "buyOrders": self.buy_orders,
            "notes": self.notes,
            "election": self.election.to_dict(),
            "createdAtMs": self.created_at_ms,
            "updatedAtMs": self.updated_at_ms,
        }


@dataclass(slots=True)
class MayorRequest:
    id: str
    settlement_id: str
    requester_user_id: str
    created_at_ms: int
    guild_name: str = ""
    note: str = ""
    proof_url: str = ""
    proof_filename: str | None = None
    proof_content_type: str | None = None
    proof_size: int | None = None
    status: str = "pending"
    reviewed_at_ms: int | None = None
    reviewed_by_user_id: str | None = None

    @classmethod
    def from_dict(cls, raw: Any, where: str = "mayorRequest") -> MayorRequest:
        raw = _obj(raw, where)
        return cls(
            id=_req_str(raw, "id", where),
            settlement_id=_req_str(raw, "settlementId", where),
            requester_user_id=_req_str(raw, "requesterUserId", where),
            guild_name=_text(raw, "guildName", where),
            note=_text(raw, "note", where),
            proof_url=_text(raw, "proofUrl", where),
            proof_filename=_opt_id(raw, "proofFilename", where),
            proof_content_type=_opt_id(raw, "proofContentType", where),
            proof_size=_opt_int(raw, "proofSize", where),
            status=_enum(raw, "status", where, REQUEST_STATUSES, "pending"),
            created_at_ms=_req_int(raw, "createdAtMs", where),
            reviewed_at_ms=_opt_int(raw, "reviewedAtMs", where),
            reviewed_by_user_id=_opt_id(raw, "reviewedByUserId", where),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "settlementId": self.settlement_id,
            "requesterUserId": self.requester_user_id,
            "guildName": self.guild_name,
            "note": self.note,
            "proofUrl": self.proof_url,
            "proofFilename": self.proof_filename,
            "proofContentType": self.proof_content_type,
            "proofSize": self.proof_size,
            "status": self.status,
            "createdAtMs": self.created_at_ms,
            "reviewedAtMs": self.reviewed_at_ms,
            "reviewedByUserId": self.reviewed_by_user_id,
        }


@dataclass(slots=True)
class RoleRequest:
    id: str
    type: str
    requester_user_id: str
    created_at_ms: int
    guild_name: str = ""
    note: str = ""
    status: str = "pending"
    reviewed_at_ms: int | None = None
    reviewed_by_user_id: str | None = None

    @classmethod
    def from_dict(cls, raw: Any, where: str = "roleRequest") -> RoleRequest:
        raw = _obj(raw, where)
        if raw.get("type") not in ROLE_REQUEST_TYPES:
            raise _fail(where, "type", f"one of {sorted(ROLE_REQUEST_TYPES)}")
        return cls(
            id=_req_str(raw, "id", where),
            type=raw["type"],
            requester_user_id=_req_str(raw, "requesterUserId", where),
            guild_name=_text(raw, "guildName", where),
            note=_text(raw, "note", where),
            status=_enum(raw, "status", where, REQUEST_STATUSES, "pending"),
            created_at_ms=_req_int(raw, "createdAtMs", where),
            reviewed_at_ms=_opt_int(raw, "reviewedAtMs", where),
            reviewed_by_user_id=_opt_id(raw, "reviewedByUserId", where),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "requesterUserId": self.requester_user_id,
            "guildName": self.guild_name,
            "note": self.note,
            "status": self.status,
            "createdAtMs": self.created_at_ms,
            "reviewedAtMs": self.reviewed_at_ms,
            "reviewedByUserId": self.reviewed_by_user_id,
        }


@dataclass(slots=True)
class ScheduleItem:
    id: str
    title: str
    announce_channel_id: str
    starts_at_ms: int
    created_by_user_id: str
    created_at_ms: int
    type: str = "generic"
    settlement_id: str | None = None
    war_defender_settlement_id: str | None = None
    war_kind: str | None = None
    discord_event_id: str | None = None
    description: str | None = None
    mention_role_id: str | None = None
    reminder_offsets_minutes: list[int] = field(default_factory=lambda: list(DEFAULT_REMINDER_OFFSETS))
    sent_offset_minutes: list[int] = field(default_factory=list)

    @classmethod
    def from_dict(cls, raw: Any, where: str = "scheduleItem") -> ScheduleItem:
        raw = _obj(raw, where)
        offsets = _offsets(raw, "reminderOffsetsMinutes", where, list(DEFAULT_REMINDER_OFFSETS))
        sent = _offsets(raw, "sentOffsetMinutes", where, [])
        return cls(
            id=_req_str(raw, "id", where),
            type=_enum(raw, "type", where, SCHEDULE_ITEM_TYPES, "generic"),
            settlement_id=_opt_id(raw, "settlementId", where),
            war_defender_settlement_id=_opt_id(raw, "warDefenderSettlementId", where),
            war_kind=_opt_enum(raw, "warKind", where, WAR_KINDS),
            discord_event_id=_opt_id(raw, "discordEventId", where),
            title=_req_str(raw, "title", where),
            description=_opt_text(raw, "description", where),
            announce_channel_id=_req_str(raw, "announceChannelId", where),
            mention_role_id=_opt_id(raw, "mentionRoleId", where),
            starts_at_ms=_req_int(raw, "startsAtMs", where),
            reminder_offsets_minutes=offsets,
            # sent offsets are always a subset of the configured ones
            sent_offset_minutes=[o for o in sent if o in offsets],
            created_by_user_id=_req_str(raw, "createdByUserId", where),
            created_at_ms=_req_int(raw, "createdAtMs", where),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "settlementId": self.settlement_id,
            "warDefenderSettlementId": self.war_defender_settlement_id,
            "warKind": self.war_kind,
            "discordEventId": self.discord_event_id,
            "title": self.title,
            "description": self.description,
            "announceChannelId": self.announce_channel_id,
            "mentionRoleId": self.mention_role_id,
            "startsAtMs": self.starts_at_ms,
            "reminderOffsetsMinutes": list(self.reminder_offsets_minutes),
            "sentOffsetMinutes": list(self.sent_offset_minutes),
            "createdByUserId": self.created_by_user_id,
            "createdAtMs": self.created_at_ms,
        }

    def fire_at_ms(self, offset: int) -> int:
        return self.starts_at_ms - offset * 60_000

    def pending_offsets(self) -> list[int]:
        return [o for o in self.reminder_offsets_minutes if o not in self.sent_offset_minutes]


@dataclass(slots=True)
class GuildState:
    config: GuildConfig = field(default_factory=GuildConfig)
    settlements: dict[str, Settlement] = field(default_factory=dict)
    mayor_requests: dict[str, MayorRequest] = field(default_factory=dict)
    role_requests: dict[str, RoleRequest] = field(default_factory=dict)
    schedule: dict[str, ScheduleItem] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any, where: str = "guild") -> GuildState:
        raw = _obj(raw, where)
        config_raw = raw.get("config")
        return cls(
            config=GuildConfig.from_dict(config_raw, f"{where}.config") if config_raw is not None else GuildConfig(),
            settlements=_records(raw, "settlements", where, Settlement.from_dict),
            mayor_requests=_records(raw, "mayorRequests", where, MayorRequest.from_dict),
            role_requests=_records(raw, "roleRequests", where, RoleRequest.from_dict),
            schedule=_records(raw, "schedule", where, ScheduleItem.from_dict),
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "config": self.config.to_dict(),
            "settlements": {k: v.to_dict() for k, v in self.settlements.items()},
            "mayorRequests": {k: v.to_dict() for k, v in self.mayor_requests.items()},
            "roleRequests": {k: v.to_dict() for k, v in self.role_requests.items()},
            "schedule": {k: v.to_dict() for k, v in self.schedule.items()},
        }


@dataclass(slots=True)
class RootState:
    version: int = STATE_VERSION
    guilds: dict[str, GuildState] = field(default_factory=dict)

    @classmethod
    def from_dict(cls, raw: Any) -> RootState:
        raw = _obj(raw, "root")
        version = raw.get("version")
        if not _is_int(version) or version != STATE_VERSION:
            raise _fail("root", "version", str(STATE_VERSION))
        return cls(version=version, guilds=_records(raw, "guilds", "root", GuildState.from_dict))

    def to_dict(self) -> dict[str, Any]:
        return {
            "version": self.version,
            "guilds": {k: v.to_dict() for k, v in self.guilds.items()},
        }


def default_state() -> RootState:
    return RootState(version=STATE_VERSION, guilds={})
