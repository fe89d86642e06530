"""
Pydantic schemas for the REST API.

Responses keep unknown fields (extra="allow") so a newer backend never
breaks parsing. Timestamps stay as received; the state layer normalises
them when a response is loaded into a store.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator


# =============================================================================
# Common Types
# =============================================================================

PushProvider = Literal["apn", "firebase"]
SortDirection = Literal[1, -1]


class APIResponse(BaseModel):
    """Base of every response body."""

    model_config = ConfigDict(extra="allow")

    duration: str | None = None


class SortParam(BaseModel):
    """One sort criterion."""

    field: str = Field(min_length=1)
    direction: SortDirection = 1


def normalize_sort(sort: dict[str, int] | list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    """
    Accept ``{"last_message_at": -1}`` or a list of ``{field, direction}``.

    Raises:
        pydantic.ValidationError: On an unknown direction or empty field.
    """
    if not sort:
        return []
    if isinstance(sort, dict):
        items = [{"field": key, "direction": value} for key, value in sort.items()]
    else:
        items = list(sort)
    return [SortParam.model_validate(item).model_dump() for item in items]


# =============================================================================
# Channel Schemas
# =============================================================================


class ChannelQueryRequest(BaseModel):
    """Body of POST /channels/{type}/{id}/query."""

    state: bool = True
    watch: bool = False
    presence: bool = False
    data: dict[str, Any] | None = None
    messages: dict[str, Any] | None = None
    members: dict[str, Any] | None = None
    watchers: dict[str, Any] | None = None
    connection_id: str | None = None


class ChannelStateResponse(APIResponse):
    """One channel with its state, as returned by query and watch."""

    channel: dict[str, Any]
    messages: list[dict[str, Any]] = Field(default_factory=list)
    members: list[dict[str, Any]] = Field(default_factory=list)
    watchers: list[dict[str, Any]] = Field(default_factory=list)
    watcher_count: int | None = None
    read: list[dict[str, Any]] = Field(default_factory=list)
    membership: dict[str, Any] | None = None
    hidden: bool = False

    @field_validator("channel")
    @classmethod
    def channel_has_identity(cls, value: dict[str, Any]) -> dict[str, Any]:
        if not value.get("cid") and not (value.get("type") and value.get("id")):
            raise ValueError("channel must carry cid or type and id")
        return value

    @property
    def cid(self) -> str:
        return self.channel.get("cid") or f"{self.channel['type']}:{self.channel['id']}"

    def to_state(self) -> dict[str, Any]:
        """Plain dict accepted by ChannelState.replace_from_response()."""
        return self.model_dump(exclude={"duration"})


class QueryChannelsRequest(BaseModel):
    """Payload of GET /channels."""

    filter_conditions: dict[str, Any] = Field(default_factory=dict)
    sort: list[dict[str, Any]] = Field(default_factory=list)
    state: bool = True
    watch: bool = True
    presence: bool = False
    limit: int | None = Field(default=None, ge=1, le=100)
    offset: int | None = Field(default=None, ge=0)
    message_limit: int | None = Field(default=None, ge=0)
    connection_id: str | None = None


class QueryChannelsResponse(APIResponse):
    channels: list[ChannelStateResponse] = Field(default_factory=list)


# =============================================================================
# Message Schemas
# =============================================================================


class MessageResponse(APIResponse):
    message: dict[str, Any]


class MarkReadResponse(APIResponse):
    event: dict[str, Any] | None = None


# =============================================================================
# User Schemas
# =============================================================================


class QueryUsersRequest(BaseModel):
    """Payload of GET /users."""

    filter_conditions: dict[str, Any] = Field(default_factory=dict)
    sort: list[dict[str, Any]] = Field(default_factory=list)
    presence: bool = False
    limit: int | None = Field(default=None, ge=1)
    offset: int | None = Field(default=None, ge=0)
    connection_id: str | None = None


class QueryUsersResponse(APIResponse):
    users: list[dict[str, Any]] = Field(default_factory=list)


class UpdateUsersResponse(APIResponse):
    users: dict[str, dict[str, Any]] = Field(default_factory=dict)


class MuteResponse(APIResponse):
    mute: dict[str, Any] | None = None
    own_user: dict[str, Any] | None = None


# =============================================================================
# Device Schemas
# =============================================================================


class DeviceRequest(BaseModel):
    """Body of POST /devices."""

    id: str = Field(min_length=1)
    push_provider: PushProvider
    user_id: str | None = None


class DevicesResponse(APIResponse):
    devices: list[dict[str, Any]] = Field(default_factory=list)


class CheckPushRequest(BaseModel):
    """Body of POST /check_push."""

    user_id: str = Field(min_length=1)
    message_id: str | None = None
    apn_template: str | None = None
    firebase_template: str | None = None


class CheckPushResponse(APIResponse):
    device_errors: dict[str, Any] | None = None
    general_errors: list[str] = Field(default_factory=list)
    rendered_apn_template: str | None = None
    rendered_firebase_template: str | None = None


# =============================================================================
# App and Channel Type Schemas
# =============================================================================


class AppSettingsResponse(APIResponse):
    app: dict[str, Any] = Field(default_factory=dict)


class ChannelTypeResponse(APIResponse):
    name: str | None = None
    permissions: list[dict[str, Any]] = Field(default_factory=list)
    commands: list[Any] = Field(default_factory=list)


class ListChannelTypesResponse(APIResponse):
    channel_types: dict[str, dict[str, Any]] = Field(default_factory=dict)
