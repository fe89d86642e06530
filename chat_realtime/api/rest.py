"""
REST client for the chat backend.

Wraps httpx.AsyncClient with the backend's auth scheme and maps HTTP
failures onto the client error taxonomy:

    401          -> AuthError
    403          -> PermissionDeniedError
    404          -> NotFoundError
    transport    -> NetworkError
    anything else -> APIError

A client created with the API secret is server side: it signs its own
server token and may act on behalf of any user. Otherwise it uses the
token of the connected user.
"""

from __future__ import annotations

import asyncio
import json
from typing import Any, Callable

import httpx
import pydantic

from chat_common.config.logging import get_logger
from chat_common.config.settings import Settings, get_settings
from chat_common.security.tokens import create_server_token
from chat_common.utils.exceptions import (
    APIError,
    AuthError,
    ChatClientError,
    NetworkError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from chat_realtime.api.schemas import (
    AppSettingsResponse,
    ChannelQueryRequest,
    ChannelStateResponse,
    ChannelTypeResponse,
    CheckPushRequest,
    CheckPushResponse,
    DeviceRequest,
    DevicesResponse,
    ListChannelTypesResponse,
    MarkReadResponse,
    MessageResponse,
    MuteResponse,
    QueryChannelsRequest,
    QueryChannelsResponse,
    QueryUsersRequest,
    QueryUsersResponse,
    UpdateUsersResponse,
    normalize_sort,
)

logger = get_logger(__name__)

CLIENT_HEADER = "chat-realtime-python"


class ChatAPI:
    """
    Async REST client.

    Usage:
        api = ChatAPI(api_key="key", api_secret="secret")
        response = await api.query_channel("messaging", "general")
        await api.close()
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_secret: str | None = None,
        settings: Settings | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        """
        Args:
            api_key: Application key, defaults to CHAT_API_KEY.
            api_secret: Application secret; makes the client server side.
            settings: Client settings, defaults to the environment.
            transport: httpx transport override, used by tests.
        """
        self._settings = settings or get_settings()
        self._api_key = api_key if api_key is not None else self._settings.api_key
        self._api_secret = api_secret if api_secret is not None else self._settings.api_secret
        self._transport = transport
        self._client: httpx.AsyncClient | None = None
        self._client_lock = asyncio.Lock()
        self._server_token: str | None = None
        self._user_token: str | None = None
        self._connection_id: Callable[[], str | None] = lambda: None

    @property
    def api_key(self) -> str:
        return self._api_key

    @property
    def server_side(self) -> bool:
        return bool(self._api_secret)

    def set_user_token(self, token: str | None) -> None:
        self._user_token = token

    def set_connection_id_provider(self, provider: Callable[[], str | None]) -> None:
        """Where watch/presence requests read the realtime connection id from."""
        self._connection_id = provider

    # =========================================================================
    # HTTP plumbing
    # =========================================================================

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is not None and not self._client.is_closed:
            return self._client
        async with self._client_lock:
            if self._client is None or self._client.is_closed:
                self._client = httpx.AsyncClient(
                    base_url=self._settings.base_url,
                    timeout=self._settings.request_timeout,
                    transport=self._transport,
                    limits=httpx.Limits(max_connections=10, max_keepalive_connections=5),
                )
        return self._client

    async def close(self) -> None:
        if self._client is not None and not self._client.is_closed:
            await self._client.aclose()
        self._client = None

    def _token(self) -> str:
        if self.server_side:
            if self._server_token is None:
                self._server_token = create_server_token(self._api_secret)
            return self._server_token
        if not self._user_token:
            raise AuthError("No user token set, connect a user before calling the API")
        return self._user_token

    def _headers(self) -> dict[str, str]:
        return {
            "Authorization": self._token(),
            "stream-auth-type": "jwt",
            "X-Stream-Client": CLIENT_HEADER,
        }

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: dict[str, Any] | None = None,
        body: dict[str, Any] | None = None,
    ) -> dict[str, Any]:
        query = {"api_key": self._api_key}
        if params:
            query.update({k: v for k, v in params.items() if v is not None})

        client = await self._get_client()
        try:
            response = await client.request(
                method, path, params=query, json=body, headers=self._headers()
            )
        except httpx.TimeoutException as e:
            raise NetworkError("REST request timed out", method=method, path=path) from e
        except httpx.TransportError as e:
            raise NetworkError(
                "REST request failed", method=method, path=path, detail=str(e)
            ) from e

        if not response.is_success:
            raise self._error_for(response, method, path)
        if not response.content:
            return {}
        try:
            body = response.json()
        except ValueError as e:
            raise APIError(
                "Response body is not valid JSON",
                status_code=response.status_code,
                method=method,
                path=path,
            ) from e
        if not isinstance(body, dict):
            raise APIError(
                "Response body is not a JSON object",
                status_code=response.status_code,
                method=method,
                path=path,
            )
        return body

    @staticmethod
    def _error_for(response: httpx.Response, method: str, path: str) -> ChatClientError:
        try:
            body = response.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}

        status = response.status_code
        message = body.get("message") or response.reason_phrase or "Request failed"
        code = body.get("code")
        context = {"method": method, "path": path}

        if status == 401:
            return AuthError(message, status_code=status, code=code, **context)
        if status == 403:
            return PermissionDeniedError(message, status_code=status, code=code, **context)
        if status == 404:
            return NotFoundError("Resource", path, status_code=status, code=code, detail=message)
        return APIError(message, status_code=status, code=code, **context)

    @staticmethod
    def _payload(model: pydantic.BaseModel) -> str:
        return json.dumps(model.model_dump(exclude_none=True), default=str)

    @staticmethod
    def _parse(model_cls: type[pydantic.BaseModel], body: dict[str, Any]) -> Any:
        try:
            return model_cls.model_validate(body)
        except pydantic.ValidationError as e:
            raise APIError(
                f"Malformed {model_cls.__name__}", errors=e.errors(include_url=False)
            ) from e

    @staticmethod
    def _build(model_cls: type[pydantic.BaseModel], **fields: Any) -> Any:
        try:
            return model_cls(**fields)
        except pydantic.ValidationError as e:
            raise ValidationError(
                f"Invalid {model_cls.__name__}", errors=e.errors(include_url=False)
            ) from e

    def _require_connection(self, watch: bool, presence: bool) -> str | None:
        if not (watch or presence):
            return None
        connection_id = self._connection_id()
        if connection_id is None:
            raise ValidationError(
                "watch and presence require an open realtime connection",
                server_side=self.server_side,
            )
        return connection_id

    # =========================================================================
    # Channels
    # =========================================================================

    async def query_channel(
        self,
        channel_type: str,
        channel_id: str,
        *,
        watch: bool = False,
        presence: bool = False,
        data: dict[str, Any] | None = None,
        message_limit: int | None = None,
    ) -> ChannelStateResponse:
        """Fetch (and create if allowed) a channel with its state."""
        request = self._build(
            ChannelQueryRequest,
            watch=watch,
            presence=presence,
            data=data,
            messages={"limit": message_limit} if message_limit is not None else None,
            connection_id=self._require_connection(watch, presence),
        )
        response = await self._request(
            "POST",
            f"/channels/{channel_type}/{channel_id}/query",
            body=request.model_dump(exclude_none=True),
        )
        return self._parse(ChannelStateResponse, response)

    async def watch_channel(
        self,
        channel_type: str,
        channel_id: str,
        *,
        presence: bool = False,
        data: dict[str, Any] | None = None,
        message_limit: int | None = None,
    ) -> ChannelStateResponse:
        return await self.query_channel(
            channel_type,
            channel_id,
            watch=True,
            presence=presence,
            data=data,
            message_limit=message_limit,
        )

    async def stop_watching(self, channel_type: str, channel_id: str) -> dict[str, Any]:
        return await self._request(
            "POST",
            f"/channels/{channel_type}/{channel_id}/stop-watching",
            body={"connection_id": self._connection_id()},
        )

    async def query_channels(
        self,
        filter_conditions: dict[str, Any] | None = None,
        sort: dict[str, int] | list[dict[str, Any]] | None = None,
        *,
        watch: bool = True,
        presence: bool = False,
        state: bool = True,
        limit: int | None = None,
        offset: int | None = None,
        message_limit: int | None = None,
    ) -> QueryChannelsResponse:
        """
        Query channels by filter.

        Raises:
            ValidationError: watch or presence without a realtime connection,
                which is always the case for a server-side client.
        """
        try:
            sort_params = normalize_sort(sort)
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid sort", errors=e.errors(include_url=False)) from e

        request = self._build(
            QueryChannelsRequest,
            filter_conditions=filter_conditions or {},
            sort=sort_params,
            state=state,
            watch=watch,
            presence=presence,
            limit=limit,
            offset=offset,
            message_limit=message_limit,
            connection_id=self._require_connection(watch, presence),
        )
        response = await self._request("GET", "/channels", params={"payload": self._payload(request)})
        return self._parse(QueryChannelsResponse, response)

    # =========================================================================
    # Messages
    # =========================================================================

    async def send_message(
        self,
        channel_type: str,
        channel_id: str,
        message: dict[str, Any],
    ) -> MessageResponse:
        """
        Post a message.

        Raises:
            ValidationError: A user-token client set created_at/updated_at,
                which only server-side imports may do.
        """
        if not self.server_side and (
            message.get("created_at") is not None or message.get("updated_at") is not None
        ):
            raise ValidationError(
                "Setting message.updated_at or message.created_at is not allowed client side",
                channel_type=channel_type,
                channel_id=channel_id,
            )
        response = await self._request(
            "POST",
            f"/channels/{channel_type}/{channel_id}/message",
            body={"message": message},
        )
        return self._parse(MessageResponse, response)

    async def mark_read(
        self,
        channel_type: str,
        channel_id: str,
        *,
        user: dict[str, Any] | None = None,
        message_id: str | None = None,
    ) -> MarkReadResponse:
        """
        Mark a channel read.

        Raises:
            ValidationError: Server side without a user to act for.
        """
        if self.server_side and not user:
            raise ValidationError(
                "Please specify a user when sending an event server side",
                channel_type=channel_type,
                channel_id=channel_id,
            )
        body: dict[str, Any] = {}
        if user:
            body["user"] = user
        if message_id:
            body["message_id"] = message_id
        response = await self._request(
            "POST", f"/channels/{channel_type}/{channel_id}/read", body=body
        )
        return self._parse(MarkReadResponse, response)

    # =========================================================================
    # Users and moderation
    # =========================================================================

    async def query_users(
        self,
        filter_conditions: dict[str, Any] | None = None,
        sort: dict[str, int] | list[dict[str, Any]] | None = None,
        *,
        presence: bool = False,
        limit: int | None = None,
        offset: int | None = None,
    ) -> QueryUsersResponse:
        try:
            sort_params = normalize_sort(sort)
        except pydantic.ValidationError as e:
            raise ValidationError("Invalid sort", errors=e.errors(include_url=False)) from e

        request = self._build(
            QueryUsersRequest,
            filter_conditions=filter_conditions or {},
            sort=sort_params,
            presence=presence,
            limit=limit,
            offset=offset,
            connection_id=self._require_connection(False, presence),
        )
        response = await self._request("GET", "/users", params={"payload": self._payload(request)})
        return self._parse(QueryUsersResponse, response)

    async def update_users(self, users: list[dict[str, Any]]) -> UpdateUsersResponse:
        """Insert or replace users; each needs an id."""
        by_id: dict[str, dict[str, Any]] = {}
        for user in users:
            user_id = user.get("id")
            if not isinstance(user_id, str) or not user_id:
                raise ValidationError("User ID is required when updating a user")
            by_id[user_id] = user
        response = await self._request("POST", "/users", body={"users": by_id})
        return self._parse(UpdateUsersResponse, response)

    async def update_user(self, user: dict[str, Any]) -> UpdateUsersResponse:
        return await self.update_users([user])

    async def ban_user(self, target_user_id: str, **options: Any) -> dict[str, Any]:
        return await self._request(
            "POST", "/moderation/ban", body={"target_user_id": target_user_id, **options}
        )

    async def unban_user(self, target_user_id: str, **options: Any) -> dict[str, Any]:
        return await self._request(
            "DELETE", "/moderation/ban", params={"target_user_id": target_user_id, **options}
        )

    async def mute_user(self, target_id: str, user_id: str | None = None) -> MuteResponse:
        """Mute target_id for user_id (server side) or for the connected user."""
        body: dict[str, Any] = {"target_id": target_id}
        if user_id is not None:
            body["user_id"] = user_id
        response = await self._request("POST", "/moderation/mute", body=body)
        return self._parse(MuteResponse, response)

    async def unmute_user(self, target_id: str, user_id: str | None = None) -> dict[str, Any]:
        body: dict[str, Any] = {"target_id": target_id}
        if user_id is not None:
            body["user_id"] = user_id
        return await self._request("POST", "/moderation/unmute", body=body)

    # =========================================================================
    # Devices and push
    # =========================================================================

    async def add_device(
        self,
        device_id: str,
        push_provider: str,
        user_id: str | None = None,
    ) -> dict[str, Any]:
        request = self._build(
            DeviceRequest, id=device_id, push_provider=push_provider, user_id=user_id
        )
        return await self._request("POST", "/devices", body=request.model_dump(exclude_none=True))

    async def get_devices(self, user_id: str | None = None) -> DevicesResponse:
        response = await self._request("GET", "/devices", params={"user_id": user_id})
        return self._parse(DevicesResponse, response)

    async def remove_device(self, device_id: str, user_id: str | None = None) -> dict[str, Any]:
        return await self._request(
            "DELETE", "/devices", params={"id": device_id, "user_id": user_id}
        )

    async def test_push_settings(
        self,
        user_id: str,
        *,
        message_id: str | None = None,
        apn_template: str | None = None,
        firebase_template: str | None = None,
    ) -> CheckPushResponse:
        request = self._build(
            CheckPushRequest,
            user_id=user_id,
            message_id=message_id,
            apn_template=apn_template,
            firebase_template=firebase_template,
        )
        response = await self._request(
            "POST", "/check_push", body=request.model_dump(exclude_none=True)
        )
        return self._parse(CheckPushResponse, response)

    # =========================================================================
    # Channel types and app settings
    # =========================================================================

    async def create_channel_type(self, data: dict[str, Any]) -> ChannelTypeResponse:
        if not data.get("name"):
            raise ValidationError("Channel type name is required")
        body = {"commands": ["all"], **data}
        response = await self._request("POST", "/channeltypes", body=body)
        return self._parse(ChannelTypeResponse, response)

    async def get_channel_type(self, channel_type: str) -> ChannelTypeResponse:
        response = await self._request("GET", f"/channeltypes/{channel_type}")
        return self._parse(ChannelTypeResponse, response)

    async def list_channel_types(self) -> ListChannelTypesResponse:
        response = await self._request("GET", "/channeltypes")
        return self._parse(ListChannelTypesResponse, response)

    async def update_channel_type(
        self, channel_type: str, data: dict[str, Any]
    ) -> ChannelTypeResponse:
        response = await self._request("PUT", f"/channeltypes/{channel_type}", body=data)
        return self._parse(ChannelTypeResponse, response)

    async def delete_channel_type(self, channel_type: str) -> dict[str, Any]:
        return await self._request("DELETE", f"/channeltypes/{channel_type}")

    async def get_app_settings(self) -> AppSettingsResponse:
        response = await self._request("GET", "/app")
        return self._parse(AppSettingsResponse, response)

    async def update_app_settings(self, settings: dict[str, Any]) -> dict[str, Any]:
        return await self._request("PATCH", "/app", body=settings)
