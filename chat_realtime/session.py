"""
Client Session.

Composition root of the realtime client: one user cache, one listener
registry, one dispatcher, one connection manager and the channel stores
of every watched channel.

The session is the dispatcher's router:
- route() applies an event to the store of its channel when one exists
  and keeps user-scoped state (user cache, own user, mutes, unread
  counts) current. Events for channels without a local store reach
  global listeners only. While a store waits for its first response,
  its events are held back and replayed on it before its channel
  listeners see them.
- finalize() evicts a store once its channel.deleted event has been
  delivered to every listener.

After a reconnect the backend could not resume, resync() re-queries every
watched channel and replaces all stores in one synchronous step.
"""

from __future__ import annotations

import asyncio
import random
from collections.abc import Iterable
from types import MappingProxyType
from typing import Any, Callable

from chat_common.config.logging import get_logger
from chat_common.config.settings import Settings, get_settings
from chat_common.security.tokens import Credentials, build_credentials
from chat_common.utils.exceptions import (
    APIError,
    AuthError,
    ChatClientError,
    NetworkError,
    NotConnectedError,
    NotFoundError,
    PermissionDeniedError,
)
from chat_realtime.api.rest import ChatAPI
from chat_realtime.api.schemas import ChannelStateResponse
from chat_realtime.components.connection.manager import ConnectionManager, ConnectionState
from chat_realtime.components.connection.transport import Handshake, TransportFactory
from chat_realtime.components.core.constants import GLOBAL_SCOPE, build_cid
from chat_realtime.components.events.dispatcher import EventDispatcher
from chat_realtime.components.events.listeners import (
    EventCallback,
    ListenerRegistry,
    Subscription,
)
from chat_realtime.components.events.types import (
    ChatEvent,
    ConnectionEvent,
    EventType,
    NotificationEvent,
    UserEvent,
)
from chat_realtime.components.resilience.retry import RetryConfig
from chat_realtime.components.state.channel_state import ChannelState, StateReplacement
from chat_realtime.components.state.models import ChannelSnapshot
from chat_realtime.components.state.users import User, UserCache

logger = get_logger(__name__)

# Per-channel failures during resync that drop only that channel
_CHANNEL_LOST_ERRORS = (NotFoundError, PermissionDeniedError)


class ChatSession:
    """
    One user's realtime chat session.

    Usage:
        session = ChatSession(api_key="key")
        await session.connect_user({"id": "jane"}, token)
        channel = await session.watch("messaging", "general")
        session.on("message.new", on_message)
        ...
        await session.close()
    """

    def __init__(
        self,
        api_key: str | None = None,
        api_secret: str | None = None,
        settings: Settings | None = None,
        api: ChatAPI | None = None,
        transport_factory: TransportFactory | None = None,
        connect_retry: RetryConfig | None = None,
        reconnect_retry: RetryConfig | None = None,
        sleep: Callable[[float], Any] = asyncio.sleep,
        rand: Callable[[float, float], float] = random.uniform,
    ):
        self._settings = settings or get_settings()
        self._users = UserCache()
        self._registry = ListenerRegistry()
        self._dispatcher = EventDispatcher(
            self._registry, router=self, max_frame_size=self._settings.max_message_size
        )
        self._api = api or ChatAPI(api_key, api_secret, self._settings)
        self._connection = ConnectionManager(
            self._dispatcher,
            transport_factory=transport_factory,
            resync=self.resync,
            settings=self._settings,
            connect_retry=connect_retry,
            reconnect_retry=reconnect_retry,
            sleep=sleep,
            rand=rand,
        )
        self._api.set_connection_id_provider(self._realtime_connection_id)

        self._channels: dict[str, ChannelState] = {}
        # cid -> events received while the store's first response is in flight
        self._loading: dict[str, list[ChatEvent]] = {}
        # Completed resyncs; a watch response older than the last one is stale
        self._resyncs = 0

        self._user: User | None = None
        self._user_id: str | None = None
        self._mutes: list[dict[str, Any]] = []
        self._channel_mutes: list[dict[str, Any]] = []
        self._total_unread_count = 0
        self._unread_channels = 0

    # =========================================================================
    # Properties
    # =========================================================================

    @property
    def api(self) -> ChatAPI:
        return self._api

    @property
    def connection(self) -> ConnectionManager:
        return self._connection

    @property
    def dispatcher(self) -> EventDispatcher:
        return self._dispatcher

    @property
    def registry(self) -> ListenerRegistry:
        return self._registry

    @property
    def users(self) -> UserCache:
        return self._users

    @property
    def user(self) -> User | None:
        return self._user

    @property
    def user_id(self) -> str | None:
        return self._user_id

    @property
    def state(self) -> ConnectionState:
        return self._connection.state

    @property
    def connection_id(self) -> int:
        return self._connection.connection_id

    @property
    def channels(self) -> MappingProxyType[str, ChannelState]:
        """Stores of watched channels by cid (immutable view)."""
        return MappingProxyType(self._channels)

    @property
    def mutes(self) -> list[dict[str, Any]]:
        return list(self._mutes)

    @property
    def channel_mutes(self) -> list[dict[str, Any]]:
        return list(self._channel_mutes)

    @property
    def total_unread_count(self) -> int:
        return self._total_unread_count

    @property
    def unread_channels(self) -> int:
        return self._unread_channels

    def _realtime_connection_id(self) -> str | None:
        if self._connection.state is ConnectionState.DISCONNECTED:
            return None
        return self._connection.server_connection_id

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(self, credentials: Credentials) -> Handshake:
        """
        Connect as credentials.user_id.

        Raises:
            AuthError: Credentials rejected.
            NetworkError: Connection budget exhausted.
        """
        self._user_id = credentials.user_id
        self._api.set_user_token(credentials.token)
        for store in self._channels.values():
            store.own_user_id = credentials.user_id
        handshake = await self._connection.connect(credentials)
        self._apply_me(handshake.me)
        return handshake

    async def connect_user(
        self,
        user: dict[str, Any],
        token: str,
    ) -> dict[str, Any]:
        """Validate token against user["id"], connect and return the connected user."""
        user_id = user.get("id")
        if not isinstance(user_id, str) or not user_id:
            raise AuthError("The user object must carry an id")
        credentials = build_credentials(
            user_id, token, {k: v for k, v in user.items() if k != "id"}
        )
        handshake = await self.connect(credentials)
        return dict(handshake.me)

    async def disconnect(self) -> None:
        """
        Close the connection and release every channel store. Idempotent.

        In-flight REST calls are not cancelled; their results are discarded
        because their stores no longer exist.
        """
        await self._connection.disconnect()
        for cid in list(self._channels):
            self._registry.remove_scope(cid)
        self._channels.clear()
        self._loading.clear()
        self._users.clear()
        self._user = None
        self._mutes = []
        self._channel_mutes = []
        self._total_unread_count = 0
        self._unread_channels = 0

    async def close(self) -> None:
        await self.disconnect()
        await self._api.close()

    # =========================================================================
    # Channels
    # =========================================================================

    def channel(self, channel_type: str, channel_id: str) -> ChannelState | None:
        """Store of a watched channel, or None."""
        return self._channels.get(build_cid(channel_type, channel_id))

    def snapshot(self, channel_type: str, channel_id: str) -> ChannelSnapshot | None:
        store = self.channel(channel_type, channel_id)
        return store.snapshot() if store is not None else None

    async def watch(
        self,
        channel_type: str,
        channel_id: str,
        *,
        data: dict[str, Any] | None = None,
        presence: bool = False,
        message_limit: int | None = None,
    ) -> ChannelState:
        """
        Watch a channel and load its state.

        Returns the existing store when the channel is already watched, after
        refreshing it from the server.

        Raises:
            NotConnectedError: No realtime connection.
            PermissionDeniedError: The server denies watch access.
            NotFoundError: The channel does not exist and cannot be created.
        """
        if not self._connection.is_connected:
            raise NotConnectedError(
                "watch() requires a connection, call connect() first",
                channel_type=channel_type,
                channel_id=channel_id,
            )

        cid = build_cid(channel_type, channel_id)
        store = self._channels.get(cid)
        created = store is None
        if store is None:
            store = ChannelState(channel_type, channel_id, self._users, self._user_id)
            self._channels[cid] = store
        self._loading.setdefault(cid, [])
        resyncs = self._resyncs

        settled = False
        try:
            response = await self._api.watch_channel(
                channel_type,
                channel_id,
                data=data,
                presence=presence,
                message_limit=message_limit,
            )
            if self._channels.get(cid) is not store:
                logger.debug("Discarding watch response for released channel", cid=cid)
            elif self._resyncs != resyncs:
                # The store was reloaded after a gap; this response predates it
                logger.debug("Discarding watch response older than the last resync", cid=cid)
                self._replay_buffered(store)
            else:
                self._load(store, response)
            settled = True
        finally:
            if not settled and self._channels.get(cid) is store:
                if created:
                    del self._channels[cid]
                    self._loading.pop(cid, None)
                else:
                    self._replay_buffered(store)
        return store

    async def unwatch(self, channel_type: str, channel_id: str) -> bool:
        """
        Stop watching a channel and release its store.

        Routing stops before the REST call, so events still in flight for
        the channel reach global listeners only.

        Returns False if the channel was not watched.
        """
        cid = build_cid(channel_type, channel_id)
        store = self._channels.pop(cid, None)
        self._loading.pop(cid, None)
        if store is None:
            return False
        self._registry.remove_scope(cid)

        if self._connection.is_connected:
            await self._api.stop_watching(channel_type, channel_id)
        return True

    async def query_channels(
        self,
        filter_conditions: dict[str, Any] | None = None,
        sort: dict[str, int] | list[dict[str, Any]] | None = None,
        *,
        watch: bool = True,
        presence: bool = False,
        limit: int | None = None,
        offset: int | None = None,
        message_limit: int | None = None,
    ) -> list[ChannelState]:
        """
        Query channels and load their state.

        With watch=True the returned stores are registered for routing.
        Otherwise they are detached snapshots of the response.
        """
        response = await self._api.query_channels(
            filter_conditions,
            sort,
            watch=watch,
            presence=presence,
            limit=limit,
            offset=offset,
            message_limit=message_limit,
        )

        register = watch and self._connection.is_connected
        stores: list[ChannelState] = []
        for channel_response in response.channels:
            channel_type, channel_id = channel_response.cid.split(":", 1)
            store = self._channels.get(channel_response.cid) if register else None
            if store is None:
                store = ChannelState(channel_type, channel_id, self._users, self._user_id)
                if register:
                    self._channels[store.cid] = store
            self._load(store, channel_response)
            stores.append(store)
        return stores

    def _load(self, store: ChannelState, response: ChannelStateResponse) -> None:
        """Replace store from response, then replay events buffered meanwhile."""
        try:
            replacement = store.prepare_replacement(response.to_state())
        except ValueError as e:
            raise APIError("Malformed channel state", cid=store.cid, detail=str(e)) from e
        store.commit_replacement(replacement)
        if self._channels.get(store.cid) is store:
            self._replay_buffered(store)

    def _replay_buffered(self, store: ChannelState) -> None:
        """Apply the events held back while store was loading, then run their channel listeners."""

        def apply(event: ChatEvent) -> bool:
            store.apply(event)
            return True

        for event in self._loading.pop(store.cid, []):
            self._dispatcher.deliver_deferred(event, apply)

    async def resync(self) -> None:
        """
        Reload every watched channel after a gap in the event stream.

        All responses are fetched and validated first; the stores are then
        replaced in one synchronous step, so a reader sees either the old
        state or the new one. Channels the user lost access to are dropped.
        Events buffered for a loading store predate the gap and are
        discarded, as are watch() responses still in flight.

        Raises:
            AuthError: Credentials no longer valid.
            ChatClientError: Any other failure; the reconnect loop retries.
        """
        stores = list(self._channels.values())
        if not stores:
            return

        logger.info("Resyncing watched channels", channels=len(stores))
        results = await asyncio.gather(
            *(self._api.watch_channel(store.type, store.id) for store in stores),
            return_exceptions=True,
        )

        loaded: list[tuple[ChannelState, StateReplacement]] = []
        for store, result in zip(stores, results):
            if isinstance(result, _CHANNEL_LOST_ERRORS):
                logger.warning("Channel lost during resync", cid=store.cid, error=result.message)
                self._evict(store.cid)
                continue
            if isinstance(result, (ChatClientError, asyncio.CancelledError)):
                raise result
            if isinstance(result, BaseException):
                raise NetworkError(
                    "Resync request failed", cid=store.cid, detail=repr(result)
                ) from result
            try:
                loaded.append((store, store.prepare_replacement(result.to_state())))
            except ValueError as e:
                raise APIError(
                    "Malformed channel state during resync", cid=store.cid, detail=str(e)
                ) from e

        for store, replacement in loaded:
            if self._channels.get(store.cid) is store:
                self._loading.pop(store.cid, None)
                store.commit_replacement(replacement)
        self._resyncs += 1

    def _evict(self, cid: str) -> None:
        self._channels.pop(cid, None)
        self._loading.pop(cid, None)
        self._registry.remove_scope(cid)

    # =========================================================================
    # Listeners
    # =========================================================================

    def on(
        self,
        event_types: str | Iterable[str] | EventCallback | None = None,
        callback: EventCallback | None = None,
        *,
        cid: str | None = None,
    ) -> Subscription:
        """
        Register a listener.

        ``on(callback)`` and ``on(None, callback)`` listen to every event;
        ``on("message.new", callback)`` to one type. With cid, the listener
        only sees events applied to that channel's store.
        """
        if callback is None and callable(event_types):
            callback, event_types = event_types, None
        if callback is None:
            raise TypeError("on() requires a callback")
        return self._registry.add(callback, event_types, scope=cid or GLOBAL_SCOPE)

    def off(self, target: Subscription | EventCallback, *, cid: str | None = None) -> int:
        """Remove a subscription, or every registration of a callback. Returns the count removed."""
        if isinstance(target, Subscription):
            return int(target.unsubscribe())
        return self._registry.remove_callback(target, scope=cid or GLOBAL_SCOPE)

    # =========================================================================
    # Routing (dispatcher router)
    # =========================================================================

    def route(self, event: ChatEvent) -> bool:
        self._apply_user_scope(event)

        if event.cid is None:
            return False
        store = self._channels.get(event.cid)
        if store is None:
            return False

        buffered = self._loading.get(event.cid)
        if buffered is not None:
            # Channel listeners run once the store has caught up
            buffered.append(event)
            return False
        store.apply(event)
        return True

    def finalize(self, event: ChatEvent) -> None:
        if event.type in ChannelState.DELETE_EVENTS and event.cid in self._channels:
            logger.info("Evicting deleted channel", cid=event.cid)
            self._evict(event.cid)

    def _apply_user_scope(self, event: ChatEvent) -> None:
        if isinstance(event, ConnectionEvent):
            if event.type == EventType.CONNECTION_CHANGED.value and event.online:
                self._apply_me(self._connection.me)
            return

        if event.user is not None and event.user.get("id"):
            record = dict(event.user)
            if isinstance(event, UserEvent):
                if event.type == EventType.USER_BANNED.value:
                    record["banned"] = True
                elif event.type == EventType.USER_UNBANNED.value:
                    record["banned"] = False
                elif event.type == EventType.USER_DELETED.value and record.get("deleted_at") is None:
                    record["deleted_at"] = event.created_at
            user = self._users.upsert(record)
            if user.id == self._user_id:
                self._user = user

        if isinstance(event, NotificationEvent) and event.me:
            self._apply_me(event.me)

        total_unread = getattr(event, "total_unread_count", None)
        if total_unread is not None:
            self._total_unread_count = total_unread
        unread_channels = getattr(event, "unread_channels", None)
        if unread_channels is not None:
            self._unread_channels = unread_channels

    def _apply_me(self, me: dict[str, Any] | None) -> None:
        if not me or not me.get("id"):
            return
        self._user = self._users.upsert(me)
        self._user_id = self._user.id

        if "mutes" in me:
            self._mutes = list(me.get("mutes") or [])
        if "channel_mutes" in me:
            self._channel_mutes = list(me.get("channel_mutes") or [])
            muted = {
                (mute.get("channel") or {}).get("cid")
                for mute in self._channel_mutes
                if isinstance(mute, dict)
            }
            for store in self._channels.values():
                store.set_muted(store.cid in muted)
        if isinstance(me.get("total_unread_count"), int):
            self._total_unread_count = me["total_unread_count"]
        if isinstance(me.get("unread_channels"), int):
            self._unread_channels = me["unread_channels"]

    def get_stats(self) -> dict[str, Any]:
        return {
            "connection": self._connection.get_stats(),
            "dispatcher": self._dispatcher.get_stats(),
            "channels": len(self._channels),
            "users": len(self._users),
        }
