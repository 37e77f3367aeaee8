"""Real-time gateway: admits actions one at a time and delivers their effects.

All mutating work (socket actions, REST rename and file arrival, grace
period leaves, the expiry sweep) goes through :attr:`ChatGateway.lock`.
Holding the lock while an Outbox is delivered keeps broadcast order equal
to admission order. Slow external I/O (link preview fetches, writing
uploads to disk) happens before the lock is taken.

Errors raised by the managers are reported to the originating connection
only; they never affect other connections.
"""
import asyncio
import logging
from typing import Any, Awaitable, Callable, Dict, Optional, Type, TypeVar

from fastapi import WebSocket
from pydantic import BaseModel, ValidationError

from myflow.config import AppConfig, get_config
from myflow.errors import ChatError, InvalidPayloadError
from myflow.files.schemas import StoredFile
from myflow.files.service import FileStorageService
from myflow.preview.service import LinkPreviewService

from .connections import ConnectionManager
from .lifecycle import MessageLifecycle
from .membership import MembershipManager
from .protocol import ClientAction, Outbox, Scope, ServerEvent, Subscription
from .schemas import (
    InvitePairedDeviceAction,
    JoinRoomAction,
    KickMemberAction,
    LoadMoreMessagesAction,
    MessageIdsAction,
    SendMessageAction,
    TogglePinAction,
    UserRecord,
)
from .store import ChatStore
from .tokens import parse_room_token

logger = logging.getLogger(__name__)

ModelT = TypeVar("ModelT", bound=BaseModel)

INTERNAL_ERROR = {"code": "internal_error", "error": "Internal server error."}


def parse_action(model: Type[ModelT], data: Dict[str, Any]) -> ModelT:
    """Validate an inbound payload, turning pydantic errors into InvalidPayloadError."""
    try:
        return model.model_validate(data)
    except ValidationError as e:
        fields = ", ".join(".".join(str(p) for p in err["loc"]) for err in e.errors())
        raise InvalidPayloadError(f"Invalid payload ({fields}).") from e


class ChatGateway:
    """Serializes chat actions and fans their events out to connections."""

    def __init__(
        self,
        store: ChatStore,
        files: Optional[FileStorageService],
        preview: Optional[LinkPreviewService],
        config: AppConfig,
    ) -> None:
        self.store = store
        self.files = files
        self.preview = preview
        self.config = config
        self.lock = asyncio.Lock()
        self.connections = ConnectionManager()
        self.membership = MembershipManager(
            store, files, resync_page_size=config.rooms.resync_page_size
        )
        self.messages = MessageLifecycle(
            store,
            files,
            default_page_size=config.rooms.default_page_size,
            max_page_size=config.rooms.max_page_size,
            retention_seconds=config.retention.retention_seconds,
        )
        self._pending_leaves: Dict[str, asyncio.Task] = {}
        self._handlers: Dict[
            ClientAction, Callable[[WebSocket, str, Dict[str, Any]], Awaitable[None]]
        ] = {
            ClientAction.JOIN_ROOM: self._on_join_room,
            ClientAction.SEND_MESSAGE: self._on_send_message,
            ClientAction.TOGGLE_PIN: self._on_toggle_pin,
            ClientAction.LEAVE_ROOM: self._on_leave_room,
            ClientAction.KICK_MEMBER: self._on_kick_member,
            ClientAction.INVITE_PAIRED_DEVICE: self._on_invite_paired_device,
            ClientAction.LOAD_MORE_MESSAGES: self._on_load_more_messages,
            ClientAction.SOFT_DELETE_MESSAGES: self._on_soft_delete_messages,
            ClientAction.RESTORE_MESSAGES: self._on_restore_messages,
            ClientAction.RESTORE_ALL_MESSAGES: self._on_restore_all_messages,
        }

    # =========================================================================
    # Delivery
    # =========================================================================

    async def deliver(self, outbox: Outbox, origin: Optional[WebSocket] = None) -> None:
        """Apply an Outbox in order. Caller must hold the lock."""
        for effect in outbox:
            if isinstance(effect, Subscription):
                if effect.subscribe:
                    self.connections.subscribe_user(effect.user_id, effect.room_id)
                else:
                    self.connections.unsubscribe_user(effect.user_id, effect.room_id)
                continue

            message = effect.as_message()
            if effect.scope == Scope.ROOM:
                await self.connections.broadcast(message, effect.target)
            elif effect.scope == Scope.USER:
                await self.connections.send_to_user(message, effect.target)
            elif origin is not None:
                await self.connections.send(message, origin)

    async def _run(self, operation: Callable[[], Outbox], origin: Optional[WebSocket] = None) -> None:
        async with self.lock:
            outbox = operation()
            await self.deliver(outbox, origin)

    async def _send_error(self, websocket: WebSocket, error: Dict[str, str]) -> None:
        await self.connections.send({"type": ServerEvent.ERROR.value, **error}, websocket)

    # =========================================================================
    # Connection lifecycle
    # =========================================================================

    async def connect(
        self,
        websocket: WebSocket,
        user_id: Optional[str],
        user_agent: Optional[str] = None,
    ) -> UserRecord:
        """Register an accepted connection and resync it with the user's room."""
        async with self.lock:
            user = self.membership.identify(user_id, user_agent)
            self._cancel_pending_leave(user.userId)
            self.connections.register(websocket, user.userId)
            await self.connections.send(
                {"type": ServerEvent.CONNECTED.value, "user": user.model_dump()}, websocket
            )
            await self.deliver(self.membership.reconnect(user.userId), websocket)
        return user

    async def disconnect(self, websocket: WebSocket) -> None:
        async with self.lock:
            user_id = self.connections.unregister(websocket)
        if user_id is None:
            return
        logger.info(f"[WS] User {user_id} disconnected")

        grace = self.config.rooms.disconnect_grace_seconds
        if grace > 0 and not self.connections.is_connected(user_id):
            self._cancel_pending_leave(user_id)
            self._pending_leaves[user_id] = asyncio.create_task(
                self._leave_after_grace(user_id, grace)
            )

    def _cancel_pending_leave(self, user_id: str) -> None:
        task = self._pending_leaves.pop(user_id, None)
        if task is not None and not task.done():
            task.cancel()

    async def _leave_after_grace(self, user_id: str, grace: float) -> None:
        await asyncio.sleep(grace)
        async with self.lock:
            self._pending_leaves.pop(user_id, None)
            if self.connections.is_connected(user_id):
                return
            try:
                outbox = self.membership.leave(user_id)
            except ChatError as e:
                logger.warning(f"[WS] Grace-period leave for {user_id} failed: {e}")
                return
            logger.info(f"[WS] User {user_id} left after {grace}s without a connection")
            await self.deliver(outbox)

    async def shutdown(self) -> None:
        for task in list(self._pending_leaves.values()):
            task.cancel()
        self._pending_leaves.clear()

    # =========================================================================
    # Socket actions
    # =========================================================================

    async def dispatch(self, websocket: WebSocket, data: Any) -> None:
        """Handle one inbound frame; failures are reported to this connection only."""
        user_id = self.connections.user_of(websocket)
        if user_id is None:
            return
        try:
            if not isinstance(data, dict):
                raise InvalidPayloadError("Expected a JSON object.")
            try:
                action = ClientAction(data.get("type"))
            except ValueError:
                raise InvalidPayloadError(f"Unknown action type: {data.get('type')!r}")
            logger.debug("[WS] %s from user %s", action.value, user_id)
            await self._handlers[action](websocket, user_id, data)
        except ChatError as e:
            logger.info(f"[WS] {type(e).__name__} for user {user_id}: {e}")
            await self._send_error(websocket, e.to_event())
        except Exception:
            logger.exception(f"[WS] Unexpected error handling action of user {user_id}")
            await self._send_error(websocket, INTERNAL_ERROR)

    async def _on_join_room(self, websocket, user_id, data) -> None:
        action = parse_action(JoinRoomAction, data)
        room_id = action.roomId
        if room_id is None and action.token:
            room_id = parse_room_token(action.token)
        await self._run(lambda: self.membership.join(user_id, room_id), websocket)

    async def _on_send_message(self, websocket, user_id, data) -> None:
        action = parse_action(SendMessageAction, data)
        url_metadata = action.urlMetadata
        if url_metadata is None and self.preview is not None and self.config.link_preview.auto_fetch:
            url_metadata = await self.preview.preview_for_text(action.content)
        await self._run(
            lambda: self.messages.send(user_id, action.content, url_metadata), websocket
        )

    async def _on_toggle_pin(self, websocket, user_id, data) -> None:
        action = parse_action(TogglePinAction, data)
        await self._run(lambda: self.messages.toggle_pin(user_id, action.messageId), websocket)

    async def _on_leave_room(self, websocket, user_id, data) -> None:
        await self._run(lambda: self.membership.leave(user_id), websocket)

    async def _on_kick_member(self, websocket, user_id, data) -> None:
        action = parse_action(KickMemberAction, data)
        await self._run(lambda: self.membership.kick(user_id, action.targetUserId), websocket)

    async def _on_invite_paired_device(self, websocket, user_id, data) -> None:
        action = parse_action(InvitePairedDeviceAction, data)
        await self._run(lambda: self.membership.invite(user_id, action.targetToken), websocket)

    async def _on_load_more_messages(self, websocket, user_id, data) -> None:
        action = parse_action(LoadMoreMessagesAction, data)
        await self._run(
            lambda: self.messages.load_more(user_id, action.roomId, action.beforeId, action.limit),
            websocket,
        )

    async def _on_soft_delete_messages(self, websocket, user_id, data) -> None:
        action = parse_action(MessageIdsAction, data)
        await self._run(
            lambda: self.messages.delete_messages(user_id, action.messageIds), websocket
        )

    async def _on_restore_messages(self, websocket, user_id, data) -> None:
        action = parse_action(MessageIdsAction, data)
        await self._run(lambda: self.messages.restore(user_id, action.messageIds), websocket)

    async def _on_restore_all_messages(self, websocket, user_id, data) -> None:
        await self._run(lambda: self.messages.restore_all(user_id), websocket)

    # =========================================================================
    # Actions arriving over REST / background tasks
    # =========================================================================

    async def rename(self, user_id: str, new_name: str) -> UserRecord:
        async with self.lock:
            user, outbox = self.membership.rename(user_id, new_name)
            await self.deliver(outbox)
        return user

    async def record_file(
        self,
        user_id: str,
        room_id: str,
        stored: StoredFile,
        client_id: Optional[str] = None,
    ) -> Dict[str, Any]:
        """Announce a stored upload; returns the broadcast message record."""
        async with self.lock:
            outbox = self.messages.record_file(user_id, room_id, stored, client_id)
            await self.deliver(outbox)
        return outbox.envelopes(ServerEvent.NEW_MESSAGE)[0].payload["message"]

    async def sweep(self, now: Optional[float] = None) -> None:
        await self._run(lambda: self.messages.sweep(now))


_gateway: Optional[ChatGateway] = None


def get_gateway() -> ChatGateway:
    """Return the process-wide gateway, wiring its services on first use."""
    global _gateway
    if _gateway is None:
        config = get_config()
        store = ChatStore.get_instance(config.storage.db_path)
        files = FileStorageService.get_instance(
            config.storage.upload_dir,
            blocked_extensions=config.uploads.blocked_extensions,
            max_file_size_bytes=config.uploads.max_file_size_bytes,
        )
        preview = None
        if config.link_preview.enabled:
            preview = LinkPreviewService.get_instance(
                timeout_seconds=config.link_preview.timeout_seconds,
                max_bytes=config.link_preview.max_bytes,
                user_agent=config.link_preview.user_agent,
            )
        _gateway = ChatGateway(store, files, preview, config)
    return _gateway


def reset_gateway() -> None:
    """Forget the gateway (for testing)."""
    global _gateway
    _gateway = None
