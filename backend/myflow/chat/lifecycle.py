"""Message lifecycle: send, file arrival, pin, delete, restore, paging, expiry.

A message is created visible, may be soft-deleted by any member (hidden
from non-hosts, restorable by the host), hard-deleted by the host, or swept
once it has been soft-deleted for longer than the retention window.

Like the membership manager, every operation validates first, writes to the
store, and returns an Outbox for the gateway to deliver.
"""
import logging
from typing import List, Optional

from myflow.errors import (
    ForbiddenError,
    InvalidPayloadError,
    NotFoundError,
    RoomNotFoundError,
)
from myflow.files.schemas import StoredFile
from myflow.files.service import FileStorageService

from .protocol import Outbox, ServerEvent, dump_messages, visible_messages
from .schemas import LinkPreview, MessageRecord, MessageType, UserRecord
from .store import ChatStore

logger = logging.getLogger(__name__)


class MessageLifecycle:
    """Message operations of one room chat deployment."""

    def __init__(
        self,
        store: ChatStore,
        files: Optional[FileStorageService] = None,
        default_page_size: int = 20,
        max_page_size: int = 100,
        retention_seconds: float = 7 * 24 * 60 * 60,
    ) -> None:
        self.store = store
        self.files = files
        self.default_page_size = default_page_size
        self.max_page_size = max_page_size
        self.retention_seconds = retention_seconds

    def _user(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id) if user_id else None
        if user is None:
            raise NotFoundError("Unknown user.")
        return user

    def _page_limit(self, limit: Optional[int]) -> int:
        if limit is None:
            return self.default_page_size
        if limit < 1:
            raise InvalidPayloadError("limit must be a positive integer.")
        return min(limit, self.max_page_size)

    def _release_payload(self, message: MessageRecord) -> None:
        if self.files is not None and message.type == MessageType.FILE:
            self.files.delete_payload(message.content, message.fileThumbnail)

    # =========================================================================
    # Creation
    # =========================================================================

    def send(
        self,
        user_id: str,
        content: str,
        url_metadata: Optional[LinkPreview] = None,
    ) -> Outbox:
        """Append a text message to the sender's room.

        Sending while in no room is silently ignored.
        """
        user = self._user(user_id)
        if not user.roomId:
            logger.debug(f"[Messages] Dropping message from {user_id}: not in a room")
            return Outbox()
        if not content or not content.strip():
            raise InvalidPayloadError("Message content cannot be empty.")

        message = self.store.add_message(
            user.roomId, user_id, MessageType.TEXT, content, url_metadata=url_metadata
        )
        return Outbox().to_room(
            user.roomId, ServerEvent.NEW_MESSAGE, message=message.model_dump(mode="json")
        )

    def record_file(
        self,
        user_id: str,
        room_id: str,
        stored: StoredFile,
        client_id: Optional[str] = None,
    ) -> Outbox:
        """Announce an upload that is already on disk as a file message.

        Raises:
            RoomNotFoundError: If the room was destroyed meanwhile.
            ForbiddenError: If the uploader is not a member of the room.
        """
        if not self.store.room_exists(room_id):
            raise RoomNotFoundError(room_id)
        user = self._user(user_id)
        if user.roomId != room_id:
            raise ForbiddenError("You are not a member of this room.")

        message = self.store.add_message(
            room_id,
            user_id,
            MessageType.FILE,
            stored.url,
            file_name=stored.original_filename,
            file_size=stored.size_bytes,
            file_thumbnail=stored.thumbnail_url,
        )
        message = message.model_copy(update={"clientId": client_id})
        logger.info(f"[Messages] File {stored.original_filename} shared in {room_id}")
        return Outbox().to_room(
            room_id, ServerEvent.NEW_MESSAGE, message=message.model_dump(mode="json")
        )

    # =========================================================================
    # Pinning
    # =========================================================================

    def toggle_pin(self, user_id: str, message_id: int) -> Outbox:
        user = self._user(user_id)
        message = self.store.get_message(message_id)
        if message is None:
            return Outbox()
        if message.roomId != user.roomId:
            raise ForbiddenError("Message belongs to another room.")

        updated = self.store.set_pinned(message_id, not message.isPinned)
        return Outbox().to_room(
            message.roomId,
            ServerEvent.MESSAGE_UPDATED,
            message=updated.model_dump(mode="json"),
            pinnedMessages=dump_messages(self.store.pinned_messages(message.roomId)),
        )

    # =========================================================================
    # Deletion / restore
    # =========================================================================

    def delete_messages(self, user_id: str, message_ids: List[int]) -> Outbox:
        """Host: hard delete with payloads. Member: soft delete.

        Ids outside the actor's current room are ignored.
        """
        user = self._user(user_id)
        outbox = Outbox()
        if not user.roomId:
            return outbox

        if user.isHost:
            removed = self.store.delete_messages(user.roomId, message_ids)
            for message in removed:
                self._release_payload(message)
            if removed:
                ids = [m.id for m in removed]
                logger.info(f"[Messages] Host {user_id} hard-deleted {ids} in {user.roomId}")
                outbox.to_room(user.roomId, ServerEvent.MESSAGES_HARD_DELETED, messageIds=ids)
            return outbox

        ids = self.store.soft_delete(user.roomId, message_ids)
        if ids:
            logger.info(f"[Messages] User {user_id} soft-deleted {ids} in {user.roomId}")
            outbox.to_room(user.roomId, ServerEvent.MESSAGES_DELETED, messageIds=ids)
        return outbox

    def _require_host(self, user_id: str) -> UserRecord:
        user = self._user(user_id)
        if not user.roomId or not user.isHost:
            raise ForbiddenError("Only the Host can restore messages.")
        return user

    def restore(self, user_id: str, message_ids: List[int]) -> Outbox:
        host = self._require_host(user_id)
        ids = self.store.restore(host.roomId, message_ids)
        outbox = Outbox()
        if ids:
            outbox.to_room(host.roomId, ServerEvent.MESSAGES_RESTORED, messageIds=ids)
        return outbox

    def restore_all(self, user_id: str) -> Outbox:
        host = self._require_host(user_id)
        ids = self.store.restore_all(host.roomId)
        logger.info(f"[Messages] Host {user_id} restored {len(ids)} message(s) in {host.roomId}")
        return Outbox().to_room(
            host.roomId, ServerEvent.ALL_MESSAGES_RESTORED, messageIds=ids
        )

    # =========================================================================
    # Paging
    # =========================================================================

    def page(self, room_id: str, before_id: Optional[int], limit: Optional[int]) -> dict:
        """Messages strictly older than *before_id* (or the latest page).

        A cursor that is missing or belongs to another room gives an empty
        page.
        """
        limit = self._page_limit(limit)
        if before_id is None:
            messages = self.store.recent_messages(room_id, limit)
        else:
            cursor = self.store.get_message(before_id)
            if cursor is None or cursor.roomId != room_id:
                messages = []
            else:
                messages = self.store.messages_before(room_id, cursor, limit)
        return {
            "roomId": room_id,
            "messages": messages,
            "hasMore": len(messages) == limit,
        }

    def load_more(
        self,
        user_id: str,
        room_id: str,
        before_id: int,
        limit: Optional[int] = None,
    ) -> Outbox:
        user = self._user(user_id)
        if user.roomId != room_id:
            raise ForbiddenError("You are not a member of this room.")
        page = self.page(room_id, before_id, limit)
        return Outbox().to_actor(
            ServerEvent.MORE_MESSAGES_LOADED,
            roomId=room_id,
            messages=dump_messages(page["messages"]),
            hasMore=page["hasMore"],
        )

    def history(
        self,
        room_id: str,
        before_id: Optional[int] = None,
        limit: Optional[int] = None,
        viewer_id: Optional[str] = None,
    ) -> dict:
        """Page of messages as the given viewer renders them."""
        if not self.store.room_exists(room_id):
            raise RoomNotFoundError(room_id)
        viewer = self.store.get_user(viewer_id) if viewer_id else None
        viewer_is_host = bool(viewer and viewer.roomId == room_id and viewer.isHost)

        page = self.page(room_id, before_id, limit)
        return {
            "roomId": room_id,
            "messages": dump_messages(visible_messages(page["messages"], viewer_is_host)),
            "hasMore": page["hasMore"],
        }

    # =========================================================================
    # Expiry
    # =========================================================================

    def sweep(self, now: Optional[float] = None) -> Outbox:
        """Hard-delete messages soft-deleted longer than the retention window.

        Each row is committed on its own; a failing row is logged and skipped
        and will be retried by the next sweep.
        """
        now = self.store.now() if now is None else now
        cutoff = now - self.retention_seconds
        expired = self.store.expired_messages(cutoff)
        if not expired:
            return Outbox()

        removed_by_room = {}
        for message in expired:
            try:
                self._release_payload(message)
                if self.store.delete_message(message.id):
                    removed_by_room.setdefault(message.roomId, []).append(message.id)
            except Exception as e:
                logger.error(f"[Sweep] Failed to delete message {message.id}: {e}", exc_info=True)

        outbox = Outbox()
        for room_id, ids in removed_by_room.items():
            outbox.to_room(room_id, ServerEvent.MESSAGES_HARD_DELETED, messageIds=ids)

        total = sum(len(ids) for ids in removed_by_room.values())
        logger.info(f"[Sweep] Removed {total} expired message(s) from {len(removed_by_room)} room(s)")
        return outbox
