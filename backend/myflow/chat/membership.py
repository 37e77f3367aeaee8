"""Room membership state machine.

Owns every rule about who belongs to a room:

    - identify / rename users
    - join: create a room, join one, re-join (resync) or swap rooms
    - leave: host succession by seniority, room destruction when empty
    - kick: members may kick members, nobody but a host may kick a host
    - invite: a host pulls a paired device into its room

Each operation runs its store writes in one transaction and returns an
:class:`~myflow.chat.protocol.Outbox` describing the resulting events.
Permission failures raise before anything is written.
"""
import logging
import uuid
from typing import List, Optional, Tuple

from myflow.errors import (
    ForbiddenError,
    InvalidPayloadError,
    NotFoundError,
    RoomNotFoundError,
)
from myflow.files.service import FileStorageService

from .protocol import Outbox, ServerEvent, dump_messages
from .schemas import (
    SYSTEM_USER_ID,
    MemberView,
    MessageType,
    UserRecord,
)
from .store import ChatStore
from .tokens import parse_pairing_token

logger = logging.getLogger(__name__)

# Maximum display name length accepted by rename
MAX_NAME_LENGTH = 64

# Maximum length of a client-generated user id
MAX_USER_ID_LENGTH = 128


def parse_user_agent(user_agent: Optional[str]) -> str:
    """Derive a default display name such as "Windows (Chrome)" from a User-Agent."""
    if not user_agent:
        return "Unknown Device"

    os_name = "Unknown OS"
    if "Win" in user_agent:
        os_name = "Windows"
    elif "Mac" in user_agent:
        os_name = "MacOS"
    elif "Linux" in user_agent:
        os_name = "Linux"
    elif "Android" in user_agent:
        os_name = "Android"
    elif "iPhone" in user_agent or "iPad" in user_agent:
        os_name = "iOS"

    browser = "Unknown Browser"
    if "Chrome" in user_agent:
        browser = "Chrome"
    elif "Safari" in user_agent:
        browser = "Safari"
    elif "Firefox" in user_agent:
        browser = "Firefox"
    elif "Edge" in user_agent:
        browser = "Edge"

    return f"{os_name} ({browser})"


def new_room_id() -> str:
    return f"room-{uuid.uuid4()}"


class MembershipManager:
    """Join/leave/kick/invite logic on top of the ChatStore."""

    def __init__(
        self,
        store: ChatStore,
        files: Optional[FileStorageService] = None,
        resync_page_size: int = 20,
    ) -> None:
        self.store = store
        self.files = files
        self.resync_page_size = resync_page_size

    # =========================================================================
    # Users
    # =========================================================================

    def identify(self, user_id: Optional[str], user_agent: Optional[str] = None) -> UserRecord:
        """Return the user with *user_id*, creating it on first contact.

        Unknown but well-formed ids are adopted as-is so a client can keep
        the identifier it generated; anything else gets a fresh UUID.
        """
        if user_id:
            existing = self.store.get_user(user_id)
            if existing is not None and user_id != SYSTEM_USER_ID:
                return existing

        if not user_id or user_id == SYSTEM_USER_ID or len(user_id) > MAX_USER_ID_LENGTH:
            user_id = str(uuid.uuid4())

        user = self.store.create_user(user_id, parse_user_agent(user_agent))
        logger.info(f"[Membership] New user {user.userId} ({user.name})")
        return user

    def rename(self, user_id: str, new_name: str) -> Tuple[UserRecord, Outbox]:
        """Change a display name and tell the user's room about it."""
        name = (new_name or "").strip()
        if not name:
            raise InvalidPayloadError("Missing data")
        if len(name) > MAX_NAME_LENGTH:
            raise InvalidPayloadError(f"Name is longer than {MAX_NAME_LENGTH} characters.")

        self._require_user(user_id)
        user = self.store.rename_user(user_id, name)

        outbox = Outbox()
        if user.roomId:
            outbox.to_room(user.roomId, ServerEvent.USER_UPDATED, user=user.model_dump())
        return user, outbox

    def _require_user(self, user_id: str) -> UserRecord:
        user = self.store.get_user(user_id) if user_id else None
        if user is None or user_id == SYSTEM_USER_ID:
            raise NotFoundError("Unknown user.")
        return user

    # =========================================================================
    # Room state
    # =========================================================================

    def room_snapshot(self, room_id: str) -> dict:
        """Full room state: members, last message page and pinned set."""
        members = [
            MemberView(userId=m.userId, name=m.name, isHost=m.isHost, joinedAt=m.joinedAt)
            for m in self.store.get_members(room_id)
        ]
        return {
            "roomId": room_id,
            "members": [m.model_dump() for m in members],
            "messages": dump_messages(
                self.store.recent_messages(room_id, self.resync_page_size)
            ),
            "pinnedMessages": dump_messages(self.store.pinned_messages(room_id)),
        }

    def _resync(self, room_id: str, outbox: Outbox) -> None:
        outbox.to_room(room_id, ServerEvent.ROOM_DATA, **self.room_snapshot(room_id))

    def _system_message(self, room_id: str, content: str, outbox: Outbox) -> None:
        message = self.store.add_message(room_id, SYSTEM_USER_ID, MessageType.SYSTEM, content)
        outbox.to_room(room_id, ServerEvent.NEW_MESSAGE, message=message.model_dump(mode="json"))

    def reconnect(self, user_id: str) -> Outbox:
        """Re-attach a freshly opened connection to the user's current room."""
        user = self._require_user(user_id)
        outbox = Outbox()
        if not user.roomId:
            return outbox
        if not self.store.room_exists(user.roomId):
            logger.warning(f"[Membership] User {user_id} pointed at missing room {user.roomId}")
            self.store.clear_membership(user_id)
            return outbox
        outbox.subscribe(user_id, user.roomId)
        outbox.to_actor(ServerEvent.ROOM_DATA, **self.room_snapshot(user.roomId))
        return outbox

    # =========================================================================
    # Join / leave
    # =========================================================================

    def join(self, user_id: str, room_id: Optional[str] = None) -> Outbox:
        """Create (no room_id), join, re-join or swap into a room.

        A swap leaves the previous room through the regular leave logic and
        joins the target room in the same transaction.

        Raises:
            RoomNotFoundError: If room_id is given but does not exist.
        """
        user = self._require_user(user_id)
        outbox = Outbox()

        if room_id is not None and not self.store.room_exists(room_id):
            raise RoomNotFoundError(room_id)

        if room_id is not None and user.roomId == room_id:
            outbox.subscribe(user_id, room_id)
            self._resync(room_id, outbox)
            return outbox

        destroyed = []
        with self.store.transaction():
            if user.roomId:
                logger.info(f"[Membership] User {user_id} swapping out of room {user.roomId}")
                outbox.extend(self._depart(user, f"{user.name} left the room.", destroyed))

            if room_id is None:
                room_id = new_room_id()
                self.store.create_room(room_id)
                self.store.set_membership(user_id, room_id, is_host=True)
                outbox.subscribe(user_id, room_id)
                self._system_message(room_id, "Room created.", outbox)
                logger.info(f"[Membership] User {user_id} created room {room_id} as HOST")
            else:
                self.store.set_membership(user_id, room_id, is_host=False)
                outbox.subscribe(user_id, room_id)
                self._system_message(room_id, f"{user.name} joined the room.", outbox)
                logger.info(f"[Membership] User {user_id} joined room {room_id}")

            self._resync(room_id, outbox)
        self._purge_uploads(destroyed)
        return outbox

    def leave(self, user_id: str) -> Outbox:
        """Leave the current room; no-op when the user is in no room."""
        user = self._require_user(user_id)
        if not user.roomId:
            return Outbox()
        destroyed = []
        with self.store.transaction():
            outbox = self._depart(user, f"{user.name} left the room.", destroyed)
        self._purge_uploads(destroyed)
        return outbox

    def _depart(self, user: UserRecord, note: str, destroyed: List[str]) -> Outbox:
        """Remove *user* from its room, then destroy the room or hand over host.

        A destroyed room id is appended to *destroyed*; its uploads must only
        be purged once the surrounding transaction has committed.
        """
        room_id = user.roomId
        outbox = Outbox()
        outbox.unsubscribe(user.userId, room_id)
        self.store.clear_membership(user.userId)

        remaining = self.store.get_members(room_id)
        if not remaining:
            removed = self.store.delete_room(room_id)
            destroyed.append(room_id)
            logger.info(
                f"[Membership] Room {room_id} destroyed with {removed} message(s)"
            )
            return outbox

        self._system_message(room_id, note, outbox)

        if user.isHost:
            # Longest-tenured member; get_members orders by joined_at, then id.
            new_host = remaining[0]
            self.store.set_host(new_host.userId, True)
            self._system_message(room_id, f"{new_host.name} is now the Host.", outbox)
            logger.info(f"[Membership] Host of room {room_id} passed to {new_host.userId}")

        self._resync(room_id, outbox)
        return outbox

    def _purge_uploads(self, room_ids: List[str]) -> None:
        if self.files is None:
            return
        for room_id in room_ids:
            self.files.delete_room_files(room_id)

    # =========================================================================
    # Kick / invite
    # =========================================================================

    def kick(self, actor_id: str, target_id: str) -> Outbox:
        """Remove another member from the actor's room.

        Raises:
            ForbiddenError: If the users do not share a room, or a non-host
                tries to kick the host.
        """
        actor = self._require_user(actor_id)
        target = self._require_user(target_id)

        if not actor.roomId or actor.roomId != target.roomId:
            raise ForbiddenError("You can only kick members of your own room.")
        if actor.userId == target.userId:
            raise InvalidPayloadError("You cannot kick yourself.")
        if target.isHost and not actor.isHost:
            logger.warning(f"[Membership] User {actor_id} tried to kick the host {target_id}")
            raise ForbiddenError("You cannot kick the Host.")

        outbox = Outbox()
        outbox.to_user(
            target.userId,
            ServerEvent.USER_KICKED,
            userId=target.userId,
            roomId=target.roomId,
            kickedBy=actor.name,
        )
        destroyed = []
        with self.store.transaction():
            outbox.extend(self._depart(target, f"{target.name} was kicked by {actor.name}.", destroyed))
        self._purge_uploads(destroyed)
        logger.info(f"[Membership] User {target_id} kicked from {actor.roomId} by {actor_id}")
        return outbox

    def invite(self, host_id: str, target_token: str) -> Outbox:
        """Ask a paired device to join the host's room.

        Nothing moves here: the targeted client answers with its own join.
        """
        host = self._require_user(host_id)
        if not host.roomId:
            raise ForbiddenError("You are not in a room.")
        if not host.isHost:
            raise ForbiddenError("Only the Host can invite devices.")

        target_id = parse_pairing_token(target_token)
        if target_id == host.userId:
            raise InvalidPayloadError("You cannot invite yourself.")
        if self.store.get_user(target_id) is None:
            raise NotFoundError("Invited device is unknown.")

        logger.info(f"[Membership] Host {host_id} invited {target_id} to {host.roomId}")
        return Outbox().to_user(
            target_id,
            ServerEvent.FORCE_JOIN_ROOM,
            targetUserId=target_id,
            roomId=host.roomId,
            invitedBy=host.name,
        )
