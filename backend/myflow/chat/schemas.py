"""Pydantic schemas for the room chat core.

This module defines the records that travel over the wire:
- UserRecord / MemberView: a user and its membership as seen by the room
- MessageRecord: a message with its resolved author name
- LinkPreview: optional title/image attached to text messages
- *Action models: validated payloads of the inbound WebSocket actions
- *Request models: bodies of the REST endpoints

Field names are camelCase because they are serialized verbatim to clients.
"""
from enum import Enum
from typing import List, Optional

from pydantic import BaseModel, Field


SYSTEM_USER_ID = "system"
SYSTEM_USER_NAME = "System"


class MessageType(str, Enum):
    """Kind of a stored message.

    Attributes:
        TEXT: Regular text message, optionally with a link preview.
        FILE: Uploaded file; content holds the download URL.
        SYSTEM: Authored by the reserved system user on membership changes.
    """
    TEXT = "text"
    FILE = "file"
    SYSTEM = "system"


class LinkPreview(BaseModel):
    """Title and image scraped from the first URL of a text message."""
    title: str = Field(default="", description="Page title (og:title preferred)")
    image: str = Field(default="", description="Absolute og:image URL")


class UserRecord(BaseModel):
    """A user as stored in the users table."""
    userId: str = Field(..., description="Opaque, client-stable identifier")
    name: str = Field(..., description="Display name")
    roomId: Optional[str] = Field(default=None, description="Current room, if any")
    isHost: bool = Field(default=False, description="Host of roomId")
    joinedAt: Optional[float] = Field(default=None, description="When roomId was joined")
    createdAt: float = Field(..., description="First contact timestamp")


class MemberView(BaseModel):
    """A room member as listed in a room_data resync."""
    userId: str
    name: str
    isHost: bool
    joinedAt: Optional[float] = None


class MessageRecord(BaseModel):
    """Complete message record broadcast to clients.

    Attributes:
        id: Monotonic, room-independent identifier.
        roomId: Owning room.
        userId: Author ("system" for system messages).
        userName: Author display name resolved at read time.
        type: text, file or system.
        content: Text content, or the file download URL for file messages.
        fileName / fileSize / fileThumbnail: File metadata (file messages only).
        urlMetadata: Optional link preview.
        isPinned: Pinned flag.
        deletedAt: Soft-delete timestamp; None while visible.
        createdAt: Server timestamp (seconds since epoch).
        clientId: Upload correlation id echoed back for placeholder reconciliation.
    """
    id: int
    roomId: str
    userId: str
    userName: str = ""
    type: MessageType
    content: str
    fileName: Optional[str] = None
    fileSize: Optional[int] = None
    fileThumbnail: Optional[str] = None
    urlMetadata: Optional[LinkPreview] = None
    isPinned: bool = False
    deletedAt: Optional[float] = None
    createdAt: float
    clientId: Optional[str] = None

    @property
    def is_deleted(self) -> bool:
        return self.deletedAt is not None


# =============================================================================
# Inbound WebSocket actions
# =============================================================================


class JoinRoomAction(BaseModel):
    """join_room: roomId (or a join_room:<id> token); neither creates a room."""
    roomId: Optional[str] = None
    token: Optional[str] = None


class SendMessageAction(BaseModel):
    content: str
    urlMetadata: Optional[LinkPreview] = None


class TogglePinAction(BaseModel):
    messageId: int


class KickMemberAction(BaseModel):
    targetUserId: str


class InvitePairedDeviceAction(BaseModel):
    targetToken: str


class LoadMoreMessagesAction(BaseModel):
    roomId: str
    beforeId: int
    limit: Optional[int] = None


class MessageIdsAction(BaseModel):
    """soft_delete_messages / restore_messages payload."""
    messageIds: List[int] = Field(..., min_length=1)


# =============================================================================
# REST request bodies
# =============================================================================


class IdentifyRequest(BaseModel):
    userId: Optional[str] = None


class RenameRequest(BaseModel):
    userId: str
    newName: str


class PairingTokenRequest(BaseModel):
    userId: str


class RoomTokenRequest(BaseModel):
    roomId: str
