"""Chat router providing the WebSocket and the user/room HTTP endpoints.

This module provides:
    - WebSocket /ws?userId=...: real-time room chat
    - POST /api/user/identify: identify or create a user
    - POST /api/user/rename: change a display name
    - POST /api/qr/generate-pairing: pairing token for device invites
    - POST /api/qr/generate-room: join token for a room
    - GET /rooms/{room_id}/messages: paginated history

Protocol Flow:
    1. Client connects with its stored userId (or none)
       -> Server sends: {type: "connected", user: {...}}
       -> Server sends: {type: "room_data", ...} if the user is in a room
    2. Client sends actions: {type: "join_room" | "send_message" | ...}
       -> Server broadcasts the resulting events to the room
    3. Failed actions: {type: "error", code, error} to the sender only
"""
import json
import logging
from typing import Optional

from fastapi import APIRouter, HTTPException, Query, Request, WebSocket, WebSocketDisconnect

from myflow.errors import ChatError

from .gateway import get_gateway
from .schemas import IdentifyRequest, PairingTokenRequest, RenameRequest, RoomTokenRequest
from .tokens import issue_pairing_token, issue_room_token

logger = logging.getLogger(__name__)

router = APIRouter()


def _http_error(error: ChatError) -> HTTPException:
    return HTTPException(status_code=error.status_code, detail=str(error))


@router.post("/api/user/identify")
async def identify_user(body: IdentifyRequest, request: Request) -> dict:
    """Return the user for a stored id, creating one on first visit.

    The default display name is derived from the User-Agent header,
    e.g. "Windows (Chrome)".
    """
    gateway = get_gateway()
    async with gateway.lock:
        user = gateway.membership.identify(body.userId, request.headers.get("user-agent"))
    return {"success": True, "user": user.model_dump()}


@router.post("/api/user/rename")
async def rename_user(body: RenameRequest) -> dict:
    try:
        user = await get_gateway().rename(body.userId, body.newName)
    except ChatError as e:
        raise _http_error(e)
    return {"success": True, "user": user.model_dump()}


@router.post("/api/qr/generate-pairing")
async def generate_pairing_token(body: PairingTokenRequest) -> dict:
    """Token a host scans to invite this device (QR rendering is client-side)."""
    if not body.userId:
        raise HTTPException(status_code=400, detail="Missing userId")
    return {"success": True, "token": issue_pairing_token(body.userId)}


@router.post("/api/qr/generate-room")
async def generate_room_token(body: RoomTokenRequest) -> dict:
    if not body.roomId:
        raise HTTPException(status_code=400, detail="Missing roomId")
    return {"success": True, "token": issue_room_token(body.roomId)}


@router.get("/rooms/{room_id}/messages")
async def get_message_history(
    room_id: str,
    before: Optional[int] = Query(None, description="Message id cursor (messages strictly older)"),
    limit: Optional[int] = Query(None, description="Page size (clamped to the configured maximum)"),
    viewer: Optional[str] = Query(None, description="User id whose view to render"),
) -> dict:
    """Get paginated message history for a room.

    Soft-deleted messages are only included when the viewer is the room's host.

    Example:
        GET /rooms/room-123/messages?limit=20
        GET /rooms/room-123/messages?before=420&viewer=user-1
    """
    try:
        return get_gateway().messages.history(room_id, before, limit, viewer)
    except ChatError as e:
        raise _http_error(e)


@router.websocket("/ws")
async def websocket_endpoint(
    websocket: WebSocket,
    userId: Optional[str] = Query(None, description="Client-stored user id"),
) -> None:
    """WebSocket endpoint for a single client connection.

    The connection is bound to one user for its whole life; every action it
    sends is attributed to that user.
    """
    gateway = get_gateway()
    await websocket.accept()
    user = await gateway.connect(websocket, userId, websocket.headers.get("user-agent"))
    logger.info(f"[WS] Connection accepted for user {user.userId}")

    try:
        while True:
            text = await websocket.receive_text()
            try:
                data = json.loads(text)
            except ValueError:
                # Reported as an invalid payload by dispatch
                data = None
            await gateway.dispatch(websocket, data)
    except WebSocketDisconnect:
        logger.info(f"[WS] Client {user.userId} disconnected")
    finally:
        await gateway.disconnect(websocket)
