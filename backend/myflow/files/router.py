"""FastAPI router for file upload and download endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, File, Form, HTTPException, UploadFile
from fastapi.responses import FileResponse

from myflow.chat.gateway import get_gateway
from myflow.errors import ChatError, ForbiddenError, RoomNotFoundError

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


@router.post("/api/upload")
async def upload_file(
    file: UploadFile = File(...),
    userId: str = Form(...),
    roomId: str = Form(...),
    clientId: Optional[str] = Form(None),
):
    """Upload a file to a chat room and announce it as a file message.

    Args:
        file: The file to upload
        userId: Uploader, must be a member of roomId
        roomId: Room ID to upload to
        clientId: Optional id echoed back in the broadcast message so the
            uploader can replace its local placeholder

    Returns:
        {"success": true, "message": <file message record>}

    Raises:
        HTTPException 404: If the room does not exist
        HTTPException 403: If the uploader is not a member of the room
        HTTPException 422: If the file is blocked or too large
    """
    gateway = get_gateway()
    service = gateway.files

    try:
        # Cheap checks first so rejected uploads never touch the disk;
        # record_file repeats them under the lock.
        if not gateway.store.room_exists(roomId):
            raise RoomNotFoundError(roomId)
        uploader = gateway.store.get_user(userId)
        if uploader is None or uploader.roomId != roomId:
            raise ForbiddenError("You are not a member of this room.")

        content = await file.read()
        stored = await service.save_file(roomId, file.filename or "", content)
    except ChatError as e:
        raise HTTPException(status_code=e.status_code, detail=str(e))

    try:
        message = await gateway.record_file(userId, roomId, stored, clientId)
    except RoomNotFoundError as e:
        # The room was destroyed while the file was written; save_file
        # recreated its directory.
        service.delete_room_files(roomId)
        raise HTTPException(status_code=e.status_code, detail=str(e))
    except ChatError as e:
        # The uploader left the room while the file was written
        service.delete_payload(stored.url, stored.thumbnail_url)
        raise HTTPException(status_code=e.status_code, detail=str(e))

    logger.info(
        f"File uploaded: {stored.original_filename} "
        f"({stored.size_bytes} bytes) to room {roomId}"
    )
    return {"success": True, "message": message}


@router.get("/uploads/{room_id}/{filename}")
async def download_file(room_id: str, filename: str):
    """Serve a stored upload.

    Raises:
        HTTPException 404: If the file is unknown or outside the upload dir
    """
    service = get_gateway().files
    file_path = service.resolve(service.url_for(room_id, filename))
    if file_path is None or not file_path.is_file():
        raise HTTPException(status_code=404, detail="File not found")

    # Stored names are "<ms>-<random>-<original name>"
    original_name = filename.split("-", 2)[-1]
    return FileResponse(path=file_path, filename=original_name)
