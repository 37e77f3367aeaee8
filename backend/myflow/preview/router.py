"""FastAPI router for link preview metadata."""
import logging

from fastapi import APIRouter, HTTPException
from pydantic import BaseModel

from myflow.chat.gateway import get_gateway

logger = logging.getLogger(__name__)

router = APIRouter(tags=["preview"])


class MetadataRequest(BaseModel):
    url: str = ""


@router.post("/api/metadata")
async def fetch_metadata(body: MetadataRequest) -> dict:
    """Fetch title and image for a URL.

    Returns {"success": true, "metadata": {title, image}} or
    {"success": false} when nothing could be extracted.
    """
    if not body.url:
        raise HTTPException(status_code=400, detail="Missing url")

    preview = get_gateway().preview
    if preview is None:
        return {"success": False, "error": "Link previews are disabled"}

    metadata = await preview.fetch(body.url)
    if metadata is None:
        return {"success": False}
    return {"success": True, "metadata": metadata.model_dump()}
