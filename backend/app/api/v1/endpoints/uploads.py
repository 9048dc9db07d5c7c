"""
File upload endpoint.

Files are written before any ledger transaction that references them; a
file whose row never commits is an orphan and is tolerated.
"""

from fastapi import APIRouter, Depends, status

from backend.app.core.dependencies import get_current_actor, get_file_storage
from backend.app.core.permissions import Actor
from backend.app.schemas.upload import UploadRequest, UploadResponse
from backend.app.services.file_storage import FileStorage, decode_upload

router = APIRouter(prefix="/uploads", tags=["Uploads"])


@router.post("", response_model=UploadResponse, status_code=status.HTTP_201_CREATED)
async def upload_file(
    payload: UploadRequest,
    actor: Actor = Depends(get_current_actor),
    storage: FileStorage = Depends(get_file_storage)
):
    """
    Store a base64 receipt, payment or expense image.

    Returns the relative path to put on the row and its public URL.
    """
    content, mimetype = decode_upload(payload.content)
    filename = storage.generate_filename(
        payload.category, payload.entity_id, payload.kind, mimetype, payload.filename
    )
    path = storage.save(content, filename, payload.category)
    return {"path": path, "url": storage.resolve_url(path)}
