"""FastAPI router for file upload endpoints."""
import logging
from typing import Optional

from fastapi import APIRouter, File, HTTPException, UploadFile
from fastapi.responses import FileResponse

from .schemas import FileUploadResponse, is_allowed_extension
from .service import FileStorageService
from parley.config import get_config

logger = logging.getLogger(__name__)

router = APIRouter(tags=["files"])


def get_file_service() -> FileStorageService:
    config = get_config()
    return FileStorageService.get_instance(
        upload_dir=config.uploads.upload_dir,
        db_path=config.storage.files_db_path,
    )


@router.post("/api/upload", response_model=FileUploadResponse)
async def upload_file(file: Optional[UploadFile] = File(None)) -> FileUploadResponse:
    """Upload a file to share in a room or DM.

    The returned ``url`` and ``fileName`` are what the client sends in a
    ``send_file`` or file ``private_message`` event.

    Args:
        file: Multipart form field ``file``.

    Returns:
        FileUploadResponse with the public URL and original filename.

    Raises:
        HTTPException 400: If no file was sent.
        HTTPException 413: If the file exceeds the configured size limit.
        HTTPException 415: If the extension is not on the allow-list.
    """
    if file is None or not file.filename:
        raise HTTPException(status_code=400, detail="No file uploaded")

    uploads = get_config().uploads
    if not is_allowed_extension(file.filename, uploads.allowed_extensions):
        raise HTTPException(status_code=415, detail="Unsupported file type")

    content = await file.read()
    if len(content) > uploads.max_size_bytes:
        raise HTTPException(
            status_code=413,
            detail=f"File size exceeds limit of {uploads.max_size_bytes // (1024 * 1024)}MB"
        )

    metadata = await get_file_service().save_file(file.filename, content)
    url = f"{uploads.public_path.rstrip('/')}/{metadata.stored_name}"

    logger.info(f"File uploaded: {metadata.original_name} ({metadata.size_bytes} bytes) -> {url}")
    return FileUploadResponse(url=url, fileName=metadata.original_name)


@router.get("/uploads/{stored_name}")
async def download_file(stored_name: str):
    """Serve a previously uploaded file by its stored name.

    Raises:
        HTTPException 404: If the name is unknown or the file is gone.
    """
    service = get_file_service()
    metadata = service.get_by_stored_name(stored_name)
    file_path = service.get_file_path(stored_name) if metadata else None
    if not metadata or not file_path:
        raise HTTPException(status_code=404, detail="File not found")

    return FileResponse(path=file_path, filename=metadata.original_name)
