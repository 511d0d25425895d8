"""Pydantic schemas for file upload functionality.

This module defines the data models for file sharing:
- FileMetadata: Complete file information stored in DuckDB
- FileUploadResponse: API response after a successful upload

Uploaded files are stored under a generated name that keeps the original
extension, so two uploads of ``report.pdf`` never collide on disk.
"""
import time
import uuid
from pathlib import Path
from typing import Iterable

from pydantic import BaseModel, Field


class FileMetadata(BaseModel):
    """Metadata for an uploaded file.

    ``stored_name`` is what the file is called on disk and in its URL;
    ``original_name`` is only for display.
    """
    id: str = Field(default_factory=lambda: str(uuid.uuid4()), description="Unique file ID")
    stored_name: str = Field(..., description="Filename on disk (UUID-based)")
    original_name: str = Field(..., description="Original filename")
    size_bytes: int = Field(..., description="File size in bytes")
    uploaded_at: float = Field(default_factory=time.time, description="Upload timestamp")


class FileUploadResponse(BaseModel):
    """Response after successful file upload.

    The client passes both fields straight into ``send_file`` or a file DM.
    """
    url: str = Field(..., description="URL the file is served from")
    fileName: str = Field(..., description="Original filename")


def file_extension(filename: str) -> str:
    """Lower-cased extension without the dot ('' if there is none).

    Examples:
        >>> file_extension("Photo.JPG")
        'jpg'
        >>> file_extension("README")
        ''
    """
    return Path(filename).suffix.lower().lstrip(".")


def is_allowed_extension(filename: str, allowed: Iterable[str]) -> bool:
    ext = file_extension(filename)
    return bool(ext) and ext in set(allowed)
