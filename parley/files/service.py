"""File storage service.

Handles file storage on disk and metadata tracking in DuckDB.
Files are stored flat in the upload directory as {uuid}.{ext}.
"""
import logging
import uuid
from pathlib import Path
from typing import Optional

import duckdb

from .schemas import FileMetadata, file_extension

logger = logging.getLogger(__name__)


class FileStorageService:
    """Service for managing file uploads and storage."""

    _instance: Optional["FileStorageService"] = None
    _upload_dir: str = "uploads"
    _db_path: str = "file_metadata.duckdb"

    def __init__(self, upload_dir: Optional[str] = None, db_path: Optional[str] = None):
        """Initialize the file storage service."""
        if upload_dir:
            self._upload_dir = upload_dir
        if db_path:
            self._db_path = db_path

        self._connection: Optional[duckdb.DuckDBPyConnection] = None
        self._ensure_upload_dir()
        self._initialize_db()

    @classmethod
    def get_instance(cls, upload_dir: Optional[str] = None, db_path: Optional[str] = None) -> "FileStorageService":
        """Get or create the singleton instance."""
        if cls._instance is None:
            cls._instance = cls(upload_dir, db_path)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Reset the singleton instance (for testing)."""
        if cls._instance and cls._instance._connection:
            cls._instance._connection.close()
        cls._instance = None

    @property
    def upload_dir(self) -> Path:
        return Path(self._upload_dir)

    def _ensure_upload_dir(self) -> None:
        """Ensure the upload directory exists."""
        Path(self._upload_dir).mkdir(parents=True, exist_ok=True)

    def _get_connection(self) -> duckdb.DuckDBPyConnection:
        """Get or create database connection."""
        if self._connection is None:
            self._connection = duckdb.connect(self._db_path)
        return self._connection

    def _initialize_db(self) -> None:
        """Initialize the database schema."""
        conn = self._get_connection()
        conn.execute("""
            CREATE TABLE IF NOT EXISTS uploads (
                id VARCHAR PRIMARY KEY,
                stored_name VARCHAR NOT NULL UNIQUE,
                original_name VARCHAR NOT NULL,
                size_bytes BIGINT NOT NULL,
                uploaded_at DOUBLE NOT NULL
            )
        """)

    async def save_file(self, filename: str, content: bytes) -> FileMetadata:
        """Save an uploaded file to disk and record metadata.

        Size and extension checks are the caller's job; this only stores.

        Args:
            filename: Original filename
            content: File content as bytes

        Returns:
            FileMetadata object with file information
        """
        ext = file_extension(filename)
        stored_name = f"{uuid.uuid4().hex}.{ext}" if ext else uuid.uuid4().hex

        file_path = self.upload_dir / stored_name
        file_path.write_bytes(content)
        logger.info(f"Saved file: {file_path} ({len(content)} bytes)")

        metadata = FileMetadata(
            stored_name=stored_name,
            original_name=Path(filename).name,
            size_bytes=len(content),
        )

        conn = self._get_connection()
        conn.execute(
            """
            INSERT INTO uploads (id, stored_name, original_name, size_bytes, uploaded_at)
            VALUES (?, ?, ?, ?, ?)
            """,
            [
                metadata.id,
                metadata.stored_name,
                metadata.original_name,
                metadata.size_bytes,
                metadata.uploaded_at,
            ]
        )
        return metadata

    def get_by_stored_name(self, stored_name: str) -> Optional[FileMetadata]:
        """Get file metadata by its on-disk name."""
        conn = self._get_connection()
        result = conn.execute(
            """
            SELECT id, stored_name, original_name, size_bytes, uploaded_at
            FROM uploads
            WHERE stored_name = ?
            """,
            [stored_name]
        ).fetchone()

        if not result:
            return None

        return FileMetadata(
            id=result[0],
            stored_name=result[1],
            original_name=result[2],
            size_bytes=result[3],
            uploaded_at=result[4],
        )

    def get_file_path(self, stored_name: str) -> Optional[Path]:
        """Path on disk for a known upload, None if unknown or missing."""
        if self.get_by_stored_name(stored_name) is None:
            return None
        path = self.upload_dir / stored_name
        return path if path.exists() else None
