"""
Storage Adapter - GridFS-based document storage behind a small interface.

Holds generated artefacts (signed agreement PDFs). Callers treat every storage
failure as non-fatal: the database row stays valid without a downloadable file.
"""
import hashlib
import io
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Optional, Dict, Any, Tuple
from motor.motor_asyncio import AsyncIOMotorGridFSBucket
from database import database

logger = logging.getLogger(__name__)


class StorageError(Exception):
    """Base exception for storage operations."""
    pass


class DocumentNotFoundError(StorageError):
    """File not found in storage."""
    pass


class FileMetadata:
    """File metadata model."""
    def __init__(
        self,
        file_id: str,
        key: str,
        content_type: str,
        size_bytes: int,
        sha256_hash: str,
        upload_timestamp: datetime,
        metadata: Optional[Dict[str, Any]] = None,
    ):
        self.file_id = file_id
        self.key = key
        self.content_type = content_type
        self.size_bytes = size_bytes
        self.sha256_hash = sha256_hash
        self.upload_timestamp = upload_timestamp
        self.metadata = metadata or {}


class DocumentStore(ABC):
    """Abstract base class for storage implementations."""

    @abstractmethod
    async def store(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileMetadata:
        """Store bytes under a key and return metadata. Raises StorageError on failure."""
        pass

    @abstractmethod
    async def fetch(self, key: str) -> Tuple[bytes, FileMetadata]:
        """Download file content and metadata by key. Raises DocumentNotFoundError."""
        pass


class GridFSDocumentStore(DocumentStore):
    """
    GridFS-based storage implementation.
    The key is stored as the GridFS filename; file_id is the GridFS ObjectId.
    """

    def __init__(self, bucket_name: str = "agreement_documents"):
        self.bucket_name = bucket_name
        self._bucket = None

    def _get_bucket(self) -> AsyncIOMotorGridFSBucket:
        if self._bucket is None:
            db = database.get_db()
            self._bucket = AsyncIOMotorGridFSBucket(db, bucket_name=self.bucket_name)
        return self._bucket

    def _calculate_hash(self, data: bytes) -> str:
        return hashlib.sha256(data).hexdigest()

    async def store(
        self,
        key: str,
        data: bytes,
        content_type: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> FileMetadata:
        bucket = self._get_bucket()
        sha256_hash = self._calculate_hash(data)
        now = datetime.now(timezone.utc)

        try:
            file_id = await bucket.upload_from_stream(
                key,
                io.BytesIO(data),
                metadata={
                    "content_type": content_type,
                    "sha256_hash": sha256_hash,
                    "upload_timestamp": now.isoformat(),
                    "custom_metadata": metadata or {},
                },
            )
        except Exception as e:
            raise StorageError(f"GridFS upload failed for {key}: {e}") from e

        logger.info(f"File stored in GridFS: {key} ({file_id})")
        return FileMetadata(
            file_id=str(file_id),
            key=key,
            content_type=content_type,
            size_bytes=len(data),
            sha256_hash=sha256_hash,
            upload_timestamp=now,
            metadata=metadata,
        )

    async def fetch(self, key: str) -> Tuple[bytes, FileMetadata]:
        bucket = self._get_bucket()
        db = database.get_db()

        # Latest upload wins if a key was ever written twice
        file_doc = await db[f"{self.bucket_name}.files"].find_one(
            {"filename": key}, sort=[("uploadDate", -1)]
        )
        if not file_doc:
            raise DocumentNotFoundError(f"File not found: {key}")

        stream = io.BytesIO()
        await bucket.download_to_stream(file_doc["_id"], stream)

        gridfs_meta = file_doc.get("metadata", {})
        return stream.getvalue(), FileMetadata(
            file_id=str(file_doc["_id"]),
            key=key,
            content_type=gridfs_meta.get("content_type", "application/octet-stream"),
            size_bytes=file_doc["length"],
            sha256_hash=gridfs_meta.get("sha256_hash", ""),
            upload_timestamp=datetime.fromisoformat(
                gridfs_meta.get("upload_timestamp", datetime.now(timezone.utc).isoformat())
            ),
            metadata=gridfs_meta.get("custom_metadata", {}),
        )


document_store = GridFSDocumentStore()


def agreement_document_key(account_id: str, signed_at: datetime) -> str:
    return f"agreements/{account_id}/{int(signed_at.timestamp() * 1000)}-agreement.pdf"
