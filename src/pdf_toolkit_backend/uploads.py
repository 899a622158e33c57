"""
Upload intake: turns a batch of multipart upload streams into File records.

Each stream is read in chunks into a spooled temporary file so the byte count
reflects what was actually received, not what the client declared. The batch
is all-or-nothing: if any stream is rejected or fails to store, every blob
already written for the batch is deleted and no File record is created.
"""

from __future__ import annotations

import logging
import tempfile
from dataclasses import dataclass
from typing import List, Optional, Protocol, Sequence

from fastapi.concurrency import run_in_threadpool
from omegaconf import DictConfig

from .database import FileRecord, RecordStore
from .errors import UploadTooLargeError, ValidationError
from .storage import BlobStorage
from .utils import guess_content_type, make_storage_key, normalize_extensions, split_extension

logger = logging.getLogger(__name__)

# Bytes kept in memory before the spool rolls over to disk
SPOOL_MAX_SIZE = 16 * 1024 * 1024


class UploadStream(Protocol):
    filename: Optional[str]
    content_type: Optional[str]

    async def read(self, size: int = -1) -> bytes: ...

    async def close(self) -> None: ...


@dataclass
class _StoredBlob:
    key: str
    original_name: str
    size: int
    content_type: str


class UploadIntake:
    def __init__(
        self,
        store: RecordStore,
        blobs: BlobStorage,
        max_file_size: int,
        max_files: int,
        allowed_extensions: Sequence[str] = (),
        chunk_size: int = 8 * 1024 * 1024,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.max_file_size = max_file_size
        self.max_files = max_files
        self.allowed_extensions = normalize_extensions(allowed_extensions)
        self.chunk_size = chunk_size

    @classmethod
    def from_config(cls, config: DictConfig, store: RecordStore, blobs: BlobStorage) -> "UploadIntake":
        return cls(
            store,
            blobs,
            max_file_size=int(config.upload.max_file_size),
            max_files=int(config.upload.max_files),
            allowed_extensions=list(config.upload.allowed_extensions),
            chunk_size=int(config.upload.chunk_size),
        )

    def _check_batch(self, uploads: Sequence[UploadStream]) -> None:
        if not uploads:
            raise ValidationError("No files provided")
        if len(uploads) > self.max_files:
            raise ValidationError(f"Too many files: {len(uploads)} uploaded, at most {self.max_files} allowed")
        if self.allowed_extensions:
            for upload in uploads:
                _, extension = split_extension(upload.filename or "")
                if extension not in self.allowed_extensions:
                    raise ValidationError(
                        f"File type not allowed: {upload.filename!r}. Allowed: {', '.join(self.allowed_extensions)}"
                    )

    async def _store_one(self, upload: UploadStream) -> _StoredBlob:
        original_name = upload.filename or "upload"
        key = make_storage_key(original_name)
        size = 0
        with tempfile.SpooledTemporaryFile(max_size=SPOOL_MAX_SIZE) as spool:
            while chunk := await upload.read(self.chunk_size):
                size += len(chunk)
                if size > self.max_file_size:
                    raise UploadTooLargeError(
                        f"File {original_name!r} exceeds the maximum size of {self.max_file_size} bytes"
                    )
                spool.write(chunk)
            spool.seek(0)
            await run_in_threadpool(self.blobs.save, key, spool)
        await upload.close()
        return _StoredBlob(key, original_name, size, guess_content_type(original_name, upload.content_type))

    def _discard(self, created: Sequence[FileRecord], stored: Sequence[_StoredBlob]) -> None:
        for record in created:
            self.store.delete_file(record.id)
        for blob in stored:
            self.blobs.delete(blob.key)

    async def accept(self, uploads: Sequence[UploadStream], owner: Optional[str] = None) -> List[FileRecord]:
        """
        Persist a batch of uploads.

        Returns:
            The created File records, in upload order

        Raises:
            ValidationError: No files, too many files or a disallowed extension
            UploadTooLargeError: A stream exceeded the size ceiling
            StorageError: The blob back-end failed
        """
        self._check_batch(uploads)

        stored: List[_StoredBlob] = []
        created: List[FileRecord] = []
        try:
            for upload in uploads:
                stored.append(await self._store_one(upload))
            for blob in stored:
                created.append(
                    await run_in_threadpool(
                        self.store.create_file,
                        stored_name=blob.key,
                        original_name=blob.original_name,
                        size=blob.size,
                        content_type=blob.content_type,
                        user_id=owner,
                    )
                )
        except Exception:
            logger.warning(f"Upload batch rejected, discarding {len(stored)} stored file(s)")
            await run_in_threadpool(self._discard, created, stored)
            raise

        logger.info(f"Accepted {len(created)} upload(s) for owner={owner}")
        return created
