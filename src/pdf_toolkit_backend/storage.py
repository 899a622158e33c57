"""
Blob storage for the bytes behind File records.

This module provides functionality for:
- Writing uploaded and produced artifacts under a generated unique key
- Reading artifacts back, whole or as a chunk stream for downloads
- Deleting artifacts when their File record is deleted

Two back-ends are available: the local filesystem (default) and S3. The S3
bucket name is configured via the S3_BUCKET_NAME environment variable.
"""

from __future__ import annotations

import logging
import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path
from typing import BinaryIO, Iterator

import boto3
from botocore.exceptions import BotoCoreError, ClientError
from omegaconf import DictConfig

from .errors import NotFoundError, StorageError
from .utils import ensure_directory

logger = logging.getLogger(__name__)

DEFAULT_CHUNK_SIZE = 1024 * 1024


class BlobStorage(ABC):
    """Contract for artifact byte storage, addressed by an opaque key."""

    @abstractmethod
    def save(self, key: str, stream: BinaryIO) -> int:
        """Persist the stream under ``key`` and return the number of bytes written."""

    @abstractmethod
    def iter_chunks(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        """Yield the stored bytes in chunks. Raises NotFoundError for unknown keys."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Delete stored bytes, returning False if nothing was deleted."""

    def read(self, key: str) -> bytes:
        return b"".join(self.iter_chunks(key))


class LocalBlobStorage(BlobStorage):
    """
    Stores artifacts as files under a root directory.

    Writes go to a temporary file in the same directory and are renamed into
    place, so a failed write never leaves a partial artifact under its key.
    """

    def __init__(self, root: Path) -> None:
        self.root = ensure_directory(root)

    def _path(self, key: str) -> Path:
        path = (self.root / key).resolve()
        if self.root.resolve() not in path.parents:
            raise StorageError(f"Invalid storage key: {key}")
        return path

    def save(self, key: str, stream: BinaryIO) -> int:
        destination = self._path(key)
        fd, tmp_name = tempfile.mkstemp(dir=self.root, prefix=".partial-")
        written = 0
        try:
            with os.fdopen(fd, "wb") as buffer:
                while chunk := stream.read(DEFAULT_CHUNK_SIZE):
                    buffer.write(chunk)
                    written += len(chunk)
            os.replace(tmp_name, destination)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise StorageError(f"Failed to store {key}: {exc}") from exc
        logger.debug(f"Stored {written} bytes at {destination}")
        return written

    def iter_chunks(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        path = self._path(key)
        if not path.is_file():
            raise NotFoundError(f"Stored artifact {key} not found")
        return self._read_file(path, chunk_size)

    @staticmethod
    def _read_file(path: Path, chunk_size: int) -> Iterator[bytes]:
        with path.open("rb") as handle:
            while chunk := handle.read(chunk_size):
                yield chunk

    def delete(self, key: str) -> bool:
        path = self._path(key)
        if not path.exists():
            return False
        path.unlink()
        logger.info(f"Deleted stored artifact {path}")
        return True


class S3BlobStorage(BlobStorage):
    """
    Stores artifacts as objects in an S3 bucket.

    Note:
        Credentials are resolved by boto3 from the environment. Credential
        errors surface during the first actual operation.
    """

    def __init__(self, bucket: str, prefix: str = "", client=None) -> None:
        if not bucket:
            raise ValueError("S3 storage requires a bucket name (S3_BUCKET_NAME)")
        self.bucket = bucket
        self.prefix = prefix
        self._client = client or boto3.client("s3")

    def _object_key(self, key: str) -> str:
        return f"{self.prefix}{key}"

    def save(self, key: str, stream: BinaryIO) -> int:
        object_key = self._object_key(key)
        start = stream.tell()
        try:
            logger.info(f"Uploading to s3://{self.bucket}/{object_key}")
            self._client.upload_fileobj(stream, self.bucket, object_key)
        except (BotoCoreError, ClientError) as e:
            logger.error(f"S3 upload failed: {e}")
            raise StorageError(f"Failed to store {key}: {e}") from e
        stream.seek(0, os.SEEK_END)
        return stream.tell() - start

    def iter_chunks(self, key: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> Iterator[bytes]:
        object_key = self._object_key(key)
        try:
            response = self._client.get_object(Bucket=self.bucket, Key=object_key)
        except ClientError as e:
            if e.response.get("Error", {}).get("Code") in {"NoSuchKey", "404"}:
                raise NotFoundError(f"Stored artifact {key} not found") from e
            logger.error(f"S3 download failed: {e}")
            raise StorageError(f"Failed to read {key}: {e}") from e
        return response["Body"].iter_chunks(chunk_size)

    def delete(self, key: str) -> bool:
        object_key = self._object_key(key)
        try:
            self._client.delete_object(Bucket=self.bucket, Key=object_key)
        except ClientError as e:
            logger.error(f"S3 delete failed: {e}")
            return False
        logger.info(f"Deleted s3://{self.bucket}/{object_key}")
        return True


def build_blob_storage(config: DictConfig) -> BlobStorage:
    """Create the blob storage selected by ``storage.backend``."""
    backend = str(config.storage.backend).lower()
    if backend == "local":
        return LocalBlobStorage(Path(config.storage.upload_dir))
    if backend == "s3":
        return S3BlobStorage(str(config.storage.s3_bucket), str(config.storage.s3_prefix))
    raise ValueError(f"Unknown storage backend '{backend}'. Choose from: ['local', 's3']")
