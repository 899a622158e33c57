from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Iterator, Optional

from .database import RecordStore
from .storage import BlobStorage

logger = logging.getLogger(__name__)


@dataclass
class Download:
    chunks: Iterator[bytes]
    filename: str
    content_type: str
    size: int


class DownloadResponder:
    """Resolves a File id to its byte stream; reading never mutates the record."""

    def __init__(self, store: RecordStore, blobs: BlobStorage, chunk_size: int = 1024 * 1024) -> None:
        self.store = store
        self.blobs = blobs
        self.chunk_size = chunk_size

    def resolve(self, file_id: str, owner: Optional[str] = None) -> Download:
        """
        Raises:
            NotFoundError: Unknown id, a File owned by someone else, or missing bytes
        """
        record = self.store.get_visible_file(file_id, owner)
        chunks = self.blobs.iter_chunks(record.stored_name, self.chunk_size)
        logger.debug(f"Serving file {record.id} ({record.size} bytes)")
        return Download(
            chunks=chunks,
            filename=record.original_name,
            content_type=record.content_type,
            size=record.size,
        )
