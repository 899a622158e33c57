"""
Tool dispatch and job lifecycle management.

This module turns a processing request (tool id, input file ids, options)
into exactly one output File, tracking the attempt as a Job:

- Request validation happens before any Job exists, so rejected requests
  leave no trace in the record store
- The Job moves pending -> processing -> completed | failed, and every
  transition refreshes ``updated_at``
- Handlers work purely in memory; only the dispatcher stores bytes and
  creates records, so a failed handler never leaves an output behind
"""

from __future__ import annotations

import io
import logging
from typing import Any, Dict, List, Mapping, NoReturn, Optional, Sequence

from omegaconf import DictConfig

from .configuration import make_tool_options, tool_defaults
from .database import FileRecord, JobRecord, RecordStore
from .errors import (
    BackendConversionFailure,
    ProcessingError,
    ToolkitError,
    UnsupportedToolError,
    ValidationError,
)
from .handlers import OperationHandler, OperationResult, SourceFile
from .models import JobStatus, ToolInfo
from .storage import BlobStorage
from .utils import make_storage_key, redact_options

logger = logging.getLogger(__name__)


class ToolDispatcher:
    """
    Central coordinator between the HTTP surface, the handlers and persistence.

    The tool registry is injected once and never mutated, so requests served
    concurrently from FastAPI's thread pool all see the same handlers.

    Attributes:
        store: Record store holding File and Job records
        blobs: Blob storage holding file bytes
        handlers: Read-only tool id -> handler mapping
        config: Runtime configuration (tool option defaults)
    """

    def __init__(
        self,
        store: RecordStore,
        blobs: BlobStorage,
        handlers: Mapping[str, OperationHandler],
        config: DictConfig,
    ) -> None:
        self.store = store
        self.blobs = blobs
        self.handlers = handlers
        self.config = config

    def list_tools(self) -> List[ToolInfo]:
        return [handler.describe(tool_defaults(self.config, tool_id)) for tool_id, handler in self.handlers.items()]

    def _check_inputs(self, handler: OperationHandler, records: Sequence[FileRecord]) -> None:
        """
        Validate input arity and types against the handler's declared constraints.

        Raises:
            ValidationError: Too few or too many inputs, or an input type the tool
                does not accept
        """
        count = len(records)
        if count < handler.min_files:
            raise ValidationError(f"{handler.tool_id} requires at least {handler.min_files} files, got {count}")
        if handler.max_files is not None and count > handler.max_files:
            noun = "file" if handler.max_files == 1 else "files"
            raise ValidationError(f"{handler.tool_id} accepts at most {handler.max_files} {noun}, got {count}")

        for record in records:
            if record.extension in handler.accepted_extensions:
                continue
            if not record.extension and record.content_type == "application/pdf" and ".pdf" in handler.accepted_extensions:
                continue
            raise ValidationError(
                f"{handler.tool_id} cannot process {record.original_name!r}; "
                f"accepted types: {', '.join(handler.accepted_extensions)}"
            )

    def _fail(self, job: JobRecord, cause: ToolkitError) -> NoReturn:
        logger.error(f"Job {job.id} ({job.tool_id}) failed: {cause}")
        self.store.update_job(job.id, status=JobStatus.FAILED, error=str(cause))
        raise ProcessingError(job.id, cause) from cause

    def _run_handler(
        self, handler: OperationHandler, records: Sequence[FileRecord], options: Mapping[str, Any]
    ) -> OperationResult:
        sources = [SourceFile(record, self.blobs.read(record.stored_name)) for record in records]
        return handler.handle(sources, options)

    def _store_output(
        self, job: JobRecord, result: OperationResult, records: Sequence[FileRecord], owner: Optional[str]
    ) -> FileRecord:
        """Persist handler output bytes and create the output File record."""
        key = make_storage_key(result.filename)
        size = self.blobs.save(key, io.BytesIO(result.content))
        metadata: Dict[str, Any] = {
            "sourceFileIds": [record.id for record in records],
            "toolId": job.tool_id,
            "jobId": job.id,
            **result.metadata,
        }
        try:
            return self.store.create_file(
                stored_name=key,
                original_name=result.filename,
                size=size,
                content_type=result.content_type,
                user_id=owner,
                metadata=metadata,
            )
        except Exception:
            self.blobs.delete(key)
            raise

    def dispatch(
        self,
        tool_id: str,
        file_ids: Sequence[str],
        options: Optional[Dict[str, Any]] = None,
        owner: Optional[str] = None,
    ) -> JobRecord:
        """
        Run one tool over a set of uploaded files.

        Args:
            tool_id: Identifier of a registered tool
            file_ids: Input File ids, in the order the tool should see them
            options: Tool options, merged over the configured defaults
            owner: Owner of the request, None for anonymous callers

        Returns:
            The completed JobRecord; ``output_file_id`` names the produced File

        Raises:
            ValidationError: Empty file list, unsupported tool or unacceptable inputs
                (no Job is created)
            NotFoundError: An input File does not exist or is not visible to the
                owner (no Job is created)
            ProcessingError: The handler or output persistence failed; the Job
                is recorded as failed
        """
        if not file_ids:
            raise ValidationError("No files specified")

        handler = self.handlers.get(tool_id)
        if handler is None:
            raise UnsupportedToolError(tool_id)

        records = [self.store.get_visible_file(file_id, owner) for file_id in file_ids]
        self._check_inputs(handler, records)
        merged_options = make_tool_options(self.config, tool_id, options)

        job = self.store.create_job(
            tool_id=tool_id,
            status=JobStatus.PENDING,
            input_file_ids=list(file_ids),
            options=redact_options(merged_options),
            user_id=owner,
        )
        job = self.store.update_job(job.id, status=JobStatus.PROCESSING)
        logger.info(f"Job {job.id} started: {tool_id} on {len(records)} file(s)")

        try:
            result = self._run_handler(handler, records, merged_options)
            output = self._store_output(job, result, records, owner)
        except ToolkitError as exc:
            self._fail(job, exc)
        except Exception as exc:
            logger.exception(f"Unexpected error in {tool_id} handler")
            self._fail(job, BackendConversionFailure(f"{type(exc).__name__}: {exc}"))

        job = self.store.update_job(job.id, status=JobStatus.COMPLETED, output_file_id=output.id)
        logger.info(f"Job {job.id} completed: output {output.id} ({output.size} bytes)")
        return job
