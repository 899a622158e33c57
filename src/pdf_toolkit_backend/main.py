from __future__ import annotations

import logging
import secrets
from typing import Dict, List, Optional
from urllib.parse import quote

from fastapi import Depends, FastAPI, File, Header, HTTPException, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from starlette.exceptions import HTTPException as StarletteHTTPException

from .configuration import load_settings
from .database import RecordStore, build_record_store
from .dispatcher import ToolDispatcher
from .downloads import DownloadResponder
from .errors import ProcessingError, ToolkitError
from .handlers import build_registry
from .key_manager import KeyManager
from .models import (
    APIKeyCreate,
    APIKeyCreated,
    APIKeyRecord,
    FileDetail,
    JobDetail,
    ProcessRequest,
    ProcessResponse,
    ToolInfo,
    UploadResponse,
)
from .storage import BlobStorage, build_blob_storage
from .uploads import UploadIntake
from .utils import ascii_filename

settings = load_settings()

logging.basicConfig(
    level=str(settings.logging.level).upper(),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)

app = FastAPI(title="PDF Toolkit API", version="0.1.0")

allowed_origins = ["*"]
app.add_middleware(
    CORSMiddleware,
    allow_origins=allowed_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

record_store = build_record_store(settings)
blob_storage = build_blob_storage(settings)
dispatcher = ToolDispatcher(record_store, blob_storage, build_registry(settings), settings)
upload_intake = UploadIntake.from_config(settings, record_store, blob_storage)
download_responder = DownloadResponder(record_store, blob_storage)
key_manager = KeyManager(str(settings.auth.keys_db_path))


def get_record_store() -> RecordStore:
    return record_store


def get_blob_storage() -> BlobStorage:
    return blob_storage


def get_dispatcher() -> ToolDispatcher:
    return dispatcher


def get_upload_intake() -> UploadIntake:
    return upload_intake


def get_download_responder() -> DownloadResponder:
    return download_responder


def get_key_manager() -> KeyManager:
    return key_manager


def get_owner(
    x_api_key: Optional[str] = Header(None),
    keys: KeyManager = Depends(get_key_manager),
) -> Optional[str]:
    """Resolve the optional X-API-Key header to an owner; anonymous callers get None."""
    if not x_api_key:
        return None
    record = keys.validate_key(x_api_key)
    if record is None:
        raise HTTPException(status_code=401, detail="Invalid API key")
    return record.owner


def require_master_key(x_api_key: str = Header(...)) -> None:
    master_key = str(settings.auth.master_key or "")
    if not master_key or not secrets.compare_digest(x_api_key, master_key):
        raise HTTPException(status_code=401, detail="Invalid master key")


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException) -> JSONResponse:
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc.detail)}, headers=exc.headers)


@app.exception_handler(ProcessingError)
async def processing_error_handler(request: Request, exc: ProcessingError) -> JSONResponse:
    return JSONResponse(
        status_code=500,
        content={"message": "Processing failed", "error": str(exc.cause), "jobId": exc.job_id},
    )


@app.exception_handler(ToolkitError)
async def toolkit_error_handler(request: Request, exc: ToolkitError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{request.method} {request.url.path} failed: {exc}")
    return JSONResponse(status_code=exc.status_code, content={"message": str(exc)})


def _content_disposition(filename: str) -> str:
    return f"attachment; filename=\"{ascii_filename(filename)}\"; filename*=UTF-8''{quote(filename)}"


@app.get("/healthz")
def healthcheck() -> Dict[str, str]:
    return {"status": "ok"}


@app.get("/api/tools", response_model=list[ToolInfo])
def list_tools(manager: ToolDispatcher = Depends(get_dispatcher)) -> list[ToolInfo]:
    return manager.list_tools()


@app.post("/api/upload", response_model=UploadResponse)
async def upload_files(
    files: Optional[List[UploadFile]] = File(None),
    intake: UploadIntake = Depends(get_upload_intake),
    owner: Optional[str] = Depends(get_owner),
) -> UploadResponse:
    records = await intake.accept(files or [], owner=owner)
    return UploadResponse(
        message=f"{len(records)} file(s) uploaded successfully",
        file_ids=[record.id for record in records],
    )


@app.post("/api/process/{tool_id}", response_model=ProcessResponse)
def process_files(
    tool_id: str,
    payload: Optional[ProcessRequest] = None,
    manager: ToolDispatcher = Depends(get_dispatcher),
    owner: Optional[str] = Depends(get_owner),
) -> ProcessResponse:
    payload = payload or ProcessRequest()
    job = manager.dispatch(tool_id, payload.file_ids, payload.options, owner=owner)
    return ProcessResponse(
        message="Processing completed successfully",
        result_file_id=job.output_file_id,
        job_id=job.id,
    )


@app.get("/api/download/{file_id}")
def download_file(
    file_id: str,
    responder: DownloadResponder = Depends(get_download_responder),
    owner: Optional[str] = Depends(get_owner),
) -> StreamingResponse:
    download = responder.resolve(file_id, owner=owner)
    return StreamingResponse(
        download.chunks,
        media_type=download.content_type,
        headers={
            "Content-Disposition": _content_disposition(download.filename),
            "Content-Length": str(download.size),
        },
    )


@app.get("/api/files", response_model=list[FileDetail])
def list_files(
    store: RecordStore = Depends(get_record_store),
    owner: Optional[str] = Depends(get_owner),
) -> list[FileDetail]:
    return [record.to_detail() for record in store.list_files(owner)]


@app.get("/api/files/{file_id}", response_model=FileDetail)
def get_file(
    file_id: str,
    store: RecordStore = Depends(get_record_store),
    owner: Optional[str] = Depends(get_owner),
) -> FileDetail:
    return store.get_visible_file(file_id, owner).to_detail()


@app.delete("/api/files/{file_id}")
def delete_file(
    file_id: str,
    store: RecordStore = Depends(get_record_store),
    blobs: BlobStorage = Depends(get_blob_storage),
    owner: Optional[str] = Depends(get_owner),
) -> Dict[str, str]:
    record = store.get_visible_file(file_id, owner)
    store.delete_file(record.id)
    blobs.delete(record.stored_name)
    logger.info(f"Deleted file {record.id}")
    return {"status": "deleted"}


@app.get("/api/jobs", response_model=list[JobDetail])
def list_jobs(
    store: RecordStore = Depends(get_record_store),
    owner: Optional[str] = Depends(get_owner),
) -> list[JobDetail]:
    return [record.to_detail() for record in store.list_jobs(owner)]


@app.get("/api/jobs/{job_id}", response_model=JobDetail)
def get_job(
    job_id: str,
    store: RecordStore = Depends(get_record_store),
    owner: Optional[str] = Depends(get_owner),
) -> JobDetail:
    return store.get_visible_job(job_id, owner).to_detail()


@app.post("/admin/keys", response_model=APIKeyCreated, status_code=201, dependencies=[Depends(require_master_key)])
def create_api_key(payload: APIKeyCreate, keys: KeyManager = Depends(get_key_manager)) -> APIKeyCreated:
    try:
        raw_key, record = keys.create_key(payload.owner)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return APIKeyCreated(api_key=raw_key, record=APIKeyRecord(**record.to_dict()))


@app.get("/admin/keys", response_model=list[APIKeyRecord], dependencies=[Depends(require_master_key)])
def list_api_keys(keys: KeyManager = Depends(get_key_manager)) -> list[APIKeyRecord]:
    return [APIKeyRecord(**record.to_dict()) for record in keys.list_keys()]


@app.delete("/admin/keys/{key_id}", dependencies=[Depends(require_master_key)])
def revoke_api_key(key_id: str, keys: KeyManager = Depends(get_key_manager)) -> Dict[str, str]:
    if not keys.revoke_key(key_id):
        raise HTTPException(status_code=404, detail="API key not found")
    return {"status": "revoked"}
