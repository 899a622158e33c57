from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class JobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ApiModel(BaseModel):
    """Base model serialising field names in camelCase for the web client."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class UploadResponse(ApiModel):
    message: str
    file_ids: List[str]


class ProcessRequest(ApiModel):
    file_ids: List[str] = Field(default_factory=list)
    options: Optional[Dict[str, Any]] = None


class ProcessResponse(ApiModel):
    message: str
    result_file_id: str
    job_id: str


class FileDetail(ApiModel):
    id: str
    original_name: str
    size: int
    content_type: str
    user_id: Optional[str] = None
    created_at: datetime
    metadata: Dict[str, Any] = Field(default_factory=dict)


class JobDetail(ApiModel):
    id: str
    tool_id: str
    status: JobStatus
    input_file_ids: List[str]
    output_file_id: Optional[str] = None
    options: Dict[str, Any] = Field(default_factory=dict)
    error: Optional[str] = None
    user_id: Optional[str] = None
    created_at: datetime
    updated_at: datetime


class ToolInfo(ApiModel):
    id: str
    category: str
    accepted_extensions: List[str]
    min_files: int
    max_files: Optional[int] = None
    defaults: Dict[str, Any] = Field(default_factory=dict)


class APIKeyCreate(BaseModel):
    owner: str


class APIKeyRecord(BaseModel):
    id: str
    owner: str
    prefix: str
    is_active: bool
    created_at: str


class APIKeyCreated(BaseModel):
    api_key: str
    record: APIKeyRecord
