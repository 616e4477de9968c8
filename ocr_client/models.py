import asyncio
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Awaitable, Callable, Literal, Optional, Union

import pydantic
from pydantic import BaseModel, ConfigDict, Field

from ocr_client.errors import ResponseFormatError

DEFAULT_BASE_URL = "https://api.leapocr.com/api/v1"


class JobStatusType(str, Enum):
    pending = "pending"
    processing = "processing"
    completed = "completed"
    failed = "failed"


TERMINAL_STATUSES = (JobStatusType.completed, JobStatusType.failed)


class ClientConfig(BaseModel):
    base_url: str = DEFAULT_BASE_URL
    timeout: float = Field(default=30.0, gt=0)  # seconds, per request
    upload_timeout: float = Field(default=600.0, gt=0)  # seconds, per part PUT
    max_retries: int = Field(default=3, ge=0)
    retry_delay: float = Field(default=1.0, ge=0)
    retry_multiplier: float = Field(default=2.0, gt=1)
    max_retry_delay: float = Field(default=30.0, ge=0)
    debug: bool = False


class RetryPolicy(BaseModel):
    max_retries: int = Field(default=3, ge=0)
    initial_delay: float = Field(default=1.0, ge=0)
    max_delay: float = Field(default=30.0, ge=0)
    multiplier: float = Field(default=2.0, gt=1)
    on_retry: Optional[Callable[[int, BaseException], Any]] = None


class PollPolicy(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    poll_interval: float = Field(default=2.0, ge=0)
    max_wait: float = Field(default=300.0, ge=0)  # 5 minutes
    on_progress: Optional[Callable[[Any], Any]] = None
    cancel_event: Optional[asyncio.Event] = None


class JobStatus(BaseModel):
    model_config = ConfigDict(frozen=True)

    job_id: str
    status: JobStatusType = JobStatusType.pending
    progress: Optional[float] = Field(default=None, ge=0, le=100)
    estimated_completion: Optional[datetime] = None
    error: Optional[dict[str, Any]] = None
    created_at: datetime
    updated_at: datetime

    @property
    def is_terminal(self) -> bool:
        return is_terminal_status(self)


class UploadPart(BaseModel):
    """Presigned target for one part, as returned by the initiate call"""

    part_number: Optional[int] = None
    upload_url: Optional[str] = None


class UploadedPart(BaseModel):
    part_number: int
    etag: str


class UploadOptions(BaseModel):
    model_config = ConfigDict(populate_by_name=True, protected_namespaces=())

    model: Optional[str] = None  # standard-v1, english-pro-v1, pro-v1
    format: Optional[Literal["markdown", "structured", "per_page_structured"]] = None
    instructions: Optional[str] = Field(default=None, max_length=100)
    schema_: Optional[dict[str, Any]] = Field(default=None, alias="schema")
    template_slug: Optional[str] = None

    def to_payload(self) -> dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True)


class UploadResult(BaseModel):
    job_id: str
    status: JobStatusType = JobStatusType.pending
    created_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class PageResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    page_number: Optional[int] = None
    result: Union[str, dict[str, Any], None] = None


class PaginationInfo(BaseModel):
    model_config = ConfigDict(extra="allow")

    page: int = 1
    limit: int = 100
    total: Optional[int] = None
    total_pages: Optional[int] = None


class OCRJobResult(BaseModel):
    model_config = ConfigDict(extra="allow")

    job_id: Optional[str] = None
    status: Optional[JobStatusType] = None
    pages: list[PageResult] = Field(default_factory=list)
    pagination: Optional[PaginationInfo] = None


class ValidationResult(BaseModel):
    valid: bool
    error: Optional[str] = None


class FileData(BaseModel):
    data: bytes
    file_name: str


class BatchFailure(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    source: str
    error: BaseException


class BatchResult(BaseModel):
    jobs: list[UploadResult] = Field(default_factory=list)
    failures: list[BatchFailure] = Field(default_factory=list)
    total_files: int = 0


ProgressCallback = Callable[[JobStatus], Union[None, Awaitable[None]]]


def map_job_status(data: dict[str, Any]) -> JobStatus:
    """Normalize a raw status payload into a JobStatus.

    Missing status means pending, missing timestamps mean now and missing
    progress stays None. The error payload is passed through untouched.
    Payloads that still fail validation raise ResponseFormatError.
    """
    now = datetime.now(timezone.utc)
    try:
        return JobStatus(
            job_id=data.get("job_id") or data.get("id") or "",
            status=data.get("status") or JobStatusType.pending,
            progress=data.get("progress"),
            estimated_completion=data.get("estimated_completion") or None,
            error=data.get("error"),
            created_at=data.get("created_at") or now,
            updated_at=data.get("updated_at") or now,
        )
    except pydantic.ValidationError as e:
        raise ResponseFormatError(
            f"Malformed job status payload: {e.error_count()} invalid field(s)",
            response=data,
            cause=e,
        ) from e


def is_terminal_status(job: JobStatus) -> bool:
    return job.status in TERMINAL_STATUSES
