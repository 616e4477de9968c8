from datetime import datetime, timezone

import pydantic
import pytest
from ocr_client.errors import (
    APIError,
    AuthenticationError,
    OCRError,
    RateLimitError,
    ResponseFormatError,
    ValidationError,
    map_http_error,
)
from ocr_client.models import (
    JobStatusType,
    UploadOptions,
    is_terminal_status,
    map_job_status,
)


def test_missing_fields_get_defaults():
    before = datetime.now(timezone.utc)
    status = map_job_status({"job_id": "abc"})

    assert status.job_id == "abc"
    assert status.status == JobStatusType.pending
    assert status.progress is None
    assert status.error is None
    assert status.created_at >= before
    assert status.updated_at >= before


def test_id_field_fallback():
    assert map_job_status({"id": "xyz", "status": "processing"}).job_id == "xyz"


def test_full_payload_mapped():
    error = {"code": "BAD_SCAN", "message": "unreadable", "details": {"page": 2}}
    status = map_job_status(
        {
            "job_id": "abc",
            "status": "failed",
            "progress": 40,
            "error": error,
            "created_at": "2024-05-01T10:00:00Z",
            "updated_at": "2024-05-01T10:05:00+00:00",
            "estimated_completion": "2024-05-01T10:10:00Z",
        }
    )

    assert status.status == JobStatusType.failed
    assert status.progress == 40
    assert status.error == error
    assert status.created_at == datetime(2024, 5, 1, 10, 0, tzinfo=timezone.utc)
    assert status.estimated_completion is not None
    assert status.is_terminal


@pytest.mark.parametrize(
    "raw, terminal",
    [("pending", False), ("processing", False), ("completed", True), ("failed", True)],
)
def test_terminal_predicate(raw, terminal):
    assert is_terminal_status(map_job_status({"job_id": "j", "status": raw})) is terminal


def test_job_status_is_immutable():
    status = map_job_status({"job_id": "abc"})
    with pytest.raises(pydantic.ValidationError):
        status.status = JobStatusType.completed


@pytest.mark.parametrize(
    "payload",
    [
        {"job_id": "abc", "status": "exploded"},
        {"job_id": "abc", "status": "processing", "progress": 150},
    ],
)
def test_malformed_payload_raises_typed_error(payload):
    with pytest.raises(ResponseFormatError) as exc_info:
        map_job_status(payload)

    assert isinstance(exc_info.value, OCRError)
    assert not isinstance(exc_info.value, ValidationError)
    assert exc_info.value.code == "INVALID_RESPONSE"
    assert exc_info.value.response == payload
    assert isinstance(exc_info.value.cause, pydantic.ValidationError)


def test_upload_options_payload_uses_wire_names():
    options = UploadOptions(
        model="pro-v1", format="structured", schema={"type": "object"}
    )
    assert options.to_payload() == {
        "model": "pro-v1",
        "format": "structured",
        "schema": {"type": "object"},
    }


def test_http_errors_mapped_by_status():
    assert isinstance(map_http_error(401, {"message": "nope"}), AuthenticationError)

    rate_limited = map_http_error(429, {}, {"retry-after": "3"})
    assert isinstance(rate_limited, RateLimitError)
    assert rate_limited.retry_after == 3

    invalid = map_http_error(422, {"message": "bad", "fields": {"url": ["required"]}})
    assert isinstance(invalid, ValidationError)
    assert invalid.status_code == 422
    assert invalid.fields == {"url": ["required"]}

    missing = map_http_error(404, {"error": "Job not found"})
    assert isinstance(missing, APIError)
    assert missing.status_code == 404
    assert missing.message == "Job not found"
    assert missing.response == {"error": "Job not found"}
