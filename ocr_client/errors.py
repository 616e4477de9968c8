from typing import Any, Mapping, Optional


class OCRError(Exception):
    """Base class for every error raised by the client"""

    code = "OCR_ERROR"

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        headers: Optional[Mapping[str, str]] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.headers = dict(headers) if headers else {}
        self.cause = cause

    def __repr__(self) -> str:
        return f"{type(self).__name__}(code={self.code!r}, status_code={self.status_code!r}, message={self.message!r})"


class AuthenticationError(OCRError):
    code = "AUTHENTICATION_ERROR"

    def __init__(self, message: str = "Invalid API key", **kwargs: Any):
        super().__init__(message, status_code=401, **kwargs)


class AuthorizationError(OCRError):
    code = "AUTHORIZATION_ERROR"

    def __init__(self, message: str = "Access forbidden", **kwargs: Any):
        super().__init__(message, status_code=403, **kwargs)


class RateLimitError(OCRError):
    code = "RATE_LIMIT_ERROR"

    def __init__(
        self, message: str, retry_after: Optional[int] = None, **kwargs: Any
    ):
        super().__init__(message, status_code=429, **kwargs)
        self.retry_after = retry_after  # seconds


class ValidationError(OCRError):
    code = "VALIDATION_ERROR"

    def __init__(
        self,
        message: str,
        fields: Optional[dict[str, list[str]]] = None,
        status_code: int = 400,
        **kwargs: Any,
    ):
        super().__init__(message, status_code=status_code, **kwargs)
        self.fields = fields or {}


class FileError(OCRError):
    """Local file or buffer rejected before any request is made"""

    code = "FILE_ERROR"

    def __init__(
        self,
        message: str,
        file_path: Optional[str] = None,
        file_size: Optional[int] = None,
        cause: Optional[BaseException] = None,
    ):
        super().__init__(message, cause=cause)
        self.file_path = file_path
        self.file_size = file_size


class JobError(OCRError):
    code = "JOB_ERROR"

    def __init__(self, message: str, job_id: str, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.job_id = job_id


class JobFailedError(JobError):
    code = "JOB_FAILED"

    def __init__(self, job_id: str, job_error: Optional[dict[str, Any]] = None):
        reason = (job_error or {}).get("message") or "Unknown error"
        super().__init__(f"Job {job_id} failed: {reason}", job_id)
        self.job_error = job_error


class PollTimeoutError(OCRError):
    code = "TIMEOUT_ERROR"

    def __init__(self, max_wait: float, message: Optional[str] = None):
        super().__init__(message or f"Polling timed out after {max_wait}s")
        self.max_wait = max_wait


class JobTimeoutError(PollTimeoutError):
    def __init__(self, job_id: str, max_wait: float):
        super().__init__(max_wait, f"Job {job_id} timed out after {max_wait}s")
        self.job_id = job_id


class PollCancelledError(OCRError):
    code = "CANCELLED"

    def __init__(self, message: str = "Polling cancelled"):
        super().__init__(message)


class NetworkError(OCRError):
    """No response was received from the remote end"""

    code = "NETWORK_ERROR"

    def __init__(self, message: str, cause: Optional[BaseException] = None):
        super().__init__(message, cause=cause)


class APIError(OCRError):
    code = "API_ERROR"

    def __init__(
        self,
        message: str,
        status_code: int,
        response: Any = None,
        **kwargs: Any,
    ):
        super().__init__(message, status_code=status_code, **kwargs)
        self.response = response


class UploadError(OCRError):
    code = "UPLOAD_ERROR"


class ResponseFormatError(OCRError):
    """The service answered 2xx with a payload the client cannot interpret"""

    code = "INVALID_RESPONSE"

    def __init__(self, message: str, response: Any = None, **kwargs: Any):
        super().__init__(message, **kwargs)
        self.response = response


class PartUploadError(APIError):
    def __init__(
        self,
        part_number: int,
        status_code: int,
        reason: Optional[str] = None,
        **kwargs: Any,
    ):
        super().__init__(
            f"Failed to upload part {part_number}: {status_code} {reason or ''}".rstrip(),
            status_code,
            **kwargs,
        )
        self.part_number = part_number


def get_header(headers: Optional[Mapping[str, str]], name: str) -> Optional[str]:
    """Case-insensitive header lookup that works on plain dicts too"""
    if not headers:
        return None
    wanted = name.lower()
    for key, value in headers.items():
        if key.lower() == wanted:
            return value
    return None


def map_http_error(
    status: int, data: Any, headers: Optional[Mapping[str, str]] = None, reason: str = ""
) -> OCRError:
    """Translate a non-2xx response into the matching OCRError subclass"""
    body = data if isinstance(data, dict) else {}
    message = body.get("message") or body.get("error") or reason or f"HTTP {status}"
    if not isinstance(message, str):
        message = str(message)

    if status == 401:
        return AuthenticationError(message, headers=headers)
    if status == 403:
        return AuthorizationError(message, headers=headers)
    if status == 429:
        retry_after = None
        raw = get_header(headers, "Retry-After")
        if raw is not None:
            try:
                retry_after = int(raw)
            except ValueError:
                retry_after = None
        return RateLimitError(message, retry_after=retry_after, headers=headers)
    if status in (400, 422):
        return ValidationError(
            message, fields=body.get("fields"), status_code=status, headers=headers
        )
    return APIError(message, status, response=data, headers=headers)
