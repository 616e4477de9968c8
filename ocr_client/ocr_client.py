import asyncio
import os
from pathlib import Path
from typing import Any, AsyncIterable, Iterable, Optional, Sequence, Union

import aiohttp
from loguru import logger

from ocr_client.errors import (
    FileError,
    JobFailedError,
    JobTimeoutError,
    NetworkError,
    PollTimeoutError,
    UploadError,
    map_http_error,
)
from ocr_client.models import (
    BatchFailure,
    BatchResult,
    ClientConfig,
    FileData,
    JobStatus,
    JobStatusType,
    OCRJobResult,
    PollPolicy,
    ProgressCallback,
    RetryPolicy,
    UploadOptions,
    UploadPart,
    UploadResult,
    is_terminal_status,
    map_job_status,
)
from ocr_client.polling import poll_until
from ocr_client.retry import with_retry
from ocr_client.upload import UploadOrchestrator
from ocr_client.validation import get_content_type, validate_buffer, validate_file

SDK_VERSION = "0.1.0"

DEFAULT_POLL_INTERVAL = 2.0
DEFAULT_MAX_WAIT = 300.0  # 5 minutes
DEFAULT_BATCH_CONCURRENCY = 5


class OCRClient:
    def __init__(self, api_key: str, config: Optional[ClientConfig] = None):
        if not api_key:
            raise ValueError("API key is required")

        self.api_key = api_key
        self.config = config or ClientConfig()
        self.base_url = self.config.base_url.rstrip("/")
        self.logger = logger
        self._session: Optional[aiohttp.ClientSession] = None
        self._upload_session: Optional[aiohttp.ClientSession] = None

    @classmethod
    def from_env(cls, config: Optional[ClientConfig] = None) -> "OCRClient":
        """Builds a client from OCR_API_KEY and, if set, OCR_BASE_URL"""
        config = config or ClientConfig()
        base_url = os.environ.get("OCR_BASE_URL")
        if base_url:
            config = config.model_copy(update={"base_url": base_url})
        return cls(os.environ.get("OCR_API_KEY", ""), config)

    async def __aenter__(self) -> "OCRClient":
        self._get_session()
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        for session in (self._session, self._upload_session):
            if session is not None and not session.closed:
                await session.close()
        self._session = None
        self._upload_session = None

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession(
                headers={
                    "X-API-KEY": self.api_key,
                    "User-Agent": f"ocr-client-python/{SDK_VERSION}",
                },
                timeout=aiohttp.ClientTimeout(total=self.config.timeout),
            )
        return self._session

    def _get_upload_session(self) -> aiohttp.ClientSession:
        """Bare session for presigned storage targets, without API credentials"""
        if self._upload_session is None or self._upload_session.closed:
            self._upload_session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.config.upload_timeout)
            )
        return self._upload_session

    @property
    def retry_policy(self) -> RetryPolicy:
        return RetryPolicy(
            max_retries=self.config.max_retries,
            initial_delay=self.config.retry_delay,
            max_delay=self.config.max_retry_delay,
            multiplier=self.config.retry_multiplier,
        )

    async def _request(
        self,
        method: str,
        path: str,
        json: Optional[dict[str, Any]] = None,
        params: Optional[dict[str, Any]] = None,
    ) -> Any:
        """Performs one API call and maps failures onto the OCRError hierarchy"""
        url = f"{self.base_url}{path}"
        if self.config.debug:
            self.logger.debug(f"Request: {method} {url} params={params}")

        try:
            async with self._get_session().request(
                method, url, json=json, params=params
            ) as response:
                if self.config.debug:
                    self.logger.debug(f"Response: {response.status} {method} {url}")

                if response.status == 204:
                    return None

                try:
                    data = await response.json(content_type=None)
                except ValueError:
                    data = None

                if response.status >= 400:
                    error = map_http_error(
                        response.status, data, response.headers, response.reason or ""
                    )
                    self.logger.error(f"HTTP error {response.status} at {url}: {error}")
                    raise error

                return data
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            self.logger.error(f"Network error at {url}: {e!r}")
            raise NetworkError(f"Network error: {e}", cause=e) from e

    async def _call(self, method: str, path: str, **kwargs: Any) -> Any:
        return await with_retry(
            lambda: self._request(method, path, **kwargs), self.retry_policy
        )

    async def process_file(
        self, file_path: str, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        """Validates a local file, uploads it and starts processing"""
        validation = validate_file(file_path)
        if not validation.valid:
            raise FileError(validation.error, file_path=file_path)

        try:
            data = Path(file_path).read_bytes()
        except OSError as e:
            raise FileError(f"Failed to read file: {e}", file_path=file_path, cause=e) from e

        return await self.process_file_buffer(data, Path(file_path).name, options)

    async def process_file_buffer(
        self, data: bytes, file_name: str, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        """Initiates a direct upload, pushes the parts and completes the upload"""
        validation = validate_buffer(data, file_name)
        if not validation.valid:
            raise FileError(validation.error, file_path=file_name, file_size=len(data))

        options = options or UploadOptions()
        initiated = await self._call(
            "POST",
            "/ocr/uploads/direct",
            json={
                "file_name": file_name,
                "file_size": len(data),
                "content_type": get_content_type(file_name),
                **options.to_payload(),
            },
        )

        job_id = (initiated or {}).get("job_id")
        raw_parts = (initiated or {}).get("parts")
        if not job_id or not raw_parts:
            raise UploadError("Invalid upload response: missing job_id or parts")

        parts = [UploadPart.model_validate(p) for p in raw_parts]
        upload_type = initiated.get("upload_type")
        self.logger.info(
            f"Uploading {file_name} ({len(data)} bytes) as job {job_id} in {len(parts)} part(s)"
        )

        async def complete(uploaded):
            await self._call(
                "POST",
                f"/ocr/uploads/{job_id}/complete",
                json={"parts": [p.model_dump() for p in uploaded]},
            )

        orchestrator = UploadOrchestrator(self._get_upload_session(), complete=complete)
        await orchestrator.upload(
            data,
            parts,
            multipart=None if upload_type is None else upload_type == "multipart",
        )

        return UploadResult(job_id=job_id, status=JobStatusType.pending)

    async def process_file_stream(
        self,
        stream: Union[AsyncIterable[bytes], Iterable[bytes]],
        file_name: str,
        options: Optional[UploadOptions] = None,
    ) -> UploadResult:
        """Drains a byte stream into memory, then uploads it like a buffer"""
        chunks = []
        if hasattr(stream, "__aiter__"):
            async for chunk in stream:
                chunks.append(bytes(chunk))
        else:
            for chunk in stream:
                chunks.append(bytes(chunk))
        return await self.process_file_buffer(b"".join(chunks), file_name, options)

    async def process_url(
        self, url: str, options: Optional[UploadOptions] = None
    ) -> UploadResult:
        """Asks the service to fetch and process a publicly reachable document"""
        options = options or UploadOptions()
        response = await self._call(
            "POST", "/ocr/uploads/url", json={"url": url, **options.to_payload()}
        )
        job_id = (response or {}).get("job_id")
        if not job_id:
            raise UploadError("Invalid upload response: missing job_id")
        return UploadResult(job_id=job_id, status=JobStatusType.pending)

    async def get_job_status(self, job_id: str) -> JobStatus:
        data = await self._call("GET", f"/ocr/status/{job_id}")
        return map_job_status({"job_id": job_id, **(data or {})})

    async def wait_until_done(
        self,
        job_id: str,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_wait: float = DEFAULT_MAX_WAIT,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> JobStatus:
        """Poll the job until it is completed or failed.

        A failed job is returned, not raised; see process_and_wait for the
        raising variant. Raises JobTimeoutError once max_wait has elapsed and
        PollCancelledError when cancel_event is set.
        """
        policy = PollPolicy(
            poll_interval=poll_interval,
            max_wait=max_wait,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
        try:
            return await poll_until(
                lambda: self.get_job_status(job_id), is_terminal_status, policy
            )
        except PollTimeoutError as e:
            raise JobTimeoutError(job_id, e.max_wait) from e

    async def get_job_result(
        self, job_id: str, page: int = 1, page_size: int = 100
    ) -> OCRJobResult:
        data = await self._call(
            "GET", f"/ocr/result/{job_id}", params={"page": page, "limit": page_size}
        )
        return OCRJobResult.model_validate(data or {})

    async def delete_job(self, job_id: str) -> None:
        """Permanently deletes the job together with its files and results"""
        await self._call("DELETE", f"/ocr/delete/{job_id}")

    async def process_and_wait(
        self,
        source: str,
        options: Optional[UploadOptions] = None,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        max_wait: float = DEFAULT_MAX_WAIT,
        on_progress: Optional[ProgressCallback] = None,
        cancel_event: Optional[asyncio.Event] = None,
        raise_on_failure: bool = True,
    ) -> OCRJobResult:
        """Uploads a local path or remote URL, waits for it and fetches the result"""
        if source.startswith(("http://", "https://")):
            upload = await self.process_url(source, options)
        else:
            upload = await self.process_file(source, options)

        status = await self.wait_until_done(
            upload.job_id,
            poll_interval=poll_interval,
            max_wait=max_wait,
            on_progress=on_progress,
            cancel_event=cancel_event,
        )
        if status.status == JobStatusType.failed and raise_on_failure:
            raise JobFailedError(upload.job_id, status.error)

        return await self.get_job_result(upload.job_id)

    async def _submit(
        self, item: Union[str, FileData], options: Optional[UploadOptions]
    ) -> UploadResult:
        if isinstance(item, FileData):
            return await self.process_file_buffer(item.data, item.file_name, options)
        return await self.process_file(item, options)

    async def process_batch(
        self,
        files: Sequence[Union[str, FileData]],
        options: Optional[UploadOptions] = None,
        concurrency: int = DEFAULT_BATCH_CONCURRENCY,
    ) -> BatchResult:
        """Submits files in groups of `concurrency`, one group at a time.

        A failing file is recorded in BatchResult.failures and does not stop
        the rest of its group.
        """
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")

        result = BatchResult(total_files=len(files))
        for offset in range(0, len(files), concurrency):
            group = files[offset : offset + concurrency]
            outcomes = await asyncio.gather(
                *[self._submit(item, options) for item in group],
                return_exceptions=True,
            )
            for item, outcome in zip(group, outcomes):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    source = item.file_name if isinstance(item, FileData) else item
                    self.logger.error(f"Batch item {source} failed: {outcome}")
                    result.failures.append(BatchFailure(source=source, error=outcome))
                else:
                    result.jobs.append(outcome)

        self.logger.info(
            f"Batch submitted {len(result.jobs)}/{result.total_files} files"
        )
        return result
