import asyncio
import math
from typing import Any, Awaitable, Callable, Optional, Sequence

import aiohttp
from loguru import logger

from ocr_client.errors import NetworkError, PartUploadError, UploadError, get_header
from ocr_client.models import RetryPolicy, UploadedPart, UploadPart
from ocr_client.retry import with_retry

CompleteCallback = Callable[[list[UploadedPart]], Awaitable[Any]]


def compute_part_ranges(
    size: int, parts: Sequence[UploadPart]
) -> list[tuple[int, int, int]]:
    """(part_number, start, end) for each part, ordered by part number.

    The payload is split evenly: every part but the last gets
    ceil(size / len(parts)) bytes.
    """
    chunk_size = math.ceil(size / len(parts))
    ranges = []
    for part in sorted(parts, key=lambda p: p.part_number):
        start = (part.part_number - 1) * chunk_size
        end = min(start + chunk_size, size)
        ranges.append((part.part_number, start, max(start, end)))
    return ranges


def _check_parts(parts: Sequence[UploadPart]) -> None:
    if not parts:
        raise UploadError("No upload parts in response")

    seen = set()
    for part in parts:
        if part.part_number is None or not part.upload_url:
            raise UploadError(f"Malformed upload part descriptor: {part!r}")
        if part.part_number < 1:
            raise UploadError(f"Part numbers start at 1, got {part.part_number}")
        if part.part_number in seen:
            raise UploadError(f"Duplicate part number {part.part_number}")
        seen.add(part.part_number)


class UploadOrchestrator:
    """Pushes a payload to presigned part targets and finalizes multipart uploads.

    Each PUT is a single attempt unless part_retry_policy is given; any part
    failure aborts the whole upload.
    """

    def __init__(
        self,
        session: aiohttp.ClientSession,
        complete: Optional[CompleteCallback] = None,
        part_retry_policy: Optional[RetryPolicy] = None,
    ):
        self.session = session
        self.complete = complete
        self.part_retry_policy = part_retry_policy
        self.logger = logger

    async def _put_part(self, part: UploadPart, chunk: bytes) -> UploadedPart:
        """Uploads one chunk and returns its quote-free ETag"""
        try:
            async with self.session.put(
                part.upload_url,
                data=chunk,
                headers={"Content-Type": "application/octet-stream"},
            ) as response:
                if not 200 <= response.status < 300:
                    raise PartUploadError(
                        part.part_number,
                        response.status,
                        response.reason,
                        headers=response.headers,
                    )
                etag = response.headers.get("ETag")
        except (aiohttp.ClientConnectionError, asyncio.TimeoutError) as e:
            raise NetworkError(
                f"Network error uploading part {part.part_number}: {e}", cause=e
            ) from e

        if not etag:
            raise UploadError(f"No ETag returned for part {part.part_number}")

        return UploadedPart(part_number=part.part_number, etag=etag.strip('"'))

    async def upload(
        self,
        buffer: bytes,
        parts: Sequence[UploadPart],
        multipart: Optional[bool] = None,
    ) -> list[UploadedPart]:
        _check_parts(parts)
        by_number = {part.part_number: part for part in parts}
        uploaded: list[UploadedPart] = []

        for part_number, start, end in compute_part_ranges(len(buffer), parts):
            part = by_number[part_number]
            chunk = buffer[start:end]
            self.logger.debug(
                f"Uploading part {part_number}/{len(parts)} bytes [{start}, {end})"
            )

            if self.part_retry_policy is not None:
                uploaded_part = await with_retry(
                    lambda: self._put_part(part, chunk), self.part_retry_policy
                )
            else:
                uploaded_part = await self._put_part(part, chunk)
            uploaded.append(uploaded_part)

        if multipart is None:
            multipart = len(parts) > 1

        if multipart and uploaded and self.complete is not None:
            self.logger.info(f"Completing multipart upload of {len(uploaded)} parts")
            await self.complete(uploaded)

        return uploaded
