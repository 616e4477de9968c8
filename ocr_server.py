import hashlib
import random
import uuid
from datetime import datetime, timezone
from typing import Optional

from aiohttp import web
from loguru import logger

API_PREFIX = "/api/v1"


class OCRServer:
    """In-process stand-in for the remote OCR service.

    Jobs move from pending to processing to completed (or failed) as time
    passes. Failure knobs let callers exercise the client's retry paths.
    """

    def __init__(
        self,
        api_key: str = "test-key",
        completion_time: float = 10.0,
        error_rate: float = 0.0,
        part_count: int = 1,
    ):
        self.api_key = api_key
        self.completion_time = completion_time
        self.error_rate = error_rate
        self.part_count = part_count
        self.fail_jobs = False
        self.status_failures = 0  # next N status calls answer 503
        self.rate_limited = 0  # next N status calls answer 429
        self.retry_after = "0"
        self.failing_part: Optional[int] = None
        self.omit_etag = False
        self.status_payload: Optional[dict] = None  # served verbatim when set
        self.part_api_keys: list[str] = []
        self.jobs: dict[str, dict] = {}
        self.stored_parts: dict[str, dict[int, bytes]] = {}
        self.completed_uploads: dict[str, list] = {}
        self.requests: list[tuple[str, str]] = []
        self.runner: Optional[web.AppRunner] = None
        self.logger = logger

        self.app = web.Application(middlewares=[self.record_request])
        self.app.router.add_post(f"{API_PREFIX}/ocr/uploads/direct", self.handle_direct_upload)
        self.app.router.add_post(f"{API_PREFIX}/ocr/uploads/url", self.handle_url_upload)
        self.app.router.add_post(
            f"{API_PREFIX}/ocr/uploads/{{job_id}}/complete", self.handle_complete_upload
        )
        self.app.router.add_get(f"{API_PREFIX}/ocr/status/{{job_id}}", self.handle_status)
        self.app.router.add_get(f"{API_PREFIX}/ocr/result/{{job_id}}", self.handle_result)
        self.app.router.add_delete(f"{API_PREFIX}/ocr/delete/{{job_id}}", self.handle_delete)
        self.app.router.add_put("/storage/{job_id}/{part_number}", self.handle_part_put)

    @web.middleware
    async def record_request(self, request: web.Request, handler):
        self.requests.append((request.method, request.path))
        if request.path.startswith(API_PREFIX):
            if request.headers.get("X-API-KEY") != self.api_key:
                return web.json_response({"message": "Invalid API key"}, status=401)
        return await handler(request)

    def count(self, method: str, suffix: str) -> int:
        return sum(1 for m, p in self.requests if m == method and p.endswith(suffix))

    def _new_job(self, source: str) -> str:
        job_id = str(uuid.uuid4())
        self.jobs[job_id] = {"source": source, "created_at": datetime.now(timezone.utc)}
        return job_id

    def _get_job(self, request: web.Request) -> dict:
        job_id = request.match_info["job_id"]
        if job_id not in self.jobs:
            raise web.HTTPNotFound(
                text='{"message": "Job not found"}', content_type="application/json"
            )
        return self.jobs[job_id]

    async def handle_direct_upload(self, request: web.Request) -> web.Response:
        body = await request.json()
        if not body.get("file_name"):
            return web.json_response(
                {"message": "Invalid request", "fields": {"file_name": ["required"]}},
                status=422,
            )

        job_id = self._new_job(body["file_name"])
        self.jobs[job_id]["waiting_for_upload"] = True
        origin = str(request.url.origin())
        parts = [
            {"part_number": n, "upload_url": f"{origin}/storage/{job_id}/{n}"}
            for n in range(1, self.part_count + 1)
        ]
        self.logger.info(f"Initiated upload of {body['file_name']} as job {job_id}")
        return web.json_response(
            {
                "job_id": job_id,
                "parts": parts,
                "upload_type": "multipart" if self.part_count > 1 else "single",
            }
        )

    async def handle_url_upload(self, request: web.Request) -> web.Response:
        body = await request.json()
        if not str(body.get("url", "")).startswith(("http://", "https://")):
            return web.json_response(
                {"message": "Invalid URL", "fields": {"url": ["must be http(s)"]}},
                status=400,
            )
        job_id = self._new_job(body["url"])
        return web.json_response({"job_id": job_id, "status": "pending"})

    async def handle_part_put(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        part_number = int(request.match_info["part_number"])
        api_key = request.headers.get("X-API-KEY")
        if api_key is not None:
            # Storage targets are presigned and must never see API credentials
            self.part_api_keys.append(api_key)
            return web.Response(status=400, reason="Unexpected Credentials")
        if part_number == self.failing_part:
            self.logger.info(f"Failing upload of part {part_number}")
            return web.Response(status=500, reason="Storage Unavailable")

        data = await request.read()
        self.stored_parts.setdefault(job_id, {})[part_number] = data
        if job_id in self.jobs and self.part_count == 1:
            self.jobs[job_id]["waiting_for_upload"] = False

        headers = {} if self.omit_etag else {"ETag": f'"{hashlib.md5(data).hexdigest()}"'}
        return web.Response(status=200, headers=headers)

    async def handle_complete_upload(self, request: web.Request) -> web.Response:
        job = self._get_job(request)
        body = await request.json()
        self.completed_uploads[request.match_info["job_id"]] = body.get("parts", [])
        job["waiting_for_upload"] = False
        return web.json_response({"status": "pending"})

    async def handle_status(self, request: web.Request) -> web.Response:
        if self.status_failures > 0:
            self.status_failures -= 1
            self.logger.info("Returning transient 503")
            return web.json_response({"message": "Service unavailable"}, status=503)
        if self.rate_limited > 0:
            self.rate_limited -= 1
            self.logger.info("Returning 429")
            return web.json_response(
                {"message": "Too many requests"},
                status=429,
                headers={"Retry-After": self.retry_after},
            )

        if self.status_payload is not None:
            return web.json_response(self.status_payload)

        job_id = request.match_info["job_id"]
        job = self._get_job(request)
        elapsed = (datetime.now(timezone.utc) - job["created_at"]).total_seconds()
        payload = {
            "job_id": job_id,
            "created_at": job["created_at"].isoformat(),
            "updated_at": datetime.now(timezone.utc).isoformat(),
        }

        if self.fail_jobs or random.random() < self.error_rate:
            self.logger.info("Returning failed status")
            payload.update(
                status="failed",
                error={"code": "PROCESSING_ERROR", "message": "Could not read document"},
            )
        elif elapsed >= self.completion_time:
            self.logger.info("Returning completed status")
            payload.update(status="completed", progress=100)
        elif elapsed > 0 and not job.get("waiting_for_upload"):
            progress = round(100 * elapsed / self.completion_time, 1)
            self.logger.info(f"Returning processing status (elapsed: {elapsed:.1f}s)")
            payload.update(status="processing", progress=progress)
        else:
            # No status field at all; clients treat that as pending
            self.logger.info(f"Returning pending status (elapsed: {elapsed:.1f}s)")

        return web.json_response(payload)

    async def handle_result(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        job = self._get_job(request)
        page = int(request.query.get("page", "1"))
        limit = int(request.query.get("limit", "100"))
        pages = [
            {"page_number": n, "result": f"Text of page {n} from {job['source']}"}
            for n in range(1, 4)
        ]
        start = (page - 1) * limit
        return web.json_response(
            {
                "job_id": job_id,
                "status": "completed",
                "pages": pages[start : start + limit],
                "pagination": {
                    "page": page,
                    "limit": limit,
                    "total": len(pages),
                    "total_pages": max(1, -(-len(pages) // limit)),
                },
            }
        )

    async def handle_delete(self, request: web.Request) -> web.Response:
        self._get_job(request)
        del self.jobs[request.match_info["job_id"]]
        return web.Response(status=204)

    async def start(self, port: int = 8080):
        self.runner = web.AppRunner(self.app)
        await self.runner.setup()
        site = web.TCPSite(self.runner, "localhost", port)
        await site.start()
        self.logger.info(f"Server started on port {port}")
        return site

    async def stop(self) -> None:
        if self.runner is not None:
            await self.runner.cleanup()
            self.runner = None
