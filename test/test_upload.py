import aiohttp
import pytest
import pytest_asyncio
from ocr_client.errors import PartUploadError, UploadError
from ocr_client.models import RetryPolicy, UploadPart
from ocr_client.upload import UploadOrchestrator, compute_part_ranges


def make_parts(port, count, job_id="job-1"):
    return [
        UploadPart(
            part_number=n, upload_url=f"http://localhost:{port}/storage/{job_id}/{n}"
        )
        for n in range(1, count + 1)
    ]


@pytest_asyncio.fixture
async def session():
    async with aiohttp.ClientSession() as client_session:
        yield client_session


class CompletionRecorder:
    def __init__(self):
        self.calls = []

    async def __call__(self, parts):
        self.calls.append(parts)


def test_even_split_ranges():
    parts = [UploadPart(part_number=n, upload_url=f"u{n}") for n in (3, 1, 2)]
    assert compute_part_ranges(300, parts) == [(1, 0, 100), (2, 100, 200), (3, 200, 300)]


def test_last_part_gets_remainder():
    parts = [UploadPart(part_number=n, upload_url=f"u{n}") for n in (1, 2, 3)]
    assert compute_part_ranges(301, parts) == [(1, 0, 101), (2, 101, 202), (3, 202, 301)]


@pytest.mark.asyncio
async def test_multipart_upload_splits_and_completes(server, session):
    server_instance, port = server
    buffer = bytes(range(100)) * 3
    completion = CompletionRecorder()
    orchestrator = UploadOrchestrator(session, complete=completion)

    uploaded = await orchestrator.upload(buffer, make_parts(port, 3))

    assert [p.part_number for p in uploaded] == [1, 2, 3]
    assert all('"' not in p.etag for p in uploaded)
    stored = server_instance.stored_parts["job-1"]
    assert stored[1] == buffer[0:100]
    assert stored[2] == buffer[100:200]
    assert stored[3] == buffer[200:300]
    assert completion.calls == [uploaded]


@pytest.mark.asyncio
async def test_single_part_skips_completion(server, session):
    server_instance, port = server
    completion = CompletionRecorder()
    orchestrator = UploadOrchestrator(session, complete=completion)

    uploaded = await orchestrator.upload(b"%PDF-1.7 tiny", make_parts(port, 1))

    assert len(uploaded) == 1
    assert server_instance.stored_parts["job-1"][1] == b"%PDF-1.7 tiny"
    assert completion.calls == []


@pytest.mark.asyncio
async def test_multipart_flag_overrides_part_count(server, session):
    _, port = server
    completion = CompletionRecorder()
    orchestrator = UploadOrchestrator(session, complete=completion)

    await orchestrator.upload(b"abc", make_parts(port, 1), multipart=True)

    assert len(completion.calls) == 1


@pytest.mark.asyncio
@pytest.mark.parametrize(
    "parts",
    [
        [],
        [UploadPart(part_number=1)],
        [UploadPart(upload_url="http://localhost/storage/x/1")],
        [UploadPart(part_number=0, upload_url="http://localhost/storage/x/0")],
    ],
)
async def test_malformed_descriptors_rejected_before_io(session, parts):
    completion = CompletionRecorder()
    orchestrator = UploadOrchestrator(session, complete=completion)

    with pytest.raises(UploadError):
        await orchestrator.upload(b"data", parts)

    assert completion.calls == []


@pytest.mark.asyncio
async def test_failed_part_aborts_whole_upload(server, session):
    server_instance, port = server
    server_instance.failing_part = 2
    completion = CompletionRecorder()
    orchestrator = UploadOrchestrator(session, complete=completion)

    with pytest.raises(PartUploadError) as exc_info:
        await orchestrator.upload(b"x" * 300, make_parts(port, 3))

    assert exc_info.value.part_number == 2
    assert exc_info.value.status_code == 500
    assert server_instance.count("PUT", "/storage/job-1/2") == 1
    assert 3 not in server_instance.stored_parts["job-1"]
    assert completion.calls == []


@pytest.mark.asyncio
async def test_part_retry_policy_retries_failed_put(server, session):
    server_instance, port = server
    server_instance.failing_part = 1
    orchestrator = UploadOrchestrator(
        session, part_retry_policy=RetryPolicy(max_retries=2, initial_delay=0.01)
    )

    with pytest.raises(PartUploadError):
        await orchestrator.upload(b"abc", make_parts(port, 1))

    assert server_instance.count("PUT", "/storage/job-1/1") == 3


@pytest.mark.asyncio
async def test_missing_etag_fails(server, session):
    server_instance, port = server
    server_instance.omit_etag = True
    orchestrator = UploadOrchestrator(session)

    with pytest.raises(UploadError, match="No ETag"):
        await orchestrator.upload(b"abc", make_parts(port, 1))
