import asyncio

from ocr_client.errors import JobFailedError, JobTimeoutError, OCRError
from ocr_client.models import ClientConfig, FileData, UploadOptions
from ocr_client.ocr_client import OCRClient
from ocr_server import API_PREFIX, OCRServer


async def progress_changed(status):
    print(f"Status: {status.status.value} ({status.progress or 0}%)")


async def main():
    PORT = 8000
    server = OCRServer(api_key="demo-key", completion_time=5.0, part_count=3)
    await server.start(port=PORT)
    print(f"Server started on http://localhost:{PORT}")

    config = ClientConfig(
        base_url=f"http://localhost:{PORT}{API_PREFIX}", retry_delay=0.5, debug=True
    )

    async with OCRClient("demo-key", config) as client:
        try:
            upload = await client.process_file_buffer(
                b"%PDF-1.7 " + b"0" * 3000,
                "invoice.pdf",
                UploadOptions(format="structured", instructions="Extract the total"),
            )
            print(f"Submitted job {upload.job_id}")

            final_status = await client.wait_until_done(
                upload.job_id, poll_interval=1.0, max_wait=60.0, on_progress=progress_changed
            )
            print(f"Final status: {final_status.status.value}")

            result = await client.get_job_result(upload.job_id)
            for page in result.pages:
                print(f"Page {page.page_number}: {page.result}")

            batch = await client.process_batch(
                [FileData(data=b"%PDF-1.7", file_name=f"scan{n}.pdf") for n in range(4)],
                concurrency=2,
            )
            print(f"Batch submitted {len(batch.jobs)}/{batch.total_files} files")
        except JobTimeoutError as e:
            print(f"Polling timed out: {e}")
        except JobFailedError as e:
            print(f"Job failed: {e.job_error}")
        except OCRError as e:
            print(f"Error occurred [{e.code}]: {e}")

    await server.stop()


if __name__ == "__main__":
    asyncio.run(main())
