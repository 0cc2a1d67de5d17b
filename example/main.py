import asyncio

from hunyuan3d_client.api import Ai3dApi
from hunyuan3d_client.errors import JobFailure
from hunyuan3d_client.job_tracker import JobTracker
from hunyuan3d_client.models import Credentials, PollingConfig
from hunyuan3d_client.transport import AiohttpTransport
from mock_ai3d_server import MockAi3dServer


async def status_changed(record):
    print(f"Job {record.job_id} status changed to: {record.status.value}")


async def main():
    PORT = 8000
    credentials = Credentials(secret_id="AKIDEXAMPLE", secret_key="example-secret-key")
    server = MockAi3dServer(credentials, processing_polls=3, error_rate=0.1)
    runner = await server.start(port=PORT)
    print(f"Mock ai3d service started on http://localhost:{PORT}")

    config = PollingConfig(interval=1.0, job_timeout=60.0)

    async with AiohttpTransport(timeout=config.request_timeout) as transport:
        api = Ai3dApi(credentials, transport, endpoint=f"http://localhost:{PORT}")
        async with JobTracker(api, config, on_status_change=status_changed) as tracker:
            job_id = await tracker.submit("a red chair")
            try:
                record = await tracker.wait_until_complete(job_id, timeout=60.0)
                print(f"Model ({record.model_type}): {record.model_url}")
                print(f"Preview: {record.preview_image_url}")
            except JobFailure as e:
                print(f"Job failed: {e.error}")
            except TimeoutError as e:
                print(f"Polling timed out: {e}")

    await runner.cleanup()


if __name__ == "__main__":
    asyncio.run(main())
