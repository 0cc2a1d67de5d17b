import json
from typing import Optional

from aiohttp import web
from loguru import logger

from hunyuan3d_client.api import Ai3dApi
from hunyuan3d_client.config import Settings, get_settings
from hunyuan3d_client.errors import Hunyuan3DError, SubmissionError, TransportError
from hunyuan3d_client.job_tracker import JobTracker
from hunyuan3d_client.response_log import ResponseLogWriter
from hunyuan3d_client.transport import AiohttpTransport


@web.middleware
async def cors_middleware(request: web.Request, handler):
    response = await handler(request)
    response.headers["Access-Control-Allow-Origin"] = "*"
    response.headers["Access-Control-Allow-Headers"] = "Content-Type"
    return response


class JobServer:
    """Local HTTP API for clients that cannot call the remote service."""

    def __init__(self, tracker: JobTracker):
        self.tracker = tracker
        self.app = web.Application(middlewares=[cors_middleware])
        self.app.router.add_post("/generate-3d", self.handle_generate)
        self.app.router.add_route("OPTIONS", "/generate-3d", self.handle_options)
        self.app.router.add_get("/job-status/{job_id}", self.handle_status)
        self.app.on_startup.append(self._on_startup)
        self.app.on_cleanup.append(self._on_cleanup)
        self.logger = logger

    async def _on_startup(self, app: web.Application) -> None:
        self.tracker.start()

    async def _on_cleanup(self, app: web.Application) -> None:
        await self.tracker.close()
        close_transport = getattr(self.tracker.api.transport, "close", None)
        if close_transport is not None:
            await close_transport()

    async def handle_options(self, request: web.Request) -> web.Response:
        return web.Response(status=204)

    async def handle_generate(self, request: web.Request) -> web.Response:
        try:
            data = await request.json()
        except json.JSONDecodeError:
            return web.json_response(
                {"success": False, "error": "Request body must be JSON"}, status=400
            )

        prompt = data.get("prompt") if isinstance(data, dict) else None
        if not isinstance(prompt, str) or not prompt.strip():
            return web.json_response(
                {"success": False, "error": "prompt is required"}, status=400
            )

        try:
            job_id = await self.tracker.submit(prompt)
        except SubmissionError as e:
            self.logger.warning(f"Submission rejected: {e}")
            return web.json_response(
                {"success": False, "error": e.message, "code": e.code, "raw": e.raw}
            )
        except TransportError as e:
            return web.json_response({"success": False, "error": str(e), "code": None})
        except Hunyuan3DError as e:
            self.logger.error(f"Cannot submit job: {e}")
            return web.json_response(
                {"success": False, "error": str(e), "code": type(e).__name__}
            )

        return web.json_response({"success": True, "jobId": job_id})

    async def handle_status(self, request: web.Request) -> web.Response:
        job_id = request.match_info["job_id"]
        record = self.tracker.get_status(job_id)
        if record is None:
            return web.json_response({"success": False, "error": "JobId not found"})
        return web.json_response({"success": True, "jobId": job_id, **record.to_public_dict()})

    async def start(self, host: str = "127.0.0.1", port: int = 3000):
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, host, port)
        await site.start()
        self.logger.info(f"Server running on http://{host}:{port}")
        return runner


def create_server(settings: Optional[Settings] = None) -> JobServer:
    settings = settings or get_settings()
    response_log = (
        ResponseLogWriter(settings.response_log_dir) if settings.response_log_dir else None
    )
    api = Ai3dApi(
        settings.credentials,
        AiohttpTransport(timeout=settings.polling.request_timeout),
        endpoint=settings.endpoint,
        host=settings.host,
        region=settings.region,
        on_response=response_log.record_response if response_log else None,
    )
    tracker = JobTracker(
        api,
        config=settings.polling,
        on_status_change=response_log.record_completion if response_log else None,
    )
    return JobServer(tracker)


def main() -> None:
    settings = get_settings()
    server = create_server(settings)
    logger.info("Endpoints: POST /generate-3d, GET /job-status/{job_id}")
    web.run_app(server.app, port=settings.port, print=None)


if __name__ == "__main__":
    main()
