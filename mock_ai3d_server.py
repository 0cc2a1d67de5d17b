import asyncio
import itertools
import json
import random
from typing import Optional

from aiohttp import web
from loguru import logger

from hunyuan3d_client.api import QUERY_ACTION, SUBMIT_ACTION
from hunyuan3d_client.models import Credentials
from hunyuan3d_client.signing import Signer

DEFAULT_RESULT_FILES = [
    {
        "Type": "OBJ",
        "Url": "https://example.com/model.zip",
        "PreviewImageUrl": "https://example.com/preview.png",
    },
    {
        "Type": "GLB",
        "Url": "https://example.com/model.glb",
        "PreviewImageUrl": "https://example.com/preview.png",
    },
]


def _error(code: str, message: str) -> web.Response:
    return web.json_response({"Response": {"Error": {"Code": code, "Message": message}}})


class MockAi3dServer:
    """Fake ai3d endpoint that checks TC3 signatures and scripts job progress."""

    def __init__(
        self,
        credentials: Credentials,
        processing_polls: int = 1,
        error_rate: float = 0.0,
        error_code: Optional[str] = None,
        error_message: str = "Generation failed",
        submit_error: Optional[str] = None,
        result_files: Optional[list] = None,
        delay: float = 0.0,
    ):
        self.signer = Signer(credentials)
        self.processing_polls = processing_polls
        self.error_rate = error_rate
        self.error_code = error_code
        self.error_message = error_message
        self.submit_error = submit_error
        self.result_files = DEFAULT_RESULT_FILES if result_files is None else result_files
        self.delay = delay
        self.polls: dict[str, int] = {}
        self.rejected_signatures = 0
        self._job_ids = itertools.count(1)
        self.app = web.Application()
        self.app.router.add_post("/", self.handle_action)
        self.logger = logger

    async def handle_action(self, request: web.Request) -> web.Response:
        body = await request.read()
        if self.delay:
            await asyncio.sleep(self.delay)
        if not self.signer.verify(request.headers, body):
            self.rejected_signatures += 1
            self.logger.info("Rejecting request with bad signature")
            return _error("AuthFailure.SignatureFailure", "The provided credentials could not be validated.")

        action = request.headers.get("X-TC-Action")
        params = json.loads(body)
        if action == SUBMIT_ACTION:
            return self.handle_submit(params)
        if action == QUERY_ACTION:
            return self.handle_query(params)
        return _error("InvalidAction", f"Unknown action {action}")

    def handle_submit(self, params: dict) -> web.Response:
        if self.submit_error:
            return _error(self.submit_error, "Submission rejected")
        if not params.get("Prompt"):
            return _error("InvalidParameter", "Prompt is required")

        job_id = f"J{next(self._job_ids)}"
        self.polls[job_id] = 0
        self.logger.info(f"Accepted job {job_id}")
        return web.json_response({"Response": {"JobId": job_id, "RequestId": f"req-{job_id}"}})

    def handle_query(self, params: dict) -> web.Response:
        job_id = params.get("JobId")
        if job_id not in self.polls:
            return _error("ResourceNotFound", f"Job {job_id} not found")

        self.polls[job_id] += 1
        response = {"JobId": job_id, "RequestId": f"req-{job_id}-{self.polls[job_id]}"}

        if self.error_code or random.random() < self.error_rate:
            self.logger.info(f"Returning failed status for {job_id}")
            response.update(
                Status="FAIL",
                ErrorCode=self.error_code or "FailedOperation",
                ErrorMessage=self.error_message,
            )
        elif self.polls[job_id] <= self.processing_polls:
            self.logger.info(f"Returning running status for {job_id} (poll {self.polls[job_id]})")
            response.update(Status="RUN", ErrorCode="", ErrorMessage="")
        else:
            self.logger.info(f"Returning done status for {job_id}")
            response.update(
                Status="DONE", ErrorCode="", ErrorMessage="", ResultFile3Ds=self.result_files
            )
        return web.json_response({"Response": response})

    async def start(self, port: int = 8080):
        runner = web.AppRunner(self.app)
        await runner.setup()
        site = web.TCPSite(runner, "localhost", port)
        await site.start()
        self.logger.info(f"Mock ai3d server started on port {port}")
        return runner
