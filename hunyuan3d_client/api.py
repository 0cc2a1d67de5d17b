import asyncio
import json
import time
from typing import Any, Callable, Optional

from loguru import logger
from pydantic import ValidationError

from hunyuan3d_client.errors import SubmissionError, TransportError, UnrecognizedResponse
from hunyuan3d_client.models import Credentials, QueryResult, SignedRequestSpec
from hunyuan3d_client.signing import Signer, check_timestamp_header
from hunyuan3d_client.transport import TransportClient

DEFAULT_HOST = "ai3d.tencentcloudapi.com"
DEFAULT_SERVICE = "ai3d"
DEFAULT_VERSION = "2025-05-13"
DEFAULT_REGION = "ap-guangzhou"
SUBMIT_ACTION = "SubmitHunyuanTo3DProJob"
QUERY_ACTION = "QueryHunyuanTo3DProJob"


def _response_object(body: dict) -> dict:
    response = body.get("Response") if isinstance(body, dict) else None
    if not isinstance(response, dict):
        raise UnrecognizedResponse(f"Body has no Response object: {str(body)[:200]}")
    return response


class Ai3dApi:
    """Signed calls to the ai3d job API."""

    def __init__(
        self,
        credentials: Credentials,
        transport: TransportClient,
        endpoint: Optional[str] = None,
        host: str = DEFAULT_HOST,
        service: str = DEFAULT_SERVICE,
        version: str = DEFAULT_VERSION,
        region: str = DEFAULT_REGION,
        clock: Callable[[], float] = time.time,
        on_response: Optional[Callable[[str, dict, dict], Any]] = None,
    ):
        self.signer = Signer(credentials)
        self.transport = transport
        self.host = host
        self.endpoint = endpoint or f"https://{host}"
        self.service = service
        self.version = version
        self.region = region
        self.clock = clock
        self.on_response = on_response
        self.logger = logger

    async def call(self, action: str, params: dict) -> dict:
        """Signs and sends one action, returning the decoded JSON body."""
        payload = json.dumps(params, ensure_ascii=False).encode("utf-8")
        spec = SignedRequestSpec(
            service=self.service,
            host=self.host,
            action=action,
            version=self.version,
            region=self.region,
            payload=payload,
            timestamp=int(self.clock()),
        )
        headers = self.signer.signed_headers(spec)
        check_timestamp_header(headers, spec.timestamp)

        raw = await self.transport.post(self.endpoint, headers, spec.payload)
        try:
            body = json.loads(raw)
        except (ValueError, UnicodeDecodeError) as e:
            raise TransportError(f"Malformed response body for {action}: {e}") from e

        await self._notify_response(action, params, body)
        return body

    async def _notify_response(self, action: str, params: dict, body: dict) -> None:
        if self.on_response is None:
            return
        try:
            result = self.on_response(action, params, body)
            if asyncio.iscoroutine(result):
                await result
        except Exception as e:
            self.logger.warning(f"Response hook failed for {action}: {e}")

    async def submit_job(self, prompt: str) -> str:
        """Submits a generation job and returns its JobId.

        Raises SubmissionError when the service answers without a JobId.
        """
        body = await self.call(SUBMIT_ACTION, {"Prompt": prompt})
        try:
            response = _response_object(body)
        except UnrecognizedResponse as e:
            raise SubmissionError(None, str(e), raw=body) from e

        job_id = response.get("JobId")
        if job_id:
            return str(job_id)

        error = response.get("Error")
        if not isinstance(error, dict):
            error = {}
        raise SubmissionError(
            error.get("Code"), error.get("Message") or "Unknown error", raw=body
        )

    async def query_job(self, job_id: str) -> QueryResult:
        body = await self.call(QUERY_ACTION, {"JobId": job_id})
        response = _response_object(body)

        # Call-level errors (auth, unknown job) arrive as Response.Error.
        error = response.get("Error")
        if isinstance(error, dict) and error.get("Code"):
            response = {
                **response,
                "ErrorCode": error.get("Code"),
                "ErrorMessage": error.get("Message"),
            }
        try:
            return QueryResult.model_validate({**response, "raw_response": body})
        except ValidationError as e:
            raise UnrecognizedResponse(f"Unexpected query response shape: {e}") from e
