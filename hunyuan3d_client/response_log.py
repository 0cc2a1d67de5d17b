import json
import time
from pathlib import Path
from typing import Union

from loguru import logger

from hunyuan3d_client.api import QUERY_ACTION, SUBMIT_ACTION
from hunyuan3d_client.models import JobRecord, JobStatus


class ResponseLogWriter:
    """Writes raw API responses and completed jobs as JSON files.

    Use ``record_response`` as ``Ai3dApi.on_response`` and
    ``record_completion`` as ``JobTracker.on_status_change``.
    """

    def __init__(self, directory: Union[str, Path]):
        self.directory = Path(directory)
        self.logger = logger

    def _write(self, filename: str, data: dict) -> Path:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / filename
        path.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        self.logger.debug(f"Wrote {path}")
        return path

    def record_response(self, action: str, params: dict, body: dict) -> Path:
        millis = int(time.time() * 1000)
        if action == SUBMIT_ACTION:
            return self._write(f"submit_{millis}.json", body)
        if action == QUERY_ACTION:
            job_id = params.get("JobId", "unknown")
            return self._write(f"query_{job_id}_{millis}.json", body)
        return self._write(f"{action}_{millis}.json", body)

    def record_completion(self, record: JobRecord):
        if record.status is not JobStatus.success:
            return None
        return self._write(
            f"completed_{record.job_id}.json",
            {
                "jobId": record.job_id,
                "modelUrl": record.model_url,
                "modelType": record.model_type,
                "previewImageUrl": record.preview_image_url,
                "completedAt": record.completed_at.isoformat() if record.completed_at else None,
            },
        )
