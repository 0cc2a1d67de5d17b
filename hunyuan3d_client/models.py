from datetime import datetime
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator


class JobStatus(str, Enum):
    processing = "PROCESSING"
    success = "SUCCESS"
    failed = "FAILED"

    @property
    def is_terminal(self) -> bool:
        return self is not JobStatus.processing


class Credentials(BaseModel):
    model_config = ConfigDict(frozen=True)

    secret_id: str
    secret_key: SecretStr


class SignedRequestSpec(BaseModel):
    """Everything needed to sign and send one API call.

    ``timestamp`` is the unix-seconds value used for signing and must be
    the same value sent in ``X-TC-Timestamp``.
    """

    model_config = ConfigDict(frozen=True)

    service: str
    host: str
    action: str
    version: str
    region: str
    payload: bytes
    timestamp: int


class ResultFile(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    type: Optional[str] = Field(default=None, alias="Type")
    url: Optional[str] = Field(default=None, alias="Url")
    preview_image_url: Optional[str] = Field(default=None, alias="PreviewImageUrl")


class QueryResult(BaseModel):
    """Parsed ``Response`` object of a query call."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    status: Optional[str] = Field(default=None, alias="Status")
    error_code: Optional[str] = Field(default=None, alias="ErrorCode")
    error_message: Optional[str] = Field(default=None, alias="ErrorMessage")
    result_files: list[ResultFile] = Field(default_factory=list, alias="ResultFile3Ds")
    request_id: Optional[str] = Field(default=None, alias="RequestId")
    raw_response: dict = Field(default_factory=dict, exclude=True)

    @field_validator("result_files", mode="before")
    @classmethod
    def _none_as_empty(cls, value):
        return value or []


class JobRecord(BaseModel):
    """Published view of one job. Instances are never mutated; updates
    replace the stored record with a new one."""

    model_config = ConfigDict(frozen=True, protected_namespaces=())

    job_id: str
    status: JobStatus = JobStatus.processing
    progress: int = Field(default=0, ge=0, le=100)
    model_url: Optional[str] = None
    model_type: Optional[str] = None
    preview_image_url: Optional[str] = None
    error: Optional[str] = None
    created_at: datetime
    completed_at: Optional[datetime] = None
    cancelled: bool = False

    def to_public_dict(self) -> dict:
        return {
            "status": self.status.value,
            "progress": self.progress,
            "modelUrl": self.model_url,
            "modelType": self.model_type,
            "previewImageUrl": self.preview_image_url,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "completedAt": self.completed_at.isoformat() if self.completed_at else None,
            "cancelled": self.cancelled,
        }


class PollingConfig(BaseModel):
    first_poll_delay: float = 0.0
    interval: float = 5.0
    max_delay: float = 60.0
    backoff_factor: float = 1.0
    jitter: bool = False
    max_anomalies: int = 20
    job_timeout: float = 900.0  # 15 minutes
    record_ttl: float = 3600.0
    request_timeout: float = 30.0
    max_concurrent_polls: int = 8
