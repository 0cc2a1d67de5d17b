from typing import Optional


class Hunyuan3DError(Exception):
    """Base class for every error raised by this package."""


class CredentialError(Hunyuan3DError):
    """Secret material is missing or malformed. Never retried."""


class SignatureError(Hunyuan3DError):
    """Canonical request or signed headers are inconsistent."""


class InvalidInputError(SignatureError):
    """Payload cannot be encoded as declared by its content type."""


class TransportError(Hunyuan3DError):
    """Network failure, timeout, non-2xx status or undecodable body."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class SubmissionError(Hunyuan3DError):
    """The remote service rejected a submit call."""

    def __init__(self, code: Optional[str], message: str, raw: Optional[dict] = None):
        super().__init__(f"{code}: {message}" if code else message)
        self.code = code
        self.message = message
        self.raw = raw or {}


class JobFailure(Hunyuan3DError):
    """A job ended in the FAILED state."""

    def __init__(self, job_id: str, error: Optional[str]):
        super().__init__(f"Job {job_id} failed: {error}")
        self.job_id = job_id
        self.error = error


class UnrecognizedResponse(Hunyuan3DError):
    """A response parsed as JSON but has none of the expected shapes."""
