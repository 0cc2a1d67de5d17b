import os
from functools import lru_cache
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from pydantic import BaseModel, SecretStr

from hunyuan3d_client.api import DEFAULT_HOST, DEFAULT_REGION
from hunyuan3d_client.models import Credentials, PollingConfig

ROOT = Path(__file__).resolve().parents[1]


class Settings(BaseModel):
    secret_id: str = ""
    secret_key: SecretStr = SecretStr("")
    host: str = DEFAULT_HOST
    endpoint: Optional[str] = None
    region: str = DEFAULT_REGION
    response_log_dir: Optional[str] = None
    port: int = 3000
    polling: PollingConfig = PollingConfig()

    @property
    def credentials(self) -> Credentials:
        return Credentials(secret_id=self.secret_id, secret_key=self.secret_key)

    @classmethod
    def from_env(cls) -> "Settings":
        defaults = PollingConfig()
        return cls(
            secret_id=os.getenv("TENCENTCLOUD_SECRET_ID", ""),
            secret_key=SecretStr(os.getenv("TENCENTCLOUD_SECRET_KEY", "")),
            host=os.getenv("AI3D_HOST", DEFAULT_HOST),
            endpoint=os.getenv("AI3D_ENDPOINT") or None,
            region=os.getenv("AI3D_REGION", DEFAULT_REGION),
            response_log_dir=os.getenv("RESPONSE_LOG_DIR") or None,
            port=int(os.getenv("PORT", "3000")),
            polling=PollingConfig(
                interval=float(os.getenv("POLL_INTERVAL", str(defaults.interval))),
                max_anomalies=int(os.getenv("POLL_MAX_ANOMALIES", str(defaults.max_anomalies))),
                job_timeout=float(os.getenv("JOB_TIMEOUT", str(defaults.job_timeout))),
                record_ttl=float(os.getenv("RECORD_TTL", str(defaults.record_ttl))),
                request_timeout=float(
                    os.getenv("REQUEST_TIMEOUT", str(defaults.request_timeout))
                ),
            ),
        )


@lru_cache
def get_settings() -> Settings:
    # Later files override earlier ones
    load_dotenv(ROOT / ".env")
    load_dotenv(ROOT / ".env.local", override=True)
    return Settings.from_env()
