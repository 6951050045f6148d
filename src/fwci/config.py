import os
import logging
from dataclasses import dataclass
from typing import Mapping, Optional

DEFAULT_REGION = "us-east-1"

logger = logging.getLogger(__name__)


class ConfigurationError(ValueError):
    pass


@dataclass(frozen=True)
class Config:
    """Settings read from the environment once at startup"""

    bucket_name: str = ""
    region: str = DEFAULT_REGION
    ci_device_name: str = ""
    is_ci: bool = False

    @classmethod
    def from_env(cls, environ: Optional[Mapping[str, str]] = None) -> "Config":
        env = os.environ if environ is None else environ
        return cls(
            bucket_name=env.get("BUCKET_NAME", ""),
            region=env.get("AWS_REGION") or DEFAULT_REGION,
            ci_device_name=env.get("CI_DEVICE", ""),
            is_ci=env.get("CI") == "1",
        )

    def require_scheduling(self):
        """Fail fast when the variables needed to schedule a job are missing"""
        missing_vars = []
        if not self.bucket_name:
            missing_vars.append("BUCKET_NAME")
        if not self.ci_device_name:
            missing_vars.append("CI_DEVICE")

        if missing_vars:
            error_msg = f"Missing required environment variables: {', '.join(missing_vars)}"
            logger.error(error_msg)
            raise ConfigurationError(error_msg)

    def device_arn(self, account_id: str) -> str:
        return f"arn:aws:iot:{self.region}:{account_id}:thing/{self.ci_device_name}"


def configure_logging():
    handlers = [logging.StreamHandler()]
    log_file = os.getenv("LOG_FILE")
    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=os.getenv("LOG_LEVEL", "WARNING").upper(),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers
    )
