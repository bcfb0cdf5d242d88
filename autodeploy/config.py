"""
Configuration for the autodeploy supervisor.

Loads settings from environment variables (and a .env file, if present)
with sensible defaults. Command line flags override these values.
"""

import os
from dataclasses import dataclass
from pathlib import Path

from dotenv import load_dotenv

load_dotenv()


def _optional_path(value: str) -> Path | None:
    return Path(value).expanduser() if value else None


@dataclass
class Config:
    """Autodeploy configuration."""

    # Credentials and deployment
    token: str = os.environ.get("AUTODEPLOY_TOKEN", "")
    deploy_command: str = os.environ.get("AUTODEPLOY_COMMAND", "")
    repo_dir: Path = Path(os.environ.get("AUTODEPLOY_REPO_DIR", "."))
    deploy_shell: str = os.environ.get("AUTODEPLOY_SHELL", "/bin/sh")

    # Hosting API
    api_url: str = os.environ.get("AUTODEPLOY_API_URL", "https://api.github.com")
    request_timeout: float = float(os.environ.get("AUTODEPLOY_REQUEST_TIMEOUT", "15"))

    # Timing (seconds)
    poll_interval: float = float(os.environ.get("AUTODEPLOY_POLL_INTERVAL", "5"))
    retry_delay: float = float(os.environ.get("AUTODEPLOY_RETRY_DELAY", "10"))
    port_release_delay: float = float(os.environ.get("AUTODEPLOY_PORT_RELEASE_DELAY", "2"))
    descendant_wait_timeout: float = float(os.environ.get("AUTODEPLOY_DESCENDANT_WAIT", "5"))

    # Logging
    log_file: Path | None = _optional_path(os.environ.get("AUTODEPLOY_LOG_FILE", ""))
    log_max_bytes: int = int(os.environ.get("LOG_MAX_BYTES", str(10 * 1024 * 1024)))  # 10MB
    log_backup_count: int = int(os.environ.get("LOG_BACKUP_COUNT", "5"))

    def __post_init__(self):
        self.api_url = self.api_url.rstrip("/")
        # Requests to the hosting service never hang longer than 15s.
        self.request_timeout = min(self.request_timeout, 15.0)


config = Config()
