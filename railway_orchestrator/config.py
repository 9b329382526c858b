import logging
from pydantic_settings import BaseSettings, SettingsConfigDict
from typing import Optional
from functools import lru_cache


class Settings(BaseSettings):
    # Redis pub/sub broker used for real-time deployment events
    redis_url: str = "redis://localhost:6379/0"

    # Single well-known channel shared by all workspaces.
    # Subscribers route to workspace audiences using payload.workspaceId
    deployment_events_channel: str = "deployment:events"

    # Logging level: DEBUG, INFO, WARNING, ERROR, CRITICAL
    log_level: str = "INFO"

    # ==========================================================================
    # Railway CLI Execution
    # ==========================================================================
    # Executable name or absolute path of the Railway CLI
    railway_cli_path: str = "railway"

    # HOME and default working directory for every CLI process.
    # The CLI never sees the host process environment.
    railway_sandbox_home: str = "/tmp/railway-sandbox"

    # PATH handed to the CLI process
    railway_cli_path_env: str = "/usr/local/bin:/usr/bin:/bin"

    # Default timeouts (milliseconds)
    railway_deploy_timeout_ms: int = 600_000  # up / redeploy: 10 minutes
    railway_command_timeout_ms: int = 120_000  # everything else: 2 minutes

    # Accepted range for caller-supplied timeouts
    railway_min_timeout_ms: int = 5_000
    railway_max_timeout_ms: int = 600_000

    # Grace period between SIGTERM and SIGKILL once a timeout elapses
    railway_kill_grace_ms: int = 5_000

    # ==========================================================================
    # Deployment Orchestration
    # ==========================================================================
    # Attempt ceiling for transient failures (timeouts, connection resets)
    deployment_max_attempts: int = 3

    # Exponential backoff bounds between attempts (seconds). 0 retries immediately.
    deployment_retry_min_wait: float = 1.0
    deployment_retry_max_wait: float = 10.0

    # Readiness polling for freshly provisioned services
    service_ready_poll_interval_ms: int = 2_000
    service_ready_timeout_ms: int = 60_000

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",  # Ignore extra fields from .env file
        case_sensitive=False,  # Allow lowercase env vars to match uppercase field names
    )


@lru_cache()
def get_settings():
    return Settings()


def configure_logging(settings: Optional[Settings] = None) -> None:
    """Configure root logging from log_level."""
    settings = settings or get_settings()
    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
