"""
Test configuration and fixtures for pytest.

Fixtures include: settings tuned for fast retries, a mock Redis publish
primitive, in-memory repositories and sinks, a scriptable CLI executor and
a fully wired DeploymentOrchestrator.
"""

import json
import os
import pytest
from unittest.mock import AsyncMock, MagicMock

from railway_orchestrator.config import Settings
from railway_orchestrator.services.command_validator import RailwayCommand
from railway_orchestrator.services.deployment.base import RailwayService, ServiceType, ServiceStatus
from railway_orchestrator.services.deployment.cli_executor import CliResult
from railway_orchestrator.services.deployment.events import DeploymentEventPublisher
from railway_orchestrator.services.deployment.orchestrator import DeploymentOrchestrator
from railway_orchestrator.services.deployment.repositories import (
    InMemoryAuditSink,
    InMemoryDeploymentRepository,
    InMemoryNotificationSink,
    InMemoryServiceRepository,
)


def pytest_configure(config):
    """
    Pytest hook called before test collection.
    Sets up test environment variables.
    """
    os.environ["REDIS_URL"] = "redis://localhost:6379/15"
    os.environ["DEPLOYMENT_RETRY_MIN_WAIT"] = "0"

    from railway_orchestrator.config import get_settings
    get_settings.cache_clear()


WORKSPACE_ID = "ws-1"
OTHER_WORKSPACE_ID = "ws-2"
PROJECT_ID = "proj-1"
USER_ID = "user-1"
TOKEN = "rw-test-token"


@pytest.fixture
def settings(tmp_path):
    """Settings with immediate retries and a throwaway sandbox directory."""
    return Settings(
        railway_sandbox_home=str(tmp_path / "sandbox"),
        deployment_retry_min_wait=0,
        service_ready_poll_interval_ms=10,
        service_ready_timeout_ms=100,
    )


@pytest.fixture
def mock_redis():
    """Publish primitive that records every call."""
    redis = MagicMock()
    redis.publish = AsyncMock(return_value=1)
    return redis


@pytest.fixture
def publisher(mock_redis):
    return DeploymentEventPublisher(mock_redis)


@pytest.fixture
def published(mock_redis):
    """Return a callable decoding every published event, optionally filtered by type."""
    def _published(event_type=None):
        events = [json.loads(call.args[1]) for call in mock_redis.publish.call_args_list]
        if event_type is not None:
            events = [e for e in events if e["type"] == event_type]
        return events
    return _published


@pytest.fixture
def service_repo():
    return InMemoryServiceRepository()


@pytest.fixture
def deployment_repo():
    return InMemoryDeploymentRepository()


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def notification_sink():
    return InMemoryNotificationSink()


def cli_result(command="up", exit_code=0, stdout="", stderr="", duration_ms=5):
    return CliResult(
        command=command,
        exit_code=exit_code,
        stdout=stdout,
        stderr=stderr,
        duration_ms=duration_ms,
    )


@pytest.fixture
def make_result():
    """Factory for CliResult objects."""
    return cli_result


@pytest.fixture
def cli_executor():
    """
    Stand-in for RailwayCliExecutor.

    execute() succeeds with empty output by default; tests replace
    execute.side_effect to script responses.
    """
    executor = MagicMock()

    async def _default(options):
        return cli_result(command=RailwayCommand(options.command).value)

    executor.execute = AsyncMock(side_effect=_default)
    return executor


@pytest.fixture
def orchestrator(cli_executor, publisher, service_repo, deployment_repo, audit_sink, notification_sink, settings):
    return DeploymentOrchestrator(
        cli_executor=cli_executor,
        event_publisher=publisher,
        service_repository=service_repo,
        deployment_repository=deployment_repo,
        audit_sink=audit_sink,
        notification_sink=notification_sink,
        settings=settings,
    )


@pytest.fixture
def add_service(service_repo):
    """Create and store a service. Returns an async factory."""
    async def _add_service(
        name,
        deploy_order=0,
        service_type=ServiceType.API,
        workspace_id=WORKSPACE_ID,
        project_id=PROJECT_ID,
        **kwargs
    ):
        service = RailwayService(
            workspace_id=workspace_id,
            project_id=project_id,
            railway_service_id=kwargs.pop("railway_service_id", f"rw-{name}"),
            name=name,
            service_type=service_type,
            status=kwargs.pop("status", ServiceStatus.ACTIVE),
            deploy_order=deploy_order,
            **kwargs
        )
        return await service_repo.save(service)
    return _add_service
