"""Deployment services package."""

from .base import (
    AuditSink,
    BulkDeploymentAccepted,
    BulkDeploymentResult,
    BulkDeploymentStatus,
    DeploymentRepository,
    DeploymentStatus,
    DomainResult,
    NotificationSink,
    RailwayDeployment,
    RailwayService,
    ServiceDeploymentResult,
    ServiceOutcome,
    ServiceRepository,
    ServiceStatus,
    ServiceType,
    TriggerType,
)
from .cli_executor import CliCommandOptions, CliResult, RailwayCliExecutor
from .events import (
    DEPLOYMENT_EVENTS_CHANNEL,
    DeploymentEventPublisher,
    DeploymentEventType,
    get_event_publisher,
)
from .orchestrator import DeploymentOrchestrator
from .repositories import (
    InMemoryAuditSink,
    InMemoryDeploymentRepository,
    InMemoryNotificationSink,
    InMemoryServiceRepository,
)

__all__ = [
    "AuditSink",
    "BulkDeploymentAccepted",
    "BulkDeploymentResult",
    "BulkDeploymentStatus",
    "CliCommandOptions",
    "CliResult",
    "DEPLOYMENT_EVENTS_CHANNEL",
    "DeploymentEventPublisher",
    "DeploymentEventType",
    "DeploymentOrchestrator",
    "DeploymentRepository",
    "DeploymentStatus",
    "DomainResult",
    "InMemoryAuditSink",
    "InMemoryDeploymentRepository",
    "InMemoryNotificationSink",
    "InMemoryServiceRepository",
    "NotificationSink",
    "RailwayCliExecutor",
    "RailwayDeployment",
    "RailwayService",
    "ServiceDeploymentResult",
    "ServiceOutcome",
    "ServiceRepository",
    "ServiceStatus",
    "ServiceType",
    "TriggerType",
    "get_event_publisher",
]
