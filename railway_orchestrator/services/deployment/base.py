"""
Deployment domain models and collaborator interfaces.

This module defines the Pydantic models the orchestrator reads and writes
(services, deployments, bulk run results) along with the abstract persistence,
audit and notification interfaces it is wired against.
"""

from abc import ABC, abstractmethod
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid4())


class ServiceType(str, Enum):
    WEB = "web"
    API = "api"
    WORKER = "worker"
    DATABASE = "database"
    CACHE = "cache"
    CRON = "cron"


class ServiceStatus(str, Enum):
    PROVISIONING = "provisioning"
    ACTIVE = "active"
    DEPLOYING = "deploying"
    FAILED = "failed"
    STOPPED = "stopped"
    REMOVED = "removed"


class DeploymentStatus(str, Enum):
    QUEUED = "queued"
    BUILDING = "building"
    DEPLOYING = "deploying"
    SUCCESS = "success"
    FAILED = "failed"
    CRASHED = "crashed"
    CANCELLED = "cancelled"
    ROLLED_BACK = "rolled_back"


class TriggerType(str, Enum):
    MANUAL = "manual"
    AGENT = "agent"
    WEBHOOK = "webhook"
    ROLLBACK = "rollback"
    REDEPLOY = "redeploy"


class ServiceOutcome(str, Enum):
    """Per-service result inside a bulk run."""
    SUCCESS = "success"
    FAILED = "failed"
    SKIPPED = "skipped"


class BulkDeploymentStatus(str, Enum):
    SUCCESS = "success"
    PARTIAL_FAILURE = "partial_failure"
    FAILED = "failed"


class DomainStatus(str, Enum):
    ACTIVE = "active"
    PENDING_DNS = "pending_dns"
    PENDING_SSL = "pending_ssl"
    ERROR = "error"


class AuditAction(str, Enum):
    SERVICE_PROVISIONED = "railway.service.provisioned"
    SERVICE_DEPLOYED = "railway.service.deployed"
    SERVICE_REDEPLOYED = "railway.service.redeployed"
    SERVICE_RESTARTED = "railway.service.restarted"
    BULK_DEPLOY_STARTED = "railway.bulk_deploy.started"
    BULK_DEPLOY_COMPLETED = "railway.bulk_deploy.completed"
    DEPLOYMENT_ROLLED_BACK = "railway.deployment.rolled_back"
    ENV_VAR_SET = "railway.env_var.set"
    ENV_VAR_DELETED = "railway.env_var.deleted"
    DOMAIN_ADDED = "railway.domain.added"
    DOMAIN_REMOVED = "railway.domain.removed"


class RailwayService(BaseModel):
    """A deployable unit inside a project, bound to a provider-side service."""
    id: str = Field(default_factory=new_id, description="Internal service identifier")
    workspace_id: str = Field(..., description="Owning workspace (tenant boundary)")
    project_id: str = Field(..., description="Owning project")
    railway_project_id: Optional[str] = Field(None, description="Provider project identifier")
    railway_service_id: str = Field(..., description="Provider service identifier")
    name: str = Field(..., description="Human-readable service name")
    service_type: ServiceType = Field(..., description="Service kind")
    status: ServiceStatus = Field(default=ServiceStatus.PROVISIONING)
    deploy_order: int = Field(default=0, ge=0, description="Dependency tier; lower tiers deploy first")
    deployment_url: Optional[str] = Field(None, description="Generated provider URL")
    custom_domain: Optional[str] = Field(None, description="Attached custom domain")
    config: Dict[str, Any] = Field(default_factory=dict)
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class RailwayDeployment(BaseModel):
    """One attempt to bring a service to a new running version."""
    id: str = Field(default_factory=new_id, description="Internal deployment identifier")
    service_id: str = Field(..., description="Deployed service")
    workspace_id: str = Field(..., description="Owning workspace (tenant boundary)")
    project_id: str = Field(..., description="Owning project")
    railway_deployment_id: Optional[str] = Field(None, description="Provider deployment identifier")
    status: DeploymentStatus = Field(default=DeploymentStatus.QUEUED)
    deployment_url: Optional[str] = None
    commit_sha: Optional[str] = None
    branch: Optional[str] = None
    triggered_by: Optional[str] = Field(None, description="User that started the deployment")
    trigger_type: TriggerType = Field(default=TriggerType.MANUAL)
    attempts: int = Field(default=0, ge=0, description="CLI attempts consumed")
    build_duration_seconds: Optional[int] = None
    deploy_duration_seconds: Optional[int] = None
    error_message: Optional[str] = Field(None, description="Sanitized failure reason")
    rollback_from_deployment_id: Optional[str] = None
    rollback_to_deployment_id: Optional[str] = None
    meta: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)


class _CamelModel(BaseModel):
    """Models that also travel as event payloads (camelCase on the wire)."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    def to_payload(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class ServiceDeploymentResult(_CamelModel):
    """Outcome of one service inside a single or bulk deployment."""
    service_id: str
    service_name: str
    service_type: ServiceType
    status: ServiceOutcome
    deployment_id: Optional[str] = None
    deployment_url: Optional[str] = None
    error: Optional[str] = None
    attempts: int = 0
    build_duration_seconds: Optional[int] = None


class BulkDeploymentResult(_CamelModel):
    """Aggregate report of a bulk run."""
    deployment_id: str = Field(..., description="Bulk run identifier")
    workspace_id: str
    project_id: str
    status: BulkDeploymentStatus
    services: List[ServiceDeploymentResult] = Field(default_factory=list)
    started_at: datetime
    completed_at: datetime
    total_duration_seconds: int = 0


class BulkDeploymentAccepted(_CamelModel):
    """Initial state returned when a bulk run is scheduled in the background."""
    deployment_id: str
    status: str = "queued"
    service_count: int = 0
    started_at: datetime = Field(default_factory=utcnow)


class DnsInstructions(_CamelModel):
    type: str = "CNAME"
    name: str
    value: str


class DomainResult(_CamelModel):
    domain: str
    type: str = Field(..., description="'custom' or 'railway'")
    status: DomainStatus
    dns_instructions: Optional[DnsInstructions] = None


class ServiceVariable(_CamelModel):
    """A variable reference. Values are never returned."""
    name: str
    masked: bool = True


class ServiceConnectionInfo(_CamelModel):
    service_id: str
    service_name: str
    service_type: ServiceType
    connection_variables: List[ServiceVariable] = Field(default_factory=list)


class DeploymentHistoryPage(BaseModel):
    deployments: List[RailwayDeployment] = Field(default_factory=list)
    total: int = 0
    page: int = 1
    limit: int = 10


class HealthCheckResult(_CamelModel):
    connected: bool
    username: Optional[str] = None
    error: Optional[str] = None


class ServiceRepository(ABC):
    """Persistence for RailwayService records. Every read is workspace-scoped."""

    @abstractmethod
    async def get(self, service_id: str, workspace_id: str) -> Optional[RailwayService]:
        """
        Load a service owned by the workspace.

        Returns:
            The service, or None when it does not exist in that workspace
        """
        pass

    @abstractmethod
    async def list_for_project(self, project_id: str, workspace_id: str) -> List[RailwayService]:
        """List the project's services ordered by deploy_order, then name."""
        pass

    @abstractmethod
    async def save(self, service: RailwayService) -> RailwayService:
        """Insert or update a service."""
        pass


class DeploymentRepository(ABC):
    """Persistence for RailwayDeployment records. Every read is workspace-scoped."""

    @abstractmethod
    async def get(self, deployment_id: str, workspace_id: str) -> Optional[RailwayDeployment]:
        pass

    @abstractmethod
    async def save(self, deployment: RailwayDeployment) -> RailwayDeployment:
        """Insert or update a deployment."""
        pass

    @abstractmethod
    async def list_for_service(
        self,
        service_id: str,
        workspace_id: str,
        offset: int = 0,
        limit: int = 10,
        status: Optional[DeploymentStatus] = None
    ) -> Tuple[List[RailwayDeployment], int]:
        """
        Page through a service's deployments, newest first.

        Returns:
            (page of deployments, total matching count)
        """
        pass

    @abstractmethod
    async def latest_successful(self, service_id: str, workspace_id: str) -> Optional[RailwayDeployment]:
        """Most recently created successful deployment of the service."""
        pass


class AuditSink(ABC):
    """Destination for audit trail entries."""

    @abstractmethod
    async def log(
        self,
        workspace_id: str,
        user_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Dict[str, Any]
    ) -> None:
        pass


class NotificationSink(ABC):
    """Destination for user-facing notifications."""

    @abstractmethod
    async def notify(
        self,
        workspace_id: str,
        user_id: Optional[str],
        notification_type: str,
        title: str,
        message: str,
        metadata: Dict[str, Any]
    ) -> None:
        pass
