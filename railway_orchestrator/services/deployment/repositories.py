"""
In-memory implementations of the persistence, audit and notification interfaces.

Used for local runs and tests. Records are kept per process only.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

from .base import (
    AuditSink,
    DeploymentRepository,
    DeploymentStatus,
    NotificationSink,
    RailwayDeployment,
    RailwayService,
    ServiceRepository,
)

logger = logging.getLogger(__name__)


class InMemoryServiceRepository(ServiceRepository):

    def __init__(self):
        self._services: Dict[str, RailwayService] = {}
        self._lock = asyncio.Lock()

    async def get(self, service_id: str, workspace_id: str) -> Optional[RailwayService]:
        service = self._services.get(service_id)
        if service is None or service.workspace_id != workspace_id:
            return None
        return service

    async def list_for_project(self, project_id: str, workspace_id: str) -> List[RailwayService]:
        services = [
            s for s in self._services.values()
            if s.project_id == project_id and s.workspace_id == workspace_id
        ]
        return sorted(services, key=lambda s: (s.deploy_order, s.name))

    async def save(self, service: RailwayService) -> RailwayService:
        async with self._lock:
            service.updated_at = datetime.now(timezone.utc)
            self._services[service.id] = service
        return service


class InMemoryDeploymentRepository(DeploymentRepository):

    def __init__(self):
        self._deployments: Dict[str, RailwayDeployment] = {}
        self._lock = asyncio.Lock()

    async def get(self, deployment_id: str, workspace_id: str) -> Optional[RailwayDeployment]:
        deployment = self._deployments.get(deployment_id)
        if deployment is None or deployment.workspace_id != workspace_id:
            return None
        return deployment

    async def save(self, deployment: RailwayDeployment) -> RailwayDeployment:
        async with self._lock:
            deployment.updated_at = datetime.now(timezone.utc)
            self._deployments[deployment.id] = deployment
        return deployment

    def _for_service(self, service_id: str, workspace_id: str) -> List[RailwayDeployment]:
        deployments = [
            d for d in self._deployments.values()
            if d.service_id == service_id and d.workspace_id == workspace_id
        ]
        # Newest first; dict order breaks ties between records created in the same instant
        ordered = list(reversed(deployments))
        return sorted(ordered, key=lambda d: d.created_at, reverse=True)

    async def list_for_service(
        self,
        service_id: str,
        workspace_id: str,
        offset: int = 0,
        limit: int = 10,
        status: Optional[DeploymentStatus] = None
    ) -> Tuple[List[RailwayDeployment], int]:
        deployments = self._for_service(service_id, workspace_id)
        if status is not None:
            deployments = [d for d in deployments if d.status == DeploymentStatus(status)]
        return deployments[offset:offset + limit], len(deployments)

    async def latest_successful(self, service_id: str, workspace_id: str) -> Optional[RailwayDeployment]:
        for deployment in self._for_service(service_id, workspace_id):
            if deployment.status == DeploymentStatus.SUCCESS:
                return deployment
        return None


class InMemoryAuditSink(AuditSink):
    """Collects audit entries in a list."""

    def __init__(self):
        self.entries: List[Dict[str, Any]] = []

    async def log(
        self,
        workspace_id: str,
        user_id: Optional[str],
        action: str,
        resource_type: str,
        resource_id: str,
        metadata: Dict[str, Any]
    ) -> None:
        self.entries.append({
            "workspace_id": workspace_id,
            "user_id": user_id,
            "action": action,
            "resource_type": resource_type,
            "resource_id": resource_id,
            "metadata": metadata,
            "created_at": datetime.now(timezone.utc).isoformat(),
        })
        logger.debug(f"Audit {action} on {resource_type} {resource_id} (workspace {workspace_id})")


class InMemoryNotificationSink(NotificationSink):
    """Collects notifications in a list."""

    def __init__(self):
        self.notifications: List[Dict[str, Any]] = []

    async def notify(
        self,
        workspace_id: str,
        user_id: Optional[str],
        notification_type: str,
        title: str,
        message: str,
        metadata: Dict[str, Any]
    ) -> None:
        self.notifications.append({
            "workspace_id": workspace_id,
            "user_id": user_id,
            "type": notification_type,
            "title": title,
            "message": message,
            "metadata": metadata,
        })
