"""
Deployment event publisher.

Publishes deployment lifecycle events as JSON to a single pub/sub channel.
Every payload carries workspaceId so subscribers can route events to the
right workspace audience.

Publishing is fire-and-forget: a broker failure is logged and never raised
into the deployment that produced the event.
"""

import json
import logging
import threading
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional, Union

from pydantic import BaseModel, Field

from ...utils.log_sanitizer import sanitize

logger = logging.getLogger(__name__)

DEPLOYMENT_EVENTS_CHANNEL = "deployment:events"


class DeploymentEventType(str, Enum):
    STARTED = "deployment:started"
    STATUS = "deployment:status"
    LOG = "deployment:log"
    COMPLETED = "deployment:completed"
    ENV_CHANGED = "deployment:env_changed"
    SERVICE_PROVISIONED = "deployment:service_provisioned"
    DOMAIN_UPDATED = "deployment:domain_updated"


class LogStream(str, Enum):
    STDOUT = "stdout"
    STDERR = "stderr"


class LogType(str, Enum):
    BUILD = "build"
    DEPLOY = "deploy"
    RUNTIME = "runtime"


class EnvChangeAction(str, Enum):
    SET = "set"
    DELETE = "delete"
    BULK_UPDATE = "bulk_update"


class DomainAction(str, Enum):
    ADDED = "added"
    REMOVED = "removed"
    VERIFIED = "verified"


class DeploymentEvent(BaseModel):
    """Wire envelope: {"type": ..., "payload": {...}}."""
    type: DeploymentEventType
    payload: Dict[str, Any] = Field(default_factory=dict)


def _value(item: Any) -> Any:
    return item.value if isinstance(item, Enum) else item


def _serialize_items(items: Optional[List[Any]]) -> List[Dict[str, Any]]:
    """Accept plain dicts or camelCase-aware models."""
    serialized = []
    for item in items or []:
        if isinstance(item, BaseModel):
            to_payload = getattr(item, "to_payload", None)
            serialized.append(to_payload() if to_payload else item.model_dump(mode="json"))
        else:
            serialized.append(dict(item))
    return serialized


def iso_timestamp(moment: Optional[datetime] = None) -> str:
    """UTC ISO-8601 with millisecond precision and a Z suffix."""
    moment = moment or datetime.now(timezone.utc)
    return moment.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


class DeploymentEventPublisher:
    """
    Publishes deployment events to the shared events channel.

    The publish primitive is any object exposing
    ``async publish(channel, message)``, e.g. a redis.asyncio client.

    Log events carry a sequence number. Without a run_id the sequence comes
    from the instance counter (1, 2, 3, ... for the life of the publisher).
    With a run_id each run has its own counter starting at 1.
    """

    def __init__(self, redis_client, channel: str = DEPLOYMENT_EVENTS_CHANNEL):
        self._redis = redis_client
        self.channel = channel
        self._sequence_counter = 0
        self._run_counters: Dict[str, int] = {}
        self._counter_lock = threading.Lock()

    async def publish(self, workspace_id: str, event: Union[DeploymentEvent, Dict[str, Any]]) -> None:
        """
        Publish one event.

        The payload's workspaceId is always set to ``workspace_id``. Never raises.
        """
        try:
            if not isinstance(event, DeploymentEvent):
                event = DeploymentEvent(**event)

            payload = dict(event.payload)
            payload["workspaceId"] = workspace_id
            message = json.dumps({"type": event.type.value, "payload": payload}, default=str)

            await self._redis.publish(self.channel, message)
        except Exception as e:
            event_type = getattr(event, "type", None) or (event.get("type") if isinstance(event, dict) else None)
            logger.error(
                f"Failed to publish {_value(event_type)} event for workspace {workspace_id}: {sanitize(str(e))}"
            )

    async def publish_deployment_started(
        self,
        workspace_id: str,
        project_id: str,
        deployment_id: str,
        services: List[Any],
        triggered_by: Optional[str],
        environment: str = "production"
    ) -> None:
        await self.publish(workspace_id, DeploymentEvent(
            type=DeploymentEventType.STARTED,
            payload={
                "projectId": project_id,
                "deploymentId": deployment_id,
                "services": _serialize_items(services),
                "triggeredBy": triggered_by,
                "environment": environment,
                "timestamp": iso_timestamp(),
            },
        ))

    async def publish_deployment_status(
        self,
        workspace_id: str,
        project_id: str,
        service_id: str,
        service_name: str,
        status: Union[str, Enum],
        deployment_url: Optional[str] = None,
        error: Optional[str] = None,
        progress: Optional[float] = None,
        deployment_id: Optional[str] = None
    ) -> None:
        """Progress is clamped to 0..100; error text is sanitized."""
        payload: Dict[str, Any] = {
            "projectId": project_id,
            "serviceId": service_id,
            "serviceName": service_name,
            "status": _value(status),
            "timestamp": iso_timestamp(),
        }
        if deployment_id is not None:
            payload["deploymentId"] = deployment_id
        if deployment_url is not None:
            payload["deploymentUrl"] = deployment_url
        if error is not None:
            payload["error"] = sanitize(error)
        if progress is not None:
            payload["progress"] = max(0, min(100, progress))

        await self.publish(workspace_id, DeploymentEvent(type=DeploymentEventType.STATUS, payload=payload))

    async def publish_deployment_completed(
        self,
        workspace_id: str,
        project_id: str,
        deployment_id: str,
        status: Union[str, Enum],
        services: List[Any],
        total_duration_seconds: int
    ) -> None:
        await self.publish(workspace_id, DeploymentEvent(
            type=DeploymentEventType.COMPLETED,
            payload={
                "projectId": project_id,
                "deploymentId": deployment_id,
                "status": _value(status),
                "services": _serialize_items(services),
                "totalDurationSeconds": total_duration_seconds,
                "timestamp": iso_timestamp(),
            },
        ))

    async def publish_deployment_log(
        self,
        workspace_id: str,
        project_id: str,
        service_id: str,
        service_name: str,
        line: str,
        stream: Union[str, LogStream] = LogStream.STDOUT,
        log_type: Union[str, LogType] = LogType.BUILD,
        run_id: Optional[str] = None
    ) -> None:
        await self.publish(workspace_id, DeploymentEvent(
            type=DeploymentEventType.LOG,
            payload={
                "projectId": project_id,
                "serviceId": service_id,
                "serviceName": service_name,
                "line": self.sanitize_log_line(line),
                "stream": _value(stream),
                "logType": _value(log_type),
                "sequence": self._next_sequence(run_id),
                "timestamp": iso_timestamp(),
            },
        ))

    async def publish_env_changed(
        self,
        workspace_id: str,
        project_id: str,
        service_id: str,
        service_name: str,
        action: Union[str, EnvChangeAction],
        variable_names: List[str],
        auto_redeploy: bool = False
    ) -> None:
        """Only variable names travel on the wire. Values are never accepted here."""
        await self.publish(workspace_id, DeploymentEvent(
            type=DeploymentEventType.ENV_CHANGED,
            payload={
                "projectId": project_id,
                "serviceId": service_id,
                "serviceName": service_name,
                "action": _value(action),
                "variableNames": list(variable_names),
                "autoRedeploy": auto_redeploy,
                "timestamp": iso_timestamp(),
            },
        ))

    async def publish_service_provisioned(
        self,
        workspace_id: str,
        project_id: str,
        service_id: str,
        service_name: str,
        service_type: Union[str, Enum],
        status: str
    ) -> None:
        await self.publish(workspace_id, DeploymentEvent(
            type=DeploymentEventType.SERVICE_PROVISIONED,
            payload={
                "projectId": project_id,
                "serviceId": service_id,
                "serviceName": service_name,
                "serviceType": _value(service_type),
                "status": _value(status),
                "timestamp": iso_timestamp(),
            },
        ))

    async def publish_domain_updated(
        self,
        workspace_id: str,
        project_id: str,
        service_id: str,
        service_name: str,
        domain: str,
        action: Union[str, DomainAction],
        status: Union[str, Enum]
    ) -> None:
        await self.publish(workspace_id, DeploymentEvent(
            type=DeploymentEventType.DOMAIN_UPDATED,
            payload={
                "projectId": project_id,
                "serviceId": service_id,
                "serviceName": service_name,
                "domain": domain,
                "action": _value(action),
                "status": _value(status),
                "timestamp": iso_timestamp(),
            },
        ))

    @staticmethod
    def sanitize_log_line(line: str) -> str:
        return sanitize(line)

    def get_sequence_counter(self) -> int:
        """Current value of the instance counter (0 before the first log event)."""
        with self._counter_lock:
            return self._sequence_counter

    def release_run(self, run_id: str) -> None:
        """Forget the per-run counter once a run has finished."""
        with self._counter_lock:
            self._run_counters.pop(run_id, None)

    def _next_sequence(self, run_id: Optional[str] = None) -> int:
        with self._counter_lock:
            self._sequence_counter += 1
            if run_id is None:
                return self._sequence_counter
            sequence = self._run_counters.get(run_id, 0) + 1
            self._run_counters[run_id] = sequence
            return sequence


# Global publisher instance
_event_publisher: Optional[DeploymentEventPublisher] = None


def get_event_publisher() -> DeploymentEventPublisher:
    """Get the global publisher bound to the shared Redis client and configured channel."""
    global _event_publisher
    if _event_publisher is None:
        from ...config import get_settings
        from ...redis_client import get_redis_client

        _event_publisher = DeploymentEventPublisher(
            get_redis_client(),
            channel=get_settings().deployment_events_channel,
        )
    return _event_publisher
