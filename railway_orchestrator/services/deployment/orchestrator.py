"""
Deployment Orchestrator

Coordinates Railway CLI operations for the services of a project:
provisioning, single and bulk deployments, redeploys, rollbacks, environment
variables, domains, log streaming and deployment history.

Bulk deployments run in dependency tiers. Services sharing a deploy_order
deploy concurrently; a tier starts only after every service in the previous
tier has settled. A failure in a tier skips every later tier.

All lookups are scoped to the caller's workspace. Every line of CLI output
and every stored error passes through the sanitizer.
"""

import asyncio
import inspect
import logging
import re
import time
from itertools import groupby
from operator import attrgetter
from typing import Any, Callable, Dict, List, Optional, Tuple

from ...config import get_settings
from ...exceptions import (
    CliCommandFailedError,
    CliExecutionError,
    CliTimeoutError,
    CommandValidationError,
    DeploymentError,
    DeploymentInProgressError,
    DeploymentNotFoundError,
    RollbackValidationError,
    ServiceNotFoundError,
    ServiceNotReadyError,
    TransientCliError,
    TransientError,
)
from ...utils.log_sanitizer import sanitize, sanitize_metadata
from ..command_validator import RailwayCommand
from ..retry_config import create_retrying, is_transient_stderr
from .base import (
    AuditAction,
    AuditSink,
    BulkDeploymentAccepted,
    BulkDeploymentResult,
    BulkDeploymentStatus,
    DeploymentHistoryPage,
    DeploymentRepository,
    DeploymentStatus,
    DnsInstructions,
    DomainResult,
    DomainStatus,
    HealthCheckResult,
    NotificationSink,
    RailwayDeployment,
    RailwayService,
    ServiceConnectionInfo,
    ServiceDeploymentResult,
    ServiceOutcome,
    ServiceRepository,
    ServiceStatus,
    ServiceType,
    ServiceVariable,
    TriggerType,
    new_id,
    utcnow,
)
from .cli_executor import CliCommandOptions, CliResult, RailwayCliExecutor
from .events import DeploymentEventPublisher, DomainAction, EnvChangeAction, LogType
from .helpers import (
    extract_deployment_url,
    parse_deployment_id_from_output,
    parse_domain_from_output,
    parse_service_id_from_output,
    parse_service_status,
    parse_variable_names,
    parse_whoami_username,
    redact_values,
    validate_database_type,
    validate_domain,
    validate_variable_name,
)
from .locks import ServiceLockRegistry
from .state_machine import DeploymentStateMachine, map_provider_status

logger = logging.getLogger(__name__)

# CLI output marking the switch from build to rollout
_DEPLOY_PHASE_PATTERN = re.compile(r"\bdeploying\b", re.IGNORECASE)

MAX_ERROR_LENGTH = 2000
MAX_LOG_LINES = 10_000
MAX_HISTORY_PAGE_SIZE = 100
MAX_COMPLETED_RUNS = 100


class DeploymentOrchestrator:
    """
    Runs deployment workflows against the Railway CLI.

    Collaborators are injected: the CLI executor, the event publisher, the
    service and deployment repositories, and optional audit and notification
    sinks. Audit, notification and event failures never fail an operation.
    """

    def __init__(
        self,
        cli_executor: RailwayCliExecutor,
        event_publisher: DeploymentEventPublisher,
        service_repository: ServiceRepository,
        deployment_repository: DeploymentRepository,
        audit_sink: Optional[AuditSink] = None,
        notification_sink: Optional[NotificationSink] = None,
        settings=None,
        lock_registry: Optional[ServiceLockRegistry] = None,
    ):
        self.settings = settings or get_settings()
        self.cli = cli_executor
        self.events = event_publisher
        self.services = service_repository
        self.deployments = deployment_repository
        self.audit_sink = audit_sink
        self.notification_sink = notification_sink
        self.locks = lock_registry or ServiceLockRegistry()
        self.state_machine = DeploymentStateMachine()

        self._background_runs: Dict[str, asyncio.Task] = {}
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._completed_runs: Dict[str, BulkDeploymentResult] = {}

    # ============================================================
    # Service lookup
    # ============================================================

    async def find_service(self, service_id: str, workspace_id: str) -> Optional[RailwayService]:
        return await self.services.get(service_id, workspace_id)

    async def list_services(self, project_id: str, workspace_id: str) -> List[RailwayService]:
        """Services of a project ordered by deploy_order, then name."""
        services = await self.services.list_for_project(project_id, workspace_id)
        return sorted(services, key=lambda s: (s.deploy_order, s.name))

    async def _require_service(self, service_id: str, workspace_id: str) -> RailwayService:
        service = await self.services.get(service_id, workspace_id)
        if service is None:
            raise ServiceNotFoundError(f"Service {service_id} not found")
        return service

    # ============================================================
    # Provisioning
    # ============================================================

    async def provision_database(
        self,
        token: str,
        *,
        workspace_id: str,
        project_id: str,
        name: str,
        database_type: str,
        user_id: Optional[str] = None,
        railway_project_id: Optional[str] = None,
        service_type: ServiceType = ServiceType.DATABASE,
    ) -> RailwayService:
        """
        Provision a managed database with `railway add --database <type>`.

        The new service is recorded at deploy_order 0 so it deploys before
        anything that depends on it.

        Raises:
            CommandValidationError: Unsupported database type or empty name
            CliCommandFailedError: The CLI reported a failure
        """
        database_type = validate_database_type(database_type)
        if not name or not name.strip():
            raise CommandValidationError("Service name is required")
        service_type = ServiceType(service_type)

        logger.info(f"Provisioning {database_type} database '{name}' for project {project_id}")

        result = await self.cli.execute(CliCommandOptions(
            command=RailwayCommand.ADD,
            args=["--database", database_type],
            flags=["-y"],
            railway_token=token,
        ))

        if not result.success:
            error = result.stderr or "Unknown error"
            await self.events.publish_service_provisioned(
                workspace_id, project_id, None, name, service_type, "failed"
            )
            raise CliCommandFailedError(
                f"Failed to provision {database_type} database: {error}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

        service = RailwayService(
            workspace_id=workspace_id,
            project_id=project_id,
            railway_project_id=railway_project_id,
            railway_service_id=parse_service_id_from_output(result.stdout),
            name=name.strip(),
            service_type=service_type,
            status=ServiceStatus.PROVISIONING,
            deploy_order=0,
            config={"databaseType": database_type},
            created_by=user_id,
        )
        await self.services.save(service)
        await self.events.publish_service_provisioned(
            workspace_id, project_id, service.id, service.name, service.service_type, "provisioning"
        )

        service.status = ServiceStatus.ACTIVE
        await self.services.save(service)
        await self.events.publish_service_provisioned(
            workspace_id, project_id, service.id, service.name, service.service_type, "active"
        )

        await self._audit(
            workspace_id, user_id, AuditAction.SERVICE_PROVISIONED, "railway_service", service.id,
            {
                "serviceName": service.name,
                "serviceType": service.service_type.value,
                "databaseType": database_type,
                "railwayServiceId": service.railway_service_id,
            },
        )
        await self._notify(
            workspace_id, user_id, "railway_service_provisioned",
            "Database provisioned",
            f"{database_type} database \"{service.name}\" is ready",
            {"serviceId": service.id, "projectId": project_id},
        )

        logger.info(f"Provisioned service {service.id} ({service.railway_service_id})")
        return service

    async def wait_for_service_ready(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
        timeout_ms: Optional[int] = None,
        poll_interval_ms: Optional[int] = None,
    ) -> RailwayService:
        """
        Poll `railway status --json` until the service reports active.

        A provider status that can no longer become active (failed, crashed,
        removed) ends the wait immediately.

        Raises:
            ServiceNotReadyError: The service was not active before the deadline
                or its deployment settled in a failed state
        """
        service = await self._require_service(service_id, workspace_id)
        timeout = (timeout_ms or self.settings.service_ready_timeout_ms) / 1000
        interval = (poll_interval_ms or self.settings.service_ready_poll_interval_ms) / 1000
        deadline = time.monotonic() + timeout

        while True:
            try:
                result = await self.cli.execute(CliCommandOptions(
                    command=RailwayCommand.STATUS,
                    flags=["--json"],
                    service=service.railway_service_id,
                    railway_token=token,
                ))
                provider_status = parse_service_status(result.stdout) if result.success else None
                mapped = map_provider_status(provider_status)
                if provider_status == "active" or mapped == DeploymentStatus.SUCCESS:
                    logger.info(f"Service {service.id} is now active")
                    if service.status != ServiceStatus.ACTIVE:
                        service.status = ServiceStatus.ACTIVE
                        await self.services.save(service)
                    return service
            except TransientError as e:
                mapped = None
                logger.warning(f"Status poll for service {service.id} failed: {e}")

            if mapped is not None and self.state_machine.is_terminal(mapped):
                service.status = ServiceStatus.FAILED
                await self.services.save(service)
                raise ServiceNotReadyError(
                    f"Service {service.id} reported status {mapped.value} and will not become active"
                )

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                raise ServiceNotReadyError(
                    f"Service {service.id} did not become active within {int(timeout * 1000)}ms"
                )
            await asyncio.sleep(min(interval, remaining))

    async def get_service_connection_info(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
    ) -> ServiceConnectionInfo:
        """Connection variable names of a service. Values are never returned."""
        service = await self._require_service(service_id, workspace_id)
        return ServiceConnectionInfo(
            service_id=service.id,
            service_name=service.name,
            service_type=service.service_type,
            connection_variables=await self._list_variables(token, service),
        )

    # ============================================================
    # Deployments
    # ============================================================

    async def deploy_service(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
        environment: Optional[str] = None,
        trigger_type: TriggerType = TriggerType.MANUAL,
    ) -> RailwayDeployment:
        """
        Build and deploy one service with `railway up`.

        Transient CLI failures are retried up to the attempt ceiling. The
        returned deployment is settled (success or failed).

        Raises:
            ServiceNotFoundError: No such service in the workspace
            DeploymentInProgressError: The service is already deploying
        """
        service = await self._require_service(service_id, workspace_id)
        return await self._run_single(
            token, service,
            workspace_id=workspace_id,
            user_id=user_id,
            command=RailwayCommand.UP,
            trigger_type=trigger_type,
            environment=environment,
            audit_action=AuditAction.SERVICE_DEPLOYED,
        )

    async def redeploy_service(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
    ) -> RailwayDeployment:
        """Redeploy the latest build of a service without rebuilding."""
        service = await self._require_service(service_id, workspace_id)
        return await self._run_single(
            token, service,
            workspace_id=workspace_id,
            user_id=user_id,
            command=RailwayCommand.REDEPLOY,
            trigger_type=TriggerType.REDEPLOY,
            flags=["-y"],
            audit_action=AuditAction.SERVICE_REDEPLOYED,
        )

    async def restart_service(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
    ) -> None:
        """Restart the running deployment of a service. No deployment record is created."""
        service = await self._require_service(service_id, workspace_id)
        result = await self.cli.execute(CliCommandOptions(
            command=RailwayCommand.RESTART,
            service=service.railway_service_id,
            flags=["-y"],
            railway_token=token,
        ))
        self._ensure_success(result, f"restart service {service.name}")

        await self._audit(
            workspace_id, user_id, AuditAction.SERVICE_RESTARTED, "railway_service", service.id,
            {"serviceName": service.name},
        )

    async def deploy_all_services(
        self,
        token: str,
        project_id: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
        environment: Optional[str] = None,
        service_ids: Optional[List[str]] = None,
        deployment_id: Optional[str] = None,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> BulkDeploymentResult:
        """
        Deploy every service of a project (or the given subset) tier by tier.

        Overall status is success when every service succeeded, failed when
        none did, and partial_failure otherwise. Setting cancel_event stops the
        run before the next service or tier starts; running CLI processes are
        left to finish.

        Raises:
            ServiceNotFoundError: A requested service id is not part of the project
        """
        services = await self._select_services(project_id, workspace_id, service_ids)
        run_id = deployment_id or new_id()
        started_at = utcnow()
        started = time.monotonic()

        logger.info(
            f"Starting bulk deployment {run_id} of {len(services)} services for project {project_id}"
        )

        await self._audit(
            workspace_id, user_id, AuditAction.BULK_DEPLOY_STARTED, "railway_project", project_id,
            {
                "deploymentId": run_id,
                "serviceCount": len(services),
                "serviceNames": [s.name for s in services],
            },
        )
        await self.events.publish_deployment_started(
            workspace_id,
            project_id,
            run_id,
            [
                {"serviceId": s.id, "serviceName": s.name, "serviceType": s.service_type.value}
                for s in services
            ],
            user_id,
            environment or "production",
        )

        results: Dict[str, ServiceDeploymentResult] = {}
        skip_reason: Optional[str] = None

        for deploy_order, tier_iter in groupby(services, key=attrgetter("deploy_order")):
            tier = list(tier_iter)

            if skip_reason is None and cancel_event is not None and cancel_event.is_set():
                skip_reason = "Skipped: bulk deployment was cancelled"

            if skip_reason is not None:
                for service in tier:
                    results[service.id] = await self._skip_service(service, workspace_id, run_id, skip_reason)
                continue

            logger.info(f"Bulk deployment {run_id}: deploying tier {deploy_order} ({len(tier)} services)")

            tier_results = await asyncio.gather(
                *(
                    self._deploy_tier_member(
                        token, service,
                        workspace_id=workspace_id,
                        user_id=user_id,
                        environment=environment,
                        run_id=run_id,
                        cancel_event=cancel_event,
                    )
                    for service in tier
                ),
                return_exceptions=True,
            )

            for service, outcome in zip(tier, tier_results):
                if isinstance(outcome, BaseException):
                    if not isinstance(outcome, Exception):
                        raise outcome
                    logger.error(f"Bulk deployment {run_id}: service {service.id} errored: {sanitize(str(outcome))}")
                    outcome = await self._fail_service(service, workspace_id, run_id, str(outcome))
                results[service.id] = outcome

            if any(r.status == ServiceOutcome.FAILED for r in (results[s.id] for s in tier)):
                skip_reason = f"Skipped: a service in deploy tier {deploy_order} failed"

        ordered = [results[s.id] for s in services]
        succeeded = sum(1 for r in ordered if r.status == ServiceOutcome.SUCCESS)
        if succeeded == len(ordered):
            status = BulkDeploymentStatus.SUCCESS
        elif succeeded == 0:
            status = BulkDeploymentStatus.FAILED
        else:
            status = BulkDeploymentStatus.PARTIAL_FAILURE

        total_duration = int(time.monotonic() - started)
        report = BulkDeploymentResult(
            deployment_id=run_id,
            workspace_id=workspace_id,
            project_id=project_id,
            status=status,
            services=ordered,
            started_at=started_at,
            completed_at=utcnow(),
            total_duration_seconds=total_duration,
        )

        await self.events.publish_deployment_completed(
            workspace_id, project_id, run_id, status, ordered, total_duration
        )
        self.events.release_run(run_id)

        await self._audit(
            workspace_id, user_id, AuditAction.BULK_DEPLOY_COMPLETED, "railway_project", project_id,
            {
                "deploymentId": run_id,
                "status": status.value,
                "succeeded": succeeded,
                "failed": sum(1 for r in ordered if r.status == ServiceOutcome.FAILED),
                "skipped": sum(1 for r in ordered if r.status == ServiceOutcome.SKIPPED),
                "totalDurationSeconds": total_duration,
            },
        )

        logger.info(f"Bulk deployment {run_id} finished with status {status.value} in {total_duration}s")
        return report

    async def start_bulk_deployment(
        self,
        token: str,
        project_id: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
        environment: Optional[str] = None,
        service_ids: Optional[List[str]] = None,
    ) -> BulkDeploymentAccepted:
        """
        Schedule a bulk deployment in the background and return immediately.

        Progress is reported through deployment events. Use
        cancel_bulk_deployment to stop the run and wait_for_bulk_deployment
        to collect the final report.

        Raises:
            DeploymentInProgressError: A selected service is already deploying
        """
        services = await self._select_services(project_id, workspace_id, service_ids)
        locked = [s.id for s in services if self.locks.is_locked(s.id)]
        if locked:
            raise DeploymentInProgressError(
                f"A deployment is already in progress for services: {', '.join(locked)}"
            )
        run_id = new_id()
        cancel_event = asyncio.Event()

        task = asyncio.create_task(self.deploy_all_services(
            token,
            project_id,
            workspace_id=workspace_id,
            user_id=user_id,
            environment=environment,
            service_ids=[s.id for s in services],
            deployment_id=run_id,
            cancel_event=cancel_event,
        ))
        self._background_runs[run_id] = task
        self._cancel_events[run_id] = cancel_event
        task.add_done_callback(lambda t: self._on_background_run_done(run_id, t))

        logger.info(f"Scheduled bulk deployment {run_id} for project {project_id}")
        return BulkDeploymentAccepted(deployment_id=run_id, service_count=len(services))

    def cancel_bulk_deployment(self, deployment_id: str) -> bool:
        """Request cooperative cancellation. Returns False for unknown or finished runs."""
        cancel_event = self._cancel_events.get(deployment_id)
        if cancel_event is None:
            return False
        cancel_event.set()
        logger.info(f"Cancellation requested for bulk deployment {deployment_id}")
        return True

    async def wait_for_bulk_deployment(self, deployment_id: str) -> Optional[BulkDeploymentResult]:
        """
        Final report of a background run, waiting for it if still running.

        Reports of the most recent finished runs are retained. Returns None
        for unknown runs and runs that ended without a report.
        """
        report = self._completed_runs.get(deployment_id)
        if report is not None:
            return report
        task = self._background_runs.get(deployment_id)
        if task is None:
            return None
        return await task

    def _on_background_run_done(self, run_id: str, task: asyncio.Task) -> None:
        self._background_runs.pop(run_id, None)
        self._cancel_events.pop(run_id, None)
        if task.cancelled():
            logger.warning(f"Bulk deployment {run_id} task was cancelled")
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Bulk deployment {run_id} failed: {sanitize(str(exc))}")
            return
        self._completed_runs[run_id] = task.result()
        while len(self._completed_runs) > MAX_COMPLETED_RUNS:
            self._completed_runs.pop(next(iter(self._completed_runs)))

    async def rollback_deployment(
        self,
        token: str,
        service_id: str,
        target_deployment_id: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
    ) -> RailwayDeployment:
        """
        Roll a service back to one of its earlier successful deployments.

        A new deployment record (trigger_type rollback) is created and run;
        the target record is left untouched.

        Raises:
            DeploymentNotFoundError: Target not found in the workspace
            RollbackValidationError: Target belongs to another service, was not
                successful, or has no provider deployment id
        """
        service = await self._require_service(service_id, workspace_id)
        target = await self.deployments.get(target_deployment_id, workspace_id)
        if target is None:
            raise DeploymentNotFoundError(f"Deployment {target_deployment_id} not found")
        if target.service_id != service.id:
            raise RollbackValidationError(
                f"Deployment {target.id} does not belong to service {service.id}"
            )
        if target.status != DeploymentStatus.SUCCESS:
            raise RollbackValidationError(
                f"Cannot roll back to deployment {target.id} with status {target.status.value}"
            )
        if not target.railway_deployment_id:
            raise RollbackValidationError(f"Deployment {target.id} has no Railway deployment id")

        current = await self.deployments.latest_successful(service.id, workspace_id)
        rollback_from = current.id if current else None

        logger.info(f"Rolling back service {service.id} from {rollback_from} to {target.id}")

        deployment = await self._run_single(
            token, service,
            workspace_id=workspace_id,
            user_id=user_id,
            command=RailwayCommand.REDEPLOY,
            trigger_type=TriggerType.ROLLBACK,
            flags=["--deployment", target.railway_deployment_id, "-y"],
            meta={
                "rollbackFromDeploymentId": rollback_from,
                "rollbackToDeploymentId": target.id,
                "rollbackToRailwayDeploymentId": target.railway_deployment_id,
            },
            rollback_from=rollback_from,
            rollback_to=target.id,
            audit_action=AuditAction.DEPLOYMENT_ROLLED_BACK,
        )

        await self._notify(
            workspace_id, user_id, "railway_deployment_rolled_back",
            "Rollback succeeded" if deployment.status == DeploymentStatus.SUCCESS else "Rollback failed",
            f"Service \"{service.name}\" rollback to deployment {target.id} finished "
            f"with status {deployment.status.value}",
            {"serviceId": service.id, "deploymentId": deployment.id, "targetDeploymentId": target.id},
        )
        return deployment

    async def get_deployment_history(
        self,
        service_id: str,
        *,
        workspace_id: str,
        page: int = 1,
        limit: int = 10,
        status: Optional[DeploymentStatus] = None,
    ) -> DeploymentHistoryPage:
        """Deployments of a service, newest first."""
        service = await self._require_service(service_id, workspace_id)
        page = max(1, page)
        limit = max(1, min(limit, MAX_HISTORY_PAGE_SIZE))

        deployments, total = await self.deployments.list_for_service(
            service.id, workspace_id, offset=(page - 1) * limit, limit=limit, status=status
        )
        return DeploymentHistoryPage(deployments=deployments, total=total, page=page, limit=limit)

    async def get_deployment(self, deployment_id: str, *, workspace_id: str) -> RailwayDeployment:
        deployment = await self.deployments.get(deployment_id, workspace_id)
        if deployment is None:
            raise DeploymentNotFoundError(f"Deployment {deployment_id} not found")
        return deployment

    # ============================================================
    # Environment variables
    # ============================================================

    async def list_service_variables(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
    ) -> List[ServiceVariable]:
        service = await self._require_service(service_id, workspace_id)
        return await self._list_variables(token, service)

    async def set_service_variables(
        self,
        token: str,
        service_id: str,
        variables: Dict[str, str],
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
        auto_redeploy: bool = False,
    ) -> Optional[RailwayDeployment]:
        """
        Set one or more variables on a service.

        Values go to the CLI only. Events, audit entries, notifications and
        error messages carry variable names.

        Returns:
            The redeployment when auto_redeploy is set, otherwise None
        """
        if not variables:
            raise CommandValidationError("At least one variable is required")
        names = [validate_variable_name(name) for name in variables]
        service = await self._require_service(service_id, workspace_id)
        secret_values = [str(value) for value in variables.values()]

        for name, value in variables.items():
            result = await self.cli.execute(CliCommandOptions(
                command=RailwayCommand.VARIABLE,
                args=["set", f"{name}={value}"],
                service=service.railway_service_id,
                railway_token=token,
            ))
            if not result.success:
                error = redact_values(result.stderr or "Unknown error", secret_values)
                raise CliCommandFailedError(
                    f"Failed to set variable {name}: {error}",
                    exit_code=result.exit_code,
                    stderr=error,
                )

        action = EnvChangeAction.SET if len(names) == 1 else EnvChangeAction.BULK_UPDATE
        await self.events.publish_env_changed(
            workspace_id, service.project_id, service.id, service.name, action, names, auto_redeploy
        )
        await self._audit(
            workspace_id, user_id, AuditAction.ENV_VAR_SET, "railway_service", service.id,
            {"variableNames": names, "variableCount": len(names), "autoRedeploy": auto_redeploy},
        )
        await self._notify(
            workspace_id, user_id, "railway_env_changed",
            "Environment variables updated",
            f"{len(names)} variable(s) updated on service \"{service.name}\"",
            {"serviceId": service.id, "variableNames": names},
        )

        if auto_redeploy:
            return await self.deploy_service(
                token, service.id, workspace_id=workspace_id, user_id=user_id
            )
        return None

    async def delete_service_variable(
        self,
        token: str,
        service_id: str,
        variable_name: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
    ) -> None:
        validate_variable_name(variable_name)
        service = await self._require_service(service_id, workspace_id)

        result = await self.cli.execute(CliCommandOptions(
            command=RailwayCommand.VARIABLE,
            args=["delete", variable_name],
            service=service.railway_service_id,
            railway_token=token,
        ))
        self._ensure_success(result, f"delete variable {variable_name}")

        await self.events.publish_env_changed(
            workspace_id, service.project_id, service.id, service.name,
            EnvChangeAction.DELETE, [variable_name], False
        )
        await self._audit(
            workspace_id, user_id, AuditAction.ENV_VAR_DELETED, "railway_service", service.id,
            {"variableNames": [variable_name]},
        )
        await self._notify(
            workspace_id, user_id, "railway_env_changed",
            "Environment variable deleted",
            f"Variable {variable_name} deleted from service \"{service.name}\"",
            {"serviceId": service.id, "variableNames": [variable_name]},
        )

    # ============================================================
    # Domains
    # ============================================================

    async def add_domain(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
        custom_domain: Optional[str] = None,
    ) -> DomainResult:
        """
        Attach a custom domain, or generate a Railway domain when none is given.

        Custom domains come back pending_dns with the CNAME record to create.
        """
        if custom_domain is not None:
            custom_domain = validate_domain(custom_domain)
        service = await self._require_service(service_id, workspace_id)

        result = await self.cli.execute(CliCommandOptions(
            command=RailwayCommand.DOMAIN,
            args=[custom_domain] if custom_domain else [],
            service=service.railway_service_id,
            railway_token=token,
        ))
        self._ensure_success(result, "add domain")

        domain = parse_domain_from_output(result.stdout, custom_domain)
        if custom_domain:
            service.custom_domain = domain
            domain_result = DomainResult(
                domain=domain,
                type="custom",
                status=DomainStatus.PENDING_DNS,
                dns_instructions=DnsInstructions(
                    type="CNAME",
                    name=domain,
                    value=f"{service.railway_service_id}.up.railway.app",
                ),
            )
        else:
            service.deployment_url = domain
            domain_result = DomainResult(domain=domain, type="railway", status=DomainStatus.ACTIVE)
        await self.services.save(service)

        await self.events.publish_domain_updated(
            workspace_id, service.project_id, service.id, service.name,
            domain, DomainAction.ADDED, domain_result.status
        )
        await self._audit(
            workspace_id, user_id, AuditAction.DOMAIN_ADDED, "railway_service", service.id,
            {"domain": domain, "domainType": domain_result.type},
        )
        return domain_result

    async def remove_domain(
        self,
        token: str,
        service_id: str,
        domain: str,
        *,
        workspace_id: str,
        user_id: Optional[str] = None,
    ) -> None:
        domain = validate_domain(domain)
        service = await self._require_service(service_id, workspace_id)

        result = await self.cli.execute(CliCommandOptions(
            command=RailwayCommand.DOMAIN,
            args=["remove", domain],
            service=service.railway_service_id,
            flags=["-y"],
            railway_token=token,
        ))
        self._ensure_success(result, f"remove domain {domain}")

        if service.custom_domain == domain:
            service.custom_domain = None
        if service.deployment_url == domain:
            service.deployment_url = None
        await self.services.save(service)

        # Status reflects the removal itself, which is live once the CLI returns
        await self.events.publish_domain_updated(
            workspace_id, service.project_id, service.id, service.name,
            domain, DomainAction.REMOVED, DomainStatus.ACTIVE
        )
        await self._audit(
            workspace_id, user_id, AuditAction.DOMAIN_REMOVED, "railway_service", service.id,
            {"domain": domain},
        )

    # ============================================================
    # Logs and health
    # ============================================================

    async def stream_logs(
        self,
        token: str,
        service_id: str,
        *,
        workspace_id: str,
        build: bool = False,
        lines: Optional[int] = None,
        on_log: Optional[Callable[[str], Any]] = None,
        run_id: Optional[str] = None,
    ) -> List[str]:
        """
        Fetch build or runtime logs of a service.

        Every sanitized line is published as a deployment:log event and
        handed to on_log (sync or async) as it arrives.

        Returns:
            The sanitized lines in arrival order
        """
        if lines is not None and not 1 <= lines <= MAX_LOG_LINES:
            raise CommandValidationError(f"lines must be between 1 and {MAX_LOG_LINES}")
        service = await self._require_service(service_id, workspace_id)

        flags: List[str] = []
        if build:
            flags.append("--build")
        if lines is not None:
            flags.extend(["-n", str(lines)])

        log_type = LogType.BUILD if build else LogType.RUNTIME
        collected: List[str] = []

        async def on_output(line: str, stream: str) -> None:
            collected.append(line)
            await self.events.publish_deployment_log(
                workspace_id, service.project_id, service.id, service.name,
                line, stream, log_type, run_id=run_id
            )
            if on_log is not None:
                delivered = on_log(line)
                if inspect.isawaitable(delivered):
                    await delivered

        result = await self.cli.execute(CliCommandOptions(
            command=RailwayCommand.LOGS,
            service=service.railway_service_id,
            flags=flags,
            railway_token=token,
            on_output=on_output,
        ))
        self._ensure_success(result, f"fetch logs for service {service.name}")
        return collected

    async def check_health(self, token: str) -> HealthCheckResult:
        """Verify the token with `railway whoami`. Never raises for CLI failures."""
        try:
            result = await self.cli.execute(CliCommandOptions(
                command=RailwayCommand.WHOAMI,
                railway_token=token,
            ))
        except CliTimeoutError as e:
            return HealthCheckResult(connected=False, error=f"Health check timed out after {e.duration_ms}ms")
        except (CliExecutionError, CommandValidationError) as e:
            return HealthCheckResult(connected=False, error=str(e))

        if not result.success:
            return HealthCheckResult(
                connected=False,
                error=result.stderr or "Not logged in or invalid token",
            )
        return HealthCheckResult(connected=True, username=parse_whoami_username(result.stdout))

    # ============================================================
    # Internals
    # ============================================================

    async def _select_services(
        self,
        project_id: str,
        workspace_id: str,
        service_ids: Optional[List[str]],
    ) -> List[RailwayService]:
        services = await self.list_services(project_id, workspace_id)
        if not service_ids:
            return services

        by_id = {s.id: s for s in services}
        missing = [sid for sid in service_ids if sid not in by_id]
        if missing:
            raise ServiceNotFoundError(f"Services not found in project {project_id}: {', '.join(missing)}")
        wanted = set(service_ids)
        return [s for s in services if s.id in wanted]

    async def _run_single(
        self,
        token: str,
        service: RailwayService,
        *,
        workspace_id: str,
        user_id: Optional[str],
        command: RailwayCommand,
        trigger_type: TriggerType,
        audit_action: AuditAction,
        environment: Optional[str] = None,
        flags: Optional[List[str]] = None,
        meta: Optional[Dict[str, Any]] = None,
        rollback_from: Optional[str] = None,
        rollback_to: Optional[str] = None,
    ) -> RailwayDeployment:
        """Deploy one service under its lock and publish the completion event."""
        with self.locks.hold(service.id):
            started = time.monotonic()
            outcome, deployment = await self._run_deployment(
                token, service,
                workspace_id=workspace_id,
                user_id=user_id,
                command=command,
                trigger_type=trigger_type,
                audit_action=audit_action,
                environment=environment,
                flags=flags,
                meta=meta,
                rollback_from=rollback_from,
                rollback_to=rollback_to,
            )

        await self.events.publish_deployment_completed(
            workspace_id,
            service.project_id,
            deployment.id,
            outcome.status,
            [outcome],
            int(time.monotonic() - started),
        )
        self.events.release_run(deployment.id)
        return deployment

    async def _deploy_tier_member(
        self,
        token: str,
        service: RailwayService,
        *,
        workspace_id: str,
        user_id: Optional[str],
        environment: Optional[str],
        run_id: str,
        cancel_event: Optional[asyncio.Event],
    ) -> ServiceDeploymentResult:
        if cancel_event is not None and cancel_event.is_set():
            return await self._skip_service(
                service, workspace_id, run_id, "Skipped: bulk deployment was cancelled"
            )

        try:
            with self.locks.hold(service.id):
                outcome, _ = await self._run_deployment(
                    token, service,
                    workspace_id=workspace_id,
                    user_id=user_id,
                    command=RailwayCommand.UP,
                    trigger_type=TriggerType.MANUAL,
                    audit_action=AuditAction.SERVICE_DEPLOYED,
                    environment=environment,
                    run_id=run_id,
                    meta={"bulkDeploymentId": run_id},
                )
                return outcome
        except DeploymentInProgressError as e:
            return await self._fail_service(service, workspace_id, run_id, str(e))

    async def _run_deployment(
        self,
        token: str,
        service: RailwayService,
        *,
        workspace_id: str,
        user_id: Optional[str],
        command: RailwayCommand,
        trigger_type: TriggerType,
        audit_action: AuditAction,
        environment: Optional[str] = None,
        flags: Optional[List[str]] = None,
        run_id: Optional[str] = None,
        meta: Optional[Dict[str, Any]] = None,
        rollback_from: Optional[str] = None,
        rollback_to: Optional[str] = None,
    ) -> Tuple[ServiceDeploymentResult, RailwayDeployment]:
        """
        Create a deployment record and drive it to success or failed.

        The caller holds the service lock. CLI failures settle the deployment
        as failed instead of raising.
        """
        project_id = service.project_id
        deployment = RailwayDeployment(
            service_id=service.id,
            workspace_id=workspace_id,
            project_id=project_id,
            triggered_by=user_id,
            trigger_type=trigger_type,
            meta=dict(meta or {}),
            rollback_from_deployment_id=rollback_from,
            rollback_to_deployment_id=rollback_to,
        )
        run_id = run_id or deployment.id
        await self.deployments.save(deployment)

        self.state_machine.transition(deployment, DeploymentStatus.BUILDING)
        await self.deployments.save(deployment)
        previous_service_status = service.status
        service.status = ServiceStatus.DEPLOYING
        await self.services.save(service)
        await self.events.publish_deployment_status(
            workspace_id, project_id, service.id, service.name,
            DeploymentStatus.BUILDING, progress=10, deployment_id=deployment.id
        )

        log_type = LogType.BUILD if command == RailwayCommand.UP else LogType.DEPLOY

        async def on_output(line: str, stream: str) -> None:
            await self.events.publish_deployment_log(
                workspace_id, project_id, service.id, service.name,
                line, stream, log_type, run_id=run_id
            )
            if deployment.status == DeploymentStatus.BUILDING and _DEPLOY_PHASE_PATTERN.search(line):
                self.state_machine.transition(deployment, DeploymentStatus.DEPLOYING)
                await self.events.publish_deployment_status(
                    workspace_id, project_id, service.id, service.name,
                    DeploymentStatus.DEPLOYING, progress=60, deployment_id=deployment.id
                )

        options = CliCommandOptions(
            command=command,
            railway_token=token,
            service=service.railway_service_id,
            environment=environment,
            flags=list(flags or []),
            on_output=on_output,
        )

        started = time.monotonic()
        result: Optional[CliResult] = None
        error: Optional[str] = None
        try:
            result = await self._execute_with_retry(options, deployment)
            if not result.success:
                error = result.stderr or f"Railway CLI exited with code {result.exit_code}"
        except TransientError as e:
            error = f"{e} (after {deployment.attempts} attempts)"
        except DeploymentError as e:
            error = str(e)
        except asyncio.CancelledError:
            await self._settle_cancelled(deployment, service, previous_service_status)
            raise
        except Exception as e:
            logger.error(f"Unexpected error in deployment {deployment.id} of service {service.id}: {sanitize(str(e))}")
            error = f"Unexpected error: {e}"
        duration = int(time.monotonic() - started)

        if error is None:
            deployment.deployment_url = extract_deployment_url(result.stdout)
            deployment.railway_deployment_id = parse_deployment_id_from_output(result.stdout)
            if command == RailwayCommand.UP:
                deployment.build_duration_seconds = duration
            else:
                deployment.deploy_duration_seconds = duration
            self.state_machine.transition(deployment, DeploymentStatus.SUCCESS)
            service.status = ServiceStatus.ACTIVE
            if deployment.deployment_url:
                service.deployment_url = deployment.deployment_url
            outcome_status = ServiceOutcome.SUCCESS
        else:
            error = sanitize(error)[:MAX_ERROR_LENGTH]
            deployment.error_message = error
            self.state_machine.transition(deployment, DeploymentStatus.FAILED)
            service.status = ServiceStatus.FAILED
            outcome_status = ServiceOutcome.FAILED
            logger.warning(f"Deployment {deployment.id} of service {service.id} failed: {error}")

        await self.deployments.save(deployment)
        await self.services.save(service)

        await self.events.publish_deployment_status(
            workspace_id, project_id, service.id, service.name,
            deployment.status,
            deployment_url=deployment.deployment_url,
            error=deployment.error_message,
            progress=100 if error is None else None,
            deployment_id=deployment.id,
        )
        await self._audit(
            workspace_id, user_id, audit_action, "railway_deployment", deployment.id,
            {
                "serviceId": service.id,
                "serviceName": service.name,
                "status": deployment.status.value,
                "triggerType": deployment.trigger_type.value,
                "attempts": deployment.attempts,
                "error": deployment.error_message,
                **deployment.meta,
            },
        )

        outcome = ServiceDeploymentResult(
            service_id=service.id,
            service_name=service.name,
            service_type=service.service_type,
            status=outcome_status,
            deployment_id=deployment.id,
            deployment_url=deployment.deployment_url,
            error=deployment.error_message,
            attempts=deployment.attempts,
            build_duration_seconds=deployment.build_duration_seconds,
        )
        return outcome, deployment

    async def _execute_with_retry(self, options: CliCommandOptions, deployment: RailwayDeployment) -> CliResult:
        """
        Run a CLI command, retrying transient failures.

        A non-zero exit whose stderr looks like a network failure is raised as
        TransientCliError so it is retried; other non-zero exits are returned.
        """
        retrying = create_retrying(
            max_attempts=self.settings.deployment_max_attempts,
            min_wait=self.settings.deployment_retry_min_wait,
            max_wait=self.settings.deployment_retry_max_wait,
        )
        async for attempt in retrying:
            with attempt:
                deployment.attempts += 1
                result = await self.cli.execute(options)
                if not result.success and is_transient_stderr(result.stderr):
                    raise TransientCliError(result.command, result.exit_code, result.stderr)
        return result

    async def _settle_cancelled(
        self,
        deployment: RailwayDeployment,
        service: RailwayService,
        previous_service_status: ServiceStatus,
    ) -> None:
        """Move an interrupted deployment to cancelled and restore the service status."""
        deployment.error_message = "Deployment was cancelled"
        if self.state_machine.can_transition(deployment.status, DeploymentStatus.CANCELLED):
            self.state_machine.transition(deployment, DeploymentStatus.CANCELLED)
        service.status = previous_service_status
        await self.deployments.save(deployment)
        await self.services.save(service)
        await self.events.publish_deployment_status(
            deployment.workspace_id, deployment.project_id, service.id, service.name,
            deployment.status, error=deployment.error_message, deployment_id=deployment.id
        )
        logger.warning(f"Deployment {deployment.id} of service {service.id} was cancelled")

    async def _skip_service(
        self,
        service: RailwayService,
        workspace_id: str,
        run_id: str,
        reason: str,
    ) -> ServiceDeploymentResult:
        await self.events.publish_deployment_status(
            workspace_id, service.project_id, service.id, service.name,
            ServiceOutcome.SKIPPED, error=reason, deployment_id=run_id
        )
        return ServiceDeploymentResult(
            service_id=service.id,
            service_name=service.name,
            service_type=service.service_type,
            status=ServiceOutcome.SKIPPED,
            error=reason,
        )

    async def _fail_service(
        self,
        service: RailwayService,
        workspace_id: str,
        run_id: str,
        error: str,
    ) -> ServiceDeploymentResult:
        error = sanitize(error)[:MAX_ERROR_LENGTH]
        await self.events.publish_deployment_status(
            workspace_id, service.project_id, service.id, service.name,
            DeploymentStatus.FAILED, error=error, deployment_id=run_id
        )
        return ServiceDeploymentResult(
            service_id=service.id,
            service_name=service.name,
            service_type=service.service_type,
            status=ServiceOutcome.FAILED,
            error=error,
        )

    async def _list_variables(self, token: str, service: RailwayService) -> List[ServiceVariable]:
        result = await self.cli.execute(CliCommandOptions(
            command=RailwayCommand.VARIABLE,
            args=["list"],
            flags=["--json"],
            service=service.railway_service_id,
            railway_token=token,
        ))
        if not result.success:
            logger.warning(f"Could not list variables for service {service.id}: {result.stderr}")
            return []
        return [ServiceVariable(name=name) for name in parse_variable_names(result.stdout)]

    def _ensure_success(self, result: CliResult, action: str) -> None:
        if not result.success:
            raise CliCommandFailedError(
                f"Failed to {action}: {result.stderr or 'Unknown error'}",
                exit_code=result.exit_code,
                stderr=result.stderr,
            )

    async def _audit(
        self,
        workspace_id: str,
        user_id: Optional[str],
        action: AuditAction,
        resource_type: str,
        resource_id: str,
        metadata: Dict[str, Any],
    ) -> None:
        if self.audit_sink is None:
            return
        try:
            await self.audit_sink.log(
                workspace_id, user_id, action.value, resource_type, resource_id,
                sanitize_metadata(metadata),
            )
        except Exception as e:
            logger.error(f"Failed to write audit entry {action.value} for {resource_id}: {sanitize(str(e))}")

    async def _notify(
        self,
        workspace_id: str,
        user_id: Optional[str],
        notification_type: str,
        title: str,
        message: str,
        metadata: Dict[str, Any],
    ) -> None:
        if self.notification_sink is None:
            return
        try:
            await self.notification_sink.notify(
                workspace_id, user_id, notification_type, title, sanitize(message),
                sanitize_metadata(metadata),
            )
        except Exception as e:
            logger.error(f"Failed to send {notification_type} notification: {sanitize(str(e))}")
