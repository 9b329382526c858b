"""
Deployment state machine

Manages Deployment status transitions and lifecycle timestamps.

State Flow:
    queued -> building -> deploying -> success -> rolled_back
                      |            |-> failed | crashed | cancelled
                      |-> success | failed | crashed | cancelled
    queued -> failed | cancelled

Terminal states (failed, crashed, cancelled, rolled_back) never change again.

Usage:
    sm = DeploymentStateMachine()

    if sm.can_transition(deployment.status, DeploymentStatus.BUILDING):
        sm.transition(deployment, DeploymentStatus.BUILDING)
"""

from datetime import datetime, timezone
from typing import Optional, Union
import logging

from ...exceptions import InvalidStateTransitionError
from .base import DeploymentStatus

logger = logging.getLogger(__name__)


class DeploymentStateMachine:
    """
    State machine for deployment lifecycle management.

    Enforces valid state transitions and stamps started_at / completed_at.
    """

    # Valid state transitions (from_state -> to_state)
    VALID_TRANSITIONS = {
        DeploymentStatus.QUEUED: {
            DeploymentStatus.BUILDING,
            DeploymentStatus.FAILED,
            DeploymentStatus.CANCELLED,
        },
        DeploymentStatus.BUILDING: {
            DeploymentStatus.DEPLOYING,
            DeploymentStatus.SUCCESS,
            DeploymentStatus.FAILED,
            DeploymentStatus.CRASHED,
            DeploymentStatus.CANCELLED,
        },
        DeploymentStatus.DEPLOYING: {
            DeploymentStatus.SUCCESS,
            DeploymentStatus.FAILED,
            DeploymentStatus.CRASHED,
            DeploymentStatus.CANCELLED,
        },
        DeploymentStatus.SUCCESS: {DeploymentStatus.ROLLED_BACK},
        DeploymentStatus.FAILED: set(),  # Terminal state
        DeploymentStatus.CRASHED: set(),  # Terminal state
        DeploymentStatus.CANCELLED: set(),  # Terminal state
        DeploymentStatus.ROLLED_BACK: set(),  # Terminal state
    }

    # States after which the deployment is settled
    SETTLED_STATES = {
        DeploymentStatus.SUCCESS,
        DeploymentStatus.FAILED,
        DeploymentStatus.CRASHED,
        DeploymentStatus.CANCELLED,
        DeploymentStatus.ROLLED_BACK,
    }

    def can_transition(
        self,
        from_state: Union[str, DeploymentStatus],
        to_state: Union[str, DeploymentStatus]
    ) -> bool:
        """
        Check if a state transition is valid.

        Examples:
            >>> sm = DeploymentStateMachine()
            >>> sm.can_transition('queued', 'building')
            True
            >>> sm.can_transition('failed', 'success')
            False  # Terminal state
        """
        try:
            from_state = DeploymentStatus(from_state)
            to_state = DeploymentStatus(to_state)
        except ValueError:
            logger.warning(f"Unknown deployment state in transition {from_state} -> {to_state}")
            return False

        return to_state in self.VALID_TRANSITIONS.get(from_state, set())

    def transition(self, deployment, to_state: Union[str, DeploymentStatus]) -> None:
        """
        Transition deployment to a new state with validation.

        Side Effects:
            - Updates deployment.status and deployment.updated_at
            - Sets started_at when leaving the queue
            - Sets completed_at when the deployment settles

        Raises:
            InvalidStateTransitionError: If the transition is not allowed
        """
        from_state = deployment.status

        if not self.can_transition(from_state, to_state):
            logger.error(
                f"Invalid state transition for deployment {deployment.id}: "
                f"{from_state} -> {to_state}"
            )
            raise InvalidStateTransitionError(
                f"Deployment {deployment.id} cannot move from {DeploymentStatus(from_state).value} "
                f"to {DeploymentStatus(to_state).value}"
            )

        to_state = DeploymentStatus(to_state)
        deployment.status = to_state

        utcnow = datetime.now(timezone.utc)
        deployment.updated_at = utcnow

        if to_state in {DeploymentStatus.BUILDING, DeploymentStatus.DEPLOYING} and not deployment.started_at:
            deployment.started_at = utcnow

        if to_state in self.SETTLED_STATES and not deployment.completed_at:
            deployment.completed_at = utcnow

        logger.info(f"Deployment {deployment.id} transitioned: {from_state.value} -> {to_state.value}")

    def is_terminal(self, state: Union[str, DeploymentStatus]) -> bool:
        return not self.VALID_TRANSITIONS.get(DeploymentStatus(state))


# Provider status strings (as printed by `railway status --json`)
_PROVIDER_STATUS_MAP = {
    "QUEUED": DeploymentStatus.QUEUED,
    "WAITING": DeploymentStatus.QUEUED,
    "INITIALIZING": DeploymentStatus.BUILDING,
    "BUILDING": DeploymentStatus.BUILDING,
    "DEPLOYING": DeploymentStatus.DEPLOYING,
    "SUCCESS": DeploymentStatus.SUCCESS,
    "FAILED": DeploymentStatus.FAILED,
    "CRASHED": DeploymentStatus.CRASHED,
    "REMOVED": DeploymentStatus.CANCELLED,
    "CANCELLED": DeploymentStatus.CANCELLED,
    "CANCELED": DeploymentStatus.CANCELLED,
    "SKIPPED": DeploymentStatus.CANCELLED,
}


def map_provider_status(provider_status: Optional[str]) -> Optional[DeploymentStatus]:
    """
    Map a provider deployment status onto DeploymentStatus.

    Returns None for unknown or empty values.
    """
    if not provider_status:
        return None
    return _PROVIDER_STATUS_MAP.get(provider_status.strip().upper())
