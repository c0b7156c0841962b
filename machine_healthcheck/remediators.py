import logging
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Optional

from .disruption import DisruptionBudgetCoordinator
from .errors import BudgetExceededError, NotFoundError
from .k8s_client import ClusterClient
from .models import (
    MACHINE_REBOOT_ANNOTATION_KEY,
    Machine,
    Node,
    RemediationStrategy,
    UnhealthyCondition,
)

logger = logging.getLogger(__name__)

DEFAULT_BUDGET_COOLDOWN = timedelta(minutes=1)


class RemediationAction(Enum):
    NO_OWNER = "no_owner"
    BUDGET_EXCEEDED = "budget_exceeded"
    SKIPPED_CONTROL_PLANE = "skipped_control_plane"
    ALREADY_REBOOTING = "already_rebooting"
    REBOOT = "reboot"
    DELETE = "delete"


@dataclass
class RemediationOutcome:
    action: RemediationAction
    requeue_after: Optional[timedelta] = None


class Remediator:
    """Remediates a machine whose node has been unhealthy for too long"""

    def __init__(
        self,
        client: ClusterClient,
        budget: DisruptionBudgetCoordinator,
        budget_cooldown: timedelta = DEFAULT_BUDGET_COOLDOWN,
    ):
        self.client = client
        self.budget = budget
        self.budget_cooldown = budget_cooldown

    def remediate(
        self,
        machine: Machine,
        node: Node,
        strategy: Optional[RemediationStrategy],
        condition: Optional[UnhealthyCondition] = None,
    ) -> RemediationOutcome:
        """Run one remediation attempt.

        Write conflicts propagate as ConflictError so the node is re-queued;
        objects deleted underneath us count as remediated. A failed reboot or
        delete returns its consumed disruption to the budget.
        """
        reason = f" ({condition.name}={condition.status} for more than {condition.timeout})" if condition else ""
        logger.info(f"Initialising remediation logic for machine {machine.name}{reason}")

        if machine.owning_machine_set() is None:
            logger.info(f"Machine {machine.name} has no machineSet controller owner, skipping remediation")
            return RemediationOutcome(RemediationAction.NO_OWNER)

        reboot = strategy == RemediationStrategy.REBOOT
        # outcomes that need no disruption are settled before touching the budget
        if reboot and MACHINE_REBOOT_ANNOTATION_KEY in node.annotations:
            logger.debug(f"Node {node.name} already has the reboot annotation")
            return RemediationOutcome(RemediationAction.ALREADY_REBOOTING)
        if not reboot and node.is_control_plane():
            logger.info(f"The machine {machine.name} is a master node, skipping remediation")
            return RemediationOutcome(RemediationAction.SKIPPED_CONTROL_PLANE)

        try:
            self.budget.try_consume(machine)
        except BudgetExceededError as e:
            # restricted by the machine disruption budget, try again after the cooldown
            logger.warning(f"{e}, requeuing after {self.budget_cooldown}")
            return RemediationOutcome(RemediationAction.BUDGET_EXCEEDED, requeue_after=self.budget_cooldown)

        try:
            if reboot:
                return self.reboot(machine, node)
            return self.delete(machine)
        except Exception:
            # the disruption did not happen, hand the unit back before surfacing the error
            try:
                self.budget.release(machine)
            except Exception as release_error:
                logger.error(f"Failed to release disruption for machine {machine.key}: {release_error}")
            raise

    def reboot(self, machine: Machine, node: Node) -> RemediationOutcome:
        """Ask the node reboot agent to reboot the node by annotating it"""
        if MACHINE_REBOOT_ANNOTATION_KEY in node.annotations:
            logger.debug(f"Node {node.name} already has the reboot annotation")
            return RemediationOutcome(RemediationAction.ALREADY_REBOOTING)

        logger.info(f"Machine {machine.name} has been unhealthy for too long, adding reboot annotation")
        node.annotations[MACHINE_REBOOT_ANNOTATION_KEY] = ""
        try:
            self.client.update_node(node)
        except NotFoundError:
            logger.warning(f"Node {node.name} disappeared before the reboot annotation was written")
        return RemediationOutcome(RemediationAction.REBOOT)

    def delete(self, machine: Machine) -> RemediationOutcome:
        """Delete the machine; its machineSet creates the replacement"""
        logger.info(f"Machine {machine.name} has been unhealthy for too long, deleting")
        try:
            self.client.delete_machine(machine)
        except NotFoundError:
            logger.info(f"Machine {machine.key} is already gone")
        return RemediationOutcome(RemediationAction.DELETE)
