import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional, Set, Tuple

from .conditions import default_unhealthy_conditions, load_unhealthy_conditions
from .detectors import ActionableUnhealthy, Healthy, evaluate_node_health
from .disruption import DEFAULT_MAX_ATTEMPTS, DisruptionBudgetCoordinator
from .errors import (
    ConfigParseError,
    MalformedReferenceError,
    MissingNodeReferenceError,
    NotFoundError,
)
from .k8s_client import ClusterClient
from .matching import first_matching_health_check, node_names_for_health_check
from .models import MACHINE_ANNOTATION_KEY, MachineHealthCheck
from .remediators import DEFAULT_BUDGET_COOLDOWN, RemediationOutcome, Remediator

logger = logging.getLogger(__name__)


@dataclass
class ReconcileResult:
    """requeue_after is None when no re-check is needed"""
    requeue_after: Optional[timedelta] = None
    outcome: Optional[RemediationOutcome] = None


def split_machine_key(key: str, default_namespace: str) -> Tuple[str, str]:
    """Split a namespace/name key; a bare name resolves in default_namespace"""
    parts = key.split("/")
    if len(parts) == 1 and parts[0]:
        return default_namespace, parts[0]
    if len(parts) == 2 and all(parts):
        return parts[0], parts[1]
    raise MalformedReferenceError(f"unexpected machine key format: {key!r}")


def _min_delay(a: Optional[timedelta], b: timedelta) -> timedelta:
    return b if a is None else min(a, b)


class MachineHealthCheckReconciler:
    """Reconciles a node against the machine health check covering its machine"""

    def __init__(
        self,
        client: ClusterClient,
        namespace: str,
        budget_cooldown: timedelta = DEFAULT_BUDGET_COOLDOWN,
        conflict_retry_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ):
        self.client = client
        self.namespace = namespace
        self.budget_cooldown = budget_cooldown
        self.remediator = Remediator(
            client,
            DisruptionBudgetCoordinator(client, max_attempts=conflict_retry_attempts),
            budget_cooldown=budget_cooldown,
        )

    def reconcile(self, node_name: str) -> ReconcileResult:
        """Evaluate one node and remediate it if it has been unhealthy for too long.

        Returns the delay after which the node must be looked at again, if any.
        Retryable failures are raised; objects that no longer exist end the
        reconciliation quietly.
        """
        logger.info(f"Reconciling MachineHealthCheck triggered by node {node_name}")

        try:
            node = self.client.get_node(node_name)
        except NotFoundError:
            logger.debug(f"Node {node_name} not found, nothing to do")
            return ReconcileResult()

        machine_key = node.annotations.get(MACHINE_ANNOTATION_KEY)
        if machine_key is None:
            logger.warning(f"No machine annotation for node {node.name}")
            return ReconcileResult()

        logger.info(f"Node {node.name} is annotated with machine {machine_key}")
        namespace, machine_name = split_machine_key(machine_key, self.namespace)
        try:
            machine = self.client.get_machine(namespace, machine_name)
        except NotFoundError:
            logger.warning(f"machine {machine_key} not found")
            return ReconcileResult()

        health_check = first_matching_health_check(self.client.list_health_checks(namespace), machine)
        if health_check is None:
            logger.info(f"Machine {machine.name} has no MachineHealthCheck associated")
            return ReconcileResult()
        logger.debug(f"Machine {machine.key} has a matching machineHealthCheck: {health_check.name}")

        if not machine.node_ref:
            raise MissingNodeReferenceError(f"node NodeRef not found in machine {machine.key}")

        if machine.node_ref != node.name:
            # the annotation is stale, the machine is now backed by another node
            logger.info(
                f"Node {node.name} is annotated with machine {machine.key} "
                f"whose nodeRef is {machine.node_ref}, evaluating {machine.node_ref} instead"
            )
            try:
                node = self.client.get_node(machine.node_ref)
            except NotFoundError:
                logger.debug(f"Node {machine.node_ref} referenced by machine {machine.key} not found")
                return ReconcileResult()

        requeue_cap = None
        try:
            unhealthy_conditions = load_unhealthy_conditions(self.client, self.namespace)
        except ConfigParseError as e:
            logger.error(f"Invalid unhealthy conditions configuration, using defaults: {e}")
            unhealthy_conditions = default_unhealthy_conditions()
            requeue_cap = self.budget_cooldown

        result = evaluate_node_health(node, unhealthy_conditions)

        if isinstance(result, Healthy):
            logger.info(f"No remediation action was taken. Machine {machine.name} with node {node.name} is healthy")
            return ReconcileResult(requeue_after=requeue_cap)

        if isinstance(result, ActionableUnhealthy):
            outcome = self.remediator.remediate(
                machine, node, health_check.remediation_strategy, result.condition
            )
            requeue_after = outcome.requeue_after
            if requeue_cap is not None:
                requeue_after = _min_delay(requeue_after, requeue_cap)
            return ReconcileResult(requeue_after=requeue_after, outcome=outcome)

        for state in result.states:
            logger.warning(
                f"Machine {machine.name} has unhealthy node {node.name} with the condition "
                f"{state.condition.name} and the timeout {state.condition.timeout} for {state.elapsed}. Requeuing..."
            )
        requeue_after = result.min_wait
        if requeue_cap is not None:
            requeue_after = _min_delay(requeue_after, requeue_cap)
        return ReconcileResult(requeue_after=requeue_after)

    def map_health_check_to_nodes(self, health_check: MachineHealthCheck) -> Set[str]:
        """Nodes to re-evaluate after a machine health check was created or changed"""
        logger.debug("Watched machineHealthCheck event, finding nodes to reconcile")
        try:
            current = self.client.get_health_check(health_check.namespace, health_check.name)
        except NotFoundError:
            logger.debug(f"No-op: mhc {health_check.namespace}/{health_check.name} no longer exists")
            return set()
        except Exception as e:
            logger.error(f"No-op: Unable to retrieve mhc {health_check.namespace}/{health_check.name} from store: {e}")
            return set()

        if current.being_deleted:
            logger.debug(f"No-op: mhc {current.name!r} is being deleted")
            return set()

        try:
            return node_names_for_health_check(self.client, current)
        except Exception as e:
            logger.error(f"No-op: failed to get nodes for mhc {current.name!r}: {e}")
            return set()
