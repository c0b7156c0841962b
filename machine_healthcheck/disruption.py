import logging
from typing import Optional

from .errors import BudgetExceededError, ConflictError
from .k8s_client import ClusterClient
from .matching import selector_matches
from .models import Machine, MachineDisruptionBudget

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS = 5


class DisruptionBudgetCoordinator:
    """Consumes one allowed disruption from the budget covering a machine.

    The read-check-decrement-write sequence relies on the budget's resource
    version: a concurrent writer makes the update fail with ConflictError and
    the whole sequence is retried against a fresh read.
    """

    def __init__(self, client: ClusterClient, max_attempts: int = DEFAULT_MAX_ATTEMPTS):
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.client = client
        self.max_attempts = max_attempts

    def get_budget(self, machine: Machine) -> Optional[MachineDisruptionBudget]:
        """The single budget whose selector covers the machine, or None"""
        budgets = []
        for mdb in self.client.list_disruption_budgets(machine.namespace):
            try:
                if selector_matches(mdb.selector, machine.labels):
                    budgets.append(mdb)
            except ValueError as e:
                logger.warning(f"machinedisruptionbudget {mdb.key} has an invalid selector: {e}")

        if len(budgets) > 1:
            names = ", ".join(sorted(mdb.name for mdb in budgets))
            raise BudgetExceededError(
                f"machine {machine.key} is covered by more than one disruption budget: {names}"
            )
        return budgets[0] if budgets else None

    def try_consume(self, machine: Machine) -> None:
        """Decrement the allowed disruptions for the machine's group.

        Raises BudgetExceededError without writing when nothing is allowed, and
        ConflictError once every attempt lost an update race.
        """
        for attempt in range(1, self.max_attempts + 1):
            mdb = self.get_budget(machine)
            if mdb is None:
                logger.debug(f"No disruption budget covers machine {machine.key}")
                return

            if mdb.disruptions_allowed <= 0:
                raise BudgetExceededError(
                    f"machine {machine.key} disruption is not allowed by "
                    f"machinedisruptionbudget {mdb.key}: no disruptions left"
                )
            mdb.disruptions_allowed -= 1
            try:
                self.client.update_disruption_budget_status(mdb)
            except ConflictError:
                logger.debug(
                    f"Conflict decrementing machinedisruptionbudget {mdb.key} "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                continue

            logger.info(
                f"Consumed disruption for machine {machine.key} from machinedisruptionbudget "
                f"{mdb.key}, {mdb.disruptions_allowed} left"
            )
            return

        raise ConflictError("machinedisruptionbudget for machine", machine.key)

    def release(self, machine: Machine) -> None:
        """Give back a disruption consumed for a remediation that did not happen"""
        for attempt in range(1, self.max_attempts + 1):
            mdb = self.get_budget(machine)
            if mdb is None:
                return

            mdb.disruptions_allowed += 1
            try:
                self.client.update_disruption_budget_status(mdb)
            except ConflictError:
                logger.debug(
                    f"Conflict releasing machinedisruptionbudget {mdb.key} "
                    f"(attempt {attempt}/{self.max_attempts})"
                )
                continue

            logger.info(
                f"Released disruption for machine {machine.key} to machinedisruptionbudget "
                f"{mdb.key}, {mdb.disruptions_allowed} left"
            )
            return

        raise ConflictError("machinedisruptionbudget for machine", machine.key)
