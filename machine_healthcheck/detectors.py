"""
Node health evaluation

A node is unhealthy for a configured condition while its current status equals
the configured status. The unhealthy duration is measured from the condition's
last transition time against the wall clock at evaluation time, so repeated
evaluations converge on the timeout.
"""

from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Iterator, List, Optional, Union

from .models import Node, NodeCondition, UnhealthyCondition

# Added to every re-check delay so the next evaluation lands past the timeout.
REQUEUE_GUARD = timedelta(seconds=1)


@dataclass
class ConditionState:
    """One configured condition that the node currently matches"""
    condition: UnhealthyCondition
    node_condition: NodeCondition
    elapsed: timedelta

    @property
    def actionable(self) -> bool:
        return self.elapsed >= self.condition.timeout

    @property
    def remaining(self) -> timedelta:
        return self.condition.timeout - self.elapsed


@dataclass
class Healthy:
    pass


@dataclass
class ActionableUnhealthy:
    state: ConditionState

    @property
    def condition(self) -> UnhealthyCondition:
        return self.state.condition


@dataclass
class PendingUnhealthy:
    min_wait: timedelta
    states: List[ConditionState]


EvaluationResult = Union[Healthy, ActionableUnhealthy, PendingUnhealthy]


def detect_unhealthy_conditions(
    node: Node,
    unhealthy_conditions: List[UnhealthyCondition],
    now: Optional[datetime] = None,
) -> Iterator[ConditionState]:
    """Yield every configured condition the node is currently in, in configured order"""
    if now is None:
        now = datetime.now(timezone.utc)

    for c in unhealthy_conditions:
        node_condition = node.get_condition(c.name)
        # skip when the current node condition differs from the configured one
        if node_condition is None or node_condition.status != c.status:
            continue
        if node_condition.last_transition_time is None:
            continue
        yield ConditionState(
            condition=c,
            node_condition=node_condition,
            elapsed=now - node_condition.last_transition_time,
        )


def evaluate_node_health(
    node: Node,
    unhealthy_conditions: List[UnhealthyCondition],
    now: Optional[datetime] = None,
) -> EvaluationResult:
    pending = []
    for state in detect_unhealthy_conditions(node, unhealthy_conditions, now):
        if state.actionable:
            return ActionableUnhealthy(state)
        pending.append(state)

    if not pending:
        return Healthy()

    min_wait = min(state.remaining for state in pending) + REQUEUE_GUARD
    return PendingUnhealthy(min_wait=min_wait, states=pending)
