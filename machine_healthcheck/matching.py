import logging
from typing import Dict, Iterable, Optional, Set

from .k8s_client import ClusterClient
from .models import LabelSelector, LabelSelectorRequirement, Machine, MachineHealthCheck

logger = logging.getLogger(__name__)

OPERATOR_IN = "In"
OPERATOR_NOT_IN = "NotIn"
OPERATOR_EXISTS = "Exists"
OPERATOR_DOES_NOT_EXIST = "DoesNotExist"


class LabelMatcher:
    """Evaluates a label selector against a label set"""

    def __init__(self, match_labels: Dict[str, str], requirements: Iterable[LabelSelectorRequirement]):
        self.match_labels = dict(match_labels)
        self.requirements = list(requirements)

    @classmethod
    def from_selector(cls, selector: LabelSelector) -> "LabelMatcher":
        """Validate the selector; raises ValueError when it cannot be evaluated"""
        for req in selector.match_expressions:
            if not req.key:
                raise ValueError("selector requirement has an empty key")
            if req.operator in (OPERATOR_IN, OPERATOR_NOT_IN):
                if not req.values:
                    raise ValueError(f"values must be non-empty for operator {req.operator} on {req.key}")
            elif req.operator in (OPERATOR_EXISTS, OPERATOR_DOES_NOT_EXIST):
                if req.values:
                    raise ValueError(f"values must be empty for operator {req.operator} on {req.key}")
            else:
                raise ValueError(f"{req.operator!r} is not a valid label selector operator")
        return cls(selector.match_labels, selector.match_expressions)

    def empty(self) -> bool:
        return not self.match_labels and not self.requirements

    def matches(self, labels: Dict[str, str]) -> bool:
        for key, value in self.match_labels.items():
            if labels.get(key) != value:
                return False
        for req in self.requirements:
            if req.operator == OPERATOR_IN:
                if req.key not in labels or labels[req.key] not in req.values:
                    return False
            elif req.operator == OPERATOR_NOT_IN:
                if req.key in labels and labels[req.key] in req.values:
                    return False
            elif req.operator == OPERATOR_EXISTS:
                if req.key not in labels:
                    return False
            elif req.operator == OPERATOR_DOES_NOT_EXIST:
                if req.key in labels:
                    return False
        return True


def selector_matches(selector: LabelSelector, labels: Dict[str, str]) -> bool:
    """Empty selectors match nothing; malformed selectors raise ValueError"""
    matcher = LabelMatcher.from_selector(selector)
    return not matcher.empty() and matcher.matches(labels)


def has_matching_labels(health_check: MachineHealthCheck, machine: Machine) -> bool:
    try:
        matcher = LabelMatcher.from_selector(health_check.selector)
    except ValueError as e:
        logger.warning(f"unable to convert selector of machinehealthcheck {health_check.name}: {e}")
        return False

    # A nil or empty selector must match nothing, not everything.
    if matcher.empty():
        logger.debug(f"{health_check.name} machineHealthCheck has empty selector")
        return False

    if not matcher.matches(machine.labels):
        logger.debug(f"{machine.name} machine has mismatched labels")
        return False
    return True


def first_matching_health_check(
    health_checks: Iterable[MachineHealthCheck], machine: Machine
) -> Optional[MachineHealthCheck]:
    """Return the matching health check with the lowest name"""
    for hc in sorted(health_checks, key=lambda hc: hc.name):
        if has_matching_labels(hc, machine):
            return hc
    return None


def node_names_for_health_check(client: ClusterClient, health_check: MachineHealthCheck) -> Set[str]:
    """Names of the nodes backing the machines covered by the health check"""
    node_names = set()
    for machine in client.list_machines(health_check.namespace):
        if not has_matching_labels(health_check, machine):
            continue
        if machine.node_ref:
            node_names.add(machine.node_ref)
        else:
            logger.debug(f"machine {machine.key} has no node yet, skipping")
    return node_names
