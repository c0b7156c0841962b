"""
Data model for machines, nodes, health checks and disruption budgets

Nodes come from the typed CoreV1Api models; machines, health checks and
disruption budgets are custom resources and arrive as plain dicts.
"""

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

MACHINE_ANNOTATION_KEY = "machine.openshift.io/machine"
MACHINE_REBOOT_ANNOTATION_KEY = "healthchecking.openshift.io/machine-remediation-reboot"
OWNER_CONTROLLER_KIND = "MachineSet"

CONTROL_PLANE_LABELS = [
    "node-role.kubernetes.io/master",
    "node-role.kubernetes.io/control-plane",
]


class RemediationStrategy(Enum):
    REBOOT = "reboot"

    @classmethod
    def parse(cls, value: Optional[str]) -> Optional["RemediationStrategy"]:
        """Unknown or empty strategies fall back to deletion (None)"""
        if not value:
            return None
        try:
            return cls(value)
        except ValueError:
            return None


def _parse_timestamp(value: Any) -> Optional[datetime]:
    if value is None:
        return None
    if isinstance(value, datetime):
        ts = value
    else:
        ts = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if ts.tzinfo is None:
        ts = ts.replace(tzinfo=timezone.utc)
    return ts


@dataclass
class NodeCondition:
    type: str
    status: str
    last_transition_time: datetime


@dataclass
class Node:
    name: str
    labels: Dict[str, str] = field(default_factory=dict)
    annotations: Dict[str, str] = field(default_factory=dict)
    conditions: List[NodeCondition] = field(default_factory=list)
    resource_version: Optional[str] = None
    raw: Any = field(default=None, repr=False, compare=False)

    @classmethod
    def from_k8s(cls, node) -> "Node":
        """Build from a kubernetes.client.V1Node"""
        conditions = []
        for c in (node.status.conditions if node.status else None) or []:
            conditions.append(NodeCondition(
                type=c.type,
                status=c.status,
                last_transition_time=_parse_timestamp(c.last_transition_time),
            ))
        return cls(
            name=node.metadata.name,
            labels=dict(node.metadata.labels or {}),
            annotations=dict(node.metadata.annotations or {}),
            conditions=conditions,
            resource_version=node.metadata.resource_version,
            raw=node,
        )

    def get_condition(self, condition_type: str) -> Optional[NodeCondition]:
        for c in self.conditions:
            if c.type == condition_type:
                return c
        return None

    def is_control_plane(self) -> bool:
        return any(label in self.labels for label in CONTROL_PLANE_LABELS)


@dataclass
class OwnerReference:
    kind: str
    name: str
    controller: bool = False


@dataclass
class Machine:
    name: str
    namespace: str
    labels: Dict[str, str] = field(default_factory=dict)
    owner_references: List[OwnerReference] = field(default_factory=list)
    node_ref: Optional[str] = None
    resource_version: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "Machine":
        metadata = obj.get("metadata") or {}
        node_ref = ((obj.get("status") or {}).get("nodeRef") or {}).get("name")
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            labels=dict(metadata.get("labels") or {}),
            owner_references=[
                OwnerReference(
                    kind=ref.get("kind", ""),
                    name=ref.get("name", ""),
                    controller=bool(ref.get("controller", False)),
                )
                for ref in metadata.get("ownerReferences") or []
            ],
            node_ref=node_ref or None,
            resource_version=metadata.get("resourceVersion"),
        )

    def owning_machine_set(self) -> Optional[OwnerReference]:
        for ref in self.owner_references:
            if ref.kind == OWNER_CONTROLLER_KIND:
                return ref
        return None


@dataclass
class LabelSelectorRequirement:
    key: str
    operator: str
    values: List[str] = field(default_factory=list)


@dataclass
class LabelSelector:
    match_labels: Dict[str, str] = field(default_factory=dict)
    match_expressions: List[LabelSelectorRequirement] = field(default_factory=list)

    @classmethod
    def from_dict(cls, obj: Optional[Dict[str, Any]]) -> "LabelSelector":
        obj = obj or {}
        return cls(
            match_labels=dict(obj.get("matchLabels") or {}),
            match_expressions=[
                LabelSelectorRequirement(
                    key=expr.get("key", ""),
                    operator=expr.get("operator", ""),
                    values=list(expr.get("values") or []),
                )
                for expr in obj.get("matchExpressions") or []
            ],
        )

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions


@dataclass
class MachineHealthCheck:
    name: str
    namespace: str
    selector: LabelSelector = field(default_factory=LabelSelector)
    remediation_strategy: Optional[RemediationStrategy] = None
    deletion_timestamp: Optional[datetime] = None

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "MachineHealthCheck":
        metadata = obj.get("metadata") or {}
        spec = obj.get("spec") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            selector=LabelSelector.from_dict(spec.get("selector")),
            remediation_strategy=RemediationStrategy.parse(spec.get("remediationStrategy")),
            deletion_timestamp=_parse_timestamp(metadata.get("deletionTimestamp")),
        )

    @property
    def being_deleted(self) -> bool:
        return self.deletion_timestamp is not None


@dataclass
class UnhealthyCondition:
    """A node condition that counts as unhealthy once held for longer than timeout"""
    name: str
    status: str
    timeout: timedelta


@dataclass
class MachineDisruptionBudget:
    name: str
    namespace: str
    selector: LabelSelector = field(default_factory=LabelSelector)
    disruptions_allowed: int = 0
    resource_version: Optional[str] = None
    raw: Optional[Dict[str, Any]] = field(default=None, repr=False, compare=False)

    @property
    def key(self) -> str:
        return f"{self.namespace}/{self.name}"

    @classmethod
    def from_dict(cls, obj: Dict[str, Any]) -> "MachineDisruptionBudget":
        metadata = obj.get("metadata") or {}
        return cls(
            name=metadata["name"],
            namespace=metadata.get("namespace", ""),
            selector=LabelSelector.from_dict((obj.get("spec") or {}).get("selector")),
            disruptions_allowed=int((obj.get("status") or {}).get("disruptionsAllowed", 0)),
            resource_version=metadata.get("resourceVersion"),
            raw=obj,
        )
