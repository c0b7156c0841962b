import copy
import logging
from abc import ABC, abstractmethod
from contextlib import contextmanager
from typing import Dict, List

from kubernetes import client, config
from kubernetes.client.rest import ApiException
from kubernetes.config.config_exception import ConfigException

from .errors import ConflictError, NotFoundError
from .models import (
    Machine,
    MachineDisruptionBudget,
    MachineHealthCheck,
    Node,
)

logger = logging.getLogger(__name__)

MACHINE_GROUP = "machine.openshift.io"
MACHINE_VERSION = "v1beta1"
MACHINE_PLURAL = "machines"

HEALTHCHECKING_GROUP = "healthchecking.openshift.io"
HEALTHCHECKING_VERSION = "v1alpha1"
HEALTH_CHECK_PLURAL = "machinehealthchecks"
DISRUPTION_BUDGET_PLURAL = "machinedisruptionbudgets"


def load_kube_config():
    """Prefer the in-cluster service account, fall back to the local kubeconfig"""
    try:
        config.load_incluster_config()
    except ConfigException:
        logger.info("Not running in a cluster, loading kubeconfig")
        config.load_kube_config()


@contextmanager
def api_errors(kind: str, name: str):
    """Translate 404 and 409 responses into NotFoundError and ConflictError"""
    try:
        yield
    except ApiException as e:
        if e.status == 404:
            raise NotFoundError(kind, name) from e
        if e.status == 409:
            raise ConflictError(kind, name) from e
        raise


class ClusterClient(ABC):
    """Reads and writes the cluster objects the health check engine depends on.

    Every method raises NotFoundError for missing objects and ConflictError
    when a write carries a stale resource version.
    """

    @abstractmethod
    def get_node(self, name: str) -> Node:
        ...

    @abstractmethod
    def update_node(self, node: Node) -> Node:
        ...

    @abstractmethod
    def get_machine(self, namespace: str, name: str) -> Machine:
        ...

    @abstractmethod
    def list_machines(self, namespace: str) -> List[Machine]:
        ...

    @abstractmethod
    def delete_machine(self, machine: Machine) -> None:
        ...

    @abstractmethod
    def get_health_check(self, namespace: str, name: str) -> MachineHealthCheck:
        ...

    @abstractmethod
    def list_health_checks(self, namespace: str) -> List[MachineHealthCheck]:
        ...

    @abstractmethod
    def list_disruption_budgets(self, namespace: str) -> List[MachineDisruptionBudget]:
        ...

    @abstractmethod
    def update_disruption_budget_status(self, mdb: MachineDisruptionBudget) -> MachineDisruptionBudget:
        ...

    @abstractmethod
    def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]:
        ...


class KubernetesClusterClient(ClusterClient):
    """ClusterClient backed by the kubernetes API server"""

    def __init__(self, api_client=None):
        self.v1 = client.CoreV1Api(api_client)
        self.custom = client.CustomObjectsApi(api_client)

    def get_node(self, name: str) -> Node:
        with api_errors("node", name):
            return Node.from_k8s(self.v1.read_node(name))

    def update_node(self, node: Node) -> Node:
        if node.raw is None:
            raise ValueError(f"node {node.name} was not read from the cluster")
        body = node.raw
        body.metadata.labels = dict(node.labels)
        body.metadata.annotations = dict(node.annotations)
        body.metadata.resource_version = node.resource_version
        with api_errors("node", node.name):
            return Node.from_k8s(self.v1.replace_node(node.name, body))

    def get_machine(self, namespace: str, name: str) -> Machine:
        with api_errors("machine", f"{namespace}/{name}"):
            obj = self.custom.get_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, namespace, MACHINE_PLURAL, name
            )
        return Machine.from_dict(obj)

    def list_machines(self, namespace: str) -> List[Machine]:
        with api_errors("machines in", namespace):
            result = self.custom.list_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, namespace, MACHINE_PLURAL
            )
        return [Machine.from_dict(obj) for obj in result.get("items", [])]

    def delete_machine(self, machine: Machine) -> None:
        with api_errors("machine", machine.key):
            self.custom.delete_namespaced_custom_object(
                MACHINE_GROUP, MACHINE_VERSION, machine.namespace, MACHINE_PLURAL, machine.name
            )

    def get_health_check(self, namespace: str, name: str) -> MachineHealthCheck:
        with api_errors("machinehealthcheck", f"{namespace}/{name}"):
            obj = self.custom.get_namespaced_custom_object(
                HEALTHCHECKING_GROUP, HEALTHCHECKING_VERSION, namespace, HEALTH_CHECK_PLURAL, name
            )
        return MachineHealthCheck.from_dict(obj)

    def list_health_checks(self, namespace: str) -> List[MachineHealthCheck]:
        with api_errors("machinehealthchecks in", namespace):
            result = self.custom.list_namespaced_custom_object(
                HEALTHCHECKING_GROUP, HEALTHCHECKING_VERSION, namespace, HEALTH_CHECK_PLURAL
            )
        return [MachineHealthCheck.from_dict(obj) for obj in result.get("items", [])]

    def list_disruption_budgets(self, namespace: str) -> List[MachineDisruptionBudget]:
        with api_errors("machinedisruptionbudgets in", namespace):
            result = self.custom.list_namespaced_custom_object(
                HEALTHCHECKING_GROUP, HEALTHCHECKING_VERSION, namespace, DISRUPTION_BUDGET_PLURAL
            )
        return [MachineDisruptionBudget.from_dict(obj) for obj in result.get("items", [])]

    def update_disruption_budget_status(self, mdb: MachineDisruptionBudget) -> MachineDisruptionBudget:
        body = copy.deepcopy(mdb.raw) if mdb.raw else {
            "apiVersion": f"{HEALTHCHECKING_GROUP}/{HEALTHCHECKING_VERSION}",
            "kind": "MachineDisruptionBudget",
            "metadata": {"name": mdb.name, "namespace": mdb.namespace},
        }
        body.setdefault("metadata", {})["resourceVersion"] = mdb.resource_version
        body.setdefault("status", {})["disruptionsAllowed"] = mdb.disruptions_allowed
        with api_errors("machinedisruptionbudget", mdb.key):
            obj = self.custom.replace_namespaced_custom_object_status(
                HEALTHCHECKING_GROUP, HEALTHCHECKING_VERSION, mdb.namespace,
                DISRUPTION_BUDGET_PLURAL, mdb.name, body
            )
        return MachineDisruptionBudget.from_dict(obj)

    def get_config_map_data(self, namespace: str, name: str) -> Dict[str, str]:
        with api_errors("configmap", f"{namespace}/{name}"):
            cm = self.v1.read_namespaced_config_map(name, namespace)
        return dict(cm.data or {})
