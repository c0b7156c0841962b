"""Tests for the reconciliation driver"""

from datetime import datetime, timedelta, timezone

import pytest

from fakes import (
    NAMESPACE,
    FakeClusterClient,
    new_budget,
    new_health_check,
    new_machine,
    new_node,
)
from machine_healthcheck.conditions import CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS
from machine_healthcheck.errors import ConflictError, MalformedReferenceError, MissingNodeReferenceError
from machine_healthcheck.models import (
    MACHINE_ANNOTATION_KEY,
    MACHINE_REBOOT_ANNOTATION_KEY,
    LabelSelector,
    MachineHealthCheck,
    RemediationStrategy,
)
from machine_healthcheck.reconciler import MachineHealthCheckReconciler, split_machine_key
from machine_healthcheck.remediators import RemediationAction

BAD_CONDITIONS_DATA = """items:
- name: Ready 
  timeout: 60s
  status: Unknown"""


def _now():
    return datetime.now(timezone.utc)


def _reconciler(*objects):
    client = FakeClusterClient(*objects)
    return client, MachineHealthCheckReconciler(client, NAMESPACE)


def _assert_requeue_close_to(result, expected):
    assert result.requeue_after is not None
    assert expected <= result.requeue_after <= expected + timedelta(seconds=1)


def test_split_machine_key():
    assert split_machine_key("ns/name", NAMESPACE) == ("ns", "name")
    assert split_machine_key("name", NAMESPACE) == (NAMESPACE, "name")
    for key in ("a/b/c", "/name", "ns/", ""):
        with pytest.raises(MalformedReferenceError):
            split_machine_key(key, NAMESPACE)


def test_unhealthy_for_too_long_is_deleted_and_budget_consumed():
    node = new_node("n1", False, machine_name="m1", transition_time=_now() - timedelta(minutes=5))
    client, r = _reconciler(node, new_machine("m1", "n1"), new_health_check("mhc"), new_budget("mdb", 1))

    result = r.reconcile("n1")

    assert result.requeue_after is None
    assert result.outcome.action == RemediationAction.DELETE
    assert client.deleted_machines == [f"{NAMESPACE}/m1"]
    assert client.budget("mdb").disruptions_allowed == 0


def test_exhausted_budget_schedules_recheck():
    node = new_node("n1", False, machine_name="m1", transition_time=_now() - timedelta(minutes=5))
    client, r = _reconciler(node, new_machine("m1", "n1"), new_health_check("mhc"), new_budget("mdb", 0))

    result = r.reconcile("n1")

    assert result.requeue_after == timedelta(seconds=60)
    assert client.deleted_machines == []


def test_healthy_node_is_a_no_op():
    client, r = _reconciler(
        new_node("n2", True, machine_name="m2"), new_machine("m2", "n2"), new_health_check("mhc")
    )
    result = r.reconcile("n2")
    assert result.requeue_after is None
    assert result.outcome is None
    assert client.deleted_machines == []


def test_recently_unhealthy_without_config_map():
    node = new_node("recentlyUnhealthy", False, machine_name="m", transition_time=_now())
    _, r = _reconciler(node, new_machine("m", node.name), new_health_check("mhc"))
    _assert_requeue_close_to(r.reconcile(node.name), timedelta(minutes=1))


def test_recently_unhealthy_with_config_map():
    node = new_node("recentlyUnhealthy", False, machine_name="m", transition_time=_now())
    client, r = _reconciler(node, new_machine("m", node.name), new_health_check("mhc"))
    client.set_config_map(NAMESPACE, CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS, {"conditions": BAD_CONDITIONS_DATA})
    _assert_requeue_close_to(r.reconcile(node.name), timedelta(minutes=1))


def test_configured_timeout_drives_recheck_delay():
    node = new_node("recentlyUnhealthy", False, machine_name="m", transition_time=_now())
    client, r = _reconciler(node, new_machine("m", node.name), new_health_check("mhc"))
    client.set_config_map(NAMESPACE, CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS, {
        "conditions": "items:\n- name: Ready\n  status: Unknown\n  timeout: 5m\n",
    })
    _assert_requeue_close_to(r.reconcile(node.name), timedelta(minutes=5))


def test_malformed_config_falls_back_to_defaults():
    node = new_node("n1", False, machine_name="m1", transition_time=_now() - timedelta(minutes=5))
    client, r = _reconciler(node, new_machine("m1", "n1"), new_health_check("mhc"))
    client.set_config_map(NAMESPACE, CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS, {"conditions": "items: ["})

    result = r.reconcile("n1")

    assert client.deleted_machines == [f"{NAMESPACE}/m1"]
    assert result.requeue_after == timedelta(seconds=60)


def test_malformed_config_caps_recheck_delay():
    node = new_node("healthy", True, machine_name="m")
    client, r = _reconciler(node, new_machine("m", node.name), new_health_check("mhc"))
    client.set_config_map(NAMESPACE, CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS, {"conditions": "nope"})
    assert r.reconcile(node.name).requeue_after == timedelta(seconds=60)


def test_missing_node_is_a_no_op():
    _, r = _reconciler()
    assert r.reconcile("ghost").requeue_after is None


def test_node_without_machine_annotation():
    _, r = _reconciler(new_node("withoutMachineAnnotation", True), new_health_check("mhc"))
    assert r.reconcile("withoutMachineAnnotation").requeue_after is None


def test_node_annotated_with_missing_machine():
    node = new_node("annotatedWithNoExistentMachine", False)
    node.annotations[MACHINE_ANNOTATION_KEY] = "annotatedWithNoExistentMachine"
    client, r = _reconciler(node, new_health_check("mhc"))
    assert r.reconcile(node.name).requeue_after is None
    assert client.deleted_machines == []


def test_malformed_machine_annotation_is_retryable():
    node = new_node("malformed", False)
    node.annotations[MACHINE_ANNOTATION_KEY] = "a/b/c"
    _, r = _reconciler(node)
    with pytest.raises(MalformedReferenceError):
        r.reconcile(node.name)


def test_machine_without_owner_is_not_remediated():
    node = new_node("annotatedWithMachineWithoutOwnerReference", False, machine_name="machineWithoutOwnerController")
    client, r = _reconciler(
        node,
        new_machine("machineWithoutOwnerController", node.name, owned=False),
        new_health_check("mhc"),
    )
    result = r.reconcile(node.name)
    assert result.requeue_after is None
    assert result.outcome.action == RemediationAction.NO_OWNER
    assert client.deleted_machines == []


def test_machine_without_node_reference_is_an_error():
    node = new_node("annotatedWithMachineWithoutNodeReference", True, machine_name="machineWithoutNodeRef")
    _, r = _reconciler(node, new_machine("machineWithoutNodeRef", None), new_health_check("mhc"))
    with pytest.raises(MissingNodeReferenceError):
        r.reconcile(node.name)


def test_machine_without_health_check_is_ignored():
    node = new_node("n1", False, machine_name="m1")
    client, r = _reconciler(node, new_machine("m1", "n1"), new_health_check("mhc", labels={"no": "match"}))
    assert r.reconcile("n1").requeue_after is None
    assert client.deleted_machines == []


def test_empty_selector_never_remediates():
    node = new_node("n1", False, machine_name="m1")
    empty = MachineHealthCheck(name="empty", namespace=NAMESPACE, selector=LabelSelector())
    client, r = _reconciler(node, new_machine("m1", "n1", labels={}), empty)
    assert r.reconcile("n1").outcome is None
    assert client.deleted_machines == []


def test_first_health_check_by_name_decides_strategy():
    node = new_node("n1", False, machine_name="m1")
    client, r = _reconciler(
        node,
        new_machine("m1", "n1"),
        new_health_check("b-delete"),
        new_health_check("a-reboot", strategy=RemediationStrategy.REBOOT),
    )
    assert r.reconcile("n1").outcome.action == RemediationAction.REBOOT
    assert client.deleted_machines == []


def test_reboot_remediation_is_idempotent():
    node = new_node("nodeUnhealthyForTooLong", False, machine_name="machineUnhealthyForTooLong")
    client, r = _reconciler(
        node,
        new_machine("machineUnhealthyForTooLong", node.name),
        new_health_check("mhc", strategy=RemediationStrategy.REBOOT),
        new_budget("mdb", 5),
    )

    first = r.reconcile(node.name)
    second = r.reconcile(node.name)

    assert first.outcome.action == RemediationAction.REBOOT
    assert second.outcome.action == RemediationAction.ALREADY_REBOOTING
    assert MACHINE_REBOOT_ANNOTATION_KEY in client.get_node(node.name).annotations
    assert client.node_updates == 1
    assert client.budget("mdb").disruptions_allowed == 4


def test_delete_remediation_is_idempotent():
    node = new_node("n1", False, machine_name="m1")
    client, r = _reconciler(node, new_machine("m1", "n1"), new_health_check("mhc"), new_budget("mdb", 5))

    r.reconcile("n1")
    second = r.reconcile("n1")

    assert second.outcome is None
    assert client.deleted_machines == [f"{NAMESPACE}/m1"]
    assert client.budget("mdb").disruptions_allowed == 4


def test_control_plane_node_is_never_deleted():
    node = new_node("master-0", False, machine_name="master-0")
    node.labels["node-role.kubernetes.io/master"] = ""
    client, r = _reconciler(node, new_machine("master-0", node.name), new_health_check("mhc"))

    result = r.reconcile(node.name)

    assert result.outcome.action == RemediationAction.SKIPPED_CONTROL_PLANE
    assert client.deleted_machines == []


def test_map_health_check_to_nodes():
    hc = new_health_check("mhc")
    _, r = _reconciler(
        hc,
        new_machine("test", "node1"),
        new_machine("test2", "node2"),
        new_machine("pending", None),
    )
    assert r.map_health_check_to_nodes(hc) == {"node1", "node2"}


def test_map_health_check_being_deleted_is_empty():
    hc = new_health_check("mhc")
    hc.deletion_timestamp = _now()
    _, r = _reconciler(hc, new_machine("test", "node1"))
    assert r.map_health_check_to_nodes(hc) == set()


def test_map_missing_health_check_is_empty():
    _, r = _reconciler(new_machine("test", "node1"))
    assert r.map_health_check_to_nodes(new_health_check("gone")) == set()


def test_stale_annotation_evaluates_the_referenced_node():
    stale = new_node("old-n1", False, machine_name="m1", transition_time=_now() - timedelta(minutes=5))
    client, r = _reconciler(
        stale, new_node("n2", True), new_machine("m1", "n2"), new_health_check("mhc"), new_budget("mdb", 1)
    )

    result = r.reconcile("old-n1")

    assert result.outcome is None
    assert client.deleted_machines == []
    assert client.budget("mdb").disruptions_allowed == 1


def test_stale_annotation_with_missing_referenced_node_is_a_no_op():
    stale = new_node("old-n1", False, machine_name="m1", transition_time=_now() - timedelta(minutes=5))
    client, r = _reconciler(stale, new_machine("m1", "gone"), new_health_check("mhc"))

    result = r.reconcile("old-n1")

    assert result.requeue_after is None
    assert client.deleted_machines == []


def test_reboot_conflict_keeps_budget_for_the_retry():
    node = new_node("n1", False, machine_name="m1", transition_time=_now() - timedelta(minutes=5))
    client, r = _reconciler(
        node,
        new_machine("m1", "n1"),
        new_health_check("mhc", strategy=RemediationStrategy.REBOOT),
        new_budget("mdb", 1),
    )
    client.conflicts["node"] = 1

    with pytest.raises(ConflictError):
        r.reconcile("n1")
    result = r.reconcile("n1")

    assert result.outcome.action == RemediationAction.REBOOT
    assert MACHINE_REBOOT_ANNOTATION_KEY in client.get_node("n1").annotations
    assert client.budget("mdb").disruptions_allowed == 0
