"""
Unhealthy conditions configuration

The conditions that make a node unhealthy live in a ConfigMap so operators can
tune them without a rollout. The `conditions` key holds YAML of the form:

    items:
    - name: Ready
      status: Unknown
      timeout: 60s

When the ConfigMap does not exist a single built-in condition is used.
"""

import logging
import re
from datetime import timedelta
from typing import List

import yaml

from .errors import ConfigParseError, NotFoundError
from .k8s_client import ClusterClient
from .models import UnhealthyCondition

logger = logging.getLogger(__name__)

CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS = "node-unhealthy-conditions"
CONFIG_MAP_CONDITIONS_KEY = "conditions"

DEFAULT_UNHEALTHY_CONDITIONS_DATA = """items:
- name: Ready
  status: Unknown
  timeout: 60s
"""

_DURATION_UNITS = {
    "ns": timedelta(microseconds=0.001),
    "us": timedelta(microseconds=1),
    "µs": timedelta(microseconds=1),
    "ms": timedelta(milliseconds=1),
    "s": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "h": timedelta(hours=1),
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_duration(text: str) -> timedelta:
    """Parse a duration such as "90s", "5m" or "1h30m"; raises ValueError"""
    value = str(text).strip()
    if value.startswith("+"):
        value = value[1:]
    if value == "0":
        return timedelta(0)
    if not value:
        raise ValueError("empty duration")

    total = timedelta(0)
    pos = 0
    for match in _DURATION_PART.finditer(value):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
        pos = match.end()
    if pos != len(value):
        raise ValueError(f"invalid duration {text!r}")
    return total


def default_unhealthy_conditions() -> List[UnhealthyCondition]:
    return parse_unhealthy_conditions(DEFAULT_UNHEALTHY_CONDITIONS_DATA)


def parse_unhealthy_conditions(data: str) -> List[UnhealthyCondition]:
    """Parse the ConfigMap payload, preserving the configured order"""
    try:
        doc = yaml.safe_load(data)
    except yaml.YAMLError as e:
        raise ConfigParseError(f"invalid unhealthy conditions YAML: {e}") from e

    if not isinstance(doc, dict) or not isinstance(doc.get("items"), list):
        raise ConfigParseError("unhealthy conditions must contain an 'items' list")

    conditions = []
    for i, item in enumerate(doc["items"]):
        if not isinstance(item, dict):
            raise ConfigParseError(f"unhealthy condition #{i} is not a mapping")

        name = str(item.get("name") or "").strip()
        status = item.get("status")
        # unquoted True/False come back from YAML as booleans
        if isinstance(status, bool):
            status = "True" if status else "False"
        status = str(status or "").strip()
        timeout = item.get("timeout")
        if not name or not status or timeout in (None, ""):
            raise ConfigParseError(
                f"unhealthy condition #{i} needs name, status and timeout, got {item}"
            )

        try:
            duration = parse_duration(str(timeout))
        except ValueError as e:
            raise ConfigParseError(f"unhealthy condition {name}: {e}") from e
        if duration <= timedelta(0):
            raise ConfigParseError(f"unhealthy condition {name}: timeout must be positive")

        conditions.append(UnhealthyCondition(name=name, status=status, timeout=duration))

    return conditions


def load_unhealthy_conditions(client: ClusterClient, namespace: str) -> List[UnhealthyCondition]:
    """Read the configured unhealthy conditions, or the defaults if none are configured"""
    try:
        data = client.get_config_map_data(namespace, CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS)
    except NotFoundError:
        logger.info(
            f"ConfigMap {CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS} not found under the namespace "
            f"{namespace}, fallback to default values: {DEFAULT_UNHEALTHY_CONDITIONS_DATA!r}"
        )
        return default_unhealthy_conditions()

    if CONFIG_MAP_CONDITIONS_KEY not in data:
        raise ConfigParseError(
            f"ConfigMap {namespace}/{CONFIG_MAP_NODE_UNHEALTHY_CONDITIONS} "
            f"has no '{CONFIG_MAP_CONDITIONS_KEY}' key"
        )
    return parse_unhealthy_conditions(data[CONFIG_MAP_CONDITIONS_KEY])
