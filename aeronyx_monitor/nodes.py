"""Normalise node status payloads into canonical node records.

The realtime channel delivers a flat ``nodes`` list where each entry carries
its own ``status`` and connection details, while the REST overview groups
nodes under ``online``/``active``/``offline`` keys. Field names also drift
between the two (``performance.cpu_usage`` versus ``performance.cpu`` versus
``resources.cpu.usage``). All of that tolerance lives here so consumers only
ever see :class:`NodeRecord`.
"""

from __future__ import annotations

from collections.abc import Iterable, Iterator, Mapping
from datetime import UTC, datetime
import logging
import math
from typing import Any

from .domain.nodes import (
    AggregateStats,
    NodeRecord,
    NodeStatus,
    ResourceUsage,
    SourceKind,
)

_LOGGER = logging.getLogger(__name__)

_PENDING_STATUSES = frozenset({"pending", "registered", "created", "registering"})
_GROUPS = frozenset(status.value for status in NodeStatus)

_USAGE_KEYS: dict[str, tuple[str, ...]] = {
    "cpu": ("cpu_usage", "cpu"),
    "memory": ("memory_usage", "memory"),
    "storage": ("storage_usage", "storage", "disk_usage", "disk"),
    "bandwidth": ("bandwidth_usage", "bandwidth", "network_usage", "network"),
}

_TOTAL_KEYS: dict[str, tuple[str, ...]] = {
    "cpu": ("cpu_cores", "cpu_total"),
    "memory": ("memory_total",),
    "storage": ("disk_total", "storage_total"),
    "bandwidth": ("network_bandwidth", "bandwidth_total"),
}


def _mapping(value: Any) -> Mapping[str, Any]:
    """Return ``value`` when it is a mapping, otherwise an empty one."""

    return value if isinstance(value, Mapping) else {}


def _coerce_number(value: Any) -> float | None:
    """Return ``value`` as a finite float when possible."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    else:
        try:
            number = float(str(value).strip().rstrip("%"))
        except (TypeError, ValueError):
            return None
    return number if math.isfinite(number) else None


def _round_half_up(value: float) -> int:
    """Round non-negative values the way the dashboard does."""

    return int(value + 0.5)


def _percent(value: Any) -> int | None:
    """Return a 0-100 integer for ``value`` or None when not numeric."""

    number = _coerce_number(value)
    if number is None:
        return None
    return _round_half_up(min(100.0, max(0.0, number)))


def _usage(node: Mapping[str, Any], kind: str) -> ResourceUsage:
    """Return the utilisation of ``kind`` from whichever field is present."""

    performance = _mapping(node.get("performance"))
    resource = _mapping(_mapping(node.get("resources")).get(kind))
    system_info = _mapping(node.get("system_info"))

    candidates: list[Any] = [performance.get(key) for key in _USAGE_KEYS[kind]]
    candidates.append(node.get(f"{kind}_usage"))
    candidates.append(resource.get("usage"))

    usage = 0
    for candidate in candidates:
        value = _percent(candidate)
        if value is not None:
            usage = value
            break

    total: Any = resource.get("total")
    if total is None:
        for key in _TOTAL_KEYS[kind]:
            total = system_info.get(key, node.get(key))
            if total is not None:
                break
    return ResourceUsage(usage=usage, total=None if total is None else str(total))


def _is_connected(node: Mapping[str, Any]) -> bool:
    """Return True when any of the connectivity markers is set."""

    connection = _mapping(node.get("connection"))
    return (
        connection.get("connected") is True
        or node.get("is_connected") is True
        or node.get("connection_status") == "online"
    )


def _status(node: Mapping[str, Any], group: str | None) -> tuple[NodeStatus, bool]:
    """Return the lifecycle status and connectivity flag for a node."""

    raw = str(node.get("status") or "").strip().lower()
    connected = _is_connected(node)

    if raw in _PENDING_STATUSES or group == NodeStatus.PENDING.value:
        return NodeStatus.PENDING, connected
    if group is not None:
        status = NodeStatus(group)
        return status, status is NodeStatus.ONLINE
    if raw == "online" or (raw == "active" and connected):
        return NodeStatus.ONLINE, True
    if raw == "active":
        return NodeStatus.ACTIVE, False
    return NodeStatus.OFFLINE, False


def _parse_timestamp(value: Any) -> datetime | None:
    """Parse ISO strings or epoch seconds/milliseconds into an aware datetime."""

    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        seconds = float(value)
        if seconds > 1e12:
            seconds /= 1000.0
        try:
            return datetime.fromtimestamp(seconds, UTC)
        except (OverflowError, OSError, ValueError):
            return None
    text = str(value).strip()
    if not text:
        return None
    try:
        parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
    except ValueError:
        _LOGGER.debug("Unparseable node timestamp: %r", value)
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def _node_type(value: Any) -> str | None:
    """Return the node type identifier from a string or ``{id, name}`` mapping."""

    if isinstance(value, Mapping):
        value = value.get("id") or value.get("name")
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _heartbeats(node: Mapping[str, Any]) -> int:
    """Return the heartbeat counter from any of the known locations."""

    connection = _mapping(node.get("connection"))
    for value in (
        node.get("heartbeat_count"),
        connection.get("heartbeat_count"),
        node.get("total_heartbeats"),
    ):
        number = _coerce_number(value)
        if number is not None:
            return max(0, int(number))
    return 0


def _build_record(
    node: Mapping[str, Any], group: str | None, source: SourceKind
) -> NodeRecord | None:
    """Return a :class:`NodeRecord` or None when the node has no identity."""

    reference = node.get("reference_code") or node.get("id")
    if reference is None or not str(reference).strip():
        _LOGGER.debug("Skipping node without reference code: %s", sorted(node))
        return None
    reference_code = str(reference).strip()
    status, connected = _status(node, group)
    connection = _mapping(node.get("connection"))
    uptime = node.get("uptime")
    return NodeRecord(
        reference_code=reference_code,
        name=str(node.get("name") or reference_code),
        status=status,
        is_connected=connected,
        node_type=_node_type(node.get("node_type")),
        cpu=_usage(node, "cpu"),
        memory=_usage(node, "memory"),
        storage=_usage(node, "storage"),
        bandwidth=_usage(node, "bandwidth"),
        earnings=_coerce_number(node.get("earnings")) or 0.0,
        heartbeat_count=_heartbeats(node),
        last_seen=_parse_timestamp(
            node.get("last_seen") or connection.get("last_seen")
        ),
        uptime=None if uptime is None else str(uptime),
        source=source,
    )


def _iter_entries(raw: Any) -> Iterator[tuple[Mapping[str, Any], str | None]]:
    """Yield ``(node, group)`` pairs from any accepted payload shape."""

    nodes: Any = raw
    if isinstance(raw, Mapping):
        body = raw
        if body.get("nodes") is None and isinstance(body.get("data"), Mapping):
            body = body["data"]
        nodes = body.get("nodes")

    if isinstance(nodes, Mapping):
        for group, items in nodes.items():
            if group not in _GROUPS:
                _LOGGER.debug("Ignoring unknown node group %r", group)
                continue
            if not isinstance(items, list):
                continue
            for item in items:
                if isinstance(item, Mapping):
                    yield item, group
        return

    if isinstance(nodes, list):
        for item in nodes:
            if isinstance(item, Mapping):
                yield item, None
            else:
                _LOGGER.debug("Unexpected node entry: %r", item)
        return

    if nodes is not None:
        _LOGGER.debug("Unexpected nodes shape (%s)", type(nodes).__name__)


def normalize(raw: Any, source_kind: SourceKind | str) -> list[NodeRecord]:
    """Return canonical node records for a realtime or REST payload."""

    source = SourceKind(source_kind)
    records: list[NodeRecord] = []
    for node, group in _iter_entries(raw):
        record = _build_record(node, group, source)
        if record is not None:
            records.append(record)
    return records


def summarize(records: Iterable[NodeRecord]) -> AggregateStats:
    """Return totals, status counts and utilisation over active nodes."""

    nodes = list(records)
    active = [record for record in nodes if record.is_active]
    if active:
        count = len(active)
        average_cpu = _round_half_up(sum(r.cpu.usage for r in active) / count)
        average_memory = _round_half_up(sum(r.memory.usage for r in active) / count)
        utilization = _round_half_up(
            sum((r.cpu.usage + r.memory.usage) / 2 for r in active) / count
        )
    else:
        average_cpu = average_memory = utilization = 0

    return AggregateStats(
        total_nodes=len(nodes),
        online_nodes=sum(1 for r in nodes if r.status is NodeStatus.ONLINE),
        active_nodes=len(active),
        offline_nodes=sum(1 for r in nodes if r.status is NodeStatus.OFFLINE),
        pending_nodes=sum(1 for r in nodes if r.status is NodeStatus.PENDING),
        average_cpu=average_cpu,
        average_memory=average_memory,
        resource_utilization=utilization,
        total_earnings=sum(r.earnings for r in nodes),
    )


__all__ = ["normalize", "summarize"]
