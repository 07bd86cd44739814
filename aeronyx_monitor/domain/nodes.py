"""Canonical node records and aggregate statistics."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any


class NodeStatus(str, Enum):
    """Lifecycle status of a node."""

    ONLINE = "online"
    ACTIVE = "active"
    OFFLINE = "offline"
    PENDING = "pending"


class SourceKind(str, Enum):
    """Origin of a node status payload."""

    REALTIME = "realtime"
    REST = "rest"


@dataclass(frozen=True, slots=True)
class ResourceUsage:
    """Utilisation of one resource as a 0-100 integer plus optional total."""

    usage: int = 0
    total: str | None = None


@dataclass(frozen=True, slots=True)
class NodeRecord:
    """Normalised snapshot of a single node."""

    reference_code: str
    name: str
    status: NodeStatus
    is_connected: bool = False
    node_type: str | None = None
    cpu: ResourceUsage = field(default_factory=ResourceUsage)
    memory: ResourceUsage = field(default_factory=ResourceUsage)
    storage: ResourceUsage = field(default_factory=ResourceUsage)
    bandwidth: ResourceUsage = field(default_factory=ResourceUsage)
    earnings: float = 0.0
    heartbeat_count: int = 0
    last_seen: datetime | None = None
    uptime: str | None = None
    source: SourceKind = SourceKind.REALTIME

    @property
    def is_active(self) -> bool:
        """Return True for nodes counted as active (online or active)."""

        return self.status in (NodeStatus.ONLINE, NodeStatus.ACTIVE)

    def as_dict(self) -> dict[str, Any]:
        """Return a plain mapping for serialisation."""

        return {
            "reference_code": self.reference_code,
            "name": self.name,
            "status": self.status.value,
            "is_connected": self.is_connected,
            "node_type": self.node_type,
            "cpu": {"usage": self.cpu.usage, "total": self.cpu.total},
            "memory": {"usage": self.memory.usage, "total": self.memory.total},
            "storage": {"usage": self.storage.usage, "total": self.storage.total},
            "bandwidth": {
                "usage": self.bandwidth.usage,
                "total": self.bandwidth.total,
            },
            "earnings": self.earnings,
            "heartbeat_count": self.heartbeat_count,
            "last_seen": self.last_seen.isoformat() if self.last_seen else None,
            "uptime": self.uptime,
            "source": self.source.value,
        }


@dataclass(frozen=True, slots=True)
class AggregateStats:
    """Totals derived from a list of node records."""

    total_nodes: int = 0
    online_nodes: int = 0
    active_nodes: int = 0
    offline_nodes: int = 0
    pending_nodes: int = 0
    average_cpu: int = 0
    average_memory: int = 0
    resource_utilization: int = 0
    total_earnings: float = 0.0


__all__ = [
    "AggregateStats",
    "NodeRecord",
    "NodeStatus",
    "ResourceUsage",
    "SourceKind",
]
