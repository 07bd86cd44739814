"""Domain-layer primitives for the AeroNyx monitor client."""

from .nodes import AggregateStats, NodeRecord, NodeStatus, ResourceUsage, SourceKind
from .state import (
    AUTHENTICATED_STATES,
    ConnectionState,
    Credential,
    NodeAuthToken,
    PendingRequest,
    SessionToken,
    normalize_wallet,
)

__all__ = [
    "AUTHENTICATED_STATES",
    "AggregateStats",
    "ConnectionState",
    "Credential",
    "NodeAuthToken",
    "NodeRecord",
    "NodeStatus",
    "PendingRequest",
    "ResourceUsage",
    "SessionToken",
    "SourceKind",
    "normalize_wallet",
]
