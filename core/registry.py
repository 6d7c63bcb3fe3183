"""PeerBeacon service and node registry."""
from __future__ import annotations
import logging
import threading
from dataclasses import dataclass, asdict
from typing import Any, Optional

from core.wire import DomainName

logger = logging.getLogger("peerbeacon.core.registry")

DEFAULT_TTL = 120


def name_errors(what: str, value: str) -> list[str]:
    if not isinstance(value, str) or not value.strip("."):
        return [f"{what} must be a non-empty DNS name"]
    try:
        DomainName(value)
    except ValueError as e:
        return [f"{what} '{value}': {e}"]
    return []


@dataclass(frozen=True)
class ServiceRecord:
    """A service instance this node advertises. Keyed by id."""
    id: str
    service_type: str
    port: int
    ttl: Optional[int]
    origin: str  # hostname the SRV record targets
    priority: int = 0
    weight: int = 0

    def __post_init__(self) -> None:
        errors = self.validate()
        if errors:
            raise ValueError("; ".join(errors))

    def validate(self) -> list[str]:
        errors = []
        errors.extend(name_errors("Service id", self.id))
        errors.extend(name_errors("Service type", self.service_type))
        errors.extend(name_errors("Origin", self.origin))
        for what, value, bits in (("port", self.port, 16), ("priority", self.priority, 16),
                                  ("weight", self.weight, 16)):
            if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < (1 << bits):
                errors.append(f"Service '{self.id}': {what} must be 0-{(1 << bits) - 1}")
        if self.ttl is not None and (
            isinstance(self.ttl, bool) or not isinstance(self.ttl, int) or not 0 <= self.ttl < (1 << 32)
        ):
            errors.append(f"Service '{self.id}': ttl must be a 32-bit unsigned integer")
        return errors

    @property
    def effective_ttl(self) -> int:
        return DEFAULT_TTL if self.ttl is None else self.ttl


@dataclass(frozen=True)
class NodeRecord:
    """A peer host learned from an A record. ttl is recorded, never enforced."""
    id: str
    ip_address: str
    ttl: Optional[int] = None


class MdnsRegistry:
    """
    Thread-safe store of local services and discovered nodes.

    Every method holds one lock for its whole body, so list_* results are
    each a state the registry really had at one instant. Records are frozen,
    so the returned lists can be iterated without the lock.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._services: dict[str, ServiceRecord] = {}  # id -> record
        self._nodes: dict[str, NodeRecord] = {}  # id -> record

    def add_service(self, service: ServiceRecord) -> None:
        if not isinstance(service, ServiceRecord):
            raise TypeError(f"expected ServiceRecord, got {type(service).__name__}")
        with self._lock:
            replaced = service.id in self._services
            self._services[service.id] = service
        logger.debug("%s service %s (%s)", "Replaced" if replaced else "Added",
                     service.id, service.service_type)

    def list_services(self) -> list[ServiceRecord]:
        with self._lock:
            return list(self._services.values())

    def add_node(self, node: NodeRecord) -> None:
        if not isinstance(node, NodeRecord):
            raise TypeError(f"expected NodeRecord, got {type(node).__name__}")
        with self._lock:
            self._nodes[node.id] = node

    def list_nodes(self) -> list[NodeRecord]:
        with self._lock:
            return list(self._nodes.values())

    def snapshot(self) -> dict[str, Any]:
        """Services and nodes from the same instant, as plain dicts."""
        with self._lock:
            services = list(self._services.values())
            nodes = list(self._nodes.values())
        return {
            "services": [asdict(s) for s in services],
            "nodes": [asdict(n) for n in nodes],
        }
