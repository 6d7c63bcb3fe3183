"""PeerBeacon agent configuration file (TOML) parsing and validation."""
from __future__ import annotations
import ipaddress
import logging
import socket
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from core.registry import ServiceRecord, name_errors

MDNS_GROUP = "224.0.0.251"
MDNS_PORT = 5353
DEFAULT_SERVICE_TYPE = "_http._tcp.local"
LOG_LEVELS = ("DEBUG", "INFO", "WARNING", "ERROR")


def default_origin() -> str:
    """This host's mDNS name, e.g. "myhost.local"."""
    return f"{socket.gethostname().split('.')[0]}.local"


@dataclass
class NetworkSettings:
    group: str = MDNS_GROUP
    port: int = MDNS_PORT

    def validate(self) -> list[str]:
        errors = []
        try:
            if not ipaddress.IPv4Address(self.group).is_multicast:
                errors.append(f"network.group {self.group} is not a multicast address")
        except ValueError:
            errors.append(f"network.group '{self.group}' is not an IPv4 address")
        if isinstance(self.port, bool) or not isinstance(self.port, int) or not (0 < self.port <= 65535):
            errors.append("network.port must be 1-65535")
        return errors


@dataclass
class ServiceEntry:
    id: str = ""
    service_type: str = ""
    port: int = 0
    ttl: Optional[int] = None
    origin: str = ""

    def to_record(self) -> ServiceRecord:
        return ServiceRecord(
            id=self.id,
            service_type=self.service_type,
            port=self.port,
            ttl=self.ttl,
            origin=self.origin or default_origin(),
        )

    def validate(self) -> list[str]:
        try:
            self.to_record()
        except ValueError as e:
            return [str(e)]
        return []


@dataclass
class AgentConfig:
    service_type: str = DEFAULT_SERVICE_TYPE  # type the querier asks for
    query_interval_s: float = 10.0
    advertise_interval_s: float = 10.0
    report_interval_s: float = 10.0
    log_dir: str = "logs"
    log_level: str = "INFO"
    network: NetworkSettings = field(default_factory=NetworkSettings)
    services: list[ServiceEntry] = field(default_factory=list)

    def validate(self) -> list[str]:
        errors = []
        if not self.service_type:
            errors.append("agent.service_type is required")
        else:
            errors.extend(name_errors("agent.service_type", self.service_type))
        for key in ("query_interval_s", "advertise_interval_s", "report_interval_s"):
            value = getattr(self, key)
            if isinstance(value, bool) or not isinstance(value, (int, float)) or value <= 0:
                errors.append(f"agent.{key} must be a positive number")
        if not isinstance(self.log_level, str) or self.log_level.upper() not in LOG_LEVELS:
            errors.append(f"Invalid agent.log_level: {self.log_level}")
        if not isinstance(self.log_dir, str) or not self.log_dir:
            errors.append("agent.log_dir must be a non-empty path")
        errors.extend(self.network.validate())
        ids_seen = set()
        for entry in self.services:
            errors.extend(entry.validate())
            if isinstance(entry.id, str) and entry.id in ids_seen:
                errors.append(f"Duplicate service id: {entry.id}")
            ids_seen.add(str(entry.id))
        return errors


def _table(data: Any, key: str) -> dict:
    if not isinstance(data, dict):
        raise ValueError(f"[{key}] must be a table")
    return data


def _parse_service(raw: dict) -> ServiceEntry:
    raw = _table(raw, "services")
    return ServiceEntry(
        id=raw.get("id", ""),
        service_type=raw.get("service_type", ""),
        port=raw.get("port", 0),
        ttl=raw.get("ttl", None),
        origin=raw.get("origin", ""),
    )


def parse_config(data: dict[str, Any]) -> AgentConfig:
    """Build an AgentConfig from an already-parsed TOML document. Raises ValueError on a malformed layout."""
    agent_raw = _table(data.get("agent", {}), "agent")
    network_raw = _table(agent_raw.get("network", {}), "agent.network")
    services_raw = data.get("services", [])
    if not isinstance(services_raw, list):
        raise ValueError("[[services]] must be an array of tables")
    return AgentConfig(
        service_type=agent_raw.get("service_type", DEFAULT_SERVICE_TYPE),
        query_interval_s=agent_raw.get("query_interval_s", 10.0),
        advertise_interval_s=agent_raw.get("advertise_interval_s", 10.0),
        report_interval_s=agent_raw.get("report_interval_s", 10.0),
        log_dir=agent_raw.get("log_dir", "logs"),
        log_level=agent_raw.get("log_level", "INFO"),
        network=NetworkSettings(
            group=network_raw.get("group", MDNS_GROUP),
            port=network_raw.get("port", MDNS_PORT),
        ),
        services=[_parse_service(s) for s in services_raw],
    )


def load_config(path: Path) -> AgentConfig:
    """Load and validate a .toml agent config. Raises ValueError listing every problem."""
    with open(path, "rb") as f:
        data = tomllib.load(f)
    config = parse_config(data)
    errors = config.validate()
    if errors:
        raise ValueError(f"Invalid config {path}: " + "; ".join(errors))
    return config


def log_level_value(config: AgentConfig) -> int:
    return getattr(logging, config.log_level.upper(), logging.INFO)
