"""PeerBeacon error types."""
from __future__ import annotations


class MdnsError(Exception):
    """Base class for every error raised by the agent."""


class NetworkError(MdnsError):
    """Socket set-up, send or receive failure."""


class RegistryError(MdnsError):
    """A service could not be registered."""
