"""PeerBeacon multicast socket set-up and local address discovery."""
from __future__ import annotations
import contextlib
import ipaddress
import logging
import socket
import struct
from typing import Optional

from zeroconf import get_all_addresses

from core.config import MDNS_GROUP, MDNS_PORT
from core.errors import NetworkError

logger = logging.getLogger("peerbeacon.agent.net")

MULTICAST_TTL = 255


def create_multicast_socket(group: str = MDNS_GROUP, port: int = MDNS_PORT) -> socket.socket:
    """Non-blocking UDP socket bound to the wildcard address and joined to the mDNS group."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM, socket.IPPROTO_UDP)
    try:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        # Several local agents may share the port
        if hasattr(socket, "SO_REUSEPORT"):
            with contextlib.suppress(OSError):
                sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEPORT, 1)
        sock.bind(("", port))

        mreq = struct.pack("4s4s", socket.inet_aton(group), socket.inet_aton("0.0.0.0"))
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_ADD_MEMBERSHIP, mreq)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_TTL, MULTICAST_TTL)
        sock.setsockopt(socket.IPPROTO_IP, socket.IP_MULTICAST_LOOP, 1)
        sock.setblocking(False)
    except OSError as e:
        sock.close()
        raise NetworkError(f"Failed to set up multicast socket on {group}:{port}: {e}") from e
    logger.info("Multicast socket set up on %s:%d", group, port)
    return sock


def get_local_ipv4() -> Optional[str]:
    """
    Best guess at the outbound-facing IPv4 address.

    Connecting a UDP socket sends nothing but makes the kernel pick the
    route's source address. Hosts with no default route fall back to the
    first non-loopback interface address.
    """
    s = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    try:
        s.connect(("8.8.8.8", 80))
        return s.getsockname()[0]
    except OSError as e:
        logger.debug("No default route for local address lookup: %s", e)
    finally:
        s.close()

    for address in sorted(get_all_addresses()):
        if not ipaddress.IPv4Address(address).is_loopback:
            return address
    return None
