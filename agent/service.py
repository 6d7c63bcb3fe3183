"""PeerBeacon mDNS service: advertises, answers, queries and listens over one multicast socket."""
from __future__ import annotations
import asyncio
import ipaddress
import logging
import socket
import time
from pathlib import Path
from typing import Any, Callable, Optional

from core.config import MDNS_GROUP, MDNS_PORT
from core.errors import MdnsError, NetworkError, RegistryError
from core.logging_utils import log_jsonl
from core.registry import MdnsRegistry, NodeRecord, ServiceRecord
from core.wire import (
    ARecord, DecodeError, DomainName, Message, PtrRecord, Question, ResourceRecord, SrvRecord,
    CLASS_IN, FLAGS_QUERY, FLAGS_RESPONSE, TYPE_PTR,
    decode, encode,
)
from agent.netutil import create_multicast_socket, get_local_ipv4

logger = logging.getLogger("peerbeacon.agent.service")

RECV_BUFFER = 9000  # RFC 6762 upper bound for an mDNS datagram
DEFAULT_REPORT_INTERVAL_S = 10.0


def ipv4_octets(address: Any) -> Optional[bytes]:
    """Packed form of an IPv4 address string, or None for anything else (IPv6 included)."""
    try:
        return ipaddress.IPv4Address(address).packed
    except ValueError:
        return None


def service_records(service: ServiceRecord, ip: Optional[bytes]) -> list[ResourceRecord]:
    """PTR, SRV and A records for one service, in that order. No A record when ip is None."""
    ttl = service.effective_ttl
    records: list[ResourceRecord] = [
        PtrRecord(DomainName(service.service_type), ttl, DomainName(service.id)),
        SrvRecord(DomainName(service.id), ttl, service.priority, service.weight,
                  service.port, DomainName(service.origin)),
    ]
    if ip is not None:
        records.append(ARecord(DomainName(service.origin), ttl, ip))
    return records


class MdnsService:
    """
    Owns the multicast socket and the registry, and runs the four
    activities (advertiser, querier, listener, reporter) on one event loop.
    The registry is the only state the activities share.
    """

    def __init__(
        self,
        sock: socket.socket,
        registry: Optional[MdnsRegistry] = None,
        group: str = MDNS_GROUP,
        port: int = MDNS_PORT,
        local_ip_resolver: Callable[[], Optional[str]] = get_local_ipv4,
        log_dir: Optional[Path] = None,
        report_interval_s: float = DEFAULT_REPORT_INTERVAL_S,
    ):
        self._sock = sock
        self.registry = registry if registry is not None else MdnsRegistry()
        self.destination = (group, port)
        self._resolve_local_ip = local_ip_resolver
        self.log_dir = log_dir
        self.report_interval_s = report_interval_s
        # One lock per direction: a pending receive must never hold up a send
        self._send_lock = asyncio.Lock()
        self._recv_lock = asyncio.Lock()
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping: Optional[asyncio.Event] = None
        self._stop_requested = False
        self._tasks: list[asyncio.Task] = []

    @classmethod
    def create(cls, group: str = MDNS_GROUP, port: int = MDNS_PORT, **kwargs) -> MdnsService:
        """Bring up the multicast socket and wrap it. Raises NetworkError."""
        return cls(create_multicast_socket(group, port), group=group, port=port, **kwargs)

    @property
    def socket(self) -> socket.socket:
        return self._sock

    def close(self) -> None:
        self._sock.close()

    # ---- Registry boundary ----

    def register_local_service(self, id: str, service_type: str, port: int,
                               ttl: Optional[int], origin: str) -> None:
        """Register or replace a local service. Raises RegistryError."""
        try:
            service = ServiceRecord(id=id, service_type=service_type, port=port, ttl=ttl, origin=origin)
            self.registry.add_service(service)
        except (ValueError, TypeError) as e:
            raise RegistryError(f"Cannot register service '{id}': {e}") from e
        logger.info("Registered local service %s (%s) on %s:%d", id, service_type, origin, port)

    def list_services(self) -> list[ServiceRecord]:
        return self.registry.list_services()

    def list_nodes(self) -> list[NodeRecord]:
        return self.registry.list_nodes()

    # ---- Packet construction ----

    def create_advertise_packet(self) -> Message:
        """Unsolicited response describing every local service, A records carrying our own address."""
        services = self.registry.list_services()
        packet = Message(flags=FLAGS_RESPONSE)
        if not services:
            return packet

        local_ip = self._resolve_local_ip()
        ip = ipv4_octets(local_ip) if local_ip else None
        if ip is None:
            raise MdnsError("Failed to determine the local IPv4 address")

        for service in services:
            logger.debug("Including service in advertisement: %s", service)
            packet.answers.extend(service_records(service, ip))
        return packet

    def build_query_packet(self, service_type: str) -> Message:
        return Message(
            flags=FLAGS_QUERY,
            questions=[Question(DomainName(service_type), TYPE_PTR, CLASS_IN)],
        )

    def build_query_responses(self, packet: Message, src: Any) -> list[Message]:
        """
        One response per PTR/IN question that names a registered service type.

        The question name, rendered without a trailing dot, must equal the
        registered service_type string exactly. The A records carry the address
        the query came from, i.e. the interface the asker can reach us on.
        """
        ip = ipv4_octets(src[0]) if src else None
        responses = []
        for question in packet.questions:
            logger.debug("Received question: %s type=%d class=%d",
                         question.name, question.qtype, question.qclass)
            if question.qtype != TYPE_PTR or question.qclass != CLASS_IN:
                continue
            asked = str(question.name)
            matching = [s for s in self.registry.list_services() if s.service_type == asked]
            if not matching:
                logger.debug("No matching service for '%s'", question.name)
                continue
            if ip is None:
                logger.warning("Query source %s is not IPv4; answering without A records", src)

            response = Message(flags=FLAGS_RESPONSE)
            for service in matching:
                response.answers.extend(service_records(service, ip))
            responses.append(response)
        return responses

    # ---- Inbound handling ----

    def process_response(self, packet: Message, src: Any = None) -> list[NodeRecord]:
        """Record every A record (answer or additional section) as a discovered node."""
        discovered = []
        for record in (*packet.answers, *packet.additionals):
            if not isinstance(record, ARecord):
                continue
            node = NodeRecord(id=str(record.name), ip_address=record.address, ttl=record.ttl)
            self.registry.add_node(node)
            discovered.append(node)
            logger.debug("Discovered node %s -> %s (from %s)", node.id, node.ip_address, src)
        return discovered

    async def process_query(self, packet: Message, src: Any) -> int:
        """Answer a query; returns how many response packets went out."""
        sent = 0
        for response in self.build_query_responses(packet, src):
            try:
                await self.send_packet(response)
            except NetworkError as e:
                logger.error("Failed to send query response to %s: %s", src, e)
                continue
            sent += 1
            logger.info("Answered query from %s with %d answers", src, len(response.answers))
        return sent

    async def handle_datagram(self, data: bytes, src: Any) -> None:
        try:
            packet = decode(data)
        except DecodeError as e:
            logger.warning("Discarding malformed packet from %s: %s", src, e)
            return
        if packet.is_response:
            self.process_response(packet, src)
        else:
            await self.process_query(packet, src)

    # ---- Socket I/O ----

    async def send_packet(self, packet: Message) -> None:
        data = encode(packet)
        loop = asyncio.get_running_loop()
        try:
            async with self._send_lock:
                await loop.sock_sendto(self._sock, data, self.destination)
        except OSError as e:
            raise NetworkError(f"Failed to send mDNS packet: {e}") from e
        logger.debug("Sent mDNS packet with %d answers (%d bytes)", len(packet.answers), len(data))

    async def _recvfrom(self) -> tuple[bytes, Any]:
        loop = asyncio.get_running_loop()
        async with self._recv_lock:
            return await loop.sock_recvfrom(self._sock, RECV_BUFFER)

    async def advertise_services(self) -> bool:
        """Multicast the advertisement. An empty registry sends nothing and returns False."""
        packet = self.create_advertise_packet()
        if not packet.answers:
            logger.debug("No local services to advertise")
            return False
        await self.send_packet(packet)
        logger.info("Advertised %d answers", len(packet.answers))
        return True

    async def send_query(self, service_type: str) -> None:
        await self.send_packet(self.build_query_packet(service_type))
        logger.debug("Sent PTR query for %s", service_type)

    async def listen(self) -> None:
        """Receive and dispatch until the socket fails. Bad packets never end the loop."""
        while True:
            try:
                data, src = await self._recvfrom()
            except OSError as e:
                raise NetworkError(f"Receive failed: {e}") from e
            logger.debug("Packet received from %s with size %d", src, len(data))
            try:
                await self.handle_datagram(data, src)
            except Exception:
                logger.exception("Error processing packet from %s", src)

    def report_registry(self) -> dict[str, Any]:
        """Log the registry and, when log_dir is set, append it to the JSONL log."""
        snapshot = self.registry.snapshot()
        logger.info("Registry: %d services, %d nodes",
                    len(snapshot["services"]), len(snapshot["nodes"]))
        for node in snapshot["nodes"]:
            logger.debug("  node %s -> %s (ttl=%s)", node["id"], node["ip_address"], node["ttl"])
        if self.log_dir is not None:
            log_jsonl(self.log_dir, {"type": "registry", "ts_utc_ms": int(time.time() * 1000), **snapshot})
        return snapshot

    # ---- Supervision ----

    async def _stopped_within(self, seconds: float) -> bool:
        """Sleep up to seconds; True as soon as a stop is requested."""
        try:
            await asyncio.wait_for(self._stopping.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True

    async def _advertise_loop(self, interval: float) -> None:
        while not await self._stopped_within(interval):
            try:
                await self.advertise_services()
            except MdnsError as e:
                logger.error("Advertisement failed: %s", e)

    async def _query_loop(self, service_type: str, interval: float) -> None:
        while not await self._stopped_within(interval):
            logger.info("Sending periodic query for service type: %s", service_type)
            try:
                await self.send_query(service_type)
            except NetworkError as e:
                logger.error("Failed to send periodic query: %s", e)

    async def _report_loop(self, interval: float) -> None:
        while not await self._stopped_within(interval):
            try:
                self.report_registry()
            except OSError as e:
                logger.warning("Failed to write registry log: %s", e)

    @staticmethod
    def _log_task_exit(task: asyncio.Task) -> None:
        if not task.cancelled() and task.exception() is not None:
            logger.error("Task %s stopped: %s", task.get_name(), task.exception())

    async def run(self, service_type: str, query_interval: float, advertise_interval: float) -> None:
        """
        Run advertiser, querier, listener and reporter until stop() is called.

        A receive failure is fatal to the listener; the other activities are
        then cancelled and the NetworkError is re-raised here.
        """
        self.build_query_packet(service_type)  # reject a bad type before anything starts
        self._loop = asyncio.get_running_loop()
        self._stopping = asyncio.Event()
        if self._stop_requested:
            self._stopping.set()

        listener = asyncio.create_task(self.listen(), name="mdns-listen")
        self._tasks = [
            asyncio.create_task(self._advertise_loop(advertise_interval), name="mdns-advertise"),
            asyncio.create_task(self._query_loop(service_type, query_interval), name="mdns-query"),
            listener,
            asyncio.create_task(self._report_loop(self.report_interval_s), name="mdns-report"),
        ]
        for task in self._tasks:
            task.add_done_callback(self._log_task_exit)
        stop_waiter = asyncio.create_task(self._stopping.wait())
        logger.info("All tasks are running")

        try:
            await asyncio.wait({listener, stop_waiter}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            stop_waiter.cancel()
            self._stopping.set()
            for task in self._tasks:
                task.cancel()
            await asyncio.gather(*self._tasks, stop_waiter, return_exceptions=True)
            self._tasks = []
            self._stop_requested = False

        if not listener.cancelled() and listener.exception() is not None:
            raise listener.exception()
        logger.info("mDNS service stopped")

    def stop(self) -> None:
        """Ask run() to return. Safe to call from any thread."""
        self._stop_requested = True
        if self._loop is not None and self._stopping is not None and not self._loop.is_closed():
            self._loop.call_soon_threadsafe(self._stopping.set)
