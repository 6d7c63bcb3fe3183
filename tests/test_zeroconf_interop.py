"""Wire compatibility with the zeroconf mDNS implementation."""
import socket
import pytest
from zeroconf import DNSAddress, DNSIncoming, DNSOutgoing, DNSPointer, DNSQuestion, DNSService

from agent.service import MdnsService
from core.wire import ARecord, DomainName, PtrRecord, SrvRecord, decode, encode

CLASS_IN = 1
CLASS_IN_UNIQUE = 0x8001  # cache-flush bit set, as zeroconf sends unique records


@pytest.fixture
def service():
    sock = socket.socket(socket.AF_INET, socket.SOCK_DGRAM)
    sock.bind(("127.0.0.1", 0))
    sock.setblocking(False)
    svc = MdnsService(sock, local_ip_resolver=lambda: "192.168.1.20")
    svc.register_local_service("svc1.local", "_http._tcp.local", 8080, None, "host1.local")
    yield svc
    svc.close()


def test_decode_zeroconf_query(service):
    out = DNSOutgoing(0x0000)
    out.add_question(DNSQuestion("_http._tcp.local.", 12, CLASS_IN))
    (data,) = out.packets()

    msg = decode(data)
    assert not msg.is_response
    assert str(msg.questions[0].name) == "_http._tcp.local"
    assert msg.questions[0].qtype == 12

    responses = service.build_query_responses(msg, ("10.0.0.5", 5353))
    assert len(responses) == 1
    assert len(responses[0].answers) == 3


def test_decode_zeroconf_compressed_response(service):
    out = DNSOutgoing(0x8400)
    out.add_answer_at_time(DNSPointer("_http._tcp.local.", 12, CLASS_IN, 4500, "svc2._http._tcp.local."), 0)
    out.add_answer_at_time(
        DNSService("svc2._http._tcp.local.", 33, CLASS_IN_UNIQUE, 120, 0, 0, 9090, "host2.local."), 0
    )
    out.add_answer_at_time(
        DNSAddress("host2.local.", 1, CLASS_IN_UNIQUE, 120, socket.inet_aton("10.0.0.9")), 0
    )
    (data,) = out.packets()

    msg = decode(data)
    assert msg.is_response
    assert msg.answers == [
        PtrRecord(DomainName("_http._tcp.local"), 4500, DomainName("svc2._http._tcp.local")),
        SrvRecord(DomainName("svc2._http._tcp.local"), 120, 0, 0, 9090, DomainName("host2.local")),
        ARecord(DomainName("host2.local"), 120, bytes([10, 0, 0, 9])),
    ]

    service.process_response(msg)
    nodes = service.list_nodes()
    assert [(n.id, n.ip_address, n.ttl) for n in nodes] == [("host2.local", "10.0.0.9", 120)]


def test_zeroconf_parses_our_advertisement(service):
    incoming = DNSIncoming(encode(service.create_advertise_packet()))
    assert incoming.valid
    assert incoming.is_response()

    ptr, srv, addr = incoming.answers()
    assert isinstance(ptr, DNSPointer)
    assert ptr.name == "_http._tcp.local."
    assert ptr.alias == "svc1.local."
    assert ptr.ttl == 120

    assert isinstance(srv, DNSService)
    assert srv.server == "host1.local."
    assert srv.port == 8080
    assert (srv.priority, srv.weight) == (0, 0)

    assert isinstance(addr, DNSAddress)
    assert addr.name == "host1.local."
    assert addr.address == socket.inet_aton("192.168.1.20")


def test_zeroconf_parses_our_query(service):
    incoming = DNSIncoming(encode(service.build_query_packet("_http._tcp.local")))
    assert incoming.valid
    assert incoming.is_query()
    assert [(q.name, q.type) for q in incoming.questions] == [("_http._tcp.local.", 12)]
