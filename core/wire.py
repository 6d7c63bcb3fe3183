"""PeerBeacon DNS wire format: names, messages and the A/PTR/SRV records mDNS service discovery uses.

Layout follows RFC 1035 section 4. Outgoing names are never compressed.
Incoming names may carry backward compression pointers, which is what
standard responders send; anything else that does not fit the buffer is a
DecodeError. The decoder never indexes past the end of its input.
"""
from __future__ import annotations
import ipaddress
import struct
from dataclasses import dataclass, field
from typing import ClassVar, Iterable, Optional, Union

from core.errors import MdnsError

TYPE_A = 1
TYPE_PTR = 12
TYPE_SRV = 33
CLASS_IN = 1

FLAG_QR = 0x8000
FLAG_AA = 0x0400
FLAG_TC = 0x0200
FLAGS_QUERY = 0x0000
FLAGS_RESPONSE = FLAG_QR | FLAG_AA  # 0x8400

MAX_LABEL_LEN = 63
MAX_NAME_LEN = 255

_HEADER = struct.Struct(">HHHHHH")
_QUESTION_TAIL = struct.Struct(">HH")
_RECORD_HEADER = struct.Struct(">HHIH")
_SRV_FIXED = struct.Struct(">HHH")

HEADER_LEN = _HEADER.size


class DecodeError(MdnsError):
    """Inbound bytes are not a well-formed DNS message."""


def _check_uint(value: int, bits: int, what: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or not 0 <= value < (1 << bits):
        raise ValueError(f"{what} must be an unsigned {bits}-bit integer, got {value!r}")


class DomainName:
    """
    A validated, immutable DNS name.

    Built from a dotted string; one trailing dot is accepted and dropped, so
    "host.local." and "host.local" are the same name. Labels keep their case
    and compare case sensitively. "" (or ".") is the root name.
    """

    __slots__ = ("_labels",)

    def __init__(self, name: str):
        if name.endswith("."):
            name = name[:-1]
        self._labels = self._check(tuple(name.split(".")) if name else ())

    @classmethod
    def from_labels(cls, labels: Iterable[str]) -> DomainName:
        obj = cls.__new__(cls)
        obj._labels = cls._check(tuple(labels))
        return obj

    @staticmethod
    def _check(labels: tuple[str, ...]) -> tuple[str, ...]:
        total = 1  # root terminator
        for label in labels:
            raw = label.encode("utf-8")
            if not raw:
                raise ValueError("DNS name contains an empty label")
            if len(raw) > MAX_LABEL_LEN:
                raise ValueError(f"DNS label longer than {MAX_LABEL_LEN} bytes: {label[:20]!r}...")
            total += 1 + len(raw)
        if total > MAX_NAME_LEN:
            raise ValueError(f"DNS name longer than {MAX_NAME_LEN} bytes")
        return labels

    @property
    def labels(self) -> tuple[str, ...]:
        return self._labels

    def wire(self) -> bytes:
        """Uncompressed wire form: length-prefixed labels plus a zero byte."""
        out = bytearray()
        for label in self._labels:
            raw = label.encode("utf-8")
            out.append(len(raw))
            out += raw
        out.append(0)
        return bytes(out)

    def __str__(self) -> str:
        return ".".join(self._labels)

    def __repr__(self) -> str:
        return f"DomainName({str(self)!r})"

    def __eq__(self, other) -> bool:
        if isinstance(other, DomainName):
            return self._labels == other._labels
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._labels)


@dataclass(frozen=True)
class Question:
    name: DomainName
    qtype: int = TYPE_PTR
    qclass: int = CLASS_IN

    def __post_init__(self) -> None:
        _check_uint(self.qtype, 16, "qtype")
        _check_uint(self.qclass, 16, "qclass")


@dataclass(frozen=True)
class ARecord:
    name: DomainName
    ttl: int
    ip: bytes

    rtype: ClassVar[int] = TYPE_A

    def __post_init__(self) -> None:
        _check_uint(self.ttl, 32, "ttl")
        ip = bytes(self.ip)
        if len(ip) != 4:
            raise ValueError(f"A record address must be 4 bytes, got {len(ip)}")
        object.__setattr__(self, "ip", ip)

    @classmethod
    def from_address(cls, name: DomainName, ttl: int, address: str) -> ARecord:
        return cls(name, ttl, ipaddress.IPv4Address(address).packed)

    @property
    def address(self) -> str:
        """Dotted-quad form of the address."""
        return str(ipaddress.IPv4Address(self.ip))

    def rdata(self) -> bytes:
        return self.ip


@dataclass(frozen=True)
class PtrRecord:
    name: DomainName
    ttl: int
    ptr_name: DomainName

    rtype: ClassVar[int] = TYPE_PTR

    def __post_init__(self) -> None:
        _check_uint(self.ttl, 32, "ttl")

    def rdata(self) -> bytes:
        return self.ptr_name.wire()


@dataclass(frozen=True)
class SrvRecord:
    name: DomainName
    ttl: int
    priority: int
    weight: int
    port: int
    target: DomainName

    rtype: ClassVar[int] = TYPE_SRV

    def __post_init__(self) -> None:
        _check_uint(self.ttl, 32, "ttl")
        _check_uint(self.priority, 16, "priority")
        _check_uint(self.weight, 16, "weight")
        _check_uint(self.port, 16, "port")

    def rdata(self) -> bytes:
        return _SRV_FIXED.pack(self.priority, self.weight, self.port) + self.target.wire()


ResourceRecord = Union[ARecord, PtrRecord, SrvRecord]


@dataclass
class Message:
    flags: int = FLAGS_QUERY
    questions: list[Question] = field(default_factory=list)
    answers: list[ResourceRecord] = field(default_factory=list)
    authorities: list[ResourceRecord] = field(default_factory=list)
    additionals: list[ResourceRecord] = field(default_factory=list)
    id: int = 0

    @property
    def is_response(self) -> bool:
        return bool(self.flags & FLAG_QR)

    @property
    def is_authoritative(self) -> bool:
        return bool(self.flags & FLAG_AA)

    @property
    def is_truncated(self) -> bool:
        return bool(self.flags & FLAG_TC)


# ---- Encoding ----

def _write_record(out: bytearray, record: ResourceRecord) -> None:
    rdata = record.rdata()
    out += record.name.wire()
    out += _RECORD_HEADER.pack(record.rtype, CLASS_IN, record.ttl, len(rdata))
    out += rdata


def encode(message: Message) -> bytes:
    """Serialize a message; sections keep their order, nothing is compressed."""
    _check_uint(message.id, 16, "message id")
    _check_uint(message.flags, 16, "flags")
    sections = (message.questions, message.answers, message.authorities, message.additionals)
    for section in sections:
        if len(section) > 0xFFFF:
            raise ValueError("too many entries in one message section")
    out = bytearray(_HEADER.pack(message.id, message.flags, *(len(s) for s in sections)))
    for question in message.questions:
        out += question.name.wire()
        out += _QUESTION_TAIL.pack(question.qtype, question.qclass)
    for section in sections[1:]:
        for record in section:
            _write_record(out, record)
    return bytes(out)


# ---- Decoding ----

def read_name(data: bytes, offset: int) -> tuple[DomainName, int]:
    """Read a name at offset and return (name, offset just past it)."""
    labels: list[str] = []
    total = 1
    pos = offset
    limit = offset  # every pointer must land strictly below this
    resume: Optional[int] = None
    while True:
        if pos >= len(data):
            raise DecodeError("name runs past the end of the packet")
        length = data[pos]
        if length == 0:
            pos += 1
            break
        if length & 0xC0 == 0xC0:
            if pos + 1 >= len(data):
                raise DecodeError("truncated compression pointer")
            target = ((length & 0x3F) << 8) | data[pos + 1]
            if target >= limit:
                raise DecodeError("compression pointer does not point backwards")
            if resume is None:
                resume = pos + 2
            limit = pos = target
            continue
        if length > MAX_LABEL_LEN:
            raise DecodeError(f"label length {length} exceeds {MAX_LABEL_LEN}")
        pos += 1
        if pos + length > len(data):
            raise DecodeError("label runs past the end of the packet")
        total += 1 + length
        if total > MAX_NAME_LEN:
            raise DecodeError(f"name longer than {MAX_NAME_LEN} bytes")
        try:
            labels.append(data[pos:pos + length].decode("utf-8"))
        except UnicodeDecodeError:
            raise DecodeError("label is not valid UTF-8") from None
        pos += length
    return DomainName.from_labels(labels), (resume if resume is not None else pos)


def _read_question(data: bytes, offset: int) -> tuple[Question, int]:
    name, offset = read_name(data, offset)
    if offset + _QUESTION_TAIL.size > len(data):
        raise DecodeError("truncated question")
    qtype, qclass = _QUESTION_TAIL.unpack_from(data, offset)
    return Question(name, qtype, qclass), offset + _QUESTION_TAIL.size


def _read_record(data: bytes, offset: int) -> tuple[Optional[ResourceRecord], int]:
    """Read one record; unknown types come back as None, skipped by rdata length."""
    name, offset = read_name(data, offset)
    if offset + _RECORD_HEADER.size > len(data):
        raise DecodeError("truncated record header")
    rtype, _rclass, ttl, rdlength = _RECORD_HEADER.unpack_from(data, offset)
    offset += _RECORD_HEADER.size
    end = offset + rdlength
    if end > len(data):
        raise DecodeError(f"rdata length {rdlength} overruns the packet")

    if rtype == TYPE_A:
        if rdlength != 4:
            raise DecodeError(f"A record rdata must be 4 bytes, got {rdlength}")
        return ARecord(name, ttl, data[offset:end]), end
    if rtype == TYPE_PTR:
        ptr_name, pos = read_name(data, offset)
        record: ResourceRecord = PtrRecord(name, ttl, ptr_name)
    elif rtype == TYPE_SRV:
        if rdlength < _SRV_FIXED.size + 1:
            raise DecodeError(f"SRV record rdata too short ({rdlength} bytes)")
        priority, weight, port = _SRV_FIXED.unpack_from(data, offset)
        target, pos = read_name(data, offset + _SRV_FIXED.size)
        record = SrvRecord(name, ttl, priority, weight, port, target)
    else:
        return None, end
    if pos != end:
        raise DecodeError("rdata length does not match the record content")
    return record, end


def decode(data: bytes) -> Message:
    """Parse a raw datagram. Raises DecodeError on any malformed input."""
    data = bytes(data)
    if len(data) < HEADER_LEN:
        raise DecodeError(f"packet shorter than the {HEADER_LEN}-byte header")
    msg_id, flags, qdcount, ancount, nscount, arcount = _HEADER.unpack_from(data, 0)
    message = Message(flags=flags, id=msg_id)
    offset = HEADER_LEN
    for _ in range(qdcount):
        question, offset = _read_question(data, offset)
        message.questions.append(question)
    for section, count in (
        (message.answers, ancount),
        (message.authorities, nscount),
        (message.additionals, arcount),
    ):
        for _ in range(count):
            record, offset = _read_record(data, offset)
            if record is not None:
                section.append(record)
    return message
