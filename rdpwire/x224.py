"""X.224 layer: negotiates the security protocol and frames data TPDUs."""

from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntEnum, IntFlag
from typing import Optional, Protocol

from rdpwire.layer import ByteStream, Layer, RdpTransport


class X224MessageType(IntEnum):
    X224_TPDU_CONNECTION_REQUEST = 0xE0
    X224_TPDU_CONNECTION_CONFIRM = 0xD0
    X224_TPDU_DISCONNECT_REQUEST = 0x80
    X224_TPDU_DATA = 0xF0
    X224_TPDU_ERROR = 0x70


class NegotiationType(IntEnum):
    TYPE_RDP_NEG_REQ = 0x01
    TYPE_RDP_NEG_RSP = 0x02
    TYPE_RDP_NEG_FAILURE = 0x03


class Protocols(IntFlag):
    PROTOCOL_RDP = 0x00000000
    PROTOCOL_SSL = 0x00000001
    PROTOCOL_HYBRID = 0x00000002
    PROTOCOL_RDSTLS = 0x00000004
    PROTOCOL_HYBRID_EX = 0x00000008


class NegotiationFailureCode(IntEnum):
    SSL_REQUIRED_BY_SERVER = 0x00000001
    SSL_NOT_ALLOWED_BY_SERVER = 0x00000002
    SSL_CERT_NOT_ON_SERVER = 0x00000003
    INCONSISTENT_FLAGS = 0x00000004
    HYBRID_REQUIRED_BY_SERVER = 0x00000005
    SSL_WITH_USER_AUTH_REQUIRED_BY_SERVER = 0x00000006


_DATA_HEADER = bytes([2, X224MessageType.X224_TPDU_DATA, 0x80])
_NEGOTIATION = struct.Struct("<BBHI")
_TPDU_HEADER = struct.Struct(">BBHHB")


class NlaConnector(Protocol):
    def connect_nla(self) -> None:
        ...


@dataclass
class Negotiation:
    """Negotiation request, response or failure block.

    ``value`` is the selected protocol, or the failure code when ``code``
    is a negotiation failure.
    """

    code: int = 0
    flag: int = 0
    value: int = 0
    length: int = 8

    SIZE = _NEGOTIATION.size

    @property
    def selected_protocol(self) -> int:
        return self.value

    @property
    def failure_code(self) -> int:
        return self.value

    @classmethod
    def read(cls, stream: ByteStream) -> "Negotiation":
        code, flag, length, value = _NEGOTIATION.unpack(stream.read(cls.SIZE))
        return cls(code=code, flag=flag, value=value, length=length)

    def to_bytes(self) -> bytes:
        return _NEGOTIATION.pack(self.code, self.flag, self.length, self.value)


def _read_tpdu_header(stream: ByteStream) -> tuple[int, int]:
    length, code, _, _, _ = _TPDU_HEADER.unpack(stream.read(_TPDU_HEADER.size))
    return length, code


def _write_tpdu(code: int, body: bytes, negotiation: Optional[Negotiation]) -> bytes:
    tail = body + (negotiation.to_bytes() if negotiation is not None else b"")
    length = _TPDU_HEADER.size - 1 + len(tail)
    if length > 0xFF:
        raise ValueError(f"X.224 TPDU of {length} bytes is too long")
    return _TPDU_HEADER.pack(length, code, 0, 0, 0) + tail


@dataclass
class ClientConnectionRequestPDU:
    """Connection request sent by the client."""

    cookie: bytes = b""
    protocol_neg: Optional[Negotiation] = None
    code: int = X224MessageType.X224_TPDU_CONNECTION_REQUEST

    @classmethod
    def read(cls, stream: ByteStream) -> "ClientConnectionRequestPDU":
        _, code = _read_tpdu_header(stream)
        cookie = b""
        if len(stream) > 14:
            rest = stream.remaining()
            end = rest.find(b"\r\n", 1)
            if end != -1:
                cookie = stream.read(end + 2)
        negotiation = Negotiation.read(stream) if len(stream) >= Negotiation.SIZE else None
        return cls(cookie=cookie, protocol_neg=negotiation, code=code)

    def to_bytes(self) -> bytes:
        return _write_tpdu(self.code, bytes(self.cookie), self.protocol_neg)


@dataclass
class ServerConnectionConfirm:
    """Connection confirm sent by the server."""

    protocol_neg: Optional[Negotiation] = None
    code: int = X224MessageType.X224_TPDU_CONNECTION_CONFIRM

    @classmethod
    def read(cls, stream: ByteStream) -> "ServerConnectionConfirm":
        _, code = _read_tpdu_header(stream)
        negotiation = Negotiation.read(stream) if len(stream) >= Negotiation.SIZE else None
        return cls(protocol_neg=negotiation, code=code)

    def to_bytes(self) -> bytes:
        return _write_tpdu(self.code, b"", self.protocol_neg)


class X224Layer(Layer):
    """Common part of the client and server X.224 automata."""

    def __init__(self, presentation: Optional[Layer], rdp_transport: RdpTransport):
        super().__init__(presentation)
        self._rdp_transport = rdp_transport
        self.requested_protocol = Protocols.PROTOCOL_SSL | Protocols.PROTOCOL_HYBRID
        self.selected_protocol = Protocols.PROTOCOL_SSL

    def recv_data(self, data: ByteStream) -> None:
        """Strip the data TPDU header and pass the payload upward."""
        header = data.read(len(_DATA_HEADER))
        if header[1] != X224MessageType.X224_TPDU_DATA:
            raise ValueError(f"expected an X.224 data TPDU, got type 0x{header[1]:02x}")
        if self.presentation is not None:
            self.presentation.recv(data)

    def send(self, data: bytes) -> None:
        super().send(_DATA_HEADER + bytes(data))


class ClientX224Layer(X224Layer):
    """Client automaton: sends the request and handles the confirm."""

    def __init__(self, presentation: Optional[Layer], rdp_transport: RdpTransport,
                 nla_connector: Optional[NlaConnector]):
        super().__init__(presentation, rdp_transport)
        self._nla_connector = nla_connector

    def connect(self) -> None:
        self._send_connection_request()

    def _send_connection_request(self) -> None:
        message = ClientConnectionRequestPDU(protocol_neg=Negotiation(
            code=NegotiationType.TYPE_RDP_NEG_REQ, value=int(self.requested_protocol)))
        self.transport_send(message.to_bytes())
        self.set_next_state(self._recv_connection_confirm)

    def transport_send(self, data: bytes) -> None:
        Layer.send(self, data)

    def _recv_connection_confirm(self, data: ByteStream) -> None:
        message = ServerConnectionConfirm.read(data)
        negotiation = message.protocol_neg
        if negotiation is not None and negotiation.code == NegotiationType.TYPE_RDP_NEG_FAILURE:
            self.close()
            return

        self.selected_protocol = (Protocols(negotiation.value) if negotiation is not None
                                  else Protocols.PROTOCOL_RDP)
        if self.selected_protocol & Protocols.PROTOCOL_HYBRID_EX:
            self.close()
            return

        self.set_next_state(self.recv_data)
        if self.selected_protocol == Protocols.PROTOCOL_RDP:
            if self.presentation is not None:
                self.presentation.connect()
        elif self.selected_protocol == Protocols.PROTOCOL_SSL:
            self._rdp_transport.start_tls()
            if self.presentation is not None:
                self.presentation.connect()
        else:
            self._rdp_transport.start_tls()
            if self._nla_connector is not None:
                self._nla_connector.connect_nla()


class ServerX224Layer(X224Layer):
    """Server automaton: waits for the request and answers it."""

    def __init__(self, presentation: Optional[Layer], rdp_transport: RdpTransport):
        super().__init__(presentation, rdp_transport)

    def connect(self) -> None:
        self.set_next_state(self._recv_connection_request)

    def _recv_connection_request(self, data: ByteStream) -> None:
        message = ClientConnectionRequestPDU.read(data)
        negotiation = message.protocol_neg
        self.requested_protocol = (Protocols(negotiation.value) if negotiation is not None
                                   else Protocols.PROTOCOL_RDP)

        if self._rdp_transport.is_tls_support():
            self.selected_protocol = self.requested_protocol & Protocols.PROTOCOL_SSL
        else:
            self.selected_protocol = self.requested_protocol & Protocols.PROTOCOL_RDP

        if self.selected_protocol >= Protocols.PROTOCOL_HYBRID:
            confirm = ServerConnectionConfirm(protocol_neg=Negotiation(
                code=NegotiationType.TYPE_RDP_NEG_FAILURE,
                value=NegotiationFailureCode.SSL_REQUIRED_BY_SERVER))
            Layer.send(self, confirm.to_bytes())
            self.close()
            return

        self._send_connection_confirm()

    def _send_connection_confirm(self) -> None:
        message = ServerConnectionConfirm(protocol_neg=Negotiation(
            code=NegotiationType.TYPE_RDP_NEG_RSP, value=int(self.selected_protocol)))
        Layer.send(self, message.to_bytes())
        if self.selected_protocol == Protocols.PROTOCOL_SSL:
            self._rdp_transport.start_tls()
        self.set_next_state(self.recv_data)
        if self.presentation is not None:
            self.presentation.connect()