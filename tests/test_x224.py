import pytest

from rdpwire.layer import ByteStream, Layer, RdpTransport
from rdpwire.x224 import (
    ClientConnectionRequestPDU,
    ClientX224Layer,
    Negotiation,
    NegotiationFailureCode,
    NegotiationType,
    Protocols,
    ServerConnectionConfirm,
    ServerX224Layer,
    X224Layer,
)

REQUEST_SSL_HYBRID = bytes.fromhex("0ee00000000000" "0100080003000000")


class FakeTransport(RdpTransport):
    def __init__(self, tls=True):
        self.tls = tls
        self.sent = []
        self.closed = False
        self.tls_started = 0

    def transport_send(self, data):
        self.sent.append(data)

    def transport_close(self):
        self.closed = True

    def start_tls(self):
        self.tls_started += 1
        return True

    def is_tls_support(self):
        return self.tls


class Lower(Layer):
    def __init__(self, presentation):
        super().__init__(presentation)
        self.sent = []
        self.closed = False

    def send(self, data):
        self.sent.append(bytes(data))

    def close(self):
        self.closed = True


class Upper(Layer):
    def __init__(self):
        super().__init__(None)
        self.connected = 0
        self.received = []
        self.set_next_state(lambda data: self.received.append(data.remaining()))

    def connect(self):
        self.connected += 1


class Nla:
    def __init__(self):
        self.calls = 0

    def connect_nla(self):
        self.calls += 1


def make_client():
    upper = Upper()
    rdp = FakeTransport()
    nla = Nla()
    layer = ClientX224Layer(upper, rdp, nla)
    lower = Lower(layer)
    return layer, upper, lower, rdp, nla


def make_server(tls):
    upper = Upper()
    rdp = FakeTransport(tls=tls)
    layer = ServerX224Layer(upper, rdp)
    lower = Lower(layer)
    return layer, upper, lower, rdp


def confirm_bytes(code, value):
    return ServerConnectionConfirm(protocol_neg=Negotiation(code=code, value=value)).to_bytes()


def test_negotiation_round_trip():
    neg = Negotiation(code=NegotiationType.TYPE_RDP_NEG_RSP, flag=1, value=8)
    again = Negotiation.read(ByteStream(neg.to_bytes()))
    assert again == neg
    assert len(neg.to_bytes()) == 8


def test_connection_request_wire_bytes():
    pdu = ClientConnectionRequestPDU(protocol_neg=Negotiation(
        code=NegotiationType.TYPE_RDP_NEG_REQ, value=3))
    assert pdu.to_bytes() == REQUEST_SSL_HYBRID


def test_connection_request_with_cookie_round_trip():
    cookie = b"Cookie: mstshash=user\r\n"
    pdu = ClientConnectionRequestPDU(cookie=cookie, protocol_neg=Negotiation(
        code=NegotiationType.TYPE_RDP_NEG_REQ, value=1))
    parsed = ClientConnectionRequestPDU.read(ByteStream(pdu.to_bytes()))
    assert parsed.cookie == cookie
    assert parsed.protocol_neg.selected_protocol == 1


def test_connection_request_without_negotiation():
    parsed = ClientConnectionRequestPDU.read(ByteStream(ClientConnectionRequestPDU().to_bytes()))
    assert parsed.protocol_neg is None
    assert parsed.cookie == b""


def test_connection_confirm_round_trip():
    data = confirm_bytes(NegotiationType.TYPE_RDP_NEG_FAILURE, 5)
    parsed = ServerConnectionConfirm.read(ByteStream(data))
    assert parsed.protocol_neg.failure_code == 5
    assert parsed.to_bytes() == data


def test_client_connect_sends_request():
    layer, _, lower, _, _ = make_client()
    layer.connect()
    assert lower.sent == [REQUEST_SSL_HYBRID]


def test_client_ssl_confirm_starts_tls_and_connects():
    layer, upper, _, rdp, _ = make_client()
    layer.connect()
    layer.recv(ByteStream(confirm_bytes(NegotiationType.TYPE_RDP_NEG_RSP, 1)))
    assert rdp.tls_started == 1
    assert upper.connected == 1
    assert layer.selected_protocol == Protocols.PROTOCOL_SSL
    layer.recv(ByteStream(b"\x02\xf0\x80payload"))
    assert upper.received == [b"payload"]


def test_client_failure_closes():
    layer, upper, lower, _, _ = make_client()
    layer.connect()
    layer.recv(ByteStream(confirm_bytes(NegotiationType.TYPE_RDP_NEG_FAILURE,
                                        NegotiationFailureCode.SSL_REQUIRED_BY_SERVER)))
    assert lower.closed
    assert upper.connected == 0


def test_client_without_negotiation_selects_rdp():
    layer, upper, _, rdp, _ = make_client()
    layer.connect()
    layer.recv(ByteStream(ServerConnectionConfirm().to_bytes()))
    assert layer.selected_protocol == Protocols.PROTOCOL_RDP
    assert rdp.tls_started == 0
    assert upper.connected == 1


def test_client_hybrid_ex_closes():
    layer, upper, lower, _, _ = make_client()
    layer.connect()
    layer.recv(ByteStream(confirm_bytes(NegotiationType.TYPE_RDP_NEG_RSP,
                                        Protocols.PROTOCOL_HYBRID_EX)))
    assert lower.closed
    assert upper.connected == 0


def test_client_hybrid_uses_nla():
    layer, upper, _, rdp, nla = make_client()
    layer.connect()
    layer.recv(ByteStream(confirm_bytes(NegotiationType.TYPE_RDP_NEG_RSP,
                                        Protocols.PROTOCOL_HYBRID)))
    assert nla.calls == 1
    assert rdp.tls_started == 1
    assert upper.connected == 0


def test_server_without_tls_selects_rdp():
    layer, upper, lower, rdp = make_server(tls=False)
    layer.connect()
    layer.recv(ByteStream(REQUEST_SSL_HYBRID))
    assert layer.requested_protocol == Protocols.PROTOCOL_SSL | Protocols.PROTOCOL_HYBRID
    assert layer.selected_protocol == Protocols.PROTOCOL_RDP
    confirm = ServerConnectionConfirm.read(ByteStream(lower.sent[0]))
    assert confirm.protocol_neg.code == NegotiationType.TYPE_RDP_NEG_RSP
    assert confirm.protocol_neg.selected_protocol == Protocols.PROTOCOL_RDP
    assert rdp.tls_started == 0
    assert upper.connected == 1


def test_server_with_tls_selects_ssl():
    layer, upper, lower, rdp = make_server(tls=True)
    layer.connect()
    layer.recv(ByteStream(REQUEST_SSL_HYBRID))
    confirm = ServerConnectionConfirm.read(ByteStream(lower.sent[0]))
    assert confirm.protocol_neg.selected_protocol == Protocols.PROTOCOL_SSL
    assert rdp.tls_started == 1
    assert upper.connected == 1


def test_send_prepends_data_header():
    layer, _, lower, _, _ = make_client()
    layer.send(b"abc")
    assert lower.sent == [b"\x02\xf0\x80abc"]


def test_recv_data_rejects_other_tpdu():
    upper = Upper()
    layer = X224Layer(upper, FakeTransport())
    with pytest.raises(ValueError):
        layer.recv_data(ByteStream(b"\x02\xd0\x80xyz"))
    assert upper.received == []