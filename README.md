# rdpwire

`rdpwire` covers the lower layers of the Remote Desktop Protocol connection
stack in plain Python. It uses only the standard library.

- `rdpwire.layer`: `ByteStream`, a forward-only reader over bytes; `Layer`,
  the base class of every protocol layer; and the abstract `RdpTransport` and
  `FastPathLayer` interfaces.
- `rdpwire.asn1`: the BER and aligned PER helpers the other modules use, for
  example `ber_write_integer`, `ber_read_length` and `per_write_integer16`.
- `rdpwire.tpkt`: `TPKTLayer` splits an incoming byte stream into slow-path
  (X.224) and fast-path packets, and adds the framing to outgoing ones.
- `rdpwire.x224`: the connection request and confirm PDUs
  (`ClientConnectionRequestPDU`, `ServerConnectionConfirm`, `Negotiation`)
  and the `ClientX224Layer` and `ServerX224Layer` automata that negotiate
  RDP, SSL or NLA security.
- `rdpwire.gcc`: the conference create request and response
  (`ClientSettings`, `ServerSettings`) and their core, network and security
  data blocks.
- `rdpwire.mcs`: the T.125 automata `ClientMCSLayer` and `ServerMCSLayer`
  (connect initial and response, erect domain, attach user, channel join),
  and `MCSProxySender`, which binds an upper layer to one MCS channel.
- `rdpwire.certificate`: proprietary server certificates, which can be signed
  and checked with the published Terminal Services key, and X.509 chains.
  `read_x509_public_key` extracts the RSA key from a DER certificate.

## Installation

```
pip install rdpwire
```

To run the tests:

```
pip install "rdpwire[test]"
pytest
```

## Building a stack

Every layer is a `Layer`. A layer is created with its *presentation*, the
layer above it. The constructor then sets the presentation's `transport` to
the new layer. Received data goes up through `recv`, and `send` passes data
down. The bottom of the stack is a `TPKTLayer`. It writes to an
`RdpTransport`, which you implement to move the bytes:

```python
from rdpwire.layer import RdpTransport


class SocketTransport(RdpTransport):
    def __init__(self, sock):
        self.sock = sock

    def transport_send(self, data):
        self.sock.sendall(bytes(data))

    def transport_close(self):
        self.sock.close()

    def start_tls(self):
        return False

    def is_tls_support(self):
        return False
```

Build the stack from the top down. Call `connect()` on the `TPKTLayer`, then
pass the bytes read from the socket to `TPKTLayer.data_received`:

```python
from rdpwire.mcs import ServerMCSLayer
from rdpwire.tpkt import TPKTLayer
from rdpwire.x224 import ServerX224Layer

transport = SocketTransport(sock)
mcs = ServerMCSLayer(security_layer)
x224 = ServerX224Layer(mcs, transport)
tpkt = TPKTLayer(x224, None, transport)
tpkt.connect()

while chunk := sock.recv(8192):
    tpkt.data_received(chunk)
```

When plain RDP security is negotiated, `ServerMCSLayer.connect` calls
`get_certificate()` on its presentation layer. It puts the
`ServerCertificate` that comes back into the server security data.
`ClientX224Layer` takes an optional object with a `connect_nla()` method,
which it calls when the server selects NLA.

## Working with PDUs directly

You can also use the structures without any layers:

```python
from rdpwire.layer import ByteStream
from rdpwire.x224 import ClientConnectionRequestPDU

pdu = ClientConnectionRequestPDU.read(ByteStream(raw_bytes))
print(pdu.cookie, pdu.protocol_neg)
```

```python
from rdpwire.gcc import ClientSettings

packet = ClientSettings().write_conference_create_request()
```

```python
from rdpwire.certificate import ProprietaryServerCertificate, RSAPublicKey

cert = ProprietaryServerCertificate(public_key_blob=RSAPublicKey(modulus=modulus_bytes))
cert.sign()
assert cert.verify()
```

## Errors

Malformed input raises an exception:

- `rdpwire.asn1.Asn1Error` for bad BER or PER encoding and for unexpected
  MCS PDUs.
- `rdpwire.certificate.CertificateError` for certificates that cannot be read
  or written.
- `EOFError` from `ByteStream` when data runs out.

Both `Asn1Error` and `CertificateError` are subclasses of `ValueError`.

## What it does not do

`rdpwire` stops at the MCS layer, and these are left to the caller:

- It opens no sockets and provides no TLS. `RdpTransport.start_tls` is left
  to you.
- There is no RDP security layer: no encryption, licensing or client info.
- NLA/CredSSP authentication is not included.
- Fast-path PDUs are framed and handed to a `FastPathLayer`, but their
  contents are not decoded.
- Static virtual channels get ids and are joined, but only the global
  channel has a layer attached.