"""Server certificates: the proprietary signed key blob and X.509 chains."""

from __future__ import annotations

import hashlib
import struct
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import IntEnum
from typing import Iterator, Optional

from rdpwire.asn1 import (
    ber_read_bit_string,
    ber_read_contextual_tag,
    ber_read_integer,
    ber_read_integer_length,
    ber_read_sequence_tag,
)
from rdpwire.layer import ByteStream


class CertificateError(ValueError):
    """Raised when a certificate cannot be read, written or used."""


class CertificateType(IntEnum):
    CERT_CHAIN_VERSION_1 = 0x00000001
    CERT_CHAIN_VERSION_2 = 0x00000002
    CERT_CHAIN_VERSION_MASK = 0x7FFFFFFF


SIGNATURE_ALG_RSA = 0x00000001
KEY_EXCHANGE_ALG_RSA = 0x00000001
BB_RSA_KEY_BLOB = 6
BB_RSA_SIGNATURE_BLOB = 8

RSA1_MAGIC = 0x31415352
TSSK_KEY_LENGTH = 64
_PADDING_SIZE = 8

_INITIAL_SIGNATURE = b"\xff" * 16 + b"\x00" + b"\xff" * 45 + b"\x01"

# Terminal Services signing key; it is published as part of the protocol.
# All values are little-endian.
_TSSK_MODULUS = bytes([
    0x3d, 0x3a, 0x5e, 0xbd, 0x72, 0x43, 0x3e, 0xc9,
    0x4d, 0xbb, 0xc1, 0x1e, 0x4a, 0xba, 0x5f, 0xcb,
    0x3e, 0x88, 0x20, 0x87, 0xef, 0xf5, 0xc1, 0xe2,
    0xd7, 0xb7, 0x6b, 0x9a, 0xf2, 0x52, 0x45, 0x95,
    0xce, 0x63, 0x65, 0x6b, 0x58, 0x3a, 0xfe, 0xef,
    0x7c, 0xe7, 0xbf, 0xfe, 0x3d, 0xf6, 0x5c, 0x7d,
    0x6c, 0x5e, 0x06, 0x09, 0x1a, 0xf5, 0x61, 0xbb,
    0x20, 0x93, 0x09, 0x5f, 0x05, 0x6d, 0xea, 0x87,
])

_TSSK_PRIVATE_EXPONENT = bytes([
    0x87, 0xa7, 0x19, 0x32, 0xda, 0x11, 0x87, 0x55,
    0x58, 0x00, 0x16, 0x16, 0x25, 0x65, 0x68, 0xf8,
    0x24, 0x3e, 0xe6, 0xfa, 0xe9, 0x67, 0x49, 0x94,
    0xcf, 0x92, 0xcc, 0x33, 0x99, 0xe8, 0x08, 0x60,
    0x17, 0x9a, 0x12, 0x9f, 0x24, 0xdd, 0xb1, 0x24,
    0x99, 0xc7, 0x3a, 0xb8, 0x0a, 0x7b, 0x0d, 0xdd,
    0x35, 0x07, 0x79, 0x17, 0x0b, 0x51, 0x9b, 0xb3,
    0xc7, 0x10, 0x01, 0x13, 0xe7, 0x3f, 0xf3, 0x5f,
])

_TSSK_EXPONENT = bytes([0x5b, 0x7b, 0x88, 0xc0])


def _rsa_apply(data: bytes, exponent: bytes, modulus: bytes, key_length: int) -> bytes:
    """Raw RSA on little-endian operands, result padded to ``key_length``."""
    n = int.from_bytes(modulus, "little")
    value = pow(int.from_bytes(data, "little"), int.from_bytes(exponent, "little"), n)
    return value.to_bytes(key_length, "little")


@dataclass
class RSAPublicKey:
    """RSA1 public key blob; lengths default to those implied by the modulus."""

    modulus: bytes = b""
    pub_exp: bytes = b"\x01\x00\x01\x00"
    keylen: Optional[int] = None
    bitlen: Optional[int] = None
    datalen: Optional[int] = None
    magic: int = RSA1_MAGIC
    padding: bytes = bytes(_PADDING_SIZE)

    def __post_init__(self) -> None:
        self.modulus = bytes(self.modulus)
        self.pub_exp = bytes(self.pub_exp)
        if self.keylen is None:
            self.keylen = len(self.modulus) + _PADDING_SIZE
        if self.bitlen is None:
            self.bitlen = (self.keylen - _PADDING_SIZE) * 8
        if self.datalen is None:
            self.datalen = self.bitlen // 8 - 1

    @classmethod
    def read(cls, stream: ByteStream) -> "RSAPublicKey":
        magic, keylen, bitlen, datalen = struct.unpack("<IIII", stream.read(16))
        pub_exp = stream.read(4)
        if keylen < _PADDING_SIZE:
            raise CertificateError(f"RSA key length {keylen} is too short")
        modulus = stream.read(keylen - _PADDING_SIZE)
        padding = stream.read(_PADDING_SIZE)
        return cls(modulus=modulus, pub_exp=pub_exp, keylen=keylen, bitlen=bitlen,
                   datalen=datalen, magic=magic, padding=padding)

    def to_bytes(self) -> bytes:
        if self.keylen != len(self.modulus) + _PADDING_SIZE:
            raise CertificateError("RSA key length does not match the modulus")
        if self.bitlen != (self.keylen - _PADDING_SIZE) * 8:
            raise CertificateError("RSA bit length does not match the key length")
        if self.datalen != self.bitlen // 8 - 1:
            raise CertificateError("RSA data length does not match the bit length")
        if len(self.pub_exp) != 4:
            raise CertificateError("RSA public exponent must be four bytes")
        return (struct.pack("<IIII", self.magic, self.keylen, self.bitlen, self.datalen)
                + self.pub_exp + self.modulus + bytes(self.padding))

    def size(self) -> int:
        return 4 * 5 + self.keylen


@dataclass
class ProprietaryServerCertificate:
    """Proprietary server certificate signed with the Terminal Services key."""

    public_key_blob: RSAPublicKey = field(default_factory=RSAPublicKey)
    signature_blob: bytes = b""
    dw_sig_alg_id: int = SIGNATURE_ALG_RSA
    dw_key_alg_id: int = KEY_EXCHANGE_ALG_RSA
    w_public_key_blob_type: int = BB_RSA_KEY_BLOB
    w_public_key_blob_len: int = 0
    w_signature_blob_type: int = BB_RSA_SIGNATURE_BLOB
    w_signature_blob_len: int = 0
    padding: bytes = bytes(_PADDING_SIZE)

    @classmethod
    def read(cls, stream: ByteStream) -> "ProprietaryServerCertificate":
        sig_alg, key_alg, key_type, key_len = struct.unpack("<IIHH", stream.read(12))
        key = RSAPublicKey.read(stream)
        sig_type, sig_len = struct.unpack("<HH", stream.read(4))
        if sig_len < _PADDING_SIZE:
            raise CertificateError(f"signature blob length {sig_len} is too short")
        signature = stream.read(sig_len - _PADDING_SIZE)
        padding = stream.read(_PADDING_SIZE)
        return cls(public_key_blob=key, signature_blob=signature, dw_sig_alg_id=sig_alg,
                   dw_key_alg_id=key_alg, w_public_key_blob_type=key_type,
                   w_public_key_blob_len=key_len, w_signature_blob_type=sig_type,
                   w_signature_blob_len=sig_len, padding=padding)

    def to_bytes(self) -> bytes:
        if self.w_signature_blob_len != len(self.signature_blob) + _PADDING_SIZE:
            raise CertificateError("signature blob length does not match the signature")
        return (struct.pack("<IIHH", self.dw_sig_alg_id, self.dw_key_alg_id,
                            self.w_public_key_blob_type, self.w_public_key_blob_len)
                + self.public_key_blob.to_bytes()
                + struct.pack("<HH", self.w_signature_blob_type, self.w_signature_blob_len)
                + bytes(self.signature_blob) + bytes(self.padding))

    def size(self) -> int:
        return 16 + len(self.signature_blob) + _PADDING_SIZE + self.public_key_blob.size()

    def get_public_key(self) -> tuple[bytes, bytes]:
        """Return the little-endian modulus and public exponent."""
        return self.public_key_blob.modulus, self.public_key_blob.pub_exp

    def compute_signature_hash(self) -> bytes:
        """Return the unencrypted signature: MD5 of the signed fields plus fixed padding."""
        signed = (struct.pack("<IIIHH", CertificateType.CERT_CHAIN_VERSION_1,
                              self.dw_sig_alg_id, self.dw_key_alg_id,
                              self.w_public_key_blob_type, self.w_public_key_blob_len)
                  + self.public_key_blob.to_bytes())
        digest = hashlib.md5(signed).digest()
        return digest + _INITIAL_SIGNATURE[len(digest):]

    def sign(self) -> None:
        """Sign the certificate with the Terminal Services private key."""
        signature = self.compute_signature_hash()
        self.signature_blob = _rsa_apply(signature, _TSSK_PRIVATE_EXPONENT, _TSSK_MODULUS,
                                         TSSK_KEY_LENGTH)
        self.w_signature_blob_len = len(self.signature_blob) + _PADDING_SIZE

    def verify(self) -> bool:
        """Check the signature against the Terminal Services public key."""
        if self.w_signature_blob_len != TSSK_KEY_LENGTH + _PADDING_SIZE:
            return False
        decrypted = _rsa_apply(self.signature_blob, _TSSK_EXPONENT, _TSSK_MODULUS,
                               TSSK_KEY_LENGTH)
        signature = self.compute_signature_hash()
        return decrypted[:len(signature)] == signature


@dataclass
class CertBlob:
    """One DER-encoded certificate of an X.509 chain."""

    ab_cert: bytes = b""

    @property
    def cb_cert(self) -> int:
        return len(self.ab_cert)


@dataclass
class X509CertificateChain:
    """Chain of X.509 certificates; the last one holds the server key."""

    cert_blobs: list[CertBlob] = field(default_factory=list)

    @classmethod
    def read(cls, stream: ByteStream) -> "X509CertificateChain":
        count = stream.read_uint32_le()
        blobs = [CertBlob(stream.read(stream.read_uint32_le())) for _ in range(count)]
        stream.skip(8 + 4 * count)
        return cls(blobs)

    def to_bytes(self) -> bytes:
        parts = [struct.pack("<I", len(self.cert_blobs))]
        for blob in self.cert_blobs:
            parts.append(struct.pack("<I", blob.cb_cert))
            parts.append(bytes(blob.ab_cert))
        parts.append(bytes(8 + 4 * len(self.cert_blobs)))
        return b"".join(parts)

    def size(self) -> int:
        return 4 + sum(4 + blob.cb_cert for blob in self.cert_blobs)

    def get_public_key(self) -> tuple[bytes, bytes]:
        """Return the little-endian modulus and exponent of the last certificate."""
        if not self.cert_blobs:
            raise CertificateError("certificate chain is empty")
        return read_x509_public_key(self.cert_blobs[-1].ab_cert)

    def verify(self) -> bool:
        return True


@dataclass
class ServerCertificate:
    """Server certificate holding either a proprietary certificate or an X.509 chain."""

    dw_version: int = 0
    proprietary: ProprietaryServerCertificate = field(default_factory=ProprietaryServerCertificate)
    x509: X509CertificateChain = field(default_factory=X509CertificateChain)

    @property
    def _kind(self) -> int:
        return self.dw_version & CertificateType.CERT_CHAIN_VERSION_MASK

    @classmethod
    def read(cls, stream: ByteStream) -> "ServerCertificate":
        cert = cls(dw_version=stream.read_uint32_le())
        if cert._kind == CertificateType.CERT_CHAIN_VERSION_1:
            cert.proprietary = ProprietaryServerCertificate.read(stream)
        elif cert._kind == CertificateType.CERT_CHAIN_VERSION_2:
            cert.x509 = X509CertificateChain.read(stream)
        return cert

    def to_bytes(self) -> bytes:
        head = struct.pack("<I", self.dw_version)
        if self._kind == CertificateType.CERT_CHAIN_VERSION_1:
            return head + self.proprietary.to_bytes()
        if self._kind == CertificateType.CERT_CHAIN_VERSION_2:
            return head + self.x509.to_bytes()
        return head

    def size(self) -> int:
        if self._kind == CertificateType.CERT_CHAIN_VERSION_1:
            return 4 + self.proprietary.size()
        if self._kind == CertificateType.CERT_CHAIN_VERSION_2:
            return 4 + self.x509.size()
        return 0

    def get_public_key(self) -> tuple[bytes, bytes]:
        if self._kind == CertificateType.CERT_CHAIN_VERSION_1:
            return self.proprietary.get_public_key()
        if self._kind == CertificateType.CERT_CHAIN_VERSION_2:
            return self.x509.get_public_key()
        raise CertificateError(f"unknown certificate version 0x{self.dw_version:08x}")

    def verify(self) -> bool:
        if self._kind == CertificateType.CERT_CHAIN_VERSION_1:
            return self.proprietary.verify()
        if self._kind == CertificateType.CERT_CHAIN_VERSION_2:
            return self.x509.verify()
        return False


@contextmanager
def _reading(part: str) -> Iterator[None]:
    try:
        yield
    except (ValueError, EOFError) as exc:
        raise CertificateError(f"error reading certificate: {part}") from exc


def read_x509_public_key(der: bytes) -> tuple[bytes, bytes]:
    """Extract the RSA key of a DER certificate as little-endian (modulus, exponent)."""
    s = ByteStream(der)

    def skip_sequence() -> None:
        s.skip(ber_read_sequence_tag(s))

    with _reading("Certificate tag"):
        ber_read_sequence_tag(s)
    with _reading("TBSCertificate"):
        ber_read_sequence_tag(s)
    with _reading("Explicit Contextual Tag [0]"):
        ber_read_contextual_tag(s, 0, True)
    with _reading("version"):
        ber_read_integer(s)
    with _reading("CertificateSerialNumber"):
        ber_read_integer(s)
    with _reading("AlgorithmIdentifier"):
        skip_sequence()
    with _reading("Issuer Name"):
        skip_sequence()
    with _reading("Validity"):
        skip_sequence()
    with _reading("Subject Name"):
        skip_sequence()
    with _reading("SubjectPublicKeyInfo Tag"):
        ber_read_sequence_tag(s)
    with _reading("subjectPublicKeyInfo::AlgorithmIdentifier"):
        skip_sequence()
    with _reading("subjectPublicKeyInfo::subjectPublicKey"):
        ber_read_bit_string(s)
    with _reading("RSAPublicKey Tag"):
        ber_read_sequence_tag(s)
    with _reading("modulusLength"):
        modulus_length = ber_read_integer_length(s)
    with _reading("zero padding"):
        while s.peek_uint8() == 0:
            s.skip(1)
            modulus_length -= 1
    if modulus_length < 0 or len(s) < modulus_length:
        raise CertificateError("error reading certificate: modulus")
    modulus = s.read(modulus_length)
    with _reading("publicExponent length"):
        exponent_length = ber_read_integer_length(s)
    if exponent_length > 4 or len(s) < exponent_length:
        raise CertificateError("error reading certificate: publicExponent")
    exponent = bytes(4 - exponent_length) + s.read(exponent_length)
    return modulus[::-1], exponent[::-1]