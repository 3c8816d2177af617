import hashlib

import pytest

from rdpwire.certificate import (
    CertBlob,
    CertificateError,
    CertificateType,
    ProprietaryServerCertificate,
    RSAPublicKey,
    ServerCertificate,
    X509CertificateChain,
    read_x509_public_key,
)
from rdpwire.layer import ByteStream

MODULUS = bytes(range(1, 65))
EXPONENT = b"\x01\x00\x01\x00"


def _tlv(tag, content):
    n = len(content)
    if n < 0x80:
        length = bytes([n])
    elif n < 0x100:
        length = bytes([0x81, n])
    else:
        length = bytes([0x82, n >> 8, n & 0xFF])
    return bytes([tag]) + length + content


def _seq(content):
    return _tlv(0x30, content)


def _int(raw):
    return _tlv(0x02, raw)


def _make_der(modulus_be, exponent_be):
    rsa_key = _seq(_int(b"\x00" + modulus_be) + _int(exponent_be))
    spki = _seq(_seq(b"alg") + _tlv(0x03, b"\x00" + rsa_key))
    tbs = _seq(
        _tlv(0xA0, _int(b"\x02"))
        + _int(b"\x05")
        + _seq(b"alg")
        + _seq(b"issuer")
        + _seq(b"validity")
        + _seq(b"subject")
        + spki
    )
    return _seq(tbs)


MODULUS_BE = bytes([0x80]) + bytes(range(1, 64))
DER = _make_der(MODULUS_BE, b"\x01\x00\x01")


def _signed_certificate():
    cert = ProprietaryServerCertificate(
        public_key_blob=RSAPublicKey(modulus=MODULUS, pub_exp=EXPONENT))
    cert.sign()
    return cert


def test_rsa_public_key_magic_and_round_trip():
    key = RSAPublicKey(modulus=MODULUS, pub_exp=EXPONENT)
    wire = key.to_bytes()
    assert wire[:4] == b"RSA1"
    assert key.keylen == len(MODULUS) + 8
    assert key.size() == len(wire)
    assert RSAPublicKey.read(ByteStream(wire)) == key


def test_rsa_public_key_inconsistent_length_rejected():
    key = RSAPublicKey(modulus=MODULUS, keylen=10)
    with pytest.raises(CertificateError):
        key.to_bytes()


def test_rsa_public_key_short_keylen_rejected():
    wire = bytearray(RSAPublicKey(modulus=MODULUS).to_bytes())
    wire[4:8] = (4).to_bytes(4, "little")
    with pytest.raises(CertificateError):
        RSAPublicKey.read(ByteStream(bytes(wire)))


def test_signature_hash_layout():
    cert = ProprietaryServerCertificate(public_key_blob=RSAPublicKey(modulus=MODULUS))
    signature = cert.compute_signature_hash()
    assert len(signature) == 63
    assert signature[16] == 0
    assert signature[-1] == 1
    assert set(signature[17:-1]) == {0xFF}


def test_signature_hash_depends_on_key():
    first = ProprietaryServerCertificate(public_key_blob=RSAPublicKey(modulus=MODULUS))
    second = ProprietaryServerCertificate(public_key_blob=RSAPublicKey(modulus=MODULUS[::-1]))
    assert first.compute_signature_hash()[:16] != second.compute_signature_hash()[:16]


def test_sign_then_verify():
    cert = _signed_certificate()
    assert cert.w_signature_blob_len == 72
    assert len(cert.signature_blob) == 64
    assert cert.verify() is True


def test_verify_fails_after_key_change():
    cert = _signed_certificate()
    cert.public_key_blob = RSAPublicKey(modulus=MODULUS[::-1], pub_exp=EXPONENT)
    assert cert.verify() is False


def test_verify_rejects_wrong_signature_length():
    cert = _signed_certificate()
    cert.w_signature_blob_len = 70
    assert cert.verify() is False


def test_proprietary_round_trip():
    cert = _signed_certificate()
    wire = cert.to_bytes()
    assert cert.size() == len(wire)
    parsed = ProprietaryServerCertificate.read(ByteStream(wire))
    assert parsed == cert
    assert parsed.verify() is True


def test_proprietary_inconsistent_signature_length():
    cert = _signed_certificate()
    cert.signature_blob = cert.signature_blob[:10]
    with pytest.raises(CertificateError):
        cert.to_bytes()


def test_proprietary_get_public_key():
    cert = _signed_certificate()
    assert cert.get_public_key() == (MODULUS, EXPONENT)


def test_read_x509_public_key():
    modulus, exponent = read_x509_public_key(DER)
    assert modulus == MODULUS_BE[::-1]
    assert exponent == b"\x01\x00\x01\x00"


def test_read_x509_public_key_bad_tag():
    with pytest.raises(CertificateError):
        read_x509_public_key(b"\x31\x00")


def test_read_x509_public_key_truncated():
    with pytest.raises(CertificateError):
        read_x509_public_key(DER[:40])


def test_read_x509_public_key_exponent_too_long():
    der = _make_der(MODULUS_BE, b"\x01\x00\x01\x00\x01")
    with pytest.raises(CertificateError):
        read_x509_public_key(der)


def test_x509_chain_round_trip():
    chain = X509CertificateChain([CertBlob(b"first"), CertBlob(DER)])
    wire = chain.to_bytes()
    assert wire[:4] == (2).to_bytes(4, "little")
    assert chain.size() == len(wire) - (8 + 4 * 2)
    stream = ByteStream(wire + b"tail")
    assert X509CertificateChain.read(stream) == chain
    assert stream.remaining() == b"tail"
    assert chain.verify() is True


def test_x509_chain_public_key_from_last_blob():
    chain = X509CertificateChain([CertBlob(b"ignored"), CertBlob(DER)])
    assert chain.get_public_key() == (MODULUS_BE[::-1], b"\x01\x00\x01\x00")


def test_x509_chain_empty_has_no_key():
    with pytest.raises(CertificateError):
        X509CertificateChain().get_public_key()


def test_server_certificate_version_1():
    cert = ServerCertificate(dw_version=CertificateType.CERT_CHAIN_VERSION_1,
                             proprietary=_signed_certificate())
    wire = cert.to_bytes()
    assert cert.size() == len(wire)
    parsed = ServerCertificate.read(ByteStream(wire))
    assert parsed.proprietary == cert.proprietary
    assert parsed.verify() is True
    assert parsed.get_public_key() == (MODULUS, EXPONENT)


def test_server_certificate_version_2_with_temporary_flag():
    version = 0x80000000 | CertificateType.CERT_CHAIN_VERSION_2
    cert = ServerCertificate(dw_version=version, x509=X509CertificateChain([CertBlob(DER)]))
    wire = cert.to_bytes()
    parsed = ServerCertificate.read(ByteStream(wire))
    assert parsed.dw_version == version
    assert parsed.x509 == cert.x509
    assert parsed.size() == 4 + cert.x509.size()
    assert parsed.verify() is True
    assert parsed.get_public_key()[0] == MODULUS_BE[::-1]


def test_server_certificate_unknown_version():
    cert = ServerCertificate(dw_version=3)
    assert cert.size() == 0
    assert cert.verify() is False
    assert cert.to_bytes() == (3).to_bytes(4, "little")
    with pytest.raises(CertificateError):
        cert.get_public_key()