"""BER and aligned PER encoding helpers used by MCS and GCC."""

from __future__ import annotations

import struct
from itertools import zip_longest
from typing import Sequence

from rdpwire.layer import ByteStream


class Asn1Error(ValueError):
    """Raised when encoded data does not match what was expected."""


BER_CLASS_UNIV = 0x00
BER_CLASS_APPL = 0x40
BER_CLASS_CTXT = 0x80
BER_CONSTRUCT = 0x20
BER_PRIMITIVE = 0x00
BER_TAG_MASK = 0x1F

BER_TAG_BOOLEAN = 0x01
BER_TAG_INTEGER = 0x02
BER_TAG_BIT_STRING = 0x03
BER_TAG_OCTET_STRING = 0x04
BER_TAG_OBJECT_IDENTIFIER = 0x06
BER_TAG_ENUMERATED = 0x0A
BER_TAG_SEQUENCE = 0x10
BER_TAG_SEQUENCE_OF = 0x10


def _pc(constructed: bool) -> int:
    return BER_CONSTRUCT if constructed else BER_PRIMITIVE


def _byte(value: int, what: str) -> bytes:
    if not 0 <= value <= 0xFF:
        raise Asn1Error(f"{what} {value} does not fit in one byte")
    return bytes([value])


# BER


def ber_write_length(length: int) -> bytes:
    if length < 0 or length > 0xFFFF:
        raise Asn1Error(f"BER length {length} out of range")
    if length > 0x7F:
        return b"\x82" + struct.pack(">H", length)
    return bytes([length])


def ber_read_length(stream: ByteStream) -> int:
    size = stream.read_uint8()
    if not size & 0x80:
        return size
    count = size & 0x7F
    if count == 1:
        return stream.read_uint8()
    if count == 2:
        return stream.read_uint16_be()
    raise Asn1Error(f"unsupported BER length of {count} bytes")


def ber_write_universal_tag(tag: int, constructed: bool) -> bytes:
    return bytes([(BER_CLASS_UNIV | _pc(constructed)) | (BER_TAG_MASK & tag)])


def ber_read_universal_tag(stream: ByteStream, tag: int, constructed: bool) -> int:
    expected = (BER_CLASS_UNIV | _pc(constructed)) | (BER_TAG_MASK & tag)
    byte = stream.read_uint8()
    if byte != expected:
        raise Asn1Error(f"expected BER tag 0x{expected:02x}, got 0x{byte:02x}")
    return byte


def ber_write_application_tag(tag: int, length: int) -> bytes:
    if tag > 30:
        header = bytes([(BER_CLASS_APPL | BER_CONSTRUCT) | BER_TAG_MASK]) + _byte(tag, "tag")
    else:
        header = bytes([(BER_CLASS_APPL | BER_CONSTRUCT) | (BER_TAG_MASK & tag)])
    return header + ber_write_length(length)


def ber_read_application_tag(stream: ByteStream, tag: int) -> int:
    """Check an application tag and return the length that follows it."""
    byte = stream.read_uint8()
    if tag > 30:
        if byte != (BER_CLASS_APPL | BER_CONSTRUCT) | BER_TAG_MASK:
            raise Asn1Error("invalid BER application tag marker")
        byte = stream.read_uint8()
        if byte != tag:
            raise Asn1Error(f"expected application tag 0x{tag:02x}, got 0x{byte:02x}")
    elif byte != (BER_CLASS_APPL | BER_CONSTRUCT) | (BER_TAG_MASK & tag):
        raise Asn1Error(f"expected application tag 0x{tag:02x}")
    return ber_read_length(stream)


def ber_write_integer(value: int) -> bytes:
    tag = ber_write_universal_tag(BER_TAG_INTEGER, False)
    if value < 0 or value > 0xFFFFFFFF:
        raise Asn1Error(f"BER integer {value} out of range")
    if value <= 0xFF:
        return tag + ber_write_length(1) + bytes([value])
    if value <= 0xFFFF:
        return tag + ber_write_length(2) + struct.pack(">H", value)
    return tag + ber_write_length(4) + struct.pack(">I", value)


def ber_read_integer(stream: ByteStream) -> int:
    size = ber_read_integer_length(stream)
    if size == 1:
        return stream.read_uint8()
    if size == 2:
        return stream.read_uint16_be()
    if size == 3:
        high = stream.read_uint8()
        return (high << 16) + stream.read_uint16_be()
    if size == 4:
        return stream.read_uint32_be()
    raise Asn1Error(f"unsupported BER integer size {size}")


def ber_read_integer_length(stream: ByteStream) -> int:
    ber_read_universal_tag(stream, BER_TAG_INTEGER, False)
    return ber_read_length(stream)


def ber_write_enumerated(value: int) -> bytes:
    return (ber_write_universal_tag(BER_TAG_ENUMERATED, False)
            + ber_write_length(1) + _byte(value, "enumerated"))


def ber_read_enumerated(stream: ByteStream) -> int:
    ber_read_universal_tag(stream, BER_TAG_ENUMERATED, False)
    if ber_read_length(stream) != 1:
        raise Asn1Error("BER enumerated must be one byte")
    return stream.read_uint8()


def ber_write_boolean(value: bool) -> bytes:
    return (ber_write_universal_tag(BER_TAG_BOOLEAN, False)
            + ber_write_length(1) + (b"\xff" if value else b"\x00"))


def ber_read_boolean(stream: ByteStream) -> bool:
    ber_read_universal_tag(stream, BER_TAG_BOOLEAN, False)
    if ber_read_length(stream) != 1:
        raise Asn1Error("BER boolean must be one byte")
    return stream.read_uint8() != 0


def ber_write_octet_string(value: bytes) -> bytes:
    value = bytes(value)
    return (ber_write_universal_tag(BER_TAG_OCTET_STRING, False)
            + ber_write_length(len(value)) + value)


def ber_read_octet_string(stream: ByteStream) -> bytes:
    ber_read_universal_tag(stream, BER_TAG_OCTET_STRING, False)
    return stream.read(ber_read_length(stream))


def ber_read_sequence_tag(stream: ByteStream) -> int:
    """Check a SEQUENCE tag and return its length."""
    ber_read_universal_tag(stream, BER_TAG_SEQUENCE_OF, True)
    return ber_read_length(stream)


def ber_read_contextual_tag(stream: ByteStream, tag: int, constructed: bool) -> int:
    """Check a context-specific tag and return its length."""
    expected = (BER_CLASS_CTXT | _pc(constructed)) | (BER_TAG_MASK & tag)
    byte = stream.read_uint8()
    if byte != expected:
        raise Asn1Error(f"expected contextual tag 0x{expected:02x}, got 0x{byte:02x}")
    return ber_read_length(stream)


def ber_read_bit_string(stream: ByteStream) -> tuple[int, int]:
    """Read a BIT STRING header; return its length and the padding byte."""
    ber_read_universal_tag(stream, BER_TAG_BIT_STRING, False)
    length = ber_read_length(stream)
    padding = stream.read_uint8()
    return length, padding


# PER


def per_write_length(length: int) -> bytes:
    if length < 0 or length > 0x7FFF:
        raise Asn1Error(f"PER length {length} out of range")
    if length > 0x7F:
        return struct.pack(">H", length | 0x8000)
    return bytes([length])


def per_read_length(stream: ByteStream) -> int:
    byte = stream.read_uint8()
    if byte & 0x80:
        return ((byte & 0x7F) << 8) + stream.read_uint8()
    return byte


def per_write_choice(choice: int) -> bytes:
    return _byte(choice, "choice")


def per_read_choice(stream: ByteStream) -> int:
    return stream.read_uint8()


def per_write_selection(selection: int) -> bytes:
    return _byte(selection, "selection")


def per_read_selection(stream: ByteStream) -> int:
    return stream.read_uint8()


def per_write_number_of_set(number: int) -> bytes:
    return _byte(number, "number of set")


def per_read_number_of_set(stream: ByteStream) -> int:
    return stream.read_uint8()


def per_write_enumerates(value: int) -> bytes:
    return _byte(value, "enumerated")


def per_read_enumerates(stream: ByteStream) -> int:
    return stream.read_uint8()


def per_write_integer(value: int) -> bytes:
    if value < 0 or value > 0xFFFFFFFF:
        raise Asn1Error(f"PER integer {value} out of range")
    if value <= 0xFF:
        return per_write_length(1) + bytes([value])
    if value <= 0xFFFF:
        return per_write_length(2) + struct.pack(">H", value)
    return per_write_length(4) + struct.pack(">I", value)


def per_read_integer(stream: ByteStream) -> int:
    size = per_read_length(stream)
    if size == 1:
        return stream.read_uint8()
    if size == 2:
        return stream.read_uint16_be()
    if size == 4:
        return stream.read_uint32_be()
    raise Asn1Error(f"unsupported PER integer size {size}")


def per_write_integer16(value: int, minimum: int = 0) -> bytes:
    offset = value - minimum
    if not 0 <= offset <= 0xFFFF:
        raise Asn1Error(f"PER integer16 {value} out of range for minimum {minimum}")
    return struct.pack(">H", offset)


def per_read_integer16(stream: ByteStream, minimum: int = 0) -> int:
    return stream.read_uint16_be() + minimum


def per_write_object_identifier(oid: Sequence[int]) -> bytes:
    if len(oid) != 6:
        raise Asn1Error("object identifier must have six parts")
    first = ((oid[0] << 4) & 0xF0) | (oid[1] & 0x0F)
    return bytes([5, first]) + bytes(part & 0xFF for part in oid[2:])


def per_read_object_identifier(stream: ByteStream, oid: Sequence[int]) -> tuple[int, ...]:
    """Read an object identifier and check it equals ``oid``."""
    if per_read_length(stream) != 5:
        raise Asn1Error("PER object identifier must be five bytes")
    first = stream.read_uint8()
    parts = (first >> 4, first & 0x0F, *stream.read(4))
    if parts != tuple(oid):
        raise Asn1Error(f"unexpected object identifier {parts}")
    return parts


def per_write_numeric_string(value: str, minimum: int = 0) -> bytes:
    length = len(value) - minimum if len(value) >= minimum else minimum
    it = iter(value)
    packed = bytes(
        (((ord(high) - 0x30) % 10) << 4) | ((ord(low) - 0x30) % 10)
        for high, low in zip_longest(it, it, fillvalue="0")
    )
    return per_write_length(length) + packed


def per_read_numeric_string(stream: ByteStream, minimum: int = 0) -> bytes:
    length = per_read_length(stream)
    return stream.read((length + minimum + 1) // 2)


def per_write_padding(length: int) -> bytes:
    return bytes(length)


def per_read_padding(stream: ByteStream, length: int) -> bytes:
    return stream.read(length)


def per_write_octet_stream(value: bytes, minimum: int = 0) -> bytes:
    value = bytes(value)
    length = len(value) - minimum if len(value) >= minimum else minimum
    return per_write_length(length) + value


def per_read_octet_stream(stream: ByteStream, expected: bytes, minimum: int = 0) -> bytes:
    """Read an octet stream and check it equals ``expected``."""
    expected = bytes(expected)
    size = per_read_length(stream) + minimum
    if size != len(expected):
        raise Asn1Error(f"octet stream of {size} bytes, expected {len(expected)}")
    data = stream.read(size)
    if data != expected:
        raise Asn1Error(f"unexpected octet stream {data!r}")
    return data