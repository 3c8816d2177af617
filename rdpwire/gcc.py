"""GCC conference structures: client and server settings blocks."""

from __future__ import annotations

import struct
from dataclasses import dataclass, field
from enum import IntEnum, IntFlag
from typing import ClassVar

from rdpwire.asn1 import (
    Asn1Error,
    per_read_choice,
    per_read_enumerates,
    per_read_integer,
    per_read_integer16,
    per_read_length,
    per_read_number_of_set,
    per_read_numeric_string,
    per_read_object_identifier,
    per_read_octet_stream,
    per_read_padding,
    per_read_selection,
    per_write_choice,
    per_write_enumerates,
    per_write_integer,
    per_write_integer16,
    per_write_length,
    per_write_number_of_set,
    per_write_numeric_string,
    per_write_object_identifier,
    per_write_octet_stream,
    per_write_padding,
    per_write_selection,
)
from rdpwire.certificate import ServerCertificate
from rdpwire.layer import ByteStream

T124_02_98_OID = (0, 0, 20, 124, 0, 1)
H221_CS_KEY = b"Duca"
H221_SC_KEY = b"McDn"
RNS_UD_SAS_DEL = 0xAA03
MCS_GLOBAL_CHANNEL = 1003


class GCCMessageType(IntEnum):
    MSG_TYPE_SC_CORE = 0x0C01
    MSG_TYPE_SC_SECURITY = 0x0C02
    MSG_TYPE_SC_NET = 0x0C03
    MSG_TYPE_CS_CORE = 0xC001
    MSG_TYPE_CS_SECURITY = 0xC002
    MSG_TYPE_CS_NET = 0xC003
    MSG_TYPE_CS_CLUSTER = 0xC004
    MSG_TYPE_CS_MONITOR = 0xC005


class ColorDepth(IntEnum):
    RNS_UD_COLOR_8BPP = 0xCA01
    RNS_UD_COLOR_16BPP_555 = 0xCA02
    RNS_UD_COLOR_16BPP_565 = 0xCA03
    RNS_UD_COLOR_24BPP = 0xCA04


class HighColor(IntEnum):
    HIGH_COLOR_4BPP = 0x0004
    HIGH_COLOR_8BPP = 0x0008
    HIGH_COLOR_15BPP = 0x000F
    HIGH_COLOR_16BPP = 0x0010
    HIGH_COLOR_24BPP = 0x0018


class Support(IntFlag):
    RNS_UD_24BPP_SUPPORT = 0x0001
    RNS_UD_16BPP_SUPPORT = 0x0002
    RNS_UD_15BPP_SUPPORT = 0x0004
    RNS_UD_32BPP_SUPPORT = 0x0008


class CapabilityFlags(IntFlag):
    RNS_UD_CS_SUPPORT_ERRINFO_PDU = 0x0001
    RNS_UD_CS_WANT_32BPP_SESSION = 0x0002
    RNS_UD_CS_SUPPORT_STATUSINFO_PDU = 0x0004
    RNS_UD_CS_STRONG_ASYMMETRIC_KEYS = 0x0008
    RNS_UD_CS_UNUSED = 0x0010
    RNS_UD_CS_VALID_CONNECTION_TYPE = 0x0020
    RNS_UD_CS_SUPPORT_MONITOR_LAYOUT_PDU = 0x0040
    RNS_UD_CS_SUPPORT_NETCHAR_AUTODETECT = 0x0080
    RNS_UD_CS_SUPPORT_DYNVC_GFX_PROTOCOL = 0x0100
    RNS_UD_CS_SUPPORT_DYNAMIC_TIME_ZONE = 0x0200
    RNS_UD_CS_SUPPORT_HEARTBEAT_PDU = 0x0400


class ConnectionType(IntEnum):
    CONNECTION_TYPE_MODEM = 0x01
    CONNECTION_TYPE_BROADBAND_LOW = 0x02
    CONNECTION_TYPE_SATELLITE = 0x03
    CONNECTION_TYPE_BROADBAND_HIGH = 0x04
    CONNECTION_TYPE_WAN = 0x05
    CONNECTION_TYPE_LAN = 0x06
    CONNECTION_TYPE_AUTODETECT = 0x07


class RDPVersion(IntEnum):
    RDP_VERSION_4 = 0x00080001
    RDP_VERSION_5_PLUS = 0x00080004


class EncryptionMethod(IntFlag):
    ENCRYPTION_METHOD_40BIT = 0x00000001
    ENCRYPTION_METHOD_128BIT = 0x00000002
    ENCRYPTION_METHOD_56BIT = 0x00000008
    ENCRYPTION_METHOD_FIPS = 0x00000010


class EncryptionLevel(IntEnum):
    ENCRYPTION_LEVEL_NONE = 0x00000000
    ENCRYPTION_LEVEL_LOW = 0x00000001
    ENCRYPTION_LEVEL_CLIENT_COMPATIBLE = 0x00000002
    ENCRYPTION_LEVEL_HIGH = 0x00000003
    ENCRYPTION_LEVEL_FIPS = 0x00000004


class ChannelOptions(IntFlag):
    CHANNEL_OPTION_INITIALIZED = 0x80000000
    CHANNEL_OPTION_ENCRYPT_RDP = 0x40000000
    CHANNEL_OPTION_ENCRYPT_SC = 0x20000000
    CHANNEL_OPTION_ENCRYPT_CS = 0x10000000
    CHANNEL_OPTION_PRI_HIGH = 0x08000000
    CHANNEL_OPTION_PRI_MED = 0x04000000
    CHANNEL_OPTION_PRI_LOW = 0x02000000
    CHANNEL_OPTION_COMPRESS_RDP = 0x00800000
    CHANNEL_OPTION_COMPRESS = 0x00400000
    CHANNEL_OPTION_SHOW_PROTOCOL = 0x00200000
    REMOTE_CONTROL_PERSISTENT = 0x00100000


class KeyboardType(IntEnum):
    IBM_PC_XT_83_KEY = 0x00000001
    OLIVETTI = 0x00000002
    IBM_PC_AT_84_KEY = 0x00000003
    IBM_101_102_KEYS = 0x00000004
    NOKIA_1050 = 0x00000005
    NOKIA_9140 = 0x00000006
    JAPANESE = 0x00000007


class KeyboardLayout(IntEnum):
    KBD_LAYOUT_ARABIC = 0x00000401
    KBD_LAYOUT_BULGARIAN = 0x00000402
    KBD_LAYOUT_CHINESE_US_KEYBOARD = 0x00000404
    KBD_LAYOUT_CZECH = 0x00000405
    KBD_LAYOUT_DANISH = 0x00000406
    KBD_LAYOUT_GERMAN = 0x00000407
    KBD_LAYOUT_GREEK = 0x00000408
    KBD_LAYOUT_US = 0x00000409
    KBD_LAYOUT_SPANISH = 0x0000040A
    KBD_LAYOUT_FINNISH = 0x0000040B
    KBD_LAYOUT_FRENCH = 0x0000040C
    KBD_LAYOUT_HEBREW = 0x0000040D
    KBD_LAYOUT_HUNGARIAN = 0x0000040E
    KBD_LAYOUT_ICELANDIC = 0x0000040F
    KBD_LAYOUT_ITALIAN = 0x00000410
    KBD_LAYOUT_JAPANESE = 0x00000411
    KBD_LAYOUT_KOREAN = 0x00000412
    KBD_LAYOUT_DUTCH = 0x00000413
    KBD_LAYOUT_NORWEGIAN = 0x00000414


_BLOCK_HEADER = struct.Struct("<HH")
_CLIENT_CORE = struct.Struct("<IHHHHII32sIII64sHHIHHH64sBBI")
_SERVER_CORE = struct.Struct("<III")
_CLIENT_SECURITY = struct.Struct("<II")
_CHANNEL_DEF = struct.Struct("<8sI")


def write_data_block_header(block_type: int, block_length: int) -> bytes:
    """Header of a user data block; ``block_length`` excludes the header itself."""
    return _BLOCK_HEADER.pack(block_type, block_length + _BLOCK_HEADER.size)


def _read_blocks(stream: ByteStream, length: int):
    """Yield (type, length) of each data block header in a settings stream."""
    while length > _BLOCK_HEADER.size:
        block_type, block_length = _BLOCK_HEADER.unpack(stream.read(_BLOCK_HEADER.size))
        if block_length < _BLOCK_HEADER.size:
            raise Asn1Error(f"invalid GCC data block length {block_length}")
        yield block_type, block_length
        length -= block_length


def _fixed(value: bytes, size: int, what: str) -> bytes:
    value = bytes(value)
    if len(value) > size:
        raise ValueError(f"{what} is longer than {size} bytes")
    return value


@dataclass
class ClientCoreData:
    """Client core settings block."""

    rdp_version: int = RDPVersion.RDP_VERSION_5_PLUS
    desktop_width: int = 1280
    desktop_height: int = 800
    color_depth: int = ColorDepth.RNS_UD_COLOR_8BPP
    sas_sequence: int = RNS_UD_SAS_DEL
    kbd_layout: int = KeyboardLayout.KBD_LAYOUT_US
    client_build: int = 3790
    client_name: str = "rdpp"
    keyboard_type: int = KeyboardType.IBM_101_102_KEYS
    keyboard_sub_type: int = 0
    keyboard_fn_keys: int = 12
    ime_file_name: bytes = b""
    post_beta2_color_depth: int = ColorDepth.RNS_UD_COLOR_8BPP
    client_product_id: int = 1
    serial_number: int = 0
    high_color_depth: int = HighColor.HIGH_COLOR_24BPP
    supported_color_depths: int = (Support.RNS_UD_15BPP_SUPPORT | Support.RNS_UD_16BPP_SUPPORT
                                   | Support.RNS_UD_24BPP_SUPPORT | Support.RNS_UD_32BPP_SUPPORT)
    early_capability_flags: int = CapabilityFlags.RNS_UD_CS_SUPPORT_ERRINFO_PDU
    client_dig_product_id: bytes = b""
    connection_type: int = 0
    pad1octet: int = 0
    server_selected_protocol: int = 0

    SIZE: ClassVar[int] = _CLIENT_CORE.size

    @classmethod
    def read(cls, data: bytes) -> "ClientCoreData":
        """Decode a core block body; fields it does not reach keep their defaults."""
        data = bytes(data)[:cls.SIZE]
        full = data + cls().to_bytes()[len(data):]
        (rdp_version, width, height, color_depth, sas, kbd_layout, build, name,
         kbd_type, kbd_sub_type, fn_keys, ime, post_beta2, product_id, serial,
         high_color, supported, early, dig_product_id, connection_type, pad,
         selected) = _CLIENT_CORE.unpack(full)
        return cls(
            rdp_version=rdp_version, desktop_width=width, desktop_height=height,
            color_depth=color_depth, sas_sequence=sas, kbd_layout=kbd_layout,
            client_build=build,
            client_name=name.decode("utf-16-le", errors="replace").replace("\x00", ""),
            keyboard_type=kbd_type, keyboard_sub_type=kbd_sub_type, keyboard_fn_keys=fn_keys,
            ime_file_name=ime.rstrip(b"\x00"), post_beta2_color_depth=post_beta2,
            client_product_id=product_id, serial_number=serial, high_color_depth=high_color,
            supported_color_depths=supported, early_capability_flags=early,
            client_dig_product_id=dig_product_id.rstrip(b"\x00"),
            connection_type=connection_type, pad1octet=pad, server_selected_protocol=selected,
        )

    def to_bytes(self) -> bytes:
        name = self.client_name[:15].encode("utf-16-le")[:30]
        return _CLIENT_CORE.pack(
            self.rdp_version, self.desktop_width, self.desktop_height, self.color_depth,
            self.sas_sequence, self.kbd_layout, self.client_build, name,
            self.keyboard_type, self.keyboard_sub_type, self.keyboard_fn_keys,
            _fixed(self.ime_file_name, 64, "IME file name"),
            self.post_beta2_color_depth, self.client_product_id, self.serial_number,
            self.high_color_depth, self.supported_color_depths, self.early_capability_flags,
            _fixed(self.client_dig_product_id, 64, "digital product id"),
            self.connection_type, self.pad1octet, self.server_selected_protocol,
        )


@dataclass
class ServerCoreData:
    """Server core settings block."""

    rdp_version: int = RDPVersion.RDP_VERSION_5_PLUS
    client_requested_protocol: int = 0
    early_capability_flags: int = 0

    SIZE: ClassVar[int] = _SERVER_CORE.size

    @classmethod
    def read(cls, data: bytes) -> "ServerCoreData":
        """Decode a core block body; fields it does not reach keep their defaults."""
        data = bytes(data)[:cls.SIZE]
        full = data + cls().to_bytes()[len(data):]
        return cls(*_SERVER_CORE.unpack(full))

    def to_bytes(self) -> bytes:
        return _SERVER_CORE.pack(self.rdp_version, self.client_requested_protocol,
                                 self.early_capability_flags)


@dataclass
class ClientSecurityData:
    """Encryption methods offered by the client."""

    encryption_methods: int = (EncryptionMethod.ENCRYPTION_METHOD_40BIT
                               | EncryptionMethod.ENCRYPTION_METHOD_56BIT
                               | EncryptionMethod.ENCRYPTION_METHOD_128BIT)
    ext_encryption_methods: int = 0

    SIZE: ClassVar[int] = _CLIENT_SECURITY.size

    @classmethod
    def read(cls, stream: ByteStream) -> "ClientSecurityData":
        return cls(*_CLIENT_SECURITY.unpack(stream.read(cls.SIZE)))

    def to_bytes(self) -> bytes:
        return _CLIENT_SECURITY.pack(self.encryption_methods, self.ext_encryption_methods)


@dataclass
class ServerSecurityData:
    """Encryption chosen by the server, with its random and certificate when encrypting."""

    encryption_method: int = 0
    encryption_level: int = 0
    server_random: bytes = b""
    server_certificate: ServerCertificate = field(default_factory=ServerCertificate)

    @property
    def _encrypted(self) -> bool:
        return self.encryption_method != 0 or self.encryption_level != 0

    @classmethod
    def read(cls, stream: ByteStream) -> "ServerSecurityData":
        data = cls(encryption_method=stream.read_uint32_le(),
                   encryption_level=stream.read_uint32_le())
        if data._encrypted:
            random_len = stream.read_uint32_le()
            stream.read_uint32_le()
            data.server_random = stream.read(random_len)
            data.server_certificate = ServerCertificate.read(stream)
        return data

    def to_bytes(self) -> bytes:
        head = struct.pack("<II", self.encryption_method, self.encryption_level)
        if not self._encrypted:
            return head
        return (head + struct.pack("<II", len(self.server_random), self.server_certificate.size())
                + bytes(self.server_random) + self.server_certificate.to_bytes())

    def size(self) -> int:
        if self._encrypted:
            return 16 + len(self.server_random) + self.server_certificate.size()
        return 8


@dataclass
class ChannelDef:
    """A static virtual channel requested by the client."""

    name: str = ""
    options: int = 0

    SIZE: ClassVar[int] = _CHANNEL_DEF.size

    @classmethod
    def read(cls, stream: ByteStream) -> "ChannelDef":
        raw_name, options = _CHANNEL_DEF.unpack(stream.read(cls.SIZE))
        return cls(name=raw_name.split(b"\x00", 1)[0].decode("latin-1"), options=options)

    def to_bytes(self) -> bytes:
        return _CHANNEL_DEF.pack(_fixed(self.name.encode("latin-1"), 8, "channel name"),
                                 self.options)


@dataclass
class ClientNetworkData:
    """Channels the client asks for."""

    channel_defs: list[ChannelDef] = field(default_factory=list)

    @property
    def channel_count(self) -> int:
        return len(self.channel_defs)

    @classmethod
    def read(cls, stream: ByteStream) -> "ClientNetworkData":
        count = stream.read_uint32_le()
        return cls([ChannelDef.read(stream) for _ in range(count)])

    def to_bytes(self) -> bytes:
        return struct.pack("<I", len(self.channel_defs)) + b"".join(
            channel.to_bytes() for channel in self.channel_defs)

    def size(self) -> int:
        return 4 + ChannelDef.SIZE * len(self.channel_defs)


@dataclass
class ServerNetworkData:
    """Channel ids the server assigns."""

    mcs_channel_id: int = MCS_GLOBAL_CHANNEL
    channel_ids: list[int] = field(default_factory=list)

    @property
    def channel_count(self) -> int:
        return len(self.channel_ids)

    @classmethod
    def read(cls, stream: ByteStream) -> "ServerNetworkData":
        mcs_channel_id = stream.read_uint16_le()
        count = stream.read_uint16_le()
        ids = [stream.read_uint16_le() for _ in range(count)]
        if count % 2 == 1:
            stream.read_uint16_le()
        return cls(mcs_channel_id, ids)

    def to_bytes(self) -> bytes:
        count = len(self.channel_ids)
        data = struct.pack(f"<HH{count}H", self.mcs_channel_id, count, *self.channel_ids)
        if count % 2 == 1:
            data += bytes(2)
        return data

    def size(self) -> int:
        count = len(self.channel_ids)
        return 4 + 2 * count + (2 if count % 2 == 1 else 0)


@dataclass
class ClientSettings:
    """Settings the client sends in the conference create request."""

    core: ClientCoreData = field(default_factory=ClientCoreData)
    network: ClientNetworkData = field(default_factory=ClientNetworkData)
    security: ClientSecurityData = field(default_factory=ClientSecurityData)

    def read_conference_create_request(self, stream: ByteStream) -> None:
        """Decode a conference create request into these settings."""
        per_read_choice(stream)
        per_read_object_identifier(stream, T124_02_98_OID)
        per_read_length(stream)
        per_read_choice(stream)
        per_read_selection(stream)
        per_read_numeric_string(stream, 1)
        per_read_padding(stream, 1)
        number = per_read_number_of_set(stream)
        if number != 1:
            raise Asn1Error(f"invalid number of set {number} in conference create request")
        choice = per_read_choice(stream)
        if choice != 0xC0:
            raise Asn1Error(f"invalid choice 0x{choice:02x} in conference create request")
        per_read_octet_stream(stream, H221_CS_KEY, 4)
        length = per_read_length(stream)

        for block_type, block_length in _read_blocks(stream, length):
            body_length = block_length - _BLOCK_HEADER.size
            if block_type == GCCMessageType.MSG_TYPE_CS_CORE:
                self.core = ClientCoreData.read(stream.read(body_length))
            elif block_type == GCCMessageType.MSG_TYPE_CS_NET:
                self.network = ClientNetworkData.read(stream)
            elif block_type == GCCMessageType.MSG_TYPE_CS_SECURITY:
                self.security = ClientSecurityData.read(stream)
            else:
                stream.skip(body_length)

    def write_conference_create_request(self) -> bytes:
        settings = (
            write_data_block_header(GCCMessageType.MSG_TYPE_CS_CORE, ClientCoreData.SIZE)
            + self.core.to_bytes()
            + write_data_block_header(GCCMessageType.MSG_TYPE_CS_NET, self.network.size())
            + self.network.to_bytes()
            + write_data_block_header(GCCMessageType.MSG_TYPE_CS_SECURITY,
                                      ClientSecurityData.SIZE)
            + self.security.to_bytes()
        )
        return b"".join([
            per_write_choice(0),
            per_write_object_identifier(T124_02_98_OID),
            per_write_length(len(settings) + 14),
            per_write_choice(0),
            per_write_selection(0x80),
            per_write_numeric_string("1", 1),
            per_write_padding(1),
            per_write_number_of_set(1),
            per_write_choice(0xC0),
            per_write_octet_stream(H221_CS_KEY, 4),
            per_write_octet_stream(settings),
        ])


@dataclass
class ServerSettings:
    """Settings the server sends in the conference create response."""

    core: ServerCoreData = field(default_factory=ServerCoreData)
    network: ServerNetworkData = field(default_factory=ServerNetworkData)
    security: ServerSecurityData = field(default_factory=ServerSecurityData)

    def read_conference_create_response(self, stream: ByteStream) -> None:
        """Decode a conference create response into these settings."""
        per_read_choice(stream)
        per_read_object_identifier(stream, T124_02_98_OID)
        per_read_length(stream)
        per_read_choice(stream)
        per_read_integer16(stream, 1001)
        per_read_integer(stream)
        per_read_enumerates(stream)
        per_read_number_of_set(stream)
        per_read_choice(stream)
        per_read_octet_stream(stream, H221_SC_KEY, 4)
        length = per_read_length(stream)

        for block_type, block_length in _read_blocks(stream, length):
            body_length = block_length - _BLOCK_HEADER.size
            if block_type == GCCMessageType.MSG_TYPE_SC_CORE:
                self.core = ServerCoreData.read(stream.read(body_length))
            elif block_type == GCCMessageType.MSG_TYPE_SC_NET:
                self.network = ServerNetworkData.read(stream)
            elif block_type == GCCMessageType.MSG_TYPE_SC_SECURITY:
                self.security = ServerSecurityData.read(stream)
            else:
                stream.skip(body_length)

    def write_conference_create_response(self) -> bytes:
        settings = (
            write_data_block_header(GCCMessageType.MSG_TYPE_SC_CORE, ServerCoreData.SIZE)
            + self.core.to_bytes()
            + write_data_block_header(GCCMessageType.MSG_TYPE_SC_NET, self.network.size())
            + self.network.to_bytes()
            + write_data_block_header(GCCMessageType.MSG_TYPE_SC_SECURITY, self.security.size())
            + self.security.to_bytes()
        )
        return b"".join([
            per_write_choice(0),
            per_write_object_identifier(T124_02_98_OID),
            per_write_length(len(settings) + 14),
            per_write_choice(0x14),
            per_write_integer16(0x79F3, 1001),
            per_write_integer(1),
            per_write_enumerates(0),
            per_write_number_of_set(1),
            per_write_choice(0xC0),
            per_write_octet_stream(H221_SC_KEY, 4),
            per_write_octet_stream(settings),
        ])