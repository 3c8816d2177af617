import pytest

from rdpwire.asn1 import Asn1Error
from rdpwire.certificate import (
    CertificateType,
    ProprietaryServerCertificate,
    RSAPublicKey,
    ServerCertificate,
)
from rdpwire.gcc import (
    ChannelDef,
    ChannelOptions,
    ClientCoreData,
    ClientNetworkData,
    ClientSecurityData,
    ClientSettings,
    ColorDepth,
    EncryptionLevel,
    EncryptionMethod,
    GCCMessageType,
    ServerCoreData,
    ServerNetworkData,
    ServerSecurityData,
    ServerSettings,
    write_data_block_header,
)
from rdpwire.layer import ByteStream


def _encrypted_security():
    key = RSAPublicKey(modulus=bytes(range(1, 65)))
    cert = ProprietaryServerCertificate(public_key_blob=key, w_public_key_blob_len=key.size())
    cert.sign()
    return ServerSecurityData(
        encryption_method=EncryptionMethod.ENCRYPTION_METHOD_128BIT,
        encryption_level=EncryptionLevel.ENCRYPTION_LEVEL_HIGH,
        server_random=bytes(range(32)),
        server_certificate=ServerCertificate(
            dw_version=CertificateType.CERT_CHAIN_VERSION_1, proprietary=cert),
    )


def test_data_block_header_wire_bytes():
    assert write_data_block_header(GCCMessageType.MSG_TYPE_CS_CORE, 12) == b"\x01\xc0\x10\x00"


def test_client_core_size_and_round_trip():
    core = ClientCoreData()
    data = core.to_bytes()
    assert len(data) == 212
    assert ClientCoreData.read(data) == core


def test_client_core_default_name_is_utf16():
    assert "rdpp".encode("utf-16-le") in ClientCoreData().to_bytes()


def test_client_core_name_truncated():
    name = "abcdefghijklmnopqrst"
    core = ClientCoreData(client_name=name)
    assert ClientCoreData.read(core.to_bytes()).client_name == name[:15]


def test_client_core_short_read_keeps_defaults():
    data = ClientCoreData(desktop_width=1024, desktop_height=768).to_bytes()[:8]
    core = ClientCoreData.read(data)
    assert core.desktop_width == 1024
    assert core.desktop_height == 768
    assert core.client_build == 3790
    assert core.color_depth == ColorDepth.RNS_UD_COLOR_8BPP


def test_client_core_ime_name_too_long():
    with pytest.raises(ValueError):
        ClientCoreData(ime_file_name=b"x" * 65).to_bytes()


def test_server_core_round_trip_and_short_read():
    core = ServerCoreData(client_requested_protocol=3, early_capability_flags=1)
    assert ServerCoreData.read(core.to_bytes()) == core
    partial = ServerCoreData.read(core.to_bytes()[:8])
    assert partial.client_requested_protocol == 3
    assert partial.early_capability_flags == 0


def test_client_security_round_trip():
    security = ClientSecurityData()
    assert security.encryption_methods & EncryptionMethod.ENCRYPTION_METHOD_128BIT
    assert ClientSecurityData.read(ByteStream(security.to_bytes())) == security


def test_channel_def_round_trip_and_limit():
    channel = ChannelDef(name="rdpdr", options=ChannelOptions.CHANNEL_OPTION_INITIALIZED)
    stream = ByteStream(channel.to_bytes())
    assert ChannelDef.read(stream) == channel
    assert len(stream) == 0
    with pytest.raises(ValueError):
        ChannelDef(name="waytoolongname").to_bytes()


def test_client_network_round_trip():
    network = ClientNetworkData([ChannelDef("rdpdr", 1), ChannelDef("cliprdr", 2)])
    data = network.to_bytes()
    assert network.size() == len(data)
    assert ClientNetworkData.read(ByteStream(data)) == network


@pytest.mark.parametrize("ids", [[], [1004], [1004, 1005], [1004, 1005, 1006]])
def test_server_network_round_trip(ids):
    network = ServerNetworkData(channel_ids=ids)
    data = network.to_bytes()
    assert network.size() == len(data)
    stream = ByteStream(data)
    assert ServerNetworkData.read(stream) == network
    assert len(stream) == 0


def test_server_network_odd_count_is_padded():
    assert ServerNetworkData(channel_ids=[1004]).size() == \
        ServerNetworkData(channel_ids=[1004, 1005]).size()
    assert ServerNetworkData().mcs_channel_id == 1003


def test_server_security_unencrypted():
    security = ServerSecurityData()
    assert security.size() == 8
    assert len(security.to_bytes()) == 8
    assert ServerSecurityData.read(ByteStream(security.to_bytes())) == security


def test_server_security_encrypted_round_trip():
    security = _encrypted_security()
    data = security.to_bytes()
    assert security.size() == len(data)
    decoded = ServerSecurityData.read(ByteStream(data))
    assert decoded == security
    assert decoded.server_certificate.verify()


def test_client_settings_round_trip():
    settings = ClientSettings()
    settings.core.desktop_width = 1024
    settings.core.client_name = "desk"
    settings.network.channel_defs.append(ChannelDef("rdpsnd", 3))
    data = settings.write_conference_create_request()
    assert b"Duca" in data

    decoded = ClientSettings()
    decoded.read_conference_create_request(ByteStream(data))
    assert decoded == settings


@pytest.mark.parametrize("offset,value", [(-3, 2), (-2, 0)])
def test_client_settings_bad_header(offset, value):
    data = bytearray(ClientSettings().write_conference_create_request())
    data[data.index(b"Duca") + offset] = value
    with pytest.raises(Asn1Error):
        ClientSettings().read_conference_create_request(ByteStream(bytes(data)))


def test_client_settings_bad_key():
    data = ClientSettings().write_conference_create_request().replace(b"Duca", b"Xuca")
    with pytest.raises(Asn1Error):
        ClientSettings().read_conference_create_request(ByteStream(data))


def test_server_settings_round_trip():
    settings = ServerSettings(
        core=ServerCoreData(client_requested_protocol=1),
        network=ServerNetworkData(channel_ids=[1004, 1005, 1006]),
        security=_encrypted_security(),
    )
    data = settings.write_conference_create_response()
    assert b"McDn" in data

    decoded = ServerSettings()
    decoded.read_conference_create_response(ByteStream(data))
    assert decoded == settings


def test_server_settings_bad_key():
    data = ServerSettings().write_conference_create_response().replace(b"McDn", b"XcDn")
    with pytest.raises(Asn1Error):
        ServerSettings().read_conference_create_response(ByteStream(data))


def test_server_settings_truncated():
    data = ServerSettings().write_conference_create_response()[:-4]
    with pytest.raises(EOFError):
        ServerSettings().read_conference_create_response(ByteStream(data))