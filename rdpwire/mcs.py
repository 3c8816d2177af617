"""Multi-Channel Service layer: the T.125 domain, user and channel automata."""

from __future__ import annotations

import logging
import os
from enum import IntEnum
from typing import Optional, Protocol

from rdpwire.asn1 import (
    BER_TAG_OCTET_STRING,
    BER_TAG_SEQUENCE,
    Asn1Error,
    ber_read_application_tag,
    ber_read_boolean,
    ber_read_enumerated,
    ber_read_integer,
    ber_read_length,
    ber_read_octet_string,
    ber_read_universal_tag,
    ber_write_application_tag,
    ber_write_boolean,
    ber_write_enumerated,
    ber_write_integer,
    ber_write_length,
    ber_write_octet_string,
    ber_write_universal_tag,
    per_read_enumerates,
    per_read_integer,
    per_read_integer16,
    per_read_length,
    per_write_enumerates,
    per_write_integer,
    per_write_integer16,
    per_write_length,
)
from rdpwire.certificate import ServerCertificate
from rdpwire.gcc import (
    ClientSettings,
    EncryptionLevel,
    EncryptionMethod,
    ServerSettings,
)
from rdpwire.layer import ByteStream, Layer

log = logging.getLogger(__name__)


class Message(IntEnum):
    MCS_TYPE_CONNECT_INITIAL = 0x65
    MCS_TYPE_CONNECT_RESPONSE = 0x66


class DomainMCSPDU(IntEnum):
    ERECT_DOMAIN_REQUEST = 1
    DISCONNECT_PROVIDER_ULTIMATUM = 8
    ATTACH_USER_REQUEST = 10
    ATTACH_USER_CONFIRM = 11
    CHANNEL_JOIN_REQUEST = 14
    CHANNEL_JOIN_CONFIRM = 15
    SEND_DATA_REQUEST = 25
    SEND_DATA_INDICATION = 26


class Channel(IntEnum):
    MCS_GLOBAL_CHANNEL = 1003
    MCS_USERCHANNEL_BASE = 1001


_USER_BASE = Channel.MCS_USERCHANNEL_BASE
_GLOBAL = Channel.MCS_GLOBAL_CHANNEL


class _CertificateSource(Protocol):
    def get_certificate(self) -> ServerCertificate:
        ...


def write_domain_params(max_channels: int, max_users: int, max_tokens: int,
                        max_pdu_size: int) -> bytes:
    """Encode a DomainParameters sequence."""
    body = b"".join([
        ber_write_integer(max_channels),
        ber_write_integer(max_users),
        ber_write_integer(max_tokens),
        ber_write_integer(1),
        ber_write_integer(0),
        ber_write_integer(1),
        ber_write_integer(max_pdu_size),
        ber_write_integer(2),
    ])
    return ber_write_universal_tag(BER_TAG_SEQUENCE, True) + ber_write_length(len(body)) + body


def read_domain_params(stream: ByteStream) -> tuple[int, int, int, int]:
    """Decode DomainParameters; return (max_channels, max_users, max_tokens, max_pdu_size)."""
    ber_read_universal_tag(stream, BER_TAG_SEQUENCE, True)
    ber_read_length(stream)
    max_channels = ber_read_integer(stream)
    max_users = ber_read_integer(stream)
    max_tokens = ber_read_integer(stream)
    ber_read_integer(stream)
    ber_read_integer(stream)
    ber_read_integer(stream)
    max_pdu_size = ber_read_integer(stream)
    ber_read_integer(stream)
    return max_channels, max_users, max_tokens, max_pdu_size


def write_mcs_pdu_header(mcs_pdu: int, options: int = 0) -> bytes:
    """Encode the one-byte domain PDU header."""
    return bytes([((mcs_pdu << 2) | options) & 0xFF])


def read_mcs_pdu_header(opcode: int, mcs_pdu: int) -> bool:
    """Whether ``opcode`` is the header of ``mcs_pdu``."""
    return (opcode >> 2) == mcs_pdu


def _expect_pdu(data: ByteStream, mcs_pdu: DomainMCSPDU) -> None:
    opcode = data.read_uint8()
    if not read_mcs_pdu_header(opcode, mcs_pdu):
        raise Asn1Error(f"invalid MCS PDU: {mcs_pdu.name} expected, got opcode 0x{opcode:02x}")


class MCSLayer(Layer):
    """Common part of the client and server MCS automata."""

    def __init__(self, presentation: Optional[Layer], receive_opcode: int, send_opcode: int):
        super().__init__(presentation)
        self._receive_opcode = receive_opcode
        self._send_opcode = send_opcode
        self.user_id = 1 + _USER_BASE
        self.client_settings = ClientSettings()
        self.server_settings = ServerSettings()
        self.channels: dict[int, MCSProxySender] = {
            _GLOBAL: MCSProxySender(presentation, self, _GLOBAL),
        }

    def close(self) -> None:
        """Send a disconnect provider ultimatum and close the lower layer."""
        pdu = (write_mcs_pdu_header(DomainMCSPDU.DISCONNECT_PROVIDER_ULTIMATUM, 1)
               + per_write_enumerates(0x80) + bytes(6))
        self.transport.send(pdu)
        self.transport.close()

    def all_channel_connected(self) -> None:
        """Switch to data mode and connect every joined channel."""
        self.set_next_state(self.recv_data)
        for sender in list(self.channels.values()):
            sender.connect()

    def send_to_channel(self, channel_id: int, data: bytes) -> None:
        """Send ``data`` on ``channel_id``."""
        data = bytes(data)
        pdu = b"".join([
            write_mcs_pdu_header(self._send_opcode),
            per_write_integer16(self.user_id, _USER_BASE),
            per_write_integer16(channel_id),
            b"\x70",
            per_write_length(len(data)),
            data,
        ])
        self.transport.send(pdu)

    def recv_data(self, data: ByteStream) -> None:
        """Dispatch a data PDU to the channel it is addressed to."""
        opcode = data.read_uint8()
        if read_mcs_pdu_header(opcode, DomainMCSPDU.DISCONNECT_PROVIDER_ULTIMATUM):
            log.info("MCS disconnect provider ultimatum")
            self.transport.close()
            return
        if not read_mcs_pdu_header(opcode, self._receive_opcode):
            log.error("invalid MCS opcode 0x%02x while receiving data", opcode)
            self.transport.close()
            return

        per_read_integer16(data, _USER_BASE)
        channel_id = per_read_integer16(data)
        per_read_enumerates(data)
        per_read_length(data)

        sender = self.channels.get(channel_id)
        if sender is None:
            log.error("data received for an unconnected channel %d", channel_id)
            return
        sender.recv(data)


class ClientMCSLayer(MCSLayer):
    """Client automaton of the MCS layer."""

    def __init__(self, presentation: Optional[Layer]):
        super().__init__(presentation, DomainMCSPDU.SEND_DATA_INDICATION,
                         DomainMCSPDU.SEND_DATA_REQUEST)
        self._global_channel_requested = False
        self._user_channel_requested = False
        self._channels_requested = 0

    def connect(self) -> None:
        self.client_settings.core.server_selected_protocol = int(
            self.transport.selected_protocol)
        self.send_connect_initial()
        self.set_next_state(self.recv_connect_response)

    def connect_next_channel(self) -> None:
        """Join the next channel, or finish when all are joined."""
        self.set_next_state(self.recv_channel_join_confirm)
        if not self._global_channel_requested:
            self._global_channel_requested = True
            self.send_channel_join_request(_GLOBAL)
            return
        if not self._user_channel_requested:
            self._user_channel_requested = True
            self.send_channel_join_request(self.user_id)
            return
        channel_ids = self.server_settings.network.channel_ids
        if self._channels_requested < len(channel_ids):
            channel_id = channel_ids[self._channels_requested]
            self._channels_requested += 1
            self.send_channel_join_request(channel_id)
            return
        self.all_channel_connected()

    def recv_connect_response(self, data: ByteStream) -> None:
        ber_read_application_tag(data, Message.MCS_TYPE_CONNECT_RESPONSE)
        ber_read_enumerated(data)
        ber_read_integer(data)
        read_domain_params(data)
        ber_read_universal_tag(data, BER_TAG_OCTET_STRING, False)
        length = ber_read_length(data)
        if length != len(data):
            raise Asn1Error(f"bad size of GCC response: {length}, {len(data)} bytes left")
        self.server_settings.read_conference_create_response(data)

        self.send_erect_domain_request()
        self.send_attach_user_request()
        self.set_next_state(self.recv_attach_user_confirm)

    def recv_attach_user_confirm(self, data: ByteStream) -> None:
        _expect_pdu(data, DomainMCSPDU.ATTACH_USER_CONFIRM)
        if per_read_enumerates(data) != 0:
            raise Asn1Error("server rejected the user")
        self.user_id = per_read_integer16(data, _USER_BASE)
        self.connect_next_channel()

    def recv_channel_join_confirm(self, data: ByteStream) -> None:
        _expect_pdu(data, DomainMCSPDU.CHANNEL_JOIN_CONFIRM)
        confirm = per_read_enumerates(data)
        user_id = per_read_integer16(data, _USER_BASE)
        if user_id != self.user_id:
            raise Asn1Error(f"invalid MCS user id {user_id}")
        channel_id = per_read_integer16(data)
        if confirm != 0 and channel_id in (_GLOBAL, self.user_id):
            raise Asn1Error("server must confirm the static channels")
        self.connect_next_channel()

    def send_connect_initial(self) -> None:
        gcc = self.client_settings.write_conference_create_request()
        body = b"".join([
            ber_write_octet_string(b"\x01"),
            ber_write_octet_string(b"\x01"),
            ber_write_boolean(True),
            write_domain_params(34, 2, 0, 0xFFFF),
            write_domain_params(1, 1, 1, 0x420),
            write_domain_params(0xFFFF, 0xFC17, 0xFFFF, 0xFFFF),
            ber_write_octet_string(gcc),
        ])
        self.transport.send(
            ber_write_application_tag(Message.MCS_TYPE_CONNECT_INITIAL, len(body)) + body)

    def send_erect_domain_request(self) -> None:
        self.transport.send(write_mcs_pdu_header(DomainMCSPDU.ERECT_DOMAIN_REQUEST)
                            + per_write_integer(0) + per_write_integer(0))

    def send_attach_user_request(self) -> None:
        self.transport.send(write_mcs_pdu_header(DomainMCSPDU.ATTACH_USER_REQUEST))

    def send_channel_join_request(self, channel_id: int) -> None:
        self.transport.send(write_mcs_pdu_header(DomainMCSPDU.CHANNEL_JOIN_REQUEST)
                            + per_write_integer16(self.user_id, _USER_BASE)
                            + per_write_integer16(channel_id))


class ServerMCSLayer(MCSLayer):
    """Server automaton of the MCS layer."""

    def __init__(self, presentation: Optional[Layer]):
        super().__init__(presentation, DomainMCSPDU.SEND_DATA_REQUEST,
                         DomainMCSPDU.SEND_DATA_INDICATION)
        self._channels_confirmed = 0

    def connect(self) -> None:
        if self.transport.selected_protocol == 0:
            security = self.server_settings.security
            security.encryption_method = EncryptionMethod.ENCRYPTION_METHOD_128BIT
            security.encryption_level = EncryptionLevel.ENCRYPTION_LEVEL_HIGH
            security.server_random = os.urandom(32)
            source: _CertificateSource = self.presentation
            security.server_certificate = source.get_certificate()
        self.server_settings.core.client_requested_protocol = int(
            self.transport.requested_protocol)
        self.set_next_state(self.recv_connect_initial)

    def recv_connect_initial(self, data: ByteStream) -> None:
        ber_read_application_tag(data, Message.MCS_TYPE_CONNECT_INITIAL)
        ber_read_octet_string(data)
        ber_read_octet_string(data)
        ber_read_boolean(data)
        for _ in range(3):
            read_domain_params(data)
        gcc = ber_read_octet_string(data)
        self.client_settings.read_conference_create_request(ByteStream(gcc))

        self.server_settings.network.channel_ids = [
            index + 1 + _GLOBAL
            for index in range(len(self.client_settings.network.channel_defs))
        ]
        self.send_connect_response()
        self.set_next_state(self.recv_erect_domain_request)

    def recv_erect_domain_request(self, data: ByteStream) -> None:
        _expect_pdu(data, DomainMCSPDU.ERECT_DOMAIN_REQUEST)
        per_read_integer(data)
        per_read_integer(data)
        self.set_next_state(self.recv_attach_user_request)

    def recv_attach_user_request(self, data: ByteStream) -> None:
        _expect_pdu(data, DomainMCSPDU.ATTACH_USER_REQUEST)
        self.send_attach_user_confirm()
        self.set_next_state(self.recv_channel_join_request)

    def recv_channel_join_request(self, data: ByteStream) -> None:
        _expect_pdu(data, DomainMCSPDU.CHANNEL_JOIN_REQUEST)
        user_id = per_read_integer16(data, _USER_BASE)
        if user_id != self.user_id:
            raise Asn1Error(f"invalid MCS user id {user_id}")
        channel_id = per_read_integer16(data)

        confirm = not (channel_id in self.channels or channel_id == self.user_id)
        self.send_channel_join_confirm(channel_id, confirm)
        self._channels_confirmed += 1
        if self._channels_confirmed == self.server_settings.network.channel_count + 2:
            self.all_channel_connected()

    def send_connect_response(self) -> None:
        gcc = self.server_settings.write_conference_create_response()
        body = b"".join([
            ber_write_enumerated(0),
            ber_write_integer(0),
            write_domain_params(22, 3, 0, 0xFFF8),
            ber_write_octet_string(gcc),
        ])
        self.transport.send(
            ber_write_application_tag(Message.MCS_TYPE_CONNECT_RESPONSE, len(body)) + body)

    def send_attach_user_confirm(self) -> None:
        self.transport.send(write_mcs_pdu_header(DomainMCSPDU.ATTACH_USER_CONFIRM, 2)
                            + per_write_enumerates(0)
                            + per_write_integer16(self.user_id, _USER_BASE))

    def send_channel_join_confirm(self, channel_id: int, confirm: bool) -> None:
        """Answer a join request; ``confirm`` true means the channel is refused."""
        self.transport.send(b"".join([
            write_mcs_pdu_header(DomainMCSPDU.CHANNEL_JOIN_CONFIRM, 2),
            per_write_enumerates(int(confirm)),
            per_write_integer16(self.user_id, _USER_BASE),
            per_write_integer16(channel_id),
            per_write_integer16(channel_id),
        ]))


class MCSProxySender(Layer):
    """Transport seen by an upper layer: binds it to one MCS channel."""

    def __init__(self, presentation: Optional[Layer], mcs: MCSLayer, channel_id: int):
        super().__init__(presentation)
        self._mcs = mcs
        self.channel_id = channel_id

    def recv(self, data: ByteStream) -> None:
        if self.presentation is not None:
            self.presentation.recv(data)

    def send(self, data: bytes) -> None:
        self._mcs.send_to_channel(self.channel_id, data)

    def close(self) -> None:
        self._mcs.close()

    @property
    def user_id(self) -> int:
        return self._mcs.user_id

    @property
    def client_settings(self) -> ClientSettings:
        return self._mcs.client_settings

    @property
    def server_settings(self) -> ServerSettings:
        return self._mcs.server_settings