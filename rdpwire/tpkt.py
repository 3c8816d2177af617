"""Transport packet layer: frames slow-path and fast-path packets."""

from __future__ import annotations

import struct
from enum import IntEnum, IntFlag
from typing import Optional

from rdpwire.layer import ByteStream, FastPathLayer, Layer, RdpTransport, StateCallback


class FastPathAction(IntEnum):
    FASTPATH_ACTION_FASTPATH = 0x0
    FASTPATH_ACTION_X224 = 0x3


class SecFlags(IntFlag):
    FASTPATH_OUTPUT_SECURE_CHECKSUM = 0x1
    FASTPATH_OUTPUT_ENCRYPTED = 0x2


class TPKTLayer(Layer, FastPathLayer):
    """First layer of the stack: splits the byte stream into packets.

    Packets whose first byte is the X.224 action go to the presentation
    layer; all others are fast-path packets for the fast-path listener.
    """

    def __init__(self, presentation: Optional[Layer], fast_path_listener: Optional[FastPathLayer],
                 rdp_transport: RdpTransport):
        Layer.__init__(self, presentation)
        self._fast_path_listener = fast_path_listener
        self._rdp_transport = rdp_transport
        self._buffer = bytearray()
        self._expected_len = 0
        self._last_short_length = 0
        self._sec_flag = 0

    def connect(self) -> None:
        self._expect(2, self._read_header)
        if self.presentation is not None:
            self.presentation.connect()

    def close(self) -> None:
        self._rdp_transport.transport_close()

    def data_received(self, data: bytes) -> None:
        """Feed raw bytes from the connection; complete packets are dispatched."""
        self._buffer += data
        while len(self._buffer) >= self._expected_len:
            size = self._expected_len
            packet = bytes(self._buffer[:size])
            del self._buffer[:size]
            self.recv(ByteStream(packet))

    def send(self, data: bytes) -> None:
        size = len(data) + 4
        if size > 0xFFFF:
            raise ValueError(f"TPKT packet of {size} bytes is too large")
        header = bytes([FastPathAction.FASTPATH_ACTION_X224, 0]) + struct.pack(">H", size)
        self._rdp_transport.transport_send(header + bytes(data))

    def send_fast_path(self, sec_flag: int, data: bytes) -> None:
        size = len(data) + 3
        if size > 0x7FFF:
            raise ValueError(f"fast-path packet of {size} bytes is too large")
        action = FastPathAction.FASTPATH_ACTION_FASTPATH | ((sec_flag & 0x03) << 6)
        header = bytes([action]) + struct.pack(">H", size | 0x8000)
        self._rdp_transport.transport_send(header + bytes(data))

    def recv_fast_path(self, sec_flag: int, data: ByteStream) -> None:
        """Hand a complete fast-path packet to the fast-path listener, if any."""
        if self._fast_path_listener is not None:
            self._fast_path_listener.recv_fast_path(sec_flag, data)

    def _expect(self, expected_len: int, callback: StateCallback) -> None:
        if expected_len < 0:
            raise ValueError(f"invalid packet length, {expected_len} bytes expected")
        self._expected_len = expected_len
        self.set_next_state(callback)

    def _read_header(self, data: ByteStream) -> None:
        version = data.read_uint8()
        if version == FastPathAction.FASTPATH_ACTION_X224:
            data.read_uint8()
            self._expect(2, self._read_extended_header)
            return
        self._sec_flag = (version >> 6) & 0x03
        self._last_short_length = data.read_uint8()
        if self._last_short_length & 0x80:
            self._expect(1, self._read_extended_fast_path_header)
        else:
            self._expect(self._last_short_length - 2, self._read_fast_path)

    def _read_extended_header(self, data: ByteStream) -> None:
        size = data.read_uint16_be()
        self._expect(size - 4, self._read_data)

    def _read_extended_fast_path_header(self, data: ByteStream) -> None:
        left_part = data.read_uint8()
        self._last_short_length &= 0x7F
        packet_size = (self._last_short_length << 8) + left_part
        self._expect(packet_size - 3, self._read_fast_path)

    def _read_fast_path(self, data: ByteStream) -> None:
        self.recv_fast_path(self._sec_flag, data)
        self._expect(2, self._read_header)

    def _read_data(self, data: ByteStream) -> None:
        if self.presentation is not None:
            self.presentation.recv(data)
        self._expect(2, self._read_header)