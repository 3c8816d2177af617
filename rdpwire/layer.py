"""Byte stream reader and the layer plumbing shared by the protocol stack."""

from __future__ import annotations

import struct
from abc import ABC, abstractmethod
from typing import Callable, Optional


class ByteStream:
    """Forward-only read cursor over a byte string."""

    def __init__(self, data=b""):
        self._data = bytes(data)
        self._pos = 0

    def __len__(self) -> int:
        return len(self._data) - self._pos

    def __repr__(self) -> str:
        return f"ByteStream({self.remaining()!r})"

    def read(self, count: int) -> bytes:
        """Consume and return exactly ``count`` bytes."""
        if count < 0:
            raise ValueError(f"cannot read a negative number of bytes ({count})")
        if count > len(self):
            raise EOFError(f"need {count} bytes, only {len(self)} left")
        chunk = self._data[self._pos:self._pos + count]
        self._pos += count
        return chunk

    def _unpack(self, fmt: str) -> int:
        (value,) = struct.unpack(fmt, self.read(struct.calcsize(fmt)))
        return value

    def peek_uint8(self) -> int:
        """Return the next byte without consuming it."""
        if not len(self):
            raise EOFError("no byte left to peek")
        return self._data[self._pos]

    def read_uint8(self) -> int:
        return self._unpack("B")

    def read_uint16_le(self) -> int:
        return self._unpack("<H")

    def read_uint16_be(self) -> int:
        return self._unpack(">H")

    def read_uint32_le(self) -> int:
        return self._unpack("<I")

    def read_uint32_be(self) -> int:
        return self._unpack(">I")

    def skip(self, count: int) -> None:
        """Discard ``count`` bytes."""
        self.read(count)

    def remaining(self) -> bytes:
        """Return the unread bytes without consuming them."""
        return self._data[self._pos:]


class RdpTransport(ABC):
    """The socket side of a protocol stack."""

    @abstractmethod
    def transport_send(self, data: bytes) -> None:
        """Write raw bytes to the peer."""

    @abstractmethod
    def transport_close(self) -> None:
        """Close the connection."""

    @abstractmethod
    def start_tls(self) -> bool:
        """Upgrade the connection to TLS; return whether it succeeded."""

    @abstractmethod
    def is_tls_support(self) -> bool:
        """Whether this side is able to offer TLS."""


StateCallback = Callable[[ByteStream], None]


class Layer:
    """One layer of the stack, linked to the layer above and the one below.

    Incoming data is handed to the current state callback, which each layer
    changes as its automaton advances.
    """

    def __init__(self, presentation: Optional["Layer"] = None):
        self.presentation = presentation
        self.transport: Optional[Layer] = None
        self._next_state: Optional[StateCallback] = None
        if presentation is not None:
            presentation.transport = self

    def connect(self) -> None:
        """Signal that the lower layer is connected."""
        if self.presentation is not None:
            self.presentation.connect()

    def close(self) -> None:
        """Close the stack through the lower layer."""
        if self.transport is not None:
            self.transport.close()

    def recv(self, data: ByteStream) -> None:
        """Hand received data to the current state."""
        if self._next_state is None:
            raise RuntimeError(f"{type(self).__name__} has no receive state")
        self._next_state(data)

    def send(self, data: bytes) -> None:
        """Pass data down to the lower layer."""
        if self.transport is None:
            raise RuntimeError(f"{type(self).__name__} has no transport layer")
        self.transport.send(data)

    def set_next_state(self, callback: StateCallback) -> None:
        """Set the callback that handles the next received data."""
        self._next_state = callback


class FastPathLayer(ABC):
    """A layer that exchanges fast-path PDUs."""

    @abstractmethod
    def recv_fast_path(self, sec_flag: int, data: ByteStream) -> None:
        """Handle a received fast-path PDU."""

    @abstractmethod
    def send_fast_path(self, sec_flag: int, data: bytes) -> None:
        """Send a fast-path PDU."""