"""
Modbus TCP Server Session
=========================

Per-connection state for an accepted Modbus TCP client.

Session states:
    CONNECTED - Client accepted, reading frames
    CLOSED    - Client or server closed the connection
    ERROR     - Connection ended on an I/O error

Framing:
    TCP delivers a byte stream, so a read can carry half a frame or several
    frames. Incoming bytes accumulate in inbound_buffer and are split on the
    MBAP length field (frame = 6 + length bytes). A length field beyond the
    Modbus maximum cannot be trusted; the whole buffered chunk is then handed
    over as one frame so the codec can answer it defensively.

    A frame whose declared length is never reached (short coil data) stalls
    the buffer. Once the peer goes idle with at least a function code
    buffered, take_partial_frame() hands the bytes over as they are.
"""

from enum import Enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional
import struct

from config import MODBUS_CONFIG


LENGTH_FIELD_END = 6
MAX_LENGTH_FIELD = MODBUS_CONFIG["max_length_field"]
MIN_PARTIAL_FRAME = MODBUS_CONFIG["mbap_header_length"] + 1


class SessionState(Enum):
    """Client session states"""
    CONNECTED = 1
    CLOSED = 2
    ERROR = 3


@dataclass
class ServerSession:
    """
    One accepted client connection.

    Attributes:
        remote_address: Client address, for logging only
        inbound_buffer: Bytes received but not yet framed
        state: Current session state
        connected_at: Accept timestamp
        last_recv_time: Timestamp of last received data
        frames_received: Frames split off the buffer
        oversized_frames: Frames whose length field was not trusted
        partial_frames: Short frames taken after the peer went idle
        last_error: Message of the error that ended the session
    """

    remote_address: str
    inbound_buffer: bytearray = field(default_factory=bytearray)
    state: SessionState = SessionState.CONNECTED
    connected_at: datetime = field(default_factory=datetime.now)
    last_recv_time: datetime = field(default_factory=datetime.now)
    frames_received: int = 0
    oversized_frames: int = 0
    partial_frames: int = 0
    bytes_received: int = 0
    bytes_sent: int = 0
    last_error: Optional[str] = None

    def feed(self, data: bytes):
        """Append received bytes to the inbound buffer"""
        self.inbound_buffer.extend(data)
        self.bytes_received += len(data)
        self.last_recv_time = datetime.now()

    def next_frame(self) -> Optional[bytes]:
        """
        Split one complete frame off the inbound buffer.

        Returns:
            Frame bytes, or None if more data is needed
        """
        if len(self.inbound_buffer) < LENGTH_FIELD_END:
            return None

        length, = struct.unpack_from('>H', self.inbound_buffer, 4)
        if length > MAX_LENGTH_FIELD:
            frame = bytes(self.inbound_buffer)
            self.inbound_buffer.clear()
            self.oversized_frames += 1
            self.frames_received += 1
            return frame

        frame_length = LENGTH_FIELD_END + length
        if len(self.inbound_buffer) < frame_length:
            return None

        frame = bytes(self.inbound_buffer[:frame_length])
        del self.inbound_buffer[:frame_length]
        self.frames_received += 1
        return frame

    def has_partial_frame(self) -> bool:
        """True when the buffer holds at least a function code"""
        return len(self.inbound_buffer) >= MIN_PARTIAL_FRAME

    def take_partial_frame(self) -> Optional[bytes]:
        """
        Hand over a stalled frame as it is.

        Returns:
            Buffered bytes, or None if no function code has arrived yet
        """
        if not self.has_partial_frame():
            return None
        frame = bytes(self.inbound_buffer)
        self.inbound_buffer.clear()
        self.partial_frames += 1
        self.frames_received += 1
        return frame

    def on_data_sent(self, count: int):
        self.bytes_sent += count

    def on_closed(self):
        """Handle orderly close"""
        if self.state == SessionState.CONNECTED:
            self.state = SessionState.CLOSED
        self.inbound_buffer.clear()

    def on_error(self, error: str):
        """Handle I/O error"""
        self.state = SessionState.ERROR
        self.last_error = error
        self.inbound_buffer.clear()

    def is_connected(self) -> bool:
        return self.state == SessionState.CONNECTED

    def get_status(self) -> dict:
        return {
            "address": self.remote_address,
            "state": self.state.name,
            "connected_at": self.connected_at.isoformat(),
            "frames_received": self.frames_received,
            "partial_frames": self.partial_frames,
            "bytes_received": self.bytes_received,
            "bytes_sent": self.bytes_sent,
            "buffered": len(self.inbound_buffer),
        }
