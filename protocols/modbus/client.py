"""
Modbus TCP Client
=================

Small blocking client for exercising the coil server from tools and tests.

Features:
    - Connection management
    - FC15 Write Multiple Coils, FC02 Read Discrete Inputs
    - Raw frame send/receive for malformed-frame testing
    - Timeout management
"""

import socket
import struct
import logging
from typing import List, Optional, Tuple
from datetime import datetime

from protocols.modbus.codec import (
    FC_READ_DISCRETE_INPUTS,
    FC_WRITE_MULTIPLE_COILS,
    pack_coils,
    unpack_coils,
)


logger = logging.getLogger(__name__)


def build_write_multiple_coils(
    transaction_id: int,
    address: int,
    values: List[bool],
    unit_id: int = 1,
    coil_data: Optional[bytes] = None,
) -> bytes:
    """
    Build an FC15 request frame.

    Args:
        transaction_id: MBAP transaction ID
        address: First coil address
        values: Coil values (bit count is len(values))
        unit_id: MBAP unit ID
        coil_data: Override for the packed data, e.g. to send short frames
    """
    data = pack_coils(values) if coil_data is None else coil_data
    pdu = struct.pack('>BHHB', FC_WRITE_MULTIPLE_COILS, address, len(values), len(data)) + data
    return struct.pack('>HHHB', transaction_id, 0, len(pdu) + 1, unit_id) + pdu


def build_read_discrete_inputs(
    transaction_id: int,
    address: int,
    quantity: int,
    unit_id: int = 1,
) -> bytes:
    """Build an FC02 request frame."""
    pdu = struct.pack('>BHH', FC_READ_DISCRETE_INPUTS, address, quantity)
    return struct.pack('>HHHB', transaction_id, 0, len(pdu) + 1, unit_id) + pdu


class ModbusClient:
    """
    Modbus TCP client for the coil server.
    """

    def __init__(self, host: str, port: int = 502, timeout_s: float = 2.0):
        """
        Initialize Modbus client.

        Args:
            host: Server IP address or hostname
            port: Modbus TCP port (default 502)
            timeout_s: Socket timeout in seconds
        """
        self.host = host
        self.port = port
        self.timeout_s = timeout_s
        self.socket: Optional[socket.socket] = None
        self.transaction_id = 0
        self.connected = False
        self.last_error: Optional[str] = None
        self.last_rx_time: datetime = datetime.now()

        self.stats = {
            'connections': 0,
            'disconnections': 0,
            'reads': 0,
            'writes': 0,
            'errors': 0,
        }

    def connect(self) -> bool:
        """
        Connect to the server.

        Returns:
            True if connection successful, False otherwise
        """
        try:
            self.socket = socket.create_connection((self.host, self.port), timeout=self.timeout_s)
            self.connected = True
            self.stats['connections'] += 1
            logger.info(f"Modbus connected to {self.host}:{self.port}")
            return True

        except OSError as e:
            self.last_error = str(e)
            self.connected = False
            logger.error(f"Modbus connection failed to {self.host}:{self.port}: {e}")
            return False

    def disconnect(self):
        """Disconnect from the server."""
        if self.socket:
            try:
                self.socket.close()
            except OSError as e:
                logger.debug(f"Close failed: {e}")
            self.socket = None
        self.connected = False
        self.stats['disconnections'] += 1
        logger.info(f"Modbus disconnected from {self.host}:{self.port}")

    def __enter__(self):
        if not self.connect():
            raise ConnectionError(self.last_error)
        return self

    def __exit__(self, exc_type, exc, tb):
        self.disconnect()

    def _get_transaction_id(self) -> int:
        """Get next transaction ID (1-65535)."""
        self.transaction_id = (self.transaction_id % 65535) + 1
        return self.transaction_id

    def send_raw(self, frame: bytes):
        """Send bytes as-is."""
        if not self.connected and not self.connect():
            raise ConnectionError(self.last_error)
        self.socket.sendall(frame)

    def receive_raw(self, size: int) -> bytes:
        """
        Receive exactly size bytes.

        Raises:
            ConnectionError: Server closed the connection first
            socket.timeout: Nothing arrived within timeout_s
        """
        data = b''
        while len(data) < size:
            chunk = self.socket.recv(size - len(data))
            if not chunk:
                raise ConnectionError(f"Connection closed after {len(data)} of {size} bytes")
            data += chunk
        self.last_rx_time = datetime.now()
        return data

    def write_multiple_coils(self, address: int, values: List[bool]) -> Optional[Tuple[int, int]]:
        """
        Write coils (FC15).

        Args:
            address: First coil address
            values: Coil values

        Returns:
            (address, bit count) echoed by the server, or None on error
        """
        try:
            request = build_write_multiple_coils(self._get_transaction_id(), address, values)
            self.send_raw(request)
            response = self.receive_raw(12)
            self.stats['writes'] += 1

            function_code, echoed_address, bit_count = struct.unpack('>BHH', response[7:12])
            if function_code != FC_WRITE_MULTIPLE_COILS:
                raise ValueError(f"Unexpected function code {function_code}")
            return echoed_address, bit_count

        except (OSError, ValueError) as e:
            self.last_error = str(e)
            self.stats['errors'] += 1
            logger.error(f"Write failed for {self.host}: {e}")
            return None

    def read_discrete_inputs(self, address: int, quantity: int) -> Optional[List[bool]]:
        """
        Read discrete inputs (FC02).

        Returns:
            List of input states, or None on error
        """
        try:
            request = build_read_discrete_inputs(self._get_transaction_id(), address, quantity)
            self.send_raw(request)
            header = self.receive_raw(9)
            self.stats['reads'] += 1

            function_code, byte_count = header[7], header[8]
            if function_code != FC_READ_DISCRETE_INPUTS:
                raise ValueError(f"Unexpected function code {function_code}")
            data = self.receive_raw(byte_count) if byte_count else b''
            return unpack_coils(data, quantity)

        except (OSError, ValueError) as e:
            self.last_error = str(e)
            self.stats['errors'] += 1
            logger.error(f"Read failed for {self.host}: {e}")
            return None
