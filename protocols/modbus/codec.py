"""
Modbus TCP Frame Codec
======================

Decodes requests and encodes responses for the two function codes this
server implements.

Frame layout (byte offsets are frame-relative):
    0-1   Transaction ID
    2-3   Protocol ID
    4-5   Length
    6     Unit ID
    7     Function code
    8..   Function-specific payload

FC15 Write Multiple Coils:
    Request:   address u16 @8, bit count u16 @10, byte count u8 @12, data @13..
    Response:  header[0:6], 0x00, 0x0F, address u16, bit count u16  (12 bytes)

FC02 Read Discrete Inputs:
    Request:   address u16 @8, quantity u16 @10
    Response:  header[0:6], 0x00, 0x02, byte count u8, byte count zero bytes

Decoding reads fields by fixed offset instead of trusting the length field.
Coil data shorter than the declared bit count is padded with False; the
response always echoes the request address and bit count. Any other function
code decodes to None and gets no response.

All multi-byte fields are big-endian.
"""

import logging
import struct
from dataclasses import dataclass, field
from typing import List, Optional, Union

from config import MODBUS_CONFIG

logger = logging.getLogger(__name__)


FC_READ_DISCRETE_INPUTS = 0x02
FC_WRITE_MULTIPLE_COILS = 0x0F

SUPPORTED_FUNCTION_CODES = (FC_READ_DISCRETE_INPUTS, FC_WRITE_MULTIPLE_COILS)

HEADER_ECHO_LENGTH = MODBUS_CONFIG["echoed_header_length"]
FUNCTION_CODE_OFFSET = MODBUS_CONFIG["mbap_header_length"]
COIL_DATA_OFFSET = 13


class FrameError(ValueError):
    """Frame too short to hold the fields of its function code."""


@dataclass
class WriteMultipleCoilsRequest:
    """Decoded FC15 request."""
    header: bytes
    unit_id: int
    address: int
    bit_count: int
    byte_count: int
    coil_data: bytes
    values: List[bool] = field(default_factory=list)

    function_code = FC_WRITE_MULTIPLE_COILS

    @property
    def padded_bits(self) -> int:
        """Number of trailing values that were not present in the frame."""
        return max(0, self.bit_count - len(self.coil_data) * 8)


@dataclass
class ReadDiscreteInputsRequest:
    """Decoded FC02 request."""
    header: bytes
    unit_id: int
    address: int
    quantity: int

    function_code = FC_READ_DISCRETE_INPUTS

    @property
    def byte_count(self) -> int:
        return (self.quantity + 7) // 8


ModbusRequest = Union[WriteMultipleCoilsRequest, ReadDiscreteInputsRequest]


def function_code_of(frame: bytes) -> int:
    if len(frame) <= FUNCTION_CODE_OFFSET:
        raise FrameError(f"Frame of {len(frame)} bytes has no function code")
    return frame[FUNCTION_CODE_OFFSET]


def unpack_coils(data: bytes, bit_count: int) -> List[bool]:
    """
    Unpack bit_count coil values, LSB first within each byte.

    Bits beyond the end of data are returned as False.
    """
    values = []
    for i in range(bit_count):
        byte_idx = i // 8
        if byte_idx < len(data):
            values.append(bool(data[byte_idx] & (1 << (i % 8))))
        else:
            values.append(False)
    return values


def pack_coils(values: List[bool]) -> bytes:
    """Pack coil values into bytes (8 coils per byte, LSB first)."""
    packed = bytearray((len(values) + 7) // 8)
    for i, value in enumerate(values):
        if value:
            packed[i // 8] |= (1 << (i % 8))
    return bytes(packed)


def decode_request(frame: bytes) -> Optional[ModbusRequest]:
    """
    Decode one request frame.

    Args:
        frame: Complete frame bytes, MBAP header included

    Returns:
        Decoded request, or None for unsupported function codes

    Raises:
        FrameError: Fixed-offset fields of a supported request are missing
    """
    function_code = function_code_of(frame)
    header = bytes(frame[:HEADER_ECHO_LENGTH])
    unit_id = frame[6]

    if function_code == FC_WRITE_MULTIPLE_COILS:
        if len(frame) < COIL_DATA_OFFSET:
            raise FrameError(f"FC15 request truncated at {len(frame)} bytes")

        address, bit_count, byte_count = struct.unpack_from('>HHB', frame, 8)
        coil_data = bytes(frame[COIL_DATA_OFFSET:COIL_DATA_OFFSET + byte_count])
        request = WriteMultipleCoilsRequest(
            header=header,
            unit_id=unit_id,
            address=address,
            bit_count=bit_count,
            byte_count=byte_count,
            coil_data=coil_data,
            values=unpack_coils(coil_data, bit_count),
        )
        if request.padded_bits:
            logger.debug(
                f"Incomplete data: expected {bit_count} bits, received "
                f"{bit_count - request.padded_bits} bits. Padding with zeros."
            )
        return request

    if function_code == FC_READ_DISCRETE_INPUTS:
        if len(frame) < 12:
            raise FrameError(f"FC02 request truncated at {len(frame)} bytes")

        address, quantity = struct.unpack_from('>HH', frame, 8)
        return ReadDiscreteInputsRequest(
            header=header,
            unit_id=unit_id,
            address=address,
            quantity=quantity,
        )

    return None


def encode_response(request: ModbusRequest) -> bytes:
    """
    Build the response frame for a decoded request.

    The first six header bytes (transaction ID, protocol ID, length) are
    copied verbatim from the request; the unit ID byte is left zero.
    """
    if isinstance(request, WriteMultipleCoilsRequest):
        return (
            request.header
            + b'\x00'
            + struct.pack('>BHH', FC_WRITE_MULTIPLE_COILS, request.address, request.bit_count)
        )

    byte_count = request.byte_count
    if byte_count > 0xFF:
        raise FrameError(
            f"FC02 quantity {request.quantity} needs {byte_count} bytes, "
            f"more than a single-byte count allows"
        )

    # Discrete inputs are not backed by any state and always read as zero
    return (
        request.header
        + b'\x00'
        + struct.pack('BB', FC_READ_DISCRETE_INPUTS, byte_count)
        + bytes(byte_count)
    )


def process_frame(frame: bytes, coil_bank, log: logging.Logger = logger) -> Optional[bytes]:
    """
    Decode a frame, apply it to the coil bank and build the response.

    Args:
        frame: Complete request frame
        coil_bank: CoilBank receiving FC15 writes
        log: Logger for frame diagnostics

    Returns:
        Response bytes, or None when the request is ignored
    """
    request = decode_request(frame)
    if request is None:
        log.debug(f"Ignoring unsupported function code {frame[FUNCTION_CODE_OFFSET]}")
        return None

    if isinstance(request, WriteMultipleCoilsRequest):
        log.debug(
            f"Write Multiple Coils: address={request.address} "
            f"bits={request.bit_count} bytes={request.byte_count} "
            f"data={request.coil_data.hex()}"
        )
        coil_bank.write_many(request.address, request.values)
    else:
        log.debug(
            f"Read Discrete Inputs: address={request.address} quantity={request.quantity}"
        )

    return encode_response(request)
