"""
Modbus Protocol Implementation
===============================

Modbus TCP coil server with latched level tracking.

This package provides:
    - CoilBank: Raw coil values plus latched levels
    - Frame codec: FC15 Write Multiple Coils, FC02 Read Discrete Inputs
    - ModbusTCPServer: Async listener with per-client frame buffering
    - ServerRuntime: Lifecycle state machine with bounded reconnects
    - ServerLifecycleController: Drives the runtime from sockets and timers
    - ModbusClient: Blocking client for tools and tests

Usage:
    from protocols.modbus import CoilBank, ServerLifecycleController

    bank = CoilBank(48)
    controller = ServerLifecycleController(bank, host='0.0.0.0', port=502)
    await controller.start()
"""

from protocols.modbus.coil_bank import CoilBank, CoilIndexError
from protocols.modbus.codec import (
    FrameError,
    FC_READ_DISCRETE_INPUTS,
    FC_WRITE_MULTIPLE_COILS,
    ReadDiscreteInputsRequest,
    WriteMultipleCoilsRequest,
    decode_request,
    encode_response,
    process_frame,
)
from protocols.modbus.connection import ServerSession, SessionState
from protocols.modbus.server import ModbusTCPServer
from protocols.modbus.state_machine import (
    ReconnectDecision,
    ServerRuntime,
    ServerState,
    ServerStatus,
)
from protocols.modbus.lifecycle import ServerLifecycleController
from protocols.modbus.client import ModbusClient

__all__ = [
    # State
    'CoilBank',
    'CoilIndexError',

    # Codec
    'FrameError',
    'FC_READ_DISCRETE_INPUTS',
    'FC_WRITE_MULTIPLE_COILS',
    'ReadDiscreteInputsRequest',
    'WriteMultipleCoilsRequest',
    'decode_request',
    'encode_response',
    'process_frame',

    # Server
    'ServerSession',
    'SessionState',
    'ModbusTCPServer',
    'ServerLifecycleController',

    # Lifecycle
    'ReconnectDecision',
    'ServerRuntime',
    'ServerState',
    'ServerStatus',

    # Client
    'ModbusClient',
]
