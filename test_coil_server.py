"""
Test Suite for the Modbus Coil Server
Tests the TCP listener, reconnect handling and the operator-facing instance
"""

import asyncio
import logging
import socket
import struct
import sys
from pathlib import Path

import pytest

# Add workspace to path
sys.path.insert(0, str(Path(__file__).parent))

from coil_server import CoilServerInstance, InstanceConfig, VariableStore
from protocols.modbus.client import (
    ModbusClient,
    build_read_discrete_inputs,
    build_write_multiple_coils,
)
from protocols.modbus.coil_bank import CoilBank
from protocols.modbus.lifecycle import ServerLifecycleController
from protocols.modbus.state_machine import ServerRuntime, ServerState, ServerStatus


def free_port() -> int:
    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as sock:
        sock.bind(("127.0.0.1", 0))
        return sock.getsockname()[1]


def hold_port() -> socket.socket:
    """Listening socket that keeps a port busy."""
    sock = socket.socket(socket.AF_INET, socket.SOCK_STREAM)
    sock.bind(("127.0.0.1", 0))
    sock.listen(1)
    return sock


async def wait_for(predicate, timeout_s: float = 3.0):
    deadline = asyncio.get_running_loop().time() + timeout_s
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("Condition not reached in time")
        await asyncio.sleep(0.01)


def fast_runtime(max_attempts: int = 100) -> ServerRuntime:
    return ServerRuntime(
        max_reconnect_attempts=max_attempts,
        default_delay_s=0.02,
        address_in_use_delay_s=0.02,
    )

# ============================================================================
# Listener
# ============================================================================

def test_write_and_read_over_tcp():
    """FC15 writes reach the bank; FC02 always reads zero"""

    async def scenario():
        bank = CoilBank(48)
        controller = ServerLifecycleController(bank, host="127.0.0.1", port=0)
        await controller.start()
        port = controller.bound_port

        def client_ops():
            with ModbusClient("127.0.0.1", port) as client:
                echo = client.write_multiple_coils(4, [True, False, True])
                inputs = client.read_discrete_inputs(0, 12)
            return echo, inputs

        try:
            assert controller.is_running
            echo, inputs = await asyncio.to_thread(client_ops)
        finally:
            await controller.stop()

        assert echo == (4, 3)
        assert inputs == [False] * 12
        assert bank.read_raw(4) is True
        assert bank.read_raw(5) is False
        assert bank.read_level(6) is True
        assert controller.status == ServerStatus.OK

    asyncio.run(scenario())


def test_split_and_batched_frames():
    """Frames are reassembled per connection and answered in order"""

    async def scenario():
        bank = CoilBank(48)
        controller = ServerLifecycleController(bank, host="127.0.0.1", port=0)
        await controller.start()
        port = controller.bound_port

        write = build_write_multiple_coils(0x0101, 10, [True, True])
        read = build_read_discrete_inputs(0x0102, 0, 8)

        def client_ops():
            with ModbusClient("127.0.0.1", port) as client:
                client.send_raw(write[:5])
                client.send_raw(write[5:])
                first = client.receive_raw(12)

                client.send_raw(write + read)
                second = client.receive_raw(12)
                third = client.receive_raw(10)
            return first, second, third

        try:
            first, second, third = await asyncio.to_thread(client_ops)
        finally:
            await controller.stop()

        assert first[:6] == write[:6]
        assert struct.unpack('>BHH', first[7:12]) == (15, 10, 2)
        assert second == first
        assert third[:6] == read[:6]
        assert third[7:] == b'\x02\x01\x00'
        assert bank.read_raw(11) is True

    asyncio.run(scenario())


def test_bad_frames_do_not_drop_connection():
    """Unsupported and truncated frames are skipped; the client stays connected"""

    async def scenario():
        bank = CoilBank(48)
        controller = ServerLifecycleController(bank, host="127.0.0.1", port=0)
        await controller.start()
        port = controller.bound_port

        unsupported = struct.pack('>HHHBBHH', 1, 0, 6, 1, 3, 0, 10)
        truncated = struct.pack('>HHHB', 2, 0, 1, 1)
        read = build_read_discrete_inputs(3, 0, 1)

        def client_ops():
            with ModbusClient("127.0.0.1", port) as client:
                client.send_raw(unsupported + truncated + read)
                return client.receive_raw(10)

        try:
            response = await asyncio.to_thread(client_ops)
            stats = controller.server.get_stats()
        finally:
            await controller.stop()

        assert struct.unpack('>H', response[:2]) == (3,)
        assert response[7:] == b'\x02\x01\x00'
        assert stats["ignored_frames"] == 1
        assert stats["frame_errors"] == 1

    asyncio.run(scenario())


def test_short_coil_data_answered_over_tcp():
    """FC15 whose length field counts missing coil bytes is answered once the client goes idle"""

    async def scenario():
        bank = CoilBank(48)
        for index in (8, 9):
            bank.write(index, True)
        controller = ServerLifecycleController(bank, host="127.0.0.1", port=0)
        await controller.start()
        port = controller.bound_port

        # bitCount=10, byteCount=2, length=9, but only one coil byte sent
        short = struct.pack('>HHHB', 5, 0, 9, 1) + struct.pack('>BHHB', 15, 0, 10, 2) + b'\xff'
        follow_up = build_read_discrete_inputs(6, 0, 8)

        def client_ops():
            with ModbusClient("127.0.0.1", port) as client:
                client.send_raw(short)
                first = client.receive_raw(12)
                client.send_raw(follow_up)
                second = client.receive_raw(10)
            return first, second

        try:
            first, second = await asyncio.to_thread(client_ops)
            stats = controller.server.get_stats()
        finally:
            await controller.stop()

        assert first[:6] == short[:6]
        assert struct.unpack('>BHH', first[7:12]) == (15, 0, 10)
        assert second[:6] == follow_up[:6]
        assert second[7:] == b'\x02\x01\x00'
        assert all(bank.read_raw(index) for index in range(8))
        assert bank.read_raw(8) is False
        assert bank.read_raw(9) is False
        assert bank.read_level(9) is True
        assert stats["partial_frames"] == 1

    asyncio.run(scenario())


def test_client_isolation():
    """A client dropping mid-frame does not affect other clients"""

    async def scenario():
        bank = CoilBank(48)
        controller = ServerLifecycleController(bank, host="127.0.0.1", port=0)
        await controller.start()
        port = controller.bound_port

        def client_ops():
            broken = ModbusClient("127.0.0.1", port)
            broken.send_raw(build_write_multiple_coils(1, 0, [True])[:4])
            broken.disconnect()

            with ModbusClient("127.0.0.1", port) as client:
                return client.write_multiple_coils(1, [True])

        try:
            echo = await asyncio.to_thread(client_ops)
            assert controller.is_running
        finally:
            await controller.stop()

        assert echo == (1, 1)
        assert bank.read_raw(0) is False
        assert bank.read_raw(1) is True

    asyncio.run(scenario())

# ============================================================================
# Reconnect Handling
# ============================================================================

def test_address_in_use_schedules_long_retry():
    """EADDRINUSE reports a connection error and waits 10 s"""

    async def scenario():
        holder = hold_port()
        port = holder.getsockname()[1]
        published = []
        statuses = []

        controller = ServerLifecycleController(
            CoilBank(48),
            host="127.0.0.1",
            port=port,
            publisher=published.append,
            status_sink=lambda status, message: statuses.append(status),
        )

        try:
            await controller.start()

            assert not controller.is_running
            assert controller.reconnect_pending
            assert controller.runtime.state == ServerState.RECONNECTING
            assert controller.runtime.pending_delay_s == 10.0
            assert controller.runtime.reconnect_attempts == 1
            assert statuses[-1] == ServerStatus.CONNECTION_ERROR
            assert published[-1] == {"connected_status": "false"}

            await controller.stop()

            assert not controller.reconnect_pending
            assert controller.runtime.state == ServerState.STOPPED
        finally:
            holder.close()

    asyncio.run(scenario())


def test_reconnect_budget_exhausted():
    """After the last attempt fails no further timer is armed"""

    async def scenario():
        holder = hold_port()
        port = holder.getsockname()[1]
        controller = ServerLifecycleController(
            CoilBank(8), host="127.0.0.1", port=port, runtime=fast_runtime(max_attempts=3)
        )

        try:
            await controller.start()
            await wait_for(lambda: controller.runtime.exhausted)

            assert controller.runtime.reconnect_attempts == 3
            assert controller.runtime.get_stats()["timers_armed"] == 3
            assert not controller.reconnect_pending
            assert controller.status == ServerStatus.CONNECTION_ERROR
            assert controller.status_message == "Max reconnection attempts reached"

            # Restart restores the budget
            holder.close()
            await controller.restart()
            assert controller.is_running
            assert controller.runtime.reconnect_attempts == 0
        finally:
            holder.close()
            await controller.stop()

    asyncio.run(scenario())


def test_recovers_when_port_frees():
    """A pending reconnect binds once the port becomes free"""

    async def scenario():
        holder = hold_port()
        port = holder.getsockname()[1]
        controller = ServerLifecycleController(
            CoilBank(8), host="127.0.0.1", port=port, runtime=fast_runtime()
        )

        try:
            await controller.start()
            assert not controller.is_running

            holder.close()
            await wait_for(lambda: controller.is_running)

            assert controller.bound_port == port
            assert controller.status == ServerStatus.OK
            assert controller.runtime.reconnect_attempts == 0
            assert controller.runtime.state == ServerState.LISTENING
        finally:
            holder.close()
            await controller.stop()

    asyncio.run(scenario())


def test_unexpected_close_reconnects():
    """A listener closed from outside is treated as a fault"""

    async def scenario():
        controller = ServerLifecycleController(
            CoilBank(8), host="127.0.0.1", port=0, runtime=fast_runtime()
        )
        await controller.start()
        listener = controller.server

        try:
            listener.server.close()
            await wait_for(lambda: controller.server is not listener and controller.is_running)

            assert controller.runtime.get_stats()["faults"] == 1
            assert controller.status == ServerStatus.OK
        finally:
            await controller.stop()

    asyncio.run(scenario())


def test_start_is_idempotent():
    """start() while listening keeps the existing listener"""

    async def scenario():
        controller = ServerLifecycleController(CoilBank(8), host="127.0.0.1", port=0)
        await controller.start()
        listener = controller.server
        try:
            await controller.start()
            assert controller.server is listener
        finally:
            await controller.stop()
        assert not controller.is_running

    asyncio.run(scenario())

# ============================================================================
# Instance
# ============================================================================

def make_config(**overrides) -> InstanceConfig:
    values = {"server_ip": "127.0.0.1", "server_port": free_port(), "num_coils": 48}
    values.update(overrides)
    return InstanceConfig(**values)


def test_instance_operator_commands():
    """Operator writes follow the same raw/level rules as FC15"""

    async def scenario():
        instance = CoilServerInstance()
        await instance.init(make_config())

        try:
            assert instance.is_running
            assert instance.variables.get_variable_value("connected_status") == "true"

            assert instance.set_coil(2, True) is True
            assert instance.set_coil(2, False) is True
            assert instance.get_coil(2) == {"index": 2, "value": False, "level": True}
            assert instance.variables.get_variable_value("coil_2") == "false"
            assert instance.variables.get_variable_value("coil_level_2") == "true"

            assert instance.set_coil_state(3, 1) is True
            assert instance.get_coil(3)["value"] is True
            assert instance.set_coil_state(3, 0) is True
            assert instance.get_coil(3)["value"] is False

            assert instance.set_coil(48, True) is False
            assert instance.set_coil(-1, True) is False

            instance.reset_level_states()
            assert instance.get_coil(2) == {"index": 2, "value": False, "level": False}
            assert instance.variables.get_variable_value("coil_level_2") == "false"
        finally:
            await instance.destroy()

        assert instance.variables.get_variable_value("connected_status") == "false"
        assert instance.set_coil(1, True) is False

    asyncio.run(scenario())


def test_instance_config_updated_resizes():
    """Changing the coil count reallocates the bank"""

    async def scenario():
        variables = VariableStore()
        instance = CoilServerInstance(variables=variables)
        config = make_config()
        await instance.init(config)

        try:
            instance.set_coil(10, True)
            bound_port = instance.controller.bound_port

            new_port = free_port()
            await instance.config_updated(make_config(num_coils=100, server_port=new_port))

            assert instance.coil_bank.size == 100
            assert all(not coil["value"] and not coil["level"] for coil in instance.get_coils())
            assert len(variables.definitions) == 1 + 2 * 100

            # Port changes wait for the next start
            assert instance.controller.port == new_port
            assert instance.controller.bound_port == bound_port
        finally:
            await instance.destroy()

    asyncio.run(scenario())


def test_instance_init_again_resizes():
    """A second init with a new coil count keeps bank and variables in step"""

    async def scenario():
        instance = CoilServerInstance()
        await instance.init(make_config())

        try:
            await instance.init(make_config(num_coils=100))

            assert instance.coil_bank.size == 100
            assert len(instance.variables.definitions) == 1 + 2 * 100
            assert instance.set_coil(80, True) is True
            assert instance.get_coil(80) == {"index": 80, "value": True, "level": True}
        finally:
            await instance.destroy()

    asyncio.run(scenario())


def test_instance_debug_toggle_reaches_listener():
    """A logger change applies to the running listener too"""

    async def scenario():
        instance = CoilServerInstance()
        await instance.init(make_config())

        try:
            await instance.config_updated(make_config(server_port=free_port(), debug=True))

            assert instance.controller.server.logger is instance.logger
            assert instance.controller.logger is instance.logger
            assert instance.logger.level == logging.DEBUG
        finally:
            await instance.destroy()

    asyncio.run(scenario())


def test_instance_debug_flag_sets_logger_level():
    """Debug enables verbose logging; otherwise only errors"""

    async def scenario():
        quiet = CoilServerInstance()
        await quiet.init(make_config())
        verbose = CoilServerInstance()
        await verbose.init(make_config(debug=True))

        try:
            assert quiet.logger.level == logging.ERROR
            assert verbose.logger.level == logging.DEBUG
        finally:
            await quiet.destroy()
            await verbose.destroy()

    asyncio.run(scenario())

# ============================================================================
# Config
# ============================================================================

def test_config_from_host_keys():
    """Host settings use camelCase keys; falsy values take defaults"""
    config = InstanceConfig.from_dict({
        "serverIP": "127.0.0.1",
        "serverPort": 1502,
        "numCoils": 16,
        "numDiscreteInputs": 0,
        "debug": True,
    })

    assert config.server_ip == "127.0.0.1"
    assert config.server_port == 1502
    assert config.num_coils == 16
    assert config.num_discrete_inputs == InstanceConfig.default().num_discrete_inputs
    assert config.debug is True


@pytest.mark.parametrize("raw, expected", [
    ("false", False),
    ("0", False),
    ("", False),
    ("true", True),
    ("1", True),
    (True, True),
    (None, False),
])
def test_config_debug_from_strings(raw, expected):
    """String form values are parsed, not truth-tested"""
    assert InstanceConfig.from_dict({"debug": raw}).debug is expected


@pytest.mark.parametrize("overrides", [
    {"server_ip": "not-an-ip"},
    {"server_port": 0},
    {"server_port": 70000},
    {"num_coils": 0},
    {"num_coils": 1001},
])
def test_config_validation(overrides):
    """Out-of-range settings are rejected"""
    with pytest.raises(ValueError):
        make_config(**overrides).validate()
