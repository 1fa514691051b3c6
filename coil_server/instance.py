"""
Coil Server Instance
====================

Host-facing wrapper around one Modbus coil server.

Lifecycle:
    init(config)            create the bank, define variables, start listening
    config_updated(config)  apply new settings (resize on coil count change)
    restart()               recover after the reconnect budget is spent
    destroy()               stop listening and cancel pending reconnects

Operator commands:
    set_coil(index, value)        same write path as a Modbus FC15 request
    set_coil_state(index, state)  state 1 = on, anything else = off
    reset_level_states()          clear latched levels and raw values

Commands with an invalid index, or issued while no server is running, are
logged as warnings and ignored.
"""

import logging
from typing import Callable, Dict, List, Optional

from coil_server.config import InstanceConfig
from coil_server.variables import VariableStore
from protocols.modbus.coil_bank import CoilBank, CoilIndexError
from protocols.modbus.lifecycle import ServerLifecycleController
from protocols.modbus.state_machine import ServerRuntime, ServerStatus


StatusSink = Callable[[ServerStatus, Optional[str]], None]


class CoilServerInstance:
    """
    One configured coil server with its variable projection.
    """

    def __init__(
        self,
        variables: Optional[VariableStore] = None,
        status_sink: Optional[StatusSink] = None,
        runtime: Optional[ServerRuntime] = None,
    ):
        """
        Initialize instance.

        Args:
            variables: Projection target (a fresh store if None)
            status_sink: Optional external status callback
            runtime: Lifecycle state machine (defaults from RECONNECT_CONFIG)
        """
        self.variables = variables or VariableStore()
        self.external_status_sink = status_sink
        self.runtime = runtime
        self.config = InstanceConfig.default()
        self.coil_bank: Optional[CoilBank] = None
        self.controller: Optional[ServerLifecycleController] = None
        self.status = ServerStatus.OK
        self.status_message: Optional[str] = None
        self.logger = logging.getLogger("CoilServer")

    def _configure_logger(self):
        self.logger = logging.getLogger(
            f"CoilServer[{self.config.server_ip}:{self.config.server_port}]"
        )
        self.logger.setLevel(logging.DEBUG if self.config.debug else logging.ERROR)
        if self.controller:
            self.controller.logger = self.logger
            if self.controller.server:
                self.controller.server.logger = self.logger

    @property
    def is_running(self) -> bool:
        return self.controller is not None and self.controller.is_running

    async def init(self, config: InstanceConfig):
        """Apply config and start the server."""
        self.config = config.validate()
        self._configure_logger()

        if self.controller is None:
            self.coil_bank = CoilBank(config.num_coils, publisher=self.variables.set_variable_values)
            self.controller = ServerLifecycleController(
                self.coil_bank,
                host=config.server_ip,
                port=config.server_port,
                publisher=self.variables.set_variable_values,
                status_sink=self._on_status,
                runtime=self.runtime,
                log=self.logger,
            )
            self.logger.info("Modbus TCP Server loaded")
            await self.controller.start()
        else:
            self.logger.info("Modbus TCP Server already started")
            self.controller.reconfigure(
                num_coils=config.num_coils,
                host=config.server_ip,
                port=config.server_port,
            )

        self.variables.define_variables(config.num_coils)

    async def config_updated(self, config: InstanceConfig):
        """
        Apply changed settings.

        Coil count changes resize the bank and discard its state; address
        and port changes apply on the next start.
        """
        self.config = config.validate()
        self._configure_logger()
        self.logger.info("Config updated")

        if self.controller:
            self.controller.reconfigure(
                num_coils=config.num_coils,
                host=config.server_ip,
                port=config.server_port,
            )
        self.variables.define_variables(config.num_coils)

    async def restart(self):
        """Restart the listener with a fresh reconnect budget."""
        if self.controller is None:
            await self.init(self.config)
            return
        await self.controller.restart()

    async def destroy(self):
        self.logger.debug("destroy")
        if self.controller:
            await self.controller.stop()

    def set_coil(self, coil_number: int, value: bool) -> bool:
        """
        Set one coil from an operator command.

        Returns:
            True if the coil was written
        """
        if not self.is_running or not 0 <= coil_number < self.coil_bank.size:
            self.logger.warning(f"Invalid coil number {coil_number} or server not running")
            return False

        try:
            written = self.coil_bank.write(coil_number, value)
        except Exception as e:
            self.logger.error(f"Failed to set coil {coil_number}: {e}")
            return False

        if written:
            self.logger.info(f"Set coil {coil_number} to {bool(value)}")
        return written

    def set_coil_state(self, coil_number: int, state: int) -> bool:
        """Set a coil from a dropdown value (1 = on)."""
        return self.set_coil(coil_number, state == 1)

    def reset_level_states(self):
        """Clear every latched level; open connections are unaffected."""
        if self.coil_bank is None:
            self.logger.warning("Reset requested before the coil bank exists")
            return
        self.coil_bank.reset_levels()
        self.logger.info("Level states reset")

    def get_coil(self, coil_number: int) -> Dict:
        """
        Raw value and latched level of one coil.

        Raises:
            CoilIndexError: Coil does not exist
        """
        if self.coil_bank is None:
            raise CoilIndexError(coil_number, 0)
        return {
            "index": coil_number,
            "value": self.coil_bank.read_raw(coil_number),
            "level": self.coil_bank.read_level(coil_number),
        }

    def get_coils(self) -> List[Dict]:
        if self.coil_bank is None:
            return []
        snapshot = self.coil_bank.snapshot()
        return [
            {"index": i, "value": raw, "level": level}
            for i, (raw, level) in enumerate(zip(snapshot["raw"], snapshot["level"]))
        ]

    def _on_status(self, status: ServerStatus, message: Optional[str] = None):
        self.status = status
        self.status_message = message
        if self.external_status_sink:
            try:
                self.external_status_sink(status, message)
            except Exception as e:
                self.logger.error(f"Status sink failed: {e}")

    def get_status(self) -> Dict:
        status = {
            "status": self.status.value,
            "message": self.status_message,
            "running": self.is_running,
            "config": self.config.to_dict(),
        }
        if self.controller:
            status["lifecycle"] = self.controller.get_status()
        return status
