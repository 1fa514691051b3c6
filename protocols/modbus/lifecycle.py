"""
Modbus Server Lifecycle Controller
==================================

Owns the listening socket and the CoilBank for one server and drives the
ServerRuntime state machine from real socket and timer events.

    start()    bind, or no-op while a listener exists
    fault      status CONNECTION_ERROR, connected_status=false, arm a timer
    timer      start() again
    stop()     cancel the timer, close the listener and wait for the close

All callbacks run on the event loop; none of them lets an exception escape.
Status and connectivity publication are fire-and-forget.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional, Set

from protocols.modbus.coil_bank import CoilBank
from protocols.modbus.server import ModbusTCPServer
from protocols.modbus.state_machine import (
    ReconnectDecision,
    ServerRuntime,
    ServerStatus,
    is_address_in_use,
)

logger = logging.getLogger(__name__)


StatusSink = Callable[[ServerStatus, Optional[str]], None]
Publisher = Callable[[Dict[str, str]], None]

CONNECTED_STATUS_KEY = "connected_status"


class ServerLifecycleController:
    """
    Bind/unbind and reconnect handling for the coil server.
    """

    def __init__(
        self,
        coil_bank: CoilBank,
        host: str = '0.0.0.0',
        port: int = 502,
        publisher: Optional[Publisher] = None,
        status_sink: Optional[StatusSink] = None,
        runtime: Optional[ServerRuntime] = None,
        log: Optional[logging.Logger] = None,
    ):
        """
        Initialize controller.

        Args:
            coil_bank: Coil state served to clients
            host: Bind address
            port: TCP port
            publisher: Receives connected_status updates
            status_sink: Receives a status on every lifecycle transition
            runtime: State machine (a fresh one if None)
            log: Logger shared with the listener
        """
        self.coil_bank = coil_bank
        self.num_coils = coil_bank.size
        self.host = host
        self.port = port
        self.publisher = publisher
        self.status_sink = status_sink
        self.runtime = runtime or ServerRuntime()
        self.logger = log or logger

        self.server: Optional[ModbusTCPServer] = None
        self.status = ServerStatus.OK
        self.status_message: Optional[str] = None

        self._reconnect_handle: Optional[asyncio.TimerHandle] = None
        self._start_task: Optional[asyncio.Task] = None
        self._teardown_tasks: Set[asyncio.Task] = set()
        self._binding = False

    @property
    def is_running(self) -> bool:
        return self.server is not None and self.server.is_listening

    @property
    def bound_port(self) -> Optional[int]:
        return self.server.bound_port if self.server else None

    @property
    def reconnect_pending(self) -> bool:
        return self._reconnect_handle is not None

    async def start(self):
        """Bind the listener unless one already exists."""
        if self.server is not None:
            self.logger.info("Modbus TCP Server already started")
            return

        if self._binding or not self.runtime.begin_start():
            self.logger.warning("Server start already in progress")
            return

        self._binding = True
        try:
            await self._bind()
        finally:
            self._binding = False

    async def _bind(self):
        if self.coil_bank.size != self.num_coils:
            self.coil_bank.resize(self.num_coils)

        server = ModbusTCPServer(
            self.coil_bank,
            host=self.host,
            port=self.port,
            log=self.logger,
            on_listener_error=self._handle_server_error,
            on_listener_closed=self._handle_server_close,
        )

        try:
            await server.start()
        except Exception as e:
            self.logger.error(f"Failed to start server: {e}")
            self._handle_server_error(e)
            return

        self.server = server
        self.runtime.on_bound()
        self._cancel_reconnect_timer()

        self.logger.info(f"Modbus TCP Server running on {self.host}:{server.bound_port}")
        self._report_status(ServerStatus.OK)
        self._publish({CONNECTED_STATUS_KEY: "true"})

    async def stop(self):
        """Cancel any pending reconnect and close the listener."""
        self._cancel_reconnect_timer()

        if self._start_task and not self._start_task.done():
            self._start_task.cancel()
            try:
                await self._start_task
            except asyncio.CancelledError:
                pass
        self._start_task = None

        self.runtime.on_stopped()

        server, self.server = self.server, None
        if server:
            try:
                await server.stop()
            except Exception as e:
                self.logger.error(f"Error stopping server: {e}")

        if self._teardown_tasks:
            await asyncio.gather(*self._teardown_tasks, return_exceptions=True)

        self._publish({CONNECTED_STATUS_KEY: "false"})

    async def restart(self):
        """Stop, restore the reconnect budget and start again."""
        await self.stop()
        self.runtime.reset()
        await self.start()

    def reconfigure(
        self,
        num_coils: Optional[int] = None,
        host: Optional[str] = None,
        port: Optional[int] = None,
    ):
        """
        Apply new settings.

        A coil count change resizes the bank immediately; address and port
        changes take effect on the next start().
        """
        if num_coils is not None and num_coils != self.num_coils:
            self.num_coils = num_coils
            self.coil_bank.resize(num_coils)

        if host is not None and host != self.host:
            self.host = host
            self.logger.info(f"Bind address changed to {host}, applies on next start")

        if port is not None and port != self.port:
            self.port = port
            self.logger.info(f"Port changed to {port}, applies on next start")

    def schedule_reconnect(self, delay_s: Optional[float] = None) -> ReconnectDecision:
        """
        Arm the reconnect timer.

        Args:
            delay_s: Delay before the next start() (default delay if None)
        """
        decision = self.runtime.request_reconnect(delay_s)

        if decision == ReconnectDecision.EXHAUSTED:
            self._cancel_reconnect_timer()
            self.logger.error("Max reconnection attempts reached")
            self._report_status(ServerStatus.CONNECTION_ERROR, "Max reconnection attempts reached")
            return decision

        if decision == ReconnectDecision.SUPPRESSED:
            self.logger.warning("Server reconnection already in progress")
            return decision

        self._cancel_reconnect_timer()
        delay = self.runtime.pending_delay_s
        loop = asyncio.get_running_loop()
        self._reconnect_handle = loop.call_later(delay, self._on_reconnect_timer)
        self.logger.info(
            f"Reconnect {self.runtime.reconnect_attempts}/"
            f"{self.runtime.max_reconnect_attempts} scheduled in {delay}s"
        )
        return decision

    def _on_reconnect_timer(self):
        self._reconnect_handle = None
        if not self.runtime.on_reconnect_fired():
            return

        self.logger.info(
            f"Reconnect attempt {self.runtime.reconnect_attempts}/"
            f"{self.runtime.max_reconnect_attempts}"
        )
        self._start_task = asyncio.ensure_future(self.start())
        self._start_task.add_done_callback(self._log_task_failure)

    def _cancel_reconnect_timer(self):
        if self._reconnect_handle:
            self._reconnect_handle.cancel()
            self._reconnect_handle = None

    def _handle_server_error(self, error: BaseException):
        self.logger.error(f"Server error: {error}")
        self._drop_listener()

        delay = self.runtime.on_listener_error(error)
        self._report_status(ServerStatus.CONNECTION_ERROR, str(error))
        self._publish({CONNECTED_STATUS_KEY: "false"})

        if is_address_in_use(error):
            self.logger.error(f"Port {self.port} is in use, waiting longer before retry")
        self.schedule_reconnect(delay)

    def _handle_server_close(self):
        delay = self.runtime.on_listener_closed()
        if delay is None:
            return

        self.logger.warning("Server closed unexpectedly")
        self._drop_listener()
        self._report_status(ServerStatus.CONNECTION_ERROR, "Server closed unexpectedly")
        self._publish({CONNECTED_STATUS_KEY: "false"})
        self.schedule_reconnect(delay)

    def _drop_listener(self):
        """Forget a faulted listener so the next start() binds afresh."""
        server, self.server = self.server, None
        if server is None:
            return
        task = asyncio.ensure_future(server.stop())
        self._teardown_tasks.add(task)
        task.add_done_callback(self._teardown_tasks.discard)
        task.add_done_callback(self._log_task_failure)

    def _log_task_failure(self, task: asyncio.Task):
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            self.logger.error(f"Lifecycle task failed: {error}", exc_info=error)

    def _report_status(self, status: ServerStatus, message: Optional[str] = None):
        self.status = status
        self.status_message = message
        if not self.status_sink:
            return
        try:
            self.status_sink(status, message)
        except Exception as e:
            self.logger.error(f"Status update failed: {e}")

    def _publish(self, updates: Dict[str, str]):
        if not self.publisher:
            return
        try:
            self.publisher(updates)
        except Exception as e:
            self.logger.error(f"Variable publication failed: {e}")

    def get_status(self) -> Dict:
        """Get lifecycle status and listener statistics."""
        return {
            "state": self.runtime.get_state(),
            "status": self.status.value,
            "message": self.status_message,
            "host": self.host,
            "port": self.port,
            "bound_port": self.bound_port,
            "num_coils": self.num_coils,
            "reconnect_pending": self.reconnect_pending,
            "runtime": self.runtime.get_stats(),
            "server": self.server.get_stats() if self.server else None,
        }
