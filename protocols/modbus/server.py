"""
Modbus TCP Server
=================

Listening socket and per-client read loop for the coil server.

MBAP Header Format (7 bytes):
    Transaction ID:  2 bytes
    Protocol ID:     2 bytes (0x0000 for Modbus)
    Length:          2 bytes (byte count of Unit ID + PDU)
    Unit ID:         1 byte

Supported Function Codes:
    FC02: Read Discrete Inputs (always reported as zero)
    FC15: Write Multiple Coils

Each accepted client gets a ServerSession that buffers partial frames. A frame
whose declared length never arrives is answered from the bytes present once
the client has been idle for partial_frame_timeout_s. Frames are decoded in
arrival order and applied to the shared CoilBank; responses go
back to the originating client only. A failure while handling one frame is
logged and skipped, and a failing client never affects other clients or the
listening socket.

Listener faults (unexpected close, errors while serving) are not handled
here: they are reported through the on_listener_error / on_listener_closed
callbacks so the lifecycle controller can decide whether to retry.
"""

import asyncio
import logging
from typing import Callable, Dict, Optional

from protocols.modbus.codec import (
    FrameError,
    FUNCTION_CODE_OFFSET,
    FC_READ_DISCRETE_INPUTS,
    FC_WRITE_MULTIPLE_COILS,
    process_frame,
)
from protocols.modbus.coil_bank import CoilBank
from protocols.modbus.connection import ServerSession
from config import MODBUS_CONFIG

logger = logging.getLogger(__name__)


class ModbusTCPServer:
    """
    Modbus TCP listener serving a CoilBank.
    """

    def __init__(
        self,
        coil_bank: CoilBank,
        host: str = '0.0.0.0',
        port: int = 502,
        log: Optional[logging.Logger] = None,
        on_listener_error: Optional[Callable[[BaseException], None]] = None,
        on_listener_closed: Optional[Callable[[], None]] = None,
    ):
        """
        Initialize Modbus TCP server.

        Args:
            coil_bank: Coil state shared by all clients
            host: Bind address
            port: TCP port (0 picks a free port)
            log: Logger for connection and frame messages
            on_listener_error: Called when serving fails
            on_listener_closed: Called when the listener closes without stop()
        """
        self.coil_bank = coil_bank
        self.host = host
        self.port = port
        self.logger = log or logger
        self.on_listener_error = on_listener_error
        self.on_listener_closed = on_listener_closed

        self.server: Optional[asyncio.Server] = None
        self.sessions: Dict[asyncio.StreamWriter, ServerSession] = {}
        self._watch_task: Optional[asyncio.Task] = None
        self._stopping = False
        self.partial_frame_timeout_s = MODBUS_CONFIG["partial_frame_timeout_s"]

        self.stats = {
            "connections_total": 0,
            "connections_active": 0,
            "requests_fc02": 0,
            "requests_fc15": 0,
            "ignored_frames": 0,
            "partial_frames": 0,
            "frame_errors": 0,
            "bytes_received": 0,
            "bytes_sent": 0,
        }

    @property
    def is_listening(self) -> bool:
        return self.server is not None and self.server.is_serving()

    @property
    def bound_port(self) -> Optional[int]:
        if not self.server or not self.server.sockets:
            return None
        return self.server.sockets[0].getsockname()[1]

    async def start(self):
        """
        Bind and start accepting clients.

        Raises:
            OSError: Bind failed (address in use, address not available, ...)
        """
        self._stopping = False
        self.server = await asyncio.start_server(
            self._handle_connection,
            self.host,
            self.port
        )
        self._watch_task = asyncio.create_task(self._watch_listener(self.server))

        addr = self.server.sockets[0].getsockname()
        self.logger.info(f"Modbus TCP server listening on {addr[0]}:{addr[1]}")

    async def stop(self):
        """Close all clients and the listening socket, waiting for the close."""
        self._stopping = True

        for writer in list(self.sessions):
            writer.close()

        server, self.server = self.server, None
        if server:
            server.close()

        if self._watch_task:
            watch_task, self._watch_task = self._watch_task, None
            watch_task.cancel()
            try:
                await watch_task
            except asyncio.CancelledError:
                pass

        if server:
            await server.wait_closed()
            self.logger.info("Modbus TCP server stopped")

    async def _watch_listener(self, server: asyncio.Server):
        """Serve until closed and report closes that stop() did not cause."""
        try:
            await server.serve_forever()
        except asyncio.CancelledError:
            if self._stopping:
                raise
        except Exception as e:
            if not self._stopping:
                self._notify(self.on_listener_error, e)
            return

        if not self._stopping:
            self._notify(self.on_listener_closed)

    def _notify(self, callback: Optional[Callable], *args):
        if callback is None:
            return
        try:
            callback(*args)
        except Exception as e:
            self.logger.error(f"Listener callback failed: {e}", exc_info=True)

    async def _handle_connection(
        self,
        reader: asyncio.StreamReader,
        writer: asyncio.StreamWriter
    ):
        """
        Handle one client from accept to close.

        Args:
            reader: Stream reader
            writer: Stream writer
        """
        peer = writer.get_extra_info('peername')
        addr = f"{peer[0]}:{peer[1]}" if peer else "unknown"
        self.logger.info(f"Client connected: {addr}")

        session = ServerSession(addr)
        self.sessions[writer] = session
        self.stats["connections_total"] += 1
        self.stats["connections_active"] += 1

        try:
            while True:
                # Only wait with a deadline while a short frame is stalled
                timeout = self.partial_frame_timeout_s if session.has_partial_frame() else None
                try:
                    data = await asyncio.wait_for(
                        reader.read(MODBUS_CONFIG["read_chunk_size"]),
                        timeout=timeout
                    )
                except asyncio.TimeoutError:
                    frame = session.take_partial_frame()
                    self.logger.debug(
                        f"Peer {addr} idle with {len(frame)} buffered bytes, answering short frame"
                    )
                    self.stats["partial_frames"] += 1
                    await self._handle_frame(frame, writer, session)
                    continue

                if not data:
                    break

                session.feed(data)
                self.stats["bytes_received"] += len(data)

                frame = session.next_frame()
                while frame is not None:
                    await self._handle_frame(frame, writer, session)
                    frame = session.next_frame()

            session.on_closed()

        except (ConnectionError, asyncio.IncompleteReadError) as e:
            session.on_error(str(e))
            self.logger.error(f"Client error from {addr}: {e}")
        except Exception as e:
            session.on_error(str(e))
            self.logger.error(f"Error handling connection from {addr}: {e}", exc_info=True)
        finally:
            self.logger.warning(f"Client disconnected: {addr}")
            self.sessions.pop(writer, None)
            self.stats["connections_active"] -= 1
            try:
                writer.close()
                await writer.wait_closed()
            except Exception as e:
                self.logger.debug(f"Close of {addr} reported: {e}")

    async def _handle_frame(
        self,
        frame: bytes,
        writer: asyncio.StreamWriter,
        session: ServerSession
    ):
        """Decode one frame and write back its response, if any."""
        try:
            function_code = frame[FUNCTION_CODE_OFFSET] if len(frame) > FUNCTION_CODE_OFFSET else None
            if function_code == FC_READ_DISCRETE_INPUTS:
                self.stats["requests_fc02"] += 1
            elif function_code == FC_WRITE_MULTIPLE_COILS:
                self.stats["requests_fc15"] += 1

            response = process_frame(frame, self.coil_bank, self.logger)
        except FrameError as e:
            self.stats["frame_errors"] += 1
            self.logger.error(f"Data handling error from {session.remote_address}: {e}")
            return
        except Exception as e:
            self.stats["frame_errors"] += 1
            self.logger.error(
                f"Data handling error from {session.remote_address}: {e}", exc_info=True
            )
            return

        if response is None:
            self.stats["ignored_frames"] += 1
            return

        writer.write(response)
        await writer.drain()
        session.on_data_sent(len(response))
        self.stats["bytes_sent"] += len(response)

    def get_stats(self) -> Dict:
        """Get server statistics."""
        stats = self.stats.copy()
        stats["sessions"] = [s.get_status() for s in self.sessions.values()]
        return stats
