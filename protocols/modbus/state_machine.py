"""
Modbus Server Lifecycle State Machine
=====================================

Tracks the listener lifecycle and the reconnect budget without touching any
socket or timer, so every transition can be driven directly in tests.

    STOPPED -> STARTING -> LISTENING
    LISTENING -> FAULTED              listener error or unexpected close
    FAULTED -> RECONNECTING           reconnect timer armed
    RECONNECTING -> STARTING          timer fired
    FAULTED                           terminal once the attempt budget is spent

Reconnect delays:
    Address already in use:  10 s
    Any other fault:          5 s

Only one reconnect timer may be pending at a time. The pending flag is set
when a timer is armed and cleared when it fires or a bind succeeds, so each
failed attempt arms exactly one new timer until max_attempts is reached.
Attempts reset to zero on every successful bind.
"""

import errno
import logging
from enum import Enum
from typing import Dict, Optional

from config import RECONNECT_CONFIG

logger = logging.getLogger(__name__)


class ServerState(Enum):
    """Listener lifecycle states."""
    STOPPED = "STOPPED"
    STARTING = "STARTING"
    LISTENING = "LISTENING"
    FAULTED = "FAULTED"
    RECONNECTING = "RECONNECTING"


class ServerStatus(Enum):
    """Status reported to the external status sink."""
    OK = "ok"
    CONNECTION_ERROR = "connection_failure"


class ReconnectDecision(Enum):
    """Outcome of a reconnect request."""
    SCHEDULED = "scheduled"
    SUPPRESSED = "suppressed"   # A timer is already pending
    EXHAUSTED = "exhausted"     # Attempt budget spent, no timer


def is_address_in_use(error: BaseException) -> bool:
    return isinstance(error, OSError) and error.errno == errno.EADDRINUSE


class ServerRuntime:
    """
    Lifecycle state and reconnect bookkeeping for one server.
    """

    def __init__(
        self,
        max_reconnect_attempts: int = RECONNECT_CONFIG["max_attempts"],
        default_delay_s: float = RECONNECT_CONFIG["default_delay_s"],
        address_in_use_delay_s: float = RECONNECT_CONFIG["address_in_use_delay_s"],
    ):
        """
        Initialize runtime.

        Args:
            max_reconnect_attempts: Timers armed before giving up
            default_delay_s: Delay after an ordinary fault
            address_in_use_delay_s: Delay after EADDRINUSE
        """
        self.max_reconnect_attempts = max_reconnect_attempts
        self.default_delay_s = default_delay_s
        self.address_in_use_delay_s = address_in_use_delay_s

        self.state = ServerState.STOPPED
        self.reconnect_attempts = 0
        self.is_reconnecting = False
        self.exhausted = False
        self.pending_delay_s: Optional[float] = None
        self.last_error: Optional[str] = None

        self.stats = {
            "binds": 0,
            "faults": 0,
            "address_in_use_faults": 0,
            "timers_armed": 0,
            "suppressed_reconnects": 0,
        }

    def begin_start(self) -> bool:
        """
        Enter STARTING.

        Returns:
            False if the server is already listening
        """
        if self.state == ServerState.LISTENING:
            return False
        self.state = ServerState.STARTING
        return True

    def on_bound(self):
        """Listener bound: clear the reconnect bookkeeping."""
        self.state = ServerState.LISTENING
        self.reconnect_attempts = 0
        self.is_reconnecting = False
        self.exhausted = False
        self.pending_delay_s = None
        self.last_error = None
        self.stats["binds"] += 1
        logger.debug("Listener bound, reconnect attempts reset")

    def on_listener_error(self, error: BaseException) -> float:
        """
        Record a bind or listener error.

        Returns:
            Delay before the next attempt
        """
        self.state = ServerState.FAULTED
        self.last_error = str(error)
        self.stats["faults"] += 1

        if is_address_in_use(error):
            self.stats["address_in_use_faults"] += 1
            return self.address_in_use_delay_s
        return self.default_delay_s

    def on_listener_closed(self) -> Optional[float]:
        """
        Record an unexpected listener close.

        Returns:
            Delay before the next attempt, or None while a reconnect is
            already under way
        """
        if self.is_reconnecting:
            return None
        self.state = ServerState.FAULTED
        self.last_error = "Server closed unexpectedly"
        self.stats["faults"] += 1
        return self.default_delay_s

    def request_reconnect(self, delay_s: Optional[float] = None) -> ReconnectDecision:
        """
        Ask for a reconnect timer.

        Args:
            delay_s: Delay for the timer (default delay if None)

        Returns:
            SCHEDULED when the caller must arm a timer for pending_delay_s
        """
        if self.reconnect_attempts >= self.max_reconnect_attempts:
            self.state = ServerState.FAULTED
            self.exhausted = True
            self.is_reconnecting = False
            self.pending_delay_s = None
            return ReconnectDecision.EXHAUSTED

        if self.is_reconnecting:
            self.stats["suppressed_reconnects"] += 1
            self.state = ServerState.RECONNECTING
            return ReconnectDecision.SUPPRESSED

        self.is_reconnecting = True
        self.reconnect_attempts += 1
        self.pending_delay_s = self.default_delay_s if delay_s is None else delay_s
        self.state = ServerState.RECONNECTING
        self.stats["timers_armed"] += 1
        return ReconnectDecision.SCHEDULED

    def on_reconnect_fired(self) -> bool:
        """
        Reconnect timer fired.

        Returns:
            True if a start attempt should follow
        """
        if not self.is_reconnecting:
            return False
        self.is_reconnecting = False
        self.pending_delay_s = None
        self.state = ServerState.STARTING
        return True

    def on_stopped(self):
        """Listener torn down on request; any pending timer is void."""
        self.state = ServerState.STOPPED
        self.is_reconnecting = False
        self.pending_delay_s = None

    def reset(self):
        """Restore the full attempt budget (external restart)."""
        self.reconnect_attempts = 0
        self.exhausted = False
        self.is_reconnecting = False
        self.pending_delay_s = None
        if self.state != ServerState.LISTENING:
            self.state = ServerState.STOPPED

    def get_state(self) -> str:
        """Get current state as string."""
        return self.state.value

    def get_stats(self) -> Dict:
        """Get statistics."""
        stats = self.stats.copy()
        stats.update({
            "state": self.state.value,
            "reconnect_attempts": self.reconnect_attempts,
            "max_reconnect_attempts": self.max_reconnect_attempts,
            "is_reconnecting": self.is_reconnecting,
            "exhausted": self.exhausted,
            "last_error": self.last_error,
        })
        return stats
