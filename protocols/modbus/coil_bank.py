"""
Coil Bank
=========

In-memory dual-state model for the server's coil points.

Each coil index carries two values:
    raw:   Current coil value, written by Modbus requests and operators
    level: Latched view - becomes True the first time the coil is seen True
           and stays True until reset_levels() is called

    write(i, True)   raw=True   level=True
    write(i, False)  raw=False  level unchanged
    reset_levels()   raw=False  level=False   (all indices)

Every successful mutation is pushed to an optional publisher as a dict of
variable updates (coil_{i} / coil_level_{i} -> "true"/"false"). Publication is
fire-and-forget: a failing publisher is logged and never affects the bank.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


Publisher = Callable[[Dict[str, str]], None]


class CoilIndexError(LookupError):
    """Coil index outside the configured bank."""

    def __init__(self, index: int, size: int):
        super().__init__(f"Coil {index} not found (bank size {size})")
        self.index = index
        self.size = size


def coil_key(index: int) -> str:
    return f"coil_{index}"


def level_key(index: int) -> str:
    return f"coil_level_{index}"


def _flag(value: bool) -> str:
    return "true" if value else "false"


class CoilBank:
    """
    Fixed-size bank of coils with latched level tracking.

    All mutations hold a lock so the bank stays consistent when operator
    commands arrive from a thread other than the event loop.
    """

    def __init__(self, size: int, publisher: Optional[Publisher] = None):
        """
        Initialize coil bank.

        Args:
            size: Number of coils (both arrays are zero-filled)
            publisher: Optional callable receiving variable updates
        """
        if size < 0:
            raise ValueError(f"Coil bank size must be non-negative, got {size}")

        self.publisher = publisher
        self._lock = threading.RLock()
        self._raw: List[bool] = [False] * size
        self._level: List[bool] = [False] * size

        self.stats = {
            "writes": 0,
            "rejected_writes": 0,
            "resets": 0,
            "resizes": 0,
        }

    @property
    def size(self) -> int:
        return len(self._raw)

    def __len__(self) -> int:
        return self.size

    def _check_index(self, index: int):
        if not 0 <= index < self.size:
            raise CoilIndexError(index, self.size)

    def write(self, index: int, value: bool) -> bool:
        """
        Write one coil.

        Out-of-range indices are rejected with a warning and leave the bank
        untouched.

        Returns:
            True if the coil was written
        """
        updates: Dict[str, str] = {}
        with self._lock:
            written = self._apply(index, value, updates)

        self._publish(updates)
        return written

    def write_many(self, address: int, values: List[bool]) -> int:
        """
        Write consecutive coils starting at address.

        All changes go to the publisher as a single update.

        Returns:
            Number of coils actually written
        """
        updates: Dict[str, str] = {}
        written = 0
        with self._lock:
            for offset, value in enumerate(values):
                if self._apply(address + offset, value, updates):
                    written += 1

        self._publish(updates)
        return written

    def _apply(self, index: int, value: bool, updates: Dict[str, str]) -> bool:
        """Set one coil under the lock and record its variable updates."""
        value = bool(value)
        if not 0 <= index < self.size:
            self.stats["rejected_writes"] += 1
            logger.warning(f"Coil write rejected: index {index} outside 0-{self.size - 1}")
            return False

        self._raw[index] = value
        updates[coil_key(index)] = _flag(value)
        if value:
            self._level[index] = True
            updates[level_key(index)] = "true"
        self.stats["writes"] += 1
        return True

    def read_raw(self, index: int) -> bool:
        with self._lock:
            self._check_index(index)
            return self._raw[index]

    def read_level(self, index: int) -> bool:
        with self._lock:
            self._check_index(index)
            return self._level[index]

    def reset_levels(self):
        """Clear every latched level and zero every raw value."""
        with self._lock:
            size = self.size
            self._raw = [False] * size
            self._level = [False] * size
            self.stats["resets"] += 1

        self._publish(self._cleared_updates(size))

    def resize(self, new_size: int):
        """Reallocate the bank; previous values are discarded."""
        if new_size < 0:
            raise ValueError(f"Coil bank size must be non-negative, got {new_size}")

        with self._lock:
            old_size = self.size
            self._raw = [False] * new_size
            self._level = [False] * new_size
            self.stats["resizes"] += 1

        logger.info(f"Coil bank resized {old_size} -> {new_size}")
        self._publish(self._cleared_updates(new_size))

    def snapshot(self) -> Dict[str, List[bool]]:
        """Copy of both arrays."""
        with self._lock:
            return {"raw": list(self._raw), "level": list(self._level)}

    def get_stats(self) -> Dict:
        return self.stats.copy()

    @staticmethod
    def _cleared_updates(size: int) -> Dict[str, str]:
        updates = {}
        for index in range(size):
            updates[coil_key(index)] = "false"
            updates[level_key(index)] = "false"
        return updates

    def _publish(self, updates: Dict[str, str]):
        if not self.publisher or not updates:
            return
        try:
            self.publisher(updates)
        except Exception as e:
            logger.error(f"Variable publication failed: {e}")
