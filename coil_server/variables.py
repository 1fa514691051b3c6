"""
Variable Store - projection of coil state for operators

Holds the string values shown to operators (coil_{i}, coil_level_{i},
connected_status) and forwards every update to subscribers such as the
WebSocket broadcaster. Updates never fail the caller.
"""

import logging
from typing import Callable, Dict, List, Optional

logger = logging.getLogger(__name__)


Subscriber = Callable[[Dict[str, str]], None]


class VariableStore:
    """In-memory variable values and definitions"""

    def __init__(self):
        self.values: Dict[str, str] = {}
        self.definitions: List[Dict[str, str]] = []
        self._subscribers: List[Subscriber] = []
        self.updates_published = 0

    def define_variables(self, num_coils: int):
        """Regenerate definitions for num_coils coils; stale values are dropped"""
        definitions = [{"variable_id": "connected_status", "name": "Server connected"}]
        for index in range(num_coils):
            definitions.append({"variable_id": f"coil_{index}", "name": f"Coil {index}"})
            definitions.append({"variable_id": f"coil_level_{index}", "name": f"Coil {index} level"})
        self.definitions = definitions

        known = {d["variable_id"] for d in definitions}
        self.values = {k: v for k, v in self.values.items() if k in known}

    def set_variable_values(self, updates: Dict[str, str]):
        """Store updates and notify subscribers"""
        if not updates:
            return
        self.values.update(updates)
        self.updates_published += 1

        for subscriber in list(self._subscribers):
            try:
                subscriber(dict(updates))
            except Exception as e:
                logger.error(f"Variable subscriber failed: {e}")

    def get_variable_value(self, variable_id: str) -> Optional[str]:
        return self.values.get(variable_id)

    def subscribe(self, subscriber: Subscriber):
        self._subscribers.append(subscriber)

    def unsubscribe(self, subscriber: Subscriber):
        if subscriber in self._subscribers:
            self._subscribers.remove(subscriber)

    def snapshot(self) -> Dict[str, str]:
        return dict(self.values)
