"""
Instance Configuration

Settings for one coil server instance.
"""

import ipaddress
import os
from dataclasses import dataclass, asdict
from typing import Any, Dict, Mapping

from config import COIL_SERVER_CONFIG


# Host form keys -> dataclass fields
HOST_KEYS = {
    "serverIP": "server_ip",
    "serverPort": "server_port",
    "numCoils": "num_coils",
    "numDiscreteInputs": "num_discrete_inputs",
    "debug": "debug",
}


TRUE_STRINGS = ("1", "true", "yes", "on")


def parse_flag(value: Any) -> bool:
    """Interpret form and environment strings such as "false" or "1"."""
    if isinstance(value, str):
        return value.strip().lower() in TRUE_STRINGS
    return bool(value)


@dataclass
class InstanceConfig:
    """Coil server settings"""

    server_ip: str = COIL_SERVER_CONFIG["server_ip"]
    server_port: int = COIL_SERVER_CONFIG["server_port"]
    num_coils: int = COIL_SERVER_CONFIG["num_coils"]
    num_discrete_inputs: int = COIL_SERVER_CONFIG["num_discrete_inputs"]  # Not used by any request yet
    debug: bool = COIL_SERVER_CONFIG["debug"]

    def validate(self) -> 'InstanceConfig':
        """
        Check ranges.

        Raises:
            ValueError: A setting is out of range
        """
        try:
            ipaddress.ip_address(self.server_ip)
        except ValueError:
            raise ValueError(f"Server IP must be an IP address, got {self.server_ip!r}")

        low, high = COIL_SERVER_CONFIG["port_range"]
        if not low <= self.server_port <= high:
            raise ValueError(f"Server port must be {low}-{high}, got {self.server_port}")

        low, high = COIL_SERVER_CONFIG["count_range"]
        if not low <= self.num_coils <= high:
            raise ValueError(f"Number of coils must be {low}-{high}, got {self.num_coils}")
        if not low <= self.num_discrete_inputs <= high:
            raise ValueError(
                f"Number of discrete inputs must be {low}-{high}, got {self.num_discrete_inputs}"
            )
        return self

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def default(cls) -> 'InstanceConfig':
        """Create default configuration"""
        return cls(
            server_ip="0.0.0.0",
            server_port=502,
            num_coils=48,
            num_discrete_inputs=48,
            debug=False,
        )

    @classmethod
    def from_dict(cls, values: Mapping[str, Any]) -> 'InstanceConfig':
        """
        Build from host form values or snake_case keys.

        Missing or empty values fall back to the defaults.
        """
        defaults = cls.default()
        settings = {}
        for key, value in values.items():
            name = HOST_KEYS.get(key, key)
            if name in HOST_KEYS.values():
                settings[name] = value

        return cls(
            server_ip=settings.get("server_ip") or defaults.server_ip,
            server_port=int(settings.get("server_port") or defaults.server_port),
            num_coils=int(settings.get("num_coils") or defaults.num_coils),
            num_discrete_inputs=int(
                settings.get("num_discrete_inputs") or defaults.num_discrete_inputs
            ),
            debug=parse_flag(settings["debug"]) if settings.get("debug") is not None else defaults.debug,
        )

    @classmethod
    def from_env(cls) -> 'InstanceConfig':
        """Create configuration from COIL_SERVER_* environment variables"""
        return cls.from_dict({
            "server_ip": os.getenv("COIL_SERVER_IP"),
            "server_port": os.getenv("COIL_SERVER_PORT"),
            "num_coils": os.getenv("COIL_SERVER_NUM_COILS"),
            "num_discrete_inputs": os.getenv("COIL_SERVER_NUM_DISCRETE_INPUTS"),
            "debug": os.getenv("COIL_SERVER_DEBUG"),
        })
