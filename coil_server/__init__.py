"""
Coil server instance: configuration, variable projection and operator
commands around the Modbus coil server.
"""

from coil_server.config import InstanceConfig
from coil_server.instance import CoilServerInstance
from coil_server.variables import VariableStore

__all__ = [
    'InstanceConfig',
    'CoilServerInstance',
    'VariableStore',
]
