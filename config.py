"""
Modbus Coil Server Configuration
Defaults for the latching coil server, overridable through the environment
"""

import os

# ==================== SERVER ENDPOINT ====================

COIL_SERVER_CONFIG = {
    "server_ip": os.getenv("COIL_SERVER_IP", "0.0.0.0"),
    "server_port": int(os.getenv("COIL_SERVER_PORT", 502)),
    "num_coils": int(os.getenv("COIL_SERVER_NUM_COILS", 48)),
    "num_discrete_inputs": int(os.getenv("COIL_SERVER_NUM_DISCRETE_INPUTS", 48)),
    "debug": os.getenv("COIL_SERVER_DEBUG", "false").lower() in ("1", "true", "yes"),
    "port_range": (1, 65535),
    "count_range": (1, 1000),  # Coils and discrete inputs
}

# ==================== RECONNECT POLICY ====================

RECONNECT_CONFIG = {
    "max_attempts": 100,
    "default_delay_s": 5.0,
    "address_in_use_delay_s": 10.0,  # Give the previous owner time to release the port
}

# ==================== MODBUS FRAMING ====================

MODBUS_CONFIG = {
    "mbap_header_length": 7,   # Transaction ID, protocol ID, length, unit ID
    "echoed_header_length": 6, # Copied verbatim into every response
    "max_length_field": 254,   # Unit ID + 253 byte PDU
    "read_chunk_size": 4096,
    "partial_frame_timeout_s": 0.2,  # Idle time before a short frame is answered as-is
}

# ==================== HTTP CONTROL API ====================

API_CONFIG = {
    "host": os.getenv("COIL_API_HOST", "0.0.0.0"),
    "port": int(os.getenv("COIL_API_PORT", 8000)),
}

# ==================== LOGGING CONFIGURATION ====================

LOGGING_CONFIG = {
    "level": os.getenv("LOG_LEVEL", "INFO"),
    "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
}
