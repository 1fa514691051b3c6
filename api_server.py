"""
FastAPI REST API Server for the Modbus Coil Server
Operator commands, coil/level feedback, variables and lifecycle control
"""

from fastapi import FastAPI, HTTPException, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, Field
from typing import Dict, List, Optional
from datetime import datetime
import asyncio
import logging

from coil_server import CoilServerInstance, InstanceConfig
from config import API_CONFIG, LOGGING_CONFIG
from protocols.modbus.coil_bank import CoilIndexError

logger = logging.getLogger(__name__)

# Initialize FastAPI app
app = FastAPI(
    title="Modbus Coil Server API",
    description="REST API for coil control and latched level monitoring",
    version="1.0.0"
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Global instance
coil_instance: Optional[CoilServerInstance] = None

# ============================================================================
# Data Models
# ============================================================================

class CoilWriteRequest(BaseModel):
    value: bool

class CoilResponse(BaseModel):
    index: int
    value: bool
    level: bool

class ConfigUpdateRequest(BaseModel):
    server_ip: Optional[str] = None
    server_port: Optional[int] = Field(default=None, ge=1, le=65535)
    num_coils: Optional[int] = Field(default=None, ge=1, le=1000)
    num_discrete_inputs: Optional[int] = Field(default=None, ge=1, le=1000)
    debug: Optional[bool] = None

class CommandResponse(BaseModel):
    status: str
    timestamp: str

# ============================================================================
# Helpers
# ============================================================================

def get_instance() -> CoilServerInstance:
    if coil_instance is None:
        raise HTTPException(status_code=503, detail="Coil server not initialized")
    return coil_instance

def command_response(status: str) -> CommandResponse:
    return CommandResponse(status=status, timestamp=datetime.now().isoformat())

# ============================================================================
# Startup/Shutdown Events
# ============================================================================

@app.on_event("startup")
async def startup_event():
    """Start the Modbus coil server"""
    global coil_instance

    logger.info("Starting Modbus Coil Server API...")
    coil_instance = CoilServerInstance()
    await coil_instance.init(InstanceConfig.from_env())
    logger.info("Modbus Coil Server API started")

@app.on_event("shutdown")
async def shutdown_event():
    """Stop the Modbus coil server"""
    global coil_instance

    logger.info("Shutting down Modbus Coil Server API...")
    if coil_instance:
        await coil_instance.destroy()
        coil_instance = None
    logger.info("Modbus Coil Server API stopped")

# ============================================================================
# Status Endpoints
# ============================================================================

@app.get("/api/status")
async def get_status():
    """Lifecycle state, reconnect bookkeeping and listener statistics"""
    return get_instance().get_status()

@app.post("/api/server/restart", response_model=CommandResponse)
async def restart_server():
    """Restart the listener with a fresh reconnect budget"""
    instance = get_instance()
    await instance.restart()
    return command_response("running" if instance.is_running else instance.status.value)

@app.put("/api/config")
async def update_config(request: ConfigUpdateRequest):
    """Apply new settings; address/port changes apply on next start"""
    instance = get_instance()
    merged = instance.config.to_dict()
    merged.update(request.model_dump(exclude_none=True))

    try:
        config = InstanceConfig(**merged).validate()
    except ValueError as e:
        raise HTTPException(status_code=422, detail=str(e))

    await instance.config_updated(config)
    return instance.config.to_dict()

# ============================================================================
# Coil Endpoints
# ============================================================================

@app.get("/api/coils", response_model=List[CoilResponse])
async def get_coils():
    """Raw value and latched level of every coil"""
    return get_instance().get_coils()

@app.get("/api/coils/{index}", response_model=CoilResponse)
async def get_coil(index: int):
    """Raw value and latched level of one coil"""
    try:
        return get_instance().get_coil(index)
    except CoilIndexError as e:
        raise HTTPException(status_code=404, detail=str(e))

@app.post("/api/coils/{index}", response_model=CoilResponse)
async def set_coil(index: int, request: CoilWriteRequest):
    """Set one coil"""
    instance = get_instance()

    if not instance.is_running:
        raise HTTPException(status_code=503, detail="Server not running")
    if not instance.set_coil(index, request.value):
        raise HTTPException(status_code=404, detail=f"Coil {index} not found")

    return instance.get_coil(index)

@app.post("/api/levels/reset", response_model=CommandResponse)
async def reset_levels():
    """Clear all latched levels"""
    get_instance().reset_level_states()
    return command_response("levels reset")

# ============================================================================
# Variables
# ============================================================================

@app.get("/api/variables")
async def get_variables():
    """Current variable values and definitions"""
    variables = get_instance().variables
    return {
        "values": variables.snapshot(),
        "definitions": variables.definitions,
    }

@app.websocket("/ws/variables")
async def websocket_variables(websocket: WebSocket):
    """Push variable updates to the client"""
    await websocket.accept()
    instance = get_instance()
    queue: asyncio.Queue = asyncio.Queue()

    def on_update(updates: Dict[str, str]):
        queue.put_nowait(updates)

    instance.variables.subscribe(on_update)
    logger.info("WebSocket client connected")

    try:
        await websocket.send_json({
            "type": "snapshot",
            "values": instance.variables.snapshot(),
            "timestamp": datetime.now().isoformat(),
        })

        while True:
            updates = await queue.get()
            await websocket.send_json({
                "type": "update",
                "values": updates,
                "timestamp": datetime.now().isoformat(),
            })

    except WebSocketDisconnect:
        logger.info("WebSocket client disconnected")

    except Exception as e:
        logger.error(f"WebSocket error: {e}")

    finally:
        instance.variables.unsubscribe(on_update)

# ============================================================================
# Health Check
# ============================================================================

@app.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "timestamp": datetime.now().isoformat(),
        "modbus_server": "running" if coil_instance and coil_instance.is_running else "not running",
    }

@app.get("/")
async def root():
    """Root endpoint with API information"""
    return {
        "name": "Modbus Coil Server API",
        "version": "1.0.0",
        "status": "running",
        "documentation": "/docs",
        "websocket": "/ws/variables"
    }

# ============================================================================
# Main Entry Point
# ============================================================================

if __name__ == "__main__":
    import uvicorn

    logging.basicConfig(
        level=getattr(logging, LOGGING_CONFIG["level"].upper()),
        format=LOGGING_CONFIG["format"]
    )

    uvicorn.run(
        "api_server:app",
        host=API_CONFIG["host"],
        port=API_CONFIG["port"],
        log_level="info"
    )
