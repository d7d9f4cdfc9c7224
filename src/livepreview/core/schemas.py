"""
Core data schemas for Live Preview
"""

from typing import Optional
from enum import Enum

from pydantic import BaseModel, Field, ConfigDict


class SessionState(str, Enum):
    """Preview session lifecycle state"""
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"
    FAILED = "failed"


class ConnectionStatus(str, Enum):
    """Browser connectivity as inferred by the host"""
    UNKNOWN = "unknown"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    ERROR = "error"


class DiagnosticSnapshot(BaseModel):
    """Counters published by a running preview server on /_diagnostics"""
    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    start_time: str = Field(..., alias="startTime", description="ISO timestamp the server started")
    connections: int = Field(default=0, ge=0)
    active_connections: int = Field(default=0, ge=0, alias="activeConnections")
    ws_connections: int = Field(default=0, ge=0, alias="wsConnections")
    active_ws_connections: int = Field(default=0, ge=0, alias="activeWsConnections")
    requests: int = Field(default=0, ge=0)
    errors: int = Field(default=0, ge=0)
    last_error: Optional[str] = Field(default=None, alias="lastError")

    def connection_status(self) -> ConnectionStatus:
        """Derive browser connectivity from the WebSocket counters"""
        if self.active_ws_connections > 0:
            return ConnectionStatus.CONNECTED
        if self.ws_connections > 0:
            return ConnectionStatus.DISCONNECTED
        return ConnectionStatus.UNKNOWN


class ServerEvent(BaseModel):
    """A line-delimited JSON event written by the preview server on stdout"""
    model_config = ConfigDict(extra="allow")

    event: str = Field(..., description="Event name: listening, reload, error, shutdown")
    message: Optional[str] = None
    url: Optional[str] = None
    port: Optional[int] = None
    clients: Optional[int] = None
    path: Optional[str] = None
    kind: Optional[str] = None
