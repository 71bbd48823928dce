# daq/gateway/__init__.py
from daq.gateway.client import DAQGatewayClient, GatewayError, GatewayTimeout
from daq.gateway.models import ClientStatus, ClientStatusSnapshot, DAQJobStatus, LogEntry, SupervisorInfo

__all__ = [
    "DAQGatewayClient",
    "GatewayError",
    "GatewayTimeout",
    "ClientStatus",
    "ClientStatusSnapshot",
    "DAQJobStatus",
    "LogEntry",
    "SupervisorInfo",
]
