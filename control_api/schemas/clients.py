# control_api/schemas/clients.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, Field

from daq.gateway.models import ClientStatus, LogEntry


class ClientSummary(BaseModel):
    client_id: str
    online: bool
    tags: List[str] = Field(default_factory=list)
    updated_at: Optional[datetime] = None


class ClientListResponse(BaseModel):
    clients: list[ClientSummary]


class ClientStatusResponse(BaseModel):
    client_id: str
    online: bool
    status: Optional[ClientStatus] = None
    updated_at: datetime
    last_error: Optional[str] = None


class ClientLogsResponse(BaseModel):
    logs: list[LogEntry]


class RestartRequest(BaseModel):
    update: bool = Field(False, description="Update the DAQ software before restarting")


class StopJobRequest(BaseModel):
    daq_job_unique_id: str
    remove: bool = True


class RunJobRequest(BaseModel):
    config: str = Field(..., min_length=1, description="Job configuration to launch")
