# daq/gateway/models.py
from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class LogEntry(BaseModel):
    """One log line reported by a DAQ supervisor."""

    model_config = ConfigDict(extra="allow")

    type: str = Field("", description="Log record type")
    level: str = Field("INFO", description="Severity level")
    message: str = Field("", description="Log message text")
    timestamp: str = Field("", description="Timestamp as reported upstream")
    module: str = Field("", description="Originating module")
    client_id: str = Field("", description="Supervisor that produced the entry")
    req_id: Optional[str] = Field(None, description="Request id, if any")


class SupervisorInfo(BaseModel):
    """Supervisor-level info attached to a status payload (tags, intervals, ...)."""

    model_config = ConfigDict(extra="allow")

    supervisor_id: Optional[str] = None
    supervisor_tags: List[str] = Field(default_factory=list)


class DAQJobStatus(BaseModel):
    """A DAQ job running on a supervisor."""

    model_config = ConfigDict(extra="allow")

    daq_job_type: Optional[str] = None
    unique_id: Optional[str] = None
    daq_job_class_name: Optional[str] = None
    instance_id: Optional[int] = None
    is_running: Optional[bool] = None
    is_alive: Optional[bool] = None
    restart_on_fail: Optional[bool] = None
    supervisor_info: Optional[SupervisorInfo] = None


class ClientStatus(BaseModel):
    """Structured status payload of one supervisor."""

    model_config = ConfigDict(extra="allow")

    daq_jobs: List[DAQJobStatus] = Field(default_factory=list)
    supervisor_info: Optional[SupervisorInfo] = None

    @property
    def tags(self) -> List[str]:
        if self.supervisor_info is None:
            return []
        return list(self.supervisor_info.supervisor_tags)

    def job_ids(self) -> List[str]:
        return [job.unique_id for job in self.daq_jobs if job.unique_id]


class ClientStatusSnapshot(BaseModel):
    """Latest known state of one client, as held by the status cache."""

    model_config = ConfigDict(frozen=True)

    client_id: str
    online: bool
    status: Optional[ClientStatus] = None
    logs: List[LogEntry] = Field(default_factory=list)
    updated_at: datetime = Field(..., description="Time of the last successful poll")
    last_error: Optional[str] = None
