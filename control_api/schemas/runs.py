# control_api/schemas/runs.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field


class RunStartRequest(BaseModel):
    """Request to start a new run."""

    description: str = Field(..., min_length=1, description="Human readable description of the run")
    client_id: str = Field(..., min_length=1, description="Client the run's jobs are launched on")
    run_type_id: Optional[int] = Field(None, description="Run type; all run templates are used if omitted")
    parameter_values: Dict[str, Any] = Field(default_factory=dict, description="Template parameter values by name")
    scheduled_end_time: Optional[datetime] = Field(None, description="Stop the run automatically at this time")


class RunStopRequest(BaseModel):
    client_id: Optional[str] = Field(None, description="Override the client the jobs are stopped on")


class RunResponse(BaseModel):
    """Run record."""

    id: int
    description: str
    status: str  # "RUNNING", "COMPLETED", "STOPPED"
    client_id: Optional[str] = None
    run_type_id: Optional[int] = None
    start_time: datetime
    end_time: Optional[datetime] = None
    scheduled_end_time: Optional[datetime] = None
    daq_job_ids: List[str] = Field(default_factory=list)
    config: Optional[str] = None
    parameter_values: Dict[str, str] = Field(default_factory=dict)


class RunListResponse(BaseModel):
    """List of runs with pagination."""

    runs: list[RunResponse]
    total: int
    limit: int
    offset: int


class RunMetadataRequest(BaseModel):
    details: Optional[str] = None


class RunMetadataResponse(BaseModel):
    run_id: int
    details: Optional[str] = None
    updated_by: Optional[str] = None
    updated_at: Optional[datetime] = None
