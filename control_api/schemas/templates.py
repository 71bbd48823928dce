# control_api/schemas/templates.py
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field


class TemplateCreateRequest(BaseModel):
    """Request to create a template."""

    name: str = Field(..., description="Unique template name, also used in job unique ids")
    display_name: str
    type: str = Field("normal", description='"normal", "run" or "message"')
    config: Optional[str] = Field(None, description="Job configuration with {PARAM} placeholders")
    message_type: Optional[str] = None
    payload_template: Optional[str] = None
    target_daq_job_type: Optional[str] = Field(None, description="Job type a message is sent to; broadcast if empty")
    run_type_ids: List[int] = Field(default_factory=list)


class TemplateUpdateRequest(BaseModel):
    """Partial template update; omitted fields are left unchanged."""

    display_name: Optional[str] = None
    type: Optional[str] = None
    config: Optional[str] = None
    message_type: Optional[str] = None
    payload_template: Optional[str] = None
    target_daq_job_type: Optional[str] = None
    run_type_ids: Optional[List[int]] = None


class TemplateResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    display_name: str
    type: str
    config: str = ""
    editable: bool
    message_type: Optional[str] = None
    payload_template: Optional[str] = None
    target_daq_job_type: Optional[str] = None
    run_type_ids: List[int] = Field(default_factory=list)
    created_at: datetime
    updated_at: datetime


class TemplateParameterRequest(BaseModel):
    name: str
    display_name: str
    type: str = "string"
    default_value: Optional[str] = None
    required: bool = True


class TemplateParameterUpdateRequest(BaseModel):
    name: Optional[str] = None
    display_name: Optional[str] = None
    type: Optional[str] = None
    default_value: Optional[str] = None
    required: Optional[bool] = None


class TemplateParameterResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    template_id: int
    name: str
    display_name: str
    type: str
    default_value: Optional[str] = None
    required: bool
