# control_api/schemas/messages.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, model_validator

from control_api.schemas.templates import TemplateParameterResponse, TemplateResponse


class MessageSendRequest(BaseModel):
    """
    Send a message to a client.

    Either template_id (with parameter_values) or message_type + payload for a
    raw message.
    """

    client_id: str
    template_id: Optional[int] = None
    parameter_values: Dict[str, Any] = Field(default_factory=dict)
    message_type: Optional[str] = None
    payload: Optional[Any] = None
    target_daq_job_type: Optional[str] = Field(None, description="Overrides the template target when given")
    run_id: Optional[int] = Field(None, description="Run the message belongs to")

    @model_validator(mode="after")
    def _template_or_raw(self):
        if self.template_id is None and not self.message_type:
            raise ValueError("Either template_id or message_type is required")
        return self


class MessageResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    template_id: Optional[int] = None
    client_id: str
    target_daq_job_type: Optional[str] = None
    target_daq_job_unique_id: Optional[str] = None
    message_type: str
    payload: str
    status: str  # "SENT", "FAILED"
    error_message: Optional[str] = None
    sent_at: datetime
    run_id: Optional[int] = None


class MessageListResponse(BaseModel):
    messages: list[MessageResponse]
    total: int
    limit: int
    offset: int


class MessageTemplateResponse(TemplateResponse):
    parameters: List[TemplateParameterResponse] = Field(default_factory=list)
