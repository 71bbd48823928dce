# control_api/schemas/webhooks.py
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class WebhookCreateRequest(BaseModel):
    name: str
    url: str
    secret: Optional[str] = Field(None, description="Sent as the Authorization header")
    is_active: bool = True
    trigger_on_run: bool = False
    trigger_on_message: bool = False
    payload_template: Optional[str] = Field(None, description="JSON body with {field} placeholders")


class WebhookUpdateRequest(BaseModel):
    name: Optional[str] = None
    url: Optional[str] = None
    secret: Optional[str] = None
    is_active: Optional[bool] = None
    trigger_on_run: Optional[bool] = None
    trigger_on_message: Optional[bool] = None
    payload_template: Optional[str] = None


class WebhookResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    url: str
    has_secret: bool = False
    is_active: bool
    trigger_on_run: bool
    trigger_on_message: bool
    payload_template: Optional[str] = None
    created_at: datetime
    updated_at: datetime
