# control_api/schemas/run_types.py
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field

from control_api.schemas.templates import TemplateParameterResponse


class RunTypeRequest(BaseModel):
    name: str
    description: Optional[str] = None
    required_tags: Optional[List[str]] = Field(None, description="Clients must carry every one of these tags")


class RunTypeUpdateRequest(BaseModel):
    name: Optional[str] = None
    description: Optional[str] = None
    required_tags: Optional[List[str]] = None


class RunTypeResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    description: Optional[str] = None
    required_tags: Optional[List[str]] = None


class RunTypeTemplatesRequest(BaseModel):
    template_ids: List[int]


class RunTypeParameterResponse(TemplateParameterResponse):
    run_type_default: Optional[str] = None


class RunTypeParameterDefaultRequest(BaseModel):
    """Set a run type default for a parameter; a null default removes it."""

    parameter_id: int
    default_value: Optional[str] = None
