# control_api/routers/templates.py
from fastapi import APIRouter, Depends, HTTPException, Query, status

from control_api.auth import AuthSession, require_user
from control_api.schemas.templates import (
    TemplateCreateRequest,
    TemplateParameterRequest,
    TemplateParameterResponse,
    TemplateParameterUpdateRequest,
    TemplateResponse,
    TemplateUpdateRequest,
)
from control_api.services.templates import (
    create_template,
    create_template_parameter,
    delete_template,
    delete_template_parameter,
    get_template,
    list_template_parameters,
    list_templates,
    update_template,
    update_template_parameter,
)

router = APIRouter()


@router.get("/templates", response_model=list[TemplateResponse])
def list_templates_endpoint(type: str | None = Query(None, description='Filter by type ("normal", "run", "message")')):
    return [TemplateResponse.model_validate(t) for t in list_templates(type)]


@router.post("/templates", response_model=TemplateResponse, status_code=status.HTTP_201_CREATED)
def create_template_endpoint(request: TemplateCreateRequest, session: AuthSession = Depends(require_user)):
    try:
        template = create_template(request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return TemplateResponse.model_validate(template)


@router.get("/templates/{template_id}", response_model=TemplateResponse)
def get_template_endpoint(template_id: int):
    template = get_template(template_id)
    if not template:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return TemplateResponse.model_validate(template)


@router.put("/templates/{template_id}", response_model=TemplateResponse)
def update_template_endpoint(
    template_id: int,
    request: TemplateUpdateRequest,
    session: AuthSession = Depends(require_user),
):
    template = update_template(template_id, request.model_dump(exclude_unset=True))
    if not template:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found or not editable")
    return TemplateResponse.model_validate(template)


@router.delete("/templates/{template_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_template_endpoint(template_id: int, session: AuthSession = Depends(require_user)):
    if not delete_template(template_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found or not editable")


@router.get("/templates/{template_id}/parameters", response_model=list[TemplateParameterResponse])
def list_parameters_endpoint(template_id: int):
    return [TemplateParameterResponse.model_validate(p) for p in list_template_parameters(template_id)]


@router.post(
    "/templates/{template_id}/parameters",
    response_model=TemplateParameterResponse,
    status_code=status.HTTP_201_CREATED,
)
def create_parameter_endpoint(
    template_id: int,
    request: TemplateParameterRequest,
    session: AuthSession = Depends(require_user),
):
    try:
        param = create_template_parameter(template_id, request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not param:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Template not found")
    return TemplateParameterResponse.model_validate(param)


@router.put("/templates/parameters/{param_id}", response_model=TemplateParameterResponse)
def update_parameter_endpoint(
    param_id: int,
    request: TemplateParameterUpdateRequest,
    session: AuthSession = Depends(require_user),
):
    param = update_template_parameter(param_id, request.model_dump(exclude_unset=True))
    if not param:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parameter not found")
    return TemplateParameterResponse.model_validate(param)


@router.delete("/templates/parameters/{param_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_parameter_endpoint(param_id: int, session: AuthSession = Depends(require_user)):
    if not delete_template_parameter(param_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Parameter not found")
