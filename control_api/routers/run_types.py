# control_api/routers/run_types.py
from fastapi import APIRouter, Depends, HTTPException, status

from control_api.auth import AuthSession, require_user
from control_api.schemas.run_types import (
    RunTypeParameterDefaultRequest,
    RunTypeParameterResponse,
    RunTypeRequest,
    RunTypeResponse,
    RunTypeTemplatesRequest,
    RunTypeUpdateRequest,
)
from control_api.schemas.templates import TemplateResponse
from control_api.services.templates import (
    create_run_type,
    delete_run_type,
    get_aggregated_parameters,
    get_run_type,
    get_run_type_templates,
    get_template,
    list_run_types,
    set_run_type_parameter_default,
    set_run_type_templates,
    update_run_type,
)

router = APIRouter()


def _require_run_type(run_type_id: int) -> None:
    if not get_run_type(run_type_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run type not found")


@router.get("/run-types", response_model=list[RunTypeResponse])
def list_run_types_endpoint():
    return [RunTypeResponse.model_validate(rt) for rt in list_run_types()]


@router.post("/run-types", response_model=RunTypeResponse, status_code=status.HTTP_201_CREATED)
def create_run_type_endpoint(request: RunTypeRequest, session: AuthSession = Depends(require_user)):
    try:
        run_type = create_run_type(request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return RunTypeResponse.model_validate(run_type)


@router.put("/run-types/{run_type_id}", response_model=RunTypeResponse)
def update_run_type_endpoint(
    run_type_id: int,
    request: RunTypeUpdateRequest,
    session: AuthSession = Depends(require_user),
):
    run_type = update_run_type(run_type_id, request.model_dump(exclude_unset=True))
    if not run_type:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run type not found")
    return RunTypeResponse.model_validate(run_type)


@router.delete("/run-types/{run_type_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_run_type_endpoint(run_type_id: int, session: AuthSession = Depends(require_user)):
    if not delete_run_type(run_type_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run type not found")


@router.get("/run-types/{run_type_id}/templates", response_model=list[TemplateResponse])
def get_run_type_templates_endpoint(run_type_id: int):
    _require_run_type(run_type_id)
    return [TemplateResponse.model_validate(get_template(t.id)) for t in get_run_type_templates(run_type_id)]


@router.put("/run-types/{run_type_id}/templates", response_model=list[TemplateResponse])
def set_run_type_templates_endpoint(
    run_type_id: int,
    request: RunTypeTemplatesRequest,
    session: AuthSession = Depends(require_user),
):
    """Replace the templates associated with a run type."""
    missing = [tid for tid in request.template_ids if not get_template(tid)]
    if missing:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=f"Unknown template ids: {missing}")
    if not set_run_type_templates(run_type_id, request.template_ids):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run type not found")
    return [TemplateResponse.model_validate(get_template(t.id)) for t in get_run_type_templates(run_type_id)]


@router.get("/run-types/{run_type_id}/parameters", response_model=list[RunTypeParameterResponse])
def get_run_type_parameters_endpoint(run_type_id: int):
    """Parameters of all the run type's templates, with the run type's defaults."""
    _require_run_type(run_type_id)
    return [RunTypeParameterResponse.model_validate(p) for p in get_aggregated_parameters(run_type_id)]


@router.post("/run-types/{run_type_id}/parameters", response_model=list[RunTypeParameterResponse])
def set_run_type_parameter_endpoint(
    run_type_id: int,
    request: RunTypeParameterDefaultRequest,
    session: AuthSession = Depends(require_user),
):
    _require_run_type(run_type_id)
    set_run_type_parameter_default(run_type_id, request.parameter_id, request.default_value)
    return [RunTypeParameterResponse.model_validate(p) for p in get_aggregated_parameters(run_type_id)]
