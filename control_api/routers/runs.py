# control_api/routers/runs.py
import logging
from datetime import datetime
from typing import cast

from fastapi import APIRouter, Depends, HTTPException, Query, status

from control_api.auth import AuthSession, require_admin, require_user
from control_api.db.models import Run
from control_api.dependencies import get_dispatcher, get_gateway, get_poller
from control_api.schemas.runs import (
    RunListResponse,
    RunMetadataRequest,
    RunMetadataResponse,
    RunResponse,
    RunStartRequest,
    RunStopRequest,
)
from control_api.services.runs import (
    RunConflictError,
    RunStartError,
    delete_run,
    get_run,
    get_run_metadata,
    get_run_parameter_values,
    list_runs,
    start_run,
    stop_run,
    upsert_run_metadata,
)
from control_api.services.webhooks import WebhookDispatcher
from daq.gateway.client import DAQGatewayClient
from daq.polling.service import StatusPoller

logger = logging.getLogger(__name__)

router = APIRouter()


def _run_to_response(run: Run, with_parameters: bool = False) -> RunResponse:
    """Convert Run model to RunResponse schema."""
    return RunResponse(
        id=cast(int, run.id),
        description=cast(str, run.description),
        status=cast(str, run.status),
        client_id=cast(str | None, run.client_id),
        run_type_id=cast(int | None, run.run_type_id),
        start_time=cast(datetime, run.start_time),
        end_time=cast(datetime | None, run.end_time),
        scheduled_end_time=cast(datetime | None, run.scheduled_end_time),
        daq_job_ids=cast(list[str], run.daq_job_ids or []),
        config=cast(str | None, run.config),
        parameter_values=get_run_parameter_values(run.id) if with_parameters else {},
    )


@router.get("/runs", response_model=RunListResponse)
def list_runs_endpoint(
    status: str | None = Query(None, description="Filter by status"),
    client_id: str | None = Query(None, description="Filter by client"),
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of runs to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
):
    """List runs, newest first."""
    runs, total = list_runs(status=status, client_id=client_id, limit=limit, offset=offset)
    return RunListResponse(runs=[_run_to_response(run) for run in runs], total=total, limit=limit, offset=offset)


@router.post("/runs", response_model=RunResponse, status_code=status.HTTP_201_CREATED)
async def start_run_endpoint(
    request: RunStartRequest,
    gateway: DAQGatewayClient = Depends(get_gateway),
    poller: StatusPoller = Depends(get_poller),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    session: AuthSession = Depends(require_user),
):
    """Start a run: launch its jobs on the client."""
    try:
        run = await start_run(
            gateway,
            request.description,
            request.client_id,
            run_type_id=request.run_type_id,
            parameter_values=request.parameter_values,
            scheduled_end_time=request.scheduled_end_time,
            dispatcher=dispatcher,
            poller=poller,
        )
    except RunConflictError as e:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=str(e))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except RunStartError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=f"Failed to start run {e.run.id}: {e}")
    except Exception as e:
        logger.error("Error starting run: %s", e, exc_info=True)
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=f"Internal server error: {str(e)}"
        )

    logger.info("Run %s started by %s", run.id, session.display_name)
    return _run_to_response(run, with_parameters=True)


@router.get("/runs/{run_id}", response_model=RunResponse)
def get_run_endpoint(run_id: int):
    run = get_run(run_id)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return _run_to_response(run, with_parameters=True)


@router.delete("/runs/{run_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_run_endpoint(run_id: int, session: AuthSession = Depends(require_admin)):
    try:
        deleted = delete_run(run_id)
    except RunConflictError:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Cannot delete a running run")
    if not deleted:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")


@router.post("/runs/{run_id}/stop", response_model=RunResponse)
async def stop_run_endpoint(
    run_id: int,
    request: RunStopRequest | None = None,
    gateway: DAQGatewayClient = Depends(get_gateway),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    session: AuthSession = Depends(require_user),
):
    """Stop a running run. Stopping a finished run is a no-op."""
    run = await stop_run(gateway, run_id, request.client_id if request else None, dispatcher=dispatcher)
    if not run:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return _run_to_response(run, with_parameters=True)


@router.get("/runs/{run_id}/metadata", response_model=RunMetadataResponse)
def get_run_metadata_endpoint(run_id: int, session: AuthSession = Depends(require_admin)):
    if not get_run(run_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    metadata = get_run_metadata(run_id)
    if not metadata:
        return RunMetadataResponse(run_id=run_id)
    return RunMetadataResponse.model_validate(metadata, from_attributes=True)


@router.put("/runs/{run_id}/metadata", response_model=RunMetadataResponse)
def put_run_metadata_endpoint(
    run_id: int,
    request: RunMetadataRequest,
    session: AuthSession = Depends(require_admin),
):
    metadata = upsert_run_metadata(run_id, request.details, session.display_name)
    if not metadata:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run not found")
    return RunMetadataResponse.model_validate(metadata, from_attributes=True)
