# control_api/routers/clients.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from control_api.auth import AuthSession, require_user
from control_api.dependencies import get_gateway, get_poller
from control_api.schemas.clients import (
    ClientListResponse,
    ClientLogsResponse,
    ClientStatusResponse,
    ClientSummary,
    RestartRequest,
    RunJobRequest,
    StopJobRequest,
)
from control_api.services.templates import client_has_required_tags, get_run_type
from daq.gateway.client import DAQGatewayClient, GatewayError
from daq.polling.service import StatusPoller

logger = logging.getLogger(__name__)

router = APIRouter()


def _gateway_error(e: GatewayError) -> HTTPException:
    return HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))


@router.get("/clients", response_model=ClientListResponse)
def list_clients(
    run_type_id: int | None = Query(None, description="Only clients carrying the run type's required tags"),
    poller: StatusPoller = Depends(get_poller),
):
    """Known clients from the status cache."""
    required_tags = None
    if run_type_id is not None:
        run_type = get_run_type(run_type_id)
        if not run_type:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Run type not found")
        required_tags = run_type.required_tags

    clients = []
    for client_id in poller.known_clients:
        snapshot = poller.get_status(client_id)
        tags = snapshot.status.tags if snapshot and snapshot.status else []
        if not client_has_required_tags(required_tags, tags):
            continue
        clients.append(
            ClientSummary(
                client_id=client_id,
                online=bool(snapshot and snapshot.online),
                tags=tags,
                updated_at=snapshot.updated_at if snapshot else None,
            )
        )
    return ClientListResponse(clients=clients)


@router.get("/clients/{client_id}/status", response_model=ClientStatusResponse | None)
def get_client_status(client_id: str, poller: StatusPoller = Depends(get_poller)):
    """Cached status of a client; null if it was never polled successfully."""
    snapshot = poller.get_status(client_id)
    if snapshot is None:
        return None
    return ClientStatusResponse(
        client_id=snapshot.client_id,
        online=snapshot.online,
        status=snapshot.status,
        updated_at=snapshot.updated_at,
        last_error=snapshot.last_error,
    )


@router.get("/clients/{client_id}/logs", response_model=ClientLogsResponse)
def get_client_logs(client_id: str, poller: StatusPoller = Depends(get_poller)):
    return ClientLogsResponse(logs=poller.get_logs(client_id))


@router.post("/clients/{client_id}/restart_daq")
async def restart_daq(
    client_id: str,
    request: RestartRequest | None = None,
    gateway: DAQGatewayClient = Depends(get_gateway),
    session: AuthSession = Depends(require_user),
):
    logger.info("%s requested DAQ restart on %s", session.display_name, client_id)
    try:
        await gateway.restart_daq(client_id, update=bool(request and request.update))
    except GatewayError as e:
        raise _gateway_error(e)
    return {"success": True}


@router.post("/clients/{client_id}/stop_daqjobs")
async def stop_daqjobs(
    client_id: str,
    gateway: DAQGatewayClient = Depends(get_gateway),
    session: AuthSession = Depends(require_user),
):
    logger.info("%s requested stop of all jobs on %s", session.display_name, client_id)
    try:
        await gateway.stop_all_jobs(client_id)
    except GatewayError as e:
        raise _gateway_error(e)
    return {"success": True}


@router.post("/clients/{client_id}/stop_daqjob")
async def stop_daqjob(
    client_id: str,
    request: StopJobRequest,
    gateway: DAQGatewayClient = Depends(get_gateway),
    session: AuthSession = Depends(require_user),
):
    try:
        result = await gateway.stop_job(client_id, request.daq_job_unique_id, remove=request.remove)
    except GatewayError as e:
        raise _gateway_error(e)
    return {"success": True, "result": result}


@router.post("/clients/{client_id}/run_daqjob")
async def run_daqjob(
    client_id: str,
    request: RunJobRequest,
    gateway: DAQGatewayClient = Depends(get_gateway),
    session: AuthSession = Depends(require_user),
):
    """Launch a single job from a raw configuration."""
    try:
        result = await gateway.run_job(client_id, request.config)
    except GatewayError as e:
        raise _gateway_error(e)
    return {"success": True, "result": result}


@router.get("/daqjobs/schemas")
async def get_daq_job_schemas(gateway: DAQGatewayClient = Depends(get_gateway)):
    try:
        return await gateway.get_daq_job_schemas()
    except GatewayError as e:
        raise _gateway_error(e)
