# control_api/routers/health.py
from fastapi import APIRouter, Depends

from control_api.dependencies import get_poller
from daq.polling.service import StatusPoller

router = APIRouter()


@router.get("/health")
def health(poller: StatusPoller = Depends(get_poller)):
    """Liveness probe, with the state of the status poller."""
    return {"status": "ok", "poller_running": poller.running, "known_clients": len(poller.known_clients)}
