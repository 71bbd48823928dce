# control_api/main.py
import asyncio
import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI

from control_api.routers import auth, clients, health, messages, run_types, runs, templates, webhooks
from control_api.services.runs import reconcile_active_runs, stop_overdue_runs
from control_api.services.webhooks import WebhookDispatcher
from daq.conf import HOUSEKEEPING_INTERVAL
from daq.gateway.client import DAQGatewayClient
from daq.polling.service import StatusPoller

logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s │ %(levelname)-8s │ %(message)s",
    datefmt="%H:%M:%S",
)

logger = logging.getLogger(__name__)


async def run_housekeeping(app: FastAPI, interval: float = HOUSEKEEPING_INTERVAL) -> None:
    """Complete runs whose jobs are gone and stop runs past their scheduled end."""
    while True:
        try:
            reconcile_active_runs(app.state.poller, dispatcher=app.state.dispatcher)
            await stop_overdue_runs(app.state.gateway, dispatcher=app.state.dispatcher)
        except Exception as e:
            logger.error("Run housekeeping failed: %s", e, exc_info=True)
        await asyncio.sleep(interval)


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Lifespan context manager for startup/shutdown events."""
    # Startup
    gateway = DAQGatewayClient()
    poller = StatusPoller(gateway)
    app.state.gateway = gateway
    app.state.poller = poller
    app.state.dispatcher = WebhookDispatcher()

    poller.start()
    housekeeping = asyncio.create_task(run_housekeeping(app), name="run-housekeeping")
    logger.info("API server started (upstream %s)", gateway.base_url)

    yield

    # Shutdown
    housekeeping.cancel()
    await asyncio.gather(housekeeping, return_exceptions=True)
    await poller.stop()
    await app.state.dispatcher.drain()
    await gateway.aclose()
    logger.info("API server stopped")


app = FastAPI(
    title="DAQ Control API",
    description="Control panel backend for a fleet of DAQ supervisors",
    version="0.1.0",
    lifespan=lifespan,
)

# Register routers
app.include_router(health.router, tags=["health"])
app.include_router(auth.router, prefix="/api/v1", tags=["auth"])
app.include_router(clients.router, prefix="/api/v1", tags=["clients"])
app.include_router(runs.router, prefix="/api/v1", tags=["runs"])
app.include_router(run_types.router, prefix="/api/v1", tags=["run-types"])
app.include_router(templates.router, prefix="/api/v1", tags=["templates"])
app.include_router(messages.router, prefix="/api/v1", tags=["messages"])
app.include_router(webhooks.router, prefix="/api/v1", tags=["webhooks"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)
