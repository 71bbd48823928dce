# daq/polling/service.py
from __future__ import annotations

import asyncio
import logging
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

from daq.conf import (
    CLIENT_POLL_INTERVAL,
    DATA_POLL_INTERVAL,
    LOG_HISTORY_LIMIT,
    POLL_MAX_CONCURRENCY,
)
from daq.gateway.client import DAQGatewayClient, GatewayTimeout
from daq.gateway.models import ClientStatus, ClientStatusSnapshot, LogEntry

logger = logging.getLogger(__name__)


class StatusPoller:
    """
    Background poller keeping a read-optimized cache of every client's
    liveness, status and recent logs.

    Two loops run as asyncio tasks between start() and stop():
      - client discovery: refreshes the set of known clients
      - data refresh: polls status and logs of every known client concurrently

    Cache entries are only ever replaced as a whole, so readers see either the
    previous or the next snapshot of a client, never a mix.
    """

    def __init__(
        self,
        gateway: DAQGatewayClient,
        client_interval: float = CLIENT_POLL_INTERVAL,
        data_interval: float = DATA_POLL_INTERVAL,
        max_concurrency: int = POLL_MAX_CONCURRENCY,
        log_limit: int = LOG_HISTORY_LIMIT,
    ):
        self._gateway = gateway
        self.client_interval = client_interval
        self.data_interval = data_interval
        self.log_limit = log_limit
        self._semaphore = asyncio.Semaphore(max(1, max_concurrency))

        self._clients: Tuple[str, ...] = ()
        self._cache: Dict[str, ClientStatusSnapshot] = {}
        self._tasks: List[asyncio.Task] = []

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        """Spawn the background loops on the running event loop."""
        if self.running:
            logger.warning("Status poller already running")
            return

        self._tasks = [
            asyncio.create_task(self._client_loop(), name="status-poller-clients"),
            asyncio.create_task(self._data_loop(), name="status-poller-data"),
        ]
        logger.info("Status poller started")

    async def stop(self) -> None:
        """Cancel the background loops and wait for them to finish."""
        if not self._tasks:
            return

        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Status poller stopped")

    # ------------------------------------------------------------------
    # Cache reads
    # ------------------------------------------------------------------
    def get_status(self, client_id: str) -> Optional[ClientStatusSnapshot]:
        """Last cached snapshot for a client, or None if never polled successfully."""
        return self._cache.get(client_id)

    def get_logs(self, client_id: str) -> List[LogEntry]:
        snapshot = self._cache.get(client_id)
        if snapshot is None:
            return []
        return list(snapshot.logs)

    @property
    def known_clients(self) -> Tuple[str, ...]:
        return self._clients

    def snapshots(self) -> Dict[str, ClientStatusSnapshot]:
        return dict(self._cache)

    # ------------------------------------------------------------------
    # Poll cycles
    # ------------------------------------------------------------------
    async def refresh_clients(self) -> None:
        """Replace the known-clients set; keep the previous one on failure."""
        try:
            clients = await self._gateway.list_clients()
        except GatewayTimeout:
            logger.debug("Client discovery timed out, keeping %d known clients", len(self._clients))
            return
        except Exception as e:
            logger.error("Error polling clients: %s", e)
            return

        self._clients = tuple(clients)

    async def refresh_data(self) -> None:
        """Poll status and logs for every currently known client."""
        clients = self._clients

        for stale in set(self._cache) - set(clients):
            del self._cache[stale]

        if not clients:
            return

        await asyncio.gather(*(self._poll_client(client_id) for client_id in clients))

    async def _poll_client(self, client_id: str) -> None:
        async with self._semaphore:
            try:
                raw_status = await self._gateway.get_status(client_id)
                raw_logs = await self._gateway.get_logs(client_id)
                status = ClientStatus.model_validate(raw_status or {})
                logs = [LogEntry.model_validate(entry) for entry in raw_logs][-self.log_limit :]
            except GatewayTimeout:
                return
            except Exception as e:
                logger.error("Error polling data for %s: %s", client_id, e)
                self._mark_offline(client_id, str(e))
                return

        self._cache[client_id] = ClientStatusSnapshot(
            client_id=client_id,
            online=True,
            status=status,
            logs=logs,
            updated_at=datetime.now(timezone.utc),
        )

    def _mark_offline(self, client_id: str, error: str) -> None:
        previous = self._cache.get(client_id)
        if previous is None:
            return
        self._cache[client_id] = previous.model_copy(update={"online": False, "last_error": error})

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------
    async def _client_loop(self) -> None:
        logger.info("Client discovery loop started")
        while True:
            try:
                await self.refresh_clients()
            except Exception as e:
                logger.error("Error in client discovery loop: %s", e, exc_info=True)
            await asyncio.sleep(self.client_interval)

    async def _data_loop(self) -> None:
        logger.info("Data refresh loop started")
        while True:
            try:
                await self.refresh_data()
            except Exception as e:
                logger.error("Error in data refresh loop: %s", e, exc_info=True)
            await asyncio.sleep(self.data_interval)
