# daq/gateway/client.py
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

import httpx

from daq.conf import DAQ_API_BASE, DAQ_API_TIMEOUT

logger = logging.getLogger(__name__)


class GatewayError(Exception):
    """An upstream DAQ API call failed."""

    def __init__(self, message: str, status_code: int | None = None, body: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.body = body


class GatewayTimeout(GatewayError):
    """The upstream (or the proxy in front of it) timed out."""


def _response_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


class DAQGatewayClient:
    """
    Thin async wrapper around the upstream DAQ API.

    Every method returns the parsed JSON result or raises GatewayError.
    No retries are performed here; callers decide how to handle failures.
    """

    def __init__(
        self,
        base_url: str = DAQ_API_BASE,
        timeout: float = DAQ_API_TIMEOUT,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = base_url.rstrip("/")
        self._client = httpx.AsyncClient(base_url=self.base_url, timeout=timeout, transport=transport)

    async def __aenter__(self) -> "DAQGatewayClient":
        return self

    async def __aexit__(self, *exc_info) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, json: Any = None) -> Any:
        try:
            response = await self._client.request(method, path, json=json)
        except httpx.TimeoutException as e:
            raise GatewayTimeout(f"{method} {path} timed out") from e
        except httpx.HTTPError as e:
            raise GatewayError(f"{method} {path} failed: {e}") from e

        if response.status_code == httpx.codes.GATEWAY_TIMEOUT:
            raise GatewayTimeout(f"{method} {path} timed out upstream", status_code=504, body=_response_body(response))

        if response.is_error:
            body = _response_body(response)
            raise GatewayError(
                f"{method} {path} returned {response.status_code}: {body}",
                status_code=response.status_code,
                body=body,
            )

        if not response.content:
            return None
        return _response_body(response)

    # ------------------------------------------------------------------
    # Clients
    # ------------------------------------------------------------------
    async def list_client_info(self) -> Dict[str, Any]:
        """Return the raw client map (client id → upstream info)."""
        data = await self._request("GET", "/clients")
        return data or {}

    async def list_clients(self) -> List[str]:
        return list((await self.list_client_info()).keys())

    async def get_status(self, client_id: str) -> Dict[str, Any]:
        return await self._request("GET", f"/clients/{client_id}/status")

    async def get_logs(self, client_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"/clients/{client_id}/logs")
        if not data:
            return []
        return data.get("logs") or []

    # ------------------------------------------------------------------
    # DAQ process and job control
    # ------------------------------------------------------------------
    async def restart_daq(self, client_id: str, update: bool = False) -> None:
        await self._request("POST", f"/clients/{client_id}/restart_daq", json={"update": update})
        logger.info("Restart requested for %s", client_id)

    async def stop_all_jobs(self, client_id: str) -> None:
        await self._request("POST", f"/clients/{client_id}/stop_daqjobs")
        logger.info("Stop-all requested for %s", client_id)

    async def run_job(self, client_id: str, config: str) -> Any:
        return await self._request("POST", f"/clients/{client_id}/run_custom_daqjob", json={"config": config})

    async def stop_job(self, client_id: str, daq_job_unique_id: str, remove: bool = True) -> Any:
        return await self._request(
            "POST",
            f"/clients/{client_id}/stop_daqjob",
            json={"daq_job_name": daq_job_unique_id, "remove": remove},
        )

    # ------------------------------------------------------------------
    # Schemas and messages
    # ------------------------------------------------------------------
    async def get_daq_job_schemas(self) -> Dict[str, Any]:
        return await self._request("GET", "/templates/daqjobs")

    async def get_message_schemas(self) -> Dict[str, Any]:
        return await self._request("GET", "/templates/messages")

    async def send_message(
        self,
        client_id: str,
        message_type: str,
        payload: str,
        target_daq_job_unique_id: Optional[str] = None,
    ) -> Any:
        return await self._request(
            "POST",
            f"/clients/{client_id}/send_message",
            json={
                "message_type": message_type,
                "payload": payload,
                "target_daq_job_unique_id": target_daq_job_unique_id,
            },
        )
