# control_api/dependencies.py
from fastapi import Request

from control_api.services.webhooks import WebhookDispatcher
from daq.gateway.client import DAQGatewayClient
from daq.polling.service import StatusPoller


def get_gateway(request: Request) -> DAQGatewayClient:
    return request.app.state.gateway


def get_poller(request: Request) -> StatusPoller:
    return request.app.state.poller


def get_dispatcher(request: Request) -> WebhookDispatcher:
    return request.app.state.dispatcher
