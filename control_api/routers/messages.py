# control_api/routers/messages.py
import logging

from fastapi import APIRouter, Depends, HTTPException, Query, status

from control_api.auth import AuthSession, require_user
from control_api.dependencies import get_dispatcher, get_gateway, get_poller
from control_api.schemas.messages import (
    MessageListResponse,
    MessageResponse,
    MessageSendRequest,
    MessageTemplateResponse,
)
from control_api.services.messages import (
    MessageSendError,
    list_message_templates,
    list_messages,
    send_message_from_template,
    send_raw_message,
)
from control_api.services.webhooks import WebhookDispatcher
from daq.gateway.client import DAQGatewayClient, GatewayError
from daq.polling.service import StatusPoller

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/messages", response_model=MessageListResponse)
def list_messages_endpoint(
    limit: int = Query(50, ge=1, le=1000, description="Maximum number of messages to return"),
    offset: int = Query(0, ge=0, description="Offset for pagination"),
):
    messages, total = list_messages(limit=limit, offset=offset)
    return MessageListResponse(
        messages=[MessageResponse.model_validate(m) for m in messages],
        total=total,
        limit=limit,
        offset=offset,
    )


@router.post("/messages", response_model=MessageResponse, status_code=status.HTTP_201_CREATED)
async def send_message_endpoint(
    request: MessageSendRequest,
    gateway: DAQGatewayClient = Depends(get_gateway),
    poller: StatusPoller = Depends(get_poller),
    dispatcher: WebhookDispatcher = Depends(get_dispatcher),
    session: AuthSession = Depends(require_user),
):
    """Send a templated or raw message to a client."""
    try:
        if request.template_id is not None:
            message = await send_message_from_template(
                gateway,
                dispatcher,
                poller,
                request.template_id,
                request.client_id,
                request.parameter_values,
                run_id=request.run_id,
                target_daq_job_type=request.target_daq_job_type,
            )
        else:
            message = await send_raw_message(
                gateway,
                dispatcher,
                poller,
                request.client_id,
                request.message_type,
                request.payload,
                request.target_daq_job_type,
                run_id=request.run_id,
            )
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    except MessageSendError as e:
        raise HTTPException(
            status_code=status.HTTP_502_BAD_GATEWAY,
            detail={"error": e.detail, "message_id": e.message.id},
        )

    logger.info("Message %s sent by %s", message.id, session.display_name)
    return MessageResponse.model_validate(message)


@router.get("/messages/templates", response_model=list[MessageTemplateResponse])
def list_message_templates_endpoint():
    return [MessageTemplateResponse.model_validate(t) for t in list_message_templates()]


@router.get("/messages/schemas")
async def get_message_schemas(gateway: DAQGatewayClient = Depends(get_gateway)):
    try:
        return await gateway.get_message_schemas()
    except GatewayError as e:
        raise HTTPException(status_code=status.HTTP_502_BAD_GATEWAY, detail=str(e))
