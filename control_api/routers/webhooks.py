# control_api/routers/webhooks.py
from fastapi import APIRouter, Depends, HTTPException, status

from control_api.auth import AuthSession, require_admin
from control_api.db.models import Webhook
from control_api.schemas.webhooks import WebhookCreateRequest, WebhookResponse, WebhookUpdateRequest
from control_api.services.webhooks import create_webhook, delete_webhook, list_webhooks, update_webhook

router = APIRouter()


def _webhook_to_response(webhook: Webhook) -> WebhookResponse:
    """The secret itself is never returned."""
    response = WebhookResponse.model_validate(webhook)
    response.has_secret = bool(webhook.secret)
    return response


@router.get("/webhooks", response_model=list[WebhookResponse])
def list_webhooks_endpoint(session: AuthSession = Depends(require_admin)):
    return [_webhook_to_response(w) for w in list_webhooks()]


@router.post("/webhooks", response_model=WebhookResponse, status_code=status.HTTP_201_CREATED)
def create_webhook_endpoint(request: WebhookCreateRequest, session: AuthSession = Depends(require_admin)):
    try:
        webhook = create_webhook(request.model_dump())
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    return _webhook_to_response(webhook)


@router.put("/webhooks/{webhook_id}", response_model=WebhookResponse)
def update_webhook_endpoint(
    webhook_id: int,
    request: WebhookUpdateRequest,
    session: AuthSession = Depends(require_admin),
):
    try:
        webhook = update_webhook(webhook_id, request.model_dump(exclude_unset=True))
    except ValueError as e:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))
    if not webhook:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
    return _webhook_to_response(webhook)


@router.delete("/webhooks/{webhook_id}", status_code=status.HTTP_204_NO_CONTENT)
def delete_webhook_endpoint(webhook_id: int, session: AuthSession = Depends(require_admin)):
    if not delete_webhook(webhook_id):
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Webhook not found")
