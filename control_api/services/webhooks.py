# control_api/services/webhooks.py
import asyncio
import json
import logging
from datetime import datetime, timezone
from typing import Any, Coroutine, Dict, List, Optional, Set

import httpx
from pydantic_core import to_jsonable_python

from control_api.db.engine import get_session
from control_api.db.models import Webhook, utcnow
from daq.conf import WEBHOOK_TIMEOUT
from daq.templating import render_structure

logger = logging.getLogger(__name__)

RUN_EVENTS = ("run_started", "run_stopped", "run_error")
MESSAGE_EVENTS = ("message_sent", "message_failed")


class WebhookValidationError(ValueError):
    """Webhook definition is invalid."""


def build_payload(webhook: Webhook, event_type: str, event_data: Dict[str, Any]) -> Any:
    """
    Build the request body for one webhook.

    A configured payload template is rendered against the event variables;
    without one (or if it can't be parsed) the default envelope is used.
    """
    if webhook.payload_template:
        try:
            template = json.loads(webhook.payload_template)
        except ValueError as e:
            logger.error(
                "[Webhook] Failed to parse custom payload template for webhook %s, falling back to default: %s",
                webhook.id,
                e,
            )
        else:
            variables = {
                "event": event_type,
                "type": event_type,
                "runId": event_data.get("id"),
                "messageId": event_data.get("id"),
                **event_data,
            }
            return render_structure(template, variables)

    return {
        "event": event_type,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "data": event_data,
    }


class WebhookDispatcher:
    """
    Fire-and-forget delivery of run and message events to configured webhooks.

    Deliveries run concurrently; a failing webhook never affects the others and
    dispatch methods never raise.
    """

    def __init__(self, timeout: float = WEBHOOK_TIMEOUT, transport: httpx.AsyncBaseTransport | None = None):
        self.timeout = timeout
        self._transport = transport
        self._pending: Set[asyncio.Task] = set()

    def _load_webhooks(self, trigger_column) -> List[Webhook]:
        session = get_session()
        try:
            return (
                session.query(Webhook)
                .filter(Webhook.is_active == True)  # noqa: E712
                .filter(trigger_column == True)  # noqa: E712
                .all()
            )
        finally:
            session.close()

    async def _dispatch(self, client: httpx.AsyncClient, webhook: Webhook, payload: Any) -> None:
        headers = {"Content-Type": "application/json"}
        if webhook.secret:
            headers["Authorization"] = webhook.secret

        try:
            response = await client.post(webhook.url, content=json.dumps(payload), headers=headers)
            response.raise_for_status()
            logger.info("[Webhook] Successfully dispatched to %s", webhook.url)
        except httpx.HTTPError as e:
            logger.error("[Webhook] Failed to dispatch to %s: %s", webhook.url, e)

    async def _dispatch_event(self, trigger_column, event_type: str, event_data: Dict[str, Any]) -> None:
        try:
            hooks = self._load_webhooks(trigger_column)
        except Exception as e:
            logger.error("[Webhook] Failed to load webhooks for %s: %s", event_type, e, exc_info=True)
            return

        if not hooks:
            return

        data = to_jsonable_python(event_data)
        async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
            results = await asyncio.gather(
                *(self._dispatch(client, hook, build_payload(hook, event_type, data)) for hook in hooks),
                return_exceptions=True,
            )

        for hook, result in zip(hooks, results):
            if isinstance(result, Exception):
                logger.error("[Webhook] Unexpected error dispatching to %s: %s", hook.url, result)

    async def dispatch_run_event(self, event_type: str, run_data: Dict[str, Any]) -> None:
        """Dispatch a run event to every active webhook with trigger_on_run."""
        await self._dispatch_event(Webhook.trigger_on_run, event_type, run_data)

    async def dispatch_message_event(self, event_type: str, message_data: Dict[str, Any]) -> None:
        """Dispatch a message event to every active webhook with trigger_on_message."""
        await self._dispatch_event(Webhook.trigger_on_message, event_type, message_data)

    def schedule(self, coro: Coroutine[Any, Any, None]) -> None:
        """Run a dispatch in the background without awaiting it."""
        task = asyncio.create_task(coro)
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    def notify_run(self, event_type: str, run_data: Dict[str, Any]) -> None:
        self.schedule(self.dispatch_run_event(event_type, run_data))

    def notify_message(self, event_type: str, message_data: Dict[str, Any]) -> None:
        self.schedule(self.dispatch_message_event(event_type, message_data))

    async def drain(self) -> None:
        """Wait for in-flight deliveries (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


# ----------------------------------------------------------------------
# Webhook CRUD
# ----------------------------------------------------------------------
def _validate_payload_template(payload_template: Optional[str]) -> None:
    if not payload_template:
        return
    try:
        json.loads(payload_template)
    except ValueError as e:
        raise WebhookValidationError(f"payload_template is not valid JSON: {e}") from e


def list_webhooks() -> List[Webhook]:
    session = get_session()
    try:
        return session.query(Webhook).order_by(Webhook.created_at).all()
    finally:
        session.close()


def get_webhook(webhook_id: int) -> Webhook | None:
    session = get_session()
    try:
        return session.get(Webhook, webhook_id)
    finally:
        session.close()


def create_webhook(data: Dict[str, Any]) -> Webhook:
    """Create a webhook. Expects keys name and url (required), the rest optional."""
    for key in ("name", "url"):
        if not data.get(key):
            raise WebhookValidationError("Name and URL are required")
    _validate_payload_template(data.get("payload_template"))

    session = get_session()
    try:
        webhook = Webhook(
            name=data["name"],
            url=data["url"],
            secret=data.get("secret") or None,
            trigger_on_run=bool(data.get("trigger_on_run")),
            trigger_on_message=bool(data.get("trigger_on_message")),
            payload_template=data.get("payload_template") or None,
            is_active=bool(data.get("is_active", True)),
        )
        session.add(webhook)
        session.commit()
        logger.info("Created webhook %s → %s", webhook.id, webhook.url)
        return webhook
    finally:
        session.close()


_UPDATABLE_FIELDS = ("name", "url", "secret", "is_active", "trigger_on_run", "trigger_on_message", "payload_template")


def update_webhook(webhook_id: int, data: Dict[str, Any]) -> Webhook | None:
    """Apply the given fields; returns None if the webhook does not exist."""
    if "payload_template" in data:
        _validate_payload_template(data["payload_template"])
    for key in ("name", "url"):
        if key in data and not data[key]:
            raise WebhookValidationError(f"{key} must not be empty")

    session = get_session()
    try:
        webhook = session.get(Webhook, webhook_id)
        if webhook is None:
            return None

        for field in _UPDATABLE_FIELDS:
            if field in data:
                setattr(webhook, field, data[field])
        webhook.updated_at = utcnow()
        session.commit()
        logger.info("Updated webhook %s", webhook_id)
        return webhook
    finally:
        session.close()


def delete_webhook(webhook_id: int) -> bool:
    session = get_session()
    try:
        webhook = session.get(Webhook, webhook_id)
        if not webhook:
            return False
        session.delete(webhook)
        session.commit()
        logger.info("Deleted webhook %s", webhook_id)
        return True
    finally:
        session.close()


