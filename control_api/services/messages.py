# control_api/services/messages.py
import json
import logging
from typing import Any, Dict, List, Optional, Tuple

from control_api.db.engine import get_session
from control_api.db.models import (
    MESSAGE_STATUS_FAILED,
    MESSAGE_STATUS_SENT,
    TEMPLATE_TYPE_MESSAGE,
    Message,
    MessageParameterValue,
    Template,
    TemplateParameter,
    as_dict,
)
from control_api.services.templates import (
    TemplateValidationError,
    get_run_type_parameter_defaults,
    get_run_type_templates,
    resolve_parameter_values,
)
from daq.gateway.client import DAQGatewayClient, GatewayError
from daq.polling.service import StatusPoller
from daq.templating import replace_parameters

logger = logging.getLogger(__name__)


class MessageValidationError(ValueError):
    """Message request is invalid (unknown template, missing parameters...)."""


class MessageSendError(Exception):
    """The gateway rejected a message; ``message`` is the stored FAILED row."""

    def __init__(self, detail: str, message: Message):
        super().__init__(detail)
        self.detail = detail
        self.message = message


def list_messages(limit: int = 50, offset: int = 0) -> Tuple[List[Message], int]:
    """Sent messages, newest first, with the total count."""
    session = get_session()
    try:
        query = session.query(Message)
        total = query.count()
        messages = query.order_by(Message.sent_at.desc(), Message.id.desc()).offset(offset).limit(limit).all()
        return messages, total
    finally:
        session.close()


def list_message_templates() -> List[Dict[str, Any]]:
    """Message templates, each with its parameters."""
    session = get_session()
    try:
        templates = (
            session.query(Template)
            .filter(Template.type == TEMPLATE_TYPE_MESSAGE)
            .order_by(Template.display_name)
            .all()
        )
        result = []
        for template in templates:
            params = (
                session.query(TemplateParameter)
                .filter(TemplateParameter.template_id == template.id)
                .order_by(TemplateParameter.id)
                .all()
            )
            result.append({**as_dict(template), "parameters": [as_dict(p) for p in params]})
        return result
    finally:
        session.close()


def resolve_target_unique_id(
    client_id: str, target_type: Optional[str], poller: Optional[StatusPoller]
) -> Optional[str]:
    """
    Find the unique id of the running job a message is meant for.

    Matches on job type first, then on the type appearing in the unique id.
    None means the message is broadcast to every job of the client.
    """
    if not target_type or poller is None:
        return None

    snapshot = poller.get_status(client_id)
    if snapshot is None or snapshot.status is None:
        return None

    jobs = [job for job in snapshot.status.daq_jobs if job.unique_id]
    for job in jobs:
        if job.daq_job_type == target_type:
            return job.unique_id
    for job in jobs:
        if target_type in job.unique_id:
            return job.unique_id

    logger.warning("No %s job found on %s, broadcasting", target_type, client_id)
    return None


def _record_message(
    *,
    client_id: str,
    message_type: str,
    payload: str,
    status: str,
    template_id: Optional[int] = None,
    target_daq_job_type: Optional[str] = None,
    target_daq_job_unique_id: Optional[str] = None,
    error_message: Optional[str] = None,
    run_id: Optional[int] = None,
    parameter_values: Optional[Dict[int, str]] = None,
) -> Message:
    session = get_session()
    try:
        message = Message(
            template_id=template_id,
            client_id=client_id,
            target_daq_job_type=target_daq_job_type,
            target_daq_job_unique_id=target_daq_job_unique_id,
            message_type=message_type,
            payload=payload,
            status=status,
            error_message=error_message,
            run_id=run_id,
        )
        session.add(message)
        session.flush()
        for parameter_id, value in (parameter_values or {}).items():
            session.add(MessageParameterValue(message_id=message.id, parameter_id=parameter_id, value=value))
        session.commit()
        return message
    finally:
        session.close()


async def _deliver(
    gateway: DAQGatewayClient,
    dispatcher,
    *,
    client_id: str,
    message_type: str,
    payload: str,
    target_daq_job_unique_id: Optional[str],
    **record,
) -> Message:
    """Send through the gateway, store the outcome, notify webhooks."""
    try:
        await gateway.send_message(client_id, message_type, payload, target_daq_job_unique_id)
    except GatewayError as e:
        logger.error("Failed to send %s to %s: %s", message_type, client_id, e)
        message = _record_message(
            client_id=client_id,
            message_type=message_type,
            payload=payload,
            status=MESSAGE_STATUS_FAILED,
            target_daq_job_unique_id=target_daq_job_unique_id,
            error_message=str(e),
            **record,
        )
        if dispatcher is not None:
            dispatcher.notify_message("message_failed", as_dict(message))
        raise MessageSendError(str(e), message) from e

    message = _record_message(
        client_id=client_id,
        message_type=message_type,
        payload=payload,
        status=MESSAGE_STATUS_SENT,
        target_daq_job_unique_id=target_daq_job_unique_id,
        **record,
    )
    logger.info("Sent %s to %s (message %s)", message_type, client_id, message.id)
    if dispatcher is not None:
        dispatcher.notify_message("message_sent", as_dict(message))
    return message


def _load_message_template(template_id: int) -> Tuple[Template, List[TemplateParameter]]:
    session = get_session()
    try:
        template = session.get(Template, template_id)
        if template is None or template.type != TEMPLATE_TYPE_MESSAGE:
            raise MessageValidationError(f"Message template not found: {template_id}")
        params = (
            session.query(TemplateParameter)
            .filter(TemplateParameter.template_id == template_id)
            .order_by(TemplateParameter.id)
            .all()
        )
        return template, params
    finally:
        session.close()


def _render_payload(
    template: Template,
    params: List[TemplateParameter],
    values: Dict[int, str],
    run_id: Optional[int],
) -> str:
    by_name = {p.name: values[p.id] for p in params if p.id in values}
    if run_id is not None:
        by_name["RUN_ID"] = run_id
    return replace_parameters(template.payload_template or "", by_name)


async def send_message_from_template(
    gateway: DAQGatewayClient,
    dispatcher,
    poller: StatusPoller,
    template_id: int,
    client_id: str,
    parameter_values: Optional[Dict[str, Any]] = None,
    run_id: Optional[int] = None,
    run_type_id: Optional[int] = None,
    target_daq_job_type: Optional[str] = None,
) -> Message:
    """
    Render a message template and send it to a client.

    Raises MessageValidationError before anything is sent or stored, and
    MessageSendError (after storing a FAILED message) if the gateway refuses.
    """
    if not client_id:
        raise MessageValidationError("Missing client_id")

    template, params = _load_message_template(template_id)
    try:
        values = resolve_parameter_values(params, parameter_values, get_run_type_parameter_defaults(run_type_id))
    except TemplateValidationError as e:
        raise MessageValidationError(str(e)) from e

    payload = _render_payload(template, params, values, run_id)
    target_type = target_daq_job_type or template.target_daq_job_type
    target_unique_id = resolve_target_unique_id(client_id, target_type, poller)

    return await _deliver(
        gateway,
        dispatcher,
        client_id=client_id,
        message_type=template.message_type,
        payload=payload,
        target_daq_job_unique_id=target_unique_id,
        template_id=template.id,
        target_daq_job_type=target_type,
        run_id=run_id,
        parameter_values=values,
    )


async def send_raw_message(
    gateway: DAQGatewayClient,
    dispatcher,
    poller: StatusPoller,
    client_id: str,
    message_type: str,
    payload: Any,
    target_daq_job_type: Optional[str] = None,
    run_id: Optional[int] = None,
) -> Message:
    """Send a message that doesn't come from a template."""
    if not client_id or not message_type:
        raise MessageValidationError("Missing client_id or message_type")
    if payload is None or payload == "":
        raise MessageValidationError("Missing payload")
    if not isinstance(payload, str):
        payload = json.dumps(payload)

    target_unique_id = resolve_target_unique_id(client_id, target_daq_job_type, poller)
    return await _deliver(
        gateway,
        dispatcher,
        client_id=client_id,
        message_type=message_type,
        payload=payload,
        target_daq_job_unique_id=target_unique_id,
        target_daq_job_type=target_daq_job_type,
        run_id=run_id,
    )


async def send_messages_for_run_type(
    gateway: DAQGatewayClient,
    dispatcher,
    poller: StatusPoller,
    run_type_id: int,
    client_id: str,
    run_id: int,
    parameter_values: Optional[Dict[str, Any]] = None,
) -> List[Message]:
    """
    Send every message template of a run type as part of starting a run.

    Individual failures are logged and stored but do not stop the others.
    """
    sent: List[Message] = []
    for template in get_run_type_templates(run_type_id, TEMPLATE_TYPE_MESSAGE):
        try:
            sent.append(
                await send_message_from_template(
                    gateway,
                    dispatcher,
                    poller,
                    template.id,
                    client_id,
                    parameter_values,
                    run_id=run_id,
                    run_type_id=run_type_id,
                )
            )
        except MessageSendError as e:
            sent.append(e.message)
        except MessageValidationError as e:
            logger.error("Skipping message template %s for run %s: %s", template.name, run_id, e)
    return sent
