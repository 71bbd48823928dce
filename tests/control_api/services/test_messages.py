# tests/control_api/services/test_messages.py
import json
from datetime import datetime, timezone
from unittest.mock import MagicMock

import pytest

from control_api.db.engine import get_session
from control_api.db.models import MESSAGE_STATUS_FAILED, MESSAGE_STATUS_SENT, MessageParameterValue
from control_api.services.messages import (
    MessageSendError,
    MessageValidationError,
    list_message_templates,
    list_messages,
    resolve_target_unique_id,
    send_message_from_template,
    send_raw_message,
)
from daq.gateway.client import GatewayError
from daq.gateway.models import ClientStatus, ClientStatusSnapshot
from tests.control_api.factories import add_template


@pytest.fixture
def poller():
    snapshot = ClientStatusSnapshot(
        client_id="daq-1",
        online=True,
        status=ClientStatus.model_validate(
            {
                "daq_jobs": [
                    {"daq_job_type": "DAQJobScope", "unique_id": "scope_run3"},
                    {"daq_job_type": "DAQJobHandleStats", "unique_id": "stats"},
                ]
            }
        ),
        updated_at=datetime.now(timezone.utc),
    )
    poller = MagicMock()
    poller.get_status.side_effect = lambda client_id: snapshot if client_id == "daq-1" else None
    return poller


def add_message_template(**fields):
    defaults = dict(
        type="message",
        message_type="DAQJobMessageSetVoltage",
        payload_template='{"voltage": {VOLTAGE}}',
        target_daq_job_type="DAQJobScope",
        parameters=[{"name": "VOLTAGE"}],
    )
    defaults.update(fields)
    return add_template("set_voltage", **defaults)


class TestResolveTargetUniqueId:
    """Test resolve_target_unique_id() function."""

    def test_type_match(self, poller):
        assert resolve_target_unique_id("daq-1", "DAQJobScope", poller) == "scope_run3"

    def test_unique_id_containment(self, poller):
        """Test falling back to a job whose unique id contains the target."""
        assert resolve_target_unique_id("daq-1", "stats", poller) == "stats"

    def test_broadcast(self, poller):
        """Test no target, unknown clients and unmatched types broadcast."""
        assert resolve_target_unique_id("daq-1", None, poller) is None
        assert resolve_target_unique_id("daq-9", "DAQJobScope", poller) is None
        assert resolve_target_unique_id("daq-1", "DAQJobOther", poller) is None


    def test_jobs_without_unique_id_skipped(self):
        snapshot = ClientStatusSnapshot(
            client_id="daq-1",
            online=True,
            status=ClientStatus.model_validate(
                {"daq_jobs": [{"daq_job_type": "DAQJobScope"}, {"daq_job_type": "DAQJobScope", "unique_id": "scope_b"}]}
            ),
            updated_at=datetime.now(timezone.utc),
        )
        poller = MagicMock()
        poller.get_status.return_value = snapshot

        assert resolve_target_unique_id("daq-1", "DAQJobScope", poller) == "scope_b"


class TestSendMessageFromTemplate:
    """Test send_message_from_template() function."""

    async def test_send_success(self, gateway, dispatcher, poller):
        """Test the rendered payload is sent and recorded as SENT."""
        template_id, (param_id,) = add_message_template()

        message = await send_message_from_template(
            gateway, dispatcher, poller, template_id, "daq-1", {"VOLTAGE": "1200"}
        )

        gateway.send_message.assert_awaited_once_with(
            "daq-1", "DAQJobMessageSetVoltage", '{"voltage": 1200}', "scope_run3"
        )
        assert message.status == MESSAGE_STATUS_SENT
        assert message.target_daq_job_unique_id == "scope_run3"
        assert dispatcher.notify_message.call_args[0][0] == "message_sent"

        session = get_session()
        try:
            values = session.query(MessageParameterValue).filter(MessageParameterValue.message_id == message.id).all()
            assert [(v.parameter_id, v.value) for v in values] == [(param_id, "1200")]
        finally:
            session.close()

    async def test_boolean_parameter_renders_as_json(self, gateway, dispatcher, poller):
        template_id, _ = add_message_template(
            payload_template='{"enabled": {ENABLED}}', parameters=[{"name": "ENABLED"}]
        )

        message = await send_message_from_template(
            gateway, dispatcher, poller, template_id, "daq-1", {"ENABLED": True}
        )

        assert json.loads(message.payload) == {"enabled": True}
        assert gateway.send_message.call_args[0][2] == '{"enabled": true}'

    async def test_target_override_and_run_id(self, gateway, dispatcher, poller):
        template_id, _ = add_message_template()

        message = await send_message_from_template(
            gateway,
            dispatcher,
            poller,
            template_id,
            "daq-1",
            {"VOLTAGE": "5"},
            run_id=3,
            target_daq_job_type="DAQJobHandleStats",
        )

        assert message.run_id == 3
        assert message.target_daq_job_type == "DAQJobHandleStats"
        assert message.target_daq_job_unique_id == "stats"

    async def test_gateway_failure_recorded(self, gateway, dispatcher, poller):
        """Test a failed send still stores exactly one FAILED message."""
        template_id, _ = add_message_template()
        gateway.send_message.side_effect = GatewayError("client offline")

        with pytest.raises(MessageSendError) as exc_info:
            await send_message_from_template(gateway, dispatcher, poller, template_id, "daq-1", {"VOLTAGE": "5"})

        messages, total = list_messages()
        assert total == 1
        assert messages[0].id == exc_info.value.message.id
        assert messages[0].status == MESSAGE_STATUS_FAILED
        assert messages[0].error_message == "client offline"
        assert dispatcher.notify_message.call_args[0][0] == "message_failed"

    async def test_missing_parameter(self, gateway, dispatcher, poller):
        """Test missing required parameters are rejected before sending."""
        template_id, _ = add_message_template()

        with pytest.raises(MessageValidationError):
            await send_message_from_template(gateway, dispatcher, poller, template_id, "daq-1", {})

        gateway.send_message.assert_not_called()
        assert list_messages()[1] == 0

    async def test_unknown_template(self, gateway, dispatcher, poller):
        with pytest.raises(MessageValidationError):
            await send_message_from_template(gateway, dispatcher, poller, 99, "daq-1")

    async def test_non_message_template_rejected(self, gateway, dispatcher, poller):
        template_id, _ = add_template("scope", type="run", config="a = 1")
        with pytest.raises(MessageValidationError):
            await send_message_from_template(gateway, dispatcher, poller, template_id, "daq-1")


class TestSendRawMessage:
    """Test send_raw_message() function."""

    async def test_dict_payload_encoded(self, gateway, dispatcher, poller):
        message = await send_raw_message(gateway, dispatcher, poller, "daq-1", "DAQJobMessageStop", {"reason": "x"})

        gateway.send_message.assert_awaited_once_with("daq-1", "DAQJobMessageStop", '{"reason": "x"}', None)
        assert message.template_id is None
        assert message.status == MESSAGE_STATUS_SENT

    async def test_missing_payload(self, gateway, dispatcher, poller):
        with pytest.raises(MessageValidationError):
            await send_raw_message(gateway, dispatcher, poller, "daq-1", "DAQJobMessageStop", "")


class TestListMessageTemplates:
    """Test list_message_templates() function."""

    def test_only_message_templates_with_parameters(self):
        add_message_template()
        add_template("scope", type="run", config="a = 1")

        templates = list_message_templates()

        assert [t["name"] for t in templates] == ["set_voltage"]
        assert [p["name"] for p in templates[0]["parameters"]] == ["VOLTAGE"]
