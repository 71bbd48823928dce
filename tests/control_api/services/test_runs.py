# tests/control_api/services/test_runs.py
import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock, patch

import pytest

from control_api.db.models import RUN_STATUS_COMPLETED, RUN_STATUS_RUNNING, RUN_STATUS_STOPPED, Message
from control_api.db.engine import get_session
from control_api.services.runs import (
    CONFIG_SEPARATOR,
    RunConflictError,
    RunStartError,
    RunValidationError,
    delete_run,
    get_run,
    get_run_metadata,
    get_run_parameter_values,
    list_runs,
    reconcile_active_runs,
    start_run,
    stop_overdue_runs,
    stop_run,
    upsert_run_metadata,
)
from control_api.services.templates import TemplateValidationError
from daq.gateway.client import GatewayError
from daq.gateway.models import ClientStatus, ClientStatusSnapshot
from tests.control_api.factories import add_run_type, add_template

SCOPE_CONFIG = 'daq_job_type = "DAQJobScope"\nchannel = {CHANNEL}\nrun = {RUN_ID}'


def poller_with_jobs(client_id, job_ids, online=True):
    poller = MagicMock()
    snapshot = ClientStatusSnapshot(
        client_id=client_id,
        online=online,
        status=ClientStatus.model_validate(
            {"daq_jobs": [{"daq_job_type": "DAQJobScope", "unique_id": uid} for uid in job_ids]}
        ),
        updated_at=datetime.now(timezone.utc),
    )
    poller.get_status.side_effect = lambda cid: snapshot if cid == client_id else None
    return poller


class TestStartRun:
    """Test start_run() function."""

    async def test_start_run_success(self, gateway, dispatcher):
        """Test jobs are launched with unique ids and rendered parameters."""
        add_template("scope", config=SCOPE_CONFIG, parameters=[{"name": "CHANNEL", "default_value": "1"}])

        run = await start_run(gateway, "Cal run", "daq-1", parameter_values={"CHANNEL": "4"}, dispatcher=dispatcher)

        assert run.status == RUN_STATUS_RUNNING
        assert run.daq_job_ids == [f"scope_run{run.id}"]
        sent_config = gateway.run_job.call_args[0][1]
        assert gateway.run_job.call_args[0][0] == "daq-1"
        assert sent_config.startswith(f'daq_job_unique_id = "scope_run{run.id}"\n')
        assert "channel = 4" in sent_config
        assert f"run = {run.id}" in sent_config
        assert get_run_parameter_values(run.id) == {"CHANNEL": "4"}

        dispatcher.notify_run.assert_called_once()
        event, data = dispatcher.notify_run.call_args[0]
        assert event == "run_started"
        assert data["id"] == run.id
        assert data["parameterValues"] == {"CHANNEL": "4"}

    async def test_configs_joined(self, gateway):
        """Test the stored config contains every job, separated."""
        add_template("scope", config="a = 1")
        add_template("digitizer", config="b = 2")

        run = await start_run(gateway, "Two jobs", "daq-1")

        assert gateway.run_job.await_count == 2
        assert run.config.count(CONFIG_SEPARATOR.strip()) == 1
        assert get_run(run.id).daq_job_ids == [f"scope_run{run.id}", f"digitizer_run{run.id}"]

    async def test_run_type_default_beats_template_default(self, gateway):
        """Test parameter resolution order explicit > run type default > template default."""
        from control_api.services.templates import set_run_type_parameter_default

        template_id, (param_id,) = add_template(
            "scope", config=SCOPE_CONFIG, parameters=[{"name": "CHANNEL", "default_value": "1"}]
        )
        run_type_id = add_run_type("Calibration", [template_id])
        set_run_type_parameter_default(run_type_id, param_id, "2")

        run = await start_run(gateway, "Cal", "daq-1", run_type_id=run_type_id)
        assert "channel = 2" in gateway.run_job.call_args[0][1]

        await stop_run(gateway, run.id)
        await start_run(gateway, "Cal", "daq-1", run_type_id=run_type_id, parameter_values={"CHANNEL": "9"})
        assert "channel = 9" in gateway.run_job.call_args[0][1]

    async def test_conflict_creates_no_record(self, gateway):
        """Test a second run on the same client is rejected without a record."""
        add_template("scope", config="a = 1")
        await start_run(gateway, "First", "daq-1")

        with pytest.raises(RunConflictError):
            await start_run(gateway, "Second", "daq-1")

        runs, total = list_runs()
        assert total == 1
        assert gateway.run_job.await_count == 1

    async def test_other_client_not_blocked(self, gateway):
        add_template("scope", config="a = 1")
        await start_run(gateway, "First", "daq-1")
        run = await start_run(gateway, "Second", "daq-2")
        assert run.client_id == "daq-2"

    async def test_global_exclusivity(self, gateway):
        """Test RUN_EXCLUSIVITY=global blocks runs on any client."""
        add_template("scope", config="a = 1")
        await start_run(gateway, "First", "daq-1")

        with patch("control_api.services.runs.RUN_EXCLUSIVITY", "global"):
            with pytest.raises(RunConflictError):
                await start_run(gateway, "Second", "daq-2")

    async def test_missing_required_parameter(self, gateway):
        """Test validation errors are raised before anything is recorded."""
        add_template("scope", config=SCOPE_CONFIG, parameters=[{"name": "CHANNEL"}])

        with pytest.raises(TemplateValidationError):
            await start_run(gateway, "Cal", "daq-1")

        assert list_runs()[1] == 0
        gateway.run_job.assert_not_called()

    async def test_no_templates(self, gateway):
        """Test a run without run templates is still recorded, with no jobs."""
        run = await start_run(gateway, "Cal", "daq-1")

        assert run.status == RUN_STATUS_RUNNING
        assert run.daq_job_ids == []
        gateway.run_job.assert_not_called()

    async def test_unknown_run_type(self, gateway):
        with pytest.raises(RunValidationError):
            await start_run(gateway, "Cal", "daq-1", run_type_id=999)

        assert list_runs()[1] == 0

    async def test_stop_while_launching(self, gateway, dispatcher):
        """Test jobs launched after the run was stopped are stopped again."""
        add_template("scope", config="a = 1")
        launching = asyncio.Event()
        release = asyncio.Event()

        async def slow_run_job(client_id, config):
            launching.set()
            await release.wait()
            return {"ok": True}

        gateway.run_job.side_effect = slow_run_job
        task = asyncio.create_task(start_run(gateway, "Cal", "daq-1", dispatcher=dispatcher))
        await launching.wait()

        run_id = list_runs()[0][0].id
        stopped = await stop_run(gateway, run_id, dispatcher=dispatcher)
        assert stopped.status == RUN_STATUS_COMPLETED
        gateway.stop_job.assert_not_called()

        release.set()
        run = await task

        assert run.status == RUN_STATUS_COMPLETED
        gateway.stop_job.assert_awaited_once_with("daq-1", f"scope_run{run_id}")
        events = [c[0][0] for c in dispatcher.notify_run.call_args_list]
        assert "run_started" not in events

        # The client is free for the next run
        gateway.run_job.side_effect = None
        assert (await start_run(gateway, "Next", "daq-1")).status == RUN_STATUS_RUNNING

    async def test_launch_failure_rolls_back(self, gateway, dispatcher):
        """Test a failed launch stops launched jobs and marks the run STOPPED."""
        add_template("scope", config="a = 1")
        add_template("digitizer", config="b = 2")
        gateway.run_job.side_effect = [{"ok": True}, GatewayError("digitizer busy")]

        with pytest.raises(RunStartError) as exc_info:
            await start_run(gateway, "Cal", "daq-1", dispatcher=dispatcher)

        run = get_run(exc_info.value.run.id)
        assert run.status == RUN_STATUS_STOPPED
        assert run.end_time is not None
        gateway.stop_job.assert_awaited_once_with("daq-1", f"scope_run{run.id}")
        assert dispatcher.notify_run.call_args[0][0] == "run_error"

        # The client is free again
        gateway.run_job.side_effect = None
        assert (await start_run(gateway, "Retry", "daq-1")).status == RUN_STATUS_RUNNING

    async def test_run_type_messages_sent(self, gateway, dispatcher):
        """Test the run type's message templates are sent with the run id."""
        run_template, _ = add_template("scope", config="a = 1")
        message_template, _ = add_template(
            "notify",
            type="message",
            message_type="DAQJobMessageStartRun",
            payload_template='{"run": {RUN_ID}}',
        )
        run_type_id = add_run_type("Physics", [run_template, message_template])

        run = await start_run(gateway, "Physics run", "daq-1", run_type_id=run_type_id, dispatcher=dispatcher)

        gateway.send_message.assert_awaited_once()
        assert gateway.send_message.call_args[0][:3] == ("daq-1", "DAQJobMessageStartRun", f'{{"run": {run.id}}}')
        session = get_session()
        try:
            assert session.query(Message).filter(Message.run_id == run.id).count() == 1
        finally:
            session.close()


class TestStopRun:
    """Test stop_run() and stop_overdue_runs()."""

    async def test_stop_run(self, gateway, dispatcher):
        add_template("scope", config="a = 1")
        run = await start_run(gateway, "Cal", "daq-1")

        stopped = await stop_run(gateway, run.id, dispatcher=dispatcher)

        assert stopped.status == RUN_STATUS_COMPLETED
        assert stopped.end_time is not None
        gateway.stop_job.assert_awaited_once_with("daq-1", f"scope_run{run.id}")
        assert dispatcher.notify_run.call_args[0][0] == "run_stopped"

    async def test_stop_failures_still_complete(self, gateway):
        """Test job stop failures are logged and the run is completed anyway."""
        add_template("scope", config="a = 1")
        run = await start_run(gateway, "Cal", "daq-1")
        gateway.stop_job.side_effect = GatewayError("gone")

        assert (await stop_run(gateway, run.id)).status == RUN_STATUS_COMPLETED

    async def test_stop_finished_run_is_noop(self, gateway):
        add_template("scope", config="a = 1")
        run = await start_run(gateway, "Cal", "daq-1")
        await stop_run(gateway, run.id)
        gateway.stop_job.reset_mock()

        assert (await stop_run(gateway, run.id)).status == RUN_STATUS_COMPLETED
        gateway.stop_job.assert_not_called()

    async def test_stop_missing_run(self, gateway):
        assert await stop_run(gateway, 404) is None

    async def test_stop_overdue_runs(self, gateway):
        """Test only runs past their scheduled end are stopped."""
        add_template("scope", config="a = 1")
        past = datetime.now(timezone.utc) - timedelta(minutes=1)
        future = datetime.now(timezone.utc) + timedelta(hours=1)
        overdue = await start_run(gateway, "Overdue", "daq-1", scheduled_end_time=past)
        pending = await start_run(gateway, "Pending", "daq-2", scheduled_end_time=future)

        stopped = await stop_overdue_runs(gateway)

        assert [run.id for run in stopped] == [overdue.id]
        assert get_run(pending.id).status == RUN_STATUS_RUNNING


class TestReconcileActiveRuns:
    """Test reconcile_active_runs() function."""

    async def test_run_completed_when_jobs_vanish(self, gateway):
        add_template("scope", config="a = 1")
        run = await start_run(gateway, "Cal", "daq-1")

        completed = reconcile_active_runs(poller_with_jobs("daq-1", []), grace_seconds=0)

        assert [r.id for r in completed] == [run.id]
        assert get_run(run.id).status == RUN_STATUS_COMPLETED

    async def test_run_kept_while_jobs_present(self, gateway):
        add_template("scope", config="a = 1")
        run = await start_run(gateway, "Cal", "daq-1")

        assert reconcile_active_runs(poller_with_jobs("daq-1", [f"scope_run{run.id}"]), grace_seconds=0) == []

    async def test_grace_period(self, gateway):
        """Test young runs are not completed even if jobs are missing."""
        add_template("scope", config="a = 1")
        await start_run(gateway, "Cal", "daq-1")

        assert reconcile_active_runs(poller_with_jobs("daq-1", []), grace_seconds=60) == []

    async def test_offline_client_left_alone(self, gateway):
        add_template("scope", config="a = 1")
        await start_run(gateway, "Cal", "daq-1")

        assert reconcile_active_runs(poller_with_jobs("daq-1", [], online=False), grace_seconds=0) == []
        assert reconcile_active_runs(poller_with_jobs("daq-2", []), grace_seconds=0) == []


class TestRunRecords:
    """Test deletion and metadata."""

    async def test_delete_running_run_refused(self, gateway):
        add_template("scope", config="a = 1")
        run = await start_run(gateway, "Cal", "daq-1")

        with pytest.raises(RunConflictError):
            delete_run(run.id)

        await stop_run(gateway, run.id)
        upsert_run_metadata(run.id, "notes", "alice")
        assert delete_run(run.id) is True
        assert get_run(run.id) is None
        assert get_run_metadata(run.id) is None

    def test_delete_missing(self):
        assert delete_run(1) is False

    async def test_metadata_upsert(self, gateway):
        add_template("scope", config="a = 1")
        run = await start_run(gateway, "Cal", "daq-1")

        upsert_run_metadata(run.id, "first", "alice")
        metadata = upsert_run_metadata(run.id, "second", "bob")

        assert metadata.details == "second"
        assert metadata.updated_by == "bob"
        assert get_run_metadata(run.id).details == "second"

    def test_metadata_missing_run(self):
        assert upsert_run_metadata(1, "notes", "alice") is None

    async def test_list_runs_filters(self, gateway):
        add_template("scope", config="a = 1")
        first = await start_run(gateway, "A", "daq-1")
        await stop_run(gateway, first.id)
        second = await start_run(gateway, "B", "daq-1")
        await start_run(gateway, "C", "daq-2")

        runs, total = list_runs(client_id="daq-1")
        assert total == 2
        assert [r.id for r in runs] == [second.id, first.id]

        runs, total = list_runs(status=RUN_STATUS_RUNNING, limit=1)
        assert total == 2
        assert len(runs) == 1
