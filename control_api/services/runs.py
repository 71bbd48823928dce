# control_api/services/runs.py
import logging
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional, Tuple

from control_api.db.engine import get_session
from control_api.db.models import (
    RUN_STATUS_COMPLETED,
    RUN_STATUS_RUNNING,
    RUN_STATUS_STOPPED,
    TEMPLATE_TYPE_RUN,
    Run,
    RunMetadata,
    RunParameterValue,
    RunType,
    Template,
    TemplateParameter,
    as_dict,
    as_utc,
    utcnow,
)
from control_api.services.messages import send_messages_for_run_type
from control_api.services.templates import (
    get_run_type_parameter_defaults,
    get_run_type_templates,
    list_template_parameters,
    resolve_parameter_values,
)
from daq.conf import RUN_ALIVE_GRACE_SECONDS, RUN_EXCLUSIVITY
from daq.gateway.client import DAQGatewayClient, GatewayError
from daq.polling.service import StatusPoller
from daq.templating import replace_parameters

logger = logging.getLogger(__name__)

CONFIG_SEPARATOR = "\n\n# -- NEXT JOB --\n\n"


class RunLoggerAdapter(logging.LoggerAdapter):
    def process(self, msg, kwargs):
        extra = self.extra or {}
        return f"[run_id={extra.get('run_id', 'unknown')}] [client={extra.get('client_id', 'unknown')}] {msg}", kwargs


class RunValidationError(ValueError):
    """Run request is invalid."""


class RunConflictError(ValueError):
    """Another run is already active in the exclusivity scope."""

    def __init__(self, active_run: Run):
        super().__init__(f"Run {active_run.id} is already running on {active_run.client_id}")
        self.active_run = active_run


class RunStartError(Exception):
    """Launching the run's jobs failed; the run was rolled back to STOPPED."""

    def __init__(self, detail: str, run: Run):
        super().__init__(detail)
        self.detail = detail
        self.run = run


def job_unique_id(template_name: str, run_id: int) -> str:
    return f"{template_name}_run{run_id}"


def _run_event_data(run: Run, parameter_values: Optional[Dict[str, Any]] = None, **extra) -> Dict[str, Any]:
    return {**as_dict(run), "parameterValues": parameter_values or {}, **extra}


# ----------------------------------------------------------------------
# Queries
# ----------------------------------------------------------------------
def list_runs(
    status: Optional[str] = None,
    client_id: Optional[str] = None,
    limit: int = 50,
    offset: int = 0,
) -> Tuple[List[Run], int]:
    """Runs newest first, optionally filtered, with the total matching count."""
    session = get_session()
    try:
        query = session.query(Run)
        if status:
            query = query.filter(Run.status == status)
        if client_id:
            query = query.filter(Run.client_id == client_id)
        total = query.count()
        runs = query.order_by(Run.start_time.desc(), Run.id.desc()).offset(offset).limit(limit).all()
        return runs, total
    finally:
        session.close()


def get_run(run_id: int) -> Run | None:
    session = get_session()
    try:
        return session.get(Run, run_id)
    finally:
        session.close()


def get_active_run(client_id: Optional[str] = None) -> Run | None:
    """
    The RUNNING run blocking a new one on ``client_id``.

    With RUN_EXCLUSIVITY=global any running run counts, whatever its client.
    """
    session = get_session()
    try:
        query = session.query(Run).filter(Run.status == RUN_STATUS_RUNNING)
        if RUN_EXCLUSIVITY != "global":
            query = query.filter(Run.client_id == client_id)
        return query.order_by(Run.id.desc()).first()
    finally:
        session.close()


def get_run_parameter_values(run_id: int) -> Dict[str, str]:
    session = get_session()
    try:
        rows = (
            session.query(TemplateParameter.name, RunParameterValue.value)
            .join(TemplateParameter, TemplateParameter.id == RunParameterValue.parameter_id)
            .filter(RunParameterValue.run_id == run_id)
            .all()
        )
        return {name: value for name, value in rows}
    finally:
        session.close()


def delete_run(run_id: int) -> bool:
    """Delete a finished run with its metadata and parameter values."""
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None:
            return False
        if run.status == RUN_STATUS_RUNNING:
            raise RunConflictError(run)

        session.query(RunMetadata).filter(RunMetadata.run_id == run_id).delete()
        session.query(RunParameterValue).filter(RunParameterValue.run_id == run_id).delete()
        session.delete(run)
        session.commit()
        logger.info("Deleted run %s", run_id)
        return True
    finally:
        session.close()


def get_run_metadata(run_id: int) -> RunMetadata | None:
    session = get_session()
    try:
        return session.query(RunMetadata).filter(RunMetadata.run_id == run_id).first()
    finally:
        session.close()


def upsert_run_metadata(run_id: int, details: Optional[str], updated_by: Optional[str]) -> RunMetadata | None:
    """Create or replace a run's notes. Returns None if the run does not exist."""
    session = get_session()
    try:
        if session.get(Run, run_id) is None:
            return None

        metadata = session.query(RunMetadata).filter(RunMetadata.run_id == run_id).first()
        if metadata is None:
            metadata = RunMetadata(run_id=run_id)
            session.add(metadata)
        metadata.details = details
        metadata.updated_by = updated_by
        metadata.updated_at = utcnow()
        session.commit()
        return metadata
    finally:
        session.close()


# ----------------------------------------------------------------------
# State changes
# ----------------------------------------------------------------------
def _finish_run(run_id: int, status: str) -> Run | None:
    session = get_session()
    try:
        run = session.get(Run, run_id)
        if run is None:
            return None
        run.status = status
        run.end_time = utcnow()
        session.commit()
        return run
    finally:
        session.close()


def _load_run_templates(run_type_id: Optional[int]) -> List[Template]:
    if run_type_id is not None:
        return get_run_type_templates(run_type_id, TEMPLATE_TYPE_RUN)

    session = get_session()
    try:
        return session.query(Template).filter(Template.type == TEMPLATE_TYPE_RUN).order_by(Template.id).all()
    finally:
        session.close()


def _create_run(
    description: str,
    client_id: str,
    run_type_id: Optional[int],
    scheduled_end_time: Optional[datetime],
) -> Run:
    session = get_session()
    try:
        run = Run(
            description=description,
            client_id=client_id,
            run_type_id=run_type_id,
            scheduled_end_time=scheduled_end_time,
            status=RUN_STATUS_RUNNING,
            start_time=utcnow(),
        )
        session.add(run)
        session.commit()
        return run
    finally:
        session.close()


async def _stop_launched(
    gateway: DAQGatewayClient, client_id: str, launched: List[str], run_logger: logging.LoggerAdapter
) -> None:
    for unique_id in launched:
        try:
            await gateway.stop_job(client_id, unique_id)
        except GatewayError as e:
            run_logger.warning("Failed to stop %s: %s", unique_id, e)


async def start_run(
    gateway: DAQGatewayClient,
    description: str,
    client_id: str,
    run_type_id: Optional[int] = None,
    parameter_values: Optional[Dict[str, Any]] = None,
    scheduled_end_time: Optional[datetime] = None,
    *,
    dispatcher=None,
    poller: Optional[StatusPoller] = None,
) -> Run:
    """
    Start a run on a client.

    The run is recorded as RUNNING before any job is launched. If a launch
    fails, already-launched jobs are stopped, the run is marked STOPPED and
    RunStartError is raised. A run stopped while its jobs are launching has
    those jobs stopped again once launching finishes.
    """
    if not description or not client_id:
        raise RunValidationError("Missing description or client_id")

    active = get_active_run(client_id)
    if active is not None:
        raise RunConflictError(active)

    if run_type_id is not None:
        session = get_session()
        try:
            if session.get(RunType, run_type_id) is None:
                raise RunValidationError(f"Run type not found: {run_type_id}")
        finally:
            session.close()

    templates = _load_run_templates(run_type_id)

    run_type_defaults = get_run_type_parameter_defaults(run_type_id)
    prepared = []
    values: Dict[int, str] = {}
    for template in templates:
        params = list_template_parameters(template.id)
        template_values = resolve_parameter_values(params, parameter_values, run_type_defaults)
        values.update(template_values)
        prepared.append((template, {p.name: template_values[p.id] for p in params if p.id in template_values}))

    # No await between the conflict check and this insert
    run = _create_run(description, client_id, run_type_id, as_utc(scheduled_end_time))
    run_logger = RunLoggerAdapter(logger, {"run_id": run.id, "client_id": client_id})
    if not templates:
        run_logger.warning("No run templates configured, recording the run without jobs")

    configs: List[str] = []
    job_ids: List[str] = []
    for template, by_name in prepared:
        unique_id = job_unique_id(template.name, run.id)
        body = replace_parameters(template.config, {**by_name, "RUN_ID": run.id})
        configs.append(f'daq_job_unique_id = "{unique_id}"\n{body}')
        job_ids.append(unique_id)

    launched: List[str] = []
    try:
        for unique_id, config in zip(job_ids, configs):
            await gateway.run_job(client_id, config)
            launched.append(unique_id)
            run_logger.info("Launched %s", unique_id)
    except GatewayError as e:
        run_logger.error("Failed to launch run jobs: %s", e)
        await _stop_launched(gateway, client_id, launched, run_logger)

        run = _finish_run(run.id, RUN_STATUS_STOPPED) or run
        if dispatcher is not None:
            dispatcher.notify_run("run_error", _run_event_data(run, parameter_values, error=str(e)))
        raise RunStartError(str(e), run) from e

    session = get_session()
    try:
        stored = session.get(Run, run.id)
        stored.config = CONFIG_SEPARATOR.join(configs)
        stored.daq_job_ids = job_ids
        for parameter_id, value in values.items():
            session.add(RunParameterValue(run_id=run.id, parameter_id=parameter_id, value=value))
        session.commit()
        run = stored
    finally:
        session.close()

    if run.status != RUN_STATUS_RUNNING:
        run_logger.warning("Run was stopped while its jobs were launching")
        await _stop_launched(gateway, client_id, launched, run_logger)
        return run

    if run_type_id is not None:
        await send_messages_for_run_type(
            gateway, dispatcher, poller, run_type_id, client_id, run.id, parameter_values
        )

    run_logger.info("Run started with %d job(s)", len(job_ids))
    if dispatcher is not None:
        dispatcher.notify_run("run_started", _run_event_data(run, get_run_parameter_values(run.id)))
    return run


async def stop_run(
    gateway: DAQGatewayClient,
    run_id: int,
    client_id: Optional[str] = None,
    *,
    dispatcher=None,
) -> Run | None:
    """Stop a RUNNING run's jobs and mark it COMPLETED. Returns None if the run does not exist."""
    run = get_run(run_id)
    if run is None:
        return None
    if run.status != RUN_STATUS_RUNNING:
        return run

    target = client_id or run.client_id
    run_logger = RunLoggerAdapter(logger, {"run_id": run.id, "client_id": target})
    for unique_id in run.daq_job_ids or []:
        try:
            await gateway.stop_job(target, unique_id)
        except GatewayError as e:
            run_logger.error("Failed to stop %s: %s", unique_id, e)

    run = _finish_run(run.id, RUN_STATUS_COMPLETED) or run
    run_logger.info("Run stopped")
    if dispatcher is not None:
        dispatcher.notify_run("run_stopped", _run_event_data(run, get_run_parameter_values(run.id)))
    return run


async def stop_overdue_runs(gateway: DAQGatewayClient, *, dispatcher=None) -> List[Run]:
    """Stop every RUNNING run whose scheduled end time has passed."""
    now = utcnow()
    session = get_session()
    try:
        candidates = (
            session.query(Run)
            .filter(Run.status == RUN_STATUS_RUNNING)
            .filter(Run.scheduled_end_time.isnot(None))
            .all()
        )
    finally:
        session.close()

    stopped = []
    for run in candidates:
        if as_utc(run.scheduled_end_time) <= now:
            logger.info("Run %s reached its scheduled end time", run.id)
            result = await stop_run(gateway, run.id, dispatcher=dispatcher)
            if result is not None:
                stopped.append(result)
    return stopped


def reconcile_active_runs(
    poller: StatusPoller,
    grace_seconds: float = RUN_ALIVE_GRACE_SECONDS,
    *,
    dispatcher=None,
) -> List[Run]:
    """
    Mark RUNNING runs COMPLETED once their jobs are gone from the client.

    Only trusts fresh data: runs younger than the grace period, and clients
    that are offline or never polled, are left alone.
    """
    cutoff = utcnow() - timedelta(seconds=grace_seconds)
    session = get_session()
    try:
        running = session.query(Run).filter(Run.status == RUN_STATUS_RUNNING).all()
    finally:
        session.close()

    completed = []
    for run in running:
        if not run.daq_job_ids or as_utc(run.start_time) > cutoff:
            continue
        snapshot = poller.get_status(run.client_id)
        if snapshot is None or not snapshot.online or snapshot.status is None:
            continue

        present = set(snapshot.status.job_ids())
        if all(unique_id in present for unique_id in run.daq_job_ids):
            continue

        logger.info("Run %s jobs are no longer running on %s, completing", run.id, run.client_id)
        finished = _finish_run(run.id, RUN_STATUS_COMPLETED)
        if finished is None:
            continue
        completed.append(finished)
        if dispatcher is not None:
            dispatcher.notify_run("run_stopped", _run_event_data(finished, get_run_parameter_values(finished.id)))
    return completed
