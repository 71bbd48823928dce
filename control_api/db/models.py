# control_api/db/models.py
from datetime import datetime, timezone

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    func,
)
from sqlalchemy.orm import declarative_base

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """Normalize to aware UTC. SQLite hands back naive datetimes; stored values are always UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def as_dict(row) -> dict:
    """Column values of a mapped row, keyed by column name."""
    return {column.name: getattr(row, column.name) for column in row.__table__.columns}


RUN_STATUS_RUNNING = "RUNNING"
RUN_STATUS_COMPLETED = "COMPLETED"
RUN_STATUS_STOPPED = "STOPPED"

MESSAGE_STATUS_SENT = "SENT"
MESSAGE_STATUS_FAILED = "FAILED"

TEMPLATE_TYPE_NORMAL = "normal"
TEMPLATE_TYPE_RUN = "run"
TEMPLATE_TYPE_MESSAGE = "message"


class RunType(Base):
    """Named category of runs (e.g. Calibration, Physics)."""

    __tablename__ = "run_types"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    description = Column(Text, nullable=True)
    required_tags = Column(JSON, nullable=True)  # Clients must carry all of these tags


class Run(Base):
    """A DAQ acquisition run."""

    __tablename__ = "runs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    description = Column(Text, nullable=False)
    start_time = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    end_time = Column(DateTime(timezone=True), nullable=True)
    scheduled_end_time = Column(DateTime(timezone=True), nullable=True, index=True)
    status = Column(String, nullable=False, default=RUN_STATUS_RUNNING, index=True)  # RUNNING, COMPLETED, STOPPED
    daq_job_ids = Column(JSON, nullable=True)  # Unique ids of the jobs launched for this run
    config = Column(Text, nullable=True)  # Combined job configuration that was sent
    client_id = Column(String, nullable=True, index=True)
    run_type_id = Column(Integer, ForeignKey("run_types.id"), nullable=True)


class RunMetadata(Base):
    """Free-text notes attached 1:1 to a run."""

    __tablename__ = "run_metadata"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("runs.id"), nullable=False, unique=True)
    details = Column(Text, nullable=True)
    updated_by = Column(String, nullable=True)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class Template(Base):
    """DAQ job configuration ("run"/"normal") or message payload ("message") template."""

    __tablename__ = "templates"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)
    display_name = Column(String, nullable=False)
    config = Column(Text, nullable=False, default="")
    type = Column(String, nullable=False, default=TEMPLATE_TYPE_NORMAL)
    editable = Column(Boolean, nullable=False, default=True)
    # Message template fields
    message_type = Column(String, nullable=True)
    payload_template = Column(Text, nullable=True)
    target_daq_job_type = Column(String, nullable=True)  # None means broadcast
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )


class TemplateRunType(Base):
    """Many-to-many join between templates and run types."""

    __tablename__ = "template_run_types"

    template_id = Column(Integer, ForeignKey("templates.id"), primary_key=True)
    run_type_id = Column(Integer, ForeignKey("run_types.id"), primary_key=True)


class TemplateParameter(Base):
    """Named parameter filling a {NAME} placeholder of a template."""

    __tablename__ = "template_parameters"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=False, index=True)
    name = Column(String, nullable=False)
    display_name = Column(String, nullable=False)
    type = Column(String, nullable=False, default="string")
    default_value = Column(Text, nullable=True)
    required = Column(Boolean, nullable=False, default=True)


class RunTypeParameterDefault(Base):
    """Per-run-type override of a template parameter's default."""

    __tablename__ = "run_type_parameter_defaults"
    __table_args__ = (UniqueConstraint("run_type_id", "parameter_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_type_id = Column(Integer, ForeignKey("run_types.id"), nullable=False)
    parameter_id = Column(Integer, ForeignKey("template_parameters.id"), nullable=False)
    default_value = Column(Text, nullable=False)


class RunParameterValue(Base):
    """Parameter value used when a run was started."""

    __tablename__ = "run_parameter_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    run_id = Column(Integer, ForeignKey("runs.id"), nullable=False, index=True)
    parameter_id = Column(Integer, ForeignKey("template_parameters.id"), nullable=False)
    value = Column(Text, nullable=False)


class Message(Base):
    """One message dispatch attempt."""

    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    template_id = Column(Integer, ForeignKey("templates.id"), nullable=True)  # None for raw messages
    client_id = Column(String, nullable=False)
    target_daq_job_type = Column(String, nullable=True)
    target_daq_job_unique_id = Column(String, nullable=True)  # None means broadcast
    message_type = Column(String, nullable=False)
    payload = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=MESSAGE_STATUS_SENT)  # SENT, FAILED
    error_message = Column(Text, nullable=True)
    sent_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False, index=True)
    run_id = Column(Integer, ForeignKey("runs.id"), nullable=True)


class MessageParameterValue(Base):
    """Parameter value used to render a message."""

    __tablename__ = "message_parameter_values"

    id = Column(Integer, primary_key=True, autoincrement=True)
    message_id = Column(Integer, ForeignKey("messages.id"), nullable=False, index=True)
    parameter_id = Column(Integer, ForeignKey("template_parameters.id"), nullable=False)
    value = Column(Text, nullable=False)


class Webhook(Base):
    """Outbound notification target for run and message events."""

    __tablename__ = "webhooks"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    url = Column(String, nullable=False)
    secret = Column(String, nullable=True)  # Sent verbatim as the Authorization header
    is_active = Column(Boolean, nullable=False, default=True)
    trigger_on_run = Column(Boolean, nullable=False, default=False)
    trigger_on_message = Column(Boolean, nullable=False, default=False)
    payload_template = Column(Text, nullable=True)  # JSON with {field} placeholders
    created_at = Column(DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False)
    updated_at = Column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), onupdate=utcnow, nullable=False
    )
