# control_api/services/templates.py
import logging
from typing import Any, Dict, Iterable, List, Optional

from control_api.db.engine import get_session
from control_api.db.models import (
    TEMPLATE_TYPE_MESSAGE,
    TEMPLATE_TYPE_NORMAL,
    MessageParameterValue,
    RunParameterValue,
    RunType,
    RunTypeParameterDefault,
    Template,
    TemplateParameter,
    TemplateRunType,
    as_dict,
    utcnow,
)
from daq.templating import to_text

logger = logging.getLogger(__name__)


class TemplateValidationError(ValueError):
    """Template or run type input is invalid."""


def _template_with_run_types(session, template: Template) -> Dict[str, Any]:
    run_type_ids = [
        row.run_type_id
        for row in session.query(TemplateRunType).filter(TemplateRunType.template_id == template.id).all()
    ]
    return {**as_dict(template), "run_type_ids": run_type_ids}


def _replace_template_run_types(session, template_id: int, run_type_ids: Iterable[int]) -> None:
    session.query(TemplateRunType).filter(TemplateRunType.template_id == template_id).delete()
    for run_type_id in dict.fromkeys(run_type_ids):
        session.add(TemplateRunType(template_id=template_id, run_type_id=run_type_id))


# ----------------------------------------------------------------------
# Templates
# ----------------------------------------------------------------------
def list_templates(template_type: str | None = None) -> List[Dict[str, Any]]:
    """List templates together with the ids of their run types."""
    session = get_session()
    try:
        query = session.query(Template)
        if template_type:
            query = query.filter(Template.type == template_type)
        templates = query.order_by(Template.display_name).all()

        relations: Dict[int, List[int]] = {}
        for row in session.query(TemplateRunType).all():
            relations.setdefault(row.template_id, []).append(row.run_type_id)

        return [{**as_dict(t), "run_type_ids": relations.get(t.id, [])} for t in templates]
    finally:
        session.close()


def get_template(template_id: int) -> Dict[str, Any] | None:
    session = get_session()
    try:
        template = session.get(Template, template_id)
        if template is None:
            return None
        return _template_with_run_types(session, template)
    finally:
        session.close()


def create_template(data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Create a user (editable) template.

    Expects name and display_name; "message" templates need message_type and
    payload_template, every other type needs config.
    """
    if not data.get("name") or not data.get("display_name"):
        raise TemplateValidationError("Missing name or display_name")

    template_type = data.get("type") or TEMPLATE_TYPE_NORMAL
    if template_type == TEMPLATE_TYPE_MESSAGE:
        if not data.get("message_type") or not data.get("payload_template"):
            raise TemplateValidationError("Missing message_type or payload_template for message template")
    elif not data.get("config"):
        raise TemplateValidationError("Missing config for non-message template")

    session = get_session()
    try:
        if session.query(Template).filter(Template.name == data["name"]).first():
            raise TemplateValidationError(f"Template name already exists: {data['name']}")

        template = Template(
            name=data["name"],
            display_name=data["display_name"],
            config=data.get("config") or "",
            type=template_type,
            editable=True,
            message_type=data.get("message_type") or None,
            payload_template=data.get("payload_template") or None,
            target_daq_job_type=data.get("target_daq_job_type") or None,
        )
        session.add(template)
        session.flush()
        _replace_template_run_types(session, template.id, data.get("run_type_ids") or [])
        session.commit()
        logger.info("Created template %s (%s)", template.name, template_type)
        return _template_with_run_types(session, template)
    except Exception:
        session.rollback()
        raise
    finally:
        session.close()


_TEMPLATE_FIELDS = ("display_name", "config", "type", "message_type", "payload_template", "target_daq_job_type")


def update_template(template_id: int, data: Dict[str, Any]) -> Dict[str, Any] | None:
    """Update an editable template. Returns None if missing or not editable."""
    session = get_session()
    try:
        template = session.get(Template, template_id)
        if template is None or not template.editable:
            return None

        for field in _TEMPLATE_FIELDS:
            if field in data:
                setattr(template, field, data[field])
        template.updated_at = utcnow()

        if data.get("run_type_ids") is not None:
            _replace_template_run_types(session, template_id, data["run_type_ids"])

        session.commit()
        logger.info("Updated template %s", template_id)
        return _template_with_run_types(session, template)
    finally:
        session.close()


def delete_template(template_id: int) -> bool:
    """Delete an editable template with its parameters and run-type links."""
    session = get_session()
    try:
        template = session.get(Template, template_id)
        if template is None or not template.editable:
            return False

        param_ids = [
            p.id for p in session.query(TemplateParameter).filter(TemplateParameter.template_id == template_id).all()
        ]
        if param_ids:
            _delete_parameter_rows(session, param_ids)
        session.query(TemplateRunType).filter(TemplateRunType.template_id == template_id).delete()
        session.delete(template)
        session.commit()
        logger.info("Deleted template %s", template_id)
        return True
    finally:
        session.close()


# ----------------------------------------------------------------------
# Template parameters
# ----------------------------------------------------------------------
def list_template_parameters(template_id: int) -> List[TemplateParameter]:
    session = get_session()
    try:
        return (
            session.query(TemplateParameter)
            .filter(TemplateParameter.template_id == template_id)
            .order_by(TemplateParameter.id)
            .all()
        )
    finally:
        session.close()


def create_template_parameter(template_id: int, data: Dict[str, Any]) -> TemplateParameter | None:
    """Add a parameter to a template; returns None if the template does not exist."""
    if not data.get("name") or not data.get("display_name"):
        raise TemplateValidationError("Missing name or display_name")

    session = get_session()
    try:
        if session.get(Template, template_id) is None:
            return None

        param = TemplateParameter(
            template_id=template_id,
            name=data["name"],
            display_name=data["display_name"],
            type=data.get("type") or "string",
            default_value=data.get("default_value"),
            required=True if data.get("required") is None else bool(data["required"]),
        )
        session.add(param)
        session.commit()
        logger.info("Added parameter %s to template %s", param.name, template_id)
        return param
    finally:
        session.close()


_PARAMETER_FIELDS = ("name", "display_name", "type", "default_value", "required")


def update_template_parameter(param_id: int, data: Dict[str, Any]) -> TemplateParameter | None:
    session = get_session()
    try:
        param = session.get(TemplateParameter, param_id)
        if param is None:
            return None
        for field in _PARAMETER_FIELDS:
            if field in data:
                setattr(param, field, data[field])
        session.commit()
        return param
    finally:
        session.close()


def _delete_parameter_rows(session, param_ids: List[int]) -> None:
    session.query(RunTypeParameterDefault).filter(RunTypeParameterDefault.parameter_id.in_(param_ids)).delete(
        synchronize_session=False
    )
    session.query(RunParameterValue).filter(RunParameterValue.parameter_id.in_(param_ids)).delete(
        synchronize_session=False
    )
    session.query(MessageParameterValue).filter(MessageParameterValue.parameter_id.in_(param_ids)).delete(
        synchronize_session=False
    )
    session.query(TemplateParameter).filter(TemplateParameter.id.in_(param_ids)).delete(synchronize_session=False)


def delete_template_parameter(param_id: int) -> bool:
    session = get_session()
    try:
        if session.get(TemplateParameter, param_id) is None:
            return False
        _delete_parameter_rows(session, [param_id])
        session.commit()
        return True
    finally:
        session.close()


# ----------------------------------------------------------------------
# Run types
# ----------------------------------------------------------------------
def list_run_types() -> List[RunType]:
    session = get_session()
    try:
        return session.query(RunType).order_by(RunType.name).all()
    finally:
        session.close()


def get_run_type(run_type_id: int) -> RunType | None:
    session = get_session()
    try:
        return session.get(RunType, run_type_id)
    finally:
        session.close()


def create_run_type(data: Dict[str, Any]) -> RunType:
    if not data.get("name"):
        raise TemplateValidationError("Missing name")

    session = get_session()
    try:
        if session.query(RunType).filter(RunType.name == data["name"]).first():
            raise TemplateValidationError(f"Run type name already exists: {data['name']}")

        run_type = RunType(
            name=data["name"],
            description=data.get("description"),
            required_tags=data.get("required_tags"),
        )
        session.add(run_type)
        session.commit()
        logger.info("Created run type %s", run_type.name)
        return run_type
    finally:
        session.close()


def update_run_type(run_type_id: int, data: Dict[str, Any]) -> RunType | None:
    session = get_session()
    try:
        run_type = session.get(RunType, run_type_id)
        if run_type is None:
            return None
        for field in ("name", "description", "required_tags"):
            if field in data:
                setattr(run_type, field, data[field])
        session.commit()
        return run_type
    finally:
        session.close()


def delete_run_type(run_type_id: int) -> bool:
    """Delete a run type together with its template links and parameter defaults."""
    session = get_session()
    try:
        run_type = session.get(RunType, run_type_id)
        if run_type is None:
            return False
        session.query(RunTypeParameterDefault).filter(RunTypeParameterDefault.run_type_id == run_type_id).delete()
        session.query(TemplateRunType).filter(TemplateRunType.run_type_id == run_type_id).delete()
        session.delete(run_type)
        session.commit()
        logger.info("Deleted run type %s", run_type_id)
        return True
    finally:
        session.close()


def set_run_type_templates(run_type_id: int, template_ids: List[int]) -> bool:
    """Replace the templates associated with a run type."""
    session = get_session()
    try:
        if session.get(RunType, run_type_id) is None:
            return False
        session.query(TemplateRunType).filter(TemplateRunType.run_type_id == run_type_id).delete()
        for template_id in dict.fromkeys(template_ids):
            session.add(TemplateRunType(template_id=template_id, run_type_id=run_type_id))
        session.commit()
        return True
    finally:
        session.close()


def get_run_type_templates(run_type_id: int, template_type: str | None = None) -> List[Template]:
    session = get_session()
    try:
        query = (
            session.query(Template)
            .join(TemplateRunType, TemplateRunType.template_id == Template.id)
            .filter(TemplateRunType.run_type_id == run_type_id)
        )
        if template_type:
            query = query.filter(Template.type == template_type)
        return query.order_by(Template.id).all()
    finally:
        session.close()


def get_aggregated_parameters(run_type_id: int) -> List[Dict[str, Any]]:
    """
    Parameters of every template associated with a run type, deduplicated by
    name (first one wins), each with the run type's default if one is set.
    """
    session = get_session()
    try:
        params = (
            session.query(TemplateParameter)
            .join(TemplateRunType, TemplateRunType.template_id == TemplateParameter.template_id)
            .filter(TemplateRunType.run_type_id == run_type_id)
            .order_by(TemplateParameter.id)
            .all()
        )
        defaults = {
            row.parameter_id: row.default_value
            for row in session.query(RunTypeParameterDefault)
            .filter(RunTypeParameterDefault.run_type_id == run_type_id)
            .all()
        }

        unique: Dict[str, Dict[str, Any]] = {}
        for param in params:
            if param.name not in unique:
                unique[param.name] = {**as_dict(param), "run_type_default": defaults.get(param.id)}
        return list(unique.values())
    finally:
        session.close()


def set_run_type_parameter_default(run_type_id: int, parameter_id: int, default_value: Optional[str]) -> None:
    """Set (or with None, remove) a run type's default for a parameter."""
    session = get_session()
    try:
        existing = (
            session.query(RunTypeParameterDefault)
            .filter(RunTypeParameterDefault.run_type_id == run_type_id)
            .filter(RunTypeParameterDefault.parameter_id == parameter_id)
            .first()
        )
        if default_value is None:
            if existing is not None:
                session.delete(existing)
        elif existing is not None:
            existing.default_value = default_value
        else:
            session.add(
                RunTypeParameterDefault(run_type_id=run_type_id, parameter_id=parameter_id, default_value=default_value)
            )
        session.commit()
    finally:
        session.close()


def client_has_required_tags(required_tags: Optional[List[str]], client_tags: Iterable[str]) -> bool:
    """A client is eligible for a run type when it carries every required tag."""
    if not required_tags:
        return True
    tags = set(client_tags)
    return all(tag in tags for tag in required_tags)


def get_run_type_parameter_defaults(run_type_id: int | None) -> Dict[int, str]:
    """Run type defaults keyed by parameter id."""
    if run_type_id is None:
        return {}
    session = get_session()
    try:
        return {
            row.parameter_id: row.default_value
            for row in session.query(RunTypeParameterDefault)
            .filter(RunTypeParameterDefault.run_type_id == run_type_id)
            .all()
        }
    finally:
        session.close()


def resolve_parameter_values(
    params: Iterable[TemplateParameter],
    explicit: Optional[Dict[str, Any]] = None,
    run_type_defaults: Optional[Dict[int, str]] = None,
) -> Dict[int, str]:
    """
    Pick a value for each parameter: explicit value (by name), then the run
    type's default, then the template default.

    Raises TemplateValidationError naming every required parameter left
    without a value.
    """
    explicit = explicit or {}
    run_type_defaults = run_type_defaults or {}

    values: Dict[int, str] = {}
    missing: List[str] = []
    for param in params:
        value = explicit.get(param.name)
        if value is None or value == "":
            value = run_type_defaults.get(param.id)
        if value is None or value == "":
            value = param.default_value
        if value is None or value == "":
            if param.required:
                missing.append(param.name)
            continue
        values[param.id] = to_text(value)

    if missing:
        raise TemplateValidationError(f"Missing required parameters: {', '.join(missing)}")
    return values
