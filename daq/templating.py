# daq/templating.py
"""
Placeholder rendering for message payloads, run configs and webhook bodies.

Text is split once into literal and ``{NAME}`` placeholder tokens; rendering
walks the token list, so values are never re-scanned or regex-escaped.
"""
from __future__ import annotations

import json
import re
from typing import Any, List, Mapping, NamedTuple, Union

_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_]*)\}")


class Literal(NamedTuple):
    text: str


class Placeholder(NamedTuple):
    name: str

    @property
    def raw(self) -> str:
        return "{" + self.name + "}"


Token = Union[Literal, Placeholder]


def tokenize(text: str) -> List[Token]:
    """Split text into literal and placeholder tokens."""
    tokens: List[Token] = []
    pos = 0
    for match in _PLACEHOLDER_RE.finditer(text):
        if match.start() > pos:
            tokens.append(Literal(text[pos : match.start()]))
        tokens.append(Placeholder(match.group(1)))
        pos = match.end()
    if pos < len(text):
        tokens.append(Literal(text[pos:]))
    return tokens


def to_text(value: Any) -> str:
    """Inline representation of a substituted value."""
    if isinstance(value, str):
        return value
    if value is None or isinstance(value, (bool, dict, list, tuple)):
        return json.dumps(value)
    return str(value)


def render_text(text: str, variables: Mapping[str, Any]) -> str:
    """Substitute every known placeholder textually; unknown ones are kept verbatim."""
    parts = []
    for token in tokenize(text):
        if isinstance(token, Placeholder):
            parts.append(to_text(variables[token.name]) if token.name in variables else token.raw)
        else:
            parts.append(token.text)
    return "".join(parts)


def render_value(text: str, variables: Mapping[str, Any]) -> Any:
    """
    Render a single string field.

    A field consisting of exactly one known placeholder yields the raw typed
    value (e.g. ``"{parameterValues}"`` → a dict); anything else is rendered
    textually.
    """
    tokens = tokenize(text)
    if len(tokens) == 1 and isinstance(tokens[0], Placeholder) and tokens[0].name in variables:
        return variables[tokens[0].name]
    return render_text(text, variables)


def render_structure(template: Any, variables: Mapping[str, Any]) -> Any:
    """Recursively render a parsed JSON template."""
    if isinstance(template, str):
        return render_value(template, variables)
    if isinstance(template, list):
        return [render_structure(item, variables) for item in template]
    if isinstance(template, dict):
        return {key: render_structure(value, variables) for key, value in template.items()}
    return template


def replace_parameters(text: str, values: Mapping[str, Any]) -> str:
    """Fill ``{PARAM}`` placeholders; parameter names are matched upper-cased."""
    upper = {name.upper(): value for name, value in values.items() if value is not None}
    return render_text(text, upper)
