"""Execution context: the variable bag of one run, and template rendering."""

import copy
import json
import re
from functools import lru_cache
from typing import Any, Dict, Optional

from jinja2 import ChainableUndefined, TemplateError, Undefined
from jinja2.sandbox import SandboxedEnvironment

from .logging import get_logger

logger = get_logger(__name__)

_MISSING = object()


def _finalize(value: Any) -> Any:
    if value is None or isinstance(value, Undefined):
        return ""
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str, ensure_ascii=False)
    if isinstance(value, bool):
        return "true" if value else "false"
    return value


_environment = SandboxedEnvironment(
    undefined=ChainableUndefined,
    finalize=_finalize,
    autoescape=False,
    keep_trailing_newline=True,
)


_PLACEHOLDER = re.compile(r"\{\{(.+?)\}\}", re.DOTALL)


@lru_cache(maxsize=512)
def _compile(text: str):
    return _environment.from_string(text)


def lookup(data: Any, path: str, default: Any = None) -> Any:
    """Read ``lead.name`` style paths through nested maps and lists."""
    if not path:
        return default
    current = data
    for part in path.strip().split("."):
        if isinstance(current, dict):
            current = current.get(part, _MISSING)
        elif isinstance(current, list) and part.lstrip("-").isdigit():
            index = int(part)
            current = current[index] if -len(current) <= index < len(current) else _MISSING
        else:
            current = _MISSING
        if current is _MISSING:
            return default
    return current


def _render_placeholder(match: "re.Match", variables: Dict[str, Any]) -> str:
    expression = match.group(1).strip()
    try:
        return _compile("{{ " + expression + " }}").render(variables)
    except TemplateError:
        # Names Jinja cannot parse, e.g. ``codigo-promo`` or ``2fa``, are plain lookups.
        return str(_finalize(lookup(variables, expression)))


def render_template(text: str, variables: Dict[str, Any]) -> str:
    """Render ``{{ var }}`` placeholders; missing variables become empty strings.

    When the text as a whole does not render, each placeholder is rendered
    on its own so one bad placeholder only blanks itself.
    """
    if "{{" not in text and "{%" not in text:
        return text
    try:
        return _compile(text).render(variables)
    except TemplateError as e:
        logger.debug(f"Rendering placeholders one by one: {e}")
    return _PLACEHOLDER.sub(lambda match: _render_placeholder(match, variables), text)


class ExecutionContext:
    """Mutable variables of a run with dotted-path access."""

    def __init__(self, data: Optional[Dict[str, Any]] = None):
        self._data: Dict[str, Any] = copy.deepcopy(data) if data else {}

    def get(self, path: str, default: Any = None) -> Any:
        """Read ``lead.name`` style paths through nested maps and lists."""
        return lookup(self._data, path, default)

    def set(self, path: str, value: Any) -> None:
        """Write a value; intermediate maps are created for dotted paths."""
        parts = path.strip().split(".")
        target = self._data
        for part in parts[:-1]:
            child = target.get(part)
            if not isinstance(child, dict):
                child = {}
                target[part] = child
            target = child
        target[parts[-1]] = value

    def __contains__(self, path: str) -> bool:
        return self.get(path, _MISSING) is not _MISSING

    def render(self, text: str) -> str:
        return render_template(text, self._data)

    def render_value(self, value: Any) -> Any:
        """Render every string inside ``value``, recursing into maps and lists."""
        if isinstance(value, str):
            return self.render(value)
        if isinstance(value, dict):
            return {key: self.render_value(item) for key, item in value.items()}
        if isinstance(value, list):
            return [self.render_value(item) for item in value]
        return value

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self._data)
