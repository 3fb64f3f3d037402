from __future__ import annotations

from functools import lru_cache
from typing import Any, Mapping

from jinja2 import Environment, StrictUndefined, Template, TemplateError, TemplateSyntaxError, UndefinedError

from .exceptions import InvocationError, InvocationErrorKind

_environment = Environment(
    undefined=StrictUndefined,
    autoescape=False,
    keep_trailing_newline=True,
    trim_blocks=True,
    lstrip_blocks=True,
)


@lru_cache(maxsize=256)
def _compile(source: str) -> Template:
    return _environment.from_string(source)


def render_template(template: str, parameters: Mapping[str, Any], *, tool_id: str | None = None) -> str:
    """Render ``template`` with ``parameters``.

    Placeholders that are referenced but not supplied fail with ``MISSING_PARAMETER``;
    optional sections can guard themselves with ``{% if name is defined %}``. Any other
    render failure, such as an expression applied to a value of the wrong type, is
    ``MALFORMED_TEMPLATE``.
    """
    try:
        compiled = _compile(template)
    except TemplateSyntaxError as exc:
        raise InvocationError(
            InvocationErrorKind.MALFORMED_TEMPLATE,
            f"Template is malformed at line {exc.lineno}: {exc.message}",
            tool_id=tool_id,
        ) from exc
    try:
        return compiled.render(**dict(parameters))
    except UndefinedError as exc:
        raise InvocationError(
            InvocationErrorKind.MISSING_PARAMETER,
            f"Template parameter unresolved: {exc.message}",
            tool_id=tool_id,
        ) from exc
    except (TemplateError, ArithmeticError, TypeError, ValueError) as exc:
        raise InvocationError(
            InvocationErrorKind.MALFORMED_TEMPLATE,
            f"Template failed to render: {exc}",
            tool_id=tool_id,
        ) from exc
