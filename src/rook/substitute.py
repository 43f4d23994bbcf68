"""Variable substitution over a scope chain.

Three forms are recognised in parameter values:

- ``"{{ name }}"`` or ``"{{ app.port }}"`` as the whole value: replaced by
  the bound value itself, keeping its type (lists stay lists).
- Any other string containing template markup: rendered with Jinja2 using
  only the variables the template references.
- ``VarRef`` objects from ``rook.refs``.

Lists and mappings are substituted element-wise. A name that no layer of
the chain binds is an error, never an empty string.
"""

import re
from functools import lru_cache
from typing import Any, Mapping

import jinja2
from jinja2 import Environment, StrictUndefined, TemplateSyntaxError, UndefinedError, meta

from rook.refs import VarRef, get_nested_value
from rook.scope import ScopeChain

_WHOLE_REFERENCE = re.compile(r"^\{\{\s*([A-Za-z_]\w*(?:\.[A-Za-z_]\w*)*)\s*\}\}$")


class SubstitutionError(Exception):
    """Base class for substitution failures."""


class UnresolvedVariable(SubstitutionError):
    """Raised when a referenced variable has no binding."""

    def __init__(self, name: str) -> None:
        super().__init__(f"Undefined variable '{name}'")
        self.name = name


class TemplateError(SubstitutionError):
    """Raised when a string cannot be parsed or rendered as a template."""


@lru_cache(maxsize=1)
def _environment() -> Environment:
    return Environment(undefined=StrictUndefined, keep_trailing_newline=True, autoescape=False)


def has_markup(value: str) -> bool:
    return "{{" in value or "{%" in value


def resolve_path(chain: ScopeChain, path: tuple[str, ...] | list[str]) -> Any:
    """Look up a dotted variable path in the chain."""
    head, *rest = path
    try:
        value = chain.lookup(head)
    except KeyError:
        raise UnresolvedVariable(head) from None
    if not rest:
        return value
    try:
        return get_nested_value(value, rest)
    except KeyError:
        raise UnresolvedVariable(".".join(path)) from None


def render(template: str, chain: ScopeChain) -> str:
    env = _environment()
    try:
        parsed = env.parse(template)
        compiled = env.from_string(template)
    except TemplateSyntaxError as e:
        raise TemplateError(f"Invalid template {template!r}: {e.message}") from e
    except jinja2.TemplateError as e:
        raise TemplateError(f"Invalid template {template!r}: {e}") from e

    names = sorted(n for n in meta.find_undeclared_variables(parsed) if n not in env.globals)
    for name in names:
        if name not in chain:
            raise UnresolvedVariable(name)

    context = {name: chain.lookup(name) for name in names}
    try:
        return compiled.render(context)
    except UndefinedError as e:
        raise UnresolvedVariable(_undefined_name(e, template)) from e
    except (jinja2.TemplateError, TypeError, ValueError) as e:
        raise TemplateError(f"Cannot render {template!r}: {e}") from e


def _undefined_name(error: UndefinedError, template: str) -> str:
    # jinja reports "'dict object' has no attribute 'port'"
    match = re.search(r"attribute '([^']+)'", error.message or "")
    if match:
        return match.group(1)
    return error.message or template


def substitute(value: Any, chain: ScopeChain) -> Any:
    """Return value with every variable reference replaced.

    Raises:
        UnresolvedVariable: If a referenced name is not bound
        TemplateError: If a string is not a valid template
    """
    if isinstance(value, VarRef):
        return resolve_path(chain, value.path)
    if isinstance(value, str):
        if not has_markup(value):
            return value
        match = _WHOLE_REFERENCE.match(value)
        if match:
            return resolve_path(chain, match.group(1).split("."))
        return render(value, chain)
    if isinstance(value, Mapping):
        return {key: substitute(item, chain) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [substitute(item, chain) for item in value]
    return value
