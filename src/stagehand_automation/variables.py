from __future__ import annotations

import json
import re
import shlex
from pathlib import Path
from typing import Any, Iterable, Optional

import jinja2
import yaml

from .errors import VarsError
from .types import HostConfig

_ENV = jinja2.Environment(undefined=jinja2.StrictUndefined, autoescape=False, keep_trailing_newline=True)
_JINJA_RE = re.compile(r"{[{%]")
_BARE_VAR_RE = re.compile(r"^\{\{\s*([A-Za-z_][A-Za-z0-9_.]*)\s*\}\}$")


def parse_extra_vars(values: Optional[Iterable[str]]) -> dict[str, Any]:
    """Merge ``-e`` values; later values override earlier ones."""

    result: dict[str, Any] = {}
    for raw in values or []:
        text = raw.strip()
        if not text:
            continue
        if text.startswith("@"):
            result.update(_load_vars_file(Path(text[1:]).expanduser()))
        elif text.startswith("{"):
            result.update(_load_mapping(text, "extra vars"))
        else:
            result.update(parse_kv(text))
    return result


def parse_kv(text: str) -> dict[str, Any]:
    """Parse ``key=value key2='quoted value'`` strings."""

    try:
        tokens = shlex.split(text)
    except ValueError as exc:
        raise VarsError(f"unable to parse '{text}': {exc}") from None
    values: dict[str, Any] = {}
    for token in tokens:
        key, sep, value = token.partition("=")
        if not sep or not key:
            raise VarsError(f"expected key=value, got '{token}'")
        values[key] = value
    return values


def _load_vars_file(path: Path) -> dict[str, Any]:
    try:
        text = path.read_text()
    except OSError as exc:
        raise VarsError(f"unable to read vars file {path}: {exc.strerror}") from None
    return _load_mapping(text, str(path))


def _load_mapping(text: str, source: str) -> dict[str, Any]:
    try:
        data = json.loads(text)
    except ValueError:
        try:
            data = yaml.safe_load(text)
        except yaml.YAMLError as exc:
            raise VarsError(f"{source}: {exc}") from None
    if data is None:
        return {}
    if not isinstance(data, dict):
        raise VarsError(f"{source}: variables must be a mapping")
    return data


def host_context(host: HostConfig, play_vars: dict[str, Any], extra_vars: dict[str, Any]) -> dict[str, Any]:
    context: dict[str, Any] = dict(host.variables)
    context.update(play_vars)
    context.update(extra_vars)
    context["inventory_hostname"] = host.name
    context["group_names"] = sorted(g for g in host.groups if g not in ("all", "ungrouped"))
    return context


def template(value: Any, context: dict[str, Any]) -> Any:
    if isinstance(value, str):
        return _render(value, context)
    if isinstance(value, dict):
        return {k: template(v, context) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [template(v, context) for v in value]
    return value


def _render(text: str, context: dict[str, Any]) -> Any:
    if not _JINJA_RE.search(text):
        return text
    try:
        bare = _BARE_VAR_RE.match(text)
        if bare:
            # A lone variable reference keeps its native type.
            value = _ENV.compile_expression(bare.group(1), undefined_to_none=False)(**context)
            if isinstance(value, jinja2.Undefined):
                raise VarsError(f"undefined variable while templating '{text}': '{bare.group(1)}' is undefined")
            return value
        return _ENV.from_string(text).render(**context)
    except jinja2.UndefinedError as exc:
        raise VarsError(f"undefined variable while templating '{text}': {exc.message}") from None
    except jinja2.TemplateError as exc:
        raise VarsError(f"unable to template '{text}': {exc}") from None


def evaluate_when(expression: Any, context: dict[str, Any]) -> bool:
    if isinstance(expression, bool):
        return expression
    text = str(expression).strip()
    if _JINJA_RE.search(text):
        text = text.replace("{{", "").replace("}}", "").strip()
    try:
        return bool(_ENV.compile_expression(text, undefined_to_none=False)(**context))
    except jinja2.UndefinedError as exc:
        raise VarsError(f"undefined variable in condition '{expression}': {exc.message}") from None
    except jinja2.TemplateError as exc:
        raise VarsError(f"unable to evaluate condition '{expression}': {exc}") from None
