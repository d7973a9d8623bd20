"""A small text-template renderer for query files and parameters."""

from __future__ import annotations

import json
import re
from collections.abc import Callable, Mapping
from typing import Any, Optional

_ACTION = re.compile(r"\{\{(-\s)?(.*?)(\s-)?\}\}", re.S)
_WORD = re.compile(r'"(?:[^"\\]|\\.)*"|`[^`]*`|\S+')
_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_]*\Z")
_LITERALS = {"true": True, "false": False, "nil": None}
_MISSING = object()

Funcs = Mapping[str, Callable[..., Any]]


class TemplateError(ValueError):
    """Raised when a template cannot be parsed or executed."""


def _format(value: Any) -> str:
    if value is _MISSING:
        return "<no value>"
    if value is None:
        return "<nil>"
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def _field(path: str, params: Any) -> Any:
    value = params
    if path == ".":
        return value
    for part in path[1:].split("."):
        if not part:
            raise TemplateError(f"bad field reference {path!r}")
        if not isinstance(value, Mapping):
            raise TemplateError(f"can't evaluate field {part} in {path!r}")
        value = value.get(part, _MISSING)
    return value


def _call(name: str, args: list[Any], funcs: Funcs) -> Any:
    if name not in funcs:
        raise TemplateError(f'function "{name}" not defined')
    try:
        return funcs[name](*args)
    except TemplateError:
        raise
    except Exception as exc:
        raise TemplateError(f"error calling {name}: {exc}") from exc


def _argument(word: str, params: Any, funcs: Funcs) -> Any:
    if word.startswith('"'):
        try:
            return json.loads(word)
        except json.JSONDecodeError as exc:
            raise TemplateError(f"bad string literal {word}") from exc
    if word.startswith("`"):
        return word[1:-1]
    if word.startswith("."):
        return _field(word, params)
    if word in _LITERALS:
        return _LITERALS[word]
    for convert in (int, float):
        try:
            return convert(word)
        except ValueError:
            pass
    if _IDENT.match(word):
        return _call(word, [], funcs)
    raise TemplateError(f"unexpected {word!r} in action")


def _evaluate(body: str, params: Any, funcs: Funcs) -> str:
    body = body.strip()
    if body.startswith("/*") and body.endswith("*/"):
        return ""
    if "{{" in body:
        raise TemplateError("unclosed action")
    words = _WORD.findall(body)
    if not words:
        raise TemplateError("missing value for command")
    head, rest = words[0], words[1:]
    if _IDENT.match(head) and head not in _LITERALS:
        return _format(_call(head, [_argument(w, params, funcs) for w in rest], funcs))
    if rest:
        raise TemplateError(f"can't give argument to non-function {head}")
    return _format(_argument(head, params, funcs))


def render_template(raw: str, params: Any, funcs: Optional[Funcs] = None) -> str:
    """Render ``raw`` against ``params``, with optional template functions."""
    funcs = dict(funcs or {})
    pieces: list[str] = []
    pos = 0
    trim_next = False
    for match in _ACTION.finditer(raw):
        text = raw[pos:match.start()]
        if trim_next:
            text = text.lstrip()
        if match.group(1):
            text = text.rstrip()
        pieces += [text, _evaluate(match.group(2), params, funcs)]
        trim_next = bool(match.group(3))
        pos = match.end()
    tail = raw[pos:]
    if "{{" in tail:
        raise TemplateError("unclosed action")
    pieces.append(tail.lstrip() if trim_next else tail)
    return "".join(pieces)


def render_string_template(raw: str, params: Any) -> str:
    """Render ``raw`` against ``params`` with no template functions."""
    return render_template(raw, params, None)