"""
Text substitution helpers.

Two token styles are in use:
  {{name}}  flow variables, substituted at template instantiation and by the graph executor
  {name}    live booking values (selected service, dates, payment link) filled by the renderer

Unmatched tokens are always left in place.
"""
from __future__ import annotations

import re
from typing import Any, Mapping

_DOUBLE_BRACE = re.compile(r"\{\{\s*(\w+)\s*\}\}")
_SINGLE_BRACE = re.compile(r"(?<!\{)\{(\w+)\}(?!\})")


def stringify(value: Any) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def substitute_tokens(text: str, values: Mapping[str, Any]) -> str:
    """Replace every {{key}} whose key is present (and not None) in values."""
    if not text:
        return text

    def replacer(match):
        key = match.group(1)
        if key in values and values[key] is not None:
            return stringify(values[key])
        return match.group(0)

    return _DOUBLE_BRACE.sub(replacer, text)


def fill_placeholders(text: str, values: Mapping[str, Any]) -> str:
    """Replace every single-brace {key} present in values, ignoring {{double}} tokens."""
    if not text:
        return text

    def replacer(match):
        key = match.group(1)
        if key in values and values[key] is not None:
            return stringify(values[key])
        return match.group(0)

    return _SINGLE_BRACE.sub(replacer, text)


def find_tokens(text: str) -> list[str]:
    """Names of all {{tokens}} in text, in order of appearance."""
    return _DOUBLE_BRACE.findall(text or "")
