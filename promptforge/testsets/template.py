"""Template Engine — {{variable}} detection and substitution.

Placeholder syntax is exactly two braces around an identifier:
  {{name}}     recognized
  {name}       ignored
  {{ name }}   ignored (interior whitespace)
  {{}}         ignored

render() is total: unmatched placeholders become empty strings and no input
raises.
"""

from __future__ import annotations

import re
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field

from promptforge.testsets.types import PromptTemplate, Variable

VARIABLE_PATTERN = re.compile(r"\{\{([A-Za-z_][A-Za-z0-9_]*)\}\}")
VARIABLE_NAME_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*$")


@dataclass
class DetectedVariable:
    name: str
    positions: list[tuple[int, int]] = field(default_factory=list)  # (start, end) str character offsets, not bytes


def detect_variables(text: str) -> list[DetectedVariable]:
    """Find every placeholder, coalescing repeated names in first-seen order."""
    if not text or not isinstance(text, str):
        return []

    found: dict[str, DetectedVariable] = {}
    for match in VARIABLE_PATTERN.finditer(text):
        name = match.group(1)
        entry = found.setdefault(name, DetectedVariable(name=name))
        entry.positions.append((match.start(), match.end()))
    return list(found.values())


def _as_mapping(variables: Iterable[Variable] | Mapping[str, str] | None) -> dict[str, str]:
    if not variables:
        return {}
    if isinstance(variables, Mapping):
        return {str(k): "" if v is None else str(v) for k, v in variables.items()}
    values: dict[str, str] = {}
    for variable in variables:
        if variable is not None and isinstance(variable.name, str):
            values[variable.name] = variable.value or ""
    return values


def render(template: str, variables: Iterable[Variable] | Mapping[str, str] | None = None) -> str:
    """Substitute placeholders with variable values; unknown names render as ""."""
    if not template or not isinstance(template, str):
        return template if isinstance(template, str) else ""

    values = _as_mapping(variables)
    return VARIABLE_PATTERN.sub(lambda m: values.get(m.group(1), ""), template)


def is_valid_variable_name(name: str) -> bool:
    if not name or not isinstance(name, str):
        return False
    return VARIABLE_NAME_PATTERN.fullmatch(name) is not None


def sanitize_variable_name(name: str) -> str:
    """Strip disallowed characters and prefix "_" if the result starts with a digit."""
    if not name or not isinstance(name, str):
        return ""
    sanitized = re.sub(r"[^A-Za-z0-9_]", "", name)
    if sanitized and not re.match(r"^[A-Za-z_]", sanitized):
        sanitized = "_" + sanitized
    return sanitized


def extract_variable_names(text: str) -> list[str]:
    return [v.name for v in detect_variables(text)]


def has_variables(text: str) -> bool:
    if not text or not isinstance(text, str):
        return False
    return VARIABLE_PATTERN.search(text) is not None


def extract_variables_from_prompts(prompts: Iterable[PromptTemplate]) -> list[str]:
    """Union of variable names across a version's prompts, first-seen order."""
    names: dict[str, None] = {}
    for prompt in prompts or []:
        for name in extract_variable_names(prompt.content):
            names.setdefault(name, None)
    return list(names)
