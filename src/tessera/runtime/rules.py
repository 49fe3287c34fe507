"""
Pipe-delimited field rules.

Rule strings look like ``"required|string|max:255"``. This module parses them
once into Rule tuples and evaluates a field value against them, producing
human-readable messages. Messages use ``:attribute`` style placeholders so
custom messages from a registry file can reuse them.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from datetime import date, datetime
from typing import Any
from urllib.parse import urlparse
from uuid import UUID

from tessera.runtime.errors import ConfigurationError

RULE_SEPARATOR = "|"

_EMAIL = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")
_INTEGER = re.compile(r"^-?\d+$")

# Rules that change how other rules run rather than checking the value.
MODIFIERS = frozenset({"required", "nullable", "sometimes", "present", "filled"})


@dataclass(frozen=True)
class Rule:
    """One parsed rule, e.g. ``max:255`` -> Rule("max", ("255",))."""

    name: str
    args: tuple[str, ...] = ()

    def __str__(self) -> str:
        return f"{self.name}:{','.join(self.args)}" if self.args else self.name


def parse_rule_string(rule_string: str) -> tuple[Rule, ...]:
    """
    Parse a rule string into rules.

    Raises:
        ConfigurationError: If a rule name is unknown or its arguments are missing
    """
    rules: list[Rule] = []
    for token in rule_string.split(RULE_SEPARATOR):
        token = token.strip()
        if not token:
            continue
        name, _, raw_args = token.partition(":")
        name = name.strip()
        if name not in KNOWN_RULES:
            raise ConfigurationError(f"Unknown validation rule '{name}' in '{rule_string}'")
        # regex patterns may contain commas
        if name == "regex":
            args: tuple[str, ...] = (raw_args,) if raw_args else ()
        else:
            args = tuple(a.strip() for a in raw_args.split(",")) if raw_args else ()
        if len(args) < _ARITY.get(name, 0):
            raise ConfigurationError(f"Rule '{name}' needs {_ARITY[name]} argument(s)")
        if name in _SIZED_MESSAGES and not all(_is_numeric(a) for a in args):
            raise ConfigurationError(f"Rule '{token}' needs numeric arguments")
        rules.append(Rule(name, args))
    return tuple(rules)


# =============================================================================
# Value Checks
# =============================================================================


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str) and value.strip() == "":
        return True
    if isinstance(value, (list, dict)) and not value:
        return True
    return False


def _is_integer(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, int):
        return True
    if isinstance(value, float):
        return value.is_integer()
    return isinstance(value, str) and bool(_INTEGER.match(value.strip()))


def _is_numeric(value: Any) -> bool:
    if isinstance(value, bool):
        return False
    if isinstance(value, (int, float)):
        return True
    if isinstance(value, str):
        try:
            float(value)
        except ValueError:
            return False
        return True
    return False


def _is_boolean(value: Any) -> bool:
    return value in (True, False, 0, 1, "0", "1", "true", "false")


def _is_date(value: Any) -> bool:
    if isinstance(value, (date, datetime)):
        return True
    if not isinstance(value, str):
        return False
    for parse in (datetime.fromisoformat, date.fromisoformat):
        try:
            parse(value)
        except ValueError:
            continue
        return True
    return False


def _is_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _is_uuid(value: Any) -> bool:
    try:
        UUID(str(value))
    except ValueError:
        return False
    return True


def _size_kind(value: Any, rules: tuple[Rule, ...]) -> str:
    """Decide how min/max/size/between measure a value."""
    numeric = any(r.name in ("integer", "numeric") for r in rules)
    if numeric and _is_numeric(value):
        return "numeric"
    if isinstance(value, (list, dict)):
        return "array"
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        return "numeric"
    return "string"


def _measure(value: Any, kind: str) -> float:
    if kind == "numeric":
        return float(value)
    if kind == "array":
        return float(len(value))
    return float(len(str(value)))


CheckFn = Callable[[Any, tuple[str, ...], str, Mapping[str, Any], str], bool]


def _check_in(value: Any, args: tuple[str, ...], *_: Any) -> bool:
    return str(value) in args


def _check_min(value: Any, args: tuple[str, ...], kind: str, *_: Any) -> bool:
    return _measure(value, kind) >= float(args[0])


def _check_max(value: Any, args: tuple[str, ...], kind: str, *_: Any) -> bool:
    return _measure(value, kind) <= float(args[0])


def _check_between(value: Any, args: tuple[str, ...], kind: str, *_: Any) -> bool:
    return float(args[0]) <= _measure(value, kind) <= float(args[1])


def _check_size(value: Any, args: tuple[str, ...], kind: str, *_: Any) -> bool:
    return _measure(value, kind) == float(args[0])


def _check_regex(value: Any, args: tuple[str, ...], *_: Any) -> bool:
    pattern = args[0]
    # Accept delimited patterns: /pattern/
    if len(pattern) >= 2 and pattern[0] == "/" and pattern.rfind("/") > 0:
        pattern = pattern[1 : pattern.rfind("/")]
    return isinstance(value, str) and re.search(pattern, value) is not None


def _check_confirmed(
    value: Any, args: tuple[str, ...], kind: str, data: Mapping[str, Any], field: str
) -> bool:
    return data.get(f"{field}_confirmation") == value


_CHECKS: dict[str, CheckFn] = {
    "string": lambda v, *_: isinstance(v, str),
    "integer": lambda v, *_: _is_integer(v),
    "numeric": lambda v, *_: _is_numeric(v),
    "boolean": lambda v, *_: _is_boolean(v),
    "array": lambda v, *_: isinstance(v, (list, dict)),
    "email": lambda v, *_: isinstance(v, str) and bool(_EMAIL.match(v)),
    "url": lambda v, *_: _is_url(v),
    "uuid": lambda v, *_: _is_uuid(v),
    "date": lambda v, *_: _is_date(v),
    "in": _check_in,
    "not_in": lambda v, args, *rest: not _check_in(v, args, *rest),
    "min": _check_min,
    "max": _check_max,
    "between": _check_between,
    "size": _check_size,
    "regex": _check_regex,
    "confirmed": _check_confirmed,
}

_ARITY: dict[str, int] = {
    "in": 1,
    "not_in": 1,
    "min": 1,
    "max": 1,
    "between": 2,
    "size": 1,
    "regex": 1,
}

KNOWN_RULES = frozenset(MODIFIERS | _CHECKS.keys())


# =============================================================================
# Messages
# =============================================================================

_MESSAGES: dict[str, str] = {
    "required": "The :attribute field is required.",
    "present": "The :attribute field must be present.",
    "filled": "The :attribute field must have a value.",
    "string": "The :attribute field must be a string.",
    "integer": "The :attribute field must be an integer.",
    "numeric": "The :attribute field must be a number.",
    "boolean": "The :attribute field must be true or false.",
    "array": "The :attribute field must be an array.",
    "email": "The :attribute field must be a valid email address.",
    "url": "The :attribute field must be a valid URL.",
    "uuid": "The :attribute field must be a valid UUID.",
    "date": "The :attribute field must be a valid date.",
    "in": "The selected :attribute is invalid.",
    "not_in": "The selected :attribute is invalid.",
    "regex": "The :attribute field format is invalid.",
    "confirmed": "The :attribute field confirmation does not match.",
}

_SIZED_MESSAGES: dict[str, dict[str, str]] = {
    "min": {
        "string": "The :attribute field must be at least :min characters.",
        "numeric": "The :attribute field must be at least :min.",
        "array": "The :attribute field must have at least :min items.",
    },
    "max": {
        "string": "The :attribute field must not be greater than :max characters.",
        "numeric": "The :attribute field must not be greater than :max.",
        "array": "The :attribute field must not have more than :max items.",
    },
    "between": {
        "string": "The :attribute field must be between :min and :max characters.",
        "numeric": "The :attribute field must be between :min and :max.",
        "array": "The :attribute field must have between :min and :max items.",
    },
    "size": {
        "string": "The :attribute field must be :size characters.",
        "numeric": "The :attribute field must be :size.",
        "array": "The :attribute field must contain :size items.",
    },
}


def _message(
    field: str,
    rule: Rule,
    kind: str,
    custom: Mapping[str, str],
) -> str:
    template = custom.get(f"{field}.{rule.name}") or custom.get(rule.name)
    if template is None:
        sized = _SIZED_MESSAGES.get(rule.name)
        template = sized[kind] if sized else _MESSAGES[rule.name]

    replacements = {":attribute": field.replace("_", " ")}
    if rule.name in ("min", "size") and rule.args:
        replacements[":min"] = rule.args[0]
        replacements[":size"] = rule.args[0]
    elif rule.name == "max" and rule.args:
        replacements[":max"] = rule.args[0]
    elif rule.name == "between" and len(rule.args) >= 2:
        replacements[":min"], replacements[":max"] = rule.args[0], rule.args[1]
    if rule.args:
        replacements[":values"] = ", ".join(rule.args)

    for placeholder, value in replacements.items():
        template = template.replace(placeholder, value)
    return template


# =============================================================================
# Evaluation
# =============================================================================


def check_field(
    field: str,
    rules: tuple[Rule, ...],
    data: Mapping[str, Any],
    custom_messages: Mapping[str, str] | None = None,
) -> list[str]:
    """
    Evaluate one field against its rules.

    Args:
        field: Field name
        rules: Parsed rules for the field
        data: Full payload (needed for ``confirmed``)
        custom_messages: Overrides keyed ``field.rule`` or ``rule``

    Returns:
        Error messages, empty when the field passes
    """
    custom = custom_messages or {}
    names = {r.name for r in rules}
    by_name = {r.name: r for r in rules}

    if field not in data:
        if "sometimes" in names:
            return []
        for presence in ("required", "present"):
            if presence in names:
                return [_message(field, by_name[presence], "string", custom)]
        return []

    value = data[field]
    if _is_empty(value):
        if "required" in names:
            return [_message(field, by_name["required"], "string", custom)]
        if "filled" in names:
            return [_message(field, by_name["filled"], "string", custom)]
        if value is None and "nullable" in names:
            return []

    errors: list[str] = []
    kind = _size_kind(value, rules)
    for rule in rules:
        if rule.name in MODIFIERS:
            continue
        if not _CHECKS[rule.name](value, rule.args, kind, data, field):
            errors.append(_message(field, rule, kind, custom))
    return errors
