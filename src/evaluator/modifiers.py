from __future__ import annotations

import base64
import logging
from types import MappingProxyType
from typing import Any, Callable, List, Mapping, Optional, Tuple

from evaluator.errors import InvalidModifierOrderError, UnknownModifierError

logger = logging.getLogger(__name__)

ComparatorFunc = Callable[[Any, Any], str]
ValueModifier = Callable[[Any], Any]

# Field name used for regex/cidr/compare stages that have no field of their own.
RAW_FIELD = "_raw"


def coerce_string(value: Any) -> str:
    if isinstance(value, str):
        return value
    if isinstance(value, (bytes, bytearray)):
        # Latin-1 maps every byte to exactly one code point.
        return bytes(value).decode("latin-1")
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    return str(value)


def escape_backslashes(value: str) -> str:
    """Double every backslash so the value can sit inside a quoted literal."""
    return value.replace("\\", "\\\\")


def _field_name(field: Any) -> str:
    if field is None:
        return RAW_FIELD
    return coerce_string(field).lower()


def _wildcard_comparator(pattern: str, case_sensitive: bool) -> ComparatorFunc:
    """
    Builds an inline `field="..."` comparator. `pattern` places the escaped
    value between the backend wildcard markers, e.g. "*{}*" for contains.
    Field-less (keyword) values are emitted as a bare quoted term.
    """
    def compare(field: Any, value: Any) -> str:
        text = escape_backslashes(coerce_string(value))
        if not case_sensitive:
            text = text.lower()
        term = pattern.format(text)
        if field is None:
            return f'"{term}"'
        return f'{_field_name(field)}="{term}"'

    return compare


def _equals_comparator(case_sensitive: bool) -> ComparatorFunc:
    exact = _wildcard_comparator("{}", case_sensitive)

    def compare(field: Any, value: Any) -> str:
        if field is None and coerce_string(value) == "null":
            # Absent field tested against null: nothing to constrain.
            return ""
        return exact(field, value)

    return compare


def _regex(field: Any, value: Any) -> str:
    return f' | regex {_field_name(field)}="{escape_backslashes(coerce_string(value))}"'


def _cidr(field: Any, value: Any) -> str:
    return f'{_field_name(field)}="{coerce_string(value)}"'


def _compare_comparator(operator: str) -> ComparatorFunc:
    def compare(field: Any, value: Any) -> str:
        return f'{_field_name(field)} {operator} "{coerce_string(value)}"'

    return compare


def _base64(value: Any) -> str:
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        raw = coerce_string(value).encode("utf-8")
    return base64.b64encode(raw).decode("ascii")


def _wide(value: Any) -> bytes:
    return coerce_string(value).encode("utf-16-le")


def _comparator_table(case_sensitive: bool) -> Mapping[str, ComparatorFunc]:
    return MappingProxyType({
        "contains": _wildcard_comparator("*{}*", case_sensitive),
        "endswith": _wildcard_comparator("*{}", case_sensitive),
        "startswith": _wildcard_comparator("{}*", case_sensitive),
        "re": _regex,
        "cidr": _cidr,
        "gt": _compare_comparator(">"),
        "gte": _compare_comparator(">="),
        "lt": _compare_comparator("<"),
        "lte": _compare_comparator("<="),
    })


COMPARATORS: Mapping[str, ComparatorFunc] = _comparator_table(case_sensitive=False)
COMPARATORS_CASE_SENSITIVE: Mapping[str, ComparatorFunc] = _comparator_table(case_sensitive=True)

DEFAULT_COMPARATOR: ComparatorFunc = _equals_comparator(case_sensitive=False)
DEFAULT_COMPARATOR_CASE_SENSITIVE: ComparatorFunc = _equals_comparator(case_sensitive=True)

VALUE_MODIFIERS: Mapping[str, ValueModifier] = MappingProxyType({
    "base64": _base64,
    "wide": _wide,
})


def is_regex_chain(modifiers: Tuple[str, ...]) -> bool:
    """True when the chain ends in the `re` comparator (a pipeline stage, not a predicate)."""
    return bool(modifiers) and modifiers[-1] == "re"


def get_comparator(*modifiers: str, case_sensitive: bool = False) -> ComparatorFunc:
    """
    Resolves a modifier chain into a single (field, value) -> text function.

    A valid chain is ([value modifier]*)[comparator]?: value modifiers are
    applied left to right, then the comparator. Without a comparator the
    mode's default equality comparator is used.
    """
    comparators = COMPARATORS_CASE_SENSITIVE if case_sensitive else COMPARATORS
    default = DEFAULT_COMPARATOR_CASE_SENSITIVE if case_sensitive else DEFAULT_COMPARATOR

    if not modifiers:
        return default

    value_modifiers: List[ValueModifier] = []
    comparator: Optional[ComparatorFunc] = None
    last = len(modifiers) - 1
    for i, name in enumerate(modifiers):
        if name not in comparators and name not in VALUE_MODIFIERS:
            raise UnknownModifierError(f"unknown modifier {name}")
        if name in comparators:
            if i < last:
                raise InvalidModifierOrderError(f"comparator modifier {name} must be the last modifier")
            comparator = comparators[name]
        else:
            value_modifiers.append(VALUE_MODIFIERS[name])

    selected = comparator or default
    pipeline = tuple(value_modifiers)
    logger.debug(f"Resolved modifier chain {'|'.join(modifiers)} ({len(pipeline)} value modifiers)")

    def bridges(field: Any, value: Any) -> str:
        for modifier in pipeline:
            value = modifier(value)
        return selected(field, value)

    return bridges
