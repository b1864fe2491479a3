from __future__ import annotations

import fnmatch
import itertools
import logging
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Tuple

from detection.rule import (
    AllOf,
    And,
    ConditionNode,
    Detection,
    FieldClause,
    FieldMatcher,
    KeywordClause,
    Not,
    NOf,
    OneOf,
    Or,
    Selection,
    SelectionRef,
)
from evaluator.errors import UnresolvedReferenceError, UnsupportedFeatureError
from evaluator.modifiers import get_comparator, is_regex_chain
from mappers.field_mapper import FieldMapper

logger = logging.getLogger(__name__)

AND = "AND"
OR = "OR"


@dataclass(frozen=True)
class _Fragment:
    """
    A rendered piece of the filter.

    `text` is the inline boolean expression ("" means no constraint), `op` the
    operator joining its top-level terms (None for a single term) and `stages`
    the regex pipeline stages that must follow the filter.
    """
    text: str = ""
    op: Optional[str] = None
    stages: Tuple[str, ...] = ()


_EMPTY = _Fragment()


def _operand(fragment: _Fragment, parent_op: str) -> str:
    if fragment.op is not None and fragment.op != parent_op:
        return f"({fragment.text})"
    return fragment.text


def _combine(op: str, fragments: Iterable[_Fragment]) -> _Fragment:
    parts = list(fragments)
    stages = tuple(stage for part in parts for stage in part.stages)
    terms = [part for part in parts if part.text]

    if op == OR and stages and len(parts) > 1:
        raise UnsupportedFeatureError("regex matches cannot be combined with OR")
    if op == OR and any(not part.text and not part.stages for part in parts):
        # Anything OR-ed with an unconstrained fragment matches everything.
        return _EMPTY

    if not terms:
        return _Fragment(stages=stages)
    if len(terms) == 1:
        return _Fragment(text=terms[0].text, op=terms[0].op, stages=stages)
    return _Fragment(
        text=f" {op} ".join(_operand(term, op) for term in terms),
        op=op,
        stages=stages,
    )


def _negate(fragment: _Fragment) -> _Fragment:
    if fragment.stages:
        raise UnsupportedFeatureError("regex matches cannot be negated")
    if not fragment.text:
        raise UnsupportedFeatureError("a selection without constraints cannot be negated")
    if fragment.op is None:
        return _Fragment(text=f"NOT {fragment.text}")
    return _Fragment(text=f"NOT ({fragment.text})")


class ConditionEvaluator:
    """
    Renders a rule's condition tree into the backend filter expression.

    This is code generation only: selections are turned into predicates and
    combined textually, nothing is evaluated against events.
    """

    def __init__(self, detection: Detection, field_mapper: FieldMapper, case_sensitive: bool = False):
        self.detection = detection
        self.field_mapper = field_mapper
        self.case_sensitive = case_sensitive
        self._selection_cache: Dict[str, _Fragment] = {}

    def evaluate(self, extra: Optional[Selection] = None) -> str:
        """
        Returns the filter text for the whole condition.

        Args:
            extra: optional selection AND-ed in front of the condition (log source conditions)
        """
        fragment = self._evaluate_node(self.detection.condition)
        if extra is not None:
            fragment = _combine(AND, [self._evaluate_selection(extra), fragment])
        logger.debug(f"Rendered condition with {len(fragment.stages)} regex stages")
        return (fragment.text + "".join(fragment.stages)).strip()

    def _evaluate_node(self, node: ConditionNode) -> _Fragment:
        if isinstance(node, SelectionRef):
            return self._evaluate_reference(node.name)

        if isinstance(node, Not):
            return _negate(self._evaluate_node(node.node))

        if isinstance(node, And):
            return _combine(AND, [self._evaluate_node(node.left), self._evaluate_node(node.right)])

        if isinstance(node, Or):
            return _combine(OR, [self._evaluate_node(node.left), self._evaluate_node(node.right)])

        if isinstance(node, AllOf):
            return _combine(AND, [self._evaluate_reference(name) for name in self._expand(node.pattern)])

        if isinstance(node, OneOf):
            return _combine(OR, [self._evaluate_reference(name) for name in self._expand(node.pattern)])

        if isinstance(node, NOf):
            names = self._expand(node.pattern)
            if node.count > len(names):
                raise UnresolvedReferenceError(
                    f"{node.count} of {node.pattern} needs at least {node.count} selections, found {len(names)}"
                )
            return _combine(OR, [
                _combine(AND, [self._evaluate_reference(name) for name in group])
                for group in itertools.combinations(names, node.count)
            ])

        raise UnresolvedReferenceError(f"unknown condition expression {type(node).__name__}")

    def _expand(self, pattern: str) -> List[str]:
        names = list(self.detection.selections)
        if pattern == "them":
            matched = [name for name in names if not name.startswith("_")]
        else:
            matched = [name for name in names if fnmatch.fnmatchcase(name, pattern)]
        if not matched:
            raise UnresolvedReferenceError(f"no selection matches {pattern}")
        return matched

    def _evaluate_reference(self, name: str) -> _Fragment:
        if name in self._selection_cache:
            return self._selection_cache[name]
        selection = self.detection.selections.get(name)
        if selection is None:
            raise UnresolvedReferenceError(f"undefined selection {name}")
        fragment = self._evaluate_selection(selection)
        self._selection_cache[name] = fragment
        return fragment

    def _evaluate_selection(self, selection: Selection) -> _Fragment:
        fragments: List[_Fragment] = []
        for clause in selection.clauses:
            if isinstance(clause, FieldClause):
                fragments.append(_combine(AND, [self._evaluate_matcher(m) for m in clause.matchers]))
            elif isinstance(clause, KeywordClause):
                comparator = get_comparator(case_sensitive=self.case_sensitive)
                fragments.append(_combine(OR, [_Fragment(text=comparator(None, v)) for v in clause.values]))
            else:
                raise UnresolvedReferenceError(f"unknown selection clause {type(clause).__name__}")
        return _combine(OR, fragments)

    def _evaluate_matcher(self, matcher: FieldMatcher) -> _Fragment:
        comparator = get_comparator(*matcher.modifiers, case_sensitive=self.case_sensitive)
        field = self.field_mapper.resolve(matcher.field) if matcher.field else None
        regex = is_regex_chain(matcher.modifiers)

        fragments = []
        for value in matcher.values:
            text = comparator(field, value)
            if regex:
                fragments.append(_Fragment(stages=(text,)))
            else:
                fragments.append(_Fragment(text=text))
        return _combine(OR, fragments)
