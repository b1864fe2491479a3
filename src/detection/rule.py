"""
Parsed Sigma rule model.

Everything here is immutable: the rule parser builds these values once and the
evaluator only reads them.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple


@dataclass(frozen=True)
class FieldMatcher:
    """`field|mod1|mod2: values` - the field matches any of `values`."""
    field: str
    modifiers: Tuple[str, ...]
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class FieldClause:
    """AND across matchers."""
    matchers: Tuple[FieldMatcher, ...]


@dataclass(frozen=True)
class KeywordClause:
    """OR across field-less values."""
    values: Tuple[Any, ...]


@dataclass(frozen=True)
class Selection:
    """
    OR across clauses; each clause is either an AND of field matchers or a keyword OR clause.
    """
    clauses: Tuple[Any, ...]


# Condition AST


class ConditionNode:
    pass


@dataclass(frozen=True)
class SelectionRef(ConditionNode):
    name: str


@dataclass(frozen=True)
class Not(ConditionNode):
    node: ConditionNode


@dataclass(frozen=True)
class And(ConditionNode):
    left: ConditionNode
    right: ConditionNode


@dataclass(frozen=True)
class Or(ConditionNode):
    left: ConditionNode
    right: ConditionNode


@dataclass(frozen=True)
class OneOf(ConditionNode):
    pattern: str


@dataclass(frozen=True)
class AllOf(ConditionNode):
    pattern: str


@dataclass(frozen=True)
class NOf(ConditionNode):
    count: int
    pattern: str


# Aggregation AST


class AggregationFunc:
    pass


@dataclass(frozen=True)
class Count(AggregationFunc):
    field: str = ""
    grouped_by: str = ""


@dataclass(frozen=True)
class Average(AggregationFunc):
    field: str = ""
    grouped_by: str = ""


@dataclass(frozen=True)
class Sum(AggregationFunc):
    field: str = ""
    grouped_by: str = ""


@dataclass(frozen=True)
class Min(AggregationFunc):
    field: str = ""
    grouped_by: str = ""


@dataclass(frozen=True)
class Max(AggregationFunc):
    field: str = ""
    grouped_by: str = ""


class AggregationExpr:
    pass


@dataclass(frozen=True)
class Near(AggregationExpr):
    selections: Tuple[str, ...] = ()
    within: str = ""


COMPARISON_OPERATORS = (">", ">=", "<", "<=", "==")


@dataclass(frozen=True)
class Comparison(AggregationExpr):
    func: AggregationFunc
    op: str
    threshold: int

    def __post_init__(self):
        if self.op not in COMPARISON_OPERATORS:
            raise ValueError(f"unsupported comparison operator {self.op!r}")


@dataclass(frozen=True)
class LogSource:
    product: Optional[str] = None
    category: Optional[str] = None
    service: Optional[str] = None


@dataclass(frozen=True)
class Detection:
    selections: Dict[str, Selection]
    condition: ConditionNode
    aggregation: Optional[AggregationExpr] = None


@dataclass(frozen=True)
class Rule:
    title: str
    detection: Detection
    id: Optional[str] = None
    status: str = ""
    description: str = ""
    author: str = ""
    tags: Tuple[str, ...] = ()
    level: str = ""
    logsource: LogSource = field(default_factory=LogSource)
