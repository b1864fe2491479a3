from __future__ import annotations

import logging

from detection.rule import (
    AggregationExpr,
    AggregationFunc,
    Average,
    Comparison,
    Count,
    Max,
    Min,
    Near,
    Sum,
)
from evaluator.errors import UnsupportedAggregationFunctionError, UnsupportedFeatureError
from mappers.field_mapper import FieldMapper

logger = logging.getLogger(__name__)

# Statistic functions rendered as `| stats <fn>(field) by ... AS <alias> | sort -<alias>`.
_STATS_FUNCTIONS = (
    (Average, "avg", "average"),
    (Sum, "sum", "sum"),
    (Min, "min", "min"),
    (Max, "max", "max"),
)


class AggregationLowering:
    """Lowers a rule's aggregation clause into a pipeline fragment."""

    def __init__(self, field_mapper: FieldMapper):
        self.field_mapper = field_mapper

    def lower(self, aggregation: AggregationExpr) -> str:
        if isinstance(aggregation, Near):
            raise UnsupportedFeatureError("near isn't supported yet")

        if isinstance(aggregation, Comparison):
            result = self.lower_function(aggregation.func)
            return f"{result} {aggregation.op} {int(aggregation.threshold)}"

        raise UnsupportedFeatureError("unknown aggregation expression")

    def _by_clause(self, field: str, grouped_by: str) -> str:
        fields = [self.field_mapper.resolve(field)]
        if grouped_by:
            fields.append(self.field_mapper.resolve(grouped_by))
        return ",".join(fields)

    def lower_function(self, func: AggregationFunc) -> str:
        if isinstance(func, Count):
            if not func.field:
                # Count every matched record
                if func.grouped_by:
                    return f"| stats count by {self.field_mapper.resolve(func.grouped_by)} | sort -count"
                return "| sort -count"
            return f"| stats count by {self._by_clause(func.field, func.grouped_by)} | sort -count"

        for func_type, name, alias in _STATS_FUNCTIONS:
            if isinstance(func, func_type):
                field = self.field_mapper.resolve(func.field)
                by = self._by_clause(func.field, func.grouped_by)
                return f"| stats {name}({field}) by {by} AS {alias} | sort -{alias}"

        raise UnsupportedAggregationFunctionError(f"unsupported aggregation function {type(func).__name__}")
