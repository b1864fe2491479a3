from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from detection.rule import LogSource, Rule, Selection
from evaluator.aggregation import AggregationLowering
from evaluator.condition import ConditionEvaluator
from mappers.field_mapper import FieldMapper
from mappers.sigma_config import Config, LogsourceMapping

logger = logging.getLogger(__name__)


@dataclass
class QueryResult:
    """
    Generated queries keyed by target number, one per backend index the rule
    applies to. `indexes` holds the index name for each key (None when the
    config names no index). Do not rely on key order.
    """
    queries: Dict[int, str] = field(default_factory=dict)
    indexes: Dict[int, Optional[str]] = field(default_factory=dict)


def _matches(expected: Optional[str], actual: Optional[str]) -> bool:
    if not expected:
        return True
    return (actual or "").strip().lower() == expected.strip().lower()


class RuleEvaluator:
    """
    Translates one parsed Sigma rule into backend queries.

    The field-mapping lookup is derived once at construction; `bridges()` has
    no side effects and can be called any number of times.
    """

    def __init__(self, rule: Rule, config: Optional[Config] = None, case_sensitive: bool = False):
        self.rule = rule
        self.config = config or Config()
        self.case_sensitive = case_sensitive
        self.field_mapper = FieldMapper.from_config(self.config)

    def _targets(self) -> List[Tuple[Optional[str], Optional[Selection]]]:
        """Backend targets as (index, extra conditions), in config order."""
        logsource: LogSource = self.rule.logsource
        targets: List[Tuple[Optional[str], Optional[Selection]]] = []
        for name, mapping in self.config.logsources.items():
            if not self._applies(mapping, logsource):
                continue
            logger.debug(f"Log source mapping {name!r} applies to rule {self.rule.title!r}")
            for index in mapping.indexes or (self.config.default_index,):
                targets.append((index, mapping.conditions))

        if not targets:
            targets.append((self.config.default_index, None))
        return targets

    @staticmethod
    def _applies(mapping: LogsourceMapping, logsource: LogSource) -> bool:
        return (
            _matches(mapping.product, logsource.product)
            and _matches(mapping.category, logsource.category)
            and _matches(mapping.service, logsource.service)
        )

    def bridges(self) -> QueryResult:
        """
        Generates one query per applicable backend target.

        Raises:
            ConversionError: if any selection, modifier or aggregation cannot be translated
        """
        aggregation = ""
        if self.rule.detection.aggregation is not None:
            aggregation = AggregationLowering(self.field_mapper).lower(self.rule.detection.aggregation)

        result = QueryResult()
        for i, (index, conditions) in enumerate(self._targets()):
            condition = ConditionEvaluator(self.rule.detection, self.field_mapper, self.case_sensitive)
            query = condition.evaluate(extra=conditions)
            if aggregation:
                query = f"{query} {aggregation}" if query else aggregation
            result.queries[i] = query
            result.indexes[i] = index

        logger.debug(f"Rule {self.rule.title!r} translated into {len(result.queries)} queries")
        return result


def for_rule(rule: Rule, config: Optional[Config] = None, case_sensitive: bool = False) -> RuleEvaluator:
    return RuleEvaluator(rule, config=config, case_sensitive=case_sensitive)
