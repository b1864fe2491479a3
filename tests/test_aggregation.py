import os
import sys
import unittest
from dataclasses import dataclass

# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

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
from evaluator.aggregation import AggregationLowering
from evaluator.errors import UnsupportedAggregationFunctionError, UnsupportedFeatureError
from mappers.field_mapper import FieldMapper


@dataclass(frozen=True)
class Median(AggregationFunc):
    field: str = ""
    grouped_by: str = ""


class Correlation(AggregationExpr):
    pass


class TestAggregationLowering(unittest.TestCase):
    def setUp(self):
        self.lowering = AggregationLowering(FieldMapper())
        self.mapped = AggregationLowering(FieldMapper({
            'user': ['Account_Name', 'UserID'],
            'host': ['ComputerName'],
        }))

    def test_count_all(self):
        self.assertEqual(self.lowering.lower_function(Count()), "| sort -count")

    def test_count_all_grouped(self):
        self.assertEqual(
            self.lowering.lower_function(Count(grouped_by="host")),
            "| stats count by host | sort -count",
        )

    def test_count_field(self):
        self.assertEqual(
            self.lowering.lower_function(Count(field="user")),
            "| stats count by user | sort -count",
        )

    def test_count_field_grouped(self):
        self.assertEqual(
            self.lowering.lower_function(Count(field="user", grouped_by="host")),
            "| stats count by user,host | sort -count",
        )

    def test_statistic_functions(self):
        self.assertEqual(
            self.lowering.lower_function(Average(field="bytes")),
            "| stats avg(bytes) by bytes AS average | sort -average",
        )
        self.assertEqual(
            self.lowering.lower_function(Sum(field="bytes", grouped_by="host")),
            "| stats sum(bytes) by bytes,host AS sum | sort -sum",
        )
        self.assertEqual(
            self.lowering.lower_function(Min(field="duration")),
            "| stats min(duration) by duration AS min | sort -min",
        )
        self.assertEqual(
            self.lowering.lower_function(Max(field="duration", grouped_by="user")),
            "| stats max(duration) by duration,user AS max | sort -max",
        )

    def test_first_field_mapping_wins(self):
        self.assertEqual(
            self.mapped.lower_function(Count(field="user", grouped_by="host")),
            "| stats count by Account_Name,ComputerName | sort -count",
        )
        self.assertEqual(
            self.mapped.lower_function(Max(field="user")),
            "| stats max(Account_Name) by Account_Name AS max | sort -max",
        )

    def test_unmapped_fields_pass_through(self):
        self.assertEqual(
            self.mapped.lower_function(Count(field="src_ip")),
            "| stats count by src_ip | sort -count",
        )

    def test_comparison_appends_threshold(self):
        self.assertEqual(self.lowering.lower(Comparison(Count(), ">", 5)), "| sort -count > 5")
        self.assertEqual(
            self.mapped.lower(Comparison(Count(field="user"), ">=", 10)),
            "| stats count by Account_Name | sort -count >= 10",
        )
        self.assertEqual(
            self.lowering.lower(Comparison(Average(field="bytes"), "==", 0)),
            "| stats avg(bytes) by bytes AS average | sort -average == 0",
        )

    def test_near_is_unsupported(self):
        with self.assertRaises(UnsupportedFeatureError) as ctx:
            self.lowering.lower(Near(selections=("a", "b"), within="5m"))
        self.assertIn("near", str(ctx.exception))

    def test_unsupported_function(self):
        with self.assertRaises(UnsupportedAggregationFunctionError) as ctx:
            self.lowering.lower(Comparison(Median(field="bytes"), ">", 1))
        self.assertIn("Median", str(ctx.exception))

    def test_unknown_expression(self):
        with self.assertRaises(UnsupportedFeatureError):
            self.lowering.lower(Correlation())


if __name__ == '__main__':
    unittest.main()
