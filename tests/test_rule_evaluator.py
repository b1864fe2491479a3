import os
import sys
import unittest

# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.rule_parser import parse_rule
from evaluator.errors import ConversionError, UnsupportedFeatureError
from evaluator.rule_evaluator import QueryResult, RuleEvaluator, for_rule
from mappers.sigma_config import Config, parse_config

FAILED_LOGON_RULE = """
title: Failed Logon Burst
description: Many failed logons for one account
author: Detection Team
tags:
  - attack.credential_access
  - attack.t1110
level: medium
logsource:
  product: windows
  service: security
detection:
  selection:
    EventID: 4625
  condition: selection | count(user) by host > 5
"""

WHOAMI_RULE = r"""
title: Whoami Execution
logsource:
  product: windows
  category: process_creation
detection:
  selection:
    Image|endswith: '\whoami.exe'
  condition: selection
"""


class TestRuleEvaluator(unittest.TestCase):
    def setUp(self):
        config_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '../config/splunk_windows.yaml'))
        with open(config_path, 'r') as f:
            self.config = parse_config(f.read())

    def test_single_selection_without_config(self):
        rule = parse_rule("""
title: Successful Logon
detection:
  selection:
    EventID: 4624
  condition: selection
""")
        result = RuleEvaluator(rule, Config()).bridges()

        self.assertIsInstance(result, QueryResult)
        self.assertEqual(result.queries, {0: 'eventid="4624"'})
        self.assertEqual(result.indexes, {0: None})

    def test_aggregation_is_appended(self):
        rule = parse_rule(FAILED_LOGON_RULE)
        config = Config(field_mappings={'user': ('Account_Name', 'UserID')})

        result = RuleEvaluator(rule, config).bridges()

        self.assertEqual(
            result.queries,
            {0: 'eventid="4625" | stats count by Account_Name,host | sort -count > 5'},
        )

    def test_log_source_conditions_and_index(self):
        rule = parse_rule(FAILED_LOGON_RULE)

        result = RuleEvaluator(rule, self.config).bridges()

        self.assertEqual(result.indexes, {0: 'wineventlog'})
        self.assertEqual(
            result.queries[0],
            'source="wineventlog:security" AND eventcode="4625" '
            '| stats count by Account_Name,host | sort -count > 5',
        )

    def test_one_query_per_index(self):
        rule = parse_rule("""
title: Sysmon Network
logsource:
  product: windows
  service: sysmon
detection:
  selection:
    DestinationIp|cidr: 10.0.0.0/8
  condition: selection
""")
        result = RuleEvaluator(rule, self.config).bridges()

        self.assertEqual(sorted(result.indexes.values()), ['sysmon', 'sysmon_archive'])
        self.assertEqual(set(result.queries.values()), {'dest_ip="10.0.0.0/8"'})

    def test_category_mapping(self):
        result = RuleEvaluator(parse_rule(WHOAMI_RULE), self.config).bridges()

        self.assertEqual(result.indexes, {0: 'sysmon'})
        self.assertEqual(result.queries[0], r'eventcode="1" AND process_path="*\\whoami.exe"')

    def test_default_index_when_no_log_source_applies(self):
        rule = parse_rule("""
title: Linux Shell
logsource:
  product: linux
detection:
  keywords:
    - /bin/sh
  condition: keywords
""")
        result = RuleEvaluator(rule, self.config).bridges()

        self.assertEqual(result.indexes, {0: 'main'})
        self.assertEqual(result.queries, {0: '"/bin/sh"'})

    def test_case_sensitive_mode(self):
        result = RuleEvaluator(parse_rule(WHOAMI_RULE), Config(), case_sensitive=True).bridges()
        self.assertEqual(result.queries[0], r'image="*\\whoami.exe"')

        rule = parse_rule("""
title: Mixed Case
detection:
  selection:
    CommandLine|contains: Invoke-Mimikatz
  condition: selection
""")
        self.assertEqual(
            RuleEvaluator(rule, case_sensitive=True).bridges().queries[0],
            'commandline="*Invoke-Mimikatz*"',
        )
        self.assertEqual(
            RuleEvaluator(rule).bridges().queries[0],
            'commandline="*invoke-mimikatz*"',
        )

    def test_evaluator_is_reusable(self):
        rule = parse_rule(FAILED_LOGON_RULE)
        evaluator = for_rule(rule, self.config)

        first = evaluator.bridges()
        second = evaluator.bridges()

        self.assertEqual(first, second)
        self.assertEqual(rule, parse_rule(FAILED_LOGON_RULE))

    def test_near_aborts_evaluation(self):
        rule = parse_rule("""
title: Near
detection:
  selection:
    EventID: 1
  other:
    EventID: 3
  condition: selection | near other within 5m
""")
        with self.assertRaises(UnsupportedFeatureError):
            RuleEvaluator(rule, self.config).bridges()

    def test_errors_are_conversion_errors(self):
        rule = parse_rule("""
title: Bad Modifier
detection:
  selection:
    CommandLine|contains|base64: abc
  condition: selection
""")
        with self.assertRaises(ConversionError):
            RuleEvaluator(rule).bridges()


if __name__ == '__main__':
    unittest.main()
