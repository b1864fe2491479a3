import os
import sys
import unittest
from unittest.mock import patch

# Add src to path
sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), '../src')))

from detection.rule import FieldClause, FieldMatcher
from mappers.field_mapper import FieldMapper
from mappers.sigma_config import Config, ConfigParseError, expand_env_vars, parse_config


class TestParseConfig(unittest.TestCase):
    def setUp(self):
        config_path = os.path.abspath(os.path.join(os.path.dirname(__file__), '../config/splunk_windows.yaml'))
        with open(config_path, 'rb') as f:
            self.config = parse_config(f.read())

    def test_field_mappings(self):
        self.assertEqual(self.config.title, 'Splunk Windows')
        self.assertEqual(self.config.field_mappings['user'], ('Account_Name', 'UserID'))
        self.assertEqual(self.config.field_mappings['EventID'], ('EventCode',))

    def test_logsources(self):
        security = self.config.logsources['windows-security']
        self.assertEqual(security.product, 'windows')
        self.assertEqual(security.service, 'security')
        self.assertIsNone(security.category)
        self.assertEqual(security.indexes, ('wineventlog',))
        self.assertEqual(
            security.conditions.clauses,
            (FieldClause((FieldMatcher('source', (), ('WinEventLog:Security',)),)),),
        )

        sysmon = self.config.logsources['windows-sysmon']
        self.assertEqual(sysmon.indexes, ('sysmon', 'sysmon_archive'))
        self.assertIsNone(sysmon.conditions)

    def test_default_index(self):
        self.assertEqual(self.config.default_index, 'main')

    def test_empty_document(self):
        self.assertEqual(parse_config(""), Config())

    def test_environment_expansion(self):
        content = "defaultindex: ${BRIDGE_TEST_INDEX}\nfieldmappings:\n  user: ${BRIDGE_TEST_USER_FIELD}\n"
        with patch.dict(os.environ, {'BRIDGE_TEST_INDEX': 'security', 'BRIDGE_TEST_USER_FIELD': 'src_user'}):
            config = parse_config(content)

        self.assertEqual(config.default_index, 'security')
        self.assertEqual(config.field_mappings, {'user': ('src_user',)})

    def test_unset_variable_expands_to_empty(self):
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(expand_env_vars("index: ${BRIDGE_UNSET}"), "index: ")

    def test_invalid_documents(self):
        invalid = [
            "fieldmappings: [unclosed",
            "- a\n- b\n",
            "fieldmappings:\n  user: []\n",
            "fieldmappings: [user]\n",
            "logsources:\n  win: windows\n",
            "logsources:\n  win:\n    index: []\n",
        ]
        for content in invalid:
            with self.subTest(content=content):
                with self.assertRaises(ConfigParseError):
                    parse_config(content)


class TestFieldMapper(unittest.TestCase):
    def test_first_target_wins(self):
        mapper = FieldMapper({'user': ['Account_Name', 'UserID']})
        self.assertEqual(mapper.resolve('user'), 'Account_Name')
        self.assertEqual(mapper.targets('user'), ('Account_Name', 'UserID'))

    def test_unmapped_field_passes_through(self):
        mapper = FieldMapper({'user': ['Account_Name']})
        self.assertEqual(mapper.resolve('EventID'), 'EventID')
        self.assertEqual(mapper.targets('EventID'), ())

    def test_empty_mapping_is_ignored(self):
        mapper = FieldMapper({'user': [], 'host': 'ComputerName'})
        self.assertEqual(mapper.resolve('user'), 'user')
        self.assertEqual(mapper.resolve('host'), 'ComputerName')

    def test_from_config(self):
        self.assertEqual(FieldMapper.from_config(None).mappings, {})
        mapper = FieldMapper.from_config(Config(field_mappings={'user': ('Account_Name',)}))
        self.assertEqual(mapper.resolve('user'), 'Account_Name')


if __name__ == '__main__':
    unittest.main()
