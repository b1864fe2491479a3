import argparse
import base64
import binascii
import logging
import os
import sys
from typing import Dict, List, Optional

from detection.rule_parser import RuleParseError, parse_rule
from evaluator.errors import ConversionError
from evaluator.rule_evaluator import RuleEvaluator
from mappers.sigma_config import Config, ConfigParseError, parse_config
from utils.report import format_json_result, format_text_result, write_output

__version__ = "1.0.0"

logger = logging.getLogger(__name__)

RULE_EXTENSIONS = (".yml", ".yaml")


def setup_logging(level: str = 'WARNING', log_file: Optional[str] = None):
    """Configure logging. Logs go to stderr so stdout only carries queries."""
    log_level = getattr(logging, level.upper(), logging.WARNING)

    handlers = [logging.StreamHandler(sys.stderr)]

    if log_file:
        # Create log directory if needed
        log_dir = os.path.dirname(log_file)
        if log_dir and not os.path.exists(log_dir):
            os.makedirs(log_dir, exist_ok=True)
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=handlers,
        force=True,
    )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog='bridge',
        description='Translate Sigma rules into pipe-delimited search queries',
        epilog='Example: bridge --filepath /path/to/rules --config /path/to/config.yml',
    )
    parser.add_argument('filepath_arg', nargs='?', metavar='FILEPATH',
                        help='Rule file or directory (same as --filepath)')
    parser.add_argument('config_arg', nargs='?', metavar='CONFIG',
                        help='Configuration file (same as --config)')
    parser.add_argument('--filepath', '-f', default='',
                        help='Name or path of the rule file or directory to read')
    parser.add_argument('--config', '-c', default='',
                        help='Path to the configuration file')
    parser.add_argument('--filecontent', default='',
                        help='Base64-encoded rule content, one rule per line')
    parser.add_argument('--configcontent', default='',
                        help='Base64-encoded content of the configuration file')
    parser.add_argument('--json', '-j', action='store_true',
                        help='Output results in JSON format')
    parser.add_argument('--output', '-o', default='',
                        help='Output directory for writing files')
    parser.add_argument('--cs', action='store_true',
                        help='Case sensitive mode')
    parser.add_argument('--log-level', default='WARNING',
                        help='Logging level (default: WARNING)')
    parser.add_argument('--log-file', default=None,
                        help='Also write logs to this file')
    parser.add_argument('--version', action='version', version=f'Bridge version {__version__}')
    return parser


def _iter_rule_files(root: str):
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for filename in sorted(filenames):
            if not filename.endswith(RULE_EXTENSIONS):
                continue
            yield os.path.join(dirpath, filename)


def read_rule_sources(file_path: str, file_content: str) -> Dict[str, bytes]:
    """
    Collect rule documents keyed by their source name.

    Raises:
        OSError: if a rule file cannot be read
        ValueError: if inline content is not valid base64
    """
    contents: Dict[str, bytes] = {}

    if file_path:
        if os.path.isdir(file_path):
            for path in _iter_rule_files(file_path):
                try:
                    with open(path, 'rb') as f:
                        contents[path] = f.read()
                except OSError as e:
                    logger.error(f"Error reading file {path}: {e}")
        else:
            with open(file_path, 'rb') as f:
                contents[file_path] = f.read()
        return contents

    lines = [line.strip() for line in file_content.splitlines() if line.strip()]
    for i, line in enumerate(lines):
        name = f"filecontent[{i}]" if len(lines) > 1 else "filecontent"
        contents[name] = _decode_base64(line)
    return contents


def read_config_source(config_path: str, config_content: str) -> bytes:
    if config_path:
        with open(config_path, 'rb') as f:
            return f.read()
    return _decode_base64(config_content)


def _decode_base64(value: str) -> bytes:
    try:
        return base64.b64decode(value, validate=True)
    except binascii.Error as e:
        raise ValueError(f"Error decoding base64 content: {e}") from e


def convert_rule(name: str, content: bytes, config: Config, case_sensitive: bool,
                 as_json: bool, output_dir: str) -> bool:
    """Translate one rule document and emit its output. Returns False on failure."""
    try:
        rule = parse_rule(content)
    except RuleParseError as e:
        logger.error(f"Error parsing rule {name}: {e}")
        return False

    try:
        result = RuleEvaluator(rule, config, case_sensitive=case_sensitive).bridges()
    except ConversionError as e:
        logger.error(f"Error converting rule {rule.title!r} ({name}): {e}")
        return False

    if as_json:
        output = format_json_result(rule, result.queries)
    else:
        output = format_text_result(result.queries)

    if output_dir:
        try:
            output_file = write_output(output_dir, rule.title, output)
        except OSError as e:
            logger.error(f"Error writing output for rule {rule.title!r}: {e}")
            return False
        print(f"Output for rule '{rule.title}' written to file: {output_file}")
    else:
        print(rule.title)
        print(output, end='' if output.endswith('\n') else '\n')
    return True


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)

    setup_logging(args.log_level, args.log_file)

    file_path = args.filepath or args.filepath_arg or ''
    config_path = args.config or args.config_arg or ''

    if (not file_path and not args.filecontent) or (not config_path and not args.configcontent):
        print("Please provide either file paths or file contents, and either config path or config content.")
        parser.print_usage()
        return 1

    try:
        rule_sources = read_rule_sources(file_path, args.filecontent)
        config = parse_config(read_config_source(config_path, args.configcontent))
    except ConfigParseError as e:
        logger.error(f"Error parsing config: {e}")
        return 1
    except (OSError, ValueError) as e:
        logger.error(f"{e}")
        return 1

    logger.info(f"Converting {len(rule_sources)} rules (case sensitive: {args.cs})")

    failed = 0
    for name, content in rule_sources.items():
        try:
            converted = convert_rule(name, content, config, args.cs, args.json, args.output)
        except Exception as e:
            logger.exception(f"Unexpected error converting rule {name}: {e}")
            converted = False
        if not converted:
            failed += 1

    if failed:
        logger.warning(f"{failed}/{len(rule_sources)} rules failed to convert")
    return 1 if failed else 0


if __name__ == '__main__':
    sys.exit(main())
