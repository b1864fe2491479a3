import json
import logging
import os
from datetime import datetime, timezone
from typing import Dict, Optional

from detection.rule import Rule

logger = logging.getLogger(__name__)

SIGMA_REPOSITORY = "Sigma Repository: [GitHub](https://github.com/SigmaHQ/sigma)"


def _rfc3339(moment: datetime) -> str:
    return moment.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


def format_text_result(queries: Dict[int, str]) -> str:
    return "".join(f"{query}\n" for query in queries.values())


def format_json_result(rule: Rule, queries: Dict[int, str], now: Optional[datetime] = None) -> str:
    """
    Wraps the generated queries and rule metadata into the JSON report document.

    Args:
        rule: Parsed rule the queries were generated from
        queries: Generated queries, joined with newlines in the report
        now: Report timestamp (defaults to the current UTC time)
    """
    timestamp = _rfc3339(now or datetime.now(timezone.utc))
    result = {
        'Name': rule.title,
        'Description': f"{rule.description}\n\nAuthor: {rule.author}\n{SIGMA_REPOSITORY}",
        'Query': "\n".join(queries.values()),
        'InsertDate': timestamp,
        'LastUpdateDate': timestamp,
        'Tags': list(rule.tags),
        'Level': rule.level,
    }
    return json.dumps(result, indent=2)


def write_output(output_dir: str, title: str, content: str) -> str:
    """Write a rule's output to `<output_dir>/<title>.json` and return the path."""
    if not os.path.exists(output_dir):
        os.makedirs(output_dir, exist_ok=True)
        logger.info(f"Created output directory: {output_dir}")

    file_name = title.replace("/", "_").replace("\\", "_") or "untitled"
    output_file = os.path.join(output_dir, f"{file_name}.json")
    with open(output_file, 'w', encoding='utf-8') as f:
        f.write(content)

    logger.debug(f"Output written: {output_file}")
    return output_file
