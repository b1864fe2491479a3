from __future__ import annotations

import logging
import os
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Tuple, Union

import yaml

from detection.rule import Selection
from detection.rule_parser import RuleParseError, compile_selection

logger = logging.getLogger(__name__)

_ENV_VAR_RE = re.compile(r"\$\{([^}]+)\}")


class ConfigParseError(ValueError):
    pass


@dataclass(frozen=True)
class LogsourceMapping:
    product: Optional[str] = None
    category: Optional[str] = None
    service: Optional[str] = None
    indexes: Tuple[str, ...] = ()
    conditions: Optional[Selection] = None


@dataclass(frozen=True)
class Config:
    title: str = ""
    field_mappings: Dict[str, Tuple[str, ...]] = field(default_factory=dict)
    logsources: Dict[str, LogsourceMapping] = field(default_factory=dict)
    default_index: Optional[str] = None


def expand_env_vars(content: str) -> str:
    """Expand environment variables (${VAR_NAME} format); unset variables expand to ''."""
    def expand_env_var(match):
        var_name = match.group(1)
        return os.environ.get(var_name, '')

    return _ENV_VAR_RE.sub(expand_env_var, content)


def _as_names(raw: Any, what: str) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        names = tuple(str(v).strip() for v in raw if v is not None and str(v).strip())
        if not names:
            raise ConfigParseError(f"{what} must not be empty")
        return names
    name = str(raw).strip()
    if not name:
        raise ConfigParseError(f"{what} must not be empty")
    return (name,)


def _optional_str(value: Any) -> Optional[str]:
    if value is None:
        return None
    return str(value).strip() or None


def _parse_logsource(name: str, raw: Any) -> LogsourceMapping:
    if not isinstance(raw, dict):
        raise ConfigParseError(f"Log source {name!r} must be a mapping")

    conditions = None
    raw_conditions = raw.get("conditions")
    if raw_conditions:
        try:
            conditions = compile_selection(f"{name}.conditions", raw_conditions)
        except RuleParseError as e:
            raise ConfigParseError(f"Invalid conditions for log source {name!r}: {e}") from e

    return LogsourceMapping(
        product=_optional_str(raw.get("product")),
        category=_optional_str(raw.get("category")),
        service=_optional_str(raw.get("service")),
        indexes=_as_names(raw.get("index"), f"index of log source {name!r}"),
        conditions=conditions,
    )


def parse_config(content: Union[str, bytes]) -> Config:
    """
    Parses a field-mapping / log-source configuration document.

    Raises:
        ConfigParseError: if the document is not valid YAML or has an invalid shape
    """
    if isinstance(content, bytes):
        content = content.decode("utf-8")

    try:
        doc = yaml.safe_load(expand_env_vars(content))
    except yaml.YAMLError as e:
        raise ConfigParseError(f"Invalid YAML: {e}") from e

    if doc is None:
        doc = {}
    if not isinstance(doc, dict):
        raise ConfigParseError("Config document must be a mapping")

    raw_mappings = doc.get("fieldmappings") or {}
    if not isinstance(raw_mappings, dict):
        raise ConfigParseError("fieldmappings must be a mapping")
    field_mappings = {
        str(source): _as_names(target, f"field mapping for {source!r}")
        for source, target in raw_mappings.items()
    }

    raw_logsources = doc.get("logsources") or {}
    if not isinstance(raw_logsources, dict):
        raise ConfigParseError("logsources must be a mapping")
    logsources = {str(name): _parse_logsource(str(name), raw) for name, raw in raw_logsources.items()}

    config = Config(
        title=str(doc.get("title") or "").strip(),
        field_mappings=field_mappings,
        logsources=logsources,
        default_index=_optional_str(doc.get("defaultindex")),
    )
    logger.debug(f"Parsed config {config.title!r}: {len(field_mappings)} field mappings, {len(logsources)} log sources")
    return config
