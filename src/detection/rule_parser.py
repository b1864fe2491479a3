from __future__ import annotations

import logging
import re
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from detection.rule import (
    AggregationExpr,
    AllOf,
    And,
    Average,
    COMPARISON_OPERATORS,
    Comparison,
    ConditionNode,
    Count,
    Detection,
    FieldClause,
    FieldMatcher,
    KeywordClause,
    LogSource,
    Max,
    Min,
    Near,
    Not,
    NOf,
    OneOf,
    Or,
    Rule,
    Selection,
    SelectionRef,
    Sum,
)

logger = logging.getLogger(__name__)


class RuleParseError(ValueError):
    pass


_AGGREGATION_FUNCS = {
    "count": Count,
    "avg": Average,
    "sum": Sum,
    "min": Min,
    "max": Max,
}

_AGGREGATION_RE = re.compile(
    r"^(?P<func>\w+)\(\s*(?P<field>[^()\s]*)\s*\)"
    r"(?:\s+by\s+(?P<grouped_by>[^\s<>=]+))?"
    r"\s*(?P<op><=|>=|==|<|>|=)\s*(?P<threshold>-?\d+)$",
    re.IGNORECASE,
)

_TOKEN_RE = re.compile(r"(?P<paren>[()])|(?P<word>[A-Za-z0-9_.*-]+)|(?P<other>[^\s()A-Za-z0-9_.*-]+)")


def _coerce_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, str):
        return value
    return str(value)


def _as_values(value: Any) -> Tuple[Any, ...]:
    if isinstance(value, list):
        return tuple(value)
    return (value,)


class _ConditionParser:
    """Recursive descent over condition tokens: or < and < not < atom."""

    def __init__(self, tokens: List[str]):
        self.tokens = tokens
        self.pos = 0

    def _peek(self) -> Optional[str]:
        if self.pos >= len(self.tokens):
            return None
        return self.tokens[self.pos]

    def _consume(self) -> Optional[str]:
        tok = self._peek()
        if tok is None:
            return None
        self.pos += 1
        return tok

    def _expect(self, expected: str) -> None:
        tok = self._consume()
        if tok is None:
            raise RuleParseError(f"Expected {expected!r}, got end of condition")
        if tok.lower() != expected.lower():
            raise RuleParseError(f"Expected {expected!r}, got {tok!r}")

    def parse(self) -> ConditionNode:
        if not self.tokens:
            raise RuleParseError("Empty condition")
        node = self._parse_or()
        if self._peek() is not None:
            raise RuleParseError(f"Unexpected trailing tokens: {self.tokens[self.pos:]}")
        return node

    def _parse_binary(self, keyword: str, node_type, operand) -> ConditionNode:
        node = operand()
        while (self._peek() or "").lower() == keyword:
            self._consume()
            node = node_type(node, operand())
        return node

    def _parse_or(self) -> ConditionNode:
        return self._parse_binary("or", Or, self._parse_and)

    def _parse_and(self) -> ConditionNode:
        return self._parse_binary("and", And, self._parse_not)

    def _parse_not(self) -> ConditionNode:
        tok = self._peek()
        if tok and tok.lower() == "not":
            self._consume()
            return Not(self._parse_not())
        return self._parse_atom()

    def _parse_atom(self) -> ConditionNode:
        tok = self._peek()
        if tok is None:
            raise RuleParseError("Unexpected end of condition")

        if tok == "(":
            self._consume()
            node = self._parse_or()
            self._expect(")")
            return node

        if tok == ")" or tok.lower() in ("and", "or"):
            raise RuleParseError(f"Unexpected token {tok!r}")

        # Quantifiers: "<n> of <pattern>", "all of <pattern>", "any of <pattern>"
        following = self.tokens[self.pos + 1] if self.pos + 1 < len(self.tokens) else None
        if following is not None and following.lower() == "of":
            return self._parse_quantifier()

        self._consume()
        return SelectionRef(tok)

    def _parse_quantifier(self) -> ConditionNode:
        tok = self._consume()
        self._expect("of")
        pattern = self._consume()
        if not pattern or pattern in ("(", ")"):
            raise RuleParseError(f"Missing pattern after '{tok} of'")

        quantifier = tok.lower()
        if quantifier == "all":
            return AllOf(pattern)
        if quantifier == "any":
            return OneOf(pattern)
        if tok.isdigit():
            count = int(tok)
            if count < 1:
                raise RuleParseError(f"Unsupported quantifier: {tok}")
            if count == 1:
                return OneOf(pattern)
            return NOf(count, pattern)

        raise RuleParseError(f"Unsupported quantifier: {tok}")


def _tokenize(condition: str) -> List[str]:
    tokens = []
    for match in _TOKEN_RE.finditer(condition):
        if match.lastgroup == "other":
            raise RuleParseError(f"Unrecognized token {match.group()!r} in condition")
        tokens.append(match.group())
    return tokens


def parse_condition(condition: str) -> ConditionNode:
    parser = _ConditionParser(_tokenize(condition))
    return parser.parse()


def parse_aggregation(text: str) -> AggregationExpr:
    text = text.strip()
    if text.lower().startswith("near"):
        body = text[4:]
        within = ""
        match = re.search(r"\bwithin\b", body, re.IGNORECASE)
        if match:
            within = body[match.end():].strip()
            body = body[:match.start()]
        names = tuple(t for t in body.split() if t.lower() not in ("and", "not"))
        return Near(selections=names, within=within)

    match = _AGGREGATION_RE.match(text)
    if not match:
        raise RuleParseError(f"Invalid aggregation expression {text!r}")

    func_name = match.group("func").lower()
    func_type = _AGGREGATION_FUNCS.get(func_name)
    if func_type is None:
        raise RuleParseError(f"unsupported aggregation function {func_name}")

    field = match.group("field") or ""
    if func_type is not Count and not field:
        raise RuleParseError(f"Aggregation function {func_name} requires a field")

    op = match.group("op")
    if op == "=":
        op = "=="
    if op not in COMPARISON_OPERATORS:
        raise RuleParseError(f"Unsupported comparison operator {op!r}")

    return Comparison(
        func=func_type(field=field, grouped_by=match.group("grouped_by") or ""),
        op=op,
        threshold=int(match.group("threshold")),
    )


def _compile_matcher(raw_key: str, raw_value: Any) -> FieldMatcher:
    parts = [p for p in raw_key.split("|")]
    field = parts[0].strip()
    modifiers = tuple(p.strip().lower() for p in parts[1:] if p.strip())
    values = _as_values(raw_value)
    if not values:
        raise RuleParseError(f"Field {raw_key!r} has an empty value list")
    return FieldMatcher(field=field, modifiers=modifiers, values=values)


def _compile_field_clause(selection_def: Dict[Any, Any]) -> FieldClause:
    return FieldClause(matchers=tuple(
        _compile_matcher(str(raw_key), raw_value) for raw_key, raw_value in selection_def.items()
    ))


def compile_selection(name: str, selection_def: Any) -> Selection:
    # Dict -> single AND clause
    if isinstance(selection_def, dict):
        if not selection_def:
            raise RuleParseError(f"Selection {name!r} is empty")
        return Selection(clauses=(_compile_field_clause(selection_def),))

    # List -> OR across items
    if isinstance(selection_def, list):
        clauses: List[Any] = []
        keywords: List[Any] = []
        for item in selection_def:
            if isinstance(item, dict):
                clauses.append(_compile_field_clause(item))
            else:
                keywords.append(item)
        if keywords:
            clauses.append(KeywordClause(values=tuple(keywords)))
        if not clauses:
            raise RuleParseError(f"Selection {name!r} is empty")
        return Selection(clauses=tuple(clauses))

    # Scalar -> keyword clause
    return Selection(clauses=(KeywordClause(values=(selection_def,)),))


def _split_condition(condition: Any) -> Tuple[ConditionNode, Optional[AggregationExpr]]:
    if isinstance(condition, list):
        conditions = [_coerce_str(c).strip() for c in condition if _coerce_str(c).strip()]
        if not conditions:
            raise RuleParseError("Missing condition")
        if len(conditions) > 1:
            if any("|" in c for c in conditions):
                raise RuleParseError("Aggregations are only supported with a single condition")
            condition = " or ".join(f"({c})" for c in conditions)
        else:
            condition = conditions[0]

    if not isinstance(condition, str) or not condition.strip():
        raise RuleParseError("Missing condition")

    search, _, aggregation = condition.partition("|")
    try:
        node = parse_condition(search)
    except RuleParseError as e:
        raise RuleParseError(f"Invalid condition {condition!r}: {e}") from e

    if not aggregation.strip():
        return node, None
    return node, parse_aggregation(aggregation)


def _parse_tags(raw: Any) -> Tuple[str, ...]:
    if raw is None:
        return ()
    if isinstance(raw, (str, int, float)):
        raw = [raw]
    if not isinstance(raw, list):
        raise RuleParseError(f"tags must be a list, got {type(raw).__name__}")
    return tuple(_coerce_str(t).strip() for t in raw if _coerce_str(t).strip())


def _parse_logsource(raw: Any) -> LogSource:
    if not isinstance(raw, dict):
        return LogSource()
    return LogSource(
        product=_coerce_str(raw.get("product")).strip() or None,
        category=_coerce_str(raw.get("category")).strip() or None,
        service=_coerce_str(raw.get("service")).strip() or None,
    )


def parse_rule(content: Union[str, bytes]) -> Rule:
    """
    Parses a Sigma rule document.

    Raises:
        RuleParseError: if the document is not valid YAML or not a usable rule
    """
    try:
        doc = yaml.safe_load(content)
    except yaml.YAMLError as e:
        raise RuleParseError(f"Invalid YAML: {e}") from e

    if not isinstance(doc, dict):
        raise RuleParseError("Rule document must be a mapping")

    detection = doc.get("detection")
    if not isinstance(detection, dict):
        raise RuleParseError("Rule has no detection section")
    if "condition" not in detection:
        raise RuleParseError("Rule has no condition")

    selections: Dict[str, Selection] = {}
    for name, selection_def in detection.items():
        if name in ("condition", "timeframe"):
            continue
        selections[str(name)] = compile_selection(str(name), selection_def)

    condition, aggregation = _split_condition(detection.get("condition"))

    author = doc.get("author")
    if isinstance(author, list):
        author = ", ".join(_coerce_str(a) for a in author)

    rule = Rule(
        title=_coerce_str(doc.get("title")).strip(),
        id=_coerce_str(doc.get("id")).strip() or None,
        status=_coerce_str(doc.get("status")).strip(),
        description=_coerce_str(doc.get("description")).strip(),
        author=_coerce_str(author).strip(),
        tags=_parse_tags(doc.get("tags")),
        level=_coerce_str(doc.get("level")).strip(),
        logsource=_parse_logsource(doc.get("logsource")),
        detection=Detection(selections=selections, condition=condition, aggregation=aggregation),
    )
    logger.debug(f"Parsed rule {rule.title!r} ({len(selections)} selections)")
    return rule
