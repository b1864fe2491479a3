import logging
from typing import Dict, Optional, Sequence, Tuple

from mappers.sigma_config import Config

logger = logging.getLogger(__name__)


class FieldMapper:
    """
    Lookup table from canonical Sigma field names to backend field names.

    A field may map to several backend names; only the first (default) one is
    used when rendering queries. Unmapped fields pass through unchanged.
    """
    def __init__(self, mappings: Optional[Dict[str, Sequence[str]]] = None):
        self.mappings: Dict[str, Tuple[str, ...]] = {}
        for sigma_field, backend_fields in (mappings or {}).items():
            if isinstance(backend_fields, str):
                backend_fields = [backend_fields]
            targets = tuple(str(f) for f in backend_fields if f)
            if targets:
                self.mappings[sigma_field] = targets

    @classmethod
    def from_config(cls, config: Optional[Config]) -> "FieldMapper":
        if config is None:
            return cls()
        mapper = cls(config.field_mappings)
        logger.debug(f"Field mapper built from config {config.title!r} ({len(mapper.mappings)} fields)")
        return mapper

    def targets(self, field: str) -> Tuple[str, ...]:
        return self.mappings.get(field, ())

    def resolve(self, field: str) -> str:
        targets = self.mappings.get(field)
        if targets:
            return targets[0]
        return field
