"""
Wyvern hybrid cards.

Wyvern exports a wrapped V2 card and also copies the character fields to the
top level. The two copies can drift apart (one side edited, the other
truncated), so on import each field takes whichever side is more complete.
"""

import logging
from typing import Any, Dict

from ..errors import InvalidCardStructure
from ..models import CanonicalCard, CardEnvelope, CardSpec, Dialect
from .fields import LIST_FIELDS, TEXT_FIELDS, read_card_fields, require_anchor, write_card_fields, wrap

logger = logging.getLogger(__name__)

WRAPPER_KEYS = ("spec", "spec_version", "data")

# Fields mirrored at the top level on export
MIRRORED_FIELDS = TEXT_FIELDS + LIST_FIELDS


def _more_complete(nested: Any, root: Any) -> Any:
    """Pick the fuller of two copies of a field; ties go to the nested copy."""
    if not root:
        return nested
    if not nested:
        return root
    if isinstance(nested, (str, list)) and isinstance(root, (str, list)):
        return root if len(root) > len(nested) else nested
    return nested


def reconcile(raw: Dict[str, Any]) -> Dict[str, Any]:
    """Merge top-level duplicates into the nested data object."""
    data = raw.get("data")
    if not isinstance(data, dict):
        raise InvalidCardStructure("Wyvern card has no data object")

    merged = dict(data)
    for key, value in raw.items():
        if key in WRAPPER_KEYS:
            continue
        if key in merged:
            chosen = _more_complete(merged[key], value)
            if chosen is not merged[key]:
                logger.debug(f"Wyvern field '{key}': top-level copy is more complete")
            merged[key] = chosen
        else:
            merged[key] = value
    return merged


def to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    return read_card_fields(require_anchor(reconcile(raw), "wyvern"), Dialect.WYVERN.value)


def from_canonical(envelope: CardEnvelope) -> Dict[str, Any]:
    data = write_card_fields(envelope.data, CardSpec.V2)
    hybrid = {key: data[key] for key in MIRRORED_FIELDS if key in data}
    hybrid.update(wrap(CardSpec.V2, data))
    return hybrid
