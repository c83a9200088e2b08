"""
Chub-flavored cards.

Chub cards are ordinary V2/V3 cards carrying Chub namespaces in
``extensions`` (``chub`` provenance, ``depth_prompt``). Those pass through
untouched like every other extension. Chub's older exports also put the
fields at the top level next to ``spec`` with no ``data`` object; such cards
are rewrapped on import.
"""

import logging
from typing import Any, Dict

from ..models import CanonicalCard, CardEnvelope, CardSpec, Dialect
from .fields import read_card_fields, require_anchor, strip_keys, write_card_fields, wrap

logger = logging.getLogger(__name__)

CHUB_EXTENSION_KEYS = ("chub", "depth_prompt")


def has_chub_extensions(data: Any) -> bool:
    if not isinstance(data, dict):
        return False
    extensions = data.get("extensions")
    return isinstance(extensions, dict) and any(key in extensions for key in CHUB_EXTENSION_KEYS)


def card_data(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = raw.get("data")
    if isinstance(data, dict):
        return data
    logger.debug("Rewrapping Chub card with fields at the top level")
    return strip_keys(raw, ("spec", "spec_version", "data"))


def to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    return read_card_fields(require_anchor(card_data(raw), "chub"), Dialect.CHUB.value)


def from_canonical(envelope: CardEnvelope) -> Dict[str, Any]:
    spec = CardSpec(envelope.spec)
    return wrap(spec, write_card_fields(envelope.data, spec))
