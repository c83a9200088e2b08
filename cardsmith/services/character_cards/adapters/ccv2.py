"""Character Card V2, wrapped ({spec, spec_version, data}) and legacy unwrapped."""

import logging
from typing import Any, Dict

from ..errors import InvalidCardStructure
from ..models import CanonicalCard, CardEnvelope, CardSpec, Dialect
from .fields import read_card_fields, require_anchor, write_card_fields, wrap

logger = logging.getLogger(__name__)


def wrapped_to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    data = raw.get("data")
    if not isinstance(data, dict):
        raise InvalidCardStructure("chara_card_v2 card has no data object")
    return read_card_fields(require_anchor(data, "ccv2"), Dialect.CCV2.value)


def wrapped_from_canonical(envelope: CardEnvelope) -> Dict[str, Any]:
    return wrap(CardSpec.V2, write_card_fields(envelope.data, CardSpec.V2))


def unwrapped_to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    # Legacy cards keep every field at the top level
    return read_card_fields(require_anchor(raw, "ccv2_unwrapped"), Dialect.CCV2_UNWRAPPED.value)


def unwrapped_from_canonical(envelope: CardEnvelope) -> Dict[str, Any]:
    return write_card_fields(envelope.data, CardSpec.V2)
