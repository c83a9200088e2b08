"""Character Card V3 (chara_card_v3)."""

from typing import Any, Dict

from ..errors import InvalidCardStructure
from ..models import CanonicalCard, CardEnvelope, CardSpec, Dialect
from .fields import read_card_fields, require_anchor, write_card_fields, wrap


def to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    data = raw.get("data")
    if not isinstance(data, dict):
        raise InvalidCardStructure("chara_card_v3 card has no data object")
    return read_card_fields(require_anchor(data, "ccv3"), Dialect.CCV3.value)


def from_canonical(envelope: CardEnvelope) -> Dict[str, Any]:
    return wrap(CardSpec.V3, write_card_fields(envelope.data, CardSpec.V3))
