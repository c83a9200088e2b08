"""
CharacterTavern cards (import only).

Best effort: CharacterTavern exports V3 cards with millisecond timestamps,
and some downloads are just ``{"meta": {"name": ...}, "data": {...}}`` with
few structured fields. ``meta.name`` stands in when the data has no name.
"""

import copy
import logging
from typing import Any, Dict

from ..errors import InvalidCardStructure
from ..models import CanonicalCard, Dialect
from .fields import TIMESTAMP_THRESHOLD, has_anchor, read_card_fields, strip_keys

logger = logging.getLogger(__name__)


def _card_data(raw: Dict[str, Any]) -> Dict[str, Any]:
    data = raw.get("data")
    if isinstance(data, dict):
        return data
    return strip_keys(raw, ("spec", "spec_version", "meta"))


def has_millisecond_timestamps(raw: Dict[str, Any]) -> bool:
    data = _card_data(raw)
    return any(
        isinstance(data.get(key), (int, float)) and not isinstance(data.get(key), bool)
        and data[key] > TIMESTAMP_THRESHOLD
        for key in ("creation_date", "modification_date")
    )


def is_meta_shape(raw: Dict[str, Any]) -> bool:
    meta = raw.get("meta")
    return isinstance(meta, dict) and isinstance(meta.get("name"), str) and isinstance(raw.get("data"), dict)


def to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    data = dict(_card_data(raw))
    meta = raw.get("meta") if isinstance(raw.get("meta"), dict) else {}
    meta_name = meta.get("name") if isinstance(meta.get("name"), str) else ""

    if not data.get("name") and meta_name:
        logger.debug(f"Using meta.name '{meta_name}' as card name")
        data["name"] = meta_name
    if not has_anchor(data):
        raise InvalidCardStructure("character_tavern: no name and no identifiable character fields")

    card = read_card_fields(data, Dialect.CHARACTER_TAVERN.value)
    if meta:
        card.extensions.setdefault("character_tavern", {"meta": copy.deepcopy(meta)})
    return card
