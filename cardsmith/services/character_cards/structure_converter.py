"""
Direct V2 <-> V3 structural conversion.

Works on raw card JSON without touching containers or assets, for migrating
a card's spec in place. V2 input may be wrapped or unwrapped. Output is
wrapped unless an unwrapped V2 result is asked for.
"""

import copy
import logging
import time
from typing import Any, Dict, Optional, Union

from .adapters.fields import V3_FIELDS, V3_ONLY_UNMAPPED, require_anchor, wrap
from .errors import InvalidCardStructure, UnsupportedConversion
from .models import CardSpec

logger = logging.getLogger(__name__)

SPEC_ALIASES = {
    "v2": CardSpec.V2,
    "chara_card_v2": CardSpec.V2,
    "v3": CardSpec.V3,
    "chara_card_v3": CardSpec.V3,
}

# Everything V3 can hold that V2 cannot
V3_ONLY_FIELDS = V3_FIELDS + V3_ONLY_UNMAPPED


def resolve_spec(value: Union[str, CardSpec]) -> CardSpec:
    """Accept 'v2'/'v3' or the full spec tags."""
    key = value.value if isinstance(value, CardSpec) else str(value).strip().lower()
    try:
        return SPEC_ALIASES[key]
    except KeyError:
        raise UnsupportedConversion(f"Unknown card spec '{value}'")


def _source_data(card_json: Any, spec: CardSpec) -> Dict[str, Any]:
    if not isinstance(card_json, dict):
        raise InvalidCardStructure("Card must be a JSON object")

    claimed = card_json.get("spec")
    if isinstance(claimed, str) and claimed in SPEC_ALIASES and SPEC_ALIASES[claimed] != spec:
        raise InvalidCardStructure(f"Card is tagged {claimed}, not {spec.value}")

    data = card_json.get("data")
    if isinstance(data, dict):
        return require_anchor(data, spec.value)
    if spec == CardSpec.V3:
        raise InvalidCardStructure("chara_card_v3 card has no data object")
    # Unwrapped V2
    fields = {k: v for k, v in card_json.items() if k not in ("spec", "spec_version")}
    return require_anchor(fields, spec.value)


def convert_structure(
    card_json: Any,
    from_spec: Union[str, CardSpec],
    to_spec: Union[str, CardSpec],
    now: Optional[int] = None,
    wrapped: bool = True,
) -> Dict[str, Any]:
    """
    Convert a raw card between V2 and V3.

    V2 -> V3 adds empty ``group_only_greetings``/``source`` and stamps the
    creation/modification dates when absent. V3 -> V2 copies everything V2
    can represent and drops the rest. With ``wrapped=False`` a V2 result is
    returned as the bare field object (V3 output is always wrapped).

    Raises:
        UnsupportedConversion: Unknown spec, or from == to
        InvalidCardStructure: Input does not match ``from_spec``
    """
    source = resolve_spec(from_spec)
    target = resolve_spec(to_spec)
    if source == target:
        raise UnsupportedConversion(f"No conversion from {source.value} to {target.value}")

    data = copy.deepcopy(_source_data(card_json, source))

    if target == CardSpec.V3:
        now = int(time.time()) if now is None else now
        data.setdefault("group_only_greetings", [])
        data.setdefault("source", [])
        data.setdefault("creation_date", now)
        data.setdefault("modification_date", now)
        data.setdefault("extensions", {})
        data.setdefault("alternate_greetings", [])
        data.setdefault("tags", [])
        logger.debug(f"Converted '{data.get('name', '')}' from V2 to V3")
        return wrap(CardSpec.V3, data)

    dropped = [key for key in V3_ONLY_FIELDS if key in data]
    for key in dropped:
        del data[key]
    if dropped:
        logger.debug(f"V3 -> V2 dropped fields: {dropped}")
    return wrap(CardSpec.V2, data) if wrapped else data
