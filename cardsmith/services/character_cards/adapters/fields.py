"""
Field mapping shared by the CCv2/CCv3-shaped dialects.

``read_card_fields`` turns a flat card ``data`` dict into a CanonicalCard and
``write_card_fields`` does the reverse for a target spec. Anything in ``data``
the canonical model does not name is parked under
``extensions["x_unmapped_fields"]`` and put back where it came from on write.
"""

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional

from ..errors import InvalidCardStructure
from ..lorebook_normalizer import dump_lorebook, normalize_lorebook
from ..models import CanonicalCard, CardSpec, SPEC_VERSIONS

logger = logging.getLogger(__name__)

TEXT_FIELDS = (
    "name", "description", "personality", "scenario", "first_mes", "mes_example",
    "creator_notes", "system_prompt", "post_history_instructions", "creator",
    "character_version",
)
LIST_FIELDS = ("tags", "alternate_greetings")
V3_FIELDS = (
    "group_only_greetings", "creator_notes_multilingual", "source",
    "creation_date", "modification_date",
)
MODELED_FIELDS = set(TEXT_FIELDS) | set(LIST_FIELDS) | set(V3_FIELDS) | {"extensions", "character_book"}

# At least one of these must be present for a dict to count as a card
ANCHOR_FIELDS = ("name", "description", "personality", "scenario", "first_mes", "mes_example")

UNMAPPED_KEY = "x_unmapped_fields"

# v3-only data fields that v2 has no slot for
V3_ONLY_UNMAPPED = ("nickname", "assets")

# 10-digit values are seconds, 13-digit values are milliseconds
TIMESTAMP_THRESHOLD = 10_000_000_000


def has_anchor(data: Any) -> bool:
    """True when a dict carries at least one identifying card field (name, first_mes...)."""
    return isinstance(data, dict) and any(key in data for key in ANCHOR_FIELDS)


def require_anchor(data: Any, dialect: str) -> Dict[str, Any]:
    """
    Return card data after checking it looks like a card at all.

    Args:
        data: Candidate card ``data`` object
        dialect: Dialect name used in the error message

    Returns:
        The same dict, unchanged

    Raises:
        InvalidCardStructure: Not a dict, or no identifying field present
    """
    if not isinstance(data, dict):
        raise InvalidCardStructure(f"{dialect}: card data must be a JSON object, got {type(data).__name__}")
    if not has_anchor(data):
        raise InvalidCardStructure(f"{dialect}: no name and no identifiable character fields")
    return data


def normalize_timestamp(value: Any) -> Optional[int]:
    """Unix seconds from seconds, milliseconds, numeric strings or ISO-8601; else None."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        if value != value or value in (float("inf"), float("-inf")) or value < 0:
            return None
        value = int(value)
        return value // 1000 if value > TIMESTAMP_THRESHOLD else value
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        if raw.isdigit():
            num = int(raw)
            return num // 1000 if num > TIMESTAMP_THRESHOLD else num
        try:
            parsed = datetime.fromisoformat(raw.replace("Z", "+00:00"))
        except ValueError:
            logger.debug(f"Dropping unparseable timestamp {raw!r}")
            return None
        if parsed.tzinfo is None:
            parsed = parsed.replace(tzinfo=timezone.utc)
        return int(parsed.timestamp())
    return None


def iso_timestamp(value: Optional[int]) -> Optional[str]:
    """Unix seconds to an ISO-8601 UTC string (None passes through)."""
    if value is None:
        return None
    return datetime.fromtimestamp(value, tz=timezone.utc).isoformat().replace("+00:00", "Z")


def text(value: Any) -> str:
    """The value if it is a string, otherwise an empty string."""
    return value if isinstance(value, str) else ""


def string_list(value: Any, allow_single: bool = False) -> List[str]:
    """Keep only string members; optionally promote a lone string to a list."""
    if isinstance(value, str):
        return [value] if allow_single else []
    if isinstance(value, (list, tuple)):
        return [item for item in value if isinstance(item, str)]
    return []


def read_card_fields(data: Dict[str, Any], dialect: Optional[str] = None) -> CanonicalCard:
    """Build a CanonicalCard from a flat card ``data`` dict."""
    extensions = data.get("extensions")
    extensions = copy.deepcopy(extensions) if isinstance(extensions, dict) else {}

    unmapped = {key: copy.deepcopy(value) for key, value in data.items() if key not in MODELED_FIELDS}
    if unmapped:
        existing = extensions.get(UNMAPPED_KEY)
        extensions[UNMAPPED_KEY] = {**(existing if isinstance(existing, dict) else {}), **unmapped}
        logger.debug(f"Keeping unmapped card fields: {sorted(unmapped)}")

    multilingual = data.get("creator_notes_multilingual")
    multilingual = (
        {lang: note for lang, note in multilingual.items() if isinstance(note, str)}
        if isinstance(multilingual, dict) else {}
    )

    card = CanonicalCard(
        **{name: text(data.get(name)) for name in TEXT_FIELDS},
        tags=string_list(data.get("tags")),
        alternate_greetings=string_list(data.get("alternate_greetings")),
        group_only_greetings=string_list(data.get("group_only_greetings")),
        creator_notes_multilingual=multilingual,
        source=string_list(data.get("source"), allow_single=True),
        creation_date=normalize_timestamp(data.get("creation_date")),
        modification_date=normalize_timestamp(data.get("modification_date")),
        extensions=extensions,
        character_book=normalize_lorebook(data.get("character_book"), dialect),
    )
    return card


def write_card_fields(card: CanonicalCard, spec: CardSpec) -> Dict[str, Any]:
    """Render a CanonicalCard as a card ``data`` dict for the given spec."""
    data: Dict[str, Any] = {
        "name": card.name,
        "description": card.description,
        "personality": card.personality,
        "scenario": card.scenario,
        "first_mes": card.first_mes,
        "mes_example": card.mes_example,
        "creator_notes": card.creator_notes,
        "system_prompt": card.system_prompt,
        "post_history_instructions": card.post_history_instructions,
        "alternate_greetings": list(card.alternate_greetings),
        "tags": list(card.tags),
        "creator": card.creator,
        "character_version": card.character_version,
    }
    if card.character_book is not None:
        data["character_book"] = dump_lorebook(card.character_book)

    if spec == CardSpec.V3:
        data["group_only_greetings"] = list(card.group_only_greetings)
        if card.creator_notes_multilingual:
            data["creator_notes_multilingual"] = dict(card.creator_notes_multilingual)
        data["source"] = list(card.source)
        if card.creation_date is not None:
            data["creation_date"] = card.creation_date
        if card.modification_date is not None:
            data["modification_date"] = card.modification_date

    extensions = copy.deepcopy(card.extensions)
    unmapped = extensions.pop(UNMAPPED_KEY, None)
    data["extensions"] = extensions

    if isinstance(unmapped, dict):
        held_back = {}
        for key, value in unmapped.items():
            if key in data:
                continue
            if spec == CardSpec.V2 and key in V3_ONLY_UNMAPPED:
                held_back[key] = value
                continue
            data[key] = value
        if held_back:
            extensions[UNMAPPED_KEY] = held_back
    return data


def wrap(spec: CardSpec, data: Dict[str, Any]) -> Dict[str, Any]:
    """
    Wrap card data in its spec envelope.

    Args:
        spec: Target spec, which decides ``spec`` and ``spec_version``
        data: Card ``data`` object

    Returns:
        ``{"spec": ..., "spec_version": ..., "data": data}``
    """
    return {"spec": spec.value, "spec_version": SPEC_VERSIONS[spec], "data": data}


def strip_keys(data: Dict[str, Any], keys: Iterable[str]) -> Dict[str, Any]:
    drop = set(keys)
    return {key: value for key, value in data.items() if key not in drop}
