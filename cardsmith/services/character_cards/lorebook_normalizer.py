"""
Lorebook Normalizer
===================

Entry-level rules shared by every adapter that can carry a character book.

Legacy numeric ``position`` values are deliberately NOT mapped onto the
``before_char``/``after_char`` enum. The source dialects never agreed on what
``0``/``1`` mean, so the raw value is parked in the entry's ``extensions``
under a dialect-specific key and the canonical ``position`` stays unset.
"""

import logging
import math
from typing import Any, Dict, List, Optional

from .models import EntryPosition, Lorebook, LorebookEntry

logger = logging.getLogger(__name__)

ENTRY_FIELDS = {
    "id", "name", "comment", "keys", "secondary_keys", "content", "enabled",
    "priority", "insertion_order", "case_sensitive", "selective", "constant",
    "depth", "probability", "position", "extensions",
}

BOOK_FIELDS = {
    "name", "description", "scan_depth", "token_budget",
    "recursive_scanning", "extensions", "entries",
}


def legacy_position_key(dialect: Optional[str]) -> str:
    """Extension key holding a legacy position value for a dialect."""
    return f"{dialect}_position" if dialect else "legacy_position"


def coerce_int(value: Any) -> Optional[int]:
    """Coerce numbers and numeric strings to int; anything else is None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value) if math.isfinite(value) else None
    if isinstance(value, str):
        raw = value.strip()
        if not raw:
            return None
        try:
            return int(raw)
        except ValueError:
            try:
                num = float(raw)
            except ValueError:
                return None
            return int(num) if math.isfinite(num) else None
    return None


def coerce_bool(value: Any) -> Optional[bool]:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        raw = value.strip().lower()
        if raw == "true":
            return True
        if raw == "false":
            return False
    return None


def coerce_keys(value: Any) -> List[str]:
    """A single string becomes a one-element list; non-strings are dropped."""
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    if isinstance(value, (list, tuple)):
        return [k for k in value if isinstance(k, str)]
    return []


def merge_extensions(existing: Dict[str, Any], added: Dict[str, Any]) -> Dict[str, Any]:
    """Shallow merge where keys already present always win."""
    merged = dict(existing)
    for key, value in added.items():
        if key not in merged:
            merged[key] = value
    return merged


def _normalize_position(raw: Any, dialect: Optional[str]) -> tuple:
    """
    Returns (position, extension_additions).

    Only the exact enum strings (or clearly worded variants like "before")
    become a canonical position.
    """
    if raw is None:
        return None, {}
    if isinstance(raw, str):
        pos = raw.strip().lower()
        if pos in (EntryPosition.BEFORE_CHAR.value, "before"):
            return EntryPosition.BEFORE_CHAR, {}
        if pos in (EntryPosition.AFTER_CHAR.value, "after"):
            return EntryPosition.AFTER_CHAR, {}
        if not pos:
            return None, {}
    # Numbers, numeric strings and unknown words keep their raw form
    return None, {legacy_position_key(dialect): raw}


def normalize_entry(raw: Dict[str, Any], dialect: Optional[str] = None) -> LorebookEntry:
    """Normalize one raw lorebook entry dict."""
    extensions = raw.get("extensions")
    if not isinstance(extensions, dict):
        extensions = {}

    added: Dict[str, Any] = {}
    position, position_ext = _normalize_position(raw.get("position"), dialect)
    added.update(position_ext)

    # Fields the canonical entry does not name survive in extensions
    for key, value in raw.items():
        if key not in ENTRY_FIELDS:
            added[key] = value

    enabled = raw.get("enabled")
    insertion_order = coerce_int(raw.get("insertion_order"))
    content = raw.get("content")

    return LorebookEntry(
        id=coerce_int(raw.get("id")),
        name=raw.get("name") if isinstance(raw.get("name"), str) else None,
        comment=raw.get("comment") if isinstance(raw.get("comment"), str) else None,
        keys=coerce_keys(raw.get("keys")),
        secondary_keys=coerce_keys(raw.get("secondary_keys")),
        content=content if isinstance(content, str) else "",
        enabled=enabled if isinstance(enabled, bool) else True,
        priority=coerce_int(raw.get("priority")),
        insertion_order=insertion_order if insertion_order is not None else 100,
        case_sensitive=coerce_bool(raw.get("case_sensitive")),
        selective=coerce_bool(raw.get("selective")),
        constant=coerce_bool(raw.get("constant")),
        depth=coerce_int(raw.get("depth")),
        probability=coerce_int(raw.get("probability")),
        position=position,
        extensions=merge_extensions(extensions, added),
    )


def normalize_lorebook(raw: Any, dialect: Optional[str] = None) -> Optional[Lorebook]:
    """
    Normalize a raw ``character_book`` value.

    Returns None when there is no book at all. Entries without an id get the
    next free one, in order, so ids stay stable from here on.
    """
    if raw is None:
        return None
    if not isinstance(raw, dict):
        logger.warning(f"Ignoring character_book of type {type(raw).__name__}")
        return None

    extensions = raw.get("extensions")
    if not isinstance(extensions, dict):
        extensions = {}
    extra = {k: v for k, v in raw.items() if k not in BOOK_FIELDS}

    raw_entries = raw.get("entries")
    if not isinstance(raw_entries, list):
        raw_entries = []

    entries = [normalize_entry(e, dialect) for e in raw_entries if isinstance(e, dict)]
    skipped = len(raw_entries) - len(entries)
    if skipped:
        logger.warning(f"Dropped {skipped} malformed lorebook entr{'y' if skipped == 1 else 'ies'}")

    seen = set()
    for entry in entries:
        if entry.id is not None and entry.id in seen:
            logger.debug(f"Duplicate lorebook entry id {entry.id}, reassigning")
            entry.id = None
        if entry.id is not None:
            seen.add(entry.id)
    next_id = max(seen, default=-1) + 1
    for entry in entries:
        if entry.id is None:
            entry.id = next_id
            next_id += 1

    return Lorebook(
        name=raw.get("name") if isinstance(raw.get("name"), str) else None,
        description=raw.get("description") if isinstance(raw.get("description"), str) else None,
        scan_depth=coerce_int(raw.get("scan_depth")),
        token_budget=coerce_int(raw.get("token_budget")),
        recursive_scanning=coerce_bool(raw.get("recursive_scanning")),
        extensions=merge_extensions(extensions, extra),
        entries=entries,
    )


def dump_entry(entry: LorebookEntry) -> Dict[str, Any]:
    """Render an entry back to wire form, omitting unset optionals."""
    data: Dict[str, Any] = {
        "keys": list(entry.keys),
        "content": entry.content,
        "extensions": dict(entry.extensions),
        "enabled": entry.enabled,
        "insertion_order": entry.insertion_order,
    }
    optional = {
        "id": entry.id,
        "name": entry.name,
        "comment": entry.comment,
        "priority": entry.priority,
        "case_sensitive": entry.case_sensitive,
        "selective": entry.selective,
        "constant": entry.constant,
        "depth": entry.depth,
        "probability": entry.probability,
        "position": entry.position.value if entry.position else None,
    }
    for key, value in optional.items():
        if value is not None:
            data[key] = value
    if entry.secondary_keys or entry.selective:
        data["secondary_keys"] = list(entry.secondary_keys)
    return data


def dump_lorebook(book: Lorebook) -> Dict[str, Any]:
    data: Dict[str, Any] = {}
    for key in ("name", "description", "scan_depth", "token_budget", "recursive_scanning"):
        value = getattr(book, key)
        if value is not None:
            data[key] = value
    data["extensions"] = dict(book.extensions)
    data["entries"] = [dump_entry(e) for e in book.entries]
    return data
