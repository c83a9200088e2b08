"""
Voxta character mapping (lossy).

Field map, Voxta -> canonical:

    Profile          -> description
    Description      -> extensions.voxta.appearance  (physical description)
    Personality      -> personality
    Scenario         -> scenario
    FirstMessage     -> first_mes
    MessageExamples  -> mes_example
    Creator          -> creator
    CreatorNotes     -> creator_notes
    Tags             -> tags
    Version          -> character_version

Voxta has no alternate greetings, system prompt or post-history
instructions, so those do not survive an export. Memory books flatten into
one character book; on export the book comes back as a single Voxta book.
Macros are written in Voxta's spaced form (``{{ char }}``) and kept that way
on import. Legacy placeholders such as ``<BOT>`` and ``<USER>`` are left as
written.

The adapter's raw form is a bundle ``{"character": {...}, "books": {id: {...}}}``
since a Voxta character alone does not carry its memory books.
"""

import copy
import logging
import uuid
from typing import Any, Dict, List, Optional

from ..errors import InvalidCardStructure
from ..lorebook_normalizer import normalize_lorebook
from ..macro_processor import standard_to_voxta
from ..models import CanonicalCard, CardEnvelope, Dialect, Lorebook
from .fields import iso_timestamp, normalize_timestamp, string_list, text

logger = logging.getLogger(__name__)

CHAT_SETTINGS = {
    "ChatStyle": "chatStyle",
    "EnableThinkingSpeech": "enableThinkingSpeech",
    "NotifyUserAwayReturn": "notifyUserAwayReturn",
    "TimeAware": "timeAware",
    "UseMemory": "useMemory",
    "MaxTokens": "maxTokens",
    "MaxSentences": "maxSentences",
}

MAPPED_KEYS = {
    "$type", "Id", "PackageId", "Name", "Version", "Description", "Personality",
    "Profile", "Scenario", "FirstMessage", "MessageExamples", "Creator",
    "CreatorNotes", "Tags", "TextToSpeech", "Scripts", "MemoryBooks",
} | set(CHAT_SETTINGS)

# Spaced-macro rewrite applies to these on export
TEXT_KEYS = ("Description", "Personality", "Profile", "Scenario", "FirstMessage", "MessageExamples", "CreatorNotes")


def _book_to_lorebook(books: List[Dict[str, Any]]) -> Optional[Lorebook]:
    """Flatten referenced memory books into one character book."""
    if not books:
        return None
    entries = []
    for book in books:
        for item in book.get("Items") or []:
            if not isinstance(item, dict) or item.get("Deleted"):
                continue
            entries.append({
                "keys": string_list(item.get("Keywords"), allow_single=True),
                "content": text(item.get("Text")),
                "priority": item.get("Weight"),
                "enabled": True,
                "extensions": {"voxta": {"id": item.get("Id"), "bookId": book.get("Id")}},
            })
    first = books[0]
    raw_book = {
        "name": text(first.get("Name")) or None,
        "description": text(first.get("Description")) or None,
        "extensions": {"voxta": {
            "id": first.get("Id"),
            "books": [b.get("Id") for b in books],
            "version": first.get("Version"),
        }},
        "entries": entries,
    }
    return normalize_lorebook(raw_book, Dialect.VOXTA.value)


def to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    character = raw.get("character")
    if not isinstance(character, dict):
        raise InvalidCardStructure("voxta: bundle has no character object")
    if not any(character.get(key) for key in ("Name", "Profile", "Personality", "FirstMessage")):
        raise InvalidCardStructure("voxta: character has no name and no identifiable fields")

    books_by_id = raw.get("books") or {}
    book_ids = string_list(character.get("MemoryBooks"))
    referenced = [books_by_id[book_id] for book_id in book_ids if book_id in books_by_id]
    missing = [book_id for book_id in book_ids if book_id not in books_by_id]
    if missing:
        logger.warning(f"Voxta character references missing memory books: {missing}")

    voxta_ext: Dict[str, Any] = {
        "id": character.get("Id"),
        "packageId": character.get("PackageId"),
        "version": character.get("Version"),
        "appearance": text(character.get("Description")),
        "textToSpeech": copy.deepcopy(character.get("TextToSpeech") or []),
        "chatSettings": {
            ext_key: character[key] for key, ext_key in CHAT_SETTINGS.items() if key in character
        },
        "scripts": copy.deepcopy(character.get("Scripts") or []),
        "original": {k: copy.deepcopy(v) for k, v in character.items() if k not in MAPPED_KEYS},
    }

    original = voxta_ext["original"]
    return CanonicalCard(
        name=text(character.get("Name")),
        description=text(character.get("Profile")),
        personality=text(character.get("Personality")),
        scenario=text(character.get("Scenario")),
        first_mes=text(character.get("FirstMessage")),
        mes_example=text(character.get("MessageExamples")),
        creator=text(character.get("Creator")),
        creator_notes=text(character.get("CreatorNotes")),
        character_version=text(character.get("Version")),
        tags=string_list(character.get("Tags")),
        creation_date=normalize_timestamp(original.get("DateCreated")),
        modification_date=normalize_timestamp(original.get("DateModified")),
        extensions={"voxta": voxta_ext},
        character_book=_book_to_lorebook(referenced),
    )


def _lorebook_to_book(book: Lorebook, package_id: Optional[str]) -> Dict[str, Any]:
    ext = book.extensions.get("voxta") if isinstance(book.extensions.get("voxta"), dict) else {}
    items = []
    for entry in book.entries:
        entry_ext = entry.extensions.get("voxta") if isinstance(entry.extensions.get("voxta"), dict) else {}
        items.append({
            "Id": entry_ext.get("id") or str(uuid.uuid4()),
            "Keywords": list(entry.keys),
            "Text": standard_to_voxta(entry.content),
            "Weight": entry.priority if entry.priority is not None else 0,
            "Deleted": not entry.enabled,
        })
    voxta_book = {
        "$type": "book",
        "Id": ext.get("id") or str(uuid.uuid4()),
        "Name": book.name or "Memory Book",
        "Items": items,
    }
    if book.description:
        voxta_book["Description"] = book.description
    if ext.get("version"):
        voxta_book["Version"] = ext["version"]
    if package_id:
        voxta_book["PackageId"] = package_id
    return voxta_book


def from_canonical(envelope: CardEnvelope) -> Dict[str, Any]:
    """
    Build the Voxta bundle for a card.

    Ids kept in extensions.voxta are reused so re-exporting an imported
    package updates the same character in Voxta.
    """
    card = envelope.data
    ext = card.extensions.get("voxta") if isinstance(card.extensions.get("voxta"), dict) else {}
    if card.alternate_greetings:
        logger.info(f"Voxta export drops {len(card.alternate_greetings)} alternate greetings")

    original = ext.get("original") if isinstance(ext.get("original"), dict) else {}
    character: Dict[str, Any] = copy.deepcopy(original)
    character.update({
        "$type": "character",
        "Id": ext.get("id") or str(uuid.uuid4()),
        "Name": card.name,
        "Version": card.character_version,
        "Description": ext.get("appearance") or "",
        "Personality": card.personality,
        "Profile": card.description,
        "Scenario": card.scenario,
        "FirstMessage": card.first_mes,
        "MessageExamples": card.mes_example,
        "Creator": card.creator,
        "CreatorNotes": card.creator_notes,
        "Tags": list(card.tags),
    })
    if ext.get("packageId"):
        character["PackageId"] = ext["packageId"]
    if ext.get("textToSpeech"):
        character["TextToSpeech"] = copy.deepcopy(ext["textToSpeech"])
    if ext.get("scripts"):
        character["Scripts"] = copy.deepcopy(ext["scripts"])
    settings = ext.get("chatSettings") if isinstance(ext.get("chatSettings"), dict) else {}
    for key, ext_key in CHAT_SETTINGS.items():
        if ext_key in settings:
            character[key] = settings[ext_key]
    if card.creation_date is not None:
        character["DateCreated"] = iso_timestamp(card.creation_date)
    if card.modification_date is not None:
        character["DateModified"] = iso_timestamp(card.modification_date)

    for key in TEXT_KEYS:
        character[key] = standard_to_voxta(character.get(key) or "")

    books = []
    if card.character_book is not None and card.character_book.entries:
        book = _lorebook_to_book(card.character_book, ext.get("packageId"))
        character["MemoryBooks"] = [book["Id"]]
        books.append(book)

    return {"character": character, "books": books}
