"""Shared fixtures for card tests."""

import copy
import json
from io import BytesIO

import pytest
from PIL import Image, PngImagePlugin

from cardsmith.services.character_cards import ConversionService, InMemoryCardStore
from cardsmith.services.character_cards.archive import write_zip


V2_CARD = {
    "spec": "chara_card_v2",
    "spec_version": "2.0",
    "data": {
        "name": "Nova",
        "description": "A curious android librarian.",
        "personality": "Warm, precise",
        "scenario": "The archive at night",
        "first_mes": "Hello {{user}}, looking for something?",
        "mes_example": "<START>\n{{char}}: Shh.",
        "creator_notes": "Test card",
        "system_prompt": "",
        "post_history_instructions": "",
        "alternate_greetings": ["Welcome back, {{user}}."],
        "tags": ["android", "library"],
        "creator": "tester",
        "character_version": "1.0",
        "extensions": {"talkativeness": "0.5"},
        "character_book": {
            "name": "Archive lore",
            "extensions": {},
            "entries": [
                {
                    "id": 0,
                    "keys": ["archive"],
                    "content": "The archive never closes.",
                    "extensions": {},
                    "enabled": True,
                    "insertion_order": 10,
                },
            ],
        },
    },
}


V3_CARD = {
    "spec": "chara_card_v3",
    "spec_version": "3.0",
    "data": {
        **copy.deepcopy(V2_CARD["data"]),
        "group_only_greetings": ["Hi all."],
        "source": ["https://example.com/nova"],
        "creation_date": 1700000000,
        "modification_date": 1700000500,
        "nickname": "Nov",
    },
}


def make_png(text_chunks=None, size=(4, 4), color=(200, 30, 30)) -> bytes:
    """Small PNG, optionally carrying tEXt chunks."""
    image = Image.new("RGB", size, color=color)
    info = None
    if text_chunks:
        info = PngImagePlugin.PngInfo()
        for keyword, value in text_chunks:
            info.add_text(keyword, value)
    output = BytesIO()
    image.save(output, format="PNG", pnginfo=info)
    return output.getvalue()


def make_voxta_package(character=None, books=None, thumbnail=None, extra=None) -> bytes:
    """Voxta package with one character and its memory books."""
    character = character or {
        "$type": "character",
        "Id": "char-1",
        "Name": "Aria",
        "Profile": "A ship AI who loves {{ user }}.",
        "Description": "Silver hologram",
        "Personality": "Dry wit",
        "FirstMessage": "Welcome aboard, {{ user }}.",
        "Tags": ["scifi"],
        "MemoryBooks": ["book-1"],
        "TimeAware": True,
    }
    books = books if books is not None else {
        "book-1": {
            "$type": "book",
            "Id": "book-1",
            "Name": "Ship log",
            "Items": [
                {"Id": "item-1", "Keywords": ["engine"], "Text": "The engine hums.", "Weight": 2},
                {"Id": "item-2", "Keywords": ["old"], "Text": "Gone.", "Deleted": True},
            ],
        },
    }
    files = [(f"Characters/{character['Id']}/character.json", json.dumps(character).encode("utf-8"))]
    if thumbnail:
        files.append((f"Characters/{character['Id']}/thumbnail.png", thumbnail))
    for book_id, book in books.items():
        files.append((f"Books/{book_id}/book.json", json.dumps(book).encode("utf-8")))
    files.extend(extra or [])
    return write_zip(files)


@pytest.fixture
def v2_card():
    return copy.deepcopy(V2_CARD)


@pytest.fixture
def v3_card():
    return copy.deepcopy(V3_CARD)


@pytest.fixture
def store():
    return InMemoryCardStore()


@pytest.fixture
def service(store):
    return ConversionService(store)
