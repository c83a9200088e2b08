"""
Tests for the conversion service.

Tests cover:
- JSON, PNG and CHARX round trips
- Voxta import/export and its documented losses
- Batch isolation
- Error stages and persistence rollback
"""

import asyncio
import base64
import json

import pytest

from cardsmith.services.character_cards import (
    ConversionService,
    ImportFile,
    InMemoryCardStore,
)
from cardsmith.services.character_cards.archive import read_zip, write_zip
from cardsmith.services.character_cards.errors import (
    CardNotFound,
    ExportStageError,
    ImportStageError,
    NoEmbeddedData,
    UnsupportedConversion,
)
from cardsmith.services.character_cards.macro_processor import normalize_macro_spacing
from cardsmith.services.character_cards.metadata_handler import PNGMetadataHandler
from cardsmith.services.character_cards.models import CardSpec, ContainerKind, Dialect

from conftest import make_png, make_voxta_package


def json_bytes(card) -> bytes:
    return json.dumps(card).encode("utf-8")


def png_with_card(card, keyword="chara", **kwargs) -> bytes:
    encoded = base64.b64encode(json.dumps(card).encode("utf-8")).decode("ascii")
    return make_png([(keyword, encoded)], **kwargs)


def make_charx(card, extra_files=()) -> bytes:
    return write_zip([("card.json", json.dumps(card).encode("utf-8"))] + list(extra_files))


def asset_summary(assets):
    return sorted((a.type, a.name, a.ext, a.is_main, a.data) for a in assets)


class FailingStore(InMemoryCardStore):
    """Store whose n-th put fails."""

    def __init__(self, fail_on: int):
        super().__init__()
        self.fail_on = fail_on
        self.calls = 0

    def put(self, card_id, envelope, assets):
        self.calls += 1
        if self.calls == self.fail_on:
            raise RuntimeError("disk full")
        super().put(card_id, envelope, assets)


class TestJsonRoundTrip:
    """Plain JSON import and export."""

    def test_import_v2(self, service, store, v2_card):
        outcome = service.import_card(json_bytes(v2_card), "nova.json")

        assert outcome.detected_dialect == Dialect.CCV2
        assert outcome.container == ContainerKind.PLAIN_JSON
        assert outcome.envelope.spec == CardSpec.V2
        assert outcome.envelope.data.name == "Nova"
        assert outcome.card.id in store

    def test_export_reproduces_card(self, service, v2_card):
        """Test a clean V2 card exports to the same JSON it came from."""
        outcome = service.import_card(json_bytes(v2_card))

        result = service.export_card(outcome.card.id, "json")

        assert result.content_type == "application/json"
        assert result.filename == "Nova.json"
        assert json.loads(result.data) == v2_card

    @pytest.mark.parametrize("fixture_name", ["v2_card", "v3_card"])
    def test_canonical_round_trip(self, service, request, fixture_name):
        """Test import -> export -> import keeps every modeled field and extensions."""
        card = request.getfixturevalue(fixture_name)
        first = service.import_card(json_bytes(card))

        exported = service.export_card(first.card.id, "json")
        second = service.import_card(exported.data)

        assert second.envelope.spec == first.envelope.spec
        assert second.envelope.data == first.envelope.data

    def test_export_dialect(self, service, v2_card):
        outcome = service.import_card(json_bytes(v2_card))

        payload = json.loads(service.export_card(outcome.card.id, "json", dialect="ccv2_unwrapped").data)

        assert "spec" not in payload
        assert payload["name"] == "Nova"

    def test_lenient_json_recovered(self, service, v2_card):
        """Test a card wrapped in stray text still imports."""
        data = b"exported by tool v1\n" + json_bytes(v2_card) + b"\n-- end"
        outcome = service.import_card(data, "nova.json")
        assert outcome.envelope.data.name == "Nova"

    def test_legacy_position_kept(self, service, v2_card):
        """Test a numeric position lands in extensions and is reported."""
        v2_card["data"]["character_book"]["entries"][0]["position"] = 0

        outcome = service.import_card(json_bytes(v2_card))

        entry = outcome.envelope.data.character_book.entries[0]
        assert entry.position is None
        assert entry.extensions["ccv2_position"] == 0
        assert any("legacy position" in w for w in outcome.warnings)


class TestPngRoundTrip:
    """PNG import and export."""

    def test_import_keeps_image_as_main_asset(self, service, v2_card):
        png = png_with_card(v2_card)

        outcome = service.import_card(png, "nova.png")

        assert outcome.container == ContainerKind.PNG
        assert outcome.card.assets[0].is_main
        assert outcome.card.assets[0].data == png

    def test_pixels_identical_after_export(self, service, v2_card):
        png = png_with_card(v2_card, size=(12, 12), color=(10, 200, 90))
        outcome = service.import_card(png)

        result = service.export_card(outcome.card.id, "png")

        assert result.content_type == "image/png"
        assert PNGMetadataHandler.pixel_chunks(result.data) == PNGMetadataHandler.pixel_chunks(png)

    def test_alana_alternate_greetings(self, service, v2_card):
        """Test name and greeting order survive JSON -> PNG -> import."""
        v2_card["data"]["name"] = "Alana"
        v2_card["data"]["alternate_greetings"] = ["A", "B"]
        first = service.import_card(json_bytes(v2_card))

        png = service.export_card(first.card.id, "png").data
        second = service.import_card(png)

        assert second.envelope.data.name == "Alana"
        assert second.envelope.data.alternate_greetings == ["A", "B"]

    def test_json_card_exported_to_blank_png(self, service, v3_card):
        """Test a card without an image gets a generated one."""
        outcome = service.import_card(json_bytes(v3_card))

        result = service.export_card(outcome.card.id, "png")
        reread = PNGMetadataHandler.read_card(result.data)

        assert reread.keyword == "ccv3"
        assert reread.payload["data"]["nickname"] == "Nov"

    def test_v3_png_round_trip(self, service, v3_card):
        first = service.import_card(png_with_card(v3_card, keyword="ccv3"))

        second = service.import_card(service.export_card(first.card.id, "png").data)

        assert second.envelope.spec == CardSpec.V3
        assert second.envelope.data == first.envelope.data

    def test_no_text_chunks_reported(self, service):
        with pytest.raises(ImportStageError) as exc_info:
            service.import_card(make_png())

        error = exc_info.value
        assert error.stage == "decode"
        assert error.kind == "NoEmbeddedData"
        assert error.cause.reason == NoEmbeddedData.NO_TEXT_CHUNKS

    def test_wrong_keyword_reported(self, service, v2_card):
        with pytest.raises(ImportStageError) as exc_info:
            service.import_card(png_with_card(v2_card, keyword="Comment"))
        assert exc_info.value.cause.reason == NoEmbeddedData.NO_CARD_DATA


class TestCharx:
    """CHARX packages."""

    def charx_card(self, v3_card):
        v3_card["data"]["assets"] = [
            {"type": "icon", "uri": "embeded://assets/icon/images/main.png", "name": "main", "ext": "png"},
            {"type": "emotion", "uri": "embeded://assets/emotion/images/happy.png", "name": "happy", "ext": "png"},
            {"type": "background", "uri": "https://example.com/bg.png", "name": "bg", "ext": "png"},
        ]
        return v3_card

    def test_import_assets(self, service, v3_card):
        icon = make_png()
        data = make_charx(self.charx_card(v3_card), [
            ("assets/icon/images/main.png", icon),
            ("assets/emotion/images/happy.png", b"happy-bytes"),
            ("x_meta/1.json", b'{"type": "png"}'),
        ])

        outcome = service.import_card(data, "nova.charx")

        assert outcome.detected_dialect == Dialect.CHARX
        assert outcome.envelope.spec == CardSpec.V3
        by_type = {a.type: a for a in outcome.card.assets}
        assert by_type["icon"].is_main
        assert by_type["icon"].data == icon
        assert by_type["emotion"].name == "happy"
        assert by_type["x-meta"].data == b'{"type": "png"}'

    def test_export_regenerates_descriptors(self, service, v3_card):
        data = make_charx(self.charx_card(v3_card), [
            ("assets/icon/images/main.png", make_png()),
            ("assets/emotion/images/happy.png", b"happy-bytes"),
        ])
        outcome = service.import_card(data)

        entries = read_zip(service.export_card(outcome.card.id, "charx").data)
        card = json.loads(entries["card.json"])

        uris = sorted(d["uri"] for d in card["data"]["assets"])
        assert uris == [
            "embeded://assets/emotion/images/happy.png",
            "embeded://assets/icon/images/main.png",
            "https://example.com/bg.png",
        ]
        assert entries["assets/emotion/images/happy.png"] == b"happy-bytes"

    def test_v2_upgrade_idempotent(self, service, v2_card):
        """Test v2 -> CHARX is V3, and a second CHARX pass changes nothing."""
        original = service.import_card(json_bytes(v2_card))

        first = service.import_card(service.export_card(original.card.id, "charx").data)
        second = service.import_card(service.export_card(first.card.id, "charx").data)

        assert first.envelope.spec == CardSpec.V3
        assert first.envelope.data.creation_date is not None
        assert second.envelope.data == first.envelope.data
        assert asset_summary(second.card.assets) == asset_summary(first.card.assets)

    def test_png_avatar_becomes_main_icon(self, service, v2_card):
        png = png_with_card(v2_card)
        outcome = service.import_card(png)

        entries = read_zip(service.export_card(outcome.card.id, "charx").data)

        assert entries["assets/icon/images/main.png"] == png

    def test_unsafe_path_rejected(self, service, v3_card):
        data = make_charx(v3_card, [("../evil.txt", b"x")])

        with pytest.raises(ImportStageError) as exc_info:
            service.import_card(data)

        assert exc_info.value.kind == "InvalidCardStructure"


class TestVoxta:
    """Voxta packages (lossy)."""

    def test_import(self, service):
        thumbnail = make_png(color=(1, 2, 3))
        outcome = service.import_card(make_voxta_package(thumbnail=thumbnail), "aria.voxpkg")

        card = outcome.envelope.data
        assert outcome.detected_dialect == Dialect.VOXTA
        assert card.name == "Aria"
        assert card.description == "A ship AI who loves {{ user }}."
        assert [e.content for e in card.character_book.entries] == ["The engine hums."]
        assert outcome.card.assets[0].is_main
        assert outcome.card.assets[0].data == thumbnail
        assert outcome.warnings

    def test_siblings(self, service):
        second = {"$type": "character", "Id": "char-2", "Name": "Bolt", "Personality": "Loud"}
        data = make_voxta_package(extra=[("Characters/char-2/character.json", json.dumps(second).encode())])

        outcome = service.import_card(data)

        assert outcome.envelope.data.name == "Aria"
        assert [s.envelope.data.name for s in outcome.siblings] == ["Bolt"]
        assert len(outcome.card_ids) == 2

    def test_documented_loss(self, service, v2_card):
        """Test Voxta drops alternate greetings but keeps the core fields."""
        source = service.import_card(json_bytes(v2_card))

        exported = service.export_card(source.card.id, "voxta")
        reimported = service.import_card(exported.data)

        before, after = source.envelope.data, reimported.envelope.data
        assert after.alternate_greetings != before.alternate_greetings
        assert after.alternate_greetings == []
        for field in ("name", "description", "personality", "scenario", "first_mes"):
            assert normalize_macro_spacing(getattr(after, field)) == normalize_macro_spacing(getattr(before, field))
        assert any("alternate greetings" in w for w in exported.warnings)

    def test_angle_bracket_placeholders_survive(self, service, v2_card):
        """Test <BOT>/<USER> text comes back from Voxta as it went in."""
        v2_card["data"]["description"] = "<BOT> guards the archive for <USER>."
        source = service.import_card(json_bytes(v2_card))

        exported = service.export_card(source.card.id, "voxta")
        reimported = service.import_card(exported.data)

        assert reimported.envelope.data.description == "<BOT> guards the archive for <USER>."
        assert normalize_macro_spacing(reimported.envelope.data.description) == normalize_macro_spacing(
            source.envelope.data.description
        )

    def test_export_layout(self, service, v2_card):
        outcome = service.import_card(png_with_card(v2_card))

        result = service.export_card(outcome.card.id, "voxta")
        entries = read_zip(result.data)

        assert result.content_type == "application/zip"
        character_paths = [p for p in entries if p.endswith("/character.json")]
        assert len(character_paths) == 1
        character = json.loads(entries[character_paths[0]])
        assert character["FirstMessage"] == "Hello {{ user }}, looking for something?"
        assert any(p.endswith("/thumbnail.png") for p in entries)
        assert any(p.startswith("Books/") for p in entries)

    def test_reexport_to_json_uses_tight_macros(self, service):
        outcome = service.import_card(make_voxta_package())

        payload = json.loads(service.export_card(outcome.card.id, "json").data)

        assert payload["data"]["description"] == "A ship AI who loves {{user}}."
        assert payload["data"]["extensions"]["voxta"]["id"] == "char-1"

    def test_reexport_converts_nested_book_text(self, service):
        """Test macros inside the lorebook description are tightened too."""
        books = {
            "book-1": {
                "Id": "book-1",
                "Name": "Ship log",
                "Description": "What {{ char }} remembers",
                "Items": [{"Id": "item-1", "Keywords": ["engine"], "Text": "{{ char }} hums."}],
            },
        }
        outcome = service.import_card(make_voxta_package(books=books))

        payload = json.loads(service.export_card(outcome.card.id, "json").data)

        book = payload["data"]["character_book"]
        assert book["description"] == "What {{char}} remembers"
        assert book["entries"][0]["content"] == "{{char}} hums."


class TestChubExtensions:
    """Chub extension objects survive every container."""

    @pytest.mark.parametrize("fmt", ["json", "png", "charx"])
    def test_preserved(self, service, v2_card, fmt):
        chub = {"id": 5226801, "full_path": "someone/nova-librarian"}
        v2_card["data"]["extensions"]["chub"] = chub
        first = service.import_card(json_bytes(v2_card))
        assert first.detected_dialect == Dialect.CHUB

        second = service.import_card(service.export_card(first.card.id, fmt).data)

        assert second.envelope.data.extensions["chub"] == chub


class TestBatch:
    """Concurrent batch import."""

    def test_isolation(self, service, v2_card, v3_card):
        files = [
            ImportFile(json_bytes(v2_card), "a.json"),
            ImportFile(b"\x00\x01corrupt", "b.bin"),
            ImportFile(png_with_card(v3_card, keyword="ccv3"), "c.png"),
            ImportFile(b'{"name": ', "d.json"),
        ]

        outcome = asyncio.run(service.import_batch(files, parallelism=2))

        assert [r.index for r in outcome.results] == [0, 1, 2, 3]
        assert outcome.success_count == 2
        assert outcome.failure_count == 2
        assert outcome.results[1].error_kind == "UnrecognizedFormat"
        assert outcome.results[1].error_stage == "detect"
        assert outcome.results[3].error_kind == "InvalidJson"
        assert outcome.results[2].outcome.envelope.spec == CardSpec.V3

    def test_single_corrupt_file(self, service, v2_card):
        files = [ImportFile(json_bytes(v2_card)) for _ in range(4)]
        files.insert(2, ImportFile(make_png(), "empty.png"))

        outcome = asyncio.run(service.import_batch(files))

        assert outcome.success_count == 4
        failures = [r for r in outcome.results if not r.success]
        assert len(failures) == 1
        assert failures[0].index == 2


class TestErrors:
    """Error stages and rollback."""

    def test_not_a_card(self, service):
        with pytest.raises(ImportStageError) as exc_info:
            service.import_card(b'{"hello": "world"}')
        assert exc_info.value.kind == "InvalidCardStructure"

    def test_unknown_format(self, service, v2_card):
        outcome = service.import_card(json_bytes(v2_card))
        with pytest.raises(UnsupportedConversion):
            service.export_card(outcome.card.id, "docx")

    def test_import_only_dialect(self, service, v2_card):
        outcome = service.import_card(json_bytes(v2_card))

        with pytest.raises(ExportStageError) as exc_info:
            service.export_card(outcome.card.id, "json", dialect="character_tavern")

        assert exc_info.value.stage == "adapt"
        assert exc_info.value.kind == "UnsupportedConversion"

    def test_unknown_card(self, service):
        with pytest.raises(CardNotFound):
            service.export_card("missing", "json")

    def test_persist_failure_rolls_back(self, v2_card):
        store = FailingStore(fail_on=2)
        service = ConversionService(store)
        second = {"$type": "character", "Id": "char-2", "Name": "Bolt", "Personality": "Loud"}
        data = make_voxta_package(extra=[("Characters/char-2/character.json", json.dumps(second).encode())])

        with pytest.raises(ImportStageError) as exc_info:
            service.import_card(data)

        assert exc_info.value.stage == "persist"
        assert exc_info.value.kind == "PersistenceFailure"
        assert len(store) == 0

    def test_services_isolated(self, v2_card):
        first = ConversionService(InMemoryCardStore())
        second = ConversionService(InMemoryCardStore())

        outcome = first.import_card(json_bytes(v2_card))

        with pytest.raises(CardNotFound):
            second.get_card(outcome.card.id)

    def test_stored_card_is_a_copy(self, service, v2_card):
        outcome = service.import_card(json_bytes(v2_card))

        stored = service.get_card(outcome.card.id)
        stored.envelope.data.name = "Changed"

        assert service.get_card(outcome.card.id).envelope.data.name == "Nova"
