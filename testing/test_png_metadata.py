"""
Tests for PNG card metadata reading and writing.

Tests cover:
- Keyword precedence on read (v3 before v2)
- Plain and base64 chunk content
- Missing metadata reasons
- Chunk splicing that leaves pixel data untouched
"""

import base64
import json
from io import BytesIO

import pytest
from PIL import Image

from cardsmith.services.character_cards.errors import InvalidJson, NoEmbeddedData, UnrecognizedFormat
from cardsmith.services.character_cards.metadata_handler import PNGMetadataHandler
from cardsmith.services.character_cards.models import CardSpec

from conftest import make_png


def b64(payload) -> str:
    return base64.b64encode(json.dumps(payload).encode("utf-8")).decode("ascii")


def text_keywords(png: bytes):
    """Keywords of every tEXt chunk, in file order."""
    return [
        PNGMetadataHandler._chunk_keyword(png, start, end)
        for chunk_type, start, end in PNGMetadataHandler.iter_chunks(png)
        if chunk_type == b"tEXt"
    ]


class TestReadCard:
    """Extracting card JSON from PNG text chunks."""

    def test_reads_base64_chara_chunk(self, v2_card):
        """Test the standard v2 chunk decodes."""
        png = make_png([("chara", b64(v2_card))])

        result = PNGMetadataHandler.read_card(png)

        assert result.keyword == "chara"
        assert result.payload == v2_card

    def test_v3_keyword_wins(self, v2_card, v3_card):
        """Test ccv3 is preferred over chara when both exist."""
        png = make_png([("chara", b64(v2_card)), ("ccv3", b64(v3_card))])

        result = PNGMetadataHandler.read_card(png)

        assert result.keyword == "ccv3"
        assert result.payload["spec"] == "chara_card_v3"

    def test_plain_json_chunk(self, v2_card):
        """Test chunks holding plain JSON instead of base64 are accepted."""
        png = make_png([("chara", json.dumps(v2_card))])
        assert PNGMetadataHandler.read_card(png).payload == v2_card

    def test_legacy_keyword(self, v2_card):
        """Test the legacy 'character' keyword is recognized."""
        png = make_png([("character", b64(v2_card))])
        assert PNGMetadataHandler.read_card(png).payload["data"]["name"] == "Nova"

    def test_no_text_chunks(self):
        """Test a plain image reports no_text_chunks."""
        with pytest.raises(NoEmbeddedData) as exc_info:
            PNGMetadataHandler.read_card(make_png())
        assert exc_info.value.reason == NoEmbeddedData.NO_TEXT_CHUNKS

    def test_text_chunks_without_card(self):
        """Test unrelated text chunks report no_card_data."""
        with pytest.raises(NoEmbeddedData) as exc_info:
            PNGMetadataHandler.read_card(make_png([("Software", "Paint")]))
        assert exc_info.value.reason == NoEmbeddedData.NO_CARD_DATA

    def test_undecodable_chunk(self):
        """Test a card chunk with garbage content is InvalidJson."""
        garbage = base64.b64encode(b"not json at all").decode("ascii")
        with pytest.raises(InvalidJson):
            PNGMetadataHandler.read_card(make_png([("chara", garbage)]))

    def test_not_a_png(self):
        """Test non-PNG bytes are rejected."""
        with pytest.raises(UnrecognizedFormat):
            PNGMetadataHandler.read_text_chunks(b"definitely not an image")


class TestWriteCard:
    """Embedding card JSON into PNG bytes."""

    def test_pixels_untouched(self, v2_card):
        """Test IDAT bytes are identical after writing."""
        original = make_png([("Software", "Paint")], size=(16, 16))

        written = PNGMetadataHandler.write_card(original, v2_card, CardSpec.V2)

        assert PNGMetadataHandler.pixel_chunks(written) == PNGMetadataHandler.pixel_chunks(original)

    def test_unrelated_chunks_preserved(self, v2_card):
        """Test non-card text chunks survive."""
        written = PNGMetadataHandler.write_card(make_png([("Software", "Paint")]), v2_card, CardSpec.V2)

        chunks = PNGMetadataHandler.read_text_chunks(written)

        assert chunks["Software"] == "Paint"
        assert "chara" in chunks

    def test_v2_writes_single_chara_chunk(self, v2_card):
        """Test v2 export only writes 'chara'."""
        written = PNGMetadataHandler.write_card(make_png(), v2_card, CardSpec.V2)
        assert text_keywords(written) == ["chara"]

    def test_v3_writes_ccv3_and_compat_chunk(self, v3_card):
        """Test v3 export writes 'ccv3' plus a 'chara' copy."""
        written = PNGMetadataHandler.write_card(make_png(), v3_card, CardSpec.V3)

        assert sorted(text_keywords(written)) == ["ccv3", "chara"]
        assert PNGMetadataHandler.read_card(written).keyword == "ccv3"

    def test_v3_without_compat_chunk(self, v3_card):
        """Test the compatibility chunk can be turned off."""
        written = PNGMetadataHandler.write_card(make_png(), v3_card, CardSpec.V3, include_compat_chunk=False)
        assert text_keywords(written) == ["ccv3"]

    def test_stale_card_chunks_replaced(self, v2_card, v3_card):
        """Test re-embedding leaves exactly one current card chunk."""
        png = make_png([("ccv3", b64(v3_card)), ("chara", b64(v2_card))])
        v2_card["data"]["name"] = "Renamed"

        written = PNGMetadataHandler.write_card(png, v2_card, CardSpec.V2)

        assert text_keywords(written) == ["chara"]
        assert PNGMetadataHandler.read_card(written).payload["data"]["name"] == "Renamed"

    def test_unicode_survives(self, v2_card):
        """Test non-ASCII card text round trips through base64."""
        v2_card["data"]["name"] = "Élodie 星"
        written = PNGMetadataHandler.write_card(make_png(), v2_card, CardSpec.V2)
        assert PNGMetadataHandler.read_card(written).payload["data"]["name"] == "Élodie 星"

    def test_written_png_still_opens(self, v2_card):
        """Test Pillow can decode the spliced image."""
        written = PNGMetadataHandler.write_card(make_png(size=(8, 8)), v2_card, CardSpec.V2)

        image = Image.open(BytesIO(written))
        image.load()

        assert image.size == (8, 8)

    def test_jpeg_avatar_converted(self, v2_card):
        """Test a non-PNG avatar is converted before embedding."""
        output = BytesIO()
        Image.new("RGB", (8, 8), color=(0, 0, 255)).save(output, format="JPEG")

        written = PNGMetadataHandler.write_card(output.getvalue(), v2_card, CardSpec.V2)

        assert PNGMetadataHandler.is_png(written)
        assert PNGMetadataHandler.read_card(written).payload == v2_card

    def test_truncated_png_rejected(self, v2_card):
        """Test a cut-off PNG is reported rather than silently repaired."""
        png = make_png()
        with pytest.raises(UnrecognizedFormat):
            PNGMetadataHandler.write_card(png[:40], v2_card, CardSpec.V2)
