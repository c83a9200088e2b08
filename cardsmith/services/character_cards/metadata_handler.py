"""
PNG Metadata Handler
===================

Handles reading and writing tEXt chunks in PNG images for character card metadata.

Writes splice chunks into the original byte stream instead of re-saving the
image, so IDAT and every unrelated chunk come out byte-identical.
"""

import base64
import binascii
import json
import logging
import struct
from dataclasses import dataclass
from io import BytesIO
from typing import Any, Dict, Iterator, List, Sequence, Tuple

from PIL import Image, PngImagePlugin, UnidentifiedImageError

from .errors import InvalidJson, NoEmbeddedData, UnrecognizedFormat
from .models import CardSpec

logger = logging.getLogger(__name__)

PNG_SIGNATURE = b"\x89PNG\r\n\x1a\n"
TEXT_CHUNK_TYPES = (b"tEXt", b"zTXt", b"iTXt")


@dataclass
class PngCardPayload:
    """Card JSON pulled out of a PNG, plus where it came from."""
    payload: Any
    keyword: str
    image: bytes


class PNGMetadataHandler:
    """Handle PNG tEXt chunk operations for character card metadata."""

    # Probe order on read: v3 keywords first, then v2 and legacy variants
    V3_KEYWORDS: Tuple[str, ...] = ("ccv3", "chara_card_v3")
    V2_KEYWORDS: Tuple[str, ...] = ("chara", "ccv2", "character")

    # Keywords written on export
    CURRENT_V2_KEYWORD = "chara"
    CURRENT_V3_KEYWORD = "ccv3"

    @classmethod
    def card_keywords(cls) -> Tuple[str, ...]:
        return cls.V3_KEYWORDS + cls.V2_KEYWORDS

    @staticmethod
    def is_png(data: bytes) -> bool:
        return data[:8] == PNG_SIGNATURE

    @staticmethod
    def iter_chunks(png_data: bytes) -> Iterator[Tuple[bytes, int, int]]:
        """
        Walk the chunk stream.

        Yields (chunk_type, start, end) where png_data[start:end] is the whole
        chunk including length, type, payload and CRC.
        """
        if png_data[:8] != PNG_SIGNATURE:
            raise UnrecognizedFormat("Not a PNG file (bad signature)")
        pos = 8
        total = len(png_data)
        while pos < total:
            if pos + 8 > total:
                raise UnrecognizedFormat(f"Truncated PNG chunk header at offset {pos}")
            length, chunk_type = struct.unpack(">I4s", png_data[pos:pos + 8])
            end = pos + 12 + length
            if end > total:
                raise UnrecognizedFormat(f"Truncated PNG chunk {chunk_type!r} at offset {pos}")
            yield chunk_type, pos, end
            pos = end
            if chunk_type == b"IEND":
                break

    @staticmethod
    def _chunk_keyword(png_data: bytes, start: int, end: int) -> str:
        body = png_data[start + 8:end - 4]
        keyword, _, _ = body.partition(b"\x00")
        return keyword.decode("latin-1")

    @staticmethod
    def read_text_chunks(png_data: bytes) -> Dict[str, str]:
        """
        Return every text chunk (tEXt, zTXt, iTXt) as keyword -> text.

        Raises:
            UnrecognizedFormat: If the bytes are not a readable PNG
        """
        try:
            image = Image.open(BytesIO(png_data))
            text = getattr(image, "text", None)
        except (UnidentifiedImageError, OSError, SyntaxError, ValueError) as e:
            raise UnrecognizedFormat(f"PNG could not be parsed: {e}") from e

        if not isinstance(text, dict):
            return {}
        return {str(k): str(v) for k, v in text.items()}

    @staticmethod
    def decode_chunk_text(value: str) -> Any:
        """
        Decode card chunk text. Cards store base64-encoded JSON, but some
        writers put plain JSON in the chunk.
        """
        stripped = value.strip()
        if stripped.startswith("{"):
            return json.loads(stripped)
        decoded = base64.b64decode(stripped, validate=False).decode("utf-8")
        return json.loads(decoded)

    @classmethod
    def read_card(cls, png_data: bytes) -> PngCardPayload:
        """
        Find and decode the embedded card.

        Raises:
            NoEmbeddedData: No text chunks at all, or none under a card keyword
            InvalidJson: A card chunk exists but its content does not decode
        """
        chunks = cls.read_text_chunks(png_data)
        if not chunks:
            raise NoEmbeddedData("No text chunks found in PNG", reason=NoEmbeddedData.NO_TEXT_CHUNKS)

        lowered = {k.lower(): (k, v) for k, v in chunks.items()}
        failures: List[str] = []
        for keyword in cls.card_keywords():
            if keyword not in lowered:
                continue
            original_key, value = lowered[keyword]
            try:
                payload = cls.decode_chunk_text(value)
            except (binascii.Error, UnicodeDecodeError, json.JSONDecodeError) as e:
                logger.warning(f"Failed to decode card data from chunk '{original_key}': {e}")
                failures.append(f"{original_key}: {e}")
                continue
            logger.debug(f"Decoded card data from chunk '{original_key}'")
            return PngCardPayload(payload=payload, keyword=original_key, image=png_data)

        if failures:
            raise InvalidJson(f"Character card chunk could not be decoded ({'; '.join(failures)})")

        logger.warning(f"No character card metadata in PNG. Available chunks: {list(chunks)}")
        raise NoEmbeddedData(
            f"No character card data found (text chunks present: {', '.join(chunks)})",
            reason=NoEmbeddedData.NO_CARD_DATA,
        )

    @classmethod
    def write_text_chunks(
        cls,
        png_data: bytes,
        chunks: Sequence[Tuple[str, str]],
        replace_keywords: Sequence[str] = (),
    ) -> bytes:
        """
        Insert tEXt chunks just before IEND.

        Existing text chunks whose keyword matches any of ``replace_keywords``
        (or one of the new keywords) are dropped. Everything else is copied
        through untouched.
        """
        drop = {k.lower() for k in replace_keywords} | {k.lower() for k, _ in chunks}
        out = BytesIO()
        out.write(PNG_SIGNATURE)
        wrote_iend = False

        for chunk_type, start, end in cls.iter_chunks(png_data):
            if chunk_type in TEXT_CHUNK_TYPES and cls._chunk_keyword(png_data, start, end).lower() in drop:
                logger.debug(f"Replacing existing {chunk_type.decode()} chunk")
                continue
            if chunk_type == b"IEND":
                cls._put_text_chunks(out, chunks)
                wrote_iend = True
            out.write(png_data[start:end])

        if not wrote_iend:
            raise UnrecognizedFormat("PNG has no IEND chunk")
        return out.getvalue()

    @staticmethod
    def _put_text_chunks(fp: BytesIO, chunks: Sequence[Tuple[str, str]]) -> None:
        for keyword, text in chunks:
            PngImagePlugin.putchunk(fp, b"tEXt", keyword.encode("latin-1") + b"\x00" + text.encode("latin-1"))

    @classmethod
    def write_card(
        cls,
        png_data: bytes,
        payload: Any,
        spec: CardSpec,
        include_compat_chunk: bool = True,
    ) -> bytes:
        """
        Embed card JSON. v2 cards go under 'chara'; v3 cards under 'ccv3',
        plus a 'chara' copy for readers that only know the v2 keyword.
        Stale card chunks under any recognized keyword are removed.
        """
        text = json.dumps(payload, ensure_ascii=False, separators=(",", ":"))
        encoded = base64.b64encode(text.encode("utf-8")).decode("ascii")

        if spec == CardSpec.V3:
            chunks = [(cls.CURRENT_V3_KEYWORD, encoded)]
            if include_compat_chunk:
                chunks.append((cls.CURRENT_V2_KEYWORD, encoded))
        else:
            chunks = [(cls.CURRENT_V2_KEYWORD, encoded)]

        return cls.write_text_chunks(cls.ensure_png(png_data), chunks, replace_keywords=cls.card_keywords())

    @staticmethod
    def ensure_png(image_data: bytes) -> bytes:
        """Convert JPEG/WebP/GIF avatars to PNG; PNG input is returned as-is."""
        if image_data[:8] == PNG_SIGNATURE:
            return image_data
        try:
            image = Image.open(BytesIO(image_data))
            if image.mode not in ("RGB", "RGBA", "L", "LA", "P"):
                image = image.convert("RGBA")
            output = BytesIO()
            image.save(output, format="PNG")
        except (UnidentifiedImageError, OSError) as e:
            logger.warning(f"Avatar is not a readable image ({e}), using blank PNG")
            return PNGMetadataHandler.create_blank_png()
        logger.debug(f"Converted {image.format or 'image'} avatar to PNG")
        return output.getvalue()

    @staticmethod
    def create_blank_png() -> bytes:
        """Create a simple blank PNG as fallback."""
        img = Image.new('RGB', (512, 512), color=(128, 128, 128))
        output = BytesIO()
        img.save(output, format='PNG')
        return output.getvalue()

    @staticmethod
    def pixel_chunks(png_data: bytes) -> bytes:
        """Concatenated IDAT chunks, for checking pixel data is untouched."""
        return b"".join(
            png_data[start:end]
            for chunk_type, start, end in PNGMetadataHandler.iter_chunks(png_data)
            if chunk_type == b"IDAT"
        )
