"""
Card Format Detector
===================

Detects the container (PNG, ZIP, plain JSON) from byte signatures and the
dialect from the decoded card's shape.
"""

import logging
from typing import Any, Dict, Optional, Tuple

from .adapters.character_tavern import has_millisecond_timestamps, is_meta_shape
from .adapters.chub import has_chub_extensions
from .adapters.fields import LIST_FIELDS, TEXT_FIELDS, has_anchor
from .archive import ZipLimits, is_zip, read_zip
from .charx_codec import CharxCodec
from .errors import InvalidCardStructure, UnrecognizedFormat
from .json_codec import decode_json, looks_like_json
from .metadata_handler import PNGMetadataHandler
from .models import CardSpec, ContainerKind, Dialect
from .voxta_codec import VoxtaCodec

logger = logging.getLogger(__name__)

JSON_MIME_TYPES = ("application/json", "text/json")


class FormatDetector:
    """Detect character card container and dialect."""

    @staticmethod
    def detect_container(
        data: bytes,
        filename_hint: Optional[str] = None,
        mime_hint: Optional[str] = None,
    ) -> ContainerKind:
        """
        Classify bytes by signature.

        Raises:
            UnrecognizedFormat: Not PNG, not ZIP, and nothing suggests JSON
        """
        if PNGMetadataHandler.is_png(data):
            return ContainerKind.PNG
        if is_zip(data):
            return ContainerKind.ZIP
        if looks_like_json(data, filename_hint) or (mime_hint or "").split(";")[0].strip() in JSON_MIME_TYPES:
            return ContainerKind.PLAIN_JSON
        raise UnrecognizedFormat(
            f"Unrecognized file format{f' ({filename_hint})' if filename_hint else ''}: "
            "expected PNG, CHARX/Voxta ZIP or JSON"
        )

    @staticmethod
    def detect_archive(entries: Dict[str, bytes]) -> Dialect:
        """CHARX when card.json sits at the root; Voxta when the package layout is present."""
        if CharxCodec.is_charx(entries):
            return Dialect.CHARX
        if VoxtaCodec.is_voxta(entries):
            return Dialect.VOXTA
        raise UnrecognizedFormat("ZIP archive is neither a CHARX nor a Voxta package")

    @staticmethod
    def unwrap_payload(payload: Any) -> Any:
        """Strip RisuAI's ``definition`` wrapper around a spec-tagged card."""
        if (
            isinstance(payload, dict)
            and "spec" not in payload
            and isinstance(payload.get("definition"), dict)
            and "spec" in payload["definition"]
        ):
            logger.debug("Unwrapping RisuAI definition wrapper")
            return payload["definition"]
        return payload

    @staticmethod
    def _has_root_duplicates(payload: Dict[str, Any]) -> bool:
        return sum(1 for key in TEXT_FIELDS + LIST_FIELDS if key in payload) >= 2

    @classmethod
    def detect_dialect(cls, payload: Any) -> Tuple[Dialect, Dict[str, Any]]:
        """
        Pick the dialect for a decoded JSON card.

        Returns:
            Tuple of (Dialect, payload) where payload has had any outer
            wrapper removed

        Raises:
            InvalidCardStructure: Payload is not an object or has no card fields
        """
        payload = cls.unwrap_payload(payload)
        if not isinstance(payload, dict):
            raise InvalidCardStructure(f"Card JSON must be an object, got {type(payload).__name__}")

        spec = payload.get("spec")
        data = payload.get("data")
        has_data = isinstance(data, dict)

        if isinstance(spec, str) and spec.startswith(CardSpec.V3.value):
            if has_millisecond_timestamps(payload):
                return Dialect.CHARACTER_TAVERN, payload
            if has_chub_extensions(data if has_data else payload):
                return Dialect.CHUB, payload
            return Dialect.CCV3, payload

        if isinstance(spec, str) and spec.startswith(CardSpec.V2.value):
            if has_data and cls._has_root_duplicates(payload):
                return Dialect.WYVERN, payload
            if not has_data and has_anchor(payload):
                return Dialect.CHUB, payload
            if has_millisecond_timestamps(payload):
                return Dialect.CHARACTER_TAVERN, payload
            if has_chub_extensions(data):
                return Dialect.CHUB, payload
            return Dialect.CCV2, payload

        if is_meta_shape(payload):
            return Dialect.CHARACTER_TAVERN, payload

        if spec is None and ("name" in payload or "first_mes" in payload):
            return Dialect.CCV2_UNWRAPPED, payload

        if has_data and has_anchor(data):
            logger.debug(f"Card with unknown spec {spec!r} treated as wrapped V2")
            return Dialect.CCV2, payload

        raise InvalidCardStructure("No recognizable character card fields")

    @classmethod
    def detect(
        cls,
        data: bytes,
        filename_hint: Optional[str] = None,
        mime_hint: Optional[str] = None,
        limits: Optional[ZipLimits] = None,
    ) -> Tuple[ContainerKind, Dialect]:
        """
        Detect container and dialect in one call.

        Raises:
            UnrecognizedFormat, NoEmbeddedData, InvalidJson, InvalidCardStructure
        """
        container = cls.detect_container(data, filename_hint, mime_hint)
        if container == ContainerKind.ZIP:
            dialect = cls.detect_archive(read_zip(data, limits))
        elif container == ContainerKind.PNG:
            dialect, _ = cls.detect_dialect(PNGMetadataHandler.read_card(data).payload)
        else:
            dialect, _ = cls.detect_dialect(decode_json(data, filename_hint, assume_json=True))
        logger.info(f"Detected format: {container.value}/{dialect.value}")
        return container, dialect
