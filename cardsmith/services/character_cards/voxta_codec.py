"""
Voxta Package Codec
===================

Reads and writes Voxta packages (.voxpkg). Layout:

    package.json                                  (collections only)
    Characters/{id}/character.json
    Characters/{id}/thumbnail.{ext}
    Characters/{id}/Assets/Avatars/Default/{Emotion}_{State}_{Variant}.{ext}
    Characters/{id}/Assets/VoiceSamples/{name}.{ext}
    Books/{id}/book.json
    Scenarios/{id}/scenario.json

Only the byte layout lives here; the character/book field mapping is the
Voxta adapter's job.
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .archive import ZipLimits, mime_for_ext, read_zip, sanitize_asset_name, split_filename, write_zip
from .errors import InvalidCardStructure, InvalidJson
from .models import CardAsset

logger = logging.getLogger(__name__)

PACKAGE_ENTRY = "package.json"


@dataclass
class VoxtaCharacterEntry:
    """One character folder of a package."""
    id: str
    data: Dict[str, Any]
    thumbnail: Optional[bytes] = None
    thumbnail_ext: str = "png"
    assets: List[CardAsset] = field(default_factory=list)


@dataclass
class VoxtaPackageData:
    """Everything read out of a package, in archive order."""
    package: Optional[Dict[str, Any]] = None
    characters: List[VoxtaCharacterEntry] = field(default_factory=list)
    books: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    scenarios: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def parse_asset_path(path: str) -> Tuple[str, List[str]]:
    """
    Asset type and tags from a Voxta asset path.

    Avatars/.../Happy_Idle_01.webp -> ('emotion', ['emotion:happy', 'state:idle', 'variant:01'])
    VoiceSamples/hello.wav          -> ('sound', ['voice'])
    """
    if "/Avatars/" in path:
        stem, _ = split_filename(path)
        parts = stem.split("_")
        tags = [f"emotion:{parts[0].lower()}"]
        if len(parts) >= 2:
            tags.append(f"state:{parts[1].lower()}")
        if len(parts) >= 3:
            tags.append(f"variant:{parts[2]}")
        return "emotion", tags
    if "/VoiceSamples/" in path:
        return "sound", ["voice"]
    return "custom", []


def _load_json(path: str, payload: bytes) -> Dict[str, Any]:
    try:
        value = json.loads(payload.decode("utf-8-sig"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise InvalidJson(f"Failed to parse {path}: {e}") from e
    if not isinstance(value, dict):
        raise InvalidCardStructure(f"{path} is not a JSON object")
    return value


class VoxtaCodec:
    """Byte-level Voxta package reader/writer."""

    def __init__(self, limits: Optional[ZipLimits] = None):
        self.limits = limits or ZipLimits()

    @staticmethod
    def is_voxta(entries: Dict[str, bytes]) -> bool:
        if PACKAGE_ENTRY in entries:
            return True
        return any(
            path.startswith("Characters/") and path.endswith("/character.json")
            for path in entries
        )

    def read(self, data: bytes) -> VoxtaPackageData:
        return self.read_entries(read_zip(data, self.limits))

    def read_entries(self, entries: Dict[str, bytes]) -> VoxtaPackageData:
        """
        Group archive entries into package, characters, books and scenarios.

        Raises:
            InvalidCardStructure: The package holds no character.json
            InvalidJson: A manifest file does not parse
        """
        result = VoxtaPackageData()
        characters: Dict[str, VoxtaCharacterEntry] = {}
        thumbnails: Dict[str, Tuple[bytes, str]] = {}
        assets: Dict[str, List[CardAsset]] = {}

        for path, payload in entries.items():
            parts = path.split("/")

            if path == PACKAGE_ENTRY:
                result.package = _load_json(path, payload)

            elif parts[0] == "Characters" and len(parts) >= 3:
                char_id = parts[1]
                if len(parts) == 3 and parts[2] == "character.json":
                    characters[char_id] = VoxtaCharacterEntry(id=char_id, data=_load_json(path, payload))
                elif len(parts) == 3 and parts[2].startswith("thumbnail."):
                    thumbnails[char_id] = (payload, split_filename(path)[1])
                elif parts[2] == "Assets":
                    stem, ext = split_filename(path)
                    asset_type, tags = parse_asset_path(path)
                    assets.setdefault(char_id, []).append(CardAsset(
                        name=stem, ext=ext, type=asset_type, mimetype=mime_for_ext(ext),
                        data=payload, tags=tags, path=path,
                    ))

            elif parts[0] == "Books" and len(parts) == 3 and parts[2] == "book.json":
                result.books[parts[1]] = _load_json(path, payload)

            elif parts[0] == "Scenarios" and len(parts) == 3 and parts[2] == "scenario.json":
                result.scenarios[parts[1]] = _load_json(path, payload)

            else:
                logger.debug(f"Ignoring Voxta package entry: {path}")

        if not characters:
            raise InvalidCardStructure("Voxta package contains no characters")

        for char_id, character in characters.items():
            if char_id in thumbnails:
                character.thumbnail, character.thumbnail_ext = thumbnails[char_id]
            character.assets = assets.get(char_id, [])
            result.characters.append(character)

        logger.debug(
            f"Read Voxta package: {len(result.characters)} characters, "
            f"{len(result.books)} books, {len(result.scenarios)} scenarios"
        )
        return result

    @staticmethod
    def _asset_folder(asset: CardAsset) -> str:
        if asset.type == "sound" or "voice" in asset.tags:
            return "VoiceSamples"
        if asset.type in ("icon", "emotion"):
            return "Avatars/Default"
        return "Misc"

    def write(
        self,
        characters: List[VoxtaCharacterEntry],
        books: List[Dict[str, Any]],
        package: Optional[Dict[str, Any]] = None,
    ) -> bytes:
        """Build a package. ``package.json`` is written only when given."""
        files = []
        if package is not None:
            files.append((PACKAGE_ENTRY, json.dumps(package, ensure_ascii=False, indent=2).encode("utf-8")))

        for character in characters:
            base = f"Characters/{character.id}"
            files.append((f"{base}/character.json",
                          json.dumps(character.data, ensure_ascii=False, indent=2).encode("utf-8")))
            if character.thumbnail:
                files.append((f"{base}/thumbnail.{character.thumbnail_ext}", character.thumbnail))
            for asset in character.assets:
                if asset.type == "icon" and asset.is_main:
                    continue
                if asset.type in ("emotion", "sound"):
                    # Voxta parses emotion/state from the underscored stem, so keep it
                    stem = asset.name.replace("/", "-").replace("\\", "-").lstrip(".") or "asset"
                    if stem.lower().endswith(f".{asset.ext.lower()}"):
                        stem = stem[:-(len(asset.ext) + 1)]
                else:
                    stem = sanitize_asset_name(asset.name, asset.ext)
                files.append((f"{base}/Assets/{self._asset_folder(asset)}/{stem}.{asset.ext}", asset.data))

        for book in books:
            book_id = book.get("Id")
            if not book_id:
                logger.warning("Skipping Voxta book without Id")
                continue
            files.append((f"Books/{book_id}/book.json",
                          json.dumps(book, ensure_ascii=False, indent=2).encode("utf-8")))

        logger.debug(f"Writing Voxta package with {len(files)} files")
        return write_zip(files)
