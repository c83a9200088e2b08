"""
CHARX Codec
===========

Reads and writes .charx packages: a ZIP with ``card.json`` (always CCv3) at
the root and bundled assets under ``assets/{type}/{category}/{name}.{ext}``.
"""

import copy
import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from .archive import (
    ZipLimits,
    category_for_mime,
    mime_for_ext,
    read_zip,
    sanitize_asset_name,
    split_filename,
    write_zip,
)
from .errors import InvalidCardStructure, InvalidJson
from .models import CardAsset

logger = logging.getLogger(__name__)

CARD_ENTRY = "card.json"
RISU_MODULE_ENTRY = "module.risum"
EMBEDDED_PREFIXES = ("embeded://", "embedded://")


@dataclass
class CharxPackage:
    """Decoded CHARX contents."""
    card: Dict[str, Any]
    assets: List[CardAsset] = field(default_factory=list)


def is_embedded_uri(uri: Any) -> bool:
    return isinstance(uri, str) and uri.startswith(EMBEDDED_PREFIXES)


def _embedded_path(uri: str) -> str:
    for prefix in EMBEDDED_PREFIXES:
        if uri.startswith(prefix):
            return uri[len(prefix):]
    return uri


def asset_path(asset: CardAsset) -> str:
    """Archive path for an asset; the main icon is always named 'main'."""
    category = category_for_mime(mime_for_ext(asset.ext))
    name = "main" if asset.is_main and asset.type == "icon" else sanitize_asset_name(asset.name, asset.ext)
    return f"assets/{asset.type}/{category}/{name}.{asset.ext}"


class CharxCodec:
    """Byte-level CHARX reader/writer. Card semantics live in the CHARX adapter."""

    def __init__(self, limits: Optional[ZipLimits] = None):
        self.limits = limits or ZipLimits()

    @staticmethod
    def is_charx(entries: Dict[str, bytes]) -> bool:
        return CARD_ENTRY in entries

    def read(self, data: bytes) -> CharxPackage:
        """
        Decode a CHARX archive.

        Raises:
            InvalidCardStructure: No card.json, or an unsafe/oversized entry
            InvalidJson: card.json does not parse
        """
        entries = read_zip(data, self.limits)
        return self.read_entries(entries)

    def read_entries(self, entries: Dict[str, bytes]) -> CharxPackage:
        if CARD_ENTRY not in entries:
            raise InvalidCardStructure("CHARX archive has no card.json")

        try:
            card = json.loads(entries[CARD_ENTRY].decode("utf-8-sig"))
        except (UnicodeDecodeError, json.JSONDecodeError) as e:
            raise InvalidJson(f"Failed to parse card.json: {e}") from e
        if not isinstance(card, dict):
            raise InvalidCardStructure("card.json is not a JSON object")

        descriptors = self._descriptors_by_path(card)
        assets: List[CardAsset] = []

        for path, payload in entries.items():
            if path == CARD_ENTRY:
                continue
            stem, ext = split_filename(path)

            if path.startswith("x_meta/") and ext == "json":
                assets.append(CardAsset(name=stem, ext=ext, type="x-meta",
                                        mimetype="application/json", data=payload, path=path))
                continue
            if path == RISU_MODULE_ENTRY:
                assets.append(CardAsset(name="module", ext="risum", type="x-risu-module",
                                        mimetype=mime_for_ext("risum"), data=payload, path=path))
                continue
            if not path.startswith("assets/"):
                logger.debug(f"Keeping unrecognized CHARX entry as custom asset: {path}")
                assets.append(CardAsset(name=stem, ext=ext, mimetype=mime_for_ext(ext),
                                        data=payload, path=path))
                continue

            descriptor = descriptors.get(path, {})
            segments = path.split("/")
            asset_type = descriptor.get("type") or (segments[1] if len(segments) > 2 else "custom")
            name = descriptor.get("name") or stem
            asset_ext = (descriptor.get("ext") or ext).lower()
            assets.append(CardAsset(
                name=name,
                ext=asset_ext,
                type=asset_type,
                mimetype=mime_for_ext(asset_ext),
                data=payload,
                is_main=asset_type == "icon" and (name == "main" or stem == "main"),
                path=path,
            ))

        logger.debug(f"Read CHARX with {len(assets)} assets")
        return CharxPackage(card=card, assets=assets)

    @staticmethod
    def _descriptors_by_path(card: Dict[str, Any]) -> Dict[str, Dict[str, Any]]:
        data = card.get("data")
        raw_assets = data.get("assets") if isinstance(data, dict) else None
        if not isinstance(raw_assets, list):
            return {}
        return {
            _embedded_path(d["uri"]): d
            for d in raw_assets
            if isinstance(d, dict) and is_embedded_uri(d.get("uri"))
        }

    def write(self, card: Dict[str, Any], assets: List[CardAsset]) -> bytes:
        """
        Build a CHARX archive.

        ``data.assets`` is regenerated from ``assets`` with embeded:// URIs;
        descriptors pointing elsewhere (remote URLs, ccdefault:) are kept.
        x-meta and Risu module assets go back to their original locations.
        """
        card = copy.deepcopy(card)
        data = card.setdefault("data", {})

        external = [
            d for d in (data.get("assets") or [])
            if isinstance(d, dict) and not is_embedded_uri(d.get("uri"))
        ]
        descriptors: List[Dict[str, Any]] = []
        files = []

        for asset in assets:
            if asset.type == "x-meta":
                files.append((asset.path or f"x_meta/{asset.name}.json", asset.data))
                continue
            if asset.type == "x-risu-module":
                files.append((RISU_MODULE_ENTRY, asset.data))
                continue
            path = asset_path(asset)
            if any(existing == path for existing, _ in files):
                logger.warning(f"Two assets map to {path}, keeping the first")
                continue
            descriptors.append({
                "type": asset.type,
                "uri": f"embeded://{path}",
                "name": split_filename(path)[0],
                "ext": asset.ext,
            })
            files.append((path, asset.data))

        if descriptors or external:
            data["assets"] = descriptors + external
        else:
            data.pop("assets", None)

        card_json = json.dumps(card, ensure_ascii=False, indent=2).encode("utf-8")
        logger.debug(f"Writing CHARX with {len(files)} files")
        return write_zip([(CARD_ENTRY, card_json)] + files)
