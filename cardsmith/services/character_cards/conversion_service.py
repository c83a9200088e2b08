"""
Card Conversion Service
=======================

Orchestrates import (detect -> decode -> normalize -> wrap -> persist),
export (adapt -> encode) and direct V2/V3 structural conversion.

The service holds no card state of its own. Storage is injected, so several
independent services can run side by side.
"""

import asyncio
import logging
import re
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Iterator, List, Optional, Sequence, Tuple, Type, Union

from pydantic import ValidationError

from .adapters import get_adapter
from .adapters.fields import UNMAPPED_KEY
from .archive import ZipLimits, mime_for_ext, read_zip
from .charx_codec import CharxCodec
from .errors import (
    CardFormatError,
    ExportStageError,
    ImportStageError,
    InvalidCardStructure,
    PersistenceFailure,
    StageError,
    UnsupportedConversion,
)
from .format_detector import FormatDetector
from .json_codec import decode_json, encode_json
from .lorebook_normalizer import legacy_position_key
from .macro_processor import convert_card_macros, voxta_to_standard
from .metadata_handler import PNGMetadataHandler
from .models import (
    CONTENT_TYPES,
    SPEC_VERSIONS,
    BatchItemResult,
    BatchOutcome,
    CardAsset,
    CardEnvelope,
    CardSpec,
    ContainerKind,
    Dialect,
    ExportFormat,
    ExportResult,
    ImportedCard,
    ImportOutcome,
    StoredCard,
    main_image,
)
from .storage import CardStore
from .structure_converter import convert_structure
from .voxta_codec import VoxtaCharacterEntry, VoxtaCodec

logger = logging.getLogger(__name__)

FILE_EXTENSIONS = {
    ExportFormat.JSON: "json",
    ExportFormat.PNG: "png",
    ExportFormat.CHARX: "charx",
    ExportFormat.VOXTA: "voxpkg",
}


class PipelineState(str, Enum):
    """Import pipeline states. Transitions only move forward."""
    RECEIVED = "received"
    DETECTED = "detected"
    DECODED = "decoded"
    NORMALIZED = "normalized"
    WRAPPED = "wrapped"
    PERSISTED = "persisted"
    FAILED = "failed"


@dataclass
class ImportFile:
    """One file submitted for import."""
    data: bytes
    filename: Optional[str] = None
    mime: Optional[str] = None


@dataclass
class _RawCard:
    """A decoded card waiting for its adapter."""
    dialect: Dialect
    raw: Any
    assets: List[CardAsset] = field(default_factory=list)


def _safe_filename(name: str) -> str:
    safe = re.sub(r'[^\w\-. ]', '_', name or "").strip(" .")
    return safe or "card"


class ConversionService:
    """Import, export and convert character cards."""

    def __init__(
        self,
        store: CardStore,
        zip_limits: Optional[ZipLimits] = None,
        png_compat_chunk: bool = True,
        batch_parallelism: int = 4,
        id_factory: Optional[Callable[[], str]] = None,
    ):
        """
        Initialize service.

        Args:
            store: Persistence collaborator (get/put/delete by id)
            zip_limits: Safety limits for CHARX/Voxta archives
            png_compat_chunk: Also write a 'chara' chunk for v3 PNG exports
            batch_parallelism: Default concurrency for import_batch
            id_factory: Produces fresh card ids (uuid4 by default)
        """
        self.store = store
        self.zip_limits = zip_limits or ZipLimits()
        self.png_compat_chunk = png_compat_chunk
        self.batch_parallelism = batch_parallelism
        self.id_factory = id_factory or (lambda: str(uuid.uuid4()))
        self.charx_codec = CharxCodec(self.zip_limits)
        self.voxta_codec = VoxtaCodec(self.zip_limits)

    @classmethod
    def from_config(cls, config, store: CardStore) -> "ConversionService":
        """Build from an EngineConfig."""
        limits = config.zip_limits
        return cls(
            store,
            zip_limits=ZipLimits(
                max_entry_size=int(limits.max_entry_size_mb * 1024 * 1024),
                max_total_size=int(limits.max_total_size_mb * 1024 * 1024),
                max_entries=limits.max_entries,
            ),
            png_compat_chunk=config.png.write_v2_compat_chunk,
            batch_parallelism=config.batch.parallelism,
        )

    # ===========================
    # Import
    # ===========================

    @staticmethod
    @contextmanager
    def _stage(
        stage: str,
        error_cls: Type[StageError],
        dialect: Optional[Dialect] = None,
    ) -> Iterator[None]:
        """Wrap any failure inside a stage with the stage name and cause."""
        try:
            yield
        except StageError:
            raise
        except Exception as e:
            cause = InvalidCardStructure(str(e)) if isinstance(e, ValidationError) else e
            logger.debug(f"{error_cls.operation} pipeline -> {PipelineState.FAILED.value}({stage}): {e}")
            raise error_cls(stage, cause, dialect.value if dialect else None) from e

    @staticmethod
    def _transition(state: PipelineState, detail: str = "") -> None:
        logger.debug(f"Import pipeline -> {state.value}{f' ({detail})' if detail else ''}")

    def import_card(
        self,
        data: bytes,
        filename_hint: Optional[str] = None,
        mime_hint: Optional[str] = None,
    ) -> ImportOutcome:
        """
        Import one file.

        Args:
            data: Raw file bytes (JSON, PNG, CHARX or Voxta package)
            filename_hint: Original filename, if known
            mime_hint: Declared MIME type, if known

        Returns:
            ImportOutcome with the primary card and any sibling cards

        Raises:
            ImportStageError: Any stage failed; nothing was persisted
        """
        self._transition(PipelineState.RECEIVED, filename_hint or f"{len(data)} bytes")

        with self._stage("detect", ImportStageError):
            container = FormatDetector.detect_container(data, filename_hint, mime_hint)
        self._transition(PipelineState.DETECTED, container.value)

        with self._stage("decode", ImportStageError):
            items = self._decode(container, data, filename_hint)
        self._transition(PipelineState.DECODED, ", ".join(i.dialect.value for i in items))

        envelopes: List[Tuple[_RawCard, CardEnvelope]] = []
        for item in items:
            adapter = get_adapter(item.dialect)
            with self._stage("normalize", ImportStageError, item.dialect):
                card = adapter.to_canonical(item.raw)
            with self._stage("wrap", ImportStageError, item.dialect):
                spec = adapter.spec_for(item.raw)
                envelope = CardEnvelope(spec=spec, spec_version=SPEC_VERSIONS[spec], data=card)
            envelopes.append((item, envelope))
        self._transition(PipelineState.NORMALIZED)
        self._transition(PipelineState.WRAPPED, f"{len(envelopes)} card(s)")

        imported = self._persist(envelopes, items[0].dialect)
        self._transition(PipelineState.PERSISTED, ", ".join(c.id for c in imported))

        warnings = self._import_warnings(items[0].dialect, [env for _, env in envelopes])
        outcome = ImportOutcome(
            card=imported[0],
            detected_dialect=items[0].dialect,
            container=container,
            siblings=imported[1:],
            warnings=warnings,
        )
        logger.info(
            f"Imported '{outcome.envelope.data.name}' as {outcome.card.id} "
            f"({container.value}/{outcome.detected_dialect.value}, {outcome.envelope.spec.value})"
            + (f" with {len(outcome.siblings)} sibling(s)" if outcome.siblings else "")
        )
        return outcome

    def _decode(self, container: ContainerKind, data: bytes, filename_hint: Optional[str]) -> List[_RawCard]:
        if container == ContainerKind.PNG:
            png = PNGMetadataHandler.read_card(data)
            dialect, payload = FormatDetector.detect_dialect(png.payload)
            logger.info(f"Detected {dialect.value} card in PNG chunk '{png.keyword}'")
            avatar = CardAsset(name="main", ext="png", type="icon", mimetype="image/png",
                               data=data, is_main=True)
            return [_RawCard(dialect, payload, [avatar])]

        if container == ContainerKind.PLAIN_JSON:
            dialect, payload = FormatDetector.detect_dialect(decode_json(data, filename_hint, assume_json=True))
            logger.info(f"Detected {dialect.value} JSON card")
            return [_RawCard(dialect, payload)]

        entries = read_zip(data, self.zip_limits)
        dialect = FormatDetector.detect_archive(entries)
        logger.info(f"Detected {dialect.value} package")
        if dialect == Dialect.CHARX:
            package = self.charx_codec.read_entries(entries)
            return [_RawCard(Dialect.CHARX, package.card, package.assets)]

        package = self.voxta_codec.read_entries(entries)
        items = []
        for character in package.characters:
            assets = list(character.assets)
            if character.thumbnail:
                assets.insert(0, CardAsset(
                    name="main", ext=character.thumbnail_ext, type="icon",
                    mimetype=mime_for_ext(character.thumbnail_ext),
                    data=character.thumbnail, is_main=True,
                ))
            bundle = {"character": character.data, "books": package.books}
            items.append(_RawCard(Dialect.VOXTA, bundle, assets))
        return items

    def _persist(self, envelopes: List[Tuple[_RawCard, CardEnvelope]], dialect: Dialect) -> List[ImportedCard]:
        """Write every card or none of them."""
        written: List[str] = []
        imported: List[ImportedCard] = []
        try:
            for item, envelope in envelopes:
                card_id = self.id_factory()
                self.store.put(card_id, envelope, item.assets)
                written.append(card_id)
                imported.append(ImportedCard(id=card_id, envelope=envelope, assets=item.assets))
        except Exception as e:
            self._rollback(written)
            cause = e if isinstance(e, CardFormatError) else PersistenceFailure(str(e))
            raise ImportStageError("persist", cause, dialect.value) from e
        return imported

    def _rollback(self, card_ids: List[str]) -> None:
        for card_id in card_ids:
            try:
                self.store.delete(card_id)
                logger.debug(f"Rolled back card {card_id}")
            except Exception as e:
                logger.error(f"Failed to roll back card {card_id}: {e}", exc_info=True)

    @staticmethod
    def _import_warnings(dialect: Dialect, envelopes: List[CardEnvelope]) -> List[str]:
        warnings = []
        if dialect == Dialect.VOXTA:
            warnings.append(
                "Voxta packages carry no alternate greetings and keep Voxta's spaced macro form ({{ char }})"
            )
        position_key = legacy_position_key(dialect.value)
        for envelope in envelopes:
            card = envelope.data
            unmapped = card.extensions.get(UNMAPPED_KEY)
            if isinstance(unmapped, dict) and unmapped:
                warnings.append(f"{card.name or 'Card'}: kept unrecognized fields in extensions: {', '.join(sorted(unmapped))}")
            if card.character_book is not None:
                legacy = sum(1 for e in card.character_book.entries if position_key in e.extensions)
                if legacy:
                    warnings.append(
                        f"{card.name or 'Card'}: {legacy} lorebook entr{'y' if legacy == 1 else 'ies'} "
                        f"had a legacy position value, kept as extensions.{position_key}"
                    )
        return warnings

    async def import_batch(
        self,
        files: Sequence[ImportFile],
        parallelism: Optional[int] = None,
    ) -> BatchOutcome:
        """
        Import several files concurrently.

        One file failing never affects the others. Results keep the input order.
        """
        semaphore = asyncio.Semaphore(parallelism or self.batch_parallelism)

        async def run(index: int, upload: ImportFile) -> BatchItemResult:
            async with semaphore:
                try:
                    outcome = await asyncio.to_thread(self.import_card, upload.data, upload.filename, upload.mime)
                except StageError as e:
                    logger.warning(f"Batch item {index} ({upload.filename or 'unnamed'}) failed: {e}")
                    return BatchItemResult(
                        index=index, filename=upload.filename, success=False,
                        error_kind=e.kind, error_stage=e.stage, error=e.cause_message,
                    )
                return BatchItemResult(index=index, filename=upload.filename, success=True, outcome=outcome)

        results = await asyncio.gather(*(run(i, f) for i, f in enumerate(files)))
        outcome = BatchOutcome(results=list(results))
        logger.info(f"Batch import: {outcome.success_count} succeeded, {outcome.failure_count} failed")
        return outcome

    # ===========================
    # Export
    # ===========================

    def _resolve(self, card: Union[str, StoredCard, ImportedCard, CardEnvelope]) -> Tuple[CardEnvelope, List[CardAsset]]:
        if isinstance(card, str):
            stored = self.store.get(card)
            return stored.envelope, stored.assets
        if isinstance(card, (StoredCard, ImportedCard)):
            return card.envelope, list(card.assets)
        if isinstance(card, CardEnvelope):
            return card, []
        raise TypeError(f"Cannot export {type(card).__name__}")

    def export_card(
        self,
        card: Union[str, StoredCard, ImportedCard, CardEnvelope],
        target_format: Union[str, ExportFormat],
        dialect: Optional[Union[str, Dialect]] = None,
    ) -> ExportResult:
        """
        Export a card.

        Args:
            card: Stored card id, or a card already in hand
            target_format: json, png, charx or voxta
            dialect: JSON/PNG shape to produce (e.g. 'ccv2_unwrapped', 'wyvern');
                defaults to wrapped V2 or V3 following the card's spec

        Returns:
            ExportResult with the complete byte stream and its content type

        Raises:
            CardNotFound: Unknown card id
            UnsupportedConversion: Unknown format or non-exportable dialect
            ExportStageError: Adapting or encoding failed
        """
        try:
            fmt = ExportFormat(target_format)
        except ValueError:
            raise UnsupportedConversion(f"Unknown export format '{target_format}'")

        envelope, assets = self._resolve(card)
        warnings: List[str] = []

        with self._stage("adapt", ExportStageError):
            if fmt == ExportFormat.VOXTA:
                adapter = get_adapter(Dialect.VOXTA)
            elif fmt == ExportFormat.CHARX:
                adapter = get_adapter(Dialect.CHARX)
            elif dialect is not None:
                adapter = get_adapter(dialect)
                if adapter.dialect in (Dialect.CHARX, Dialect.VOXTA):
                    raise UnsupportedConversion(f"Use the {adapter.dialect.value} format to export that dialect")
            else:
                adapter = get_adapter(Dialect.CCV3 if envelope.spec == CardSpec.V3 else Dialect.CCV2)
            payload = adapter.export(envelope)

            if fmt != ExportFormat.VOXTA and isinstance(envelope.data.extensions.get("voxta"), dict):
                payload = convert_card_macros(payload, voxta_to_standard)
                logger.debug("Converted Voxta macros to standard form")

            if fmt == ExportFormat.VOXTA and envelope.data.alternate_greetings:
                warnings.append(
                    f"Voxta does not carry alternate greetings; {len(envelope.data.alternate_greetings)} dropped"
                )

        with self._stage("encode", ExportStageError, adapter.dialect):
            data = self._encode(fmt, payload, assets)

        filename = f"{_safe_filename(envelope.data.name)}.{FILE_EXTENSIONS[fmt]}"
        logger.info(f"Exported '{envelope.data.name}' as {fmt.value} ({adapter.dialect.value}, {len(data)} bytes)")
        return ExportResult(data=data, content_type=CONTENT_TYPES[fmt], filename=filename, warnings=warnings)

    def _encode(self, fmt: ExportFormat, payload: Any, assets: List[CardAsset]) -> bytes:
        if fmt == ExportFormat.JSON:
            return encode_json(payload)

        if fmt == ExportFormat.PNG:
            main = main_image(assets)
            image = main.data if main and main.data else PNGMetadataHandler.create_blank_png()
            spec = CardSpec.V3 if payload.get("spec") == CardSpec.V3.value else CardSpec.V2
            return PNGMetadataHandler.write_card(image, payload, spec, include_compat_chunk=self.png_compat_chunk)

        if fmt == ExportFormat.CHARX:
            return self.charx_codec.write(payload, assets)

        character = payload["character"]
        main = main_image(assets)
        entry = VoxtaCharacterEntry(
            id=character["Id"],
            data=character,
            thumbnail=main.data if main else None,
            thumbnail_ext=main.ext if main else "png",
            assets=[a for a in assets if a is not main and a.type not in ("x-meta", "x-risu-module")],
        )
        return self.voxta_codec.write([entry], payload["books"])

    # ===========================
    # Structural conversion / storage passthrough
    # ===========================

    def convert_structure(
        self, card_json: Any, from_spec: str, to_spec: str, wrapped: bool = True
    ) -> Dict[str, Any]:
        """Container-free V2 <-> V3 conversion; nothing is persisted."""
        return convert_structure(card_json, from_spec, to_spec, wrapped=wrapped)

    def get_card(self, card_id: str) -> StoredCard:
        return self.store.get(card_id)

    def delete_card(self, card_id: str) -> None:
        self.store.delete(card_id)
