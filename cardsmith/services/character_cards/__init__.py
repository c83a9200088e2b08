"""
Character Card System
====================

Format interoperability engine for AI role-play character cards.

Supports:
- Character Card V2 (wrapped and legacy unwrapped) and V3 JSON
- PNG cards with embedded tEXt metadata
- CHARX packages (ZIP, always V3, with bundled assets)
- Voxta packages (ZIP, lossy)
- Wyvern, Chub and CharacterTavern flavored cards
"""

from .conversion_service import ConversionService, ImportFile, PipelineState
from .errors import (
    CardFormatError,
    CardNotFound,
    ExportStageError,
    ImportStageError,
    InvalidCardStructure,
    InvalidJson,
    NoEmbeddedData,
    PersistenceFailure,
    StageError,
    UnrecognizedFormat,
    UnsupportedConversion,
)
from .format_detector import FormatDetector
from .macro_processor import MacroProcessor, normalize_macro_spacing, standard_to_voxta, voxta_to_standard
from .metadata_handler import PNGMetadataHandler
from .models import (
    BatchOutcome,
    CanonicalCard,
    CardAsset,
    CardEnvelope,
    CardSpec,
    ContainerKind,
    Dialect,
    ExportFormat,
    ExportResult,
    ImportOutcome,
    Lorebook,
    LorebookEntry,
    StoredCard,
)
from .storage import CardStore, InMemoryCardStore
from .structure_converter import convert_structure

__all__ = [
    'ConversionService',
    'ImportFile',
    'PipelineState',
    'CardFormatError',
    'CardNotFound',
    'ExportStageError',
    'ImportStageError',
    'InvalidCardStructure',
    'InvalidJson',
    'NoEmbeddedData',
    'PersistenceFailure',
    'StageError',
    'UnrecognizedFormat',
    'UnsupportedConversion',
    'FormatDetector',
    'MacroProcessor',
    'normalize_macro_spacing',
    'standard_to_voxta',
    'voxta_to_standard',
    'PNGMetadataHandler',
    'BatchOutcome',
    'CanonicalCard',
    'CardAsset',
    'CardEnvelope',
    'CardSpec',
    'ContainerKind',
    'Dialect',
    'ExportFormat',
    'ExportResult',
    'ImportOutcome',
    'Lorebook',
    'LorebookEntry',
    'StoredCard',
    'CardStore',
    'InMemoryCardStore',
    'convert_structure',
]
