"""
Character Card Data Models
=========================

Pydantic models for the canonical card representation every dialect
normalizes into, plus the envelope, asset and result types that travel
through the conversion pipeline.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, Dict, List, Any

from pydantic import BaseModel, Field, PrivateAttr


# ===========================
# Canonical Card
# ===========================

class CardSpec(str, Enum):
    """Character card specification tags."""
    V2 = "chara_card_v2"
    V3 = "chara_card_v3"


SPEC_VERSIONS = {
    CardSpec.V2: "2.0",
    CardSpec.V3: "3.0",
}


class EntryPosition(str, Enum):
    """Where a lorebook entry is injected relative to the character definition."""
    BEFORE_CHAR = "before_char"
    AFTER_CHAR = "after_char"


class LorebookEntry(BaseModel):
    """World info / lorebook entry."""
    id: Optional[int] = None
    name: Optional[str] = None
    comment: Optional[str] = None
    keys: List[str] = Field(default_factory=list)
    secondary_keys: List[str] = Field(default_factory=list)
    content: str = ""
    enabled: bool = True
    priority: Optional[int] = None
    insertion_order: int = 100
    case_sensitive: Optional[bool] = None
    selective: Optional[bool] = None
    constant: Optional[bool] = None
    depth: Optional[int] = None
    probability: Optional[int] = None
    position: Optional[EntryPosition] = None  # absent == unset
    extensions: Dict[str, Any] = Field(default_factory=dict)


class Lorebook(BaseModel):
    """Character lorebook / character book."""
    name: Optional[str] = None
    description: Optional[str] = None
    scan_depth: Optional[int] = None
    token_budget: Optional[int] = None
    recursive_scanning: Optional[bool] = None
    extensions: Dict[str, Any] = Field(default_factory=dict)
    entries: List[LorebookEntry] = Field(default_factory=list)

    # High-water mark so deleted ids are never handed out again
    _last_id: int = PrivateAttr(default=-1)

    def model_post_init(self, __context: Any) -> None:
        ids = [e.id for e in self.entries if e.id is not None]
        self._last_id = max(ids) if ids else -1

    def next_entry_id(self) -> int:
        """Reserve and return the next unused entry id."""
        current = max([e.id for e in self.entries if e.id is not None], default=-1)
        self._last_id = max(self._last_id, current) + 1
        return self._last_id

    def add_entry(self, entry: LorebookEntry) -> LorebookEntry:
        """Append an entry, assigning it a fresh id if it has none."""
        if entry.id is None:
            entry.id = self.next_entry_id()
        else:
            self._last_id = max(self._last_id, entry.id)
        self.entries.append(entry)
        return entry


class CanonicalCard(BaseModel):
    """Dialect-independent character card.

    Fields the v2 format cannot carry (``group_only_greetings``, ``source``,
    ``creator_notes_multilingual`` and the timestamps) are simply left out
    when exporting to a v2 dialect.
    """

    name: str = ""
    description: str = ""
    personality: str = ""
    scenario: str = ""
    first_mes: str = ""
    mes_example: str = ""
    creator: str = ""
    character_version: str = ""
    system_prompt: str = ""
    post_history_instructions: str = ""
    creator_notes: str = ""

    tags: List[str] = Field(default_factory=list)
    alternate_greetings: List[str] = Field(default_factory=list)

    # v3 only
    group_only_greetings: List[str] = Field(default_factory=list)
    creator_notes_multilingual: Dict[str, str] = Field(default_factory=dict)
    source: List[str] = Field(default_factory=list)
    creation_date: Optional[int] = None
    modification_date: Optional[int] = None

    # Lossless overflow channel for anything not modeled above
    extensions: Dict[str, Any] = Field(default_factory=dict)
    character_book: Optional[Lorebook] = None


class CardEnvelope(BaseModel):
    """Spec-tagged wrapper around a canonical card."""
    spec: CardSpec = CardSpec.V2
    spec_version: str = "2.0"
    data: CanonicalCard


# ===========================
# Assets
# ===========================

class CardAsset(BaseModel):
    """Binary asset bundled with a card (avatar, emotion sprite, sound...)."""
    name: str
    ext: str
    type: str = "custom"  # icon, background, emotion, user_icon, sound, video, custom, ...
    mimetype: str = "application/octet-stream"
    data: bytes = b""
    is_main: bool = False
    tags: List[str] = Field(default_factory=list)
    path: Optional[str] = None  # original location inside a package, if any


def main_image(assets: List[CardAsset]) -> Optional[CardAsset]:
    """Main avatar: flagged main icon, then any icon, then nothing."""
    for asset in assets:
        if asset.type == "icon" and asset.is_main:
            return asset
    for asset in assets:
        if asset.type == "icon":
            return asset
    return None


class StoredCard(BaseModel):
    """What the persistence collaborator hands back for one card id."""
    id: str
    envelope: CardEnvelope
    assets: List[CardAsset] = Field(default_factory=list)

    def main_image(self) -> Optional[CardAsset]:
        return main_image(self.assets)


# ===========================
# Pipeline results
# ===========================

class ContainerKind(str, Enum):
    """Physical byte envelope."""
    PLAIN_JSON = "json"
    PNG = "png"
    ZIP = "zip"


class Dialect(str, Enum):
    """Source dialects the adapter registry knows about."""
    CCV2 = "ccv2"
    CCV2_UNWRAPPED = "ccv2_unwrapped"
    CCV3 = "ccv3"
    WYVERN = "wyvern"
    CHUB = "chub"
    CHARACTER_TAVERN = "character_tavern"
    CHARX = "charx"
    VOXTA = "voxta"


class ExportFormat(str, Enum):
    JSON = "json"
    PNG = "png"
    CHARX = "charx"
    VOXTA = "voxta"


CONTENT_TYPES = {
    ExportFormat.JSON: "application/json",
    ExportFormat.PNG: "image/png",
    ExportFormat.CHARX: "application/zip",
    ExportFormat.VOXTA: "application/zip",
}


class ImportedCard(BaseModel):
    """One card produced by an import, with its freshly assigned id."""
    id: str
    envelope: CardEnvelope
    assets: List[CardAsset] = Field(default_factory=list)


class ImportOutcome(BaseModel):
    """Result of importing a single file."""
    card: ImportedCard
    detected_dialect: Dialect
    container: ContainerKind
    siblings: List[ImportedCard] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)

    @property
    def envelope(self) -> CardEnvelope:
        return self.card.envelope

    @property
    def card_ids(self) -> List[str]:
        return [self.card.id] + [s.id for s in self.siblings]


class BatchItemResult(BaseModel):
    """Per-file entry in a batch import."""
    index: int
    filename: Optional[str] = None
    success: bool
    outcome: Optional[ImportOutcome] = None
    error_kind: Optional[str] = None
    error_stage: Optional[str] = None
    error: Optional[str] = None


class BatchOutcome(BaseModel):
    """Aggregate result of a batch import."""
    results: List[BatchItemResult] = Field(default_factory=list)

    @property
    def success_count(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failure_count(self) -> int:
        return sum(1 for r in self.results if not r.success)


@dataclass
class ExportResult:
    """Bytes produced by an export plus response metadata."""
    data: bytes
    content_type: str
    filename: str
    warnings: List[str] = field(default_factory=list)
