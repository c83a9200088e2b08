"""
Card storage.

The conversion service only needs get/put/delete by opaque id, so any
backend satisfying ``CardStore`` can be injected. ``InMemoryCardStore``
keeps serialized bytes rather than model objects, so every ``get`` hands
back a freshly built card that callers can mutate freely.
"""

import logging
import threading
from typing import Dict, List, Protocol, Tuple

from .errors import CardNotFound
from .models import CardAsset, CardEnvelope, StoredCard

logger = logging.getLogger(__name__)


class CardStore(Protocol):
    """Persistence collaborator contract."""

    def get(self, card_id: str) -> StoredCard:
        """Load a card; raises CardNotFound for unknown ids."""
        ...

    def put(self, card_id: str, envelope: CardEnvelope, assets: List[CardAsset]) -> None:
        """Create or replace a card; raises PersistenceFailure when it cannot be written."""
        ...

    def delete(self, card_id: str) -> None:
        """Remove a card; raises CardNotFound for unknown ids."""
        ...


class InMemoryCardStore:
    """Process-local store; one instance per engine (or per test)."""

    def __init__(self):
        self._cards: Dict[str, Tuple[bytes, List[Tuple[bytes, bytes]]]] = {}
        self._lock = threading.Lock()

    def get(self, card_id: str) -> StoredCard:
        """
        Rebuild a stored card from its serialized form.

        Args:
            card_id: Card identifier

        Returns:
            A fresh StoredCard; callers may mutate it freely

        Raises:
            CardNotFound: No card with that id
        """
        with self._lock:
            record = self._cards.get(card_id)
        if record is None:
            raise CardNotFound(f"Card not found: {card_id}")
        envelope_json, asset_records = record
        assets = []
        for meta_json, payload in asset_records:
            asset = CardAsset.model_validate_json(meta_json)
            asset.data = payload
            assets.append(asset)
        return StoredCard(
            id=card_id,
            envelope=CardEnvelope.model_validate_json(envelope_json),
            assets=assets,
        )

    def put(self, card_id: str, envelope: CardEnvelope, assets: List[CardAsset]) -> None:
        # Asset bytes are kept beside their metadata; JSON has no bytes type
        asset_records = [
            (asset.model_dump_json(exclude={"data"}).encode("utf-8"), bytes(asset.data))
            for asset in assets
        ]
        record = (envelope.model_dump_json().encode("utf-8"), asset_records)
        with self._lock:
            self._cards[card_id] = record
        logger.debug(f"Stored card {card_id} ({len(assets)} assets)")

    def delete(self, card_id: str) -> None:
        with self._lock:
            removed = self._cards.pop(card_id, None)
        if removed is None:
            raise CardNotFound(f"Card not found: {card_id}")
        logger.debug(f"Deleted card {card_id}")

    def __contains__(self, card_id: object) -> bool:
        with self._lock:
            return card_id in self._cards

    def __len__(self) -> int:
        with self._lock:
            return len(self._cards)
