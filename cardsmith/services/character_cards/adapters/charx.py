"""
CHARX card.json mapping.

CHARX only holds CCv3. Asset descriptors that point into the archive
(``embeded://``) are dropped on import since the codec hands the files over
as assets and regenerates the descriptors on export; descriptors pointing
elsewhere stay with the card.
"""

import logging
import time
from typing import Any, Dict

from ..charx_codec import is_embedded_uri
from ..errors import InvalidCardStructure
from ..models import CanonicalCard, CardEnvelope, CardSpec, Dialect
from .fields import read_card_fields, require_anchor, write_card_fields, wrap

logger = logging.getLogger(__name__)


def to_canonical(raw: Dict[str, Any]) -> CanonicalCard:
    data = raw.get("data")
    if not isinstance(data, dict):
        # A few writers put a bare v2-style object in card.json
        data = raw
    data = dict(require_anchor(data, "charx"))

    descriptors = data.get("assets")
    if isinstance(descriptors, list):
        external = [d for d in descriptors if isinstance(d, dict) and not is_embedded_uri(d.get("uri"))]
        if external:
            data["assets"] = external
        else:
            data.pop("assets")
    elif "assets" in data:
        raise InvalidCardStructure("charx: data.assets must be a list")
    return read_card_fields(data, Dialect.CHARX.value)


def from_canonical(envelope: CardEnvelope) -> Dict[str, Any]:
    """Always CCv3. Upgrading stamps creation/modification dates that are missing."""
    card = envelope.data.model_copy(deep=True)
    now = int(time.time())
    if card.creation_date is None:
        card.creation_date = now
    if card.modification_date is None:
        card.modification_date = now
    if envelope.spec != CardSpec.V3:
        logger.debug(f"Upgrading {envelope.spec.value} card to chara_card_v3 for CHARX")
    return wrap(CardSpec.V3, write_card_fields(card, CardSpec.V3))
