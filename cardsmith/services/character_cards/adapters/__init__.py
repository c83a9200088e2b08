"""
Dialect Adapters
================

Registry of ``(dialect, to_canonical, from_canonical)`` records looked up by
the format detector's hint. Adding a dialect means writing its two mapping
functions and registering one more record here.
"""

from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

from ..errors import UnsupportedConversion
from ..models import CanonicalCard, CardEnvelope, CardSpec, Dialect
from . import ccv2, ccv3, character_tavern, charx, chub, voxta, wyvern
from .fields import V3_FIELDS


@dataclass(frozen=True)
class DialectAdapter:
    """
    Mapping pair for one dialect.

    ``spec`` is the envelope spec an import produces; None means it follows
    the raw card. ``from_canonical`` is None for import-only dialects.
    """
    dialect: Dialect
    to_canonical: Callable[[Any], CanonicalCard]
    from_canonical: Optional[Callable[[CardEnvelope], Any]]
    spec: Optional[CardSpec] = None
    description: str = ""

    @property
    def can_export(self) -> bool:
        return self.from_canonical is not None

    def spec_for(self, raw: Any) -> CardSpec:
        if self.spec is not None:
            return self.spec
        return detect_spec(raw)

    def export(self, envelope: CardEnvelope) -> Any:
        if self.from_canonical is None:
            raise UnsupportedConversion(f"Cards cannot be exported as {self.dialect.value}")
        return self.from_canonical(envelope)


def detect_spec(raw: Any) -> CardSpec:
    """Spec a raw card claims, falling back to v3 when it carries v3-only fields."""
    if not isinstance(raw, dict):
        return CardSpec.V2
    spec = raw.get("spec")
    if isinstance(spec, str):
        if spec.startswith(CardSpec.V3.value):
            return CardSpec.V3
        if spec.startswith(CardSpec.V2.value):
            return CardSpec.V2
    data = raw.get("data") if isinstance(raw.get("data"), dict) else raw
    if any(key in data for key in V3_FIELDS):
        return CardSpec.V3
    return CardSpec.V2


ADAPTERS: Dict[Dialect, DialectAdapter] = {}


def register_adapter(adapter: DialectAdapter) -> DialectAdapter:
    ADAPTERS[adapter.dialect] = adapter
    return adapter


def get_adapter(dialect: Dialect) -> DialectAdapter:
    try:
        return ADAPTERS[Dialect(dialect)]
    except (KeyError, ValueError):
        raise UnsupportedConversion(f"No adapter registered for dialect '{dialect}'")


register_adapter(DialectAdapter(
    Dialect.CCV2, ccv2.wrapped_to_canonical, ccv2.wrapped_from_canonical, CardSpec.V2,
    "Character Card V2 with spec/data wrapper",
))
register_adapter(DialectAdapter(
    Dialect.CCV2_UNWRAPPED, ccv2.unwrapped_to_canonical, ccv2.unwrapped_from_canonical, CardSpec.V2,
    "Legacy Character Card V2 with fields at the top level",
))
register_adapter(DialectAdapter(
    Dialect.CCV3, ccv3.to_canonical, ccv3.from_canonical, CardSpec.V3,
    "Character Card V3",
))
register_adapter(DialectAdapter(
    Dialect.WYVERN, wyvern.to_canonical, wyvern.from_canonical, CardSpec.V2,
    "Wyvern hybrid V2 with top-level duplicates",
))
register_adapter(DialectAdapter(
    Dialect.CHUB, chub.to_canonical, chub.from_canonical, None,
    "Chub V2/V3 with chub/depth_prompt extensions",
))
register_adapter(DialectAdapter(
    Dialect.CHARACTER_TAVERN, character_tavern.to_canonical, None, None,
    "CharacterTavern export (import only)",
))
register_adapter(DialectAdapter(
    Dialect.CHARX, charx.to_canonical, charx.from_canonical, CardSpec.V3,
    "CHARX card.json (always V3)",
))
register_adapter(DialectAdapter(
    Dialect.VOXTA, voxta.to_canonical, voxta.from_canonical, CardSpec.V3,
    "Voxta character bundle (lossy)",
))


__all__ = [
    'ADAPTERS',
    'DialectAdapter',
    'detect_spec',
    'get_adapter',
    'register_adapter',
]
