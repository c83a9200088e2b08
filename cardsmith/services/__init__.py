"""Services package."""

from .character_cards import ConversionService, InMemoryCardStore

__all__ = [
    'ConversionService',
    'InMemoryCardStore',
]
