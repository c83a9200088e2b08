"""Error taxonomy for card import, export and conversion."""

from typing import Optional


class CardFormatError(Exception):
    """Base exception for card format errors."""

    kind = "CardFormatError"

    def __init__(self, message: str):
        self.message = message
        super().__init__(message)


class UnrecognizedFormat(CardFormatError):
    """Bytes match no known container."""
    kind = "UnrecognizedFormat"


class NoEmbeddedData(CardFormatError):
    """PNG carries no character card metadata."""

    kind = "NoEmbeddedData"

    NO_TEXT_CHUNKS = "no_text_chunks"
    NO_CARD_DATA = "no_card_data"

    def __init__(self, message: str, reason: str = NO_CARD_DATA):
        self.reason = reason
        super().__init__(message)


class InvalidJson(CardFormatError):
    """Bytes claim to be JSON/text but fail to parse."""
    kind = "InvalidJson"


class InvalidCardStructure(CardFormatError):
    """Parsed payload lacks every anchor field of a character card."""
    kind = "InvalidCardStructure"


class UnsupportedConversion(CardFormatError):
    """Requested source/target pair has no defined mapping."""
    kind = "UnsupportedConversion"


class PersistenceFailure(CardFormatError):
    """Opaque passthrough from the storage collaborator."""
    kind = "PersistenceFailure"


class CardNotFound(PersistenceFailure):
    """Storage has no card with the requested id."""
    kind = "CardNotFound"


class StageError(CardFormatError):
    """A pipeline stage failed; wraps the original cause."""

    operation = "pipeline"

    def __init__(self, stage: str, cause: BaseException, dialect: Optional[str] = None):
        self.stage = stage
        self.cause = cause
        self.dialect = dialect
        context = f" (dialect guess: {dialect})" if dialect else ""
        super().__init__(f"{self.operation} failed at stage '{stage}'{context}: {cause}")

    @property
    def kind(self) -> str:  # type: ignore[override]
        return getattr(self.cause, "kind", "InternalError")

    @property
    def cause_message(self) -> str:
        return getattr(self.cause, "message", str(self.cause))


class ImportStageError(StageError):
    operation = "Import"


class ExportStageError(StageError):
    operation = "Export"
