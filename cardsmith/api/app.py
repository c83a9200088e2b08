"""FastAPI application for the character card engine."""

import asyncio
import logging
from typing import Any, Dict, List, Optional
from urllib.parse import quote

from fastapi import APIRouter, Depends, FastAPI, File, HTTPException, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field

from cardsmith import __version__
from cardsmith.config import ConfigLoader, EngineConfig
from cardsmith.services.character_cards import (
    CardFormatError,
    CardNotFound,
    ConversionService,
    ImportFile,
    InMemoryCardStore,
    PersistenceFailure,
    StageError,
)
from cardsmith.services.character_cards.models import ImportOutcome

logger = logging.getLogger(__name__)


# Request/Response models
class HealthResponse(BaseModel):
    """Health check response."""
    status: str
    version: str


class ImportedCardSummary(BaseModel):
    """One card created by an import."""
    id: str
    name: str
    spec: str
    asset_count: int


class ImportResponse(BaseModel):
    """Result of a single-file import."""
    card: ImportedCardSummary
    siblings: List[ImportedCardSummary] = Field(default_factory=list)
    detected_dialect: str
    container: str
    warnings: List[str] = Field(default_factory=list)


class BatchItemResponse(BaseModel):
    """Per-file entry of a batch import."""
    index: int
    filename: Optional[str] = None
    success: bool
    result: Optional[ImportResponse] = None
    error_kind: Optional[str] = None
    error_stage: Optional[str] = None
    error: Optional[str] = None


class BatchResponse(BaseModel):
    """Batch import result."""
    success_count: int
    failure_count: int
    results: List[BatchItemResponse]


class ConvertRequest(BaseModel):
    """Structural V2/V3 conversion request."""
    model_config = ConfigDict(populate_by_name=True)

    from_spec: str = Field(alias="from")
    to_spec: str = Field(alias="to")
    card: Any
    wrapped: bool = True  # False returns bare V2 fields for v3 -> v2


def _summarize(outcome: ImportOutcome) -> ImportResponse:
    def summary(card) -> ImportedCardSummary:
        return ImportedCardSummary(
            id=card.id,
            name=card.envelope.data.name,
            spec=card.envelope.spec.value,
            asset_count=len(card.assets),
        )

    return ImportResponse(
        card=summary(outcome.card),
        siblings=[summary(s) for s in outcome.siblings],
        detected_dialect=outcome.detected_dialect.value,
        container=outcome.container.value,
        warnings=outcome.warnings,
    )


def _error_detail(error: CardFormatError) -> Dict[str, Any]:
    if isinstance(error, StageError):
        detail = {"kind": error.kind, "stage": error.stage, "message": error.cause_message}
        if error.dialect:
            detail["dialect"] = error.dialect
        return detail
    return {"kind": error.kind, "message": error.message}


def to_http_exception(error: CardFormatError) -> HTTPException:
    """Map a card error (or the cause of a stage error) to an HTTP status."""
    cause = error.cause if isinstance(error, StageError) else error
    if isinstance(cause, CardNotFound):
        status = 404
    elif isinstance(cause, PersistenceFailure):
        status = 502
    elif isinstance(cause, CardFormatError):
        status = 400
    else:
        status = 500
    return HTTPException(status_code=status, detail=_error_detail(error))


def get_service(request: Request) -> ConversionService:
    return request.app.state.service


def get_config(request: Request) -> EngineConfig:
    return request.app.state.config


async def _read_upload(upload: UploadFile, config: EngineConfig) -> bytes:
    data = await upload.read()
    limit = int(config.api.max_upload_mb * 1024 * 1024)
    if len(data) > limit:
        raise HTTPException(
            status_code=413,
            detail=f"File '{upload.filename}' exceeds the {config.api.max_upload_mb} MB upload limit",
        )
    return data


router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Check system health."""
    return HealthResponse(status="ok", version=__version__)


@router.post("/api/import", response_model=ImportResponse, status_code=201)
async def import_card(
    file: UploadFile = File(...),
    service: ConversionService = Depends(get_service),
    config: EngineConfig = Depends(get_config),
):
    """
    Import a character card file.

    Accepts JSON, PNG, CHARX and Voxta packages; the format is detected
    from the bytes, with the filename and content type used only as hints.
    """
    data = await _read_upload(file, config)
    try:
        outcome = await asyncio.to_thread(service.import_card, data, file.filename, file.content_type)
    except CardFormatError as e:
        logger.warning(f"Import of '{file.filename}' failed: {e}")
        raise to_http_exception(e)
    return _summarize(outcome)


@router.post("/api/import/batch", response_model=BatchResponse)
async def import_batch(
    files: List[UploadFile] = File(...),
    service: ConversionService = Depends(get_service),
    config: EngineConfig = Depends(get_config),
):
    """Import several card files; each file succeeds or fails on its own."""
    if len(files) > config.batch.max_files:
        raise HTTPException(
            status_code=400,
            detail=f"Too many files: {len(files)} (max {config.batch.max_files})",
        )

    uploads = []
    for upload in files:
        uploads.append(ImportFile(
            data=await _read_upload(upload, config),
            filename=upload.filename,
            mime=upload.content_type,
        ))

    outcome = await service.import_batch(uploads)
    return BatchResponse(
        success_count=outcome.success_count,
        failure_count=outcome.failure_count,
        results=[
            BatchItemResponse(
                index=item.index,
                filename=item.filename,
                success=item.success,
                result=_summarize(item.outcome) if item.outcome else None,
                error_kind=item.error_kind,
                error_stage=item.error_stage,
                error=item.error,
            )
            for item in outcome.results
        ],
    )


@router.get("/api/cards/{card_id}")
async def get_card(card_id: str, service: ConversionService = Depends(get_service)):
    """Get a stored card. Asset bytes are not included, only their metadata."""
    try:
        stored = service.get_card(card_id)
    except CardFormatError as e:
        raise to_http_exception(e)

    return {
        "id": stored.id,
        "card": stored.envelope.model_dump(mode="json"),
        "assets": [
            {**asset.model_dump(mode="json", exclude={"data"}), "size": len(asset.data)}
            for asset in stored.assets
        ],
    }


@router.get("/api/cards/{card_id}/export")
async def export_card(
    card_id: str,
    format: str = Query("json", description="json, png, charx or voxta"),
    dialect: Optional[str] = Query(None, description="JSON/PNG shape, e.g. ccv2_unwrapped or wyvern"),
    service: ConversionService = Depends(get_service),
):
    """Export a stored card as a downloadable file."""
    try:
        result = await asyncio.to_thread(service.export_card, card_id, format, dialect)
    except CardFormatError as e:
        logger.warning(f"Export of {card_id} as {format} failed: {e}")
        raise to_http_exception(e)

    headers = {"Content-Disposition": f"attachment; filename*=UTF-8''{quote(result.filename)}"}
    if result.warnings:
        headers["X-Card-Warnings"] = quote("; ".join(result.warnings))
    return Response(content=result.data, media_type=result.content_type, headers=headers)


@router.delete("/api/cards/{card_id}")
async def delete_card(card_id: str, service: ConversionService = Depends(get_service)):
    """Delete a stored card and its assets."""
    try:
        service.delete_card(card_id)
    except CardFormatError as e:
        raise to_http_exception(e)
    return {"message": f"Card '{card_id}' deleted successfully"}


@router.post("/api/convert")
async def convert_card(request: ConvertRequest, service: ConversionService = Depends(get_service)):
    """Convert card JSON between V2 and V3 without storing it."""
    try:
        return service.convert_structure(request.card, request.from_spec, request.to_spec, wrapped=request.wrapped)
    except CardFormatError as e:
        raise to_http_exception(e)


def create_app(
    service: Optional[ConversionService] = None,
    config: Optional[EngineConfig] = None,
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        service: Conversion service to serve; a fresh in-memory one by default
        config: Engine configuration; loaded from config/engine.yaml by default

    Returns:
        Configured FastAPI app
    """
    if config is None:
        config = ConfigLoader().load_engine_config()
    if service is None:
        service = ConversionService.from_config(config, InMemoryCardStore())

    app = FastAPI(
        title="Cardsmith",
        description="Character card import, export and conversion",
        version=__version__,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.state.service = service
    app.state.config = config
    app.include_router(router)

    logger.info(f"Cardsmith API ready (zip limits: {config.zip_limits.max_entry_size_mb} MB/entry, "
                f"batch parallelism: {config.batch.parallelism})")
    return app
