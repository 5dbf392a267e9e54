"""SINAPI API routes.

Routes:
- POST /sinapi/collect                       - Download + ingest a month (SSE stream)
- POST /sinapi/collect-from-zip              - Ingest an uploaded archive (SSE stream)
- POST /sinapi/import/resources              - Flat-file resource import
- POST /sinapi/import/compositions           - Flat-file composition breakdown import
- POST /sinapi/import/prices                 - Flat-file price import
- GET  /sinapi/resources                     - Resource search (code/description, category)
- GET  /sinapi/resources/{id}                - Resource with recent prices
- GET  /sinapi/compositions                  - Composition search
- GET  /sinapi/compositions/{id}             - Composition with direct links
- GET  /sinapi/compositions/{id}/calculate   - Resolved cost
- GET  /sinapi/compositions/{id}/tree        - Resolved cost tree
- GET  /sinapi/reference-months              - Months with prices
- GET  /sinapi/stats                         - Catalogue counts
- GET  /sinapi/imports                       - Import audit history
"""

from __future__ import annotations

from decimal import Decimal
from uuid import UUID

from fastapi import APIRouter, Depends, File, Form, Header, HTTPException, Query, Request, UploadFile
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from sinapicalc.config import get_config
from sinapicalc.db.connection import get_db, get_session
from sinapicalc.errors import CompositionNotFound, ParseStructureError, ResourceNotFound
from sinapicalc.ingestion.audit import list_imports
from sinapicalc.ingestion.collector import SinapiCollector
from sinapicalc.ingestion.flatfiles import import_compositions, import_prices, import_resources
from sinapicalc.models import (
    CatalogueStats,
    CompositionDetail,
    CompositionNode,
    CompositionPage,
    CostResolution,
    ImportLogEntry,
    PricingContext,
    ResourceDetail,
    ResourcePage,
)
from sinapicalc.pipeline.types import ResourceCategory
from sinapicalc.resolution.engine import CostResolver
from sinapicalc.resolution.queries import (
    catalogue_stats,
    get_composition_detail,
    get_resource_detail,
    list_reference_months,
    search_compositions,
    search_resources,
)
from sinapicalc.web.models import CollectRequest
from sinapicalc.web.streaming import EventChannel, event_stream_response

router = APIRouter(prefix="/sinapi", tags=["sinapi"])


def get_operator(x_operator: str | None = Header(default=None)) -> str:
    """Operator identity recorded on audit rows."""
    return x_operator or get_config().operator_id


def get_pricing_context(
    region: str = Query(..., description="Two-letter region (UF)"),
    month: str = Query(..., description="Reference month YYYY-MM"),
    quantity: Decimal = Query(Decimal("1")),
    tax_exempt: bool = Query(False),
) -> PricingContext:
    try:
        return PricingContext(
            region=region, reference_month=month, quantity=quantity, tax_exempt=tax_exempt
        )
    except ValidationError as e:
        raise HTTPException(
            status_code=400,
            detail=e.errors(include_url=False, include_context=False, include_input=False),
        ) from e


# ============================================================================
# Streamed collection
# ============================================================================

def _stream(request: Request, run):
    web = get_config().web
    return event_stream_response(
        request,
        run,
        keepalive_seconds=web.keepalive_seconds,
        timeout_seconds=web.stream_timeout_seconds,
    )


@router.post("/collect")
async def collect(
    payload: CollectRequest,
    request: Request,
    operator: str = Depends(get_operator),
):
    """Download the month's archive and ingest it, streaming progress as SSE."""

    async def run(channel: EventChannel):
        async with get_session() as session:
            collector = SinapiCollector(
                session,
                get_config(),
                progress=channel.progress,
                cancel_event=channel.cancel_event,
            )
            return await collector.collect(payload.year, payload.month, operator)

    return _stream(request, run)


@router.post("/collect-from-zip")
async def collect_from_zip(
    request: Request,
    file: UploadFile = File(...),
    reference_month: str | None = Form(default=None),
    operator: str = Depends(get_operator),
):
    """Ingest an uploaded SINAPI archive, streaming progress as SSE."""
    if not (file.filename or "").lower().endswith(".zip"):
        raise HTTPException(status_code=400, detail="File must be a .zip archive")

    payload = await file.read()
    min_bytes = get_config().source.min_archive_bytes
    if len(payload) < min_bytes:
        raise HTTPException(
            status_code=400,
            detail=f"Archive is too small ({len(payload)} bytes), probably corrupt",
        )

    async def run(channel: EventChannel):
        async with get_session() as session:
            collector = SinapiCollector(
                session,
                get_config(),
                progress=channel.progress,
                cancel_event=channel.cancel_event,
            )
            return await collector.collect_from_archive(
                payload, operator, reference_month=reference_month
            )

    return _stream(request, run)


# ============================================================================
# Flat-file imports
# ============================================================================

async def _run_import(importer, file: UploadFile, operator: str, db: AsyncSession) -> dict:
    payload = await file.read()
    ingestion = get_config().ingestion
    try:
        result = await importer(db, file.filename or "upload.csv", payload, operator, ingestion)
    except ParseStructureError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    return result.to_dict(ingestion.result_error_cap)


@router.post("/import/resources")
async def import_resources_file(
    file: UploadFile = File(...),
    operator: str = Depends(get_operator),
    db: AsyncSession = Depends(get_db),
):
    return await _run_import(import_resources, file, operator, db)


@router.post("/import/compositions")
async def import_compositions_file(
    file: UploadFile = File(...),
    operator: str = Depends(get_operator),
    db: AsyncSession = Depends(get_db),
):
    return await _run_import(import_compositions, file, operator, db)


@router.post("/import/prices")
async def import_prices_file(
    file: UploadFile = File(...),
    operator: str = Depends(get_operator),
    db: AsyncSession = Depends(get_db),
):
    return await _run_import(import_prices, file, operator, db)


# ============================================================================
# Search
# ============================================================================

@router.get("/resources", response_model=ResourcePage)
async def resources(
    search: str | None = Query(default=None, description="Code or description contains"),
    category: ResourceCategory | None = Query(default=None),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Search resources by code or description, optionally by category."""
    return await search_resources(
        db, search, category.value if category else None, page, per_page
    )


@router.get("/resources/{resource_id}", response_model=ResourceDetail)
async def resource_detail(resource_id: UUID, db: AsyncSession = Depends(get_db)):
    try:
        return await get_resource_detail(db, resource_id)
    except ResourceNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/compositions", response_model=CompositionPage)
async def compositions(
    search: str | None = Query(default=None, description="Code or description contains"),
    page: int = Query(default=1, ge=1),
    per_page: int = Query(default=20, ge=1, le=100),
    db: AsyncSession = Depends(get_db),
):
    """Search compositions, e.g. to find the id /calculate needs."""
    return await search_compositions(db, search, page, per_page)


# ============================================================================
# Compositions
# ============================================================================

@router.get("/compositions/{composition_id}", response_model=CompositionDetail)
async def composition_detail(composition_id: UUID, db: AsyncSession = Depends(get_db)):
    try:
        return await get_composition_detail(db, composition_id)
    except CompositionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/compositions/{composition_id}/calculate", response_model=CostResolution)
async def calculate_composition(
    composition_id: UUID,
    context: PricingContext = Depends(get_pricing_context),
    db: AsyncSession = Depends(get_db),
):
    """Resolve unit and total cost for a region/month/regime/quantity."""
    resolver = CostResolver(db, max_depth=get_config().resolution.max_depth)
    try:
        return await resolver.resolve(composition_id, context)
    except CompositionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


@router.get("/compositions/{composition_id}/tree", response_model=CompositionNode)
async def composition_tree(
    composition_id: UUID,
    context: PricingContext = Depends(get_pricing_context),
    db: AsyncSession = Depends(get_db),
):
    resolver = CostResolver(db, max_depth=get_config().resolution.max_depth)
    try:
        return await resolver.resolve_tree(composition_id, context)
    except CompositionNotFound as e:
        raise HTTPException(status_code=404, detail=str(e)) from e


# ============================================================================
# Catalogue
# ============================================================================

@router.get("/reference-months", response_model=list[str])
async def reference_months(db: AsyncSession = Depends(get_db)):
    return await list_reference_months(db)


@router.get("/stats", response_model=CatalogueStats)
async def stats(db: AsyncSession = Depends(get_db)):
    return await catalogue_stats(db)


@router.get("/imports", response_model=list[ImportLogEntry])
async def imports(
    limit: int = Query(20, ge=1, le=200),
    db: AsyncSession = Depends(get_db),
):
    """Import audit history, newest first."""
    return [ImportLogEntry.model_validate(entry) for entry in await list_imports(db, limit)]
