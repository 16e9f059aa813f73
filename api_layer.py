"""
Datasheet Catalog Extraction — FastAPI Application Layer

Endpoints:
  1. POST /ingest            — Extract and resolve one datasheet
  2. POST /ingest/batch      — Several datasheets, processed concurrently
  3. POST /schema/reconcile  — Align a specs table with its blueprint fields
"""
from __future__ import annotations
import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel
from uvicorn.importer import ImportFromStringError, import_from_string

from asyncpg_repository import AsyncPGCatalogRepository, AsyncPGStore, DatabasePool
from collaborators import Collaborators
from config import Settings, configure_logging, get_settings
from exceptions import ConfigurationError, SchemaMigrationError
from ingestion_orchestrator import (
    IngestionOrchestrator, InMemoryCatalogRepository, PipelineContext,
)
from models import IngestRequest, IngestResult, ReconcileRequest, ReconcileResult

logger = logging.getLogger(__name__)

# ============================================================
# Application State (shared singletons)
# ============================================================

class AppState:
    """Holds all shared service instances."""
    settings: Settings
    db: Optional[DatabasePool] = None
    orchestrator: IngestionOrchestrator


_state = AppState()


def load_collaborators(settings: Settings) -> Collaborators:
    """Call the factory named by COLLABORATORS_FACTORY ("module:callable")."""
    try:
        factory = import_from_string(settings.collaborators_factory)
    except ImportFromStringError as e:
        raise ConfigurationError(f"cannot load collaborators factory: {e}") from e
    collab = factory(settings)
    if not isinstance(collab, Collaborators):
        raise ConfigurationError(
            f"{settings.collaborators_factory} returned {type(collab).__name__}, "
            f"expected Collaborators")
    return collab


async def _build_context(settings: Settings) -> PipelineContext:
    collab = load_collaborators(settings)
    logger.info(
        "Collaborators from %s (generator: %s)", settings.collaborators_factory,
        getattr(collab.generator, 'model', None) or 'none, heuristics only')

    if settings.use_database:
        db = DatabasePool(settings.asyncpg_dsn, settings.db_pool_min, settings.db_pool_max)
        await db.initialize()
        _state.db = db
        store = AsyncPGStore(db)
        repo = AsyncPGCatalogRepository(
            store, schema=settings.db_schema,
            brand_source_tables=settings.brand_source_table_list)
        return await PipelineContext.create(
            collab.blob_store, collab.ocr, repo,
            generator=collab.generator, store=store, settings=settings)

    return await PipelineContext.create(
        collab.blob_store, collab.ocr, InMemoryCatalogRepository(),
        generator=collab.generator, settings=settings)


# ============================================================
# Lifespan: Startup / Shutdown
# ============================================================

@asynccontextmanager
async def lifespan(app: FastAPI):
    """Initialize services on startup, cleanup on shutdown."""
    settings = get_settings()
    configure_logging(settings)
    logger.info("Starting catalog extraction service...")

    _state.settings = settings
    ctx = await _build_context(settings)
    _state.orchestrator = IngestionOrchestrator(ctx)

    logger.info("Service ready (backends: %s)", ", ".join(settings.backend_order))
    yield

    logger.info("Shutting down catalog extraction service...")
    if _state.db is not None:
        await _state.db.close()
        _state.db = None


# ============================================================
# FastAPI App
# ============================================================

app = FastAPI(
    title="Datasheet Catalog Extraction API",
    description="Turns product datasheets into catalog rows with resolved "
                "brand, part code, series and variant keys.",
    version="1.0.0",
    lifespan=lifespan,
)


class BatchIngestRequest(BaseModel):
    documents: list[IngestRequest]


class BatchIngestResponse(BaseModel):
    results: list[IngestResult]
    processed: int
    failed: int
    errors: list[str]


# ============================================================
# 1. POST /ingest
# ============================================================

@app.post("/ingest", response_model=IngestResult, tags=["Ingestion"])
async def ingest_document(req: IngestRequest):
    """
    Extract one datasheet. Never fails on extraction problems: the result
    carries a note and warnings instead.
    """
    try:
        return await _state.orchestrator.ingest(req)
    except ConfigurationError as e:
        raise HTTPException(503, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))


# ============================================================
# 2. POST /ingest/batch
# ============================================================

@app.post("/ingest/batch", response_model=BatchIngestResponse, tags=["Ingestion"])
async def ingest_batch(req: BatchIngestRequest):
    if not req.documents:
        raise HTTPException(400, "No documents to ingest")
    try:
        results, stats = await _state.orchestrator.ingest_batch(req.documents)
    except ConfigurationError as e:
        raise HTTPException(503, str(e))
    logger.info(
        f"[ingest] batch processed={stats.processed_documents} "
        f"failed={stats.failed_documents} rows={stats.rows_extracted}")
    return BatchIngestResponse(
        results=results,
        processed=stats.processed_documents,
        failed=stats.failed_documents,
        errors=stats.errors,
    )


# ============================================================
# 3. POST /schema/reconcile
# ============================================================

@app.post("/schema/reconcile", response_model=ReconcileResult, tags=["Schema"])
async def reconcile_schema(req: ReconcileRequest):
    """
    Diff the blueprint against the live table and apply safe statements.
    Partial application is reported, not rolled back.
    """
    try:
        return await _state.orchestrator.reconcile_schema(
            req.table, req.blueprint_fields, apply=req.apply)
    except ConfigurationError as e:
        raise HTTPException(503, str(e))
    except ValueError as e:
        raise HTTPException(400, str(e))
    except SchemaMigrationError as e:
        logger.error(f"Reconcile of {req.table} failed at: {e.failed_statement}")
        raise HTTPException(500, {
            "message": str(e),
            "executed": e.executed,
            "failed_statement": e.failed_statement,
        })


# ============================================================
# Entry Point
# ============================================================

if __name__ == "__main__":
    import uvicorn
    settings = get_settings()
    configure_logging(settings)
    uvicorn.run(app, host=settings.host, port=settings.port, log_level=settings.log_level.lower())
