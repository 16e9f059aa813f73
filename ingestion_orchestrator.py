"""
Datasheet Catalog Extraction — Ingestion Orchestrator

Bridges extraction → normalization → resolution → variant inference for
each document. Responsibilities:
  1. Build the pipeline context once (collaborators, brand aliases, alias cache)
  2. Run the extraction strategy chain
  3. Normalize OCR tables into catalog rows
  4. Resolve brand / code / series against closed candidate sets
  5. Classify the family from the registry when the request names none
  6. Fan rows out to part numbers and detect variant keys missing from the
     family blueprint
  7. Optionally upsert rows into the family's specs table
  8. Reconcile a specs table with its blueprint (migration entry point)
"""
from __future__ import annotations
import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any, Optional

from brand_resolver import AliasDictionary, BrandResolver, seed_alias_dictionary
from collaborators import BlobStore, GenerationEngine, OCREngine, RelationalStore
from config import Settings, get_settings
from exceptions import ConfigurationError
from extraction_strategy import ExtractionStrategyEngine
from family_classifier import FamilyClassifier
from models import (
    Blueprint, BlueprintField, CatalogRow, Document, IngestRequest, IngestResult,
    ReconcileResult, Recipe, StrategySource,
)
from part_numbers import explode_rows
from schema_reconciler import SchemaReconciler
from table_normalizer import normalize_code, parse_tables
from variant_keys import AliasCache, infer_variant_keys

logger = logging.getLogger(__name__)

NOTE_NO_ROWS = 'no_rows_extracted'
NOTE_ROWS_FROM_RESOLUTION = 'rows_from_resolution'

# ============================================================
# Catalog Repository (Repository Pattern)
# ============================================================

class CatalogRepository:
    """
    Blueprint, recipe and brand-alias lookups plus row persistence.
    Backed by asyncpg in production (asyncpg_repository.py).
    """

    async def load_blueprint(self, family_slug: str) -> Optional[Blueprint]:
        raise NotImplementedError

    async def load_recipes(self, family_slug: str) -> list[Recipe]:
        raise NotImplementedError

    async def load_families(self) -> list[str]:
        raise NotImplementedError

    async def load_brand_aliases(self) -> AliasDictionary:
        raise NotImplementedError

    async def upsert_rows(self, table: str, brand: str, rows: list[CatalogRow]) -> int:
        raise NotImplementedError


class InMemoryCatalogRepository(CatalogRepository):
    """In-memory implementation for testing without a database."""

    def __init__(
        self,
        blueprints: Optional[dict[str, Blueprint]] = None,
        recipes: Optional[list[Recipe]] = None,
        brand_aliases: Optional[AliasDictionary] = None,
    ):
        self.blueprints: dict[str, Blueprint] = dict(blueprints or {})
        self.recipes: list[Recipe] = list(recipes or [])
        self.brand_aliases: AliasDictionary = dict(brand_aliases or {})
        self.tables: dict[str, dict[tuple[str, str], dict[str, Any]]] = {}
        self.recipe_loads = 0

    async def load_blueprint(self, family_slug: str) -> Optional[Blueprint]:
        return self.blueprints.get(family_slug)

    async def load_recipes(self, family_slug: str) -> list[Recipe]:
        self.recipe_loads += 1
        return [r for r in self.recipes if r.family_slug == family_slug]

    async def load_families(self) -> list[str]:
        return sorted(self.blueprints)

    async def load_brand_aliases(self) -> AliasDictionary:
        return self.brand_aliases or seed_alias_dictionary()

    async def upsert_rows(self, table: str, brand: str, rows: list[CatalogRow]) -> int:
        store = self.tables.setdefault(table, {})
        for row in rows:
            store[(brand.lower(), row.code.lower())] = {
                'brand': brand, **row.model_dump(mode='json'),
            }
        return len(rows)


# ============================================================
# Pipeline Context
# ============================================================

@dataclass
class PipelineContext:
    """Everything a run shares; built once, passed to every stage."""
    settings: Settings
    blob_store: BlobStore
    ocr: OCREngine
    repository: CatalogRepository
    generator: Optional[GenerationEngine] = None
    store: Optional[RelationalStore] = None
    brand_aliases: AliasDictionary = field(default_factory=dict)
    alias_cache: AliasCache = field(default_factory=AliasCache)
    recipes: dict[str, list[Recipe]] = field(default_factory=dict)
    families: Optional[list[str]] = None

    @classmethod
    async def create(
        cls,
        blob_store: BlobStore,
        ocr: OCREngine,
        repository: CatalogRepository,
        generator: Optional[GenerationEngine] = None,
        store: Optional[RelationalStore] = None,
        settings: Optional[Settings] = None,
    ) -> 'PipelineContext':
        ctx = cls(
            settings=settings or get_settings(),
            blob_store=blob_store, ocr=ocr, repository=repository,
            generator=generator, store=store,
        )
        ctx.brand_aliases = await repository.load_brand_aliases()
        logger.info("Pipeline context ready (%d known brands)", len(ctx.brand_aliases))
        return ctx


@dataclass
class IngestionStats:
    """Tracks stats for a batch of documents."""
    total_documents: int = 0
    processed_documents: int = 0
    failed_documents: int = 0
    empty_extractions: int = 0
    rows_extracted: int = 0
    new_variant_keys: int = 0
    errors: list[str] = field(default_factory=list)


# ============================================================
# Main Ingestion Orchestrator
# ============================================================

class IngestionOrchestrator:
    """
    Drives one document through the pipeline:
      extraction → table normalization → brand/code resolution → variant keys
    """

    def __init__(self, ctx: PipelineContext):
        self.ctx = ctx
        self.settings = ctx.settings
        self.extractor = ExtractionStrategyEngine(ctx.blob_store, ctx.ocr, ctx.settings)
        self.resolver = BrandResolver(ctx.generator, ctx.settings)
        self.classifier = FamilyClassifier(ctx.generator, ctx.settings)
        self._recipe_lock = asyncio.Lock()
        self._family_lock = asyncio.Lock()

    # ----------------------------------------------------------
    # Public API
    # ----------------------------------------------------------

    async def ingest(self, request: IngestRequest) -> IngestResult:
        blueprint = await self._blueprint_for(request)
        document = Document(
            uri=request.uri, filename=request.filename,
            page_count_hint=request.page_count_hint,
        )

        # --- Step 1: Extraction strategy chain ---
        extraction = await self.extractor.extract(document)
        warnings = list(extraction.warnings)
        notes = [extraction.note] if extraction.note else []

        # --- Step 2: Tables → catalog rows ---
        rows = parse_tables(extraction.tables)

        # --- Step 3: Brand / code / series ---
        resolution = await self.resolver.resolve(
            extraction.text, self.ctx.brand_aliases, warnings)
        series = resolution.series or next((r.series for r in rows if r.series), '')

        if not rows:
            code = normalize_code(resolution.code)
            if code:
                rows = [CatalogRow(code=code, series=series)]
                notes.append(NOTE_ROWS_FROM_RESOLUTION)
            else:
                notes.append(NOTE_NO_ROWS)

        # --- Step 4: Family, when the request named none ---
        if blueprint is None and not request.family_slug and self.settings.classify_family:
            blueprint = await self._classified_blueprint(extraction.text, warnings)

        # --- Step 5: Part-number fan-out and variant keys ---
        new_keys: list[str] = []
        if blueprint is not None:
            recipes = await self._recipes_for(blueprint.family_slug)
            index = self.ctx.alias_cache.get_or_build(
                blueprint, recipes, resolution.brand, series)
            rows = explode_rows(blueprint, index, rows)
            variant = infer_variant_keys(blueprint, index, extraction.tables, rows)
            new_keys = variant.new_keys

        # --- Step 6: Persistence ---
        if self.settings.persist_rows and blueprint and blueprint.specs_table and rows:
            await self._persist(blueprint.specs_table, resolution.brand, rows, warnings)

        result = IngestResult(
            brand=resolution.brand,
            code=resolution.code,
            series=series,
            family_slug=blueprint.family_slug if blueprint else '',
            rows=rows,
            new_variant_keys=new_keys,
            note='; '.join(notes),
            strategy_source=extraction.strategy_source,
            resolution_source=resolution.source,
            warnings=warnings,
        )
        logger.info(
            f"Ingested {document.filename or document.uri}: brand={result.brand!r} "
            f"rows={len(rows)} via {extraction.strategy_source.value}"
            + (f" note={result.note}" if result.note else "")
        )
        return result

    async def ingest_batch(
        self, requests: list[IngestRequest],
    ) -> tuple[list[IngestResult], IngestionStats]:
        """Ingest documents concurrently; one failure never sinks the batch."""
        stats = IngestionStats(total_documents=len(requests))
        gate = asyncio.Semaphore(max(1, self.settings.ingest_concurrency))

        async def run_one(req: IngestRequest) -> IngestResult:
            async with gate:
                try:
                    return await self.ingest(req)
                except ConfigurationError:
                    raise
                except Exception as e:
                    err = f"Failed to ingest {req.filename or req.uri}: {e}"
                    stats.errors.append(err)
                    logger.exception(err)
                    return IngestResult(note=f"error: {e}")

        results = await asyncio.gather(*(run_one(r) for r in requests))
        for res in results:
            if res.note.startswith('error:'):
                stats.failed_documents += 1
                continue
            stats.processed_documents += 1
            stats.rows_extracted += len(res.rows)
            stats.new_variant_keys += len(res.new_variant_keys)
            if res.strategy_source == StrategySource.EMPTY:
                stats.empty_extractions += 1
        return list(results), stats

    async def reconcile_schema(
        self,
        table: str,
        blueprint_fields: list[BlueprintField],
        apply: bool = True,
    ) -> ReconcileResult:
        if self.ctx.store is None:
            raise ConfigurationError("schema reconciliation needs a relational store")
        reconciler = SchemaReconciler(
            self.ctx.store, schema=self.settings.db_schema,
            vector_dim=self.settings.vector_dim)
        return await reconciler.reconcile(table, blueprint_fields, apply=apply)

    # ----------------------------------------------------------
    # Internal
    # ----------------------------------------------------------

    async def _blueprint_for(self, request: IngestRequest) -> Optional[Blueprint]:
        if request.blueprint is not None:
            return request.blueprint
        if request.family_slug:
            blueprint = await self.ctx.repository.load_blueprint(request.family_slug)
            if blueprint is None:
                logger.warning(f"No blueprint registered for family {request.family_slug}")
            return blueprint
        return None

    async def _classified_blueprint(self, corpus: str, warnings: list[str]) -> Optional[Blueprint]:
        families = await self._families(warnings)
        choice = await self.classifier.classify(corpus, families, warnings)
        if not choice.family_slug:
            return None
        logger.info(f"Classified family {choice.family_slug} via {choice.source.value}")
        return await self.ctx.repository.load_blueprint(choice.family_slug)

    async def _families(self, warnings: list[str]) -> list[str]:
        async with self._family_lock:
            if self.ctx.families is None:
                try:
                    self.ctx.families = await self.ctx.repository.load_families()
                except Exception as e:
                    msg = f"classifier: family registry unavailable: {e}"
                    warnings.append(msg)
                    logger.warning(msg)
                    return []
            return self.ctx.families

    async def _recipes_for(self, family_slug: str) -> list[Recipe]:
        # one load per family per run, shared by concurrent documents
        async with self._recipe_lock:
            if family_slug not in self.ctx.recipes:
                try:
                    self.ctx.recipes[family_slug] = await self.ctx.repository.load_recipes(family_slug)
                except Exception as e:
                    logger.warning(f"Recipe load failed for {family_slug}: {e}")
                    self.ctx.recipes[family_slug] = []
            return self.ctx.recipes[family_slug]

    async def _persist(self, table: str, brand: str, rows: list[CatalogRow],
                       warnings: list[str]) -> None:
        try:
            await self.ctx.repository.upsert_rows(table, brand, rows)
        except Exception as e:
            msg = f"persist: upsert into {table} failed: {e}"
            warnings.append(msg)
            logger.exception(msg)


# ============================================================
# Example / Local Usage
# ============================================================

async def _example():
    """Run one in-memory datasheet through the pipeline."""
    from collaborators import InMemoryBlobStore, InMemoryOCREngine

    blob = InMemoryBlobStore()
    pages = [
        "OMRON Corporation\nG5V-2 Signal Relay\nHigh sensitivity, 2 poles.",
        "Ordering Information\nType No. / Coil voltage table below.",
    ]
    blob.put("gs://datasheets/omron-g5v2.pdf", "\f".join(pages))
    ocr = InMemoryOCREngine(blob, tables=[{
        'page': 2,
        'headers': ['Type No.', 'Series', 'Coil voltage'],
        'rows': [['G5V-2-H1 5VDC', 'G5V-2', '5 VDC'],
                 ['G5V-2-H1 12VDC', 'G5V-2', '12 VDC']],
    }])
    repo = InMemoryCatalogRepository(blueprints={
        'relay': Blueprint(family_slug='relay', variant_keys=['coil_voltage']),
    })
    ctx = await PipelineContext.create(blob, ocr, repo)
    result = await IngestionOrchestrator(ctx).ingest(IngestRequest(
        uri="gs://datasheets/omron-g5v2.pdf", filename="omron-g5v2.pdf",
        family_slug='relay'))

    print(f"Brand: {result.brand} (via {result.resolution_source.value})")
    print(f"Extraction: {result.strategy_source.value} {result.note}")
    for row in result.rows:
        print(f"  {row.code} [{row.series}] {row.attributes}")
    print(f"Warnings: {len(result.warnings)}")


if __name__ == '__main__':
    logging.basicConfig(level=logging.INFO)
    asyncio.run(_example())
