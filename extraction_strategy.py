"""
Datasheet Catalog Extraction — Extraction Strategy Engine

Pulls text and tables out of a datasheet through an ordered chain of
backends, each bounded by a hard timeout:
  1. inline  — local text extraction (pypdf) on the downloaded bytes
  2. online  — synchronous OCR over an explicit page selection
  3. batch   — asynchronous OCR job, results read back from blob storage
  4. empty   — terminal fallback, never raises

Inline text carries no tables, so an inline success is followed by one online
OCR pass over the ranked pages to collect them. That pass can only add
tables; its failure leaves the inline text in place.

Which backends run, and in which order, comes from configuration. A timeout
or backend failure is recorded in the run's warnings and advances the chain.
Only ConfigurationError escapes.
"""
from __future__ import annotations
import asyncio
import io
import logging
import uuid
from dataclasses import dataclass, field
from typing import Awaitable, Optional, TypeVar

from pypdf import PdfReader

from collaborators import (
    BlobStore, OCREngine, is_page_limit_error,
    normalize_ocr_payload, split_text_pages,
)
from config import Settings, get_settings
from exceptions import ConfigurationError, ExtractionFailure
from models import Document, ExtractionResult, PageText, RawTable, StrategySource
from page_selector import sample_pages, select_pages

logger = logging.getLogger(__name__)

T = TypeVar('T')


async def with_timeout(awaitable: Awaitable[T], seconds: float) -> T:
    """Race a call against a timer; a timer win raises asyncio.TimeoutError."""
    return await asyncio.wait_for(awaitable, timeout=seconds)


def extract_local_pages(data: bytes, max_pages: int) -> tuple[list[PageText], int]:
    """
    Text of at most `max_pages` leading pages plus the total page count.
    PDF bytes go through pypdf; anything else is read as form-feed paged text.
    """
    if data[:5] == b'%PDF-':
        reader = PdfReader(io.BytesIO(data))
        total = len(reader.pages)
        pages = [
            PageText(page=i + 1, text=reader.pages[i].extract_text() or '')
            for i in range(min(total, max_pages))
        ]
        return pages, total
    pages = split_text_pages(data.decode('utf-8', errors='replace'))
    return pages[:max_pages], len(pages)


def _join(pages: list[PageText]) -> str:
    return '\n'.join(p.text for p in pages if p.text)


# ============================================================
# Run State
# ============================================================

@dataclass
class ExtractionRun:
    """Mutable state for one document's pass through the chain."""
    document: Document
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex[:12])
    data: Optional[bytes] = None
    page_count: Optional[int] = None
    hint_pages: list[PageText] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)
    last_failure: str = ''

    @property
    def page_estimate(self) -> Optional[int]:
        return self.page_count or self.document.page_count_hint

    def warn(self, message: str) -> None:
        self.warnings.append(message)
        logger.warning("[%s] %s", self.document.filename or self.document.uri, message)

    def fail(self, message: str) -> None:
        self.last_failure = message
        self.warn(message)


# ============================================================
# Backends
# ============================================================

class ExtractionBackend:
    """One strategy in the chain. attempt() returns a result or raises."""
    source: StrategySource

    def __init__(self, settings: Settings):
        self.settings = settings

    @property
    def timeout(self) -> float:
        return self.settings.remote_timeout_seconds

    def skip_reason(self, run: ExtractionRun, engine: 'ExtractionStrategyEngine') -> Optional[str]:
        return None

    async def attempt(self, run: ExtractionRun) -> ExtractionResult:
        raise NotImplementedError


class InlineTextBackend(ExtractionBackend):
    source = StrategySource.INLINE

    def skip_reason(self, run, engine):
        if run.data is None:
            return "inline: no document bytes"
        return None

    async def attempt(self, run: ExtractionRun) -> ExtractionResult:
        limit = self.settings.inline_page_limit
        pages, total = await with_timeout(
            asyncio.to_thread(extract_local_pages, run.data, limit), self.timeout)
        run.page_count = total
        run.hint_pages = pages

        if total > limit:
            raise ExtractionFailure(
                f"inline: {total} pages exceeds inline limit {limit}; "
                f"first {limit} kept only as page hints")

        text = _join(pages)
        if len(text.strip()) < self.settings.min_text_length:
            raise ExtractionFailure(
                f"inline: insufficient text ({len(text.strip())} chars, "
                f"minimum {self.settings.min_text_length})")

        return ExtractionResult(
            text=text, pages=pages, strategy_source=self.source, page_count=total)


class OnlineOCRBackend(ExtractionBackend):
    source = StrategySource.ONLINE

    def __init__(self, settings: Settings, ocr: OCREngine):
        super().__init__(settings)
        self.ocr = ocr

    def skip_reason(self, run, engine):
        if run.data is None:
            return "online: no document bytes"
        estimate = run.page_estimate
        if (estimate and estimate > self.settings.inline_page_limit
                and engine.has_backend(StrategySource.BATCH)):
            return (f"online: {estimate} pages over ceiling "
                    f"{self.settings.inline_page_limit}, deferring to batch")
        return None

    def _initial_selection(self, run: ExtractionRun) -> tuple[list[int], bool]:
        limit = self.settings.inline_page_limit
        estimate = run.page_estimate
        selection = []
        if run.hint_pages:
            selection = select_pages(
                run.hint_pages,
                self.settings.page_keyword_list,
                self.settings.max_selected_pages,
            )
            if selection and 1 not in selection:
                # cover page carries the brand and series
                selection = [1] + selection
        if estimate and estimate > limit and not selection:
            return sample_pages(estimate, limit), True
        if not selection:
            selection = list(range(1, min(estimate or limit, limit) + 1))
        return selection, False

    async def attempt(self, run: ExtractionRun) -> ExtractionResult:
        limit = self.settings.inline_page_limit
        selection, sampled = self._initial_selection(run)
        try:
            payload = await with_timeout(
                self.ocr.process_inline(run.data, selection), self.timeout)
        except Exception as exc:
            if isinstance(exc, ConfigurationError) or not is_page_limit_error(exc):
                raise
            run.warn(f"online: page limit rejected {len(selection)} pages ({exc}); re-sampling")
            total = run.page_estimate or max(selection)
            selection, sampled = sample_pages(total, limit), True
            payload = await with_timeout(
                self.ocr.process_inline(run.data, selection), self.timeout)

        pages, tables = normalize_ocr_payload(payload)
        text = _join(pages)
        if not text.strip():
            raise ExtractionFailure("online: OCR returned no text")

        note = f"sampled pages {selection}" if sampled else ''
        return ExtractionResult(
            text=text, pages=pages, tables=tables, strategy_source=self.source,
            note=note, page_count=run.page_estimate)

    async def table_pass(self, run: ExtractionRun) -> list[RawTable]:
        """Tables from the ranked pages of a document whose text came inline."""
        selection, _ = self._initial_selection(run)
        payload = await with_timeout(
            self.ocr.process_inline(run.data, selection), self.timeout)
        _, tables = normalize_ocr_payload(payload)
        return tables


class BatchOCRBackend(ExtractionBackend):
    source = StrategySource.BATCH

    def __init__(self, settings: Settings, ocr: OCREngine, blob_store: BlobStore):
        super().__init__(settings)
        self.ocr = ocr
        self.blob_store = blob_store

    def skip_reason(self, run, engine):
        if not self.ocr.supports_batch:
            return "batch: OCR engine has no batch mode"
        return None

    def output_prefix(self, run: ExtractionRun) -> str:
        return f"{self.settings.batch_output_prefix.rstrip('/')}/{run.run_id}/"

    async def attempt(self, run: ExtractionRun) -> ExtractionResult:
        prefix = self.output_prefix(run)
        job = await with_timeout(
            self.ocr.process_batch(run.document.uri, prefix), self.timeout)
        await with_timeout(job.wait(), self.settings.batch_timeout_seconds)

        uris = [u for u in await with_timeout(self.blob_store.list(prefix), self.timeout)
                if u.lower().endswith('.json')]
        if not uris:
            raise ExtractionFailure(f"batch: no result documents under {prefix}")

        merged: dict[int, PageText] = {}
        tables: list[RawTable] = []
        for uri in uris:
            # a bad shard costs only its own pages
            try:
                raw = await with_timeout(self.blob_store.download(uri), self.timeout)
                pages, shard_tables = normalize_ocr_payload(raw)
            except ConfigurationError:
                raise
            except asyncio.TimeoutError:
                run.warn(f"batch: download of {uri} timed out after {self.timeout:g}s")
                continue
            except Exception as e:
                run.warn(f"batch: unreadable result document {uri} ({type(e).__name__}: {e})")
                continue
            if not pages and not shard_tables:
                run.warn(f"batch: unreadable result document {uri}")
            for p in pages:
                merged.setdefault(p.page, p)
            tables.extend(shard_tables)

        pages = [merged[n] for n in sorted(merged)]
        text = _join(pages)
        if not text.strip():
            raise ExtractionFailure("batch: result documents contained no text")
        return ExtractionResult(
            text=text, pages=pages, tables=tables, strategy_source=self.source,
            page_count=run.page_count or len(pages))


# ============================================================
# Engine
# ============================================================

def build_backends(
    settings: Settings, ocr: OCREngine, blob_store: BlobStore,
) -> list[ExtractionBackend]:
    factories = {
        'inline': lambda: InlineTextBackend(settings),
        'online': lambda: OnlineOCRBackend(settings, ocr),
        'batch': lambda: BatchOCRBackend(settings, ocr, blob_store),
    }
    return [factories[name]() for name in settings.backend_order]


class ExtractionStrategyEngine:
    """Runs the configured backend chain for one document at a time."""

    def __init__(
        self,
        blob_store: BlobStore,
        ocr: OCREngine,
        settings: Optional[Settings] = None,
        backends: Optional[list[ExtractionBackend]] = None,
    ):
        self.settings = settings or get_settings()
        self.blob_store = blob_store
        self.ocr = ocr
        self.backends = backends if backends is not None else build_backends(
            self.settings, ocr, blob_store)

    def has_backend(self, source: StrategySource) -> bool:
        return any(b.source == source for b in self.backends)

    async def extract(self, document: Document) -> ExtractionResult:
        run = ExtractionRun(document=document)
        await self._download(run)

        for backend in self.backends:
            reason = backend.skip_reason(run, self)
            if reason:
                run.warn(reason)
                continue
            try:
                result = await backend.attempt(run)
            except ConfigurationError:
                raise
            except asyncio.TimeoutError:
                run.fail(f"{backend.source.value}: timed out after {backend.timeout:g}s")
                continue
            except Exception as e:
                run.fail(e.args[0] if isinstance(e, ExtractionFailure)
                         else f"{backend.source.value}: {type(e).__name__}: {e}")
                continue

            if result.strategy_source == StrategySource.INLINE and not result.tables:
                result.tables = await self._table_pass(run)
            result.warnings = run.warnings
            logger.info(
                "Extracted %s via %s (%d pages, %d tables, %d chars)",
                document.filename or document.uri, result.strategy_source.value,
                len(result.pages), len(result.tables), len(result.text))
            return result

        note = run.last_failure or "no extraction backend produced text"
        logger.warning("Extraction fell back to empty for %s: %s", document.uri, note)
        return ExtractionResult(
            strategy_source=StrategySource.EMPTY, note=note,
            page_count=run.page_estimate, warnings=run.warnings)

    async def _table_pass(self, run: ExtractionRun) -> list[RawTable]:
        online = next((b for b in self.backends if isinstance(b, OnlineOCRBackend)), None)
        if online is None:
            return []
        try:
            return await online.table_pass(run)
        except ConfigurationError:
            raise
        except asyncio.TimeoutError:
            run.warn(f"online tables: timed out after {online.timeout:g}s, keeping inline text only")
        except Exception as e:
            run.warn(f"online tables: {type(e).__name__}: {e}, keeping inline text only")
        return []

    async def _download(self, run: ExtractionRun) -> None:
        if not any(b.source in (StrategySource.INLINE, StrategySource.ONLINE)
                   for b in self.backends):
            return
        try:
            run.data = await with_timeout(
                self.blob_store.download(run.document.uri),
                self.settings.remote_timeout_seconds)
        except ConfigurationError:
            raise
        except asyncio.TimeoutError:
            run.fail(f"download: timed out after {self.settings.remote_timeout_seconds:g}s")
        except Exception as e:
            run.fail(f"download: {e}")


async def extract_document(
    document: Document,
    blob_store: BlobStore,
    ocr: OCREngine,
    settings: Optional[Settings] = None,
) -> ExtractionResult:
    """Convenience: build an engine from settings and extract one document."""
    return await ExtractionStrategyEngine(blob_store, ocr, settings).extract(document)
