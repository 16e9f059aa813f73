"""Tests for the extraction backend chain."""

import asyncio
import io
import json

import pytest
from pypdf import PdfWriter

from collaborators import InMemoryBlobStore, InMemoryOCREngine
from exceptions import ConfigurationError
from extraction_strategy import ExtractionStrategyEngine, extract_document, extract_local_pages
from models import Document, StrategySource

URI = 'mem://datasheets/relay.pdf'


def _long_document(n: int) -> str:
    return '\f'.join(f"Page {i}: general product description text" for i in range(1, n + 1))


class FlakyOCR(InMemoryOCREngine):
    """Rejects the first inline request with a page-limit message."""

    def __init__(self, blob_store):
        super().__init__(blob_store)
        self.rejected = False

    async def process_inline(self, data, pages=None):
        if not self.rejected:
            self.rejected = True
            raise RuntimeError("Document pages exceed the limit: 15")
        return await super().process_inline(data, pages)


class SlowOCR(InMemoryOCREngine):

    async def process_inline(self, data, pages=None):
        await asyncio.sleep(5)
        return {}


class MisconfiguredOCR(InMemoryOCREngine):

    async def process_inline(self, data, pages=None):
        raise ConfigurationError("processor location not set")


class TornShardOCR(InMemoryOCREngine):
    """Writes damaged result shards next to the good ones."""

    async def process_batch(self, uri, output_prefix):
        job = await super().process_batch(uri, output_prefix)
        self.blob_store.put(f"{output_prefix}output-nulls.json",
                            json.dumps({'pages': [{'pageNumber': None, 'text': 'orphan'}]}))
        self.blob_store.put(f"{output_prefix}output-torn.json", '{"pages": [')
        self.blob_store.put(f"{output_prefix}output-locked.json", '{}')
        return job


class LockedShardStore(InMemoryBlobStore):

    async def download(self, uri):
        if 'output-locked' in uri:
            raise PermissionError("access denied")
        return await super().download(uri)


class TestLocalPages:

    def test_form_feed_text(self):
        pages, total = extract_local_pages(b"a\fb\fc", max_pages=2)
        assert [p.text for p in pages] == ['a', 'b']
        assert total == 3

    def test_pdf_bytes_read_with_pypdf(self):
        writer = PdfWriter()
        for _ in range(3):
            writer.add_blank_page(width=72, height=72)
        buf = io.BytesIO()
        writer.write(buf)
        pages, total = extract_local_pages(buf.getvalue(), max_pages=2)
        assert total == 3
        assert [p.page for p in pages] == [1, 2]


class TestStrategyChain:

    @pytest.mark.asyncio
    async def test_inline_text_gets_tables_from_ranked_pages(
            self, settings, blob_store, ocr, relay_pages, relay_tables):
        blob_store.put(URI, '\f'.join(relay_pages))
        ocr.tables = relay_tables
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.INLINE
        assert result.page_count == 3
        assert 'G5V-2 Signal Relay' in result.text
        # cover plus the ordering page, nothing else
        assert ocr.inline_calls == [[1, 2]]
        assert [t.page for t in result.tables] == [2]

    @pytest.mark.asyncio
    async def test_inline_only_chain_skips_ocr(self, settings, blob_store, ocr, relay_pages, relay_tables):
        blob_store.put(URI, '\f'.join(relay_pages))
        ocr.tables = relay_tables
        settings = settings.model_copy(update={'extraction_backends': 'inline'})
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.INLINE
        assert result.tables == []
        assert ocr.inline_calls == []

    @pytest.mark.asyncio
    async def test_failed_table_pass_keeps_inline_text(self, settings, blob_store, relay_pages):
        blob_store.put(URI, '\f'.join(relay_pages))
        settings = settings.model_copy(update={'remote_timeout_seconds': 0.2})
        result = await ExtractionStrategyEngine(
            blob_store, SlowOCR(blob_store), settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.INLINE
        assert result.tables == []
        assert any(w.startswith('online tables: timed out') for w in result.warnings)

    @pytest.mark.asyncio
    async def test_short_text_falls_through_to_online(self, settings, blob_store, ocr, relay_pages, relay_tables):
        blob_store.put(URI, '\f'.join(relay_pages))
        ocr.tables = relay_tables
        settings = settings.model_copy(update={'min_text_length': 5000})
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.ONLINE
        # ordering page ranked, cover page always included
        assert ocr.inline_calls == [[1, 2]]
        assert len(result.tables) == 1
        assert any('insufficient text' in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_long_document_goes_to_batch(self, settings, blob_store, ocr):
        blob_store.put(URI, _long_document(40))
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.BATCH
        assert len(result.pages) == 40
        assert ocr.inline_calls == []
        assert len(ocr.batch_calls) == 1
        assert ocr.batch_calls[0][1].startswith('mem://ocr-out/')
        assert any('exceeds inline limit' in w for w in result.warnings)
        assert any('deferring to batch' in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_damaged_batch_shards_are_skipped(self, settings):
        blob_store = LockedShardStore()
        blob_store.put(URI, _long_document(40))
        ocr = TornShardOCR(blob_store)
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.BATCH
        assert [p.page for p in result.pages] == list(range(1, 41))
        unreadable = [w for w in result.warnings if 'unreadable result document' in w]
        assert len(unreadable) == 3
        assert any('PermissionError' in w for w in unreadable)

    @pytest.mark.asyncio
    async def test_long_document_without_batch_is_sampled(self, settings, blob_store, ocr):
        blob_store.put(URI, _long_document(40))
        settings = settings.model_copy(update={'extraction_backends': 'inline,online'})
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.ONLINE
        assert result.note.startswith('sampled pages')
        [selection] = ocr.inline_calls
        assert len(selection) == 15
        assert {1, 2, 3, 39, 40} <= set(selection)

    @pytest.mark.asyncio
    async def test_page_limit_rejection_resamples_once(self, settings, blob_store):
        blob_store.put(URI, "p1\fp2\fp3\fp4\fp5")
        ocr = FlakyOCR(blob_store)
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.ONLINE
        assert result.note == 'sampled pages [1, 2, 3, 4, 5]'
        assert len(ocr.inline_calls) == 1
        assert any('re-sampling' in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_timeout_advances_to_empty(self, settings, blob_store):
        blob_store.put(URI, "short")
        settings = settings.model_copy(update={
            'extraction_backends': 'inline,online', 'remote_timeout_seconds': 0.2,
        })
        result = await ExtractionStrategyEngine(
            blob_store, SlowOCR(blob_store), settings).extract(Document(uri=URI))

        assert result.strategy_source == StrategySource.EMPTY
        assert 'timed out' in result.note
        assert result.text == ''

    @pytest.mark.asyncio
    async def test_missing_object_never_raises(self, settings, blob_store, ocr):
        result = await ExtractionStrategyEngine(blob_store, ocr, settings).extract(
            Document(uri='mem://datasheets/missing.pdf'))

        assert result.strategy_source == StrategySource.EMPTY
        assert 'object not found' in result.note
        assert any('inline: no document bytes' in w for w in result.warnings)

    @pytest.mark.asyncio
    async def test_configuration_error_propagates(self, settings, blob_store):
        blob_store.put(URI, "short")
        with pytest.raises(ConfigurationError):
            await ExtractionStrategyEngine(
                blob_store, MisconfiguredOCR(blob_store), settings).extract(Document(uri=URI))

    @pytest.mark.asyncio
    async def test_backend_order_from_settings(self, settings, blob_store, ocr, relay_pages):
        blob_store.put(URI, '\f'.join(relay_pages))
        settings = settings.model_copy(update={'extraction_backends': 'batch'})
        engine = ExtractionStrategyEngine(blob_store, ocr, settings)

        assert [b.source for b in engine.backends] == [StrategySource.BATCH]
        result = await engine.extract(Document(uri=URI))
        assert result.strategy_source == StrategySource.BATCH


@pytest.mark.asyncio
async def test_extract_document_helper(settings, blob_store, ocr, relay_pages):
    blob_store.put(URI, '\f'.join(relay_pages))
    result = await extract_document(Document(uri=URI, filename='relay.pdf'), blob_store, ocr, settings)
    assert result.strategy_source == StrategySource.INLINE
    assert 'G5V-2 Signal Relay' in result.text
