"""Tests for boundary payload normalization and the in-memory collaborators."""

import json

import pytest

from collaborators import (
    GenerationEngine, InMemoryGenerationEngine, InMemoryOCREngine, OCREngine,
    is_page_limit_error, normalize_ocr_payload, safe_parse_json, split_text_pages,
)
from exceptions import ConfigurationError, NotFound, PageLimitError


class TestSafeParseJson:

    def test_plain(self):
        assert safe_parse_json('{"a": 1}') == {'a': 1}

    def test_fenced(self):
        assert safe_parse_json('```json\n{"brand": "OMRON"}\n```') == {'brand': 'OMRON'}

    def test_object_inside_prose(self):
        assert safe_parse_json('Sure! {"code": "G5V-2"} hope that helps') == {'code': 'G5V-2'}

    def test_bytes(self):
        assert safe_parse_json(b'{"a": [1, 2]}') == {'a': [1, 2]}

    def test_unrecoverable(self):
        assert safe_parse_json('I cannot help with that') is None

    def test_non_string_passthrough(self):
        assert safe_parse_json({'a': 1}) == {'a': 1}


class TestNormalizeOcrPayload:

    def test_nested_document_variant_names(self):
        payload = {'document': {'pages': [
            {'pageNumber': 2, 'layoutText': 'second', 'tables': [{
                'headerRows': [[{'text': 'Part No.'}, {'text': 'Series'}]],
                'bodyRows': [{'cells': [{'text': 'X1'}, {'value': 'A'}]}],
            }]},
            {'pageNumber': 1, 'text': 'first'},
        ]}}
        pages, tables = normalize_ocr_payload(payload)
        assert [(p.page, p.text) for p in pages] == [(1, 'first'), (2, 'second')]
        assert tables[0].page == 2
        assert tables[0].headers == ['Part No.', 'Series']
        assert tables[0].body_rows == [['X1', 'A']]

    def test_flat_headers_and_top_level_tables(self):
        payload = {
            'pages': [{'page': 1, 'text': 'p1'}],
            'tables': [{'page': 1, 'headers': ['Code', 'Series'], 'rows': [['A-1', 'S']]}],
        }
        _, tables = normalize_ocr_payload(payload)
        assert tables[0].header_rows == [['Code', 'Series']]
        assert tables[0].body_rows == [['A-1', 'S']]

    def test_json_text_payload(self):
        pages, _ = normalize_ocr_payload(json.dumps({'pages': [{'text': 'only'}]}))
        assert pages[0].page == 1

    def test_garbage(self):
        assert normalize_ocr_payload('not json') == ([], [])
        assert normalize_ocr_payload(None) == ([], [])

    def test_pages_without_usable_number_skipped(self):
        payload = {'pages': [
            {'pageNumber': None, 'text': 'lost'},
            {'pageNumber': 'two', 'text': 'lost'},
            {'pageNumber': '3', 'text': 'third', 'tables': [{'headers': ['Code'], 'rows': []}]},
            {'pageNumber': 4.0, 'text': 'fourth'},
        ]}
        pages, tables = normalize_ocr_payload(payload)
        assert [(p.page, p.text) for p in pages] == [(3, 'third'), (4, 'fourth')]
        assert tables[0].page == 3


def test_split_text_pages():
    pages = split_text_pages("a\fb\fc")
    assert [p.page for p in pages] == [1, 2, 3]
    assert pages[1].text == 'b'


def test_page_limit_detection():
    assert is_page_limit_error(PageLimitError("x"))
    assert is_page_limit_error(RuntimeError("Document pages exceed the limit: 15"))
    assert is_page_limit_error(RuntimeError("Processor supports up to 15 pages"))
    assert not is_page_limit_error(RuntimeError("quota exhausted"))


def test_missing_identities_raise_configuration_error():
    with pytest.raises(ConfigurationError):
        OCREngine('')
    with pytest.raises(ConfigurationError):
        GenerationEngine('')


class TestInMemoryCollaborators:

    @pytest.mark.asyncio
    async def test_blob_not_found(self, blob_store):
        with pytest.raises(NotFound):
            await blob_store.download('mem://missing.pdf')

    @pytest.mark.asyncio
    async def test_blob_list_by_prefix(self, blob_store):
        blob_store.put('mem://out/b.json', '{}')
        blob_store.put('mem://out/a.json', '{}')
        blob_store.put('mem://other/c.json', '{}')
        assert await blob_store.list('mem://out/') == ['mem://out/a.json', 'mem://out/b.json']

    @pytest.mark.asyncio
    async def test_ocr_page_ceiling(self, blob_store):
        ocr = InMemoryOCREngine(blob_store, page_ceiling=2)
        with pytest.raises(PageLimitError):
            await ocr.process_inline(b"a\fb\fc", [1, 2, 3])
        result = await ocr.process_inline(b"a\fb\fc", [1, 3])
        assert [p['page'] for p in result['pages']] == [1, 3]

    @pytest.mark.asyncio
    async def test_ocr_batch_writes_shards(self, blob_store):
        blob_store.put('mem://doc.pdf', '\f'.join(f"page {i}" for i in range(1, 26)))
        ocr = InMemoryOCREngine(blob_store, shard_size=10)
        job = await ocr.process_batch('mem://doc.pdf', 'mem://out/run/')
        await job.wait()
        assert len(await blob_store.list('mem://out/run/')) == 3

    @pytest.mark.asyncio
    async def test_generation_responses_in_order(self):
        gen = InMemoryGenerationEngine([{'brand': 'A'}, {'brand': 'B'}])
        assert await gen.generate_json('sys', {}) == {'brand': 'A'}
        assert await gen.generate_json('sys', {}) == {'brand': 'B'}
        assert await gen.generate_json('sys', {}) == {'brand': 'B'}
        assert len(gen.calls) == 3
