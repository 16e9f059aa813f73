"""
collaborators.py — External service interfaces consumed by the pipeline.

Blob storage, the OCR engine, the constrained generation engine and the
relational store are abstract here; production adapters wrap vendor SDKs.
Every loosely typed payload is normalized at this boundary into PageText /
RawTable so variant shapes never reach core logic. In-memory implementations
are provided for testing and local development.
"""
from __future__ import annotations
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Optional

from config import Settings
from exceptions import ConfigurationError, NotFound, PageLimitError
from models import PageText, RawTable

logger = logging.getLogger(__name__)

PAGE_BREAK = '\f'

_PAGE_LIMIT_RE = re.compile(
    r'supports up to \d+ pages|exceeds? the limit|page limit', re.IGNORECASE)


def is_page_limit_error(exc: BaseException) -> bool:
    return isinstance(exc, PageLimitError) or bool(_PAGE_LIMIT_RE.search(str(exc)))


# ============================================================
# Payload Normalization
# ============================================================

def _cell_text(cell: Any) -> str:
    if cell is None:
        return ''
    if isinstance(cell, dict):
        for prop in ('text', 'value', 'content'):
            if prop in cell:
                return _cell_text(cell[prop])
        return ''
    return str(cell).strip()


def _row_cells(row: Any) -> list[str]:
    if isinstance(row, dict):
        row = row.get('cells', [])
    if not isinstance(row, list):
        return []
    return [_cell_text(c) for c in row]


def _page_number(value: Any) -> Optional[int]:
    """A 1-based page number, or None when the payload value is not one."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        return value if value > 0 else None
    if isinstance(value, float) and value.is_integer():
        return int(value) if value > 0 else None
    if isinstance(value, str) and value.strip().isdigit():
        return int(value) or None
    return None


def _table_from_payload(raw: Any, page: Optional[int]) -> Optional[RawTable]:
    if not isinstance(raw, dict):
        return None
    headers = raw.get('header_rows', raw.get('headerRows', raw.get('headers', [])))
    body = raw.get('body_rows', raw.get('bodyRows', raw.get('rows', [])))
    if headers and not isinstance(headers[0], (list, dict)):
        headers = [headers]  # single flat header row
    table_page = _page_number(raw.get('page', raw.get('pageNumber', page)))
    return RawTable(
        header_rows=[_row_cells(r) for r in headers or []],
        body_rows=[_row_cells(r) for r in body or []],
        page=table_page,
    )


def normalize_ocr_payload(payload: Any) -> tuple[list[PageText], list[RawTable]]:
    """Fold any OCR/batch result shape into (pages, tables), pages sorted."""
    if isinstance(payload, (str, bytes)):
        payload = safe_parse_json(payload)
    if not isinstance(payload, dict):
        return [], []
    if isinstance(payload.get('document'), dict):
        payload = payload['document']

    pages: list[PageText] = []
    tables: list[RawTable] = []
    for idx, raw in enumerate(payload.get('pages') or [], start=1):
        if not isinstance(raw, dict):
            continue
        number = _page_number(raw.get('page', raw.get('pageNumber', raw.get('page_number', idx))))
        if number is None:
            logger.debug("Skipping OCR page without a usable page number: %r",
                         raw.get('page', raw.get('pageNumber')))
            continue
        text = raw.get('text', raw.get('layoutText', ''))
        pages.append(PageText(page=number, text=str(text or '')))
        for t in raw.get('tables') or []:
            table = _table_from_payload(t, number)
            if table:
                tables.append(table)
    for t in payload.get('tables') or []:
        table = _table_from_payload(t, None)
        if table:
            tables.append(table)

    pages.sort(key=lambda p: p.page)
    return pages, tables


def safe_parse_json(text: Any) -> Optional[Any]:
    """Recover a JSON value from model output wrapped in fences or prose."""
    if isinstance(text, bytes):
        text = text.decode('utf-8', errors='replace')
    if not isinstance(text, str):
        return text
    try:
        return json.loads(text)
    except ValueError:
        pass
    stripped = re.sub(r'```(?:json)?', '', text, flags=re.IGNORECASE).strip()
    try:
        return json.loads(stripped)
    except ValueError:
        pass

    depth, start = 0, -1
    for i, ch in enumerate(stripped):
        if ch == '{':
            if depth == 0:
                start = i
            depth += 1
        elif ch == '}' and depth > 0:
            depth -= 1
            if depth == 0 and start >= 0:
                try:
                    return json.loads(stripped[start:i + 1])
                except ValueError:
                    start = -1
    return None


def split_text_pages(text: str) -> list[PageText]:
    """Split plain text on form-feed page breaks into 1-based pages."""
    return [PageText(page=i, text=chunk) for i, chunk in enumerate(text.split(PAGE_BREAK), start=1)]


# ============================================================
# Interfaces
# ============================================================

class BlobStore:
    """Object storage addressed by scheme://bucket/object URIs."""

    async def download(self, uri: str) -> bytes:
        raise NotImplementedError

    async def list(self, prefix: str) -> list[str]:
        raise NotImplementedError


class BatchJob:
    async def wait(self) -> None:
        raise NotImplementedError


class OCREngine:
    """Page-limited OCR service. Requires a processor identity."""

    def __init__(self, processor_id: str, page_ceiling: int = 15):
        if not processor_id:
            raise ConfigurationError("OCR processor id is not configured")
        self.processor_id = processor_id
        self.page_ceiling = page_ceiling

    @property
    def supports_batch(self) -> bool:
        return True

    async def process_inline(self, data: bytes, pages: Optional[list[int]] = None) -> Any:
        raise NotImplementedError

    async def process_batch(self, uri: str, output_prefix: str) -> BatchJob:
        raise NotImplementedError


class GenerationEngine:
    """Constrained JSON generation. Requires a model identity."""

    def __init__(self, model: str):
        if not model:
            raise ConfigurationError("generation model is not configured")
        self.model = model

    async def generate_json(
        self,
        system_instruction: str,
        user_payload: dict[str, Any],
        max_output_tokens: int = 512,
        temperature: float = 0.2,
    ) -> Any:
        raise NotImplementedError


class RelationalStore:
    """Parameterized SQL ($1, $2, ...) returning rows as dicts."""

    async def query(self, sql: str, params: Optional[list[Any]] = None) -> list[dict]:
        raise NotImplementedError


# ============================================================
# In-Memory Implementations (for testing / local dev)
# ============================================================

class InMemoryBlobStore(BlobStore):

    def __init__(self, objects: Optional[dict[str, bytes]] = None):
        self.objects: dict[str, bytes] = dict(objects or {})

    def put(self, uri: str, data: bytes | str) -> None:
        self.objects[uri] = data.encode('utf-8') if isinstance(data, str) else data

    async def download(self, uri: str) -> bytes:
        try:
            return self.objects[uri]
        except KeyError:
            raise NotFound(f"object not found: {uri}") from None

    async def list(self, prefix: str) -> list[str]:
        return sorted(u for u in self.objects if u.startswith(prefix))


class _CompletedJob(BatchJob):
    async def wait(self) -> None:
        return None


class InMemoryOCREngine(OCREngine):
    """
    Treats document bytes as form-feed separated text. Tables can be
    attached per page number and are returned with the pages requested.
    """

    def __init__(
        self,
        blob_store: InMemoryBlobStore,
        processor_id: str = 'in-memory',
        page_ceiling: int = 15,
        tables: Optional[list[dict]] = None,
        shard_size: int = 10,
    ):
        super().__init__(processor_id, page_ceiling)
        self.blob_store = blob_store
        self.tables = tables or []
        self.shard_size = shard_size
        self.inline_calls: list[Optional[list[int]]] = []
        self.batch_calls: list[tuple[str, str]] = []

    def _pages(self, data: bytes) -> list[PageText]:
        return split_text_pages(data.decode('utf-8', errors='replace'))

    def _tables_for(self, numbers: set[int]) -> list[dict]:
        return [t for t in self.tables if t.get('page') in numbers]

    async def process_inline(self, data: bytes, pages: Optional[list[int]] = None) -> dict:
        self.inline_calls.append(pages)
        doc_pages = self._pages(data)
        wanted = set(pages) if pages else {p.page for p in doc_pages}
        if len(wanted) > self.page_ceiling:
            raise PageLimitError(
                f"Document pages exceed the limit: {self.page_ceiling}")
        selected = [p for p in doc_pages if p.page in wanted]
        return {
            'pages': [{'page': p.page, 'text': p.text} for p in selected],
            'tables': self._tables_for(wanted),
        }

    async def process_batch(self, uri: str, output_prefix: str) -> BatchJob:
        self.batch_calls.append((uri, output_prefix))
        doc_pages = self._pages(await self.blob_store.download(uri))
        for shard, start in enumerate(range(0, len(doc_pages), self.shard_size)):
            chunk = doc_pages[start:start + self.shard_size]
            numbers = {p.page for p in chunk}
            body = {
                'pages': [{'pageNumber': p.page, 'text': p.text} for p in chunk],
                'tables': self._tables_for(numbers),
            }
            self.blob_store.put(f"{output_prefix}output-{shard}.json", json.dumps(body))
        logger.debug("Batch OCR wrote %d pages under %s", len(doc_pages), output_prefix)
        return _CompletedJob()


class InMemoryGenerationEngine(GenerationEngine):
    """Returns canned responses in order; repeats the last one."""

    def __init__(self, responses: Optional[list[Any]] = None, model: str = 'in-memory'):
        super().__init__(model)
        self.responses = list(responses or [{}])
        self.calls: list[dict[str, Any]] = []

    async def generate_json(self, system_instruction, user_payload,
                            max_output_tokens=512, temperature=0.2):
        self.calls.append({'system': system_instruction, 'payload': user_payload})
        if len(self.responses) > 1:
            return self.responses.pop(0)
        return self.responses[0]


# ============================================================
# Wiring
# ============================================================

@dataclass
class Collaborators:
    """The external services one pipeline context talks to."""
    blob_store: BlobStore
    ocr: OCREngine
    generator: Optional[GenerationEngine] = None


def local_collaborators(settings: Settings) -> Collaborators:
    """
    Default factory: in-memory blob store and OCR, no generator (the
    resolver and classifier use their heuristics). Deployments point
    COLLABORATORS_FACTORY at their own factory with the same signature.
    """
    blob = InMemoryBlobStore()
    ocr = InMemoryOCREngine(
        blob, processor_id=settings.ocr_processor_id,
        page_ceiling=settings.inline_page_limit)
    return Collaborators(blob_store=blob, ocr=ocr)
