"""
table_normalizer.py — Map raw OCR tables to canonical CatalogRows.

Header labels are matched against multilingual synonym lists; body rows are
folded into one CatalogRow each and deduplicated by (code, series).
"""
from __future__ import annotations
import logging
import re
from typing import Iterable, Optional

from pydantic import ValidationError

from models import CODE_PATTERN, CatalogRow, RawTable

logger = logging.getLogger(__name__)

# ============================================================
# Header Synonyms
# ============================================================

HEADER_SYNONYMS: dict[str, set[str]] = {
    'code': {
        'code', 'part no', 'part number', 'part #', 'p/n', 'pn', 'item code',
        'product code', 'ordering code', 'order code', 'ordering number',
        'catalog no', 'catalog number', 'cat. no', 'sku',
        'model', 'model no', 'model number',
        '品番', '型番', '型号', '型號', '订货号', '부품번호', '품번', '형명', '주문코드',
    },
    'type_no': {
        'type no', 'type number', 'type', 'type code', 'タイプ', '형식',
    },
    'series': {
        'series', 'series name', 'product series', 'family',
        'シリーズ', '系列', '시리즈',
    },
    'desc': {
        'description', 'desc', 'remarks', 'remark', 'notes', 'note', 'features',
        '説明', '備考', '描述', '说明', '설명', '비고',
    },
}

_LABEL_TO_KEY = {syn: key for key, syns in HEADER_SYNONYMS.items() for syn in syns}
OTHER = 'other'


def normalize_header(label: str) -> str:
    k = re.sub(r'\s+', ' ', str(label or '').lower()).strip()
    k = k.rstrip('.:').strip()
    return _LABEL_TO_KEY.get(k, OTHER)


def normalize_code(value: str) -> str:
    """Uppercase, whitespace removed; '' when not a valid part code."""
    code = re.sub(r'\s+', '', str(value or '')).upper()
    return code if CODE_PATTERN.match(code) else ''


# ============================================================
# Table Parsing
# ============================================================

def _row_from_cells(cells: list[str], keys: list[str], labels: list[str],
                    page: Optional[int]) -> Optional[CatalogRow]:
    code = type_no = series = ''
    desc_parts: list[str] = []
    attributes: dict[str, str] = {}

    for idx, raw in enumerate(cells):
        cell = str(raw or '').strip()
        if not cell or idx >= len(keys):
            continue
        key = keys[idx]
        if key == 'code' and not code:
            code = cell
        elif key == 'type_no' and not type_no:
            type_no = cell
        elif key == 'series' and not series:
            series = cell
        elif key == 'desc':
            desc_parts.append(cell)
        elif key == OTHER and labels[idx].strip():
            attributes.setdefault(labels[idx].strip(), cell)

    code = normalize_code(code) or normalize_code(type_no)
    if not code:
        return None
    try:
        return CatalogRow(
            code=code,
            series=series,
            desc=' '.join(desc_parts),
            raw_cells=[str(c or '') for c in cells],
            verified_pages=[page] if page else [],
            attributes=attributes,
        )
    except ValidationError:
        return None


def parse_table(raw_table: RawTable) -> list[CatalogRow]:
    labels = raw_table.headers
    if not labels:
        return []
    keys = [normalize_header(h) for h in labels]
    if 'code' not in keys and 'type_no' not in keys:
        return []

    rows = []
    for cells in raw_table.body_rows:
        row = _row_from_cells(cells, keys, labels, raw_table.page)
        if row is not None:
            rows.append(row)
    return dedupe_rows(rows)


def parse_tables(tables: Iterable[RawTable]) -> list[CatalogRow]:
    rows: list[CatalogRow] = []
    for table in tables:
        rows.extend(parse_table(table))
    out = dedupe_rows(rows)
    logger.debug("Normalized %d rows (%d before dedup)", len(out), len(rows))
    return out


def dedupe_rows(rows: Iterable[CatalogRow]) -> list[CatalogRow]:
    """First (code, series) wins; later duplicates only add their pages."""
    kept: dict[tuple[str, str], CatalogRow] = {}
    for row in rows:
        first = kept.get(row.dedup_key)
        if first is None:
            kept[row.dedup_key] = row.model_copy(deep=True)
            continue
        for page in row.verified_pages:
            if page not in first.verified_pages:
                first.verified_pages.append(page)
    return list(kept.values())
