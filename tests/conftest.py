"""Pytest configuration and shared fixtures."""

import re
from typing import Any, Optional

import pytest

from collaborators import InMemoryBlobStore, InMemoryOCREngine, RelationalStore
from config import Settings

_UDT = {
    'integer': 'int4', 'numeric': 'numeric', 'boolean': 'bool',
    'jsonb': 'jsonb', 'text': 'text',
}


def _udt(storage_type: str) -> str:
    if storage_type.startswith('vector'):
        return 'vector'
    return _UDT.get(storage_type, storage_type)


class FakeRelationalStore(RelationalStore):
    """
    Understands the introspection queries and the DDL the reconciler emits,
    and mutates its in-memory catalog accordingly.
    """

    def __init__(
        self,
        columns: Optional[dict[str, dict[str, str]]] = None,
        indexes: Optional[dict[str, set[str]]] = None,
        fail_on: Optional[str] = None,
    ):
        self.columns = {t: dict(c) for t, c in (columns or {}).items()}
        self.indexes = {t: set(i) for t, i in (indexes or {}).items()}
        self.fail_on = fail_on
        self.calls: list[tuple[str, Any]] = []

    @property
    def ddl(self) -> list[str]:
        return [sql for sql, _ in self.calls
                if sql.startswith(('ALTER', 'CREATE', 'DROP'))]

    async def query(self, sql: str, params=None) -> list[dict]:
        self.calls.append((sql, params))
        if self.fail_on and self.fail_on in sql:
            raise RuntimeError(f"simulated failure: {self.fail_on}")

        if 'information_schema.columns' in sql:
            table = params[1]
            return [
                {'column_name': c, 'data_type': t, 'udt_name': t, 'is_generated': 'NEVER'}
                for c, t in self.columns.get(table, {}).items()
            ]
        if 'pg_indexes' in sql:
            return [{'indexname': n} for n in sorted(self.indexes.get(params[1], set()))]

        m = re.match(r'ALTER TABLE "\w+"\."(\w+)" ADD COLUMN IF NOT EXISTS "(\w+)" (.+);$', sql)
        if m:
            self.columns.setdefault(m[1], {})[m[2]] = _udt(m[3])
            return []
        m = re.match(r'ALTER TABLE "\w+"\."(\w+)" ALTER COLUMN "(\w+)" TYPE (\w+)', sql)
        if m:
            self.columns[m[1]][m[2]] = _udt(m[3])
            return []
        m = re.match(r'CREATE (?:UNIQUE )?INDEX IF NOT EXISTS "(\w+)" ON "\w+"\."(\w+)"', sql)
        if m:
            self.indexes.setdefault(m[2], set()).add(m[1])
            return []
        m = re.match(r'DROP INDEX IF EXISTS "\w+"\."(\w+)";', sql)
        if m:
            for names in self.indexes.values():
                names.discard(m[1])
            return []
        return []


@pytest.fixture
def make_store():
    return FakeRelationalStore


@pytest.fixture
def settings() -> Settings:
    """Settings isolated from any local .env, with a short text threshold."""
    return Settings(
        _env_file=None,
        min_text_length=80,
        inline_page_limit=15,
        remote_timeout_seconds=2.0,
        batch_timeout_seconds=2.0,
        batch_output_prefix='mem://ocr-out',
    )


@pytest.fixture
def blob_store() -> InMemoryBlobStore:
    return InMemoryBlobStore()


@pytest.fixture
def ocr(blob_store) -> InMemoryOCREngine:
    return InMemoryOCREngine(blob_store)


@pytest.fixture
def relay_pages() -> list[str]:
    return [
        "OMRON Corporation\nG5V-2 Signal Relay\nHigh sensitivity, two poles.",
        "Ordering Information\nPart No. table with coil voltage options.",
        "Dimensions\nAll dimensions in mm.",
    ]


@pytest.fixture
def relay_tables() -> list[dict]:
    return [{
        'page': 2,
        'headers': ['Part No.', 'Series', 'Coil voltage', 'Remarks'],
        'rows': [
            ['G5V-2-H1-DC5', 'G5V-2', '5 VDC', 'standard'],
            ['G5V-2-H1-DC12', 'G5V-2', '12 VDC', 'standard'],
            ['G5V-2-H1-DC24', 'G5V-2', '24 VDC', ''],
        ],
    }]
