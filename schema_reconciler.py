"""
schema_reconciler.py — Keep a per-family specs table in sync with its field blueprint.

Diffs declared fields against the live columns (information_schema), emits
DDL for what is missing, casts only where the cast is provably safe, and
maintains a fixed set of search indexes. Statements run one by one with no
enclosing transaction, so a failure can leave earlier statements applied;
that failure is raised to the caller, never retried here.
"""
from __future__ import annotations

import hashlib
import logging
import re
from typing import Any, Iterable, Optional

from collaborators import RelationalStore
from exceptions import SchemaMigrationError
from models import (
    BlueprintField, ExtraField, FieldDiff, MigrationStatement, MissingField,
    ReconcileResult, StatementKind, TypeMismatch,
)

logger = logging.getLogger(__name__)

DEFAULT_VECTOR_DIM = 768

SYSTEM_COLUMNS = frozenset({
    'id', 'brand', 'code', 'brand_norm', 'code_norm', 'series', 'display_name',
    'family_slug', 'datasheet_url', 'cover', 'source_gcs_uri', 'embedding',
    'raw_json', 'tenant_id', 'owner_id', 'created_by', 'updated_by',
    'created_at', 'updated_at',
})

# udt_name → canonical type name used in comparisons
_UDT_CANONICAL = {
    'int4': 'integer', 'int2': 'smallint', 'int8': 'bigint',
    'bool': 'boolean', 'float4': 'real', 'float8': 'double precision',
    'varchar': 'character varying', 'bpchar': 'character',
    'timestamptz': 'timestamp with time zone', 'timestamp': 'timestamp without time zone',
}

_TEXTUAL = {'text', 'character varying', 'character'}

MAX_IDENT_LENGTH = 63

_IDENT_RE = re.compile(r'^[A-Za-z_][A-Za-z0-9_]{0,62}$')


def quote_ident(name: str) -> str:
    if not _IDENT_RE.match(name or ''):
        raise ValueError(f"unsafe SQL identifier: {name!r}")
    return f'"{name}"'


# ============================================================
# Type Mapping
# ============================================================

def map_type_to_storage(logical: Optional[str], vector_dim: int = DEFAULT_VECTOR_DIM) -> str:
    t = str(logical or 'text').strip().lower()
    if t in ('int', 'integer'):
        return 'integer'
    if t in ('number', 'numeric', 'float', 'double', 'decimal'):
        return 'numeric'
    if t in ('bool', 'boolean'):
        return 'boolean'
    if t in ('json', 'jsonb'):
        return 'jsonb'
    if t == 'vector':
        return f'vector({vector_dim})'
    return 'text'


def canonical_type(udt: Optional[str], vector_dim: int = DEFAULT_VECTOR_DIM) -> str:
    t = str(udt or '').strip().lower()
    if t == 'vector':
        return f'vector({vector_dim})'
    return _UDT_CANONICAL.get(t, t)


def normalize_fields(fields: Any) -> list[BlueprintField]:
    """Accept [BlueprintField], [{name, type}] or {name: {type}}."""
    if not fields:
        return []
    if isinstance(fields, dict):
        fields = [
            {'name': name, **(spec if isinstance(spec, dict) else {'type': spec})}
            for name, spec in fields.items()
        ]
    return [f if isinstance(f, BlueprintField) else BlueprintField(**f) for f in fields]


# ============================================================
# Diff
# ============================================================

def diff_columns(
    fields: Iterable[BlueprintField],
    columns: dict[str, str],
    vector_dim: int = DEFAULT_VECTOR_DIM,
) -> FieldDiff:
    desired = {f.name: map_type_to_storage(f.type, vector_dim) for f in fields}
    diff = FieldDiff()
    for name, want in desired.items():
        if name not in columns:
            diff.missing.append(MissingField(name=name, want_type=want))
            continue
        have = canonical_type(columns[name], vector_dim)
        if have != want:
            diff.type_mismatch.append(TypeMismatch(name=name, have_type=have, want_type=want))
    for name, have in columns.items():
        if name not in desired and name not in SYSTEM_COLUMNS:
            diff.extra.append(ExtraField(name=name, have_type=canonical_type(have, vector_dim)))
    return diff


# ============================================================
# Statements
# ============================================================

def index_name(prefix: str, table: str, suffix: str) -> str:
    """
    `{prefix}_{table}_{suffix}`, shortened to fit a Postgres identifier.
    Over-long names are cut and end in a short digest of the full name, so
    the same table always maps to the same index.
    """
    name = f'{prefix}_{table}_{suffix}'
    if len(name) <= MAX_IDENT_LENGTH:
        return name
    digest = hashlib.sha1(name.encode('utf-8')).hexdigest()[:8]
    return f'{name[:MAX_IDENT_LENGTH - len(digest) - 1]}_{digest}'


def _index_plan(table: str, target: str) -> list[tuple[str, set[str], str]]:
    """(index name, required columns, create statement) for the fixed index set."""
    specs = [
        ('uq', 'brand_pn_und', {'brand_norm', 'pn'}, True,
         '(brand_norm, pn) NULLS NOT DISTINCT'),
        ('ix', 'trgm_brand_norm', {'brand_norm'}, False, 'USING gin (brand_norm gin_trgm_ops)'),
        ('ix', 'trgm_pn_norm', {'pn_norm'}, False, 'USING gin (pn_norm gin_trgm_ops)'),
        ('ix', 'trgm_code_norm', {'code_norm'}, False, 'USING gin (code_norm gin_trgm_ops)'),
        ('ix', 'raw_json', {'raw_json'}, False, 'USING gin (raw_json jsonb_ops)'),
    ]
    plan = []
    for prefix, suffix, required, unique, body in specs:
        name = index_name(prefix, table, suffix)
        create = 'CREATE UNIQUE INDEX' if unique else 'CREATE INDEX'
        plan.append((name, required,
                     f'{create} IF NOT EXISTS {quote_ident(name)} ON {target} {body};'))
    return plan


def legacy_indexes(table: str) -> list[str]:
    # created without shortening, so Postgres truncated them to 63 bytes
    return [
        name[:MAX_IDENT_LENGTH] for name in
        (f'ux_{table}_brand_code_norm', f'ix_{table}_trgm_code', f'ix_{table}_trgm_brand')
    ]


def statements_for_diff(
    schema: str,
    table: str,
    diff: FieldDiff,
    columns: Iterable[str],
    indexes: Iterable[str],
) -> list[MigrationStatement]:
    target = f'{quote_ident(schema)}.{quote_ident(table)}'
    out: list[MigrationStatement] = []

    for m in diff.missing:
        out.append(MigrationStatement(
            sql=f'ALTER TABLE {target} ADD COLUMN IF NOT EXISTS {quote_ident(m.name)} {m.want_type};'))

    for t in diff.type_mismatch:
        col = quote_ident(t.name)
        if t.have_type in _TEXTUAL and t.want_type == 'numeric':
            out.append(MigrationStatement(sql=(
                f"ALTER TABLE {target} ALTER COLUMN {col} TYPE numeric USING "
                f"NULLIF(regexp_replace({col}::text, '[^0-9eE+\\-.]', '', 'g'), '')::numeric;")))
        elif t.want_type == 'text':
            out.append(MigrationStatement(
                sql=f'ALTER TABLE {target} ALTER COLUMN {col} TYPE text USING {col}::text;'))
        else:
            out.append(MigrationStatement(
                sql=f'-- REVIEW: ALTER TABLE {target} ALTER COLUMN {col} TYPE {t.want_type};',
                kind=StatementKind.REVIEW_ONLY))

    present = set(indexes)
    for name in legacy_indexes(table):
        if name in present:
            out.append(MigrationStatement(
                sql=f'DROP INDEX IF EXISTS {quote_ident(schema)}.{quote_ident(name)};'))

    # index conditions see the columns this run adds
    cols = set(columns) | {m.name for m in diff.missing}
    for name, required, sql in _index_plan(table, target):
        if required <= cols and name not in present:
            out.append(MigrationStatement(sql=sql))
    return out


# ============================================================
# Reconciler
# ============================================================

class SchemaReconciler:
    """Introspects, diffs and migrates one table per call."""

    def __init__(
        self,
        store: RelationalStore,
        schema: str = 'public',
        vector_dim: int = DEFAULT_VECTOR_DIM,
    ):
        self.store = store
        self.schema = schema
        self.vector_dim = vector_dim

    async def current_columns(self, table: str) -> dict[str, str]:
        rows = await self.store.query(
            """
            SELECT column_name, data_type, udt_name
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            ORDER BY ordinal_position
            """,
            [self.schema, table],
        )
        return {r['column_name']: (r.get('udt_name') or r.get('data_type') or '') for r in rows}

    async def current_indexes(self, table: str) -> set[str]:
        rows = await self.store.query(
            "SELECT indexname FROM pg_indexes WHERE schemaname = $1 AND tablename = $2",
            [self.schema, table],
        )
        return {r['indexname'] for r in rows}

    async def plan(self, table: str, blueprint_fields: Any) -> ReconcileResult:
        quote_ident(table)
        fields = normalize_fields(blueprint_fields)
        columns = await self.current_columns(table)
        indexes = await self.current_indexes(table)
        diff = diff_columns(fields, columns, self.vector_dim)
        statements = statements_for_diff(self.schema, table, diff, columns, indexes)
        return ReconcileResult(table=table, diff=diff, statements=statements)

    async def reconcile(
        self, table: str, blueprint_fields: Any, apply: bool = True,
    ) -> ReconcileResult:
        result = await self.plan(table, blueprint_fields)
        logger.info(
            "Reconcile %s: %d missing, %d mismatched, %d extra, %d statements",
            table, len(result.diff.missing), len(result.diff.type_mismatch),
            len(result.diff.extra), len(result.statements),
        )
        if not apply:
            return result

        for stmt in result.apply_statements:
            try:
                await self.store.query(stmt.sql)
            except Exception as e:
                logger.error("Schema statement failed on %s after %d applied: %s",
                             table, len(result.executed), stmt.sql)
                raise SchemaMigrationError(
                    f"schema migration of {table} failed: {e}",
                    executed=list(result.executed),
                    failed_statement=stmt.sql,
                    original_error=e,
                ) from e
            result.executed.append(stmt.sql)
        return result
