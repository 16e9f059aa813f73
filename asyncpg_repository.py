"""
asyncpg_repository.py — PostgreSQL-backed relational store and catalog repository.

DatabasePool owns the asyncpg pool. AsyncPGStore implements the
RelationalStore contract (query(sql, params) -> rows) on top of it, and
AsyncPGCatalogRepository uses any RelationalStore for blueprint, recipe and
brand-alias lookups plus catalog row upserts.
"""

from __future__ import annotations

import json
import logging
import re
from contextlib import asynccontextmanager
from typing import Any, Optional

import asyncpg

from brand_resolver import AliasDictionary, alias_dictionary_from_rows, seed_alias_dictionary
from models import Blueprint, CatalogRow, Recipe
from schema_reconciler import quote_ident

logger = logging.getLogger(__name__)

# ── Connection Pool Manager ──────────────────────────────────────────────────

class DatabasePool:
    """Manages asyncpg connection pool lifecycle."""

    def __init__(self, dsn: str, min_size: int = 2, max_size: int = 10):
        self.dsn = dsn
        self.min_size = min_size
        self.max_size = max_size
        self._pool: Optional[asyncpg.Pool] = None

    async def initialize(self) -> None:
        """Create the connection pool."""
        self._pool = await asyncpg.create_pool(
            self.dsn,
            min_size=self.min_size,
            max_size=self.max_size,
            command_timeout=60,
        )
        logger.info(
            "Database pool initialized (min=%d, max=%d)", self.min_size, self.max_size
        )

    @property
    def pool(self) -> asyncpg.Pool:
        if self._pool is None:
            raise RuntimeError("Database pool not initialized. Call initialize() first.")
        return self._pool

    @asynccontextmanager
    async def acquire(self):
        async with self.pool.acquire() as conn:
            yield conn

    async def close(self) -> None:
        if self._pool:
            await self._pool.close()
            logger.info("Database pool closed")


# ── Relational Store ─────────────────────────────────────────────────────────

class AsyncPGStore:
    """RelationalStore over an asyncpg pool. Each call runs in autocommit."""

    def __init__(self, db: DatabasePool):
        self.db = db

    async def query(self, sql: str, params: Optional[list[Any]] = None) -> list[dict]:
        async with self.db.acquire() as conn:
            rows = await conn.fetch(sql, *(params or []))
            return [dict(r) for r in rows]


# ── Catalog Repository ───────────────────────────────────────────────────────

def _json_value(value: Any) -> Any:
    if isinstance(value, str):
        try:
            return json.loads(value)
        except ValueError:
            return None
    return value


class AsyncPGCatalogRepository:
    """
    Production repository implementing the CatalogRepository interface
    defined in ingestion_orchestrator.py:
    - load_blueprint(family_slug) -> Optional[Blueprint]
    - load_recipes(family_slug) -> list[Recipe]
    - load_families() -> list[str]
    - load_brand_aliases() -> AliasDictionary
    - upsert_rows(table, brand, rows) -> int
    """

    def __init__(self, store, schema: str = "public", brand_source_tables: Optional[list[str]] = None):
        self.store = store
        self.schema = schema
        self.brand_source_tables = brand_source_tables or []

    # ── Blueprints & Recipes ─────────────────────────────────────────────

    async def load_blueprint(self, family_slug: str) -> Optional[Blueprint]:
        rows = await self.store.query(
            """
            SELECT r.specs_table, r.family_slug, b.fields_json, b.ingest_options_json
            FROM public.component_registry r
            LEFT JOIN public.component_spec_blueprint b USING (family_slug)
            WHERE r.family_slug = $1
            LIMIT 1
            """,
            [family_slug],
        )
        if not rows:
            return None
        row = rows[0]
        options = _json_value(row.get("ingest_options_json")) or {}
        return Blueprint(
            family_slug=row["family_slug"],
            specs_table=row.get("specs_table"),
            fields=_json_value(row.get("fields_json")) or [],
            variant_keys=options.get("variant_keys") or [],
            pn_template=options.get("pn_template") or options.get("pnTemplate"),
        )

    async def load_families(self) -> list[str]:
        rows = await self.store.query(
            "SELECT DISTINCT family_slug FROM public.component_registry ORDER BY 1")
        return [r["family_slug"] for r in rows if r.get("family_slug")]

    async def load_recipes(self, family_slug: str) -> list[Recipe]:
        rows = await self.store.query(
            """
            SELECT family_slug, brand_slug, series_slug, recipe
            FROM public.extraction_recipe
            WHERE family_slug = $1
            """,
            [family_slug],
        )
        recipes = []
        for row in rows:
            body = _json_value(row.get("recipe"))
            if not isinstance(body, dict):
                logger.warning("Skipping unreadable recipe for %s", family_slug)
                continue
            recipes.append(Recipe(
                family_slug=row["family_slug"],
                brand_slug=row.get("brand_slug"),
                series_slug=row.get("series_slug"),
                recipe=body,
            ))
        return recipes

    # ── Brand Aliases ────────────────────────────────────────────────────

    async def load_brand_aliases(self) -> AliasDictionary:
        """Alias table, else distinct brands from spec tables, else seed list."""
        try:
            rows = await self.store.query("SELECT brand, alias FROM public.manufacturer_alias")
            aliases = alias_dictionary_from_rows(rows)
            if aliases:
                return aliases
        except Exception as e:
            logger.warning("manufacturer_alias lookup failed: %s", e)

        if self.brand_source_tables:
            try:
                union = " UNION ALL ".join(
                    f"SELECT brand FROM {quote_ident(self.schema)}.{quote_ident(t)} "
                    f"WHERE brand IS NOT NULL"
                    for t in self.brand_source_tables
                )
                rows = await self.store.query(
                    f"SELECT DISTINCT brand FROM ({union}) t LIMIT 500")
                aliases = alias_dictionary_from_rows(rows)
                if aliases:
                    return aliases
            except Exception as e:
                logger.warning("brand scan of spec tables failed: %s", e)

        logger.info("Using seed brand list")
        return seed_alias_dictionary()

    # ── Catalog Rows ─────────────────────────────────────────────────────

    async def _writable_columns(self, table: str) -> set[str]:
        rows = await self.store.query(
            """
            SELECT column_name, is_generated
            FROM information_schema.columns
            WHERE table_schema = $1 AND table_name = $2
            """,
            [self.schema, table],
        )
        return {
            str(r["column_name"]).lower() for r in rows
            if str(r.get("is_generated") or "").upper() != "ALWAYS"
        }

    async def upsert_rows(self, table: str, brand: str, rows: list[CatalogRow]) -> int:
        """Insert-or-update each row keyed by (brand_norm, code_norm)."""
        target = f"{quote_ident(self.schema)}.{quote_ident(table)}"
        allowed = await self._writable_columns(table)
        if not allowed:
            logger.warning("Table %s has no columns; nothing upserted", table)
            return 0

        written = 0
        for row in rows:
            record = _row_record(brand, row)
            cols = [c for c in record if c in allowed]
            if not cols:
                continue
            no_update = {"id", "created_at", "updated_at", "brand_norm", "code_norm"}
            updates = [f"{quote_ident(c)} = EXCLUDED.{quote_ident(c)}"
                       for c in cols if c not in no_update]
            if "updated_at" in allowed:
                updates.append('"updated_at" = now()')
            conflict = (f"DO UPDATE SET {', '.join(updates)}" if updates else "DO NOTHING")
            placeholders = ", ".join(f"${i + 1}" for i in range(len(cols)))
            await self.store.query(
                f"INSERT INTO {target} ({', '.join(quote_ident(c) for c in cols)}) "
                f"VALUES ({placeholders}) "
                f"ON CONFLICT (brand_norm, code_norm) {conflict}",
                [record[c] for c in cols],
            )
            written += 1
        logger.info("Upserted %d rows into %s", written, table)
        return written


def _row_record(brand: str, row: CatalogRow) -> dict[str, Any]:
    record: dict[str, Any] = {
        "brand": brand or None,
        "code": row.code,
        "brand_norm": brand.lower() if brand else None,
        "code_norm": row.code.lower(),
        "series": row.series or None,
        "raw_json": json.dumps(row.model_dump(mode="json"), ensure_ascii=False),
    }
    for label, value in row.attributes.items():
        col = re.sub(r"[^a-z0-9]+", "_", label.lower()).strip("_")
        if col and col not in record:
            record[col] = value
    return record
