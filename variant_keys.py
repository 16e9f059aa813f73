"""
variant_keys.py — Discover attribute keys whose values vary across a product's rows.

Blueprint-declared variant keys and per-family/brand/series recipes feed a
weighted alias index. Table headers and row fields are matched to keys through
that index; a key is promoted once two distinct normalized values are seen.
"""
from __future__ import annotations
import logging
import re
import unicodedata
from dataclasses import dataclass
from typing import Any, Iterable, Optional

from models import AliasEntry, Blueprint, CatalogRow, RawTable, Recipe, VariantKeyResult

logger = logging.getLogger(__name__)

MIN_VARIATION_COUNT = 2

BLUEPRINT_KEY_WEIGHT = 20
RECIPE_ALIAS_KEY_WEIGHT = 25
RECIPE_VARIANT_KEY_WEIGHT = 15

_DASHES_RE = re.compile('[–—−]')

# ============================================================
# Normalization
# ============================================================

def _nfkc_lower(value: Any) -> str:
    return unicodedata.normalize('NFKC', str(value or '')).lower()


def normalize_key_name(value: Any) -> str:
    return re.sub(r'[^a-z0-9]+', '_', _nfkc_lower(value)).strip('_')


def normalize_alias(value: Any) -> str:
    return re.sub(r'[^a-z0-9]+', ' ', _nfkc_lower(value)).strip()


def normalize_slug(value: Any) -> Optional[str]:
    return re.sub(r'[^a-z0-9]+', '-', _nfkc_lower(value)).strip('-') or None


def flatten_values(value: Any) -> list[str]:
    """Observed cell/field values as normalized strings."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        out = []
        for item in value:
            out.extend(flatten_values(item))
        return out
    if isinstance(value, dict):
        out = []
        for prop in ('raw', 'text', 'value', 'display', 'label'):
            if prop in value:
                out.extend(flatten_values(value[prop]))
        return out
    text = unicodedata.normalize('NFKC', str(value))
    text = re.sub(r'\s+', ' ', _DASHES_RE.sub('-', text)).strip()
    return [text] if text else []


# ============================================================
# Alias Index
# ============================================================

@dataclass(frozen=True)
class AliasIndex:
    entries: tuple[AliasEntry, ...]
    keys: frozenset[str]

    def __bool__(self) -> bool:
        return bool(self.entries) or bool(self.keys)


class _IndexBuilder:

    def __init__(self):
        self.entries: list[AliasEntry] = []
        self.keys: set[str] = set()
        self._seen: set[tuple[str, str]] = set()

    def add_alias(self, alias: Any, key: str, weight: int = 0) -> None:
        norm = normalize_alias(alias)
        if len(norm) < 2 or (norm, key) in self._seen:
            return
        self._seen.add((norm, key))
        self.entries.append(AliasEntry(
            normalized_alias=norm, key=key,
            weight=weight or len(norm.replace(' ', '')),
        ))

    def add_key(self, key: Any, weight: int = 0) -> Optional[str]:
        norm = normalize_key_name(key)
        if not norm:
            return None
        self.keys.add(norm)
        self.add_alias(key, norm, weight or len(norm) + 4)
        self.add_alias(str(key).replace('_', ' '), norm, weight or len(norm) + 2)
        return norm

    def build(self) -> AliasIndex:
        return AliasIndex(entries=tuple(self.entries), keys=frozenset(self.keys))


def build_alias_index(blueprint_keys: Iterable[str], recipes: Iterable[Recipe]) -> AliasIndex:
    builder = _IndexBuilder()
    for key in blueprint_keys:
        builder.add_key(key, BLUEPRINT_KEY_WEIGHT)

    for recipe in recipes:
        body = recipe.recipe or {}
        aliases = body.get('key_alias') or body.get('keyAliases') or body.get('variant_aliases')
        if isinstance(aliases, dict):
            for key, values in aliases.items():
                norm = builder.add_key(key, RECIPE_ALIAS_KEY_WEIGHT)
                if not norm:
                    continue
                for alias in values if isinstance(values, list) else [values]:
                    builder.add_alias(alias, norm, len(str(alias or '')) + 4)
        extra = body.get('variant_keys') or body.get('variantKeys')
        if isinstance(extra, list):
            for key in extra:
                builder.add_key(key, RECIPE_VARIANT_KEY_WEIGHT)
    return builder.build()


def filter_recipes(recipes: Iterable[Recipe], brand: str, series: str) -> list[Recipe]:
    """Recipes scoped to this brand/series; an unscoped recipe matches anything."""
    brand_norm = normalize_slug(brand)
    series_norm = normalize_slug(series)
    out = []
    for r in recipes:
        row_brand = normalize_slug(r.brand_slug)
        row_series = normalize_slug(r.series_slug)
        if row_brand and row_brand != brand_norm:
            continue
        if row_series and row_series != series_norm:
            continue
        out.append(r)
    return out


# ============================================================
# Label Matching
# ============================================================

def find_key_for_label(label: Any, index: AliasIndex) -> Optional[str]:
    norm_key = normalize_key_name(label)
    if norm_key:
        if norm_key in index.keys:
            return norm_key
        for key in sorted(index.keys, key=lambda k: (-len(k), k)):
            pos = norm_key.find(key)
            while pos >= 0:
                end = pos + len(key)
                if (pos == 0 or norm_key[pos - 1] == '_') and \
                        (end == len(norm_key) or norm_key[end] == '_'):
                    return key
                pos = norm_key.find(key, pos + 1)

    norm_alias = normalize_alias(label)
    if not norm_alias:
        return None

    best: Optional[AliasEntry] = None
    best_rank = (-1, -1)
    for entry in index.entries:
        alias = entry.normalized_alias
        if norm_alias == alias:
            rank = 2
        elif alias in norm_alias:
            rank = 1
        elif norm_alias in alias and len(norm_alias) >= 3:
            rank = 0
        else:
            continue
        score = (rank, entry.weight)
        if score > best_rank:
            best, best_rank = entry, score
    return best.key if best else None


# ============================================================
# Variation Detection
# ============================================================

def _observe(observed: dict[str, set[str]], key: str, values: Iterable[str]) -> None:
    seen = observed.setdefault(key, set())
    for v in values:
        if len(seen) >= MIN_VARIATION_COUNT:
            return
        if v:
            seen.add(v.casefold())


def collect_variation(
    tables: Iterable[RawTable],
    rows: Iterable[dict[str, Any]],
    index: AliasIndex,
) -> dict[str, set[str]]:
    observed: dict[str, set[str]] = {}
    for table in tables:
        headers = table.headers
        for col, header in enumerate(headers):
            key = find_key_for_label(header, index)
            if not key:
                continue
            values: list[str] = []
            for r in table.body_rows:
                if col < len(r):
                    values.extend(flatten_values(r[col])[:1])
            _observe(observed, key, values)
    for row in rows:
        for label, value in row.items():
            key = find_key_for_label(label, index)
            if key:
                _observe(observed, key, flatten_values(value))
    return observed


def rows_as_fields(rows: Iterable[CatalogRow]) -> list[dict[str, Any]]:
    return [dict(r.attributes) for r in rows if r.attributes]


def infer_variant_keys(
    blueprint: Blueprint,
    index: AliasIndex,
    tables: Iterable[RawTable] = (),
    rows: Iterable[CatalogRow] = (),
) -> VariantKeyResult:
    if not index:
        return VariantKeyResult()

    observed = collect_variation(tables, rows_as_fields(rows), index)
    detected = sorted(k for k, vals in observed.items() if len(vals) >= MIN_VARIATION_COUNT)
    declared = {normalize_key_name(k) for k in blueprint.variant_keys}
    new_keys = [k for k in detected if k not in declared]
    if new_keys:
        logger.info("New variant keys for %s: %s", blueprint.family_slug, new_keys)
    return VariantKeyResult(detected=detected, new_keys=new_keys)


# ============================================================
# Per-Run Alias Cache
# ============================================================

class AliasCache:
    """Alias indexes memoized per (family, brand, series) within one run."""

    def __init__(self):
        self._indexes: dict[tuple[str, Optional[str], Optional[str]], AliasIndex] = {}

    def get_or_build(
        self,
        blueprint: Blueprint,
        recipes: list[Recipe],
        brand: str,
        series: str,
    ) -> AliasIndex:
        cache_key = (blueprint.family_slug, normalize_slug(brand), normalize_slug(series))
        index = self._indexes.get(cache_key)
        if index is None:
            scoped = filter_recipes(recipes, brand, series)
            index = build_alias_index(blueprint.variant_keys, scoped)
            self._indexes[cache_key] = index
        return index

    def __len__(self) -> int:
        return len(self._indexes)
