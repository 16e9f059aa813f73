"""
Datasheet Catalog Extraction — Core Pydantic Models
"""
from __future__ import annotations
from enum import Enum
from typing import Any, Optional
from pydantic import BaseModel, ConfigDict, Field, field_validator
import re

CODE_PATTERN = re.compile(r'^[A-Z0-9][A-Z0-9\-._/]*$')

# ============================================================
# Enums
# ============================================================

class StrategySource(str, Enum):
    INLINE = "inline"
    ONLINE = "online"
    BATCH = "batch"
    EMPTY = "empty"

class ResolutionSource(str, Enum):
    AI = "ai"
    HEURISTIC = "heuristic"
    NONE = "none"

class StatementKind(str, Enum):
    APPLY = "apply"
    REVIEW_ONLY = "review-only"

# ============================================================
# Documents & Extraction
# ============================================================

class Document(BaseModel):
    model_config = ConfigDict(frozen=True)

    uri: str
    filename: str = ""
    page_count_hint: Optional[int] = None

    @field_validator('uri')
    @classmethod
    def validate_uri(cls, v: str) -> str:
        if '://' not in v:
            raise ValueError("uri must look like scheme://bucket/object")
        return v

class PageText(BaseModel):
    page: int
    text: str = ""

class RawTable(BaseModel):
    header_rows: list[list[str]] = Field(default_factory=list)
    body_rows: list[list[str]] = Field(default_factory=list)
    page: Optional[int] = None

    @property
    def headers(self) -> list[str]:
        """Longest header row; first wins on equal length."""
        best: list[str] = []
        for row in self.header_rows:
            if len(row) > len(best):
                best = row
        return best

class PageCandidate(BaseModel):
    page_number: int
    score: int
    text_excerpt: str = ""

class ExtractionResult(BaseModel):
    text: str = ""
    pages: list[PageText] = Field(default_factory=list)
    tables: list[RawTable] = Field(default_factory=list)
    strategy_source: StrategySource = StrategySource.EMPTY
    note: str = ""
    page_count: Optional[int] = None
    warnings: list[str] = Field(default_factory=list)

# ============================================================
# Catalog Rows & Resolution
# ============================================================

class CatalogRow(BaseModel):
    code: str
    series: str = ""
    desc: str = ""
    raw_cells: list[str] = Field(default_factory=list)
    verified_pages: list[int] = Field(default_factory=list)
    attributes: dict[str, str] = Field(default_factory=dict)

    @field_validator('code')
    @classmethod
    def validate_code(cls, v: str) -> str:
        v = re.sub(r'\s+', '', v).upper()
        if not CODE_PATTERN.match(v):
            raise ValueError(f"invalid part code: {v!r}")
        return v

    @property
    def dedup_key(self) -> tuple[str, str]:
        return (self.code, self.series)

class BrandResolution(BaseModel):
    brand: str = ""
    code: str = ""
    series: str = ""
    source: ResolutionSource = ResolutionSource.NONE

class FamilyChoice(BaseModel):
    family_slug: str = ""
    source: ResolutionSource = ResolutionSource.NONE

# ============================================================
# Blueprints, Recipes & Variant Keys
# ============================================================

class AliasEntry(BaseModel):
    model_config = ConfigDict(frozen=True)

    normalized_alias: str
    key: str
    weight: int

class BlueprintField(BaseModel):
    name: str
    type: str = "text"

class Blueprint(BaseModel):
    family_slug: str
    specs_table: Optional[str] = None
    fields: list[BlueprintField] = Field(default_factory=list)
    variant_keys: list[str] = Field(default_factory=list)
    pn_template: Optional[str] = None  # e.g. "{{series}}-DC{{coil_voltage|pad=2}}"

    @field_validator('fields', mode='before')
    @classmethod
    def coerce_fields(cls, v: Any) -> Any:
        # Stored blueprints keep fields as {name: {type: ...}}.
        if isinstance(v, dict):
            return [
                {'name': name, **(spec if isinstance(spec, dict) else {'type': spec or 'text'})}
                for name, spec in v.items()
            ]
        return v

class Recipe(BaseModel):
    family_slug: str
    brand_slug: Optional[str] = None
    series_slug: Optional[str] = None
    recipe: dict[str, Any] = Field(default_factory=dict)

class VariantKeyResult(BaseModel):
    detected: list[str] = Field(default_factory=list)
    new_keys: list[str] = Field(default_factory=list)

# ============================================================
# Schema Reconciliation
# ============================================================

class MissingField(BaseModel):
    name: str
    want_type: str

class TypeMismatch(BaseModel):
    name: str
    have_type: str
    want_type: str

class ExtraField(BaseModel):
    name: str
    have_type: str

class FieldDiff(BaseModel):
    missing: list[MissingField] = Field(default_factory=list)
    type_mismatch: list[TypeMismatch] = Field(default_factory=list)
    extra: list[ExtraField] = Field(default_factory=list)

class MigrationStatement(BaseModel):
    sql: str
    kind: StatementKind = StatementKind.APPLY

class ReconcileResult(BaseModel):
    table: str
    diff: FieldDiff
    statements: list[MigrationStatement] = Field(default_factory=list)
    executed: list[str] = Field(default_factory=list)

    @property
    def apply_statements(self) -> list[MigrationStatement]:
        return [s for s in self.statements if s.kind == StatementKind.APPLY]

# ============================================================
# API Request/Response Models
# ============================================================

class IngestRequest(BaseModel):
    uri: str
    filename: str = ""
    page_count_hint: Optional[int] = None
    blueprint: Optional[Blueprint] = None
    family_slug: Optional[str] = None

class IngestResult(BaseModel):
    brand: str = ""
    code: str = ""
    series: str = ""
    family_slug: str = ""
    rows: list[CatalogRow] = Field(default_factory=list)
    new_variant_keys: list[str] = Field(default_factory=list)
    note: str = ""
    strategy_source: StrategySource = StrategySource.EMPTY
    resolution_source: ResolutionSource = ResolutionSource.NONE
    warnings: list[str] = Field(default_factory=list)

class ReconcileRequest(BaseModel):
    table: str
    blueprint_fields: list[BlueprintField]
    apply: bool = True
