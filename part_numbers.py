"""
part_numbers.py — Fan ordering-table rows out into one row per orderable part number.

An ordering table often lists several values of a variant key in one cell
("5, 12, 24"). When the family blueprint carries a part-number template, each
row is expanded over every combination of its listed variant values and the
code is rendered from the template, e.g.

    pn_template = "{{series}}-H1-DC{{coil_voltage|pad=1}}"
    Series=G5V-2, Coil voltage="5, 12, 24 VDC"  →  G5V-2-H1-DC5, -DC12, -DC24

Rows with at most one value per key are kept exactly as the table gave them.
"""
from __future__ import annotations
import itertools
import logging
import re
from typing import Any, Iterable, Optional

from models import Blueprint, CatalogRow
from table_normalizer import dedupe_rows, normalize_code
from variant_keys import AliasIndex, find_key_for_label, normalize_key_name

logger = logging.getLogger(__name__)

LIST_SEPARATORS = re.compile(r'[,;/|·•]+')
_PLACEHOLDER_RE = re.compile(r'\{\{([^}]+)\}\}')
_PAD_RE = re.compile(r'^pad=(\d+)$')


def split_list(value: Any) -> list[str]:
    """Cell value → listed values. Whitespace alone does not separate."""
    if value is None:
        return []
    if isinstance(value, (list, tuple)):
        return [str(v).strip() for v in value if v is not None and str(v).strip()]
    return [tok.strip() for tok in LIST_SEPARATORS.split(str(value)) if tok.strip()]


def pad(value: Any, width: int = 2) -> str:
    digits = re.sub(r'\D+', '', str(value)) or str(value)
    return digits.zfill(width)


def render_template(template: str, values: dict[str, Any]) -> str:
    """Fill {{key}} / {{key|pad=N}} placeholders; unknown keys render empty."""
    def fill(match: re.Match) -> str:
        name, *modifiers = [part.strip() for part in match.group(1).split('|')]
        value = values.get(name)
        for mod in modifiers:
            m = _PAD_RE.match(mod)
            if m and value is not None:
                value = pad(value, int(m.group(1)))
        return '' if value is None else str(value)
    return _PLACEHOLDER_RE.sub(fill, template or '')


def _variant_cells(row: CatalogRow, keys: list[str], index: AliasIndex) -> dict[str, tuple[str, list[str]]]:
    """key → (attribute label, listed values) for the first label matching each key."""
    cells: dict[str, tuple[str, list[str]]] = {}
    for label, value in row.attributes.items():
        key = find_key_for_label(label, index)
        if key in keys and key not in cells:
            cells[key] = (label, split_list(value))
    return cells


def explode_row(row: CatalogRow, template: str, keys: list[str],
                index: AliasIndex) -> list[CatalogRow]:
    cells = _variant_cells(row, keys, index)
    if not any(len(values) > 1 for _, values in cells.values()):
        return [row]

    axes = [(key, *cells[key]) for key in keys if key in cells and cells[key][1]]
    out = []
    for combo in itertools.product(*(values for _, _, values in axes)):
        values: dict[str, Any] = {'series': row.series, 'code': row.code}
        attributes = dict(row.attributes)
        for (key, label, _), value in zip(axes, combo):
            values[key] = value
            attributes[label] = value
        code = normalize_code(render_template(template, values))
        if not code:
            logger.debug("Template %r rendered no valid code for %s", template, values)
            continue
        out.append(row.model_copy(update={'code': code, 'attributes': attributes}, deep=True))
    return out


def explode_rows(
    blueprint: Optional[Blueprint],
    index: AliasIndex,
    rows: Iterable[CatalogRow],
) -> list[CatalogRow]:
    rows = list(rows)
    if blueprint is None or not blueprint.pn_template or not blueprint.variant_keys:
        return rows
    keys = [normalize_key_name(k) for k in blueprint.variant_keys]
    exploded: list[CatalogRow] = []
    for row in rows:
        exploded.extend(explode_row(row, blueprint.pn_template, keys, index))
    out = dedupe_rows(exploded)
    if len(out) != len(rows):
        logger.info("Fanned %d rows out to %d part numbers for %s",
                    len(rows), len(out), blueprint.family_slug)
    return out
