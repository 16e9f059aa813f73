"""
brand_resolver.py — Resolve brand / part code / series from noisy datasheet text.

The generation engine only ever chooses from closed candidate sets built
here, and its answer is re-validated against those sets before use. When the
engine is missing or fails, a deterministic heuristic picks instead.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional

from collaborators import GenerationEngine, safe_parse_json
from config import Settings, get_settings
from exceptions import ConfigurationError
from models import BrandResolution, ResolutionSource
from tokenizer import keyword_windows, tokenize

logger = logging.getLogger(__name__)

AliasDictionary = dict[str, set[str]]

SEED_BRANDS = [
    'Panasonic', 'OMRON', 'TE Connectivity', 'Molex', 'Phoenix Contact',
    'Honeywell', 'Texas Instruments', 'Analog Devices', 'STMicroelectronics',
    'Murata', 'Microchip', 'NXP', 'Infineon', 'ON Semiconductor', 'Vishay',
]

SYSTEM_INSTRUCTION = "\n".join([
    "You identify the manufacturer brand, the part code and the product series of an electronic component datasheet.",
    "Choose brand ONLY from brand_candidates and code ONLY from code_candidates, copied exactly.",
    "If no candidate fits, return an empty string for that field. Never invent a value.",
    "series may be copied from the text or left empty.",
    'Return strict JSON: {"brand": "", "code": "", "series": ""}.',
])

_CODE_EDGE_RE = re.compile(r'^[\W_]+|[\W_]+$')

# ============================================================
# Candidate Sets
# ============================================================

def brand_candidates(corpus: str, aliases: AliasDictionary) -> list[str]:
    """Brands whose name or any alias occurs in the corpus, earliest hit first."""
    low = (corpus or '').lower()
    hits: list[tuple[int, int, str]] = []
    for order, (brand, names) in enumerate(aliases.items()):
        positions = [
            low.find(n.strip().lower())
            for n in [brand, *names]
            if n and n.strip()
        ]
        positions = [p for p in positions if p >= 0]
        if positions:
            hits.append((min(positions), order, brand))
    return [brand for _, _, brand in sorted(hits)]


def code_candidates(corpus: str, cap: int = 200, window_size: int = 250) -> list[str]:
    seen: dict[str, None] = {}
    for tok in tokenize(corpus):
        seen.setdefault(tok, None)
    for window in keyword_windows(corpus, window_size):
        for tok in tokenize(window):
            seen.setdefault(tok, None)
    return list(seen)[:cap]


def window_codes(corpus: str, window_size: int = 250) -> list[str]:
    seen: dict[str, None] = {}
    for window in keyword_windows(corpus, window_size):
        for tok in tokenize(window):
            seen.setdefault(tok, None)
    return list(seen)


def clean_code(value: Any) -> str:
    return _CODE_EDGE_RE.sub('', str(value or '')).upper()


def _pick(payload: dict, *names: str) -> str:
    for name in names:
        value = payload.get(name)
        if isinstance(value, str) and value.strip():
            return value
    return ''


def normalize_generation_payload(payload: Any) -> Optional[dict[str, str]]:
    """Fold the engine's varying field names into brand/code/series."""
    if isinstance(payload, (str, bytes)):
        payload = safe_parse_json(payload)
    if not isinstance(payload, dict):
        return None
    return {
        'brand': _pick(payload, 'brand', 'brand_effective', 'manufacturer').strip(),
        'code': clean_code(_pick(payload, 'code', 'part_number', 'pn', 'model')),
        'series': _pick(payload, 'series', 'series_code').strip(),
    }


# ============================================================
# Resolver
# ============================================================

class BrandResolver:
    """Candidate-constrained brand/code/series resolution."""

    def __init__(
        self,
        generator: Optional[GenerationEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        if generator is not None and not getattr(generator, 'model', None):
            raise ConfigurationError("generation engine has no model configured")
        self.generator = generator

    async def resolve(
        self,
        corpus: str,
        aliases: AliasDictionary,
        warnings: Optional[list[str]] = None,
    ) -> BrandResolution:
        warnings = warnings if warnings is not None else []
        corpus = (corpus or '')[:self.settings.corpus_char_limit]
        brands = brand_candidates(corpus, aliases)
        codes = code_candidates(
            corpus, self.settings.code_candidate_cap, self.settings.keyword_window_size)

        if self.generator is not None:
            picked = await self._ask_generator(corpus, brands, codes, warnings)
            if picked is not None:
                return self._validate(picked, brands, codes, warnings)
        return self._heuristic(corpus, brands, codes)

    async def _ask_generator(self, corpus, brands, codes, warnings) -> Optional[dict[str, str]]:
        payload = {
            'brand_candidates': brands,
            'code_candidates': codes,
            'windows': keyword_windows(corpus, self.settings.keyword_window_size)[:10],
            'text': corpus[:8000],
        }
        try:
            raw = await asyncio.wait_for(
                self.generator.generate_json(
                    SYSTEM_INSTRUCTION,
                    payload,
                    max_output_tokens=self.settings.generation_max_output_tokens,
                    temperature=self.settings.generation_temperature,
                ),
                timeout=self.settings.remote_timeout_seconds,
            )
        except ConfigurationError:
            raise
        except asyncio.TimeoutError:
            self._warn(warnings, "resolver: generation timed out, using heuristic")
            return None
        except Exception as e:
            self._warn(warnings, f"resolver: generation failed ({e}), using heuristic")
            return None

        picked = normalize_generation_payload(raw)
        if picked is None:
            self._warn(warnings, "resolver: generation response was not a JSON object")
            return {'brand': '', 'code': '', 'series': ''}
        return picked

    def _validate(self, picked, brands, codes, warnings) -> BrandResolution:
        brand_map = {b.strip().lower(): b for b in brands}
        code_set = set(codes)

        brand = brand_map.get(picked['brand'].lower(), '') if picked['brand'] else ''
        if picked['brand'] and not brand:
            self._warn(warnings, f"resolver: discarded brand outside candidates: {picked['brand']!r}")

        code = picked['code'] if picked['code'] in code_set else ''
        if picked['code'] and not code:
            self._warn(warnings, f"resolver: discarded code outside candidates: {picked['code']!r}")

        source = ResolutionSource.AI if (brand or code) else ResolutionSource.NONE
        return BrandResolution(brand=brand, code=code, series=picked['series'], source=source)

    def _heuristic(self, corpus, brands, codes) -> BrandResolution:
        brand = brands[0] if brands else ''
        preferred = window_codes(corpus, self.settings.keyword_window_size) + codes
        code = next((c for c in preferred if c in codes and any(ch.isdigit() for ch in c)), '')
        source = ResolutionSource.HEURISTIC if (brand or code) else ResolutionSource.NONE
        return BrandResolution(brand=brand, code=code, source=source)

    @staticmethod
    def _warn(warnings: list[str], message: str) -> None:
        warnings.append(message)
        logger.warning(message)


def alias_dictionary_from_rows(rows: list[dict]) -> AliasDictionary:
    """Group (brand, alias) rows into {brand: {aliases}}."""
    out: AliasDictionary = {}
    for row in rows:
        brand = str(row.get('brand') or '').strip()
        if not brand:
            continue
        aliases = out.setdefault(brand, set())
        alias = str(row.get('alias') or '').strip()
        if alias:
            aliases.add(alias)
    return out


def seed_alias_dictionary() -> AliasDictionary:
    return {b: set() for b in SEED_BRANDS}
