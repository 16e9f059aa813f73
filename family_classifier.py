"""
family_classifier.py — Pick the component family of a datasheet from the registry.

Used when an ingest request names no family. The candidates are the family
slugs registered in the catalog; the generation engine picks one of them and
its answer is re-validated against that list. Without an engine, the family
whose slug words occur most in the text wins.
"""
from __future__ import annotations

import asyncio
import logging
import re
from typing import Any, Optional

from collaborators import GenerationEngine, safe_parse_json
from config import Settings, get_settings
from exceptions import ConfigurationError
from models import FamilyChoice, ResolutionSource

logger = logging.getLogger(__name__)

FAMILY_INSTRUCTION = "\n".join([
    "You classify an electronic component datasheet into exactly one product family.",
    "Choose family_slug ONLY from family_candidates, copied exactly.",
    "If no candidate fits, return an empty string. Never invent a family.",
    'Return strict JSON: {"family_slug": ""}.',
])

_SLUG_SPLIT_RE = re.compile(r'[^a-z0-9]+')


def family_terms(slug: str) -> list[str]:
    """Words of a family slug worth looking for in text."""
    return [w for w in _SLUG_SPLIT_RE.split(slug.lower()) if len(w) >= 3]


def score_families(corpus: str, families: list[str]) -> list[tuple[str, tuple[int, int]]]:
    """(family, (distinct terms found, total hits)) for families with any hit, best first."""
    low = (corpus or '').lower()
    scored = []
    for order, family in enumerate(families):
        hits = [len(re.findall(rf'\b{re.escape(t)}s?\b', low)) for t in family_terms(family)]
        score = (sum(1 for h in hits if h), sum(hits))
        if score[0]:
            scored.append((order, family, score))
    scored.sort(key=lambda s: (-s[2][0], -s[2][1], s[0]))
    return [(family, score) for _, family, score in scored]


def _picked_family(payload: Any) -> Optional[str]:
    if isinstance(payload, (str, bytes)):
        payload = safe_parse_json(payload)
    if not isinstance(payload, dict):
        return None
    for name in ('family_slug', 'family', 'familySlug'):
        value = payload.get(name)
        if isinstance(value, str):
            return value.strip()
    return ''


class FamilyClassifier:
    """Registry-constrained family pick."""

    def __init__(
        self,
        generator: Optional[GenerationEngine] = None,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.generator = generator

    async def classify(
        self,
        corpus: str,
        families: list[str],
        warnings: Optional[list[str]] = None,
    ) -> FamilyChoice:
        warnings = warnings if warnings is not None else []
        if not families or not (corpus or '').strip():
            return FamilyChoice()
        corpus = corpus[:self.settings.corpus_char_limit]

        if self.generator is not None:
            picked = await self._ask_generator(corpus, families, warnings)
            if picked is not None:
                return self._validate(picked, families, warnings)

        scored = score_families(corpus, families)
        if not scored:
            return FamilyChoice()
        return FamilyChoice(family_slug=scored[0][0], source=ResolutionSource.HEURISTIC)

    async def _ask_generator(self, corpus, families, warnings) -> Optional[str]:
        try:
            raw = await asyncio.wait_for(
                self.generator.generate_json(
                    FAMILY_INSTRUCTION,
                    {'family_candidates': families, 'text': corpus[:8000]},
                    max_output_tokens=self.settings.generation_max_output_tokens,
                    temperature=self.settings.generation_temperature,
                ),
                timeout=self.settings.remote_timeout_seconds,
            )
        except ConfigurationError:
            raise
        except asyncio.TimeoutError:
            self._warn(warnings, "classifier: generation timed out, using heuristic")
            return None
        except Exception as e:
            self._warn(warnings, f"classifier: generation failed ({e}), using heuristic")
            return None

        picked = _picked_family(raw)
        if picked is None:
            self._warn(warnings, "classifier: generation response was not a JSON object")
            return ''
        return picked

    def _validate(self, picked: str, families: list[str], warnings: list[str]) -> FamilyChoice:
        by_norm = {f.lower(): f for f in families}
        family = by_norm.get(picked.lower(), '')
        if picked and not family:
            self._warn(warnings, f"classifier: discarded family outside registry: {picked!r}")
        if not family:
            return FamilyChoice()
        return FamilyChoice(family_slug=family, source=ResolutionSource.AI)

    @staticmethod
    def _warn(warnings: list[str], message: str) -> None:
        warnings.append(message)
        logger.warning(message)
