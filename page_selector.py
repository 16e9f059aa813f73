"""
page_selector.py — Rank datasheet pages by how likely they hold ordering/type tables.

Pure functions over already-extracted page text. The ranking feeds the
page-number selector passed to the OCR engine; `sample_pages` covers the case
where a page ceiling is exceeded without any targeted selection.
"""
from __future__ import annotations
import re
from typing import Iterable, Optional

import numpy as np

from models import PageCandidate, PageText

DEFAULT_TARGET_KEYWORDS = ['ordering', 'type', 'selection', 'spec']
MAX_SELECTED_PAGES = 8

_PART_NUMBER_RE = re.compile(r'\bpart\s*(?:number|no\b\.?|#)', re.IGNORECASE)


def score_page(text: str, target_keywords: Iterable[str]) -> int:
    low = (text or '').lower()
    score = 0
    for kw in target_keywords:
        kw = kw.lower().strip()
        if kw:
            score += low.count(kw)
    score += len(_PART_NUMBER_RE.findall(text or ''))
    return score


def rank_pages(
    pages: list[PageText],
    target_keywords: Optional[Iterable[str]] = None,
) -> list[PageCandidate]:
    """All pages with a positive score, best first (stable on page order)."""
    keywords = list(target_keywords or DEFAULT_TARGET_KEYWORDS)
    ordered = sorted(pages, key=lambda p: p.page)
    candidates = [
        PageCandidate(
            page_number=p.page,
            score=score_page(p.text, keywords),
            text_excerpt=(p.text or '')[:200],
        )
        for p in ordered
    ]
    candidates = [c for c in candidates if c.score > 0]
    # sorted() is stable, so equal scores keep page order
    return sorted(candidates, key=lambda c: -c.score)


def select_pages(
    pages: list[PageText],
    target_keywords: Optional[Iterable[str]] = None,
    limit: int = MAX_SELECTED_PAGES,
) -> list[int]:
    return [c.page_number for c in rank_pages(pages, target_keywords)[:limit]]


def sample_pages(total: int, count: int) -> list[int]:
    """
    Representative pages for a document too long for one request:
    first 3, last 2, then evenly spaced interior pages up to `count`.
    """
    if total <= 0 or count <= 0:
        return []
    if total <= count:
        return list(range(1, total + 1))

    anchors = [p for p in (1, 2, 3, total, total - 1) if 1 <= p <= total]
    chosen: list[int] = []
    for p in anchors:
        if p not in chosen and len(chosen) < count:
            chosen.append(p)

    remaining = count - len(chosen)
    lo, hi = 4, total - 2
    if remaining > 0 and hi >= lo:
        for p in np.linspace(lo, hi, num=remaining):
            p = int(round(float(p)))
            if p not in chosen:
                chosen.append(p)
        # rounding collisions: top up from the interior in order
        for p in range(lo, hi + 1):
            if len(chosen) >= count:
                break
            if p not in chosen:
                chosen.append(p)

    return sorted(chosen)
