"""
Candidate code tokens and keyword-centered windows from raw datasheet text.
"""
from __future__ import annotations
import re

NEAR_KEYS = [
    'ordering information', 'ordering code', 'how to order',
    'part number', 'part no', 'product number',
    'catalog no', 'type no', 'model', 'type', 'sku',
]

# Generic words and units that look like codes but never are.
BAD_TOKENS = frozenset({
    'PAGE', 'PAGES', 'TABLE', 'PDF', 'NOTE', 'NOTES', 'DATE', 'TYPE', 'MODEL',
    'SERIES', 'ORDERING', 'INFORMATION', 'DATASHEET', 'SPECIFICATIONS',
    'VOLT', 'VOLTS', 'WATT', 'WATTS', 'AMPS', 'OHMS', 'ROHS', 'REACH',
    'HTTP', 'HTTPS', 'WWW.', 'MAX.', 'MIN.', 'TYP.',
})

_TOKEN_RE = re.compile(r'(?<![A-Z0-9._/\-])[A-Z0-9][A-Z0-9._/\-]{3,23}(?![A-Z0-9._/\-])')
_EDGE_RE = re.compile(r'^[^A-Z0-9]+|[^A-Z0-9]+$')


def tokenize(text: str) -> list[str]:
    """Deduplicated candidate tokens, first occurrence first."""
    seen: dict[str, None] = {}
    for m in _TOKEN_RE.finditer((text or '').upper()):
        raw = m.group(0)
        if raw in BAD_TOKENS:
            continue
        tok = _EDGE_RE.sub('', raw)
        if len(tok) < 4 or tok in BAD_TOKENS:
            continue
        seen.setdefault(tok, None)
    return list(seen)


def keyword_windows(text: str, window_size: int = 250) -> list[str]:
    text = text or ''
    low = text.lower()
    out = []
    for key in NEAR_KEYS:
        idx = low.find(key)
        while idx >= 0:
            start = max(0, idx - window_size)
            end = min(len(text), idx + len(key) + window_size)
            out.append(text[start:end])
            idx = low.find(key, idx + len(key))
    return out
