"""Language tag canonicalization for module descriptors.

The canonical tag doubles as an output directory name and as the merge queue
key shared by every worker, so the mapping must stay pure and idempotent.
"""
from __future__ import annotations

import re
from typing import Optional

UNDETERMINED = "und"

LANGUAGE_ALIASES: dict[str, str] = {
    # legacy two-letter codes
    "iw": "he",
    "in": "id",
    "ji": "yi",
    "jw": "jv",
    "mo": "ro",
    "sh": "sr-Latn",
    # Han script plus region
    "zh-cn": "zh-Hans-CN",
    "zh-sg": "zh-Hans-SG",
    "zh-hans": "zh-Hans-CN",
    "zh-tw": "zh-Hant-TW",
    "zh-hk": "zh-Hant-HK",
    "zh-hant": "zh-Hant-TW",
    # script variants
    "sr-latn": "sr-Latn",
    "sr-cyrl": "sr",
    "az-latn": "az",
    "az-cyrl": "az-Cyrl",
    "uz-latn": "uz",
    "uz-cyrl": "uz-Cyrl",
    "pa-arab": "pnb",
    # region variants kept apart
    "pt-br": "pt-BR",
    "pt-pt": "pt",
    "en-gb": "en",
    "en-us": "en",
    "es-419": "es-419",
    "fr-ca": "fr-CA",
    # three-letter codes common in scripture modules
    "grc": "grc",
    "hbo": "hbo",
    "arc": "arc",
    "syc": "syc",
    "syr": "syr",
    "cop": "cop",
    "got": "got",
    "ang": "ang",
    "enm": "enm",
    "chr": "chr",
    "tpi": "tpi",
    "haw": "haw",
    "ceb": "ceb",
    "tgl": "tl",
    "pnb": "pnb",
}

_CANONICAL_BY_LOWER: dict[str, str] = {value.lower(): value for value in LANGUAGE_ALIASES.values()}


def normalize_tag(tag: Optional[str]) -> str:
    if tag is None:
        return ""
    return re.sub(r"\s+", "-", tag.strip().lower().replace("_", "-"))


def canonicalize(tag: Optional[str]) -> str:
    """Return the canonical language tag for a declared ``Lang=`` value."""
    normalized = normalize_tag(tag)
    if not normalized:
        return UNDETERMINED
    if normalized == UNDETERMINED:
        return UNDETERMINED
    canonical = _CANONICAL_BY_LOWER.get(normalized)
    if canonical is not None:
        return canonical
    alias = LANGUAGE_ALIASES.get(normalized)
    if alias is not None:
        return alias
    prefix = normalized[:2].strip(" -")
    if not prefix:
        return UNDETERMINED
    return LANGUAGE_ALIASES.get(prefix, prefix)
