from __future__ import annotations

import hashlib
from typing import Any, Iterable

import orjson

from routeguide.core.categories import ALL_CATEGORIES


# Bump whenever the stored meaning of a cached tile changes (category table,
# tile size, element parsing). Old links stay on disk but are never read again.
FILTERS_SCHEMA_VERSION = 2

FILTERS_HASH_LEN = 8


def _orjson_dumps(obj: Any) -> bytes:
    return orjson.dumps(
        obj,
        option=orjson.OPT_SORT_KEYS | orjson.OPT_NON_STR_KEYS,
    )


def normalize_categories(categories: Iterable[str] | None) -> list[str]:
    if not categories:
        return []
    out = {str(c).strip() for c in categories if c}
    return sorted(c for c in out if c)


def build_filters_hash(
    categories: Iterable[str] | None,
    *,
    schema_version: int = FILTERS_SCHEMA_VERSION,
) -> str:
    """
    Stable cache-scope key for a category set.

    Distance / radius are deliberately not part of the key so a tile fetched
    once is reusable for any query radius.
    """
    payload = {
        "v": int(schema_version),
        "categories": normalize_categories(categories),
    }
    digest = hashlib.sha256(_orjson_dumps(payload)).hexdigest()
    return digest[:FILTERS_HASH_LEN]


def superset_filters_hash(*, schema_version: int = FILTERS_SCHEMA_VERSION) -> str:
    return build_filters_hash(ALL_CATEGORIES, schema_version=schema_version)
