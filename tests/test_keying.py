from routeguide.core.categories import ALL_CATEGORIES
from routeguide.core.keying import (
    FILTERS_HASH_LEN,
    FILTERS_SCHEMA_VERSION,
    build_filters_hash,
    normalize_categories,
    superset_filters_hash,
)


def test_hash_is_order_independent():
    assert build_filters_hash(["museum", "castle"]) == build_filters_hash(["castle", "museum"])


def test_hash_ignores_duplicates_and_whitespace():
    assert build_filters_hash(["museum", " museum", "castle"]) == build_filters_hash(["castle", "museum"])


def test_hash_length():
    h = build_filters_hash(["museum"])
    assert len(h) == FILTERS_HASH_LEN
    int(h, 16)


def test_schema_version_changes_hash():
    cats = ["museum", "castle"]
    assert build_filters_hash(cats) != build_filters_hash(cats, schema_version=FILTERS_SCHEMA_VERSION + 1)


def test_different_sets_differ():
    assert build_filters_hash(["museum"]) != build_filters_hash(["castle"])


def test_superset_hash_covers_all_categories():
    assert superset_filters_hash() == build_filters_hash(list(reversed(ALL_CATEGORIES)))
    assert superset_filters_hash() != build_filters_hash(["museum"])


def test_normalize_categories_empty():
    assert normalize_categories(None) == []
    assert normalize_categories(["", "  "]) == []
