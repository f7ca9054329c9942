from __future__ import annotations

import re
from typing import Dict, Iterable, List, Mapping, Optional, Tuple


# ──────────────────────────────────────────────────────────────
# Category -> Overpass statement table
#
# Each entry is a full element statement without the area filter; the
# area filter ("(around:...)" or "(s,w,n,e)") is appended per query.
# ──────────────────────────────────────────────────────────────

CATEGORY_MAPPINGS: Dict[str, List[str]] = {
    # Tourism
    "attraction": [
        'node["tourism"="attraction"]',
        'way["tourism"="attraction"]',
        'relation["tourism"="attraction"]',
    ],
    "museum":      ['node["tourism"="museum"]', 'way["tourism"="museum"]'],
    "viewpoint":   ['node["tourism"="viewpoint"]'],
    "hotel":       ['node["tourism"="hotel"]', 'way["tourism"="hotel"]'],
    "hostel":      ['node["tourism"="hostel"]', 'way["tourism"="hostel"]'],
    "guest_house": ['node["tourism"="guest_house"]', 'way["tourism"="guest_house"]'],
    "camp_site":   ['node["tourism"="camp_site"]', 'way["tourism"="camp_site"]'],
    "theme_park":  ['node["tourism"="theme_park"]', 'way["tourism"="theme_park"]'],
    "zoo":         ['node["tourism"="zoo"]', 'way["tourism"="zoo"]'],

    # Historic
    "monument": [
        'node["tourism"="monument"]',
        'node["historic"="monument"]',
        'way["historic"="monument"]',
    ],
    "memorial":            ['node["historic"="memorial"]', 'way["historic"="memorial"]'],
    "castle":              ['node["historic"="castle"]', 'way["historic"="castle"]'],
    "ruins":               ['node["historic"="ruins"]', 'way["historic"="ruins"]'],
    "archaeological_site": [
        'node["historic"="archaeological_site"]',
        'way["historic"="archaeological_site"]',
    ],

    # Nature
    "peak":  ['node["natural"="peak"]'],
    "beach": ['node["natural"="beach"]', 'way["natural"="beach"]'],
    "cave":  ['node["natural"="cave_entrance"]'],
    "cliff": ['node["natural"="cliff"]', 'way["natural"="cliff"]'],
    "water": ['node["natural"="water"]', 'way["natural"="water"]'],
    "park":  ['node["leisure"="park"]', 'way["leisure"="park"]'],

    # Amenity
    "restaurant":  ['node["amenity"="restaurant"]', 'way["amenity"="restaurant"]'],
    "cafe":        ['node["amenity"="cafe"]', 'way["amenity"="cafe"]'],
    "bar":         ['node["amenity"="bar"]', 'way["amenity"="bar"]'],
    "pub":         ['node["amenity"="pub"]', 'way["amenity"="pub"]'],
    "fast_food":   ['node["amenity"="fast_food"]', 'way["amenity"="fast_food"]'],
    "cinema":      ['node["amenity"="cinema"]', 'way["amenity"="cinema"]'],
    "theatre":     ['node["amenity"="theatre"]', 'way["amenity"="theatre"]'],
    "arts_centre": ['node["amenity"="arts_centre"]', 'way["amenity"="arts_centre"]'],

    # Shop
    "mall":     ['node["shop"="mall"]', 'way["shop"="mall"]'],
    "souvenir": ['node["shop"="souvenir"]'],
    "gift":     ['node["shop"="gift"]'],
}

CATEGORY_LABELS: Dict[str, str] = {
    "attraction": "Attraction",
    "museum": "Museum",
    "viewpoint": "Viewpoint",
    "hotel": "Hotel",
    "hostel": "Hostel",
    "guest_house": "Guest house",
    "camp_site": "Camp site",
    "theme_park": "Theme park",
    "zoo": "Zoo",
    "monument": "Monument",
    "memorial": "Memorial",
    "castle": "Castle",
    "ruins": "Ruins",
    "archaeological_site": "Archaeological site",
    "peak": "Peak",
    "beach": "Beach",
    "cave": "Cave entrance",
    "cliff": "Cliff",
    "water": "Water feature",
    "park": "Park",
    "restaurant": "Restaurant",
    "cafe": "Cafe",
    "bar": "Bar",
    "pub": "Pub",
    "fast_food": "Fast food",
    "cinema": "Cinema",
    "theatre": "Theatre",
    "arts_centre": "Arts centre",
    "mall": "Shopping mall",
    "souvenir": "Souvenir shop",
    "gift": "Gift shop",
}

# Every known category; the superset cache tier is keyed on this list.
ALL_CATEGORIES: List[str] = list(CATEGORY_MAPPINGS.keys())

DEFAULT_CATEGORIES: List[str] = [
    "attraction",
    "museum",
    "viewpoint",
    "monument",
    "castle",
    "artwork",
    "historic",
]

# Primary attributes that sort ahead of everything else.
IMPORTANT_TYPES = frozenset({"castle", "museum", "monument", "viewpoint", "attraction"})

# Tag keys consulted (in order) for a POI's primary attribute.
PRIMARY_ATTRIBUTE_KEYS: Tuple[str, ...] = ("tourism", "historic", "amenity", "shop", "natural")


_TAG_FRAGMENT = re.compile(r'\["([^"]+)"="([^"]+)"\]')


def _build_tag_matchers() -> List[Tuple[str, str, str]]:
    out: List[Tuple[str, str, str]] = []
    for category, statements in CATEGORY_MAPPINGS.items():
        for stmt in statements:
            m = _TAG_FRAGMENT.search(stmt)
            if m:
                out.append((category, m.group(1), m.group(2)))
    return out


_TAG_MATCHERS = _build_tag_matchers()


def statements_for_categories(categories: List[str]) -> List[str]:
    """Overpass statements for the given categories; unknown categories contribute nothing."""
    out: List[str] = []
    seen = set()
    for c in categories:
        for stmt in CATEGORY_MAPPINGS.get(str(c), []):
            if stmt not in seen:
                seen.add(stmt)
                out.append(stmt)
    return out


def determine_category(tags: Optional[Mapping[str, str]]) -> str:
    """First category (in table order) whose key=value fragment matches the tags."""
    if not tags:
        return "other"
    for category, key, value in _TAG_MATCHERS:
        if tags.get(key) == value:
            return category
    return "other"


def matches_categories(tags: Optional[Mapping[str, str]], categories: Iterable[str]) -> bool:
    """True when any tag fragment of any of the categories matches."""
    if not tags:
        return False
    wanted = set(categories)
    for category, key, value in _TAG_MATCHERS:
        if category in wanted and tags.get(key) == value:
            return True
    return False


def primary_attribute(tags: Optional[Mapping[str, str]]) -> str:
    if not tags:
        return "unknown"
    for key in PRIMARY_ATTRIBUTE_KEYS:
        v = tags.get(key)
        if v:
            return str(v)
    return "unknown"


def category_label(category: str) -> str:
    return CATEGORY_LABELS.get(category, category.replace("_", " ").capitalize())
