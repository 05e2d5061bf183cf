"""
Merchant address to service-region matching.

Resources list the region categories they cover. An address is reduced to
one category by spotting Malaysian state names (and common city aliases)
in free text. Addresses with no recognisable state default to the Klang
Valley, where most merchants are.
"""

import re
from typing import Iterable, Optional

WITHIN_KLANG_VALLEY = "Within Klang Valley"
PENANG = "Penang"
JOHOR_BAHRU = "Johor Bahru"
OUTSIDE_KLANG_VALLEY = "Outside of Klang Valley"

# Categories served by in-house installers; anything else goes to the vendor.
COVERED_REGIONS = {WITHIN_KLANG_VALLEY, PENANG, JOHOR_BAHRU}

KLANG_VALLEY_STATES = {"Kuala Lumpur", "Selangor", "Putrajaya"}

STATE_VARIATIONS: dict[str, list[str]] = {
    "Kuala Lumpur": ["kuala lumpur", "kl", "k.l", "wilayah persekutuan kuala lumpur",
                     "wp kuala lumpur"],
    "Selangor": ["selangor", "selangor darul ehsan", "petaling jaya", "pj", "subang",
                 "shah alam", "klang", "puchong", "ampang", "cheras"],
    "Penang": ["penang", "pulau pinang", "p. pinang", "georgetown", "george town",
               "butterworth", "balik pulau"],
    "Johor": ["johor", "johor bahru", "jb", "j.b", "johor darul takzim"],
    "Perak": ["perak", "perak darul ridzuan", "ipoh"],
    "Kedah": ["kedah", "kedah darul aman", "alor setar"],
    "Kelantan": ["kelantan", "kelantan darul naim", "kota bharu"],
    "Terengganu": ["terengganu", "terengganu darul iman", "kuala terengganu"],
    "Pahang": ["pahang", "pahang darul makmur", "kuantan"],
    "Negeri Sembilan": ["negeri sembilan", "n. sembilan", "negeri sembilan darul khusus",
                        "seremban"],
    "Melaka": ["melaka", "malacca"],
    "Sabah": ["sabah", "kota kinabalu"],
    "Sarawak": ["sarawak", "kuching"],
    "Perlis": ["perlis", "perlis indera kayangan", "kangar"],
    "Putrajaya": ["putrajaya", "wp putrajaya"],
    "Labuan": ["labuan", "wp labuan"],
}


def _alias_pattern(alias: str) -> re.Pattern:
    # Whole-word match so "kl" does not fire inside "klang".
    return re.compile(rf"(?<![a-z]){re.escape(alias)}(?![a-z])")


_STATE_PATTERNS: dict[str, list[re.Pattern]] = {
    state: [_alias_pattern(alias) for alias in aliases]
    for state, aliases in STATE_VARIATIONS.items()
}


def extract_states(address: Optional[str]) -> list[str]:
    """States mentioned in an address, in table order."""
    if not address:
        return []
    normalized = address.lower().strip()
    return [
        state
        for state, patterns in _STATE_PATTERNS.items()
        if any(p.search(normalized) for p in patterns)
    ]


def location_category(address: Optional[str]) -> str:
    states = extract_states(address)
    if not states:
        return WITHIN_KLANG_VALLEY
    if any(state in KLANG_VALLEY_STATES for state in states):
        return WITHIN_KLANG_VALLEY
    if "Penang" in states:
        return PENANG
    if "Johor" in states:
        return JOHOR_BAHRU
    return OUTSIDE_KLANG_VALLEY


def is_location_match(resource_locations: Iterable[str], address: Optional[str]) -> bool:
    """True if a resource covering ``resource_locations`` can serve the address.

    An empty location set means the resource serves anywhere.
    """
    locations = set(resource_locations)
    if not locations:
        return True
    return location_category(address) in locations


def is_covered_region(address: Optional[str]) -> bool:
    return location_category(address) in COVERED_REGIONS
