"""
StreetEasy alert email parser.

Turns the body of a forwarded StreetEasy alert into ExtractedListing records.

Two phases:

1. Candidate discovery: every StreetEasy listing-shaped URL in the body is
   collected in document order, canonicalized (tracking parameters removed)
   and deduplicated on the canonical form.
2. Field extraction: for each candidate a window of the body around the
   first occurrence of its URL is cut out, and each field is extracted from
   that window by an ordered tuple of rules. A rule is a plain function
   ``(text) -> value | None``; the first rule returning a value wins.

Matching runs on the raw body (HTML included). ``clean_text`` (BeautifulSoup)
is only applied to fragments that end up as stored text (address,
neighborhood) and to the text searched for a unit after the address.

Adjacent listings can share part of their windows, so a field from listing N
may be picked up for listing N+1. Widening the window improves recall on
markup-heavy emails and increases that bleed; both sizes are tunable through
CONTEXT_CHARS_BEFORE / CONTEXT_CHARS_AFTER.
"""

import html
import logging
import os
import re
from typing import Callable, Iterable, NamedTuple, Optional, TypeVar
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

from bs4 import BeautifulSoup

from se_monitor.models.inbound_email import NormalizedEmail
from se_monitor.models.ingest import ParseResult
from se_monitor.models.listing import ExtractedListing
from se_monitor.services.classifier import is_streeteasy_email

logger = logging.getLogger(__name__)

T = TypeVar("T")
Rule = Callable[[str], Optional[T]]

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------

# StreetEasy puts listing details after the link, so the window is asymmetric.
DEFAULT_CHARS_BEFORE = 300
DEFAULT_CHARS_AFTER = 500

# Plausible monthly rent. Anything outside is some other dollar amount in the window.
MIN_RENT = 500
MAX_RENT = 50_000

TRACKING_PARAMS = frozenset({"utm_source", "utm_medium", "utm_campaign", "ref"})

_URL_RE = re.compile(r"https?://(?:www\.)?streeteasy\.com/[^\s\"'<>]+", re.IGNORECASE)
_LISTING_PATH_RE = re.compile(r"/(?:rental|building|for-rent)/|/sale/\d+", re.IGNORECASE)
_ASSET_RE = re.compile(r"\.(?:jpe?g|png|gif|webp|svg|css|js)(?:[?#]|$)", re.IGNORECASE)
_URL_TRAILING_PUNCTUATION = ".,;:!?)]}"

# Whitespace as it shows up in HTML email bodies
_SP = r"(?:\s|&nbsp;|&#160;)+"

_WHITESPACE_RE = re.compile(r"\s+")


# ---------------------------------------------------------------------------
# Shared helpers
# ---------------------------------------------------------------------------

def clean_text(fragment: str) -> str:
    """Strip tags, decode entities and collapse whitespace in an extracted fragment."""
    text = BeautifulSoup(fragment, "html.parser").get_text(" ", strip=True)
    text = _WHITESPACE_RE.sub(" ", text)
    return text.strip().rstrip(",").strip()


def first_match(rules: Iterable[Rule], text: str) -> Optional[T]:
    """Run rules in order and return the first non-None result."""
    for rule in rules:
        value = rule(text)
        if value is not None:
            return value
    return None


def _context_setting(name: str, default: int) -> int:
    try:
        return max(0, int(os.getenv(name, default)))
    except ValueError:
        logger.warning(f"Ignoring non-integer {name}={os.getenv(name)!r}; using {default}")
        return default


# ---------------------------------------------------------------------------
# Phase 1: candidate discovery
# ---------------------------------------------------------------------------

def canonicalize_url(url: str) -> str:
    """
    Remove tracking parameters from a listing URL.

      https://streeteasy.com/rental/123?utm_source=alert&ref=email&amp;x=1
        -> https://streeteasy.com/rental/123?x=1

    A URL that cannot be parsed is returned unchanged.
    """
    unescaped = html.unescape(url)
    try:
        parts = urlsplit(unescaped)
        query = [
            (key, value)
            for key, value in parse_qsl(parts.query, keep_blank_values=True)
            if key.lower() not in TRACKING_PARAMS
        ]
    except ValueError:
        return url
    if not parts.scheme or not parts.netloc:
        return url
    return urlunsplit((parts.scheme, parts.netloc, parts.path, urlencode(query), parts.fragment))


def is_listing_url(url: str) -> bool:
    """True for StreetEasy listing pages, False for images, static assets and other pages."""
    if not _URL_RE.match(url):
        return False
    if _ASSET_RE.search(url):
        return False
    return bool(_LISTING_PATH_RE.search(url))


class ListingUrl(NamedTuple):
    """A listing URL as found in the body, with the span of its first occurrence."""
    raw: str
    canonical: str
    start: int
    end: int


def find_listing_urls(body: str) -> list[ListingUrl]:
    """
    Return the listing URLs in ``body`` in document order of first occurrence.

    A URL repeated in the body (image link, text link, footer) is returned
    once, as are variants that only differ in tracking parameters. ``start``
    and ``end`` locate the first occurrence, so a URL that is a prefix of an
    earlier, longer URL still gets its own position.
    """
    found: dict[str, ListingUrl] = {}
    for match in _URL_RE.finditer(body or ""):
        raw = match.group(0).rstrip(_URL_TRAILING_PUNCTUATION)
        if not is_listing_url(raw):
            continue
        canonical = canonicalize_url(raw)
        if canonical not in found:
            found[canonical] = ListingUrl(raw, canonical, match.start(), match.start() + len(raw))
    return list(found.values())


def context_window(
    body: str,
    start: int,
    end: int,
    chars_before: int = DEFAULT_CHARS_BEFORE,
    chars_after: int = DEFAULT_CHARS_AFTER,
) -> str:
    """Slice of ``body`` from ``chars_before`` ahead of ``start`` to ``chars_after`` past ``end``."""
    return body[max(0, start - chars_before):min(len(body), end + chars_after)]


# ---------------------------------------------------------------------------
# Price
# ---------------------------------------------------------------------------

_DOLLAR_PRICE_RE = re.compile(r"\$\s*(\d[\d,]*)(?:\s*/\s*(?:mo|month|mon)\b)?", re.IGNORECASE)
_LABELLED_PRICE_RE = re.compile(r"\b(?:asking|rent|price)\b[:\s]*\$?\s*(\d[\d,]*)", re.IGNORECASE)


def _plausible_rent(digits: str) -> Optional[int]:
    try:
        amount = int(digits.replace(",", ""))
    except ValueError:
        return None
    if MIN_RENT <= amount <= MAX_RENT:
        return amount
    return None


def _price_rule(pattern: re.Pattern) -> Rule:
    def rule(text: str) -> Optional[int]:
        # Skip implausible amounts ("$50 application fee") and keep looking
        for match in pattern.finditer(text):
            amount = _plausible_rent(match.group(1))
            if amount is not None:
                return amount
        return None
    return rule


PRICE_RULES: tuple = (
    _price_rule(_DOLLAR_PRICE_RE),
    _price_rule(_LABELLED_PRICE_RE),
)


def extract_price(text: str) -> Optional[int]:
    return first_match(PRICE_RULES, text)


# ---------------------------------------------------------------------------
# Address and unit
# ---------------------------------------------------------------------------

_STREET_SUFFIX = (
    r"(?:Street|St|Avenue|Ave|Place|Pl|Road|Rd|Boulevard|Blvd|Drive|Dr|"
    r"Lane|Ln|Court|Ct|Terrace|Parkway|Pkwy|Way)\b\.?"
)
_DIRECTION = r"(?:East|West|North|South|E|W|N|S)\.?"

_KNOWN_AVENUES = (
    "Broadway",
    "Park Avenue",
    "Park Avenue South",
    "Fifth Avenue",
    "Madison Avenue",
    "Lexington Avenue",
    "Amsterdam Avenue",
    "Columbus Avenue",
    "West End Avenue",
    "Central Park West",
    "Central Park South",
    "Central Park North",
    "Riverside Drive",
    "Bowery",
)

ADDRESS_PATTERNS: tuple = (
    # "345 East 12th Street", "40 W. 86th St"
    re.compile(
        rf"\b\d{{1,5}}{_SP}(?:{_DIRECTION}{_SP})?\d{{1,3}}(?:st|nd|rd|th){_SP}{_STREET_SUFFIX}",
        re.IGNORECASE,
    ),
    # "100 Bedford Avenue", "12 North Moore St" (capitalized names only)
    re.compile(rf"\b\d{{1,5}}{_SP}(?:[A-Z][a-z]+{_SP}){{1,3}}{_STREET_SUFFIX}"),
    # "123 W 4 St"
    re.compile(
        rf"\b\d{{1,5}}{_SP}[EWNS]\.?{_SP}\d{{1,3}}(?:st|nd|rd|th)?{_SP}(?:St|Ave|Pl|Blvd|Way)\b\.?",
        re.IGNORECASE,
    ),
    # "1 Broadway", "200 Central Park West" (no suffix keyword of its own)
    re.compile(
        r"\b\d{1,5}" + _SP + "(?:"
        + "|".join(
            _SP.join(re.escape(word) for word in name.split())
            for name in sorted(_KNOWN_AVENUES, key=len, reverse=True)
        )
        + r")\b",
        re.IGNORECASE,
    ),
)


def _pattern_rule(pattern: re.Pattern) -> Rule:
    def rule(text: str) -> Optional[str]:
        match = pattern.search(text)
        if not match:
            return None
        return clean_text(match.group(0)) or None
    return rule


ADDRESS_RULES: tuple = tuple(_pattern_rule(p) for p in ADDRESS_PATTERNS)


def extract_address(text: str) -> Optional[str]:
    return first_match(ADDRESS_RULES, text)


_UNIT_TOKEN = r"(\d{1,4}[A-Za-z]?|[A-Za-z]\d{1,3}|[A-Z]{1,2}|PH\d{0,3})\b"

UNIT_PATTERNS: tuple = (
    # "Apt 4B", "Unit 12", "#PH2"
    re.compile(r"(?:\b(?i:apt|apartment|unit)\.?|#)\s*#?\s*" + _UNIT_TOKEN),
    # ", 4B," directly after the street address
    re.compile(r"^\s*,\s*#?" + _UNIT_TOKEN + r"\s*(?:,|$)"),
)

# How much cleaned text after the address is searched for a unit
_UNIT_LOOKAHEAD = 40


def _unit_rule(pattern: re.Pattern) -> Rule:
    def rule(text: str) -> Optional[str]:
        match = pattern.search(text)
        return match.group(1).upper() if match else None
    return rule


UNIT_RULES: tuple = tuple(_unit_rule(p) for p in UNIT_PATTERNS)


def extract_unit(text_after_address: str) -> Optional[str]:
    """Best-effort unit lookup in the text immediately following an address."""
    return first_match(UNIT_RULES, text_after_address)


def _text_after(context: str, address: str) -> str:
    cleaned = clean_text(context)
    index = cleaned.find(address)
    if index == -1:
        return ""
    start = index + len(address)
    return cleaned[start:start + _UNIT_LOOKAHEAD]


# ---------------------------------------------------------------------------
# Bedrooms and bathrooms
# ---------------------------------------------------------------------------

# Counts never follow "#" or a word character, so hex colours like #1bd are skipped.
_BEDROOM_RE = re.compile(r"(?<![#\w])(\d{1,2})\s*-?\s*(?:bedrooms?|beds?|bd|br)\b", re.IGNORECASE)
_STUDIO_RE = re.compile(r"\bstudio\b", re.IGNORECASE)
_BATHROOM_RE = re.compile(r"(?<![#\w])(\d{1,2}(?:\.\d)?)\s*-?\s*(?:bathrooms?|baths?|ba)\b", re.IGNORECASE)


def _bedroom_count(text: str) -> Optional[int]:
    match = _BEDROOM_RE.search(text)
    return int(match.group(1)) if match else None


def _studio(text: str) -> Optional[int]:
    return 0 if _STUDIO_RE.search(text) else None


# Numeric count first: "2 bed studio-style loft" is a two-bedroom.
BEDROOM_RULES: tuple = (_bedroom_count, _studio)


def extract_bedrooms(text: str) -> Optional[int]:
    return first_match(BEDROOM_RULES, text)


def extract_bathrooms(text: str) -> Optional[float]:
    match = _BATHROOM_RE.search(text)
    return float(match.group(1)) if match else None


# ---------------------------------------------------------------------------
# Neighborhood
# ---------------------------------------------------------------------------

# canonical name -> aliases
_NEIGHBORHOODS: dict[str, tuple] = {
    # Manhattan
    "East Village": (),
    "West Village": (),
    "Greenwich Village": (),
    "SoHo": (),
    "NoHo": (),
    "Nolita": (),
    "Tribeca": (),
    "Chinatown": (),
    "Little Italy": (),
    "Lower East Side": ("LES",),
    "Two Bridges": (),
    "Financial District": ("FiDi",),
    "Battery Park City": (),
    "Chelsea": (),
    "Flatiron": (),
    "Gramercy Park": ("Gramercy",),
    "Murray Hill": (),
    "Kips Bay": (),
    "NoMad": (),
    "Stuyvesant Town": ("Stuy Town",),
    "Midtown": (),
    "Midtown East": (),
    "Midtown West": (),
    "Hell's Kitchen": ("Hells Kitchen",),
    "Upper East Side": ("UES",),
    "Upper West Side": ("UWS",),
    "Roosevelt Island": (),
    "Morningside Heights": (),
    "Harlem": (),
    "East Harlem": ("Spanish Harlem",),
    "Hamilton Heights": (),
    "Washington Heights": (),
    "Inwood": (),
    # Brooklyn
    "Williamsburg": (),
    "East Williamsburg": (),
    "Greenpoint": (),
    "Bushwick": (),
    "DUMBO": (),
    "Brooklyn Heights": (),
    "Downtown Brooklyn": (),
    "Fort Greene": (),
    "Clinton Hill": (),
    "Bedford-Stuyvesant": ("Bed-Stuy", "Bed Stuy"),
    "Crown Heights": (),
    "Prospect Heights": (),
    "Prospect Lefferts Gardens": ("PLG",),
    "Park Slope": (),
    "Windsor Terrace": (),
    "Gowanus": (),
    "Carroll Gardens": (),
    "Cobble Hill": (),
    "Boerum Hill": (),
    "Red Hook": (),
    "Sunset Park": (),
    "Bay Ridge": (),
    "Kensington": (),
    "Ditmas Park": (),
    "Flatbush": (),
    # Queens
    "Astoria": (),
    "Long Island City": ("LIC",),
    "Sunnyside": (),
    "Woodside": (),
    "Ridgewood": (),
    "Jackson Heights": (),
    "Forest Hills": (),
    "Flushing": (),
    # New Jersey
    "Jersey City": (),
    "Hoboken": (),
}

_APOSTROPHE = r"(?:'|&#39;|&#x27;|&rsquo;|’)"


def _gazetteer_key(name: str) -> str:
    name = html.unescape(name).replace("’", "'")
    return _WHITESPACE_RE.sub(" ", name).strip().lower()


def _gazetteer_pattern(name: str) -> str:
    words = [re.escape(word).replace("'", _APOSTROPHE) for word in name.split()]
    return _SP.join(words)


NEIGHBORHOOD_ALIASES: dict[str, str] = {
    _gazetteer_key(alias): canonical
    for canonical, aliases in _NEIGHBORHOODS.items()
    for alias in (canonical, *aliases)
}

# Longest names first so "Midtown East" wins over "Midtown" at the same position.
_GAZETTEER_RE = re.compile(
    r"\b(?:"
    + "|".join(
        _gazetteer_pattern(alias)
        for alias in sorted(
            (alias for canonical, aliases in _NEIGHBORHOODS.items() for alias in (canonical, *aliases)),
            key=len,
            reverse=True,
        )
    )
    + r")\b",
    re.IGNORECASE,
)

_GENERIC_STOPWORDS = frozenset({
    "a", "an", "the", "this", "your", "new", "no", "studio", "rental",
    "apartment", "listing", "price", "fee", "york",
})

_CAPITALIZED_PHRASE = r"([A-Z][a-zA-Z'-]+(?:[ \t]+[A-Z][a-zA-Z'-]+){0,3})"

GENERIC_NEIGHBORHOOD_PATTERNS: tuple = (
    # "... in Astoria," / "in Sunset Park.</td>"
    re.compile(r"\bin[ \t]+" + _CAPITALIZED_PHRASE + r"(?=\s*(?:,|\.|<|$))", re.MULTILINE),
    # "Astoria rental" / "Astoria apartments"
    re.compile(_CAPITALIZED_PHRASE + r"[ \t]+(?:rentals?|apartments?)\b"),
)


def _gazetteer_neighborhood(text: str) -> Optional[str]:
    match = _GAZETTEER_RE.search(text)
    if not match:
        return None
    return NEIGHBORHOOD_ALIASES.get(_gazetteer_key(match.group(0)))


def _generic_rule(pattern: re.Pattern) -> Rule:
    def rule(text: str) -> Optional[str]:
        for match in pattern.finditer(text):
            phrase = clean_text(match.group(1))
            if phrase and phrase.split()[0].lower() not in _GENERIC_STOPWORDS:
                return phrase
        return None
    return rule


# Gazetteer first; the generic patterns only fill in names it does not know.
NEIGHBORHOOD_RULES: tuple = (
    _gazetteer_neighborhood,
    *(_generic_rule(p) for p in GENERIC_NEIGHBORHOOD_PATTERNS),
)


def extract_neighborhood(text: str) -> Optional[str]:
    return first_match(NEIGHBORHOOD_RULES, text)


# ---------------------------------------------------------------------------
# No-fee flag and image
# ---------------------------------------------------------------------------

NO_FEE_PATTERNS: tuple = (
    re.compile(r"\bno[\s-]*fee\b", re.IGNORECASE),
    re.compile(r"\bno[\s-]*broker(?:'s)?[\s-]*fee\b", re.IGNORECASE),
    re.compile(r"\bfee[\s-]*free\b", re.IGNORECASE),
    re.compile(r"\b0\s*%\s*(?:broker\s*)?fee\b", re.IGNORECASE),
    re.compile(r"\bowner[\s-]*pays\b", re.IGNORECASE),
)


def extract_no_fee(text: str) -> bool:
    return any(p.search(text) for p in NO_FEE_PATTERNS)


_IMAGE_EXT = r"\.(?:jpe?g|png|webp)(?:\?[^\"'\s<>]*)?"

# Known listing-photo hosts first, then any image URL.
IMAGE_PATTERNS: tuple = (
    re.compile(r"https?://[^\"'\s<>]*streeteasy[^\"'\s<>]*" + _IMAGE_EXT, re.IGNORECASE),
    re.compile(r"https?://photos\.zillowstatic\.com/[^\"'\s<>]+", re.IGNORECASE),
    re.compile(r"https?://[^\"'\s<>/]+\.cloudfront\.net/[^\"'\s<>]*" + _IMAGE_EXT, re.IGNORECASE),
    re.compile(r"https?://[^\"'\s<>]+" + _IMAGE_EXT, re.IGNORECASE),
)


def _image_rule(pattern: re.Pattern) -> Rule:
    def rule(text: str) -> Optional[str]:
        match = pattern.search(text)
        return html.unescape(match.group(0)) if match else None
    return rule


IMAGE_RULES: tuple = tuple(_image_rule(p) for p in IMAGE_PATTERNS)


def extract_image_url(text: str) -> Optional[str]:
    return first_match(IMAGE_RULES, text)


# ---------------------------------------------------------------------------
# Phase 2: per-listing extraction
# ---------------------------------------------------------------------------

def extract_listing(context: str, source_url: str) -> ExtractedListing:
    """Build one ExtractedListing from its context window. Missing fields are None."""
    address = extract_address(context)
    unit = extract_unit(_text_after(context, address)) if address else None

    return ExtractedListing(
        source_url=source_url,
        address=address,
        unit=unit,
        neighborhood=extract_neighborhood(context),
        price=extract_price(context),
        bedrooms=extract_bedrooms(context),
        bathrooms=extract_bathrooms(context),
        no_fee=extract_no_fee(context),
        image_url=extract_image_url(context),
    )


def extract_listings(
    body: str,
    chars_before: Optional[int] = None,
    chars_after: Optional[int] = None,
) -> list[ExtractedListing]:
    """
    Extract one candidate listing per listing URL in ``body``, valid or not.

    Window sizes default to CONTEXT_CHARS_BEFORE / CONTEXT_CHARS_AFTER from
    the environment, then to 300 / 500.
    """
    if not body:
        return []
    if chars_before is None:
        chars_before = _context_setting("CONTEXT_CHARS_BEFORE", DEFAULT_CHARS_BEFORE)
    if chars_after is None:
        chars_after = _context_setting("CONTEXT_CHARS_AFTER", DEFAULT_CHARS_AFTER)

    candidates: list[ExtractedListing] = []
    for url in find_listing_urls(body):
        context = context_window(body, url.start, url.end, chars_before, chars_after)
        candidates.append(extract_listing(context, url.canonical))
    return candidates


def parse_streeteasy_email(email: NormalizedEmail) -> ParseResult:
    """
    Parse a normalized email into listings.

    The HTML body is preferred over the text body. Candidates missing a URL,
    address or plausible price are left out of ``listings`` without an error.
    """
    content = email.body
    if not content:
        return ParseResult(success=False, errors=["No email body content"])

    if not is_streeteasy_email(email):
        return ParseResult(success=False, errors=["Email does not appear to be from StreetEasy"])

    candidates = extract_listings(content)
    listings = [c for c in candidates if c.is_valid]

    if len(listings) < len(candidates):
        logger.info(
            f"Dropped {len(candidates) - len(listings)} of {len(candidates)} "
            "candidate listings missing an address or price"
        )

    if not listings:
        return ParseResult(
            success=False,
            candidates=candidates,
            errors=["No listings found in email"],
        )

    return ParseResult(success=True, listings=listings, candidates=candidates)
