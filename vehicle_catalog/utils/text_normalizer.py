"""
Text and number normalization for Swedish dealer material.

Price strings arrive as "269 900 kr", "2 699:-/mån", "269.900 SEK" or as
numbers from an LLM; everything here returns Optional[int] where None means
the value is unknown or implausible.
"""
import re
import unicodedata
from typing import Any, Optional

from rapidfuzz.distance import Levenshtein

# Plausible amounts in SEK
PURCHASE_PRICE_RANGE = (50_000, 3_000_000)
MONTHLY_PRICE_RANGE = (500, 50_000)

TRIM_LEVEL_WORDS = (
    "edition",
    "active",
    "style",
    "allure",
    "gt",
    "elegance",
    "cosmo",
    "essential",
    "ultimate",
    "base",
    "select",
    "inclusive",
    "gs",
    "sport",
    "plus",
    "life",
    "first",
    "business",
)

_WHITESPACE = re.compile(r"\s+")
_CURRENCY_NOISE = re.compile(r"(?i)(kr\.?|sek|:-|/\s*mån(ad)?|per\s+månad|/\s*mon)")
_TRAILING_DECIMALS = re.compile(r"[,.]\d{1,2}(?=\D*$)")
# Thousands may be grouped with spaces, dots or commas
_AMOUNT = re.compile(r"\d{1,3}(?:[\s.,]\d{3})+(?!\d)|\d+")
_NON_DIGITS = re.compile(r"\D")
_TRIM_WORD = re.compile(r"\b(" + "|".join(TRIM_LEVEL_WORDS) + r")\b", re.IGNORECASE)


def collapse_whitespace(text: str) -> str:
    return _WHITESPACE.sub(" ", text).strip()


def fold_accents(text: str) -> str:
    """Strip diacritics: å/ä -> a, ö -> o, é -> e"""
    decomposed = unicodedata.normalize("NFKD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def parse_amount(value: Any) -> Optional[int]:
    """
    Read a positive integer amount from a number or a price-like string.

    No plausibility range is applied; zero, negatives and unparseable input
    give None.
    """
    if value is None or isinstance(value, bool):
        return None

    if isinstance(value, (int, float)):
        amount = int(round(value))
        return amount if amount > 0 else None

    text = str(value)
    if not text.strip():
        return None

    text = _CURRENCY_NOISE.sub("", text)
    text = _TRAILING_DECIMALS.sub("", text.strip())

    match = _AMOUNT.search(text)
    if not match:
        return None

    amount = int(_NON_DIGITS.sub("", match.group(0)))
    return amount if amount > 0 else None


def parse_swedish_price(text: Any, monthly: Optional[bool] = None) -> Optional[int]:
    """
    Parse a Swedish price string and reject implausible amounts.

    Args:
        text: Price text such as "389 900 kr" or "2 699 kr/mån"
        monthly: True to accept only monthly amounts, False only purchase
            prices, None for either range

    Returns:
        The amount in whole kronor, or None
    """
    amount = parse_amount(text)
    if amount is None:
        return None

    in_purchase = PURCHASE_PRICE_RANGE[0] <= amount <= PURCHASE_PRICE_RANGE[1]
    in_monthly = MONTHLY_PRICE_RANGE[0] <= amount <= MONTHLY_PRICE_RANGE[1]

    if monthly is True:
        return amount if in_monthly else None
    if monthly is False:
        return amount if in_purchase else None
    return amount if (in_purchase or in_monthly) else None


def clean_text(value: Any) -> Optional[str]:
    """Collapse whitespace; blank strings become None"""
    if value is None:
        return None
    text = collapse_whitespace(str(value))
    return text or None


def clean_variant_name(name: str) -> str:
    """Presentation cleanup: "100hk" -> "100 hk", capitalized trim words"""
    if not name:
        return ""

    name = collapse_whitespace(name)
    name = re.sub(r"(\d+)\s*(kwh)\b", r"\1 kWh", name, flags=re.IGNORECASE)
    name = re.sub(r"(\d+)\s*(hk|hp)\b", r"\1 hk", name, flags=re.IGNORECASE)
    name = _TRIM_WORD.sub(lambda match: _capitalize_trim(match.group(0)), name)
    return name.strip()


def _capitalize_trim(word: str) -> str:
    """Lowercase trim words only; "gt" -> "GT", "allure" -> "Allure" """
    if not word.islower():
        return word
    return word.upper() if len(word) <= 2 else word.capitalize()


def levenshtein_distance(a: str, b: str) -> int:
    """Edit distance with unit insert/delete/substitute costs"""
    return Levenshtein.distance(a, b)


def string_similarity(a: str, b: str) -> float:
    """1 - distance / longest length, in [0, 1]"""
    return Levenshtein.normalized_similarity(a, b)
