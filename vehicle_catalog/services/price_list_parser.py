"""
Heuristic price-list parsing for tier text when no LLM is configured.

Two strategies:

- Trim price lists: a line naming a trim level (Base, Select, ...) opens a
  variant; following "cirkapris"/"kontantpris", "privatleasing" and
  "billån" lines fill its prices.
- Generic: collect every price-looking amount, split purchase prices from
  monthly amounts and pair them up in ascending order.

Both are low confidence by nature; callers report them as such.
"""
import re
from typing import Optional

import structlog

from vehicle_catalog.models.domain import Variant
from vehicle_catalog.utils.text_normalizer import clean_variant_name, parse_amount

logger = structlog.get_logger(__name__)

TRIM_LEVELS = ("Base", "Comfort", "Select", "Inclusive", "Sport", "Style", "Active", "Club")

TRANSMISSION_PATTERNS = {
    "CVT": re.compile(r"cvt|steglös|automat", re.IGNORECASE),
    "Manuell": re.compile(r"manuell|\d-växl", re.IGNORECASE),
    "4x4": re.compile(r"4x4|allgrip|fyrhjuls", re.IGNORECASE),
}

_TRIM_LINE = re.compile(r"\b(" + "|".join(TRIM_LEVELS) + r")\b", re.IGNORECASE)
_PURCHASE_LINE = re.compile(r"cirkapris|rekommenderat\s*pris|kontantpris", re.IGNORECASE)
_LEASING_LINE = re.compile(r"privatleas", re.IGNORECASE)
_LOAN_LINE = re.compile(r"billån|lån", re.IGNORECASE)
_PRIVATE = re.compile(r"privat", re.IGNORECASE)
_AMOUNT_IN_LINE = re.compile(r"\d{1,3}(?:[  .]\d{3})+(?!\d)|\d{4,}")

GENERIC_PRICE_PATTERNS = (
    re.compile(r"(\d{2,3}[\s.]?\d{3})\s*(?:kr|:-|SEK)", re.IGNORECASE),
    re.compile(r"pris[:\s]*(\d{2,3}[\s.]?\d{3})", re.IGNORECASE),
    re.compile(r"från\s*(\d{2,3}[\s.]?\d{3})", re.IGNORECASE),
    re.compile(r"(\d{1,2}[\s.]?\d{3})\s*(?:kr|:-)\s*/\s*mån", re.IGNORECASE),
)

# Narrower than the normalizer's plausibility ranges
CAR_PRICE_RANGE = (100_000, 2_000_000)
LEASING_RANGE = (1_000, 20_000)
MAX_GENERIC_VARIANTS = 5


def _amounts(line: str) -> list[int]:
    return [
        amount
        for amount in (parse_amount(match) for match in _AMOUNT_IN_LINE.findall(line))
        if amount is not None
    ]


def _first_in_range(line: str, low: int, high: int) -> Optional[int]:
    for amount in _amounts(line):
        if low <= amount <= high:
            return amount
    return None


def parse_trim_price_list(text: str, model_name: str) -> list[Variant]:
    """
    Parse a price list organised by trim level.

    Variants without a purchase price are discarded.
    """
    lines = [line.strip() for line in text.splitlines() if line.strip()]
    variants: list[Variant] = []
    current: Optional[dict] = None

    def flush() -> None:
        if current and current.get("price"):
            variants.append(Variant(**current))

    for index, line in enumerate(lines):
        trim = _TRIM_LINE.search(line)
        if trim:
            flush()
            level = trim.group(1).capitalize()
            current = {"name": f"{model_name} {level}"}
            for transmission, pattern in TRANSMISSION_PATTERNS.items():
                if pattern.search(line):
                    current["transmission"] = transmission
                    current["name"] += f" {transmission}"

        if current is None:
            continue

        if _PURCHASE_LINE.search(line) and "price" not in current:
            price = _first_in_range(line, *CAR_PRICE_RANGE)
            if price is None and index + 1 < len(lines):
                price = _first_in_range(lines[index + 1], *CAR_PRICE_RANGE)
            if price is not None:
                current["price"] = price

        if _LEASING_LINE.search(line):
            leasing = _first_in_range(line, *LEASING_RANGE)
            if leasing is not None:
                current.setdefault("private_leasing", leasing)

        if _LOAN_LINE.search(line) and not _PRIVATE.search(line):
            loan = _first_in_range(line, *LEASING_RANGE)
            if loan is not None:
                current.setdefault("loan_price", loan)

    flush()

    for variant in variants:
        variant.name = clean_variant_name(variant.name)

    logger.info("Trim price list parsed", model_name=model_name, variant_count=len(variants))
    return variants


def parse_generic_price_list(text: str, model_name: str) -> list[Variant]:
    """Pair ascending purchase prices with ascending monthly amounts"""
    amounts: set[int] = set()
    for pattern in GENERIC_PRICE_PATTERNS:
        for match in pattern.finditer(text):
            amount = parse_amount(match.group(1))
            if amount is not None:
                amounts.add(amount)

    ordered = sorted(amounts)
    car_prices = [a for a in ordered if CAR_PRICE_RANGE[0] <= a <= CAR_PRICE_RANGE[1]]
    leasing = [a for a in ordered if LEASING_RANGE[0] <= a <= LEASING_RANGE[1]]

    variants = []
    for i, price in enumerate(car_prices[:MAX_GENERIC_VARIANTS]):
        variants.append(
            Variant(
                name=f"{model_name} Variant {i + 1}",
                price=price,
                private_leasing=leasing[i] if i < len(leasing) else None,
            )
        )

    logger.info("Generic price list parsed", model_name=model_name, variant_count=len(variants))
    return variants


def parse_price_list(text: str, model_name: str) -> list[Variant]:
    """Trim-level parsing first, generic price scan when it finds nothing"""
    variants = parse_trim_price_list(text, model_name)
    if variants:
        return variants
    return parse_generic_price_list(text, model_name)
