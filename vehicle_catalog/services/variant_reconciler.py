"""
Variant similarity scoring, merge and deduplication.

Two variant records denote the same trim when their normalized names agree
on power, transmission, trim level and fuel type and read alike as strings.
A bare variant and its higher-trim sibling sharing an engine never merge.
"""
import re
from typing import Optional

import structlog
from pydantic import BaseModel, ConfigDict

from vehicle_catalog.models.domain import PRICE_FIELDS, Variant
from vehicle_catalog.utils.text_normalizer import (
    TRIM_LEVEL_WORDS,
    collapse_whitespace,
    fold_accents,
    string_similarity,
)

logger = structlog.get_logger(__name__)

DEFAULT_THRESHOLD = 0.75

# Caps applied when trim tokens disagree
ONE_SIDED_TRIM_CAP = 0.4
DIFFERENT_TRIM_CAP = 0.3

# Score used when no typed component is comparable
NEUTRAL_COMPONENT_SCORE = 0.5

COMPONENT_WEIGHTS = {
    "power": 40,
    "transmission": 25,
    "trim": 20,
    "fuel": 20,
}
COMPONENT_BLEND = 0.6
EDIT_DISTANCE_BLEND = 0.4

_NOISE_PREFIX = re.compile(r"^(nya|new|edition)\s+")
_GEAR_COUNT = re.compile(r"\b\d+\s*-?\s*(steg|vaxl)\w*\b")
_MANUAL = re.compile(r"\b(manuell\w*|man|mt)\b")
_AUTOMATIC = re.compile(r"(?<![\w-])(automat\w*|aut|at|cvt|e-dct|edct|dct|steglos)\b")
_REPEATED_WORD = re.compile(r"\b(\w+)(\s+\1\b)+")
_HORSEPOWER = re.compile(r"(\d+)\s*(hk|hp|hastkrafter|hastar)\b")
_KILOWATT_HOURS = re.compile(r"(\d+)\s*kwh\b")
_KILOWATT = re.compile(r"(\d+)\s*kw\b")

_ENGINE = re.compile(r"\b(puretech|bluehdi|thp|tsi|tdi|ecoboost|boosterjet|elektrisk|e-\d+|\d\.\d)\b")
_POWER = re.compile(r"\b(\d+(?:hk|kw))\b")
_TRANSMISSION = re.compile(r"\b(manuell|automat)\b")
_TRIM = re.compile(r"\b(" + "|".join(TRIM_LEVEL_WORDS) + r")\b")
_FUEL = re.compile(
    r"\b(electric|elektrisk|el|bev|hybrid|phev|laddhybrid|plug-in|mildhybrid|diesel|bensin|petrol)\b"
)
_FUEL_SYNONYMS = {
    "electric": "el",
    "elektrisk": "el",
    "bev": "el",
    "phev": "laddhybrid",
    "plug-in": "laddhybrid",
    "petrol": "bensin",
}


class VariantComponents(BaseModel):
    """Typed tokens read from a normalized variant name"""

    engine: Optional[str] = None
    power: Optional[str] = None
    transmission: Optional[str] = None
    trims: frozenset[str] = frozenset()
    fuel: Optional[str] = None

    model_config = ConfigDict(frozen=True)


def normalize_variant_name(name: str) -> str:
    """
    Canonical comparison form of a variant name.

    "Nya PureTech 100 Hk Automat 8-steg" -> "puretech 100hk automat"
    """
    text = fold_accents(name.lower())
    text = collapse_whitespace(text)
    text = _NOISE_PREFIX.sub("", text)
    text = _GEAR_COUNT.sub(" ", text)
    text = _MANUAL.sub("manuell", text)
    text = _AUTOMATIC.sub("automat", text)
    text = _HORSEPOWER.sub(r"\1hk", text)
    text = _KILOWATT_HOURS.sub(r"\1kwh", text)
    text = _KILOWATT.sub(r"\1kw", text)
    text = _REPEATED_WORD.sub(r"\1", text)
    return collapse_whitespace(text)


def _normalize_fuel(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = _FUEL.search(fold_accents(value.lower()))
    if not match:
        return None
    token = match.group(1)
    return _FUEL_SYNONYMS.get(token, token)


def _normalize_transmission(value: Optional[str]) -> Optional[str]:
    if not value:
        return None
    match = _TRANSMISSION.search(normalize_variant_name(value))
    return match.group(1) if match else None


def extract_components(variant: Variant) -> VariantComponents:
    """
    Read typed components from the variant name.

    Fuel type and transmission fall back to the record's own fields when
    the name does not carry them.
    """
    normalized = normalize_variant_name(variant.name)

    engine = _ENGINE.search(normalized)
    power = _POWER.search(normalized)
    transmission = _TRANSMISSION.search(normalized)
    fuel = _FUEL.search(normalized)

    return VariantComponents(
        engine=engine.group(1) if engine else None,
        power=power.group(1) if power else None,
        transmission=(
            transmission.group(1)
            if transmission
            else _normalize_transmission(variant.transmission)
        ),
        trims=frozenset(_TRIM.findall(normalized)),
        fuel=(
            _FUEL_SYNONYMS.get(fuel.group(1), fuel.group(1))
            if fuel
            else _normalize_fuel(variant.fuel_type)
        ),
    )


def _component_score(a: VariantComponents, b: VariantComponents) -> float:
    """
    Weighted agreement over the components both sides carry.

    A component missing on either side is left out and the remaining
    weights are re-normalized; with nothing comparable the score is neutral.
    """
    pairs = {
        "power": (a.power, b.power),
        "transmission": (a.transmission, b.transmission),
        "trim": (a.trims or None, b.trims or None),
        "fuel": (a.fuel, b.fuel),
    }

    applicable = 0
    matched = 0
    for component, (left, right) in pairs.items():
        if left is None or right is None:
            continue
        weight = COMPONENT_WEIGHTS[component]
        applicable += weight
        if left == right:
            matched += weight

    if applicable == 0:
        return NEUTRAL_COMPONENT_SCORE
    return matched / applicable


def similarity(a: Variant, b: Variant) -> float:
    """Symmetric similarity of two variants in [0, 1]"""
    name_a = normalize_variant_name(a.name)
    name_b = normalize_variant_name(b.name)
    if name_a == name_b:
        return 1.0

    components_a = extract_components(a)
    components_b = extract_components(b)

    score = (
        _component_score(components_a, components_b) * COMPONENT_BLEND
        + string_similarity(name_a, name_b) * EDIT_DISTANCE_BLEND
    )

    if bool(components_a.trims) != bool(components_b.trims):
        return min(score, ONE_SIDED_TRIM_CAP)
    if components_a.trims and components_a.trims != components_b.trims:
        return min(score, DIFFERENT_TRIM_CAP)
    return score


def _longer(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming:
        return existing
    if not existing:
        return incoming
    return incoming if len(incoming) > len(existing) else existing


def merge(existing: Variant, incoming: Variant) -> Variant:
    """
    Merge two records of the same trim.

    The longer name wins (ties keep the existing one); known prices from the
    incoming record replace existing ones; text fields and spec entries are
    only filled where missing; equipment is unioned.
    """
    merged = {
        "name": _longer(existing.name, incoming.name),
        "fuel_type": existing.fuel_type or incoming.fuel_type,
        "transmission": existing.transmission or incoming.transmission,
        "thumbnail": existing.thumbnail or incoming.thumbnail,
        "specs": {**incoming.specs, **existing.specs},
        "equipment": existing.equipment + incoming.equipment,
    }
    for field in PRICE_FIELDS:
        incoming_value = getattr(incoming, field)
        merged[field] = (
            incoming_value if incoming_value is not None else getattr(existing, field)
        )

    return Variant(**merged)


def deduplicate(
    variants: list[Variant],
    threshold: float = DEFAULT_THRESHOLD,
    iterative: bool = False,
) -> list[Variant]:
    """
    Collapse variants denoting the same trim, keeping input order.

    Single left-to-right pass: every not-yet-absorbed variant absorbs each
    later variant whose similarity to the running merged record reaches the
    threshold. With ``iterative`` the pass is repeated until nothing merges.
    """
    result = _single_pass(variants, threshold)
    while iterative and len(result) < len(variants):
        variants = result
        result = _single_pass(variants, threshold)

    if len(result) < len(variants):
        logger.debug(
            "Variants deduplicated",
            input_count=len(variants),
            output_count=len(result),
            threshold=threshold,
        )
    return result


def _single_pass(variants: list[Variant], threshold: float) -> list[Variant]:
    absorbed: set[int] = set()
    result: list[Variant] = []

    for i, variant in enumerate(variants):
        if i in absorbed:
            continue
        running = variant
        for j in range(i + 1, len(variants)):
            if j in absorbed:
                continue
            if similarity(running, variants[j]) >= threshold:
                running = merge(running, variants[j])
                absorbed.add(j)
        result.append(running)

    return result


class VariantReconciler:
    """Threshold-bound facade used by the vehicle reconciler and pipeline"""

    def __init__(self, threshold: float = DEFAULT_THRESHOLD, iterative: bool = False) -> None:
        self.threshold = threshold
        self.iterative = iterative

    def similarity(self, a: Variant, b: Variant) -> float:
        return similarity(a, b)

    def is_same_trim(self, a: Variant, b: Variant) -> bool:
        return similarity(a, b) >= self.threshold

    def merge(self, existing: Variant, incoming: Variant) -> Variant:
        return merge(existing, incoming)

    def deduplicate(self, variants: list[Variant]) -> list[Variant]:
        return deduplicate(variants, self.threshold, self.iterative)
