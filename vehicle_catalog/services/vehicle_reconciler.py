"""
Vehicle-level matching and merge across scrape batches and documents.

Two vehicle candidates are the same model when their normalized brand:title
keys agree, or when the brand matches exactly and at least two significant
title words overlap. Anything else stays separate: listing one car twice is
recoverable downstream, merging two different cars is not.
"""
import re
from typing import Optional

import structlog

from vehicle_catalog.models.domain import Vehicle
from vehicle_catalog.services.variant_reconciler import VariantReconciler
from vehicle_catalog.utils.text_normalizer import collapse_whitespace, fold_accents

logger = structlog.get_logger(__name__)

DEFAULT_VARIANT_MERGE_THRESHOLD = 0.8
MIN_COMMON_TITLE_WORDS = 2

_SEPARATORS = re.compile(r"[-_/,]")
_MARKETING_NOISE = re.compile(
    r"(?<!\w)(nya|new|hybrid|e:hev|fullhybrid|privatleasing|fran|kr/man|kampanj|erbjudande)(?!\w)"
)
_YEAR = re.compile(r"\b(19|20)\d{2}\b")
_TRIM_NOISE = re.compile(r"\b(elegance|advance|sport|style|plus)\b")
_PUNCTUATION = re.compile(r"[^\w\s:]")

_GENERIC_THUMBNAIL = re.compile(r"generic|placeholder|no[-_]?image|default", re.IGNORECASE)


def normalize_brand(brand: Optional[str]) -> str:
    return collapse_whitespace(fold_accents((brand or "").lower()))


def normalize_title(title: str, brand: Optional[str] = None) -> str:
    """Title with marketing noise, years and trim words removed"""
    text = fold_accents(title.lower())
    text = _MARKETING_NOISE.sub(" ", text)
    text = _SEPARATORS.sub(" ", text)
    text = _YEAR.sub(" ", text)
    text = _TRIM_NOISE.sub(" ", text)
    text = _PUNCTUATION.sub(" ", text)

    brand_name = normalize_brand(brand)
    if brand_name:
        text = re.sub(rf"\b{re.escape(brand_name)}\b", " ", text)
    return collapse_whitespace(text)


def vehicle_key(vehicle: Vehicle) -> str:
    """Normalized brand:title key used for matching and idempotent upserts"""
    return f"{normalize_brand(vehicle.brand)}:{normalize_title(vehicle.title, vehicle.brand)}"


def significant_words(vehicle: Vehicle) -> set[str]:
    return {
        word
        for word in normalize_title(vehicle.title, vehicle.brand).split()
        if len(word) >= 2
    }


def same_vehicle(a: Vehicle, b: Vehicle) -> bool:
    """Key match, or exact brand match plus two shared significant words"""
    if vehicle_key(a) == vehicle_key(b):
        return True

    brand = normalize_brand(a.brand)
    if not brand or brand != normalize_brand(b.brand):
        return False

    common = significant_words(a) & significant_words(b)
    return len(common) >= MIN_COMMON_TITLE_WORDS


def _longer(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming:
        return existing
    if not existing:
        return incoming
    return incoming if len(incoming) > len(existing) else existing


def _is_generic_thumbnail(url: Optional[str]) -> bool:
    return not url or bool(_GENERIC_THUMBNAIL.search(url))


def _combine_text(existing: Optional[str], incoming: Optional[str]) -> Optional[str]:
    if not incoming:
        return existing
    if not existing:
        return incoming
    if incoming in existing:
        return existing
    if existing in incoming:
        return incoming
    return f"{existing}\n\n{incoming}"


class VehicleReconciler:
    """
    Merge vehicle candidates in input order.

    Variants of merged vehicles are deduplicated with the vehicle-level
    threshold (stricter than plain variant dedup).
    """

    def __init__(self, variant_reconciler: Optional[VariantReconciler] = None) -> None:
        self.variant_reconciler = variant_reconciler or VariantReconciler(
            threshold=DEFAULT_VARIANT_MERGE_THRESHOLD
        )
        self.logger = logger.bind(component="vehicle_reconciler")

    def same_vehicle(self, a: Vehicle, b: Vehicle) -> bool:
        return same_vehicle(a, b)

    def merge(self, existing: Vehicle, incoming: Vehicle) -> Vehicle:
        """Merge two candidates already judged to be the same vehicle"""
        thumbnail = existing.thumbnail
        if _is_generic_thumbnail(thumbnail) and not _is_generic_thumbnail(incoming.thumbnail):
            thumbnail = incoming.thumbnail
        elif not thumbnail:
            thumbnail = incoming.thumbnail

        return Vehicle(
            brand=_longer(existing.brand, incoming.brand) or "",
            title=_longer(existing.title, incoming.title),
            description=_longer(existing.description, incoming.description),
            thumbnail=thumbnail,
            body_type=existing.body_type or incoming.body_type,
            source_url=existing.source_url or incoming.source_url,
            free_text=_combine_text(existing.free_text, incoming.free_text),
            variants=self.variant_reconciler.deduplicate(
                existing.variants + incoming.variants
            ),
        )

    def reconcile(self, candidates: list[Vehicle]) -> list[Vehicle]:
        """
        Single left-to-right pass over the candidates.

        Each not-yet-absorbed vehicle absorbs every later candidate that
        matches the running merged record. Standalone vehicles still get
        their own variant list deduplicated.
        """
        absorbed: set[int] = set()
        result: list[Vehicle] = []

        for i, vehicle in enumerate(candidates):
            if i in absorbed:
                continue
            running = vehicle.model_copy(
                update={"variants": self.variant_reconciler.deduplicate(vehicle.variants)}
            )
            for j in range(i + 1, len(candidates)):
                if j in absorbed:
                    continue
                if same_vehicle(running, candidates[j]):
                    self.logger.debug(
                        "Merging vehicle candidates",
                        existing=running.title,
                        incoming=candidates[j].title,
                    )
                    running = self.merge(running, candidates[j])
                    absorbed.add(j)
            result.append(running)

        self.logger.info(
            "Vehicles reconciled",
            candidate_count=len(candidates),
            vehicle_count=len(result),
            variant_count=sum(len(v.variants) for v in result),
        )
        return result
