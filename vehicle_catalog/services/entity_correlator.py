"""
Positional correlation of flat OCR entity lists into variant records.

The custom extractor returns entities (variant names, prices, fuel types, ...)
without grouping them by variant. Each data entity belongs to the last
variant-name anchor at or before its text position. Entities in front of
every anchor are dropped and reported, never guessed.
"""
from bisect import bisect_right
from typing import Callable, Optional

import structlog

from vehicle_catalog.exceptions import CorrelationAmbiguous
from vehicle_catalog.models.domain import (
    CorrelationResult,
    Entity,
    Issue,
    IssueKind,
    Variant,
)
from vehicle_catalog.utils.text_normalizer import (
    clean_text,
    clean_variant_name,
    parse_swedish_price,
)

logger = structlog.get_logger(__name__)

ANCHOR_TYPES = frozenset({"vehicleVariant", "variant-name", "variantName"})
FALLBACK_ANCHOR_TYPES = frozenset({"Modell", "model"})
BRAND_TYPES = frozenset({"Brand", "brand"})

# Recommended sale price is preferred over a plain price cell
PRICE_PRIORITY = {"recSalePrice": 0, "price": 1}

# Entity type -> spec key
SPEC_TYPES = {
    "Motor": "Motor",
    "horsePower": "Horsepower",
    "batterySize": "Battery",
    "electricalRange": "Range",
    "range": "Range",
    "maxSpeed": "MaxSpeed",
    "fuelConsumption": "FuelConsumption",
    "energyConsumtion": "EnergyConsumption",
    "kwhConsumption": "EnergyConsumption",
    "CO2Emission": "CO2",
    "yearTax": "YearTax",
}

EQUIPMENT_TYPES = frozenset({"equipment", "addOns"})


def _purchase_price(text: str) -> Optional[int]:
    return parse_swedish_price(text, monthly=False)


def _monthly_price(text: str) -> Optional[int]:
    return parse_swedish_price(text, monthly=True)


# Entity type -> (variant field, value parser)
FIELD_TYPES: dict[str, tuple[str, Callable[[str], Optional[object]]]] = {
    "recSalePrice": ("price", _purchase_price),
    "price": ("price", _purchase_price),
    "oldPrice": ("old_price", _purchase_price),
    "privateLeasing": ("private_leasing", _monthly_price),
    "companyLeasing": ("company_leasing", _monthly_price),
    "CarLoan": ("loan_price", _monthly_price),
    "loanPrice": ("loan_price", _monthly_price),
    "fuelType": ("fuel_type", clean_text),
    "Gearbox": ("transmission", clean_text),
    "transmission": ("transmission", clean_text),
}


def is_assignable(entity: Entity) -> bool:
    return (
        entity.type in FIELD_TYPES
        or entity.type in SPEC_TYPES
        or entity.type in EQUIPMENT_TYPES
        or entity.type == "technicalData"
    )


class _VariantBuilder:
    """Accumulates one anchor's fields; first assignment wins"""

    def __init__(self, anchor: Entity, fallback_name: str) -> None:
        self.anchor = anchor
        self.name = clean_variant_name(anchor.text) or fallback_name
        self.fields: dict[str, object] = {}
        self.specs: dict[str, str] = {}
        self.equipment: list[str] = []

    def assign(self, entity: Entity) -> bool:
        """Apply one entity; False when its value could not be read"""
        text = entity.text.strip()
        if not text:
            return False

        if entity.type in EQUIPMENT_TYPES:
            self.equipment.append(text)
            return True

        if entity.type in SPEC_TYPES:
            self.specs.setdefault(SPEC_TYPES[entity.type], text)
            return True

        if entity.type == "technicalData":
            key, separator, value = text.partition(":")
            if separator and key.strip() and value.strip():
                self.specs.setdefault(key.strip(), value.strip())
                return True
            return False

        field, parse = FIELD_TYPES[entity.type]
        value = parse(text)
        if value is None:
            return False
        self.fields.setdefault(field, value)
        return True

    def build(self) -> Variant:
        return Variant(
            name=self.name,
            specs=self.specs,
            equipment=self.equipment,
            **self.fields,
        )


def _assignment_order(entities: list[Entity]) -> list[Entity]:
    """recSalePrice before price, otherwise document order"""
    return sorted(
        entities,
        key=lambda e: (
            PRICE_PRIORITY.get(e.type, 2),
            e.text_position if e.text_position is not None else 0,
        ),
    )


class EntityCorrelator:
    """Rebuild per-variant records from a flat entity list"""

    def __init__(self) -> None:
        self.logger = logger.bind(component="entity_correlator")

    def correlate(
        self, entities: list[Entity], source_url: Optional[str] = None
    ) -> CorrelationResult:
        """
        Group entities under their owning variant anchor.

        Args:
            entities: Flat list from the structured OCR extractor
            source_url: Used for issue provenance

        Returns:
            Variants in document order, vehicle-level brand/model when found,
            the dropped entities, and issues describing them
        """
        brand = self._first_text(entities, BRAND_TYPES)
        model_name = self._first_text(entities, FALLBACK_ANCHOR_TYPES)

        anchors = [e for e in entities if e.type in ANCHOR_TYPES]
        anchor_types = ANCHOR_TYPES
        if not anchors:
            anchors = [e for e in entities if e.type in FALLBACK_ANCHOR_TYPES]
            anchor_types = FALLBACK_ANCHOR_TYPES
            if anchors:
                self.logger.info(
                    "No variant anchors, using model entities as anchors",
                    anchor_count=len(anchors),
                )

        data_entities = [
            e for e in entities if e.type not in anchor_types and is_assignable(e)
        ]

        if not anchors:
            result = CorrelationResult(brand=brand, model_name=model_name)
            self._drop_all(result, data_entities, "no variant anchors in document", source_url)
            return result

        # Positions only help when there is a positioned anchor to own them
        if any(a.has_position for a in anchors):
            result = self._correlate_by_position(anchors, data_entities, source_url)
        else:
            result = self._correlate_by_index(anchors, data_entities, source_url)

        result.brand = brand
        result.model_name = model_name

        self.logger.info(
            "Entities correlated",
            variant_count=len(result.variants),
            unassigned_count=len(result.unassigned),
            low_confidence=result.low_confidence,
        )
        return result

    def _correlate_by_position(
        self,
        anchors: list[Entity],
        data_entities: list[Entity],
        source_url: Optional[str],
    ) -> CorrelationResult:
        positioned = sorted(
            (a for a in anchors if a.has_position),
            key=lambda a: (a.text_position, a.page_index or 0),
        )
        # Anchors without a position cannot own anything but still name a variant
        unpositioned = [a for a in anchors if not a.has_position]
        ordered_anchors = positioned + unpositioned
        builders = self._builders(ordered_anchors)
        positions = [a.text_position for a in positioned]

        result = CorrelationResult()
        owned: dict[int, list[Entity]] = {}

        for index, anchor in enumerate(ordered_anchors):
            if anchor.properties:
                owned.setdefault(index, []).extend(anchor.properties)

        for entity in data_entities:
            if not entity.has_position:
                self._drop(result, entity, "entity has no text position", source_url)
                continue
            owner = bisect_right(positions, entity.text_position) - 1
            if owner < 0:
                self._drop(result, entity, "no owning variant anchor", source_url)
                continue
            owned.setdefault(owner, []).append(entity)

        for index, group in owned.items():
            for entity in _assignment_order(group):
                if is_assignable(entity) and not builders[index].assign(entity):
                    self.logger.debug(
                        "Unreadable entity value skipped",
                        entity_type=entity.type,
                        text=entity.text,
                    )

        result.variants = [builder.build() for builder in builders]
        return result

    def _correlate_by_index(
        self,
        anchors: list[Entity],
        data_entities: list[Entity],
        source_url: Optional[str],
    ) -> CorrelationResult:
        """Zip same-typed entity lists against anchors in document order"""
        builders = self._builders(anchors)
        result = CorrelationResult(low_confidence=True)

        for index, anchor in enumerate(anchors):
            for entity in anchor.properties:
                if is_assignable(entity):
                    builders[index].assign(entity)

        by_type: dict[str, list[Entity]] = {}
        for entity in data_entities:
            by_type.setdefault(entity.type, []).append(entity)

        for entity_type, group in by_type.items():
            if len(builders) == 1:
                for entity in group:
                    builders[0].assign(entity)
                continue
            for position, entity in enumerate(group):
                if position < len(builders):
                    builders[position].assign(entity)
                else:
                    self._drop(result, entity, "more values than variant anchors", source_url)

        result.variants = [builder.build() for builder in builders]
        result.issues.append(
            Issue(
                kind=IssueKind.LOW_CONFIDENCE_CORRELATION,
                message="Variant anchors carried no position data; assigned by index",
                source_url=source_url,
                details={"variant_count": len(builders)},
            )
        )
        self.logger.warning(
            "Falling back to index-aligned correlation", anchor_count=len(anchors)
        )
        return result

    @staticmethod
    def _builders(anchors: list[Entity]) -> list[_VariantBuilder]:
        return [
            _VariantBuilder(anchor, fallback_name=f"Variant {index + 1}")
            for index, anchor in enumerate(anchors)
        ]

    @staticmethod
    def _first_text(entities: list[Entity], types: frozenset) -> Optional[str]:
        for entity in entities:
            if entity.type in types and entity.text.strip():
                return clean_text(entity.text)
        return None

    def _drop(
        self,
        result: CorrelationResult,
        entity: Entity,
        reason: str,
        source_url: Optional[str],
    ) -> None:
        error = CorrelationAmbiguous(entity, reason)
        self.logger.warning("Entity dropped", **error.details)
        result.unassigned.append(entity)
        result.issues.append(
            Issue(
                kind=IssueKind.CORRELATION_AMBIGUOUS,
                message=error.message,
                source_url=source_url,
                details=error.details,
            )
        )

    def _drop_all(
        self,
        result: CorrelationResult,
        entities: list[Entity],
        reason: str,
        source_url: Optional[str],
    ) -> None:
        for entity in entities:
            self._drop(result, entity, reason, source_url)
