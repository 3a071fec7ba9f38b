"""
Unit tests for positional entity correlation
"""
import pytest

from tests.fixtures.sample_data import SampleDataFactory
from vehicle_catalog.models.domain import Entity, IssueKind
from vehicle_catalog.services.entity_correlator import EntityCorrelator

SOURCE_URL = "https://www.kia.se/prislista-ev3.pdf"


@pytest.fixture
def correlator():
    return EntityCorrelator()


def entity(type_, text, position=None, **kwargs):
    return Entity(type=type_, text=text, confidence=0.9, text_position=position, **kwargs)


class TestPositionalCorrelation:
    """Test assignment by text position"""

    def test_prices_assigned_to_preceding_anchor(self, correlator):
        entities = [
            entity("vehicleVariant", "Base", 10),
            entity("price", "389900", 15),
            entity("vehicleVariant", "Select", 40),
            entity("price", "459900", 45),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert [(v.name, v.price) for v in result.variants] == [("Base", 389900), ("Select", 459900)]
        assert result.issues == []
        assert result.low_confidence is False

    def test_input_order_does_not_matter(self, correlator):
        entities = [
            entity("price", "459900", 45),
            entity("vehicleVariant", "Select", 40),
            entity("price", "389900", 15),
            entity("vehicleVariant", "Base", 10),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert [(v.name, v.price) for v in result.variants] == [("Base", 389900), ("Select", 459900)]

    def test_sample_price_list(self, correlator):
        result = correlator.correlate(SampleDataFactory.positioned_entities(), SOURCE_URL)

        assert result.brand == "Peugeot"
        assert result.model_name == "208"
        active, allure = result.variants
        assert active.name == "Active PureTech 75"
        assert active.price == 219900
        assert active.private_leasing == 2495
        assert allure.name == "Allure PureTech 100 hk"
        assert allure.price == 249900
        assert allure.fuel_type == "Bensin"

    def test_entity_before_first_anchor_is_dropped(self, correlator):
        """Nothing is guessed for data in front of every anchor"""
        entities = [
            entity("price", "199900", 2),
            entity("vehicleVariant", "Base", 10),
            entity("price", "389900", 15),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].price == 389900
        assert [e.text for e in result.unassigned] == ["199900"]
        [issue] = result.issues
        assert issue.kind == IssueKind.CORRELATION_AMBIGUOUS
        assert issue.source_url == SOURCE_URL
        assert issue.details["text_position"] == 2

    def test_entity_without_position_is_dropped(self, correlator):
        entities = [
            entity("vehicleVariant", "Base", 10),
            entity("price", "389900"),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].price is None
        assert len(result.unassigned) == 1
        assert result.issues[0].kind == IssueKind.CORRELATION_AMBIGUOUS

    def test_recommended_price_preferred(self, correlator):
        entities = [
            entity("vehicleVariant", "GT-Line", 10),
            entity("price", "479 900 kr", 12),
            entity("recSalePrice", "469 900 kr", 20),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].price == 469900

    def test_first_value_wins_for_repeated_fields(self, correlator):
        entities = [
            entity("vehicleVariant", "Air", 10),
            entity("privateLeasing", "3 995 kr/mån", 12),
            entity("privateLeasing", "4 495 kr/mån", 18),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].private_leasing == 3995

    def test_specs_and_equipment(self, correlator):
        entities = [
            entity("vehicleVariant", "Air 58.3 kWh", 10),
            entity("electricalRange", "436 km", 12),
            entity("technicalData", "Acceleration 0-100: 7,9 s", 14),
            entity("technicalData", "ingen separator", 15),
            entity("equipment", "Värmepump", 16),
            entity("addOns", "Dragkrok", 17),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        variant = result.variants[0]
        assert variant.specs == {"Range": "436 km", "Acceleration 0-100": "7,9 s"}
        assert variant.equipment == ["Värmepump", "Dragkrok"]

    def test_unreadable_price_is_skipped(self, correlator):
        entities = [
            entity("vehicleVariant", "Base", 10),
            entity("price", "Kontakta handlare", 12),
            entity("price", "389 900 kr", 14),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].price == 389900

    def test_nested_properties_belong_to_their_anchor(self, correlator):
        entities = [
            entity(
                "vehicleVariant",
                "Base",
                10,
                properties=[Entity(type="price", text="389 900 kr")],
            ),
            entity("vehicleVariant", "Select", 40),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].price == 389900
        assert result.variants[1].price is None


class TestFallbacks:
    """Test degraded correlation modes"""

    def test_model_entities_used_when_no_variant_anchors(self, correlator):
        entities = [
            entity("Modell", "EV3", 0),
            entity("price", "389 900 kr", 5),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert [(v.name, v.price) for v in result.variants] == [("EV3", 389900)]

    def test_no_anchors_drops_everything(self, correlator):
        entities = [entity("price", "389 900 kr", 5), entity("fuelType", "El", 8)]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants == []
        assert len(result.unassigned) == 2
        assert all(i.kind == IssueKind.CORRELATION_AMBIGUOUS for i in result.issues)

    def test_index_alignment_without_positions(self, correlator):
        entities = [
            entity("vehicleVariant", "Base"),
            entity("vehicleVariant", "Select"),
            entity("price", "389 900 kr"),
            entity("price", "459 900 kr"),
            entity("price", "499 900 kr"),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.low_confidence is True
        assert [v.price for v in result.variants] == [389900, 459900]
        kinds = [issue.kind for issue in result.issues]
        assert IssueKind.LOW_CONFIDENCE_CORRELATION in kinds
        assert IssueKind.CORRELATION_AMBIGUOUS in kinds
        assert len(result.unassigned) == 1

    def test_unpositioned_anchors_use_index_alignment(self, correlator):
        """Positioned data alone cannot be owned by an anchor without a position"""
        entities = [
            entity("vehicleVariant", "Base"),
            entity("price", "389900", 15),
        ]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].price == 389900
        assert result.unassigned == []
        assert result.low_confidence is True
        assert [i.kind for i in result.issues] == [IssueKind.LOW_CONFIDENCE_CORRELATION]

    def test_empty_anchor_text_gets_numbered_name(self, correlator):
        entities = [entity("vehicleVariant", " ", 10), entity("price", "389 900 kr", 12)]

        result = correlator.correlate(entities, SOURCE_URL)

        assert result.variants[0].name == "Variant 1"

    def test_empty_input(self, correlator):
        result = correlator.correlate([], SOURCE_URL)
        assert result.variants == []
        assert result.issues == []
