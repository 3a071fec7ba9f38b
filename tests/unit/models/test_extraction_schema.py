"""
Unit tests for LLM payload ingestion and alias normalization
"""
from tests.fixtures.sample_data import SampleDataFactory
from vehicle_catalog.models.domain import ContentType
from vehicle_catalog.models.extraction_schema import (
    CampaignPayload,
    VariantPayload,
    ingest_payload,
)


class TestVariantPayload:
    """Test alias mapping on variant entries"""

    def test_legacy_aliases_map_to_canonical_fields(self):
        payload = VariantPayload.model_validate(
            {
                "name": "Allure PureTech 130 hk",
                "pris": "319 900 kr",
                "privatleasing_price": "3 495 kr/mån",
                "company_leasing_price": 2795,
                "bransle": "Bensin",
                "vaxellada": "Automat",
            }
        )
        assert payload.price == 319900
        assert payload.private_leasing == 3495
        assert payload.company_leasing == 2795
        assert payload.fuel_type == "Bensin"
        assert payload.transmission == "Automat"

    def test_zero_means_unknown(self):
        """Test that a zero amount is never kept as a price"""
        payload = VariantPayload.model_validate({"name": "GT", "price": 0, "privatleasing": "0 kr"})
        assert payload.price is None
        assert payload.private_leasing is None

    def test_first_non_null_alias_wins(self):
        payload = VariantPayload.model_validate(
            {"name": "GT", "private_leasing": None, "privatleasing": 2999}
        )
        assert payload.private_leasing == 2999

    def test_financing_options_fill_missing_prices(self):
        payload = VariantPayload.model_validate(
            {
                "name": "GT",
                "financing_options": {
                    "privatleasing": [{"monthly_price": None}, {"monthly_price": "3 195 kr"}],
                    "loan": {"monthly_price": 2490},
                },
            }
        )
        assert payload.private_leasing == 3195
        assert payload.loan_price == 2490

    def test_equipment_from_string_and_dicts(self):
        from_string = VariantPayload.model_validate({"name": "GT", "utrustning": "LED, Navigation"})
        from_dicts = VariantPayload.model_validate(
            {"name": "GT", "equipment": [{"name": "LED"}, "Navigation", None]}
        )
        assert from_string.to_domain().equipment == ["LED", "Navigation"]
        assert from_dicts.to_domain().equipment == ["LED", "Navigation"]

    def test_non_scalar_specs_dropped(self):
        payload = VariantPayload.model_validate(
            {"name": "GT", "specs": {"Motor": "1.2 PureTech", "Mått": {"längd": 4055}}}
        )
        assert payload.specs == {"Motor": "1.2 PureTech"}


class TestIngestPayload:
    """Test envelope validation per content type"""

    def test_cars_payload(self):
        result = ingest_payload(
            SampleDataFactory.cars_payload(),
            ContentType.CARS,
            source_url="https://www.peugeot.se/2008",
        )

        assert result.rejected == []
        assert len(result.vehicles) == 1
        vehicle = result.vehicles[0]
        assert vehicle.title == "Peugeot 2008"
        assert vehicle.body_type == "SUV"
        assert vehicle.thumbnail == "https://www.peugeot.se/media/2008.jpg"
        assert vehicle.source_url == "https://www.peugeot.se/2008"

        allure, gt = vehicle.variants
        assert allure.price == 319900
        assert allure.private_leasing == 3495
        assert allure.loan_price == 2990
        assert allure.equipment == ["Backkamera", "Apple CarPlay"]
        assert gt.price == 369900
        assert gt.private_leasing is None

    def test_bare_list_and_single_object(self):
        as_list = ingest_payload([{"title": "EV3", "brand": "Kia"}], ContentType.CARS)
        as_object = ingest_payload({"title": "EV3", "brand": "Kia"}, ContentType.CARS)
        assert [v.title for v in as_list.vehicles] == ["EV3"]
        assert [v.title for v in as_object.vehicles] == ["EV3"]

    def test_variants_without_name_are_skipped(self):
        result = ingest_payload(
            {"cars": [{"title": "EV3", "vehicle_model": [{"price": 389900}, {"name": "Air"}]}]},
            ContentType.CARS,
        )
        assert [v.name for v in result.vehicles[0].variants] == ["Air"]

    def test_invalid_item_does_not_discard_siblings(self):
        """Test that one bad entry only drops itself"""
        result = ingest_payload(
            {"cars": [{"title": "EV3"}, {"description": "no title"}, {"title": "EV6"}]},
            ContentType.CARS,
        )
        assert [v.title for v in result.vehicles] == ["EV3", "EV6"]
        assert len(result.rejected) == 1
        assert result.rejected[0].startswith("item 1:")

    def test_transport_cars_root_key(self):
        result = ingest_payload(
            {"transport_cars": [{"title": "Partner", "brand": "Peugeot"}]},
            ContentType.TRANSPORT_CARS,
        )
        assert result.vehicles[0].title == "Partner"

    def test_unrecognized_shape_gives_nothing(self):
        result = ingest_payload("just text", ContentType.CARS)
        assert result.vehicles == []
        assert result.rejected == []


class TestCampaignPayload:
    """Test campaign specific fields"""

    def test_whats_included_is_appended_to_free_text(self):
        payload = CampaignPayload.model_validate(
            {
                "title": "Vinterkampanj",
                "content": "Gäller t.o.m. 31 januari",
                "whats_included": [{"name": "Vinterhjul"}, "Service 3 år"],
            }
        )
        vehicle = payload.to_domain()
        assert vehicle.free_text == "Gäller t.o.m. 31 januari\n\nVinterhjul, Service 3 år"

    def test_campaigns_envelope(self):
        result = ingest_payload(
            {"campaigns": [{"title": "Vinterkampanj", "vehicle_model": [{"name": "208 Active"}]}]},
            ContentType.CAMPAIGNS,
        )
        assert result.vehicles[0].variants[0].name == "208 Active"
