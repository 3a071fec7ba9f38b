"""
Unit tests for vehicle-level matching and merge
"""
import pytest

from tests.fixtures.sample_data import SampleDataFactory
from vehicle_catalog.models.domain import Variant, Vehicle
from vehicle_catalog.services.variant_reconciler import VariantReconciler
from vehicle_catalog.services.vehicle_reconciler import (
    VehicleReconciler,
    normalize_title,
    same_vehicle,
    vehicle_key,
)


class TestNormalization:
    """Test title and key normalization"""

    def test_marketing_noise_removed(self):
        assert normalize_title("Nya Peugeot 208 2025 - Privatleasing från 2 495 kr/mån", "Peugeot") == "208 2 495"

    def test_brand_removed_from_title(self):
        assert normalize_title("Kia EV3", "Kia") == "ev3"

    def test_key_ignores_case_and_accents(self):
        a = Vehicle(brand="Škoda", title="Nya Enyaq")
        b = Vehicle(brand="skoda", title="ENYAQ")
        assert vehicle_key(a) == vehicle_key(b) == "skoda:enyaq"


class TestSameVehicle:
    """Test the match rule"""

    def test_key_match(self):
        assert same_vehicle(
            Vehicle(brand="Peugeot", title="Peugeot 208"),
            Vehicle(brand="Peugeot", title="Nya 208"),
        )

    def test_two_shared_words_with_same_brand(self):
        assert same_vehicle(
            Vehicle(brand="Toyota", title="Corolla Touring Sports"),
            Vehicle(brand="Toyota", title="Corolla Touring Sports Hybrid Active"),
        )

    def test_one_shared_word_is_not_enough(self):
        assert not same_vehicle(
            Vehicle(brand="Peugeot", title="208"),
            Vehicle(brand="Peugeot", title="2008"),
        )

    def test_brand_mismatch(self):
        assert not same_vehicle(
            Vehicle(brand="Kia", title="EV3 GT Line"),
            Vehicle(brand="Hyundai", title="EV3 GT Line"),
        )

    def test_empty_brands_need_a_key_match(self):
        assert not same_vehicle(
            Vehicle(title="Corolla Touring Sports"),
            Vehicle(title="Corolla Touring Sports Kombi"),
        )


class TestVehicleReconciler:
    """Test merging of vehicle candidates"""

    def test_merge_keeps_longer_text_and_unions_variants(self):
        reconciler = VehicleReconciler()
        existing = Vehicle(
            brand="Peugeot",
            title="208",
            thumbnail="https://www.peugeot.se/generic-placeholder.jpg",
            free_text="Kampanj t.o.m. mars",
            variants=[Variant(name="Style PureTech", price=269900)],
        )
        incoming = Vehicle(
            brand="Peugeot",
            title="Peugeot 208",
            description="Kompakt småbil",
            thumbnail="https://www.peugeot.se/media/208.jpg",
            free_text="Fri service",
            variants=[
                Variant(name="Style PureTech 100 hk", private_leasing=2699),
                Variant(name="GT PureTech 130 hk", price=289900),
            ],
        )

        merged = reconciler.merge(existing, incoming)

        assert merged.title == "Peugeot 208"
        assert merged.description == "Kompakt småbil"
        assert merged.thumbnail == "https://www.peugeot.se/media/208.jpg"
        assert merged.free_text == "Kampanj t.o.m. mars\n\nFri service"
        assert [v.name for v in merged.variants] == ["Style PureTech 100 hk", "GT PureTech 130 hk"]
        assert merged.variants[0].price == 269900
        assert merged.variants[0].private_leasing == 2699

    @pytest.mark.parametrize(
        "existing,incoming",
        [
            (
                Vehicle(
                    brand="Peugeot",
                    title="208",
                    thumbnail="https://www.peugeot.se/generic-placeholder.jpg",
                    free_text="Kampanj t.o.m. mars",
                    variants=[Variant(name="Style PureTech", price=269900)],
                ),
                Vehicle(
                    brand="Peugeot",
                    title="Peugeot 208",
                    description="Kompakt småbil",
                    thumbnail="https://www.peugeot.se/media/208.jpg",
                    free_text="Fri service",
                    variants=[
                        Variant(name="Style PureTech 100 hk", private_leasing=2699),
                        Variant(name="GT PureTech 130 hk", price=289900),
                    ],
                ),
            ),
            (
                SampleDataFactory.peugeot_208(SampleDataFactory.peugeot_208_variants()[:2]),
                SampleDataFactory.peugeot_208(SampleDataFactory.peugeot_208_variants()[1:]),
            ),
            (
                Vehicle(brand="Kia", title="EV3", free_text="Fri service"),
                Vehicle(
                    title="Kia EV3",
                    thumbnail="https://www.kia.com/se/ev3.jpg",
                    body_type="SUV",
                    free_text="Kampanjränta 3,95 %",
                ),
            ),
        ],
    )
    def test_merging_again_changes_nothing(self, existing, incoming):
        reconciler = VehicleReconciler()
        merged = reconciler.merge(existing, incoming)
        assert reconciler.merge(existing, merged) == merged

    def test_reconcile_preserves_first_appearance_order(self):
        candidates = [
            SampleDataFactory.kia_ev3(),
            SampleDataFactory.peugeot_208(),
            Vehicle(brand="Kia", title="Kia EV3", variants=[Variant(name="EV3 Air 58.3 kWh", private_leasing=3995)]),
        ]

        vehicles = VehicleReconciler().reconcile(candidates)

        assert [v.title for v in vehicles] == ["Kia EV3", "Peugeot 208"]
        air = vehicles[0].variants[0]
        assert air.price == 389900
        assert air.private_leasing == 3995
        assert len(vehicles[0].variants) == 2

    def test_reconcile_deduplicates_standalone_variants(self):
        vehicle = SampleDataFactory.peugeot_208(
            variants=[
                Variant(name="Style PureTech", price=269900),
                Variant(name="Style PureTech 100 hk", private_leasing=2699),
            ]
        )
        [result] = VehicleReconciler().reconcile([vehicle])
        assert len(result.variants) == 1

    def test_stricter_threshold_keeps_variants_apart(self):
        reconciler = VehicleReconciler(VariantReconciler(threshold=0.95))
        vehicle = SampleDataFactory.peugeot_208(
            variants=[Variant(name="Style PureTech"), Variant(name="Style PureTech 100 hk")]
        )
        [result] = reconciler.reconcile([vehicle])
        assert len(result.variants) == 2

    def test_reconcile_is_idempotent(self):
        reconciler = VehicleReconciler()
        candidates = [SampleDataFactory.peugeot_208(), SampleDataFactory.suzuki_swift()]
        once = reconciler.reconcile(candidates)
        assert reconciler.reconcile(once) == once

    def test_empty_input(self):
        assert VehicleReconciler().reconcile([]) == []
