"""
Unit tests for variant similarity, merge and deduplication
"""
import pytest

from tests.fixtures.sample_data import SampleDataFactory
from vehicle_catalog.models.domain import Variant
from vehicle_catalog.services.variant_reconciler import (
    VariantReconciler,
    deduplicate,
    extract_components,
    merge,
    normalize_variant_name,
    similarity,
)


class TestNormalizeVariantName:
    """Test canonical comparison form"""

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("Nya PureTech 100 Hk Automat 8-steg", "puretech 100hk automat"),
            ("GT 130 hästkrafter EAT8", "gt 130hk eat8"),
            ("Allure 1.2 man", "allure 1.2 manuell"),
            ("e-208 GT 156 hk", "e-208 gt 156hk"),
            ("Style  Style PureTech", "style puretech"),
            ("Hybrid 136 e-DCS6 aut", "hybrid 136 e-dcs6 automat"),
        ],
    )
    def test_normalization(self, name, expected):
        assert normalize_variant_name(name) == expected


class TestExtractComponents:
    """Test typed component extraction"""

    def test_components_from_name(self):
        components = extract_components(Variant(name="GT PureTech 130 hk Automat Bensin"))
        assert components.engine == "puretech"
        assert components.power == "130hk"
        assert components.transmission == "automat"
        assert components.trims == frozenset({"gt"})
        assert components.fuel == "bensin"

    def test_fields_fill_missing_components(self):
        components = extract_components(
            Variant(name="Allure 100 hk", fuel_type="Electric", transmission="Automatic")
        )
        assert components.fuel == "el"
        assert components.transmission == "automat"


class TestSimilarity:
    """Test similarity scoring"""

    def test_identical_normalized_names(self):
        a = Variant(name="PureTech 100 hk Manuell")
        b = Variant(name="puretech 100hk  manuell")
        assert similarity(a, b) == 1.0

    def test_bare_variant_never_matches_trim_sibling(self):
        """A variant without trim words stays apart from its GS sibling"""
        bare = Variant(name="PureTech 100 hk Manuell")
        gs = Variant(name="GS PureTech 100 hk Manuell")
        assert similarity(bare, gs) < 0.5

    def test_different_trims_capped(self):
        active = Variant(name="Active PureTech 100 hk")
        allure = Variant(name="Allure PureTech 100 hk")
        assert similarity(active, allure) <= 0.3

    def test_same_trim_with_extra_detail_matches(self):
        short = Variant(name="Style PureTech", price=269900)
        long = Variant(name="Style PureTech 100 hk", private_leasing=2699)
        assert similarity(short, long) >= 0.8

    def test_power_mismatch_scores_low(self):
        a = Variant(name="Allure PureTech 100 hk")
        b = Variant(name="Allure PureTech 130 hk")
        assert similarity(a, b) < 0.75

    def test_symmetric(self):
        for a in SampleDataFactory.peugeot_208_variants():
            for b in SampleDataFactory.peugeot_208_variants():
                assert similarity(a, b) == similarity(b, a)

    def test_bounded(self):
        variants = SampleDataFactory.peugeot_208_variants()
        for a in variants:
            for b in variants:
                assert 0.0 <= similarity(a, b) <= 1.0


class TestMerge:
    """Test merge rules"""

    def test_prices_from_both_sides_are_kept(self):
        merged = merge(
            Variant(name="Style PureTech", price=269900),
            Variant(name="Style PureTech 100 hk", private_leasing=2699),
        )
        assert merged.name == "Style PureTech 100 hk"
        assert merged.price == 269900
        assert merged.private_leasing == 2699

    def test_known_incoming_price_replaces_existing(self):
        merged = merge(Variant(name="GT", price=289900), Variant(name="GT", price=279900))
        assert merged.price == 279900

    def test_unknown_incoming_price_keeps_existing(self):
        merged = merge(Variant(name="GT", price=289900), Variant(name="GT"))
        assert merged.price == 289900

    def test_text_fields_only_filled(self):
        merged = merge(
            Variant(name="GT", fuel_type="Bensin", specs={"Motor": "1.2"}),
            Variant(name="GT", fuel_type="El", transmission="Automat", specs={"Motor": "1.5", "Range": "400 km"}),
        )
        assert merged.fuel_type == "Bensin"
        assert merged.transmission == "Automat"
        assert merged.specs == {"Motor": "1.2", "Range": "400 km"}

    def test_equipment_is_unioned(self):
        merged = merge(
            Variant(name="GT", equipment=["LED", "Navigation"]),
            Variant(name="GT", equipment=["navigation", "Backkamera"]),
        )
        assert merged.equipment == ["LED", "Navigation", "Backkamera"]

    def test_name_tie_keeps_existing(self):
        merged = merge(Variant(name="GT Line"), Variant(name="GT-Line"))
        assert merged.name == "GT Line"

    @pytest.mark.parametrize(
        "existing,incoming",
        [
            (
                Variant(name="Style PureTech", price=269900),
                Variant(name="Style PureTech 100 hk", private_leasing=2699),
            ),
            (
                Variant(name="GT", price=289900, equipment=["LED", "Navigation"]),
                Variant(name="GT", price=279900, equipment=["navigation", "Backkamera"]),
            ),
            (
                Variant(name="GT", fuel_type="Bensin", specs={"Motor": "1.2"}),
                Variant(name="GT", fuel_type="El", transmission="Automat", specs={"Motor": "1.5", "Range": "400 km"}),
            ),
            (Variant(name="GT Line"), Variant(name="GT-Line", thumbnail="https://www.peugeot.se/gt.jpg")),
            (
                SampleDataFactory.peugeot_208_variants()[0],
                Variant(name="Active PureTech 75", old_price=229900, loan_price=1995),
            ),
        ],
    )
    def test_merging_again_changes_nothing(self, existing, incoming):
        merged = merge(existing, incoming)
        assert merge(existing, merged) == merged


class TestDeduplicate:
    """Test clustering"""

    def test_merges_matching_variants_in_order(self):
        variants = [
            Variant(name="Style PureTech", price=269900),
            Variant(name="Active PureTech 75", price=219900),
            Variant(name="Style PureTech 100 hk", private_leasing=2699),
        ]

        result = deduplicate(variants, threshold=0.8)

        assert [v.name for v in result] == ["Style PureTech 100 hk", "Active PureTech 75"]
        assert result[0].price == 269900
        assert result[0].private_leasing == 2699

    def test_distinct_trims_survive(self):
        variants = SampleDataFactory.peugeot_208_variants()
        assert len(deduplicate(variants)) == len(variants)

    def test_idempotent(self):
        variants = SampleDataFactory.peugeot_208_variants() + [
            Variant(name="Allure PureTech 100hk", loan_price=2195)
        ]
        once = deduplicate(variants)
        assert deduplicate(once) == once

    def test_exact_duplicates_collapse(self):
        variant = Variant(name="GT PureTech 130 hk automat", price=289900)
        assert deduplicate([variant, variant, variant]) == [variant]

    def test_empty(self):
        assert deduplicate([]) == []

    def test_iterative_mode_never_yields_more_variants(self):
        variants = SampleDataFactory.peugeot_208_variants() * 2
        single = deduplicate(variants)
        iterative = deduplicate(variants, iterative=True)
        assert len(iterative) <= len(single)


class TestVariantReconciler:
    """Test the threshold-bound facade"""

    def test_is_same_trim_uses_threshold(self):
        short = Variant(name="Style PureTech")
        long = Variant(name="Style PureTech 100 hk")
        assert VariantReconciler(threshold=0.8).is_same_trim(short, long) is True
        assert VariantReconciler(threshold=0.95).is_same_trim(short, long) is False

    def test_deduplicate_respects_threshold(self):
        variants = [Variant(name="Style PureTech"), Variant(name="Style PureTech 100 hk")]
        assert len(VariantReconciler(threshold=0.8).deduplicate(variants)) == 1
        assert len(VariantReconciler(threshold=0.95).deduplicate(variants)) == 2
