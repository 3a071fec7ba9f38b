"""
Unit tests for the in-memory catalog repository
"""
import pytest

from tests.fixtures.sample_data import SampleDataFactory
from vehicle_catalog.exceptions import PipelineError
from vehicle_catalog.repositories.catalog_repository import (
    InMemoryCatalogRepository,
    RepositoryError,
)


@pytest.fixture
def repository():
    return InMemoryCatalogRepository()


class TestInMemoryCatalogRepository:
    """Test upsert semantics"""

    @pytest.mark.asyncio
    async def test_create_then_update(self, repository):
        variants = SampleDataFactory.peugeot_208_variants()

        first = await repository.upsert_vehicle(SampleDataFactory.peugeot_208(variants[:2]))
        second = await repository.upsert_vehicle(SampleDataFactory.peugeot_208(variants[1:]))

        assert first.identifier == "peugeot:208"
        assert first.created is True
        assert first.variant_count == 2
        assert second.updated is True
        assert second.variant_count == 4
        assert len(repository) == 1

    @pytest.mark.asyncio
    async def test_upsert_is_idempotent(self, repository):
        vehicle = SampleDataFactory.peugeot_208()

        await repository.upsert_vehicle(vehicle)
        stored_once = await repository.get("peugeot:208")
        await repository.upsert_vehicle(vehicle)
        stored_twice = await repository.get("peugeot:208")

        assert stored_twice == stored_once
        assert len(stored_twice.variants) == 4

    @pytest.mark.asyncio
    async def test_new_vehicle_variants_are_deduplicated(self, repository):
        variants = SampleDataFactory.peugeot_208_variants()
        result = await repository.upsert_vehicle(SampleDataFactory.peugeot_208(variants + variants[:1]))
        assert result.variant_count == 4

    @pytest.mark.asyncio
    async def test_missing_key(self, repository):
        assert await repository.get("volvo:xc40") is None

    @pytest.mark.asyncio
    async def test_upsert_many_and_paging(self, repository):
        results = await repository.upsert_many(
            [
                SampleDataFactory.peugeot_208(),
                SampleDataFactory.suzuki_swift(),
                SampleDataFactory.kia_ev3(),
                SampleDataFactory.peugeot_208(),
            ]
        )

        assert [r.created for r in results] == [True, True, True, False]
        assert [v.title for v in await repository.list_all()] == ["Peugeot 208", "Swift", "EV3"]
        assert [v.title for v in await repository.list_all(limit=1, offset=1)] == ["Swift"]


class TestRepositoryError:
    """Test the storage error type"""

    def test_is_a_pipeline_error(self):
        cause = OSError("disk full")
        error = RepositoryError("Upsert failed", original_error=cause)

        assert isinstance(error, PipelineError)
        assert str(error) == "[PERSISTENCE] Upsert failed"
        assert error.to_dict()["original_exception"] == "disk full"
