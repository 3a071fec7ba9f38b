"""
Catalog sink for reconciled vehicles.

Persistence is an external concern; this module defines the contract the
pipeline writes through and an in-memory implementation used by the CLI and
tests. Upserts are keyed by the normalized brand:title key, so writing the
same run twice leaves the catalog unchanged.
"""
import asyncio
from abc import ABC, abstractmethod
from typing import Optional

import structlog
from pydantic import BaseModel

from vehicle_catalog.exceptions import PipelineError
from vehicle_catalog.models.domain import Vehicle
from vehicle_catalog.services.vehicle_reconciler import VehicleReconciler, vehicle_key

logger = structlog.get_logger(__name__)


class RepositoryError(PipelineError):
    """Catalog storage operation failed"""

    def __init__(self, message: str, original_error: Optional[Exception] = None):
        super().__init__(message, stage="persistence", original_exception=original_error)
        self.original_error = original_error


class UpsertResult(BaseModel):
    identifier: str
    created: bool
    variant_count: int

    @property
    def updated(self) -> bool:
        return not self.created


class CatalogRepository(ABC):
    """Write side of the vehicle catalog"""

    def __init__(self) -> None:
        self.logger = logger.bind(repository=self.__class__.__name__)

    @abstractmethod
    async def upsert_vehicle(self, vehicle: Vehicle) -> UpsertResult:
        """
        Insert a vehicle or merge it into the stored one with the same key.

        Raises:
            RepositoryError: If the storage operation fails
        """

    @abstractmethod
    async def get(self, identifier: str) -> Optional[Vehicle]:
        """Stored vehicle for a key, None when absent"""

    @abstractmethod
    async def list_all(self, limit: int = 100, offset: int = 0) -> list[Vehicle]:
        """Stored vehicles in insertion order"""

    async def upsert_many(self, vehicles: list[Vehicle]) -> list[UpsertResult]:
        results = [await self.upsert_vehicle(vehicle) for vehicle in vehicles]
        self.logger.info(
            "Vehicles upserted",
            total=len(results),
            created=sum(1 for r in results if r.created),
            updated=sum(1 for r in results if r.updated),
        )
        return results


class InMemoryCatalogRepository(CatalogRepository):
    """Dict-backed catalog; merges through VehicleReconciler.merge"""

    def __init__(self, reconciler: Optional[VehicleReconciler] = None) -> None:
        super().__init__()
        self.reconciler = reconciler or VehicleReconciler()
        self._vehicles: dict[str, Vehicle] = {}
        self._lock = asyncio.Lock()

    async def upsert_vehicle(self, vehicle: Vehicle) -> UpsertResult:
        identifier = vehicle_key(vehicle)
        async with self._lock:
            existing = self._vehicles.get(identifier)
            if existing is None:
                stored = vehicle.model_copy(
                    update={
                        "variants": self.reconciler.variant_reconciler.deduplicate(vehicle.variants)
                    }
                )
                created = True
            else:
                stored = self.reconciler.merge(existing, vehicle)
                created = False
            self._vehicles[identifier] = stored

        self.logger.debug("Vehicle stored", identifier=identifier, created=created)
        return UpsertResult(
            identifier=identifier, created=created, variant_count=len(stored.variants)
        )

    async def get(self, identifier: str) -> Optional[Vehicle]:
        return self._vehicles.get(identifier)

    async def list_all(self, limit: int = 100, offset: int = 0) -> list[Vehicle]:
        return list(self._vehicles.values())[offset : offset + limit]

    def __len__(self) -> int:
        return len(self._vehicles)
