"""
Shared fixtures for the vehicle catalog test suite.
"""
import asyncio
import os
from decimal import Decimal
from typing import Optional

import pytest

from tests.fixtures.sample_data import SampleDataFactory
from vehicle_catalog.config.settings import (
    ApplicationSettings,
    ClaudeSettings,
    DocumentAISettings,
    MonitoringSettings,
    PipelineSettings,
    get_settings,
)
from vehicle_catalog.models.domain import RawDocument, TierOutput
from vehicle_catalog.services.providers.base import ExtractionProvider

ENV_PREFIXES = ("CLAUDE_", "ANTHROPIC_", "DOCUMENT_AI_", "PIPELINE_", "MONITORING_")


@pytest.fixture(autouse=True)
def isolated_environment(monkeypatch):
    """Keep developer credentials and overrides out of the tests"""
    for key in list(os.environ):
        if key.startswith(ENV_PREFIXES):
            monkeypatch.delenv(key, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


@pytest.fixture
def sample_data():
    return SampleDataFactory


@pytest.fixture
def app_settings():
    """Settings with no remote tier configured"""
    return ApplicationSettings(
        claude=ClaudeSettings(),
        document_ai=DocumentAISettings(),
        pipeline=PipelineSettings(max_concurrent_documents=2, tier_timeout_seconds=5),
        monitoring=MonitoringSettings(attempt_log_size=10),
    )


class FakeProvider(ExtractionProvider):
    """Scripted tier: returns ``output`` or raises ``error``"""

    def __init__(
        self,
        name: str,
        output: Optional[TierOutput] = None,
        error: Optional[Exception] = None,
        configured: bool = True,
        delay: float = 0.0,
        unit_cost: str = "0",
    ) -> None:
        self.name = name
        super().__init__()
        self.output = output
        self.error = error
        self.configured = configured
        self.delay = delay
        self.unit_cost_usd = Decimal(unit_cost)
        self.calls: list[RawDocument] = []

    def is_configured(self) -> bool:
        return self.configured

    async def extract(self, document: RawDocument) -> TierOutput:
        self.calls.append(document)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.output or TierOutput(provider=self.name)


@pytest.fixture
def fake_provider():
    return FakeProvider
