"""
Service facade: the five operations a front end needs.

Wires settings, provider, store, importer and analytics together. The
provider is chosen once, at construction time.
"""

import logging
import threading
from typing import List, Optional

from pipeline.analytics.engine import (
    AnalyticsEngine,
    CityLatestMeasurements,
    CountryAverages,
    PollutionReport,
)
from pipeline.config import PROVIDER_FIXTURE, Settings
from pipeline.ingestion.fixture_provider import FixtureProvider
from pipeline.ingestion.openaq_connector import OpenAQConnector
from pipeline.ingestion.provider import DataProvider
from pipeline.orchestration.importer import ImportReport, Importer
from store.repository import MeasurementStore

logger = logging.getLogger(__name__)


def build_provider(settings: Settings) -> DataProvider:
    if settings.provider == PROVIDER_FIXTURE:
        return FixtureProvider()
    return OpenAQConnector(
        api_key=settings.api_key,
        base_url=settings.api_base_url,
        timeout=settings.request_timeout,
    )


class AirQualityService:
    def __init__(self, settings: Settings, provider: DataProvider, store: MeasurementStore):
        self.settings = settings
        self.provider = provider
        self.store = store
        self.importer = Importer(provider, store, settings)
        self.analytics = AnalyticsEngine(store, settings)

    @classmethod
    def from_settings(cls, settings: Optional[Settings] = None) -> "AirQualityService":
        """
        Build the service from validated settings.

        Raises:
            ConfigurationError: for invalid settings or database URL.
        """
        settings = (settings or Settings.from_env()).validate()
        store = MeasurementStore.from_url(
            settings.database_url, pool_size=max(settings.max_workers, 5)
        )
        provider = build_provider(settings)
        logger.info(
            "Service ready: provider=%s countries=%s",
            settings.provider, ",".join(settings.countries),
        )
        return cls(settings, provider, store)

    def init_schema(self) -> None:
        self.store.init_schema()

    def import_data(
        self, day_count: int, cancel_event: Optional[threading.Event] = None
    ) -> ImportReport:
        return self.importer.run(day_count, cancel_event=cancel_event)

    def most_polluted(self) -> PollutionReport:
        return self.analytics.most_polluted()

    def average(self, country_code: str, day_count: Optional[int] = None) -> CountryAverages:
        return self.analytics.average(country_code, day_count)

    def measurements_by_city(self, country_code: str) -> List[CityLatestMeasurements]:
        return self.analytics.measurements_by_city(country_code)

    def close(self) -> None:
        self.provider.close()
        self.store.engine.dispose()
