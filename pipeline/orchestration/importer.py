"""
Import Orchestrator.

Per country, three stages run in order, each feeding the next:
  1. locations     — top-N locations, persisted insert-if-absent by id
  2. sensors       — sensors of every persisted location
  3. measurements  — daily aggregates of every persisted sensor over the
                     requested window, fetched by a bounded worker pool with
                     retry on transient errors

Entity-level failures become SkipRecords; a failed location fetch aborts
only that country. Configuration errors abort the whole run. Each write is
independently idempotent, so a cancelled or partial run leaves valid data.
"""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Tuple

from pipeline.config import Settings
from pipeline.errors import (
    CountryImportError,
    PermanentRemoteError,
    PersistenceError,
    RemoteError,
    RetryExhaustedError,
)
from pipeline.ingestion.provider import DataProvider, LocationRecord, SensorRecord
from pipeline.ingestion.validator import normalize_measurements, validate_day_count
from pipeline.orchestration.retry import RetryPolicy, call_with_retry
from store.repository import MeasurementStore

logger = logging.getLogger(__name__)

STAGE_LOCATIONS = "locations"
STAGE_SENSORS = "sensors"
STAGE_MEASUREMENTS = "measurements"


@dataclass
class SkipRecord:
    """One entity the import could not process, and why."""
    entity: str          # "location", "sensor" or "measurement"
    entity_id: str
    country: str
    stage: str
    reason: str

    def __str__(self) -> str:
        return f"{self.country} {self.entity} {self.entity_id} ({self.stage}): {self.reason}"


@dataclass
class StageCounts:
    inserted: int = 0
    duplicates: int = 0

    @property
    def persisted(self) -> int:
        return self.inserted + self.duplicates

    def record(self, inserted: bool):
        if inserted:
            self.inserted += 1
        else:
            self.duplicates += 1


@dataclass
class CountryReport:
    country: str
    locations: StageCounts = field(default_factory=StageCounts)
    sensors: StageCounts = field(default_factory=StageCounts)
    measurements: StageCounts = field(default_factory=StageCounts)
    rejected_measurements: int = 0
    skipped: List[SkipRecord] = field(default_factory=list)
    error: Optional[str] = None
    failed_stage: Optional[str] = None

    @property
    def status(self) -> str:
        if self.error:
            return "failed"
        if self.skipped:
            return "partial"
        return "ok"


@dataclass
class ImportReport:
    date_from: datetime
    date_to: datetime
    countries: Dict[str, CountryReport] = field(default_factory=dict)
    cancelled: bool = False

    def _total(self, stage: str) -> StageCounts:
        total = StageCounts()
        for report in self.countries.values():
            counts = getattr(report, stage)
            total.inserted += counts.inserted
            total.duplicates += counts.duplicates
        return total

    @property
    def locations(self) -> StageCounts:
        return self._total(STAGE_LOCATIONS)

    @property
    def sensors(self) -> StageCounts:
        return self._total(STAGE_SENSORS)

    @property
    def measurements(self) -> StageCounts:
        return self._total(STAGE_MEASUREMENTS)

    @property
    def skipped(self) -> List[SkipRecord]:
        return [s for report in self.countries.values() for s in report.skipped]

    @property
    def failed_countries(self) -> List[str]:
        return [code for code, report in self.countries.items() if report.error]


@dataclass
class _SensorOutcome:
    sensor_id: int
    counts: StageCounts = field(default_factory=StageCounts)
    rejected: int = 0
    skipped: List[SkipRecord] = field(default_factory=list)


class Importer:
    """Drives fetch → persist for every supported country."""

    def __init__(
        self,
        provider: DataProvider,
        store: MeasurementStore,
        settings: Settings,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.provider = provider
        self.store = store
        self.settings = settings
        self.retry_policy = RetryPolicy(
            attempts=settings.retry_attempts,
            delay=settings.retry_delay,
            backoff=settings.retry_backoff,
        )
        self._sleep = sleep

    def run(
        self,
        day_count: int,
        cancel_event: Optional[threading.Event] = None,
        now: Optional[datetime] = None,
    ) -> ImportReport:
        """
        Import the last `day_count` days for every supported country.

        Raises:
            ValidationError: if day_count is outside the configured range.
            ConfigurationError: if the provider rejects its credentials.
            PersistenceError: if the schema cannot be created.
        """
        validate_day_count(day_count, self.settings.min_import_days, self.settings.max_import_days)
        cancel_event = cancel_event or threading.Event()

        logger.info("Ensuring database schema exists before import")
        self.store.init_schema()
        self.provider.check_health()

        date_to = now or datetime.now(timezone.utc)
        date_from = date_to - timedelta(days=day_count)
        report = ImportReport(date_from=date_from, date_to=date_to)
        logger.info(
            "── Import starting — %d countries, %s → %s ──",
            len(self.settings.countries), date_from.date(), date_to.date(),
        )

        for country in self.settings.countries:
            if cancel_event.is_set():
                logger.warning("Import cancelled before %s", country)
                report.cancelled = True
                break
            try:
                report.countries[country] = self.import_country(
                    country, date_from, date_to, cancel_event
                )
            except CountryImportError as exc:
                logger.error("Import of %s failed: %s", country, exc)
                report.countries[country] = CountryReport(
                    country=country, error=str(exc.cause), failed_stage=exc.stage
                )

        if cancel_event.is_set():
            report.cancelled = True

        totals = report.measurements
        logger.info(
            "── Import complete — locations=%d sensors=%d measurements=%d "
            "(new=%d) skipped=%d failed_countries=%s ──",
            report.locations.persisted, report.sensors.persisted, totals.persisted,
            totals.inserted, len(report.skipped), report.failed_countries or "none",
        )
        return report

    def import_country(
        self,
        country: str,
        date_from: datetime,
        date_to: datetime,
        cancel_event: Optional[threading.Event] = None,
    ) -> CountryReport:
        """
        Run the three stages for one country.

        Raises:
            CountryImportError: if the location stage fails.
        """
        cancel_event = cancel_event or threading.Event()
        report = CountryReport(country=country)

        locations = self._import_locations(country, report)
        sensors = self._import_sensors(country, locations, report)
        self._import_measurements(country, sensors, date_from, date_to, report, cancel_event)

        logger.info(
            "%s done: locations=%d sensors=%d measurements=%d (new=%d, rejected=%d) skipped=%d",
            country, report.locations.persisted, report.sensors.persisted,
            report.measurements.persisted, report.measurements.inserted,
            report.rejected_measurements, len(report.skipped),
        )
        return report

    # ── Stage 1 ─────────────────────────────────────────────────────────────

    def _import_locations(self, country: str, report: CountryReport) -> List[LocationRecord]:
        try:
            fetched = self.provider.fetch_locations(country, self.settings.location_limit)
        except RemoteError as exc:
            raise CountryImportError(country, STAGE_LOCATIONS, exc) from exc

        persisted = []
        for location in fetched:
            try:
                report.locations.record(self.store.upsert_location(location))
                persisted.append(location)
            except PersistenceError as exc:
                report.skipped.append(SkipRecord(
                    "location", str(location.id), country, STAGE_LOCATIONS, str(exc)
                ))
        logger.info("%s: %d/%d locations persisted", country, len(persisted), len(fetched))
        return persisted

    # ── Stage 2 ─────────────────────────────────────────────────────────────

    def _import_sensors(
        self, country: str, locations: List[LocationRecord], report: CountryReport
    ) -> List[Tuple[LocationRecord, SensorRecord]]:
        persisted = []
        for location in locations:
            try:
                sensors = self.provider.fetch_sensors(location.id)
            except RemoteError as exc:
                logger.warning("Sensors of location %s skipped: %s", location.id, exc)
                report.skipped.append(SkipRecord(
                    "location", str(location.id), country, STAGE_SENSORS, str(exc)
                ))
                continue

            for sensor in sensors:
                sensor.location_id = location.id
                try:
                    report.sensors.record(self.store.upsert_sensor(sensor))
                    persisted.append((location, sensor))
                except PersistenceError as exc:
                    report.skipped.append(SkipRecord(
                        "sensor", str(sensor.id), country, STAGE_SENSORS, str(exc)
                    ))
        logger.info("%s: %d sensors persisted", country, len(persisted))
        return persisted

    # ── Stage 3 ─────────────────────────────────────────────────────────────

    def _import_measurements(
        self,
        country: str,
        sensors: List[Tuple[LocationRecord, SensorRecord]],
        date_from: datetime,
        date_to: datetime,
        report: CountryReport,
        cancel_event: threading.Event,
    ):
        if not sensors:
            return

        workers = min(self.settings.max_workers, len(sensors))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"import-{country}") as pool:
            futures = [
                pool.submit(
                    self._import_sensor, country, location, sensor, date_from, date_to, cancel_event
                )
                for location, sensor in sensors
            ]
            for future in as_completed(futures):
                outcome = future.result()
                report.measurements.inserted += outcome.counts.inserted
                report.measurements.duplicates += outcome.counts.duplicates
                report.rejected_measurements += outcome.rejected
                report.skipped.extend(outcome.skipped)

    def _import_sensor(
        self,
        country: str,
        location: LocationRecord,
        sensor: SensorRecord,
        date_from: datetime,
        date_to: datetime,
        cancel_event: threading.Event,
    ) -> _SensorOutcome:
        outcome = _SensorOutcome(sensor_id=sensor.id)

        def skip(reason: str, entity: str = "sensor", entity_id: Optional[str] = None):
            outcome.skipped.append(SkipRecord(
                entity, entity_id or str(sensor.id), country, STAGE_MEASUREMENTS, reason
            ))

        if cancel_event.is_set():
            skip("cancelled")
            return outcome

        try:
            fetched = call_with_retry(
                lambda: self.provider.fetch_daily_measurements(sensor.id, date_from, date_to),
                self.retry_policy,
                description=f"measurements of sensor {sensor.id}",
                sleep=self._sleep,
            )
        except RetryExhaustedError as exc:
            skip(f"retries exhausted: {exc.last_error}")
            return outcome
        except PermanentRemoteError as exc:
            logger.warning("Measurements of sensor %s skipped: %s", sensor.id, exc)
            skip(f"permanent error: {exc}")
            return outcome

        accepted, outcome.rejected = normalize_measurements(fetched)
        for measurement in accepted:
            row = measurement.with_context(location, sensor)
            try:
                outcome.counts.record(self.store.upsert_measurement(row))
            except PersistenceError as exc:
                skip(str(exc), "measurement", f"{sensor.id}@{row.date_utc.date().isoformat()}")

        logger.debug(
            "Sensor %s: %d new, %d duplicate, %d rejected",
            sensor.id, outcome.counts.inserted, outcome.counts.duplicates, outcome.rejected,
        )
        return outcome
