"""
Fixture data provider.

Serves plausible, fully deterministic locations, sensors and daily
aggregates from config/fixture_locations.json. Used when no live API is
available and by tests that need stable data without network access.
"""

import json
import logging
import os
import random
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional, Tuple

from pipeline.config import CONFIG_DIR
from pipeline.errors import ConfigurationError
from pipeline.ingestion.provider import (
    DailyMeasurement,
    DataProvider,
    LocationRecord,
    SensorRecord,
)

logger = logging.getLogger(__name__)

FIXTURE_CONFIG = os.path.join(CONFIG_DIR, "fixture_locations.json")

# (parameter id, name, display name, typical daily range in µg/m³)
PARAMETERS: List[Tuple[int, str, str, Tuple[float, float]]] = [
    (2, "pm25", "PM2.5", (5.0, 35.0)),
    (1, "pm10", "PM10", (10.0, 50.0)),
    (10, "o3", "O₃", (30.0, 100.0)),
    (7, "no2", "NO₂", (10.0, 60.0)),
    (9, "so2", "SO₂", (2.0, 20.0)),
    (4, "co", "CO", (200.0, 1200.0)),
]
UNIT = "µg/m³"


def _load_fixtures(path: str) -> dict:
    if not os.path.exists(path):
        raise ConfigurationError(f"Fixture config not found at {path}")
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


def _day_start(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    dt = dt.astimezone(timezone.utc)
    return dt.replace(hour=0, minute=0, second=0, microsecond=0)


class FixtureProvider(DataProvider):
    """Deterministic stand-in for the live API."""

    def __init__(self, seed: int = 42, config_path: Optional[str] = None):
        self.seed = seed
        self._countries: Dict[str, dict] = _load_fixtures(config_path or FIXTURE_CONFIG)
        self._locations: Dict[int, LocationRecord] = {}
        self._factors: Dict[str, float] = {}

        for c_idx, (code, cfg) in enumerate(self._countries.items()):
            self._factors[code] = float(cfg.get("pollution_factor", 1.0))
            for s_idx, site in enumerate(cfg.get("sites", [])):
                location_id = (c_idx + 1) * 1000 + s_idx + 1
                self._locations[location_id] = LocationRecord(
                    id=location_id,
                    name=f"{site['city']} Station {s_idx + 1}",
                    country_code=code,
                    locality=site["city"],
                    timezone="UTC",
                    latitude=site.get("latitude"),
                    longitude=site.get("longitude"),
                    is_mobile=False,
                    is_monitor=True,
                    owner_name="Fixture Owner",
                    provider_name="Fixture Provider",
                )
        logger.info(
            "FixtureProvider ready: %d countries, %d locations",
            len(self._countries), len(self._locations),
        )

    def fetch_locations(self, country_code: str, limit: int) -> List[LocationRecord]:
        code = country_code.upper()
        if code not in self._countries:
            logger.debug("No fixture locations for %s", code)
            return []
        locations = [loc for loc in self._locations.values() if loc.country_code == code]
        return locations[:limit]

    def fetch_sensors(self, location_id: int) -> List[SensorRecord]:
        if location_id not in self._locations:
            return []
        return [
            SensorRecord(
                id=location_id * 10 + p_idx + 1,
                location_id=location_id,
                name=f"{name} sensor",
                parameter_id=param_id,
                parameter_name=name,
                units=UNIT,
                display_name=display,
            )
            for p_idx, (param_id, name, display, _) in enumerate(PARAMETERS)
        ]

    def fetch_daily_measurements(
        self, sensor_id: int, date_from: datetime, date_to: datetime
    ) -> List[DailyMeasurement]:
        location_id, p_idx = divmod(sensor_id, 10)
        location = self._locations.get(location_id)
        if location is None or not 1 <= p_idx <= len(PARAMETERS):
            return []

        param_id, name, display, (low, high) = PARAMETERS[p_idx - 1]
        factor = self._factors.get(location.country_code, 1.0)
        low, high = max(low * factor, 0.0), max(high * factor, low * factor + 1.0)

        measurements = []
        day = _day_start(date_from)
        end = _day_start(date_to)
        while day <= end:
            rng = random.Random(f"{self.seed}:{sensor_id}:{day.date().isoformat()}")
            avg = rng.uniform(low, high)
            spread = (high - low) * 0.25
            measurements.append(DailyMeasurement(
                sensor_id=sensor_id,
                date_utc=day,
                date_local=day.isoformat(),
                parameter_id=param_id,
                parameter_name=name,
                parameter_display_name=display,
                unit=UNIT,
                value_avg=round(avg, 3),
                value_min=round(max(avg - rng.uniform(0, spread), 0.0), 3),
                value_max=round(avg + rng.uniform(0, spread), 3),
                measurement_count=rng.randint(18, 24),
            ))
            day += timedelta(days=1)
        return measurements
