"""
Analytics over persisted measurements.

- Most polluted country: weighted index of the latest PM2.5 and PM10
- Windowed averages per pollutant for one country
- Latest value of every pollutant per city

All operations are read-only and return an explicit "no data" shape when
nothing is stored for the request.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional

from pipeline.config import Settings
from pipeline.ingestion.validator import validate_country, validate_day_count
from store.repository import MeasurementStore

logger = logging.getLogger(__name__)

POLLUTANTS = ["pm25", "pm10", "o3", "no2", "so2", "co"]


def pollution_index(
    pm25: Optional[float],
    pm10: Optional[float],
    pm25_weight: float = 1.5,
    pm10_weight: float = 1.0,
) -> float:
    """
    pm25_weight × PM2.5 + pm10_weight × PM10.

    A missing value contributes zero rather than excluding the country, so a
    country reporting only one of the two can rank below its true level.
    """
    return pm25_weight * (pm25 or 0.0) + pm10_weight * (pm10 or 0.0)


@dataclass
class PollutionRanking:
    country: str
    pollution_index: float
    pm25: Optional[float] = None
    pm10: Optional[float] = None

    @property
    def has_data(self) -> bool:
        return self.pm25 is not None or self.pm10 is not None


@dataclass
class PollutionReport:
    lookback_days: int
    rankings: List[PollutionRanking] = field(default_factory=list)

    @property
    def most_polluted(self) -> Optional[PollutionRanking]:
        """Top ranked country, or None when no country has any PM data."""
        if self.rankings and self.rankings[0].has_data:
            return self.rankings[0]
        return None


@dataclass
class CountryAverages:
    country: str
    days: int
    averages: Dict[str, float] = field(default_factory=dict)
    counts: Dict[str, int] = field(default_factory=dict)

    @property
    def measurement_count(self) -> int:
        return sum(self.counts.values())

    @property
    def has_data(self) -> bool:
        return bool(self.averages)


@dataclass
class CityLatestMeasurements:
    city: str
    values: Dict[str, Optional[float]] = field(default_factory=dict)
    last_updated: Optional[datetime] = None


class AnalyticsEngine:
    """Read-only queries over the store."""

    def __init__(self, store: MeasurementStore, settings: Settings):
        self.store = store
        self.settings = settings

    def most_polluted(
        self, lookback_days: Optional[int] = None, now: Optional[datetime] = None
    ) -> PollutionReport:
        """Rank every supported country; ties go to the lexically smaller code."""
        lookback = lookback_days or self.settings.ranking_lookback_days
        report = PollutionReport(lookback_days=lookback)

        for country in self.settings.countries:
            latest = self.store.latest_pollutants(country, lookback, now=now)
            index = pollution_index(
                latest.pm25, latest.pm10,
                self.settings.pm25_weight, self.settings.pm10_weight,
            )
            report.rankings.append(PollutionRanking(country, index, latest.pm25, latest.pm10))

        report.rankings.sort(key=lambda r: (-r.pollution_index, r.country))
        top = report.most_polluted
        if top is None:
            logger.info("No PM2.5/PM10 data in the last %d days for any country", lookback)
        else:
            logger.info("Most polluted country: %s (index %.2f)", top.country, top.pollution_index)
        return report

    def average(
        self, country_code: str, day_count: Optional[int] = None, now: Optional[datetime] = None
    ) -> CountryAverages:
        """
        Arithmetic mean of every pollutant over the last `day_count` days.

        Raises:
            ValidationError: for unknown countries or out-of-range day counts.
        """
        country = validate_country(country_code, self.settings.countries)
        days = self.settings.average_days if day_count is None else day_count
        validate_day_count(days, 1, self.settings.max_import_days)

        rows = self.store.averages(country, days, now=now)
        result = CountryAverages(country=country, days=days)
        for parameter in sorted(rows, key=_pollutant_order):
            result.averages[parameter] = rows[parameter].average
            result.counts[parameter] = rows[parameter].count

        if not result.has_data:
            logger.info("No measurements for %s in the last %d days", country, days)
        return result

    def measurements_by_city(self, country_code: str) -> List[CityLatestMeasurements]:
        """
        Latest value of every parameter, one entry per city.

        Raises:
            ValidationError: for unknown countries.
        """
        country = validate_country(country_code, self.settings.countries)
        cities: Dict[str, CityLatestMeasurements] = {}

        for row in self.store.latest_by_city(country):
            entry = cities.setdefault(row.city, CityLatestMeasurements(city=row.city))
            entry.values[row.parameter] = row.value
            if entry.last_updated is None or row.date_utc > entry.last_updated:
                entry.last_updated = row.date_utc

        logger.info("Latest measurements for %d cities in %s", len(cities), country)
        return [cities[name] for name in sorted(cities)]


def _pollutant_order(parameter: str):
    if parameter in POLLUTANTS:
        return (0, POLLUTANTS.index(parameter), parameter)
    return (1, 0, parameter)
