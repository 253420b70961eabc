"""
Remote data provider interface and the records it produces.

Two implementations exist: the live OpenAQ connector and a deterministic
fixture provider. The caller picks one at construction time.
"""

import dataclasses
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional


@dataclass
class LocationRecord:
    """A monitoring site as reported by the provider."""
    id: int
    name: Optional[str]
    country_code: str
    country_name: Optional[str] = None
    locality: Optional[str] = None       # usually the city
    timezone: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_mobile: bool = False
    is_monitor: bool = False
    owner_name: Optional[str] = None
    provider_name: Optional[str] = None
    datetime_first: Optional[datetime] = None
    datetime_last: Optional[datetime] = None

    @property
    def display_name(self) -> str:
        return self.name or f"Location {self.id}"


@dataclass
class SensorRecord:
    """A single-parameter device attached to a location."""
    id: int
    location_id: int
    name: str
    parameter_id: int
    parameter_name: str                  # e.g. "pm25"
    units: str
    display_name: Optional[str] = None


@dataclass
class DailyMeasurement:
    """
    One day of aggregated statistics for one sensor.

    The provider fills the statistics; the snapshot fields (location, city,
    coordinates, ownership) are copied from the location and sensor at
    capture time by with_context() and never refreshed afterwards.
    """
    sensor_id: int
    date_utc: datetime                   # start of the aggregation day, UTC
    date_local: str
    parameter_id: Optional[int]
    parameter_name: Optional[str]
    unit: str
    value_avg: Optional[float] = None
    value_min: Optional[float] = None
    value_max: Optional[float] = None
    measurement_count: Optional[int] = None
    parameter_display_name: Optional[str] = None
    # Snapshot of the owning location and sensor
    location_id: Optional[int] = None
    location_name: Optional[str] = None
    sensor_name: Optional[str] = None
    country: Optional[str] = None
    city: Optional[str] = None
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    is_mobile: bool = False
    is_monitor: bool = False
    owner_name: Optional[str] = None
    provider_name: Optional[str] = None

    def with_context(self, location: LocationRecord, sensor: SensorRecord) -> "DailyMeasurement":
        """Return a copy carrying the location/sensor snapshot."""
        return dataclasses.replace(
            self,
            location_id=location.id,
            location_name=location.display_name,
            sensor_name=sensor.name,
            parameter_id=self.parameter_id if self.parameter_id is not None else sensor.parameter_id,
            parameter_name=self.parameter_name or sensor.parameter_name,
            parameter_display_name=self.parameter_display_name or sensor.display_name,
            unit=self.unit or sensor.units,
            country=location.country_code,
            city=location.locality,
            latitude=location.latitude,
            longitude=location.longitude,
            is_mobile=location.is_mobile,
            is_monitor=location.is_monitor,
            owner_name=location.owner_name,
            provider_name=location.provider_name,
        )


class DataProvider(ABC):
    """Source of locations, sensors and daily measurements."""

    @abstractmethod
    def fetch_locations(self, country_code: str, limit: int) -> List[LocationRecord]:
        """Return up to `limit` locations for a country, in provider order."""

    @abstractmethod
    def fetch_sensors(self, location_id: int) -> List[SensorRecord]:
        """Return every sensor attached to a location."""

    @abstractmethod
    def fetch_daily_measurements(
        self, sensor_id: int, date_from: datetime, date_to: datetime
    ) -> List[DailyMeasurement]:
        """Return the daily aggregates of a sensor within [date_from, date_to]."""

    def check_health(self) -> None:
        """Raise ConfigurationError if the provider cannot be used at all."""

    def close(self) -> None:
        """Release any held resources."""
