"""
Persistence store: schema ownership, idempotent writes and the read
queries behind the analytics.

Every write is a single INSERT ... ON CONFLICT DO NOTHING on the entity's
natural key, committed on its own. A duplicate is a silent no-op; the
return value tells the caller whether a new row was written.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Dict, List, Optional

from sqlalchemy import exists, func, inspect, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from pipeline.errors import PersistenceError
from pipeline.ingestion.provider import DailyMeasurement, LocationRecord, SensorRecord
from store.database import create_db_engine
from store.models.db_models import Base, Location, Sensor
from store.models.db_models import DailyMeasurement as MeasurementRow

logger = logging.getLogger(__name__)

PM25 = "pm25"
PM10 = "pm10"


def _as_utc(dt: Optional[datetime]) -> Optional[datetime]:
    """SQLite hands back naive datetimes; everything stored is UTC."""
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class LatestPollutants:
    """Most recent PM2.5 / PM10 values of a country inside a lookback window."""
    country: str
    pm25: Optional[float] = None
    pm10: Optional[float] = None
    pm25_date: Optional[datetime] = None
    pm10_date: Optional[datetime] = None


@dataclass
class ParameterAverage:
    parameter: str
    average: float
    count: int


@dataclass
class CityParameterValue:
    """Latest stored value of one parameter in one city."""
    city: str
    parameter: str
    value: Optional[float]
    date_utc: datetime


class MeasurementStore:
    """Reads and writes locations, sensors and daily measurements."""

    def __init__(self, engine: Engine):
        self.engine = engine

    @classmethod
    def from_url(cls, url: Optional[str] = None, pool_size: int = 10) -> "MeasurementStore":
        return cls(create_db_engine(url, pool_size=pool_size))

    # ── Schema ──────────────────────────────────────────────────────────────

    def init_schema(self) -> None:
        """Create tables and indexes that do not exist yet. Never drops anything."""
        try:
            Base.metadata.create_all(self.engine, checkfirst=True)
        except SQLAlchemyError as e:
            logger.error("Schema initialisation failed: %s", e)
            raise PersistenceError(f"schema initialisation failed: {e}") from e
        logger.info("Database schema initialised")

    def is_schema_initialized(self) -> bool:
        try:
            return inspect(self.engine).has_table(MeasurementRow.__tablename__)
        except SQLAlchemyError as e:
            raise PersistenceError(f"schema check failed: {e}") from e

    def has_data(self) -> bool:
        if not self.is_schema_initialized():
            return False
        try:
            with self._connect() as conn:
                return bool(conn.execute(select(exists().select_from(MeasurementRow))).scalar())
        except SQLAlchemyError as e:
            raise PersistenceError(f"data check failed: {e}") from e

    def row_counts(self) -> Dict[str, int]:
        """Row count per table."""
        counts = {}
        try:
            with self._connect() as conn:
                for model in (Location, Sensor, MeasurementRow):
                    counts[model.__tablename__] = conn.execute(
                        select(func.count()).select_from(model)
                    ).scalar_one()
        except SQLAlchemyError as e:
            raise PersistenceError(f"row count query failed: {e}") from e
        return counts

    # ── Writes ──────────────────────────────────────────────────────────────

    def _insert(self, model):
        dialect = self.engine.dialect.name
        if dialect == "postgresql":
            return pg_insert(model)
        if dialect == "sqlite":
            return sqlite_insert(model)
        raise PersistenceError(f"unsupported database dialect: {dialect}")

    def _insert_ignore(self, model, values: dict, key: List[str], label: str) -> bool:
        stmt = self._insert(model).values(**values).on_conflict_do_nothing(index_elements=key)
        try:
            with self.engine.begin() as conn:
                result = conn.execute(stmt)
        except SQLAlchemyError as e:
            logger.error("Failed to insert %s: %s", label, e)
            raise PersistenceError(f"failed to insert {label}: {e}") from e
        inserted = result.rowcount == 1
        if not inserted:
            logger.debug("%s already stored, ignored", label)
        return inserted

    def upsert_location(self, location: LocationRecord) -> bool:
        return self._insert_ignore(Location, {
            "id":             location.id,
            "name":           location.name,
            "locality":       location.locality,
            "country_code":   location.country_code,
            "country_name":   location.country_name,
            "timezone":       location.timezone,
            "latitude":       location.latitude,
            "longitude":      location.longitude,
            "datetime_first": location.datetime_first,
            "datetime_last":  location.datetime_last,
            "is_mobile":      location.is_mobile,
            "is_monitor":     location.is_monitor,
            "owner_name":     location.owner_name,
            "provider_name":  location.provider_name,
        }, ["id"], f"location {location.id}")

    def upsert_sensor(self, sensor: SensorRecord) -> bool:
        return self._insert_ignore(Sensor, {
            "id":             sensor.id,
            "location_id":    sensor.location_id,
            "name":           sensor.name,
            "parameter_id":   sensor.parameter_id,
            "parameter_name": sensor.parameter_name,
            "units":          sensor.units,
            "display_name":   sensor.display_name,
        }, ["id"], f"sensor {sensor.id}")

    def upsert_measurement(self, m: DailyMeasurement) -> bool:
        return self._insert_ignore(MeasurementRow, {
            "sensor_id":              m.sensor_id,
            "date_utc":               _as_utc(m.date_utc),
            "date_local":             m.date_local,
            "parameter_id":           m.parameter_id,
            "parameter_name":         m.parameter_name,
            "parameter_display_name": m.parameter_display_name,
            "value_avg":              m.value_avg,
            "value_min":              m.value_min,
            "value_max":              m.value_max,
            "measurement_count":      m.measurement_count,
            "unit":                   m.unit,
            "location_id":            m.location_id,
            "location_name":          m.location_name,
            "sensor_name":            m.sensor_name,
            "country":                m.country,
            "city":                   m.city,
            "latitude":               m.latitude,
            "longitude":              m.longitude,
            "is_mobile":              m.is_mobile,
            "is_monitor":             m.is_monitor,
            "owner_name":             m.owner_name,
            "provider_name":          m.provider_name,
        }, ["sensor_id", "date_utc"], f"measurement sensor={m.sensor_id} date={m.date_utc}")

    # ── Reads ───────────────────────────────────────────────────────────────

    def _connect(self):
        try:
            return self.engine.connect()
        except SQLAlchemyError as e:
            logger.error("Database connection failed: %s", e)
            raise PersistenceError(f"database connection failed: {e}") from e

    def _latest_value(self, conn, country: str, parameter: str, cutoff: datetime, now: datetime):
        in_window = (
            (MeasurementRow.country == country)
            & (MeasurementRow.parameter_name == parameter)
            & (MeasurementRow.date_utc >= cutoff)
            & (MeasurementRow.date_utc <= now)
            & (MeasurementRow.value_avg.isnot(None))
        )
        latest = conn.execute(select(func.max(MeasurementRow.date_utc)).where(in_window)).scalar()
        if latest is None:
            return None, None
        value = conn.execute(
            select(func.avg(MeasurementRow.value_avg)).where(in_window & (MeasurementRow.date_utc == latest))
        ).scalar()
        return (float(value) if value is not None else None), _as_utc(latest)

    def latest_pollutants(
        self, country: str, lookback_days: int, now: Optional[datetime] = None
    ) -> LatestPollutants:
        """
        Most recent PM2.5 and PM10 of a country within the last `lookback_days`.

        When several sensors reported on the latest day their values are averaged.
        """
        now = _as_utc(now) or _utcnow()
        cutoff = now - timedelta(days=lookback_days)
        try:
            with self._connect() as conn:
                pm25, pm25_date = self._latest_value(conn, country, PM25, cutoff, now)
                pm10, pm10_date = self._latest_value(conn, country, PM10, cutoff, now)
        except SQLAlchemyError as e:
            logger.error("Failed to query latest pollutants for %s: %s", country, e)
            raise PersistenceError(f"latest pollutant query failed: {e}") from e

        return LatestPollutants(country, pm25, pm10, pm25_date, pm10_date)

    def averages(
        self, country: str, days: int, now: Optional[datetime] = None
    ) -> Dict[str, ParameterAverage]:
        """Mean daily average per parameter over [now - days, now]."""
        now = _as_utc(now) or _utcnow()
        cutoff = now - timedelta(days=days)
        stmt = (
            select(
                MeasurementRow.parameter_name,
                func.avg(MeasurementRow.value_avg),
                func.count(MeasurementRow.value_avg),
            )
            .where(
                (MeasurementRow.country == country)
                & (MeasurementRow.date_utc >= cutoff)
                & (MeasurementRow.date_utc <= now)
                & (MeasurementRow.value_avg.isnot(None))
            )
            .group_by(MeasurementRow.parameter_name)
        )
        try:
            with self._connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            logger.error("Failed to query averages for %s: %s", country, e)
            raise PersistenceError(f"average query failed: {e}") from e

        return {
            name: ParameterAverage(name, float(avg), int(count))
            for name, avg, count in rows
            if count
        }

    def latest_by_city(self, country: str) -> List[CityParameterValue]:
        """Most recent row per (city, parameter) of a country, ordered by city."""
        ranked = (
            select(
                MeasurementRow.city,
                MeasurementRow.parameter_name,
                MeasurementRow.value_avg,
                MeasurementRow.date_utc,
                func.row_number().over(
                    partition_by=(MeasurementRow.city, MeasurementRow.parameter_name),
                    order_by=(MeasurementRow.date_utc.desc(), MeasurementRow.sensor_id),
                ).label("rn"),
            )
            .where((MeasurementRow.country == country) & (MeasurementRow.city.isnot(None)))
            .subquery()
        )
        stmt = (
            select(ranked.c.city, ranked.c.parameter_name, ranked.c.value_avg, ranked.c.date_utc)
            .where(ranked.c.rn == 1)
            .order_by(ranked.c.city, ranked.c.parameter_name)
        )
        try:
            with self._connect() as conn:
                rows = conn.execute(stmt).all()
        except SQLAlchemyError as e:
            logger.error("Failed to query latest by city for %s: %s", country, e)
            raise PersistenceError(f"latest-by-city query failed: {e}") from e

        return [
            CityParameterValue(city, parameter, value, _as_utc(date_utc))
            for city, parameter, value, date_utc in rows
        ]
