"""Shared test fixtures for the air quality pipeline test suite."""

import os
from datetime import datetime, timedelta, timezone

import pytest

from pipeline.config import PROVIDER_FIXTURE, Settings
from pipeline.ingestion.provider import DailyMeasurement, LocationRecord, SensorRecord
from store.database import create_db_engine
from store.models.db_models import Base
from store.repository import MeasurementStore

# Use TEST_DATABASE_URL when given (e.g. a throwaway Postgres), otherwise a
# SQLite file per test.
TEST_DATABASE_URL = os.environ.get("TEST_DATABASE_URL")

NOW = datetime(2024, 6, 15, 12, 0, tzinfo=timezone.utc)
TODAY = NOW.replace(hour=0, minute=0, second=0, microsecond=0)

TEST_COUNTRIES = {"DE": "Germany", "FR": "France", "NL": "Netherlands"}


@pytest.fixture()
def settings(tmp_path):
    return Settings(
        database_url=TEST_DATABASE_URL or f"sqlite:///{tmp_path / 'airq.db'}",
        api_key="test-key",
        provider=PROVIDER_FIXTURE,
        countries=dict(TEST_COUNTRIES),
        retry_delay=0.0,
        max_workers=3,
    )


@pytest.fixture()
def db_engine(settings):
    """Engine with a fresh schema; dropped again after the test."""
    engine = create_db_engine(settings.database_url, pool_size=5)
    Base.metadata.drop_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture()
def store(db_engine):
    s = MeasurementStore(db_engine)
    s.init_schema()
    return s


@pytest.fixture()
def make_location():
    def _make(location_id=1, country="DE", city="Berlin", **kwargs):
        return LocationRecord(
            id=location_id,
            name=kwargs.pop("name", f"{city} {location_id}"),
            country_code=country,
            locality=city,
            **kwargs,
        )
    return _make


@pytest.fixture()
def make_sensor():
    def _make(sensor_id=11, location_id=1, parameter="pm25", parameter_id=2, **kwargs):
        return SensorRecord(
            id=sensor_id,
            location_id=location_id,
            name=kwargs.pop("name", f"{parameter} sensor"),
            parameter_id=parameter_id,
            parameter_name=parameter,
            units=kwargs.pop("units", "µg/m³"),
            **kwargs,
        )
    return _make


@pytest.fixture()
def make_measurement():
    def _make(sensor_id=11, days_ago=0, value=10.0, parameter="pm25", **kwargs):
        day = TODAY - timedelta(days=days_ago)
        return DailyMeasurement(
            sensor_id=sensor_id,
            date_utc=day,
            date_local=day.isoformat(),
            parameter_id=kwargs.pop("parameter_id", 2),
            parameter_name=parameter,
            unit=kwargs.pop("unit", "µg/m³"),
            value_avg=value,
            **kwargs,
        )
    return _make


@pytest.fixture()
def seed_measurement(store, make_location, make_sensor, make_measurement):
    """Persist one daily value together with its location and sensor."""
    def _seed(country, city, sensor_id, parameter, value, days_ago=0, location_id=None):
        location = make_location(location_id or sensor_id // 10, country=country, city=city)
        sensor = make_sensor(sensor_id, location.id, parameter=parameter)
        store.upsert_location(location)
        store.upsert_sensor(sensor)
        row = make_measurement(sensor_id, days_ago, value, parameter).with_context(location, sensor)
        return store.upsert_measurement(row)
    return _seed


@pytest.fixture()
def now():
    """Fixed clock: analytics windows are evaluated against it."""
    return NOW
