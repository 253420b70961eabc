"""
Tests for Module 03 — Persistence store.
Schema creation, insert-if-absent writes and the analytics queries.
"""

import pytest

from pipeline.errors import PersistenceError


class TestSchema:
    def test_init_schema_is_idempotent(self, store):
        store.init_schema()
        store.init_schema()
        assert store.is_schema_initialized()

    def test_fresh_store_has_no_data(self, store):
        assert store.has_data() is False
        assert store.row_counts() == {"locations": 0, "sensors": 0, "measurements": 0}

    def test_uninitialised_store(self, db_engine):
        from store.repository import MeasurementStore
        s = MeasurementStore(db_engine)
        assert s.is_schema_initialized() is False
        assert s.has_data() is False


class TestUpserts:
    def test_location_insert_then_duplicate(self, store, make_location):
        assert store.upsert_location(make_location(1)) is True
        assert store.upsert_location(make_location(1, city="Elsewhere")) is False
        assert store.row_counts()["locations"] == 1

    def test_sensor_requires_location(self, store, make_sensor):
        with pytest.raises(PersistenceError):
            store.upsert_sensor(make_sensor(11, location_id=999))

    def test_measurement_uniqueness_keeps_first(self, store, seed_measurement, make_measurement,
                                                make_location, make_sensor, now):
        assert seed_measurement("DE", "Berlin", 11, "pm25", 10.0) is True

        location, sensor = make_location(1, city="Berlin"), make_sensor(11, 1)
        again = make_measurement(11, 0, 99.0).with_context(location, sensor)
        assert store.upsert_measurement(again) is False

        rows = store.latest_by_city("DE")
        assert len(rows) == 1
        assert rows[0].value == 10.0
        assert store.row_counts()["measurements"] == 1

    def test_measurement_requires_sensor(self, store, make_measurement, make_location, make_sensor):
        store.upsert_location(make_location(1))
        orphan = make_measurement(77).with_context(make_location(1), make_sensor(77, 1))
        with pytest.raises(PersistenceError):
            store.upsert_measurement(orphan)

    def test_has_data_after_insert(self, store, seed_measurement):
        seed_measurement("DE", "Berlin", 11, "pm25", 10.0)
        assert store.has_data() is True


class TestLatestPollutants:
    def test_most_recent_day_wins(self, store, seed_measurement, now):
        seed_measurement("DE", "Berlin", 11, "pm25", 40.0, days_ago=3)
        seed_measurement("DE", "Berlin", 11, "pm25", 20.0, days_ago=1)
        latest = store.latest_pollutants("DE", 7, now=now)
        assert latest.pm25 == 20.0
        assert latest.pm10 is None

    def test_sensors_on_same_day_are_averaged(self, store, seed_measurement, now):
        seed_measurement("DE", "Berlin", 11, "pm25", 10.0, days_ago=1)
        seed_measurement("DE", "Munich", 21, "pm25", 30.0, days_ago=1)
        assert store.latest_pollutants("DE", 7, now=now).pm25 == pytest.approx(20.0)

    def test_outside_lookback_ignored(self, store, seed_measurement, now):
        seed_measurement("DE", "Berlin", 11, "pm25", 10.0, days_ago=10)
        assert store.latest_pollutants("DE", 7, now=now).pm25 is None

    def test_other_country_ignored(self, store, seed_measurement, now):
        seed_measurement("FR", "Paris", 11, "pm25", 10.0, days_ago=1)
        assert store.latest_pollutants("DE", 7, now=now).pm25 is None


class TestAverages:
    def test_mean_per_parameter(self, store, seed_measurement, now):
        seed_measurement("DE", "Berlin", 11, "pm25", 10.0, days_ago=1)
        seed_measurement("DE", "Berlin", 11, "pm25", 20.0, days_ago=2)
        seed_measurement("DE", "Berlin", 12, "pm10", 30.0, days_ago=1, location_id=1)
        result = store.averages("DE", 5, now=now)
        assert result["pm25"].average == pytest.approx(15.0)
        assert result["pm25"].count == 2
        assert result["pm10"].average == pytest.approx(30.0)

    def test_window_excludes_old_rows(self, store, seed_measurement, now):
        seed_measurement("DE", "Berlin", 11, "pm25", 10.0, days_ago=1)
        seed_measurement("DE", "Berlin", 11, "pm25", 100.0, days_ago=20)
        assert store.averages("DE", 5, now=now)["pm25"].average == pytest.approx(10.0)

    def test_null_values_excluded(self, store, seed_measurement, now):
        seed_measurement("DE", "Berlin", 11, "pm25", None, days_ago=1)
        assert store.averages("DE", 5, now=now) == {}


class TestLatestByCity:
    def test_latest_row_per_city_and_parameter(self, store, seed_measurement):
        seed_measurement("DE", "Berlin", 11, "pm25", 10.0, days_ago=2)
        seed_measurement("DE", "Berlin", 11, "pm25", 12.0, days_ago=1)
        seed_measurement("DE", "Berlin", 12, "pm10", 25.0, days_ago=1, location_id=1)
        seed_measurement("DE", "Munich", 21, "pm25", 8.0, days_ago=1)

        rows = store.latest_by_city("DE")
        values = {(r.city, r.parameter): r.value for r in rows}
        assert values == {("Berlin", "pm10"): 25.0, ("Berlin", "pm25"): 12.0, ("Munich", "pm25"): 8.0}
        assert rows[0].date_utc.tzinfo is not None

    def test_unknown_country_is_empty(self, store):
        assert store.latest_by_city("DE") == []
