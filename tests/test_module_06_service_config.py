"""
Tests for Module 06 — Configuration, service facade and CLI.
"""

import json
import threading

import pytest

from pipeline.config import PROVIDER_FIXTURE, PROVIDER_OPENAQ, Settings, load_countries
from pipeline.errors import ConfigurationError, ValidationError
from pipeline.ingestion.fixture_provider import FixtureProvider
from pipeline.ingestion.openaq_connector import OpenAQConnector
from pipeline.main import build_parser, main, run_command
from pipeline.orchestration.retry import RetryPolicy, call_with_retry
from pipeline.service import AirQualityService

ENV_VARS = [
    "DATABASE_URL", "OPENAQ_KEY", "OPENAQ_BASE_URL", "DATA_PROVIDER", "SUPPORTED_COUNTRIES",
    "COUNTRIES_CONFIG", "PM25_WEIGHT", "PM10_WEIGHT", "RETRY_ATTEMPTS", "RETRY_DELAY_SECONDS",
    "RETRY_BACKOFF", "LOCATION_LIMIT", "IMPORT_WORKERS", "MIN_IMPORT_DAYS", "MAX_IMPORT_DAYS",
    "RANKING_LOOKBACK_DAYS", "AVERAGE_DAYS", "REQUEST_TIMEOUT_SECONDS", "LOG_LEVEL",
]


@pytest.fixture()
def clean_env(monkeypatch):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    return monkeypatch


class TestCountries:
    def test_default_map(self):
        countries = load_countries()
        assert {"NL", "DE", "FR", "GR", "ES", "PK"} <= set(countries)

    def test_missing_file(self, tmp_path):
        with pytest.raises(ConfigurationError):
            load_countries(str(tmp_path / "nope.json"))

    def test_malformed_file(self, tmp_path):
        path = tmp_path / "countries.json"
        path.write_text("[1, 2", encoding="utf-8")
        with pytest.raises(ConfigurationError):
            load_countries(str(path))


class TestSettings:
    def test_defaults(self, clean_env):
        s = Settings.from_env(load_env=False)
        assert s.provider == PROVIDER_OPENAQ
        assert s.pm25_weight == 1.5
        assert s.pm10_weight == 1.0
        assert s.retry_attempts == 3
        assert s.location_limit == 10
        assert (s.min_import_days, s.max_import_days) == (7, 365)

    def test_env_overrides(self, clean_env):
        clean_env.setenv("SUPPORTED_COUNTRIES", "de, fr")
        clean_env.setenv("PM25_WEIGHT", "2")
        clean_env.setenv("DATABASE_URL", "postgres://u:p@db/airq")
        s = Settings.from_env(load_env=False)
        assert list(s.countries) == ["DE", "FR"]
        assert s.pm25_weight == 2.0
        assert s.database_url == "postgresql://u:p@db/airq"

    def test_unknown_supported_country(self, clean_env):
        clean_env.setenv("SUPPORTED_COUNTRIES", "DE,XX")
        with pytest.raises(ConfigurationError):
            Settings.from_env(load_env=False)

    def test_non_numeric_value(self, clean_env):
        clean_env.setenv("IMPORT_WORKERS", "many")
        with pytest.raises(ConfigurationError):
            Settings.from_env(load_env=False)

    def test_live_provider_needs_key(self, clean_env):
        s = Settings.from_env(load_env=False)
        with pytest.raises(ConfigurationError) as exc:
            s.validate()
        assert "OPENAQ_KEY" in str(exc.value)

    def test_fixture_provider_needs_no_key(self, clean_env):
        clean_env.setenv("DATA_PROVIDER", "fixture")
        assert Settings.from_env(load_env=False).validate().provider == PROVIDER_FIXTURE

    def test_collects_every_problem(self, settings):
        settings.retry_attempts = 0
        settings.max_workers = 0
        with pytest.raises(ConfigurationError) as exc:
            settings.validate()
        assert "RETRY_ATTEMPTS" in str(exc.value)
        assert "IMPORT_WORKERS" in str(exc.value)


class TestRetryPolicy:
    def test_linear_and_fixed(self):
        assert [RetryPolicy(delay=2.0).delay_for(n) for n in (1, 2)] == [2.0, 4.0]
        assert RetryPolicy(delay=2.0, backoff="fixed").delay_for(2) == 2.0

    def test_non_transient_not_retried(self):
        calls = []

        def boom():
            calls.append(1)
            raise ValidationError("nope")

        with pytest.raises(ValidationError):
            call_with_retry(boom, RetryPolicy(), sleep=lambda s: None)
        assert len(calls) == 1


class TestService:
    def test_provider_selection(self, settings):
        service = AirQualityService.from_settings(settings)
        assert isinstance(service.provider, FixtureProvider)
        service.close()

        settings.provider = PROVIDER_OPENAQ
        service = AirQualityService.from_settings(settings)
        assert isinstance(service.provider, OpenAQConnector)
        service.close()

    def test_invalid_settings_rejected(self, settings):
        settings.database_url = ""
        with pytest.raises(ConfigurationError):
            AirQualityService.from_settings(settings)

    def test_end_to_end_with_fixture_provider(self, settings, db_engine):
        service = AirQualityService.from_settings(settings)
        service.init_schema()

        report = service.import_data(7)
        assert report.measurements.inserted > 0
        assert service.most_polluted().most_polluted is not None
        assert service.average("DE").has_data
        assert {c.city for c in service.measurements_by_city("NL")} == {
            "Amsterdam", "Rotterdam", "Utrecht", "The Hague",
        }
        service.close()

    def test_import_validates_days(self, settings, db_engine):
        service = AirQualityService.from_settings(settings)
        service.init_schema()
        with pytest.raises(ValidationError):
            service.import_data(6)
        service.close()


class TestCli:
    def test_parser(self):
        args = build_parser().parse_args(["average", "DE", "--days", "3"])
        assert (args.command, args.country, args.days) == ("average", "DE", 3)

    def test_run_command_outputs_json(self, settings, db_engine, capsys):
        service = AirQualityService.from_settings(settings)
        parser = build_parser()

        assert run_command(service, parser.parse_args(["init-db"])) == 0
        assert run_command(service, parser.parse_args(["import", "--days", "7"]), threading.Event()) == 0
        capsys.readouterr()

        assert run_command(service, parser.parse_args(["most-polluted"])) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["most_polluted"]["country"] in settings.countries
        assert len(data["rankings"]) == len(settings.countries)

        assert run_command(service, parser.parse_args(["average", "FR"])) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["country"] == "FR"
        assert data["has_data"] is True
        service.close()

    def test_most_polluted_before_any_import(self, settings, db_engine, capsys):
        service = AirQualityService.from_settings(settings)
        service.init_schema()
        capsys.readouterr()

        assert run_command(service, build_parser().parse_args(["most-polluted"])) == 0
        data = json.loads(capsys.readouterr().out)
        assert data == {"data_imported": False, "most_polluted": None, "rankings": []}
        service.close()

    def test_import_reports_stored_rows(self, settings, db_engine, capsys):
        service = AirQualityService.from_settings(settings)

        assert run_command(service, build_parser().parse_args(["import", "--days", "7"])) == 0
        data = json.loads(capsys.readouterr().out)
        assert data["stored"]["measurements"] == data["totals"]["measurements"]["inserted"]
        assert data["stored"]["locations"] == 12
        service.close()

    def test_main_rejects_bad_day_count(self, clean_env, tmp_path):
        clean_env.setenv("DATA_PROVIDER", "fixture")
        clean_env.setenv("DATABASE_URL", f"sqlite:///{tmp_path / 'cli.db'}")
        assert main(["import", "--days", "3"]) == 2

    def test_main_reports_configuration_error(self, clean_env):
        assert main(["most-polluted"]) == 2
