"""
Air quality pipeline — command line entry point.

Sub-commands:
  init-db                      create the schema (never drops anything)
  import --days N              import the last N days for every country
  most-polluted                rank countries by the pollution index
  average COUNTRY [--days N]   windowed average per pollutant
  measurements COUNTRY         latest value per pollutant and city

Results are printed to stdout as JSON; logs go to stdout too, in the
usual format. SIGINT/SIGTERM during an import stop new sensor work and
the partial report is still printed.
"""

import argparse
import json
import logging
import signal
import sys
import threading
from dataclasses import asdict
from typing import List, Optional

from pipeline.config import Settings
from pipeline.errors import AirQualityError, ConfigurationError, ValidationError

logger = logging.getLogger("pipeline.main")

EXIT_OK = 0
EXIT_FAILED = 1
EXIT_INVALID = 2
EXIT_CANCELLED = 130


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [AIRQ] %(levelname)s %(name)s — %(message)s",
        datefmt="%Y-%m-%dT%H:%M:%S",
        stream=sys.stdout,
    )
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ── JSON views ────────────────────────────────────────────────────────────────

def import_report_to_dict(report) -> dict:
    return {
        "date_from": report.date_from.isoformat(),
        "date_to": report.date_to.isoformat(),
        "cancelled": report.cancelled,
        "totals": {
            "locations": asdict(report.locations),
            "sensors": asdict(report.sensors),
            "measurements": asdict(report.measurements),
            "skipped": len(report.skipped),
        },
        "countries": {
            code: {
                "status": cr.status,
                "locations": asdict(cr.locations),
                "sensors": asdict(cr.sensors),
                "measurements": asdict(cr.measurements),
                "rejected_measurements": cr.rejected_measurements,
                "error": cr.error,
                "failed_stage": cr.failed_stage,
                "skipped": [asdict(s) for s in cr.skipped],
            }
            for code, cr in report.countries.items()
        },
    }


def pollution_report_to_dict(report) -> dict:
    top = report.most_polluted
    return {
        "lookback_days": report.lookback_days,
        "most_polluted": asdict(top) if top else None,
        "rankings": [dict(asdict(r), has_data=r.has_data) for r in report.rankings],
    }


def averages_to_dict(result) -> dict:
    return dict(asdict(result), measurement_count=result.measurement_count, has_data=result.has_data)


def cities_to_list(cities) -> list:
    return [asdict(c) for c in cities]


def _print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str, ensure_ascii=False))


# ── CLI ───────────────────────────────────────────────────────────────────────

def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="airq", description="Air quality ingestion and analytics")
    sub = parser.add_subparsers(dest="command", required=True)

    sub.add_parser("init-db", help="create tables and indexes")

    p_import = sub.add_parser("import", help="import daily measurements")
    p_import.add_argument("--days", type=int, required=True, help="number of days to import")

    sub.add_parser("most-polluted", help="country with the highest pollution index")

    p_avg = sub.add_parser("average", help="average per pollutant for one country")
    p_avg.add_argument("country")
    p_avg.add_argument("--days", type=int, default=None)

    p_city = sub.add_parser("measurements", help="latest values per city for one country")
    p_city.add_argument("country")
    return parser


def _install_signal_handlers(cancel_event: threading.Event) -> dict:
    """Route SIGINT/SIGTERM to the cancel event. Returns the previous handlers."""
    def _shutdown(sig, frame):
        logger.info("Shutdown signal (%s) — cancelling remaining import work.", sig)
        cancel_event.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _shutdown)
    return previous


def run_command(service, args, cancel_event: Optional[threading.Event] = None) -> int:
    if args.command == "init-db":
        service.init_schema()
        _print_json({"schema_initialized": service.store.is_schema_initialized()})
        return EXIT_OK

    if args.command == "import":
        report = service.import_data(args.days, cancel_event=cancel_event)
        data = import_report_to_dict(report)
        data["stored"] = service.store.row_counts()
        _print_json(data)
        return EXIT_CANCELLED if report.cancelled else EXIT_OK

    if args.command == "most-polluted":
        if not service.store.has_data():
            logger.warning("No measurements imported yet. Run `airq import --days N` first.")
            _print_json({"data_imported": False, "most_polluted": None, "rankings": []})
            return EXIT_OK
        data = pollution_report_to_dict(service.most_polluted())
        data["data_imported"] = True
        _print_json(data)
        return EXIT_OK

    if args.command == "average":
        _print_json(averages_to_dict(service.average(args.country, args.days)))
        return EXIT_OK

    if args.command == "measurements":
        _print_json(cities_to_list(service.measurements_by_city(args.country)))
        return EXIT_OK

    raise ValidationError(f"unknown command {args.command!r}")


def main(argv: Optional[List[str]] = None) -> int:
    from pipeline.service import AirQualityService

    args = build_parser().parse_args(argv)

    try:
        settings = Settings.from_env()
    except ConfigurationError as exc:
        configure_logging()
        logger.error("Configuration error: %s", exc)
        return EXIT_INVALID
    configure_logging(settings.log_level)

    cancel_event = threading.Event()
    previous_handlers = _install_signal_handlers(cancel_event)

    service = None
    try:
        service = AirQualityService.from_settings(settings)
        return run_command(service, args, cancel_event)
    except (ConfigurationError, ValidationError) as exc:
        logger.error("%s: %s", type(exc).__name__, exc)
        return EXIT_INVALID
    except AirQualityError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return EXIT_FAILED
    finally:
        if service is not None:
            service.close()
        for sig, handler in previous_handlers.items():
            if handler is not None:
                signal.signal(sig, handler)


if __name__ == "__main__":
    sys.exit(main())
