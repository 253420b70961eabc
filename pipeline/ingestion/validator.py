"""
Validation for daily measurements and for import/analytics requests.

Measurements:
- Required fields (sensor_id, date_utc, parameter_name) must be present
- Negative aggregate statistics are physically impossible and become None

Requests:
- Day counts must fall inside the configured window
- Country codes must belong to the supported set
"""

import dataclasses
import logging
from dataclasses import dataclass, field
from typing import Iterable, List, Tuple

from pipeline.errors import ValidationError
from pipeline.ingestion.provider import DailyMeasurement

logger = logging.getLogger(__name__)

STAT_FIELDS = ("value_avg", "value_min", "value_max")


@dataclass
class ValidationResult:
    """Result of validating a single DailyMeasurement."""
    is_valid: bool
    reasons: List[str] = field(default_factory=list)

    def add_error(self, msg: str):
        self.reasons.append(msg)
        self.is_valid = False

    def __str__(self) -> str:
        if self.is_valid:
            return "Valid"
        return "Invalid: " + "; ".join(self.reasons)


def validate_measurement(measurement: DailyMeasurement) -> ValidationResult:
    """Check that a measurement can be keyed and attributed."""
    result = ValidationResult(is_valid=True)

    if getattr(measurement, "sensor_id", None) is None:
        result.add_error("Missing required field: sensor_id")
    if getattr(measurement, "date_utc", None) is None:
        result.add_error("Missing required field: date_utc")
    if not getattr(measurement, "parameter_name", None):
        result.add_error("Missing required field: parameter_name")

    count = getattr(measurement, "measurement_count", None)
    if count is not None and count < 0:
        result.add_error(f"measurement_count={count} is negative")

    if not result.is_valid:
        logger.warning(
            "Validation failed for sensor %s: %s",
            getattr(measurement, "sensor_id", "unknown"),
            result.reasons,
        )
    return result


def clean_measurement(measurement: DailyMeasurement) -> DailyMeasurement:
    """Return a copy with negative statistics replaced by None."""
    changes = {}
    for name in STAT_FIELDS:
        value = getattr(measurement, name)
        if value is not None and value < 0:
            logger.warning(
                "Negative %s=%s for sensor %s on %s, storing NULL",
                name, value, measurement.sensor_id, measurement.date_utc,
            )
            changes[name] = None
    return dataclasses.replace(measurement, **changes) if changes else measurement


def normalize_measurements(
    measurements: Iterable[DailyMeasurement],
) -> Tuple[List[DailyMeasurement], int]:
    """Validate and clean a batch. Returns (accepted, rejected_count)."""
    accepted: List[DailyMeasurement] = []
    rejected = 0
    for m in measurements:
        if validate_measurement(m).is_valid:
            accepted.append(clean_measurement(m))
        else:
            rejected += 1
    return accepted, rejected


def validate_day_count(days, minimum: int, maximum: int) -> int:
    """
    Accept a day count inside [minimum, maximum].

    Raises:
        ValidationError: for non-integers and out-of-range values.
    """
    if isinstance(days, bool) or not isinstance(days, int):
        raise ValidationError(f"day count must be an integer, got {days!r}")
    if days < minimum or days > maximum:
        raise ValidationError(
            f"day count {days} is outside the supported range {minimum}..{maximum}"
        )
    return days


def validate_country(country_code, supported: Iterable[str]) -> str:
    """
    Normalise a country code and check it is supported.

    Raises:
        ValidationError: if the code is empty or not in the supported set.
    """
    code = str(country_code or "").strip().upper()
    supported = list(supported)
    if not code or code not in supported:
        raise ValidationError(
            f"unknown country code {country_code!r}; supported: {', '.join(supported)}"
        )
    return code
