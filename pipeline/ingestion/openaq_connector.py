"""
OpenAQ v3 API Connector.

Fetches locations by country, sensors by location and daily aggregated
measurements by sensor. Walks paginated responses and classifies every
failure as transient (retryable) or permanent. All wire-format parsing
stays in this module.
"""

import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

import httpx

from pipeline.errors import (
    ConfigurationError,
    PermanentRemoteError,
    TransientRemoteError,
)
from pipeline.ingestion.provider import (
    DailyMeasurement,
    DataProvider,
    LocationRecord,
    SensorRecord,
)

logger = logging.getLogger(__name__)

OPENAQ_BASE_URL = "https://api.openaq.org/v3"
REQUEST_TIMEOUT = 30  # seconds
PAGE_SIZE = 100
MAX_PAGE_SIZE = 1000
MAX_RETRY_AFTER = 60.0  # seconds


def _safe_float(val) -> Optional[float]:
    """Safely convert a value to float, returning None on failure."""
    if val is None or val == "-" or val == "":
        return None
    try:
        return float(val)
    except (TypeError, ValueError):
        return None


def _safe_int(val) -> Optional[int]:
    if val is None or isinstance(val, bool):
        return None
    try:
        return int(val)
    except (TypeError, ValueError):
        return None


def _parse_datetime(block: Optional[dict]) -> Optional[datetime]:
    """Parse a v3 {"utc": ..., "local": ...} block into a UTC datetime."""
    if not isinstance(block, dict):
        return None
    try:
        raw = block.get("utc", "")
        if raw:
            dt = datetime.fromisoformat(raw.replace("Z", "+00:00"))
            if dt.tzinfo is None:
                dt = dt.replace(tzinfo=timezone.utc)
            return dt.astimezone(timezone.utc)
    except (ValueError, AttributeError):
        pass
    return None


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    seconds = _safe_float(value)
    if seconds is None or seconds < 0:
        return None
    return min(seconds, MAX_RETRY_AFTER)


def _parse_location(item: dict) -> Optional[LocationRecord]:
    location_id = _safe_int(item.get("id"))
    country = item.get("country") or {}
    if location_id is None or not country.get("code"):
        logger.warning("Skipping location without id/country: %s", item.get("id"))
        return None

    coordinates = item.get("coordinates") or {}
    return LocationRecord(
        id=location_id,
        name=item.get("name"),
        country_code=str(country["code"]).upper(),
        country_name=country.get("name"),
        locality=item.get("locality"),
        timezone=item.get("timezone"),
        latitude=_safe_float(coordinates.get("latitude")),
        longitude=_safe_float(coordinates.get("longitude")),
        is_mobile=bool(item.get("isMobile", False)),
        is_monitor=bool(item.get("isMonitor", False)),
        owner_name=(item.get("owner") or {}).get("name"),
        provider_name=(item.get("provider") or {}).get("name"),
        datetime_first=_parse_datetime(item.get("datetimeFirst")),
        datetime_last=_parse_datetime(item.get("datetimeLast")),
    )


def _parse_sensor(item: dict, location_id: int) -> Optional[SensorRecord]:
    sensor_id = _safe_int(item.get("id"))
    parameter = item.get("parameter") or {}
    parameter_id = _safe_int(parameter.get("id"))
    if sensor_id is None or parameter_id is None or not parameter.get("name"):
        logger.warning(
            "Skipping sensor without id/parameter at location %s: %s",
            location_id, item.get("id"),
        )
        return None

    return SensorRecord(
        id=sensor_id,
        location_id=location_id,
        name=item.get("name") or f"Sensor {sensor_id}",
        parameter_id=parameter_id,
        parameter_name=parameter["name"],
        units=parameter.get("units") or "",
        display_name=parameter.get("displayName"),
    )


def _parse_daily(item: dict, sensor_id: int) -> Optional[DailyMeasurement]:
    period = item.get("period") or {}
    start = period.get("datetimeFrom") or {}
    date_utc = _parse_datetime(start)
    if date_utc is None:
        logger.warning("Skipping daily record without period start for sensor %s", sensor_id)
        return None

    parameter = item.get("parameter") or {}
    summary = item.get("summary") or {}
    coverage = item.get("coverage") or {}

    avg = _safe_float(summary.get("avg"))
    if avg is None:
        avg = _safe_float(item.get("value"))

    return DailyMeasurement(
        sensor_id=sensor_id,
        date_utc=date_utc,
        date_local=start.get("local") or date_utc.isoformat(),
        parameter_id=_safe_int(parameter.get("id")),
        parameter_name=parameter.get("name"),
        parameter_display_name=parameter.get("displayName"),
        unit=parameter.get("units") or "",
        value_avg=avg,
        value_min=_safe_float(summary.get("min")),
        value_max=_safe_float(summary.get("max")),
        measurement_count=_safe_int(coverage.get("observedCount")),
    )


class OpenAQConnector(DataProvider):
    """
    Live provider backed by the OpenAQ v3 REST API.

    One httpx.Client is shared by every call; it is safe to use from the
    importer's worker threads.
    """

    def __init__(
        self,
        api_key: Optional[str],
        base_url: str = OPENAQ_BASE_URL,
        timeout: float = REQUEST_TIMEOUT,
        page_size: int = PAGE_SIZE,
        client: Optional[httpx.Client] = None,
    ):
        if not api_key:
            raise ConfigurationError("OPENAQ_KEY not set; the OpenAQ connector needs an API key")
        self._headers = {"X-API-Key": api_key, "Accept": "application/json"}
        self._base_url = base_url.rstrip("/")
        self._page_size = max(1, min(page_size, MAX_PAGE_SIZE))
        self._owns_client = client is None
        self._client = client or httpx.Client(timeout=timeout)

    # ── HTTP ────────────────────────────────────────────────────────────────

    def _get(
        self, path: str, params: Optional[Dict[str, Any]] = None, auth_fatal: bool = False
    ) -> dict:
        """
        GET one endpoint and return the decoded JSON object.

        HTTP 401/403 is a ConfigurationError only when `auth_fatal` is set (the
        credential check); on entity endpoints it is a permanent error for
        that entity.
        """
        url = f"{self._base_url}{path}"

        try:
            resp = self._client.get(url, params=params, headers=self._headers)
        except httpx.TimeoutException as e:
            logger.warning("OpenAQ request timed out: %s", url)
            raise TransientRemoteError(f"timeout: {e}", url=url) from e
        except httpx.RequestError as e:
            logger.warning("OpenAQ network error for %s: %s", url, e)
            raise TransientRemoteError(f"network error: {e}", url=url) from e

        status = resp.status_code
        if status in (401, 403) and auth_fatal:
            logger.error("OpenAQ rejected the API key (HTTP %s). Check OPENAQ_KEY.", status)
            raise ConfigurationError(f"OpenAQ rejected the API key (HTTP {status})")
        if status == 429:
            retry_after = _parse_retry_after(resp.headers.get("Retry-After"))
            logger.warning("OpenAQ rate limit hit for %s (retry after %s)", url, retry_after)
            raise TransientRemoteError(
                "rate limited (HTTP 429)", status_code=status, url=url, retry_after=retry_after
            )
        if status >= 500:
            logger.warning("OpenAQ server error %s for %s", status, url)
            raise TransientRemoteError(f"server error (HTTP {status})", status_code=status, url=url)
        if status >= 400:
            logger.error("OpenAQ HTTP error %s for %s", status, url)
            raise PermanentRemoteError(f"HTTP {status}", status_code=status, url=url)

        try:
            payload = resp.json()
        except ValueError as e:
            logger.error("OpenAQ returned malformed JSON for %s", url)
            raise PermanentRemoteError("malformed JSON", status_code=status, url=url) from e

        if not isinstance(payload, dict):
            raise PermanentRemoteError("unexpected response shape", status_code=status, url=url)
        return payload

    def _paginate(
        self, path: str, params: Optional[Dict[str, Any]] = None, cap: Optional[int] = None
    ) -> List[dict]:
        """
        Walk result pages until exhaustion or until `cap` items were collected.

        Returns the flattened list of raw result objects in page order.
        """
        limit = self._page_size if cap is None else max(1, min(self._page_size, cap))
        items: List[dict] = []
        page = 1

        while True:
            query = dict(params or {})
            query.update({"limit": limit, "page": page})
            payload = self._get(path, query)

            results = payload.get("results")
            if not isinstance(results, list):
                raise PermanentRemoteError(f"response for {path} has no results list")

            items.extend(r for r in results if isinstance(r, dict))
            logger.debug("Fetched page %d of %s (%d items)", page, path, len(results))

            if cap is not None and len(items) >= cap:
                return items[:cap]
            if len(results) < limit:
                return items

            # "found" may be a number or a string like ">1000" when unknown
            found = _safe_int((payload.get("meta") or {}).get("found"))
            if found is not None and page * limit >= found:
                return items
            page += 1

    # ── DataProvider ────────────────────────────────────────────────────────

    def check_health(self) -> None:
        """One cheap authenticated request; an invalid key raises ConfigurationError."""
        self._get("/parameters", {"limit": 1}, auth_fatal=True)
        logger.info("OpenAQ credentials accepted")

    def fetch_locations(self, country_code: str, limit: int) -> List[LocationRecord]:
        raw = self._paginate("/locations", {"iso": country_code.upper()}, cap=limit)
        locations = [loc for loc in (_parse_location(item) for item in raw) if loc]
        logger.info("OpenAQ returned %d locations for %s", len(locations), country_code)
        return locations

    def fetch_sensors(self, location_id: int) -> List[SensorRecord]:
        raw = self._paginate(f"/locations/{location_id}/sensors")
        sensors = [s for s in (_parse_sensor(item, location_id) for item in raw) if s]
        logger.debug("OpenAQ returned %d sensors for location %s", len(sensors), location_id)
        return sensors

    def fetch_daily_measurements(
        self, sensor_id: int, date_from: datetime, date_to: datetime
    ) -> List[DailyMeasurement]:
        params = {
            "datetime_from": date_from.isoformat(),
            "datetime_to": date_to.isoformat(),
        }
        raw = self._paginate(f"/sensors/{sensor_id}/measurements/daily", params)
        measurements = [m for m in (_parse_daily(item, sensor_id) for item in raw) if m]
        logger.debug("OpenAQ returned %d daily rows for sensor %s", len(measurements), sensor_id)
        return measurements

    def close(self) -> None:
        if self._owns_client:
            self._client.close()
