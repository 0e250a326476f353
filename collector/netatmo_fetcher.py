"""
Netatmo Crawler - Public station fetcher
Reads the latest public measures of one weathermap station.

Data flow:
  1. POST device_id to the public-measure endpoint with the bearer token.
  2. Classify the HTTP outcome (auth / transient / permanent).
  3. Flatten the per-module measure blocks into provider field names.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Optional, Tuple

import httpx

from config import NETATMO_MEASURE_URL
from core.errors import AuthenticationError, PermanentError, TransientError
from core.models import UTC, Credential, RawPayload, StationDescriptor

logger = logging.getLogger("netatmo_fetcher")

# Rain/wind modules report under their own names; these are renamed to the
# field names the rest of the pipeline knows.
_FIELD_ALIASES = {
    "rain_live": "rain",
    "rain_60min": "rain_lastHour",
}

_TIMESTAMP_FIELDS = ("rain_timeutc", "wind_timeutc", "time_utc")


def _epoch_to_utc(value: Any) -> Optional[datetime]:
    try:
        return datetime.fromtimestamp(int(value), tz=UTC)
    except (TypeError, ValueError, OverflowError, OSError):
        return None


def _newest(current: Optional[datetime], candidate: Optional[datetime]) -> Optional[datetime]:
    if candidate is None:
        return current
    if current is None or candidate > current:
        return candidate
    return current


def _flatten_module(module: Dict[str, Any], fields: Dict[str, Any]) -> Optional[datetime]:
    """Copy one module block into `fields`; returns the newest timestamp seen."""
    newest = None
    res = module.get("res")
    types = module.get("type")
    if isinstance(res, dict) and isinstance(types, list) and res:
        latest_epoch = None
        for epoch in res:
            try:
                epoch_value = int(epoch)
            except (TypeError, ValueError):
                continue
            if latest_epoch is None or epoch_value > int(latest_epoch):
                latest_epoch = epoch
        if latest_epoch is not None:
            values = res.get(latest_epoch) or []
            for name, value in zip(types, values):
                fields[_FIELD_ALIASES.get(name, name)] = value
            newest = _newest(newest, _epoch_to_utc(latest_epoch))

    for name, value in module.items():
        if name in ("res", "type"):
            continue
        if name in _TIMESTAMP_FIELDS:
            newest = _newest(newest, _epoch_to_utc(value))
            continue
        fields[_FIELD_ALIASES.get(name, name)] = value
    return newest


def flatten_public_measures(data: Any) -> Tuple[Dict[str, Any], Optional[datetime]]:
    """
    Flatten a getpublicmeasure body into {field_name: value}.

    Accepts the provider shape {"body": [{"measures": {<module>: {...}}}]}
    as well as an already-flat mapping. Unknown fields are kept as-is.
    """
    if not isinstance(data, dict):
        return {}, None

    body = data.get("body", data)
    if isinstance(body, list):
        station = body[0] if body and isinstance(body[0], dict) else {}
    elif isinstance(body, dict):
        station = body
    else:
        return {}, None

    measures = station.get("measures")
    if not isinstance(measures, dict):
        # Already flat
        fields = {k: v for k, v in station.items() if k not in ("status", "time_server")}
        return fields, None

    fields: Dict[str, Any] = {}
    observed_at = None
    for module in measures.values():
        if isinstance(module, dict):
            observed_at = _newest(observed_at, _flatten_module(module, fields))
    return fields, observed_at


class StationFetcher:
    """One bounded-timeout read per call. Retries belong to the coordinator."""

    def __init__(
        self,
        client: httpx.AsyncClient,
        measure_url: str = NETATMO_MEASURE_URL,
        timeout_seconds: float = 10.0,
    ):
        self.client = client
        self.measure_url = measure_url
        self.timeout_seconds = float(timeout_seconds)

    async def fetch(self, descriptor: StationDescriptor, credential: Credential) -> RawPayload:
        station_id = descriptor.station_id
        headers = {"Authorization": f"Bearer {credential.token}"}
        try:
            response = await self.client.post(
                self.measure_url,
                data={"device_id": station_id},
                headers=headers,
                timeout=self.timeout_seconds,
            )
        except httpx.TimeoutException as e:
            raise TransientError(f"Timeout fetching {station_id}") from e
        except httpx.HTTPError as e:
            raise TransientError(f"Transport failure fetching {station_id}: {e!r}") from e

        status = response.status_code
        if status in (401, 403):
            raise AuthenticationError(f"Provider rejected token for {station_id} (HTTP {status})", status_code=status)
        if status >= 500:
            raise TransientError(f"Provider error for {station_id} (HTTP {status})", status_code=status)
        if status >= 400:
            raise PermanentError(f"Station {station_id} refused (HTTP {status})", status_code=status)
        if status < 200 or status >= 300:
            raise TransientError(f"Unexpected HTTP {status} for {station_id}", status_code=status)

        try:
            data = response.json()
        except ValueError as e:
            raise TransientError(f"Unparseable body for {station_id}", status_code=status) from e

        fields, observed_at = flatten_public_measures(data)
        logger.debug(f"{station_id}: {len(fields)} raw fields")
        return RawPayload(station_id=station_id, fields=fields, observed_at=observed_at)
