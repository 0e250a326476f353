"""
Measurement normalizer.

Maps provider field names onto the closed MeasurementKind set. `rain` and
`rain_lastHour` are separate accumulation windows and stay separate kinds;
neither is ever derived from the other.
"""

import logging
import math
from datetime import datetime
from typing import Any, List, Mapping, Optional

from core.models import Measurement, MeasurementKind

logger = logging.getLogger("normalizer")


def _as_finite_float(value: Any) -> Optional[float]:
    # bool is an int subclass; a flag is not a reading
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        txt = value.strip()
        if not txt:
            return None
        try:
            number = float(txt)
        except ValueError:
            return None
    else:
        return None
    if not math.isfinite(number):
        return None
    return number


def normalize(station_id: str, payload: Mapping[str, Any], observed_at: datetime) -> List[Measurement]:
    """
    One Measurement per known field with a finite numeric value.

    Never raises. An empty result means the station answered without usable
    data; the caller decides how to report it.
    """
    measurements: List[Measurement] = []
    if not isinstance(payload, Mapping):
        return measurements

    for kind in MeasurementKind:
        if kind.field_name not in payload:
            continue
        value = _as_finite_float(payload[kind.field_name])
        if value is None:
            logger.debug(f"{station_id}: dropping {kind.field_name}={payload[kind.field_name]!r}")
            continue
        measurements.append(
            Measurement(
                station_id=station_id,
                kind=kind,
                value=value,
                unit=kind.unit,
                observed_at=observed_at,
            )
        )
    return measurements
