from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from zoneinfo import ZoneInfo

from core.errors import ErrorKind

UTC = ZoneInfo("UTC")

CONNECTION_KEY = "info.connection"
LAST_UPDATE_NAME = "lastUpdate"


class MeasurementKind(Enum):
    """
    Closed set of measurements republished per station.
    Each member carries (provider field, state name, unit).
    """
    TEMPERATURE = ("temperature", "temperature", "°C")
    HUMIDITY = ("humidity", "humidity", "%")
    PRESSURE = ("pressure", "pressure", "mbar")
    RAIN = ("rain", "rain", "mm")
    RAIN_LAST_HOUR = ("rain_lastHour", "rain_lastHour", "mm")
    WIND_STRENGTH = ("wind_strength", "windStrength", "km/h")
    GUST_STRENGTH = ("gust_strength", "gustStrength", "km/h")

    def __init__(self, field_name: str, state_name: str, unit: str):
        self.field_name = field_name
        self.state_name = state_name
        self.unit = unit

    @classmethod
    def from_field(cls, field_name: str) -> Optional["MeasurementKind"]:
        return _KIND_BY_FIELD.get(field_name)


_KIND_BY_FIELD: Dict[str, MeasurementKind] = {kind.field_name: kind for kind in MeasurementKind}


@dataclass(frozen=True)
class StationDescriptor:
    raw_locator: str
    station_id: str
    display_name: str


@dataclass(frozen=True)
class Credential:
    token: str
    expires_at: datetime

    def is_valid(self, now: datetime) -> bool:
        """A credential at or past its expiry is never handed out."""
        return now < self.expires_at


@dataclass
class RawPayload:
    """Provider response flattened to provider field names."""
    station_id: str
    fields: Dict[str, Any] = field(default_factory=dict)
    observed_at: Optional[datetime] = None


@dataclass(frozen=True)
class Measurement:
    station_id: str
    kind: MeasurementKind
    value: float
    unit: str
    observed_at: datetime

    @property
    def name(self) -> str:
        return self.kind.state_name


@dataclass(frozen=True)
class PublishedState:
    station_id: str
    name: str
    value: Any
    ack: bool = True
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class StateWrite:
    """Intention for the state store: key is `stationName.measurementName`."""
    key: str
    station_id: str
    name: str
    value: Any
    ack: bool
    timestamp: datetime


@dataclass(frozen=True)
class StationError:
    station_id: str
    kind: ErrorKind
    message: str = ""


@dataclass
class RunOutcome:
    station_id: str
    succeeded: bool
    error: Optional[ErrorKind] = None
    measurement_count: int = 0
    attempts: int = 0


class RunState(str, Enum):
    IDLE = "idle"
    ACQUIRING = "acquiring"
    FETCHING = "fetching"
    DONE = "done"


@dataclass
class RunResult:
    connected: bool = False
    writes: List[StateWrite] = field(default_factory=list)
    outcomes: List[RunOutcome] = field(default_factory=list)
    errors: List[StationError] = field(default_factory=list)
    state: RunState = RunState.IDLE

    @property
    def succeeded_count(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome.succeeded)


# Keyed `stationName.measurementName`, the same keys the state store uses.
PreviousStates = Dict[str, PublishedState]
