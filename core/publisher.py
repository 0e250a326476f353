"""
Change publisher.

Diffs fresh measurements against the last published values and returns the
state writes to perform. Performs no I/O.
"""

from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional

from core.models import (
    LAST_UPDATE_NAME,
    Measurement,
    PreviousStates,
    PublishedState,
    StateWrite,
)


def state_key(display_name: str, name: str) -> str:
    return f"{display_name}.{name}"


class ChangePublisher:
    def __init__(self, epsilon: float = 0.0, display_names: Optional[Mapping[str, str]] = None):
        """
        Args:
            epsilon: Minimum absolute change that counts as a new value.
                0.0 publishes any difference.
            display_names: station_id -> state prefix (station1, ...).
                Stations missing here use their raw id.
        """
        self.epsilon = max(0.0, float(epsilon))
        self.display_names: Dict[str, str] = dict(display_names or {})

    def _prefix(self, station_id: str) -> str:
        return self.display_names.get(station_id, station_id)

    def keys_for(self, station_id: str, current: Iterable[Measurement]) -> List[str]:
        """State keys a publish for `station_id` may touch."""
        prefix = self._prefix(station_id)
        return [state_key(prefix, m.name) for m in current if m.station_id == station_id]

    def _changed(self, station_id: str, new_value: float, previous: Optional[PublishedState]) -> bool:
        if previous is None:
            return True
        # Key last written for another station (order or naming changed)
        if previous.station_id and previous.station_id != station_id:
            return True
        try:
            old_value = float(previous.value)
        except (TypeError, ValueError):
            return True
        if new_value == old_value:
            return False
        return abs(new_value - old_value) > self.epsilon

    def publish(
        self,
        current: List[Measurement],
        previous: PreviousStates,
        seen_stations: Iterable[str] = (),
        seen_at: Optional[datetime] = None,
    ) -> List[StateWrite]:
        """
        Writes for changed values plus one last-seen write per station.

        `previous` is keyed by state key (`station1.temperature`), so each
        value is compared with whatever that key currently holds.

        `seen_stations` lists stations fetched successfully whose payload may
        have yielded no measurements; they still get their last-seen write.
        The last-seen stamp is `seen_at` when given, otherwise the newest
        observation of the station.
        """
        writes: List[StateWrite] = []
        last_seen: Dict[str, datetime] = {}

        for measurement in current:
            station_id = measurement.station_id
            stamp = seen_at or measurement.observed_at
            if station_id not in last_seen or stamp > last_seen[station_id]:
                last_seen[station_id] = stamp

            key = state_key(self._prefix(station_id), measurement.name)
            if not self._changed(station_id, measurement.value, previous.get(key)):
                continue
            writes.append(
                StateWrite(
                    key=key,
                    station_id=station_id,
                    name=measurement.name,
                    value=measurement.value,
                    ack=True,
                    timestamp=measurement.observed_at,
                )
            )

        for station_id in seen_stations:
            if station_id not in last_seen and seen_at is not None:
                last_seen[station_id] = seen_at

        for station_id, stamp in last_seen.items():
            writes.append(
                StateWrite(
                    key=state_key(self._prefix(station_id), LAST_UPDATE_NAME),
                    station_id=station_id,
                    name=LAST_UPDATE_NAME,
                    value=stamp.isoformat(),
                    ack=True,
                    timestamp=stamp,
                )
            )
        return writes


def apply(previous: PreviousStates, writes: Iterable[StateWrite]) -> PreviousStates:
    """Fold writes into a copy of the snapshot."""
    updated = dict(previous)
    for write in writes:
        updated[write.key] = PublishedState(
            station_id=write.station_id,
            name=write.name,
            value=write.value,
            ack=write.ack,
            timestamp=write.timestamp,
        )
    return updated
