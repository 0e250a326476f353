import os
import sys
import unittest
from datetime import datetime, timezone

sys.path.append(os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from core.models import MeasurementKind
from core.normalizer import normalize


OBSERVED = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


class TestMeasurementNormalizer(unittest.TestCase):
    def test_temperature_and_rain_without_rain_last_hour(self):
        measurements = normalize("st", {"temperature": 23.5, "rain": 0.2}, OBSERVED)

        by_kind = {m.kind: m for m in measurements}
        self.assertEqual(len(measurements), 2)
        self.assertEqual(by_kind[MeasurementKind.TEMPERATURE].value, 23.5)
        self.assertEqual(by_kind[MeasurementKind.RAIN].value, 0.2)
        self.assertNotIn(MeasurementKind.RAIN_LAST_HOUR, by_kind)

    def test_only_rain_last_hour_yields_single_measurement(self):
        measurements = normalize("st", {"rain_lastHour": 1.4}, OBSERVED)

        self.assertEqual(len(measurements), 1)
        self.assertEqual(measurements[0].kind, MeasurementKind.RAIN_LAST_HOUR)
        self.assertEqual(measurements[0].name, "rain_lastHour")
        self.assertEqual(measurements[0].unit, "mm")

    def test_rain_windows_stay_independent(self):
        measurements = normalize("st", {"rain": 0.0, "rain_lastHour": 2.5}, OBSERVED)

        values = {m.kind: m.value for m in measurements}
        self.assertEqual(values, {MeasurementKind.RAIN: 0.0, MeasurementKind.RAIN_LAST_HOUR: 2.5})

    def test_absent_non_numeric_and_non_finite_are_dropped(self):
        payload = {
            "temperature": None,
            "humidity": "n/a",
            "pressure": float("nan"),
            "wind_strength": float("inf"),
            "gust_strength": True,
            "rain": "",
        }

        self.assertEqual(normalize("st", payload, OBSERVED), [])

    def test_numeric_strings_are_accepted(self):
        measurements = normalize("st", {"pressure": " 1013.2 "}, OBSERVED)

        self.assertEqual(measurements[0].value, 1013.2)
        self.assertEqual(measurements[0].unit, "mbar")

    def test_unknown_fields_are_ignored(self):
        measurements = normalize("st", {"rain_24h": 5.0, "wind_angle": 210, "humidity": 60}, OBSERVED)

        self.assertEqual([m.kind for m in measurements], [MeasurementKind.HUMIDITY])

    def test_all_seven_kinds_carry_station_and_timestamp(self):
        payload = {
            "temperature": 1, "humidity": 2, "pressure": 3, "rain": 4,
            "rain_lastHour": 5, "wind_strength": 6, "gust_strength": 7,
        }

        measurements = normalize("70:ee", payload, OBSERVED)

        self.assertEqual(len(measurements), 7)
        self.assertTrue(all(m.station_id == "70:ee" for m in measurements))
        self.assertTrue(all(m.observed_at == OBSERVED for m in measurements))

    def test_non_mapping_payload_yields_nothing(self):
        self.assertEqual(normalize("st", None, OBSERVED), [])


if __name__ == "__main__":
    unittest.main()
