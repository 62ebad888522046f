"""
用电画像测试
"""

from datetime import datetime, timedelta

from ecoquest.cognition.usage import UsageAnalyzer
from ecoquest.storage.models import DeviceReading, Reading

START = datetime(2024, 1, 1, 0, 0)


def _reading(hours, energy, power, geyser_kwh, power_factor=0.8):
    return Reading(
        timestamp=START + timedelta(hours=hours),
        power_kw=power,
        energy_kwh=energy,
        power_factor=power_factor,
        devices={"geyser": DeviceReading("appliance", 2.0, geyser_kwh, name="Water Heater")},
    )


class TestUsageAnalyzer:

    def test_empty_history(self):
        snapshot = UsageAnalyzer().build_snapshot([])
        assert snapshot.devices == []
        assert snapshot.total_consumption == 0.0
        assert snapshot.efficiency_score == 10.0

    def test_snapshot_from_readings(self):
        readings = [
            _reading(0, 100.0, 0.5, 10.0),
            _reading(19, 115.0, 3.0, 14.0),
            _reading(24, 120.0, 0.6, 16.0),
        ]
        snapshot = UsageAnalyzer().build_snapshot(readings)

        assert snapshot.total_consumption == 20.0
        assert snapshot.peak_usage_time == "19:00"
        assert snapshot.efficiency_score == 8.0
        assert snapshot.potential_savings == 3.0
        [geyser] = snapshot.devices
        assert geyser.device_id == "geyser"
        assert geyser.name == "Water Heater"
        assert geyser.average_usage == 6.0

    def test_duplicates_and_order_do_not_matter(self):
        readings = [
            _reading(24, 120.0, 0.6, 16.0),
            _reading(0, 100.0, 0.5, 10.0),
            _reading(0, 100.0, 0.5, 10.0),
        ]
        assert UsageAnalyzer().build_snapshot(readings).total_consumption == 20.0

    def test_trend(self):
        rising = [_reading(h, h, 0.5 if h < 2 else 2.0, 0.0) for h in range(4)]
        assert UsageAnalyzer().build_snapshot(rising).trend == "increasing"
        flat = [_reading(h, h, 1.0, 0.0) for h in range(4)]
        assert UsageAnalyzer().build_snapshot(flat).trend == "stable"

    def test_history_is_bounded(self):
        analyzer = UsageAnalyzer(history_size=2)
        for hours in range(5):
            analyzer.record("u1", _reading(hours, hours, 1.0, 0.0))
        assert [r.timestamp.hour for r in analyzer.history("u1")] == [3, 4]
        analyzer.forget("u1")
        assert analyzer.history("u1") == []
