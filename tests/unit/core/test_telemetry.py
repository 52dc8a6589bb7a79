"""Unit tests for datagram classification and the telemetry store."""

import pytest

from drone_relay.core.state import DeviceSession
from drone_relay.core.telemetry import DatagramKind, TelemetryStore, classify_datagram


class TestClassifyDatagram:

    @pytest.mark.parametrize("payload", ["87", "0", "100", "-3", "42.5"])
    def test_numeric_payload_is_battery(self, payload):
        assert classify_datagram(payload) is DatagramKind.BATTERY

    def test_speed_wins_over_time(self):
        # "cm/s" also contains an "s"
        assert classify_datagram("10cm/s") is DatagramKind.SPEED

    def test_time(self):
        assert classify_datagram("15s") is DatagramKind.TIME

    @pytest.mark.parametrize("payload", ["ok", "error", "", "100x"])
    def test_everything_else_is_an_acknowledgement(self, payload):
        assert classify_datagram(payload) is DatagramKind.ACK

    def test_only_ack_is_not_telemetry(self):
        assert not DatagramKind.ACK.is_telemetry
        assert DatagramKind.BATTERY.is_telemetry
        assert DatagramKind.SPEED.is_telemetry
        assert DatagramKind.TIME.is_telemetry


class TestTelemetryStore:

    def test_apply_updates_matching_field(self):
        session = DeviceSession()
        store = TelemetryStore(session, clock=lambda: 1000)

        store.apply(DatagramKind.BATTERY, "87")
        store.apply(DatagramKind.SPEED, "10cm/s")
        store.apply(DatagramKind.TIME, "15s")

        assert store.snapshot() == {
            "battery": 87,
            "speed": "10cm/s",
            "time": "15s",
            "lastUpdate": 1000,
        }

    def test_latest_datagram_wins(self):
        store = TelemetryStore(DeviceSession(), clock=lambda: 1)
        store.apply(DatagramKind.BATTERY, "87")
        store.apply(DatagramKind.BATTERY, "86")
        assert store.snapshot()["battery"] == 86

    def test_last_update_never_goes_backwards(self):
        readings = iter([5000, 7000, 6000, 6500, 9000])
        store = TelemetryStore(DeviceSession(), clock=lambda: next(readings))

        stamps = [store.apply(DatagramKind.TIME, f"{i}s")["lastUpdate"] for i in range(5)]

        assert stamps == [5000, 7000, 7000, 7000, 9000]
        assert stamps == sorted(stamps)

    def test_listener_receives_each_snapshot_in_order(self):
        seen = []
        store = TelemetryStore(DeviceSession(), on_update=seen.append, clock=lambda: 1)

        store.apply(DatagramKind.BATTERY, "50")
        store.apply(DatagramKind.TIME, "3s")

        assert [s["battery"] for s in seen] == [50, 50]
        assert [s["time"] for s in seen] == [None, "3s"]

    def test_listener_failure_does_not_block_update(self):
        def broken(snapshot):
            raise RuntimeError("boom")

        store = TelemetryStore(DeviceSession(), on_update=broken, clock=lambda: 1)
        store.apply(DatagramKind.BATTERY, "20")

        assert store.snapshot()["battery"] == 20

    def test_snapshot_is_a_fresh_read(self):
        session = DeviceSession()
        store = TelemetryStore(session, clock=lambda: 1)
        before = store.snapshot()

        store.apply(DatagramKind.BATTERY, "33")

        assert before["battery"] is None
        assert store.snapshot()["battery"] == 33
        assert session.telemetry.battery == 33

    def test_ack_is_rejected(self):
        store = TelemetryStore(DeviceSession())
        with pytest.raises(ValueError):
            store.apply(DatagramKind.ACK, "ok")

    def test_overflowing_battery_reading_is_ignored(self):
        updates = []
        store = TelemetryStore(DeviceSession(), on_update=updates.append, clock=lambda: 1)
        store.apply(DatagramKind.BATTERY, "50")

        snapshot = store.apply(DatagramKind.BATTERY, "1e400")

        assert snapshot["battery"] == 50
        assert len(updates) == 1
