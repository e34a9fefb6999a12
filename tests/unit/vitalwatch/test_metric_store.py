"""Tests for the bounded per-domain metric store."""

import threading
from datetime import UTC, datetime, timedelta

from hypothesis import given
from hypothesis import strategies as st

from vitalwatch.domain.models import Reading, SignalDomain
from vitalwatch.services.metric_store import MetricStore, RollingWindow


def _hr(value: float, offset: int = 0) -> Reading:
    return Reading(
        domain=SignalDomain.CARDIAC,
        values={"heart_rate": value},
        timestamp=datetime.now(UTC) + timedelta(seconds=offset),
    )


class TestRollingWindow:
    def test_default_capacity_is_one_hundred(self) -> None:
        window = RollingWindow()
        for i in range(101):
            window.append(_hr(60 + i % 40, offset=i))

        assert len(window) == 100
        assert window.evicted == 1

    def test_eviction_is_fifo(self) -> None:
        window = RollingWindow(capacity=3)
        readings = [_hr(v, offset=i) for i, v in enumerate([61, 62, 63, 64])]
        for r in readings:
            window.append(r)

        assert window.snapshot() == tuple(readings[1:])
        assert window.latest() == readings[-1]

    @given(st.integers(min_value=1, max_value=20), st.integers(min_value=0, max_value=60))
    def test_never_exceeds_capacity(self, capacity: int, appends: int) -> None:
        window = RollingWindow(capacity=capacity)
        for i in range(appends):
            window.append(_hr(70, offset=i))

        assert len(window) == min(capacity, appends)
        assert window.evicted == max(0, appends - capacity)


class TestMetricStore:
    def test_ingest_routes_by_domain(self) -> None:
        store = MetricStore()
        store.ingest(_hr(72))
        store.ingest(Reading(domain=SignalDomain.RESPIRATORY, values={"spo2": 97}))

        counts = store.counts()
        assert counts[SignalDomain.CARDIAC] == 1
        assert counts[SignalDomain.RESPIRATORY] == 1
        assert counts[SignalDomain.AUDIO] == 0

    def test_mapping_input_is_validated(self) -> None:
        store = MetricStore()

        assert store.ingest({"domain": "cardiac", "values": {"heart_rate": 80}})
        assert store.latest(SignalDomain.CARDIAC) is not None

    def test_malformed_input_dropped_without_raising(self) -> None:
        store = MetricStore()

        assert not store.ingest({"domain": "cardiac", "values": {"heart_rate": float("nan")}})
        assert not store.ingest({"domain": "telepathy", "values": {"x": 1}})
        assert not store.ingest({"domain": "behavioral", "values": {"mood": 1}})

        assert store.rejected == 3
        assert all(count == 0 for count in store.counts().values())

    def test_snapshot_is_isolated_from_later_writes(self) -> None:
        store = MetricStore()
        store.ingest(_hr(70))

        snapshot = store.snapshot_all()
        store.ingest(_hr(90, offset=1))

        assert len(snapshot.readings(SignalDomain.CARDIAC)) == 1
        assert snapshot.vitals().heart_rate == 70

    def test_vitals_reduce_motion_to_peak(self) -> None:
        store = MetricStore()
        for i, g in enumerate([1.0, 4.2, 1.1]):
            store.ingest(
                Reading(
                    domain=SignalDomain.MOTION,
                    values={"acceleration_g": g},
                    timestamp=datetime.now(UTC) + timedelta(seconds=i),
                )
            )

        assert store.snapshot_all().vitals(motion_lookback=10).peak_acceleration_g == 4.2
        assert store.snapshot_all().vitals(motion_lookback=1).peak_acceleration_g == 1.1

    def test_concurrent_ingest_keeps_capacity(self) -> None:
        store = MetricStore(capacity=50)

        def writer() -> None:
            for i in range(200):
                store.ingest(_hr(70, offset=i))

        threads = [threading.Thread(target=writer) for _ in range(4)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert store.counts()[SignalDomain.CARDIAC] == 50
