import threading

import pytest

from pilot_gateway.core.models import TelemetrySample
from pilot_gateway.errors import StorageError
from pilot_gateway.store import TelemetryStore


@pytest.fixture
def store():
    store = TelemetryStore(":memory:")
    yield store
    store.close()


def test_append_upserts_by_timestamp(store):
    store.append(TelemetrySample(timestamp=1000, latitude=1.0, received_at=1001))
    store.append(TelemetrySample(timestamp=1000, latitude=2.0, received_at=1002))

    samples = list(store.range(1000, 1000))

    assert len(samples) == 1
    assert samples[0].latitude == 2.0
    assert samples[0].received_at == 1002
    assert store.count() == 1


def test_range_is_inclusive_and_ordered(store):
    for timestamp in (30, 10, 20, 40):
        store.append(TelemetrySample(timestamp=timestamp, altitude=float(timestamp)))

    samples = list(store.range(10, 30))

    assert [sample.timestamp for sample in samples] == [10, 20, 30]
    assert [sample.timestamp for sample in store.range()] == [10, 20, 30, 40]


def test_range_is_a_restartable_snapshot(store):
    store.append(TelemetrySample(timestamp=1, latitude=1.0))
    result = store.range()

    store.append(TelemetrySample(timestamp=2, latitude=2.0))

    assert [sample.timestamp for sample in result] == [1]
    assert [sample.timestamp for sample in result] == [1]
    assert len(result) == 1


def test_latest_returns_highest_timestamp(store):
    assert store.latest() is None

    store.append(TelemetrySample(timestamp=5, attitude_heading=90.0))
    store.append(TelemetrySample(timestamp=3, attitude_heading=45.0))

    latest = store.latest()
    assert latest is not None
    assert latest.timestamp == 5
    assert latest.attitude_heading == 90.0


def test_concurrent_upserts_of_same_timestamp_keep_one_row(store):
    def writer(value: float) -> None:
        for _ in range(50):
            store.append(TelemetrySample(timestamp=77, latitude=value))

    threads = [threading.Thread(target=writer, args=(float(i),)) for i in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert store.count() == 1
    assert store.latest().latitude in {0.0, 1.0, 2.0, 3.0}


def test_file_store_persists_across_reopen(tmp_path):
    path = tmp_path / "data" / "telemetry.db"
    store = TelemetryStore(path)
    store.append(TelemetrySample(timestamp=9, vertical_speed=-1.5, received_at=10))
    store.close()

    reopened = TelemetryStore(path)
    try:
        sample = reopened.latest()
    finally:
        reopened.close()

    assert sample == TelemetrySample(timestamp=9, vertical_speed=-1.5, received_at=10)


def test_closed_store_raises_storage_error(store):
    store.close()

    with pytest.raises(StorageError):
        store.append(TelemetrySample(timestamp=1))
    with pytest.raises(StorageError):
        store.range()


def test_append_rejects_timestamp_beyond_integer_column(store):
    with pytest.raises(StorageError):
        store.append(TelemetrySample(timestamp=2**64, latitude=1.0))

    assert store.count() == 0
