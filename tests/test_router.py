import json

from pilot_gateway.core.models import (
    CommandReply,
    PropertyReport,
    TelemetrySample,
    TopologyUpdate,
)
from pilot_gateway.errors import StorageError
from pilot_gateway.router import TopicRouter
from pilot_gateway.store import TelemetryStore

STATUS_TOPIC = "sys/product/RC-001/status"


def _topo(*serials: str) -> bytes:
    return json.dumps(
        {
            "method": "update_topo",
            "data": {"sub_devices": [{"sn": sn, "domain": "0"} for sn in serials]},
        }
    ).encode()


class BrokenStore:
    def __init__(self):
        self.calls = 0

    def append(self, sample):
        self.calls += 1
        raise StorageError("disk full")


def test_topology_updates_are_coalesced():
    router = TopicRouter(clock=lambda: 1)
    events: list = []
    router.events.add_listener(events.append)

    router.dispatch(STATUS_TOPIC, _topo("AC-001"))
    router.dispatch(STATUS_TOPIC, _topo("AC-001"))
    router.dispatch(STATUS_TOPIC, _topo("AC-001", "AC-002"))

    assert [type(event) for event in events] == [TopologyUpdate, TopologyUpdate]
    assert len(events[-1].sub_devices) == 2
    assert router.counters.topology_changes == 2
    assert router.counters.topology_suppressed == 1
    assert router.topologies()["RC-001"] is events[-1]

    router.reset()
    router.dispatch(STATUS_TOPIC, _topo("AC-001", "AC-002"))
    assert len(events) == 3


def test_osd_frames_are_stored_and_published():
    store = TelemetryStore(":memory:")
    router = TopicRouter(store=store, clock=lambda: 5000)
    samples: list = []
    router.telemetry.add_listener(samples.append)

    router.dispatch(
        "thing/product/AC-001/osd",
        b'{"timestamp": 4000, "data": {"latitude": 1.5, "longitude": 2.5}}',
    )

    assert len(samples) == 1
    assert isinstance(samples[0], TelemetrySample)
    assert samples[0].received_at == 5000
    assert store.latest() == samples[0]
    assert router.counters.telemetry == 1
    store.close()


def test_storage_failure_does_not_stop_dispatch():
    store = BrokenStore()
    router = TopicRouter(store=store, clock=lambda: 1)
    samples: list = []
    router.telemetry.add_listener(samples.append)

    router.dispatch("thing/product/AC-001/osd", b'{"timestamp": 1, "data": {"latitude": 1.0}}')
    router.dispatch("thing/product/AC-001/osd", b'{"timestamp": 2, "data": {"latitude": 2.0}}')

    assert store.calls == 2
    assert samples == []
    assert router.counters.storage_failures == 2
    assert isinstance(router.last_storage_error, StorageError)


def test_property_reports_reach_event_listeners():
    router = TopicRouter(clock=lambda: 1)
    events: list = []
    router.events.add_listener(events.append)

    router.dispatch("thing/product/AC-001/state", b'{"data": {"firmware_version": "1.0"}}')

    assert len(events) == 1
    assert isinstance(events[0], PropertyReport)
    assert router.counters.telemetry == 0


def test_replies_go_to_reply_handler():
    replies: list = []

    def handler(reply: CommandReply) -> bool:
        replies.append(reply)
        return True

    router = TopicRouter(reply_handler=handler)
    router.dispatch(
        "thing/product/RC-001/services_reply",
        b'{"tid": "t-1", "method": "noop", "data": {"result": 0}}',
    )

    assert [reply.transaction_id for reply in replies] == ["t-1"]
    assert router.counters.replies == 1


def test_malformed_frames_are_dropped():
    router = TopicRouter()
    samples: list = []
    events: list = []
    router.telemetry.add_listener(samples.append)
    router.events.add_listener(events.append)

    router.dispatch("thing/product/AC-001/osd", b"\x00garbage")
    router.dispatch("thing/product/AC-001/osd", b'{"latitude": 3.0}')

    assert router.counters.dropped == 1
    assert router.counters.dispatched == 2
    assert len(samples) == 1
    assert events == []


def test_out_of_range_timestamp_is_stored_under_receive_time():
    store = TelemetryStore(":memory:")
    router = TopicRouter(store=store, clock=lambda: 7000)

    router.dispatch("thing/product/AC-001/osd", b'{"latitude": 1.0, "timestamp": 1e19}')
    router.dispatch("thing/product/AC-001/osd", b"[" * 100000)

    assert store.latest().timestamp == 7000
    assert router.counters.telemetry == 1
    assert router.counters.dropped == 1
    assert router.counters.storage_failures == 0
    store.close()


def test_event_progress_reaches_listeners_not_reply_handler():
    replies: list = []
    router = TopicRouter(reply_handler=lambda reply: replies.append(reply) or True)
    events: list = []
    router.events.add_listener(events.append)

    router.dispatch(
        "thing/product/RC-001/events",
        b'{"tid": "t-2", "method": "flighttask_progress", "data": {"result": 0}}',
    )

    assert replies == []
    assert [event.method for event in events] == ["flighttask_progress"]
    assert router.counters.replies == 0
