import httpx
import pytest

from wrc.health import HealthMonitor, check_health
from wrc.instance_runtime import RuntimeCaller
from wrc.models import InstanceStatus, Probe
from wrc.registry import InstanceRegistry


@pytest.fixture
def registry(db, clock):
    return InstanceRegistry(db, clock=clock)


@pytest.fixture
def monitor(registry, db, clock):
    return HealthMonitor(registry, db, failure_threshold=3, window_s=30, clock=clock)


def _started(registry, iid="i1"):
    registry.add_pending(iid, "web", "rev1", {"app": "web"})
    registry.transition(iid, InstanceStatus.STARTING)
    return iid


def test_ready_probe_makes_instance_available(registry, monitor):
    iid = _started(registry)
    ev = monitor.observe(iid, Probe.READY)
    assert ev.previous == InstanceStatus.STARTING
    assert ev.current == InstanceStatus.READY
    assert registry.get(iid).available

    # Same observation again is not an event.
    assert monitor.observe(iid, Probe.READY) is None


def test_not_ready_probe_is_alive_but_unavailable(registry, monitor):
    iid = _started(registry)
    monitor.observe(iid, Probe.NOT_READY)
    rec = registry.get(iid)
    assert rec.status == InstanceStatus.READY
    assert not rec.available

    ev = monitor.observe(iid, Probe.READY)
    assert ev.ready
    assert registry.get(iid).available


def test_missed_probes_fail_instance_at_threshold(registry, monitor):
    iid = _started(registry)
    monitor.observe(iid, Probe.READY)

    assert monitor.observe(iid, Probe.UNKNOWN) is None
    assert monitor.observe(iid, Probe.UNKNOWN) is None
    ev = monitor.observe(iid, Probe.UNKNOWN)
    assert ev.current == InstanceStatus.FAILED
    rec = registry.get(iid)
    assert rec.status == InstanceStatus.FAILED
    assert not rec.ready
    assert "missed liveness" in rec.reason


def test_old_misses_fall_out_of_the_window(registry, monitor, clock):
    iid = _started(registry)
    monitor.observe(iid, Probe.READY)
    monitor.observe(iid, Probe.UNKNOWN)
    monitor.observe(iid, Probe.UNKNOWN)
    clock.advance(31)
    assert monitor.observe(iid, Probe.UNKNOWN) is None
    assert registry.get(iid).status == InstanceStatus.READY


def test_answer_resets_missed_count(registry, monitor):
    iid = _started(registry)
    monitor.observe(iid, Probe.UNKNOWN)
    monitor.observe(iid, Probe.UNKNOWN)
    monitor.observe(iid, Probe.READY)
    monitor.observe(iid, Probe.UNKNOWN)
    assert registry.get(iid).status == InstanceStatus.READY


def test_failed_instance_recovers(registry, monitor, db):
    iid = _started(registry)
    monitor.observe(iid, Probe.READY)
    for _ in range(3):
        monitor.observe(iid, Probe.UNKNOWN)

    ev = monitor.observe(iid, Probe.READY)
    assert ev.previous == InstanceStatus.FAILED
    assert ev.current == InstanceStatus.READY
    messages = [e["message"] for e in db.latest_events(workload="web")]
    assert any("recovered" in m for m in messages)
    assert any("became unhealthy" in m for m in messages)


def test_pending_and_terminating_instances_are_not_probed(registry, monitor):
    registry.add_pending("p1", "web", "rev1", {})
    assert monitor.observe("p1", Probe.READY) is None
    assert registry.get("p1").status == InstanceStatus.PENDING

    iid = _started(registry, "t1")
    registry.transition(iid, InstanceStatus.TERMINATING)
    assert monitor.observe(iid, Probe.READY) is None
    assert monitor.observe("unknown", Probe.READY) is None


def test_subscribers_receive_events(registry, monitor):
    seen = []
    monitor.subscribe(seen.append)
    iid = _started(registry)
    monitor.observe(iid, Probe.READY)
    assert [(e.instance_id, e.current) for e in seen] == [(iid, InstanceStatus.READY)]


def test_poll_probes_through_the_runtime(registry, monitor, runtime):
    caller = RuntimeCaller(runtime, timeout_s=5)
    try:
        up = _started(registry, "up")
        gone = _started(registry, "gone")
        registry.transition(up, runtime_ref="ref-up")
        runtime.instances[up] = {}

        events = monitor.poll(caller)
        assert [e.instance_id for e in events] == [up]
        assert registry.get(up).available
        # No container behind it: counted as a missed probe, not a failure yet.
        assert registry.get(gone).status == InstanceStatus.STARTING
    finally:
        caller.shutdown()


def _transport(status_code=200, payload=None, exc=None):
    def handler(request):
        if exc is not None:
            raise exc
        return httpx.Response(status_code, json=payload)

    return httpx.MockTransport(handler)


def test_check_health_statuses():
    url = "http://svc:8000/health"
    assert check_health(url, transport=_transport(200, {"status": "healthy"}))[0] == Probe.READY
    assert check_health(url, transport=_transport(200, {"status": "warming"}))[0] == Probe.NOT_READY
    probe, msg, _ = check_health(url, transport=_transport(503, {"status": "healthy"}))
    assert probe == Probe.NOT_READY
    assert msg == "HTTP 503"
    down = check_health(url, transport=_transport(exc=httpx.ConnectError("refused")))
    assert down[0] == Probe.UNKNOWN
    assert down[1] == "No response"
