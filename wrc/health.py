from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Callable

import httpx

from .alerts import instance_alert
from .db import Database
from .errors import InvalidTransition
from .instance_runtime import RuntimeCaller
from .models import InstanceRecord, InstanceStatus, Probe
from .registry import InstanceRegistry
from .runtime import RuntimeState
from .settings import settings

# Statuses whose liveness is tracked. Pending has nothing to probe yet and
# Terminating/Terminated are on their way out.
PROBED_STATUSES = frozenset({InstanceStatus.STARTING, InstanceStatus.READY, InstanceStatus.FAILED})


def check_health(
    url: str, timeout_s: float = 2.0, transport: httpx.BaseTransport | None = None
) -> tuple[Probe, str, float | None]:
    """Call an instance health endpoint.

    Expected JSON: {"status": "healthy"}. Any other answer means the process
    is alive but not traffic ready; no answer is a missed liveness signal.
    Returns (probe, message, latency_ms).
    """
    start = time.time()
    try:
        with httpx.Client(timeout=timeout_s, follow_redirects=False, transport=transport) as client:
            resp = client.get(url)
        latency_ms = round((time.time() - start) * 1000.0, 2)
        if resp.status_code != 200:
            return Probe.NOT_READY, f"HTTP {resp.status_code}", latency_ms
        try:
            data = resp.json()
        except ValueError:
            return Probe.NOT_READY, "Invalid JSON", latency_ms
        if isinstance(data, dict) and data.get("status") == "healthy":
            return Probe.READY, "Healthy", latency_ms
        return Probe.NOT_READY, f"Unhealthy payload: {data!r}", latency_ms
    except (httpx.ConnectError, httpx.TimeoutException):
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return Probe.UNKNOWN, "No response", latency_ms
    except httpx.HTTPError as e:
        latency_ms = round((time.time() - start) * 1000.0, 2)
        return Probe.UNKNOWN, f"Error: {type(e).__name__}: {e}", latency_ms


@dataclass(frozen=True)
class InstanceEvent:
    instance_id: str
    owner: str
    revision: str
    previous: InstanceStatus
    current: InstanceStatus
    ready: bool
    reason: str | None = None


class HealthMonitor:
    """Turns probe observations into lifecycle transitions and republishes them.

    Pending -> Starting -> Ready <-> Failed -> Terminating -> Terminated.
    Readiness (traffic eligibility) is a flag on the record, not a state: an
    instance answering NOT_READY is alive (Ready status) but not available.
    A Starting/Ready instance becomes Failed after ``failure_threshold``
    missed probes inside ``window_s``; a Failed one recovers on the next
    live signal unless it was terminated first.
    """

    def __init__(
        self,
        registry: InstanceRegistry,
        db: Database,
        state: RuntimeState | None = None,
        failure_threshold: int | None = None,
        window_s: float | None = None,
        clock: Callable[[], float] = time.time,
    ):
        self.registry = registry
        self.db = db
        self.state = state or RuntimeState()
        self.failure_threshold = max(1, failure_threshold or settings.probe_failure_threshold)
        self.window_s = window_s if window_s is not None else settings.probe_failure_window_s
        self.clock = clock
        self._subscribers: list[Callable[[InstanceEvent], None]] = []

    def subscribe(self, callback: Callable[[InstanceEvent], None]) -> None:
        self._subscribers.append(callback)

    def publish(self, before: InstanceRecord, after: InstanceRecord | None) -> InstanceEvent | None:
        """Report a status change made by anyone (probe, reconciler, runtime)."""
        if after is None or (before.status == after.status and before.ready == after.ready):
            return None
        ev = InstanceEvent(
            instance_id=after.id,
            owner=after.owner,
            revision=after.revision,
            previous=before.status,
            current=after.status,
            ready=after.ready,
            reason=after.reason,
        )
        if after.status == InstanceStatus.TERMINATED:
            self.state.forget(after.id)
        if before.status != after.status:
            if after.status == InstanceStatus.FAILED:
                self.db.log_event(
                    "WARN",
                    f"Instance {after.id} became unhealthy: {after.reason}",
                    workload=after.owner,
                    revision=after.revision,
                )
                if before.status == InstanceStatus.READY:
                    instance_alert(after.owner, after.id, False, after.reason or "")
            elif before.status == InstanceStatus.FAILED and after.status == InstanceStatus.READY:
                self.db.log_event("INFO", f"Instance {after.id} recovered", workload=after.owner, revision=after.revision)
                instance_alert(after.owner, after.id, True, "Recovered")
            else:
                self.db.log_event(
                    "INFO",
                    f"Instance {after.id}: {before.status.value} -> {after.status.value}",
                    workload=after.owner,
                    revision=after.revision,
                )
        for cb in list(self._subscribers):
            cb(ev)
        return ev

    def observe(self, instance_id: str, probe: Probe) -> InstanceEvent | None:
        """Feed one liveness/readiness observation (push from the runtime or a poll result)."""
        rec = self.registry.get(instance_id)
        if rec is None or rec.status not in PROBED_STATUSES:
            return None

        alive = probe != Probe.UNKNOWN
        misses = self.state.mark_probe(instance_id, alive, self.clock(), self.window_s)
        try:
            if alive:
                ready = probe == Probe.READY
                if rec.status == InstanceStatus.READY and rec.ready == ready:
                    return None
                after = self.registry.transition(
                    instance_id,
                    InstanceStatus.READY,
                    expected={rec.status},
                    ready=ready,
                    reason=None,
                    failed_op=None,
                )
            elif rec.status != InstanceStatus.FAILED and misses >= self.failure_threshold:
                after = self.registry.transition(
                    instance_id,
                    InstanceStatus.FAILED,
                    expected={rec.status},
                    reason=f"{misses} missed liveness probes within {self.window_s:.0f}s",
                    failed_op=None,
                )
            else:
                return None
        except InvalidTransition:
            # The reconciler moved the record meanwhile; the next observation will see it.
            return None
        return self.publish(rec, after)

    def poll(self, caller: RuntimeCaller) -> list[InstanceEvent]:
        """Poll-mode feed: probe every instance that has a process to probe."""
        events: list[InstanceEvent] = []
        for rec in self.registry.list_live():
            if rec.status not in PROBED_STATUSES or rec.failed_op == "create":
                continue
            ev = self.observe(rec.id, caller.probe(rec.id))
            if ev is not None:
                events.append(ev)
        return events
