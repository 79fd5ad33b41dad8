from __future__ import annotations

import time
from concurrent.futures import ThreadPoolExecutor
from threading import Event, Lock, Thread
from typing import Callable

from .db import Database
from .errors import NotFoundError, ValidationError
from .health import HealthMonitor, InstanceEvent
from .instance_runtime import InstanceRuntime, RuntimeCaller
from .models import (
    InstanceStatus,
    RevisionEntry,
    RolloutOutcome,
    RolloutPhase,
    WorkloadSpec,
    WorkloadStatus,
)
from .reconciler import Reconciler, ReconcileResult
from .registry import InstanceRegistry, InstanceView
from .rollouts import FleetCounts, RolloutController
from .runtime import RuntimeState
from .scaling import MetricSample, ScalingController
from .settings import settings
from .store import WorkloadStore


class ControlPlane:
    """Wires the stores and controllers together.

    Write boundary: apply_workload, scale_workload, delete_workload,
    rollback_workload (and autoscale). Observation boundary:
    get_workload_status, list_instances. The reconciler never originates a
    desired-state change; only these entry points do.
    """

    def __init__(
        self,
        runtime: InstanceRuntime,
        db: Database | None = None,
        clock: Callable[[], float] = time.time,
        runtime_timeout_s: float | None = None,
    ):
        self.db = db or Database()
        self.db.init_db()
        self.clock = clock
        self.state = RuntimeState()
        self.store = WorkloadStore(self.db)
        self.registry = InstanceRegistry(self.db, clock=clock)
        self.caller = RuntimeCaller(runtime, timeout_s=runtime_timeout_s)
        self.monitor = HealthMonitor(self.registry, self.db, state=self.state, clock=clock)
        self.reconciler = Reconciler(
            self.store, self.registry, self.caller, self.db, state=self.state, monitor=self.monitor, clock=clock
        )
        self.rollouts = RolloutController(self.store, self.registry, self.db, state=self.state, clock=clock)
        self.scaling = ScalingController(self.store, self.db)

    # -- write boundary ----------------------------------------------------

    def apply_workload(self, spec: WorkloadSpec) -> WorkloadSpec:
        """Create the workload or update it in place. A template change starts a rollout."""
        spec.validate()
        existing = self.store.find(spec.name)
        if existing is None:
            created = self.store.create(spec.with_changes(version=0))
            self.db.log_event("INFO", "Workload created", workload=spec.name, revision=created.template_hash)
            return created
        if existing.deleted:
            raise ValidationError(f"Workload '{spec.name}' is still being deleted.")

        def mutate(cur: WorkloadSpec) -> WorkloadSpec | None:
            new = spec.with_changes(version=cur.version, deleted=False, rollout=cur.rollout)
            if new == cur:
                return None
            if cur.template_hash != new.template_hash:
                new = self.rollouts.begin(new, cur.template_hash)
            return new

        return self.store.update(spec.name, mutate)

    def scale_workload(self, name: str, replicas: int) -> WorkloadSpec:
        return self.scaling.set_desired_replicas(name, replicas)

    def autoscale(self, name: str, sample: MetricSample) -> int:
        return self.scaling.evaluate_policy(name, sample)

    def delete_workload(self, name: str) -> WorkloadSpec:
        """Tombstone the workload: cancel its rollout and terminate every instance it owns."""

        def mutate(cur: WorkloadSpec) -> WorkloadSpec | None:
            if cur.deleted:
                return None
            return self.rollouts.cancel(cur).with_changes(deleted=True)

        spec = self.store.update(name, mutate)
        self.scaling.unregister_policy(name)
        self.db.log_event("INFO", "Workload deletion requested", workload=name)
        return spec

    def rollback_workload(self, name: str, revision: int | None = None) -> WorkloadSpec:
        target, entry = self.rollouts.rollback_target(name, revision)
        abandoned = [e for e in self.store.history(name) if e.template_hash != entry.template_hash]

        def mutate(cur: WorkloadSpec) -> WorkloadSpec | None:
            new = cur.with_changes(template=target.template, selector=target.selector)
            return self.rollouts.begin(new, cur.template_hash, rollback=True)

        spec = self.store.update(name, mutate)
        if abandoned:
            self.store.set_outcome(name, abandoned[-1].number, RolloutOutcome.ROLLED_BACK)
        return spec

    # -- observation boundary ----------------------------------------------

    def get_workload_status(self, name: str) -> WorkloadStatus:
        spec = self.store.find(name)
        if spec is None:
            raise NotFoundError(f"Unknown workload '{name}'")
        instances = list(self.registry.iter_instances(name))
        counts = FleetCounts.observe(spec, instances)
        members = [r for r in instances if r.live and spec.claims(r)]
        return WorkloadStatus(
            name=name,
            desired=0 if spec.deleted else spec.replicas,
            ready=sum(1 for r in members if r.status == InstanceStatus.READY),
            updated=counts.live_cur,
            available=counts.available_cur + counts.available_old,
            phase=spec.rollout.phase,
            stalled=spec.rollout.stalled,
            revision=spec.template_hash,
            deleted=spec.deleted,
            alerts=tuple(r.id for r in members if r.alert),
        )

    def list_instances(self, name: str) -> InstanceView:
        return self.registry.view(name)

    def list_workloads(self) -> list[WorkloadSpec]:
        return self.store.list(include_deleted=True)

    def revision_history(self, name: str) -> list[RevisionEntry]:
        if self.store.find(name) is None:
            raise NotFoundError(f"Unknown workload '{name}'")
        return self.store.history(name)

    def events(self, limit: int = 100, workload: str | None = None) -> list[dict]:
        return self.db.latest_events(limit=limit, workload=workload)

    # -- one pass ----------------------------------------------------------

    def sync(self, name: str) -> ReconcileResult:
        """One full pass for a workload: rollout step, then reconciliation."""
        spec = self.store.find(name)
        if spec is not None and not spec.deleted and spec.rollout.phase != RolloutPhase.IDLE:
            self.rollouts.step(name)
        return self.reconciler.reconcile(name)

    def known_workloads(self) -> list[str]:
        """Workloads in the store plus owners of instances left behind by purged ones."""
        names = {s.name for s in self.store.list()}
        return sorted(names | self.registry.owners())

    def close(self) -> None:
        self.caller.shutdown()


class ControlLoop:
    """Drives ControlPlane.sync from a periodic timer and from change notifications.

    Passes for different workloads run concurrently on a thread pool. At most
    one pass per workload is in flight; a trigger arriving meanwhile is
    coalesced into a single follow-up pass rather than dropped.
    """

    def __init__(self, plane: ControlPlane, interval_s: float | None = None, workers: int | None = None):
        self.plane = plane
        self.interval_s = max(0.05, interval_s if interval_s is not None else settings.poll_interval_s)
        self._pool = ThreadPoolExecutor(max_workers=max(1, workers or settings.workers), thread_name_prefix="wrc-sync")
        self._lock = Lock()
        self._in_flight: set[str] = set()
        self._dirty: set[str] = set()
        self._idle = Event()
        self._idle.set()
        self._stop = Event()
        self._stop.set()  # triggers are ignored until start()
        self._thr: Thread | None = None
        self.passes = 0

        plane.store.subscribe(self.trigger)
        plane.monitor.subscribe(self._on_instance_event)

    def start(self, timer: bool = True) -> None:
        """Accept triggers; with ``timer`` also re-scan every workload each interval."""
        if self._thr and self._thr.is_alive():
            return
        self._stop.clear()
        if not timer:
            return
        self._thr = Thread(target=self._loop, daemon=True, name="wrc-timer")
        self._thr.start()

    def stop(self, wait: bool = True) -> None:
        self._stop.set()
        if self._thr is not None and wait:
            self._thr.join(timeout=self.interval_s * 2)
        self._pool.shutdown(wait=wait)

    def _loop(self) -> None:
        self.plane.db.log_event("INFO", "Control loop started")
        while not self._stop.is_set():
            try:
                self.plane.monitor.poll(self.plane.caller)
                self.trigger_all()
            except Exception as e:
                self.plane.db.log_event("ERROR", f"Control loop tick failed: {type(e).__name__}: {e}")
            self._stop.wait(self.interval_s)

    def _on_instance_event(self, ev: InstanceEvent) -> None:
        self.trigger(ev.owner)

    def trigger_all(self) -> None:
        for name in self.plane.known_workloads():
            self.trigger(name)

    def trigger(self, name: str) -> None:
        if self._stop.is_set():
            return
        with self._lock:
            if name in self._in_flight:
                self._dirty.add(name)
                return
            self._in_flight.add(name)
            self._idle.clear()
        try:
            self._pool.submit(self._run, name)
        except RuntimeError:
            # Pool shut down by stop() in the meantime.
            with self._lock:
                self._in_flight.discard(name)
                if not self._in_flight:
                    self._idle.set()

    def _run(self, name: str) -> None:
        while True:
            try:
                self.plane.sync(name)
            except Exception as e:
                self.plane.db.log_event("ERROR", f"Reconcile pass failed: {type(e).__name__}: {e}", workload=name)
            with self._lock:
                self.passes += 1
                if name in self._dirty and not self._stop.is_set():
                    self._dirty.discard(name)
                    continue
                self._in_flight.discard(name)
                self._dirty.discard(name)
                if not self._in_flight:
                    self._idle.set()
                return

    def wait_idle(self, timeout: float | None = None) -> bool:
        """Block until no pass is in flight."""
        return self._idle.wait(timeout)
