from __future__ import annotations

import math
from dataclasses import dataclass
from threading import Lock
from typing import Protocol

from .db import Database
from .errors import ValidationError
from .models import WorkloadSpec
from .store import WorkloadStore


@dataclass(frozen=True)
class MetricSample:
    """One observation of an external metric for a workload.

    ``value`` is the per-instance average of the metric (e.g. CPU %, requests/s);
    ``current_replicas`` is the replica count the sample was taken at.
    """

    value: float
    current_replicas: int | None = None


class ScalingPolicy(Protocol):
    def __call__(self, spec: WorkloadSpec, sample: MetricSample) -> int: ...


@dataclass(frozen=True)
class TargetValuePolicy:
    """Proportional policy: keep the per-instance metric near ``target``.

    desired = ceil(current * value / target), left unchanged while the
    ratio stays within ``tolerance`` of 1.
    """

    target: float
    tolerance: float = 0.1

    def __post_init__(self) -> None:
        if self.target <= 0:
            raise ValidationError("target must be positive.")
        if self.tolerance < 0:
            raise ValidationError("tolerance must be non-negative.")

    def __call__(self, spec: WorkloadSpec, sample: MetricSample) -> int:
        current = sample.current_replicas if sample.current_replicas is not None else spec.replicas
        if current <= 0:
            # Nothing running to average over; any load asks for one instance.
            return 1 if sample.value > 0 else 0
        ratio = sample.value / self.target
        if abs(ratio - 1.0) <= self.tolerance:
            return current
        return int(math.ceil(current * ratio))


def clamp(n: int, lo: int, hi: int | None) -> int:
    n = max(lo, n)
    if hi is not None:
        n = min(hi, n)
    return n


class ScalingController:
    """Writes desired replica counts. Never creates or terminates instances itself."""

    def __init__(self, store: WorkloadStore, db: Database):
        self.store = store
        self.db = db
        self._lock = Lock()
        self._policies: dict[str, ScalingPolicy] = {}

    def set_desired_replicas(self, name: str, n: int) -> WorkloadSpec:
        if not isinstance(n, int) or isinstance(n, bool) or n < 0:
            raise ValidationError("replicas must be a non-negative integer.")

        def mutate(cur: WorkloadSpec) -> WorkloadSpec | None:
            if cur.replicas == n:
                return None
            return cur.with_changes(replicas=n)

        before = self.store.get(name).replicas
        spec = self.store.update(name, mutate)
        if before != n:
            self.db.log_event("INFO", f"Scaled {before} -> {n} replicas", workload=name, revision=spec.template_hash)
        return spec

    def register_policy(self, name: str, policy: ScalingPolicy) -> None:
        with self._lock:
            self._policies[name] = policy

    def unregister_policy(self, name: str) -> None:
        with self._lock:
            self._policies.pop(name, None)

    def policy_for(self, name: str) -> ScalingPolicy | None:
        with self._lock:
            return self._policies.get(name)

    def evaluate_policy(self, name: str, sample: MetricSample, policy: ScalingPolicy | None = None) -> int:
        """Map a metric sample to a new desired count, clamped to [min_replicas, max_replicas], and write it."""
        policy = policy or self.policy_for(name)
        if policy is None:
            raise ValidationError(f"No scaling policy registered for workload '{name}'")
        spec = self.store.get(name)
        desired = clamp(int(policy(spec, sample)), spec.min_replicas, spec.max_replicas)
        if desired != spec.replicas:
            self.set_desired_replicas(name, desired)
        return desired
