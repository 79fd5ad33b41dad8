from __future__ import annotations

import hashlib
import json
import re
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any

from .errors import ValidationError

WORKLOAD_NAME_RE = re.compile(r"^[a-z][a-z0-9\-]{0,62}$")

OWNER_LABEL = "wrc.workload"
REVISION_LABEL = "wrc.revision"


class InstanceStatus(str, Enum):
    PENDING = "Pending"
    STARTING = "Starting"
    READY = "Ready"
    FAILED = "Failed"
    TERMINATING = "Terminating"
    TERMINATED = "Terminated"


INSTANCE_TRANSITIONS: dict[InstanceStatus, frozenset[InstanceStatus]] = {
    InstanceStatus.PENDING: frozenset({InstanceStatus.STARTING, InstanceStatus.FAILED, InstanceStatus.TERMINATING}),
    InstanceStatus.STARTING: frozenset({InstanceStatus.READY, InstanceStatus.FAILED, InstanceStatus.TERMINATING}),
    InstanceStatus.READY: frozenset({InstanceStatus.FAILED, InstanceStatus.TERMINATING}),
    # Failed -> Pending is a create retry for the same instance id.
    InstanceStatus.FAILED: frozenset({InstanceStatus.READY, InstanceStatus.PENDING, InstanceStatus.TERMINATING}),
    InstanceStatus.TERMINATING: frozenset({InstanceStatus.TERMINATED}),
    InstanceStatus.TERMINATED: frozenset(),
}

# Statuses that occupy a replica slot.
LIVE_STATUSES = frozenset(
    {InstanceStatus.PENDING, InstanceStatus.STARTING, InstanceStatus.READY, InstanceStatus.FAILED}
)


def can_transition(current: InstanceStatus, target: InstanceStatus) -> bool:
    return target == current or target in INSTANCE_TRANSITIONS[current]


class RolloutPhase(str, Enum):
    IDLE = "Idle"
    PROGRESSING = "Progressing"
    SUCCEEDED = "Succeeded"
    ROLLED_BACK = "RolledBack"


class RolloutOutcome(str, Enum):
    IN_PROGRESS = "InProgress"
    SUCCEEDED = "Succeeded"
    ROLLED_BACK = "RolledBack"


class Probe(str, Enum):
    READY = "Ready"
    NOT_READY = "NotReady"
    UNKNOWN = "Unknown"


def _canonical(obj: Any) -> str:
    return json.dumps(obj, sort_keys=True, separators=(",", ":"), default=str)


@dataclass(frozen=True)
class Template:
    """Opaque instance template plus the labels stamped on its instances."""

    spec: dict[str, Any] = field(default_factory=dict)
    labels: dict[str, str] = field(default_factory=dict)

    @property
    def hash(self) -> str:
        digest = hashlib.sha256(_canonical({"spec": self.spec, "labels": self.labels}).encode()).hexdigest()
        return digest[:16]

    def to_dict(self) -> dict[str, Any]:
        return {"spec": self.spec, "labels": self.labels}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Template":
        return cls(spec=dict(data.get("spec") or {}), labels=dict(data.get("labels") or {}))


@dataclass(frozen=True)
class LabelRequirement:
    key: str
    operator: str  # In|NotIn|Exists|DoesNotExist
    values: tuple[str, ...] = ()

    def matches(self, labels: dict[str, str]) -> bool:
        if self.operator == "In":
            return self.key in labels and labels[self.key] in self.values
        if self.operator == "NotIn":
            return labels.get(self.key) not in self.values
        if self.operator == "Exists":
            return self.key in labels
        if self.operator == "DoesNotExist":
            return self.key not in labels
        raise ValidationError(f"Unknown selector operator '{self.operator}'")


SELECTOR_OPERATORS = {"In", "NotIn", "Exists", "DoesNotExist"}


@dataclass(frozen=True)
class Selector:
    match_labels: dict[str, str] = field(default_factory=dict)
    match_expressions: tuple[LabelRequirement, ...] = ()

    def matches(self, labels: dict[str, str]) -> bool:
        for k, v in self.match_labels.items():
            if labels.get(k) != v:
                return False
        return all(req.matches(labels) for req in self.match_expressions)

    def is_empty(self) -> bool:
        return not self.match_labels and not self.match_expressions

    def to_dict(self) -> dict[str, Any]:
        return {
            "match_labels": self.match_labels,
            "match_expressions": [
                {"key": r.key, "operator": r.operator, "values": list(r.values)} for r in self.match_expressions
            ],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Selector":
        exprs = tuple(
            LabelRequirement(key=e["key"], operator=e["operator"], values=tuple(e.get("values") or ()))
            for e in data.get("match_expressions") or []
        )
        return cls(match_labels=dict(data.get("match_labels") or {}), match_expressions=exprs)


@dataclass(frozen=True)
class RolloutPolicy:
    max_surge: int = 1
    max_unavailable: int = 0


@dataclass(frozen=True)
class RolloutState:
    phase: RolloutPhase = RolloutPhase.IDLE
    from_hashes: tuple[str, ...] = ()
    to_hash: str | None = None
    current_desired: int = 0
    old_desired: int = 0
    last_progress_at: float = 0.0
    stalled: bool = False
    rollback: bool = False

    @property
    def progressing(self) -> bool:
        return self.phase == RolloutPhase.PROGRESSING

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "from_hashes": list(self.from_hashes),
            "to_hash": self.to_hash,
            "current_desired": self.current_desired,
            "old_desired": self.old_desired,
            "last_progress_at": self.last_progress_at,
            "stalled": self.stalled,
            "rollback": self.rollback,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "RolloutState":
        if not data:
            return cls()
        return cls(
            phase=RolloutPhase(data.get("phase", RolloutPhase.IDLE.value)),
            from_hashes=tuple(data.get("from_hashes") or ()),
            to_hash=data.get("to_hash"),
            current_desired=int(data.get("current_desired", 0)),
            old_desired=int(data.get("old_desired", 0)),
            last_progress_at=float(data.get("last_progress_at", 0.0)),
            stalled=bool(data.get("stalled", False)),
            rollback=bool(data.get("rollback", False)),
        )


@dataclass(frozen=True)
class WorkloadSpec:
    name: str
    replicas: int
    template: Template
    selector: Selector
    policy: RolloutPolicy = field(default_factory=RolloutPolicy)
    min_replicas: int = 0
    max_replicas: int | None = None
    # Optimistic concurrency token. 0 means "not stored yet".
    version: int = 0
    deleted: bool = False
    rollout: RolloutState = field(default_factory=RolloutState)

    @property
    def template_hash(self) -> str:
        return self.template.hash

    def with_changes(self, **changes: Any) -> "WorkloadSpec":
        return replace(self, **changes)

    def claims(self, rec: InstanceRecord) -> bool:
        """Whether an instance of this workload counts toward its fleet.

        Instances of a revision the rollout is moving away from stay members
        even when the new selector no longer matches their labels.
        """
        if self.selector.matches(rec.labels):
            return True
        return self.rollout.progressing and rec.revision in self.rollout.from_hashes

    def validate(self) -> None:
        if not WORKLOAD_NAME_RE.match(self.name or ""):
            raise ValidationError(
                "Invalid workload name. Use lowercase letters/numbers and hyphen, starting with a letter (max 63 chars)."
            )
        if not isinstance(self.replicas, int) or isinstance(self.replicas, bool) or self.replicas < 0:
            raise ValidationError("replicas must be a non-negative integer.")
        p = self.policy
        if p.max_surge < 0 or p.max_unavailable < 0:
            raise ValidationError("max_surge and max_unavailable must be non-negative.")
        if p.max_surge == 0 and p.max_unavailable == 0:
            raise ValidationError("max_surge and max_unavailable cannot both be zero.")
        if self.min_replicas < 0:
            raise ValidationError("min_replicas must be non-negative.")
        if self.max_replicas is not None and self.max_replicas < self.min_replicas:
            raise ValidationError("max_replicas must be >= min_replicas.")
        if self.selector.is_empty():
            raise ValidationError("selector must not be empty.")
        for req in self.selector.match_expressions:
            if req.operator not in SELECTOR_OPERATORS:
                raise ValidationError(f"Unknown selector operator '{req.operator}'")
            if req.operator in {"In", "NotIn"} and not req.values:
                raise ValidationError(f"Selector operator '{req.operator}' on '{req.key}' needs values.")
        if not self.selector.matches(self.template.labels):
            raise ValidationError("selector does not match the template labels.")
        for key in (OWNER_LABEL, REVISION_LABEL):
            if key in self.template.labels:
                raise ValidationError(f"Label '{key}' is reserved.")


def instance_labels(spec: WorkloadSpec) -> dict[str, str]:
    """Labels stamped on an instance created from the spec's current template."""
    labels = dict(spec.template.labels)
    labels[OWNER_LABEL] = spec.name
    labels[REVISION_LABEL] = spec.template_hash
    return labels


@dataclass(frozen=True)
class InstanceRecord:
    id: str
    owner: str
    revision: str
    labels: dict[str, str]
    status: InstanceStatus
    created_at: float
    updated_at: float
    ready: bool = False
    reason: str | None = None
    attempts: int = 0
    alert: bool = False
    runtime_ref: str | None = None
    # create|terminate: which runtime call the last failure came from
    failed_op: str | None = None

    @property
    def live(self) -> bool:
        return self.status in LIVE_STATUSES

    @property
    def available(self) -> bool:
        return self.status == InstanceStatus.READY and self.ready


@dataclass(frozen=True)
class RevisionEntry:
    workload: str
    number: int
    template_hash: str
    template: Template
    outcome: RolloutOutcome
    created_at: str


@dataclass(frozen=True)
class WorkloadStatus:
    name: str
    desired: int
    ready: int
    updated: int
    available: int
    phase: RolloutPhase
    stalled: bool
    revision: str
    deleted: bool = False
    # Instances whose creates ran out of retries and now wait for an operator.
    alerts: tuple[str, ...] = ()
