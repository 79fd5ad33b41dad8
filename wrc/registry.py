from __future__ import annotations

import json
import sqlite3
import time
from typing import Any, Callable, Iterable, Iterator

from .db import Database
from .errors import InvalidTransition, NotFoundError
from .models import LIVE_STATUSES, InstanceRecord, InstanceStatus, Selector, can_transition
from .runtime import KeyedLock

_UNSET: Any = object()


def _row_to_record(row: sqlite3.Row) -> InstanceRecord:
    return InstanceRecord(
        id=row["id"],
        owner=row["owner"],
        revision=row["revision"],
        labels=json.loads(row["labels"]),
        status=InstanceStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        ready=bool(row["ready"]),
        reason=row["reason"],
        attempts=row["attempts"],
        alert=bool(row["alert"]),
        runtime_ref=row["runtime_ref"],
        failed_op=row["failed_op"],
    )


class InstanceView:
    """Read-only, lazily produced and restartable sequence of instance records.

    Every iteration runs a fresh query, so a view can be iterated again to
    see the current state.
    """

    def __init__(self, registry: "InstanceRegistry", owner: str | None, selector: Selector | None = None):
        self._registry = registry
        self._owner = owner
        self._selector = selector

    def __iter__(self) -> Iterator[InstanceRecord]:
        for rec in self._registry.iter_instances(self._owner):
            if self._selector is None or self._selector.matches(rec.labels):
                yield rec


class InstanceRegistry:
    """Authoritative record of every instance: owner, revision, labels and status.

    Reads run concurrently; writes to one record are serialized through a
    per-instance lock and every status change is checked against the
    lifecycle transition table.
    """

    def __init__(self, db: Database, clock: Callable[[], float] = time.time):
        self.db = db
        self.clock = clock
        self._record_locks = KeyedLock()

    # -- reads -------------------------------------------------------------

    def get(self, instance_id: str) -> InstanceRecord | None:
        with self.db.connect() as conn:
            row = conn.execute("SELECT * FROM instances WHERE id=?", (instance_id,)).fetchone()
            return _row_to_record(row) if row else None

    def iter_instances(self, owner: str | None = None) -> Iterator[InstanceRecord]:
        with self.db.connect() as conn:
            if owner is None:
                cur = conn.execute("SELECT * FROM instances ORDER BY created_at, id")
            else:
                cur = conn.execute("SELECT * FROM instances WHERE owner=? ORDER BY created_at, id", (owner,))
            for row in cur:
                yield _row_to_record(row)

    def view(self, owner: str | None = None, selector: Selector | None = None) -> InstanceView:
        return InstanceView(self, owner, selector)

    def select(self, owner: str, selector: Selector) -> list[InstanceRecord]:
        """Instances back-referencing ``owner`` whose labels match ``selector``."""
        return list(self.view(owner, selector))

    def list_live(self) -> list[InstanceRecord]:
        return [r for r in self.iter_instances() if r.status in LIVE_STATUSES]

    def count(self, owner: str) -> int:
        with self.db.connect() as conn:
            row = conn.execute("SELECT COUNT(*) AS n FROM instances WHERE owner=?", (owner,)).fetchone()
            return row["n"]

    def owners(self) -> set[str]:
        with self.db.connect() as conn:
            return {r["owner"] for r in conn.execute("SELECT DISTINCT owner FROM instances")}

    # -- writes ------------------------------------------------------------

    def add_pending(self, instance_id: str, owner: str, revision: str, labels: dict[str, str]) -> InstanceRecord:
        now = self.clock()
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO instances (id, owner, revision, labels, status, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?)
                """,
                (instance_id, owner, revision, json.dumps(labels, sort_keys=True), InstanceStatus.PENDING.value, now, now),
            )
        return InstanceRecord(
            id=instance_id,
            owner=owner,
            revision=revision,
            labels=dict(labels),
            status=InstanceStatus.PENDING,
            created_at=now,
            updated_at=now,
        )

    def transition(
        self,
        instance_id: str,
        status: InstanceStatus | None = None,
        *,
        expected: Iterable[InstanceStatus] | None = None,
        ready: bool | None = None,
        reason: Any = _UNSET,
        attempts: int | None = None,
        alert: bool | None = None,
        runtime_ref: Any = _UNSET,
        failed_op: Any = _UNSET,
    ) -> InstanceRecord | None:
        """Apply a status change and/or field updates to one record.

        With ``expected`` the write only happens when the current status is
        one of them; otherwise None is returned. Illegal lifecycle moves raise
        InvalidTransition.
        """
        with self._record_locks.hold(instance_id):
            rec = self.get(instance_id)
            if rec is None:
                raise NotFoundError(f"Unknown instance '{instance_id}'")
            if expected is not None and rec.status not in set(expected):
                return None
            target = status or rec.status
            if not can_transition(rec.status, target):
                raise InvalidTransition(instance_id, rec.status.value, target.value)

            fields: dict[str, Any] = {"status": target.value, "updated_at": self.clock()}
            if ready is not None:
                fields["ready"] = 1 if ready else 0
            elif target != InstanceStatus.READY:
                fields["ready"] = 0
            if reason is not _UNSET:
                fields["reason"] = reason
            if attempts is not None:
                fields["attempts"] = attempts
            if alert is not None:
                fields["alert"] = 1 if alert else 0
            if runtime_ref is not _UNSET:
                fields["runtime_ref"] = runtime_ref
            if failed_op is not _UNSET:
                fields["failed_op"] = failed_op

            assignments = ", ".join(f"{k}=?" for k in fields)
            with self.db.connect() as conn:
                conn.execute(f"UPDATE instances SET {assignments} WHERE id=?", (*fields.values(), instance_id))
            return self.get(instance_id)

    def delete(self, instance_id: str) -> None:
        with self._record_locks.hold(instance_id):
            with self.db.connect() as conn:
                conn.execute("DELETE FROM instances WHERE id=?", (instance_id,))

    def collect_garbage(self, owner: str | None = None) -> int:
        """Drop records whose termination was acknowledged."""
        with self.db.connect() as conn:
            if owner is None:
                cur = conn.execute("DELETE FROM instances WHERE status=?", (InstanceStatus.TERMINATED.value,))
            else:
                cur = conn.execute(
                    "DELETE FROM instances WHERE status=? AND owner=?", (InstanceStatus.TERMINATED.value, owner)
                )
            return cur.rowcount
