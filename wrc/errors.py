from __future__ import annotations


class WRCError(Exception):
    """Base class for every error raised by the controller."""


class ValidationError(WRCError):
    """Malformed workload spec or argument, rejected at the write boundary."""


class NotFoundError(WRCError):
    pass


class ConflictError(WRCError):
    """The version read does not match the stored version; re-read and retry."""

    def __init__(self, name: str, expected: int, actual: int | None):
        super().__init__(f"Version conflict on workload '{name}': expected {expected}, found {actual}")
        self.name = name
        self.expected = expected
        self.actual = actual


class TransientRuntimeError(WRCError):
    """A runtime call failed or timed out. The outcome is unknown; retry it."""


class ConvergenceStall(WRCError):
    def __init__(self, name: str, idle_s: float):
        super().__init__(f"Rollout of '{name}' made no progress for {idle_s:.0f}s")
        self.name = name
        self.idle_s = idle_s


class InvalidTransition(WRCError):
    def __init__(self, instance_id: str, current: str, target: str):
        super().__init__(f"Instance {instance_id}: illegal transition {current} -> {target}")
        self.instance_id = instance_id
        self.current = current
        self.target = target
