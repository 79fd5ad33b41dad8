from __future__ import annotations

from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from typing import Any, Callable, Protocol

from .errors import TransientRuntimeError
from .models import Probe, Template
from .settings import settings


class InstanceRuntime(Protocol):
    """Starts, stops and probes single instances.

    ``create`` must deduplicate a repeated call for an id it already knows,
    and ``terminate`` must acknowledge an id it does not know.
    """

    def create(self, instance_id: str, template: Template, labels: dict[str, str]) -> str: ...

    def terminate(self, instance_id: str) -> None: ...

    def probe(self, instance_id: str) -> Probe: ...


class RuntimeCaller:
    """Runs runtime calls with a bounded timeout.

    A failure or a timeout surfaces as TransientRuntimeError: the outcome is
    unknown, so the caller retries with the same instance id.
    """

    def __init__(self, runtime: InstanceRuntime, timeout_s: float | None = None, workers: int = 8):
        self.runtime = runtime
        self.timeout_s = timeout_s if timeout_s is not None else settings.runtime_timeout_s
        self._pool = ThreadPoolExecutor(max_workers=max(1, workers), thread_name_prefix="wrc-runtime")

    def _call(self, op: str, fn: Callable[..., Any], *args: Any) -> Any:
        try:
            fut = self._pool.submit(fn, *args)
            return fut.result(timeout=self.timeout_s)
        except FutureTimeout:
            fut.cancel()
            raise TransientRuntimeError(f"{op} timed out after {self.timeout_s}s") from None
        except TransientRuntimeError:
            raise
        except Exception as e:
            raise TransientRuntimeError(f"{op} failed: {type(e).__name__}: {e}") from e

    def create(self, instance_id: str, template: Template, labels: dict[str, str]) -> str:
        return self._call("create", self.runtime.create, instance_id, template, labels)

    def terminate(self, instance_id: str) -> None:
        self._call("terminate", self.runtime.terminate, instance_id)

    def probe(self, instance_id: str) -> Probe:
        try:
            result = self._call("probe", self.runtime.probe, instance_id)
        except TransientRuntimeError:
            return Probe.UNKNOWN
        try:
            return Probe(result)
        except ValueError:
            return Probe.UNKNOWN

    def shutdown(self) -> None:
        self._pool.shutdown(wait=False)
