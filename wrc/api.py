from __future__ import annotations

from contextlib import asynccontextmanager
from typing import Any, AsyncIterator

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from .api_models import MetricSampleRequest, RollbackRequest, ScaleRequest, WorkloadRequest
from .controller import ControlLoop, ControlPlane
from .errors import ConflictError, NotFoundError, ValidationError
from .models import InstanceRecord, RevisionEntry, WorkloadSpec, WorkloadStatus
from .scaling import MetricSample, TargetValuePolicy


def _spec_out(spec: WorkloadSpec) -> dict[str, Any]:
    return {
        "name": spec.name,
        "replicas": spec.replicas,
        "template": spec.template.to_dict(),
        "template_hash": spec.template_hash,
        "selector": spec.selector.to_dict(),
        "max_surge": spec.policy.max_surge,
        "max_unavailable": spec.policy.max_unavailable,
        "min_replicas": spec.min_replicas,
        "max_replicas": spec.max_replicas,
        "version": spec.version,
        "deleted": spec.deleted,
        "rollout": spec.rollout.to_dict(),
    }


def _status_out(st: WorkloadStatus) -> dict[str, Any]:
    return {
        "name": st.name,
        "desired": st.desired,
        "ready": st.ready,
        "updated": st.updated,
        "available": st.available,
        "phase": st.phase.value,
        "stalled": st.stalled,
        "revision": st.revision,
        "deleted": st.deleted,
        "alerts": list(st.alerts),
    }


def _instance_out(rec: InstanceRecord) -> dict[str, Any]:
    return {
        "id": rec.id,
        "owner": rec.owner,
        "revision": rec.revision,
        "labels": rec.labels,
        "status": rec.status.value,
        "ready": rec.ready,
        "reason": rec.reason,
        "attempts": rec.attempts,
        "alert": rec.alert,
        "created_at": rec.created_at,
    }


def _revision_out(e: RevisionEntry) -> dict[str, Any]:
    return {
        "number": e.number,
        "template_hash": e.template_hash,
        "template": e.template.to_dict(),
        "outcome": e.outcome.value,
        "created_at": e.created_at,
    }


def create_app(plane: ControlPlane | None = None, start_loop: bool = True) -> FastAPI:
    """Build the HTTP surface. Run with ``uvicorn --factory wrc.api:create_app``."""
    if plane is None:
        from .docker_ops import DockerRuntime

        plane = ControlPlane(DockerRuntime())
    loop = ControlLoop(plane)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        if start_loop:
            loop.start()
        try:
            yield
        finally:
            if start_loop:
                loop.stop(wait=False)

    app = FastAPI(title="Workload Reconciliation Controller", lifespan=lifespan)
    app.state.plane = plane
    app.state.loop = loop

    @app.exception_handler(ValidationError)
    async def _validation(_: Request, exc: ValidationError) -> JSONResponse:
        return JSONResponse(status_code=422, content={"detail": str(exc)})

    @app.exception_handler(NotFoundError)
    async def _not_found(_: Request, exc: NotFoundError) -> JSONResponse:
        return JSONResponse(status_code=404, content={"detail": str(exc)})

    @app.exception_handler(ConflictError)
    async def _conflict(_: Request, exc: ConflictError) -> JSONResponse:
        return JSONResponse(status_code=409, content={"detail": str(exc)})

    @app.get("/health")
    def health() -> dict[str, str]:
        return {"status": "healthy"}

    @app.get("/workloads")
    def list_workloads() -> list[dict[str, Any]]:
        return [_spec_out(s) for s in plane.list_workloads()]

    @app.put("/workloads/{name}")
    def apply_workload(name: str, req: WorkloadRequest) -> dict[str, Any]:
        spec = plane.apply_workload(req.to_spec(name))
        if req.autoscale_target is not None:
            plane.scaling.register_policy(
                name, TargetValuePolicy(target=req.autoscale_target, tolerance=req.autoscale_tolerance)
            )
        else:
            plane.scaling.unregister_policy(name)
        return _spec_out(spec)

    @app.get("/workloads/{name}")
    def get_workload_status(name: str) -> dict[str, Any]:
        return _status_out(plane.get_workload_status(name))

    @app.post("/workloads/{name}/scale")
    def scale_workload(name: str, req: ScaleRequest) -> dict[str, Any]:
        return _spec_out(plane.scale_workload(name, req.replicas))

    @app.post("/workloads/{name}/autoscale")
    def autoscale(name: str, req: MetricSampleRequest) -> dict[str, int]:
        desired = plane.autoscale(name, MetricSample(value=req.value, current_replicas=req.current_replicas))
        return {"desired": desired}

    @app.post("/workloads/{name}/rollback")
    def rollback_workload(name: str, req: RollbackRequest) -> dict[str, Any]:
        return _spec_out(plane.rollback_workload(name, req.revision))

    @app.delete("/workloads/{name}")
    def delete_workload(name: str) -> dict[str, Any]:
        return _spec_out(plane.delete_workload(name))

    @app.get("/workloads/{name}/instances")
    def list_instances(name: str) -> list[dict[str, Any]]:
        plane.get_workload_status(name)
        return [_instance_out(r) for r in plane.list_instances(name)]

    @app.get("/workloads/{name}/revisions")
    def revisions(name: str) -> list[dict[str, Any]]:
        return [_revision_out(e) for e in plane.revision_history(name)]

    @app.get("/events")
    def events(limit: int = 100, workload: str | None = None) -> list[dict[str, Any]]:
        return plane.events(limit=max(1, min(1000, limit)), workload=workload)

    return app
