from __future__ import annotations

import re
from typing import Any

import docker
from docker.errors import DockerException, NotFound

from .db import Database
from .health import check_health
from .models import OWNER_LABEL, Probe, Template
from .settings import settings

INSTANCE_ID_RE = re.compile(r"^[a-z0-9][a-z0-9\-]{0,62}$")


def validate_health_path(path: str) -> None:
    # Keep it a path (not a full URL) so probes cannot be pointed elsewhere.
    if not path.startswith("/"):
        raise ValueError("health_path must start with '/'.")
    if "://" in path or ".." in path:
        raise ValueError("health_path must be a simple absolute path (no scheme, no '..').")


def container_name(instance_id: str) -> str:
    if not INSTANCE_ID_RE.match(instance_id):
        raise ValueError(f"Invalid instance id '{instance_id}'")
    return f"wrc-{instance_id}"


def container_http_base(name: str, internal_port: int) -> str:
    """HTTP base URL usable from within the same docker network."""
    return f"http://{name}:{int(internal_port)}"


class DockerRuntime:
    """InstanceRuntime backed by the local docker daemon: one container per instance.

    Template spec keys: ``image`` (required), ``port``, ``health_path``,
    ``env``, ``command``. Containers are labeled so they can be re-discovered
    after a restart, and named after the instance id so that a repeated
    create for the same id is deduplicated.
    """

    def __init__(self, client: Any | None = None, network: str | None = None, db: Database | None = None):
        self._client = client
        self.network = network or settings.docker_network
        self.db = db

    @property
    def client(self) -> Any:
        if self._client is None:
            self._client = docker.from_env()
        return self._client

    def available(self) -> bool:
        try:
            self.client.ping()
            return True
        except DockerException:
            return False

    def ensure_network(self) -> None:
        try:
            self.client.networks.get(self.network)
        except NotFound:
            self.client.networks.create(self.network, driver="bridge")
            if self.db:
                self.db.log_event("INFO", f"Created docker network '{self.network}'.")

    def create(self, instance_id: str, template: Template, labels: dict[str, str]) -> str:
        spec = template.spec
        image = spec.get("image")
        if not image:
            raise ValueError("template spec has no 'image'")
        health_path = spec.get("health_path", "/health")
        validate_health_path(health_path)
        name = container_name(instance_id)

        try:
            existing = self.client.containers.get(name)
        except NotFound:
            existing = None
        if existing is not None:
            return existing.id

        self.ensure_network()
        container = self.client.containers.run(
            image,
            command=spec.get("command"),
            detach=True,
            name=name,
            environment=spec.get("env") or {},
            network=self.network,
            labels={
                **labels,
                "wrc.instance": instance_id,
                "wrc.port": str(int(spec.get("port", 80))),
                "wrc.health_path": health_path,
            },
            # Healing is the reconciler's job; keep docker's restart policy off.
            restart_policy={"Name": "no"},
        )
        if self.db:
            self.db.log_event(
                "INFO", f"Started container {name} from image {image}", workload=labels.get(OWNER_LABEL)
            )
        return container.id

    def terminate(self, instance_id: str) -> None:
        try:
            cont = self.client.containers.get(container_name(instance_id))
        except NotFound:
            return
        try:
            cont.remove(force=True)
        except NotFound:
            return

    def probe(self, instance_id: str) -> Probe:
        try:
            cont = self.client.containers.get(container_name(instance_id))
            cont.reload()
        except NotFound:
            return Probe.UNKNOWN
        if cont.status != "running":
            return Probe.UNKNOWN
        labels = cont.labels or {}
        port = int(labels.get("wrc.port", 80))
        path = labels.get("wrc.health_path", "/health")
        probe, _msg, _latency = check_health(f"{container_http_base(cont.name, port)}{path}")
        return probe

    def list_instances(self, workload: str | None = None) -> list[str]:
        """Instance ids of the containers this runtime manages."""
        filters: dict[str, Any] = {"label": ["wrc.instance"]}
        if workload:
            filters["label"].append(f"{OWNER_LABEL}={workload}")
        containers = self.client.containers.list(all=True, filters=filters)
        return [c.labels.get("wrc.instance") for c in containers if c.labels.get("wrc.instance")]
