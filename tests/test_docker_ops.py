import pytest
from docker.errors import DockerException, NotFound

from wrc.docker_ops import DockerRuntime, container_name, validate_health_path
from wrc.models import OWNER_LABEL, Probe, Template


class _Container:
    def __init__(self, store, name, labels, status="running"):
        self._store = store
        self.id = f"cid-{name}"
        self.name = name
        self.labels = labels
        self.status = status

    def reload(self):
        pass

    def remove(self, force=False):
        self._store.pop(self.name, None)


class _Containers:
    def __init__(self):
        self.by_name = {}
        self.run_calls = []

    def get(self, name):
        if name not in self.by_name:
            raise NotFound(f"No such container: {name}")
        return self.by_name[name]

    def run(self, image, **kwargs):
        self.run_calls.append((image, kwargs))
        c = _Container(self.by_name, kwargs["name"], kwargs["labels"])
        self.by_name[c.name] = c
        return c

    def list(self, all=False, filters=None):
        wanted = (filters or {}).get("label", [])
        out = []
        for c in self.by_name.values():
            ok = True
            for f in wanted:
                key, _, value = f.partition("=")
                if key not in c.labels or (value and c.labels[key] != value):
                    ok = False
            if ok:
                out.append(c)
        return out


class _Networks:
    def __init__(self):
        self.created = []

    def get(self, name):
        if name not in self.created:
            raise NotFound(f"network {name} not found")
        return name

    def create(self, name, driver=None):
        self.created.append(name)


class _Client:
    def __init__(self):
        self.containers = _Containers()
        self.networks = _Networks()
        self.reachable = True

    def ping(self):
        if not self.reachable:
            raise DockerException("daemon down")
        return True


@pytest.fixture
def client():
    return _Client()


@pytest.fixture
def docker_runtime(client, db):
    return DockerRuntime(client=client, network="wrc-test", db=db)


def _template(**spec):
    spec.setdefault("image", "nginx:1")
    return Template(spec=spec, labels={"app": "web"})


def test_create_runs_labeled_container(docker_runtime, client):
    labels = {"app": "web", OWNER_LABEL: "web"}
    ref = docker_runtime.create("abc123", _template(port=8000, health_path="/healthz"), labels)

    assert ref == "cid-wrc-abc123"
    image, kwargs = client.containers.run_calls[0]
    assert image == "nginx:1"
    assert kwargs["name"] == "wrc-abc123"
    assert kwargs["network"] == "wrc-test"
    assert kwargs["restart_policy"] == {"Name": "no"}
    assert kwargs["labels"]["wrc.instance"] == "abc123"
    assert kwargs["labels"]["wrc.port"] == "8000"
    assert kwargs["labels"]["wrc.health_path"] == "/healthz"
    assert kwargs["labels"][OWNER_LABEL] == "web"
    assert client.networks.created == ["wrc-test"]


def test_repeated_create_is_deduplicated(docker_runtime, client):
    first = docker_runtime.create("abc123", _template(), {"app": "web"})
    second = docker_runtime.create("abc123", _template(), {"app": "web"})
    assert first == second
    assert len(client.containers.run_calls) == 1


def test_create_rejects_bad_templates(docker_runtime):
    with pytest.raises(ValueError):
        docker_runtime.create("abc123", Template(spec={}, labels={}), {})
    with pytest.raises(ValueError):
        docker_runtime.create("abc123", _template(health_path="http://evil/"), {})


def test_terminate_is_acknowledged_for_unknown_ids(docker_runtime, client):
    docker_runtime.create("abc123", _template(), {"app": "web"})
    docker_runtime.terminate("abc123")
    assert "wrc-abc123" not in client.containers.by_name
    docker_runtime.terminate("abc123")


def test_probe(docker_runtime, client, monkeypatch):
    seen = []

    def fake_check(url, timeout_s=2.0, transport=None):
        seen.append(url)
        return Probe.READY, "Healthy", 1.0

    monkeypatch.setattr("wrc.docker_ops.check_health", fake_check)
    assert docker_runtime.probe("abc123") == Probe.UNKNOWN

    docker_runtime.create("abc123", _template(port=9000, health_path="/ready"), {"app": "web"})
    assert docker_runtime.probe("abc123") == Probe.READY
    assert seen == ["http://wrc-abc123:9000/ready"]

    client.containers.by_name["wrc-abc123"].status = "exited"
    assert docker_runtime.probe("abc123") == Probe.UNKNOWN


def test_list_instances_by_workload(docker_runtime):
    docker_runtime.create("a1", _template(), {"app": "web", OWNER_LABEL: "web"})
    docker_runtime.create("b1", _template(), {"app": "api", OWNER_LABEL: "api"})
    assert sorted(docker_runtime.list_instances()) == ["a1", "b1"]
    assert docker_runtime.list_instances("web") == ["a1"]


def test_available(docker_runtime, client):
    assert docker_runtime.available()
    client.reachable = False
    assert not docker_runtime.available()


def test_name_and_path_validation():
    assert container_name("abc") == "wrc-abc"
    with pytest.raises(ValueError):
        container_name("../etc")
    validate_health_path("/health")
    with pytest.raises(ValueError):
        validate_health_path("health")
    with pytest.raises(ValueError):
        validate_health_path("/a/../b")
