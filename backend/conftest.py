import io
import itertools
import sys
import tarfile
from collections import namedtuple
from pathlib import Path

import docker
import pytest
import requests

here = Path(__file__).resolve()
backend_dir = here.parent
if str(backend_dir) not in sys.path:
    sys.path.insert(0, str(backend_dir))

from config import MANAGED_LABEL, NAME_LABEL, PORT_LABEL  # noqa: E402
from docker_manager import DockerManager  # noqa: E402
from settings_store import InMemorySettingsStore  # noqa: E402

ExecResult = namedtuple("ExecResult", "exit_code output")

_ids = itertools.count(1)


def make_tar(files: dict) -> bytes:
    buf = io.BytesIO()
    with tarfile.open(fileobj=buf, mode="w") as tar:
        for name, data in files.items():
            info = tarfile.TarInfo(name)
            info.size = len(data)
            tar.addfile(info, io.BytesIO(data))
    return buf.getvalue()


class FakeContainer:
    def __init__(self, client, name, labels=None, status="created", attrs=None, cid=None):
        self.client = client
        self.id = cid or f"{next(_ids):04x}".ljust(64, "a")
        self.name = name
        self.labels = labels or {}
        self.status = status
        self.attrs = attrs or {"Config": {"Labels": self.labels, "Tty": False}, "State": {}, "NetworkSettings": {}}
        self.exec_result = ExecResult(0, b"")
        self.exec_calls = []
        self.stats_payload = {}
        self.archive_chunks = []
        self.uploads = []
        self.fail_on = set()

    def _maybe_fail(self, op):
        if op in self.fail_on:
            raise docker.errors.APIError(f"{op} failed")

    def start(self):
        self._maybe_fail("start")
        self.status = "running"

    def stop(self):
        self._maybe_fail("stop")
        self.status = "exited"

    def remove(self, force=False):
        self._maybe_fail("remove")
        self.client.removed.append((self.id, force))
        self.client.containers.items.remove(self)

    def reload(self):
        pass

    def exec_run(self, argv, stdout=True, stderr=True):
        self._maybe_fail("exec")
        self.exec_calls.append(argv)
        return self.exec_result

    def stats(self, stream=False):
        self._maybe_fail("stats")
        return self.stats_payload

    def put_archive(self, path, data):
        self._maybe_fail("put_archive")
        self.uploads.append((path, b"".join(data)))
        return True

    def get_archive(self, path):
        self._maybe_fail("get_archive")
        return iter(self.archive_chunks), {"name": path}


class FakeContainers:
    def __init__(self, client):
        self.client = client
        self.items = []
        self.created = []

    def list(self, all=False, sparse=False, ignore_removed=False, filters=None):
        items = list(self.items)
        if filters and "name" in filters:
            items = [c for c in items if filters["name"] in c.name]
        return items

    def get(self, key):
        for c in self.items:
            if c.id == key or c.name == key:
                return c
        raise docker.errors.NotFound(f"No such container: {key}")

    def create(self, image, name=None, environment=None, labels=None, ports=None):
        if self.client.fail_create:
            raise docker.errors.APIError("create failed")
        c = FakeContainer(self.client, name, labels=labels)
        c.image = image
        c.environment = environment
        c.ports = ports
        self.items.append(c)
        self.created.append(c)
        return c

    def add(self, name, **kwargs):
        c = FakeContainer(self.client, name, **kwargs)
        self.items.append(c)
        return c


class FakeImages:
    def __init__(self):
        self.pulled = []
        self.fail = False

    def pull(self, repository):
        if self.fail:
            raise docker.errors.APIError("pull access denied")
        self.pulled.append(repository)


class FakeResponse:
    def __init__(self, content=b"", status_code=200):
        self.content = content
        self.status_code = status_code

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.exceptions.HTTPError(f"{self.status_code} error")


class FakeApi:
    base_url = "http+docker://localhost"
    api_version = "1.43"

    def __init__(self):
        self.response = FakeResponse()
        self.requests = []

    def get(self, url, params=None):
        self.requests.append((url, params))
        return self.response


class FakeDockerClient:
    def __init__(self):
        self.containers = FakeContainers(self)
        self.images = FakeImages()
        self.api = FakeApi()
        self.removed = []
        self.fail_create = False
        self.reachable = True

    def ping(self):
        if not self.reachable:
            raise requests.exceptions.ConnectionError("socket unavailable")
        return True


def managed_labels(name, port):
    return {MANAGED_LABEL: "true", NAME_LABEL: name, PORT_LABEL: str(port)}


@pytest.fixture
def fake_client():
    return FakeDockerClient()


@pytest.fixture
def manager(fake_client):
    return DockerManager(client=fake_client, settings=InMemorySettingsStore())
