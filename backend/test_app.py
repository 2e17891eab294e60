import threading
import time

import pytest
from fastapi.testclient import TestClient

import app as app_module
import docker_manager
from app import create_app
from conftest import ExecResult, FakeDockerClient, make_tar, managed_labels
from docker_manager import DockerManager, short_id
from rcon_manager import RconSessionManager, RetryPolicy


class FakeConn:
    def __init__(self):
        self.closed = False
        self.fail = False

    def command(self, cmd):
        if self.fail:
            raise ConnectionResetError("connection reset by peer")
        return f"ran {cmd}"

    def disconnect(self):
        self.closed = True


@pytest.fixture
def dialed():
    return []


@pytest.fixture
def client(manager, dialed):
    def dialer(address, password, timeout):
        if password == "wrong":
            raise PermissionError("bad rcon password")
        conn = FakeConn()
        dialed.append((address, conn))
        return conn

    rcon = RconSessionManager(dialer=dialer, policy=RetryPolicy(max_attempts=2, delay=0), sleep=lambda _: None)
    with TestClient(create_app(docker_manager=manager, rcon_manager=rcon)) as c:
        yield c


@pytest.fixture
def server(fake_client):
    c = fake_client.containers.add("strikedock-retake", labels=managed_labels("retake", 27015), status="running")
    c.attrs["NetworkSettings"] = {"Networks": {"bridge": {"IPAddress": "172.17.0.4"}}}
    return c


def test_health(client):
    res = client.get("/api/health")
    assert res.status_code == 200
    assert res.json()["status"] == "healthy"


def test_health_when_engine_unreachable(client, fake_client):
    fake_client.reachable = False
    assert client.get("/api/health").json()["status"] == "docker unavailable"


def test_create_and_list(client):
    res = client.post("/api/servers", json={"name": "retake", "port": "27015", "rconPassword": "pw"})
    assert res.status_code == 201
    body = res.json()
    assert body["name"] == "retake"
    assert body["status"] == "running"

    servers = client.get("/api/servers").json()
    assert [s["id"] for s in servers] == [body["id"]]


@pytest.mark.parametrize(
    "payload, message",
    [
        ({"port": "27015", "rconPassword": "pw"}, "name and port required"),
        ({"name": "retake", "rconPassword": "pw"}, "name and port required"),
        ({"name": "retake", "port": "27015"}, "rcon password required"),
    ],
)
def test_create_validation_errors(client, payload, message):
    res = client.post("/api/servers", json=payload)
    assert res.status_code == 400
    assert res.json() == {"error": message}


def test_lifecycle_routes(client, server):
    sid = short_id(server.id)
    assert client.post(f"/api/servers/{sid}/stop").json() == {"status": "stopped"}
    assert client.post(f"/api/servers/{sid}/start").json() == {"status": "started"}
    assert client.delete(f"/api/servers/{sid}").json() == {"status": "deleted"}

    res = client.post(f"/api/servers/{sid}/start")
    assert res.status_code == 404
    assert res.json() == {"error": "server not found"}


def test_engine_failure_is_500(client, server):
    server.fail_on.add("stop")
    res = client.post(f"/api/servers/{short_id(server.id)}/stop")
    assert res.status_code == 500
    assert "stop failed" in res.json()["error"]


def test_stats_include_settings(client, server):
    server.stats_payload = {"memory_stats": {"usage": 10, "limit": 20}}
    sid = short_id(server.id)
    client.put(f"/api/servers/{sid}/settings", json={"maxPlayers": 12, "map": "de_inferno"})

    body = client.get(f"/api/servers/{sid}/stats").json()

    assert body["memory"] == 10
    assert body["memoryLimit"] == 20
    assert body["players"] == 0
    assert body["maxPlayers"] == 12
    assert body["map"] == "de_inferno"


def test_settings_round_trip(client, server):
    sid = short_id(server.id)
    assert client.get(f"/api/servers/{sid}/settings").json()["serverName"] == "CS2 Server"

    res = client.put(f"/api/servers/{sid}/settings", json={"serverName": "Scrim", "tickrate": 64})
    assert res.status_code == 200
    body = client.get(f"/api/servers/{sid}/settings").json()
    assert body["serverName"] == "Scrim"
    assert body["tickrate"] == 64
    assert body["maxPlayers"] == 10


def test_settings_unknown_server(client):
    assert client.get("/api/servers/nope/settings").status_code == 404


def test_logs(client, server, fake_client):
    fake_client.api.response.content = b"\x01\x00\x00\x00\x00\x00\x00\x06hello\n"
    res = client.get(f"/api/servers/{short_id(server.id)}/logs", params={"tail": 5})
    assert res.json() == {"logs": "hello\n"}
    assert fake_client.api.requests[0][1]["tail"] == "5"


def test_files_list_and_delete(client, server):
    server.exec_result = ExecResult(0, b"drwxr-xr-x 2 steam steam 4096 2024-01-01T00:00:00 maps\n")
    sid = short_id(server.id)

    files = client.get(f"/api/servers/{sid}/files", params={"path": "/data"}).json()
    assert files == [{"name": "maps", "path": "/data/maps", "isDir": True, "size": 4096, "modTime": "2024-01-01T00:00:00"}]

    assert client.delete(f"/api/servers/{sid}/files", params={"path": "/data/maps"}).json() == {"status": "deleted"}
    assert server.exec_calls[-1] == ["rm", "-rf", "/data/maps"]
    assert client.delete(f"/api/servers/{sid}/files").status_code == 400


def test_file_upload_and_download(client, server):
    sid = short_id(server.id)

    res = client.post(
        f"/api/servers/{sid}/files/upload",
        params={"path": "/data/cfg"},
        files={"file": ("autoexec.cfg", b"bind space +jump\n")},
    )
    assert res.json() == {"status": "uploaded"}
    assert server.uploads[0][0] == "/data/cfg"

    server.archive_chunks = [make_tar({"autoexec.cfg": b"bind space +jump\n"})]
    res = client.get(f"/api/servers/{sid}/files/download", params={"path": "/data/cfg/autoexec.cfg"})
    assert res.status_code == 200
    assert res.content == b"bind space +jump\n"
    assert res.headers["content-disposition"] == 'attachment; filename="autoexec.cfg"'


def test_rcon_flow(client, server, dialed):
    sid = short_id(server.id)
    assert client.get(f"/api/servers/{sid}/rcon/status").json() == {"connected": False}

    res = client.post(f"/api/servers/{sid}/rcon/connect", json={"address": "", "password": "pw"})
    assert res.json() == {"status": "connected", "address": "172.17.0.4:27015"}
    assert client.get(f"/api/servers/{sid}/rcon/status").json() == {"connected": True}

    res = client.post(f"/api/servers/{sid}/rcon/command", json={"command": "status"})
    assert res.json() == {"response": "ran status"}

    assert client.post(f"/api/servers/{sid}/rcon/disconnect").json() == {"status": "disconnected"}
    assert dialed[0][1].closed
    res = client.post(f"/api/servers/{sid}/rcon/command", json={"command": "status"})
    assert res.status_code == 409


def test_rcon_explicit_address_is_used(client, server, dialed):
    sid = short_id(server.id)
    client.post(f"/api/servers/{sid}/rcon/connect", json={"address": "192.168.1.20:27015", "password": "pw"})
    client.post(f"/api/servers/{sid}/rcon/connect", json={"address": "localhost:27015", "password": "pw"})
    assert [a for a, _ in dialed] == ["192.168.1.20:27015", "172.17.0.4:27015"]


def test_rcon_errors(client, server, dialed):
    sid = short_id(server.id)
    assert client.post(f"/api/servers/{sid}/rcon/connect", json={"address": ""}).status_code == 400
    assert client.post("/api/servers/nope/rcon/connect", json={"password": "pw"}).status_code == 404

    res = client.post(f"/api/servers/{sid}/rcon/connect", json={"password": "wrong"})
    assert res.status_code == 502
    assert "bad rcon password" in res.json()["error"]

    client.post(f"/api/servers/{sid}/rcon/connect", json={"password": "pw"})
    assert client.post(f"/api/servers/{sid}/rcon/command", json={"command": ""}).status_code == 400
    dialed[0][1].fail = True
    assert client.post(f"/api/servers/{sid}/rcon/command", json={"command": "status"}).status_code == 502
    assert client.get(f"/api/servers/{sid}/rcon/status").json() == {"connected": False}


def test_slow_rcon_connect_does_not_stall_other_requests(manager, server):
    entered = threading.Event()
    release = threading.Event()

    def dialer(address, password, timeout):
        entered.set()
        release.wait(timeout=10)
        return FakeConn()

    rcon = RconSessionManager(dialer=dialer, policy=RetryPolicy(max_attempts=1, delay=0), sleep=lambda _: None)
    sid = short_id(server.id)
    results = {}

    with TestClient(create_app(docker_manager=manager, rcon_manager=rcon)) as c:
        def connect():
            results["connect"] = c.post(
                f"/api/servers/{sid}/rcon/connect", json={"address": "10.0.0.9:27015", "password": "pw"}
            )

        slow = threading.Thread(target=connect)
        slow.start()
        try:
            assert entered.wait(timeout=5)
            started = time.monotonic()
            assert c.get("/api/servers/zz/rcon/status").json() == {"connected": False}
            assert c.get("/api/health").json()["status"] == "healthy"
            assert time.monotonic() - started < 2
            assert not release.is_set()
        finally:
            release.set()
            slow.join(timeout=10)

    assert results["connect"].json() == {"status": "connected", "address": "10.0.0.9:27015"}


def test_unreachable_engine(monkeypatch):
    monkeypatch.setattr(docker_manager, "DOCKER_HOST", "unix:///tmp/strikedock-missing-docker.sock")

    with TestClient(create_app()) as c:
        res = c.get("/api/health")
        assert res.status_code == 200
        assert res.json()["status"] == "docker unavailable"

        res = c.get("/api/servers")
        assert res.status_code == 500
        assert "docker unavailable" in res.json()["error"]


def test_docker_manager_is_built_once(monkeypatch):
    built = []

    def build(settings=None):
        time.sleep(0.05)
        built.append(settings)
        return DockerManager(client=FakeDockerClient(), settings=settings)

    monkeypatch.setattr(app_module, "DockerManager", build)

    with TestClient(create_app()) as c:
        threads = [threading.Thread(target=c.get, args=("/api/servers",)) for _ in range(5)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

    assert len(built) == 1
