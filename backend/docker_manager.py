import logging
import struct
import threading
from contextlib import contextmanager
from dataclasses import dataclass, asdict
from typing import BinaryIO, List, Optional

import docker
import requests

from archive_stream import ArchiveDownload, ArchiveUpload, base_name
from config import (
    CONTAINER_PREFIX,
    DEFAULT_LOG_TAIL,
    DEFAULT_RCON_PORT,
    DOCKER_HOST,
    FILES_ROOT,
    GAME_IMAGE,
    MANAGED_LABEL,
    NAME_LABEL,
    PORT_LABEL,
    RCON_FALLBACK_HOST,
)
from errors import InternalError, NotFoundError, ValidationError
from file_manager import FileEntry, list_command, parse_listing
from server_stats import ContainerStats, compute_stats
from settings_store import (
    InMemorySettingsStore,
    ServerSettings,
    SettingsStore,
    get_or_create_default,
)

logger = logging.getLogger(__name__)

SHORT_ID_LENGTH = 12

ENGINE_ERRORS = (docker.errors.DockerException, requests.exceptions.RequestException)

# stream type (1), padding (3), payload length (4, big endian)
_LOG_HEADER = struct.Struct(">BxxxL")


@dataclass
class ServerSummary:
    id: str
    name: str
    port: str
    status: str

    def to_dict(self) -> dict:
        return asdict(self)


def short_id(full_id: str) -> str:
    return full_id[:SHORT_ID_LENGTH]


def container_name_for(name: str) -> str:
    return f"{CONTAINER_PREFIX}-{name}"


def decode_log_stream(data: bytes) -> bytes:
    """Strip the 8-byte frame headers from a multiplexed log body.

    A truncated trailing frame yields whatever payload bytes are present.
    """
    out = bytearray()
    view = memoryview(data)
    offset = 0
    while len(view) - offset >= _LOG_HEADER.size:
        _stream, length = _LOG_HEADER.unpack_from(view, offset)
        offset += _LOG_HEADER.size
        end = min(offset + length, len(view))
        out += view[offset:end]
        offset = end
    return bytes(out)


def _validate_port(port) -> str:
    port = str(port or "").strip()
    if not port:
        raise ValidationError("name and port required")
    if not port.isdigit() or not 0 < int(port) < 65536:
        raise ValidationError(f"invalid port {port}")
    return port


class DockerManager:
    def __init__(self, client: docker.DockerClient | None = None, settings: SettingsStore | None = None):
        self.client = client or self._init_client()
        self.settings = settings or InMemorySettingsStore()
        self._name_locks: dict[str, threading.Lock] = {}
        self._name_locks_guard = threading.Lock()

    def _init_client(self) -> docker.DockerClient:
        # Both constructors query the engine for its API version
        try:
            if DOCKER_HOST:
                return docker.DockerClient(base_url=DOCKER_HOST)
            return docker.from_env()
        except ENGINE_ERRORS as e:
            logger.error(f"Docker engine unavailable: {e}")
            raise InternalError(f"docker unavailable: {e}") from e

    def ping(self) -> bool:
        try:
            return bool(self.client.ping())
        except Exception as e:
            logger.warning(f"Docker ping failed: {e}")
            return False

    @contextmanager
    def _name_lock(self, name: str):
        with self._name_locks_guard:
            lock = self._name_locks.setdefault(name, threading.Lock())
        with lock:
            yield

    def _all_containers(self, sparse: bool = False) -> list:
        try:
            return self.client.containers.list(all=True, sparse=sparse, ignore_removed=True)
        except ENGINE_ERRORS as e:
            logger.error(f"Error listing containers: {e}")
            raise InternalError(str(e)) from e

    def _get_container(self, full_id: str):
        try:
            return self.client.containers.get(full_id)
        except docker.errors.NotFound:
            raise NotFoundError("server not found") from None
        except ENGINE_ERRORS as e:
            raise InternalError(str(e)) from e

    def list_servers(self) -> List[ServerSummary]:
        result = []
        for c in self._all_containers():
            labels = c.labels or {}
            if str(labels.get(MANAGED_LABEL, "")).lower() != "true":
                continue
            result.append(ServerSummary(
                id=short_id(c.id),
                name=labels.get(NAME_LABEL, ""),
                port=labels.get(PORT_LABEL, ""),
                status=getattr(c, "status", "unknown"),
            ))
        return result

    def resolve(self, prefix: str) -> Optional[str]:
        """Full id of the first container whose id starts with ``prefix``, else None."""
        if not prefix:
            return None
        for c in self._all_containers(sparse=True):
            if c.id.startswith(prefix):
                return c.id
        return None

    def require(self, prefix: str) -> str:
        full_id = self.resolve(prefix)
        if not full_id:
            raise NotFoundError("server not found")
        return full_id

    def _pull_image(self, diagnostics: list | None = None) -> None:
        try:
            self.client.images.pull(GAME_IMAGE)
            logger.info(f"Pulled image {GAME_IMAGE}")
        except ENGINE_ERRORS as e:
            # The image may already be present locally
            logger.warning(f"Failed to pull {GAME_IMAGE}, using local image: {e}")
            if diagnostics is not None:
                diagnostics.append({"step": "pull", "image": GAME_IMAGE, "error": str(e)})

    def _remove_named(self, container_name: str) -> None:
        for c in self.client.containers.list(all=True, filters={"name": container_name}):
            if c.name == container_name:
                logger.info(f"Removing existing container {container_name} ({short_id(c.id)})")
                c.remove(force=True)

    def create_server(self, name: str, port, rcon_password: str, diagnostics: list | None = None) -> ServerSummary:
        """Create and start a game server container, replacing any with the same name."""
        if not name:
            raise ValidationError("name and port required")
        port = _validate_port(port)
        if not rcon_password:
            raise ValidationError("rcon password required")

        container_name = container_name_for(name)
        env_vars = {
            "CS2_SERVERNAME": name,
            "CS2_PORT": port,
            "CS2_RCON_PORT": port,
            "CS2_RCONPW": rcon_password,
        }
        labels = {
            MANAGED_LABEL: "true",
            NAME_LABEL: name,
            PORT_LABEL: port,
        }
        port_binding = {f"{port}/tcp": int(port), f"{port}/udp": int(port)}

        with self._name_lock(name):
            self._pull_image(diagnostics)
            try:
                self._remove_named(container_name)
                container = self.client.containers.create(
                    GAME_IMAGE,
                    name=container_name,
                    environment=env_vars,
                    labels=labels,
                    ports=port_binding,
                )
                container.start()
            except ENGINE_ERRORS as e:
                logger.error(f"Failed to create container for server {name}: {e}")
                raise InternalError(str(e)) from e

        sid = short_id(container.id)
        logger.info(f"Container {sid} created and started for server {name}")
        self.settings.put(sid, ServerSettings(server_name=name, rcon_password=rcon_password))
        return ServerSummary(id=sid, name=name, port=port, status="running")

    def start_server(self, prefix: str) -> dict:
        container = self._get_container(self.require(prefix))
        try:
            container.start()
        except ENGINE_ERRORS as e:
            logger.error(f"Failed to start container {prefix}: {e}")
            raise InternalError(str(e)) from e
        logger.info(f"Started container {short_id(container.id)}")
        return {"id": short_id(container.id), "status": "started"}

    def stop_server(self, prefix: str) -> dict:
        container = self._get_container(self.require(prefix))
        try:
            container.stop()
        except ENGINE_ERRORS as e:
            logger.error(f"Failed to stop container {prefix}: {e}")
            raise InternalError(str(e)) from e
        logger.info(f"Stopped container {short_id(container.id)}")
        return {"id": short_id(container.id), "status": "stopped"}

    def remove_server(self, prefix: str) -> dict:
        container = self._get_container(self.require(prefix))
        try:
            container.remove(force=True)
        except ENGINE_ERRORS as e:
            logger.error(f"Failed to remove container {prefix}: {e}")
            raise InternalError(str(e)) from e
        logger.info(f"Removed container {short_id(container.id)}")
        return {"id": short_id(container.id), "status": "deleted"}

    def get_address(self, full_id: str) -> str:
        """RCON address reachable over the engine network.

        Bridge IP, then the container's primary IP, each with the labeled port.
        Without either, fall back to the loopback host on the default RCON port.
        """
        attrs = self._get_container(full_id).attrs or {}
        labels = (attrs.get("Config", {}) or {}).get("Labels", {}) or {}
        port = labels.get(PORT_LABEL) or str(DEFAULT_RCON_PORT)
        network = attrs.get("NetworkSettings", {}) or {}
        bridge = (network.get("Networks", {}) or {}).get("bridge", {}) or {}

        ip = bridge.get("IPAddress") or network.get("IPAddress")
        if ip:
            return f"{ip}:{port}"
        logger.warning(f"No container IP for {short_id(full_id)}; falling back to {RCON_FALLBACK_HOST}")
        return f"{RCON_FALLBACK_HOST}:{DEFAULT_RCON_PORT}"

    def get_logs(self, full_id: str, tail=None) -> str:
        """Last ``tail`` lines of stdout+stderr with timestamps."""
        tail = DEFAULT_LOG_TAIL if tail is None else tail
        container = self._get_container(full_id)
        tty = bool(((container.attrs or {}).get("Config", {}) or {}).get("Tty"))

        api = self.client.api
        url = f"{api.base_url}/v{api.api_version}/containers/{full_id}/logs"
        params = {"stdout": 1, "stderr": 1, "timestamps": 1, "tail": str(tail)}
        try:
            res = api.get(url, params=params)
            res.raise_for_status()
        except requests.exceptions.RequestException as e:
            logger.error(f"Failed to fetch logs for {short_id(full_id)}: {e}")
            raise InternalError(str(e)) from e

        body = res.content or b""
        if not tty:
            body = decode_log_stream(body)
        return body.decode("utf-8", errors="replace")

    def exec_run(self, full_id: str, argv: List[str]) -> str:
        container = self._get_container(full_id)
        try:
            result = container.exec_run(argv, stdout=True, stderr=True)
        except ENGINE_ERRORS as e:
            logger.error(f"Exec {argv[0]} failed in {short_id(full_id)}: {e}")
            raise InternalError(str(e)) from e
        if result.exit_code:
            logger.warning(f"Exec {argv[0]} in {short_id(full_id)} exited with {result.exit_code}")
        return (result.output or b"").decode("utf-8", errors="replace")

    def get_stats(self, full_id: str) -> ContainerStats:
        container = self._get_container(full_id)
        try:
            snapshot = container.stats(stream=False)
            container.reload()
        except ENGINE_ERRORS as e:
            logger.error(f"Error getting stats for container {short_id(full_id)}: {e}")
            raise InternalError(str(e)) from e
        return compute_stats(snapshot, container.attrs or {})

    def list_files(self, full_id: str, path: str | None = None, diagnostics: list | None = None) -> List[FileEntry]:
        path = path or FILES_ROOT
        output = self.exec_run(full_id, list_command(path))
        return parse_listing(output, path, diagnostics)

    def delete_path(self, full_id: str, path: str) -> None:
        if not path:
            raise ValidationError("path required")
        self.exec_run(full_id, ["rm", "-rf", path])
        logger.info(f"Deleted {path} in {short_id(full_id)}")

    def upload_file(self, full_id: str, dest_dir: str | None, filename: str, size: int, source: BinaryIO) -> None:
        dest_dir = dest_dir or FILES_ROOT
        if not base_name(filename):
            raise ValidationError("file required")
        container = self._get_container(full_id)

        with ArchiveUpload(filename, size, source) as archive:
            try:
                ok = container.put_archive(dest_dir, archive)
            except ENGINE_ERRORS as e:
                logger.error(f"Upload of {filename} to {short_id(full_id)} failed: {e}")
                raise InternalError(str(e)) from e
            archive.raise_for_error()
        if not ok:
            raise InternalError(f"upload of {filename} to {dest_dir} was rejected")
        logger.info(f"Uploaded {archive.filename} ({size} bytes) to {dest_dir} in {short_id(full_id)}")

    def download_file(self, full_id: str, path: str) -> ArchiveDownload:
        if not path:
            raise ValidationError("path required")
        container = self._get_container(full_id)
        try:
            chunks, _stat = container.get_archive(path)
        except ENGINE_ERRORS as e:
            logger.error(f"Download of {path} from {short_id(full_id)} failed: {e}")
            raise InternalError(str(e)) from e
        return ArchiveDownload(chunks)

    def get_settings(self, prefix: str) -> ServerSettings:
        return get_or_create_default(self.settings, short_id(self.require(prefix)))

    def update_settings(self, prefix: str, settings: ServerSettings) -> ServerSettings:
        self.settings.put(short_id(self.require(prefix)), settings)
        return settings
