import logging
import threading
import time
from contextlib import contextmanager, suppress
from dataclasses import dataclass
from typing import Callable, Dict, Optional, Tuple

from rcon.source import Client

from config import (
    DEFAULT_RCON_PORT,
    RCON_DIAL_TIMEOUT,
    RCON_MAX_ATTEMPTS,
    RCON_RETRY_DELAY,
)
from errors import CommandError, NotConnectedError, RconConnectionError, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = RCON_MAX_ATTEMPTS
    delay: float = RCON_RETRY_DELAY
    timeout: float = RCON_DIAL_TIMEOUT


def parse_address(address: str, default_port: int = DEFAULT_RCON_PORT) -> Tuple[str, int]:
    """Split ``host:port``; a bare host gets ``default_port``."""
    address = (address or "").strip()
    if not address:
        raise ValidationError("address required")
    host, sep, port = address.rpartition(":")
    if not sep:
        return address, default_port
    host = host.strip("[]")
    try:
        return host, int(port)
    except ValueError:
        raise ValidationError(f"invalid port in address {address}") from None


class SourceConnection:
    """Authenticated Source RCON client. ``timeout`` covers the TCP connect and every read."""

    def __init__(self, client: Client):
        self._client = client

    def command(self, command: str) -> str:
        # passed through verbatim so quoted arguments (say "gl hf") survive
        return str(self._client.run(command))

    def disconnect(self) -> None:
        self._client.close()


def source_dialer(address: str, password: str, timeout: float) -> SourceConnection:
    host, port = parse_address(address)
    client = Client(host, port, passwd=password, timeout=timeout)
    try:
        client.connect(login=True)
    except Exception:
        # the socket may not exist yet if connect failed early
        with suppress(AttributeError, OSError):
            client.close()
        raise
    return SourceConnection(client)


class RWLock:
    """Shared/exclusive lock. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            while self._writer or self._readers:
                self._cond.wait()
            self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class RconSession:
    """One authenticated connection. Commands on the same socket are serialized."""

    def __init__(self, address: str, conn):
        self.address = address
        self._conn = conn
        self._lock = threading.Lock()

    def execute(self, command: str) -> str:
        with self._lock:
            return self._conn.command(command)

    def close(self) -> None:
        try:
            self._conn.disconnect()
        except Exception as e:
            logger.warning(f"Error closing RCON connection to {self.address}: {e}")


class RconSessionManager:
    def __init__(
        self,
        dialer: Optional[Callable[[str, str, int], object]] = None,
        policy: Optional[RetryPolicy] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self._dialer = dialer or source_dialer
        self._policy = policy or RetryPolicy()
        self._sleep = sleep
        self._sessions: Dict[str, RconSession] = {}
        self._lock = RWLock()
        self._connect_locks: Dict[str, threading.Lock] = {}
        self._connect_locks_guard = threading.Lock()

    @contextmanager
    def _connect_lock(self, server_id: str):
        with self._connect_locks_guard:
            lock = self._connect_locks.setdefault(server_id, threading.Lock())
        with lock:
            yield

    def _dial(self, address: str, password: str):
        last_err: Optional[Exception] = None
        for attempt in range(1, self._policy.max_attempts + 1):
            try:
                return self._dialer(address, password, self._policy.timeout)
            except ValidationError:
                raise
            except Exception as e:
                last_err = e
                logger.warning(
                    f"RCON dial to {address} failed (attempt {attempt}/{self._policy.max_attempts}): {e}"
                )
                if attempt < self._policy.max_attempts:
                    self._sleep(self._policy.delay)
        raise RconConnectionError(f"failed to connect to {address}: {last_err}")

    def connect(self, server_id: str, address: str, password: str) -> None:
        """Replace the session for ``server_id`` with a freshly dialed one.

        Connects for the same id are serialized. The map's write lock is only
        held to drop the old session and to store the new one, never across
        the dial, so other servers' lookups are not held up by a slow peer.
        """
        with self._connect_lock(server_id):
            with self._lock.write():
                existing = self._sessions.pop(server_id, None)
            if existing is not None:
                logger.info(f"Replacing RCON session for {server_id} ({existing.address})")
                existing.close()

            conn = self._dial(address, password)
            with self._lock.write():
                self._sessions[server_id] = RconSession(address, conn)
            logger.info(f"RCON connected for {server_id} at {address}")

    def execute(self, server_id: str, command: str) -> str:
        with self._lock.read():
            session = self._sessions.get(server_id)
        if session is None:
            raise NotConnectedError(f"not connected to server {server_id}")

        try:
            return session.execute(command)
        except Exception as e:
            with self._lock.write():
                if self._sessions.get(server_id) is session:
                    del self._sessions[server_id]
            logger.warning(f"RCON command failed for {server_id}, dropping session: {e}")
            session.close()
            raise CommandError(f"command failed: {e}") from e

    def disconnect(self, server_id: str) -> None:
        with self._lock.write():
            session = self._sessions.pop(server_id, None)
        if session is not None:
            session.close()
            logger.info(f"RCON disconnected for {server_id}")

    def is_connected(self, server_id: str) -> bool:
        with self._lock.read():
            return server_id in self._sessions

    def close_all(self) -> None:
        with self._lock.write():
            sessions = list(self._sessions.values())
            self._sessions.clear()
        for session in sessions:
            session.close()
