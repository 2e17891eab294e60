import logging
import threading
from abc import ABC, abstractmethod
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class ServerSettings(BaseModel):
    """Per-server game configuration as edited from the panel."""

    model_config = ConfigDict(populate_by_name=True)

    server_name: str = Field("CS2 Server", alias="serverName")
    max_players: int = Field(10, alias="maxPlayers")
    map: str = "de_dust2"
    tickrate: int = 128
    rcon_password: str = Field("", alias="rconPassword")
    sv_password: str = Field("", alias="svPassword")
    game_mode: str = Field("1", alias="gameMode")
    game_type: str = Field("0", alias="gameType")


class SettingsStore(ABC):
    @abstractmethod
    def get(self, key: str) -> Optional[ServerSettings]:
        ...

    @abstractmethod
    def put(self, key: str, settings: ServerSettings) -> None:
        ...


class InMemorySettingsStore(SettingsStore):
    """Settings kept for the lifetime of the process only.

    Concurrent writers for the same key race; whichever ``put`` runs last wins.
    """

    def __init__(self):
        self._items: dict[str, ServerSettings] = {}
        self._lock = threading.Lock()

    def get(self, key: str) -> Optional[ServerSettings]:
        with self._lock:
            settings = self._items.get(key)
        return settings.model_copy() if settings is not None else None

    def put(self, key: str, settings: ServerSettings) -> None:
        with self._lock:
            self._items[key] = settings.model_copy()


def get_or_create_default(store: SettingsStore, key: str) -> ServerSettings:
    settings = store.get(key)
    if settings is None:
        logger.debug(f"No settings stored for {key}; using defaults")
        settings = ServerSettings()
        store.put(key, settings)
    return settings
