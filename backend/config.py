import os


APP_NAME = os.getenv("APP_NAME", "StrikeDock")
APP_VERSION = os.getenv("APP_VERSION", "0.1.0")

# Empty means docker.from_env() (DOCKER_HOST / default socket)
DOCKER_HOST = (os.getenv("DOCKER_HOST") or "").strip() or None

GAME_IMAGE = os.getenv("GAME_IMAGE", "joedwards32/cs2")
CONTAINER_PREFIX = os.getenv("CONTAINER_PREFIX", "strikedock")
MANAGED_LABEL = os.getenv("MANAGED_LABEL", "strikedock")
NAME_LABEL = f"{MANAGED_LABEL}.name"
PORT_LABEL = f"{MANAGED_LABEL}.port"

FILES_ROOT = os.getenv("FILES_ROOT", "/home/steam/cs2-dedicated")

DEFAULT_RCON_PORT = int(os.getenv("DEFAULT_RCON_PORT", "27015"))
RCON_FALLBACK_HOST = os.getenv("RCON_FALLBACK_HOST", "127.0.0.1")
RCON_MAX_ATTEMPTS = int(os.getenv("RCON_MAX_ATTEMPTS", "3"))
RCON_RETRY_DELAY = float(os.getenv("RCON_RETRY_DELAY", "1.0"))
RCON_DIAL_TIMEOUT = float(os.getenv("RCON_DIAL_TIMEOUT", "5"))

DEFAULT_LOG_TAIL = int(os.getenv("DEFAULT_LOG_TAIL", "100"))

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
PORT = int(os.getenv("PORT", "8080"))
ALLOWED_ORIGINS = os.getenv("ALLOWED_ORIGINS", "*")
