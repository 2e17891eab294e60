import logging
import threading
from typing import Optional, Union

import uvicorn
from fastapi import APIRouter, FastAPI, File, Query, Request, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict, Field

from config import ALLOWED_ORIGINS, APP_NAME, APP_VERSION, DEFAULT_RCON_PORT, FILES_ROOT, LOG_LEVEL, PORT
from docker_manager import DockerManager
from errors import InternalError, PanelError, ValidationError
from rcon_manager import RconSessionManager
from settings_store import InMemorySettingsStore, ServerSettings

logger = logging.getLogger(__name__)

# Addresses the UI sends when it has no better idea
_PLACEHOLDER_ADDRESSES = ("", f"localhost:{DEFAULT_RCON_PORT}")


class ServerCreateRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    name: str = ""
    port: Union[str, int] = ""
    rcon_password: str = Field("", alias="rconPassword")


class RconConnectRequest(BaseModel):
    address: str = ""
    password: str = ""


class RconCommandRequest(BaseModel):
    command: str = ""


router = APIRouter(prefix="/api")


def get_docker_manager(request: Request) -> DockerManager:
    """Shared manager, built on first use so the app starts without an engine.

    Raises InternalError while the engine is unreachable; the next request retries.
    """
    state = request.app.state
    if state.docker_manager is None:
        with state.docker_manager_lock:
            if state.docker_manager is None:
                state.docker_manager = DockerManager(settings=state.settings_store)
    return state.docker_manager


def get_rcon_manager(request: Request) -> RconSessionManager:
    return request.app.state.rcon_manager


@router.get("/health")
def health(request: Request):
    try:
        healthy = get_docker_manager(request).ping()
    except InternalError:
        healthy = False
    return {"status": "healthy" if healthy else "docker unavailable", "name": APP_NAME}


@router.get("/servers")
def list_servers(request: Request):
    return [s.to_dict() for s in get_docker_manager(request).list_servers()]


@router.post("/servers", status_code=201)
def create_server(req: ServerCreateRequest, request: Request):
    summary = get_docker_manager(request).create_server(req.name, req.port, req.rcon_password)
    return summary.to_dict()


@router.post("/servers/{server_id}/start")
def start_server(server_id: str, request: Request):
    get_docker_manager(request).start_server(server_id)
    return {"status": "started"}


@router.post("/servers/{server_id}/stop")
def stop_server(server_id: str, request: Request):
    get_docker_manager(request).stop_server(server_id)
    return {"status": "stopped"}


@router.delete("/servers/{server_id}")
def delete_server(server_id: str, request: Request):
    get_docker_manager(request).remove_server(server_id)
    return {"status": "deleted"}


@router.get("/servers/{server_id}/stats")
def get_server_stats(server_id: str, request: Request):
    dm = get_docker_manager(request)
    stats = dm.get_stats(dm.require(server_id))
    settings = dm.get_settings(server_id)
    data = stats.to_dict()
    # Player counts are not tracked yet
    data.update({"players": 0, "maxPlayers": settings.max_players, "map": settings.map})
    return data


@router.get("/servers/{server_id}/files")
def list_files(server_id: str, request: Request, path: str = Query("")):
    dm = get_docker_manager(request)
    entries = dm.list_files(dm.require(server_id), path or FILES_ROOT)
    return [e.to_dict() for e in entries]


@router.delete("/servers/{server_id}/files")
def delete_file(server_id: str, request: Request, path: str = Query("")):
    if not path:
        raise ValidationError("path required")
    dm = get_docker_manager(request)
    dm.delete_path(dm.require(server_id), path)
    return {"status": "deleted"}


@router.post("/servers/{server_id}/files/upload")
def upload_file(server_id: str, request: Request, path: str = Query(""), file: UploadFile = File(...)):
    dm = get_docker_manager(request)
    full_id = dm.require(server_id)
    size = file.size
    if size is None:
        file.file.seek(0, 2)
        size = file.file.tell()
    file.file.seek(0)
    try:
        dm.upload_file(full_id, path or FILES_ROOT, file.filename or "", size, file.file)
    finally:
        file.file.close()
    return {"status": "uploaded"}


@router.get("/servers/{server_id}/files/download")
def download_file(server_id: str, request: Request, path: str = Query("")):
    if not path:
        raise ValidationError("path required")
    dm = get_docker_manager(request)
    download = dm.download_file(dm.require(server_id), path)
    return StreamingResponse(download.iter_bytes(), media_type=download.media_type, headers=download.headers)


@router.get("/servers/{server_id}/settings")
def get_settings(server_id: str, request: Request):
    return get_docker_manager(request).get_settings(server_id).model_dump(by_alias=True)


@router.put("/servers/{server_id}/settings")
def update_settings(server_id: str, settings: ServerSettings, request: Request):
    return get_docker_manager(request).update_settings(server_id, settings).model_dump(by_alias=True)


@router.get("/servers/{server_id}/logs")
def get_logs(server_id: str, request: Request, tail: Optional[int] = Query(None, ge=0)):
    dm = get_docker_manager(request)
    return {"logs": dm.get_logs(dm.require(server_id), tail)}


@router.post("/servers/{server_id}/rcon/connect")
def rcon_connect(server_id: str, req: RconConnectRequest, request: Request):
    if not req.password:
        raise ValidationError("password required")
    dm = get_docker_manager(request)
    full_id = dm.require(server_id)

    address = req.address.strip()
    if address in _PLACEHOLDER_ADDRESSES:
        address = dm.get_address(full_id)

    get_rcon_manager(request).connect(server_id, address, req.password)
    return {"status": "connected", "address": address}


@router.post("/servers/{server_id}/rcon/command")
def rcon_command(server_id: str, req: RconCommandRequest, request: Request):
    if not req.command:
        raise ValidationError("command required")
    response = get_rcon_manager(request).execute(server_id, req.command)
    return {"response": response}


@router.post("/servers/{server_id}/rcon/disconnect")
def rcon_disconnect(server_id: str, request: Request):
    get_rcon_manager(request).disconnect(server_id)
    return {"status": "disconnected"}


@router.get("/servers/{server_id}/rcon/status")
def rcon_status(server_id: str, request: Request):
    return {"connected": get_rcon_manager(request).is_connected(server_id)}


def create_app(docker_manager: DockerManager | None = None, rcon_manager: RconSessionManager | None = None) -> FastAPI:
    app = FastAPI(title=APP_NAME, version=APP_VERSION)
    app.state.docker_manager = docker_manager
    app.state.docker_manager_lock = threading.Lock()
    app.state.settings_store = InMemorySettingsStore()
    app.state.rcon_manager = rcon_manager or RconSessionManager()

    origins = [o.strip() for o in ALLOWED_ORIGINS.split(",") if o.strip()] or ["*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_methods=["GET", "POST", "PUT", "DELETE", "OPTIONS"],
        allow_headers=["Content-Type", "Authorization"],
    )

    @app.exception_handler(PanelError)
    async def panel_error_handler(request: Request, exc: PanelError):
        return JSONResponse(status_code=exc.status_code, content={"error": exc.message})

    @app.on_event("startup")
    async def startup_event():
        logging.basicConfig(level=LOG_LEVEL)
        logger.info(f"Starting {APP_NAME} {APP_VERSION}")

    @app.on_event("shutdown")
    async def shutdown_event():
        app.state.rcon_manager.close_all()
        logger.info("RCON sessions closed")

    app.include_router(router)
    return app


app = create_app()


def main():
    uvicorn.run(app, host="0.0.0.0", port=PORT)


if __name__ == "__main__":
    main()
