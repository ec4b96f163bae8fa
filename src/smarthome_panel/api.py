"""HTTP API for the smart-home panel."""

from __future__ import annotations

import asyncio
import time
from typing import Any, Callable, Dict, List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, Response, status
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field
import uvicorn

from .commands import CommandExecutor
from .config import Config
from .interpreter import (
    ConfigurationError,
    InterpreterError,
    ResponseFormatError,
    TransportError,
)
from .logging import get_logger, redact_mapping
from .metrics import METRICS_CONTENT_TYPE, latest_metrics, observe_request
from .models import TRIGGER_MANUAL, NewScene, SceneDeviceState
from .state import (
    DeviceNotFoundError,
    HomeState,
    HomeStateError,
    ReadOnlyDeviceError,
    SceneNotFoundError,
)
from .store import StoreError

SECRET_SETTING_KEYS = ("gemini_api_key", "scaledown_api_key")


def _build_auth_dependency(config: Config) -> Callable[[Request], Any]:
    async def _auth_guard(request: Request) -> None:
        if not config.api_key:
            return
        if request.headers.get("X-API-Key") == config.api_key:
            return
        auth_header = request.headers.get("Authorization")
        if auth_header and auth_header.startswith("Bearer "):
            if auth_header.split(" ", 1)[1] == config.api_key:
                return
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or missing credentials",
            headers={"WWW-Authenticate": "Bearer"},
        )

    return _auth_guard


class StatusPatch(BaseModel):
    """Manual status change for one device."""

    status: Dict[str, Any]
    trigger: str = TRIGGER_MANUAL


class CommandRequest(BaseModel):
    """Free-text command, typed or transcribed."""

    command: str = Field(min_length=1)


class SceneStateIn(BaseModel):
    device_id: str
    status: Dict[str, Any]


class SceneCreate(BaseModel):
    name: str = Field(min_length=1)
    description: str = ""
    icon: str = "Sparkles"
    device_states: List[SceneStateIn] = Field(default_factory=list)
    is_favorite: bool = False


class SceneCapture(BaseModel):
    """Save the current device statuses under a new scene name."""

    name: str = Field(min_length=1)
    description: str = "Custom scene"
    icon: str = "Sparkles"
    is_favorite: bool = False
    device_ids: Optional[List[str]] = None


class SettingValue(BaseModel):
    value: Dict[str, Any]


class SecurityModeIn(BaseModel):
    mode: str


def _error_status(exc: Exception) -> int:
    if isinstance(exc, (DeviceNotFoundError, SceneNotFoundError)):
        return status.HTTP_404_NOT_FOUND
    if isinstance(exc, ReadOnlyDeviceError):
        return status.HTTP_409_CONFLICT
    if isinstance(exc, ConfigurationError):
        return status.HTTP_400_BAD_REQUEST
    if isinstance(exc, TransportError):
        return status.HTTP_502_BAD_GATEWAY
    if isinstance(exc, ResponseFormatError):
        return status.HTTP_422_UNPROCESSABLE_ENTITY
    if isinstance(exc, StoreError):
        return status.HTTP_503_SERVICE_UNAVAILABLE
    if isinstance(exc, ValueError):
        return status.HTTP_400_BAD_REQUEST
    return status.HTTP_500_INTERNAL_SERVER_ERROR


def create_app(config: Config, state: HomeState, executor: CommandExecutor) -> FastAPI:
    """Create and configure a FastAPI application."""

    logger = get_logger("smarthome.api")
    request_logger = get_logger("smarthome.api.middleware")
    auth_dependency = _build_auth_dependency(config)
    guarded = [Depends(auth_dependency)]
    app = FastAPI(
        title="Smart Home Panel API",
        docs_url="/docs" if config.api_docs else None,
        redoc_url="/redoc" if config.api_docs else None,
        openapi_url="/openapi.json" if config.api_docs else None,
    )

    @app.middleware("http")
    async def _logging_middleware(request: Request, call_next: Callable[..., Any]) -> Response:
        start = time.perf_counter()
        try:
            response = await call_next(request)
        except Exception:
            logger.exception("Unhandled API error", extra={"path": request.url.path})
            raise
        duration_seconds = time.perf_counter() - start
        path_template = getattr(request.scope.get("route"), "path", request.url.path)
        observe_request(request.method, path_template, response.status_code, duration_seconds)
        request_logger.info(
            "Handled request",
            extra={
                "method": request.method,
                "path": path_template,
                "status": response.status_code,
                "duration_ms": round(duration_seconds * 1000, 2),
                "client": request.client.host if request.client else None,
                "headers": redact_mapping(dict(request.headers)),
            },
        )
        return response

    @app.exception_handler(HTTPException)
    async def _http_exc_handler(request: Request, exc: HTTPException) -> JSONResponse:
        request_logger.warning(
            "API error",
            extra={"path": request.url.path, "status": exc.status_code, "detail": exc.detail},
        )
        return JSONResponse(
            status_code=exc.status_code,
            content={"detail": exc.detail},
            headers=getattr(exc, "headers", None),
        )

    @app.exception_handler(RequestValidationError)
    async def _validation_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
        request_logger.warning(
            "Validation error",
            extra={"path": request.url.path, "errors": exc.errors()},
        )
        return JSONResponse(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            content={"detail": exc.errors()},
        )

    async def _domain_handler(request: Request, exc: Exception) -> JSONResponse:
        code = _error_status(exc)
        request_logger.warning(
            "Request failed",
            extra={
                "path": request.url.path,
                "status": code,
                "error": str(exc),
                "error_type": type(exc).__name__,
            },
        )
        content: Dict[str, Any] = {"detail": str(exc)}
        if isinstance(exc, TransportError) and exc.status is not None:
            content["upstream_status"] = exc.status
        return JSONResponse(status_code=code, content=content)

    for error_type in (HomeStateError, InterpreterError, StoreError, ValueError):
        app.add_exception_handler(error_type, _domain_handler)

    @app.get("/health", dependencies=guarded)
    async def health() -> Dict[str, Any]:
        return {"status": "ok" if state.error is None else "degraded", "error": state.error}

    @app.get("/metrics")
    async def metrics() -> Response:
        return Response(content=latest_metrics(), media_type=METRICS_CONTENT_TYPE)

    @app.get("/rooms", dependencies=guarded)
    async def list_rooms() -> List[Dict[str, Any]]:
        return [room.as_dict() for room in state.rooms]

    @app.get("/devices", dependencies=guarded)
    async def list_devices(room_id: Optional[str] = None) -> List[Dict[str, Any]]:
        return [
            device.as_dict()
            for device in state.devices
            if room_id is None or device.room_id == room_id
        ]

    @app.get("/devices/{device_id}", dependencies=guarded)
    async def get_device(device_id: str) -> Dict[str, Any]:
        return state.get_device(device_id).as_dict()

    @app.patch("/devices/{device_id}/status", dependencies=guarded)
    async def update_device_status(device_id: str, payload: StatusPatch) -> Dict[str, Any]:
        result = await state.update_device(device_id, payload.status, payload.trigger)
        return {
            "device": result.device.as_dict(),
            "previous_status": result.previous_status,
            "logged": result.log.ok,
        }

    @app.post("/commands", dependencies=guarded)
    async def run_command(payload: CommandRequest) -> Dict[str, Any]:
        outcome = await executor.execute(payload.command)
        return outcome.as_dict()

    @app.get("/scenes", dependencies=guarded)
    async def list_scenes() -> List[Dict[str, Any]]:
        return [scene.as_dict() for scene in state.scenes]

    @app.post("/scenes", dependencies=guarded, status_code=status.HTTP_201_CREATED)
    async def create_scene(payload: SceneCreate) -> Dict[str, Any]:
        scene = await state.create_scene(
            NewScene(
                name=payload.name,
                description=payload.description,
                icon=payload.icon,
                device_states=tuple(
                    SceneDeviceState(device_id=item.device_id, status=dict(item.status))
                    for item in payload.device_states
                ),
                is_favorite=payload.is_favorite,
            )
        )
        return scene.as_dict()

    @app.post("/scenes/capture", dependencies=guarded, status_code=status.HTTP_201_CREATED)
    async def capture_scene(payload: SceneCapture) -> Dict[str, Any]:
        scene = await state.capture_scene(
            payload.name,
            description=payload.description,
            icon=payload.icon,
            is_favorite=payload.is_favorite,
            device_ids=payload.device_ids,
        )
        return scene.as_dict()

    @app.post("/scenes/{scene_id}/apply", dependencies=guarded)
    async def apply_scene(scene_id: str) -> Dict[str, Any]:
        scene = await state.apply_scene(scene_id)
        return {"status": "applied", "scene": scene.as_dict()}

    @app.post("/scenes/{scene_id}/favorite", dependencies=guarded)
    async def toggle_favorite(scene_id: str) -> Dict[str, Any]:
        scene = await state.toggle_scene_favorite(scene_id)
        return scene.as_dict()

    @app.delete(
        "/scenes/{scene_id}", dependencies=guarded, status_code=status.HTTP_204_NO_CONTENT
    )
    async def delete_scene(scene_id: str) -> Response:
        await state.delete_scene(scene_id)
        return Response(status_code=status.HTTP_204_NO_CONTENT)

    @app.get("/activity", dependencies=guarded)
    async def list_activity(limit: int = 50) -> List[Dict[str, Any]]:
        return [entry.as_dict() for entry in state.activity_logs[: max(0, limit)]]

    @app.get("/settings/{key}", dependencies=guarded)
    async def get_setting(key: str) -> Dict[str, Any]:
        setting = state.get_setting(key)
        if setting is None:
            raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Setting not found")
        body = setting.as_dict()
        body["value"] = redact_mapping(setting.value, SECRET_SETTING_KEYS)
        return body

    @app.put("/settings/{key}", dependencies=guarded)
    async def put_setting(key: str, payload: SettingValue) -> Dict[str, Any]:
        setting = await state.update_setting(key, payload.value)
        body = setting.as_dict()
        body["value"] = redact_mapping(setting.value, SECRET_SETTING_KEYS)
        return body

    @app.get("/state", dependencies=guarded)
    async def get_state() -> Dict[str, Any]:
        return state.snapshot()

    @app.put("/security-mode", dependencies=guarded)
    async def set_security_mode(payload: SecurityModeIn) -> Dict[str, Any]:
        state.set_security_mode(payload.mode)
        return {"security_mode": state.security_mode}

    return app


class ApiService:
    """Lifecycle wrapper for the FastAPI/uvicorn server."""

    def __init__(self, config: Config, state: HomeState, executor: CommandExecutor) -> None:
        self.config = config
        self.state = state
        self.executor = executor
        self.logger = get_logger("smarthome.api")
        self._server: Optional[uvicorn.Server] = None
        self._server_task: Optional["asyncio.Task[Any]"] = None

    async def start(self) -> None:
        if self._server:
            return
        app = create_app(self.config, self.state, self.executor)
        uvicorn_config = uvicorn.Config(
            app,
            host=self.config.api_host,
            port=self.config.api_port,
            log_config=None,
            loop="asyncio",
        )
        self._server = uvicorn.Server(config=uvicorn_config)
        self._server_task = asyncio.create_task(self._server.serve())
        self.logger.info(
            "API server starting",
            extra={"host": self.config.api_host, "port": self.config.api_port},
        )

    async def wait(self) -> None:
        if self._server_task:
            await self._server_task

    async def stop(self) -> None:
        if not self._server:
            return
        self.logger.info("Stopping API server")
        self._server.should_exit = True
        if self._server_task:
            await self._server_task
        self._server = None
        self._server_task = None
