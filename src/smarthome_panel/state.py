"""In-process home state: the single owner of every write to the record store.

``HomeState`` keeps cached copies of rooms, devices, activity, scenes and
settings. Each mutation persists first and replaces the cached record by id
only once the store confirms it. Failures are recorded in ``error`` and
re-raised to the caller; activity logging is the one best-effort exception.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass, fields
from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Sequence

from .events import (
    EVENT_ACTIVITY_LOGGED,
    EVENT_DEVICE_UPDATED,
    EVENT_SCENE_APPLIED,
    EVENT_SCENES_CHANGED,
    EVENT_SETTING_UPDATED,
    EVENT_STATE_ERROR,
    EventBus,
)
from .logging import get_logger
from .metrics import (
    record_activity_log_failure,
    record_device_update,
    record_scene_application,
)
from .models import (
    ACTION_DEVICE_UPDATE,
    ACTION_SCENE_APPLIED,
    SECURITY_MODES,
    TRIGGER_MANUAL,
    TRIGGER_SCENE,
    TRIGGERS,
    ActivityLog,
    CompressionResult,
    Device,
    DeviceStatus,
    NewActivityLog,
    NewScene,
    Room,
    Scene,
    SceneDeviceState,
    Setting,
    TokenStats,
    merge_status,
    validate_status_patch,
)
from .store import RecordStore, StoreError

DEFAULT_ACTIVITY_CACHE_LIMIT = 50
DEFAULT_SCENE_STEP_DELAY = 0.2


class HomeStateError(Exception):
    """Base class for domain errors raised by :class:`HomeState`."""


class DeviceNotFoundError(HomeStateError):
    def __init__(self, device_id: str) -> None:
        super().__init__(f"Device not found: {device_id}")
        self.device_id = device_id


class ReadOnlyDeviceError(HomeStateError):
    def __init__(self, device: Device) -> None:
        super().__init__(f"Device is read-only: {device.name} ({device.id})")
        self.device_id = device.id


class SceneNotFoundError(HomeStateError):
    def __init__(self, scene_id: str) -> None:
        super().__init__(f"Scene not found: {scene_id}")
        self.scene_id = scene_id


@dataclass(frozen=True)
class LogWriteResult:
    """Outcome of a best-effort activity log write."""

    entry: Optional[ActivityLog] = None
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.entry is not None


@dataclass(frozen=True)
class DeviceUpdate:
    """Result of one device mutation."""

    device: Device
    previous_status: DeviceStatus
    log: LogWriteResult


class HomeState:
    """Cached home model plus every operation that changes it."""

    def __init__(
        self,
        store: RecordStore,
        *,
        event_bus: Optional[EventBus] = None,
        scene_step_delay: float = DEFAULT_SCENE_STEP_DELAY,
        activity_cache_limit: int = DEFAULT_ACTIVITY_CACHE_LIMIT,
        seed_demo: bool = True,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.store = store
        self.event_bus = event_bus or EventBus()
        self.scene_step_delay = scene_step_delay
        self.activity_cache_limit = min(max(1, activity_cache_limit), DEFAULT_ACTIVITY_CACHE_LIMIT)
        self.seed_demo = seed_demo
        self.logger = get_logger("smarthome.state")
        self._sleep = sleep

        self.rooms: List[Room] = []
        self.devices: List[Device] = []
        self.activity_logs: List[ActivityLog] = []
        self.scenes: List[Scene] = []
        self.settings: List[Setting] = []
        self.security_mode = "disarmed"
        self.token_stats = TokenStats()
        self.is_loading = False
        self.error: Optional[str] = None

    # Loading

    async def initialize(self) -> None:
        """Seed the demo home if the store is empty, then load everything."""

        self.is_loading = True
        self.error = None
        try:
            if self.seed_demo:
                await self.store.seed_demo()
            rooms, devices, activity_logs, scenes, settings = await asyncio.gather(
                self.store.list_rooms(),
                self.store.list_devices(),
                self.store.list_activity_logs(self.activity_cache_limit),
                self.store.list_scenes(),
                self.store.list_settings(),
            )
        except Exception as exc:
            self.is_loading = False
            await self._fail(exc, "Failed to initialize")
            raise
        self.rooms = list(rooms)
        self.devices = list(devices)
        self.activity_logs = list(activity_logs)
        self.scenes = list(scenes)
        self.settings = list(settings)
        self.is_loading = False
        self.logger.info(
            "Home state loaded",
            extra={
                "rooms": len(self.rooms),
                "devices": len(self.devices),
                "scenes": len(self.scenes),
                "activity_logs": len(self.activity_logs),
            },
        )

    async def refresh_data(self) -> bool:
        """Reload devices and recent activity; failures are only logged."""

        try:
            devices, activity_logs = await asyncio.gather(
                self.store.list_devices(),
                self.store.list_activity_logs(self.activity_cache_limit),
            )
        except StoreError as exc:
            self.logger.warning("Failed to refresh data", extra={"error": str(exc)})
            return False
        self.devices = list(devices)
        self.activity_logs = list(activity_logs)
        return True

    # Lookups

    def get_device(self, device_id: str) -> Device:
        for device in self.devices:
            if device.id == device_id:
                return device
        raise DeviceNotFoundError(device_id)

    def get_scene(self, scene_id: str) -> Scene:
        for scene in self.scenes:
            if scene.id == scene_id:
                return scene
        raise SceneNotFoundError(scene_id)

    def get_setting(self, key: str) -> Optional[Setting]:
        """Local read of a cached setting; never touches the store."""

        for setting in self.settings:
            if setting.key == key:
                return setting
        return None

    def snapshot(self) -> Dict[str, Any]:
        return {
            "security_mode": self.security_mode,
            "token_stats": self.token_stats.as_dict(),
            "is_loading": self.is_loading,
            "error": self.error,
            "counts": {
                "rooms": len(self.rooms),
                "devices": len(self.devices),
                "scenes": len(self.scenes),
                "activity_logs": len(self.activity_logs),
            },
        }

    # Devices

    async def update_device(
        self,
        device_id: str,
        status: Mapping[str, Any],
        trigger: str = TRIGGER_MANUAL,
    ) -> DeviceUpdate:
        """Merge `status` into a device's current status and persist it.

        Keys absent from `status` keep their current values. The activity
        entry records the full prior status and the patch as requested.
        """

        try:
            if trigger not in TRIGGERS:
                raise ValueError(f"Unknown trigger: {trigger}")
            current = self.get_device(device_id)
            if current.read_only:
                raise ReadOnlyDeviceError(current)
            patch = validate_status_patch(status)
            merged = merge_status(current.status, patch)
            updated = await self.store.update_device_status(device_id, merged)
        except Exception as exc:
            record_device_update(trigger, _failure_kind(exc))
            await self._fail(exc, "Failed to update device")
            raise

        self._replace_device(updated)
        record_device_update(trigger, "ok")
        self.logger.info(
            "Device updated",
            extra={"device_id": device_id, "trigger": trigger, "patch": patch},
        )

        log = await self.add_activity_log(
            NewActivityLog(
                action_type=ACTION_DEVICE_UPDATE,
                trigger=trigger,
                device_id=device_id,
                room_id=current.room_id,
                previous_state=dict(current.status),
                new_state=patch,
            )
        )
        await self.event_bus.publish(
            EVENT_DEVICE_UPDATED,
            {"device": updated.as_dict(), "previous_status": dict(current.status), "trigger": trigger},
        )
        return DeviceUpdate(device=updated, previous_status=dict(current.status), log=log)

    def _replace_device(self, updated: Device) -> None:
        self.devices = [updated if device.id == updated.id else device for device in self.devices]

    # Activity

    async def add_activity_log(self, entry: NewActivityLog) -> LogWriteResult:
        """Persist an activity entry; a failed write is logged, never raised."""

        try:
            created = await self.store.insert_activity_log(entry)
        except StoreError as exc:
            record_activity_log_failure()
            self.logger.warning(
                "Failed to add activity log",
                extra={"action_type": entry.action_type, "error": str(exc)},
            )
            return LogWriteResult(error=str(exc))

        self.activity_logs = [created, *self.activity_logs][: self.activity_cache_limit]
        await self.event_bus.publish(EVENT_ACTIVITY_LOGGED, created.as_dict())
        return LogWriteResult(entry=created)

    # Scenes

    async def create_scene(self, scene: NewScene) -> Scene:
        try:
            created = await self.store.insert_scene(scene)
        except Exception as exc:
            await self._fail(exc, "Failed to create scene")
            raise
        self.scenes = [*self.scenes, created]
        await self.event_bus.publish(EVENT_SCENES_CHANGED, {"created": created.id})
        return created

    async def capture_scene(
        self,
        name: str,
        *,
        description: str = "Custom scene",
        icon: str = "Sparkles",
        is_favorite: bool = False,
        device_ids: Optional[Sequence[str]] = None,
    ) -> Scene:
        """Save the current status of every writable device as a new scene."""

        if not name or not name.strip():
            raise ValueError("Scene name must not be empty")
        wanted = set(device_ids) if device_ids is not None else None
        states = tuple(
            SceneDeviceState(device_id=device.id, status=dict(device.status))
            for device in self.devices
            if not device.read_only and (wanted is None or device.id in wanted)
        )
        return await self.create_scene(
            NewScene(
                name=name.strip(),
                description=description,
                icon=icon,
                device_states=states,
                is_favorite=is_favorite,
            )
        )

    async def delete_scene(self, scene_id: str) -> None:
        try:
            self.get_scene(scene_id)
            await self.store.delete_scene(scene_id)
        except Exception as exc:
            await self._fail(exc, "Failed to delete scene")
            raise
        self.scenes = [scene for scene in self.scenes if scene.id != scene_id]
        await self.event_bus.publish(EVENT_SCENES_CHANGED, {"deleted": scene_id})

    async def toggle_scene_favorite(self, scene_id: str) -> Scene:
        try:
            scene = self.get_scene(scene_id)
            updated = await self.store.update_scene(scene_id, is_favorite=not scene.is_favorite)
        except Exception as exc:
            await self._fail(exc, "Failed to toggle scene favorite")
            raise
        self.scenes = [updated if item.id == scene_id else item for item in self.scenes]
        await self.event_bus.publish(EVENT_SCENES_CHANGED, {"updated": scene_id})
        return updated

    async def apply_scene(self, scene_id: str) -> Scene:
        """Replay a scene's device states in stored order.

        Steps run one at a time with ``scene_step_delay`` between them. A
        failing step stops the replay; steps already applied stay applied.
        """

        try:
            scene = self.get_scene(scene_id)
        except SceneNotFoundError as exc:
            record_scene_application("not_found")
            await self._fail(exc, "Failed to apply scene")
            raise

        self.logger.info(
            "Applying scene",
            extra={"scene_id": scene.id, "scene": scene.name, "steps": len(scene.device_states)},
        )
        try:
            for index, device_state in enumerate(scene.device_states):
                if index:
                    await self._sleep(self.scene_step_delay)
                await self.update_device(device_state.device_id, device_state.status, TRIGGER_SCENE)
        except Exception:
            # update_device has already recorded the error.
            record_scene_application("failed")
            raise

        await self.add_activity_log(
            NewActivityLog(
                action_type=ACTION_SCENE_APPLIED,
                trigger=TRIGGER_MANUAL,
                command=f"Applied scene: {scene.name}",
            )
        )
        record_scene_application("ok")
        await self.event_bus.publish(
            EVENT_SCENE_APPLIED, {"scene_id": scene.id, "name": scene.name}
        )
        return scene

    # Settings

    async def update_setting(self, key: str, value: Mapping[str, Any]) -> Setting:
        try:
            if not key:
                raise ValueError("Setting key must not be empty")
            updated = await self.store.upsert_setting(key, value)
        except Exception as exc:
            await self._fail(exc, "Failed to update setting")
            raise
        for index, setting in enumerate(self.settings):
            if setting.key == key:
                self.settings = [*self.settings[:index], updated, *self.settings[index + 1 :]]
                break
        else:
            self.settings = [*self.settings, updated]
        await self.event_bus.publish(EVENT_SETTING_UPDATED, {"key": key})
        return updated

    # Local-only state

    def set_security_mode(self, mode: str) -> None:
        if mode not in SECURITY_MODES:
            raise ValueError(f"Security mode must be one of {', '.join(SECURITY_MODES)}")
        self.security_mode = mode
        self.logger.info("Security mode changed", extra={"mode": mode})

    def update_token_stats(self, **changes: Any) -> TokenStats:
        known = {item.name for item in fields(TokenStats)}
        unknown = set(changes) - known
        if unknown:
            raise ValueError(f"Unknown token stats fields: {', '.join(sorted(unknown))}")
        for name, value in changes.items():
            setattr(self.token_stats, name, value)
        return self.token_stats

    def record_compression(self, result: CompressionResult) -> TokenStats:
        """Fold one compressed interpretation into the session statistics."""

        return self.update_token_stats(
            original_tokens=result.original_tokens,
            compressed_tokens=result.compressed_tokens,
            tokens_saved=result.tokens_saved,
            compression_ratio=result.compression_ratio,
            session_tokens_saved=self.token_stats.session_tokens_saved + result.tokens_saved,
        )

    def set_error(self, message: Optional[str]) -> None:
        self.error = message

    async def _fail(self, exc: BaseException, fallback: str) -> None:
        message = str(exc) or fallback
        self.error = message
        self.logger.error(fallback, extra={"error": message, "error_type": type(exc).__name__})
        await self.event_bus.publish(EVENT_STATE_ERROR, {"error": message})


def _failure_kind(exc: BaseException) -> str:
    if isinstance(exc, DeviceNotFoundError):
        return "not_found"
    if isinstance(exc, ReadOnlyDeviceError):
        return "read_only"
    if isinstance(exc, ValueError):
        return "invalid"
    return "error"
