"""Records shared by the store, the state cache, and the command pipeline."""

from __future__ import annotations

import json
import sqlite3
from dataclasses import dataclass, field
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

DeviceStatus = Dict[str, Any]

TRIGGER_AI = "ai"
TRIGGER_MANUAL = "manual"
TRIGGER_SCHEDULED = "scheduled"
TRIGGER_SCENE = "scene"
TRIGGERS = (TRIGGER_AI, TRIGGER_MANUAL, TRIGGER_SCHEDULED, TRIGGER_SCENE)

ACTION_DEVICE_UPDATE = "device_update"
ACTION_AI_COMMAND = "ai_command"
ACTION_SCENE_APPLIED = "scene_applied"

SECURITY_MODES = ("armed", "disarmed", "away")

API_KEYS_SETTING = "api_keys"


def _load_json(value: Any, default: Any) -> Any:
    if value is None:
        return default
    if isinstance(value, (dict, list)):
        return value
    try:
        return json.loads(value)
    except (TypeError, json.JSONDecodeError):
        return default


def dump_json(value: Any) -> Optional[str]:
    if value is None:
        return None
    return json.dumps(value, ensure_ascii=False, separators=(",", ":"))


def merge_status(current: Mapping[str, Any], patch: Mapping[str, Any]) -> DeviceStatus:
    """Overwrite only the keys present in `patch`, keeping every other key."""

    merged = dict(current)
    merged.update(patch)
    return merged


def validate_status_patch(patch: Any) -> DeviceStatus:
    """Check a status patch is a flat mapping of scalar values."""

    if not isinstance(patch, Mapping):
        raise ValueError("Status patch must be a mapping")
    if not patch:
        raise ValueError("Status patch must not be empty")
    for key, value in patch.items():
        if not isinstance(key, str) or not key:
            raise ValueError("Status keys must be non-empty strings")
        if value is not None and not isinstance(value, (str, int, float, bool)):
            raise ValueError(f"Status value for {key!r} must be a scalar")
    return dict(patch)


@dataclass(frozen=True)
class Room:
    """A room devices are grouped under."""

    id: str
    name: str
    slug: str
    accent_color: str
    icon: str
    display_order: int
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Room":
        return cls(
            id=row["id"],
            name=row["name"],
            slug=row["slug"],
            accent_color=row["accent_color"],
            icon=row["icon"],
            display_order=int(row["display_order"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class Device:
    """A controllable (or read-only) device and its current status."""

    id: str
    room_id: str
    name: str
    type: str
    status: DeviceStatus = field(default_factory=dict)
    metadata: Optional[Dict[str, Any]] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def read_only(self) -> bool:
        return bool((self.metadata or {}).get("read_only"))

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Device":
        return cls(
            id=row["id"],
            room_id=row["room_id"],
            name=row["name"],
            type=row["type"],
            status=_load_json(row["status"], {}),
            metadata=_load_json(row["metadata"], None),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "room_id": self.room_id,
            "name": self.name,
            "type": self.type,
            "status": dict(self.status),
            "metadata": dict(self.metadata) if self.metadata is not None else None,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class ActivityLog:
    """Append-only record of something that happened to the home."""

    id: str
    action_type: str
    trigger: str
    created_at: str
    device_id: Optional[str] = None
    room_id: Optional[str] = None
    previous_state: Optional[DeviceStatus] = None
    new_state: Optional[DeviceStatus] = None
    command: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "ActivityLog":
        return cls(
            id=row["id"],
            action_type=row["action_type"],
            trigger=row["trigger"],
            created_at=row["created_at"],
            device_id=row["device_id"],
            room_id=row["room_id"],
            previous_state=_load_json(row["previous_state"], None),
            new_state=_load_json(row["new_state"], None),
            command=row["command"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class NewActivityLog:
    """Activity entry before the store assigns an id and timestamp."""

    action_type: str
    trigger: str
    device_id: Optional[str] = None
    room_id: Optional[str] = None
    previous_state: Optional[DeviceStatus] = None
    new_state: Optional[DeviceStatus] = None
    command: Optional[str] = None


@dataclass(frozen=True)
class SceneDeviceState:
    """One step of a scene: the status a device should be set to."""

    device_id: str
    status: DeviceStatus

    def as_dict(self) -> Dict[str, Any]:
        return {"device_id": self.device_id, "status": dict(self.status)}


def parse_device_states(value: Any) -> Tuple[SceneDeviceState, ...]:
    entries = _load_json(value, [])
    states: List[SceneDeviceState] = []
    for entry in entries:
        if isinstance(entry, SceneDeviceState):
            states.append(entry)
            continue
        if not isinstance(entry, Mapping) or "device_id" not in entry:
            raise ValueError("Scene device states require 'device_id' and 'status'")
        status = entry.get("status")
        if not isinstance(status, Mapping):
            raise ValueError("Scene device state status must be a mapping")
        states.append(SceneDeviceState(device_id=str(entry["device_id"]), status=dict(status)))
    return tuple(states)


@dataclass(frozen=True)
class Scene:
    """A named, ordered snapshot of device statuses."""

    id: str
    name: str
    description: str = ""
    icon: str = "Sparkles"
    device_states: Tuple[SceneDeviceState, ...] = ()
    is_favorite: bool = False
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Scene":
        return cls(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            icon=row["icon"],
            device_states=parse_device_states(row["device_states"]),
            is_favorite=bool(row["is_favorite"]),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "description": self.description,
            "icon": self.icon,
            "device_states": [state.as_dict() for state in self.device_states],
            "is_favorite": self.is_favorite,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
        }


@dataclass(frozen=True)
class NewScene:
    """Scene payload before the store assigns an id."""

    name: str
    description: str = ""
    icon: str = "Sparkles"
    device_states: Sequence[SceneDeviceState] = ()
    is_favorite: bool = False


@dataclass(frozen=True)
class Setting:
    """A keyed bag of settings values (API keys, feature flags)."""

    id: str
    key: str
    value: Dict[str, Any]
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Setting":
        return cls(
            id=row["id"],
            key=row["key"],
            value=_load_json(row["value"], {}),
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass
class TokenStats:
    """Session-scoped prompt compression accounting."""

    original_tokens: int = 0
    compressed_tokens: int = 0
    tokens_saved: int = 0
    compression_ratio: float = 1.0
    session_tokens_saved: int = 0

    def as_dict(self) -> Dict[str, Any]:
        return dict(self.__dict__)


@dataclass(frozen=True)
class Action:
    """A single device status patch requested by the model."""

    device_id: str
    status: DeviceStatus

    def as_dict(self) -> Dict[str, Any]:
        return {"device_id": self.device_id, "status": dict(self.status)}


@dataclass(frozen=True)
class AIResponse:
    """Validated reply of the command interpreter."""

    actions: Tuple[Action, ...]
    confirmation: str
    suggestions: Tuple[str, ...] = ()

    def as_dict(self) -> Dict[str, Any]:
        return {
            "actions": [action.as_dict() for action in self.actions],
            "confirmation": self.confirmation,
            "suggestions": list(self.suggestions),
        }


@dataclass(frozen=True)
class CompressionResult:
    """Compressed prompt plus before/after token accounting."""

    compressed_prompt: str
    original_tokens: int
    compressed_tokens: int
    compression_ratio: float

    @property
    def tokens_saved(self) -> int:
        return max(0, self.original_tokens - self.compressed_tokens)

    def as_dict(self) -> Dict[str, Any]:
        return {
            "compressed_prompt": self.compressed_prompt,
            "original_tokens": self.original_tokens,
            "compressed_tokens": self.compressed_tokens,
            "compression_ratio": self.compression_ratio,
        }
