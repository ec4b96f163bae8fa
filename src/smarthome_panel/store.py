"""SQLite-backed record store for rooms, devices, activity, scenes and settings."""

from __future__ import annotations

import asyncio
import sqlite3
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, TypeVar

from .db import DatabaseManager, apply_migrations
from .logging import get_logger
from .models import (
    ActivityLog,
    Device,
    NewActivityLog,
    NewScene,
    Room,
    Scene,
    Setting,
    dump_json,
)

T = TypeVar("T")

DEFAULT_ACTIVITY_LIMIT = 50


class StoreError(RuntimeError):
    """Raised when a record store operation fails."""


class RecordNotFoundError(StoreError):
    """Raised when an update targets a row that does not exist."""


def _now_iso() -> str:
    return datetime.now(tz=timezone.utc).isoformat(timespec="microseconds")


def _new_id() -> str:
    return uuid.uuid4().hex


class RecordStore:
    """Async CRUD helpers over the shared SQLite connection."""

    def __init__(self, db_path: Path, *, migrate: bool = True) -> None:
        self.db_path = db_path
        self.logger = get_logger("smarthome.store")
        self._migrate = migrate
        self._migrated = False
        self._migrate_lock = asyncio.Lock()
        self._db = DatabaseManager(db_path)

    async def start(self) -> None:
        if not self._migrate:
            return
        async with self._migrate_lock:
            if not self._migrated:
                await self._guard("migrate", lambda: apply_migrations(self.db_path))
                self._migrated = True

    async def stop(self) -> None:
        await self._db.close()

    async def _guard(self, what: str, call: Callable[[], Any]) -> Any:
        try:
            return await asyncio.to_thread(call)
        except (sqlite3.Error, OSError) as exc:
            raise StoreError(f"Failed to {what}: {exc}") from exc

    async def _run(self, what: str, operation: Callable[[sqlite3.Connection], T]) -> T:
        if self._migrate and not self._migrated:
            await self.start()
        try:
            return await self._db.run(operation)
        except StoreError:
            raise
        except Exception as exc:
            self.logger.error("Store operation failed", extra={"operation": what, "error": str(exc)})
            raise StoreError(f"Failed to {what}: {exc}") from exc

    # Rooms

    async def list_rooms(self) -> List[Room]:
        def _list(conn: sqlite3.Connection) -> List[Room]:
            rows = conn.execute(
                "SELECT * FROM rooms ORDER BY display_order ASC, name ASC"
            ).fetchall()
            return [Room.from_row(row) for row in rows]

        return await self._run("list rooms", _list)

    async def insert_room(
        self,
        name: str,
        slug: str,
        *,
        accent_color: str = "#3B82F6",
        icon: str = "Home",
        display_order: int = 0,
    ) -> Room:
        def _insert(conn: sqlite3.Connection) -> Room:
            room_id = _new_id()
            now = _now_iso()
            conn.execute(
                """
                INSERT INTO rooms (id, name, slug, accent_color, icon, display_order, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (room_id, name, slug, accent_color, icon, display_order, now, now),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM rooms WHERE id = ?", (room_id,)).fetchone()
            return Room.from_row(row)

        return await self._run("create room", _insert)

    # Devices

    async def list_devices(self, room_id: Optional[str] = None) -> List[Device]:
        def _list(conn: sqlite3.Connection) -> List[Device]:
            if room_id is None:
                rows = conn.execute("SELECT * FROM devices ORDER BY name ASC, id ASC").fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM devices WHERE room_id = ? ORDER BY name ASC, id ASC",
                    (room_id,),
                ).fetchall()
            return [Device.from_row(row) for row in rows]

        return await self._run("list devices", _list)

    async def get_device(self, device_id: str) -> Optional[Device]:
        def _get(conn: sqlite3.Connection) -> Optional[Device]:
            row = conn.execute("SELECT * FROM devices WHERE id = ?", (device_id,)).fetchone()
            return Device.from_row(row) if row else None

        return await self._run("get device", _get)

    async def insert_device(
        self,
        room_id: str,
        name: str,
        type: str,
        status: Optional[Mapping[str, Any]] = None,
        metadata: Optional[Mapping[str, Any]] = None,
    ) -> Device:
        def _insert(conn: sqlite3.Connection) -> Device:
            device_id = _new_id()
            now = _now_iso()
            conn.execute(
                """
                INSERT INTO devices (id, room_id, name, type, status, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    device_id,
                    room_id,
                    name,
                    type,
                    dump_json(dict(status or {})),
                    dump_json(dict(metadata)) if metadata is not None else None,
                    now,
                    now,
                ),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM devices WHERE id = ?", (device_id,)).fetchone()
            return Device.from_row(row)

        return await self._run("create device", _insert)

    async def update_device_status(self, device_id: str, status: Mapping[str, Any]) -> Device:
        """Store the full `status` for a device and return the updated row."""

        def _update(conn: sqlite3.Connection) -> Device:
            cursor = conn.execute(
                "UPDATE devices SET status = ?, updated_at = ? WHERE id = ?",
                (dump_json(dict(status)), _now_iso(), device_id),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise RecordNotFoundError(f"Device {device_id} not found")
            conn.commit()
            row = conn.execute("SELECT * FROM devices WHERE id = ?", (device_id,)).fetchone()
            return Device.from_row(row)

        return await self._run("update device", _update)

    # Activity logs

    async def list_activity_logs(self, limit: int = DEFAULT_ACTIVITY_LIMIT) -> List[ActivityLog]:
        def _list(conn: sqlite3.Connection) -> List[ActivityLog]:
            rows = conn.execute(
                "SELECT * FROM activity_logs ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (max(0, int(limit)),),
            ).fetchall()
            return [ActivityLog.from_row(row) for row in rows]

        return await self._run("list activity logs", _list)

    async def insert_activity_log(self, entry: NewActivityLog) -> ActivityLog:
        def _insert(conn: sqlite3.Connection) -> ActivityLog:
            log_id = _new_id()
            conn.execute(
                """
                INSERT INTO activity_logs (
                    id, device_id, room_id, action_type, previous_state, new_state,
                    trigger, command, created_at
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    log_id,
                    entry.device_id,
                    entry.room_id,
                    entry.action_type,
                    dump_json(entry.previous_state),
                    dump_json(entry.new_state),
                    entry.trigger,
                    entry.command,
                    _now_iso(),
                ),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM activity_logs WHERE id = ?", (log_id,)).fetchone()
            return ActivityLog.from_row(row)

        return await self._run("create activity log", _insert)

    # Scenes

    async def list_scenes(self) -> List[Scene]:
        def _list(conn: sqlite3.Connection) -> List[Scene]:
            rows = conn.execute("SELECT * FROM scenes ORDER BY name ASC, id ASC").fetchall()
            return [Scene.from_row(row) for row in rows]

        return await self._run("list scenes", _list)

    async def insert_scene(self, scene: NewScene) -> Scene:
        def _insert(conn: sqlite3.Connection) -> Scene:
            scene_id = _new_id()
            now = _now_iso()
            conn.execute(
                """
                INSERT INTO scenes (id, name, description, icon, device_states, is_favorite, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    scene_id,
                    scene.name,
                    scene.description,
                    scene.icon,
                    dump_json([state.as_dict() for state in scene.device_states]),
                    1 if scene.is_favorite else 0,
                    now,
                    now,
                ),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM scenes WHERE id = ?", (scene_id,)).fetchone()
            return Scene.from_row(row)

        return await self._run("create scene", _insert)

    async def update_scene(self, scene_id: str, *, is_favorite: bool) -> Scene:
        def _update(conn: sqlite3.Connection) -> Scene:
            cursor = conn.execute(
                "UPDATE scenes SET is_favorite = ?, updated_at = ? WHERE id = ?",
                (1 if is_favorite else 0, _now_iso(), scene_id),
            )
            if cursor.rowcount == 0:
                conn.rollback()
                raise RecordNotFoundError(f"Scene {scene_id} not found")
            conn.commit()
            row = conn.execute("SELECT * FROM scenes WHERE id = ?", (scene_id,)).fetchone()
            return Scene.from_row(row)

        return await self._run("update scene", _update)

    async def delete_scene(self, scene_id: str) -> None:
        def _delete(conn: sqlite3.Connection) -> None:
            conn.execute("DELETE FROM scenes WHERE id = ?", (scene_id,))
            conn.commit()

        await self._run("delete scene", _delete)

    # Settings

    async def list_settings(self) -> List[Setting]:
        def _list(conn: sqlite3.Connection) -> List[Setting]:
            rows = conn.execute("SELECT * FROM settings ORDER BY key ASC").fetchall()
            return [Setting.from_row(row) for row in rows]

        return await self._run("list settings", _list)

    async def get_setting(self, key: str) -> Optional[Setting]:
        def _get(conn: sqlite3.Connection) -> Optional[Setting]:
            row = conn.execute("SELECT * FROM settings WHERE key = ?", (key,)).fetchone()
            return Setting.from_row(row) if row else None

        return await self._run("get setting", _get)

    async def upsert_setting(self, key: str, value: Mapping[str, Any]) -> Setting:
        def _upsert(conn: sqlite3.Connection) -> Setting:
            now = _now_iso()
            conn.execute(
                """
                INSERT INTO settings (id, key, value, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(key) DO UPDATE SET
                    value=excluded.value,
                    updated_at=excluded.updated_at
                """,
                (_new_id(), key, dump_json(dict(value)), now, now),
            )
            conn.commit()
            row = conn.execute("SELECT * FROM settings WHERE key = ?", (key,)).fetchone()
            return Setting.from_row(row)

        return await self._run("update setting", _upsert)

    # Demo data

    async def seed_demo(self) -> bool:
        """Insert the demo home once; returns False when rooms already exist."""

        def _seed(conn: sqlite3.Connection) -> bool:
            if conn.execute("SELECT 1 FROM rooms LIMIT 1").fetchone() is not None:
                return False
            now = _now_iso()
            room_ids: Dict[str, str] = {}
            for room in DEMO_ROOMS:
                room_id = _new_id()
                room_ids[room["slug"]] = room_id
                conn.execute(
                    """
                    INSERT INTO rooms (id, name, slug, accent_color, icon, display_order, created_at, updated_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        room_id,
                        room["name"],
                        room["slug"],
                        room["accent_color"],
                        room["icon"],
                        room["display_order"],
                        now,
                        now,
                    ),
                )
            conn.executemany(
                """
                INSERT INTO devices (id, room_id, name, type, status, metadata, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                [
                    (
                        _new_id(),
                        room_ids[slug],
                        name,
                        device_type,
                        dump_json(status),
                        dump_json(metadata),
                        now,
                        now,
                    )
                    for slug, name, device_type, status, metadata in DEMO_DEVICES
                ],
            )
            conn.executemany(
                """
                INSERT INTO scenes (id, name, description, icon, device_states, is_favorite, created_at, updated_at)
                VALUES (?, ?, ?, ?, '[]', ?, ?, ?)
                """,
                [
                    (_new_id(), name, description, icon, 1 if favorite else 0, now, now)
                    for name, description, icon, favorite in DEMO_SCENES
                ],
            )
            conn.commit()
            return True

        seeded = await self._run("seed demo data", _seed)
        if seeded:
            self.logger.info(
                "Seeded demo home",
                extra={
                    "rooms": len(DEMO_ROOMS),
                    "devices": len(DEMO_DEVICES),
                    "scenes": len(DEMO_SCENES),
                },
            )
        return seeded


DEMO_ROOMS: Sequence[Dict[str, Any]] = (
    {"name": "Living Room", "slug": "living_room", "accent_color": "#3B82F6", "icon": "Sofa", "display_order": 1},
    {"name": "Bedroom", "slug": "bedroom", "accent_color": "#F97316", "icon": "Bed", "display_order": 2},
    {"name": "Kitchen", "slug": "kitchen", "accent_color": "#A855F7", "icon": "UtensilsCrossed", "display_order": 3},
    {"name": "Bathroom", "slug": "bathroom", "accent_color": "#14B8A6", "icon": "Bath", "display_order": 4},
    {"name": "Home Office", "slug": "home_office", "accent_color": "#10B981", "icon": "Briefcase", "display_order": 5},
    {"name": "Outdoor", "slug": "outdoor", "accent_color": "#F59E0B", "icon": "Trees", "display_order": 6},
)

_READ_ONLY = {"read_only": True}

# (room slug, name, type, status, metadata)
DEMO_DEVICES: Sequence[tuple] = (
    ("living_room", "Smart Lights", "lights", {"state": "off", "brightness": 0}, None),
    ("living_room", "Smart TV", "tv", {"state": "off", "volume": 30, "channel": "1"}, None),
    ("living_room", "AC Unit", "ac", {"state": "off", "temperature": 22, "mode": "cool"}, None),
    ("living_room", "Air Purifier", "purifier", {"state": "off"}, None),
    ("living_room", "Window Blinds", "blinds", {"state": "open", "percentage": 100}, None),
    ("living_room", "Temperature Sensor", "sensor", {"temperature": 24, "humidity": 55}, _READ_ONLY),
    ("bedroom", "Ceiling Lights", "lights", {"state": "off", "brightness": 0}, None),
    ("bedroom", "Bedside Lamp (Left)", "lamp", {"state": "off", "brightness": 0}, None),
    ("bedroom", "Bedside Lamp (Right)", "lamp", {"state": "off", "brightness": 0}, None),
    ("bedroom", "Smart Curtains", "curtains", {"state": "closed", "percentage": 0}, None),
    ("bedroom", "Fan", "fan", {"state": "off", "speed": 0}, None),
    ("kitchen", "Overhead Lights", "lights", {"state": "off", "brightness": 0}, None),
    ("kitchen", "Under-cabinet Lights", "lights", {"state": "off"}, None),
    ("kitchen", "Coffee Maker", "coffee_maker", {"state": "off"}, None),
    ("kitchen", "Oven", "oven", {"state": "off", "temperature": 0}, None),
    ("kitchen", "Refrigerator", "refrigerator", {"temperature": 4, "door": "closed"}, _READ_ONLY),
    ("kitchen", "Dishwasher", "dishwasher", {"state": "off", "cycle": "normal"}, None),
    ("bathroom", "Main Lights", "lights", {"state": "off", "brightness": 0}, None),
    ("bathroom", "Mirror Lights", "lights", {"state": "off"}, None),
    ("bathroom", "Exhaust Fan", "exhaust_fan", {"state": "off"}, None),
    ("bathroom", "Water Heater", "water_heater", {"state": "eco", "temperature": 50}, None),
    ("home_office", "Desk Lamp", "lamp", {"state": "off", "brightness": 0}, None),
    ("home_office", "Overhead Lights", "lights", {"state": "off", "brightness": 0}, None),
    ("home_office", "PC", "pc", {"state": "off"}, None),
    ("outdoor", "Garden Lights", "lights", {"state": "off"}, None),
    ("outdoor", "Porch Lights", "lights", {"state": "auto"}, None),
    ("outdoor", "Security Camera", "camera", {"state": "armed", "recording": True}, None),
    ("outdoor", "Sprinkler System", "sprinkler", {"state": "off", "zone": "all"}, None),
    ("outdoor", "Gate", "gate", {"state": "closed"}, None),
)

# (name, description, icon, is_favorite)
DEMO_SCENES: Sequence[tuple] = (
    ("Movie Night", "Dim lights and prepare for movie watching", "Film", True),
    ("Good Morning", "Wake up routine with lights and curtains", "Sunrise", True),
    ("Goodnight", "Turn off lights and activate security", "Moon", True),
    ("Away Mode", "Secure home when away", "Lock", False),
)
