import sqlite3

import pytest

from smarthome_panel.db import MIGRATIONS, apply_migrations
from smarthome_panel.models import NewActivityLog, NewScene, SceneDeviceState
from smarthome_panel.store import DEMO_DEVICES, RecordNotFoundError, RecordStore, StoreError


def test_migrations_create_tables_and_record_version(tmp_path) -> None:
    db_path = tmp_path / "home.sqlite3"
    apply_migrations(db_path)
    apply_migrations(db_path)

    conn = sqlite3.connect(db_path)
    try:
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
        }
        version = conn.execute("SELECT value FROM meta WHERE key = 'schema_version'").fetchone()[0]
    finally:
        conn.close()

    assert {"rooms", "devices", "activity_logs", "scenes", "settings"} <= tables
    assert int(version) == MIGRATIONS[-1][0]


@pytest.mark.asyncio
async def test_seed_demo_runs_once(store: RecordStore) -> None:
    assert await store.seed_demo() is True
    assert await store.seed_demo() is False

    rooms = await store.list_rooms()
    devices = await store.list_devices()
    scenes = await store.list_scenes()

    assert [room.slug for room in rooms] == [
        "living_room",
        "bedroom",
        "kitchen",
        "bathroom",
        "home_office",
        "outdoor",
    ]
    assert len(devices) == len(DEMO_DEVICES) == 29
    assert {device.name for device in devices if device.read_only} == {
        "Temperature Sensor",
        "Refrigerator",
    }
    assert [scene.name for scene in scenes] == [
        "Away Mode",
        "Good Morning",
        "Goodnight",
        "Movie Night",
    ]
    assert all(scene.device_states == () for scene in scenes)


@pytest.mark.asyncio
async def test_devices_listed_by_name_and_updated(store: RecordStore) -> None:
    room = await store.insert_room("Office", "office")
    lamp = await store.insert_device(room.id, "b lamp", "lamp", {"state": "off"})
    await store.insert_device(room.id, "a pc", "pc", {"state": "off"})

    assert [device.name for device in await store.list_devices()] == ["a pc", "b lamp"]

    updated = await store.update_device_status(lamp.id, {"state": "on", "brightness": 40})
    assert updated.status == {"state": "on", "brightness": 40}
    assert updated.updated_at >= lamp.updated_at
    fetched = await store.get_device(lamp.id)
    assert fetched is not None
    assert fetched.status == updated.status


@pytest.mark.asyncio
async def test_update_missing_device_raises(store: RecordStore) -> None:
    with pytest.raises(RecordNotFoundError):
        await store.update_device_status("missing", {"state": "on"})
    assert await store.get_device("missing") is None


@pytest.mark.asyncio
async def test_activity_logs_newest_first_with_limit(store: RecordStore) -> None:
    for index in range(5):
        await store.insert_activity_log(
            NewActivityLog(action_type="ai_command", trigger="ai", command=f"cmd-{index}")
        )

    logs = await store.list_activity_logs(limit=3)
    assert [log.command for log in logs] == ["cmd-4", "cmd-3", "cmd-2"]


@pytest.mark.asyncio
async def test_activity_log_round_trips_json_states(store: RecordStore) -> None:
    entry = await store.insert_activity_log(
        NewActivityLog(
            action_type="device_update",
            trigger="manual",
            device_id="d1",
            room_id="r1",
            previous_state={"state": "off", "brightness": 0},
            new_state={"brightness": 80},
        )
    )
    assert entry.previous_state == {"state": "off", "brightness": 0}
    assert entry.new_state == {"brightness": 80}
    assert entry.created_at


@pytest.mark.asyncio
async def test_scene_crud(store: RecordStore) -> None:
    scene = await store.insert_scene(
        NewScene(
            name="Movie",
            device_states=(
                SceneDeviceState("d2", {"state": "on"}),
                SceneDeviceState("d1", {"brightness": 20}),
            ),
        )
    )
    assert [state.device_id for state in scene.device_states] == ["d2", "d1"]
    assert scene.is_favorite is False

    toggled = await store.update_scene(scene.id, is_favorite=True)
    assert toggled.is_favorite is True

    await store.delete_scene(scene.id)
    assert await store.list_scenes() == []


@pytest.mark.asyncio
async def test_settings_upsert_by_key(store: RecordStore) -> None:
    first = await store.upsert_setting("api_keys", {"gemini_api_key": "a"})
    second = await store.upsert_setting("api_keys", {"gemini_api_key": "b"})

    assert first.id == second.id
    assert second.value == {"gemini_api_key": "b"}
    assert [setting.key for setting in await store.list_settings()] == ["api_keys"]
    assert await store.get_setting("missing") is None


@pytest.mark.asyncio
async def test_constraint_failures_surface_as_store_error(store: RecordStore) -> None:
    await store.insert_room("Kitchen", "kitchen")
    with pytest.raises(StoreError):
        await store.insert_room("Kitchen again", "kitchen")
    # The connection stays usable after a failed write.
    assert len(await store.list_rooms()) == 1
