import pytest

from smarthome_panel.events import EVENT_DEVICE_UPDATED, EVENT_STATE_ERROR
from smarthome_panel.models import CompressionResult, NewActivityLog
from smarthome_panel.state import (
    DeviceNotFoundError,
    HomeState,
    ReadOnlyDeviceError,
)
from smarthome_panel.store import RecordStore, StoreError


@pytest.mark.asyncio
async def test_initialize_seeds_demo_home(tmp_path) -> None:
    store = RecordStore(tmp_path / "demo.sqlite3")
    state = HomeState(store)
    await state.initialize()
    try:
        assert len(state.rooms) == 6
        assert len(state.devices) == 29
        assert len(state.scenes) == 4
        assert state.is_loading is False
        assert state.error is None
    finally:
        await store.stop()


@pytest.mark.asyncio
async def test_initialize_failure_sets_error(tmp_path) -> None:
    store = RecordStore(tmp_path / "broken.sqlite3")
    state = HomeState(store)

    async def _fail() -> bool:
        raise StoreError("backend unavailable")

    store.seed_demo = _fail  # type: ignore[assignment]
    with pytest.raises(StoreError):
        await state.initialize()
    assert state.error == "backend unavailable"
    assert state.is_loading is False
    await store.stop()


@pytest.mark.asyncio
async def test_manual_patch_merges_into_status(home) -> None:
    result = await home.state.update_device(home.lights_id, {"brightness": 80}, "manual")

    assert result.device.status == {"state": "off", "brightness": 80}
    assert home.device(home.lights_id).status == {"state": "off", "brightness": 80}
    stored = await home.store.get_device(home.lights_id)
    assert stored is not None
    assert stored.status == {"state": "off", "brightness": 80}

    assert result.log.ok
    entry = home.state.activity_logs[0]
    assert entry.action_type == "device_update"
    assert entry.device_id == home.lights_id
    assert entry.room_id == home.room_id
    assert entry.previous_state == {"state": "off", "brightness": 0}
    assert entry.new_state == {"brightness": 80}
    assert entry.trigger == "manual"


@pytest.mark.asyncio
async def test_successive_patches_keep_untouched_keys(home) -> None:
    await home.state.update_device(home.tv_id, {"state": "on"})
    await home.state.update_device(home.tv_id, {"volume": 55})
    assert home.device(home.tv_id).status == {"state": "on", "volume": 55}


@pytest.mark.asyncio
async def test_read_only_device_is_never_written(home) -> None:
    before = await home.store.get_device(home.sensor_id)
    with pytest.raises(ReadOnlyDeviceError):
        await home.state.update_device(home.sensor_id, {"temperature": 10}, "ai")

    after = await home.store.get_device(home.sensor_id)
    assert after == before
    assert home.state.activity_logs == []
    assert "read-only" in (home.state.error or "")


@pytest.mark.asyncio
async def test_unknown_device_is_rejected(home) -> None:
    with pytest.raises(DeviceNotFoundError):
        await home.state.update_device("nope", {"state": "on"})
    assert home.state.error == "Device not found: nope"


@pytest.mark.asyncio
async def test_invalid_patch_is_rejected(home) -> None:
    with pytest.raises(ValueError):
        await home.state.update_device(home.lights_id, {})
    with pytest.raises(ValueError):
        await home.state.update_device(home.lights_id, {"color": {"r": 1}})
    with pytest.raises(ValueError):
        await home.state.update_device(home.lights_id, {"state": "on"}, "robot")
    assert home.device(home.lights_id).status == {"state": "off", "brightness": 0}


@pytest.mark.asyncio
async def test_persistence_failure_leaves_cache_untouched(home, monkeypatch) -> None:
    async def _fail(device_id, status):
        raise StoreError("write failed")

    monkeypatch.setattr(home.store, "update_device_status", _fail)
    with pytest.raises(StoreError):
        await home.state.update_device(home.lights_id, {"state": "on"})

    assert home.device(home.lights_id).status == {"state": "off", "brightness": 0}
    assert home.state.error == "write failed"
    assert home.state.activity_logs == []


@pytest.mark.asyncio
async def test_activity_log_failure_does_not_fail_update(home, monkeypatch) -> None:
    async def _fail(entry):
        raise StoreError("log table locked")

    monkeypatch.setattr(home.store, "insert_activity_log", _fail)
    result = await home.state.update_device(home.lights_id, {"state": "on"})

    assert result.device.status["state"] == "on"
    assert result.log.ok is False
    assert result.log.error == "log table locked"
    assert home.state.error is None


@pytest.mark.asyncio
async def test_activity_cache_keeps_newest_fifty(home) -> None:
    for index in range(55):
        await home.state.add_activity_log(
            NewActivityLog(action_type="ai_command", trigger="ai", command=f"cmd-{index}")
        )

    logs = home.state.activity_logs
    assert len(logs) == 50
    assert logs[0].command == "cmd-54"
    assert logs[-1].command == "cmd-5"

    assert await home.state.refresh_data() is True
    assert [log.command for log in home.state.activity_logs] == [log.command for log in logs]


@pytest.mark.asyncio
async def test_settings_are_upserted_and_read_locally(home, monkeypatch) -> None:
    await home.state.update_setting("api_keys", {"gemini_api_key": "one"})
    await home.state.update_setting("theme", {"dark": True})
    await home.state.update_setting("api_keys", {"gemini_api_key": "two"})

    assert [setting.key for setting in home.state.settings] == ["api_keys", "theme"]

    async def _no_io(*args, **kwargs):
        raise AssertionError("get_setting must not touch the store")

    monkeypatch.setattr(home.store, "get_setting", _no_io)
    setting = home.state.get_setting("api_keys")
    assert setting is not None
    assert setting.value == {"gemini_api_key": "two"}
    assert home.state.get_setting("missing") is None


def test_security_mode_and_token_stats(tmp_path) -> None:
    state = HomeState(RecordStore(tmp_path / "unused.sqlite3"))
    assert state.security_mode == "disarmed"
    state.set_security_mode("away")
    assert state.security_mode == "away"
    with pytest.raises(ValueError):
        state.set_security_mode("panic")

    state.record_compression(CompressionResult("p", 100, 60, 0.6))
    state.record_compression(CompressionResult("p", 50, 40, 0.8))
    stats = state.token_stats
    assert stats.original_tokens == 50
    assert stats.compressed_tokens == 40
    assert stats.tokens_saved == 10
    assert stats.compression_ratio == 0.8
    assert stats.session_tokens_saved == 50

    with pytest.raises(ValueError):
        state.update_token_stats(bogus=1)

    state.set_error("oops")
    assert state.snapshot()["error"] == "oops"
    state.set_error(None)
    assert state.error is None


@pytest.mark.asyncio
async def test_events_published_for_updates_and_errors(home) -> None:
    seen = []
    await home.state.event_bus.subscribe(EVENT_DEVICE_UPDATED, seen.append)
    await home.state.event_bus.subscribe(EVENT_STATE_ERROR, seen.append)

    await home.state.update_device(home.lights_id, {"state": "on"})
    with pytest.raises(DeviceNotFoundError):
        await home.state.update_device("ghost", {"state": "on"})

    assert [event.event_type for event in seen] == [EVENT_DEVICE_UPDATED, EVENT_STATE_ERROR]
    assert seen[0].data["device"]["status"]["state"] == "on"
    assert seen[0].data["trigger"] == "manual"


@pytest.mark.asyncio
async def test_activity_cache_never_exceeds_fifty(store) -> None:
    state = HomeState(store, seed_demo=False, activity_cache_limit=200)
    await state.initialize()
    for index in range(60):
        await state.add_activity_log(
            NewActivityLog(action_type="ai_command", trigger="ai", command=f"cmd-{index}")
        )
    assert state.activity_cache_limit == 50
    assert len(state.activity_logs) == 50
