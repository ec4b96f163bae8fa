import json
from dataclasses import dataclass, field
from typing import Any, Dict, List

import pytest
import pytest_asyncio

from smarthome_panel.models import Device
from smarthome_panel.state import HomeState
from smarthome_panel.store import RecordStore


@dataclass
class Home:
    """Small test home: one room, two writable devices and a sensor."""

    state: HomeState
    store: RecordStore
    room_id: str
    lights_id: str
    tv_id: str
    sensor_id: str
    sleeps: List[float] = field(default_factory=list)

    def device(self, device_id: str) -> Device:
        return self.state.get_device(device_id)


def gemini_reply(payload: Any) -> Dict[str, Any]:
    text = payload if isinstance(payload, str) else json.dumps(payload)
    return {"candidates": [{"content": {"parts": [{"text": text}], "role": "model"}}]}


@pytest_asyncio.fixture
async def store(tmp_path):
    record_store = RecordStore(tmp_path / "home.sqlite3")
    await record_store.start()
    yield record_store
    await record_store.stop()


@pytest_asyncio.fixture
async def home(store):
    room = await store.insert_room("Living Room", "living_room", icon="Sofa", display_order=1)
    lights = await store.insert_device(
        room.id, "Smart Lights", "lights", {"state": "off", "brightness": 0}
    )
    tv = await store.insert_device(room.id, "Smart TV", "tv", {"state": "off", "volume": 30})
    sensor = await store.insert_device(
        room.id,
        "Temperature Sensor",
        "sensor",
        {"temperature": 24, "humidity": 55},
        metadata={"read_only": True},
    )
    sleeps: List[float] = []

    async def _record_sleep(delay: float) -> None:
        sleeps.append(delay)

    state = HomeState(store, seed_demo=False, sleep=_record_sleep)
    await state.initialize()
    return Home(
        state=state,
        store=store,
        room_id=room.id,
        lights_id=lights.id,
        tv_id=tv.id,
        sensor_id=sensor.id,
        sleeps=sleeps,
    )
