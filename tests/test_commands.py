import json
from typing import Any, Dict, List

import httpx
import pytest

from conftest import gemini_reply
from smarthome_panel.commands import ApiKeys, CommandExecutor
from smarthome_panel.compression import RemoteCompressor
from smarthome_panel.config import Config
from smarthome_panel.interpreter import ConfigurationError, ResponseFormatError, TransportError
from smarthome_panel.state import ReadOnlyDeviceError

GEMINI_URL = "https://llm.test/v1beta"
COMPRESS_URL = "https://compress.test/compress/raw/"


def _config(**overrides: Any) -> Config:
    base = {"gemini_base_url": GEMINI_URL, "compression_url": COMPRESS_URL}
    base.update(overrides)
    return Config(**base)


class FakeApis:
    """Routes requests to canned model and compression replies."""

    def __init__(self, model_reply: Any, model_status: int = 200) -> None:
        self.model_reply = model_reply
        self.model_status = model_status
        self.model_calls: List[Dict[str, Any]] = []
        self.compress_calls: List[Dict[str, Any]] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode())
        if request.url.host == "compress.test":
            self.compress_calls.append(body)
            return httpx.Response(
                200,
                json={
                    "results": {
                        "compressed_prompt": "compressed: " + body["prompt"][-40:],
                        "original_prompt_tokens": 1000,
                        "compressed_prompt_tokens": 250,
                    }
                },
            )
        self.model_calls.append(body)
        return httpx.Response(self.model_status, json=self.model_reply)

    def client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(transport=httpx.MockTransport(self))


async def _set_keys(home, **value: Any) -> None:
    await home.state.update_setting("api_keys", value)


@pytest.mark.asyncio
async def test_command_updates_devices_in_order_and_logs(home) -> None:
    apis = FakeApis(
        gemini_reply(
            {
                "actions": [
                    {"device_id": home.lights_id, "status": {"state": "on", "brightness": 80}},
                    {"device_id": home.tv_id, "status": {"state": "on"}},
                ],
                "confirmation": "Lights and TV are on.",
                "suggestions": ["Dim the lights for a movie?"],
            }
        )
    )
    await _set_keys(home, gemini_api_key="gm-key")

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client, sleep=home.state._sleep)
        outcome = await executor.execute("  living room on  ")

    assert outcome.command == "living room on"
    assert outcome.confirmation == "Lights and TV are on."
    assert outcome.suggestions == ("Dim the lights for a movie?",)
    assert outcome.executed == (home.lights_id, home.tv_id)
    assert outcome.compression is None
    assert home.device(home.lights_id).status == {"state": "on", "brightness": 80}
    assert home.device(home.tv_id).status == {"state": "on", "volume": 30}

    logs = list(reversed(home.state.activity_logs))
    assert [(log.action_type, log.trigger) for log in logs] == [
        ("device_update", "ai"),
        ("device_update", "ai"),
        ("ai_command", "ai"),
    ]
    assert logs[-1].command == "living room on"
    assert home.sleeps == [0.2]
    assert len(apis.model_calls) == 1
    assert apis.compress_calls == []


@pytest.mark.asyncio
async def test_missing_model_key_makes_no_calls(home) -> None:
    apis = FakeApis(gemini_reply({"actions": [], "confirmation": "ok"}))

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client)
        with pytest.raises(ConfigurationError):
            await executor.execute("lights on")

    assert apis.model_calls == []
    assert apis.compress_calls == []
    assert "API key" in (home.state.error or "")
    assert home.state.activity_logs == []


@pytest.mark.asyncio
async def test_malformed_reply_mutates_nothing(home) -> None:
    apis = FakeApis(gemini_reply("Sorry, I can't do that right now."))
    await _set_keys(home, gemini_api_key="gm-key")

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client)
        with pytest.raises(ResponseFormatError):
            await executor.execute("lights on")

    assert home.device(home.lights_id).status == {"state": "off", "brightness": 0}
    assert home.state.activity_logs == []
    assert home.state.error is not None


@pytest.mark.asyncio
async def test_upstream_error_is_reported(home) -> None:
    apis = FakeApis({"error": {"message": "quota exceeded"}}, model_status=429)
    await _set_keys(home, gemini_api_key="gm-key")

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client)
        with pytest.raises(TransportError) as excinfo:
            await executor.execute("lights on")

    assert excinfo.value.status == 429
    assert "quota exceeded" in (home.state.error or "")


@pytest.mark.asyncio
async def test_clarification_reply_logs_nothing(home) -> None:
    apis = FakeApis(gemini_reply({"actions": [], "confirmation": "Which room do you mean?"}))
    await _set_keys(home, gemini_api_key="gm-key")

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client)
        outcome = await executor.execute("lights")

    assert outcome.confirmation == "Which room do you mean?"
    assert outcome.executed == ()
    assert outcome.log is None
    assert home.state.activity_logs == []


@pytest.mark.asyncio
async def test_actions_with_empty_status_are_skipped(home) -> None:
    apis = FakeApis(
        gemini_reply(
            {
                "actions": [
                    {"device_id": home.lights_id, "status": {}},
                    {"device_id": home.tv_id, "status": {"volume": 10}},
                ],
                "confirmation": "Volume down.",
            }
        )
    )
    await _set_keys(home, gemini_api_key="gm-key")

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client)
        outcome = await executor.execute("quieter")

    assert outcome.executed == (home.tv_id,)
    assert outcome.skipped == 1
    assert home.device(home.tv_id).status["volume"] == 10


@pytest.mark.asyncio
async def test_malformed_actions_are_skipped_and_the_rest_run(home) -> None:
    apis = FakeApis(
        gemini_reply(
            {
                "actions": [
                    {"device_id": home.lights_id, "status": {"state": "on"}},
                    {"device_id": home.tv_id},
                    {"status": {"state": "on"}},
                    "turn everything off",
                ],
                "confirmation": "Lights on.",
            }
        )
    )
    await _set_keys(home, gemini_api_key="gm-key")

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client)
        outcome = await executor.execute("lights on")

    assert outcome.executed == (home.lights_id,)
    assert outcome.skipped == 3
    assert home.device(home.lights_id).status["state"] == "on"
    assert home.device(home.tv_id).status == {"state": "off", "volume": 30}
    assert home.state.error is None
    assert [log.action_type for log in home.state.activity_logs] == [
        "ai_command",
        "device_update",
    ]


@pytest.mark.asyncio
async def test_read_only_target_aborts_remaining_actions(home) -> None:
    apis = FakeApis(
        gemini_reply(
            {
                "actions": [
                    {"device_id": home.sensor_id, "status": {"temperature": 18}},
                    {"device_id": home.lights_id, "status": {"state": "on"}},
                ],
                "confirmation": "Cooling down.",
            }
        )
    )
    await _set_keys(home, gemini_api_key="gm-key")

    async with apis.client() as client:
        executor = CommandExecutor(home.state, _config(), client=client)
        with pytest.raises(ReadOnlyDeviceError):
            await executor.execute("make it cooler")

    assert home.device(home.lights_id).status["state"] == "off"
    assert home.state.activity_logs == []


@pytest.mark.asyncio
async def test_remote_compression_updates_token_stats_and_is_cached(home) -> None:
    apis = FakeApis(gemini_reply({"actions": [], "confirmation": "Nothing to do."}))
    await _set_keys(
        home, gemini_api_key="gm-key", scaledown_api_key="sd-key", compression_enabled=True
    )

    async with apis.client() as client:
        executor = CommandExecutor(
            home.state, _config(compression_strategy="remote"), client=client
        )
        first = await executor.execute("status report")
        second = await executor.execute("status report")

    assert len(apis.compress_calls) == 1
    assert len(apis.model_calls) == 2
    sent = apis.model_calls[0]["contents"][0]["parts"][0]["text"]
    assert sent.startswith("compressed: ")
    assert first.compression is not None
    assert first.compression.tokens_saved == 750
    assert second.compression == first.compression
    assert home.state.token_stats.tokens_saved == 750
    assert home.state.token_stats.compression_ratio == 0.25
    assert home.state.token_stats.session_tokens_saved == 1500
    assert isinstance(executor.compressor_for(executor.api_keys()), RemoteCompressor)


@pytest.mark.asyncio
async def test_compression_disabled_ignores_compressor_key(home) -> None:
    await _set_keys(home, gemini_api_key="gm-key", scaledown_api_key="sd-key")
    executor = CommandExecutor(home.state, _config(compression_strategy="remote"))
    keys = executor.api_keys()
    assert keys == ApiKeys(gemini_api_key="gm-key", scaledown_api_key="sd-key")
    assert executor.compressor_for(keys) is None


@pytest.mark.asyncio
async def test_empty_command_is_rejected(home) -> None:
    executor = CommandExecutor(home.state, _config())
    with pytest.raises(ValueError):
        await executor.execute("   ")
