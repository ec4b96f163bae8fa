import json
from typing import Any, Dict, List

import httpx
import pytest

from smarthome_panel.compression import (
    LocalCompressor,
    RemoteCompressor,
    build_compressor,
    cache_key,
    compress_local,
    parse_compression_response,
)
from smarthome_panel.config import Config

URL = "https://compress.test/compress/raw/"


def _client(handler) -> httpx.AsyncClient:
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _echo_handler(calls: List[Dict[str, Any]]):
    def _handler(request: httpx.Request) -> httpx.Response:
        body = json.loads(request.content.decode())
        calls.append({"body": body, "headers": dict(request.headers)})
        return httpx.Response(
            200,
            json={
                "compressed_prompt": f"short:{body['prompt'][:8]}",
                "original_prompt_tokens": 100,
                "compressed_prompt_tokens": 40,
            },
        )

    return _handler


def test_local_compression_collapses_whitespace() -> None:
    prompt = "  line one\n\n\n\nline two     with    gaps \n"
    result = compress_local(prompt)

    assert result.compressed_prompt == "line one\n\nline two  with  gaps"
    assert result.compressed_tokens <= result.original_tokens
    assert result.compression_ratio == pytest.approx(
        result.compressed_tokens / result.original_tokens
    )


def test_local_compression_of_empty_prompt_has_unit_ratio() -> None:
    result = compress_local("")
    assert result.compressed_prompt == ""
    assert result.compression_ratio == 1.0


@pytest.mark.asyncio
async def test_local_compressor_strategy() -> None:
    compressor = LocalCompressor()
    result = await compressor.compress_prompt("a\n\n\n\nb")
    assert compressor.strategy == "local"
    assert result.compressed_prompt == "a\n\nb"


def test_parse_response_prefers_top_level_then_nested() -> None:
    top = parse_compression_response(
        "p" * 40, {"compressed_prompt": "tiny", "original_tokens": 10, "compressed_tokens": 2}
    )
    assert top is not None
    assert top.compressed_prompt == "tiny"
    assert top.compression_ratio == pytest.approx(0.2)

    nested = parse_compression_response(
        "p" * 40,
        {"results": {"compressed_prompt": "nested", "compressed_prompt_tokens": 3}},
    )
    assert nested is not None
    assert nested.compressed_prompt == "nested"
    assert nested.original_tokens == 10
    assert nested.compressed_tokens == 3


def test_parse_response_rejects_unknown_shapes() -> None:
    assert parse_compression_response("p", {"output": "x"}) is None
    assert parse_compression_response("p", ["compressed_prompt"]) is None
    assert parse_compression_response("p", {"compressed_prompt": "   "}) is None


@pytest.mark.asyncio
async def test_remote_compression_success_is_cached() -> None:
    calls: List[Dict[str, Any]] = []
    async with _client(_echo_handler(calls)) as client:
        compressor = RemoteCompressor("sd-key", url=URL, target_rate=0.4, client=client)
        first = await compressor.compress_prompt("the full prompt", "ctx")
        second = await compressor.compress_prompt("the full prompt", "ctx")

    assert first == second
    assert first.compressed_prompt == "short:the full"
    assert first.compression_ratio == pytest.approx(0.4)
    assert len(calls) == 1
    assert calls[0]["body"] == {"context": "ctx", "prompt": "the full prompt", "target_rate": 0.4}
    assert calls[0]["headers"]["x-api-key"] == "sd-key"
    assert compressor.cached("the full prompt", "ctx") == first


@pytest.mark.asyncio
async def test_remote_compression_falls_back_on_http_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(500, json={"error": "boom"})

    prompt = "keep    me\n\n\n\nas is"
    async with _client(_handler) as client:
        compressor = RemoteCompressor("sd-key", url=URL, client=client)
        result = await compressor.compress_prompt(prompt)

    assert result.compressed_prompt == prompt
    assert result.compression_ratio == 1.0
    assert result.original_tokens == result.compressed_tokens
    assert compressor.cache_size_used == 0


@pytest.mark.asyncio
async def test_remote_compression_falls_back_on_network_error() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        raise httpx.ConnectError("unreachable", request=request)

    async with _client(_handler) as client:
        compressor = RemoteCompressor("sd-key", url=URL, client=client)
        result = await compressor.compress_prompt("hello")

    assert result.compressed_prompt == "hello"
    assert result.compression_ratio == 1.0


@pytest.mark.asyncio
async def test_remote_compression_falls_back_on_unrecognized_body() -> None:
    def _handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json={"unexpected": True})

    async with _client(_handler) as client:
        compressor = RemoteCompressor("sd-key", url=URL, client=client)
        result = await compressor.compress_prompt("hello")

    assert result.compressed_prompt == "hello"
    assert result.compression_ratio == 1.0
    assert compressor.cache_size_used == 0


@pytest.mark.asyncio
async def test_remote_compression_without_key_makes_no_request() -> None:
    calls: List[Dict[str, Any]] = []
    async with _client(_echo_handler(calls)) as client:
        compressor = RemoteCompressor("  ", url=URL, client=client)
        result = await compressor.compress_prompt("hello")

    assert calls == []
    assert result.compressed_prompt == "hello"
    assert result.compression_ratio == 1.0


@pytest.mark.asyncio
async def test_cache_evicts_oldest_inserted_entry() -> None:
    calls: List[Dict[str, Any]] = []
    async with _client(_echo_handler(calls)) as client:
        compressor = RemoteCompressor("sd-key", url=URL, cache_size=100, client=client)
        for index in range(100):
            await compressor.compress_prompt(f"prompt-{index}")
        assert compressor.cache_size_used == 100

        # A cache hit does not move the entry.
        await compressor.compress_prompt("prompt-0")
        assert len(calls) == 100

        await compressor.compress_prompt("prompt-100")

    assert compressor.cache_size_used == 100
    assert compressor.cached("prompt-0") is None
    assert compressor.cached("prompt-1") is not None
    assert compressor.cached("prompt-100") is not None


def test_cache_key_covers_prompt_and_context() -> None:
    assert cache_key("a", "b") == cache_key("ab", "")
    assert cache_key("a", "b") != cache_key("a", "c")


def test_build_compressor_selects_strategy() -> None:
    assert isinstance(build_compressor(Config()), LocalCompressor)
    remote_config = Config(compression_strategy="remote")
    assert isinstance(build_compressor(remote_config, "sd-key"), RemoteCompressor)
    assert isinstance(build_compressor(remote_config, ""), LocalCompressor)


def test_cache_size_is_capped_at_one_hundred() -> None:
    assert RemoteCompressor("sd-key", url=URL, cache_size=500).cache_size == 100
    assert RemoteCompressor("sd-key", url=URL, cache_size=0).cache_size == 1
    compressor = build_compressor(Config(compression_strategy="remote"), "sd-key")
    assert compressor.cache_size == 100
