"""Optional prompt compression applied before command interpretation.

Two strategies share one contract, ``await compressor.compress_prompt(prompt,
context)`` returning a :class:`CompressionResult`:

* ``LocalCompressor`` collapses redundant whitespace; it is offline and
  deterministic.
* ``RemoteCompressor`` asks an external compression endpoint and memoizes the
  answer. Any failure falls back to the original prompt with a ratio of 1.0.

Compression is a cost optimization only, so neither strategy raises to its
caller.
"""

from __future__ import annotations

import hashlib
import re
import time
from collections import OrderedDict
from typing import Any, Callable, Mapping, Optional, Protocol, Tuple

import httpx

from .config import Config
from .logging import get_logger
from .metrics import record_compression
from .models import CompressionResult
from .tokens import estimate_tokens

DEFAULT_CACHE_SIZE = 100

_EXCESS_NEWLINES = re.compile(r"\n{3,}")
_EXCESS_SPACES = re.compile(r" {3,}")


class Compressor(Protocol):
    strategy: str

    async def compress_prompt(self, prompt: str, context: str = "") -> CompressionResult:
        ...


def uncompressed(prompt: str) -> CompressionResult:
    """Accounting for a prompt sent as-is."""

    tokens = estimate_tokens(prompt)
    return CompressionResult(
        compressed_prompt=prompt,
        original_tokens=tokens,
        compressed_tokens=tokens,
        compression_ratio=1.0,
    )


def _ratio(original_tokens: int, compressed_tokens: int) -> float:
    if original_tokens <= 0:
        return 1.0
    return compressed_tokens / original_tokens


def compress_local(prompt: str) -> CompressionResult:
    """Collapse 3+ newlines to 2 and runs of 3+ spaces to 2, then trim."""

    compressed = _EXCESS_NEWLINES.sub("\n\n", prompt)
    compressed = _EXCESS_SPACES.sub("  ", compressed).strip()
    original_tokens = estimate_tokens(prompt)
    compressed_tokens = estimate_tokens(compressed)
    return CompressionResult(
        compressed_prompt=compressed,
        original_tokens=original_tokens,
        compressed_tokens=compressed_tokens,
        compression_ratio=_ratio(original_tokens, compressed_tokens),
    )


class LocalCompressor:
    """Whitespace-only compression; always succeeds."""

    strategy = "local"

    def __init__(self) -> None:
        self.logger = get_logger("smarthome.compression")

    async def compress_prompt(self, prompt: str, context: str = "") -> CompressionResult:
        result = compress_local(prompt)
        record_compression(self.strategy, "ok", result.tokens_saved)
        self.logger.debug(
            "Compressed prompt locally",
            extra={
                "original_tokens": result.original_tokens,
                "compressed_tokens": result.compressed_tokens,
            },
        )
        return result


# Each extractor returns the mapping holding ``compressed_prompt`` (and the
# token counts next to it) or None when the reply does not have its shape.
Extractor = Callable[[Mapping[str, Any]], Optional[Mapping[str, Any]]]


def _top_level(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    if isinstance(payload.get("compressed_prompt"), str):
        return payload
    return None


def _nested_results(payload: Mapping[str, Any]) -> Optional[Mapping[str, Any]]:
    results = payload.get("results")
    if isinstance(results, Mapping) and isinstance(results.get("compressed_prompt"), str):
        return results
    return None


EXTRACTORS: Tuple[Extractor, ...] = (_top_level, _nested_results)

_ORIGINAL_TOKEN_KEYS = ("original_tokens", "original_prompt_tokens")
_COMPRESSED_TOKEN_KEYS = ("compressed_tokens", "compressed_prompt_tokens")


def _token_count(source: Mapping[str, Any], keys: Tuple[str, ...]) -> Optional[int]:
    for key in keys:
        value = source.get(key)
        if isinstance(value, bool):
            continue
        if isinstance(value, (int, float)) and value > 0:
            return int(value)
    return None


def parse_compression_response(prompt: str, payload: Any) -> Optional[CompressionResult]:
    """Try each known response layout in order; None when nothing matches."""

    if not isinstance(payload, Mapping):
        return None
    for extractor in EXTRACTORS:
        source = extractor(payload)
        if source is None:
            continue
        compressed = source["compressed_prompt"]
        if not compressed.strip():
            continue
        original_tokens = _token_count(source, _ORIGINAL_TOKEN_KEYS) or estimate_tokens(prompt)
        compressed_tokens = _token_count(source, _COMPRESSED_TOKEN_KEYS) or estimate_tokens(
            compressed
        )
        return CompressionResult(
            compressed_prompt=compressed,
            original_tokens=original_tokens,
            compressed_tokens=compressed_tokens,
            compression_ratio=_ratio(original_tokens, compressed_tokens),
        )
    return None


def cache_key(prompt: str, context: str = "") -> str:
    return hashlib.sha256((prompt + context).encode("utf-8")).hexdigest()


class RemoteCompressor:
    """Compress prompts through an external endpoint with a FIFO result cache.

    The cache evicts the oldest *inserted* entry once it grows past
    ``cache_size`` (at most 100); reads do not refresh an entry's position.
    """

    strategy = "remote"

    def __init__(
        self,
        api_key: Optional[str],
        *,
        url: str,
        target_rate: float = 0.5,
        timeout: float = 10.0,
        cache_size: int = DEFAULT_CACHE_SIZE,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.api_key = api_key
        self.url = url
        self.target_rate = target_rate
        self.timeout = timeout
        self.cache_size = min(max(1, cache_size), DEFAULT_CACHE_SIZE)
        self.logger = get_logger("smarthome.compression")
        self._client = client
        self._cache: "OrderedDict[str, CompressionResult]" = OrderedDict()

    @property
    def cache_size_used(self) -> int:
        return len(self._cache)

    def clear_cache(self) -> None:
        self._cache.clear()

    def cached(self, prompt: str, context: str = "") -> Optional[CompressionResult]:
        return self._cache.get(cache_key(prompt, context))

    def _remember(self, key: str, result: CompressionResult) -> None:
        self._cache[key] = result
        if len(self._cache) > self.cache_size:
            self._cache.popitem(last=False)

    async def compress_prompt(self, prompt: str, context: str = "") -> CompressionResult:
        key = cache_key(prompt, context)
        hit = self._cache.get(key)
        if hit is not None:
            record_compression(self.strategy, "cache_hit", hit.tokens_saved)
            return hit

        if not self.api_key or not self.api_key.strip():
            record_compression(self.strategy, "no_api_key")
            return uncompressed(prompt)

        start = time.perf_counter()
        try:
            payload = await self._post(prompt, context)
        except Exception as exc:
            record_compression(self.strategy, "error")
            self.logger.warning(
                "Prompt compression failed; using uncompressed prompt",
                extra={"error": str(exc), "error_type": type(exc).__name__},
            )
            return uncompressed(prompt)

        result = parse_compression_response(prompt, payload)
        if result is None:
            record_compression(self.strategy, "unrecognized_response")
            self.logger.warning(
                "Unrecognized compression response; using uncompressed prompt",
                extra={"keys": sorted(payload) if isinstance(payload, Mapping) else None},
            )
            return uncompressed(prompt)

        self._remember(key, result)
        record_compression(self.strategy, "ok", result.tokens_saved)
        self.logger.info(
            "Compressed prompt",
            extra={
                "original_tokens": result.original_tokens,
                "compressed_tokens": result.compressed_tokens,
                "compression_ratio": round(result.compression_ratio, 4),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            },
        )
        return result

    async def _post(self, prompt: str, context: str) -> Any:
        body = {"context": context, "prompt": prompt, "target_rate": self.target_rate}
        headers = {"x-api-key": self.api_key or "", "Content-Type": "application/json"}
        if self._client is not None:
            response = await self._client.post(
                self.url, json=body, headers=headers, timeout=self.timeout
            )
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(self.url, json=body, headers=headers)
        response.raise_for_status()
        return response.json()


def build_compressor(
    config: Config,
    api_key: Optional[str] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> Compressor:
    """Select the configured strategy; remote needs an API key, else local."""

    if config.compression_strategy == "remote" and api_key and api_key.strip():
        return RemoteCompressor(
            api_key,
            url=config.compression_url,
            target_rate=config.compression_target_rate,
            timeout=config.compression_timeout,
            cache_size=config.compression_cache_size,
            client=client,
        )
    return LocalCompressor()
